import json
from datetime import date

from clinic_recon.models import Reservation, ReservationStatus
from clinic_recon.scripts import reconcile as reconcile_script
from clinic_recon.services.reconcile.cache import NullCacheInvalidator
from clinic_recon.services.reconcile.fixture_ledger import FixtureLedger

LEDGER_ROWS = [
    {"reserveId": "R1", "patient_id": "1001", "date": "2026-02-05", "time": "13:00", "status": "キャンセル"}
]
WINDOW_ARGS = ["--date-from", "2026-02-01", "--date-to", "2026-02-28"]


def _setup(monkeypatch, tmp_path, session_factory, seeder, rows=LEDGER_ROWS):
    seeder.patient("1001")
    seeder.reservation("R1", "1001", date(2026, 2, 5), "13:00")
    fixture = tmp_path / "ledger.json"
    fixture.write_text(json.dumps({"ok": True, "reservations": rows}, ensure_ascii=False), encoding="utf-8")
    monkeypatch.setattr(reconcile_script, "SessionLocal", session_factory)
    monkeypatch.setattr(
        reconcile_script, "build_cache_invalidator", lambda *args, **kwargs: NullCacheInvalidator()
    )
    return ["--source", "fixture", "--fixture", str(fixture), "--no-notify", *WINDOW_ARGS]


def test_cli_dry_run_writes_nothing(monkeypatch, tmp_path, session_factory, seeder, capsys):
    args = _setup(monkeypatch, tmp_path, session_factory, seeder)

    assert reconcile_script.main([*args, "--dry-run"]) == 0

    out = capsys.readouterr().out
    assert "0 conflicts need review (dry run)" in out
    assert seeder.get(Reservation, reservation_id="R1").status == ReservationStatus.pending


def test_cli_repairs_and_writes_report(monkeypatch, tmp_path, session_factory, seeder):
    args = _setup(monkeypatch, tmp_path, session_factory, seeder)
    report_path = tmp_path / "report.json"

    assert reconcile_script.main([*args, "--output-json", str(report_path)]) == 0

    payload = json.loads(report_path.read_text(encoding="utf-8"))
    assert payload["summary"] == "1 ghosts fixed, 0 duplicates collapsed, 0 conflicts need review"
    assert payload["outcome_counts"] == {"applied": 1}
    assert seeder.get(Reservation, reservation_id="R1").status == ReservationStatus.canceled


def test_cli_ledger_unavailable_exits_1(monkeypatch, tmp_path, session_factory, seeder, capsys):
    args = _setup(monkeypatch, tmp_path, session_factory, seeder)
    ledger = FixtureLedger()
    ledger.available = False
    monkeypatch.setattr(reconcile_script, "_build_ledger", lambda _args: ledger)

    assert reconcile_script.main(args) == 1

    assert "ledger fetch failed, no changes made" in capsys.readouterr().out
    assert seeder.get(Reservation, reservation_id="R1").status == ReservationStatus.pending


def test_cli_review_required_exits_3(monkeypatch, tmp_path, session_factory, seeder):
    rows = [{"reserveId": "R1", "patient_id": "1001", "date": "2026-02-05", "time": "13:00"},
            {"reserveId": "R2", "patient_id": "1001", "date": "2026-02-05", "time": "16:00"}]
    args = _setup(monkeypatch, tmp_path, session_factory, seeder, rows=rows)

    assert reconcile_script.main(args) == 3


def test_cli_closes_the_ledger_and_cache(monkeypatch, tmp_path, session_factory, seeder):
    args = _setup(monkeypatch, tmp_path, session_factory, seeder)
    closed = []
    ledger = FixtureLedger(LEDGER_ROWS)
    ledger.close = lambda: closed.append("ledger")
    cache = NullCacheInvalidator()
    cache.close = lambda: closed.append("cache")
    monkeypatch.setattr(reconcile_script, "_build_ledger", lambda _args: ledger)
    monkeypatch.setattr(reconcile_script, "build_cache_invalidator", lambda *args, **kwargs: cache)

    assert reconcile_script.main(args) == 0

    assert closed == ["ledger", "cache"]


def test_cli_usage_errors_exit_2(monkeypatch, tmp_path, session_factory, seeder):
    _setup(monkeypatch, tmp_path, session_factory, seeder)

    assert reconcile_script.main(["--date-from", "2026-03-01", "--date-to", "2026-02-01"]) == 2
    assert reconcile_script.main(["--source", "fixture", *WINDOW_ARGS]) == 2
    assert reconcile_script.main(["--capacity", "0", *WINDOW_ARGS]) == 2
    missing = tmp_path / "missing.json"
    assert reconcile_script.main(["--source", "fixture", "--fixture", str(missing), *WINDOW_ARGS]) == 2


def test_cli_rejects_bad_output_directory(monkeypatch, tmp_path, session_factory, seeder):
    args = _setup(monkeypatch, tmp_path, session_factory, seeder)

    assert reconcile_script.main([*args, "--output-json", str(tmp_path / "nope" / "r.json")]) == 2
