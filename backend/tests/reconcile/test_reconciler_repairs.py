from datetime import date

from clinic_recon.models import (
    IntakeRecord,
    Patient,
    ReconciliationIssue,
    ReorderRequest,
    ReorderStatus,
    Reservation,
    ReservationStatus,
)
from clinic_recon.services.reconcile.cache import NullCacheInvalidator
from clinic_recon.services.reconcile.discrepancy import (
    CancelReservations,
    CompleteReservation,
    Discrepancy,
    DiscrepancyKind,
)
from clinic_recon.services.reconcile.engine import run_reconciliation
from clinic_recon.services.reconcile.fixture_ledger import FixtureLedger
from clinic_recon.services.reconcile.reconciler import Reconciler

WINDOW = dict(date_from=date(2026, 2, 1), date_to=date(2026, 2, 28))


class RecordingNotifier:
    def __init__(self):
        self.calls = []

    def notify_if_visible(self, patient_identity, change):
        self.calls.append((patient_identity, change.change, change.reservation_id))
        return True


def _ledger_row(reservation_id, patient, day, time, status=""):
    return {"reserveId": reservation_id, "patient_id": patient, "date": day, "time": time, "status": status}


def test_temporary_identity_is_merged_into_the_ledger_patient(session_factory, seeder):
    seeder.patient("LINE_U1", chat_id="U1")
    seeder.patient("1001")
    seeder.reservation("R1", "LINE_U1", date(2026, 2, 5), "13:00")
    seeder.intake("LINE_U1", linked="R1")
    ledger = FixtureLedger([_ledger_row("R1", "1001", "2026-02-05", "13:00")])

    first = run_reconciliation(session_factory, ledger, **WINDOW)
    second = run_reconciliation(session_factory, ledger, **WINDOW)

    assert [result.outcome for result in first.results] == ["applied"]
    assert seeder.get(Reservation, reservation_id="R1").patient_identity == "1001"
    assert seeder.all(IntakeRecord)[0].patient_identity == "1001"
    assert seeder.get(Patient, identity="1001").external_chat_id == "U1"
    assert second.discrepancies == []


def test_identity_conflict_goes_to_the_review_queue(session_factory, seeder):
    seeder.patient("LINE_U2", chat_id="U2")
    seeder.patient("1002", chat_id="U9")
    seeder.reservation("R1", "LINE_U2", date(2026, 2, 5), "13:00")
    ledger = FixtureLedger([_ledger_row("R1", "1002", "2026-02-05", "13:00")])

    report = run_reconciliation(session_factory, ledger, **WINDOW)

    assert report.results[0].outcome == "needs_review"
    assert report.results[0].reason_code == "identity_conflict"
    assert report.exit_code == 3
    issue = seeder.all(ReconciliationIssue)[0]
    assert (issue.kind, issue.entity_key, issue.status) == ("orphaned_identity", "R1", "open")
    assert seeder.get(Reservation, reservation_id="R1").patient_identity == "LINE_U2"


def test_reviewed_intake_completes_the_reservation(session_factory, seeder):
    seeder.patient("1001")
    seeder.reservation("R1", "1001", date(2026, 2, 5), "13:00")
    seeder.intake("1001", linked="R1", review="approved")
    ledger = FixtureLedger([_ledger_row("R1", "1001", "2026-02-05", "13:00")])

    run_reconciliation(session_factory, ledger, **WINDOW)

    assert seeder.get(Reservation, reservation_id="R1").status == ReservationStatus.completed


def test_completed_ghost_is_never_coerced(session_factory, seeder):
    seeder.patient("1001")
    seeder.reservation("R1", "1001", date(2026, 2, 5), "13:00", status="completed")

    report = run_reconciliation(session_factory, FixtureLedger(), **WINDOW)

    assert report.exit_code == 3
    assert seeder.get(Reservation, reservation_id="R1").status == ReservationStatus.completed
    assert seeder.all(ReconciliationIssue)[0].reason_code == "completed_without_ledger_record"
    assert "1 conflicts need review" in report.summary_line()


def test_review_issue_is_not_duplicated_across_runs(session_factory, seeder):
    seeder.patient("1001")
    seeder.reservation("R1", "1001", date(2026, 2, 5), "13:00", status="completed")

    run_reconciliation(session_factory, FixtureLedger(), **WINDOW)
    run_reconciliation(session_factory, FixtureLedger(), **WINDOW)

    assert len(seeder.all(ReconciliationIssue)) == 1


def test_confirmed_reorder_with_paid_order_is_settled(session_factory, seeder, utc):
    seeder.patient("1001")
    reorder_id = seeder.reorder("1001", "GLP-1", "confirmed", created_at=utc(2026, 2, 2, 10))
    seeder.order("1001", "GLP-1", paid_at=utc(2026, 2, 2, 12))

    report = run_reconciliation(session_factory, FixtureLedger(), **WINDOW)

    assert [item.kind for item in report.discrepancies] == [DiscrepancyKind.unsettled_reorder]
    row = seeder.get(ReorderRequest, id=reorder_id)
    assert row.status == ReorderStatus.paid
    assert row.paid_at is not None


def test_missing_reservation_is_inserted_and_linked(session_factory, seeder, utc):
    seeder.patient("1002")
    intake_id = seeder.intake("1002", created_at=utc(2026, 2, 1))
    ledger = FixtureLedger([_ledger_row("resv-1770000000000", "1002", "2026/2/7", "9:00")])
    notifier = RecordingNotifier()
    cache = NullCacheInvalidator()

    run_reconciliation(session_factory, ledger, notifier=notifier, cache=cache, **WINDOW)

    row = seeder.get(Reservation, reservation_id="resv-1770000000000")
    assert (row.reserved_date, row.reserved_time, row.status) == (
        date(2026, 2, 7),
        "09:00",
        ReservationStatus.pending,
    )
    assert seeder.get(IntakeRecord, id=intake_id).linked_reservation_id == "resv-1770000000000"
    assert notifier.calls == [("1002", "created", "resv-1770000000000")]
    assert cache.invalidated == ["1002"]


def test_visible_cancellations_notify_but_collapsed_duplicates_do_not(session_factory, seeder, utc):
    seeder.patient("1001")
    seeder.patient("1002")
    seeder.reservation("R1", "1001", date(2026, 2, 5), "13:00")
    seeder.reservation("D1", "1002", date(2026, 2, 6), "10:00", created_at=utc(2026, 2, 1, 9))
    seeder.reservation("D2", "1002", date(2026, 2, 6), "11:00", created_at=utc(2026, 2, 1, 10))
    ledger = FixtureLedger(
        [
            _ledger_row("D1", "1002", "2026-02-06", "10:00"),
            _ledger_row("D2", "1002", "2026-02-06", "11:00"),
        ]
    )
    notifier = RecordingNotifier()

    run_reconciliation(session_factory, ledger, notifier=notifier, **WINDOW)

    assert notifier.calls == [("1001", "canceled", "R1")]


def test_stop_after_skips_the_rest(session_factory, seeder):
    seeder.patient("1001")
    seeder.reservation("R1", "1001", date(2026, 2, 5), "13:00")
    seeder.reservation("R2", "1001", date(2026, 2, 6), "13:00")

    report = run_reconciliation(session_factory, FixtureLedger(), stop_after=1, **WINDOW)

    assert [result.outcome for result in report.results] == ["applied", "skipped"]
    assert report.aborted is True
    assert report.summary_line().endswith("; stopped early")
    assert seeder.get(Reservation, reservation_id="R2").status == ReservationStatus.pending


def test_one_failed_fix_does_not_stop_the_others(session_factory, seeder):
    seeder.patient("1001")
    seeder.reservation("R1", "1001", date(2026, 2, 5), "13:00", status="canceled")
    seeder.reservation("R2", "1001", date(2026, 2, 6), "13:00")
    seeder.intake("1001", linked="R1", review="approved")
    discrepancies = [
        Discrepancy(DiscrepancyKind.stale_status, ("R1",), CompleteReservation("R1", 1), ("1001",)),
        Discrepancy(DiscrepancyKind.ghost, ("R2",), CancelReservations(("R2",)), ("1001",)),
    ]

    results = Reconciler(session_factory, FixtureLedger()).apply(discrepancies)

    assert [result.outcome for result in results] == ["failed", "applied"]
    assert results[0].reason_code == "illegal_transition"
    assert seeder.get(Reservation, reservation_id="R1").status == ReservationStatus.canceled
    assert seeder.get(Reservation, reservation_id="R2").status == ReservationStatus.canceled
    assert seeder.all(ReconciliationIssue)[0].reason_code == "illegal_transition"


def test_duplicate_fix_refuses_when_the_keeper_was_canceled(session_factory, seeder):
    seeder.patient("1001")
    seeder.reservation("K", "1001", date(2026, 2, 5), "10:00", status="canceled")
    seeder.reservation("L", "1001", date(2026, 2, 5), "11:00")
    discrepancy = Discrepancy(
        DiscrepancyKind.duplicate,
        ("K", "L"),
        CancelReservations(("L",), keep_reservation_id="K", relink_intake=True),
        ("1001",),
    )

    results = Reconciler(session_factory, FixtureLedger()).apply([discrepancy])

    assert results[0].outcome == "failed"
    assert results[0].reason_code == "concurrent_modification"
    assert seeder.get(Reservation, reservation_id="L").status == ReservationStatus.pending
