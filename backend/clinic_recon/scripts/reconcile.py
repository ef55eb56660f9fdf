from __future__ import annotations

import argparse
import json
import logging
import os
import tempfile
from datetime import date, timedelta
from pathlib import Path

from clinic_recon.core.settings import settings, validate_settings
from clinic_recon.db.session import SessionLocal
from clinic_recon.services.reconcile.cache import build_cache_invalidator
from clinic_recon.services.reconcile.engine import run_reconciliation
from clinic_recon.services.reconcile.errors import LedgerSchemaError
from clinic_recon.services.reconcile.fixture_ledger import FixtureLedger
from clinic_recon.services.reconcile.gas_ledger import GasLedgerClient, GasLedgerConfig
from clinic_recon.services.reconcile.notifier import LineNotifier
from clinic_recon.services.reconcile.report import EXIT_USAGE

logger = logging.getLogger("clinic_recon.cli")


def _parse_date_arg(value: str) -> date:
    return date.fromisoformat(value)


def _write_report_file(path: str, payload: dict[str, object]) -> None:
    target = Path(path)
    parent = target.parent
    if parent and not parent.exists():
        raise RuntimeError(f"Report output directory does not exist: {parent}")
    data = json.dumps(payload, indent=2, sort_keys=True, ensure_ascii=False)
    with tempfile.NamedTemporaryFile(
        "w",
        encoding="utf-8",
        delete=False,
        dir=str(parent) if parent else None,
    ) as handle:
        handle.write(data)
        handle.write("\n")
        tmp_path = handle.name
    os.replace(tmp_path, target)


def _build_ledger(args):
    if args.source == "fixture":
        return FixtureLedger.from_file(Path(args.fixture))
    config = GasLedgerConfig.from_env()
    config.require_enabled()
    return GasLedgerClient(config)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Reconcile reservations, intakes and reorders against the GAS ledger."
    )
    parser.add_argument(
        "--date-from",
        type=_parse_date_arg,
        default=None,
        help="Window start YYYY-MM-DD (inclusive, default: today).",
    )
    parser.add_argument(
        "--date-to",
        type=_parse_date_arg,
        default=None,
        help="Window end YYYY-MM-DD (inclusive, default: date-from + 14 days).",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report proposed fixes without writing anything.",
    )
    parser.add_argument(
        "--source",
        default="gas",
        choices=("gas", "fixture"),
        help="Ledger source (default: gas).",
    )
    parser.add_argument("--fixture", help="JSON ledger fixture path (for --source fixture).")
    parser.add_argument(
        "--capacity",
        type=int,
        default=None,
        help="Bookings allowed per (date, time) slot (default: SLOT_CAPACITY).",
    )
    parser.add_argument("--no-notify", action="store_true", help="Skip LINE notifications.")
    parser.add_argument(
        "--stop-after",
        type=int,
        default=None,
        help="Stop after attempting N fixes.",
    )
    parser.add_argument("--output-json", help="Write the full run report to this path.")
    parser.add_argument("--log-level", default="INFO", help="Logging level (default: INFO).")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    date_from = args.date_from or date.today()
    date_to = args.date_to or date_from + timedelta(days=14)
    if date_from > date_to:
        print("--date-from must be on or before --date-to.")
        return EXIT_USAGE
    if args.source == "fixture" and not args.fixture:
        print("--fixture is required with --source fixture.")
        return EXIT_USAGE
    capacity = args.capacity if args.capacity is not None else settings.slot_capacity
    if capacity < 1:
        print("--capacity must be a positive integer.")
        return EXIT_USAGE
    if args.stop_after is not None and args.stop_after < 0:
        print("--stop-after must not be negative.")
        return EXIT_USAGE

    try:
        validate_settings(settings)
        ledger = _build_ledger(args)
    except (RuntimeError, OSError, ValueError, LedgerSchemaError) as exc:
        print(str(exc))
        return EXIT_USAGE

    cache = None
    notifier = None
    if not args.dry_run:
        cache = build_cache_invalidator(
            settings.redis_url,
            settings.cache_invalidate_url,
            settings.cache_admin_token,
            settings.cache_timeout_seconds,
        )
        if settings.notify_enabled and not args.no_notify:
            notifier = LineNotifier(
                SessionLocal,
                settings.line_channel_access_token,
                api_base_url=settings.line_api_base_url,
                timeout_seconds=settings.line_timeout_seconds,
            )

    try:
        report = run_reconciliation(
            SessionLocal,
            ledger,
            date_from=date_from,
            date_to=date_to,
            dry_run=args.dry_run,
            capacity=capacity,
            cache=cache,
            notifier=notifier,
            stop_after=args.stop_after,
            isolation_level=settings.snapshot_isolation_level,
        )
    finally:
        ledger.close()
        if cache is not None:
            cache.close()
        if notifier is not None:
            notifier.close()

    payload = report.as_dict()

    if args.output_json:
        try:
            _write_report_file(args.output_json, payload)
        except RuntimeError as exc:
            print(str(exc))
            return EXIT_USAGE

    print(json.dumps(payload, indent=2, sort_keys=True, ensure_ascii=False))
    print(report.summary_line())
    return report.exit_code


if __name__ == "__main__":
    raise SystemExit(main())
