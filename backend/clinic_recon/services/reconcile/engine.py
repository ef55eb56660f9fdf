from __future__ import annotations

import logging
import signal
import threading
from contextlib import contextmanager
from datetime import date, datetime, timezone
from typing import Callable

from sqlalchemy.orm import Session

from clinic_recon.services.reconcile.cache import CacheInvalidator
from clinic_recon.services.reconcile.drift import DriftDetector
from clinic_recon.services.reconcile.errors import LedgerUnavailable
from clinic_recon.services.reconcile.ledger_source import LedgerSource
from clinic_recon.services.reconcile.reconciler import Reconciler
from clinic_recon.services.reconcile.report import RunReport
from clinic_recon.services.reconcile.state_store import StateStore

logger = logging.getLogger(__name__)


def run_reconciliation(
    session_factory: Callable[[], Session],
    ledger: LedgerSource,
    *,
    date_from: date,
    date_to: date,
    dry_run: bool = False,
    capacity: int = 1,
    cache: CacheInvalidator | None = None,
    notifier=None,
    stop_after: int | None = None,
    isolation_level: str | None = "REPEATABLE READ",
    now: datetime | None = None,
) -> RunReport:
    """Fetch, detect and (unless dry_run) repair drift for one date window.

    A ledger failure before detection ends the run with zero writes; the
    report then carries the error and exit code 1.
    """
    if date_from > date_to:
        raise ValueError("date_from must be on or before date_to")
    report = RunReport(date_from=date_from, date_to=date_to, dry_run=dry_run)

    ledger.take_rejected_rows()
    try:
        range_records = ledger.query_by_date_range(date_from, date_to)
    except LedgerUnavailable as exc:
        return _ledger_failed(report, exc)
    unreadable = ledger.take_rejected_rows()

    with session_factory() as session:
        with session.begin():
            snapshot = StateStore(session, isolation_level=isolation_level).read_snapshot(
                date_from,
                date_to,
                extra_reservation_ids={record.reservation_id for record in range_records},
                extra_identities={
                    record.patient_identity
                    for record in range_records
                    if record.patient_identity
                },
            )

    # Relational rows the range query could not see: moved out of the window
    # on the ledger side, or gone from it entirely.
    fetched = {record.reservation_id for record in range_records} | set(unreadable)
    unmatched = [
        row.reservation_id for row in snapshot.reservations if row.reservation_id not in fetched
    ]
    extra_records = []
    if unmatched:
        try:
            extra_records = ledger.query_by_ids(unmatched)
        except LedgerUnavailable as exc:
            return _ledger_failed(report, exc)
        unreadable.update(ledger.take_rejected_rows())

    detector = DriftDetector(capacity=capacity)
    report.discrepancies = detector.detect(
        snapshot,
        [*range_records, *extra_records],
        now=now,
        unreadable_rows=unreadable,
    )

    if dry_run:
        report.finished_at = datetime.now(timezone.utc)
        logger.info("Dry run finished", extra={"summary": report.summary_line()})
        return report

    reconciler = Reconciler(
        session_factory,
        ledger,
        cache=cache,
        notifier=notifier,
        capacity=capacity,
        stop_after=stop_after,
    )
    with _stop_on_sigint(reconciler):
        report.results = reconciler.apply(report.discrepancies)
    report.aborted = reconciler.stopped
    report.finished_at = datetime.now(timezone.utc)
    logger.info(
        "Reconciliation finished",
        extra={"summary": report.summary_line(), "writes": report.total_writes},
    )
    return report


def _ledger_failed(report: RunReport, exc: LedgerUnavailable) -> RunReport:
    logger.error("Ledger fetch failed; no changes made", extra={"error": str(exc)})
    report.ledger_error = str(exc)
    report.finished_at = datetime.now(timezone.utc)
    return report


@contextmanager
def _stop_on_sigint(reconciler: Reconciler):
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def _handler(signum, frame):
        logger.warning("Interrupt received; stopping after the current fix")
        reconciler.request_stop()

    previous = signal.signal(signal.SIGINT, _handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)
