"""Applies proposed fixes, one transaction per discrepancy.

Every relational write goes through a conditional UPDATE in StateStore, so a
fix that was already applied (by an earlier run or a concurrent one) comes
back as a no-op instead of a second write. Side effects that leave the
database (ledger write-back, cache invalidation, LINE pushes) run only after
the fix's transaction has committed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from clinic_recon.models.patient import Patient
from clinic_recon.models.reservation import Reservation, ReservationStatus
from clinic_recon.services.reconcile.cache import CacheInvalidator, NullCacheInvalidator
from clinic_recon.services.reconcile.discrepancy import (
    CancelLedgerRecord,
    CancelReservations,
    CompleteReservation,
    Discrepancy,
    InsertReservation,
    ManualReview,
    RescheduleReservation,
    ResolveIdentity,
    SettleReorder,
)
from clinic_recon.services.reconcile.errors import (
    IdentityConflict,
    IllegalTransition,
    LedgerUnavailable,
    RepairFailed,
    StaleWrite,
)
from clinic_recon.services.reconcile.identity import IdentityResolver
from clinic_recon.services.reconcile.issue_queue import (
    REASON_CONCURRENT_MODIFICATION,
    REASON_IDENTITY_CONFLICT,
    REASON_ILLEGAL_TRANSITION,
    REASON_UNRESOLVED_IDENTITY,
    IssueInput,
    upsert_issue,
)
from clinic_recon.services.reconcile.ledger_source import LedgerSource
from clinic_recon.services.reconcile.notifier import (
    CHANGE_CANCELED,
    CHANGE_CREATED,
    CHANGE_RESCHEDULED,
    VisibleChange,
)
from clinic_recon.services.reconcile.report import (
    OUTCOME_APPLIED,
    OUTCOME_FAILED,
    OUTCOME_NEEDS_REVIEW,
    OUTCOME_NOOP,
    OUTCOME_SKIPPED,
    FixResult,
)
from clinic_recon.services.reconcile.state_store import StateStore
from clinic_recon.services.reconcile.types import LedgerStatus

logger = logging.getLogger(__name__)


@dataclass
class _Effects:
    writes: int = 0
    ledger_cancels: list[str] = field(default_factory=list)
    ledger_repoints: dict[str, str] = field(default_factory=dict)
    invalidate: set[str] = field(default_factory=set)
    notify: list[tuple[str, VisibleChange]] = field(default_factory=list)


class Reconciler:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        ledger: LedgerSource,
        *,
        cache: CacheInvalidator | None = None,
        notifier=None,
        capacity: int = 1,
        stop_after: int | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._ledger = ledger
        self._cache = cache or NullCacheInvalidator()
        self._notifier = notifier
        self._capacity = capacity
        self._stop_after = stop_after
        self._stop_requested = False

    def request_stop(self) -> None:
        """Finish the fix in flight, then skip the rest."""
        self._stop_requested = True

    @property
    def stopped(self) -> bool:
        return self._stop_requested

    def apply(self, discrepancies: list[Discrepancy]) -> list[FixResult]:
        results: list[FixResult] = []
        attempted = 0
        for discrepancy in discrepancies:
            if self._stop_after is not None and attempted >= self._stop_after:
                self._stop_requested = True
            if self._stop_requested:
                results.append(FixResult(discrepancy, OUTCOME_SKIPPED))
                continue
            attempted += 1
            result = self._apply_one(discrepancy)
            results.append(result)
            logger.info(
                "Fix processed",
                extra={
                    "kind": discrepancy.kind.value,
                    "entity_key": discrepancy.entity_key,
                    "outcome": result.outcome,
                    "writes": result.writes,
                },
            )
        return results

    def _apply_one(self, discrepancy: Discrepancy) -> FixResult:
        fix = discrepancy.proposed_fix
        if isinstance(fix, ManualReview):
            self._queue(discrepancy, fix.reason_code, fix.note)
            return FixResult(discrepancy, OUTCOME_NEEDS_REVIEW, reason_code=fix.reason_code)

        effects = _Effects()
        try:
            with self._session_factory() as session:
                with session.begin():
                    self._apply_fix(session, fix, effects)
        except IdentityConflict as exc:
            self._queue(discrepancy, REASON_IDENTITY_CONFLICT, str(exc))
            return FixResult(
                discrepancy,
                OUTCOME_NEEDS_REVIEW,
                reason_code=REASON_IDENTITY_CONFLICT,
                message=str(exc),
            )
        except IllegalTransition as exc:
            logger.error(
                "Illegal transition while repairing",
                extra={"entity_key": discrepancy.entity_key, "error": str(exc)},
            )
            self._queue(discrepancy, REASON_ILLEGAL_TRANSITION, str(exc))
            return FixResult(
                discrepancy, OUTCOME_FAILED, reason_code=REASON_ILLEGAL_TRANSITION, message=str(exc)
            )
        except RepairFailed as exc:
            self._queue(discrepancy, exc.reason_code, str(exc))
            outcome = OUTCOME_NEEDS_REVIEW if exc.reason_code in _REVIEW_REASONS else OUTCOME_FAILED
            return FixResult(discrepancy, outcome, reason_code=exc.reason_code, message=str(exc))
        except LookupError as exc:
            self._queue(discrepancy, REASON_CONCURRENT_MODIFICATION, str(exc))
            return FixResult(
                discrepancy,
                OUTCOME_FAILED,
                reason_code=REASON_CONCURRENT_MODIFICATION,
                message=str(exc),
            )

        ledger_errors = self._after_commit(effects)
        if ledger_errors and effects.writes == 0:
            return FixResult(
                discrepancy,
                OUTCOME_FAILED,
                reason_code="ledger_write_failed",
                ledger_errors=ledger_errors,
            )
        outcome = OUTCOME_APPLIED if effects.writes else OUTCOME_NOOP
        return FixResult(discrepancy, outcome, writes=effects.writes, ledger_errors=ledger_errors)

    def _apply_fix(self, session: Session, fix, effects: _Effects) -> None:
        store = StateStore(session, isolation_level=None)
        if isinstance(fix, CancelReservations):
            self._cancel(store, fix, effects)
        elif isinstance(fix, CompleteReservation):
            row = store.get_reservation(fix.reservation_id)
            if row is None:
                raise LookupError(f"Reservation {fix.reservation_id} not found")
            if store.upsert_reservation_status(fix.reservation_id, ReservationStatus.completed):
                effects.writes += 1
                effects.invalidate.add(row.patient_identity)
        elif isinstance(fix, RescheduleReservation):
            self._reschedule(store, fix, effects)
        elif isinstance(fix, InsertReservation):
            self._insert(session, store, fix, effects)
        elif isinstance(fix, CancelLedgerRecord):
            row = store.get_reservation(fix.reservation_id)
            if row is None:
                raise LookupError(f"Reservation {fix.reservation_id} not found")
            if row.status != ReservationStatus.canceled:
                raise StaleWrite(fix.reservation_id)
            effects.ledger_cancels.append(fix.reservation_id)
            effects.invalidate.add(row.patient_identity)
        elif isinstance(fix, SettleReorder):
            if store.settle_reorder(fix.reorder_id, fix.paid_at):
                effects.writes += 1
        elif isinstance(fix, ResolveIdentity):
            self._resolve_identity(session, store, fix, effects)
        else:
            raise RepairFailed(f"Unsupported fix {type(fix).__name__}", reason_code="unsupported_fix")

    def _cancel(self, store: StateStore, fix: CancelReservations, effects: _Effects) -> None:
        if fix.keep_reservation_id:
            keeper = store.get_reservation(fix.keep_reservation_id)
            if keeper is None or keeper.status == ReservationStatus.canceled:
                # Canceling the losers now would leave the patient with nothing.
                raise StaleWrite(fix.keep_reservation_id)
        for reservation_id in fix.reservation_ids:
            row = store.get_reservation(reservation_id)
            if row is None:
                raise LookupError(f"Reservation {reservation_id} not found")
            if store.upsert_reservation_status(reservation_id, ReservationStatus.canceled):
                effects.writes += 1
                effects.invalidate.add(row.patient_identity)
                if not fix.keep_reservation_id:
                    effects.notify.append(
                        (
                            row.patient_identity,
                            VisibleChange(
                                CHANGE_CANCELED, reservation_id, row.reserved_date, row.reserved_time
                            ),
                        )
                    )
            target = fix.keep_reservation_id if fix.relink_intake else None
            effects.writes += store.relink_intake(reservation_id, target)
        effects.ledger_cancels.extend(fix.ledger_cancel_ids)

    def _reschedule(
        self, store: StateStore, fix: RescheduleReservation, effects: _Effects
    ) -> None:
        changed = store.reschedule_reservation(
            fix.reservation_id,
            from_date=fix.from_date,
            from_time=fix.from_time,
            to_date=fix.to_date,
            to_time=fix.to_time,
        )
        if not changed:
            return
        row = store.get_reservation(fix.reservation_id)
        effects.writes += 1
        effects.invalidate.add(row.patient_identity)
        effects.notify.append(
            (
                row.patient_identity,
                VisibleChange(CHANGE_RESCHEDULED, fix.reservation_id, fix.to_date, fix.to_time),
            )
        )

    def _insert(
        self, session: Session, store: StateStore, fix: InsertReservation, effects: _Effects
    ) -> None:
        if store.get_reservation(fix.reservation_id) is not None:
            return
        patient = session.scalar(select(Patient).where(Patient.identity == fix.patient_identity))
        if patient is None or patient.is_merged:
            raise RepairFailed(
                f"Patient {fix.patient_identity} is not a live patient row",
                reason_code=REASON_UNRESOLVED_IDENTITY,
            )
        same_day = [
            row.reservation_id
            for row in store.get_active_reservations(fix.patient_identity, fix.reserved_date)
            if row.reserved_date == fix.reserved_date
        ]
        if same_day:
            raise RepairFailed(
                f"Patient already booked on {fix.reserved_date}: {', '.join(same_day)}",
                reason_code="ledger_only_booking_conflicts",
            )
        taken = session.scalar(
            select(func.count())
            .select_from(Reservation)
            .where(
                Reservation.reserved_date == fix.reserved_date,
                Reservation.reserved_time == fix.reserved_time,
                Reservation.status != ReservationStatus.canceled,
            )
        )
        if taken >= self._capacity:
            raise RepairFailed(
                f"Slot {fix.reserved_date} {fix.reserved_time} is full",
                reason_code="slot_full",
            )
        inserted = store.insert_reservation(
            reservation_id=fix.reservation_id,
            patient_identity=fix.patient_identity,
            reserved_date=fix.reserved_date,
            reserved_time=fix.reserved_time,
            created_at=fix.created_at,
        )
        if not inserted:
            return
        effects.writes += 1
        effects.writes += store.link_latest_intake(fix.patient_identity, fix.reservation_id)
        effects.invalidate.add(fix.patient_identity)
        effects.notify.append(
            (
                fix.patient_identity,
                VisibleChange(CHANGE_CREATED, fix.reservation_id, fix.reserved_date, fix.reserved_time),
            )
        )

    def _resolve_identity(
        self, session: Session, store: StateStore, fix: ResolveIdentity, effects: _Effects
    ) -> None:
        resolver = IdentityResolver(session)
        canonical = resolver.resolve(chat_id=fix.chat_id, permanent_id=fix.permanent_id)
        if not canonical.known:
            raise RepairFailed(
                f"No patient row to resolve {fix.orphan_identity} into",
                reason_code=REASON_UNRESOLVED_IDENTITY,
            )
        effects.writes += resolver.link(canonical)
        if fix.orphan_identity != canonical.identity:
            effects.writes += store.move_identity(fix.orphan_identity, canonical.identity)
        for reservation_id in fix.reservation_ids:
            effects.ledger_repoints[reservation_id] = canonical.identity
        effects.invalidate.update({fix.orphan_identity, canonical.identity})

    def _after_commit(self, effects: _Effects) -> list[str]:
        errors: list[str] = []
        for reservation_id in effects.ledger_cancels:
            errors.extend(self._write_ledger(effects, reservation_id, status=LedgerStatus.canceled))
        for reservation_id, identity in effects.ledger_repoints.items():
            errors.extend(
                self._write_ledger(effects, reservation_id, patient_identity=identity)
            )
        for identity in sorted(effects.invalidate):
            self._cache.invalidate(identity)
        if self._notifier is not None:
            for identity, change in effects.notify:
                self._notifier.notify_if_visible(identity, change)
        return errors

    def _write_ledger(self, effects: _Effects, reservation_id: str, **changes) -> list[str]:
        try:
            current = self._ledger.query_by_ids([reservation_id])
            if not current:
                return []
            record = current[0]
            if record.status == LedgerStatus.canceled and "status" in changes:
                return []
            updated = record.model_copy(update=changes)
            if updated == record:
                return []
            result = self._ledger.upsert_record(updated)
        except LedgerUnavailable as exc:
            logger.warning(
                "Ledger write-back failed",
                extra={"reservation_id": reservation_id, "error": str(exc)},
            )
            return [f"{reservation_id}: {exc}"]
        if result.created or result.changed:
            effects.writes += 1
        return []

    def _queue(self, discrepancy: Discrepancy, reason_code: str, message: str | None) -> None:
        with self._session_factory() as session:
            with session.begin():
                upsert_issue(session, IssueInput.from_discrepancy(discrepancy, reason_code, message))


_REVIEW_REASONS = {
    REASON_UNRESOLVED_IDENTITY,
    "ledger_only_booking_conflicts",
    "slot_full",
}
