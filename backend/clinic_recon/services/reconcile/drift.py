"""Drift classification between the relational snapshot and the ledger.

The detector is pure: it reads a Snapshot and the ledger rows fetched for the
same window and returns an ordered list of Discrepancy objects. Each
reservation id lands in at most one discrepancy; a record claimed by an
earlier pass is skipped by later ones, so the pass order below is also the
precedence order when a record is wrong in more than one way.
"""

from __future__ import annotations

import logging
from collections import Counter, defaultdict
from datetime import date, datetime, timedelta, timezone
from typing import Iterable, Mapping

from clinic_recon.services.reconcile.discrepancy import (
    REPAIR_ORDER,
    CancelLedgerRecord,
    CancelReservations,
    CompleteReservation,
    Discrepancy,
    DiscrepancyKind,
    InsertReservation,
    ManualReview,
    RescheduleReservation,
    ResolveIdentity,
    SettleReorder,
)
from clinic_recon.services.reconcile.identity import chat_id_from_identity
from clinic_recon.services.reconcile.types import (
    LedgerRecord,
    ReservationView,
    Snapshot,
)

logger = logging.getLogger(__name__)

CLINICALLY_REVIEWED = {"approved", "rejected"}
DEFAULT_CONFIRMED_GRACE = timedelta(days=3)


class DriftDetector:
    def __init__(
        self,
        capacity: int = 1,
        confirmed_grace: timedelta = DEFAULT_CONFIRMED_GRACE,
    ) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self.confirmed_grace = confirmed_grace

    def detect(
        self,
        snapshot: Snapshot,
        ledger_records: Iterable[LedgerRecord],
        now: datetime | None = None,
        unreadable_rows: Mapping[str, str] | None = None,
    ) -> list[Discrepancy]:
        records = list(ledger_records)
        ledger = {record.reservation_id: record for record in records}
        claimed: set[str] = set()
        found: list[Discrepancy] = []

        found.extend(self._ledger_duplicate_rows(records, claimed))
        found.extend(self._unreadable_rows(unreadable_rows or {}, claimed))
        found.extend(self._orphaned_identities(snapshot, ledger, claimed))
        found.extend(self._duplicates(snapshot, ledger, claimed))
        found.extend(self._ghosts(snapshot, ledger, claimed))
        found.extend(self._stale_statuses(snapshot, claimed))
        found.extend(self._reschedules(snapshot, ledger, claimed))
        found.extend(self._missing(snapshot, ledger, claimed))
        found.extend(self._ledger_lag(snapshot, ledger, claimed))
        found.extend(self._unsettled_reorders(snapshot, now or datetime.now(timezone.utc)))

        rank = {kind: index for index, kind in enumerate(REPAIR_ORDER)}
        found.sort(key=lambda item: rank[item.kind])
        logger.info(
            "Drift detection finished",
            extra={
                "date_from": snapshot.date_from.isoformat(),
                "date_to": snapshot.date_to.isoformat(),
                "discrepancies": dict(Counter(item.kind.value for item in found)),
            },
        )
        return found

    def _ledger_duplicate_rows(
        self, records: list[LedgerRecord], claimed: set[str]
    ) -> list[Discrepancy]:
        counts = Counter(record.reservation_id for record in records)
        found = []
        for reservation_id, count in sorted(counts.items()):
            if count < 2:
                continue
            claimed.add(reservation_id)
            found.append(
                Discrepancy(
                    kind=DiscrepancyKind.duplicate,
                    entity_refs=(reservation_id,),
                    proposed_fix=ManualReview("ledger_duplicate_rows"),
                    detail={"ledger_rows": count},
                )
            )
        return found

    def _unreadable_rows(self, unreadable: Mapping[str, str], claimed: set[str]) -> list[Discrepancy]:
        # The row exists on the ledger, so its id must not read as a ghost or as missing.
        found = []
        for reservation_id, error in sorted(unreadable.items()):
            if reservation_id in claimed:
                continue
            claimed.add(reservation_id)
            found.append(
                Discrepancy(
                    kind=DiscrepancyKind.ledger_lag,
                    entity_refs=(reservation_id,),
                    proposed_fix=ManualReview("ledger_row_unparseable", note=error),
                    detail={"error": error},
                )
            )
        return found

    def _orphaned_identities(
        self,
        snapshot: Snapshot,
        ledger: dict[str, LedgerRecord],
        claimed: set[str],
    ) -> list[Discrepancy]:
        found: list[Discrepancy] = []
        orphans: dict[str, list[str]] = defaultdict(list)

        def usable(identity: str | None) -> bool:
            patient = snapshot.patients.get(identity) if identity else None
            return patient is not None and patient.merged_into_identity is None

        for row in snapshot.reservations:
            if row.reservation_id in claimed:
                continue
            record = ledger.get(row.reservation_id)
            if (
                record is not None
                and record.is_active
                and row.is_active
                and record.patient_identity
                and record.patient_identity != row.patient_identity
            ):
                claimed.add(row.reservation_id)
                found.append(_identity_mismatch(row, record))
                continue
            if row.is_active and not usable(row.patient_identity):
                orphans[row.patient_identity].append(row.reservation_id)

        relational_ids = {row.reservation_id for row in snapshot.reservations}
        for record in ledger.values():
            if not record.is_active or record.reservation_id in claimed:
                continue
            if record.reservation_id in relational_ids:
                continue
            if not record.patient_identity:
                claimed.add(record.reservation_id)
                found.append(
                    Discrepancy(
                        kind=DiscrepancyKind.orphaned_identity,
                        entity_refs=(record.reservation_id,),
                        proposed_fix=ManualReview("ledger_record_without_patient"),
                    )
                )
            elif not usable(record.patient_identity):
                orphans[record.patient_identity].append(record.reservation_id)

        for intake in snapshot.intakes:
            if not usable(intake.patient_identity):
                orphans[intake.patient_identity].append(f"intake:{intake.id}")

        for identity in sorted(orphans):
            refs = tuple(sorted(set(orphans[identity])))
            claimed.update(ref for ref in refs if not ref.startswith("intake:"))
            chat_id = chat_id_from_identity(identity)
            patient = snapshot.patients.get(identity)
            if chat_id is not None:
                fix = ResolveIdentity(
                    orphan_identity=identity,
                    chat_id=chat_id,
                    reservation_ids=tuple(ref for ref in refs if not ref.startswith("intake:")),
                )
            elif patient is not None and patient.merged_into_identity:
                fix = ResolveIdentity(
                    orphan_identity=identity,
                    permanent_id=patient.merged_into_identity,
                    reservation_ids=tuple(ref for ref in refs if not ref.startswith("intake:")),
                )
            else:
                fix = ManualReview("unknown_permanent_identity")
            found.append(
                Discrepancy(
                    kind=DiscrepancyKind.orphaned_identity,
                    entity_refs=refs,
                    proposed_fix=fix,
                    patient_identities=(identity,),
                    detail={"patient_row": "merged" if patient is not None else "missing"},
                )
            )
        return found

    def _duplicates(
        self,
        snapshot: Snapshot,
        ledger: dict[str, LedgerRecord],
        claimed: set[str],
    ) -> list[Discrepancy]:
        def ledger_rank(row: ReservationView) -> int:
            record = ledger.get(row.reservation_id)
            if record is not None and record.is_active and record.slot == row.slot:
                return 0
            return 1

        def order_key(row: ReservationView):
            # Completed rows cannot be canceled, so they are always kept.
            return (
                0 if row.status == "completed" else 1,
                row.created_at,
                ledger_rank(row),
                row.reservation_id,
            )

        # Rows the ledger does not hold as active are ghosts, never keepers.
        active = [
            row
            for row in snapshot.reservations
            if row.is_active
            and row.reservation_id not in claimed
            and snapshot.date_from <= row.reserved_date <= snapshot.date_to
            and _ledger_active(row, ledger)
        ]
        found: list[Discrepancy] = []
        losers: set[str] = set()
        keepers: set[str] = set()

        by_patient_day: dict[tuple[str, date], list[ReservationView]] = defaultdict(list)
        for row in active:
            by_patient_day[(row.patient_identity, row.reserved_date)].append(row)
        for (identity, day), rows in sorted(by_patient_day.items()):
            if len(rows) < 2:
                continue
            ordered = sorted(rows, key=order_key)
            keeper, rest = ordered[0], ordered[1:]
            claimed.update(row.reservation_id for row in ordered)
            refs = tuple(row.reservation_id for row in ordered)
            if any(row.status == "completed" for row in rest):
                found.append(
                    Discrepancy(
                        kind=DiscrepancyKind.duplicate,
                        entity_refs=refs,
                        proposed_fix=ManualReview("multiple_completed_same_day"),
                        patient_identities=(identity,),
                        detail={"date": day},
                    )
                )
                continue
            keepers.add(keeper.reservation_id)
            losers.update(row.reservation_id for row in rest)
            found.append(
                Discrepancy(
                    kind=DiscrepancyKind.duplicate,
                    entity_refs=refs,
                    proposed_fix=CancelReservations(
                        reservation_ids=tuple(row.reservation_id for row in rest),
                        keep_reservation_id=keeper.reservation_id,
                        relink_intake=True,
                        ledger_cancel_ids=_ledger_active_ids(rest, ledger),
                    ),
                    patient_identities=(identity,),
                    detail={"scope": "patient_day", "date": day},
                )
            )

        by_slot: dict[tuple[date, str], list[ReservationView]] = defaultdict(list)
        for row in active:
            if row.reservation_id in losers:
                continue
            by_slot[row.slot].append(row)
        for slot, rows in sorted(by_slot.items()):
            if len(rows) <= self.capacity:
                continue
            ordered = sorted(
                rows,
                key=lambda row: (
                    0 if row.status == "completed" else 1,
                    0 if row.reservation_id in keepers else 1,
                    *order_key(row)[1:],
                ),
            )
            kept, rest = ordered[: self.capacity], ordered[self.capacity :]
            claimed.update(row.reservation_id for row in ordered)
            refs = tuple(row.reservation_id for row in ordered)
            identities = tuple(sorted({row.patient_identity for row in ordered}))
            if any(row.status == "completed" for row in rest):
                fix = ManualReview("slot_over_capacity_with_completed")
            else:
                fix = CancelReservations(
                    reservation_ids=tuple(row.reservation_id for row in rest),
                    ledger_cancel_ids=_ledger_active_ids(rest, ledger),
                )
            found.append(
                Discrepancy(
                    kind=DiscrepancyKind.duplicate,
                    entity_refs=refs,
                    proposed_fix=fix,
                    patient_identities=identities,
                    detail={
                        "scope": "slot",
                        "date": slot[0],
                        "time": slot[1],
                        "capacity": self.capacity,
                        "kept": [row.reservation_id for row in kept],
                    },
                )
            )
        return found

    def _ghosts(
        self,
        snapshot: Snapshot,
        ledger: dict[str, LedgerRecord],
        claimed: set[str],
    ) -> list[Discrepancy]:
        found = []
        for row in snapshot.reservations:
            if not row.is_active or row.reservation_id in claimed:
                continue
            record = ledger.get(row.reservation_id)
            if record is not None and record.is_active:
                continue
            claimed.add(row.reservation_id)
            if row.status == "completed":
                fix = ManualReview("completed_without_ledger_record")
            else:
                fix = CancelReservations(reservation_ids=(row.reservation_id,))
            found.append(
                Discrepancy(
                    kind=DiscrepancyKind.ghost,
                    entity_refs=(row.reservation_id,),
                    proposed_fix=fix,
                    patient_identities=(row.patient_identity,),
                    detail={"ledger_status": record.status.value if record else "absent"},
                )
            )
        return found

    def _stale_statuses(self, snapshot: Snapshot, claimed: set[str]) -> list[Discrepancy]:
        found = []
        for intake in snapshot.intakes:
            if intake.review_status not in CLINICALLY_REVIEWED:
                continue
            if not intake.linked_reservation_id or intake.linked_reservation_id in claimed:
                continue
            row = snapshot.reservation(intake.linked_reservation_id)
            if row is None or row.status != "pending":
                continue
            claimed.add(row.reservation_id)
            found.append(
                Discrepancy(
                    kind=DiscrepancyKind.stale_status,
                    entity_refs=(row.reservation_id, f"intake:{intake.id}"),
                    proposed_fix=CompleteReservation(row.reservation_id, intake.id),
                    patient_identities=(row.patient_identity,),
                    detail={"review_status": intake.review_status},
                )
            )
        return found

    def _reschedules(
        self,
        snapshot: Snapshot,
        ledger: dict[str, LedgerRecord],
        claimed: set[str],
    ) -> list[Discrepancy]:
        found = []
        for row in snapshot.reservations:
            if not row.is_active or row.reservation_id in claimed:
                continue
            record = ledger.get(row.reservation_id)
            if record is None or not record.is_active or record.slot == row.slot:
                continue
            claimed.add(row.reservation_id)
            found.append(
                Discrepancy(
                    kind=DiscrepancyKind.rescheduled,
                    entity_refs=(row.reservation_id,),
                    proposed_fix=RescheduleReservation(
                        reservation_id=row.reservation_id,
                        from_date=row.reserved_date,
                        from_time=row.reserved_time,
                        to_date=record.reserved_date,
                        to_time=record.reserved_time,
                    ),
                    patient_identities=(row.patient_identity,),
                )
            )
        return found

    def _missing(
        self,
        snapshot: Snapshot,
        ledger: dict[str, LedgerRecord],
        claimed: set[str],
    ) -> list[Discrepancy]:
        relational_ids = {row.reservation_id for row in snapshot.reservations}
        found = []
        for record in sorted(ledger.values(), key=lambda item: item.reservation_id):
            if not record.is_active or record.reservation_id in claimed:
                continue
            if record.reservation_id in relational_ids:
                continue
            if not snapshot.date_from <= record.reserved_date <= snapshot.date_to:
                continue
            claimed.add(record.reservation_id)
            same_day = [
                row.reservation_id
                for row in snapshot.reservations
                if row.is_active
                and row.patient_identity == record.patient_identity
                and row.reserved_date == record.reserved_date
            ]
            if same_day:
                fix = ManualReview("ledger_only_booking_conflicts", note=",".join(same_day))
            else:
                fix = InsertReservation(
                    reservation_id=record.reservation_id,
                    patient_identity=record.patient_identity,
                    reserved_date=record.reserved_date,
                    reserved_time=record.reserved_time,
                    created_at=record.created_at,
                )
            found.append(
                Discrepancy(
                    kind=DiscrepancyKind.missing,
                    entity_refs=(record.reservation_id,),
                    proposed_fix=fix,
                    patient_identities=(record.patient_identity,),
                )
            )
        return found

    def _ledger_lag(
        self,
        snapshot: Snapshot,
        ledger: dict[str, LedgerRecord],
        claimed: set[str],
    ) -> list[Discrepancy]:
        found = []
        for row in snapshot.reservations:
            if row.is_active or row.reservation_id in claimed:
                continue
            record = ledger.get(row.reservation_id)
            if record is None or not record.is_active:
                continue
            claimed.add(row.reservation_id)
            found.append(
                Discrepancy(
                    kind=DiscrepancyKind.ledger_lag,
                    entity_refs=(row.reservation_id,),
                    proposed_fix=CancelLedgerRecord(row.reservation_id),
                    patient_identities=(row.patient_identity,),
                    detail={"ledger_status": record.status.value},
                )
            )
        return found

    def _unsettled_reorders(self, snapshot: Snapshot, now: datetime) -> list[Discrepancy]:
        settled: dict[tuple[str, str], list] = defaultdict(list)
        for order in snapshot.orders:
            if order.paid_at is not None:
                settled[(order.patient_identity, order.product_code)].append(order)
        used_orders: set[int] = set()
        found = []
        for reorder in snapshot.reorders:
            key = (reorder.patient_identity, reorder.product_code)
            ref = f"reorder:{reorder.id}"
            if reorder.status == "paid":
                if settled.get(key):
                    continue
                fix = ManualReview("paid_without_order")
            elif reorder.status == "confirmed":
                match = next(
                    (
                        order
                        for order in settled.get(key, [])
                        if order.id not in used_orders and order.paid_at >= reorder.created_at
                    ),
                    None,
                )
                if match is not None:
                    used_orders.add(match.id)
                    fix = SettleReorder(reorder.id, match.id, match.paid_at)
                elif reorder.created_at < now - self.confirmed_grace:
                    fix = ManualReview("confirmed_without_payment")
                else:
                    continue
            else:
                continue
            found.append(
                Discrepancy(
                    kind=DiscrepancyKind.unsettled_reorder,
                    entity_refs=(ref,),
                    proposed_fix=fix,
                    patient_identities=(reorder.patient_identity,),
                    detail={"status": reorder.status, "product_code": reorder.product_code},
                )
            )
        return found


def _identity_mismatch(row: ReservationView, record: LedgerRecord) -> Discrepancy:
    relational, external = row.patient_identity, record.patient_identity
    chat_ids = [chat_id_from_identity(value) for value in (relational, external)]
    permanent = [value for value, chat in zip((relational, external), chat_ids) if chat is None]
    temporary = [value for value, chat in zip((relational, external), chat_ids) if chat is not None]
    if len(permanent) == 1 and len(temporary) == 1:
        fix = ResolveIdentity(
            orphan_identity=temporary[0],
            chat_id=chat_id_from_identity(temporary[0]),
            permanent_id=permanent[0],
            reservation_ids=(row.reservation_id,),
        )
    else:
        fix = ManualReview("ledger_patient_mismatch")
    return Discrepancy(
        kind=DiscrepancyKind.orphaned_identity,
        entity_refs=(row.reservation_id,),
        proposed_fix=fix,
        patient_identities=(relational, external),
        detail={"relational_patient": relational, "ledger_patient": external},
    )


def _ledger_active(row: ReservationView, ledger: dict[str, LedgerRecord]) -> bool:
    record = ledger.get(row.reservation_id)
    return record is not None and record.is_active


def _ledger_active_ids(rows: list[ReservationView], ledger: dict[str, LedgerRecord]) -> tuple[str, ...]:
    return tuple(row.reservation_id for row in rows if _ledger_active(row, ledger))
