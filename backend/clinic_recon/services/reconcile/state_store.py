from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Iterable

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from clinic_recon.models.base import utcnow
from clinic_recon.models.intake import IntakeRecord
from clinic_recon.models.patient import Patient
from clinic_recon.models.reorder import Order, ReorderRequest, ReorderStatus
from clinic_recon.models.reservation import Reservation, ReservationStatus
from clinic_recon.services.reconcile.errors import IllegalTransition, StaleWrite
from clinic_recon.services.reconcile.types import (
    IntakeView,
    OrderView,
    PatientView,
    ReorderView,
    ReservationView,
    Snapshot,
)

logger = logging.getLogger(__name__)

# Canceled and completed are terminal outside of explicit corrections.
LEGAL_PREDECESSORS: dict[ReservationStatus, tuple[ReservationStatus, ...]] = {
    ReservationStatus.pending: (),
    ReservationStatus.completed: (ReservationStatus.pending,),
    ReservationStatus.canceled: (ReservationStatus.pending,),
}


class StateStore:
    """Typed reads and conditional writes over the relational side.

    Callers own the transaction; every write here is one conditional UPDATE so
    two concurrent runs cannot double-apply or resurrect the same row.
    """

    def __init__(self, session: Session, isolation_level: str | None = "REPEATABLE READ") -> None:
        self.session = session
        self._isolation_level = isolation_level

    def read_snapshot(
        self,
        date_from: date,
        date_to: date,
        *,
        extra_reservation_ids: Iterable[str] = (),
        extra_identities: Iterable[str] = (),
    ) -> Snapshot:
        self._pin_snapshot()
        extra_ids = sorted(set(extra_reservation_ids))
        conditions = [Reservation.reserved_date.between(date_from, date_to)]
        if extra_ids:
            conditions.append(Reservation.reservation_id.in_(extra_ids))
        reservation_rows = self.session.scalars(
            select(Reservation)
            .where(or_(*conditions))
            .order_by(Reservation.created_at, Reservation.reservation_id)
        ).all()
        reservation_ids = [row.reservation_id for row in reservation_rows]

        identities = {row.patient_identity for row in reservation_rows}
        identities.update(identity for identity in extra_identities if identity)

        intake_conditions = []
        if identities:
            intake_conditions.append(IntakeRecord.patient_identity.in_(sorted(identities)))
        if reservation_ids:
            intake_conditions.append(IntakeRecord.linked_reservation_id.in_(reservation_ids))
        intake_rows = []
        if intake_conditions:
            intake_rows = self.session.scalars(
                select(IntakeRecord)
                .where(or_(*intake_conditions))
                .order_by(IntakeRecord.created_at, IntakeRecord.id)
            ).all()
        identities.update(row.patient_identity for row in intake_rows)

        window_start = datetime.combine(date_from, time.min, tzinfo=timezone.utc)
        window_end = datetime.combine(date_to + timedelta(days=1), time.min, tzinfo=timezone.utc)
        reorder_rows = self.session.scalars(
            select(ReorderRequest)
            .where(
                or_(
                    ReorderRequest.created_at.between(window_start, window_end),
                    ReorderRequest.status == ReorderStatus.confirmed,
                )
            )
            .order_by(ReorderRequest.created_at, ReorderRequest.id)
        ).all()
        reorder_identities = sorted({row.patient_identity for row in reorder_rows})
        order_rows = []
        if reorder_identities:
            order_rows = self.session.scalars(
                select(Order)
                .where(Order.patient_identity.in_(reorder_identities))
                .order_by(Order.paid_at, Order.id)
            ).all()

        patient_rows = []
        if identities:
            patient_rows = self.session.scalars(
                select(Patient).where(Patient.identity.in_(sorted(identities)))
            ).all()

        return Snapshot(
            date_from=date_from,
            date_to=date_to,
            patients={row.identity: _patient_view(row) for row in patient_rows},
            reservations=[_reservation_view(row) for row in reservation_rows],
            intakes=[_intake_view(row) for row in intake_rows],
            reorders=[_reorder_view(row) for row in reorder_rows],
            orders=[
                OrderView(
                    id=row.id,
                    patient_identity=row.patient_identity,
                    product_code=row.product_code,
                    paid_at=_ensure_timezone(row.paid_at),
                )
                for row in order_rows
            ],
        )

    def get_reservation(self, reservation_id: str) -> Reservation | None:
        return self.session.scalar(
            select(Reservation).where(Reservation.reservation_id == reservation_id)
        )

    def get_active_reservations(
        self, patient_identity: str, on_or_after: date
    ) -> list[Reservation]:
        return list(
            self.session.scalars(
                select(Reservation)
                .where(
                    Reservation.patient_identity == patient_identity,
                    Reservation.reserved_date >= on_or_after,
                    Reservation.status != ReservationStatus.canceled,
                )
                .order_by(Reservation.reserved_date, Reservation.reserved_time)
            ).all()
        )

    def upsert_reservation_status(
        self,
        reservation_id: str,
        new_status: ReservationStatus,
        expected_updated_at: datetime | None = None,
    ) -> bool:
        """Move a reservation to new_status; False when it is already there."""
        new_status = ReservationStatus(new_status)
        predecessors = LEGAL_PREDECESSORS[new_status]
        if predecessors:
            conditions = [
                Reservation.reservation_id == reservation_id,
                Reservation.status.in_(predecessors),
            ]
            if expected_updated_at is not None:
                conditions.append(Reservation.updated_at == expected_updated_at)
            result = self.session.execute(
                update(Reservation)
                .where(*conditions)
                .values(status=new_status, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                return True

        current = self.session.scalar(
            select(Reservation.status).where(Reservation.reservation_id == reservation_id)
        )
        if current is None:
            raise LookupError(f"Reservation {reservation_id} not found")
        if current == new_status:
            return False
        if current in predecessors:
            # Legal move, but the row changed under us since the snapshot.
            raise StaleWrite(reservation_id)
        raise IllegalTransition(reservation_id, current.value, new_status.value)

    def reschedule_reservation(
        self,
        reservation_id: str,
        *,
        from_date: date,
        from_time: str,
        to_date: date,
        to_time: str,
    ) -> bool:
        result = self.session.execute(
            update(Reservation)
            .where(
                Reservation.reservation_id == reservation_id,
                Reservation.reserved_date == from_date,
                Reservation.reserved_time == from_time,
                Reservation.status != ReservationStatus.canceled,
            )
            .values(reserved_date=to_date, reserved_time=to_time, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            return True
        row = self.get_reservation(reservation_id)
        if row is None:
            raise LookupError(f"Reservation {reservation_id} not found")
        if row.reserved_date == to_date and row.reserved_time == to_time:
            return False
        raise StaleWrite(reservation_id)

    def insert_reservation(
        self,
        *,
        reservation_id: str,
        patient_identity: str,
        reserved_date: date,
        reserved_time: str,
        created_at: datetime | None = None,
    ) -> bool:
        if self.get_reservation(reservation_id) is not None:
            return False
        row = Reservation(
            reservation_id=reservation_id,
            patient_identity=patient_identity,
            reserved_date=reserved_date,
            reserved_time=reserved_time,
            status=ReservationStatus.pending,
        )
        if created_at is not None:
            row.created_at = created_at
        try:
            with self.session.begin_nested():
                self.session.add(row)
        except IntegrityError:
            logger.info(
                "Reservation inserted concurrently",
                extra={"reservation_id": reservation_id},
            )
            return False
        return True

    def relink_intake(self, from_reservation_id: str, to_reservation_id: str | None) -> int:
        result = self.session.execute(
            update(IntakeRecord)
            .where(IntakeRecord.linked_reservation_id == from_reservation_id)
            .values(linked_reservation_id=to_reservation_id, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return int(result.rowcount or 0)

    def link_latest_intake(self, patient_identity: str, reservation_id: str) -> int:
        intake_id = self.session.scalar(
            select(IntakeRecord.id)
            .where(
                IntakeRecord.patient_identity == patient_identity,
                IntakeRecord.linked_reservation_id.is_(None),
            )
            .order_by(IntakeRecord.created_at.desc(), IntakeRecord.id.desc())
            .limit(1)
        )
        if intake_id is None:
            return 0
        result = self.session.execute(
            update(IntakeRecord)
            .where(IntakeRecord.id == intake_id, IntakeRecord.linked_reservation_id.is_(None))
            .values(linked_reservation_id=reservation_id, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return int(result.rowcount or 0)

    def settle_reorder(self, reorder_id: int, paid_at: datetime | None) -> bool:
        result = self.session.execute(
            update(ReorderRequest)
            .where(
                ReorderRequest.id == reorder_id,
                ReorderRequest.status == ReorderStatus.confirmed,
            )
            .values(status=ReorderStatus.paid, paid_at=paid_at or utcnow(), updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            return True
        current = self.session.scalar(
            select(ReorderRequest.status).where(ReorderRequest.id == reorder_id)
        )
        if current == ReorderStatus.paid:
            return False
        raise StaleWrite(f"reorder:{reorder_id}")

    def move_identity(self, from_identity: str, to_identity: str) -> int:
        """Repoint every booking, intake, reorder and order row; returns rows moved."""
        moved = 0
        for model in (Reservation, IntakeRecord, ReorderRequest, Order):
            result = self.session.execute(
                update(model)
                .where(model.patient_identity == from_identity)
                .values(patient_identity=to_identity)
                .execution_options(synchronize_session=False)
            )
            moved += int(result.rowcount or 0)
        return moved

    def _pin_snapshot(self) -> None:
        if not self._isolation_level:
            return
        if self.session.get_bind().dialect.name != "postgresql":
            return
        # Must run before the first statement of the transaction.
        self.session.connection(execution_options={"isolation_level": self._isolation_level})


def _ensure_timezone(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _patient_view(row: Patient) -> PatientView:
    return PatientView(
        identity=row.identity,
        display_name=row.display_name,
        external_chat_id=row.external_chat_id,
        merged_into_identity=row.merged_into_identity,
    )


def _reservation_view(row: Reservation) -> ReservationView:
    return ReservationView(
        reservation_id=row.reservation_id,
        patient_identity=row.patient_identity,
        reserved_date=row.reserved_date,
        reserved_time=row.reserved_time,
        status=ReservationStatus(row.status).value,
        created_at=_ensure_timezone(row.created_at),
        updated_at=_ensure_timezone(row.updated_at),
    )


def _intake_view(row: IntakeRecord) -> IntakeView:
    return IntakeView(
        id=row.id,
        patient_identity=row.patient_identity,
        linked_reservation_id=row.linked_reservation_id,
        review_status=row.review_status.value,
        created_at=_ensure_timezone(row.created_at),
    )


def _reorder_view(row: ReorderRequest) -> ReorderView:
    return ReorderView(
        id=row.id,
        patient_identity=row.patient_identity,
        product_code=row.product_code,
        status=row.status.value,
        created_at=_ensure_timezone(row.created_at),
        updated_at=_ensure_timezone(row.updated_at),
        paid_at=_ensure_timezone(row.paid_at),
    )
