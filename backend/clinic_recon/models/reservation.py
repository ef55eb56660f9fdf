from __future__ import annotations

import enum
from datetime import date

from sqlalchemy import Date, Enum, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from clinic_recon.models.base import Base, TimestampMixin


class ReservationStatus(str, enum.Enum):
    pending = "pending"
    completed = "completed"
    canceled = "canceled"


class Reservation(Base, TimestampMixin):
    __tablename__ = "reservations"
    __table_args__ = (
        Index("ix_reservations_patient_date", "patient_identity", "reserved_date"),
        Index("ix_reservations_slot", "reserved_date", "reserved_time"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    reservation_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    patient_identity: Mapped[str] = mapped_column(String(64), nullable=False)
    reserved_date: Mapped[date] = mapped_column(Date, nullable=False)
    reserved_time: Mapped[str] = mapped_column(String(5), nullable=False)
    status: Mapped[ReservationStatus] = mapped_column(
        Enum(ReservationStatus, name="reservation_status"),
        default=ReservationStatus.pending,
        nullable=False,
    )

    @property
    def is_active(self) -> bool:
        return self.status != ReservationStatus.canceled
