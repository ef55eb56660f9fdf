from __future__ import annotations

import enum
from datetime import date, datetime

from sqlalchemy import Date, DateTime, Enum, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from clinic_recon.models.base import Base, TimestampMixin


class ReorderStatus(str, enum.Enum):
    pending = "pending"
    confirmed = "confirmed"
    paid = "paid"
    rejected = "rejected"
    canceled = "canceled"


class ReorderRequest(Base, TimestampMixin):
    __tablename__ = "reorders"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    patient_identity: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    product_code: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[ReorderStatus] = mapped_column(
        Enum(ReorderStatus, name="reorder_status"),
        default=ReorderStatus.pending,
        nullable=False,
    )
    ledger_row_ref: Mapped[str | None] = mapped_column(String(64), nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class Order(Base, TimestampMixin):
    __tablename__ = "orders"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    patient_identity: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    product_code: Mapped[str] = mapped_column(String(64), nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    shipping_date: Mapped[date | None] = mapped_column(Date, nullable=True)
