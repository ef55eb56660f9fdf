from __future__ import annotations

import enum

from sqlalchemy import Enum, String
from sqlalchemy.orm import Mapped, mapped_column

from clinic_recon.models.base import Base, JSONType, TimestampMixin


class ReviewStatus(str, enum.Enum):
    unset = "unset"
    approved = "approved"
    rejected = "rejected"


class IntakeRecord(Base, TimestampMixin):
    __tablename__ = "intake_records"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    patient_identity: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    answers: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    linked_reservation_id: Mapped[str | None] = mapped_column(
        String(64), nullable=True, index=True
    )
    review_status: Mapped[ReviewStatus] = mapped_column(
        Enum(ReviewStatus, name="intake_review_status"),
        default=ReviewStatus.unset,
        nullable=False,
    )
