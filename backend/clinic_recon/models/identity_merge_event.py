from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from clinic_recon.models.base import Base, utcnow


class IdentityMergeEvent(Base):
    __tablename__ = "identity_merge_events"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    action: Mapped[str] = mapped_column(String(40), nullable=False)
    from_identity: Mapped[str | None] = mapped_column(String(64), nullable=True)
    to_identity: Mapped[str] = mapped_column(String(64), nullable=False)
    external_chat_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    rows_moved: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
