from __future__ import annotations

from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column

from clinic_recon.models.base import Base, TimestampMixin

TEMPORARY_IDENTITY_PREFIX = "LINE_"


class Patient(Base, TimestampMixin):
    __tablename__ = "patients"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    identity: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    display_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    external_chat_id: Mapped[str | None] = mapped_column(String(64), unique=True, nullable=True)
    merged_into_identity: Mapped[str | None] = mapped_column(String(64), nullable=True)

    @property
    def is_temporary(self) -> bool:
        return self.identity.startswith(TEMPORARY_IDENTITY_PREFIX)

    @property
    def is_merged(self) -> bool:
        return self.merged_into_identity is not None
