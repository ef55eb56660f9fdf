from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Iterable

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from clinic_recon.services.reconcile.errors import LedgerSchemaError
from clinic_recon.services.reconcile.status import (
    normalize_date,
    normalize_patient_identity,
    normalize_status,
    normalize_time,
)


RESERVATION_ID_KEYS = ("reservation_id", "reserveId", "reserve_id", "reservationId")


class LedgerStatus(str, enum.Enum):
    unset = "unset"
    pending = "pending"
    completed = "completed"
    canceled = "canceled"


class LedgerRecord(BaseModel):
    """A ledger row, validated the moment it crosses the HTTP boundary."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    reservation_id: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices(*RESERVATION_ID_KEYS),
    )
    patient_identity: str | None = Field(
        default=None,
        validation_alias=AliasChoices("patient_identity", "patient_id", "patientId"),
    )
    reserved_date: date = Field(..., validation_alias=AliasChoices("reserved_date", "date"))
    reserved_time: str = Field(..., validation_alias=AliasChoices("reserved_time", "time"))
    status: LedgerStatus = LedgerStatus.unset
    display_name: str | None = Field(
        default=None, validation_alias=AliasChoices("display_name", "name")
    )
    created_at: datetime | None = Field(
        default=None, validation_alias=AliasChoices("created_at", "createdAt", "timestamp")
    )

    @field_validator("reservation_id", mode="before")
    @classmethod
    def _strip_reservation_id(cls, value):
        if value is None:
            return value
        return str(value).strip()

    @field_validator("patient_identity", mode="before")
    @classmethod
    def _normalize_identity(cls, value):
        return normalize_patient_identity(value)

    @field_validator("reserved_date", mode="before")
    @classmethod
    def _normalize_date(cls, value):
        return normalize_date(value)

    @field_validator("reserved_time", mode="before")
    @classmethod
    def _normalize_time(cls, value):
        return normalize_time(value)

    @field_validator("status", mode="before")
    @classmethod
    def _normalize_status(cls, value):
        # An empty cell is "unset", never a literal status.
        if value is None:
            return LedgerStatus.unset
        return normalize_status(str(value)) or LedgerStatus.unset

    @field_validator("display_name", mode="before")
    @classmethod
    def _blank_name(cls, value):
        if value is None:
            return None
        cleaned = str(value).strip()
        return cleaned or None

    @field_validator("created_at", mode="before")
    @classmethod
    def _lenient_created_at(cls, value):
        # Informational only; an unparseable timestamp must not fail the whole row.
        if not isinstance(value, str):
            return value
        text = value.strip().replace("/", "-").replace("Z", "+00:00")
        if not text:
            return None
        try:
            return datetime.fromisoformat(text)
        except ValueError:
            return None

    @property
    def is_active(self) -> bool:
        return self.status != LedgerStatus.canceled

    @property
    def slot(self) -> tuple[date, str]:
        return self.reserved_date, self.reserved_time

    def to_wire(self) -> dict[str, object]:
        return {
            "reserveId": self.reservation_id,
            "patient_id": self.patient_identity,
            "date": self.reserved_date.isoformat(),
            "time": self.reserved_time,
            "status": "" if self.status == LedgerStatus.unset else self.status.value,
            "name": self.display_name,
        }


def parse_ledger_rows(rows: Iterable[object]) -> tuple[list[LedgerRecord], dict[str, str]]:
    """Validate raw ledger rows one at a time.

    A row that fails validation is set aside under its reservation id with the
    validation message. Only a row whose id cannot be read fails the batch,
    because nothing else could keep that row out of ghost and missing checks.
    """
    records: list[LedgerRecord] = []
    rejected: dict[str, str] = {}
    for index, row in enumerate(rows):
        try:
            records.append(LedgerRecord.model_validate(row))
        except ValidationError as exc:
            reservation_id = _raw_reservation_id(row)
            if reservation_id is None:
                raise LedgerSchemaError(f"Ledger row {index} failed validation: {exc}") from exc
            rejected[reservation_id] = "; ".join(
                f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
                for error in exc.errors()
            )
    return records, rejected


def _raw_reservation_id(row: object) -> str | None:
    if not isinstance(row, dict):
        return None
    for key in RESERVATION_ID_KEYS:
        value = row.get(key)
        if value is not None and str(value).strip():
            return str(value).strip()
    return None


class LedgerWriteResult(BaseModel):
    model_config = ConfigDict(extra="ignore")

    reservation_id: str = Field(
        ..., validation_alias=AliasChoices("reservation_id", "reserveId", "reserve_id")
    )
    created: bool = False
    changed: bool = False


@dataclass(frozen=True)
class PatientView:
    identity: str
    display_name: str | None = None
    external_chat_id: str | None = None
    merged_into_identity: str | None = None


@dataclass(frozen=True)
class ReservationView:
    reservation_id: str
    patient_identity: str
    reserved_date: date
    reserved_time: str
    status: str
    created_at: datetime
    updated_at: datetime

    @property
    def is_active(self) -> bool:
        return self.status != "canceled"

    @property
    def slot(self) -> tuple[date, str]:
        return self.reserved_date, self.reserved_time


@dataclass(frozen=True)
class IntakeView:
    id: int
    patient_identity: str
    linked_reservation_id: str | None
    review_status: str
    created_at: datetime


@dataclass(frozen=True)
class ReorderView:
    id: int
    patient_identity: str
    product_code: str
    status: str
    created_at: datetime
    updated_at: datetime
    paid_at: datetime | None = None


@dataclass(frozen=True)
class OrderView:
    id: int
    patient_identity: str
    product_code: str
    paid_at: datetime | None = None


@dataclass
class Snapshot:
    """Relational state read inside a single transaction."""

    date_from: date
    date_to: date
    patients: dict[str, PatientView] = field(default_factory=dict)
    reservations: list[ReservationView] = field(default_factory=list)
    intakes: list[IntakeView] = field(default_factory=list)
    reorders: list[ReorderView] = field(default_factory=list)
    orders: list[OrderView] = field(default_factory=list)

    def reservation(self, reservation_id: str) -> ReservationView | None:
        for row in self.reservations:
            if row.reservation_id == reservation_id:
                return row
        return None
