from __future__ import annotations

import enum
from dataclasses import asdict, dataclass, field
from datetime import date, datetime


class DiscrepancyKind(str, enum.Enum):
    orphaned_identity = "orphaned_identity"
    duplicate = "duplicate"
    ghost = "ghost"
    stale_status = "stale_status"
    rescheduled = "rescheduled"
    missing = "missing"
    ledger_lag = "ledger_lag"
    unsettled_reorder = "unsettled_reorder"


# Identity fixes can invalidate every later classification, so they go first.
REPAIR_ORDER = (
    DiscrepancyKind.orphaned_identity,
    DiscrepancyKind.duplicate,
    DiscrepancyKind.ghost,
    DiscrepancyKind.stale_status,
    DiscrepancyKind.rescheduled,
    DiscrepancyKind.missing,
    DiscrepancyKind.ledger_lag,
    DiscrepancyKind.unsettled_reorder,
)


@dataclass(frozen=True)
class CancelReservations:
    reservation_ids: tuple[str, ...]
    keep_reservation_id: str | None = None
    relink_intake: bool = False
    ledger_cancel_ids: tuple[str, ...] = ()

    action = "cancel_reservations"


@dataclass(frozen=True)
class CompleteReservation:
    reservation_id: str
    intake_id: int

    action = "complete_reservation"


@dataclass(frozen=True)
class RescheduleReservation:
    reservation_id: str
    from_date: date
    from_time: str
    to_date: date
    to_time: str

    action = "reschedule_reservation"


@dataclass(frozen=True)
class InsertReservation:
    reservation_id: str
    patient_identity: str
    reserved_date: date
    reserved_time: str
    created_at: datetime | None = None

    action = "insert_reservation"


@dataclass(frozen=True)
class CancelLedgerRecord:
    reservation_id: str

    action = "cancel_ledger_record"


@dataclass(frozen=True)
class SettleReorder:
    reorder_id: int
    order_id: int
    paid_at: datetime | None

    action = "settle_reorder"


@dataclass(frozen=True)
class ResolveIdentity:
    orphan_identity: str
    chat_id: str | None = None
    permanent_id: str | None = None
    reservation_ids: tuple[str, ...] = ()

    action = "resolve_identity"


@dataclass(frozen=True)
class ManualReview:
    reason_code: str
    note: str | None = None

    action = "manual_review"


ProposedFix = (
    CancelReservations
    | CompleteReservation
    | RescheduleReservation
    | InsertReservation
    | CancelLedgerRecord
    | SettleReorder
    | ResolveIdentity
    | ManualReview
)


@dataclass(frozen=True)
class Discrepancy:
    kind: DiscrepancyKind
    entity_refs: tuple[str, ...]
    proposed_fix: ProposedFix
    patient_identities: tuple[str, ...] = ()
    detail: dict[str, object] = field(default_factory=dict, compare=False, hash=False)

    @property
    def entity_key(self) -> str:
        return ",".join(self.entity_refs)

    @property
    def needs_review(self) -> bool:
        return isinstance(self.proposed_fix, ManualReview)

    def as_dict(self) -> dict[str, object]:
        fix = asdict(self.proposed_fix)
        fix["action"] = self.proposed_fix.action
        return {
            "kind": self.kind.value,
            "entity_refs": list(self.entity_refs),
            "patient_identities": list(self.patient_identities),
            "proposed_fix": _jsonable(fix),
            "detail": _jsonable(self.detail),
        }


def _jsonable(value):
    if isinstance(value, dict):
        return {key: _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(item) for item in value]
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if isinstance(value, enum.Enum):
        return value.value
    return value
