from __future__ import annotations


class ReconcileError(Exception):
    """Base class for reconciliation failures."""


class LedgerUnavailable(ReconcileError):
    """The ledger could not be read or written; says nothing about whether data exists."""


class LedgerSchemaError(LedgerUnavailable):
    """The ledger answered, but the payload did not pass the parse boundary."""


class IllegalTransition(ReconcileError):
    def __init__(self, reservation_id: str, current: str, requested: str) -> None:
        super().__init__(
            f"Illegal reservation transition for {reservation_id}: {current} -> {requested}"
        )
        self.reservation_id = reservation_id
        self.current = current
        self.requested = requested


class IdentityConflict(ReconcileError):
    def __init__(self, message: str, identities: list[str] | None = None) -> None:
        super().__init__(message)
        self.identities = identities or []


class RepairFailed(ReconcileError):
    def __init__(self, message: str, *, reason_code: str = "write_failed") -> None:
        super().__init__(message)
        self.reason_code = reason_code


class StaleWrite(RepairFailed):
    """A conditional write matched no row because the row moved since it was read."""

    def __init__(self, entity_key: str) -> None:
        super().__init__(
            f"{entity_key} changed since the snapshot was taken",
            reason_code="concurrent_modification",
        )
        self.entity_key = entity_key
