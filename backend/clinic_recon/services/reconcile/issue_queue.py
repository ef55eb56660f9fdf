from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import func, select

from clinic_recon.models.reconciliation_issue import ReconciliationIssue
from clinic_recon.services.reconcile.discrepancy import Discrepancy


STATUS_OPEN = "open"
STATUS_RESOLVED = "resolved"
STATUS_IGNORED = "ignored"

REASON_IDENTITY_CONFLICT = "identity_conflict"
REASON_UNRESOLVED_IDENTITY = "unresolved_identity"
REASON_CONCURRENT_MODIFICATION = "concurrent_modification"
REASON_ILLEGAL_TRANSITION = "illegal_transition"
REASON_LEDGER_WRITE_FAILED = "ledger_write_failed"


@dataclass(frozen=True)
class IssueInput:
    kind: str
    entity_key: str
    reason_code: str
    patient_identity: str | None = None
    details_json: dict | None = None

    @classmethod
    def from_discrepancy(
        cls,
        discrepancy: Discrepancy,
        reason_code: str,
        message: str | None = None,
    ) -> "IssueInput":
        details = discrepancy.as_dict()
        if message:
            details["message"] = message
        identity = discrepancy.patient_identities[0] if discrepancy.patient_identities else None
        return cls(
            kind=discrepancy.kind.value,
            entity_key=discrepancy.entity_key,
            reason_code=reason_code,
            patient_identity=identity,
            details_json=details,
        )


def upsert_issue(session, issue: IssueInput) -> tuple[ReconciliationIssue, bool]:
    """Record a discrepancy for a human; re-queuing an open issue only refreshes it."""
    existing = session.scalar(
        select(ReconciliationIssue).where(
            ReconciliationIssue.kind == issue.kind,
            ReconciliationIssue.entity_key == issue.entity_key,
        )
    )
    if existing:
        existing.patient_identity = issue.patient_identity
        existing.reason_code = issue.reason_code
        existing.details_json = issue.details_json
        if existing.status == STATUS_RESOLVED:
            # It came back after someone closed it.
            existing.status = STATUS_OPEN
        return existing, False

    row = ReconciliationIssue(
        kind=issue.kind,
        entity_key=issue.entity_key,
        patient_identity=issue.patient_identity,
        reason_code=issue.reason_code,
        details_json=issue.details_json,
        status=STATUS_OPEN,
    )
    session.add(row)
    return row, True


def resolve_issue(session, kind: str, entity_key: str, status: str = STATUS_RESOLVED) -> bool:
    if status not in {STATUS_RESOLVED, STATUS_IGNORED}:
        raise ValueError(f"Unsupported issue status: {status}")
    row = session.scalar(
        select(ReconciliationIssue).where(
            ReconciliationIssue.kind == kind,
            ReconciliationIssue.entity_key == entity_key,
        )
    )
    if row is None or row.status == status:
        return False
    row.status = status
    return True


def summarize_queue(session, kind: str | None = None) -> list[dict[str, object]]:
    stmt = select(
        ReconciliationIssue.kind,
        ReconciliationIssue.reason_code,
        ReconciliationIssue.status,
        func.count().label("count"),
    )
    if kind:
        stmt = stmt.where(ReconciliationIssue.kind == kind)
    rows = session.execute(
        stmt.group_by(
            ReconciliationIssue.kind,
            ReconciliationIssue.reason_code,
            ReconciliationIssue.status,
        ).order_by(
            ReconciliationIssue.kind,
            ReconciliationIssue.reason_code,
            ReconciliationIssue.status,
        )
    ).all()

    return [
        {"kind": row_kind, "reason_code": reason, "status": status, "count": count}
        for row_kind, reason, status, count in rows
    ]
