from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import date, datetime, timezone

from clinic_recon.services.reconcile.discrepancy import Discrepancy, DiscrepancyKind

OUTCOME_APPLIED = "applied"
OUTCOME_NOOP = "noop"
OUTCOME_FAILED = "failed"
OUTCOME_NEEDS_REVIEW = "needs_review"
OUTCOME_SKIPPED = "skipped"

EXIT_OK = 0
EXIT_LEDGER_UNAVAILABLE = 1
EXIT_USAGE = 2
EXIT_REVIEW_REQUIRED = 3


@dataclass
class FixResult:
    discrepancy: Discrepancy
    outcome: str
    writes: int = 0
    reason_code: str | None = None
    message: str | None = None
    ledger_errors: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, object]:
        payload = self.discrepancy.as_dict()
        payload["outcome"] = self.outcome
        payload["writes"] = self.writes
        if self.reason_code:
            payload["reason_code"] = self.reason_code
        if self.message:
            payload["message"] = self.message
        if self.ledger_errors:
            payload["ledger_errors"] = list(self.ledger_errors)
        return payload


@dataclass
class RunReport:
    date_from: date
    date_to: date
    dry_run: bool
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: datetime | None = None
    ledger_error: str | None = None
    discrepancies: list[Discrepancy] = field(default_factory=list)
    results: list[FixResult] = field(default_factory=list)
    aborted: bool = False

    @property
    def ledger_ok(self) -> bool:
        return self.ledger_error is None

    @property
    def total_writes(self) -> int:
        return sum(result.writes for result in self.results)

    @property
    def review_count(self) -> int:
        if self.dry_run:
            return sum(1 for item in self.discrepancies if item.needs_review)
        return sum(
            1
            for result in self.results
            if result.outcome in {OUTCOME_NEEDS_REVIEW, OUTCOME_FAILED}
        )

    @property
    def exit_code(self) -> int:
        if not self.ledger_ok:
            return EXIT_LEDGER_UNAVAILABLE
        if self.review_count:
            return EXIT_REVIEW_REQUIRED
        return EXIT_OK

    def _fixed(self, kind: DiscrepancyKind) -> int:
        if self.dry_run:
            return sum(
                1 for item in self.discrepancies if item.kind == kind and not item.needs_review
            )
        return sum(
            1
            for result in self.results
            if result.discrepancy.kind == kind and result.outcome == OUTCOME_APPLIED
        )

    def summary_line(self) -> str:
        if not self.ledger_ok:
            return "ledger fetch failed, no changes made"
        ghosts = self._fixed(DiscrepancyKind.ghost)
        duplicates = self._fixed(DiscrepancyKind.duplicate)
        reviews = self.review_count
        if self.dry_run:
            line = (
                f"{ghosts} ghosts to fix, {duplicates} duplicates to collapse, "
                f"{reviews} conflicts need review (dry run)"
            )
        else:
            line = (
                f"{ghosts} ghosts fixed, {duplicates} duplicates collapsed, "
                f"{reviews} conflicts need review"
            )
        if self.aborted:
            line += "; stopped early"
        return line

    def as_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "window": {"from": self.date_from.isoformat(), "to": self.date_to.isoformat()},
            "dry_run": self.dry_run,
            "started_at": self.started_at.replace(microsecond=0).isoformat(),
            "finished_at": (
                self.finished_at.replace(microsecond=0).isoformat() if self.finished_at else None
            ),
            "ledger_ok": self.ledger_ok,
            "summary": self.summary_line(),
            "aborted": self.aborted,
            "discrepancy_counts": dict(
                sorted(Counter(item.kind.value for item in self.discrepancies).items())
            ),
        }
        if self.ledger_error:
            payload["ledger_error"] = self.ledger_error
        if self.dry_run:
            payload["proposed_fixes"] = [item.as_dict() for item in self.discrepancies]
        else:
            payload["total_writes"] = self.total_writes
            payload["outcome_counts"] = dict(
                sorted(Counter(result.outcome for result in self.results).items())
            )
            payload["results"] = [result.as_dict() for result in self.results]
        return payload
