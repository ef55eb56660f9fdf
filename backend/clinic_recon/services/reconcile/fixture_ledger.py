from __future__ import annotations

import json
from datetime import date
from pathlib import Path
from typing import Iterable

from clinic_recon.services.reconcile.errors import LedgerUnavailable
from clinic_recon.services.reconcile.ledger_source import LedgerSource
from clinic_recon.services.reconcile.types import LedgerRecord, LedgerWriteResult, parse_ledger_rows


class FixtureLedger(LedgerSource):
    """In-memory ledger with the same contract as the GAS client."""

    def __init__(self, records: Iterable[LedgerRecord | dict] = ()) -> None:
        super().__init__()
        self._rows: dict[str, LedgerRecord] = {}
        self.writes: list[LedgerRecord] = []
        self.available = True
        records = list(records)
        raw = [record for record in records if not isinstance(record, LedgerRecord)]
        parsed, self._unreadable = parse_ledger_rows(raw)
        for row in [record for record in records if isinstance(record, LedgerRecord)] + parsed:
            self._rows[row.reservation_id] = row

    @classmethod
    def from_file(cls, path: Path) -> "FixtureLedger":
        raw = path.read_text(encoding="utf-8")
        data = json.loads(raw)
        if isinstance(data, dict):
            data = data.get("reservations")
        if not isinstance(data, list):
            raise ValueError(f"{path} must contain a JSON list (or a reservations list).")
        return cls(data)

    def get(self, reservation_id: str) -> LedgerRecord | None:
        return self._rows.get(reservation_id)

    def query_by_date_range(self, date_from: date, date_to: date) -> list[LedgerRecord]:
        self._check_available()
        self._rejected_rows.update(self._unreadable)
        return [
            row
            for row in sorted(self._rows.values(), key=lambda item: item.reservation_id)
            if date_from <= row.reserved_date <= date_to
        ]

    def query_by_ids(self, reservation_ids: Iterable[str]) -> list[LedgerRecord]:
        self._check_available()
        wanted = sorted(set(reservation_ids))
        self._rejected_rows.update(
            {rid: self._unreadable[rid] for rid in wanted if rid in self._unreadable}
        )
        return [self._rows[rid] for rid in wanted if rid in self._rows]

    def upsert_record(self, record: LedgerRecord) -> LedgerWriteResult:
        self._check_available()
        existing = self._rows.get(record.reservation_id)
        self._rows[record.reservation_id] = record
        if existing is None:
            self.writes.append(record)
            return LedgerWriteResult(reservation_id=record.reservation_id, created=True, changed=True)
        changed = existing != record
        if changed:
            self.writes.append(record)
        return LedgerWriteResult(reservation_id=record.reservation_id, changed=changed)

    def _check_available(self) -> None:
        if not self.available:
            raise LedgerUnavailable("fixture ledger marked unavailable")
