from __future__ import annotations

import abc
from datetime import date
from typing import Iterable

from clinic_recon.services.reconcile.types import LedgerRecord, LedgerWriteResult, parse_ledger_rows


class LedgerSource(abc.ABC):
    """Spreadsheet-of-record for scheduling intent.

    Every method raises LedgerUnavailable when the answer is unknown. An empty
    result always means "the ledger has no such rows", never "the call failed".
    Rows that fail validation but carry a readable reservation id are left out
    of query results and kept for take_rejected_rows().
    """

    def __init__(self) -> None:
        self._rejected_rows: dict[str, str] = {}

    @abc.abstractmethod
    def query_by_date_range(self, date_from: date, date_to: date) -> list[LedgerRecord]:
        ...

    @abc.abstractmethod
    def query_by_ids(self, reservation_ids: Iterable[str]) -> list[LedgerRecord]:
        ...

    @abc.abstractmethod
    def upsert_record(self, record: LedgerRecord) -> LedgerWriteResult:
        """Idempotent on reservation_id; replays never create a second row."""

    def close(self) -> None:
        """Release whatever connection the source holds."""

    def take_rejected_rows(self) -> dict[str, str]:
        """Return and forget the rows set aside since the last call, keyed by reservation id."""
        rejected, self._rejected_rows = self._rejected_rows, {}
        return rejected

    def _accept_rows(self, rows: Iterable[object]) -> list[LedgerRecord]:
        records, rejected = parse_ledger_rows(rows)
        self._rejected_rows.update(rejected)
        return records
