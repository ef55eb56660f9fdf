from __future__ import annotations

import logging
import os
import random
import time
from dataclasses import dataclass
from datetime import date
from typing import Any, Iterable

import httpx
from pydantic import ValidationError

from clinic_recon.services.reconcile.errors import LedgerSchemaError, LedgerUnavailable
from clinic_recon.services.reconcile.ledger_source import LedgerSource
from clinic_recon.services.reconcile.types import LedgerRecord, LedgerWriteResult

logger = logging.getLogger(__name__)

READ_RETRY_BASE_SLEEP = 0.5
READ_RETRY_MAX_SLEEP = 4.0
RETRY_STATUSES = {429, 500, 502, 503, 504}
IDS_PER_REQUEST = 200


def _parse_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


@dataclass
class GasLedgerConfig:
    enabled: bool
    url: str | None
    secret: str | None
    timeout_seconds: float
    read_attempts: int

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> "GasLedgerConfig":
        env = os.environ if environ is None else environ
        secret = env.get("GAS_SECRET") or env.get("RESERVE_SECRET")
        return cls(
            enabled=_parse_bool(env.get("GAS_ENABLED"), default=True),
            url=env.get("GAS_RESERVATIONS_URL"),
            secret=secret,
            timeout_seconds=float(env.get("GAS_TIMEOUT_SECONDS", "15")),
            read_attempts=max(1, int(env.get("GAS_READ_ATTEMPTS", "3"))),
        )

    def require_enabled(self) -> None:
        if not self.enabled:
            raise RuntimeError("GAS ledger is disabled (set GAS_ENABLED=true).")
        missing = [
            name
            for name, value in {
                "GAS_RESERVATIONS_URL": self.url,
                "GAS_SECRET (or RESERVE_SECRET)": self.secret,
            }.items()
            if not value
        ]
        if missing:
            raise RuntimeError("Missing required GAS env vars: " + ", ".join(missing))


class GasLedgerClient(LedgerSource):
    """JSON-over-POST client for the reservations spreadsheet web app."""

    def __init__(self, config: GasLedgerConfig, client: httpx.Client | None = None) -> None:
        super().__init__()
        self._config = config
        self._client = client or httpx.Client(
            timeout=httpx.Timeout(config.timeout_seconds),
            follow_redirects=True,
        )

    def close(self) -> None:
        self._client.close()

    def query_by_date_range(self, date_from: date, date_to: date) -> list[LedgerRecord]:
        body = self._call(
            {
                "type": "list_range",
                "startDate": date_from.isoformat(),
                "endDate": date_to.isoformat(),
            },
            attempts=self._config.read_attempts,
        )
        return self._parse_records(body)

    def query_by_ids(self, reservation_ids: Iterable[str]) -> list[LedgerRecord]:
        ids = sorted({rid for rid in reservation_ids if rid})
        records: list[LedgerRecord] = []
        for start in range(0, len(ids), IDS_PER_REQUEST):
            chunk = ids[start : start + IDS_PER_REQUEST]
            body = self._call(
                {"type": "get_by_ids", "reserveIds": chunk},
                attempts=self._config.read_attempts,
            )
            records.extend(self._parse_records(body))
        return records

    def upsert_record(self, record: LedgerRecord) -> LedgerWriteResult:
        body = self._call(
            {"type": "upsert_reservation", "record": record.to_wire()},
            attempts=1,
        )
        try:
            result = LedgerWriteResult.model_validate(body)
        except ValidationError as exc:
            raise LedgerSchemaError(f"Malformed upsert response: {exc}") from exc
        if result.reservation_id != record.reservation_id:
            raise LedgerSchemaError(
                "Upsert response for a different record: "
                f"{result.reservation_id} != {record.reservation_id}"
            )
        return result

    def _call(self, payload: dict[str, Any], *, attempts: int) -> dict[str, Any]:
        self._config.require_enabled()
        request_body = {**payload, "secret": self._config.secret}
        last_error: str | None = None
        for attempt in range(attempts):
            try:
                response = self._client.post(self._config.url, json=request_body)
            except httpx.TimeoutException as exc:
                last_error = f"timeout after {self._config.timeout_seconds}s ({exc})"
            except httpx.RequestError as exc:
                last_error = f"request error: {exc}"
            else:
                if response.status_code in RETRY_STATUSES:
                    last_error = f"HTTP {response.status_code}"
                elif response.status_code >= 400:
                    raise LedgerUnavailable(
                        f"GAS {payload['type']} failed: HTTP {response.status_code}"
                    )
                else:
                    return self._decode(payload["type"], response)
            if attempt < attempts - 1:
                delay = min(READ_RETRY_MAX_SLEEP, READ_RETRY_BASE_SLEEP * (2**attempt))
                delay = delay + random.uniform(0, delay / 2)
                logger.warning(
                    "GAS request failed, retrying",
                    extra={"type": payload["type"], "attempt": attempt + 1, "error": last_error},
                )
                time.sleep(delay)
        raise LedgerUnavailable(f"GAS {payload['type']} failed: {last_error}")

    @staticmethod
    def _decode(request_type: str, response: httpx.Response) -> dict[str, Any]:
        try:
            body = response.json()
        except ValueError as exc:
            raise LedgerSchemaError(f"GAS {request_type} returned non-JSON body") from exc
        if not isinstance(body, dict):
            raise LedgerSchemaError(f"GAS {request_type} returned {type(body).__name__}")
        if body.get("ok") is not True:
            raise LedgerUnavailable(
                f"GAS {request_type} rejected: {body.get('error') or 'ok flag missing'}"
            )
        return body

    def _parse_records(self, body: dict[str, Any]) -> list[LedgerRecord]:
        rows = body.get("reservations")
        if not isinstance(rows, list):
            # A missing list is an unknown answer, not an empty ledger.
            raise LedgerSchemaError("GAS response has no reservations list")
        records = self._accept_rows(rows)
        if len(records) < len(rows):
            logger.warning(
                "Ledger rows failed validation",
                extra={"rows": len(rows), "accepted": len(records)},
            )
        return records
