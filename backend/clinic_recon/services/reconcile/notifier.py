from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import date
from typing import Callable

import httpx
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from clinic_recon.models.notification_log import NotificationLog
from clinic_recon.models.patient import Patient
from clinic_recon.services.reconcile.identity import chat_id_from_identity

logger = logging.getLogger(__name__)

STATUS_SENDING = "sending"
STATUS_SENT = "sent"
STATUS_FAILED = "failed"
STATUS_SKIPPED = "skipped"

CHANGE_CANCELED = "canceled"
CHANGE_RESCHEDULED = "rescheduled"
CHANGE_CREATED = "created"
VISIBLE_CHANGES = {CHANGE_CANCELED, CHANGE_RESCHEDULED, CHANGE_CREATED}

RETRY_KEY_NAMESPACE = uuid.UUID("5b0c7d1e-3f52-4a8e-9a51-0e2d6c1f4b77")


@dataclass(frozen=True)
class VisibleChange:
    """A repair the patient can see on their booking."""

    change: str
    reservation_id: str
    reserved_date: date
    reserved_time: str

    @property
    def change_key(self) -> str:
        return f"{self.change}:{self.reservation_id}:{self.reserved_date.isoformat()}:{self.reserved_time}"

    def message(self) -> str:
        when = f"{self.reserved_date.strftime('%Y/%m/%d')} {self.reserved_time}"
        if self.change == CHANGE_CANCELED:
            return f"{when} のご予約はキャンセルされました。"
        if self.change == CHANGE_RESCHEDULED:
            return f"ご予約が {when} に変更されました。"
        return f"{when} のご予約を承りました。"


class LineNotifier:
    """Pushes at most one LINE message per (patient, change).

    The NotificationLog row is committed before the push, so a crash between
    the two loses a message rather than sending it twice.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        access_token: str | None,
        api_base_url: str = "https://api.line.me",
        timeout_seconds: float = 5.0,
        client: httpx.Client | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._access_token = access_token
        self._push_url = api_base_url.rstrip("/") + "/v2/bot/message/push"
        self._client = client or httpx.Client(timeout=httpx.Timeout(timeout_seconds))

    def close(self) -> None:
        self._client.close()

    def notify_if_visible(self, patient_identity: str, change: VisibleChange) -> bool:
        if change.change not in VISIBLE_CHANGES:
            return False
        with self._session_factory() as session:
            try:
                with session.begin():
                    recipient = self._recipient(session, patient_identity)
                    status = STATUS_SENDING if recipient else STATUS_SKIPPED
                    session.add(
                        NotificationLog(
                            patient_identity=patient_identity,
                            change_key=change.change_key,
                            recipient_id=recipient,
                            status=status,
                        )
                    )
            except IntegrityError:
                logger.info(
                    "Notification already recorded",
                    extra={"patient_identity": patient_identity, "change_key": change.change_key},
                )
                return False
            if recipient is None:
                logger.info(
                    "No chat id for patient; notification skipped",
                    extra={"patient_identity": patient_identity},
                )
                return False

            error = self._push(recipient, change)
            with session.begin():
                session.execute(
                    update(NotificationLog)
                    .where(
                        NotificationLog.patient_identity == patient_identity,
                        NotificationLog.change_key == change.change_key,
                    )
                    .values(status=STATUS_FAILED if error else STATUS_SENT, error=error)
                )
        return error is None

    def _recipient(self, session: Session, patient_identity: str) -> str | None:
        chat_id = session.scalar(
            select(Patient.external_chat_id).where(Patient.identity == patient_identity)
        )
        return chat_id or chat_id_from_identity(patient_identity)

    def _push(self, recipient: str, change: VisibleChange) -> str | None:
        if not self._access_token:
            return "LINE access token not configured"
        retry_key = str(uuid.uuid5(RETRY_KEY_NAMESPACE, f"{recipient}:{change.change_key}"))
        try:
            response = self._client.post(
                self._push_url,
                json={"to": recipient, "messages": [{"type": "text", "text": change.message()}]},
                headers={
                    "Authorization": f"Bearer {self._access_token}",
                    "X-Line-Retry-Key": retry_key,
                },
            )
        except httpx.RequestError as exc:
            logger.warning("LINE push failed", extra={"recipient": recipient, "error": str(exc)})
            return f"request error: {exc}"
        # 409 means LINE already accepted a request with this retry key.
        if response.status_code == 409 or response.status_code < 300:
            return None
        logger.warning(
            "LINE push returned %s",
            response.status_code,
            extra={"recipient": recipient, "change_key": change.change_key},
        )
        return f"HTTP {response.status_code}: {response.text[:200]}"
