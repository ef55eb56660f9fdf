from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from clinic_recon.models.base import utcnow
from clinic_recon.models.identity_merge_event import IdentityMergeEvent
from clinic_recon.models.patient import TEMPORARY_IDENTITY_PREFIX, Patient
from clinic_recon.services.reconcile.errors import IdentityConflict, StaleWrite
from clinic_recon.services.reconcile.state_store import StateStore
from clinic_recon.services.reconcile.status import normalize_patient_identity

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CanonicalIdentity:
    identity: str
    known: bool
    chat_id: str | None = None
    mergeable: tuple[str, ...] = ()
    needs_link: bool = False

    @property
    def is_temporary(self) -> bool:
        return self.identity.startswith(TEMPORARY_IDENTITY_PREFIX)

    @property
    def pending_changes(self) -> bool:
        return self.needs_link or bool(self.mergeable)

    def as_dict(self) -> dict[str, object]:
        return {
            "identity": self.identity,
            "known": self.known,
            "chat_id": self.chat_id,
            "mergeable": list(self.mergeable),
            "needs_link": self.needs_link,
        }


def chat_id_from_identity(identity: str | None) -> str | None:
    if not identity or not identity.startswith(TEMPORARY_IDENTITY_PREFIX):
        return None
    return identity[len(TEMPORARY_IDENTITY_PREFIX) :] or None


def temporary_identity(chat_id: str) -> str:
    return f"{TEMPORARY_IDENTITY_PREFIX}{chat_id}"


class IdentityResolver:
    """Single authority for mapping a person onto one patient identity.

    Precedence: explicit permanent id, then the permanent row holding the chat
    id, then the temporary LINE_<chatId> row (following a recorded merge).
    Names are never used: a name match is a question for a human.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def resolve(
        self,
        chat_id: str | None = None,
        permanent_id: str | None = None,
    ) -> CanonicalIdentity:
        chat_id = (chat_id or "").strip() or None
        permanent_id = normalize_patient_identity(permanent_id)
        if permanent_id and permanent_id.startswith(TEMPORARY_IDENTITY_PREFIX):
            chat_id = chat_id or chat_id_from_identity(permanent_id)
            permanent_id = None
        if not chat_id and not permanent_id:
            raise ValueError("resolve() needs a chat id or a permanent id")

        holder = self._by_chat_id(chat_id) if chat_id else None
        temp = self._by_identity(temporary_identity(chat_id)) if chat_id else None
        if temp is None and holder is not None and holder.is_temporary:
            temp = holder

        if permanent_id:
            return self._resolve_permanent(permanent_id, chat_id, holder, temp)

        if holder is not None and not holder.is_temporary:
            mergeable = (temp.identity,) if temp is not None and not temp.is_merged else ()
            return CanonicalIdentity(holder.identity, True, chat_id, mergeable)
        if temp is not None and temp.is_merged:
            target = self._by_identity(temp.merged_into_identity)
            return CanonicalIdentity(temp.merged_into_identity, target is not None, chat_id)
        if temp is not None:
            return CanonicalIdentity(temp.identity, True, chat_id)
        return CanonicalIdentity(temporary_identity(chat_id), False, chat_id)

    def _resolve_permanent(
        self,
        permanent_id: str,
        chat_id: str | None,
        holder: Patient | None,
        temp: Patient | None,
    ) -> CanonicalIdentity:
        if holder is not None and not holder.is_temporary and holder.identity != permanent_id:
            raise IdentityConflict(
                f"Chat id {chat_id} is already held by permanent patient {holder.identity}",
                [holder.identity, permanent_id],
            )
        permanent = self._by_identity(permanent_id)
        if permanent is None:
            return CanonicalIdentity(permanent_id, False, chat_id)
        if chat_id and permanent.external_chat_id and permanent.external_chat_id != chat_id:
            raise IdentityConflict(
                f"Patient {permanent_id} already holds chat id {permanent.external_chat_id}",
                [permanent_id],
            )
        if temp is not None and temp.is_merged and temp.merged_into_identity != permanent_id:
            raise IdentityConflict(
                f"{temp.identity} was merged into {temp.merged_into_identity}, not {permanent_id}",
                [temp.merged_into_identity, permanent_id],
            )
        mergeable = (temp.identity,) if temp is not None and not temp.is_merged else ()
        needs_link = bool(chat_id) and permanent.external_chat_id != chat_id
        return CanonicalIdentity(permanent_id, True, chat_id, mergeable, needs_link)

    def link(self, canonical: CanonicalIdentity) -> int:
        """Apply a resolution: merge temporary rows and attach the chat id."""
        if not canonical.known:
            raise IdentityConflict(
                f"Cannot link into {canonical.identity}: no patient row",
                [canonical.identity],
            )
        if not canonical.pending_changes:
            return 0
        if canonical.is_temporary:
            raise IdentityConflict(
                f"Cannot link into temporary identity {canonical.identity}",
                [canonical.identity],
            )
        store = StateStore(self.session, isolation_level=None)
        touched = 0
        for temp_identity in canonical.mergeable:
            result = self.session.execute(
                update(Patient)
                .where(Patient.identity == temp_identity, Patient.merged_into_identity.is_(None))
                .values(
                    external_chat_id=None,
                    merged_into_identity=canonical.identity,
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                current = self._by_identity(temp_identity)
                if current is not None and current.merged_into_identity == canonical.identity:
                    continue
                raise StaleWrite(f"patient:{temp_identity}")
            moved = store.move_identity(temp_identity, canonical.identity)
            touched += moved + 1
            self.session.add(
                IdentityMergeEvent(
                    action="merge_temporary",
                    from_identity=temp_identity,
                    to_identity=canonical.identity,
                    external_chat_id=canonical.chat_id,
                    rows_moved=moved,
                )
            )
            logger.info(
                "Temporary identity merged",
                extra={
                    "from_identity": temp_identity,
                    "to_identity": canonical.identity,
                    "rows_moved": moved,
                },
            )

        if canonical.needs_link:
            result = self.session.execute(
                update(Patient)
                .where(Patient.identity == canonical.identity, Patient.external_chat_id.is_(None))
                .values(external_chat_id=canonical.chat_id, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                current = self._by_identity(canonical.identity)
                if current is None or current.external_chat_id != canonical.chat_id:
                    raise IdentityConflict(
                        f"Patient {canonical.identity} gained a different chat id concurrently",
                        [canonical.identity],
                    )
            else:
                touched += 1
                self.session.add(
                    IdentityMergeEvent(
                        action="link_chat_id",
                        to_identity=canonical.identity,
                        external_chat_id=canonical.chat_id,
                    )
                )
        return touched

    def _by_identity(self, identity: str | None) -> Patient | None:
        if not identity:
            return None
        return self.session.scalar(
            select(Patient)
            .where(Patient.identity == identity)
            .execution_options(populate_existing=True)
        )

    def _by_chat_id(self, chat_id: str) -> Patient | None:
        return self.session.scalar(
            select(Patient)
            .where(Patient.external_chat_id == chat_id)
            .execution_options(populate_existing=True)
        )
