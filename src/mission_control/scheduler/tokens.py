"""Single-use capability tokens authorizing session callbacks."""

from __future__ import annotations

import hashlib
import logging
import secrets

from mission_control.scheduler.errors import CapabilityError
from mission_control.scheduler.models import CapabilityGrant, CapabilitySubject, CapabilityView
from mission_control.scheduler.repository import WorkStore

logger = logging.getLogger(__name__)

TOKEN_PREFIXES = {
    CapabilitySubject.PHASE: "exec",
    CapabilitySubject.STORY: "ralph",
}


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class CapabilityIssuer:
    """Issue, verify and consume capability tokens.

    Only the sha256 of a token is persisted; the clear value exists in the
    briefing sent to the gateway and in the callbacks that come back.
    """

    def __init__(self, store: WorkStore) -> None:
        self.store = store

    def issue(
        self,
        *,
        subject_kind: CapabilitySubject,
        subject_id: str,
        task_id: str,
    ) -> CapabilityGrant:
        token = f"{TOKEN_PREFIXES[subject_kind]}-{secrets.token_urlsafe(24)}"
        self.store.add_capability(
            token_hash=hash_token(token),
            subject_kind=subject_kind,
            subject_id=subject_id,
            task_id=task_id,
        )
        return CapabilityGrant(
            token=token,
            subject_kind=subject_kind,
            subject_id=subject_id,
            task_id=task_id,
        )

    def verify(
        self,
        token: str | None,
        *,
        subject_kind: CapabilitySubject,
        subject_id: str,
    ) -> CapabilityView:
        """Check that an unused token is bound to the given subject."""

        if not token:
            raise CapabilityError("Missing capability token")
        capability = self.store.get_capability(hash_token(token))
        if capability is None:
            raise CapabilityError("Unknown capability token")
        if capability.subject_kind != subject_kind or capability.subject_id != subject_id:
            raise CapabilityError(
                f"Capability token is not bound to {subject_kind.value} {subject_id}",
            )
        if capability.consumed:
            raise CapabilityError("Capability token already used")
        return capability

    def consume(
        self,
        token: str | None,
        *,
        subject_kind: CapabilitySubject,
        subject_id: str,
    ) -> CapabilityView:
        capability = self.verify(token, subject_kind=subject_kind, subject_id=subject_id)
        if not self.store.consume_capability(hash_token(token or "")):
            raise CapabilityError("Capability token already used")
        logger.debug("Consumed capability for %s %s", subject_kind.value, subject_id)
        return capability
