from __future__ import annotations

import secrets
from datetime import datetime, timedelta, timezone
from typing import Any

from interspace_auth.logging import get_logger
from interspace_auth.service.errors import AuthenticationError
from interspace_auth.service.security_events import NONCE_REPLAY, record_security_event
from interspace_auth.storage.models import SiweNonce

logger = get_logger(__name__)


class NonceService:
    """Issues single-use replay-protection nonces and consumes them exactly once.

    State machine per nonce: ``unused -> used`` is terminal. A consumption
    attempt against a used nonce is a replay and is recorded as a security
    event before the request is rejected.
    """

    def __init__(self, store, *, ttl_seconds: int = 300) -> None:
        self.store = store
        self.ttl = timedelta(seconds=ttl_seconds)

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def issue_nonce(self, purpose: str = "siwe") -> SiweNonce:
        now = self._now()
        record = SiweNonce(
            nonce=secrets.token_hex(16),
            purpose=purpose,
            expires_at=now + self.ttl,
            created_at=now,
        )
        self.store.create_nonce(record)
        logger.debug("nonce_issued", purpose=purpose, expires_at=record.expires_at.isoformat())
        return record

    def check_nonce(self, nonce: str, *, purpose: str = "siwe", **context: Any) -> SiweNonce:
        """Reject unknown, expired or already-used nonces without consuming."""
        record = self.store.get_nonce(nonce)
        if not record or record.purpose != purpose:
            raise AuthenticationError("invalid nonce", error_code="NONCE_INVALID")
        if record.used_at is not None:
            record_security_event(
                NONCE_REPLAY,
                purpose=purpose,
                first_used_at=record.used_at.isoformat(),
                **context,
            )
            raise AuthenticationError("nonce already used", error_code="NONCE_REPLAYED")
        if record.expires_at <= self._now():
            raise AuthenticationError("nonce expired", error_code="NONCE_EXPIRED")
        return record

    def consume_nonce(self, nonce: str, *, purpose: str = "siwe", **context: Any) -> None:
        """Atomically mark the nonce used; of two concurrent callers exactly one wins."""
        self.check_nonce(nonce, purpose=purpose, **context)
        if not self.store.mark_nonce_used(nonce, self._now()):
            record_security_event(NONCE_REPLAY, purpose=purpose, race=True, **context)
            raise AuthenticationError("nonce already used", error_code="NONCE_REPLAYED")

    def cleanup_expired(self) -> int:
        removed = self.store.delete_expired_nonces(self._now())
        if removed:
            logger.info("expired_nonces_removed", count=removed)
        return removed
