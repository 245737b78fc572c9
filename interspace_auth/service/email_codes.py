from __future__ import annotations

import secrets
import uuid
from datetime import datetime, timedelta, timezone

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError

from interspace_auth.logging import get_logger
from interspace_auth.service.errors import AuthenticationError, ValidationError
from interspace_auth.service.security_events import BRUTE_FORCE, record_security_event
from interspace_auth.storage.models import EmailVerification

logger = get_logger(__name__)

INVALID_CODE = "INVALID_VERIFICATION_CODE"


def normalize_email(email: str) -> str:
    normalized = (email or "").strip().lower()
    if "@" not in normalized or normalized.startswith("@") or normalized.endswith("@"):
        raise ValidationError("invalid email address", detail={"field": "email"})
    return normalized


class EmailCodeService:
    """Six-digit email codes, stored argon2-hashed.

    Hashes are salted, so a submitted code cannot be looked up by value: every
    unexpired code with remaining attempts is verified in turn.
    """

    def __init__(
        self,
        store,
        *,
        ttl_minutes: int = 10,
        max_attempts: int = 5,
        hasher: PasswordHasher | None = None,
    ) -> None:
        self.store = store
        self.ttl = timedelta(minutes=ttl_minutes)
        self.ttl_minutes = ttl_minutes
        self.max_attempts = max_attempts
        self.hasher = hasher or PasswordHasher(type=Type.ID)

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def issue_code(self, email: str) -> str:
        """Replace any outstanding codes for ``email`` and return a fresh plaintext code."""
        normalized = normalize_email(email)
        self.store.delete_email_verifications(normalized)
        code = f"{secrets.randbelow(900000) + 100000}"
        now = self._now()
        self.store.create_email_verification(
            EmailVerification(
                id=str(uuid.uuid4()),
                email=normalized,
                code_hash=self.hasher.hash(code),
                expires_at=now + self.ttl,
                created_at=now,
            )
        )
        logger.info("email_code_issued", email=normalized, ttl_minutes=self.ttl_minutes)
        return code

    def _matches(self, code_hash: str, code: str) -> bool:
        try:
            return self.hasher.verify(code_hash, code)
        except VerifyMismatchError:
            return False
        except (VerificationError, InvalidHashError) as exc:
            logger.warning("email_code_hash_invalid", error=str(exc))
            return False

    def verify_code(self, email: str, code: str) -> str:
        """Consume a valid code; returns the normalized email.

        Success deletes every code for the email. Failure bumps ``attempts`` on
        every candidate row; rows deleted by a concurrent success are skipped.
        """
        normalized = normalize_email(email)
        if not code or not code.strip():
            raise AuthenticationError("verification code required", error_code=INVALID_CODE)
        candidates = self.store.list_active_email_verifications(
            normalized, self._now(), self.max_attempts
        )
        for record in candidates:
            if self._matches(record.code_hash, code.strip()):
                removed = self.store.delete_email_verifications(normalized)
                logger.info("email_code_verified", email=normalized, codes_removed=removed)
                return normalized

        if candidates:
            self.store.increment_email_verification_attempts(
                [r.id for r in candidates], self._now()
            )
            if any(r.attempts + 1 >= self.max_attempts for r in candidates):
                record_security_event(
                    BRUTE_FORCE,
                    strategy="email",
                    email=normalized,
                    attempts=max(r.attempts + 1 for r in candidates),
                )
        raise AuthenticationError(
            "invalid or expired verification code", error_code=INVALID_CODE
        )

    def cleanup_expired(self) -> int:
        removed = self.store.delete_expired_email_verifications(self._now())
        if removed:
            logger.info("expired_email_codes_removed", count=removed)
        return removed
