from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import List, Optional

from interspace_auth.logging import get_logger
from interspace_auth.service.errors import AuthenticationError, SessionExpiredError
from interspace_auth.storage.models import AccountSession, PrivacyMode

logger = get_logger(__name__)


class SessionManager:
    """Per-device sessions bound to an account and a privacy mode.

    ``updated_at`` is touched on every validated use as an activity marker;
    expiry stays fixed at creation time.
    """

    def __init__(self, store, *, ttl_days: int = 7) -> None:
        self.store = store
        self.ttl = timedelta(days=ttl_days)

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def create_session(
        self,
        account_id: str,
        *,
        device_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        privacy_mode: PrivacyMode | str = PrivacyMode.LINKED,
        active_profile_id: Optional[str] = None,
    ) -> AccountSession:
        session = AccountSession.new(
            account_id,
            self.ttl,
            privacy_mode=privacy_mode,
            device_id=device_id,
            ip_address=ip_address,
            user_agent=user_agent,
            active_profile_id=active_profile_id,
        )
        session = self.store.create_session(session)
        logger.info(
            "session_created",
            account_id=account_id,
            device_id=device_id,
            privacy_mode=session.privacy_mode.value,
            expires_at=session.expires_at.isoformat(),
        )
        return session

    def validate_session(self, session_id: str, account_id: str) -> AccountSession:
        session = self.store.get_session(session_id) if session_id else None
        if not session:
            raise AuthenticationError("session not found", error_code="INVALID_SESSION")
        if session.account_id != account_id:
            logger.warning(
                "session_account_mismatch",
                account_id=account_id,
                session_account_id=session.account_id,
            )
            raise AuthenticationError("session does not belong to account", error_code="INVALID_SESSION")
        now = self._now()
        if session.is_expired(now):
            raise SessionExpiredError("session expired")
        self.store.touch_session(session_id, now)
        session.updated_at = now
        return session

    def get_session(self, session_id: str) -> Optional[AccountSession]:
        return self.store.get_session(session_id)

    def set_active_profile(self, session_id: str, profile_id: Optional[str]) -> AccountSession:
        session = self.store.set_session_active_profile(session_id, profile_id)
        if not session:
            raise AuthenticationError("session not found", error_code="INVALID_SESSION")
        return session

    def delete_session(self, session_id: str) -> bool:
        removed = self.store.delete_session(session_id)
        if removed:
            logger.info("session_deleted")
        return removed

    def delete_account_sessions(self, account_id: str) -> int:
        removed = self.store.delete_account_sessions(account_id)
        logger.info("account_sessions_deleted", account_id=account_id, count=removed)
        return removed

    def list_account_sessions(self, account_id: str) -> List[AccountSession]:
        now = self._now()
        return [s for s in self.store.list_account_sessions(account_id) if not s.is_expired(now)]

    def cleanup_expired(self) -> int:
        removed = self.store.delete_expired_sessions(self._now())
        if removed:
            logger.info("expired_sessions_removed", count=removed)
        return removed
