from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from interspace_auth.logging import get_logger
from interspace_auth.storage.errors import ConstraintViolation
from interspace_auth.storage.models import (
    Account,
    AccountSession,
    AccountType,
    BlacklistedToken,
    EmailVerification,
    FarcasterChannel,
    IdentityLink,
    IssuedRefreshToken,
    LinkType,
    PrivacyMode,
    Profile,
    ProfileAccount,
    SiweNonce,
    canonical_pair,
    utcnow,
)


def _copy_account(account: Account) -> Account:
    return replace(account, metadata=dict(account.metadata))


class MemoryStore:
    """In-memory backing store used by tests and local development.

    Every public method holds ``_data_lock`` for its whole body so the
    compare-and-set operations (nonce consumption, email code deletion) behave
    like their single-statement Postgres counterparts.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self._account_keys: Dict[Tuple[str, str], str] = {}
        self.links: Dict[Tuple[str, str], IdentityLink] = {}
        self.sessions: Dict[str, AccountSession] = {}
        self.nonces: Dict[str, SiweNonce] = {}
        self.blacklist: Dict[str, BlacklistedToken] = {}
        self.refresh_tokens: Dict[str, IssuedRefreshToken] = {}
        self.email_verifications: Dict[str, EmailVerification] = {}
        self.profiles: Dict[str, Profile] = {}
        self.profile_accounts: Dict[Tuple[str, str], ProfileAccount] = {}
        self.farcaster_channels: Dict[str, FarcasterChannel] = {}
        self._data_lock = threading.RLock()

    def verify_connection(self) -> None:
        return None

    # accounts
    def create_account(self, account: Account) -> Account:
        key = (account.type.value, account.identifier)
        with self._data_lock:
            if key in self._account_keys:
                raise ConstraintViolation(
                    "account already exists",
                    {"type": account.type.value, "field": "identifier"},
                )
            self.accounts[account.id] = _copy_account(account)
            self._account_keys[key] = account.id
        return account

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            return _copy_account(account) if account else None

    def get_account_by_identifier(
        self, account_type: AccountType, identifier: str
    ) -> Optional[Account]:
        with self._data_lock:
            account_id = self._account_keys.get((AccountType(account_type).value, identifier))
            if not account_id:
                return None
            return _copy_account(self.accounts[account_id])

    def list_accounts(self, account_ids: Iterable[str]) -> List[Account]:
        with self._data_lock:
            return [
                _copy_account(self.accounts[aid])
                for aid in account_ids
                if aid in self.accounts
            ]

    def set_account_verified(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            if not account.verified:
                account.verified = True
                account.updated_at = utcnow()
            return _copy_account(account)

    def update_account_metadata(self, account_id: str, patch: dict) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            account.metadata = {**account.metadata, **patch}
            account.updated_at = utcnow()
            return _copy_account(account)

    # identity links
    def upsert_identity_link(
        self,
        account_a_id: str,
        account_b_id: str,
        link_type: LinkType,
        privacy_mode: PrivacyMode,
    ) -> IdentityLink:
        key = canonical_pair(account_a_id, account_b_id)
        now = utcnow()
        with self._data_lock:
            for account_id in key:
                if account_id not in self.accounts:
                    raise ConstraintViolation(
                        "link account missing", {"account_id": account_id}
                    )
            existing = self.links.get(key)
            if existing:
                existing.link_type = LinkType(link_type)
                existing.privacy_mode = PrivacyMode(privacy_mode)
                existing.updated_at = now
                return replace(existing)
            link = IdentityLink(
                account_a_id=key[0],
                account_b_id=key[1],
                link_type=LinkType(link_type),
                privacy_mode=PrivacyMode(privacy_mode),
                created_at=now,
                updated_at=now,
            )
            self.links[key] = link
            return replace(link)

    def get_identity_link(self, account_a_id: str, account_b_id: str) -> Optional[IdentityLink]:
        with self._data_lock:
            link = self.links.get(canonical_pair(account_a_id, account_b_id))
            return replace(link) if link else None

    def set_link_privacy_mode(
        self, account_a_id: str, account_b_id: str, privacy_mode: PrivacyMode
    ) -> Optional[IdentityLink]:
        with self._data_lock:
            link = self.links.get(canonical_pair(account_a_id, account_b_id))
            if not link:
                return None
            link.privacy_mode = PrivacyMode(privacy_mode)
            link.updated_at = utcnow()
            return replace(link)

    def delete_identity_link(self, account_a_id: str, account_b_id: str) -> bool:
        with self._data_lock:
            return self.links.pop(canonical_pair(account_a_id, account_b_id), None) is not None

    def list_links_for_accounts(self, account_ids: Iterable[str]) -> List[IdentityLink]:
        wanted = set(account_ids)
        with self._data_lock:
            return [
                replace(link)
                for link in self.links.values()
                if link.account_a_id in wanted or link.account_b_id in wanted
            ]

    # profiles
    def create_profile(self, profile: Profile, account_id: str, role: str = "owner") -> Profile:
        with self._data_lock:
            if account_id not in self.accounts:
                raise ConstraintViolation("profile account missing", {"account_id": account_id})
            self.profiles[profile.id] = profile
            self.profile_accounts[(profile.id, account_id)] = ProfileAccount(
                profile_id=profile.id, account_id=account_id, role=role
            )
            return replace(profile)

    def get_profile(self, profile_id: str) -> Optional[Profile]:
        with self._data_lock:
            profile = self.profiles.get(profile_id)
            return replace(profile) if profile else None

    def link_profile_account(
        self, profile_id: str, account_id: str, role: str = "owner"
    ) -> ProfileAccount:
        with self._data_lock:
            if profile_id not in self.profiles:
                raise ConstraintViolation("profile missing", {"profile_id": profile_id})
            if account_id not in self.accounts:
                raise ConstraintViolation("profile account missing", {"account_id": account_id})
            existing = self.profile_accounts.get((profile_id, account_id))
            if existing:
                return replace(existing)
            link = ProfileAccount(profile_id=profile_id, account_id=account_id, role=role)
            self.profile_accounts[(profile_id, account_id)] = link
            return replace(link)

    def unlink_profile_account(self, profile_id: str, account_id: str) -> bool:
        with self._data_lock:
            removed = self.profile_accounts.pop((profile_id, account_id), None) is not None
            if removed:
                for session in self.sessions.values():
                    if session.account_id == account_id and session.active_profile_id == profile_id:
                        session.active_profile_id = None
            return removed

    def delete_profile(self, profile_id: str) -> bool:
        with self._data_lock:
            if self.profiles.pop(profile_id, None) is None:
                return False
            for key in [k for k in self.profile_accounts if k[0] == profile_id]:
                del self.profile_accounts[key]
            for session in self.sessions.values():
                if session.active_profile_id == profile_id:
                    session.active_profile_id = None
            return True

    def list_profiles_for_accounts(self, account_ids: Iterable[str]) -> List[Profile]:
        wanted = set(account_ids)
        with self._data_lock:
            profile_ids = {
                link.profile_id
                for link in self.profile_accounts.values()
                if link.account_id in wanted
            }
            profiles = [replace(self.profiles[pid]) for pid in profile_ids if pid in self.profiles]
        profiles.sort(key=lambda p: p.last_active_at, reverse=True)
        return profiles

    def touch_profile(self, profile_id: str) -> Optional[Profile]:
        with self._data_lock:
            profile = self.profiles.get(profile_id)
            if not profile:
                return None
            profile.last_active_at = utcnow()
            return replace(profile)

    def set_profile_wallet(
        self, profile_id: str, address: str, metadata: Optional[dict] = None
    ) -> Optional[Profile]:
        with self._data_lock:
            profile = self.profiles.get(profile_id)
            if not profile:
                return None
            profile.session_wallet_address = address
            if metadata:
                profile.metadata = {**profile.metadata, **metadata}
            return replace(profile)

    # sessions
    def create_session(self, session: AccountSession) -> AccountSession:
        with self._data_lock:
            if session.account_id not in self.accounts:
                raise ConstraintViolation("session account missing", {"account_id": session.account_id})
            self.sessions[session.session_id] = session
            return replace(session)

    def get_session(self, session_id: str) -> Optional[AccountSession]:
        with self._data_lock:
            session = self.sessions.get(session_id)
            return replace(session) if session else None

    def touch_session(self, session_id: str, now: datetime) -> None:
        with self._data_lock:
            session = self.sessions.get(session_id)
            if session:
                session.updated_at = now

    def set_session_active_profile(
        self, session_id: str, profile_id: Optional[str]
    ) -> Optional[AccountSession]:
        with self._data_lock:
            session = self.sessions.get(session_id)
            if not session:
                return None
            session.active_profile_id = profile_id
            session.updated_at = utcnow()
            return replace(session)

    def delete_session(self, session_id: str) -> bool:
        with self._data_lock:
            return self.sessions.pop(session_id, None) is not None

    def delete_account_sessions(self, account_id: str) -> int:
        with self._data_lock:
            stale = [sid for sid, s in self.sessions.items() if s.account_id == account_id]
            for sid in stale:
                del self.sessions[sid]
            return len(stale)

    def list_account_sessions(self, account_id: str) -> List[AccountSession]:
        with self._data_lock:
            return [replace(s) for s in self.sessions.values() if s.account_id == account_id]

    def delete_expired_sessions(self, now: datetime) -> int:
        with self._data_lock:
            stale = [sid for sid, s in self.sessions.items() if s.expires_at <= now]
            for sid in stale:
                del self.sessions[sid]
            return len(stale)

    # nonces
    def create_nonce(self, nonce: SiweNonce) -> SiweNonce:
        with self._data_lock:
            if nonce.nonce in self.nonces:
                raise ConstraintViolation("nonce already exists", {"field": "nonce"})
            self.nonces[nonce.nonce] = nonce
            return replace(nonce)

    def get_nonce(self, nonce: str) -> Optional[SiweNonce]:
        with self._data_lock:
            record = self.nonces.get(nonce)
            return replace(record) if record else None

    def mark_nonce_used(self, nonce: str, now: datetime) -> bool:
        """Flip ``used_at`` if still unused and unexpired; False when another caller won."""
        with self._data_lock:
            record = self.nonces.get(nonce)
            if not record or record.used_at is not None or record.expires_at <= now:
                return False
            record.used_at = now
            return True

    def delete_expired_nonces(self, now: datetime) -> int:
        with self._data_lock:
            stale = [n for n, r in self.nonces.items() if r.expires_at <= now]
            for n in stale:
                del self.nonces[n]
            return len(stale)

    # token blacklist
    def add_blacklisted_token(self, entry: BlacklistedToken) -> bool:
        """Insert unless already present; True only for the caller that inserted."""
        with self._data_lock:
            if entry.token_hash in self.blacklist:
                return False
            self.blacklist[entry.token_hash] = entry
            return True

    def is_token_blacklisted(self, token_hash: str) -> bool:
        with self._data_lock:
            return token_hash in self.blacklist

    def delete_expired_blacklist(self, now: datetime) -> int:
        with self._data_lock:
            stale = [h for h, e in self.blacklist.items() if e.expires_at <= now]
            for h in stale:
                del self.blacklist[h]
            return len(stale)

    def blacklist_stats(self) -> dict:
        with self._data_lock:
            by_reason: Dict[str, int] = {}
            by_type: Dict[str, int] = {}
            for entry in self.blacklist.values():
                by_reason[entry.reason.value] = by_reason.get(entry.reason.value, 0) + 1
                by_type[entry.token_type.value] = by_type.get(entry.token_type.value, 0) + 1
            return {"total": len(self.blacklist), "by_reason": by_reason, "by_type": by_type}

    # issued refresh tokens
    def record_refresh_token(self, record: IssuedRefreshToken) -> None:
        with self._data_lock:
            self.refresh_tokens[record.jti] = record

    def list_outstanding_refresh_tokens(
        self, account_id: str, now: datetime
    ) -> List[IssuedRefreshToken]:
        with self._data_lock:
            return [
                replace(r)
                for r in self.refresh_tokens.values()
                if r.account_id == account_id
                and r.expires_at > now
                and r.token_hash not in self.blacklist
            ]

    def delete_expired_refresh_tokens(self, now: datetime) -> int:
        with self._data_lock:
            stale = [j for j, r in self.refresh_tokens.items() if r.expires_at <= now]
            for j in stale:
                del self.refresh_tokens[j]
            return len(stale)

    # email verification codes
    def create_email_verification(self, record: EmailVerification) -> EmailVerification:
        with self._data_lock:
            self.email_verifications[record.id] = record
            return replace(record)

    def list_active_email_verifications(
        self, email: str, now: datetime, max_attempts: int
    ) -> List[EmailVerification]:
        with self._data_lock:
            return [
                replace(r)
                for r in self.email_verifications.values()
                if r.email == email and r.expires_at > now and r.attempts < max_attempts
            ]

    def increment_email_verification_attempts(
        self, verification_ids: Iterable[str], now: datetime
    ) -> int:
        updated = 0
        with self._data_lock:
            for vid in verification_ids:
                record = self.email_verifications.get(vid)
                if not record:
                    continue
                record.attempts += 1
                record.last_attempt_at = now
                updated += 1
        return updated

    def delete_email_verifications(self, email: str) -> int:
        with self._data_lock:
            stale = [vid for vid, r in self.email_verifications.items() if r.email == email]
            for vid in stale:
                del self.email_verifications[vid]
            return len(stale)

    def delete_expired_email_verifications(self, now: datetime) -> int:
        with self._data_lock:
            stale = [vid for vid, r in self.email_verifications.items() if r.expires_at <= now]
            for vid in stale:
                del self.email_verifications[vid]
            return len(stale)

    # farcaster relay channels
    def create_farcaster_channel(self, channel: FarcasterChannel) -> FarcasterChannel:
        with self._data_lock:
            self.farcaster_channels[channel.channel_token] = channel
            return replace(channel)

    def get_farcaster_channel(self, channel_token: str) -> Optional[FarcasterChannel]:
        with self._data_lock:
            channel = self.farcaster_channels.get(channel_token)
            return replace(channel) if channel else None

    def complete_farcaster_channel(
        self, channel_token: str, **fields
    ) -> Optional[FarcasterChannel]:
        with self._data_lock:
            channel = self.farcaster_channels.get(channel_token)
            if not channel or channel.status != "pending":
                return None
            for name, value in fields.items():
                setattr(channel, name, value)
            channel.status = "completed"
            return replace(channel)

    def delete_farcaster_channel(self, channel_token: str) -> bool:
        with self._data_lock:
            return self.farcaster_channels.pop(channel_token, None) is not None

    def delete_expired_farcaster_channels(self, now: datetime) -> int:
        with self._data_lock:
            stale = [t for t, c in self.farcaster_channels.items() if c.expires_at <= now]
            for t in stale:
                del self.farcaster_channels[t]
            return len(stale)
