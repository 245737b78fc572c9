from __future__ import annotations

import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, Optional, Tuple


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AccountType(str, Enum):
    WALLET = "wallet"
    EMAIL = "email"
    SOCIAL = "social"
    GUEST = "guest"
    PASSKEY = "passkey"


class PrivacyMode(str, Enum):
    """Exposure level of an identity link.

    ``isolated`` is a graph cut: traversal never crosses the edge.
    """

    LINKED = "linked"
    PARTIAL = "partial"
    ISOLATED = "isolated"


class LinkType(str, Enum):
    DIRECT = "direct"
    INFERRED = "inferred"


class TokenType(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


class BlacklistReason(str, Enum):
    LOGOUT = "logout"
    ROTATION = "rotation"
    SECURITY = "security"
    PASSWORD_CHANGE = "password_change"


def normalize_identifier(account_type: AccountType | str, identifier: str) -> str:
    """Lower-case identifiers except passkey credential IDs (case-sensitive base64url)."""
    value = identifier.strip()
    if AccountType(account_type) is AccountType.PASSKEY:
        return value
    return value.lower()


def canonical_pair(account_a_id: str, account_b_id: str) -> Tuple[str, str]:
    if account_a_id <= account_b_id:
        return account_a_id, account_b_id
    return account_b_id, account_a_id


@dataclass
class Account:
    id: str
    type: AccountType
    identifier: str
    provider: Optional[str] = None
    verified: bool = False
    metadata: Dict = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        account_type: AccountType | str,
        identifier: str,
        *,
        provider: Optional[str] = None,
        metadata: Optional[Dict] = None,
    ) -> "Account":
        account_type = AccountType(account_type)
        return cls(
            id=str(uuid.uuid4()),
            type=account_type,
            identifier=normalize_identifier(account_type, identifier),
            provider=provider,
            verified=account_type is AccountType.WALLET,
            metadata=dict(metadata or {}),
        )


@dataclass
class IdentityLink:
    account_a_id: str
    account_b_id: str
    link_type: LinkType = LinkType.DIRECT
    privacy_mode: PrivacyMode = PrivacyMode.LINKED
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def other(self, account_id: str) -> str:
        return self.account_b_id if account_id == self.account_a_id else self.account_a_id


@dataclass
class AccountSession:
    id: str
    account_id: str
    session_id: str
    expires_at: datetime
    privacy_mode: PrivacyMode = PrivacyMode.LINKED
    device_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    active_profile_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        account_id: str,
        ttl: timedelta,
        *,
        privacy_mode: PrivacyMode | str = PrivacyMode.LINKED,
        device_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        active_profile_id: Optional[str] = None,
    ) -> "AccountSession":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            account_id=account_id,
            session_id=secrets.token_urlsafe(32),
            expires_at=now + ttl,
            privacy_mode=PrivacyMode(privacy_mode),
            device_id=device_id,
            ip_address=ip_address,
            user_agent=user_agent,
            active_profile_id=active_profile_id,
            created_at=now,
            updated_at=now,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at


@dataclass
class SiweNonce:
    nonce: str
    expires_at: datetime
    purpose: str = "siwe"
    used_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class BlacklistedToken:
    token_hash: str
    token_type: TokenType
    account_id: str
    reason: BlacklistReason
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class IssuedRefreshToken:
    jti: str
    account_id: str
    session_id: str
    token_hash: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class EmailVerification:
    id: str
    email: str
    code_hash: str
    expires_at: datetime
    attempts: int = 0
    last_attempt_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Profile:
    id: str
    name: str
    session_wallet_address: Optional[str] = None
    is_active: bool = True
    metadata: Dict = field(default_factory=dict)
    last_active_at: datetime = field(default_factory=utcnow)
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class ProfileAccount:
    profile_id: str
    account_id: str
    role: str = "owner"
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class FarcasterChannel:
    channel_token: str
    domain: str
    siwe_uri: str
    nonce: str
    expires_at: datetime
    status: str = "pending"
    message: Optional[str] = None
    signature: Optional[str] = None
    fid: Optional[int] = None
    username: Optional[str] = None
    display_name: Optional[str] = None
    bio: Optional[str] = None
    pfp_url: Optional[str] = None
    custody_address: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
