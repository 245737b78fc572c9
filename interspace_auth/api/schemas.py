from __future__ import annotations

import json
import re
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from interspace_auth.service.dispatcher import (
    ClientContext,
    EmailAuthRequest,
    FarcasterAuthRequest,
    GuestAuthRequest,
    PasskeyAuthRequest,
    SocialAuthRequest,
    WalletAuthRequest,
)
from interspace_auth.storage.models import (
    Account,
    AccountSession,
    FarcasterChannel,
    IdentityLink,
    PrivacyMode,
    Profile,
)

MAX_STRING_LENGTH = 65536

_ERROR_CODE = re.compile(r"^[A-Za-z][A-Za-z0-9_]*$")


class ErrorBody(BaseModel):
    """Error envelope body; ``code`` is a stable machine-readable value."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if not _ERROR_CODE.match(value):
            raise ValueError(f"Invalid error code '{value}'")
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class _CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, serialize_by_alias=True
    )

    def dump(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


# authentication requests


class _AuthBody(_CamelModel):
    device_id: Optional[str] = Field(None, max_length=256)
    privacy_mode: PrivacyMode = PrivacyMode.LINKED

    def context(self, *, ip_address: Optional[str], user_agent: Optional[str]) -> ClientContext:
        return ClientContext(
            device_id=self.device_id,
            ip_address=ip_address,
            user_agent=user_agent,
            privacy_mode=self.privacy_mode,
        )


class WalletAuthBody(_AuthBody):
    strategy: Literal["wallet"]
    message: str = Field(..., max_length=MAX_STRING_LENGTH)
    signature: str = Field(..., max_length=1024)
    wallet_address: Optional[str] = Field(None, pattern=r"^0x[a-fA-F0-9]{40}$")
    chain_id: Optional[int] = None

    def to_request(self) -> WalletAuthRequest:
        return WalletAuthRequest(
            message=self.message,
            signature=self.signature,
            wallet_address=self.wallet_address,
            chain_id=self.chain_id,
        )


class EmailAuthBody(_AuthBody):
    strategy: Literal["email"]
    email: str = Field(..., max_length=320)
    code: str = Field(..., max_length=16)

    def to_request(self) -> EmailAuthRequest:
        return EmailAuthRequest(email=self.email, code=self.code)


class SocialAuthBody(_AuthBody):
    strategy: Literal["social"]
    provider: str = Field(..., max_length=32)
    token: str = Field(..., max_length=MAX_STRING_LENGTH)

    def to_request(self) -> SocialAuthRequest:
        return SocialAuthRequest(provider=self.provider, token=self.token)


class GuestAuthBody(_AuthBody):
    strategy: Literal["guest"]

    def to_request(self) -> GuestAuthRequest:
        return GuestAuthRequest()


class PasskeyAuthBody(_AuthBody):
    strategy: Literal["passkey"]
    credential_id: str = Field(..., max_length=1024)
    client_data_json: str = Field(..., alias="clientDataJSON", max_length=MAX_STRING_LENGTH)
    authenticator_data: str = Field(..., max_length=MAX_STRING_LENGTH)
    signature: str = Field(..., max_length=4096)

    def to_request(self) -> PasskeyAuthRequest:
        return PasskeyAuthRequest(
            credential_id=self.credential_id,
            client_data_json=self.client_data_json,
            authenticator_data=self.authenticator_data,
            signature=self.signature,
        )


class FarcasterAuthBody(_AuthBody):
    strategy: Literal["farcaster"]
    message: Optional[str] = Field(None, max_length=MAX_STRING_LENGTH)
    signature: Optional[str] = Field(None, max_length=1024)
    fid: Optional[int] = Field(None, gt=0)
    channel_token: Optional[str] = Field(None, max_length=128)

    def to_request(self) -> FarcasterAuthRequest:
        return FarcasterAuthRequest(
            message=self.message,
            signature=self.signature,
            fid=self.fid,
            channel_token=self.channel_token,
        )


# Tagged by "strategy"; routes declare the discriminator on the body parameter
AuthenticateRequest = Union[
    WalletAuthBody,
    EmailAuthBody,
    SocialAuthBody,
    GuestAuthBody,
    PasskeyAuthBody,
    FarcasterAuthBody,
]

LinkTargetRequest = Union[WalletAuthBody, EmailAuthBody, SocialAuthBody, FarcasterAuthBody]


class RequestCodeRequest(_CamelModel):
    email: str = Field(..., max_length=320)


class RefreshRequest(_CamelModel):
    refresh_token: str = Field(..., max_length=4096)


class LogoutRequest(_CamelModel):
    refresh_token: Optional[str] = Field(None, max_length=4096)


class LinkPrivacyRequest(_CamelModel):
    target_account_id: str
    privacy_mode: PrivacyMode


class PasskeyRegisterRequest(_CamelModel):
    credential_id: str = Field(..., max_length=1024)
    public_key: str = Field(..., max_length=8192)
    sign_count: int = Field(0, ge=0)
    name: Optional[str] = Field(None, max_length=100)


class FarcasterChannelRequest(_CamelModel):
    domain: Optional[str] = Field(None, max_length=253)
    siwe_uri: Optional[str] = Field(None, max_length=2048)


class FarcasterCompleteRequest(_CamelModel):
    message: str = Field(..., max_length=MAX_STRING_LENGTH)
    signature: str = Field(..., max_length=1024)
    fid: int = Field(..., gt=0)
    username: Optional[str] = Field(None, max_length=64)
    display_name: Optional[str] = Field(None, max_length=256)
    bio: Optional[str] = Field(None, max_length=2048)
    pfp_url: Optional[str] = Field(None, max_length=2048)
    custody: Optional[str] = Field(None, pattern=r"^0x[a-fA-F0-9]{40}$")


class CreateProfileRequest(_CamelModel):
    name: str = Field(..., min_length=1, max_length=100)


class MpcKeyGeneratedRequest(_CamelModel):
    profile_id: str
    key_id: str = Field(..., max_length=256)
    public_key: str = Field(..., max_length=8192)
    address: str = Field(..., pattern=r"^0x[a-fA-F0-9]{40}$")


# responses


def present_metadata(metadata: Dict[str, Any]) -> Dict[str, str]:
    """Flatten metadata to string values; nested values are JSON-encoded."""
    presented: Dict[str, str] = {}
    for key, value in (metadata or {}).items():
        if value is None:
            continue
        if isinstance(value, str):
            presented[key] = value
        elif isinstance(value, bool):
            presented[key] = "true" if value else "false"
        elif isinstance(value, (int, float)):
            presented[key] = str(value)
        else:
            presented[key] = json.dumps(value, separators=(",", ":"), sort_keys=True)
    return presented


class AccountResponse(_CamelModel):
    id: str
    type: str
    identifier: str
    provider: Optional[str] = None
    verified: bool
    metadata: Dict[str, str] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_account(cls, account: Account) -> "AccountResponse":
        metadata = dict(account.metadata)
        # passkey public keys are not echoed back
        metadata.pop("publicKey", None)
        return cls(
            id=account.id,
            type=account.type.value,
            identifier=account.identifier,
            provider=account.provider,
            verified=account.verified,
            metadata=present_metadata(metadata),
            created_at=account.created_at,
            updated_at=account.updated_at,
        )


class ProfileResponse(_CamelModel):
    id: str
    name: str
    session_wallet_address: Optional[str] = None
    is_active: bool
    last_active_at: datetime
    created_at: datetime

    @classmethod
    def from_profile(cls, profile: Profile) -> "ProfileResponse":
        return cls(
            id=profile.id,
            name=profile.name,
            session_wallet_address=profile.session_wallet_address,
            is_active=profile.is_active,
            last_active_at=profile.last_active_at,
            created_at=profile.created_at,
        )


class TokensResponse(_CamelModel):
    access_token: str
    refresh_token: str
    expires_in: int


class SessionResponse(_CamelModel):
    session_id: str
    device_id: Optional[str] = None
    privacy_mode: PrivacyMode
    active_profile_id: Optional[str] = None
    expires_at: datetime
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_session(cls, session: AccountSession) -> "SessionResponse":
        return cls(
            session_id=session.session_id,
            device_id=session.device_id,
            privacy_mode=session.privacy_mode,
            active_profile_id=session.active_profile_id,
            expires_at=session.expires_at,
            created_at=session.created_at,
            updated_at=session.updated_at,
        )


class AuthResponse(_CamelModel):
    account: AccountResponse
    profiles: List[ProfileResponse]
    active_profile: Optional[ProfileResponse] = None
    tokens: TokensResponse
    requires_profile: bool
    is_new_account: bool
    session_id: str
    privacy_mode: PrivacyMode


class IdentityLinkResponse(_CamelModel):
    account_a_id: str
    account_b_id: str
    link_type: str
    privacy_mode: PrivacyMode
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_link(cls, link: IdentityLink) -> "IdentityLinkResponse":
        return cls(
            account_a_id=link.account_a_id,
            account_b_id=link.account_b_id,
            link_type=link.link_type.value,
            privacy_mode=link.privacy_mode,
            created_at=link.created_at,
            updated_at=link.updated_at,
        )


class LinkAccountsResponse(_CamelModel):
    link: IdentityLinkResponse
    linked_account: AccountResponse
    is_new_account: bool


class IdentityGraphResponse(_CamelModel):
    accounts: List[AccountResponse]
    links: List[IdentityLinkResponse]
    current_account_id: str


class MeResponse(_CamelModel):
    account: AccountResponse
    session: SessionResponse
    profiles: List[ProfileResponse]
    active_profile: Optional[ProfileResponse] = None
    linked_accounts: Optional[List[AccountResponse]] = None


class NonceResponse(_CamelModel):
    nonce: str
    expires_at: datetime


class PasskeyChallengeResponse(_CamelModel):
    challenge: str
    rp_id: str
    timeout: int


class FarcasterChannelResponse(_CamelModel):
    channel_token: str
    url: str
    nonce: str
    domain: str
    siwe_uri: str
    status: str
    expires_at: datetime
    message: Optional[str] = None
    signature: Optional[str] = None
    fid: Optional[int] = None
    username: Optional[str] = None
    display_name: Optional[str] = None
    bio: Optional[str] = None
    pfp_url: Optional[str] = None
    custody: Optional[str] = None

    @classmethod
    def from_channel(cls, channel: FarcasterChannel, url: str) -> "FarcasterChannelResponse":
        return cls(
            channel_token=channel.channel_token,
            url=url,
            nonce=channel.nonce,
            domain=channel.domain,
            siwe_uri=channel.siwe_uri,
            status=channel.status,
            expires_at=channel.expires_at,
            message=channel.message,
            signature=channel.signature,
            fid=channel.fid,
            username=channel.username,
            display_name=channel.display_name,
            bio=channel.bio,
            pfp_url=channel.pfp_url,
            custody=channel.custody_address,
        )


class SwitchProfileResponse(_CamelModel):
    active_profile: ProfileResponse
    tokens: TokensResponse


class CreateProfileResponse(_CamelModel):
    profile: ProfileResponse
    tokens: Optional[TokensResponse] = None
