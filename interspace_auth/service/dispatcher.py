"""Multi-strategy authentication.

Each strategy is a request variant with its own verifier. Verifiers only
prove control of a credential and describe the account it maps to; the
dispatcher then runs the common tail for every strategy: find-or-create the
account, mark it verified when ownership was proven, resolve the profiles
attached directly to it, open a session and issue tokens.
"""

from __future__ import annotations

import secrets
import string
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol, Union

from interspace_auth.logging import get_logger
from interspace_auth.service.accounts import AccountService
from interspace_auth.service.email_codes import EmailCodeService
from interspace_auth.service.errors import ValidationError
from interspace_auth.service.farcaster import FarcasterService
from interspace_auth.service.identity_graph import IdentityGraphService
from interspace_auth.service.passkeys import PasskeyService
from interspace_auth.service.sessions import SessionManager
from interspace_auth.service.siwe import SiweService
from interspace_auth.service.social import SocialVerifierRegistry
from interspace_auth.service.tokens import TokenPair, TokenService
from interspace_auth.storage.models import (
    Account,
    AccountSession,
    AccountType,
    PrivacyMode,
    Profile,
)

logger = get_logger(__name__)


@dataclass
class WalletAuthRequest:
    message: str
    signature: str
    wallet_address: Optional[str] = None
    chain_id: Optional[int] = None

    strategy = "wallet"


@dataclass
class EmailAuthRequest:
    email: str
    code: str

    strategy = "email"


@dataclass
class SocialAuthRequest:
    provider: str
    token: str

    strategy = "social"


@dataclass
class GuestAuthRequest:
    strategy = "guest"


@dataclass
class PasskeyAuthRequest:
    credential_id: str
    client_data_json: str
    authenticator_data: str
    signature: str

    strategy = "passkey"


@dataclass
class FarcasterAuthRequest:
    message: Optional[str] = None
    signature: Optional[str] = None
    fid: Optional[int] = None
    channel_token: Optional[str] = None

    strategy = "farcaster"


AuthStrategyRequest = Union[
    WalletAuthRequest,
    EmailAuthRequest,
    SocialAuthRequest,
    GuestAuthRequest,
    PasskeyAuthRequest,
    FarcasterAuthRequest,
]


@dataclass
class ClientContext:
    device_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    privacy_mode: PrivacyMode = PrivacyMode.LINKED


@dataclass
class VerifiedIdentity:
    """Outcome of a strategy verifier.

    ``account`` is set by lookup-only strategies that resolve an existing
    account instead of naming one to find or create.
    """

    account_type: AccountType
    identifier: str
    provider: Optional[str] = None
    metadata: Dict = field(default_factory=dict)
    proves_ownership: bool = True
    account: Optional[Account] = None


@dataclass
class AuthResult:
    account: Account
    profiles: List[Profile]
    active_profile: Optional[Profile]
    tokens: TokenPair
    session: AccountSession
    is_new_account: bool

    @property
    def requires_profile(self) -> bool:
        return not self.profiles


class StrategyVerifier(Protocol):
    async def verify(self, request, context: ClientContext) -> VerifiedIdentity: ...


class WalletVerifier:
    def __init__(self, siwe: SiweService) -> None:
        self.siwe = siwe

    async def verify(self, request: WalletAuthRequest, context: ClientContext) -> VerifiedIdentity:
        result = self.siwe.verify(
            request.message,
            request.signature,
            expected_address=request.wallet_address,
            expected_chain_id=request.chain_id,
            ip_address=context.ip_address,
        )
        return VerifiedIdentity(
            account_type=AccountType.WALLET,
            identifier=result.address.lower(),
            metadata={"chainId": result.message.chain_id},
        )


class EmailVerifier:
    def __init__(self, codes: EmailCodeService) -> None:
        self.codes = codes

    async def verify(self, request: EmailAuthRequest, context: ClientContext) -> VerifiedIdentity:
        email = self.codes.verify_code(request.email, request.code)
        return VerifiedIdentity(account_type=AccountType.EMAIL, identifier=email)


class SocialTokenVerifier:
    def __init__(self, registry: SocialVerifierRegistry) -> None:
        self.registry = registry

    async def verify(self, request: SocialAuthRequest, context: ClientContext) -> VerifiedIdentity:
        identity = await self.registry.verify(
            request.provider, request.token, ip_address=context.ip_address
        )
        metadata = {
            key: value
            for key, value in (
                ("email", identity.email),
                ("name", identity.name),
                ("picture", identity.picture),
            )
            if value
        }
        return VerifiedIdentity(
            account_type=AccountType.SOCIAL,
            identifier=identity.id,
            provider=request.provider.strip().lower(),
            metadata=metadata,
            proves_ownership=identity.verified,
        )


def guest_identifier() -> str:
    alphabet = string.ascii_lowercase + string.digits
    suffix = "".join(secrets.choice(alphabet) for _ in range(7))
    return f"guest_{int(time.time() * 1000)}_{suffix}"


class GuestVerifier:
    async def verify(self, request: GuestAuthRequest, context: ClientContext) -> VerifiedIdentity:
        return VerifiedIdentity(
            account_type=AccountType.GUEST,
            identifier=guest_identifier(),
            proves_ownership=False,
        )


class PasskeyVerifier:
    def __init__(self, passkeys: PasskeyService) -> None:
        self.passkeys = passkeys

    async def verify(self, request: PasskeyAuthRequest, context: ClientContext) -> VerifiedIdentity:
        account = self.passkeys.verify_assertion(
            request.credential_id,
            client_data_json=request.client_data_json,
            authenticator_data=request.authenticator_data,
            signature=request.signature,
            ip_address=context.ip_address,
        )
        return VerifiedIdentity(
            account_type=AccountType.PASSKEY,
            identifier=account.identifier,
            account=account,
        )


class FarcasterVerifier:
    def __init__(self, farcaster: FarcasterService) -> None:
        self.farcaster = farcaster

    async def verify(self, request: FarcasterAuthRequest, context: ClientContext) -> VerifiedIdentity:
        if request.channel_token:
            identity = await self.farcaster.authenticate_channel(
                request.channel_token, ip_address=context.ip_address
            )
        elif request.message and request.signature:
            identity = await self.farcaster.verify(
                request.message,
                request.signature,
                expected_fid=request.fid,
                ip_address=context.ip_address,
            )
        else:
            raise ValidationError("channelToken or message and signature are required")
        return VerifiedIdentity(
            account_type=AccountType.SOCIAL,
            identifier=str(identity.fid),
            provider="farcaster",
            metadata=identity.metadata(),
        )


class AuthenticationDispatcher:
    def __init__(
        self,
        accounts: AccountService,
        graph: IdentityGraphService,
        sessions: SessionManager,
        tokens: TokenService,
        verifiers: Dict[type, StrategyVerifier],
    ) -> None:
        self.accounts = accounts
        self.graph = graph
        self.sessions = sessions
        self.tokens = tokens
        self.verifiers = verifiers

    async def verify_identity(
        self, request: AuthStrategyRequest, context: ClientContext
    ) -> VerifiedIdentity:
        verifier = self.verifiers.get(type(request))
        if verifier is None:
            raise ValidationError(
                "unsupported authentication strategy",
                error_code="UNSUPPORTED_STRATEGY",
                detail={"strategy": getattr(request, "strategy", None)},
            )
        return await verifier.verify(request, context)

    def resolve_account(self, identity: VerifiedIdentity) -> tuple[Account, bool]:
        """Find or create the account a verified identity names."""
        if identity.account is not None:
            account, created = identity.account, False
        else:
            account, created = self.accounts.find_or_create_account(
                identity.account_type,
                identity.identifier,
                provider=identity.provider,
                metadata=identity.metadata,
            )
            if identity.metadata and not created:
                account = self.accounts.update_metadata(account.id, identity.metadata)
        if identity.proves_ownership and not account.verified:
            account = self.accounts.verify_account(account.id)
        return account, created

    async def authenticate(
        self, request: AuthStrategyRequest, context: Optional[ClientContext] = None
    ) -> AuthResult:
        context = context or ClientContext()
        identity = await self.verify_identity(request, context)
        account, created = self.resolve_account(identity)

        profiles = self.graph.get_directly_linked_profiles(account.id)
        active_profile = profiles[0] if profiles else None

        session = self.sessions.create_session(
            account.id,
            device_id=context.device_id,
            ip_address=context.ip_address,
            user_agent=context.user_agent,
            privacy_mode=context.privacy_mode,
            active_profile_id=active_profile.id if active_profile else None,
        )
        tokens = self.tokens.generate_tokens(
            account.id,
            session.session_id,
            device_id=context.device_id,
            active_profile_id=session.active_profile_id,
        )
        logger.info(
            "authentication_succeeded",
            strategy=request.strategy,
            account_id=account.id,
            is_new_account=created,
            profile_count=len(profiles),
        )
        return AuthResult(
            account=account,
            profiles=profiles,
            active_profile=active_profile,
            tokens=tokens,
            session=session,
            is_new_account=created,
        )
