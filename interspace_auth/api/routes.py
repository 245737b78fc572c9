from __future__ import annotations

import asyncio
import hmac
from dataclasses import dataclass
from typing import Annotated, Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, Header, Path, Request

from interspace_auth.api.schemas import (
    AccountResponse,
    AuthenticateRequest,
    AuthResponse,
    CreateProfileRequest,
    CreateProfileResponse,
    Envelope,
    FarcasterChannelRequest,
    FarcasterChannelResponse,
    FarcasterCompleteRequest,
    IdentityGraphResponse,
    IdentityLinkResponse,
    LinkAccountsResponse,
    LinkPrivacyRequest,
    LinkTargetRequest,
    LogoutRequest,
    MeResponse,
    MpcKeyGeneratedRequest,
    NonceResponse,
    PasskeyChallengeResponse,
    PasskeyRegisterRequest,
    ProfileResponse,
    RefreshRequest,
    RequestCodeRequest,
    SessionResponse,
    SwitchProfileResponse,
    TokensResponse,
)
from interspace_auth.logging import get_logger
from interspace_auth.service.email_codes import normalize_email
from interspace_auth.service.errors import (
    AuthenticationError,
    AuthorizationError,
    RateLimitError,
    ServerError,
    ServiceError,
)
from interspace_auth.service.runtime import check_rate_limit, get_runtime
from interspace_auth.storage.models import (
    Account,
    AccountSession,
    BlacklistReason,
    PrivacyMode,
    Profile,
    TokenType,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/v2")

AUTH_RATE_LIMIT_PER_MINUTE = 30
REFRESH_RATE_LIMIT_PER_MINUTE = 60


@dataclass
class AuthContext:
    account: Account
    session: AccountSession
    claims: Dict[str, Any]
    access_token: str


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


async def _enforce_rate_limit(runtime, key: str, limit: int, window_seconds: int) -> None:
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    if not allowed:
        raise RateLimitError(
            "rate limit exceeded",
            detail={"limit": limit, "window_seconds": window_seconds, "retry_after": reset_seconds},
        )


async def get_current_auth(authorization: Optional[str] = Header(None)) -> AuthContext:
    """Bearer access token -> validated session -> account."""
    if not authorization or not authorization.lower().startswith("bearer "):
        raise AuthenticationError("missing bearer token", error_code="unauthorized")
    token = authorization.split(" ", 1)[1].strip()
    runtime = get_runtime()
    claims = await runtime.tokens.verify_token(token, TokenType.ACCESS)
    session = runtime.sessions.validate_session(claims["sessionId"], claims["accountId"])
    account = runtime.accounts.get_account(claims["accountId"])
    return AuthContext(account=account, session=session, claims=claims, access_token=token)


async def require_active_profile(principal: AuthContext = Depends(get_current_auth)) -> Profile:
    """The session's active profile, re-checked against the account's direct links."""
    profile_id = principal.session.active_profile_id
    if not profile_id:
        raise AuthorizationError("no active profile", error_code="NO_ACTIVE_PROFILE")
    runtime = get_runtime()
    if not runtime.graph.has_direct_profile_access(principal.account.id, profile_id):
        runtime.sessions.set_active_profile(principal.session.session_id, None)
        raise AuthorizationError("no active profile", error_code="NO_ACTIVE_PROFILE")
    return runtime.profiles.get_profile_for_account(principal.account.id, profile_id)


def _require_graph_visibility(principal: AuthContext) -> None:
    if principal.session.privacy_mode is PrivacyMode.ISOLATED:
        raise AuthorizationError(
            "identity graph is hidden in isolated sessions",
            error_code="PRIVACY_MODE_RESTRICTION",
        )


@router.get("/auth/siwe/nonce", response_model=Envelope, tags=["auth"])
async def siwe_nonce(request: Request):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, f"nonce:{_client_ip(request)}", AUTH_RATE_LIMIT_PER_MINUTE, 60
    )
    record = runtime.nonces.issue_nonce()
    return Envelope(
        status="ok",
        data=NonceResponse(nonce=record.nonce, expires_at=record.expires_at).dump(),
    )


@router.post("/auth/email/request-code", response_model=Envelope, tags=["auth"])
async def request_email_code(body: RequestCodeRequest):
    runtime = get_runtime()
    email = normalize_email(body.email)
    await _enforce_rate_limit(
        runtime, f"email_code:{email}", runtime.settings.email_code_hourly_limit, 3600
    )
    code = runtime.email_codes.issue_code(email)
    sent = await asyncio.to_thread(
        runtime.email.send_verification_code,
        email,
        code,
        runtime.settings.email_code_ttl_minutes,
    )
    if not sent:
        raise ServerError("unable to send verification code", error_code="EMAIL_SEND_FAILED")
    return Envelope(
        status="ok",
        data={"sent": True, "expiresInMinutes": runtime.settings.email_code_ttl_minutes},
    )


@router.post("/auth/authenticate", response_model=Envelope, tags=["auth"])
async def authenticate(
    body: Annotated[AuthenticateRequest, Body(discriminator="strategy")],
    request: Request,
):
    runtime = get_runtime()
    ip_address = _client_ip(request)
    await _enforce_rate_limit(runtime, f"auth:{ip_address}", AUTH_RATE_LIMIT_PER_MINUTE, 60)
    result = await runtime.dispatcher.authenticate(
        body.to_request(),
        body.context(ip_address=ip_address, user_agent=request.headers.get("user-agent")),
    )
    return Envelope(
        status="ok",
        data=AuthResponse(
            account=AccountResponse.from_account(result.account),
            profiles=[ProfileResponse.from_profile(p) for p in result.profiles],
            active_profile=(
                ProfileResponse.from_profile(result.active_profile)
                if result.active_profile
                else None
            ),
            tokens=TokensResponse(**vars(result.tokens)),
            requires_profile=result.requires_profile,
            is_new_account=result.is_new_account,
            session_id=result.session.session_id,
            privacy_mode=result.session.privacy_mode,
        ).dump(),
    )


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: RefreshRequest, request: Request):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, f"refresh:{_client_ip(request)}", REFRESH_RATE_LIMIT_PER_MINUTE, 60
    )
    _, pair = await runtime.tokens.rotate_refresh_token(body.refresh_token)
    return Envelope(status="ok", data=TokensResponse(**vars(pair)).dump())


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    body: Optional[LogoutRequest] = None,
    principal: AuthContext = Depends(get_current_auth),
):
    await get_runtime().tokens.logout(
        principal.access_token,
        account_id=principal.account.id,
        session_id=principal.session.session_id,
        refresh_token=body.refresh_token if body else None,
    )
    return Envelope(status="ok", data={"loggedOut": True})


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(principal: AuthContext = Depends(get_current_auth)):
    runtime = get_runtime()
    await runtime.tokens.blacklist_token(
        principal.access_token,
        reason=BlacklistReason.SECURITY,
        token_type=TokenType.ACCESS,
        account_id=principal.account.id,
    )
    result = await runtime.tokens.logout_all_devices(principal.account.id)
    return Envelope(
        status="ok",
        data={"revokedTokens": result["revoked"], "deletedSessions": result["sessions"]},
    )


@router.post("/auth/link-accounts", response_model=Envelope, tags=["auth"])
async def link_accounts(
    body: Annotated[LinkTargetRequest, Body(discriminator="strategy")],
    request: Request,
    principal: AuthContext = Depends(get_current_auth),
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, f"link:{principal.account.id}", AUTH_RATE_LIMIT_PER_MINUTE, 60
    )
    result = await runtime.linking.link_accounts(
        principal.account.id,
        body.to_request(),
        privacy_mode=body.privacy_mode,
        context=body.context(
            ip_address=_client_ip(request), user_agent=request.headers.get("user-agent")
        ),
    )
    return Envelope(
        status="ok",
        data=LinkAccountsResponse(
            link=IdentityLinkResponse.from_link(result.link),
            linked_account=AccountResponse.from_account(result.linked_account),
            is_new_account=result.is_new_account,
        ).dump(),
    )


@router.put("/auth/link-privacy", response_model=Envelope, tags=["auth"])
async def update_link_privacy(
    body: LinkPrivacyRequest, principal: AuthContext = Depends(get_current_auth)
):
    runtime = get_runtime()
    link = runtime.graph.set_link_privacy_mode(
        principal.account.id, body.target_account_id, body.privacy_mode
    )
    return Envelope(status="ok", data=IdentityLinkResponse.from_link(link).dump())


@router.get("/auth/identity-graph", response_model=Envelope, tags=["auth"])
async def identity_graph(principal: AuthContext = Depends(get_current_auth)):
    _require_graph_visibility(principal)
    graph = get_runtime().graph.get_identity_graph(principal.account.id)
    return Envelope(
        status="ok",
        data=IdentityGraphResponse(
            accounts=[AccountResponse.from_account(a) for a in graph["accounts"]],
            links=[IdentityLinkResponse.from_link(link) for link in graph["links"]],
            current_account_id=graph["current_account_id"],
        ).dump(),
    )


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(principal: AuthContext = Depends(get_current_auth)):
    runtime = get_runtime()
    profiles = runtime.graph.get_directly_linked_profiles(principal.account.id)
    active = next(
        (p for p in profiles if p.id == principal.session.active_profile_id), None
    )
    linked_accounts = None
    if principal.session.privacy_mode is not PrivacyMode.ISOLATED:
        linked_ids = runtime.graph.get_linked_accounts(principal.account.id)
        linked_ids.discard(principal.account.id)
        linked_accounts = [
            AccountResponse.from_account(a) for a in runtime.store.list_accounts(linked_ids)
        ]
    return Envelope(
        status="ok",
        data=MeResponse(
            account=AccountResponse.from_account(principal.account),
            session=SessionResponse.from_session(principal.session),
            profiles=[ProfileResponse.from_profile(p) for p in profiles],
            active_profile=ProfileResponse.from_profile(active) if active else None,
            linked_accounts=linked_accounts,
        ).dump(),
    )


@router.post("/auth/switch-profile/{profile_id}", response_model=Envelope, tags=["auth"])
async def switch_profile(
    profile_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_current_auth),
):
    profile, tokens = get_runtime().profiles.switch_profile(principal.session, profile_id)
    return Envelope(
        status="ok",
        data=SwitchProfileResponse(
            active_profile=ProfileResponse.from_profile(profile),
            tokens=TokensResponse(**vars(tokens)),
        ).dump(),
    )


@router.post("/auth/passkey/challenge", response_model=Envelope, tags=["auth"])
async def passkey_challenge(request: Request):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, f"passkey:{_client_ip(request)}", AUTH_RATE_LIMIT_PER_MINUTE, 60
    )
    challenge = runtime.passkeys.issue_challenge()
    return Envelope(
        status="ok",
        data=PasskeyChallengeResponse(
            challenge=challenge.challenge, rp_id=challenge.rp_id, timeout=challenge.timeout_ms
        ).dump(),
    )


@router.post("/auth/passkey/register", response_model=Envelope, tags=["auth"])
async def passkey_register(
    body: PasskeyRegisterRequest, principal: AuthContext = Depends(get_current_auth)
):
    account = get_runtime().passkeys.register_passkey(
        principal.account.id,
        body.credential_id,
        body.public_key,
        sign_count=body.sign_count,
        name=body.name,
    )
    return Envelope(status="ok", data=AccountResponse.from_account(account).dump())


@router.post("/auth/farcaster/channel", response_model=Envelope, tags=["auth"])
async def farcaster_create_channel(body: FarcasterChannelRequest, request: Request):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, f"farcaster:{_client_ip(request)}", AUTH_RATE_LIMIT_PER_MINUTE, 60
    )
    channel = runtime.farcaster.create_channel(domain=body.domain, siwe_uri=body.siwe_uri)
    return Envelope(
        status="ok",
        data=FarcasterChannelResponse.from_channel(
            channel, runtime.farcaster.connect_uri(channel.channel_token)
        ).dump(),
    )


@router.get("/auth/farcaster/channel/{channel_token}", response_model=Envelope, tags=["auth"])
async def farcaster_channel_status(channel_token: str = Path(..., max_length=128)):
    runtime = get_runtime()
    channel = runtime.farcaster.get_channel_status(channel_token)
    return Envelope(
        status="ok",
        data=FarcasterChannelResponse.from_channel(
            channel, runtime.farcaster.connect_uri(channel.channel_token)
        ).dump(),
    )


@router.post(
    "/auth/farcaster/channel/{channel_token}/complete", response_model=Envelope, tags=["auth"]
)
async def farcaster_complete_channel(
    body: FarcasterCompleteRequest, channel_token: str = Path(..., max_length=128)
):
    runtime = get_runtime()
    channel = runtime.farcaster.complete_channel(
        channel_token,
        message=body.message,
        signature=body.signature,
        fid=body.fid,
        username=body.username,
        display_name=body.display_name,
        bio=body.bio,
        pfp_url=body.pfp_url,
        custody_address=body.custody,
    )
    return Envelope(
        status="ok",
        data=FarcasterChannelResponse.from_channel(
            channel, runtime.farcaster.connect_uri(channel.channel_token)
        ).dump(),
    )


@router.post("/profiles", response_model=Envelope, tags=["profiles"])
async def create_profile(
    body: CreateProfileRequest, principal: AuthContext = Depends(get_current_auth)
):
    runtime = get_runtime()
    profile = runtime.profiles.create_profile(principal.account.id, body.name)
    tokens = None
    if not principal.session.active_profile_id:
        profile, pair = runtime.profiles.switch_profile(principal.session, profile.id)
        tokens = TokensResponse(**vars(pair))
    return Envelope(
        status="ok",
        data=CreateProfileResponse(
            profile=ProfileResponse.from_profile(profile), tokens=tokens
        ).dump(),
    )


@router.get("/profiles", response_model=Envelope, tags=["profiles"])
async def list_profiles(principal: AuthContext = Depends(get_current_auth)):
    profiles = get_runtime().profiles.list_profiles(principal.account.id)
    return Envelope(
        status="ok", data=[ProfileResponse.from_profile(p).dump() for p in profiles]
    )


@router.get("/profiles/active", response_model=Envelope, tags=["profiles"])
async def active_profile(profile: Profile = Depends(require_active_profile)):
    return Envelope(status="ok", data=ProfileResponse.from_profile(profile).dump())


@router.post("/webhooks/mpc/key-generated", response_model=Envelope, tags=["webhooks"])
async def mpc_key_generated(
    body: MpcKeyGeneratedRequest,
    x_webhook_secret: Optional[str] = Header(None, alias="X-Webhook-Secret"),
):
    runtime = get_runtime()
    expected = runtime.settings.mpc_webhook_secret
    if not expected:
        raise ServiceError(
            "webhook not configured", status_code=503, error_code="service_unavailable"
        )
    if not x_webhook_secret or not hmac.compare_digest(x_webhook_secret, expected):
        logger.warning("mpc_webhook_rejected")
        raise AuthenticationError("invalid webhook secret", error_code="unauthorized")
    profile = runtime.profiles.handle_mpc_key_generated(
        body.profile_id, body.key_id, body.public_key, body.address
    )
    return Envelope(status="ok", data=ProfileResponse.from_profile(profile).dump())
