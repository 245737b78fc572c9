"""Provider token verification for social sign-in.

Each provider exposes ``verify(token) -> SocialIdentity``; the registry maps
provider names to verifiers and normalizes every failure to a stable code.
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol

import httpx
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from interspace_auth.logging import get_logger
from interspace_auth.service.errors import AuthenticationError, ValidationError
from interspace_auth.service.security_events import AUTH_FAILED, record_security_event
from interspace_auth.service.tokens import b64url_decode

logger = get_logger(__name__)

GOOGLE_TOKENINFO_URL = "https://oauth2.googleapis.com/tokeninfo"
GOOGLE_ISSUERS = {"accounts.google.com", "https://accounts.google.com"}
APPLE_KEYS_URL = "https://appleid.apple.com/auth/keys"
APPLE_ISSUER = "https://appleid.apple.com"
DISCORD_USER_URL = "https://discord.com/api/users/@me"


class SocialVerificationError(Exception):
    """Provider rejected the token or returned an unusable identity."""


@dataclass
class SocialIdentity:
    id: str
    email: Optional[str] = None
    verified: bool = False
    name: Optional[str] = None
    picture: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


class SocialVerifier(Protocol):
    async def verify(self, token: str) -> SocialIdentity: ...


def _truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value.lower() == "true"
    return bool(value)


class _HttpVerifier:
    def __init__(
        self, *, transport: Optional[httpx.AsyncBaseTransport] = None, timeout: float = 10.0
    ) -> None:
        self._transport = transport
        self._timeout = timeout

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=httpx.Timeout(self._timeout, connect=5.0),
            follow_redirects=False,
            transport=self._transport,
        )

    @staticmethod
    def _json(response: httpx.Response) -> dict:
        try:
            payload = response.json()
        except ValueError as exc:
            raise SocialVerificationError("provider returned invalid JSON") from exc
        if not isinstance(payload, dict):
            raise SocialVerificationError("provider returned unexpected payload")
        return payload


class GoogleVerifier(_HttpVerifier):
    """Validates Google ID tokens through the tokeninfo endpoint."""

    def __init__(self, client_id: Optional[str], **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.client_id = client_id

    async def verify(self, token: str) -> SocialIdentity:
        async with self._client() as client:
            response = await client.get(GOOGLE_TOKENINFO_URL, params={"id_token": token})
        if response.status_code != 200:
            raise SocialVerificationError(f"tokeninfo rejected token ({response.status_code})")
        info = self._json(response)
        if info.get("iss") not in GOOGLE_ISSUERS:
            raise SocialVerificationError("unexpected issuer")
        if self.client_id and info.get("aud") != self.client_id:
            raise SocialVerificationError("audience mismatch")
        try:
            if int(info.get("exp", 0)) <= time.time():
                raise SocialVerificationError("token expired")
        except (TypeError, ValueError) as exc:
            raise SocialVerificationError("invalid expiry") from exc
        if not info.get("sub"):
            raise SocialVerificationError("missing subject")
        return SocialIdentity(
            id=str(info["sub"]),
            email=info.get("email"),
            verified=_truthy(info.get("email_verified")),
            name=info.get("name"),
            picture=info.get("picture"),
            raw=info,
        )


class AppleVerifier(_HttpVerifier):
    """Validates Sign in with Apple identity tokens against Apple's published RS256 keys."""

    def __init__(self, client_id: Optional[str], **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.client_id = client_id
        self._keys: Dict[str, rsa.RSAPublicKey] = {}

    async def _load_keys(self) -> None:
        async with self._client() as client:
            response = await client.get(APPLE_KEYS_URL)
        response.raise_for_status()
        keys: Dict[str, rsa.RSAPublicKey] = {}
        for jwk in self._json(response).get("keys", []):
            if not isinstance(jwk, dict) or jwk.get("kty") != "RSA" or not jwk.get("kid"):
                continue
            try:
                numbers = rsa.RSAPublicNumbers(
                    e=int.from_bytes(b64url_decode(jwk["e"]), "big"),
                    n=int.from_bytes(b64url_decode(jwk["n"]), "big"),
                )
            except (KeyError, TypeError, ValueError):
                logger.warning("apple_jwk_skipped", kid=jwk.get("kid"))
                continue
            keys[jwk["kid"]] = numbers.public_key()
        self._keys = keys

    async def _key_for(self, kid: str) -> rsa.RSAPublicKey:
        if kid not in self._keys:
            try:
                await self._load_keys()
            except httpx.HTTPError as exc:
                raise SocialVerificationError("unable to fetch signing keys") from exc
        key = self._keys.get(kid)
        if not key:
            raise SocialVerificationError("unknown signing key")
        return key

    async def verify(self, token: str) -> SocialIdentity:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
            header = json.loads(b64url_decode(header_b64))
            claims = json.loads(b64url_decode(payload_b64))
            signature = b64url_decode(sig_b64)
        except (ValueError, TypeError) as exc:
            raise SocialVerificationError("malformed identity token") from exc
        if not isinstance(header, dict) or not isinstance(claims, dict):
            raise SocialVerificationError("malformed identity token")
        if header.get("alg") != "RS256":
            raise SocialVerificationError("unsupported algorithm")
        kid = header.get("kid")
        if not isinstance(kid, str):
            raise SocialVerificationError("missing key id")
        key = await self._key_for(kid)
        try:
            key.verify(
                signature,
                f"{header_b64}.{payload_b64}".encode(),
                padding.PKCS1v15(),
                hashes.SHA256(),
            )
        except InvalidSignature as exc:
            raise SocialVerificationError("bad signature") from exc
        if claims.get("iss") != APPLE_ISSUER:
            raise SocialVerificationError("unexpected issuer")
        aud = claims.get("aud")
        if self.client_id and aud != self.client_id and not (
            isinstance(aud, list) and self.client_id in aud
        ):
            raise SocialVerificationError("audience mismatch")
        try:
            if float(claims.get("exp", 0)) <= time.time():
                raise SocialVerificationError("token expired")
        except (TypeError, ValueError) as exc:
            raise SocialVerificationError("invalid expiry") from exc
        if not claims.get("sub"):
            raise SocialVerificationError("missing subject")
        return SocialIdentity(
            id=str(claims["sub"]),
            email=claims.get("email"),
            verified=_truthy(claims.get("email_verified")),
            raw=claims,
        )


class DiscordVerifier(_HttpVerifier):
    """Resolves a Discord OAuth access token to the user it was issued for."""

    async def verify(self, token: str) -> SocialIdentity:
        async with self._client() as client:
            response = await client.get(
                DISCORD_USER_URL, headers={"Authorization": f"Bearer {token}"}
            )
        if response.status_code != 200:
            raise SocialVerificationError(f"user lookup failed ({response.status_code})")
        user = self._json(response)
        if not user.get("id"):
            raise SocialVerificationError("missing user id")
        return SocialIdentity(
            id=str(user["id"]),
            email=user.get("email"),
            verified=_truthy(user.get("verified")),
            name=user.get("global_name") or user.get("username"),
            raw=user,
        )


class SocialVerifierRegistry:
    def __init__(self, verifiers: Optional[Dict[str, SocialVerifier]] = None) -> None:
        self._verifiers: Dict[str, SocialVerifier] = {}
        for provider, verifier in (verifiers or {}).items():
            self.register(provider, verifier)

    def register(self, provider: str, verifier: SocialVerifier) -> None:
        self._verifiers[provider.strip().lower()] = verifier

    @property
    def providers(self) -> list[str]:
        return sorted(self._verifiers)

    async def verify(
        self, provider: str, token: str, *, ip_address: Optional[str] = None
    ) -> SocialIdentity:
        name = (provider or "").strip().lower()
        verifier = self._verifiers.get(name)
        if not verifier:
            raise ValidationError(
                f"unsupported provider: {provider}",
                error_code="UNSUPPORTED_PROVIDER",
                detail={"supported": self.providers},
            )
        if not token:
            raise ValidationError("provider token required", detail={"field": "token"})
        try:
            identity = await verifier.verify(token)
        except SocialVerificationError as exc:
            record_security_event(
                AUTH_FAILED, strategy="social", provider=name, reason=str(exc), ip_address=ip_address
            )
            raise AuthenticationError("social authentication failed", error_code="SOCIAL_AUTH_FAILED")
        except httpx.HTTPError as exc:
            logger.error("social_provider_unreachable", provider=name, error=str(exc))
            raise AuthenticationError("social authentication failed", error_code="SOCIAL_AUTH_FAILED")
        logger.info("social_identity_verified", provider=name, email_verified=identity.verified)
        return identity


def default_registry(
    *, google_client_id: Optional[str] = None, apple_client_id: Optional[str] = None
) -> SocialVerifierRegistry:
    return SocialVerifierRegistry(
        {
            "google": GoogleVerifier(google_client_id),
            "apple": AppleVerifier(apple_client_id),
            "discord": DiscordVerifier(),
        }
    )
