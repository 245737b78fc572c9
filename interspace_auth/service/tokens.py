from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from interspace_auth.config import Settings
from interspace_auth.logging import get_logger
from interspace_auth.service.errors import AuthenticationError
from interspace_auth.service.security_events import (
    LOGOUT_ALL,
    TOKEN_REUSE,
    record_security_event,
)
from interspace_auth.service.sessions import SessionManager
from interspace_auth.storage.models import (
    BlacklistedToken,
    BlacklistReason,
    IssuedRefreshToken,
    TokenType,
)
from interspace_auth.storage.redis_cache import Cache

logger = get_logger(__name__)


def b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def b64url_decode(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "accessToken": self.access_token,
            "refreshToken": self.refresh_token,
            "expiresIn": self.expires_in,
        }


class TokenService:
    """HS256 access/refresh tokens with a hash-keyed blacklist.

    The store holds the authoritative blacklist; the cache mirrors entries
    with a TTL so hot-path checks can skip the database.
    """

    def __init__(
        self,
        settings: Settings,
        store,
        sessions: SessionManager,
        *,
        cache: Cache = None,
        clock_skew_leeway_seconds: int = 30,
    ) -> None:
        self.settings = settings
        self.store = store
        self.sessions = sessions
        self.cache = cache
        self._clock_skew_leeway = timedelta(seconds=clock_skew_leeway_seconds)
        self.access_ttl = timedelta(minutes=settings.access_token_ttl_minutes)
        self.refresh_ttl = timedelta(days=settings.refresh_token_ttl_days)

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _sign(self, signing_input: str) -> str:
        return b64url_encode(
            hmac.new(
                self.settings.jwt_secret.encode(),
                signing_input.encode(),
                hashlib.sha256,
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = b64url_encode(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = b64url_encode(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        """Check structure, algorithm, signature, issuer and audience. Expiry is left to callers."""
        if not isinstance(token, str):
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        try:
            header = json.loads(b64url_decode(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg") if isinstance(header, dict) else None)
            return None

        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            return None
        try:
            payload = json.loads(b64url_decode(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == self.settings.jwt_audience
        elif isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            return None
        return payload

    def _is_expired(self, payload: dict[str, Any]) -> bool:
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return True
        return exp_ts <= time.time() - self._clock_skew_leeway.total_seconds()

    def generate_tokens(
        self,
        account_id: str,
        session_id: str,
        *,
        device_id: Optional[str] = None,
        active_profile_id: Optional[str] = None,
    ) -> TokenPair:
        now = self._now()
        iat = int(now.timestamp())
        base: dict[str, Any] = {
            "accountId": account_id,
            "sessionId": session_id,
            "iat": iat,
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
        }
        if device_id:
            base["deviceId"] = device_id
        if active_profile_id:
            base["activeProfileId"] = active_profile_id

        access_exp = now + self.access_ttl
        refresh_exp = now + self.refresh_ttl
        jti = str(uuid.uuid4())
        access_token = self._encode_jwt(
            {**base, "type": TokenType.ACCESS.value, "exp": int(access_exp.timestamp())}
        )
        refresh_token = self._encode_jwt(
            {
                **base,
                "type": TokenType.REFRESH.value,
                "jti": jti,
                "exp": int(refresh_exp.timestamp()),
            }
        )
        self.store.record_refresh_token(
            IssuedRefreshToken(
                jti=jti,
                account_id=account_id,
                session_id=session_id,
                token_hash=hash_token(refresh_token),
                expires_at=refresh_exp,
                created_at=now,
            )
        )
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=int(self.access_ttl.total_seconds()),
        )

    async def is_blacklisted(self, token: str) -> bool:
        token_hash = hash_token(token)
        if self.cache:
            try:
                if await self.cache.is_token_blacklisted(token_hash):
                    return True
            except Exception as exc:
                logger.warning("token_blacklist_cache_failed", error=str(exc))
        return self.store.is_token_blacklisted(token_hash)

    async def verify_token(self, token: str, expected_type: TokenType | str) -> dict[str, Any]:
        """Return the claims of a valid, unexpired, non-blacklisted token of ``expected_type``."""
        expected = TokenType(expected_type)
        payload = self._decode_jwt(token)
        if not payload or payload.get("type") != expected.value:
            raise AuthenticationError("invalid token", error_code="INVALID_TOKEN")
        if not payload.get("accountId") or not payload.get("sessionId"):
            raise AuthenticationError("invalid token", error_code="INVALID_TOKEN")
        if self._is_expired(payload):
            raise AuthenticationError("token expired", error_code="TOKEN_EXPIRED")
        if await self.is_blacklisted(token):
            if expected is TokenType.REFRESH:
                record_security_event(
                    TOKEN_REUSE,
                    account_id=payload.get("accountId"),
                    jti=payload.get("jti"),
                )
            raise AuthenticationError("token revoked", error_code="TOKEN_REVOKED")
        return payload

    async def blacklist_token(
        self,
        token: str,
        *,
        reason: BlacklistReason | str,
        token_type: Optional[TokenType | str] = None,
        account_id: Optional[str] = None,
    ) -> bool:
        """Blacklist until the token's own expiry. Returns False if it was already listed."""
        payload = self._decode_jwt(token) or {}
        kind = TokenType(token_type or payload.get("type") or TokenType.ACCESS.value)
        now = self._now()
        try:
            expires_at = datetime.fromtimestamp(float(payload["exp"]), tz=timezone.utc)
        except (KeyError, TypeError, ValueError):
            expires_at = now + (self.refresh_ttl if kind is TokenType.REFRESH else self.access_ttl)
        owner = account_id or payload.get("accountId")
        if not owner:
            return False
        token_hash = hash_token(token)
        inserted = self.store.add_blacklisted_token(
            BlacklistedToken(
                token_hash=token_hash,
                token_type=kind,
                account_id=owner,
                reason=BlacklistReason(reason),
                expires_at=expires_at,
                created_at=now,
            )
        )
        ttl = int((expires_at - now).total_seconds())
        if self.cache and ttl > 0:
            try:
                await self.cache.mark_token_blacklisted(token_hash, ttl)
            except Exception as exc:
                logger.warning("token_blacklist_cache_failed", error=str(exc))
        if inserted:
            logger.info(
                "token_blacklisted",
                account_id=owner,
                token_kind=kind.value,
                reason=BlacklistReason(reason).value,
            )
        return inserted

    async def rotate_refresh_token(self, refresh_token: str) -> tuple[dict[str, Any], TokenPair]:
        """Exchange a refresh token for a new pair; the old token is blacklisted first.

        Blacklisting claims the old token, so of two concurrent rotations only
        one receives a new pair.
        """
        claims = await self.verify_token(refresh_token, TokenType.REFRESH)
        session = self.sessions.validate_session(claims["sessionId"], claims["accountId"])
        claimed = await self.blacklist_token(
            refresh_token,
            reason=BlacklistReason.ROTATION,
            token_type=TokenType.REFRESH,
            account_id=claims["accountId"],
        )
        if not claimed:
            record_security_event(
                TOKEN_REUSE, account_id=claims["accountId"], jti=claims.get("jti"), race=True
            )
            raise AuthenticationError("token revoked", error_code="TOKEN_REVOKED")
        pair = self.generate_tokens(
            claims["accountId"],
            session.session_id,
            device_id=claims.get("deviceId") or session.device_id,
            active_profile_id=session.active_profile_id,
        )
        logger.info("refresh_token_rotated", account_id=claims["accountId"])
        return claims, pair

    async def logout(
        self,
        access_token: str,
        *,
        account_id: str,
        session_id: str,
        refresh_token: Optional[str] = None,
    ) -> None:
        """Revoke the presented access token, the caller's refresh token, and the session."""
        await self.blacklist_token(
            access_token,
            reason=BlacklistReason.LOGOUT,
            token_type=TokenType.ACCESS,
            account_id=account_id,
        )
        if refresh_token:
            claims = self._decode_jwt(refresh_token)
            # only the caller's own refresh tokens are accepted
            if claims and claims.get("accountId") == account_id:
                await self.blacklist_token(
                    refresh_token,
                    reason=BlacklistReason.LOGOUT,
                    token_type=TokenType.REFRESH,
                    account_id=account_id,
                )
        self.sessions.delete_session(session_id)
        logger.info("logout", account_id=account_id)

    async def logout_all_devices(
        self, account_id: str, *, reason: BlacklistReason | str = BlacklistReason.SECURITY
    ) -> dict[str, int]:
        """Blacklist every outstanding refresh token and drop every session of the account."""
        now = self._now()
        revoked = 0
        for record in self.store.list_outstanding_refresh_tokens(account_id, now):
            inserted = self.store.add_blacklisted_token(
                BlacklistedToken(
                    token_hash=record.token_hash,
                    token_type=TokenType.REFRESH,
                    account_id=account_id,
                    reason=BlacklistReason(reason),
                    expires_at=record.expires_at,
                    created_at=now,
                )
            )
            if not inserted:
                continue
            revoked += 1
            ttl = int((record.expires_at - now).total_seconds())
            if self.cache and ttl > 0:
                try:
                    await self.cache.mark_token_blacklisted(record.token_hash, ttl)
                except Exception as exc:
                    logger.warning("token_blacklist_cache_failed", error=str(exc))
        sessions_removed = self.sessions.delete_account_sessions(account_id)
        record_security_event(
            LOGOUT_ALL,
            account_id=account_id,
            reason=BlacklistReason(reason).value,
            revoked_count=revoked,
            sessions_removed=sessions_removed,
        )
        return {"revoked": revoked, "sessions": sessions_removed}

    def cleanup_expired(self) -> int:
        now = self._now()
        removed = self.store.delete_expired_blacklist(now)
        removed += self.store.delete_expired_refresh_tokens(now)
        if removed:
            logger.info("expired_token_records_removed", count=removed)
        return removed

    def blacklist_stats(self) -> dict:
        return self.store.blacklist_stats()
