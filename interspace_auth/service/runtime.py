from __future__ import annotations

import asyncio
import threading
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Tuple, Union
from urllib.parse import urlparse, urlunparse

from interspace_auth.config import get_settings, reset_settings_cache
from interspace_auth.logging import get_logger
from interspace_auth.service.accounts import AccountService
from interspace_auth.service.dispatcher import (
    AuthenticationDispatcher,
    EmailAuthRequest,
    EmailVerifier,
    FarcasterAuthRequest,
    FarcasterVerifier,
    GuestAuthRequest,
    GuestVerifier,
    PasskeyAuthRequest,
    PasskeyVerifier,
    SocialAuthRequest,
    SocialTokenVerifier,
    WalletAuthRequest,
    WalletVerifier,
)
from interspace_auth.service.email import EmailService
from interspace_auth.service.email_codes import EmailCodeService
from interspace_auth.service.farcaster import FarcasterService, IdRegistryCustodyReader
from interspace_auth.service.identity_graph import IdentityGraphService
from interspace_auth.service.linking import LinkingService
from interspace_auth.service.nonces import NonceService
from interspace_auth.service.passkeys import PasskeyService
from interspace_auth.service.profiles import ProfileService
from interspace_auth.service.sessions import SessionManager
from interspace_auth.service.siwe import SiweService
from interspace_auth.service.social import default_registry
from interspace_auth.service.tokens import TokenService
from interspace_auth.storage.memory import MemoryStore
from interspace_auth.storage.postgres import PostgresStore
from interspace_auth.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse(
                (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
            )
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Builds every service once and wires collaborators through constructors."""

    def __init__(self, *, custody_reader=None, social_registry=None):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
            logger.info(
                "runtime_store_initialized",
                store_type="memory" if self.settings.use_memory_store else "postgres",
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode avoids binding to a closed event loop
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for rate limits and the token blacklist fast path; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                mode=fallback_mode,
            )

        settings = self.settings
        self.accounts = AccountService(self.store)
        self.graph = IdentityGraphService(self.store)
        self.nonces = NonceService(self.store, ttl_seconds=settings.siwe_nonce_ttl_seconds)
        self.siwe = SiweService(
            self.nonces,
            domain=settings.siwe_domain,
            uri=settings.siwe_uri,
            chain_id=settings.siwe_chain_id,
            max_message_age_seconds=settings.siwe_max_message_age_seconds,
        )
        self.email_codes = EmailCodeService(
            self.store,
            ttl_minutes=settings.email_code_ttl_minutes,
            max_attempts=settings.email_code_max_attempts,
        )
        self.email = EmailService(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
        )
        self.social = social_registry or default_registry(
            google_client_id=settings.google_client_id,
            apple_client_id=settings.apple_client_id,
        )
        self.passkeys = PasskeyService(
            self.accounts,
            self.graph,
            self.nonces,
            rp_id=settings.passkey_rp_id,
            origin=settings.passkey_origin,
        )
        self.farcaster = FarcasterService(
            self.store,
            self.nonces,
            custody_reader
            or IdRegistryCustodyReader(settings.optimism_rpc_url, settings.farcaster_id_registry),
            relay_url=settings.farcaster_relay_url,
            channel_ttl_minutes=settings.farcaster_channel_ttl_minutes,
            domain=settings.siwe_domain,
            siwe_uri=settings.siwe_uri,
            max_message_age_seconds=settings.siwe_max_message_age_seconds,
        )
        self.sessions = SessionManager(self.store, ttl_days=settings.session_ttl_days)
        self.tokens = TokenService(settings, self.store, self.sessions, cache=self.cache)
        self.dispatcher = AuthenticationDispatcher(
            self.accounts,
            self.graph,
            self.sessions,
            self.tokens,
            {
                WalletAuthRequest: WalletVerifier(self.siwe),
                EmailAuthRequest: EmailVerifier(self.email_codes),
                SocialAuthRequest: SocialTokenVerifier(self.social),
                GuestAuthRequest: GuestVerifier(),
                PasskeyAuthRequest: PasskeyVerifier(self.passkeys),
                FarcasterAuthRequest: FarcasterVerifier(self.farcaster),
            },
        )
        self.linking = LinkingService(self.accounts, self.graph, self.dispatcher)
        self.profiles = ProfileService(self.store, self.graph, self.sessions, self.tokens)

        self._local_rate_limits: Dict[str, Tuple[float, datetime]] = {}
        self._local_rate_limit_lock = threading.Lock()

        logger.info(
            "runtime_initialized",
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
            social_providers=self.social.providers,
        )

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        if hasattr(self.store, "close"):
            self.store.close()

    def cleanup_expired(self) -> Dict[str, int]:
        """One sweep over every expiring record type."""
        return {
            "nonces": self.nonces.cleanup_expired(),
            "tokens": self.tokens.cleanup_expired(),
            "email_codes": self.email_codes.cleanup_expired(),
            "sessions": self.sessions.cleanup_expired(),
            "farcaster_channels": self.farcaster.cleanup_expired_channels(),
        }


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests(**kwargs) -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and isinstance(runtime.cache, SyncRedisCache):
            runtime.cache.client.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(**kwargs)
        return runtime


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    return_remaining: bool = False,
    cost: int = 1,
) -> Union[bool, Tuple[bool, int, int]]:
    """Token-bucket rate limit in Redis, or in process when Redis is disabled."""
    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    if window_seconds <= 0:
        logger.warning("rate_limit_invalid_window", window_seconds=window_seconds)
        window_seconds = 60
    if runtime.cache:
        return await runtime.cache.check_rate_limit(
            key, limit, window_seconds, return_remaining=return_remaining, cost=cost
        )
    now = datetime.now(timezone.utc)
    refill_rate = float(limit) / float(window_seconds)
    with runtime._local_rate_limit_lock:
        tokens, last_ts = runtime._local_rate_limits.get(key, (float(limit), now))
        elapsed = max(0.0, (now - last_ts).total_seconds())
        tokens = min(float(limit), tokens + elapsed * refill_rate)
        allowed = tokens >= cost
        if allowed:
            tokens -= cost
        runtime._local_rate_limits[key] = (tokens, now)
        reset_seconds = int((cost - tokens) / refill_rate) if not allowed and refill_rate > 0 else 0
        remaining = int(tokens)
    if return_remaining:
        return (allowed, remaining, reset_seconds)
    return allowed


async def run_periodic_cleanup(runtime: Runtime, interval_seconds: int) -> None:
    """Sweep expired records until cancelled."""
    interval = timedelta(seconds=max(1, interval_seconds)).total_seconds()
    while True:
        await asyncio.sleep(interval)
        try:
            removed = await asyncio.to_thread(runtime.cleanup_expired)
        except Exception as exc:
            logger.error("cleanup_sweep_failed", error_type=type(exc).__name__, error=str(exc))
            continue
        if any(removed.values()):
            logger.info("cleanup_sweep_completed", **removed)
