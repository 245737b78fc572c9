from __future__ import annotations

import logging
from typing import Any

from interspace_auth.logging import get_logger

logger = get_logger("interspace_auth.security")

AUTH_FAILED = "AUTH_FAILED"
NONCE_REPLAY = "SUSPICIOUS_ACTIVITY_NONCE_REPLAY"
BRUTE_FORCE = "SUSPICIOUS_ACTIVITY_BRUTE_FORCE"
TOKEN_REUSE = "SUSPICIOUS_ACTIVITY_TOKEN_REUSE"
CUSTODY_MISMATCH = "FARCASTER_CUSTODY_MISMATCH"
LOGOUT_ALL = "LOGOUT_ALL_DEVICES"


def record_security_event(event_type: str, **details: Any) -> None:
    """Emit a security event. Never raises into the calling request."""
    try:
        logger.warning("security_event", security_event_type=event_type, **details)
    except Exception:
        logging.getLogger("interspace_auth.security").exception(
            "security event %s could not be recorded", event_type
        )
