from __future__ import annotations

import re
import uuid
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from interspace_auth.logging import get_logger
from interspace_auth.service.errors import AuthorizationError, NotFoundError, ValidationError
from interspace_auth.service.identity_graph import IdentityGraphService
from interspace_auth.service.sessions import SessionManager
from interspace_auth.service.tokens import TokenPair, TokenService
from interspace_auth.storage.models import AccountSession, Profile, ProfileAccount

logger = get_logger(__name__)

_ADDRESS = re.compile(r"^0x[a-fA-F0-9]{40}$")
MAX_PROFILE_NAME = 100


class ProfileService:
    """Profile access boundary.

    Access to a profile is granted only by a ProfileAccount row for the exact
    account; linked accounts never inherit it.
    """

    def __init__(
        self,
        store,
        graph: IdentityGraphService,
        sessions: SessionManager,
        tokens: TokenService,
    ) -> None:
        self.store = store
        self.graph = graph
        self.sessions = sessions
        self.tokens = tokens

    def create_profile(
        self, account_id: str, name: str, *, metadata: Optional[dict] = None
    ) -> Profile:
        name = (name or "").strip()
        if not name:
            raise ValidationError("profile name required", detail={"field": "name"})
        if len(name) > MAX_PROFILE_NAME:
            raise ValidationError(
                f"profile name longer than {MAX_PROFILE_NAME} characters",
                detail={"field": "name"},
            )
        profile = self.store.create_profile(
            Profile(id=str(uuid.uuid4()), name=name, metadata=dict(metadata or {})),
            account_id,
            role="owner",
        )
        logger.info("profile_created", profile_id=profile.id, account_id=account_id)
        return profile

    def list_profiles(self, account_id: str) -> List[Profile]:
        return self.graph.get_directly_linked_profiles(account_id)

    def get_profile_for_account(self, account_id: str, profile_id: str) -> Profile:
        profile = self.store.get_profile(profile_id)
        if not profile:
            raise NotFoundError("profile not found", detail={"profile_id": profile_id})
        if not self.graph.has_direct_profile_access(account_id, profile_id):
            logger.warning(
                "profile_access_denied", account_id=account_id, profile_id=profile_id
            )
            raise AuthorizationError(
                "account has no access to this profile", error_code="PROFILE_ACCESS_DENIED"
            )
        return profile

    def link_profile_to_account(
        self, profile_id: str, account_id: str, role: str = "member"
    ) -> ProfileAccount:
        if not self.store.get_profile(profile_id):
            raise NotFoundError("profile not found", detail={"profile_id": profile_id})
        return self.store.link_profile_account(profile_id, account_id, role=role)

    def unlink_profile_from_account(self, profile_id: str, account_id: str) -> bool:
        removed = self.store.unlink_profile_account(profile_id, account_id)
        if removed:
            logger.info("profile_unlinked", profile_id=profile_id, account_id=account_id)
        return removed

    def delete_profile(self, account_id: str, profile_id: str) -> None:
        self.get_profile_for_account(account_id, profile_id)
        self.store.delete_profile(profile_id)
        logger.info("profile_deleted", profile_id=profile_id, account_id=account_id)

    def switch_profile(
        self, session: AccountSession, profile_id: str
    ) -> Tuple[Profile, TokenPair]:
        """Make ``profile_id`` the session's active profile and reissue tokens carrying it."""
        self.get_profile_for_account(session.account_id, profile_id)
        session = self.sessions.set_active_profile(session.session_id, profile_id)
        profile = self.store.touch_profile(profile_id)
        tokens = self.tokens.generate_tokens(
            session.account_id,
            session.session_id,
            device_id=session.device_id,
            active_profile_id=profile_id,
        )
        logger.info("profile_switched", account_id=session.account_id, profile_id=profile_id)
        return profile, tokens

    def handle_mpc_key_generated(
        self, profile_id: str, key_id: str, public_key: str, address: str
    ) -> Profile:
        if not profile_id or not key_id:
            raise ValidationError("profileId and keyId are required")
        if not address or not _ADDRESS.match(address):
            raise ValidationError("invalid wallet address", detail={"field": "address"})
        profile = self.store.set_profile_wallet(
            profile_id,
            address.lower(),
            metadata={
                "mpcKeyId": key_id,
                "mpcPublicKey": public_key,
                "mpcKeyGeneratedAt": datetime.now(timezone.utc).isoformat(),
            },
        )
        if not profile:
            raise NotFoundError("profile not found", detail={"profile_id": profile_id})
        logger.info("mpc_wallet_assigned", profile_id=profile_id, address=address.lower())
        return profile
