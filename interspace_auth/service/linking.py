from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from interspace_auth.logging import get_logger
from interspace_auth.service.accounts import AccountService
from interspace_auth.service.dispatcher import (
    AuthenticationDispatcher,
    AuthStrategyRequest,
    ClientContext,
    GuestAuthRequest,
    PasskeyAuthRequest,
)
from interspace_auth.service.errors import AuthorizationError, ConflictError, ValidationError
from interspace_auth.service.identity_graph import IdentityGraphService
from interspace_auth.storage.models import (
    Account,
    AccountType,
    IdentityLink,
    LinkType,
    PrivacyMode,
)

logger = get_logger(__name__)

_UNLINKABLE = (GuestAuthRequest, PasskeyAuthRequest)


@dataclass
class LinkResult:
    link: IdentityLink
    linked_account: Account
    is_new_account: bool


class LinkingService:
    """Attach a second, freshly proven credential to the caller's account.

    Only the identity edge is created; profile access stays with the accounts
    that already hold it.
    """

    def __init__(
        self,
        accounts: AccountService,
        graph: IdentityGraphService,
        dispatcher: AuthenticationDispatcher,
    ) -> None:
        self.accounts = accounts
        self.graph = graph
        self.dispatcher = dispatcher

    async def link_accounts(
        self,
        current_account_id: str,
        target: AuthStrategyRequest,
        *,
        privacy_mode: PrivacyMode | str = PrivacyMode.LINKED,
        context: Optional[ClientContext] = None,
    ) -> LinkResult:
        try:
            privacy_mode = PrivacyMode(privacy_mode)
        except ValueError as exc:
            raise ValidationError(str(exc), detail={"field": "privacyMode"})
        current = self.accounts.get_account(current_account_id)
        if not current.verified and current.type is not AccountType.GUEST:
            raise AuthorizationError(
                "verify this account before linking another", error_code="ACCOUNT_NOT_VERIFIED"
            )
        if isinstance(target, _UNLINKABLE):
            raise ValidationError(
                f"{target.strategy} credentials cannot be linked here",
                error_code="UNSUPPORTED_LINK_STRATEGY",
            )

        identity = await self.dispatcher.verify_identity(target, context or ClientContext())
        linked, created = self.accounts.find_or_create_account(
            identity.account_type,
            identity.identifier,
            provider=identity.provider,
            metadata=identity.metadata,
        )
        if linked.id == current.id:
            raise ValidationError("cannot link an account to itself")
        if self.graph.are_directly_linked(current.id, linked.id):
            raise ConflictError("accounts are already linked", error_code="ALREADY_LINKED")
        if self.graph.has_links(linked.id):
            raise ConflictError(
                "account is already linked to another identity",
                error_code="ACCOUNT_ALREADY_LINKED",
            )

        linked = self.accounts.verify_account(linked.id)
        link = self.graph.link_accounts(current.id, linked.id, LinkType.DIRECT, privacy_mode)
        logger.info(
            "accounts_linked",
            account_id=current.id,
            linked_account_id=linked.id,
            linked_account_type=linked.type.value,
            privacy_mode=privacy_mode.value,
        )
        return LinkResult(link=link, linked_account=linked, is_new_account=created)
