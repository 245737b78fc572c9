from __future__ import annotations

from typing import Dict, List, Set

from interspace_auth.logging import get_logger
from interspace_auth.service.errors import NotFoundError, ValidationError
from interspace_auth.storage.models import (
    IdentityLink,
    LinkType,
    PrivacyMode,
    Profile,
)

logger = get_logger(__name__)


class IdentityGraphService:
    """Undirected link graph between accounts.

    Two profile queries live here and they are not interchangeable:

    - ``get_accessible_profiles`` walks the whole reachable graph and is for
      identity exploration and display only.
    - ``get_directly_linked_profiles`` returns only profiles the exact account
      is attached to. Authentication, linking, profile switching and every
      other access decision use this one, so linking X to Y never grants X
      the profiles of Y's wider graph.
    """

    def __init__(self, store) -> None:
        self.store = store

    def get_linked_accounts(self, account_id: str) -> Set[str]:
        """Breadth-first walk skipping isolated edges; one store query per layer."""
        visited: Set[str] = {account_id}
        frontier: Set[str] = {account_id}
        while frontier:
            next_frontier: Set[str] = set()
            for link in self.store.list_links_for_accounts(frontier):
                if link.privacy_mode is PrivacyMode.ISOLATED:
                    continue
                for endpoint, neighbour in (
                    (link.account_a_id, link.account_b_id),
                    (link.account_b_id, link.account_a_id),
                ):
                    if endpoint in frontier and neighbour not in visited:
                        visited.add(neighbour)
                        next_frontier.add(neighbour)
            frontier = next_frontier
        return visited

    def link_accounts(
        self,
        account_a_id: str,
        account_b_id: str,
        link_type: LinkType | str = LinkType.DIRECT,
        privacy_mode: PrivacyMode | str = PrivacyMode.LINKED,
    ) -> IdentityLink:
        if account_a_id == account_b_id:
            raise ValidationError("cannot link an account to itself")
        try:
            link_type = LinkType(link_type)
            privacy_mode = PrivacyMode(privacy_mode)
        except ValueError as exc:
            raise ValidationError(str(exc))
        link = self.store.upsert_identity_link(
            account_a_id, account_b_id, link_type, privacy_mode
        )
        logger.info(
            "identity_link_upserted",
            account_a_id=link.account_a_id,
            account_b_id=link.account_b_id,
            link_type=link.link_type.value,
            privacy_mode=link.privacy_mode.value,
        )
        return link

    def set_link_privacy_mode(
        self, account_a_id: str, account_b_id: str, privacy_mode: PrivacyMode | str
    ) -> IdentityLink:
        try:
            privacy_mode = PrivacyMode(privacy_mode)
        except ValueError as exc:
            raise ValidationError(str(exc))
        link = self.store.set_link_privacy_mode(account_a_id, account_b_id, privacy_mode)
        if not link:
            raise NotFoundError("identity link not found")
        logger.info(
            "identity_link_privacy_updated",
            account_a_id=link.account_a_id,
            account_b_id=link.account_b_id,
            privacy_mode=privacy_mode.value,
        )
        return link

    def unlink_accounts(self, account_a_id: str, account_b_id: str) -> None:
        if not self.store.delete_identity_link(account_a_id, account_b_id):
            raise NotFoundError("identity link not found")
        logger.info("identity_link_removed", account_a_id=account_a_id, account_b_id=account_b_id)

    def are_directly_linked(self, account_a_id: str, account_b_id: str) -> bool:
        return self.store.get_identity_link(account_a_id, account_b_id) is not None

    def has_links(self, account_id: str) -> bool:
        """True if any edge touches the account, isolated ones included."""
        return bool(self.store.list_links_for_accounts([account_id]))

    def get_accessible_profiles(self, account_id: str) -> List[Profile]:
        # display only, never an access decision
        return self.store.list_profiles_for_accounts(self.get_linked_accounts(account_id))

    def get_directly_linked_profiles(self, account_id: str) -> List[Profile]:
        return self.store.list_profiles_for_accounts([account_id])

    def has_direct_profile_access(self, account_id: str, profile_id: str) -> bool:
        return any(p.id == profile_id for p in self.get_directly_linked_profiles(account_id))

    def get_identity_graph(self, account_id: str) -> Dict[str, object]:
        account_ids = self.get_linked_accounts(account_id)
        accounts = self.store.list_accounts(account_ids)
        links = [
            link
            for link in self.store.list_links_for_accounts(account_ids)
            if link.account_a_id in account_ids and link.account_b_id in account_ids
        ]
        return {
            "accounts": accounts,
            "links": links,
            "current_account_id": account_id,
        }
