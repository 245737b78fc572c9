from __future__ import annotations

from typing import Optional, Tuple

from interspace_auth.logging import get_logger
from interspace_auth.service.errors import NotFoundError, ServerError, ValidationError
from interspace_auth.storage.errors import ConstraintViolation
from interspace_auth.storage.models import Account, AccountType, normalize_identifier

logger = get_logger(__name__)


class AccountService:
    """Canonical identity entity: find-or-create, verify, metadata update."""

    def __init__(self, store) -> None:
        self.store = store

    def find_or_create_account(
        self,
        account_type: AccountType | str,
        identifier: str,
        provider: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> Tuple[Account, bool]:
        """Return ``(account, created)`` for the ``(type, identifier)`` identity.

        Concurrent first calls race on the unique key; the loser re-reads the
        winner's row instead of surfacing the violation.
        """
        try:
            account_type = AccountType(account_type)
        except ValueError:
            raise ValidationError(
                f"unsupported account type: {account_type}",
                detail={"field": "type"},
            )
        if not identifier or not identifier.strip():
            raise ValidationError("identifier is required", detail={"field": "identifier"})
        normalized = normalize_identifier(account_type, identifier)

        existing = self.store.get_account_by_identifier(account_type, normalized)
        if existing:
            return existing, False

        account = Account.new(
            account_type, normalized, provider=provider, metadata=metadata
        )
        try:
            created = self.store.create_account(account)
        except ConstraintViolation:
            winner = self.store.get_account_by_identifier(account_type, normalized)
            if winner is None:
                raise ServerError("account creation conflict could not be resolved")
            logger.info(
                "account_create_race_resolved",
                account_id=winner.id,
                account_type=account_type.value,
            )
            return winner, False
        logger.info(
            "account_created",
            account_id=created.id,
            account_type=account_type.value,
            provider=provider,
        )
        return created, True

    def find_account(self, account_type: AccountType | str, identifier: str) -> Optional[Account]:
        account_type = AccountType(account_type)
        return self.store.get_account_by_identifier(
            account_type, normalize_identifier(account_type, identifier)
        )

    def get_account(self, account_id: str) -> Account:
        account = self.store.get_account(account_id)
        if not account:
            raise NotFoundError("account not found", detail={"account_id": account_id})
        return account

    def verify_account(self, account_id: str) -> Account:
        account = self.store.set_account_verified(account_id)
        if not account:
            raise NotFoundError("account not found", detail={"account_id": account_id})
        return account

    def update_metadata(self, account_id: str, patch: dict) -> Account:
        if not isinstance(patch, dict):
            raise ValidationError("metadata patch must be an object")
        account = self.store.update_account_metadata(account_id, patch)
        if not account:
            raise NotFoundError("account not found", detail={"account_id": account_id})
        return account
