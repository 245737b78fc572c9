from __future__ import annotations

import json
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from interspace_auth.logging import get_logger
from interspace_auth.storage.errors import ConstraintViolation
from interspace_auth.storage.models import (
    Account,
    AccountSession,
    AccountType,
    BlacklistedToken,
    BlacklistReason,
    EmailVerification,
    FarcasterChannel,
    IdentityLink,
    IssuedRefreshToken,
    LinkType,
    PrivacyMode,
    Profile,
    ProfileAccount,
    SiweNonce,
    TokenType,
    canonical_pair,
)

SCHEMA_PATH = Path(__file__).resolve().parent / "schema.sql"

_REQUIRED_TABLES = [
    "account",
    "identity_link",
    "profile",
    "profile_account",
    "account_session",
    "siwe_nonce",
    "blacklisted_token",
    "refresh_token",
    "email_verification",
    "farcaster_channel",
]

_CHANNEL_FIELDS = {
    "message",
    "signature",
    "fid",
    "username",
    "display_name",
    "bio",
    "pfp_url",
    "custody_address",
}


def _is_uuid(value: Any) -> bool:
    # malformed ids match nothing, as in the memory store
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


def _json(value: Any) -> Dict:
    if value is None:
        return {}
    if isinstance(value, str):
        try:
            return json.loads(value)
        except ValueError:
            return {}
    return dict(value)


def _account_from_row(row: dict) -> Account:
    return Account(
        id=str(row["id"]),
        type=AccountType(row["type"]),
        identifier=row["identifier"],
        provider=row.get("provider"),
        verified=bool(row.get("verified")),
        metadata=_json(row.get("metadata")),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _link_from_row(row: dict) -> IdentityLink:
    return IdentityLink(
        account_a_id=str(row["account_a_id"]),
        account_b_id=str(row["account_b_id"]),
        link_type=LinkType(row["link_type"]),
        privacy_mode=PrivacyMode(row["privacy_mode"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _profile_from_row(row: dict) -> Profile:
    return Profile(
        id=str(row["id"]),
        name=row["name"],
        session_wallet_address=row.get("session_wallet_address"),
        is_active=bool(row.get("is_active", True)),
        metadata=_json(row.get("metadata")),
        last_active_at=row["last_active_at"],
        created_at=row["created_at"],
    )


def _session_from_row(row: dict) -> AccountSession:
    active_profile_id = row.get("active_profile_id")
    return AccountSession(
        id=str(row["id"]),
        account_id=str(row["account_id"]),
        session_id=row["session_id"],
        expires_at=row["expires_at"],
        privacy_mode=PrivacyMode(row.get("privacy_mode") or "linked"),
        device_id=row.get("device_id"),
        ip_address=row.get("ip_address"),
        user_agent=row.get("user_agent"),
        active_profile_id=str(active_profile_id) if active_profile_id else None,
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _nonce_from_row(row: dict) -> SiweNonce:
    return SiweNonce(
        nonce=row["nonce"],
        purpose=row.get("purpose") or "siwe",
        expires_at=row["expires_at"],
        used_at=row.get("used_at"),
        created_at=row["created_at"],
    )


def _verification_from_row(row: dict) -> EmailVerification:
    return EmailVerification(
        id=str(row["id"]),
        email=row["email"],
        code_hash=row["code_hash"],
        expires_at=row["expires_at"],
        attempts=row.get("attempts", 0),
        last_attempt_at=row.get("last_attempt_at"),
        created_at=row["created_at"],
    )


def _channel_from_row(row: dict) -> FarcasterChannel:
    return FarcasterChannel(
        channel_token=row["channel_token"],
        domain=row["domain"],
        siwe_uri=row["siwe_uri"],
        nonce=row["nonce"],
        expires_at=row["expires_at"],
        status=row.get("status", "pending"),
        message=row.get("message"),
        signature=row.get("signature"),
        fid=row.get("fid"),
        username=row.get("username"),
        display_name=row.get("display_name"),
        bio=row.get("bio"),
        pfp_url=row.get("pfp_url"),
        custody_address=row.get("custody_address"),
        created_at=row["created_at"],
    )


class PostgresStore:
    """Postgres-backed store; every method is a single transaction."""

    def __init__(self, dsn: str, *, ensure_schema: bool = False) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        if ensure_schema:
            self.ensure_schema()
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1")

    def ensure_schema(self) -> None:
        """Apply ``schema.sql``; every statement is idempotent."""
        ddl = SCHEMA_PATH.read_text()
        with self._connect() as conn:
            conn.execute(ddl)
        self.logger.info("postgres_schema_applied", path=str(SCHEMA_PATH))

    def _verify_required_schema(self) -> None:
        with self._connect() as conn:
            missing_tables = []
            for table in _REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)
        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply interspace_auth/storage/schema.sql first.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    def close(self) -> None:
        self.pool.close()

    # accounts
    def create_account(self, account: Account) -> Account:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO account (id, type, identifier, provider, verified, metadata, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        account.id,
                        account.type.value,
                        account.identifier,
                        account.provider,
                        account.verified,
                        json.dumps(account.metadata),
                        account.created_at,
                        account.updated_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "account already exists",
                {"type": account.type.value, "field": "identifier"},
            )
        return account

    def get_account(self, account_id: str) -> Optional[Account]:
        if not _is_uuid(account_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE id = %s", (account_id,)
            ).fetchone()
        return _account_from_row(row) if row else None

    def get_account_by_identifier(
        self, account_type: AccountType, identifier: str
    ) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE type = %s AND identifier = %s",
                (AccountType(account_type).value, identifier),
            ).fetchone()
        return _account_from_row(row) if row else None

    def list_accounts(self, account_ids: Iterable[str]) -> List[Account]:
        ids = [i for i in account_ids if _is_uuid(i)]
        if not ids:
            return []
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM account WHERE id = ANY(%s::uuid[])", (ids,)
            ).fetchall()
        return [_account_from_row(r) for r in rows]

    def set_account_verified(self, account_id: str) -> Optional[Account]:
        if not _is_uuid(account_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE account
                SET verified = TRUE,
                    updated_at = CASE WHEN verified THEN updated_at ELSE now() END
                WHERE id = %s
                RETURNING *
                """,
                (account_id,),
            ).fetchone()
        return _account_from_row(row) if row else None

    def update_account_metadata(self, account_id: str, patch: dict) -> Optional[Account]:
        if not _is_uuid(account_id):
            return None
        # jsonb || is a top-level (shallow) merge
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE account SET metadata = metadata || %s::jsonb, updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (json.dumps(patch), account_id),
            ).fetchone()
        return _account_from_row(row) if row else None

    # identity links
    def upsert_identity_link(
        self,
        account_a_id: str,
        account_b_id: str,
        link_type: LinkType,
        privacy_mode: PrivacyMode,
    ) -> IdentityLink:
        first, second = canonical_pair(account_a_id, account_b_id)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO identity_link (account_a_id, account_b_id, link_type, privacy_mode)
                    VALUES (%s, %s, %s, %s)
                    ON CONFLICT (account_a_id, account_b_id) DO UPDATE
                    SET link_type = EXCLUDED.link_type,
                        privacy_mode = EXCLUDED.privacy_mode,
                        updated_at = now()
                    RETURNING *
                    """,
                    (first, second, LinkType(link_type).value, PrivacyMode(privacy_mode).value),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "link account missing", {"account_ids": [first, second]}
            )
        return _link_from_row(row)

    def get_identity_link(self, account_a_id: str, account_b_id: str) -> Optional[IdentityLink]:
        if not (_is_uuid(account_a_id) and _is_uuid(account_b_id)):
            return None
        first, second = canonical_pair(account_a_id, account_b_id)
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM identity_link WHERE account_a_id = %s AND account_b_id = %s",
                (first, second),
            ).fetchone()
        return _link_from_row(row) if row else None

    def set_link_privacy_mode(
        self, account_a_id: str, account_b_id: str, privacy_mode: PrivacyMode
    ) -> Optional[IdentityLink]:
        if not (_is_uuid(account_a_id) and _is_uuid(account_b_id)):
            return None
        first, second = canonical_pair(account_a_id, account_b_id)
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE identity_link SET privacy_mode = %s, updated_at = now()
                WHERE account_a_id = %s AND account_b_id = %s
                RETURNING *
                """,
                (PrivacyMode(privacy_mode).value, first, second),
            ).fetchone()
        return _link_from_row(row) if row else None

    def delete_identity_link(self, account_a_id: str, account_b_id: str) -> bool:
        if not (_is_uuid(account_a_id) and _is_uuid(account_b_id)):
            return False
        first, second = canonical_pair(account_a_id, account_b_id)
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM identity_link WHERE account_a_id = %s AND account_b_id = %s",
                (first, second),
            )
            return result.rowcount > 0

    def list_links_for_accounts(self, account_ids: Iterable[str]) -> List[IdentityLink]:
        ids = [i for i in account_ids if _is_uuid(i)]
        if not ids:
            return []
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM identity_link
                WHERE account_a_id = ANY(%s::uuid[]) OR account_b_id = ANY(%s::uuid[])
                """,
                (ids, ids),
            ).fetchall()
        return [_link_from_row(r) for r in rows]

    # profiles
    def create_profile(self, profile: Profile, account_id: str, role: str = "owner") -> Profile:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO profile (id, name, session_wallet_address, is_active, metadata, last_active_at, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        profile.id,
                        profile.name,
                        profile.session_wallet_address,
                        profile.is_active,
                        json.dumps(profile.metadata),
                        profile.last_active_at,
                        profile.created_at,
                    ),
                )
                conn.execute(
                    "INSERT INTO profile_account (profile_id, account_id, role) VALUES (%s, %s, %s)",
                    (profile.id, account_id, role),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("profile account missing", {"account_id": account_id})
        return profile

    def get_profile(self, profile_id: str) -> Optional[Profile]:
        if not _is_uuid(profile_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM profile WHERE id = %s", (profile_id,)
            ).fetchone()
        return _profile_from_row(row) if row else None

    def link_profile_account(
        self, profile_id: str, account_id: str, role: str = "owner"
    ) -> ProfileAccount:
        if not (_is_uuid(profile_id) and _is_uuid(account_id)):
            raise ConstraintViolation(
                "profile or account missing",
                {"profile_id": profile_id, "account_id": account_id},
            )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO profile_account (profile_id, account_id, role)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (profile_id, account_id) DO NOTHING
                    """,
                    (profile_id, account_id, role),
                )
                row = conn.execute(
                    "SELECT * FROM profile_account WHERE profile_id = %s AND account_id = %s",
                    (profile_id, account_id),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "profile or account missing",
                {"profile_id": profile_id, "account_id": account_id},
            )
        return ProfileAccount(
            profile_id=str(row["profile_id"]),
            account_id=str(row["account_id"]),
            role=row["role"],
            created_at=row["created_at"],
        )

    def unlink_profile_account(self, profile_id: str, account_id: str) -> bool:
        if not (_is_uuid(profile_id) and _is_uuid(account_id)):
            return False
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM profile_account WHERE profile_id = %s AND account_id = %s",
                (profile_id, account_id),
            )
            conn.execute(
                """
                UPDATE account_session SET active_profile_id = NULL
                WHERE account_id = %s AND active_profile_id = %s
                """,
                (account_id, profile_id),
            )
            return result.rowcount > 0

    def delete_profile(self, profile_id: str) -> bool:
        if not _is_uuid(profile_id):
            return False
        # profile_account rows cascade; sessions fall back to no active profile
        with self._connect() as conn:
            result = conn.execute("DELETE FROM profile WHERE id = %s", (profile_id,))
            return result.rowcount > 0

    def list_profiles_for_accounts(self, account_ids: Iterable[str]) -> List[Profile]:
        ids = [i for i in account_ids if _is_uuid(i)]
        if not ids:
            return []
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT DISTINCT p.* FROM profile p
                JOIN profile_account pa ON pa.profile_id = p.id
                WHERE pa.account_id = ANY(%s::uuid[])
                ORDER BY p.last_active_at DESC
                """,
                (ids,),
            ).fetchall()
        return [_profile_from_row(r) for r in rows]

    def touch_profile(self, profile_id: str) -> Optional[Profile]:
        if not _is_uuid(profile_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE profile SET last_active_at = now() WHERE id = %s RETURNING *",
                (profile_id,),
            ).fetchone()
        return _profile_from_row(row) if row else None

    def set_profile_wallet(
        self, profile_id: str, address: str, metadata: Optional[dict] = None
    ) -> Optional[Profile]:
        if not _is_uuid(profile_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE profile
                SET session_wallet_address = %s, metadata = metadata || %s::jsonb
                WHERE id = %s
                RETURNING *
                """,
                (address, json.dumps(metadata or {}), profile_id),
            ).fetchone()
        return _profile_from_row(row) if row else None

    # sessions
    def create_session(self, session: AccountSession) -> AccountSession:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO account_session (id, account_id, session_id, device_id, ip_address, user_agent,
                                                 privacy_mode, active_profile_id, expires_at, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        session.id,
                        session.account_id,
                        session.session_id,
                        session.device_id,
                        session.ip_address,
                        session.user_agent,
                        session.privacy_mode.value,
                        session.active_profile_id,
                        session.expires_at,
                        session.created_at,
                        session.updated_at,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session account missing", {"account_id": session.account_id})
        return session

    def get_session(self, session_id: str) -> Optional[AccountSession]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account_session WHERE session_id = %s", (session_id,)
            ).fetchone()
        return _session_from_row(row) if row else None

    def touch_session(self, session_id: str, now: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE account_session SET updated_at = %s WHERE session_id = %s",
                (now, session_id),
            )

    def set_session_active_profile(
        self, session_id: str, profile_id: Optional[str]
    ) -> Optional[AccountSession]:
        if profile_id is not None and not _is_uuid(profile_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE account_session SET active_profile_id = %s, updated_at = now()
                WHERE session_id = %s
                RETURNING *
                """,
                (profile_id, session_id),
            ).fetchone()
        return _session_from_row(row) if row else None

    def delete_session(self, session_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM account_session WHERE session_id = %s", (session_id,)
            )
            return result.rowcount > 0

    def delete_account_sessions(self, account_id: str) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM account_session WHERE account_id = %s", (account_id,)
            )
            return result.rowcount

    def list_account_sessions(self, account_id: str) -> List[AccountSession]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM account_session WHERE account_id = %s ORDER BY created_at",
                (account_id,),
            ).fetchall()
        return [_session_from_row(r) for r in rows]

    def delete_expired_sessions(self, now: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM account_session WHERE expires_at <= %s", (now,)
            )
            return result.rowcount

    # nonces
    def create_nonce(self, nonce: SiweNonce) -> SiweNonce:
        try:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO siwe_nonce (nonce, purpose, expires_at, created_at) VALUES (%s, %s, %s, %s)",
                    (nonce.nonce, nonce.purpose, nonce.expires_at, nonce.created_at),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("nonce already exists", {"field": "nonce"})
        return nonce

    def get_nonce(self, nonce: str) -> Optional[SiweNonce]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM siwe_nonce WHERE nonce = %s", (nonce,)
            ).fetchone()
        return _nonce_from_row(row) if row else None

    def mark_nonce_used(self, nonce: str, now: datetime) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE siwe_nonce SET used_at = %s
                WHERE nonce = %s AND used_at IS NULL AND expires_at > %s
                RETURNING nonce
                """,
                (now, nonce, now),
            ).fetchone()
        return row is not None

    def delete_expired_nonces(self, now: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM siwe_nonce WHERE expires_at <= %s", (now,))
            return result.rowcount

    # token blacklist
    def add_blacklisted_token(self, entry: BlacklistedToken) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO blacklisted_token (token_hash, token_type, account_id, reason, expires_at, created_at)
                VALUES (%s, %s, %s, %s, %s, %s)
                ON CONFLICT (token_hash) DO NOTHING
                RETURNING token_hash
                """,
                (
                    entry.token_hash,
                    entry.token_type.value,
                    entry.account_id,
                    entry.reason.value,
                    entry.expires_at,
                    entry.created_at,
                ),
            ).fetchone()
        return row is not None

    def is_token_blacklisted(self, token_hash: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 AS hit FROM blacklisted_token WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return row is not None

    def delete_expired_blacklist(self, now: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM blacklisted_token WHERE expires_at <= %s", (now,)
            )
            return result.rowcount

    def blacklist_stats(self) -> dict:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT reason, token_type, count(*) AS n FROM blacklisted_token GROUP BY reason, token_type"
            ).fetchall()
        by_reason: Dict[str, int] = {}
        by_type: Dict[str, int] = {}
        total = 0
        for row in rows:
            reason = BlacklistReason(row["reason"]).value
            token_type = TokenType(row["token_type"]).value
            by_reason[reason] = by_reason.get(reason, 0) + row["n"]
            by_type[token_type] = by_type.get(token_type, 0) + row["n"]
            total += row["n"]
        return {"total": total, "by_reason": by_reason, "by_type": by_type}

    # issued refresh tokens
    def record_refresh_token(self, record: IssuedRefreshToken) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO refresh_token (jti, account_id, session_id, token_hash, expires_at, created_at)
                VALUES (%s, %s, %s, %s, %s, %s)
                """,
                (
                    record.jti,
                    record.account_id,
                    record.session_id,
                    record.token_hash,
                    record.expires_at,
                    record.created_at,
                ),
            )

    def list_outstanding_refresh_tokens(
        self, account_id: str, now: datetime
    ) -> List[IssuedRefreshToken]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT r.* FROM refresh_token r
                LEFT JOIN blacklisted_token b ON b.token_hash = r.token_hash
                WHERE r.account_id = %s AND r.expires_at > %s AND b.token_hash IS NULL
                """,
                (account_id, now),
            ).fetchall()
        return [
            IssuedRefreshToken(
                jti=r["jti"],
                account_id=str(r["account_id"]),
                session_id=r["session_id"],
                token_hash=r["token_hash"],
                expires_at=r["expires_at"],
                created_at=r["created_at"],
            )
            for r in rows
        ]

    def delete_expired_refresh_tokens(self, now: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM refresh_token WHERE expires_at <= %s", (now,))
            return result.rowcount

    # email verification codes
    def create_email_verification(self, record: EmailVerification) -> EmailVerification:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO email_verification (id, email, code_hash, expires_at, attempts, created_at)
                VALUES (%s, %s, %s, %s, %s, %s)
                """,
                (
                    record.id,
                    record.email,
                    record.code_hash,
                    record.expires_at,
                    record.attempts,
                    record.created_at,
                ),
            )
        return record

    def list_active_email_verifications(
        self, email: str, now: datetime, max_attempts: int
    ) -> List[EmailVerification]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM email_verification
                WHERE email = %s AND expires_at > %s AND attempts < %s
                ORDER BY created_at DESC
                """,
                (email, now, max_attempts),
            ).fetchall()
        return [_verification_from_row(r) for r in rows]

    def increment_email_verification_attempts(
        self, verification_ids: Iterable[str], now: datetime
    ) -> int:
        ids = list(verification_ids)
        if not ids:
            return 0
        # rows deleted by a concurrent success simply do not match
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE email_verification SET attempts = attempts + 1, last_attempt_at = %s
                WHERE id = ANY(%s::uuid[])
                """,
                (now, ids),
            )
            return result.rowcount

    def delete_email_verifications(self, email: str) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM email_verification WHERE email = %s", (email,)
            )
            return result.rowcount

    def delete_expired_email_verifications(self, now: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM email_verification WHERE expires_at <= %s", (now,)
            )
            return result.rowcount

    # farcaster relay channels
    def create_farcaster_channel(self, channel: FarcasterChannel) -> FarcasterChannel:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO farcaster_channel (channel_token, domain, siwe_uri, nonce, status, expires_at, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    channel.channel_token,
                    channel.domain,
                    channel.siwe_uri,
                    channel.nonce,
                    channel.status,
                    channel.expires_at,
                    channel.created_at,
                ),
            )
        return channel

    def get_farcaster_channel(self, channel_token: str) -> Optional[FarcasterChannel]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM farcaster_channel WHERE channel_token = %s", (channel_token,)
            ).fetchone()
        return _channel_from_row(row) if row else None

    def complete_farcaster_channel(
        self, channel_token: str, **fields
    ) -> Optional[FarcasterChannel]:
        unknown = set(fields) - _CHANNEL_FIELDS
        if unknown:
            raise ValueError(f"unknown channel fields: {sorted(unknown)}")
        assignments = ", ".join(f"{name} = %s" for name in fields)
        prefix = f"{assignments}, " if assignments else ""
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE farcaster_channel SET {prefix}status = 'completed'
                WHERE channel_token = %s AND status = 'pending'
                RETURNING *
                """,
                (*fields.values(), channel_token),
            ).fetchone()
        return _channel_from_row(row) if row else None

    def delete_farcaster_channel(self, channel_token: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM farcaster_channel WHERE channel_token = %s", (channel_token,)
            )
            return result.rowcount > 0

    def delete_expired_farcaster_channels(self, now: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM farcaster_channel WHERE expires_at <= %s", (now,)
            )
            return result.rowcount
