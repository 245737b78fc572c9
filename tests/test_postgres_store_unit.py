from contextlib import contextmanager
from datetime import datetime, timezone

import pytest
from psycopg import errors

from interspace_auth.storage.errors import ConstraintViolation
from interspace_auth.storage.models import Account, AccountType, LinkType, PrivacyMode
from interspace_auth.storage.postgres import PostgresStore, _json, _session_from_row

NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)


class FakeResult:
    def __init__(self, rows):
        self.rows = rows
        self.rowcount = len(rows)

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)


class FakeConnection:
    def __init__(self, rows=None, raises=None):
        self.rows = rows or []
        self.raises = raises
        self.statements = []

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        if self.raises:
            raise self.raises
        return FakeResult(self.rows)


class FakePool:
    def __init__(self, conn):
        self.conn = conn

    @contextmanager
    def connection(self):
        yield self.conn


def _store(conn) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = FakePool(conn)
    return store


def test_duplicate_account_becomes_constraint_violation():
    store = _store(FakeConnection(raises=errors.UniqueViolation("duplicate key")))
    account = Account(
        id="a1", type=AccountType.EMAIL, identifier="a@example.com", created_at=NOW, updated_at=NOW
    )
    with pytest.raises(ConstraintViolation) as exc:
        store.create_account(account)
    assert exc.value.detail == {"type": "email", "field": "identifier"}


def test_links_are_written_in_canonical_order():
    row = {
        "account_a_id": "aaa",
        "account_b_id": "zzz",
        "link_type": "direct",
        "privacy_mode": "partial",
        "created_at": NOW,
        "updated_at": NOW,
    }
    conn = FakeConnection(rows=[row])
    link = _store(conn).upsert_identity_link("zzz", "aaa", LinkType.DIRECT, PrivacyMode.PARTIAL)

    _, params = conn.statements[0]
    assert params == ("aaa", "zzz", "direct", "partial")
    assert link.privacy_mode is PrivacyMode.PARTIAL


def test_empty_account_lists_skip_the_database():
    conn = FakeConnection()
    assert _store(conn).list_links_for_accounts([]) == []
    assert conn.statements == []


def test_row_helpers():
    assert _json(None) == {}
    assert _json('{"fid": 3}') == {"fid": 3}
    assert _json("not json") == {}
    session = _session_from_row(
        {
            "id": 1,
            "account_id": "acc",
            "session_id": "sess",
            "expires_at": NOW,
            "privacy_mode": None,
            "active_profile_id": None,
            "created_at": NOW,
            "updated_at": NOW,
        }
    )
    assert session.id == "1"
    assert session.privacy_mode is PrivacyMode.LINKED
    assert session.active_profile_id is None


def test_malformed_ids_match_nothing():
    conn = FakeConnection(raises=errors.InvalidTextRepresentation("invalid uuid"))
    store = _store(conn)
    valid = "6f1c2a9e-3b7d-4c55-9a0e-2f4d8b1c7e30"

    assert store.get_account("abc") is None
    assert store.get_profile("abc") is None
    assert store.set_profile_wallet("abc", "0xabc", {"mpcKeyId": "k"}) is None
    assert store.get_identity_link(valid, "abc") is None
    assert store.set_link_privacy_mode("abc", valid, PrivacyMode.ISOLATED) is None
    assert store.delete_identity_link(valid, "abc") is False
    assert store.set_session_active_profile("sess", "abc") is None
    assert store.unlink_profile_account("abc", valid) is False
    assert store.delete_profile("abc") is False
    assert store.list_accounts(["abc"]) == []
    assert conn.statements == []


def test_malformed_ids_are_filtered_from_batch_lookups():
    conn = FakeConnection()
    valid = "6f1c2a9e-3b7d-4c55-9a0e-2f4d8b1c7e30"

    _store(conn).list_profiles_for_accounts([valid, "abc"])

    _, params = conn.statements[0]
    assert params == ([valid],)


def test_linking_a_malformed_profile_is_a_constraint_violation():
    store = _store(FakeConnection())
    with pytest.raises(ConstraintViolation):
        store.link_profile_account("abc", "6f1c2a9e-3b7d-4c55-9a0e-2f4d8b1c7e30")
