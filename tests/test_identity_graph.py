"""Unit tests for accounts and the identity graph.

Tests for:
- Idempotent and race-safe find-or-create
- Canonical link storage
- Traversal that stops at isolated edges
- Direct versus accessible profiles
"""

import threading

import pytest

from interspace_auth.service.accounts import AccountService
from interspace_auth.service.errors import NotFoundError, ValidationError
from interspace_auth.service.identity_graph import IdentityGraphService
from interspace_auth.storage.memory import MemoryStore
from interspace_auth.storage.models import AccountType, LinkType, PrivacyMode, Profile


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def accounts(store):
    return AccountService(store)


@pytest.fixture
def graph(store):
    return IdentityGraphService(store)


def _email(accounts, address):
    account, _ = accounts.find_or_create_account(AccountType.EMAIL, address)
    return account


class TestFindOrCreate:
    def test_second_call_returns_existing_account(self, accounts):
        first, created_first = accounts.find_or_create_account(AccountType.EMAIL, "A@Example.com")
        second, created_second = accounts.find_or_create_account(
            AccountType.EMAIL, " a@example.com "
        )

        assert created_first is True
        assert created_second is False
        assert first.id == second.id
        assert first.identifier == "a@example.com"

    def test_wallet_accounts_start_verified(self, accounts):
        account, _ = accounts.find_or_create_account(AccountType.WALLET, "0x" + "A" * 40)
        assert account.verified is True
        assert account.identifier == "0x" + "a" * 40

    def test_passkey_identifier_keeps_case(self, accounts):
        account, _ = accounts.find_or_create_account(AccountType.PASSKEY, "AbC-dEf_123")
        assert account.identifier == "AbC-dEf_123"

    def test_rejects_unknown_type(self, accounts):
        with pytest.raises(ValidationError):
            accounts.find_or_create_account("carrier-pigeon", "x")

    def test_rejects_blank_identifier(self, accounts):
        with pytest.raises(ValidationError):
            accounts.find_or_create_account(AccountType.EMAIL, "   ")

    def test_concurrent_calls_create_exactly_one_account(self, accounts, store):
        barrier = threading.Barrier(8)
        results = []
        lock = threading.Lock()

        def worker():
            barrier.wait()
            account, created = accounts.find_or_create_account(
                AccountType.EMAIL, "race@example.com"
            )
            with lock:
                results.append((account.id, created))

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len({account_id for account_id, _ in results}) == 1
        assert sum(1 for _, created in results if created) == 1
        assert len(store.accounts) == 1

    def test_get_account_missing_raises(self, accounts):
        with pytest.raises(NotFoundError):
            accounts.get_account("missing")

    def test_update_metadata_merges(self, accounts):
        account = _email(accounts, "meta@example.com")
        accounts.update_metadata(account.id, {"a": "1"})
        updated = accounts.update_metadata(account.id, {"b": "2"})
        assert updated.metadata == {"a": "1", "b": "2"}


class TestLinks:
    def test_link_is_stored_once_in_canonical_order(self, accounts, graph, store):
        a = _email(accounts, "a@example.com")
        b = _email(accounts, "b@example.com")

        first = graph.link_accounts(b.id, a.id)
        second = graph.link_accounts(a.id, b.id, LinkType.DIRECT, PrivacyMode.PARTIAL)

        assert len(store.links) == 1
        assert first.account_a_id < first.account_b_id
        assert (second.account_a_id, second.account_b_id) == (
            first.account_a_id,
            first.account_b_id,
        )
        assert second.privacy_mode is PrivacyMode.PARTIAL
        assert graph.are_directly_linked(b.id, a.id)

    def test_self_link_rejected(self, accounts, graph):
        a = _email(accounts, "self@example.com")
        with pytest.raises(ValidationError):
            graph.link_accounts(a.id, a.id)

    def test_privacy_update_requires_existing_link(self, accounts, graph):
        a = _email(accounts, "a@example.com")
        b = _email(accounts, "b@example.com")
        with pytest.raises(NotFoundError):
            graph.set_link_privacy_mode(a.id, b.id, PrivacyMode.ISOLATED)

    def test_unlink_removes_edge(self, accounts, graph):
        a = _email(accounts, "a@example.com")
        b = _email(accounts, "b@example.com")
        graph.link_accounts(a.id, b.id)
        graph.unlink_accounts(b.id, a.id)
        assert not graph.are_directly_linked(a.id, b.id)
        assert graph.get_linked_accounts(a.id) == {a.id}


class TestTraversal:
    def test_isolated_edge_cuts_the_walk(self, accounts, graph):
        a = _email(accounts, "a@example.com")
        b = _email(accounts, "b@example.com")
        c = _email(accounts, "c@example.com")
        graph.link_accounts(a.id, b.id, privacy_mode=PrivacyMode.LINKED)
        graph.link_accounts(b.id, c.id, privacy_mode=PrivacyMode.ISOLATED)

        assert graph.get_linked_accounts(a.id) == {a.id, b.id}
        assert graph.get_linked_accounts(c.id) == {c.id}

    def test_partial_edges_are_traversed(self, accounts, graph):
        a = _email(accounts, "a@example.com")
        b = _email(accounts, "b@example.com")
        c = _email(accounts, "c@example.com")
        graph.link_accounts(a.id, b.id, privacy_mode=PrivacyMode.PARTIAL)
        graph.link_accounts(b.id, c.id)

        assert graph.get_linked_accounts(c.id) == {a.id, b.id, c.id}

    def test_cycles_terminate(self, accounts, graph):
        nodes = [_email(accounts, f"n{i}@example.com") for i in range(4)]
        for left, right in zip(nodes, nodes[1:] + nodes[:1]):
            graph.link_accounts(left.id, right.id)

        assert graph.get_linked_accounts(nodes[0].id) == {n.id for n in nodes}

    def test_identity_graph_lists_only_reachable_edges(self, accounts, graph):
        a = _email(accounts, "a@example.com")
        b = _email(accounts, "b@example.com")
        c = _email(accounts, "c@example.com")
        graph.link_accounts(a.id, b.id)
        graph.link_accounts(b.id, c.id, privacy_mode=PrivacyMode.ISOLATED)

        result = graph.get_identity_graph(a.id)

        assert {acc.id for acc in result["accounts"]} == {a.id, b.id}
        assert len(result["links"]) == 1
        assert result["current_account_id"] == a.id

    def test_has_links_counts_isolated_edges(self, accounts, graph):
        a = _email(accounts, "a@example.com")
        b = _email(accounts, "b@example.com")
        assert graph.has_links(b.id) is False
        graph.link_accounts(a.id, b.id, privacy_mode=PrivacyMode.ISOLATED)
        assert graph.has_links(b.id) is True


class TestProfileVisibility:
    def test_linked_account_sees_but_cannot_use_profile(self, accounts, graph, store):
        owner = _email(accounts, "owner@example.com")
        other = _email(accounts, "other@example.com")
        graph.link_accounts(owner.id, other.id)
        profile = store.create_profile(Profile(id="p1", name="Main"), owner.id)

        assert [p.id for p in graph.get_accessible_profiles(other.id)] == [profile.id]
        assert graph.get_directly_linked_profiles(other.id) == []
        assert graph.has_direct_profile_access(other.id, profile.id) is False
        assert graph.has_direct_profile_access(owner.id, profile.id) is True
