"""HTTP-level tests for the /v2 authentication, profile and webhook routes."""

import pytest
from cryptography.hazmat.primitives.asymmetric import ec
from fastapi.testclient import TestClient

import interspace_auth.app as app_module

from conftest import build_siwe_message, sign
from test_passkeys import _assertion, _spki


@pytest.fixture
def client():
    return TestClient(app_module.app)


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


def _wallet_login(client, wallet, **extra):
    nonce = client.get("/v2/auth/siwe/nonce").json()["data"]["nonce"]
    message = build_siwe_message(wallet.address, nonce)
    body = {"strategy": "wallet", "message": message, "signature": sign(wallet, message)}
    body.update(extra)
    return client.post("/v2/auth/authenticate", json=body)


@pytest.fixture
def sent_codes(runtime, monkeypatch):
    outbox = {}

    def fake_send(to_email, code, ttl_minutes):
        outbox[to_email] = code
        return True

    monkeypatch.setattr(runtime.email, "send_verification_code", fake_send)
    return outbox


def _email_login(client, sent_codes, email, **extra):
    assert client.post("/v2/auth/email/request-code", json={"email": email}).status_code == 200
    body = {"strategy": "email", "email": email, "code": sent_codes[email.lower()]}
    body.update(extra)
    return client.post("/v2/auth/authenticate", json=body)


class TestAuthenticate:
    def test_nonce(self, client):
        resp = client.get("/v2/auth/siwe/nonce")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "ok"
        assert len(body["data"]["nonce"]) >= 8
        assert "expiresAt" in body["data"]

    def test_wallet_login(self, client, wallet):
        resp = _wallet_login(client, wallet, deviceId="iphone")

        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["account"]["type"] == "wallet"
        assert data["account"]["identifier"] == wallet.address.lower()
        assert data["account"]["verified"] is True
        assert data["isNewAccount"] is True
        assert data["requiresProfile"] is True
        assert data["profiles"] == []
        assert data["activeProfile"] is None
        assert data["privacyMode"] == "linked"
        assert set(data["tokens"]) == {"accessToken", "refreshToken", "expiresIn"}

    def test_bad_signature(self, client, wallet):
        nonce = client.get("/v2/auth/siwe/nonce").json()["data"]["nonce"]
        message = build_siwe_message(wallet.address, nonce)
        resp = client.post(
            "/v2/auth/authenticate",
            json={"strategy": "wallet", "message": message, "signature": "0x" + "11" * 65},
        )
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "INVALID_WALLET_SIGNATURE"

    def test_client_chain_id_must_match_configured_chain(self, client, wallet):
        nonce = client.get("/v2/auth/siwe/nonce").json()["data"]["nonce"]
        message = build_siwe_message(wallet.address, nonce, chain_id=137)
        resp = client.post(
            "/v2/auth/authenticate",
            json={
                "strategy": "wallet",
                "message": message,
                "signature": sign(wallet, message),
                "chainId": 137,
            },
        )
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "INVALID_WALLET_SIGNATURE"

    def test_email_login(self, client, sent_codes):
        resp = _email_login(client, sent_codes, "Someone@Example.com")

        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["account"]["type"] == "email"
        assert data["account"]["identifier"] == "someone@example.com"

    def test_email_request_rate_limited(self, client, sent_codes):
        for _ in range(3):
            resp = client.post("/v2/auth/email/request-code", json={"email": "a@example.com"})
            assert resp.status_code == 200
            assert resp.json()["data"] == {"sent": True, "expiresInMinutes": 10}

        resp = client.post("/v2/auth/email/request-code", json={"email": "A@example.com"})
        assert resp.status_code == 429
        assert resp.json()["error"]["code"] == "rate_limited"
        assert "retry_after" in resp.json()["error"]["details"]

    def test_email_send_failure(self, client, runtime, monkeypatch):
        monkeypatch.setattr(runtime.email, "send_verification_code", lambda *a: False)
        resp = client.post("/v2/auth/email/request-code", json={"email": "a@example.com"})
        assert resp.status_code == 500
        assert resp.json()["error"]["code"] == "EMAIL_SEND_FAILED"

    def test_guest_login(self, client):
        resp = client.post("/v2/auth/authenticate", json={"strategy": "guest"})
        assert resp.status_code == 200
        assert resp.json()["data"]["account"]["type"] == "guest"
        assert resp.json()["data"]["account"]["verified"] is False

    def test_unknown_strategy_is_validation_error(self, client):
        resp = client.post("/v2/auth/authenticate", json={"strategy": "pigeon"})
        assert resp.status_code == 400
        body = resp.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "validation_error"

    def test_social_provider_not_configured(self, client):
        resp = client.post(
            "/v2/auth/authenticate",
            json={"strategy": "social", "provider": "myspace", "token": "t"},
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "UNSUPPORTED_PROVIDER"


class TestTokens:
    def test_refresh_rotates(self, client, wallet):
        tokens = _wallet_login(client, wallet).json()["data"]["tokens"]

        resp = client.post("/v2/auth/refresh", json={"refreshToken": tokens["refreshToken"]})
        assert resp.status_code == 200
        rotated = resp.json()["data"]
        assert rotated["refreshToken"] != tokens["refreshToken"]

        replay = client.post("/v2/auth/refresh", json={"refreshToken": tokens["refreshToken"]})
        assert replay.status_code == 401
        assert replay.json()["error"]["code"] == "TOKEN_REVOKED"

    def test_missing_bearer(self, client):
        resp = client.get("/v2/auth/me")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"

    def test_logout_revokes_access_and_refresh(self, client, wallet):
        tokens = _wallet_login(client, wallet).json()["data"]["tokens"]

        resp = client.post(
            "/v2/auth/logout",
            json={"refreshToken": tokens["refreshToken"]},
            headers=_bearer(tokens["accessToken"]),
        )
        assert resp.status_code == 200
        assert resp.json()["data"] == {"loggedOut": True}

        me = client.get("/v2/auth/me", headers=_bearer(tokens["accessToken"]))
        assert me.status_code == 401
        assert me.json()["error"]["code"] == "TOKEN_REVOKED"
        refresh = client.post("/v2/auth/refresh", json={"refreshToken": tokens["refreshToken"]})
        assert refresh.status_code == 401

    def test_logout_all_ends_every_session(self, client, wallet):
        first = _wallet_login(client, wallet).json()["data"]["tokens"]
        second = _wallet_login(client, wallet).json()["data"]["tokens"]

        resp = client.post("/v2/auth/logout-all", headers=_bearer(first["accessToken"]))
        assert resp.status_code == 200
        assert resp.json()["data"] == {"revokedTokens": 2, "deletedSessions": 2}

        for tokens in (first, second):
            me = client.get("/v2/auth/me", headers=_bearer(tokens["accessToken"]))
            assert me.status_code == 401
            refresh = client.post(
                "/v2/auth/refresh", json={"refreshToken": tokens["refreshToken"]}
            )
            assert refresh.status_code == 401


class TestIdentity:
    def test_me(self, client, wallet):
        tokens = _wallet_login(client, wallet, deviceId="d1").json()["data"]["tokens"]

        resp = client.get("/v2/auth/me", headers=_bearer(tokens["accessToken"]))

        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["account"]["identifier"] == wallet.address.lower()
        assert data["session"]["deviceId"] == "d1"
        assert data["linkedAccounts"] == []

    def test_link_accounts_and_graph(self, client, wallet, sent_codes):
        tokens = _email_login(client, sent_codes, "me@example.com").json()["data"]["tokens"]
        nonce = client.get("/v2/auth/siwe/nonce").json()["data"]["nonce"]
        message = build_siwe_message(wallet.address, nonce)

        resp = client.post(
            "/v2/auth/link-accounts",
            json={
                "strategy": "wallet",
                "message": message,
                "signature": sign(wallet, message),
                "privacyMode": "partial",
            },
            headers=_bearer(tokens["accessToken"]),
        )
        assert resp.status_code == 200
        linked = resp.json()["data"]
        assert linked["isNewAccount"] is True
        assert linked["link"]["privacyMode"] == "partial"
        assert linked["linkedAccount"]["verified"] is True

        graph = client.get("/v2/auth/identity-graph", headers=_bearer(tokens["accessToken"]))
        assert graph.status_code == 200
        data = graph.json()["data"]
        assert {a["identifier"] for a in data["accounts"]} == {
            "me@example.com",
            wallet.address.lower(),
        }
        assert len(data["links"]) == 1

        update = client.put(
            "/v2/auth/link-privacy",
            json={"targetAccountId": linked["linkedAccount"]["id"], "privacyMode": "isolated"},
            headers=_bearer(tokens["accessToken"]),
        )
        assert update.status_code == 200
        assert update.json()["data"]["privacyMode"] == "isolated"
        graph = client.get("/v2/auth/identity-graph", headers=_bearer(tokens["accessToken"]))
        assert len(graph.json()["data"]["accounts"]) == 1

    def test_link_privacy_unknown_link(self, client, wallet):
        tokens = _wallet_login(client, wallet).json()["data"]["tokens"]
        resp = client.put(
            "/v2/auth/link-privacy",
            json={"targetAccountId": "nobody", "privacyMode": "linked"},
            headers=_bearer(tokens["accessToken"]),
        )
        assert resp.status_code == 404

    def test_isolated_session_hides_graph(self, client, wallet):
        tokens = _wallet_login(client, wallet, privacyMode="isolated").json()["data"]["tokens"]

        graph = client.get("/v2/auth/identity-graph", headers=_bearer(tokens["accessToken"]))
        assert graph.status_code == 403
        assert graph.json()["error"]["code"] == "PRIVACY_MODE_RESTRICTION"

        me = client.get("/v2/auth/me", headers=_bearer(tokens["accessToken"]))
        assert me.status_code == 200
        assert me.json()["data"]["linkedAccounts"] is None
        assert me.json()["data"]["session"]["privacyMode"] == "isolated"


class TestProfiles:
    def test_create_list_and_switch(self, client, wallet):
        tokens = _wallet_login(client, wallet).json()["data"]["tokens"]
        headers = _bearer(tokens["accessToken"])

        no_active = client.get("/v2/profiles/active", headers=headers)
        assert no_active.status_code == 403
        assert no_active.json()["error"]["code"] == "NO_ACTIVE_PROFILE"

        first = client.post("/v2/profiles", json={"name": "Trading"}, headers=headers)
        assert first.status_code == 200
        created = first.json()["data"]
        assert created["tokens"] is not None
        headers = _bearer(created["tokens"]["accessToken"])

        second = client.post("/v2/profiles", json={"name": "Gaming"}, headers=headers)
        assert second.json()["data"]["tokens"] is None
        second_id = second.json()["data"]["profile"]["id"]

        listed = client.get("/v2/profiles", headers=headers)
        assert {p["name"] for p in listed.json()["data"]} == {"Trading", "Gaming"}

        active = client.get("/v2/profiles/active", headers=headers)
        assert active.json()["data"]["id"] == created["profile"]["id"]

        switched = client.post(f"/v2/auth/switch-profile/{second_id}", headers=headers)
        assert switched.status_code == 200
        assert switched.json()["data"]["activeProfile"]["id"] == second_id
        active = client.get("/v2/profiles/active", headers=headers)
        assert active.json()["data"]["id"] == second_id

    def test_returning_login_gets_profile(self, client, wallet):
        tokens = _wallet_login(client, wallet).json()["data"]["tokens"]
        client.post("/v2/profiles", json={"name": "Main"}, headers=_bearer(tokens["accessToken"]))

        data = _wallet_login(client, wallet).json()["data"]

        assert data["isNewAccount"] is False
        assert data["requiresProfile"] is False
        assert data["activeProfile"]["name"] == "Main"

    def test_cannot_switch_to_another_accounts_profile(self, client, wallet, sent_codes):
        owner = _wallet_login(client, wallet).json()["data"]["tokens"]
        profile = client.post(
            "/v2/profiles", json={"name": "Mine"}, headers=_bearer(owner["accessToken"])
        ).json()["data"]["profile"]
        other = _email_login(client, sent_codes, "other@example.com").json()["data"]["tokens"]

        resp = client.post(
            f"/v2/auth/switch-profile/{profile['id']}", headers=_bearer(other["accessToken"])
        )
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "PROFILE_ACCESS_DENIED"

    def test_blank_name_rejected(self, client, wallet):
        tokens = _wallet_login(client, wallet).json()["data"]["tokens"]
        resp = client.post(
            "/v2/profiles", json={"name": ""}, headers=_bearer(tokens["accessToken"])
        )
        assert resp.status_code == 400


class TestPasskeyRoutes:
    def test_register_then_authenticate(self, client, wallet):
        tokens = _wallet_login(client, wallet).json()["data"]["tokens"]
        key = ec.generate_private_key(ec.SECP256R1())

        registered = client.post(
            "/v2/auth/passkey/register",
            json={"credentialId": "cred-http", "publicKey": _spki(key), "name": "Phone"},
            headers=_bearer(tokens["accessToken"]),
        )
        assert registered.status_code == 200
        assert "publicKey" not in registered.json()["data"]["metadata"]

        challenge = client.post("/v2/auth/passkey/challenge").json()["data"]
        assert challenge["rpId"] == "localhost"
        assertion = _assertion(key, challenge["challenge"])
        resp = client.post(
            "/v2/auth/authenticate",
            json={
                "strategy": "passkey",
                "credentialId": "cred-http",
                "clientDataJSON": assertion["client_data_json"],
                "authenticatorData": assertion["authenticator_data"],
                "signature": assertion["signature"],
            },
        )
        assert resp.status_code == 200
        assert resp.json()["data"]["account"]["type"] == "passkey"
        assert resp.json()["data"]["isNewAccount"] is False

    def test_register_requires_auth(self, client):
        resp = client.post(
            "/v2/auth/passkey/register", json={"credentialId": "c", "publicKey": "k"}
        )
        assert resp.status_code == 401


class TestFarcasterRoutes:
    def test_channel_lifecycle(self, client, runtime, wallet):
        runtime.farcaster.custody_reader.custody[99] = wallet.address
        created = client.post("/v2/auth/farcaster/channel", json={})
        assert created.status_code == 200
        channel = created.json()["data"]
        assert channel["status"] == "pending"

        message = build_siwe_message(
            wallet.address,
            channel["nonce"],
            domain=channel["domain"],
            chain_id=10,
            resources=["farcaster://fid/99"],
        )
        completed = client.post(
            f"/v2/auth/farcaster/channel/{channel['channelToken']}/complete",
            json={
                "message": message,
                "signature": sign(wallet, message),
                "fid": 99,
                "username": "alice",
            },
        )
        assert completed.status_code == 200
        status = client.get(f"/v2/auth/farcaster/channel/{channel['channelToken']}")
        assert status.json()["data"]["status"] == "completed"

        resp = client.post(
            "/v2/auth/authenticate",
            json={"strategy": "farcaster", "channelToken": channel["channelToken"]},
        )
        assert resp.status_code == 200
        account = resp.json()["data"]["account"]
        assert account["provider"] == "farcaster"
        assert account["identifier"] == "99"
        assert account["metadata"]["username"] == "alice"

    def test_unknown_channel(self, client):
        resp = client.get("/v2/auth/farcaster/channel/nope")
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "not_found"


class TestMpcWebhook:
    def _profile_id(self, client, wallet):
        tokens = _wallet_login(client, wallet).json()["data"]["tokens"]
        return client.post(
            "/v2/profiles", json={"name": "Main"}, headers=_bearer(tokens["accessToken"])
        ).json()["data"]["profile"]["id"]

    def _payload(self, profile_id):
        return {
            "profileId": profile_id,
            "keyId": "key-1",
            "publicKey": "04abcd",
            "address": "0x" + "Cd" * 20,
        }

    def test_assigns_wallet(self, client, wallet):
        profile_id = self._profile_id(client, wallet)
        resp = client.post(
            "/v2/webhooks/mpc/key-generated",
            json=self._payload(profile_id),
            headers={"X-Webhook-Secret": "test-webhook-secret"},
        )
        assert resp.status_code == 200
        assert resp.json()["data"]["sessionWalletAddress"] == "0x" + "cd" * 20

    def test_wrong_secret(self, client, wallet):
        profile_id = self._profile_id(client, wallet)
        resp = client.post(
            "/v2/webhooks/mpc/key-generated",
            json=self._payload(profile_id),
            headers={"X-Webhook-Secret": "guess"},
        )
        assert resp.status_code == 401

    def test_unconfigured_secret(self, client, runtime, monkeypatch):
        monkeypatch.setattr(runtime.settings, "mpc_webhook_secret", None)
        resp = client.post(
            "/v2/webhooks/mpc/key-generated",
            json=self._payload("p"),
            headers={"X-Webhook-Secret": "anything"},
        )
        assert resp.status_code == 503
        assert resp.json()["error"]["code"] == "service_unavailable"


class TestEnvelope:
    def test_request_id_echoed(self, client):
        resp = client.get("/v2/auth/me", headers={"X-Request-ID": "req-123"})
        assert resp.headers["X-Request-ID"] == "req-123"
        assert resp.json()["request_id"] == "req-123"

    def test_security_headers(self, client):
        resp = client.get("/v2/auth/siwe/nonce")
        assert resp.headers["X-Content-Type-Options"] == "nosniff"
        assert resp.headers["Cache-Control"] == "no-store"
        assert resp.headers["API-Version"] == app_module.__version__

    def test_invalid_json_body(self, client):
        resp = client.post("/v2/auth/refresh", json={})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "validation_error"
        assert resp.json()["error"]["details"]["errors"]

    def test_healthz(self, client):
        resp = client.get("/healthz")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "healthy"
        assert body["checks"]["redis"] == {"status": "not_configured"}
