"""Unit tests for Sign In With Farcaster."""

from datetime import datetime, timedelta, timezone

import pytest
from eth_account import Account as EthAccount

from interspace_auth.service.dispatcher import ClientContext, FarcasterAuthRequest
from interspace_auth.service.errors import AuthenticationError, ConflictError, NotFoundError
from interspace_auth.service.farcaster import FarcasterIdentity, extract_fid
from interspace_auth.service.siwe import SiweMessage
from interspace_auth.storage.models import AccountType

FID = 4242


@pytest.fixture
def custody(runtime):
    return runtime.farcaster.custody_reader.custody


class TestVerify:
    async def test_custody_owner_verifies(self, runtime, wallet, custody, signed_farcaster):
        custody[FID] = wallet.address
        message, signature = signed_farcaster(wallet, FID)

        identity = await runtime.farcaster.verify(message, signature)

        assert identity.fid == FID
        assert identity.custody_address == wallet.address.lower()

    async def test_custody_mismatch(self, runtime, wallet, custody, signed_farcaster):
        custody[FID] = EthAccount.create().address
        message, signature = signed_farcaster(wallet, FID)

        with pytest.raises(AuthenticationError) as exc:
            await runtime.farcaster.verify(message, signature)
        assert exc.value.error_code == "FARCASTER_CUSTODY_MISMATCH"

    async def test_expected_fid_enforced(self, runtime, wallet, custody, signed_farcaster):
        custody[FID] = wallet.address
        message, signature = signed_farcaster(wallet, FID)

        with pytest.raises(AuthenticationError) as exc:
            await runtime.farcaster.verify(message, signature, expected_fid=FID + 1)
        assert exc.value.error_code == "FARCASTER_AUTH_FAILED"

    async def test_wrong_chain_rejected(self, runtime, wallet, custody, signed_siwe):
        custody[FID] = wallet.address
        message, signature = signed_siwe(wallet, resources=[f"farcaster://fid/{FID}"])

        with pytest.raises(AuthenticationError) as exc:
            await runtime.farcaster.verify(message, signature)
        assert exc.value.error_code == "INVALID_WALLET_SIGNATURE"

    async def test_custody_lookup_failure(self, runtime, wallet, signed_farcaster):
        class Broken:
            async def custody_of(self, fid):
                raise ConnectionError("rpc down")

        runtime.farcaster.custody_reader = Broken()
        message, signature = signed_farcaster(wallet, FID)

        with pytest.raises(AuthenticationError) as exc:
            await runtime.farcaster.verify(message, signature)
        assert exc.value.error_code == "FARCASTER_AUTH_FAILED"

    def test_extract_fid_requires_resource(self, wallet):
        message = SiweMessage(
            domain="example.com",
            address=wallet.address,
            uri="https://example.com",
            chain_id=10,
            nonce="abcdef012345",
            issued_at=datetime.now(timezone.utc),
            resources=["https://example.com/other"],
        )
        with pytest.raises(AuthenticationError) as exc:
            extract_fid(message)
        assert exc.value.error_code == "FARCASTER_AUTH_FAILED"

        message.resources.append("farcaster://fid/77")
        assert extract_fid(message) == 77

    def test_identity_metadata_skips_empty_fields(self):
        identity = FarcasterIdentity(fid=1, custody_address="0xabc", username="alice")
        assert identity.metadata() == {"fid": 1, "custodyAddress": "0xabc", "username": "alice"}


class TestChannels:
    def test_create_channel(self, runtime):
        channel = runtime.farcaster.create_channel(
            domain="app.example", siwe_uri="https://app.example/login"
        )

        assert channel.status == "pending"
        assert len(channel.channel_token) == 64
        assert runtime.store.get_nonce(channel.nonce) is not None
        assert runtime.farcaster.connect_uri(channel.channel_token).endswith(
            f"/v1/channel/{channel.channel_token}"
        )

    def test_unknown_channel(self, runtime):
        with pytest.raises(NotFoundError):
            runtime.farcaster.get_channel_status("missing")

    def test_expired_channel(self, runtime):
        channel = runtime.farcaster.create_channel()
        runtime.store.farcaster_channels[channel.channel_token].expires_at = datetime.now(
            timezone.utc
        ) - timedelta(seconds=1)

        with pytest.raises(AuthenticationError) as exc:
            runtime.farcaster.get_channel_status(channel.channel_token)
        assert exc.value.error_code == "FARCASTER_AUTH_FAILED"
        assert runtime.farcaster.cleanup_expired_channels() == 1

    async def test_completed_channel_authenticates_once(
        self, runtime, wallet, custody, signed_farcaster
    ):
        custody[FID] = wallet.address
        channel = runtime.farcaster.create_channel()
        message, signature = signed_farcaster(
            wallet, FID, nonce=channel.nonce, domain=channel.domain
        )
        runtime.farcaster.complete_channel(
            channel.channel_token,
            message=message,
            signature=signature,
            fid=FID,
            username="alice",
            display_name="Alice",
            custody_address=wallet.address,
        )
        with pytest.raises(ConflictError):
            runtime.farcaster.complete_channel(
                channel.channel_token, message=message, signature=signature, fid=FID
            )

        identity = await runtime.farcaster.authenticate_channel(channel.channel_token)

        assert identity.fid == FID
        assert identity.username == "alice"
        assert identity.display_name == "Alice"
        with pytest.raises(NotFoundError):
            await runtime.farcaster.authenticate_channel(channel.channel_token)

    def test_channel_rejects_message_over_another_nonce(
        self, runtime, wallet, custody, signed_farcaster
    ):
        custody[FID] = wallet.address
        channel = runtime.farcaster.create_channel()
        message, signature = signed_farcaster(wallet, FID, domain=channel.domain)

        with pytest.raises(AuthenticationError) as exc:
            runtime.farcaster.complete_channel(
                channel.channel_token, message=message, signature=signature, fid=FID
            )
        assert exc.value.error_code == "FARCASTER_AUTH_FAILED"
        assert runtime.farcaster.get_channel_status(channel.channel_token).status == "pending"

    def test_channel_rejects_message_for_another_domain(
        self, runtime, wallet, custody, signed_farcaster
    ):
        custody[FID] = wallet.address
        channel = runtime.farcaster.create_channel(domain="app.example")
        message, signature = signed_farcaster(
            wallet, FID, nonce=channel.nonce, domain="evil.example"
        )

        with pytest.raises(AuthenticationError) as exc:
            runtime.farcaster.complete_channel(
                channel.channel_token, message=message, signature=signature, fid=FID
            )
        assert exc.value.error_code == "FARCASTER_AUTH_FAILED"

    async def test_stored_message_must_match_channel(
        self, runtime, wallet, custody, signed_farcaster
    ):
        custody[FID] = wallet.address
        channel = runtime.farcaster.create_channel()
        message, signature = signed_farcaster(wallet, FID, domain=channel.domain)
        stored = runtime.store.farcaster_channels[channel.channel_token]
        stored.status = "completed"
        stored.message = message
        stored.signature = signature
        stored.fid = FID

        with pytest.raises(AuthenticationError) as exc:
            await runtime.farcaster.authenticate_channel(channel.channel_token)
        assert exc.value.error_code == "FARCASTER_AUTH_FAILED"

    async def test_pending_channel_cannot_authenticate(self, runtime):
        channel = runtime.farcaster.create_channel()
        with pytest.raises(AuthenticationError) as exc:
            await runtime.farcaster.authenticate_channel(channel.channel_token)
        assert exc.value.error_code == "FARCASTER_AUTH_FAILED"


async def test_dispatcher_maps_fid_to_social_account(
    runtime, wallet, custody, signed_farcaster
):
    custody[FID] = wallet.address
    message, signature = signed_farcaster(wallet, FID)

    result = await runtime.dispatcher.authenticate(
        FarcasterAuthRequest(message=message, signature=signature, fid=FID),
        ClientContext(ip_address="127.0.0.1"),
    )

    assert result.account.type is AccountType.SOCIAL
    assert result.account.provider == "farcaster"
    assert result.account.identifier == str(FID)
    assert result.account.verified is True
    assert result.account.metadata["custodyAddress"] == wallet.address.lower()
    assert result.is_new_account is True
