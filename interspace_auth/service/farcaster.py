"""Sign In With Farcaster: relay channels, SIWE on Optimism and on-chain custody checks."""

from __future__ import annotations

import asyncio
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol

from web3 import Web3

from interspace_auth.logging import get_logger
from interspace_auth.service.errors import AuthenticationError, ConflictError, NotFoundError, ValidationError
from interspace_auth.service.nonces import NonceService
from interspace_auth.service.security_events import CUSTODY_MISMATCH, record_security_event
from interspace_auth.service.siwe import SiweMessage, SiweMessageError, SiweService
from interspace_auth.storage.models import FarcasterChannel

logger = get_logger(__name__)

OPTIMISM_CHAIN_ID = 10
FID_RESOURCE_PREFIX = "farcaster://fid/"

ID_REGISTRY_ABI = [
    {
        "inputs": [{"internalType": "uint256", "name": "fid", "type": "uint256"}],
        "name": "custodyOf",
        "outputs": [{"internalType": "address", "name": "custody", "type": "address"}],
        "stateMutability": "view",
        "type": "function",
    }
]


class CustodyReader(Protocol):
    async def custody_of(self, fid: int) -> str: ...


class IdRegistryCustodyReader:
    """Reads ``custodyOf(fid)`` from the Farcaster ID Registry contract."""

    def __init__(self, rpc_url: str, registry_address: str, *, timeout: float = 10.0) -> None:
        self.w3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": timeout}))
        self.contract = self.w3.eth.contract(
            address=Web3.to_checksum_address(registry_address), abi=ID_REGISTRY_ABI
        )

    def _read(self, fid: int) -> str:
        return self.contract.functions.custodyOf(fid).call()

    async def custody_of(self, fid: int) -> str:
        return await asyncio.to_thread(self._read, fid)


def extract_fid(message: SiweMessage) -> int:
    for resource in message.resources:
        if resource.startswith(FID_RESOURCE_PREFIX):
            value = resource[len(FID_RESOURCE_PREFIX) :]
            if value.isdigit() and int(value) > 0:
                return int(value)
            break
    raise AuthenticationError(
        "message is missing a farcaster://fid resource", error_code="FARCASTER_AUTH_FAILED"
    )


@dataclass
class FarcasterIdentity:
    fid: int
    custody_address: str
    username: Optional[str] = None
    display_name: Optional[str] = None
    bio: Optional[str] = None
    pfp_url: Optional[str] = None

    def metadata(self) -> dict:
        data = {"fid": self.fid, "custodyAddress": self.custody_address}
        for key, value in (
            ("username", self.username),
            ("displayName", self.display_name),
            ("bio", self.bio),
            ("pfpUrl", self.pfp_url),
        ):
            if value:
                data[key] = value
        return data


class FarcasterService:
    def __init__(
        self,
        store,
        nonces: NonceService,
        custody_reader: CustodyReader,
        *,
        relay_url: str = "https://relay.farcaster.xyz",
        channel_ttl_minutes: int = 60,
        domain: str = "localhost",
        siwe_uri: str = "http://localhost:8000",
        max_message_age_seconds: int = 600,
    ) -> None:
        self.store = store
        self.nonces = nonces
        self.custody_reader = custody_reader
        self.relay_url = relay_url.rstrip("/")
        self.channel_ttl = timedelta(minutes=channel_ttl_minutes)
        self.domain = domain
        self.siwe_uri = siwe_uri
        # Messages are signed by Farcaster clients for the relying party's domain,
        # which may differ from the API host
        self.siwe = SiweService(
            nonces,
            domain=None,
            chain_id=OPTIMISM_CHAIN_ID,
            max_message_age_seconds=max_message_age_seconds,
        )

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def connect_uri(self, channel_token: str) -> str:
        return f"{self.relay_url}/v1/channel/{channel_token}"

    def create_channel(
        self, *, domain: Optional[str] = None, siwe_uri: Optional[str] = None
    ) -> FarcasterChannel:
        now = self._now()
        channel = FarcasterChannel(
            channel_token=secrets.token_hex(32),
            domain=domain or self.domain,
            siwe_uri=siwe_uri or self.siwe_uri,
            nonce=self.nonces.issue_nonce().nonce,
            expires_at=now + self.channel_ttl,
            created_at=now,
        )
        self.store.create_farcaster_channel(channel)
        logger.info(
            "farcaster_channel_created",
            domain=channel.domain,
            expires_at=channel.expires_at.isoformat(),
        )
        return channel

    def get_channel_status(self, channel_token: str) -> FarcasterChannel:
        channel = self.store.get_farcaster_channel(channel_token)
        if not channel:
            raise NotFoundError("channel not found")
        if channel.expires_at <= self._now():
            raise AuthenticationError("channel expired", error_code="FARCASTER_AUTH_FAILED")
        return channel

    def _check_channel_message(self, channel: FarcasterChannel, message: str) -> None:
        try:
            parsed = SiweMessage.parse(message)
        except SiweMessageError as exc:
            raise AuthenticationError(
                f"malformed SIWE message: {exc}", error_code="SIWE_MESSAGE_MALFORMED"
            )
        if parsed.nonce != channel.nonce or parsed.domain != channel.domain:
            raise AuthenticationError(
                "message was not issued for this channel", error_code="FARCASTER_AUTH_FAILED"
            )

    def complete_channel(
        self,
        channel_token: str,
        *,
        message: str,
        signature: str,
        fid: int,
        username: Optional[str] = None,
        display_name: Optional[str] = None,
        bio: Optional[str] = None,
        pfp_url: Optional[str] = None,
        custody_address: Optional[str] = None,
    ) -> FarcasterChannel:
        """Store the relay's signed response; only pending channels accept one."""
        if not message or not signature or not fid:
            raise ValidationError("message, signature and fid are required")
        self._check_channel_message(self.get_channel_status(channel_token), message)
        channel = self.store.complete_farcaster_channel(
            channel_token,
            message=message,
            signature=signature,
            fid=int(fid),
            username=username,
            display_name=display_name,
            bio=bio,
            pfp_url=pfp_url,
            custody_address=custody_address.lower() if custody_address else None,
        )
        if not channel:
            raise ConflictError("channel already completed")
        logger.info("farcaster_channel_completed", fid=channel.fid)
        return channel

    async def verify(
        self,
        message: str,
        signature: str,
        *,
        expected_fid: Optional[int] = None,
        ip_address: Optional[str] = None,
    ) -> FarcasterIdentity:
        try:
            fid = extract_fid(SiweMessage.parse(message))
        except SiweMessageError as exc:
            raise AuthenticationError(
                f"malformed SIWE message: {exc}", error_code="SIWE_MESSAGE_MALFORMED"
            )
        if expected_fid is not None and fid != int(expected_fid):
            raise AuthenticationError("fid mismatch", error_code="FARCASTER_AUTH_FAILED")

        verification = self.siwe.verify(message, signature, ip_address=ip_address)
        signer = verification.address.lower()
        try:
            custody = await self.custody_reader.custody_of(fid)
        except Exception as exc:
            logger.error("farcaster_custody_lookup_failed", fid=fid, error=str(exc))
            raise AuthenticationError(
                "unable to verify fid ownership", error_code="FARCASTER_AUTH_FAILED"
            )
        if not custody or custody.lower() != signer:
            record_security_event(
                CUSTODY_MISMATCH,
                fid=fid,
                address=signer,
                custody_address=(custody or "").lower(),
                ip_address=ip_address,
            )
            raise AuthenticationError(
                "signer does not own this fid", error_code="FARCASTER_CUSTODY_MISMATCH"
            )
        logger.info("farcaster_verified", fid=fid, address=signer)
        return FarcasterIdentity(fid=fid, custody_address=signer)

    async def authenticate_channel(
        self, channel_token: str, *, ip_address: Optional[str] = None
    ) -> FarcasterIdentity:
        """Verify a completed channel's stored response; the channel is single use."""
        channel = self.get_channel_status(channel_token)
        if channel.status != "completed" or not channel.message or not channel.signature:
            raise AuthenticationError("channel not completed", error_code="FARCASTER_AUTH_FAILED")
        self._check_channel_message(channel, channel.message)
        identity = await self.verify(
            channel.message,
            channel.signature,
            expected_fid=channel.fid,
            ip_address=ip_address,
        )
        identity.username = channel.username
        identity.display_name = channel.display_name
        identity.bio = channel.bio
        identity.pfp_url = channel.pfp_url
        self.store.delete_farcaster_channel(channel_token)
        return identity

    def cleanup_expired_channels(self) -> int:
        removed = self.store.delete_expired_farcaster_channels(self._now())
        if removed:
            logger.info("expired_farcaster_channels_removed", count=removed)
        return removed
