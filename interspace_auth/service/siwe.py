"""Sign-In with Ethereum (EIP-4361) messages and verification."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from eth_account import Account as EthAccount
from eth_account.messages import encode_defunct

from interspace_auth.logging import get_logger
from interspace_auth.service.errors import AuthenticationError
from interspace_auth.service.nonces import NonceService
from interspace_auth.service.security_events import AUTH_FAILED, record_security_event

logger = get_logger(__name__)

_HEADER_SUFFIX = " wants you to sign in with your Ethereum account:"
_HEADER = re.compile(
    r"^(?:(?P<scheme>[a-zA-Z][a-zA-Z0-9+\-.]*)://)?(?P<domain>\S+)"
    + re.escape(_HEADER_SUFFIX)
    + r"$"
)
_ADDRESS = re.compile(r"^0x[a-fA-F0-9]{40}$")
_NONCE = re.compile(r"^[a-zA-Z0-9]{8,}$")

# Tagged fields in the order EIP-4361 requires them
_REQUIRED_FIELDS = ("URI", "Version", "Chain ID", "Nonce", "Issued At")
_OPTIONAL_FIELDS = ("Expiration Time", "Not Before", "Request ID")

CLOCK_SKEW = timedelta(seconds=60)


class SiweMessageError(ValueError):
    """Raised when a message does not follow the EIP-4361 layout."""


def _parse_timestamp(value: str) -> datetime:
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError as exc:
        raise SiweMessageError(f"invalid timestamp: {value}") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass
class SiweMessage:
    domain: str
    address: str
    uri: str
    chain_id: int
    nonce: str
    issued_at: datetime
    version: str = "1"
    statement: Optional[str] = None
    scheme: Optional[str] = None
    expiration_time: Optional[datetime] = None
    not_before: Optional[datetime] = None
    request_id: Optional[str] = None
    resources: List[str] = field(default_factory=list)

    @classmethod
    def parse(cls, text: str) -> "SiweMessage":
        if not isinstance(text, str) or not text:
            raise SiweMessageError("message is empty")
        lines = text.replace("\r\n", "\n").split("\n")
        header = _HEADER.match(lines[0])
        if not header:
            raise SiweMessageError("missing EIP-4361 header line")
        if len(lines) < 2 or not _ADDRESS.match(lines[1].strip()):
            raise SiweMessageError("missing or malformed address line")
        address = lines[1].strip()

        index = 2
        statement_lines: List[str] = []
        while index < len(lines) and not lines[index].startswith("URI: "):
            if lines[index].strip():
                statement_lines.append(lines[index])
            index += 1
        if len(statement_lines) > 1:
            raise SiweMessageError("statement must be a single line")

        values: dict = {}
        resources: List[str] = []
        expected = list(_REQUIRED_FIELDS) + list(_OPTIONAL_FIELDS)
        while index < len(lines):
            line = lines[index]
            index += 1
            if not line.strip():
                continue
            if line == "Resources:":
                while index < len(lines) and lines[index].startswith("- "):
                    resources.append(lines[index][2:].strip())
                    index += 1
                continue
            tag, sep, value = line.partition(": ")
            if not sep or tag not in expected:
                raise SiweMessageError(f"unexpected line: {line[:40]}")
            # Tags may only appear once and in order
            position = expected.index(tag)
            expected = expected[position + 1 :]
            values[tag] = value.strip()

        missing = [name for name in _REQUIRED_FIELDS if name not in values]
        if missing:
            raise SiweMessageError(f"missing fields: {', '.join(missing)}")
        if values["Version"] != "1":
            raise SiweMessageError("unsupported version")
        try:
            chain_id = int(values["Chain ID"])
        except ValueError as exc:
            raise SiweMessageError("chain id must be an integer") from exc
        if not _NONCE.match(values["Nonce"]):
            raise SiweMessageError("nonce must be at least 8 alphanumeric characters")

        return cls(
            domain=header.group("domain"),
            scheme=header.group("scheme"),
            address=address,
            statement=statement_lines[0] if statement_lines else None,
            uri=values["URI"],
            version=values["Version"],
            chain_id=chain_id,
            nonce=values["Nonce"],
            issued_at=_parse_timestamp(values["Issued At"]),
            expiration_time=(
                _parse_timestamp(values["Expiration Time"])
                if "Expiration Time" in values
                else None
            ),
            not_before=(
                _parse_timestamp(values["Not Before"]) if "Not Before" in values else None
            ),
            request_id=values.get("Request ID"),
            resources=resources,
        )

    def to_message(self) -> str:
        prefix = f"{self.scheme}://{self.domain}" if self.scheme else self.domain
        lines = [f"{prefix}{_HEADER_SUFFIX}", self.address, ""]
        if self.statement:
            lines.append(self.statement)
        lines.append("")
        lines.extend(
            [
                f"URI: {self.uri}",
                f"Version: {self.version}",
                f"Chain ID: {self.chain_id}",
                f"Nonce: {self.nonce}",
                f"Issued At: {format_timestamp(self.issued_at)}",
            ]
        )
        if self.expiration_time:
            lines.append(f"Expiration Time: {format_timestamp(self.expiration_time)}")
        if self.not_before:
            lines.append(f"Not Before: {format_timestamp(self.not_before)}")
        if self.request_id:
            lines.append(f"Request ID: {self.request_id}")
        if self.resources:
            lines.append("Resources:")
            lines.extend(f"- {resource}" for resource in self.resources)
        return "\n".join(lines)


def recover_signer(message: str, signature: str) -> str:
    """Recover the checksummed EIP-191 signer of ``message``."""
    return EthAccount.recover_message(encode_defunct(text=message), signature=signature)


@dataclass
class SiweVerification:
    address: str
    message: SiweMessage


class SiweService:
    """Verifies signed SIWE messages and consumes their nonces."""

    def __init__(
        self,
        nonces: NonceService,
        *,
        domain: Optional[str] = None,
        uri: Optional[str] = None,
        chain_id: int = 1,
        max_message_age_seconds: int = 600,
    ) -> None:
        self.nonces = nonces
        self.domain = domain
        self.uri = uri
        self.chain_id = chain_id
        self.max_message_age = timedelta(seconds=max_message_age_seconds)

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def create_message(
        self,
        address: str,
        *,
        statement: Optional[str] = "Sign in to Interspace",
        chain_id: Optional[int] = None,
        nonce: Optional[str] = None,
        resources: Optional[List[str]] = None,
        expiration_minutes: Optional[int] = 10,
    ) -> SiweMessage:
        """Build an unsigned message for clients that do not assemble their own."""
        now = self._now()
        return SiweMessage(
            domain=self.domain or "localhost",
            address=address,
            statement=statement,
            uri=self.uri or "http://localhost",
            chain_id=chain_id or self.chain_id,
            nonce=nonce or self.nonces.issue_nonce().nonce,
            issued_at=now,
            expiration_time=(
                now + timedelta(minutes=expiration_minutes) if expiration_minutes else None
            ),
            resources=list(resources or []),
        )

    def verify(
        self,
        message: str,
        signature: str,
        *,
        expected_address: Optional[str] = None,
        expected_chain_id: Optional[int] = None,
        ip_address: Optional[str] = None,
    ) -> SiweVerification:
        """Signature, address, chain, nonce state, time bounds, then consume the nonce."""
        try:
            parsed = SiweMessage.parse(message)
        except SiweMessageError as exc:
            raise AuthenticationError(
                f"malformed SIWE message: {exc}", error_code="SIWE_MESSAGE_MALFORMED"
            )

        try:
            signer = recover_signer(message, signature)
        except Exception as exc:
            logger.warning("siwe_signature_recovery_failed", error_type=type(exc).__name__)
            self._fail(parsed, "unrecoverable_signature", ip_address)
        if signer.lower() != parsed.address.lower():
            self._fail(parsed, "signer_mismatch", ip_address)
        if expected_address and expected_address.lower() != signer.lower():
            self._fail(parsed, "address_mismatch", ip_address)

        # the caller may name a chain but never widen the configured one
        if expected_chain_id is not None and expected_chain_id != self.chain_id:
            raise AuthenticationError(
                "unsupported chain id",
                error_code="INVALID_WALLET_SIGNATURE",
                detail={"expected_chain_id": self.chain_id},
            )
        if parsed.chain_id != self.chain_id:
            raise AuthenticationError(
                "unexpected chain id",
                error_code="INVALID_WALLET_SIGNATURE",
                detail={"expected_chain_id": self.chain_id},
            )
        if self.domain and parsed.domain != self.domain:
            raise AuthenticationError(
                "unexpected SIWE domain", error_code="INVALID_WALLET_SIGNATURE"
            )

        context = {"address": signer.lower(), "ip_address": ip_address}
        self.nonces.check_nonce(parsed.nonce, **context)

        now = self._now()
        if parsed.issued_at > now + CLOCK_SKEW:
            raise AuthenticationError(
                "message issued in the future", error_code="SIWE_MESSAGE_EXPIRED"
            )
        if now - parsed.issued_at > self.max_message_age:
            raise AuthenticationError("message too old", error_code="SIWE_MESSAGE_EXPIRED")
        if parsed.expiration_time and parsed.expiration_time <= now:
            raise AuthenticationError("message expired", error_code="SIWE_MESSAGE_EXPIRED")
        if parsed.not_before and parsed.not_before > now + CLOCK_SKEW:
            raise AuthenticationError(
                "message not yet valid", error_code="SIWE_MESSAGE_EXPIRED"
            )

        self.nonces.consume_nonce(parsed.nonce, **context)
        logger.info("siwe_verified", address=signer.lower(), chain_id=parsed.chain_id)
        return SiweVerification(address=signer, message=parsed)

    def _fail(self, parsed: SiweMessage, reason: str, ip_address: Optional[str]) -> None:
        record_security_event(
            AUTH_FAILED,
            strategy="wallet",
            reason=reason,
            address=parsed.address.lower(),
            ip_address=ip_address,
        )
        raise AuthenticationError(
            "invalid wallet signature", error_code="INVALID_WALLET_SIGNATURE"
        )
