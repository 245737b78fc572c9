"""WebAuthn passkey registration and assertion verification."""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from typing import Optional

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519, padding, rsa

from interspace_auth.logging import get_logger
from interspace_auth.service.accounts import AccountService
from interspace_auth.service.errors import AuthenticationError, ConflictError, ValidationError
from interspace_auth.service.identity_graph import IdentityGraphService
from interspace_auth.service.nonces import NonceService
from interspace_auth.service.security_events import AUTH_FAILED, record_security_event
from interspace_auth.service.tokens import b64url_decode, b64url_encode
from interspace_auth.storage.models import Account, AccountType, LinkType, PrivacyMode

logger = get_logger(__name__)

CHALLENGE_PURPOSE = "passkey"
INVALID_ASSERTION = "INVALID_PASSKEY_ASSERTION"

FLAG_USER_PRESENT = 0x01
FLAG_USER_VERIFIED = 0x04


@dataclass
class PasskeyChallenge:
    challenge: str
    rp_id: str
    timeout_ms: int


@dataclass
class AuthenticatorData:
    rp_id_hash: bytes
    flags: int
    sign_count: int

    @classmethod
    def parse(cls, raw: bytes) -> "AuthenticatorData":
        if len(raw) < 37:
            raise ValueError("authenticator data too short")
        return cls(
            rp_id_hash=raw[:32],
            flags=raw[32],
            sign_count=int.from_bytes(raw[33:37], "big"),
        )

    @property
    def user_present(self) -> bool:
        return bool(self.flags & FLAG_USER_PRESENT)


def load_public_key(encoded: str):
    try:
        return serialization.load_der_public_key(b64url_decode(encoded))
    except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
        raise ValidationError("invalid passkey public key", detail={"field": "publicKey"}) from exc


def verify_signature(public_key, signature: bytes, signed: bytes) -> None:
    """Raise InvalidSignature unless ``signature`` covers ``signed``."""
    if isinstance(public_key, ec.EllipticCurvePublicKey):
        public_key.verify(signature, signed, ec.ECDSA(hashes.SHA256()))
    elif isinstance(public_key, rsa.RSAPublicKey):
        public_key.verify(signature, signed, padding.PKCS1v15(), hashes.SHA256())
    elif isinstance(public_key, ed25519.Ed25519PublicKey):
        public_key.verify(signature, signed)
    else:
        raise InvalidSignature("unsupported key type")


def _algorithm_name(public_key) -> str:
    if isinstance(public_key, ec.EllipticCurvePublicKey):
        return "ES256"
    if isinstance(public_key, rsa.RSAPublicKey):
        return "RS256"
    if isinstance(public_key, ed25519.Ed25519PublicKey):
        return "EdDSA"
    raise ValidationError("unsupported passkey algorithm", detail={"field": "publicKey"})


class PasskeyService:
    """Passkey accounts are lookup-only at sign-in.

    A credential becomes an account only through ``register_passkey``, called
    by an already authenticated account; the new passkey account is linked
    directly to it. Assertions never create accounts.
    """

    def __init__(
        self,
        accounts: AccountService,
        graph: IdentityGraphService,
        nonces: NonceService,
        *,
        rp_id: str = "localhost",
        origin: str = "http://localhost:8000",
    ) -> None:
        self.accounts = accounts
        self.graph = graph
        self.nonces = nonces
        self.rp_id = rp_id
        self.origin = origin.rstrip("/")

    def issue_challenge(self) -> PasskeyChallenge:
        record = self.nonces.issue_nonce(purpose=CHALLENGE_PURPOSE)
        return PasskeyChallenge(
            challenge=b64url_encode(bytes.fromhex(record.nonce)),
            rp_id=self.rp_id,
            timeout_ms=int(self.nonces.ttl.total_seconds() * 1000),
        )

    def register_passkey(
        self,
        account_id: str,
        credential_id: str,
        public_key: str,
        *,
        sign_count: int = 0,
        name: Optional[str] = None,
    ) -> Account:
        if not credential_id or not credential_id.strip():
            raise ValidationError("credential id required", detail={"field": "credentialId"})
        key = load_public_key(public_key)
        owner = self.accounts.get_account(account_id)
        if self.accounts.find_account(AccountType.PASSKEY, credential_id):
            raise ConflictError("passkey already registered")
        metadata = {
            "publicKey": public_key,
            "algorithm": _algorithm_name(key),
            "signCount": int(sign_count),
        }
        if name:
            metadata["name"] = name
        passkey, created = self.accounts.find_or_create_account(
            AccountType.PASSKEY, credential_id, metadata=metadata
        )
        if not created:
            raise ConflictError("passkey already registered")
        passkey = self.accounts.verify_account(passkey.id)
        self.graph.link_accounts(owner.id, passkey.id, LinkType.DIRECT, PrivacyMode.LINKED)
        logger.info("passkey_registered", account_id=owner.id, passkey_account_id=passkey.id)
        return passkey

    def _reject(self, reason: str, credential_id: str, ip_address: Optional[str]) -> None:
        record_security_event(
            AUTH_FAILED, strategy="passkey", reason=reason, ip_address=ip_address
        )
        logger.warning("passkey_assertion_rejected", reason=reason, credential=credential_id[:12])
        raise AuthenticationError("invalid passkey assertion", error_code=INVALID_ASSERTION)

    def verify_assertion(
        self,
        credential_id: str,
        *,
        client_data_json: str,
        authenticator_data: str,
        signature: str,
        ip_address: Optional[str] = None,
    ) -> Account:
        account = self.accounts.find_account(AccountType.PASSKEY, credential_id or "")
        if not account:
            raise AuthenticationError(
                "passkey not registered", error_code="PASSKEY_NOT_REGISTERED"
            )

        try:
            client_data_raw = b64url_decode(client_data_json)
            client_data = json.loads(client_data_raw)
            auth_data_raw = b64url_decode(authenticator_data)
            auth_data = AuthenticatorData.parse(auth_data_raw)
            signature_raw = b64url_decode(signature)
            challenge = b64url_decode(client_data.get("challenge", "")).hex()
        except (ValueError, TypeError, AttributeError):
            self._reject("malformed", credential_id, ip_address)

        if client_data.get("type") != "webauthn.get":
            self._reject("client_data_type", credential_id, ip_address)
        if (client_data.get("origin") or "").rstrip("/") != self.origin:
            self._reject("origin_mismatch", credential_id, ip_address)
        if auth_data.rp_id_hash != hashlib.sha256(self.rp_id.encode()).digest():
            self._reject("rp_id_mismatch", credential_id, ip_address)
        if not auth_data.user_present:
            self._reject("user_not_present", credential_id, ip_address)

        context = {"strategy": "passkey", "ip_address": ip_address}
        self.nonces.check_nonce(challenge, purpose=CHALLENGE_PURPOSE, **context)

        key = load_public_key(account.metadata.get("publicKey", ""))
        signed = auth_data_raw + hashlib.sha256(client_data_raw).digest()
        try:
            verify_signature(key, signature_raw, signed)
        except (InvalidSignature, ValueError):
            self._reject("bad_signature", credential_id, ip_address)

        stored_count = int(account.metadata.get("signCount") or 0)
        if (stored_count or auth_data.sign_count) and auth_data.sign_count <= stored_count:
            self._reject("sign_count_regression", credential_id, ip_address)

        self.nonces.consume_nonce(challenge, purpose=CHALLENGE_PURPOSE, **context)
        account = self.accounts.update_metadata(
            account.id, {"signCount": auth_data.sign_count}
        )
        logger.info("passkey_assertion_verified", account_id=account.id)
        return account
