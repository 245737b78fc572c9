import asyncio
import inspect
import os
import sys
import tempfile
from datetime import datetime, timezone
from pathlib import Path

# Environment must be in place before any import that builds settings
_test_tmp_dir = tempfile.mkdtemp(prefix="interspace_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("MPC_WEBHOOK_SECRET", "test-webhook-secret")
os.environ.setdefault("SIWE_DOMAIN", "localhost")
os.environ.setdefault("SIWE_CHAIN_ID", "1")

import pytest  # noqa: E402
from eth_account import Account as EthAccount  # noqa: E402
from eth_account.messages import encode_defunct  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from interspace_auth.service.farcaster import FID_RESOURCE_PREFIX, OPTIMISM_CHAIN_ID  # noqa: E402
from interspace_auth.service.runtime import get_runtime, reset_runtime_for_tests  # noqa: E402
from interspace_auth.service.siwe import SiweMessage  # noqa: E402


class StubCustodyReader:
    """In-memory stand-in for the ID Registry contract."""

    def __init__(self):
        self.custody = {}

    async def custody_of(self, fid: int) -> str:
        return self.custody.get(fid, "0x" + "0" * 40)


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests(custody_reader=StubCustodyReader())
    yield
    reset_runtime_for_tests(custody_reader=StubCustodyReader())


@pytest.fixture
def runtime():
    return get_runtime()


@pytest.fixture
def wallet():
    return EthAccount.create()


def sign(wallet, message: str) -> str:
    return "0x" + bytes(wallet.sign_message(encode_defunct(text=message)).signature).hex()


def build_siwe_message(
    address: str,
    nonce: str,
    *,
    domain: str = "localhost",
    chain_id: int = 1,
    issued_at: datetime | None = None,
    expiration_time: datetime | None = None,
    resources=None,
) -> str:
    return SiweMessage(
        domain=domain,
        address=address,
        statement="Sign in to Interspace",
        uri="http://localhost:8000",
        chain_id=chain_id,
        nonce=nonce,
        issued_at=issued_at or datetime.now(timezone.utc),
        expiration_time=expiration_time,
        resources=list(resources or []),
    ).to_message()


@pytest.fixture
def signed_siwe(runtime):
    """Factory: ``(wallet, **overrides) -> (message, signature)`` with a fresh nonce."""

    def _make(wallet, **overrides):
        nonce = overrides.pop("nonce", None) or runtime.nonces.issue_nonce().nonce
        message = build_siwe_message(wallet.address, nonce, **overrides)
        return message, sign(wallet, message)

    return _make


@pytest.fixture
def signed_farcaster(runtime):
    """Factory: ``(custody_wallet, fid) -> (message, signature)`` on Optimism."""

    def _make(wallet, fid, **overrides):
        nonce = overrides.pop("nonce", None) or runtime.nonces.issue_nonce().nonce
        message = build_siwe_message(
            wallet.address,
            nonce,
            domain=overrides.pop("domain", "example.com"),
            chain_id=OPTIMISM_CHAIN_ID,
            resources=[f"{FID_RESOURCE_PREFIX}{fid}"],
            **overrides,
        )
        return message, sign(wallet, message)

    return _make


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
