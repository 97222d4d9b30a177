"""Pytest configuration and fixtures."""

import os
from typing import Any, AsyncGenerator, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

# Set test environment
os.environ["ZKWALLET_ENVIRONMENT"] = "test"
os.environ["ZKWALLET_VAULT_DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["ZKWALLET_DEBUG"] = "true"

from zkwallet.config import DepositScheme, NetworkConfig, NetworkKind, Settings
from zkwallet.events import EventStream
from zkwallet.networks.base import NetworkAdapter, SigningError
from zkwallet.pool.simulated import SimulatedPoolClient, make_shielded_address
from zkwallet.vault import EncryptedVault
from zkwallet.vault.models import Base

TEST_MNEMONIC = (
    "abandon abandon abandon abandon abandon abandon "
    "abandon abandon abandon abandon abandon about"
)
OTHER_MNEMONIC = "legal winner thank year wave sausage worth useful legal winner thank yellow"

POOL_ADDRESS = "0x" + "11" * 20
TOKEN_ADDRESS = "0x" + "22" * 20
WALLET_ADDRESS = "0x" + "33" * 20


class FakeAdapter(NetworkAdapter):
    """In-memory network adapter recording every call."""

    kind = NetworkKind.EVM

    def __init__(self, config: NetworkConfig, mnemonic: str = TEST_MNEMONIC, allowance: int = 0):
        super().__init__(config)
        self.mnemonic = mnemonic
        self.allowances: dict[str, int] = {}
        self.default_allowance = allowance
        self.calls: list[tuple[str, Any]] = []
        self.typed_payloads: list[dict] = []
        self.fail_signing = False
        self.closed = False
        self._tx_counter = 0

    def _tx_hash(self) -> str:
        self._tx_counter += 1
        return "0x" + f"{self._tx_counter:064x}"

    def get_address(self) -> str:
        return WALLET_ADDRESS

    async def get_balance(self, address: Optional[str] = None) -> int:
        return 10**18

    async def get_token_balance(self, address: Optional[str] = None) -> int:
        return 10**21

    async def sign(self, data: bytes) -> str:
        self.calls.append(("sign", data))
        if self.fail_signing:
            raise SigningError("device rejected")
        return "0x" + data.hex()

    async def sign_typed_data(self, payload: dict[str, Any]) -> str:
        self.calls.append(("sign_typed_data", payload["primaryType"]))
        self.typed_payloads.append(payload)
        return "0x" + "ab" * 65

    async def get_allowance(self, spender: str) -> int:
        return self.allowances.get(spender, self.default_allowance)

    async def increase_allowance(self, spender: str, amount: int) -> str:
        self.calls.append(("increase_allowance", (spender, amount)))
        self.allowances[spender] = await self.get_allowance(spender) + amount
        return self._tx_hash()

    async def approve(self, spender: str, amount: int) -> str:
        self.calls.append(("approve", (spender, amount)))
        self.allowances[spender] = amount
        return self._tx_hash()

    async def get_token_name(self) -> str:
        return "Test Token"

    async def get_token_nonce(self, owner: Optional[str] = None) -> int:
        return 7

    async def close(self) -> None:
        self.closed = True

    def call_names(self) -> list[str]:
        return [name for name, _ in self.calls]


@pytest.fixture
def settings() -> Settings:
    """Settings with fast readiness polling."""
    return Settings(
        _env_file=None,
        environment="test",
        dry_run=True,
        readiness_timeout=0.05,
        readiness_poll_interval=0.01,
    )


@pytest.fixture
def network_config() -> NetworkConfig:
    return NetworkConfig(
        network_kind=NetworkKind.EVM,
        rpc_url="http://localhost:8545",
        pool_address=POOL_ADDRESS,
        token_address=TOKEN_ADDRESS,
        relayer_url="http://localhost:8080",
        chain_id=11155111,
        explorer_tx_url="https://sepolia.etherscan.io/tx/{{hash}}",
        deposit_scheme=DepositScheme.APPROVE,
    )


@pytest.fixture
def adapter(network_config) -> FakeAdapter:
    return FakeAdapter(network_config)


@pytest.fixture
def pool() -> SimulatedPoolClient:
    """Simulated pool with 10000 shielded units and a 1000 cap."""
    return SimulatedPoolClient(spending_key=42, balance=10_000, max_per_tx=1000)


@pytest.fixture
def events() -> EventStream:
    return EventStream()


@pytest.fixture
def zk_address() -> str:
    return make_shielded_address(b"recipient")


@pytest_asyncio.fixture
async def vault_engine():
    """Create in-memory vault engine for testing."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture
async def vault(vault_engine) -> AsyncGenerator[EncryptedVault, None]:
    """Encrypted vault over the in-memory engine."""
    session_factory = async_sessionmaker(
        bind=vault_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    yield EncryptedVault(session_factory)
