"""Tests for SessionManager lifecycle."""

from unittest.mock import AsyncMock

import pytest

from zkwallet.config import DepositScheme, NetworkKind
from zkwallet.events import InitState
from zkwallet.exceptions import (
    AuthenticationError,
    ConfigurationError,
    IdentityNotFound,
    IncorrectPassword,
    InvalidMnemonic,
    SessionLocked,
    UnsupportedNetwork,
    WeakPassword,
)
from zkwallet.keys import derive_spending_key, validate_mnemonic
from zkwallet.pool.base import PoolClient, PoolError
from zkwallet.pool.simulated import SimulatedPoolClient
from zkwallet.session import SessionManager

from conftest import OTHER_MNEMONIC, TEST_MNEMONIC, FakeAdapter


def make_session(network_config, vault, settings, events, pool_factory=None):
    created = {"adapters": [], "pools": []}

    def adapter_factory(config, mnemonic):
        adapter = FakeAdapter(config, mnemonic)
        created["adapters"].append(adapter)
        return adapter

    def default_pool_factory(config, spending_key, settings):
        pool = SimulatedPoolClient(spending_key=spending_key, balance=10_000, max_per_tx=1000)
        created["pools"].append(pool)
        return pool

    session = SessionManager(
        network_config,
        vault,
        settings=settings,
        events=events,
        adapter_factory=adapter_factory,
        pool_factory=pool_factory or default_pool_factory,
    )
    return session, created


class TestIdentityCreation:
    """Tests for creating identities."""

    @pytest.mark.asyncio
    async def test_create_with_mnemonic(self, network_config, vault, settings, events):
        """Test that create stores the encrypted seed and derives the key."""
        session, _ = make_session(network_config, vault, settings, events)

        identity = await session.create("alice", TEST_MNEMONIC, "rightpw")

        assert identity.name == "alice"
        assert identity.spending_key == derive_spending_key(TEST_MNEMONIC, NetworkKind.EVM)
        assert TEST_MNEMONIC not in identity.encrypted_seed
        assert await session.identity_exists("alice")
        assert not session.is_unlocked

    @pytest.mark.asyncio
    async def test_create_generates_mnemonic(self, network_config, vault, settings, events):
        """Test that a mnemonic is generated when none is supplied."""
        session, _ = make_session(network_config, vault, settings, events)

        await session.create("bob", None, "password")
        seed = await session.reveal_seed("bob", "password")

        assert validate_mnemonic(seed)
        assert len(seed.split()) == 12

    @pytest.mark.asyncio
    async def test_create_invalid_mnemonic(self, network_config, vault, settings, events):
        """Test that a phrase with a bad checksum is rejected."""
        session, _ = make_session(network_config, vault, settings, events)

        with pytest.raises(InvalidMnemonic):
            await session.create("alice", "abandon " * 11 + "abandon", "rightpw")

        assert not await session.identity_exists("alice")

    @pytest.mark.asyncio
    async def test_create_weak_password(self, network_config, vault, settings, events):
        """Test that a short password is rejected before anything is stored."""
        session, _ = make_session(network_config, vault, settings, events)

        with pytest.raises(WeakPassword):
            await session.create("alice", TEST_MNEMONIC, "abc")

        assert await session.list_identities() == []

    @pytest.mark.asyncio
    async def test_spending_key_depends_on_network_kind(self):
        """Test the spending key is deterministic per (seed, kind)."""
        evm = derive_spending_key(TEST_MNEMONIC, NetworkKind.EVM)

        assert evm == derive_spending_key(TEST_MNEMONIC, NetworkKind.EVM)
        assert evm != derive_spending_key(TEST_MNEMONIC, NetworkKind.SUBSTRATE)
        assert evm != derive_spending_key(OTHER_MNEMONIC, NetworkKind.EVM)


class TestUnlock:
    """Tests for unlock and lock."""

    @pytest.mark.asyncio
    async def test_unlock_round_trip(self, network_config, vault, settings, events):
        """Test unlock returns the identity created with the same seed."""
        session, created = make_session(network_config, vault, settings, events)
        await session.create("alice", TEST_MNEMONIC, "rightpw")

        identity = await session.unlock("alice", "rightpw")

        assert session.is_unlocked
        assert identity.spending_key == derive_spending_key(TEST_MNEMONIC, NetworkKind.EVM)
        assert session.adapter is created["adapters"][0]
        assert session.pool is created["pools"][0]
        assert created["adapters"][0].mnemonic == TEST_MNEMONIC
        assert await session.reveal_seed("alice", "rightpw") == TEST_MNEMONIC

    @pytest.mark.asyncio
    async def test_wrong_password(self, network_config, vault, settings, events):
        """Test a wrong password fails authentication and binds nothing."""
        session, created = make_session(network_config, vault, settings, events)
        await session.create("alice", TEST_MNEMONIC, "rightpw")

        with pytest.raises(IncorrectPassword) as exc_info:
            await session.unlock("alice", "wrongpw")

        assert isinstance(exc_info.value, AuthenticationError)
        assert not session.is_unlocked
        assert created["adapters"] == []
        assert session.status == InitState.FAILED

        identity = await session.unlock("alice", "rightpw")
        assert identity.name == "alice"

    @pytest.mark.asyncio
    async def test_unlock_unknown_identity(self, network_config, vault, settings, events):
        """Test unlocking an identity that does not exist."""
        session, _ = make_session(network_config, vault, settings, events)

        with pytest.raises(IdentityNotFound):
            await session.unlock("nobody", "password")

    @pytest.mark.asyncio
    async def test_unlock_publishes_init_states(self, network_config, vault, settings, events):
        """Test the initialization states are published in order."""
        session, _ = make_session(network_config, vault, settings, events)
        await session.create("alice", TEST_MNEMONIC, "rightpw")

        with events.subscribe() as subscription:
            await session.unlock("alice", "rightpw")
            states = [event.state for event in subscription.pending()]

        assert states == [
            InitState.CLIENT_INITIALIZING,
            InitState.ACCOUNTLESS_READY,
            InitState.ACCOUNT_INITIALIZING,
            InitState.FULLY_READY,
        ]
        assert session.status == InitState.FULLY_READY

    @pytest.mark.asyncio
    async def test_failed_bind_leaves_session_locked(self, network_config, vault, settings, events):
        """Test a pool binding failure closes the adapter and stays locked."""

        def broken_pool_factory(config, spending_key, settings):
            raise ConfigurationError("No pool client registered")

        session, created = make_session(
            network_config, vault, settings, events, pool_factory=broken_pool_factory
        )
        await session.create("alice", TEST_MNEMONIC, "rightpw")

        with pytest.raises(ConfigurationError):
            await session.unlock("alice", "rightpw")

        assert not session.is_unlocked
        assert created["adapters"][0].closed
        assert session.status == InitState.FAILED
        with pytest.raises(SessionLocked):
            session.adapter

    @pytest.mark.asyncio
    async def test_failed_sync_closes_pool(self, network_config, vault, settings, events):
        """Test a pool whose first sync fails is closed and nothing is bound."""
        pool = AsyncMock(spec=PoolClient)
        pool.sync_state.side_effect = PoolError("relayer unreachable")

        session, created = make_session(
            network_config, vault, settings, events,
            pool_factory=lambda config, spending_key, settings: pool,
        )
        await session.create("alice", TEST_MNEMONIC, "rightpw")

        with pytest.raises(PoolError):
            await session.unlock("alice", "rightpw")

        pool.close.assert_awaited_once()
        assert created["adapters"][0].closed
        assert not session.is_unlocked

    @pytest.mark.asyncio
    async def test_failed_unlock_keeps_previous_identity(self, network_config, vault, settings, events):
        """Test a failed unlock does not disturb the current session."""
        session, _ = make_session(network_config, vault, settings, events)
        await session.create("alice", TEST_MNEMONIC, "rightpw")
        await session.create("bob", OTHER_MNEMONIC, "bobspw")
        await session.unlock("alice", "rightpw")

        with pytest.raises(IncorrectPassword):
            await session.unlock("bob", "wrongpw")

        assert session.identity.name == "alice"
        assert session.status == InitState.FULLY_READY
        assert [event.state for event in events.history[-2:]] == [InitState.FAILED, InitState.FULLY_READY]

    @pytest.mark.asyncio
    async def test_lock_publishes_locked(self, network_config, vault, settings, events):
        """Test locking an unlocked session publishes the Locked state once."""
        session, _ = make_session(network_config, vault, settings, events)
        await session.create("alice", TEST_MNEMONIC, "rightpw")
        await session.unlock("alice", "rightpw")

        await session.lock()
        await session.lock()

        assert session.status == InitState.LOCKED
        assert [e.state for e in events.history].count(InitState.LOCKED) == 1

    @pytest.mark.asyncio
    async def test_lock_closes_handles(self, network_config, vault, settings, events):
        """Test lock releases adapter and pool."""
        session, created = make_session(network_config, vault, settings, events)
        await session.create("alice", TEST_MNEMONIC, "rightpw")
        await session.unlock("alice", "rightpw")

        await session.lock()

        assert not session.is_unlocked
        assert created["adapters"][0].closed
        assert created["pools"][0].closed
        with pytest.raises(SessionLocked):
            session.pool
        with pytest.raises(SessionLocked):
            session.orchestrator

    @pytest.mark.asyncio
    async def test_context_manager_locks(self, network_config, vault, settings, events):
        """Test leaving the async context locks the session."""
        session, _ = make_session(network_config, vault, settings, events)
        await session.create("alice", TEST_MNEMONIC, "rightpw")

        async with session:
            await session.unlock("alice", "rightpw")
            assert session.is_unlocked

        assert not session.is_unlocked


class TestBindNetwork:
    """Tests for network binding."""

    @pytest.mark.asyncio
    async def test_unknown_kind(self, network_config, vault, settings, events):
        """Test binding an unknown network kind."""
        session, _ = make_session(network_config, vault, settings, events)
        await session.create("alice", TEST_MNEMONIC, "rightpw")
        await session.unlock("alice", "rightpw")

        with pytest.raises(UnsupportedNetwork):
            await session.bind_network("solana")

        assert session.is_unlocked

    @pytest.mark.asyncio
    async def test_same_kind_reuses_handles(self, network_config, vault, settings, events):
        """Test binding the current kind returns the bound handles."""
        session, created = make_session(network_config, vault, settings, events)
        await session.create("alice", TEST_MNEMONIC, "rightpw")
        await session.unlock("alice", "rightpw")

        adapter, pool = await session.bind_network(NetworkKind.EVM)

        assert adapter is created["adapters"][0]
        assert pool is created["pools"][0]

    @pytest.mark.asyncio
    async def test_rebind_substrate(self, network_config, vault, settings, events):
        """Test rebinding re-derives the spending key and deposit scheme."""
        session, created = make_session(network_config, vault, settings, events)
        await session.create("alice", TEST_MNEMONIC, "rightpw")
        evm_identity = await session.unlock("alice", "rightpw")

        await session.bind_network("substrate")

        assert session.config.network_kind is NetworkKind.SUBSTRATE
        assert session.config.deposit_scheme is DepositScheme.SIGNED
        assert session.identity.spending_key != evm_identity.spending_key
        assert created["adapters"][0].closed
        assert created["adapters"][1].mnemonic == TEST_MNEMONIC

    @pytest.mark.asyncio
    async def test_bind_requires_unlock(self, network_config, vault, settings, events):
        """Test binding without an unlocked identity."""
        session, _ = make_session(network_config, vault, settings, events)

        with pytest.raises(SessionLocked):
            await session.bind_network("evm")

    @pytest.mark.asyncio
    async def test_converter_and_sync(self, network_config, vault, settings, events):
        """Test unit conversions and state sync on an unlocked session."""
        session, _ = make_session(network_config, vault, settings, events)
        await session.create("alice", TEST_MNEMONIC, "rightpw")
        await session.unlock("alice", "rightpw")

        assert session.converter.human_to_shielded("1") == 10**9
        assert await session.sync_state() is True
        assert session.status == InitState.FULLY_READY

    @pytest.mark.asyncio
    async def test_failed_rebind_keeps_session(self, network_config, vault, settings, events):
        """Test a failed rebind reports the kept session as ready."""
        pools = []

        def evm_only_pool_factory(config, spending_key, settings):
            if config.network_kind is not NetworkKind.EVM:
                raise ConfigurationError("No pool client registered")
            pool = SimulatedPoolClient(spending_key=spending_key)
            pools.append(pool)
            return pool

        session, created = make_session(
            network_config, vault, settings, events, pool_factory=evm_only_pool_factory
        )
        await session.create("alice", TEST_MNEMONIC, "rightpw")
        await session.unlock("alice", "rightpw")

        with pytest.raises(ConfigurationError):
            await session.bind_network("substrate")

        assert session.config.network_kind is NetworkKind.EVM
        assert session.pool is pools[0]
        assert not created["adapters"][0].closed
        assert created["adapters"][1].closed
        assert session.status == InitState.FULLY_READY


class TestSessionQueries:
    """Tests for pool queries exposed by the session."""

    @pytest.mark.asyncio
    async def test_pending_direct_deposits(self, network_config, vault, settings, events, zk_address):
        """Test queued direct deposits are listed until the pool includes them."""
        session, created = make_session(network_config, vault, settings, events)
        await session.create("alice", TEST_MNEMONIC, "rightpw")
        await session.unlock("alice", "rightpw")

        tx_hash = await session.orchestrator.direct_deposit(zk_address, 500)

        pending = await session.pending_direct_deposits()
        assert [record.tx_hash for record in pending] == [tx_hash]
        assert pending[0].actions[0].to_address == zk_address

        created["pools"][0].include_direct_deposits()
        assert await session.pending_direct_deposits() == []

    @pytest.mark.asyncio
    async def test_pending_direct_deposits_requires_unlock(self, network_config, vault, settings, events):
        """Test the query needs a bound pool."""
        session, _ = make_session(network_config, vault, settings, events)

        with pytest.raises(SessionLocked):
            await session.pending_direct_deposits()
