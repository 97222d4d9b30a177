"""Wallet session lifecycle.

The SessionManager owns the unlocked identity and the network adapter and
pool client bound for it. Components that need chain or pool access borrow
them from the session; nothing else holds session state.

Unlock is atomic: handles are built into locals and swapped in only after
every step succeeded, so a failed unlock leaves the previous session state
untouched.
"""

import dataclasses
import logging
from typing import Callable, Optional

from zkwallet.compliance import ComplianceReportBuilder
from zkwallet.config import DepositScheme, NetworkConfig, NetworkKind, Settings, get_settings
from zkwallet.ephemeral import EphemeralAddressManager
from zkwallet.events import EventStream, InitState
from zkwallet.exceptions import (
    IdentityNotFound,
    IncorrectPassword,
    InvalidMnemonic,
    SessionLocked,
    WeakPassword,
)
from zkwallet.keys import derive_spending_key, generate_mnemonic, normalize_mnemonic, validate_mnemonic
from zkwallet.models import HistoryRecord, Identity
from zkwallet.networks.base import NetworkAdapter
from zkwallet.networks.factory import get_network_adapter
from zkwallet.orchestrator import TransferOrchestrator
from zkwallet.pool.base import PoolClient
from zkwallet.pool.factory import get_pool_client
from zkwallet.units import AmountConverter
from zkwallet.vault import SEED_FIELD, EncryptedVault

logger = logging.getLogger(__name__)

AdapterFactory = Callable[[NetworkConfig, str], NetworkAdapter]
PoolFactory = Callable[[NetworkConfig, int, Settings], PoolClient]


class SessionManager:
    """Owns the active identity and its bound network.

    Usage:
        session = SessionManager(settings.network_config(), vault)
        await session.create("alice", None, "password")
        await session.unlock("alice", "password")
        outcome = await session.orchestrator.deposit(1000)
        await session.lock()
    """

    def __init__(
        self,
        config: NetworkConfig,
        vault: EncryptedVault,
        settings: Optional[Settings] = None,
        events: Optional[EventStream] = None,
        adapter_factory: AdapterFactory = get_network_adapter,
        pool_factory: PoolFactory = get_pool_client,
    ):
        self.config = config
        self.vault = vault
        self.settings = settings or get_settings()
        self.events = events or EventStream()
        self._adapter_factory = adapter_factory
        self._pool_factory = pool_factory

        self._identity: Optional[Identity] = None
        self._mnemonic: Optional[str] = None
        self._adapter: Optional[NetworkAdapter] = None
        self._pool: Optional[PoolClient] = None
        self._orchestrator: Optional[TransferOrchestrator] = None
        self._ephemeral: Optional[EphemeralAddressManager] = None

    # ------------------------------------------------------------------
    # Identities
    # ------------------------------------------------------------------

    async def create(self, name: str, mnemonic: Optional[str], password: str) -> Identity:
        """Store a new identity, generating a mnemonic when none is given.

        Raises:
            WeakPassword: If the password is shorter than the configured minimum
            InvalidMnemonic: If a supplied phrase fails checksum validation
        """
        if len(password) < self.settings.min_password_length:
            raise WeakPassword(
                f"Password must be at least {self.settings.min_password_length} characters",
                {"identity": name},
            )

        if mnemonic is None:
            mnemonic = generate_mnemonic()
            logger.info(f"Generated new seed phrase for identity {name}")
        elif not validate_mnemonic(mnemonic):
            raise InvalidMnemonic("Seed phrase failed checksum validation", {"identity": name})
        mnemonic = normalize_mnemonic(mnemonic)

        if await self.vault.exists(name):
            logger.warning(f"Overwriting stored seed of identity {name}")

        encrypted = await self.vault.store_secret(name, SEED_FIELD, mnemonic, password)
        return Identity(
            name=name,
            encrypted_seed=encrypted,
            network_kind=self.config.network_kind,
            spending_key=derive_spending_key(mnemonic, self.config.network_kind),
        )

    async def identity_exists(self, name: str) -> bool:
        return await self.vault.exists(name)

    async def list_identities(self) -> list[str]:
        return await self.vault.list_identities()

    async def reveal_seed(self, name: str, password: str) -> str:
        """Decrypt and return the stored seed phrase.

        Raises:
            IdentityNotFound: If nothing is stored under ``name``
            IncorrectPassword: If the password does not yield a valid mnemonic
        """
        return await self._decrypt_seed(name, password)

    async def _decrypt_seed(self, name: str, password: str) -> str:
        encrypted = await self.vault.get(name, SEED_FIELD)
        if encrypted is None:
            raise IdentityNotFound(f"Identity {name} does not exist", {"identity": name})

        mnemonic = await self.vault.load_secret(name, SEED_FIELD, password)
        if mnemonic is None or not validate_mnemonic(mnemonic):
            raise IncorrectPassword("Incorrect password", {"identity": name})
        return mnemonic

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def unlock(self, name: str, password: str) -> Identity:
        """Decrypt an identity and bind its network.

        Raises:
            IdentityNotFound: If nothing is stored under ``name``
            IncorrectPassword: If the password does not yield a valid mnemonic
            ConfigurationError: If the network cannot be bound
        """
        self.events.emit(InitState.CLIENT_INITIALIZING, f"Unlocking {name}")
        try:
            mnemonic = await self._decrypt_seed(name, password)
        except Exception as e:
            self.events.emit(InitState.FAILED, "Unlock failed", error=str(e))
            self._previous_kept()
            raise

        encrypted = await self.vault.get(name, SEED_FIELD)
        try:
            identity, adapter, pool = await self._build(name, encrypted, mnemonic, self.config)
        except Exception:
            self._previous_kept()
            raise

        await self._release()
        self._identity = identity
        self._mnemonic = mnemonic
        self._adapter = adapter
        self._pool = pool

        logger.info(f"Identity {name} unlocked on {self.config.network_kind.value}")
        return identity

    async def bind_network(self, network_kind: "str | NetworkKind") -> tuple[NetworkAdapter, PoolClient]:
        """Rebind the unlocked identity to another network kind.

        The spending key is re-derived for the new kind.

        Raises:
            SessionLocked: If no identity is unlocked
            UnsupportedNetwork: If the kind is unknown
        """
        kind = NetworkKind.parse(network_kind)
        identity = self.identity
        mnemonic = self._mnemonic

        if kind == self.config.network_kind and self._adapter and self._pool:
            return self._adapter, self._pool

        scheme = self.config.deposit_scheme
        if kind == NetworkKind.SUBSTRATE:
            scheme = DepositScheme.SIGNED
        elif scheme == DepositScheme.SIGNED:
            scheme = DepositScheme.APPROVE
        config = dataclasses.replace(self.config, network_kind=kind, deposit_scheme=scheme)
        try:
            new_identity, adapter, pool = await self._build(
                identity.name, identity.encrypted_seed, mnemonic, config
            )
        except Exception:
            self._previous_kept()
            raise

        await self._release()
        self.config = config
        self._identity = new_identity
        self._mnemonic = mnemonic
        self._adapter = adapter
        self._pool = pool
        return adapter, pool

    async def _build(
        self, name: str, encrypted: str, mnemonic: str, config: NetworkConfig
    ) -> tuple[Identity, NetworkAdapter, PoolClient]:
        adapter: Optional[NetworkAdapter] = None
        pool: Optional[PoolClient] = None
        try:
            kind = NetworkKind.parse(config.network_kind)
            adapter = self._adapter_factory(config, mnemonic)
            self.events.emit(
                InitState.ACCOUNTLESS_READY, f"Network adapter ready: {adapter.get_address()}"
            )

            self.events.emit(InitState.ACCOUNT_INITIALIZING, "Deriving shielded account")
            spending_key = derive_spending_key(mnemonic, kind)
            pool = self._pool_factory(config, spending_key, self.settings)
            ready = await pool.sync_state()
        except Exception as e:
            logger.error(f"Failed to bind {config.network_kind} for {name}: {e}")
            if pool is not None:
                await pool.close()
            if adapter is not None:
                await adapter.close()
            self.events.emit(InitState.FAILED, "Network binding failed", error=str(e))
            raise

        identity = Identity(name=name, encrypted_seed=encrypted, network_kind=kind, spending_key=spending_key)
        self.events.emit(InitState.FULLY_READY, "Account ready", account_id=identity.account_id, ready=ready)
        return identity, adapter, pool

    def _previous_kept(self) -> None:
        # A failed unlock or rebind leaves an already unlocked session usable
        if self._identity is not None:
            self.events.emit(
                InitState.FULLY_READY,
                "Previous session kept",
                account_id=self._identity.account_id,
            )

    async def lock(self) -> None:
        """Forget the unlocked identity and close bound handles."""
        name = self._identity.name if self._identity else None
        await self._release()
        if name:
            logger.info(f"Identity {name} locked")
            self.events.emit(InitState.LOCKED, f"Identity {name} locked")

    async def _release(self) -> None:
        if self._pool is not None:
            await self._pool.close()
        if self._adapter is not None:
            await self._adapter.close()
        self._identity = None
        self._mnemonic = None
        self._adapter = None
        self._pool = None
        self._orchestrator = None
        self._ephemeral = None

    async def sync_state(self) -> bool:
        """Force a pool state sync. Returns readiness afterwards."""
        pool = self.pool
        self.events.emit(InitState.ACCOUNT_INITIALIZING, "Syncing state")
        try:
            ready = await pool.sync_state()
        except Exception as e:
            self.events.emit(InitState.FAILED, "State sync failed", error=str(e))
            raise
        self.events.emit(InitState.FULLY_READY, "State synced", ready=ready)
        return ready

    async def __aenter__(self) -> "SessionManager":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.lock()
        return False

    # ------------------------------------------------------------------
    # Handles
    # ------------------------------------------------------------------

    @property
    def is_unlocked(self) -> bool:
        return self._identity is not None

    @property
    def identity(self) -> Identity:
        if self._identity is None:
            raise SessionLocked("No identity is unlocked")
        return self._identity

    @property
    def adapter(self) -> NetworkAdapter:
        if self._adapter is None:
            raise SessionLocked("No network is bound")
        return self._adapter

    @property
    def pool(self) -> PoolClient:
        if self._pool is None:
            raise SessionLocked("No pool client is bound")
        return self._pool

    @property
    def converter(self) -> AmountConverter:
        return AmountConverter(self.config)

    @property
    def status(self) -> Optional[InitState]:
        """Latest initialization state published by this session."""
        for event in reversed(self.events.history):
            if isinstance(event.state, InitState):
                return event.state
        return None

    @property
    def orchestrator(self) -> TransferOrchestrator:
        if self._orchestrator is None:
            self._orchestrator = TransferOrchestrator(
                self.config, self.adapter, self.pool, self.settings, self.events
            )
        return self._orchestrator

    @property
    def ephemeral(self) -> EphemeralAddressManager:
        if self._ephemeral is None:
            self._ephemeral = EphemeralAddressManager(
                self.pool, self.identity.spending_key, self.config.network_kind, self.config.ss58_format
            )
        return self._ephemeral

    async def pending_direct_deposits(self) -> list[HistoryRecord]:
        """Direct deposits queued on-chain but not yet included in the pool."""
        return await self.pool.pending_direct_deposits()

    def compliance(self) -> ComplianceReportBuilder:
        return ComplianceReportBuilder(self.pool, self.identity.account_id)

    def __repr__(self) -> str:
        name = self._identity.name if self._identity else None
        return f"SessionManager(identity={name}, network={self.config.network_kind.value})"
