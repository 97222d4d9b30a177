"""Pool client factory.

Real pool clients (prover + relayer bindings) register themselves per
network kind. Without a registration the simulated pool is bound in
dry-run mode only.
"""

import logging
from typing import Callable, Optional

from zkwallet.config import NetworkConfig, NetworkKind, Settings, get_settings
from zkwallet.exceptions import ConfigurationError
from zkwallet.pool.base import PoolClient
from zkwallet.pool.simulated import SimulatedPoolClient

logger = logging.getLogger(__name__)

PoolClientFactory = Callable[[NetworkConfig, int, Settings], PoolClient]

# Network kind to pool client factory mapping
POOL_CLIENT_FACTORIES: dict[NetworkKind, PoolClientFactory] = {}


def register_pool_client(kind: "str | NetworkKind", factory: PoolClientFactory) -> None:
    """Register the pool client factory for a network kind."""
    POOL_CLIENT_FACTORIES[NetworkKind.parse(kind)] = factory


def unregister_pool_client(kind: "str | NetworkKind") -> None:
    POOL_CLIENT_FACTORIES.pop(NetworkKind.parse(kind), None)


def get_pool_client(
    config: NetworkConfig,
    spending_key: int,
    settings: Optional[Settings] = None,
) -> PoolClient:
    """Create the pool client for the config's network kind.

    Raises:
        ConfigurationError: If nothing is registered and dry-run is off
    """
    settings = settings or get_settings()
    kind = NetworkKind.parse(config.network_kind)

    factory = POOL_CLIENT_FACTORIES.get(kind)
    if factory is not None:
        return factory(config, spending_key, settings)

    if settings.dry_run:
        logger.info(f"[DRY RUN] Binding simulated pool client for {kind.value}")
        return SimulatedPoolClient(spending_key=spending_key)

    raise ConfigurationError(
        f"No pool client registered for {kind.value}",
        {"network_kind": kind.value, "dry_run": settings.dry_run},
    )
