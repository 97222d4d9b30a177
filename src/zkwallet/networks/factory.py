"""Network adapter factory.

The adapter class is chosen once, when a session binds its network.
"""

from zkwallet.config import NetworkConfig, NetworkKind
from zkwallet.exceptions import UnsupportedNetwork
from zkwallet.networks.base import NetworkAdapter
from zkwallet.networks.evm import EvmAdapter
from zkwallet.networks.substrate import SubstrateAdapter

# Network kind to adapter class mapping
ADAPTER_CLASSES: dict[NetworkKind, type[NetworkAdapter]] = {
    NetworkKind.EVM: EvmAdapter,
    NetworkKind.SUBSTRATE: SubstrateAdapter,
}


def get_supported_networks() -> list[str]:
    """Get list of supported network kinds."""
    return [kind.value for kind in ADAPTER_CLASSES]


def get_network_adapter(config: NetworkConfig, mnemonic: str) -> NetworkAdapter:
    """Create the adapter for the config's network kind.

    Raises:
        UnsupportedNetwork: If no adapter exists for the kind
    """
    kind = NetworkKind.parse(config.network_kind)
    adapter_class = ADAPTER_CLASSES.get(kind)
    if adapter_class is None:
        raise UnsupportedNetwork(f"No adapter for network kind {kind.value}", {"network_kind": kind.value})
    return adapter_class(config, mnemonic)
