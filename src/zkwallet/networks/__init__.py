"""Base-chain network adapters."""

from zkwallet.networks.base import MAX_UINT256, NetworkAdapter, NetworkError, SigningError
from zkwallet.networks.evm import EvmAdapter
from zkwallet.networks.factory import get_network_adapter, get_supported_networks
from zkwallet.networks.substrate import SubstrateAdapter

__all__ = [
    "MAX_UINT256",
    "NetworkAdapter",
    "NetworkError",
    "SigningError",
    "EvmAdapter",
    "SubstrateAdapter",
    "get_network_adapter",
    "get_supported_networks",
]
