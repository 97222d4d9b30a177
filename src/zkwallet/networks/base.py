"""Base interface for base-chain network adapters.

A NetworkAdapter is the session's handle on the base chain: it owns the
wallet's regular (non-shielded) key, signs on its behalf, and performs
token operations needed around pool deposits. One implementation exists
per chain family and is selected once when the session binds a network.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Optional

from zkwallet.config import NetworkConfig, NetworkKind
from zkwallet.units import from_base_units, to_base_units

logger = logging.getLogger(__name__)

MAX_UINT256 = 2**256 - 1


class NetworkError(Exception):
    """Raised when a chain RPC call fails."""

    pass


class SigningError(NetworkError):
    """Raised when a signature cannot be produced."""

    pass


class NetworkAdapter(ABC):
    """Abstract base class for chain adapters."""

    kind: NetworkKind

    def __init__(self, config: NetworkConfig):
        self.config = config

    @abstractmethod
    def get_address(self) -> str:
        """Regular address of the session wallet."""
        pass

    @abstractmethod
    async def get_balance(self, address: Optional[str] = None) -> int:
        """Native coin balance in base units."""
        pass

    @abstractmethod
    async def get_token_balance(self, address: Optional[str] = None) -> int:
        """Pool token balance in base units."""
        pass

    @abstractmethod
    async def sign(self, data: bytes) -> str:
        """Detached signature over raw bytes, hex encoded."""
        pass

    @abstractmethod
    async def sign_typed_data(self, payload: dict[str, Any]) -> str:
        """Signature over a typed-data payload, hex encoded."""
        pass

    @abstractmethod
    async def get_allowance(self, spender: str) -> int:
        """Token allowance granted by the wallet to ``spender``."""
        pass

    @abstractmethod
    async def increase_allowance(self, spender: str, amount: int) -> str:
        """Raise the allowance of ``spender`` by ``amount``. Returns tx hash."""
        pass

    @abstractmethod
    async def approve(self, spender: str, amount: int) -> str:
        """Set the allowance of ``spender`` to ``amount``. Returns tx hash."""
        pass

    @abstractmethod
    async def get_token_name(self) -> str:
        """Token name used in typed-data domains."""
        pass

    @abstractmethod
    async def get_token_nonce(self, owner: Optional[str] = None) -> int:
        """Permit nonce of ``owner`` on the token contract."""
        pass

    def to_base_unit(self, amount: str) -> int:
        """Human native amount to base units."""
        return to_base_units(amount, self.config.native_decimals)

    def from_base_unit(self, amount: int) -> str:
        """Native base units to a human amount."""
        return from_base_units(amount, self.config.native_decimals)

    def get_transaction_url(self, tx_hash: str) -> str:
        """Explorer URL for a transaction hash."""
        template = self.config.explorer_tx_url
        if not template:
            return tx_hash
        return template.replace("{{hash}}", tx_hash).replace("{hash}", tx_hash)

    def get_address_url(self, address: str) -> str:
        """Explorer URL for an address."""
        template = self.config.explorer_address_url
        if not template:
            return address
        return template.replace("{{addr}}", address).replace("{address}", address)

    async def close(self) -> None:
        """Release transport resources."""
        pass

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(address={self.get_address()})"
