"""Ephemeral funding addresses for permit-style deposits.

Addresses are derived from the identity's spending key with SLIP-10
hardened paths m/0'/index', secp256k1 for EVM and ed25519 for Substrate.
The same (identity, index) always yields the same address and key.
Private keys leave this module only through ``private_key_at``.
"""

import hashlib
import hmac
import logging
from typing import Optional

from bip_utils import Bip32Slip10Ed25519, Bip32Slip10Secp256k1
from eth_account import Account

from zkwallet.config import NetworkKind
from zkwallet.models import EphemeralAddress
from zkwallet.networks.substrate import encode_ss58
from zkwallet.pool.base import PoolClient

logger = logging.getLogger(__name__)

EPHEMERAL_SEED_TAG = b"zkwallet/ephemeral"


def _ephemeral_seed(spending_key: int) -> bytes:
    return hmac.new(EPHEMERAL_SEED_TAG, spending_key.to_bytes(32, "big"), hashlib.sha512).digest()


def derive_ephemeral_keypair(
    spending_key: int, index: int, kind: NetworkKind, ss58_format: int = 42
) -> tuple[bytes, str]:
    """Derive the (private key, address) pair of an ephemeral index."""
    if index < 0:
        raise ValueError(f"Ephemeral index must be non-negative: {index}")

    path = f"m/0'/{index}'"
    seed = _ephemeral_seed(spending_key)

    if NetworkKind.parse(kind) == NetworkKind.SUBSTRATE:
        node = Bip32Slip10Ed25519.FromSeed(seed).DerivePath(path)
        public_key = node.PublicKey().RawCompressed().ToBytes()[-32:]
        return node.PrivateKey().Raw().ToBytes(), encode_ss58(public_key, ss58_format)

    node = Bip32Slip10Secp256k1.FromSeed(seed).DerivePath(path)
    private_key = node.PrivateKey().Raw().ToBytes()
    return private_key, Account.from_key(private_key).address


class EphemeralAddressManager:
    """Derives ephemeral addresses and tracks their usage via the pool.

    The only state kept across calls is the scan cursor: every index below
    it has already been observed as used, and usage never decreases.

    Example:
        manager = EphemeralAddressManager(pool, identity.spending_key, NetworkKind.EVM)
        index = await manager.first_unused_index(limit=100)
        address = await manager.address_at(index)
    """

    def __init__(
        self,
        pool: PoolClient,
        spending_key: int,
        network_kind: NetworkKind,
        ss58_format: int = 42,
    ):
        self.pool = pool
        self._spending_key = spending_key
        self.network_kind = NetworkKind.parse(network_kind)
        self.ss58_format = ss58_format
        self._cursor = 0

    def derive_address(self, index: int) -> str:
        """Address at ``index`` without querying usage."""
        _, address = derive_ephemeral_keypair(
            self._spending_key, index, self.network_kind, self.ss58_format
        )
        return address

    async def address_at(self, index: int) -> EphemeralAddress:
        """Ephemeral address at ``index`` with balances and counters."""
        address = self.derive_address(index)
        usage = await self.pool.address_usage(address)
        return EphemeralAddress(
            index=index,
            address=address,
            token_balance=usage.token_balance,
            native_balance=usage.native_balance,
            in_tx_count=usage.in_tx_count,
            out_tx_count=usage.out_tx_count,
            nonces=dict(usage.nonces),
        )

    async def first_unused_index(self, limit: Optional[int] = None) -> Optional[int]:
        """First index with no observed activity.

        Args:
            limit: Maximum number of indices to inspect. Unbounded when None.

        Returns:
            The index, or None if ``limit`` indices were inspected and all
            of them are used.
        """
        index = self._cursor
        inspected = 0
        while limit is None or inspected < limit:
            entry = await self.address_at(index)
            if not entry.is_used:
                self._cursor = index
                return index
            index += 1
            inspected += 1

        logger.warning(f"No unused ephemeral address within {limit} indices from {self._cursor}")
        return None

    async def used_addresses(self, limit: Optional[int] = None) -> list[EphemeralAddress]:
        """All addresses with in/out activity, up to the first unused index."""
        used = []
        index = 0
        while limit is None or index < limit:
            entry = await self.address_at(index)
            if not entry.is_used:
                break
            used.append(entry)
            index += 1
        self._cursor = max(self._cursor, index)
        return used

    def private_key_at(self, index: int) -> str:
        """Export the private key of an ephemeral address as 0x hex."""
        private_key, _ = derive_ephemeral_keypair(
            self._spending_key, index, self.network_kind, self.ss58_format
        )
        logger.info(f"Ephemeral private key exported for index {index}")
        return "0x" + private_key.hex()

    @property
    def cursor(self) -> int:
        return self._cursor
