"""Shielded pool client contract and implementations."""

from zkwallet.pool.base import (
    AddressUsage,
    DecryptedAccount,
    DecryptedNote,
    FeeEstimate,
    GiftCard,
    JobFailedError,
    PoolClient,
    PoolError,
    PoolLimits,
    TreeState,
    TxMaterial,
)
from zkwallet.pool.factory import get_pool_client, register_pool_client, unregister_pool_client
from zkwallet.pool.simulated import SimulatedPoolClient

__all__ = [
    "AddressUsage",
    "DecryptedAccount",
    "DecryptedNote",
    "FeeEstimate",
    "GiftCard",
    "JobFailedError",
    "PoolClient",
    "PoolError",
    "PoolLimits",
    "SimulatedPoolClient",
    "TreeState",
    "TxMaterial",
    "get_pool_client",
    "register_pool_client",
    "unregister_pool_client",
]
