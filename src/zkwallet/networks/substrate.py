"""Substrate network adapter.

Key derivation: SLIP-10 ed25519 (Polkadot coin type) from the session
mnemonic, SS58-encoded with the configured prefix. Chain state is read from
a Substrate API sidecar at ``rpc_url``.

Substrate pools take deposits authorized by a plain detached signature, so
token allowances do not exist here: the allowance is reported as unlimited
and approval calls are rejected.
"""

import logging
from typing import Any, Optional

import httpx
from bip_utils import (
    Bip39SeedGenerator,
    Bip44,
    Bip44Changes,
    Bip44Coins,
    SubstrateEd25519AddrEncoder,
)
from nacl.signing import SigningKey

from zkwallet.config import NetworkConfig, NetworkKind
from zkwallet.exceptions import ConfigurationError
from zkwallet.networks.base import MAX_UINT256, NetworkAdapter, NetworkError, SigningError

logger = logging.getLogger(__name__)

NATIVE_TOKEN = "native"


def derive_substrate_keypair(mnemonic: str, index: int = 0, account: int = 0) -> tuple[bytes, bytes]:
    """Derive an ed25519 (private key, public key) pair from a seed phrase."""
    seed = Bip39SeedGenerator(mnemonic).Generate()
    bip44 = Bip44.FromSeed(seed, Bip44Coins.POLKADOT_ED25519_SLIP)
    node = bip44.Purpose().Coin().Account(account).Change(Bip44Changes.CHAIN_EXT).AddressIndex(index)
    private_key = node.PrivateKey().Raw().ToBytes()
    # Compressed ed25519 keys carry a 0x00 prefix byte
    public_key = node.PublicKey().RawCompressed().ToBytes()[-32:]
    return private_key, public_key


def encode_ss58(public_key: bytes, ss58_format: int) -> str:
    """SS58 address of an ed25519 public key."""
    return SubstrateEd25519AddrEncoder.EncodeKey(public_key, ss58_format=ss58_format)


class SubstrateAdapter(NetworkAdapter):
    """Polkadot, Kusama and other Substrate chains."""

    kind = NetworkKind.SUBSTRATE

    def __init__(
        self,
        config: NetworkConfig,
        mnemonic: str,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(config)
        private_key, public_key = derive_substrate_keypair(mnemonic)
        self._signing_key = SigningKey(private_key)
        self._address = encode_ss58(public_key, config.ss58_format)
        self._client = http_client or httpx.AsyncClient(timeout=30.0)
        self._owns_client = http_client is None

    def get_address(self) -> str:
        return self._address

    async def get_balance(self, address: Optional[str] = None) -> int:
        info = await self._get(f"/accounts/{address or self._address}/balance-info")
        return int(info.get("free", 0))

    async def get_token_balance(self, address: Optional[str] = None) -> int:
        if self.config.token_address == NATIVE_TOKEN:
            return await self.get_balance(address)

        data = await self._get(
            f"/accounts/{address or self._address}/asset-balances",
            params={"assets[]": self.config.token_address},
        )
        for asset in data.get("assets", []):
            if str(asset.get("assetId")) == str(self.config.token_address):
                return int(asset.get("balance", 0))
        return 0

    async def sign(self, data: bytes) -> str:
        try:
            signature = self._signing_key.sign(data).signature
        except Exception as e:
            raise SigningError(f"ed25519 signing failed: {e}") from e
        return "0x" + signature.hex()

    async def sign_typed_data(self, payload: dict[str, Any]) -> str:
        raise SigningError("Typed data signatures are not available on Substrate networks")

    async def get_allowance(self, spender: str) -> int:
        return MAX_UINT256

    async def increase_allowance(self, spender: str, amount: int) -> str:
        raise ConfigurationError(
            "Token allowances are not used on Substrate networks", {"spender": spender}
        )

    async def approve(self, spender: str, amount: int) -> str:
        raise ConfigurationError(
            "Token allowances are not used on Substrate networks", {"spender": spender}
        )

    async def get_token_name(self) -> str:
        if self.config.token_address == NATIVE_TOKEN:
            spec = await self._get("/runtime/spec")
            symbols = spec.get("properties", {}).get("tokenSymbol", [])
            return symbols[0] if symbols else "UNIT"

        meta = await self._get(f"/pallets/assets/{self.config.token_address}/asset-info")
        return meta.get("assetMetaData", {}).get("name", "")

    async def get_token_nonce(self, owner: Optional[str] = None) -> int:
        info = await self._get(f"/accounts/{owner or self._address}/balance-info")
        return int(info.get("nonce", 0))

    async def _get(self, path: str, params: Optional[dict] = None) -> dict:
        url = self.config.rpc_url.rstrip("/") + path
        try:
            response = await self._client.get(url, params=params)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPError as e:
            raise NetworkError(f"Sidecar request {path} failed: {e}") from e

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
