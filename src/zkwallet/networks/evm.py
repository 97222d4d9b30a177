"""EVM network adapter.

Key derivation: m/44'/60'/0'/0/0 from the session mnemonic.
Transport: JSON-RPC over httpx. Signing: eth_account.
"""

import asyncio
import logging
import time
from typing import Any, Optional

import httpx
from bip_utils import Bip39SeedGenerator, Bip44, Bip44Changes, Bip44Coins
from eth_abi import decode as abi_decode
from eth_abi import encode as abi_encode
from eth_account import Account
from eth_account.messages import encode_defunct, encode_typed_data
from eth_utils import function_signature_to_4byte_selector, to_checksum_address, to_hex

from zkwallet.config import NetworkConfig, NetworkKind
from zkwallet.networks.base import NetworkAdapter, NetworkError, SigningError

logger = logging.getLogger(__name__)

GAS_MULTIPLIER = 1.2
RECEIPT_POLL_INTERVAL = 2.0


def derive_evm_private_key(mnemonic: str, index: int = 0, account: int = 0) -> bytes:
    """Derive an EVM private key from a seed phrase."""
    seed = Bip39SeedGenerator(mnemonic).Generate()
    bip44 = Bip44.FromSeed(seed, Bip44Coins.ETHEREUM)
    node = bip44.Purpose().Coin().Account(account).Change(Bip44Changes.CHAIN_EXT)
    return node.AddressIndex(index).PrivateKey().Raw().ToBytes()


def encode_call(signature: str, types: list[str], args: list[Any]) -> str:
    """ABI-encode a contract call as 0x-prefixed calldata."""
    selector = function_signature_to_4byte_selector(signature)
    return to_hex(selector + abi_encode(types, args))


class EvmAdapter(NetworkAdapter):
    """Ethereum and EVM-compatible chains.

    Example:
        >>> adapter = EvmAdapter(config, mnemonic)
        >>> adapter.get_address()
        '0x...'
        >>> allowance = await adapter.get_allowance(config.pool_address)
    """

    kind = NetworkKind.EVM

    def __init__(
        self,
        config: NetworkConfig,
        mnemonic: str,
        http_client: Optional[httpx.AsyncClient] = None,
        receipt_timeout: float = 120.0,
    ):
        super().__init__(config)
        self._account = Account.from_key(derive_evm_private_key(mnemonic))
        self._client = http_client or httpx.AsyncClient(timeout=30.0)
        self._owns_client = http_client is None
        self._request_id = 0
        self.receipt_timeout = receipt_timeout

    def get_address(self) -> str:
        return self._account.address

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_balance(self, address: Optional[str] = None) -> int:
        result = await self._rpc_call("eth_getBalance", [address or self.get_address(), "latest"])
        return int(result, 16)

    async def get_token_balance(self, address: Optional[str] = None) -> int:
        data = encode_call(
            "balanceOf(address)", ["address"], [to_checksum_address(address or self.get_address())]
        )
        return int(await self._eth_call(self.config.token_address, data), 16)

    async def get_allowance(self, spender: str) -> int:
        data = encode_call(
            "allowance(address,address)",
            ["address", "address"],
            [self.get_address(), to_checksum_address(spender)],
        )
        return int(await self._eth_call(self.config.token_address, data), 16)

    async def get_token_name(self) -> str:
        result = await self._eth_call(self.config.token_address, encode_call("name()", [], []))
        (name,) = abi_decode(["string"], bytes.fromhex(result.removeprefix("0x")))
        return name

    async def get_token_nonce(self, owner: Optional[str] = None) -> int:
        data = encode_call(
            "nonces(address)", ["address"], [to_checksum_address(owner or self.get_address())]
        )
        return int(await self._eth_call(self.config.token_address, data), 16)

    # ------------------------------------------------------------------
    # Signing
    # ------------------------------------------------------------------

    async def sign(self, data: bytes) -> str:
        try:
            signed = self._account.sign_message(encode_defunct(primitive=data))
        except Exception as e:
            raise SigningError(f"Personal sign failed: {e}") from e
        return to_hex(signed.signature)

    async def sign_typed_data(self, payload: dict[str, Any]) -> str:
        try:
            signed = self._account.sign_message(encode_typed_data(full_message=payload))
        except Exception as e:
            raise SigningError(f"Typed data signing failed: {e}") from e
        return to_hex(signed.signature)

    # ------------------------------------------------------------------
    # Token operations
    # ------------------------------------------------------------------

    async def increase_allowance(self, spender: str, amount: int) -> str:
        data = encode_call(
            "increaseAllowance(address,uint256)",
            ["address", "uint256"],
            [to_checksum_address(spender), amount],
        )
        tx_hash = await self._send_transaction(self.config.token_address, data)
        await self.wait_for_receipt(tx_hash)
        return tx_hash

    async def approve(self, spender: str, amount: int) -> str:
        data = encode_call(
            "approve(address,uint256)",
            ["address", "uint256"],
            [to_checksum_address(spender), amount],
        )
        tx_hash = await self._send_transaction(self.config.token_address, data)
        await self.wait_for_receipt(tx_hash)
        return tx_hash

    async def send_transaction(self, to: str, value: int = 0, data: str = "0x") -> str:
        """Sign and broadcast an arbitrary transaction."""
        return await self._send_transaction(to, data, value)

    async def wait_for_receipt(self, tx_hash: str) -> dict:
        """Wait until the transaction is mined.

        Raises:
            NetworkError: If the transaction reverted or was not mined in time
        """
        deadline = time.monotonic() + self.receipt_timeout
        while time.monotonic() < deadline:
            receipt = await self._rpc_call("eth_getTransactionReceipt", [tx_hash])
            if receipt:
                if int(receipt.get("status", "0x0"), 16) != 1:
                    raise NetworkError(f"Transaction {tx_hash} reverted")
                return receipt
            await asyncio.sleep(RECEIPT_POLL_INTERVAL)

        raise NetworkError(f"Transaction {tx_hash} not mined within {self.receipt_timeout}s")

    async def _send_transaction(self, to: str, data: str, value: int = 0) -> str:
        address = self.get_address()
        tx = {
            "from": address,
            "to": to_checksum_address(to),
            "value": value,
            "data": data,
        }

        nonce = int(await self._rpc_call("eth_getTransactionCount", [address, "pending"]), 16)
        gas_price = int(await self._rpc_call("eth_gasPrice", []), 16)
        estimated = int(
            await self._rpc_call(
                "eth_estimateGas",
                [{"from": address, "to": tx["to"], "value": hex(value), "data": data}],
            ),
            16,
        )

        tx.update(
            {
                "nonce": nonce,
                "gas": int(estimated * GAS_MULTIPLIER),
                "gasPrice": gas_price,
                "chainId": self.config.chain_id,
            }
        )
        del tx["from"]

        try:
            signed = self._account.sign_transaction(tx)
        except Exception as e:
            raise SigningError(f"Transaction signing failed: {e}") from e

        raw_tx = getattr(signed, "raw_transaction", None) or signed.rawTransaction
        tx_hash = await self._rpc_call("eth_sendRawTransaction", [to_hex(raw_tx)])
        logger.info(f"Broadcast transaction {tx_hash} to {tx['to']}")
        return tx_hash

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _eth_call(self, to: str, data: str) -> str:
        return await self._rpc_call(
            "eth_call", [{"to": to_checksum_address(to), "data": data}, "latest"]
        )

    async def _rpc_call(self, method: str, params: list[Any]) -> Any:
        self._request_id += 1
        try:
            response = await self._client.post(
                self.config.rpc_url,
                json={
                    "jsonrpc": "2.0",
                    "method": method,
                    "params": params,
                    "id": self._request_id,
                },
            )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as e:
            raise NetworkError(f"RPC {method} failed: {e}") from e

        if "error" in data:
            message = data["error"].get("message", "RPC error")
            raise NetworkError(f"RPC {method} error: {message}")

        return data.get("result")

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
