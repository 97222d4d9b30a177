"""Simulated shielded pool for dry-run sessions and tests.

Keeps balances, jobs and history in memory. Fees, caps and failures are
configurable so every branch of the transfer protocol can be exercised
without a relayer or prover.
"""

import hashlib
import logging
import secrets
import time
from typing import Optional

from bip_utils import Base58ChecksumError, Base58Decoder, Base58Encoder

from zkwallet.models import (
    HistoryAction,
    HistoryRecord,
    HistoryRecordState,
    HistoryRecordType,
    TransactionPart,
    TxType,
)
from zkwallet.planner import TransactionPlanner
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

logger = logging.getLogger(__name__)

# Leaves per pool transaction (account + up to 127 notes)
OUT_PLUS_ONE = 128
ZK_PREFIX = "zk"
GIFT_CARD_VERSION = 1

DEFAULT_FEES = {
    TxType.DEPOSIT: 10,
    TxType.BRIDGE_DEPOSIT: 12,
    TxType.TRANSFER: 10,
    TxType.WITHDRAWAL: 15,
}


def _checksum(body: str) -> str:
    return hashlib.sha256(body.encode()).hexdigest()[:8]


def make_shielded_address(seed: bytes) -> str:
    """Simulated shielded address with an 8-hex-digit checksum."""
    body = hashlib.sha256(seed).hexdigest()[:40]
    return f"{ZK_PREFIX}{body}{_checksum(body)}"


class SimulatedPoolClient(PoolClient):
    """In-memory pool client.

    Args:
        spending_key: Key of the bound identity (seeds addresses and nullifiers)
        balance: Initial shielded account balance
        max_per_tx: Per-transaction cap returned to the planner
        min_amount: Minimum transferable amount
        fees: Base fee per transaction kind
        per_output_fee: Extra fee per output note
        ready_after: Number of readiness polls that report not-ready
        ready: Set False to never become ready
        fail_submissions: Submission ordinals (1-based) that raise PoolError
        fail_jobs: Submission ordinals whose jobs fail at hash resolution
        pool_alias: Pool name embedded in gift cards issued here
    """

    def __init__(
        self,
        spending_key: int = 1,
        balance: int = 0,
        max_per_tx: int = 10**12,
        min_amount: int = 1,
        fees: Optional[dict[TxType, int]] = None,
        per_output_fee: int = 0,
        direct_deposit_fee: int = 5,
        ready_after: int = 0,
        ready: bool = True,
        fail_submissions: Optional[set[int]] = None,
        fail_jobs: Optional[set[int]] = None,
        max_outputs: int = 127,
        pool_alias: str = "simulated",
    ):
        self.spending_key = spending_key
        self.account_balance = balance
        self.note_balance = 0
        self.max_per_tx = max_per_tx
        self.min_amount = min_amount
        self.fees = dict(DEFAULT_FEES if fees is None else fees)
        self.per_output_fee = per_output_fee
        self._direct_deposit_fee = direct_deposit_fee
        self._ready_after = ready_after
        self._ready = ready
        self._max_outputs = max_outputs
        self.pool_alias = pool_alias
        self.fail_submissions = set(fail_submissions or ())
        self.fail_jobs = set(fail_jobs or ())

        self.submissions: list[dict] = []
        self.readiness_polls = 0
        self.tree_index = 0
        self._jobs: dict[str, Optional[str]] = {}
        self._history: list[HistoryRecord] = []
        self._materials: dict[str, TxMaterial] = {}
        self._usage: dict[str, AddressUsage] = {}
        self._gift_cards: dict[bytes, int] = {}
        self._address_counter = 0
        self._roots: dict[int, int] = {0: self._root_at(0)}
        self.closed = False

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    async def is_ready_to_transact(self) -> bool:
        self.readiness_polls += 1
        if not self._ready:
            return False
        return self.readiness_polls > self._ready_after

    async def sync_state(self) -> bool:
        return await self.is_ready_to_transact()

    async def get_balances(self, update_state: bool = True) -> tuple[int, int, int]:
        total = self.account_balance + self.note_balance
        return total, self.account_balance, self.note_balance

    async def get_optimistic_total_balance(self, update_state: bool = True) -> int:
        total, _, _ = await self.get_balances(update_state)
        return total

    async def tree_state(self, index: Optional[int] = None) -> TreeState:
        at = self.tree_index if index is None else index
        root = self._roots.get(at)
        if root is None:
            root = self._root_at(at)
        return TreeState(root=root, index=at)

    async def rollback(self, index: int) -> int:
        if index % OUT_PLUS_ONE != 0 or index > self.tree_index:
            raise PoolError(f"Cannot roll back to index {index}")
        self.tree_index = index
        self._history = [r for r in self._history if r.index < index]
        return self.tree_index

    # ------------------------------------------------------------------
    # Fees and limits
    # ------------------------------------------------------------------

    async def estimate_fee(
        self, amounts: list[int], tx_type: TxType, update_state: bool = True
    ) -> FeeEstimate:
        total_balance, _, _ = await self.get_balances()

        if tx_type in (TxType.DEPOSIT, TxType.BRIDGE_DEPOSIT):
            fee = await self.part_fee(tx_type, len(amounts) or 1)
            return FeeEstimate(total=fee, per_tx=[fee], relayer_fee=fee, tx_count=1)

        parts = await self.plan_transaction_parts(amounts, tx_type)
        if not parts:
            fee = await self.part_fee(tx_type, len(amounts) or 1)
            return FeeEstimate(
                total=fee, per_tx=[fee], relayer_fee=fee, tx_count=1, insufficient_funds=True
            )

        per_tx = [part.fee for part in parts]
        total_fee = sum(per_tx)
        insufficient = sum(amounts) + total_fee > total_balance
        return FeeEstimate(
            total=total_fee,
            per_tx=per_tx,
            relayer_fee=total_fee,
            tx_count=len(parts),
            insufficient_funds=insufficient,
        )

    async def plan_transaction_parts(
        self, amounts: list[int], tx_type: TxType
    ) -> list[TransactionPart]:
        return await TransactionPlanner(self).plan_amounts(amounts, tx_type)

    async def max_transfer_amount(self, tx_type: TxType) -> int:
        return self.max_per_tx

    async def min_tx_amount(self) -> int:
        return self.min_amount

    @property
    def max_outputs_per_tx(self) -> int:
        return self._max_outputs

    async def part_fee(self, tx_type: TxType, output_count: int) -> int:
        return self.fees.get(tx_type, 0) + self.per_output_fee * output_count

    async def direct_deposit_fee(self) -> int:
        return self._direct_deposit_fee

    async def get_limits(self, address: str) -> PoolLimits:
        return PoolLimits(
            deposit_single_tx=self.max_per_tx,
            deposit_daily=self.max_per_tx * 10,
            withdraw_daily=self.max_per_tx * 10,
            transfer_single_tx=self.max_per_tx,
            direct_deposit_single_tx=self.max_per_tx,
            direct_deposit_daily=self.max_per_tx * 10,
        )

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def deposit_salt(self, amount: int, fee: int) -> bytes:
        return hashlib.sha256(
            f"{self.spending_key}:{self.tree_index}:{amount}:{fee}".encode()
        ).digest()

    async def submit_deposit(
        self,
        amount: int,
        fee: int,
        from_address: str,
        signature: Optional[str] = None,
        deadline: Optional[int] = None,
    ) -> str:
        job_id = self._register_submission(
            "deposit", amount=amount, fee=fee, from_address=from_address,
            signature=signature, deadline=deadline,
        )
        self.account_balance += amount
        self._record(
            HistoryRecordType.DEPOSIT,
            [HistoryAction(from_address, "", amount)],
            fee,
            job_id,
        )
        return job_id

    async def submit_deposit_ephemeral(self, amount: int, index: int, fee: int) -> str:
        job_id = self._register_submission("deposit_ephemeral", amount=amount, fee=fee, index=index)
        self.account_balance += amount
        self._record(
            HistoryRecordType.DEPOSIT,
            [HistoryAction(f"ephemeral:{index}", "", amount)],
            fee,
            job_id,
        )
        return job_id

    async def submit_transfer(self, part: TransactionPart) -> str:
        self._ensure_funds(part.total_with_fee)
        job_id = self._register_submission("transfer", part=part)
        self.account_balance -= part.total_with_fee
        self._record(
            HistoryRecordType.TRANSFER_OUT,
            [HistoryAction("", out.destination, out.amount) for out in part.outputs],
            part.fee,
            job_id,
            note_count=len(part.outputs),
        )
        return job_id

    async def submit_withdraw(
        self, part: TransactionPart, address: str, native_amount: int = 0
    ) -> str:
        self._ensure_funds(part.total_with_fee)
        job_id = self._register_submission(
            "withdraw", part=part, address=address, native_amount=native_amount
        )
        self.account_balance -= part.total_with_fee
        self._record(
            HistoryRecordType.WITHDRAWAL,
            [HistoryAction("", address, part.total_amount)],
            part.fee,
            job_id,
        )
        return job_id

    async def direct_deposit_contract(self) -> str:
        return "0x" + hashlib.sha256(b"direct-deposit-queue").hexdigest()[:40]

    async def submit_direct_deposit(
        self, zk_address: str, amount: int, fallback_address: str
    ) -> str:
        if not await self.verify_address_checksum(zk_address):
            raise PoolError(f"Invalid shielded address: {zk_address}")
        self._register_submission(
            "direct_deposit", amount=amount, zk_address=zk_address, fallback=fallback_address
        )
        tx_hash = "0x" + secrets.token_hex(32)
        self._history.append(
            HistoryRecord(
                timestamp=int(time.time()),
                type=HistoryRecordType.DIRECT_DEPOSIT,
                state=HistoryRecordState.PENDING,
                actions=[HistoryAction(fallback_address, zk_address, amount)],
                fee=self._direct_deposit_fee,
                tx_hash=tx_hash,
                index=self.tree_index,
            )
        )
        return tx_hash

    async def await_job_hash(self, job_id: str) -> str:
        if job_id not in self._jobs:
            raise JobFailedError(job_id, "unknown job")
        tx_hash = self._jobs[job_id]
        if tx_hash is None:
            raise JobFailedError(job_id, "rejected by relayer")
        return tx_hash

    # ------------------------------------------------------------------
    # Gift cards
    # ------------------------------------------------------------------

    def issue_gift_card(self, balance: int) -> GiftCard:
        """Fund a new gift card account in this pool."""
        card = GiftCard(
            spending_key=secrets.token_bytes(32),
            birth_index=self.tree_index,
            balance=balance,
            pool_alias=self.pool_alias,
        )
        self._gift_cards[card.spending_key] = balance
        return card

    async def gift_card_balance(self, card: GiftCard) -> int:
        return self._gift_cards.get(card.spending_key, 0)

    async def redeem_gift_card(self, card: GiftCard) -> str:
        if card.pool_alias != self.pool_alias:
            raise PoolError(f"Gift card belongs to pool {card.pool_alias}, not {self.pool_alias}")
        balance = await self.gift_card_balance(card)
        fee = await self.part_fee(TxType.TRANSFER, 1)
        if balance <= fee:
            raise PoolError(f"Gift card balance {balance} does not cover the fee {fee}")

        job_id = self._register_submission("redeem_gift_card", card=card, fee=fee)
        self._gift_cards[card.spending_key] = 0
        self.account_balance += balance - fee
        self._record(
            HistoryRecordType.TRANSFER_IN,
            [HistoryAction("gift-card", "", balance - fee)],
            fee,
            job_id,
            note_count=1,
        )
        return job_id

    async def code_for_gift_card(self, card: GiftCard) -> str:
        payload = (
            bytes([GIFT_CARD_VERSION])
            + card.spending_key
            + card.birth_index.to_bytes(8, "big")
            + card.balance.to_bytes(8, "big")
            + card.pool_alias.encode()
        )
        return Base58Encoder.CheckEncode(payload)

    async def gift_card_from_code(self, code: str) -> GiftCard:
        try:
            payload = Base58Decoder.CheckDecode(code)
        except (ValueError, Base58ChecksumError) as e:
            raise PoolError(f"Invalid gift card code: {e}") from e
        if len(payload) < 49 or payload[0] != GIFT_CARD_VERSION:
            raise PoolError("Invalid gift card code: unsupported layout")

        try:
            alias = payload[49:].decode()
        except UnicodeDecodeError as e:
            raise PoolError(f"Invalid gift card code: {e}") from e
        return GiftCard(
            spending_key=payload[1:33],
            birth_index=int.from_bytes(payload[33:41], "big"),
            balance=int.from_bytes(payload[41:49], "big"),
            pool_alias=alias,
        )

    # ------------------------------------------------------------------
    # History and addresses
    # ------------------------------------------------------------------

    async def raw_history(self, update_state: bool = True) -> list[HistoryRecord]:
        return list(self._history)

    async def pending_direct_deposits(self) -> list[HistoryRecord]:
        return [
            record
            for record in self._history
            if record.type == HistoryRecordType.DIRECT_DEPOSIT
            and record.state == HistoryRecordState.PENDING
        ]

    def include_direct_deposits(self) -> int:
        """Mark every queued direct deposit as included by the pool operator."""
        included = 0
        for record in self._history:
            if record.type == HistoryRecordType.DIRECT_DEPOSIT and record.state == HistoryRecordState.PENDING:
                record.state = HistoryRecordState.DONE
                included += 1
        return included

    async def tx_material(self, record: HistoryRecord) -> Optional[TxMaterial]:
        return self._materials.get(record.tx_hash)

    def add_history(self, record: HistoryRecord, material: Optional[TxMaterial] = None) -> None:
        """Seed a history record and its decrypted material."""
        self._history.append(record)
        if material is not None:
            self._materials[record.tx_hash] = material

    async def address_usage(self, address: str) -> AddressUsage:
        return self._usage.get(address.lower(), AddressUsage())

    def set_address_usage(self, address: str, usage: AddressUsage) -> None:
        self._usage[address.lower()] = usage

    async def generate_address(self) -> str:
        self._address_counter += 1
        return make_shielded_address(
            f"{self.spending_key}:{self._address_counter}".encode()
        )

    async def verify_address_checksum(self, address: str) -> bool:
        if not address.startswith(ZK_PREFIX):
            return False
        payload = address[len(ZK_PREFIX):]
        if len(payload) != 48:
            return False
        body, checksum = payload[:40], payload[40:]
        return _checksum(body) == checksum

    async def close(self) -> None:
        self.closed = True

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _ensure_funds(self, needed: int) -> None:
        if needed > self.account_balance + self.note_balance:
            raise PoolError(
                f"Insufficient shielded balance: need {needed}, "
                f"have {self.account_balance + self.note_balance}"
            )

    def _register_submission(self, kind: str, **payload) -> str:
        ordinal = len(self.submissions) + 1
        if ordinal in self.fail_submissions:
            self.submissions.append({"kind": kind, "failed": True, **payload})
            raise PoolError(f"Relayer rejected {kind} submission #{ordinal}")

        job_id = f"job-{ordinal}"
        self.submissions.append({"kind": kind, "job_id": job_id, **payload})
        if ordinal in self.fail_jobs:
            self._jobs[job_id] = None
        else:
            self._jobs[job_id] = "0x" + hashlib.sha256(job_id.encode()).hexdigest()
        logger.debug(f"[SIMULATED] {kind} submitted as {job_id}")
        return job_id

    def _record(
        self,
        record_type: HistoryRecordType,
        actions: list[HistoryAction],
        fee: int,
        job_id: str,
        note_count: int = 0,
    ) -> None:
        tx_hash = self._jobs.get(job_id) or ""
        index = self.tree_index
        record = HistoryRecord(
            timestamp=int(time.time()),
            type=record_type,
            state=HistoryRecordState.DONE if tx_hash else HistoryRecordState.REJECTED_BY_RELAYER,
            actions=actions,
            fee=fee,
            tx_hash=tx_hash,
            index=index,
        )
        self._history.append(record)

        if tx_hash:
            material = TxMaterial(
                nullifier=self._nullifier(index),
                next_nullifier=self._nullifier(index + OUT_PLUS_ONE),
                account=DecryptedAccount(index=index, balance=self.account_balance),
            )
            leaves = [index]
            for i, action in enumerate(actions[:note_count]):
                note_index = index + 1 + i
                material.notes.append(DecryptedNote(index=note_index, balance=action.amount))
                leaves.append(note_index)
            for leaf in leaves:
                material.chunks[leaf] = hashlib.sha256(f"chunk:{leaf}".encode()).digest()
                material.ecdh_keys[leaf] = hashlib.sha256(f"key:{leaf}".encode()).digest()
            self._materials[tx_hash] = material

        self.tree_index += OUT_PLUS_ONE
        self._roots[self.tree_index] = self._root_at(self.tree_index)

    def _nullifier(self, index: int) -> int:
        digest = hashlib.sha256(f"nf:{self.spending_key}:{index}".encode()).digest()
        return int.from_bytes(digest, "big")

    @staticmethod
    def _root_at(index: int) -> int:
        return int.from_bytes(hashlib.sha256(f"root:{index}".encode()).digest(), "big")
