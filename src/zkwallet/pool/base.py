"""Base interface for shielded pool clients.

A PoolClient wraps everything the wallet delegates to the privacy pool
library: state sync, fee model, proof-backed submission through the
relayer, job tracking and decrypted history. Proof generation and Merkle
tree maintenance live behind this interface.

Submission flow:
1. Wait until the client reports it is ready to transact
2. Estimate the fee for the transaction kind
3. Submit each transaction part and receive a relayer job id
4. Wait for the relayer to report the on-chain hash of each job
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional

from zkwallet.models import HistoryRecord, TransactionPart, TxType

logger = logging.getLogger(__name__)


class PoolError(Exception):
    """Raised when the pool client or relayer rejects an operation."""

    pass


class JobFailedError(PoolError):
    """Raised when a relayer job ends without a transaction hash."""

    def __init__(self, job_id: str, reason: str = ""):
        self.job_id = job_id
        self.reason = reason
        super().__init__(f"Job {job_id} failed" + (f": {reason}" if reason else ""))


@dataclass
class FeeEstimate:
    """Fee for an operation, possibly spanning several transactions."""

    total: int
    per_tx: list[int] = field(default_factory=list)
    relayer_fee: int = 0
    l1_fee: int = 0
    tx_count: int = 1
    insufficient_funds: bool = False


@dataclass
class PoolLimits:
    """Pool-enforced limits for an address, in shielded units."""

    deposit_single_tx: int
    deposit_daily: int
    withdraw_daily: int
    transfer_single_tx: int
    direct_deposit_single_tx: int = 0
    direct_deposit_daily: int = 0


@dataclass
class TreeState:
    """Merkle tree root at an index."""

    root: int
    index: int


@dataclass
class AddressUsage:
    """Activity of a base-chain address as observed by the pool."""

    token_balance: int = 0
    native_balance: int = 0
    in_tx_count: int = 0
    out_tx_count: int = 0
    nonces: dict[str, int] = field(default_factory=dict)


@dataclass
class DecryptedAccount:
    """Plaintext shielded account state at a tree index."""

    index: int
    balance: int
    energy: int = 0
    diversifier: int = 0
    public_key: int = 0
    nonce: int = 0


@dataclass
class DecryptedNote:
    """Plaintext note at a tree index."""

    index: int
    balance: int
    diversifier: int = 0
    public_key: int = 0
    blinding: bytes = b""


@dataclass
class TxMaterial:
    """Raw decrypted state of one transaction, keyed by tree index."""

    nullifier: Optional[int] = None
    next_nullifier: Optional[int] = None
    account: Optional[DecryptedAccount] = None
    notes: list[DecryptedNote] = field(default_factory=list)
    chunks: dict[int, bytes] = field(default_factory=dict)
    ecdh_keys: dict[int, bytes] = field(default_factory=dict)
    input_account: Optional[DecryptedAccount] = None
    input_notes: list[DecryptedNote] = field(default_factory=list)


@dataclass
class GiftCard:
    """Prefunded shielded account that can be swept into the wallet."""

    spending_key: bytes
    birth_index: int
    balance: int
    pool_alias: str


class PoolClient(ABC):
    """Abstract base class for shielded pool clients.

    All amounts are in shielded units unless a method says otherwise.
    """

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @abstractmethod
    async def is_ready_to_transact(self) -> bool:
        """True once local state is synced and no conflicting job is pending."""
        pass

    @abstractmethod
    async def sync_state(self) -> bool:
        """Force a state sync. Returns readiness afterwards."""
        pass

    @abstractmethod
    async def get_balances(self, update_state: bool = True) -> tuple[int, int, int]:
        """(total, account, note) shielded balances."""
        pass

    @abstractmethod
    async def get_optimistic_total_balance(self, update_state: bool = True) -> int:
        """Total balance including pending incoming and outgoing transactions."""
        pass

    @abstractmethod
    async def tree_state(self, index: Optional[int] = None) -> TreeState:
        """Local Merkle tree root, at ``index`` when given."""
        pass

    @abstractmethod
    async def rollback(self, index: int) -> int:
        """Roll local state back to ``index``. Returns the new tree index."""
        pass

    # ------------------------------------------------------------------
    # Fees and limits
    # ------------------------------------------------------------------

    @abstractmethod
    async def estimate_fee(
        self, amounts: list[int], tx_type: TxType, update_state: bool = True
    ) -> FeeEstimate:
        """Fee for sending ``amounts`` as one logical operation."""
        pass

    @abstractmethod
    async def plan_transaction_parts(
        self, amounts: list[int], tx_type: TxType
    ) -> list[TransactionPart]:
        """Split ``amounts`` into pool transactions using the pool's fee model."""
        pass

    @abstractmethod
    async def max_transfer_amount(self, tx_type: TxType) -> int:
        """Largest amount one transaction of ``tx_type`` may carry."""
        pass

    @abstractmethod
    async def min_tx_amount(self) -> int:
        """Smallest transferable amount."""
        pass

    @property
    def max_outputs_per_tx(self) -> int:
        """Maximum number of output notes per transaction."""
        return 127

    @abstractmethod
    async def part_fee(self, tx_type: TxType, output_count: int) -> int:
        """Fee of one transaction with ``output_count`` outputs."""
        pass

    @abstractmethod
    async def direct_deposit_fee(self) -> int:
        pass

    @abstractmethod
    async def get_limits(self, address: str) -> PoolLimits:
        pass

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    @abstractmethod
    async def deposit_salt(self, amount: int, fee: int) -> bytes:
        """32-byte salt binding a permit signature to the deposit proof."""
        pass

    @abstractmethod
    async def submit_deposit(
        self,
        amount: int,
        fee: int,
        from_address: str,
        signature: Optional[str] = None,
        deadline: Optional[int] = None,
    ) -> str:
        """Submit a deposit. Returns the relayer job id."""
        pass

    @abstractmethod
    async def submit_deposit_ephemeral(self, amount: int, index: int, fee: int) -> str:
        """Submit a deposit funded by the ephemeral address at ``index``."""
        pass

    @abstractmethod
    async def submit_transfer(self, part: TransactionPart) -> str:
        """Submit one transfer part. Returns the relayer job id."""
        pass

    @abstractmethod
    async def submit_withdraw(
        self, part: TransactionPart, address: str, native_amount: int = 0
    ) -> str:
        """Submit one withdrawal part to ``address``."""
        pass

    @abstractmethod
    async def direct_deposit_contract(self) -> str:
        """Address of the direct-deposit queue contract."""
        pass

    @abstractmethod
    async def submit_direct_deposit(
        self, zk_address: str, amount: int, fallback_address: str
    ) -> str:
        """Queue a direct deposit. Returns the on-chain transaction hash."""
        pass

    @abstractmethod
    async def await_job_hash(self, job_id: str) -> str:
        """Block until the relayer reports the job's hash.

        Raises:
            JobFailedError: If the job fails
        """
        pass

    # ------------------------------------------------------------------
    # Gift cards
    # ------------------------------------------------------------------

    @abstractmethod
    async def gift_card_balance(self, card: GiftCard) -> int:
        """Current balance of the card's account, in shielded units."""
        pass

    @abstractmethod
    async def redeem_gift_card(self, card: GiftCard) -> str:
        """Move the card's balance into this account. Returns the relayer job id."""
        pass

    @abstractmethod
    async def code_for_gift_card(self, card: GiftCard) -> str:
        pass

    @abstractmethod
    async def gift_card_from_code(self, code: str) -> GiftCard:
        """Parse a redemption code.

        Raises:
            PoolError: If the code is malformed or fails its checksum
        """
        pass

    # ------------------------------------------------------------------
    # History and addresses
    # ------------------------------------------------------------------

    @abstractmethod
    async def raw_history(self, update_state: bool = True) -> list[HistoryRecord]:
        pass

    @abstractmethod
    async def pending_direct_deposits(self) -> list[HistoryRecord]:
        """Direct deposits queued on-chain but not yet included in the pool."""
        pass

    @abstractmethod
    async def tx_material(self, record: HistoryRecord) -> Optional[TxMaterial]:
        """Decrypted account, notes and key material behind a history record."""
        pass

    @abstractmethod
    async def address_usage(self, address: str) -> AddressUsage:
        """Usage oracle for a base-chain address."""
        pass

    @abstractmethod
    async def generate_address(self) -> str:
        """New shielded address of this account."""
        pass

    @abstractmethod
    async def verify_address_checksum(self, address: str) -> bool:
        pass

    async def close(self) -> None:
        """Release resources held by the client."""
        pass

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}()"
