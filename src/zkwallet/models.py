"""Data model shared by the session, planner, orchestrator and reports."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from zkwallet.config import NetworkKind
from zkwallet.keys import account_id


class TxType(str, Enum):
    """Kind of pool transaction, used to select the fee model."""

    DEPOSIT = "deposit"
    BRIDGE_DEPOSIT = "bridge_deposit"  # permit-style deposit
    TRANSFER = "transfer"
    WITHDRAWAL = "withdrawal"


@dataclass
class Identity:
    """An unlocked wallet identity.

    ``spending_key`` is derived on unlock and never persisted.
    """

    name: str
    encrypted_seed: str
    network_kind: NetworkKind
    spending_key: int = field(repr=False)

    @property
    def account_id(self) -> str:
        return account_id(self.spending_key, self.network_kind)


@dataclass(frozen=True)
class TransferRequest:
    """One destination of a transfer, amount in shielded units."""

    destination: str
    amount: int

    def __post_init__(self) -> None:
        if self.amount < 0:
            raise ValueError(f"Transfer amount cannot be negative: {self.amount}")


@dataclass
class TransactionPart:
    """One pool transaction produced by the planner."""

    outputs: list[TransferRequest]
    fee: int
    account_limit: int
    input_notes_balance: int = 0

    @property
    def total_amount(self) -> int:
        """Sum of the part's output amounts."""
        return sum(out.amount for out in self.outputs)

    @property
    def total_with_fee(self) -> int:
        return self.total_amount + self.fee


class JobState(str, Enum):
    """Lifecycle of a relayed transaction."""

    PENDING = "pending"
    RESOLVED = "resolved"
    FAILED = "failed"


@dataclass
class Job:
    """Tracked handle for one relayed transaction (one per part)."""

    part_index: int
    job_id: Optional[str] = None
    state: JobState = JobState.PENDING
    tx_hash: Optional[str] = None
    error: Optional[str] = None

    def resolve(self, tx_hash: str) -> None:
        self.state = JobState.RESOLVED
        self.tx_hash = tx_hash
        self.error = None

    def fail(self, error: str) -> None:
        self.state = JobState.FAILED
        self.error = error

    @property
    def is_resolved(self) -> bool:
        return self.state == JobState.RESOLVED


@dataclass
class EphemeralAddress:
    """Intermediate funding address for permit-style deposits."""

    index: int
    address: str
    token_balance: int = 0
    native_balance: int = 0
    in_tx_count: int = 0
    out_tx_count: int = 0
    nonces: dict[str, int] = field(default_factory=dict)

    @property
    def is_used(self) -> bool:
        """Used once it participated in any pool-observed transaction."""
        return self.in_tx_count > 0 or self.out_tx_count > 0


class HistoryRecordType(str, Enum):
    """Kind of history entry."""

    DEPOSIT = "Deposit"
    TRANSFER_IN = "TransferIn"
    TRANSFER_OUT = "TransferOut"
    WITHDRAWAL = "Withdrawal"
    DIRECT_DEPOSIT = "DirectDeposit"
    AGGREGATE_NOTES = "AggregateNotes"


class HistoryRecordState(str, Enum):
    """Finality of a history entry."""

    PENDING = "Pending"
    DONE = "Done"
    REJECTED_BY_POOL = "RejectedByPool"
    REJECTED_BY_RELAYER = "RejectedByRelayer"


@dataclass(frozen=True)
class HistoryAction:
    """A single value movement inside a history record."""

    from_address: str
    to_address: str
    amount: int
    is_loopback: bool = False


@dataclass
class HistoryRecord:
    """Transaction history entry as reported by the pool client.

    ``timestamp`` is in seconds; ``index`` is the tree index of the
    transaction's first leaf.
    """

    timestamp: int
    type: HistoryRecordType
    state: HistoryRecordState
    actions: list[HistoryAction] = field(default_factory=list)
    fee: int = 0
    tx_hash: str = ""
    index: int = 0

    @property
    def total_amount(self) -> int:
        return sum(action.amount for action in self.actions)

    @property
    def is_final(self) -> bool:
        return self.state != HistoryRecordState.PENDING
