"""Transaction part planning.

Splits requested shielded amounts into the shortest ordered sequence of
pool transactions that respects the pool's per-transaction cap and output
count. Planning is structural only: whether the wallet can afford the
parts (amounts plus fees) is checked by the caller before execution.

Parts must be submitted in order, each one spends shielded state left by
the previous part.
"""

import logging
from typing import Optional

from zkwallet.models import TransactionPart, TransferRequest, TxType
from zkwallet.pool.base import PoolClient

logger = logging.getLogger(__name__)


def pack_requests(
    requests: list[TransferRequest], cap: int, max_outputs: int, min_amount: int = 1
) -> list[list[TransferRequest]]:
    """Greedily pack destination amounts into groups of at most ``cap``.

    A destination stays whole when it fits in one transaction; amounts above
    the cap are split, topping up the current group first. A split tail
    below ``min_amount`` borrows from the preceding chunk of the same
    destination. Returns an empty list when some group cannot reach
    ``min_amount``.
    """
    if cap <= 0:
        raise ValueError("Per-transaction cap must be positive")
    if max_outputs <= 0:
        raise ValueError("max_outputs must be positive")

    groups: list[list[TransferRequest]] = []
    current: list[TransferRequest] = []
    current_total = 0

    def flush() -> None:
        nonlocal current, current_total
        if current:
            groups.append(current)
        current = []
        current_total = 0

    for request in requests:
        if request.amount <= cap:
            if current_total + request.amount > cap or len(current) >= max_outputs:
                flush()
            current.append(request)
            current_total += request.amount
            continue

        remaining = request.amount
        while remaining > 0:
            room = cap - current_total
            if room <= 0 or len(current) >= max_outputs:
                flush()
                room = cap
            chunk = min(room, remaining)
            current.append(TransferRequest(request.destination, chunk))
            current_total += chunk
            remaining -= chunk

    flush()

    for i, group in enumerate(groups):
        deficit = min_amount - sum(out.amount for out in group)
        if deficit <= 0:
            continue
        if i == 0 or groups[i - 1][-1].destination != group[0].destination:
            return []
        previous = groups[i - 1]
        donor = previous[-1]
        if donor.amount <= deficit or sum(out.amount for out in previous) - deficit < min_amount:
            return []
        previous[-1] = TransferRequest(donor.destination, donor.amount - deficit)
        group[0] = TransferRequest(group[0].destination, group[0].amount + deficit)

    return groups


class TransactionPlanner:
    """Plans transfer and withdrawal parts against a pool client.

    Example:
        planner = TransactionPlanner(pool)
        parts = await planner.plan([TransferRequest("zk:...", 2500)], TxType.TRANSFER)
        # cap 1000 -> three parts carrying 1000, 1000 and 500
    """

    def __init__(self, pool: PoolClient):
        self.pool = pool

    async def plan(
        self,
        requests: list[TransferRequest],
        tx_type: TxType = TxType.TRANSFER,
        aggregate_limit: Optional[int] = None,
    ) -> list[TransactionPart]:
        """Split requests into transaction parts.

        Args:
            requests: Destinations with amounts in shielded units
            tx_type: Fee model to use for every part
            aggregate_limit: Optional cap on the total of all parts

        Returns:
            Ordered parts, or an empty list when the request cannot be
            performed (nothing requested, an amount below the pool minimum,
            no spendable cap, or the aggregate limit exceeded). An empty
            result means "not performable", never "free".
        """
        if not requests:
            return []

        total = sum(request.amount for request in requests)
        min_amount = await self.pool.min_tx_amount()
        if total <= 0 or any(request.amount < min_amount for request in requests):
            logger.info(f"Requested amounts below pool minimum {min_amount}")
            return []

        if aggregate_limit is not None and total > aggregate_limit:
            logger.info(f"Requested total {total} exceeds aggregate limit {aggregate_limit}")
            return []

        cap = await self.pool.max_transfer_amount(tx_type)
        if cap <= 0:
            logger.info("No spendable amount available for a single transaction")
            return []

        groups = pack_requests(requests, cap, self.pool.max_outputs_per_tx, min_amount)
        if not groups:
            logger.info(f"Cannot split {total} into parts of at least {min_amount} under cap {cap}")
            return []

        parts = []
        for outputs in groups:
            fee = await self.pool.part_fee(tx_type, len(outputs))
            part_total = sum(out.amount for out in outputs)
            parts.append(
                TransactionPart(
                    outputs=outputs,
                    fee=fee,
                    account_limit=cap,
                    input_notes_balance=part_total + fee,
                )
            )

        logger.debug(
            f"Planned {len(parts)} {tx_type.value} part(s) for {len(requests)} destination(s), "
            f"total {total}, cap {cap}"
        )
        return parts

    async def plan_amounts(
        self, amounts: list[int], tx_type: TxType = TxType.TRANSFER
    ) -> list[TransactionPart]:
        """Plan anonymous amounts, used for fee estimation."""
        requests = [TransferRequest(f"dest-{i}", amount) for i, amount in enumerate(amounts)]
        return await self.plan(requests, tx_type)
