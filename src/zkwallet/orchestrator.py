"""Deposit, transfer and withdrawal protocols.

Every operation runs the same state machine, published on the session's
EventStream:

    AwaitingReadiness -> FeeEstimating -> Submitting -> AwaitingHashes
        -> Completed | Failed

Parts are submitted strictly one after another. The first submission
failure stops the remaining parts, but the jobs already issued are still
awaited so the caller sees exactly what reached the relayer. Nothing is
retried.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Optional

from zkwallet.config import DepositScheme, NetworkConfig, Settings, get_settings
from zkwallet.events import EventStream, OperationStage
from zkwallet.exceptions import (
    AmountTooSmall,
    InsufficientFunds,
    ReadinessTimeout,
    SubmissionFailure,
)
from zkwallet.models import Job, JobState, TransactionPart, TransferRequest, TxType
from zkwallet.networks.base import MAX_UINT256, NetworkAdapter
from zkwallet.planner import TransactionPlanner
from zkwallet.pool.base import FeeEstimate, GiftCard, PoolClient, PoolLimits
from zkwallet.units import AmountConverter

logger = logging.getLogger(__name__)

# Canonical Permit2 deployment, identical on every EVM chain
PERMIT2_ADDRESS = "0x000000000022D473030F116dDEE9F6B43aC78BA3"

EIP712_DOMAIN_TYPE = [
    {"name": "name", "type": "string"},
    {"name": "version", "type": "string"},
    {"name": "chainId", "type": "uint256"},
    {"name": "verifyingContract", "type": "address"},
]

SALTED_PERMIT_TYPE = [
    {"name": "owner", "type": "address"},
    {"name": "spender", "type": "address"},
    {"name": "value", "type": "uint256"},
    {"name": "nonce", "type": "uint256"},
    {"name": "deadline", "type": "uint256"},
    {"name": "salt", "type": "bytes32"},
]


@dataclass
class TransferOutcome:
    """Result of one orchestrated operation.

    ``jobs`` lists every part that reached submission, in submission order.
    ``unsubmitted_parts`` are the parts skipped after a failure.
    """

    operation: str
    jobs: list[Job] = field(default_factory=list)
    unsubmitted_parts: list[TransactionPart] = field(default_factory=list)
    fee: int = 0
    approval_tx_hash: Optional[str] = None
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None and bool(self.jobs) and all(j.is_resolved for j in self.jobs)

    @property
    def tx_hashes(self) -> list[str]:
        """Resolved hashes in submission order."""
        return [job.tx_hash for job in self.jobs if job.is_resolved]

    @property
    def failed_jobs(self) -> list[Job]:
        return [job for job in self.jobs if job.state == JobState.FAILED]

    def raise_for_failure(self) -> None:
        """Raise SubmissionFailure unless every part resolved."""
        if self.succeeded:
            return
        failed = self.failed_jobs
        context: dict[str, Any] = {
            "operation": self.operation,
            "resolved": len(self.tx_hashes),
            "unsubmitted": len(self.unsubmitted_parts),
        }
        if failed:
            context["part_index"] = failed[0].part_index
            context["job_id"] = failed[0].job_id
        raise SubmissionFailure(self.error or f"{self.operation} failed", outcome=self, context=context)


class TransferOrchestrator:
    """Drives the multi-step shielded operations of one bound session.

    Usage:
        orchestrator = TransferOrchestrator(config, adapter, pool, events=events)
        outcome = await orchestrator.transfer([TransferRequest(address, 2500)])
        for job in outcome.jobs:
            print(job.part_index, job.state, job.tx_hash)
    """

    def __init__(
        self,
        config: NetworkConfig,
        adapter: NetworkAdapter,
        pool: PoolClient,
        settings: Optional[Settings] = None,
        events: Optional[EventStream] = None,
    ):
        self.config = config
        self.adapter = adapter
        self.pool = pool
        self.settings = settings or get_settings()
        self.events = events or EventStream()
        self.converter = AmountConverter(config)
        self.planner = TransactionPlanner(pool)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def estimate_fee(self, amounts: list[int], tx_type: TxType = TxType.TRANSFER) -> FeeEstimate:
        return await self.pool.estimate_fee(amounts, tx_type, True)

    async def max_transferable(self, tx_type: TxType = TxType.TRANSFER) -> int:
        """Largest amount a single transaction of ``tx_type`` may carry."""
        return await self.pool.max_transfer_amount(tx_type)

    async def get_limits(self, address: Optional[str] = None) -> PoolLimits:
        return await self.pool.get_limits(address or self.adapter.get_address())

    # ------------------------------------------------------------------
    # Readiness
    # ------------------------------------------------------------------

    async def wait_until_ready(self, operation: str) -> None:
        """Poll the pool until it is ready to transact.

        Raises:
            ReadinessTimeout: If the pool is not ready within the configured wait
        """
        self.events.emit(OperationStage.AWAITING_READINESS, "Waiting for state sync", operation)

        timeout = self.settings.readiness_timeout
        deadline = time.monotonic() + timeout
        while True:
            if await self.pool.is_ready_to_transact():
                logger.info(f"{operation}: pool state ready")
                return
            if time.monotonic() >= deadline:
                break
            await asyncio.sleep(self.settings.readiness_poll_interval)

        logger.warning(f"{operation}: state not ready after {timeout}s")
        self.events.emit(
            OperationStage.FAILED,
            "State is not ready for transact",
            operation,
            error="StateNotReady",
        )
        raise ReadinessTimeout(
            "State is not ready for transact", {"operation": operation, "timeout": timeout}
        )

    # ------------------------------------------------------------------
    # Deposits
    # ------------------------------------------------------------------

    async def deposit(self, amount: int) -> TransferOutcome:
        """Deposit ``amount`` shielded units from the session wallet.

        The authorization step follows the network's deposit scheme:
        allowance increase when short, salted permit, Permit2 or a plain
        detached signature.
        """
        operation = "deposit"
        scheme = self.config.deposit_scheme
        tx_type = (
            TxType.BRIDGE_DEPOSIT
            if scheme in (DepositScheme.SALTED_PERMIT, DepositScheme.PERMIT2)
            else TxType.DEPOSIT
        )

        await self.wait_until_ready(operation)
        await self._check_minimum(amount, operation)
        fee = await self._estimate(operation, [amount], tx_type)

        outcome = TransferOutcome(operation=operation, fee=fee.total)
        job = Job(part_index=0)
        outcome.jobs.append(job)

        self.events.emit(OperationStage.SUBMITTING, f"Depositing {amount}", operation, scheme=scheme.value)
        owner = self.adapter.get_address()
        try:
            if scheme == DepositScheme.APPROVE:
                outcome.approval_tx_hash = await self._ensure_allowance(
                    self.config.pool_address, self.converter.shielded_to_wei(amount + fee.total), operation
                )
                job.job_id = await self.pool.submit_deposit(amount, fee.total, owner)
            else:
                signature, deadline = await self._authorize_deposit(scheme, amount, fee.total, owner, outcome)
                job.job_id = await self.pool.submit_deposit(
                    amount, fee.total, owner, signature=signature, deadline=deadline
                )
        except Exception as e:
            self._fail_part(outcome, job, e, operation)
        else:
            self._job_submitted(job, operation)

        await self._await_hashes(outcome)
        return outcome

    async def deposit_ephemeral(self, amount: int, index: int) -> TransferOutcome:
        """Deposit funded by the ephemeral address at ``index``.

        Balance sufficiency of the ephemeral address is validated by the pool.
        """
        operation = "deposit_ephemeral"
        await self.wait_until_ready(operation)
        await self._check_minimum(amount, operation)
        fee = await self._estimate(operation, [amount], TxType.BRIDGE_DEPOSIT)

        outcome = TransferOutcome(operation=operation, fee=fee.total)
        job = Job(part_index=0)
        outcome.jobs.append(job)

        self.events.emit(
            OperationStage.SUBMITTING, f"Depositing {amount} from ephemeral #{index}", operation, index=index
        )
        try:
            job.job_id = await self.pool.submit_deposit_ephemeral(amount, index, fee.total)
        except Exception as e:
            self._fail_part(outcome, job, e, operation, index=index)
        else:
            self._job_submitted(job, operation)

        await self._await_hashes(outcome)
        return outcome

    async def gift_card_balance(self, card: "GiftCard | str") -> int:
        if isinstance(card, str):
            card = await self.pool.gift_card_from_code(card)
        return await self.pool.gift_card_balance(card)

    async def redeem_gift_card(self, card: "GiftCard | str") -> TransferOutcome:
        """Sweep a gift card, given as a card or its redemption code, into this account.

        The relayer fee of one transfer is taken from the card's balance.

        Raises:
            PoolError: If the code is malformed
            InsufficientFunds: If the card cannot cover the fee
        """
        operation = "redeem_gift_card"
        if isinstance(card, str):
            card = await self.pool.gift_card_from_code(card)

        await self.wait_until_ready(operation)
        balance = await self.pool.gift_card_balance(card)
        fee = await self.pool.part_fee(TxType.TRANSFER, 1)
        self.events.emit(
            OperationStage.FEE_ESTIMATING, f"Gift card balance {balance}, fee {fee}", operation,
            fee=fee, balance=balance,
        )
        if balance <= fee:
            self.events.emit(OperationStage.FAILED, "Gift card cannot cover the fee", operation)
            raise InsufficientFunds(
                f"Gift card balance {balance} does not cover the fee {fee}",
                {"operation": operation, "balance": balance, "fee": fee},
            )

        outcome = TransferOutcome(operation=operation, fee=fee)
        job = Job(part_index=0)
        outcome.jobs.append(job)

        self.events.emit(OperationStage.SUBMITTING, f"Redeeming gift card worth {balance}", operation)
        try:
            job.job_id = await self.pool.redeem_gift_card(card)
        except Exception as e:
            self._fail_part(outcome, job, e, operation)
        else:
            self._job_submitted(job, operation)

        await self._await_hashes(outcome)
        return outcome

    async def direct_deposit(self, zk_address: str, amount: int) -> str:
        """Queue a direct deposit to a shielded address.

        The direct-deposit contract is approved for the maximum allowance
        when the current one does not cover ``amount`` plus its fee.

        Returns:
            On-chain transaction hash of the queued deposit
        """
        operation = "direct_deposit"
        if not await self.pool.verify_address_checksum(zk_address):
            raise ValueError(f"Invalid shielded address: {zk_address}")
        await self._check_minimum(amount, operation)

        fee = await self.pool.direct_deposit_fee()
        self.events.emit(OperationStage.FEE_ESTIMATING, f"Direct deposit fee {fee}", operation, fee=fee)

        contract = await self.pool.direct_deposit_contract()
        required = self.converter.shielded_to_wei(amount + fee)
        self.events.emit(OperationStage.SUBMITTING, f"Direct deposit of {amount}", operation)
        try:
            allowance = await self.adapter.get_allowance(contract)
            if allowance < required:
                approve_hash = await self.adapter.approve(contract, MAX_UINT256)
                logger.info(f"{operation}: approved direct deposit contract, tx {approve_hash}")
                self.events.emit(
                    OperationStage.APPROVAL_SUBMITTED, "Direct deposit contract approved", operation,
                    tx_hash=approve_hash,
                )
            tx_hash = await self.pool.submit_direct_deposit(
                zk_address, amount, self.adapter.get_address()
            )
        except Exception as e:
            logger.error(f"{operation} failed: {e}")
            self.events.emit(OperationStage.FAILED, "Direct deposit failed", operation, error=str(e))
            raise SubmissionFailure(f"Direct deposit failed: {e}", context={"operation": operation}) from e

        self.events.emit(OperationStage.COMPLETED, "Direct deposit queued", operation, tx_hash=tx_hash)
        return tx_hash

    # ------------------------------------------------------------------
    # Transfers and withdrawals
    # ------------------------------------------------------------------

    async def transfer(self, requests: list[TransferRequest]) -> TransferOutcome:
        """Shielded transfer to one or more destinations."""
        operation = "transfer"
        for request in requests:
            if not await self.pool.verify_address_checksum(request.destination):
                raise ValueError(f"Invalid shielded address: {request.destination}")

        await self.wait_until_ready(operation)
        parts = await self._plan(operation, requests, TxType.TRANSFER)

        async def submit(part: TransactionPart, is_last: bool) -> str:
            return await self.pool.submit_transfer(part)

        return await self._execute_parts(operation, parts, submit)

    async def withdraw(
        self, amount: int, address: Optional[str] = None, native_amount: int = 0
    ) -> TransferOutcome:
        """Withdraw ``amount`` shielded units to a base-chain address.

        ``native_amount`` (swapped to native coin on exit) rides on the last
        part only.
        """
        operation = "withdraw"
        address = address or self.adapter.get_address()

        await self.wait_until_ready(operation)
        limits = await self.get_limits(address)
        parts = await self._plan(
            operation,
            [TransferRequest(address, amount)],
            TxType.WITHDRAWAL,
            aggregate_limit=limits.withdraw_daily,
        )

        async def submit(part: TransactionPart, is_last: bool) -> str:
            return await self.pool.submit_withdraw(
                part, address, native_amount if is_last else 0
            )

        return await self._execute_parts(operation, parts, submit)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _check_minimum(self, amount: int, operation: str) -> None:
        min_amount = await self.pool.min_tx_amount()
        if amount < min_amount:
            raise AmountTooSmall(
                f"Amount {amount} is below the minimum {min_amount}",
                {"operation": operation, "min_amount": min_amount},
            )

    async def _estimate(self, operation: str, amounts: list[int], tx_type: TxType) -> FeeEstimate:
        fee = await self.pool.estimate_fee(amounts, tx_type, True)
        self.events.emit(
            OperationStage.FEE_ESTIMATING,
            f"Fee {fee.total} over {fee.tx_count} transaction(s)",
            operation,
            fee=fee.total,
            tx_count=fee.tx_count,
        )
        return fee

    async def _plan(
        self,
        operation: str,
        requests: list[TransferRequest],
        tx_type: TxType,
        aggregate_limit: Optional[int] = None,
    ) -> list[TransactionPart]:
        amounts = [request.amount for request in requests]
        fee = await self._estimate(operation, amounts, tx_type)

        parts = await self.planner.plan(requests, tx_type, aggregate_limit)
        if not parts:
            self.events.emit(OperationStage.FAILED, "Cannot perform the operation", operation)
            raise AmountTooSmall(
                f"Cannot perform {operation} of {sum(amounts)}",
                {"operation": operation, "amounts": amounts},
            )
        if fee.insufficient_funds:
            self.events.emit(OperationStage.FAILED, "Insufficient shielded funds", operation)
            raise InsufficientFunds(
                f"Insufficient funds for {operation} of {sum(amounts)} with fee {fee.total}",
                {"operation": operation, "fee": fee.total},
            )
        return parts

    async def _execute_parts(self, operation: str, parts: list[TransactionPart], submit) -> TransferOutcome:
        outcome = TransferOutcome(operation=operation, fee=sum(part.fee for part in parts))
        self.events.emit(
            OperationStage.SUBMITTING, f"Submitting {len(parts)} part(s)", operation, parts=len(parts)
        )

        for position, part in enumerate(parts):
            job = Job(part_index=position)
            outcome.jobs.append(job)
            try:
                job.job_id = await submit(part, position == len(parts) - 1)
            except Exception as e:
                self._fail_part(outcome, job, e, operation)
                outcome.unsubmitted_parts = parts[position + 1:]
                break
            self._job_submitted(job, operation)

        await self._await_hashes(outcome)
        return outcome

    async def _await_hashes(self, outcome: TransferOutcome) -> None:
        """Resolve every submitted job concurrently, keeping submission order."""
        pending = [job for job in outcome.jobs if job.job_id is not None and job.state == JobState.PENDING]
        if pending:
            self.events.emit(
                OperationStage.AWAITING_HASHES,
                f"Waiting for {len(pending)} transaction hash(es)",
                outcome.operation,
            )
            await asyncio.gather(*(self._resolve(job, outcome.operation) for job in pending))

        if outcome.succeeded:
            self.events.emit(
                OperationStage.COMPLETED,
                f"{outcome.operation} completed",
                outcome.operation,
                tx_hashes=outcome.tx_hashes,
            )
            return

        if outcome.error is None:
            outcome.error = "; ".join(job.error for job in outcome.failed_jobs if job.error)
        self.events.emit(
            OperationStage.FAILED,
            f"{outcome.operation} failed",
            outcome.operation,
            error=outcome.error,
            tx_hashes=outcome.tx_hashes,
            unsubmitted=len(outcome.unsubmitted_parts),
        )

    async def _resolve(self, job: Job, operation: str) -> None:
        try:
            tx_hash = await self.pool.await_job_hash(job.job_id)
        except Exception as e:
            logger.error(f"{operation}: job {job.job_id} (part {job.part_index}) failed: {e}")
            job.fail(str(e))
            self.events.emit(
                OperationStage.JOB_FAILED, f"Job {job.job_id} failed", operation,
                error=str(e), job_id=job.job_id, part_index=job.part_index,
            )
            return

        job.resolve(tx_hash)
        logger.info(f"{operation}: job {job.job_id} resolved to {tx_hash}")
        self.events.emit(
            OperationStage.HASH_RESOLVED,
            self.adapter.get_transaction_url(tx_hash),
            operation,
            job_id=job.job_id,
            part_index=job.part_index,
            tx_hash=tx_hash,
        )

    def _job_submitted(self, job: Job, operation: str) -> None:
        logger.info(f"{operation}: part {job.part_index} submitted as job {job.job_id}")
        self.events.emit(
            OperationStage.JOB_SUBMITTED,
            f"Part {job.part_index} submitted",
            operation,
            job_id=job.job_id,
            part_index=job.part_index,
        )

    def _fail_part(
        self, outcome: TransferOutcome, job: Job, error: Exception, operation: str, **context
    ) -> None:
        message = f"Part {job.part_index} submission failed: {error}"
        logger.error(f"{operation}: {message}")
        job.fail(str(error))
        outcome.error = message
        self.events.emit(
            OperationStage.JOB_FAILED, message, operation,
            error=str(error), part_index=job.part_index, **context,
        )

    async def _ensure_allowance(self, spender: str, required: int, operation: str) -> Optional[str]:
        """Increase the allowance of ``spender`` when it is below ``required``.

        Returns:
            Approval transaction hash, or None when no approval was needed
        """
        allowance = await self.adapter.get_allowance(spender)
        if allowance >= required:
            logger.debug(f"{operation}: allowance {allowance} covers {required}, approval skipped")
            return None

        tx_hash = await self.adapter.increase_allowance(spender, required - allowance)
        logger.info(f"{operation}: allowance increased by {required - allowance}, tx {tx_hash}")
        self.events.emit(
            OperationStage.APPROVAL_SUBMITTED, "Allowance increased", operation, tx_hash=tx_hash
        )
        return tx_hash

    async def _authorize_deposit(
        self,
        scheme: DepositScheme,
        amount: int,
        fee: int,
        owner: str,
        outcome: TransferOutcome,
    ) -> tuple[str, int]:
        """Produce the deposit signature and deadline for signature-based schemes."""
        deadline = int(time.time()) + self.settings.permit_deadline_seconds
        salt = await self.pool.deposit_salt(amount, fee)
        value = self.converter.shielded_to_wei(amount + fee)

        if scheme == DepositScheme.SIGNED:
            return await self.adapter.sign(salt), deadline

        if scheme == DepositScheme.PERMIT2:
            outcome.approval_tx_hash = await self._ensure_permit2_allowance(value)
            payload = self.permit2_payload(owner, value, int.from_bytes(salt, "big"), deadline)
        else:
            name = await self.adapter.get_token_name()
            nonce = await self.adapter.get_token_nonce(owner)
            payload = self.salted_permit_payload(name, owner, value, nonce, deadline, salt)

        return await self.adapter.sign_typed_data(payload), deadline

    async def _ensure_permit2_allowance(self, required: int) -> Optional[str]:
        allowance = await self.adapter.get_allowance(PERMIT2_ADDRESS)
        if allowance >= required:
            return None
        tx_hash = await self.adapter.approve(PERMIT2_ADDRESS, MAX_UINT256)
        logger.info(f"deposit: Permit2 approved, tx {tx_hash}")
        self.events.emit(OperationStage.APPROVAL_SUBMITTED, "Permit2 approved", "deposit", tx_hash=tx_hash)
        return tx_hash

    def salted_permit_payload(
        self, token_name: str, owner: str, value: int, nonce: int, deadline: int, salt: bytes
    ) -> dict[str, Any]:
        """EIP-712 payload of a salted token permit for the pool."""
        return {
            "types": {"EIP712Domain": EIP712_DOMAIN_TYPE, "Permit": SALTED_PERMIT_TYPE},
            "primaryType": "Permit",
            "domain": {
                "name": token_name,
                "version": self.config.token_permit_version,
                "chainId": self.config.chain_id,
                "verifyingContract": self.config.token_address,
            },
            "message": {
                "owner": owner,
                "spender": self.config.pool_address,
                "value": value,
                "nonce": nonce,
                "deadline": deadline,
                "salt": salt,
            },
        }

    def permit2_payload(self, owner: str, value: int, nonce: int, deadline: int) -> dict[str, Any]:
        """EIP-712 payload of a Permit2 signature transfer to the pool."""
        return {
            "types": {
                "EIP712Domain": [
                    {"name": "name", "type": "string"},
                    {"name": "chainId", "type": "uint256"},
                    {"name": "verifyingContract", "type": "address"},
                ],
                "PermitTransferFrom": [
                    {"name": "permitted", "type": "TokenPermissions"},
                    {"name": "spender", "type": "address"},
                    {"name": "nonce", "type": "uint256"},
                    {"name": "deadline", "type": "uint256"},
                ],
                "TokenPermissions": [
                    {"name": "token", "type": "address"},
                    {"name": "amount", "type": "uint256"},
                ],
            },
            "primaryType": "PermitTransferFrom",
            "domain": {
                "name": "Permit2",
                "chainId": self.config.chain_id,
                "verifyingContract": PERMIT2_ADDRESS,
            },
            "message": {
                "permitted": {"token": self.config.token_address, "amount": value},
                "spender": self.config.pool_address,
                "nonce": nonce,
                "deadline": deadline,
            },
        }
