"""Tests for the transfer orchestrator state machine."""

import asyncio
import dataclasses
import hashlib

import pytest

from zkwallet.config import DepositScheme
from zkwallet.events import OperationStage
from zkwallet.exceptions import (
    AmountTooSmall,
    InsufficientFunds,
    ReadinessTimeout,
    SubmissionFailure,
)
from zkwallet.models import JobState, TransferRequest, TxType
from zkwallet.networks.base import MAX_UINT256
from zkwallet.orchestrator import PERMIT2_ADDRESS, TransferOrchestrator
from zkwallet.pool.base import PoolError
from zkwallet.pool.simulated import SimulatedPoolClient

from conftest import POOL_ADDRESS, TOKEN_ADDRESS, WALLET_ADDRESS, FakeAdapter


def job_hash(job_id: str) -> str:
    return "0x" + hashlib.sha256(job_id.encode()).hexdigest()


def make_orchestrator(network_config, adapter, pool, settings, events, **config_changes):
    config = dataclasses.replace(network_config, **config_changes) if config_changes else network_config
    if config_changes:
        adapter = FakeAdapter(config)
    return TransferOrchestrator(config, adapter, pool, settings=settings, events=events), adapter


def stages(events):
    return [event.state for event in events.history if isinstance(event.state, OperationStage)]


class ReverseResolvingPool(SimulatedPoolClient):
    """Relayer whose later jobs report their hash first."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.resolution_order: list[str] = []

    async def await_job_hash(self, job_id: str) -> str:
        ordinal = int(job_id.split("-")[1])
        await asyncio.sleep(0.02 * (len(self.submissions) - ordinal))
        tx_hash = await super().await_job_hash(job_id)
        self.resolution_order.append(job_id)
        return tx_hash


class TestTransfer:
    """Tests for shielded transfers."""

    @pytest.mark.asyncio
    async def test_single_part_transfer(self, network_config, adapter, settings, events, zk_address):
        """Test a 50 unit transfer with 100 balance submits exactly once."""
        pool = SimulatedPoolClient(balance=100, max_per_tx=1000)
        orchestrator, _ = make_orchestrator(network_config, adapter, pool, settings, events)

        outcome = await orchestrator.transfer([TransferRequest(zk_address, 50)])

        assert outcome.succeeded
        assert len(outcome.jobs) == 1
        assert outcome.jobs[0].tx_hash == job_hash("job-1")
        assert outcome.fee == 10
        assert len(pool.submissions) == 1
        assert pool.submissions[0]["part"].total_amount == 50

    @pytest.mark.asyncio
    async def test_multi_part_hashes_in_order(self, network_config, adapter, pool, settings, events, zk_address):
        """Test resolved hashes follow submission order."""
        orchestrator, _ = make_orchestrator(network_config, adapter, pool, settings, events)

        outcome = await orchestrator.transfer([TransferRequest(zk_address, 2500)])

        assert outcome.succeeded
        assert [job.part_index for job in outcome.jobs] == [0, 1, 2]
        assert outcome.tx_hashes == [job_hash("job-1"), job_hash("job-2"), job_hash("job-3")]
        assert [s["part"].total_amount for s in pool.submissions] == [1000, 1000, 500]

    @pytest.mark.asyncio
    async def test_hashes_in_order_when_later_jobs_resolve_first(
        self, network_config, adapter, settings, events, zk_address
    ):
        """Test hashes keep submission order when the relayer answers in reverse."""
        pool = ReverseResolvingPool(balance=10_000, max_per_tx=1000)
        orchestrator, _ = make_orchestrator(network_config, adapter, pool, settings, events)

        outcome = await orchestrator.transfer([TransferRequest(zk_address, 2500)])

        assert outcome.succeeded
        assert outcome.tx_hashes == [job_hash("job-1"), job_hash("job-2"), job_hash("job-3")]
        assert [job.part_index for job in outcome.jobs] == [0, 1, 2]
        assert pool.resolution_order == ["job-3", "job-2", "job-1"]
        resolved = [
            event.details["part_index"]
            for event in events.history
            if event.state == OperationStage.HASH_RESOLVED
        ]
        assert resolved == [2, 1, 0]

    @pytest.mark.asyncio
    async def test_second_submission_fails(self, network_config, adapter, settings, events, zk_address):
        """Test a failing second part stops the third but resolves the first."""
        pool = SimulatedPoolClient(balance=10_000, max_per_tx=1000, fail_submissions={2})
        orchestrator, _ = make_orchestrator(network_config, adapter, pool, settings, events)

        outcome = await orchestrator.transfer([TransferRequest(zk_address, 2500)])

        assert not outcome.succeeded
        assert len(outcome.jobs) == 2
        assert outcome.jobs[0].state == JobState.RESOLVED
        assert outcome.jobs[0].tx_hash == job_hash("job-1")
        assert outcome.jobs[1].state == JobState.FAILED
        assert outcome.jobs[1].job_id is None
        assert [part.total_amount for part in outcome.unsubmitted_parts] == [500]
        assert len(pool.submissions) == 2
        assert stages(events)[-1] == OperationStage.FAILED

        with pytest.raises(SubmissionFailure) as exc_info:
            outcome.raise_for_failure()
        assert exc_info.value.outcome is outcome
        assert exc_info.value.context["part_index"] == 1
        assert exc_info.value.context["unsubmitted"] == 1

    @pytest.mark.asyncio
    async def test_job_failure_after_submission(self, network_config, adapter, settings, events, zk_address):
        """Test a relayer job failure does not stop other parts."""
        pool = SimulatedPoolClient(balance=10_000, max_per_tx=1000, fail_jobs={1})
        orchestrator, _ = make_orchestrator(network_config, adapter, pool, settings, events)

        outcome = await orchestrator.transfer([TransferRequest(zk_address, 1500)])

        assert [job.state for job in outcome.jobs] == [JobState.FAILED, JobState.RESOLVED]
        assert outcome.unsubmitted_parts == []
        assert "rejected by relayer" in outcome.error

    @pytest.mark.asyncio
    async def test_stage_sequence(self, network_config, adapter, pool, settings, events, zk_address):
        """Test the operation stages are published in protocol order."""
        orchestrator, _ = make_orchestrator(network_config, adapter, pool, settings, events)

        await orchestrator.transfer([TransferRequest(zk_address, 50)])

        assert stages(events) == [
            OperationStage.AWAITING_READINESS,
            OperationStage.FEE_ESTIMATING,
            OperationStage.SUBMITTING,
            OperationStage.JOB_SUBMITTED,
            OperationStage.AWAITING_HASHES,
            OperationStage.HASH_RESOLVED,
            OperationStage.COMPLETED,
        ]
        resolved = [e for e in events.history if e.state == OperationStage.HASH_RESOLVED][0]
        assert resolved.message == f"https://sepolia.etherscan.io/tx/{job_hash('job-1')}"

    @pytest.mark.asyncio
    async def test_insufficient_funds(self, network_config, adapter, settings, events, zk_address):
        """Test nothing is submitted when the balance cannot cover amount plus fee."""
        pool = SimulatedPoolClient(balance=100, max_per_tx=1000)
        orchestrator, _ = make_orchestrator(network_config, adapter, pool, settings, events)

        with pytest.raises(InsufficientFunds):
            await orchestrator.transfer([TransferRequest(zk_address, 95)])

        assert pool.submissions == []

    @pytest.mark.asyncio
    async def test_amount_too_small(self, network_config, adapter, settings, events, zk_address):
        """Test amounts below the minimum are reported, never submitted."""
        pool = SimulatedPoolClient(balance=10_000, min_amount=100)
        orchestrator, _ = make_orchestrator(network_config, adapter, pool, settings, events)

        with pytest.raises(AmountTooSmall):
            await orchestrator.transfer([TransferRequest(zk_address, 50)])

        assert pool.submissions == []

    @pytest.mark.asyncio
    async def test_invalid_destination(self, network_config, adapter, pool, settings, events):
        """Test a destination with a bad checksum is rejected up front."""
        orchestrator, _ = make_orchestrator(network_config, adapter, pool, settings, events)

        with pytest.raises(ValueError):
            await orchestrator.transfer([TransferRequest("zk-not-an-address", 50)])


class TestReadiness:
    """Tests for the readiness wait."""

    @pytest.mark.asyncio
    async def test_readiness_timeout(self, network_config, adapter, settings, events, zk_address):
        """Test a pool that never becomes ready fails the call."""
        pool = SimulatedPoolClient(balance=10_000, ready=False)
        orchestrator, _ = make_orchestrator(network_config, adapter, pool, settings, events)

        with pytest.raises(ReadinessTimeout) as exc_info:
            await orchestrator.transfer([TransferRequest(zk_address, 50)])

        assert exc_info.value.context["operation"] == "transfer"
        assert pool.submissions == []
        assert events.latest.state == OperationStage.FAILED
        assert events.latest.error == "StateNotReady"

    @pytest.mark.asyncio
    async def test_readiness_polls_until_ready(self, network_config, adapter, settings, events, zk_address):
        """Test readiness is polled until the pool reports ready."""
        settings.readiness_timeout = 5.0
        pool = SimulatedPoolClient(balance=10_000, ready_after=2)
        orchestrator, _ = make_orchestrator(network_config, adapter, pool, settings, events)

        outcome = await orchestrator.transfer([TransferRequest(zk_address, 50)])

        assert outcome.succeeded
        assert pool.readiness_polls == 3


class TestDeposit:
    """Tests for the deposit variants."""

    @pytest.mark.asyncio
    async def test_approve_when_allowance_short(self, network_config, adapter, pool, settings, events):
        """Test the allowance is increased by the shortfall before depositing."""
        adapter.allowances[POOL_ADDRESS] = 10**9
        orchestrator, _ = make_orchestrator(network_config, adapter, pool, settings, events)

        outcome = await orchestrator.deposit(1000)

        required = (1000 + 10) * 10**9
        assert outcome.succeeded
        assert outcome.approval_tx_hash is not None
        assert ("increase_allowance", (POOL_ADDRESS, required - 10**9)) in adapter.calls
        assert pool.submissions[0]["kind"] == "deposit"
        assert pool.submissions[0]["signature"] is None
        assert pool.account_balance == 10_000 + 1000

    @pytest.mark.asyncio
    async def test_approve_skipped_when_sufficient(self, network_config, pool, settings, events):
        """Test no approval transaction when the allowance already covers the deposit."""
        adapter = FakeAdapter(network_config, allowance=MAX_UINT256)
        orchestrator, _ = make_orchestrator(network_config, adapter, pool, settings, events)

        outcome = await orchestrator.deposit(1000)

        assert outcome.succeeded
        assert outcome.approval_tx_hash is None
        assert "increase_allowance" not in adapter.call_names()
        assert OperationStage.APPROVAL_SUBMITTED not in stages(events)

    @pytest.mark.asyncio
    async def test_salted_permit(self, network_config, adapter, pool, settings, events):
        """Test a permit deposit signs typed data instead of approving."""
        orchestrator, adapter = make_orchestrator(
            network_config, adapter, pool, settings, events, deposit_scheme=DepositScheme.SALTED_PERMIT
        )

        outcome = await orchestrator.deposit(1000)

        assert outcome.succeeded
        assert adapter.call_names() == ["sign_typed_data"]
        payload = adapter.typed_payloads[0]
        fee = await pool.part_fee(TxType.BRIDGE_DEPOSIT, 1)
        assert payload["domain"] == {
            "name": "Test Token",
            "version": "1",
            "chainId": 11155111,
            "verifyingContract": TOKEN_ADDRESS,
        }
        assert payload["message"]["owner"] == WALLET_ADDRESS
        assert payload["message"]["spender"] == POOL_ADDRESS
        assert payload["message"]["value"] == (1000 + fee) * 10**9
        assert payload["message"]["nonce"] == 7
        assert len(payload["message"]["salt"]) == 32

        submission = pool.submissions[0]
        assert submission["signature"] == "0x" + "ab" * 65
        assert submission["deadline"] == payload["message"]["deadline"]

    @pytest.mark.asyncio
    async def test_permit2(self, network_config, adapter, pool, settings, events):
        """Test Permit2 deposits approve Permit2 once, then sign."""
        orchestrator, adapter = make_orchestrator(
            network_config, adapter, pool, settings, events, deposit_scheme=DepositScheme.PERMIT2
        )

        outcome = await orchestrator.deposit(1000)

        assert outcome.succeeded
        assert adapter.calls[0] == ("approve", (PERMIT2_ADDRESS, MAX_UINT256))
        payload = adapter.typed_payloads[0]
        assert payload["primaryType"] == "PermitTransferFrom"
        assert payload["message"]["spender"] == POOL_ADDRESS
        assert payload["message"]["permitted"]["token"] == TOKEN_ADDRESS

        await orchestrator.deposit(1000)
        assert adapter.call_names().count("approve") == 1

    @pytest.mark.asyncio
    async def test_signed_deposit(self, network_config, adapter, pool, settings, events):
        """Test a signed deposit forwards a detached signature over the salt."""
        orchestrator, adapter = make_orchestrator(
            network_config, adapter, pool, settings, events, deposit_scheme=DepositScheme.SIGNED
        )

        outcome = await orchestrator.deposit(500)

        assert outcome.succeeded
        salt = adapter.calls[0][1]
        assert pool.submissions[0]["signature"] == "0x" + salt.hex()

    @pytest.mark.asyncio
    async def test_signing_failure(self, network_config, adapter, pool, settings, events):
        """Test a signing failure is surfaced and nothing is submitted."""
        orchestrator, adapter = make_orchestrator(
            network_config, adapter, pool, settings, events, deposit_scheme=DepositScheme.SIGNED
        )
        adapter.fail_signing = True

        outcome = await orchestrator.deposit(500)

        assert not outcome.succeeded
        assert outcome.jobs[0].state == JobState.FAILED
        assert "device rejected" in outcome.error
        assert pool.submissions == []
        with pytest.raises(SubmissionFailure):
            outcome.raise_for_failure()

    @pytest.mark.asyncio
    async def test_deposit_below_minimum(self, network_config, adapter, settings, events):
        """Test deposits below the pool minimum."""
        pool = SimulatedPoolClient(min_amount=100)
        orchestrator, _ = make_orchestrator(network_config, adapter, pool, settings, events)

        with pytest.raises(AmountTooSmall):
            await orchestrator.deposit(10)

    @pytest.mark.asyncio
    async def test_ephemeral_deposit(self, network_config, adapter, pool, settings, events):
        """Test an ephemeral deposit names the funding index."""
        orchestrator, _ = make_orchestrator(network_config, adapter, pool, settings, events)

        outcome = await orchestrator.deposit_ephemeral(700, 3)

        assert outcome.succeeded
        assert pool.submissions[0]["kind"] == "deposit_ephemeral"
        assert pool.submissions[0]["index"] == 3
        assert adapter.calls == []


class TestWithdrawAndDirectDeposit:
    """Tests for withdrawals and direct deposits."""

    @pytest.mark.asyncio
    async def test_withdraw_native_amount_on_last_part(self, network_config, adapter, pool, settings, events):
        """Test the native swap amount only rides on the final part."""
        orchestrator, _ = make_orchestrator(network_config, adapter, pool, settings, events)

        outcome = await orchestrator.withdraw(2500, native_amount=5)

        assert outcome.succeeded
        assert [s["native_amount"] for s in pool.submissions] == [0, 0, 5]
        assert {s["address"] for s in pool.submissions} == {WALLET_ADDRESS}

    @pytest.mark.asyncio
    async def test_withdraw_over_daily_limit(self, network_config, adapter, settings, events):
        """Test a withdrawal above the daily limit cannot be performed."""
        pool = SimulatedPoolClient(balance=50_000, max_per_tx=1000)
        orchestrator, _ = make_orchestrator(network_config, adapter, pool, settings, events)

        with pytest.raises(AmountTooSmall):
            await orchestrator.withdraw(20_000, address="0x" + "44" * 20)

        assert pool.submissions == []

    @pytest.mark.asyncio
    async def test_direct_deposit(self, network_config, adapter, pool, settings, events, zk_address):
        """Test direct deposits approve the queue contract for the maximum."""
        orchestrator, _ = make_orchestrator(network_config, adapter, pool, settings, events)
        contract = await pool.direct_deposit_contract()

        tx_hash = await orchestrator.direct_deposit(zk_address, 1000)

        assert tx_hash.startswith("0x")
        assert adapter.calls == [("approve", (contract, MAX_UINT256))]
        assert pool.submissions[0]["kind"] == "direct_deposit"

        await orchestrator.direct_deposit(zk_address, 1000)
        assert adapter.call_names().count("approve") == 1

    @pytest.mark.asyncio
    async def test_direct_deposit_invalid_address(self, network_config, adapter, pool, settings, events):
        """Test direct deposits validate the shielded address checksum."""
        orchestrator, _ = make_orchestrator(network_config, adapter, pool, settings, events)

        with pytest.raises(ValueError):
            await orchestrator.direct_deposit("zk" + "0" * 48, 1000)


class TestGiftCards:
    """Tests for gift card redemption."""

    @pytest.mark.asyncio
    async def test_redeem_from_code(self, network_config, adapter, pool, settings, events):
        """Test a redemption code is parsed, submitted and resolved."""
        orchestrator, _ = make_orchestrator(network_config, adapter, pool, settings, events)
        code = await pool.code_for_gift_card(pool.issue_gift_card(3000))

        assert await orchestrator.gift_card_balance(code) == 3000
        outcome = await orchestrator.redeem_gift_card(code)

        assert outcome.succeeded
        assert outcome.fee == 10
        assert outcome.tx_hashes == [job_hash("job-1")]
        assert pool.submissions[0]["kind"] == "redeem_gift_card"
        assert await orchestrator.gift_card_balance(code) == 0
        assert stages(events) == [
            OperationStage.AWAITING_READINESS,
            OperationStage.FEE_ESTIMATING,
            OperationStage.SUBMITTING,
            OperationStage.JOB_SUBMITTED,
            OperationStage.AWAITING_HASHES,
            OperationStage.HASH_RESOLVED,
            OperationStage.COMPLETED,
        ]

    @pytest.mark.asyncio
    async def test_empty_card(self, network_config, adapter, pool, settings, events):
        """Test a card that cannot cover the fee is never submitted."""
        orchestrator, _ = make_orchestrator(network_config, adapter, pool, settings, events)
        card = pool.issue_gift_card(10)

        with pytest.raises(InsufficientFunds):
            await orchestrator.redeem_gift_card(card)

        assert pool.submissions == []
        assert stages(events)[-1] == OperationStage.FAILED

    @pytest.mark.asyncio
    async def test_rejected_redemption(self, network_config, adapter, settings, events):
        """Test a relayer rejection is reported on the outcome."""
        pool = SimulatedPoolClient(balance=0, fail_submissions={1})
        orchestrator, _ = make_orchestrator(network_config, adapter, pool, settings, events)
        card = pool.issue_gift_card(3000)

        outcome = await orchestrator.redeem_gift_card(card)

        assert not outcome.succeeded
        assert outcome.jobs[0].state == JobState.FAILED
        assert stages(events)[-1] == OperationStage.FAILED
        with pytest.raises(SubmissionFailure):
            outcome.raise_for_failure()

    @pytest.mark.asyncio
    async def test_malformed_code(self, network_config, adapter, pool, settings, events):
        """Test a malformed code fails before readiness is awaited."""
        orchestrator, _ = make_orchestrator(network_config, adapter, pool, settings, events)

        with pytest.raises(PoolError):
            await orchestrator.redeem_gift_card("0OIl")

        assert stages(events) == []


class TestQueries:
    """Tests for fee and limit queries."""

    @pytest.mark.asyncio
    async def test_estimate_fee(self, network_config, adapter, pool, settings, events):
        """Test fee estimation across several parts."""
        orchestrator, _ = make_orchestrator(network_config, adapter, pool, settings, events)

        fee = await orchestrator.estimate_fee([2500])

        assert fee.tx_count == 3
        assert fee.total == 30
        assert not fee.insufficient_funds

    @pytest.mark.asyncio
    async def test_limits_and_max(self, network_config, adapter, pool, settings, events):
        """Test limit queries default to the wallet address."""
        orchestrator, _ = make_orchestrator(network_config, adapter, pool, settings, events)

        limits = await orchestrator.get_limits()

        assert limits.transfer_single_tx == 1000
        assert await orchestrator.max_transferable() == 1000
