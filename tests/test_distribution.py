"""
Tests for eligibility, plan building, execution and the undistributed ledger.
"""

import asyncio
from decimal import Decimal

import pytest
from tenacity import wait_none

from conftest import (
    KEEPER_ADDRESS,
    PROJECT_WALLET,
    TOKEN_MINT,
    USDC_MINT,
    FakeDiscovery,
    FakeVault,
    make_state,
)
from vault_keeper.core.constants import NATIVE_MINT
from vault_keeper.core.errors import PolicyViolationError
from vault_keeper.core.models import (
    HolderEntry,
    HolderSnapshot,
    TransferKind,
    UndistributedReason,
    UndistributedRecord,
)
from vault_keeper.distribution import (
    DistributionEngine,
    build_plan,
    compute_keeper_top_up,
    filter_eligible,
)
from vault_keeper.distribution.ledger import UndistributedLedger
from vault_keeper.gateways import (
    GatewayConnectionError,
    TransactionError,
    UnconfirmedTransactionError,
)

SOL = 1_000_000_000


def snapshot(*entries: tuple[str, int, str]) -> HolderSnapshot:
    return HolderSnapshot(
        token_mint=TOKEN_MINT,
        holders=[
            HolderEntry(holder_address=address, token_balance=balance, value_in_quote=Decimal(value))
            for address, balance, value in entries
        ],
    )


def plan_for(harvested, snap, keeper_balance=SOL, reward_asset=NATIVE_MINT, exclusions=()):
    return build_plan(
        harvested,
        snap,
        keeper_balance,
        reward_asset,
        exclusions,
        project_wallet=PROJECT_WALLET,
        keeper_address=KEEPER_ADDRESS,
    )


class TestFilterEligible:

    def test_threshold_is_inclusive(self):
        snap = snapshot(("a", 10, "100"), ("b", 10, "99.99"), ("c", 10, "250"))
        eligible = filter_eligible(snap, [], [], Decimal("100"))
        assert [e.holder_address for e in eligible] == ["a", "c"]

    def test_excluded_and_system_accounts_removed(self):
        snap = snapshot(("pool", 10, "1000"), ("keeper", 10, "1000"), ("holder", 10, "1000"))
        eligible = filter_eligible(snap, ["pool"], ["keeper"])
        assert [e.holder_address for e in eligible] == ["holder"]

    def test_zero_balance_removed(self):
        snap = snapshot(("a", 0, "1000"))
        assert filter_eligible(snap, [], []) == []


class TestKeeperTopUp:

    def test_top_up_when_low(self):
        """Test that a keeper at 0.02 SOL is refilled towards 0.1 SOL."""
        assert compute_keeper_top_up(NATIVE_MINT, 20_000_000, SOL) == 80_000_000

    def test_no_top_up_at_or_above_threshold(self):
        assert compute_keeper_top_up(NATIVE_MINT, 60_000_000, SOL) == 0
        assert compute_keeper_top_up(NATIVE_MINT, 50_000_000, SOL) == 0

    def test_top_up_capped_by_project_share(self):
        assert compute_keeper_top_up(NATIVE_MINT, 0, 30_000_000) == 30_000_000

    def test_no_top_up_for_non_native_asset(self):
        assert compute_keeper_top_up(USDC_MINT, 0, SOL) == 0


class TestBuildPlan:

    def test_split_80_20(self):
        snap = snapshot(("a", 300, "500"), ("b", 100, "500"))
        plan = plan_for(1000, snap)

        assert plan.holder_pool_share == 800
        assert plan.project_share == 200
        assert plan.per_holder_share == {"a": 600, "b": 200}
        assert plan.keeper_top_up == 0
        assert plan.undistributed == 0

    def test_rounding_remainder_goes_to_project(self):
        snap = snapshot(("a", 1, "500"))
        plan = plan_for(999, snap)

        assert plan.holder_pool_share == 799
        assert plan.project_share == 200
        assert plan.total_harvested == 999

    def test_holder_shares_sum_to_pool(self):
        snap = snapshot(("a", 1, "500"), ("b", 1, "500"), ("c", 1, "500"))
        plan = plan_for(1000, snap)

        assert sum(plan.per_holder_share.values()) == 800

    def test_keeper_top_up_from_project_share(self):
        """Test that 0.5 SOL with the keeper at 0.02 SOL tops up 0.08 and sends 0.42."""
        snap = snapshot(("a", 1, "500"))
        plan = plan_for(SOL // 2 * 5, snap, keeper_balance=20_000_000)

        assert plan.project_share + plan.keeper_top_up == SOL // 2
        assert plan.keeper_top_up == 80_000_000
        assert plan.project_share == 420_000_000

    def test_no_top_up_when_keeper_has_enough(self):
        snap = snapshot(("a", 1, "500"))
        plan = plan_for(SOL // 2 * 5, snap, keeper_balance=60_000_000)

        assert plan.keeper_top_up == 0
        assert plan.project_share == SOL // 2

    def test_no_eligible_holders(self):
        """Test that with nobody eligible the holder pool is undistributed."""
        snap = snapshot(("small", 10, "5"))
        plan = plan_for(1000, snap)

        assert plan.per_holder_share == {}
        assert plan.undistributed == 800
        assert plan.project_share == 200

    def test_project_wallet_and_keeper_never_rewarded(self):
        snap = snapshot((PROJECT_WALLET, 100, "500"), (KEEPER_ADDRESS, 100, "500"), ("a", 1, "500"))
        plan = plan_for(1000, snap)

        assert plan.per_holder_share == {"a": 800}


class TestDistributionEngine:

    @pytest.fixture
    def holders(self):
        return {
            "whale": (3_000, Decimal("3000")),
            "fish": (1_000, Decimal("1000")),
            "dust": (1, Decimal("1")),
        }

    @pytest.fixture
    def vault(self):
        vault = FakeVault(make_state(reward_asset=NATIVE_MINT))
        vault.native_balances[KEEPER_ADDRESS] = SOL
        return vault

    @pytest.fixture
    def engine(self, vault, holders, ledger):
        return DistributionEngine(vault, FakeDiscovery(holders), ledger, retry_wait=wait_none())

    async def test_plan_and_execute(self, engine, vault):
        plan = await engine.plan(1000, NATIVE_MINT, vault.state, set(), SOL)
        result = await engine.execute(plan)

        assert result.complete
        assert vault.transfers == [
            ("whale", 600, NATIVE_MINT),
            ("fish", 200, NATIVE_MINT),
            (PROJECT_WALLET, 200, NATIVE_MINT),
        ]
        assert result.distributed_amount == 1000

    async def test_system_accounts_excluded_from_snapshot(self, engine, vault):
        await engine.plan(1000, NATIVE_MINT, vault.state, {"pool"}, SOL)

        seen = engine.discovery.excluded_seen
        assert {"pool", KEEPER_ADDRESS, PROJECT_WALLET} <= seen

    async def test_nothing_to_distribute(self, engine, vault):
        assert await engine.plan(0, NATIVE_MINT, vault.state, set(), SOL) is None
        assert engine.discovery.calls == {}

    async def test_keeper_top_up_retained(self, engine, vault):
        """Test that the top-up stays in the keeper wallet and no transfer is sent."""
        plan = await engine.plan(SOL // 2 * 5, NATIVE_MINT, vault.state, set(), 20_000_000)
        result = await engine.execute(plan)

        assert plan.keeper_top_up == 80_000_000
        assert all(recipient != KEEPER_ADDRESS for recipient, _, _ in vault.transfers)
        retained = [r for r in result.completed if r.retained]
        assert [r.instruction.kind for r in retained] == [TransferKind.KEEPER_TOP_UP]

    async def test_no_eligible_holders_recorded(self, vault, ledger):
        engine = DistributionEngine(
            vault, FakeDiscovery({"dust": (1, Decimal("1"))}), ledger, retry_wait=wait_none()
        )
        plan = await engine.plan(1000, NATIVE_MINT, vault.state, set(), SOL)
        await engine.execute(plan)

        assert plan.undistributed == 800
        assert ledger.total(NATIVE_MINT) == 800
        assert ledger.records()[0].reason == UndistributedReason.NO_ELIGIBLE_HOLDERS
        assert vault.transfers == [(PROJECT_WALLET, 200, NATIVE_MINT)]

    async def test_carry_over_added_to_next_plan(self, engine, vault, ledger):
        ledger.record(
            UndistributedRecord(
                asset=NATIVE_MINT, amount=800, reason=UndistributedReason.NO_ELIGIBLE_HOLDERS
            )
        )

        plan = await engine.plan(200, NATIVE_MINT, vault.state, set(), SOL)

        assert plan.total_harvested == 1000
        assert ledger.total(NATIVE_MINT) == 0

    async def test_carry_over_only_for_same_asset(self, engine, vault, ledger):
        ledger.record(
            UndistributedRecord(
                asset=USDC_MINT, amount=500, reason=UndistributedReason.NO_ELIGIBLE_HOLDERS
            )
        )

        plan = await engine.plan(1000, NATIVE_MINT, vault.state, set(), SOL)

        assert plan.total_harvested == 1000
        assert ledger.total(USDC_MINT) == 500

    async def test_transient_transfer_failure_retried(self, engine, vault):
        vault.fail("transfer", GatewayConnectionError("timeout"))

        plan = await engine.plan(1000, NATIVE_MINT, vault.state, set(), SOL)
        result = await engine.execute(plan)

        assert result.complete
        assert result.completed[0].attempts == 2

    async def test_failed_transfer_does_not_stop_others(self, engine, vault, ledger):
        """Test that one failed transfer is queued while the rest are sent."""
        vault.fail("transfer", TransactionError("account frozen"))

        plan = await engine.plan(1000, NATIVE_MINT, vault.state, set(), SOL)
        result = await engine.execute(plan)

        assert not result.complete
        assert len(result.failed) == 1
        assert result.failed[0].instruction.recipient == "whale"
        assert [recipient for recipient, _, _ in vault.transfers] == ["fish", PROJECT_WALLET]
        assert [t.recipient for t in ledger.pending_transfers()] == ["whale"]

    async def test_resume_pending_sends_same_instruction(self, engine, vault, ledger):
        vault.fail("transfer", TransactionError("account frozen"))
        plan = await engine.plan(1000, NATIVE_MINT, vault.state, set(), SOL)
        await engine.execute(plan)
        pending = ledger.pending_transfers()[0]

        result = await engine.resume_pending()

        assert result.complete
        assert result.completed[0].instruction == pending
        assert vault.transfers[-1] == ("whale", 600, NATIVE_MINT)
        assert ledger.pending_transfers() == []
        assert await engine.resume_pending() is None

    async def test_interrupted_execution_leaves_unsent_transfers_pending(
        self, engine, vault, ledger
    ):
        """Test that cancelling mid-plan keeps every unsent transfer in the ledger."""
        plan = await engine.plan(1000, NATIVE_MINT, vault.state, set(), SOL)
        second_started = asyncio.Event()
        send = vault.transfer

        async def hanging_transfer(recipient, amount, asset):
            if vault.transfers:
                second_started.set()
                await asyncio.sleep(3600)
            return await send(recipient, amount, asset)

        vault.transfer = hanging_transfer
        task = asyncio.create_task(engine.execute(plan))
        await second_started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        sent = sum(amount for _, amount, _ in vault.transfers)
        assert sent == 600
        assert sent + ledger.pending_total(NATIVE_MINT) == plan.total_harvested
        assert [t.recipient for t in ledger.pending_transfers()] == ["fish", PROJECT_WALLET]

    async def test_unexpected_error_leaves_plan_pending(self, engine, vault, ledger):
        vault.fail("transfer", RuntimeError("boom"))
        plan = await engine.plan(1000, NATIVE_MINT, vault.state, set(), SOL)

        with pytest.raises(RuntimeError):
            await engine.execute(plan)

        assert ledger.pending_total(NATIVE_MINT) == 1000
        assert vault.transfers == []

    async def test_rejected_transfer_carried_over(self, engine, vault, ledger):
        """Test that a transfer refused before sending returns its value to the pool."""
        vault.fail("transfer", PolicyViolationError("Invalid recipient address"))
        plan = await engine.plan(1000, NATIVE_MINT, vault.state, set(), SOL)

        result = await engine.execute(plan)

        assert not result.complete
        assert result.failed[0].rejected
        assert result.rejected_amount == 600
        assert result.pending_amount == 0
        assert vault.calls["transfer"] == 3
        assert ledger.pending_transfers() == []
        records = ledger.records(NATIVE_MINT)
        assert [r.reason for r in records] == [UndistributedReason.PARTIAL_EXECUTION]
        assert records[0].amount == 600
        assert records[0].plan_id == plan.plan_id

        next_plan = await engine.plan(0, NATIVE_MINT, vault.state, set(), SOL)
        assert next_plan.total_harvested == 600

    async def test_unconfirmed_transfer_not_resent_when_landed(self, engine, vault, ledger):
        """Test that a send with no answer is looked up instead of being paid twice."""
        vault.fail("transfer", UnconfirmedTransactionError("no response", signature="sig-lost"))
        plan = await engine.plan(1000, NATIVE_MINT, vault.state, set(), SOL)

        result = await engine.execute(plan)

        # Not retried within the cycle
        assert vault.calls["transfer"] == 3
        assert result.failed[0].attempts == 1
        whale = ledger.pending_transfers()[0]
        assert whale.recipient == "whale"
        assert ledger.unconfirmed_signature(whale) == "sig-lost"

        vault.landed.add("sig-lost")
        resumed = await engine.resume_pending()

        assert resumed.complete
        assert resumed.completed[0].signature == "sig-lost"
        assert vault.calls["transfer"] == 3
        assert ledger.pending_transfers() == []
        assert ledger.unconfirmed_signature(whale) is None

    async def test_unconfirmed_transfer_resent_when_not_landed(self, engine, vault, ledger):
        vault.fail("transfer", UnconfirmedTransactionError("no response", signature="sig-lost"))
        plan = await engine.plan(1000, NATIVE_MINT, vault.state, set(), SOL)
        await engine.execute(plan)

        resumed = await engine.resume_pending()

        assert resumed.complete
        assert vault.calls["transaction_landed"] == 1
        assert vault.transfers[-1] == ("whale", 600, NATIVE_MINT)
        assert ledger.pending_transfers() == []

    async def test_status_lookup_failure_keeps_transfer_pending(self, engine, vault, ledger):
        vault.fail("transfer", UnconfirmedTransactionError("no response", signature="sig-lost"))
        plan = await engine.plan(1000, NATIVE_MINT, vault.state, set(), SOL)
        await engine.execute(plan)
        vault.fail("transaction_landed", GatewayConnectionError("rpc down"))

        resumed = await engine.resume_pending()

        assert not resumed.complete
        assert vault.calls["transfer"] == 3
        whale = ledger.pending_transfers()[0]
        assert ledger.unconfirmed_signature(whale) == "sig-lost"

    async def test_keeper_operating_balance_excludes_owed_value(self, engine, vault, ledger):
        ledger.record(
            UndistributedRecord(
                asset=NATIVE_MINT, amount=300_000_000, reason=UndistributedReason.SWAP_FAILED
            )
        )
        assert await engine.keeper_operating_balance() == SOL - 300_000_000

    async def test_recover_to_project_wallet(self, engine, vault, ledger):
        ledger.record(
            UndistributedRecord(
                asset=USDC_MINT, amount=500, reason=UndistributedReason.NO_ELIGIBLE_HOLDERS
            )
        )

        result = await engine.recover_to_project_wallet(USDC_MINT)

        assert result.succeeded
        assert vault.transfers == [(PROJECT_WALLET, 500, USDC_MINT)]
        assert ledger.total(USDC_MINT) == 0
        assert await engine.recover_to_project_wallet(USDC_MINT) is None

    async def test_failed_recovery_keeps_record(self, engine, vault, ledger):
        ledger.record(
            UndistributedRecord(
                asset=USDC_MINT, amount=500, reason=UndistributedReason.NO_ELIGIBLE_HOLDERS
            )
        )
        vault.fail("transfer", TransactionError("rejected"))

        result = await engine.recover_to_project_wallet(USDC_MINT)

        assert not result.succeeded
        assert ledger.total(USDC_MINT) == 500

    async def test_dry_run_sends_nothing(self, vault, holders, tmp_path):
        ledger = UndistributedLedger(tmp_path / "ledger.json", persist=False)
        engine = DistributionEngine(vault, FakeDiscovery(holders), ledger, dry_run=True)

        plan = await engine.plan(1000, NATIVE_MINT, vault.state, set(), SOL)
        result = await engine.execute(plan)

        assert result.complete
        assert vault.transfers == []


class TestUndistributedLedger:

    def test_persists_across_instances(self, tmp_path):
        path = tmp_path / "ledger.json"
        ledger = UndistributedLedger(path)
        ledger.record(
            UndistributedRecord(asset="x", amount=5, reason=UndistributedReason.SWAP_FAILED)
        )

        reloaded = UndistributedLedger(path)
        assert reloaded.total("x") == 5
        assert reloaded.assets() == ["x"]

    def test_take_clears_asset(self, ledger):
        for amount in (3, 4):
            ledger.record(
                UndistributedRecord(asset="x", amount=amount, reason=UndistributedReason.SWAP_FAILED)
            )
        ledger.record(
            UndistributedRecord(asset="y", amount=1, reason=UndistributedReason.SWAP_FAILED)
        )

        assert ledger.take("x") == 7
        assert ledger.total("x") == 0
        assert ledger.take("x") == 0
        assert ledger.total("y") == 1

    def test_pending_not_duplicated(self, ledger):
        plan = plan_for(1000, snapshot(("a", 1, "500")))
        transfers = plan.transfers()

        ledger.add_pending(transfers)
        ledger.add_pending(transfers)

        assert len(ledger.pending_transfers()) == len(transfers)
        ledger.resolve_pending(transfers[0])
        assert len(ledger.pending_transfers()) == len(transfers) - 1

    def test_unconfirmed_signature_persisted_until_resolved(self, tmp_path):
        path = tmp_path / "ledger.json"
        transfers = plan_for(1000, snapshot(("a", 1, "500"))).transfers()
        ledger = UndistributedLedger(path)
        ledger.add_pending(transfers)
        ledger.mark_unconfirmed(transfers[0], "sig-lost")

        reloaded = UndistributedLedger(path)
        assert reloaded.unconfirmed_signature(transfers[0]) == "sig-lost"
        assert reloaded.unconfirmed_signature(transfers[1]) is None

        reloaded.resolve_pending(transfers[0])
        assert UndistributedLedger(path).unconfirmed_signature(transfers[0]) is None

    def test_non_persistent_ledger_writes_nothing(self, tmp_path):
        path = tmp_path / "ledger.json"
        ledger = UndistributedLedger(path, persist=False)
        ledger.record(
            UndistributedRecord(asset="x", amount=5, reason=UndistributedReason.SWAP_FAILED)
        )

        assert ledger.total("x") == 5
        assert not path.exists()

    def test_clear(self, ledger):
        ledger.record(
            UndistributedRecord(asset="x", amount=5, reason=UndistributedReason.SWAP_FAILED)
        )
        ledger.clear()
        assert ledger.assets() == []
