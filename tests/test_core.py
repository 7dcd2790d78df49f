"""
Unit tests for the Vault Keeper core module.

This module contains tests for the core components, including:
- Constants validation
- Utility functions
- Data models and validation
"""

import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from pydantic import ValidationError

from vault_keeper.core.constants import (
    FEE_INTERMEDIATE_BPS,
    FEE_LAUNCH_BPS,
    FEE_TERMINAL_BPS,
    HARVEST_BATCH_LIMIT,
    HOLDERS_SHARE_PERCENT,
    KEEPER_LOW_BALANCE_LAMPORTS,
    KEEPER_TOP_UP_TARGET_LAMPORTS,
    PROJECT_SHARE_PERCENT,
)
from vault_keeper.core.errors import FatalCycleError, KeeperError, TransientError
from vault_keeper.core.models import (
    CycleReport,
    DistributionPlan,
    ExclusionList,
    ExclusionSet,
    LaunchState,
    StepStatus,
    TransferKind,
)
from vault_keeper.core.utils import (
    anchor_discriminator,
    apply_bps,
    chunked,
    datetime_to_timestamp,
    extract_cashtag,
    format_sol_amount,
    lamports_to_sol,
    next_weekly_occurrence,
    sol_to_lamports,
    split_proportional,
    timestamp_to_datetime,
    to_base_units,
    unique,
)


class TestConstants:
    """Tests for core constants."""

    def test_distribution_split_sums_to_hundred(self):
        """Test that the holder and project shares sum to 100%."""
        assert HOLDERS_SHARE_PERCENT + PROJECT_SHARE_PERCENT == 100
        assert HOLDERS_SHARE_PERCENT == 80

    def test_fee_tiers_decrease(self):
        """Test that the fee schedule only ever goes down."""
        assert FEE_LAUNCH_BPS > FEE_INTERMEDIATE_BPS > FEE_TERMINAL_BPS > 0

    def test_keeper_thresholds(self):
        """Test that the top-up target sits above the low-balance threshold."""
        assert KEEPER_TOP_UP_TARGET_LAMPORTS > KEEPER_LOW_BALANCE_LAMPORTS

    def test_harvest_batch_limit(self):
        assert HARVEST_BATCH_LIMIT == 20


class TestUtils:
    """Tests for utility functions."""

    def test_sol_lamport_conversion(self):
        """Test SOL/lamport conversion in both directions."""
        assert sol_to_lamports(Decimal("0.05")) == 50_000_000
        assert sol_to_lamports("1.5") == 1_500_000_000
        assert lamports_to_sol(100_000_000) == Decimal("0.1")

    def test_sol_to_lamports_truncates(self):
        """Test that sub-lamport precision is dropped, never rounded up."""
        assert sol_to_lamports("0.0000000019") == 1

    def test_to_base_units(self):
        assert to_base_units(Decimal("1.25"), 6) == 1_250_000

    def test_format_sol_amount(self):
        assert format_sol_amount(1_000_000_000) == "1.000000000 SOL"
        assert format_sol_amount(5, include_symbol=False) == "0.000000005"

    def test_apply_bps(self):
        assert apply_bps(1000, 500) == 50
        assert apply_bps(999, 3000) == 299

    def test_split_proportional_exact(self):
        """Test a split that divides evenly."""
        shares = split_proportional(800, {"a": 1, "b": 3})
        assert shares == {"a": 200, "b": 600}

    def test_split_proportional_conserves_total(self):
        """Test that rounding remainders are handed out so the total is kept."""
        weights = {"a": 1, "b": 1, "c": 1}
        shares = split_proportional(100, weights)
        assert sum(shares.values()) == 100
        # Ties go to the key listed first
        assert shares == {"a": 34, "b": 33, "c": 33}

    def test_split_proportional_largest_remainder(self):
        """Test that leftover units go to the largest fractional remainders."""
        shares = split_proportional(10, {"a": 1, "b": 2, "c": 4})
        # Exact shares: 1.43, 2.86, 5.71 -> floors 1, 2, 5; leftover 2 goes to b and c
        assert shares == {"a": 1, "b": 3, "c": 6}

    def test_split_proportional_zero_weights(self):
        assert split_proportional(100, {"a": 0, "b": 0}) == {"a": 0, "b": 0}
        assert split_proportional(0, {"a": 5}) == {"a": 0}

    def test_split_proportional_zero_weight_gets_nothing(self):
        shares = split_proportional(7, {"a": 0, "b": 1, "c": 1})
        assert shares["a"] == 0
        assert sum(shares.values()) == 7

    def test_split_proportional_negative(self):
        with pytest.raises(ValueError, match="non-negative"):
            split_proportional(-1, {"a": 1})
        with pytest.raises(ValueError, match="non-negative"):
            split_proportional(10, {"a": -1})

    def test_chunked(self):
        """Test batching into groups of at most 20."""
        items = list(range(45))
        batches = list(chunked(items, 20))
        assert [len(batch) for batch in batches] == [20, 20, 5]
        assert [item for batch in batches for item in batch] == items

    def test_chunked_invalid_size(self):
        with pytest.raises(ValueError):
            list(chunked([1, 2], 0))

    def test_anchor_discriminator(self):
        """Test that discriminators are 8 bytes and distinct per instruction."""
        update_fee = anchor_discriminator("update_transfer_fee")
        harvest = anchor_discriminator("harvest_fees")
        assert len(update_fee) == 8
        assert update_fee != harvest

    def test_extract_cashtag(self):
        assert extract_cashtag("This week we reward $BONK holders!") == "BONK"
        assert extract_cashtag("$SOL then $BONK") == "SOL"
        assert extract_cashtag("No symbol here, only $5 off") is None
        assert extract_cashtag("") is None

    def test_unique_keeps_order(self):
        assert unique(["b", "a", "b", "c", "a"]) == ["b", "a", "c"]

    def test_timestamp_conversion(self):
        """Test timestamp conversion in both directions."""
        dt = datetime(2025, 1, 6, 3, 0, tzinfo=timezone.utc)
        timestamp = datetime_to_timestamp(dt)
        assert timestamp_to_datetime(timestamp) == dt
        # Naive datetimes are taken as UTC
        assert datetime_to_timestamp(datetime(2025, 1, 6, 3, 0)) == timestamp

    def test_next_weekly_occurrence(self):
        """Test the next Monday 03:00 from various points in the week."""
        # Wednesday
        now = datetime(2025, 1, 8, 12, 0, tzinfo=timezone.utc)
        assert next_weekly_occurrence(now, 0, 3, 0) == datetime(
            2025, 1, 13, 3, 0, tzinfo=timezone.utc
        )
        # Monday before the check time
        now = datetime(2025, 1, 6, 2, 0, tzinfo=timezone.utc)
        assert next_weekly_occurrence(now, 0, 3, 0) == datetime(
            2025, 1, 6, 3, 0, tzinfo=timezone.utc
        )
        # Exactly at the check time
        now = datetime(2025, 1, 6, 3, 0, tzinfo=timezone.utc)
        assert next_weekly_occurrence(now, 0, 3, 0) == now


class TestErrors:
    """Tests for error classes."""

    def test_error_context_in_message(self):
        error = KeeperError("Transfer failed", operation="transfer", address="abc", amount=5)
        assert "operation=transfer" in str(error)
        assert "amount=5" in str(error)
        assert error.context()["address"] == "abc"

    def test_error_hierarchy(self):
        assert issubclass(TransientError, KeeperError)
        assert issubclass(FatalCycleError, KeeperError)
        assert not issubclass(FatalCycleError, TransientError)


class TestModels:
    """Tests for data models."""

    def test_finalized_launch_state_must_be_terminal(self):
        """Test that a finalized schedule cannot sit on a non-terminal tier."""
        with pytest.raises(ValidationError):
            LaunchState(launch_timestamp=None, fee_finalized=True, current_fee_bps=1500)

        state = LaunchState(
            launch_timestamp=datetime.now(timezone.utc), fee_finalized=True, current_fee_bps=500
        )
        assert state.launched

    def test_exclusion_set_missing(self):
        """Test that missing lists are reported fee list first."""
        exclusions = ExclusionSet(reward_exclusions={"pool"})
        assert exclusions.missing("pool") == [ExclusionList.FEE]
        assert exclusions.missing("other") == [ExclusionList.FEE, ExclusionList.REWARD]
        exclusions.fee_exclusions.add("pool")
        assert exclusions.is_fully_excluded("pool")

    def _plan(self, **overrides):
        values = dict(
            reward_asset="asset",
            total_harvested=1000,
            holder_pool_share=800,
            project_share=200,
            per_holder_share={"h1": 500, "h2": 300},
            project_wallet="project",
            keeper_address="keeper",
        )
        values.update(overrides)
        return DistributionPlan(**values)

    def test_distribution_plan_conservation(self):
        """Test that a plan must account for every harvested unit."""
        plan = self._plan()
        assert plan.total_harvested == 1000

        with pytest.raises(ValidationError, match="conserve"):
            self._plan(project_share=150)

        with pytest.raises(ValidationError, match="holder pool"):
            self._plan(per_holder_share={"h1": 500})

    def test_distribution_plan_with_undistributed(self):
        plan = self._plan(per_holder_share={}, undistributed=800)
        assert [t.kind for t in plan.transfers()] == [TransferKind.PROJECT]

    def test_distribution_plan_transfers(self):
        """Test that transfers come out holders first, zero amounts skipped."""
        plan = self._plan(project_share=180, keeper_top_up=20)
        transfers = plan.transfers()
        assert [t.kind for t in transfers] == [
            TransferKind.HOLDER,
            TransferKind.HOLDER,
            TransferKind.PROJECT,
            TransferKind.KEEPER_TOP_UP,
        ]
        assert sum(t.amount for t in transfers) == 1000
        assert all(t.plan_id == plan.plan_id for t in transfers)

    def test_distribution_plan_is_frozen(self):
        plan = self._plan()
        with pytest.raises(ValidationError):
            plan.project_share = 0

    def test_transfer_key_is_stable(self):
        plan_id = uuid.uuid4()
        plan = self._plan(plan_id=plan_id)
        keys = [t.key for t in plan.transfers()]
        assert keys[0] == f"{plan_id}:holder:h1"
        assert len(set(keys)) == len(keys)

    def test_cycle_report_complete(self):
        """Test that any failed step or a cancellation marks the cycle incomplete."""
        report = CycleReport()
        report.record("fees", StepStatus.OK)
        report.record("harvest", StepStatus.SKIPPED, "below threshold")
        assert report.complete

        report.record("swap", StepStatus.FAILED, "no route")
        assert not report.complete

        cancelled = CycleReport(cancelled=True)
        assert not cancelled.complete

    def test_cycle_report_duration_fields(self):
        report = CycleReport()
        report.finished_at = report.started_at + timedelta(seconds=3)
        assert report.finished_at > report.started_at
