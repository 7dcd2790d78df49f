"""
Core data models for the Vault Keeper.

This module defines the Pydantic models used throughout the application:
remote vault state, exclusion sets, reward selection, holder snapshots,
distribution plans and their execution results, and cycle reports.

On-chain amounts are integers in base units (lamports for SOL, raw units for
SPL tokens). Fiat values are Decimals.
"""

from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, model_validator

from vault_keeper.core.constants import FEE_TERMINAL_BPS, FEE_TIERS


def utc_now() -> datetime:
    return datetime.now(UTC)


# ======== Vault Models ========


class LaunchState(BaseModel):
    """Fee schedule state as stored by the remote vault."""

    launch_timestamp: datetime | None = Field(None, description="None until the pool launches")
    fee_finalized: bool = False
    current_fee_bps: int = Field(ge=0, le=10_000)

    @property
    def launched(self) -> bool:
        return self.launch_timestamp is not None

    @model_validator(mode="after")
    def validate_finalized_fee(self) -> "LaunchState":
        """A finalized schedule can only sit on the terminal tier."""
        if self.fee_finalized and self.current_fee_bps != FEE_TERMINAL_BPS:
            raise ValueError(
                f"Finalized fee schedule must be at {FEE_TERMINAL_BPS} bps, "
                f"got {self.current_fee_bps}"
            )
        return self


class ExclusionList(str, Enum):
    """The two exclusion lists kept by the vault."""

    FEE = "fee"
    REWARD = "reward"


class ExclusionSet(BaseModel):
    """Fee and reward exclusion lists. Membership only ever grows."""

    fee_exclusions: set[str] = Field(default_factory=set)
    reward_exclusions: set[str] = Field(default_factory=set)

    def members(self, list_type: ExclusionList) -> set[str]:
        if list_type == ExclusionList.FEE:
            return self.fee_exclusions
        return self.reward_exclusions

    def contains(self, address: str, list_type: ExclusionList) -> bool:
        return address in self.members(list_type)

    def missing(self, address: str) -> list[ExclusionList]:
        """Lists the address is not yet part of, fee list first."""
        return [list_type for list_type in ExclusionList if not self.contains(address, list_type)]

    def is_fully_excluded(self, address: str) -> bool:
        return not self.missing(address)


class RewardSelection(BaseModel):
    """Currently selected reward asset."""

    current_reward_asset: str
    last_check_timestamp: datetime | None = None
    last_symbol: str | None = None


class VaultState(BaseModel):
    """Snapshot of the remote vault, read fresh every cycle."""

    token_mint: str
    owner_wallet: str = Field(description="Project wallet receiving the project share")
    keeper_authority: str
    launch: LaunchState
    reward: RewardSelection


# ======== Holder Models ========


class HolderEntry(BaseModel):
    """A single token holder as reported by the discovery provider."""

    holder_address: str
    token_balance: int = Field(ge=0)
    value_in_quote: Decimal = Field(ge=0, description="Holding value in USD")


class HolderSnapshot(BaseModel):
    """Holders ordered by balance, recomputed every distribution cycle."""

    token_mint: str
    holders: list[HolderEntry] = Field(default_factory=list)
    price: Decimal = Field(default=Decimal("0"))
    captured_at: datetime = Field(default_factory=utc_now)

    def __len__(self) -> int:
        return len(self.holders)


# ======== Distribution Models ========


class TransferKind(str, Enum):
    """Purpose of a distribution transfer."""

    HOLDER = "holder"
    PROJECT = "project"
    KEEPER_TOP_UP = "keeper_top_up"


class TransferInstruction(BaseModel):
    """One transfer of a distribution plan."""

    model_config = ConfigDict(frozen=True)

    plan_id: UUID
    recipient: str
    amount: int = Field(gt=0)
    asset: str
    kind: TransferKind

    @property
    def key(self) -> str:
        """Identifies the transfer within its plan."""
        return f"{self.plan_id}:{self.kind.value}:{self.recipient}"


class DistributionPlan(BaseModel):
    """
    Value object describing how a harvested amount is split.

    Computed once per cycle and executed to completion; failed transfers are
    retried from the plan, never from a recomputation.
    """

    model_config = ConfigDict(frozen=True)

    plan_id: UUID = Field(default_factory=uuid4)
    reward_asset: str
    total_harvested: int = Field(ge=0)
    holder_pool_share: int = Field(ge=0)
    project_share: int = Field(ge=0, description="Amount sent to the project wallet")
    keeper_top_up: int = Field(default=0, ge=0)
    per_holder_share: dict[str, int] = Field(default_factory=dict)
    undistributed: int = Field(default=0, ge=0)
    project_wallet: str
    keeper_address: str
    created_at: datetime = Field(default_factory=utc_now)

    @model_validator(mode="after")
    def validate_conservation(self) -> "DistributionPlan":
        """Every harvested unit is either sent or reported as undistributed."""
        accounted = (
            self.holder_pool_share + self.project_share + self.keeper_top_up
        )
        if accounted != self.total_harvested:
            raise ValueError(
                f"Plan does not conserve value: {accounted} != {self.total_harvested}"
            )
        allocated = sum(self.per_holder_share.values())
        if allocated + self.undistributed != self.holder_pool_share:
            raise ValueError(
                f"Holder shares {allocated} + undistributed {self.undistributed} "
                f"!= holder pool {self.holder_pool_share}"
            )
        return self

    def transfers(self) -> list[TransferInstruction]:
        """One instruction per non-zero entry, holders first."""
        instructions = [
            TransferInstruction(
                plan_id=self.plan_id,
                recipient=holder,
                amount=amount,
                asset=self.reward_asset,
                kind=TransferKind.HOLDER,
            )
            for holder, amount in self.per_holder_share.items()
            if amount > 0
        ]
        if self.project_share > 0:
            instructions.append(
                TransferInstruction(
                    plan_id=self.plan_id,
                    recipient=self.project_wallet,
                    amount=self.project_share,
                    asset=self.reward_asset,
                    kind=TransferKind.PROJECT,
                )
            )
        if self.keeper_top_up > 0:
            instructions.append(
                TransferInstruction(
                    plan_id=self.plan_id,
                    recipient=self.keeper_address,
                    amount=self.keeper_top_up,
                    asset=self.reward_asset,
                    kind=TransferKind.KEEPER_TOP_UP,
                )
            )
        return instructions


class TransferResult(BaseModel):
    """Outcome of executing a single transfer instruction."""

    instruction: TransferInstruction
    signature: str | None = None
    attempts: int = 0
    error: str | None = None
    retained: bool = Field(False, description="Kept by the keeper, no transfer needed")
    rejected: bool = Field(False, description="Refused before sending, value is carried over")

    @property
    def succeeded(self) -> bool:
        return self.signature is not None or self.retained


class DistributionResult(BaseModel):
    """Outcome of executing a distribution plan."""

    plan_id: UUID
    completed: list[TransferResult] = Field(default_factory=list)
    failed: list[TransferResult] = Field(default_factory=list)

    @property
    def distributed_amount(self) -> int:
        return sum(result.instruction.amount for result in self.completed)

    @property
    def pending_amount(self) -> int:
        return sum(result.instruction.amount for result in self.failed if not result.rejected)

    @property
    def rejected_amount(self) -> int:
        return sum(result.instruction.amount for result in self.failed if result.rejected)

    @property
    def complete(self) -> bool:
        return not self.failed


class UndistributedReason(str, Enum):
    """Why harvested value was not sent."""

    NO_ELIGIBLE_HOLDERS = "no_eligible_holders"
    PARTIAL_EXECUTION = "partial_execution"
    SWAP_FAILED = "swap_failed"


class UndistributedRecord(BaseModel):
    """Harvested value that is tracked until distributed or recovered."""

    asset: str
    amount: int = Field(gt=0)
    reason: UndistributedReason
    plan_id: UUID | None = None
    recorded_at: datetime = Field(default_factory=utc_now)


# ======== Harvest / Swap Models ========


class FeeAccount(BaseModel):
    """A token account holding withheld transfer fees."""

    address: str
    withheld_amount: int = Field(gt=0)


class HarvestResult(BaseModel):
    """Outcome of harvesting withheld fees across all batches."""

    harvested_amount: int = Field(default=0, ge=0)
    batches_total: int = 0
    batches_succeeded: int = 0
    failed_accounts: list[str] = Field(default_factory=list)

    @property
    def complete(self) -> bool:
        return self.batches_succeeded == self.batches_total


class SwapRoute(BaseModel):
    """A quoted route returned by the swap router."""

    input_mint: str
    output_mint: str
    in_amount: int = Field(gt=0)
    out_amount: int = Field(ge=0)
    slippage_bps: int = Field(ge=0)
    price_impact_pct: Decimal = Field(default=Decimal("0"))
    quoted_at: datetime = Field(default_factory=utc_now)
    raw: dict = Field(default_factory=dict, description="Provider-specific quote payload")


class SwapResult(BaseModel):
    """Outcome of a completed swap."""

    route: SwapRoute
    received_amount: int = Field(ge=0)
    signature: str | None = None
    attempts: int = 1


# ======== Cycle Models ========


class StepStatus(str, Enum):
    """Outcome of a single cycle step."""

    OK = "ok"
    SKIPPED = "skipped"
    FAILED = "failed"


class StepOutcome(BaseModel):
    """Outcome of one component within a cycle."""

    status: StepStatus
    detail: str | None = None


class CycleReport(BaseModel):
    """Summary of one keeper cycle."""

    cycle_id: UUID = Field(default_factory=uuid4)
    started_at: datetime = Field(default_factory=utc_now)
    finished_at: datetime | None = None
    steps: dict[str, StepOutcome] = Field(default_factory=dict)
    harvested: int = 0
    distributed: int = 0
    undistributed: int = 0
    cancelled: bool = False

    def record(self, step: str, status: StepStatus, detail: str | None = None) -> None:
        self.steps[step] = StepOutcome(status=status, detail=detail)

    @property
    def complete(self) -> bool:
        return not self.cancelled and all(
            outcome.status != StepStatus.FAILED for outcome in self.steps.values()
        )


__all__ = [
    "FEE_TIERS",
    "LaunchState",
    "ExclusionList",
    "ExclusionSet",
    "RewardSelection",
    "VaultState",
    "HolderEntry",
    "HolderSnapshot",
    "TransferKind",
    "TransferInstruction",
    "DistributionPlan",
    "TransferResult",
    "DistributionResult",
    "UndistributedReason",
    "UndistributedRecord",
    "FeeAccount",
    "HarvestResult",
    "SwapRoute",
    "SwapResult",
    "StepStatus",
    "StepOutcome",
    "CycleReport",
    "utc_now",
]
