"""
Core module for the Vault Keeper.

This module exports the main models, constants, errors and utilities used
throughout the project.
"""

from .constants import (
    FEE_INTERMEDIATE_BPS,
    FEE_LAUNCH_BPS,
    FEE_TERMINAL_BPS,
    FEE_TIERS,
    HARVEST_BATCH_LIMIT,
    HOLDERS_SHARE_PERCENT,
    KEEPER_LOW_BALANCE_LAMPORTS,
    KEEPER_TOP_UP_TARGET_LAMPORTS,
    LAMPORTS_PER_SOL,
    MIN_HOLDER_VALUE_USD,
    NATIVE_MINT,
    PROJECT_SHARE_PERCENT,
)
from .errors import (
    FatalCycleError,
    KeeperError,
    PolicyViolationError,
    ResolutionError,
    TransientError,
)
from .models import (
    CycleReport,
    DistributionPlan,
    DistributionResult,
    ExclusionList,
    ExclusionSet,
    FeeAccount,
    HarvestResult,
    HolderEntry,
    HolderSnapshot,
    LaunchState,
    RewardSelection,
    StepOutcome,
    StepStatus,
    SwapResult,
    SwapRoute,
    TransferInstruction,
    TransferKind,
    TransferResult,
    UndistributedReason,
    UndistributedRecord,
    VaultState,
)
from .utils import (
    anchor_discriminator,
    chunked,
    format_sol_amount,
    lamports_to_sol,
    sol_to_lamports,
    split_proportional,
)

__all__ = [
    # Constants
    "FEE_LAUNCH_BPS", "FEE_INTERMEDIATE_BPS", "FEE_TERMINAL_BPS", "FEE_TIERS",
    "HOLDERS_SHARE_PERCENT", "PROJECT_SHARE_PERCENT", "MIN_HOLDER_VALUE_USD",
    "KEEPER_LOW_BALANCE_LAMPORTS", "KEEPER_TOP_UP_TARGET_LAMPORTS",
    "HARVEST_BATCH_LIMIT", "LAMPORTS_PER_SOL", "NATIVE_MINT",

    # Errors
    "KeeperError", "TransientError", "PolicyViolationError", "FatalCycleError",
    "ResolutionError",

    # Models
    "LaunchState", "ExclusionList", "ExclusionSet", "RewardSelection", "VaultState",
    "HolderEntry", "HolderSnapshot",
    "TransferKind", "TransferInstruction", "DistributionPlan",
    "TransferResult", "DistributionResult",
    "UndistributedReason", "UndistributedRecord",
    "FeeAccount", "HarvestResult", "SwapRoute", "SwapResult",
    "StepStatus", "StepOutcome", "CycleReport",

    # Utilities
    "anchor_discriminator", "chunked", "format_sol_amount",
    "lamports_to_sol", "sol_to_lamports", "split_proportional",
]
