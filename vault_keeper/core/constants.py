"""
Constants module for the Vault Keeper.

This module defines the fixed economic parameters of the keeper: the fee
decay schedule, the distribution split, keeper operating-balance thresholds,
well-known Solana addresses and remote-call limits.
"""
from decimal import Decimal
from typing import Final

# ======== Unit Constants ========
LAMPORTS_PER_SOL: Final[int] = 1_000_000_000
TOKEN_DECIMALS: Final[int] = 9
BASIS_POINTS_DENOMINATOR: Final[int] = 10_000


# ======== Fee Schedule Constants ========
# Launch tax (0-5 minutes after launch)
FEE_LAUNCH_BPS: Final[int] = 3000  # 30%
# Intermediate tax (5-10 minutes after launch)
FEE_INTERMEDIATE_BPS: Final[int] = 1500  # 15%
# Terminal tax, schedule is finalized once applied
FEE_TERMINAL_BPS: Final[int] = 500  # 5%

FEE_INTERMEDIATE_AFTER_SECONDS: Final[int] = 300
FEE_TERMINAL_AFTER_SECONDS: Final[int] = 600

FEE_TIERS: Final[tuple[int, ...]] = (FEE_LAUNCH_BPS, FEE_INTERMEDIATE_BPS, FEE_TERMINAL_BPS)


# ======== Distribution Constants ========
# Fixed split of harvested value, not configurable at runtime
HOLDERS_SHARE_PERCENT: Final[int] = 80
PROJECT_SHARE_PERCENT: Final[int] = 20

assert HOLDERS_SHARE_PERCENT + PROJECT_SHARE_PERCENT == 100, "Distribution split must sum to 100"

# Minimum holding value to be eligible for rewards
MIN_HOLDER_VALUE_USD: Final[Decimal] = Decimal("100")

# Keeper operating balance (native SOL)
KEEPER_LOW_BALANCE_LAMPORTS: Final[int] = 50_000_000  # 0.05 SOL
KEEPER_TOP_UP_TARGET_LAMPORTS: Final[int] = 100_000_000  # 0.1 SOL


# ======== Reward Selection Constants ========
REWARD_CHECK_WEEKDAY: Final[int] = 0  # Monday (datetime.weekday())
REWARD_CHECK_HOUR: Final[int] = 3
REWARD_CHECK_MINUTE: Final[int] = 0
REWARD_WINDOW_TOLERANCE_SECONDS: Final[int] = 60
REWARD_CHECK_PERIOD_SECONDS: Final[int] = 7 * 24 * 60 * 60


# ======== Harvest / Swap Constants ========
# The vault's harvest instruction accepts at most 20 source accounts
HARVEST_BATCH_LIMIT: Final[int] = 20
DEFAULT_SLIPPAGE_BPS: Final[int] = 100  # 1%
MAX_SWAP_ATTEMPTS: Final[int] = 3
MAX_REMOTE_ATTEMPTS: Final[int] = 3


# ======== Scheduler Constants ========
DEFAULT_TICK_INTERVAL_SECONDS: Final[int] = 180  # 3 minutes
REMOTE_CALL_TIMEOUT_SECONDS: Final[float] = 30.0


# ======== Solana Addresses ========
NATIVE_MINT: Final[str] = "So11111111111111111111111111111111111111112"
TOKEN_PROGRAM_ID: Final[str] = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"
TOKEN_2022_PROGRAM_ID: Final[str] = "TokenzQdBNbLqP5VEhdkAS6EPFLC1PHnBqCXEpPxuEb"
ASSOCIATED_TOKEN_PROGRAM_ID: Final[str] = "ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL"
SYSTEM_PROGRAM_ID: Final[str] = "11111111111111111111111111111111"

RAYDIUM_CPMM_PROGRAM_ID: Final[str] = "CPMMoo8L3F4NbTegBCKVNunggL7H1ZpdTHKxQB5qKP1C"
JUPITER_V6_PROGRAM_ID: Final[str] = "JUP6LkbZbjS1jKKwapdHNy74zcZ3tLUZoi5QNyVTaV4"

# Router programs that are always excluded from fees and rewards
DEFAULT_ROUTER_PROGRAMS: Final[tuple[str, ...]] = (
    JUPITER_V6_PROGRAM_ID,
    RAYDIUM_CPMM_PROGRAM_ID,
)

# PDA seeds
VAULT_SEED: Final[bytes] = b"vault"
POOL_VAULT_SEED: Final[bytes] = b"pool_vault"

# Token-2022 account layout
TOKEN_ACCOUNT_BASE_SIZE: Final[int] = 165
TRANSFER_FEE_AMOUNT_EXTENSION: Final[int] = 2
