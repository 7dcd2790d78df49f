"""
Fee schedule module for the Vault Keeper.

This module decays the token's transfer fee after launch: 30% for the first
five minutes, 15% for the next five, then 5% for good. Applying the terminal
tier finalizes the schedule and no further fee updates are accepted.
"""

from collections.abc import Callable
from datetime import datetime

import structlog
from pydantic import BaseModel

from vault_keeper.core.constants import (
    FEE_INTERMEDIATE_AFTER_SECONDS,
    FEE_INTERMEDIATE_BPS,
    FEE_LAUNCH_BPS,
    FEE_TERMINAL_AFTER_SECONDS,
    FEE_TERMINAL_BPS,
    FEE_TIERS,
)
from vault_keeper.core.errors import PolicyViolationError
from vault_keeper.core.models import LaunchState, utc_now
from vault_keeper.core.utils import seconds_between
from vault_keeper.gateways import VaultGateway

logger = structlog.get_logger(__name__)


class FeeUpdateOutcome(BaseModel):
    """A fee update sent to the vault."""

    previous_bps: int
    new_bps: int
    finalized: bool
    signature: str
    elapsed_seconds: float


def compute_expected_fee(launch_timestamp: datetime, now: datetime) -> int:
    """
    Fee tier that should be active at ``now``.

    Args:
        launch_timestamp: When the pool launched
        now: Current time

    Returns:
        3000 before 5 minutes, 1500 before 10 minutes, 500 afterwards
    """
    # Clock skew can put launch in the future; treat that as just launched
    elapsed = max(seconds_between(launch_timestamp, now), 0.0)

    if elapsed < FEE_INTERMEDIATE_AFTER_SECONDS:
        return FEE_LAUNCH_BPS
    if elapsed < FEE_TERMINAL_AFTER_SECONDS:
        return FEE_INTERMEDIATE_BPS
    return FEE_TERMINAL_BPS


class FeeScheduleController:
    """
    Moves the vault's transfer fee along the decay schedule.

    State is read from the vault on every reconcile; nothing is cached
    between ticks, so a failed update is simply recomputed next time.
    """

    def __init__(
        self,
        vault: VaultGateway,
        clock: Callable[[], datetime] = utc_now,
        dry_run: bool = False,
    ):
        """
        Initialize the controller.

        Args:
            vault: Vault gateway
            clock: Source of the current time
            dry_run: Log intended updates without sending them
        """
        self.vault = vault
        self.clock = clock
        self.dry_run = dry_run

    async def reconcile(self, state: LaunchState | None = None) -> FeeUpdateOutcome | None:
        """
        Bring the active fee in line with the schedule.

        Args:
            state: Launch state already read this tick; fetched when omitted

        Returns:
            The update that was sent, or None when nothing had to change

        Raises:
            TransientError: If the vault cannot be read or updated
        """
        if state is None:
            state = (await self.vault.fetch_state()).launch

        if state.fee_finalized:
            logger.debug("Fee schedule finalized, nothing to do", fee_bps=state.current_fee_bps)
            return None

        if state.launch_timestamp is None:
            logger.debug("Token not launched yet, fee schedule idle")
            return None

        now = self.clock()
        expected = compute_expected_fee(state.launch_timestamp, now)
        if expected == state.current_fee_bps:
            return None

        finalize = expected == FEE_TERMINAL_BPS
        elapsed = max(seconds_between(state.launch_timestamp, now), 0.0)

        logger.info(
            "Fee tier change due",
            current_bps=state.current_fee_bps,
            expected_bps=expected,
            finalize=finalize,
            elapsed_seconds=elapsed,
        )

        signature = await self.apply_fee(state, expected, finalize)
        return FeeUpdateOutcome(
            previous_bps=state.current_fee_bps,
            new_bps=expected,
            finalized=finalize,
            signature=signature,
            elapsed_seconds=elapsed,
        )

    async def apply_fee(self, state: LaunchState, bps: int, finalize: bool) -> str:
        """
        Send a fee update after local policy checks.

        Args:
            state: Launch state the update is based on
            bps: New fee in basis points
            finalize: Lock the schedule after this update

        Returns:
            Transaction signature ("dry-run" when dry run is enabled)

        Raises:
            PolicyViolationError: If the schedule is finalized or bps is not a tier
        """
        if state.fee_finalized:
            raise PolicyViolationError(
                "Fee schedule is finalized", operation="update_fee", amount=bps
            )
        if bps not in FEE_TIERS:
            raise PolicyViolationError(
                f"Fee {bps} bps is not a schedule tier", operation="update_fee", amount=bps
            )
        if finalize and bps != FEE_TERMINAL_BPS:
            raise PolicyViolationError(
                "Only the terminal tier can finalize the schedule",
                operation="update_fee",
                amount=bps,
            )

        if self.dry_run:
            logger.info("Dry run: skipping fee update", new_bps=bps, finalize=finalize)
            return "dry-run"

        signature = await self.vault.update_fee(bps, finalize)
        logger.info("Fee updated", new_bps=bps, finalize=finalize, signature=signature)
        return signature
