"""
Reward asset selection module for the Vault Keeper.

Once a week, inside a short window (Monday 03:00 UTC by default), the keeper
reads the announced reward symbol from the social signal, resolves it to an
asset address and, when it differs from the current reward asset, updates the
vault. The selector is a small state machine:

    IDLE --due--> CHECKING --same asset--> IDLE
                     |
                     +--new asset--> UPDATING --success--> IDLE
                                        |
                                        +--failure, still in window--> UPDATING (retried)
                                        +--window closed--> IDLE
"""

from collections.abc import Callable
from datetime import datetime, timedelta
from enum import Enum

import structlog

from vault_keeper.core.constants import (
    NATIVE_MINT,
    REWARD_CHECK_HOUR,
    REWARD_CHECK_MINUTE,
    REWARD_CHECK_PERIOD_SECONDS,
    REWARD_CHECK_WEEKDAY,
    REWARD_WINDOW_TOLERANCE_SECONDS,
)
from vault_keeper.core.errors import KeeperError
from vault_keeper.core.models import RewardSelection, utc_now
from vault_keeper.core.utils import ensure_utc, seconds_between, weekly_occurrence
from vault_keeper.gateways import DiscoveryProvider, SocialSignalProvider, VaultGateway

logger = structlog.get_logger(__name__)

# Symbols that always mean the native asset
NATIVE_SYMBOLS = frozenset({"SOL", "WSOL"})


class SelectorState(str, Enum):
    """Reward selector states."""

    IDLE = "idle"
    CHECKING = "checking"
    UPDATING = "updating"


class RewardAssetSelector:
    """Weekly reward asset selection state machine."""

    def __init__(
        self,
        vault: VaultGateway,
        signal: SocialSignalProvider,
        discovery: DiscoveryProvider,
        check_weekday: int = REWARD_CHECK_WEEKDAY,
        check_hour: int = REWARD_CHECK_HOUR,
        check_minute: int = REWARD_CHECK_MINUTE,
        tolerance_seconds: int = REWARD_WINDOW_TOLERANCE_SECONDS,
        clock: Callable[[], datetime] = utc_now,
        dry_run: bool = False,
    ):
        """
        Initialize the selector.

        Args:
            vault: Vault gateway
            signal: Social signal provider announcing the symbol
            discovery: Provider resolving symbols to addresses
            check_weekday: Window weekday, Monday is 0
            check_hour: Window hour (UTC)
            check_minute: Window minute
            tolerance_seconds: Half-width of the window
            clock: Source of the current time
            dry_run: Log intended updates without sending them
        """
        self.vault = vault
        self.signal = signal
        self.discovery = discovery
        self.check_weekday = check_weekday
        self.check_hour = check_hour
        self.check_minute = check_minute
        self.tolerance = timedelta(seconds=tolerance_seconds)
        self.clock = clock
        self.dry_run = dry_run

        self.state = SelectorState.IDLE
        self.selection: RewardSelection | None = None
        self.pending_address: str | None = None
        self.pending_symbol: str | None = None

    # ======== Window ========

    def _nearest_occurrence(self, now: datetime) -> datetime:
        occurrence = weekly_occurrence(now, self.check_weekday, self.check_hour, self.check_minute)
        candidates = [occurrence - timedelta(days=7), occurrence, occurrence + timedelta(days=7)]
        return min(candidates, key=lambda candidate: abs(seconds_between(candidate, now)))

    def in_window(self, now: datetime) -> bool:
        """Whether ``now`` is within the tolerance of the weekly check time."""
        distance = abs(seconds_between(self._nearest_occurrence(now), now))
        return distance <= self.tolerance.total_seconds()

    def due(self, now: datetime) -> bool:
        """Whether a weekly check should run at ``now``."""
        if not self.in_window(now):
            return False
        last_check = self.last_check
        if last_check is None:
            return True
        min_gap = REWARD_CHECK_PERIOD_SECONDS - self.tolerance.total_seconds()
        return seconds_between(last_check, now) >= min_gap

    def seconds_until_next_window(self, now: datetime) -> float:
        """
        Seconds until the selector next has work to do.

        Returns 0 while inside a window with a check due or an update pending.
        """
        if self.in_window(now) and (self.state == SelectorState.UPDATING or self.due(now)):
            return 0.0

        now = ensure_utc(now)
        window_start = self._nearest_occurrence(now) - self.tolerance
        if window_start <= now:
            window_start += timedelta(days=7)
        return seconds_between(now, window_start)

    @property
    def last_check(self) -> datetime | None:
        if self.selection is None:
            return None
        return self.selection.last_check_timestamp

    # ======== State machine ========

    def restore(self, selection: RewardSelection) -> None:
        """Re-derive selector state from the vault's stored selection."""
        self.selection = selection
        self.state = SelectorState.IDLE
        self.pending_address = None
        self.pending_symbol = None
        logger.info(
            "Reward selector restored",
            reward_asset=selection.current_reward_asset,
            last_check=selection.last_check_timestamp,
        )

    async def tick(self, now: datetime | None = None) -> RewardSelection:
        """
        Advance the state machine.

        Args:
            now: Current time (default: the injected clock)

        Returns:
            The reward selection after this tick
        """
        now = now or self.clock()

        if self.selection is None:
            self.restore((await self.vault.fetch_state()).reward)

        if self.state == SelectorState.UPDATING:
            if not self.in_window(now):
                logger.warning(
                    "Reward window closed with update pending, giving up until next week",
                    pending_asset=self.pending_address,
                )
                self._reset()
                return self.selection
            await self._attempt_update(now)
            return self.selection

        if not self.due(now):
            return self.selection

        self.state = SelectorState.CHECKING
        address, symbol = await self._check_signal()
        if address is None:
            self._reset()
            return self.selection

        if address == self.selection.current_reward_asset:
            logger.info("Reward asset unchanged", reward_asset=address, symbol=symbol)
            self.selection = self.selection.model_copy(
                update={"last_check_timestamp": now, "last_symbol": symbol}
            )
            self._reset()
            return self.selection

        self.state = SelectorState.UPDATING
        self.pending_address = address
        self.pending_symbol = symbol
        await self._attempt_update(now)
        return self.selection

    async def _check_signal(self) -> tuple[str | None, str | None]:
        try:
            symbol = await self.signal.get_current_symbol()
        except KeeperError as e:
            logger.error("Failed to read reward signal", error=str(e))
            return None, None

        if not symbol:
            logger.warning("No reward symbol announced")
            return None, None

        try:
            address = await self.resolve(symbol)
        except KeeperError as e:
            logger.error("Failed to resolve reward symbol", symbol=symbol, error=str(e))
            return None, symbol

        return address, symbol

    async def resolve(self, symbol: str) -> str:
        """
        Resolve a symbol to an asset address.

        Raises:
            ResolutionError: If the discovery provider finds no exact match
        """
        symbol = symbol.upper().lstrip("$")
        if symbol in NATIVE_SYMBOLS:
            return NATIVE_MINT
        return await self.discovery.resolve_symbol(symbol)

    async def _attempt_update(self, now: datetime) -> None:
        try:
            if self.dry_run:
                logger.info("Dry run: skipping reward asset update", reward_asset=self.pending_address)
            else:
                signature = await self.vault.update_reward_asset(self.pending_address)
                logger.info(
                    "Reward asset updated",
                    reward_asset=self.pending_address,
                    symbol=self.pending_symbol,
                    signature=signature,
                )
        except KeeperError as e:
            logger.error(
                "Reward asset update failed, will retry while the window is open",
                reward_asset=self.pending_address,
                error=str(e),
            )
            return

        self.selection = RewardSelection(
            current_reward_asset=self.pending_address,
            last_check_timestamp=now,
            last_symbol=self.pending_symbol,
        )
        self._reset()

    def _reset(self) -> None:
        self.state = SelectorState.IDLE
        self.pending_address = None
        self.pending_symbol = None
