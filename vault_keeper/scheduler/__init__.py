"""
Scheduler module for the Vault Keeper.

A ``KeeperCycle`` runs every component once, in order:

    fees -> exclusions -> rewards -> pending -> harvest -> swap -> distribution

Each step records its outcome in the cycle report. A failing step does not
stop the steps after it, except that swap and distribution need the vault
state read by the harvest step. The stop event is checked between steps,
never inside one.

``KeeperScheduler`` runs cycles on a single asyncio loop and never lets two
of them overlap.
"""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any

import structlog
from pydantic import BaseModel

from vault_keeper.core.constants import DEFAULT_TICK_INTERVAL_SECONDS
from vault_keeper.core.errors import FatalCycleError, KeeperError
from vault_keeper.core.logger import log_cycle_step
from vault_keeper.core.models import (
    CycleReport,
    StepStatus,
    UndistributedReason,
    UndistributedRecord,
    VaultState,
    utc_now,
)
from vault_keeper.distribution import DistributionEngine
from vault_keeper.exclusions import ExclusionSynchronizer
from vault_keeper.fees import FeeScheduleController
from vault_keeper.gateways import VaultGateway
from vault_keeper.harvest import HarvestSwapOrchestrator
from vault_keeper.monitoring import KeeperMetrics
from vault_keeper.rewards import RewardAssetSelector

logger = structlog.get_logger(__name__)

# Delay before re-checking when the reward selector has work pending
DEFAULT_RETRY_DELAY_SECONDS = 5.0

# How long stop() waits for a running cycle to reach a step boundary
DEFAULT_SHUTDOWN_TIMEOUT_SECONDS = 120.0


class CycleContext(BaseModel):
    """Values read by the harvest step and used by swap and distribution."""

    state: VaultState
    reward_exclusions: set[str]
    keeper_balance: int
    harvested: int = 0
    received: int = 0
    swap_failed: bool = False

    @property
    def reward_asset(self) -> str:
        return self.state.reward.current_reward_asset


class KeeperCycle:
    """One pass over every keeper component."""

    def __init__(
        self,
        vault: VaultGateway,
        distribution: DistributionEngine,
        fees: FeeScheduleController | None = None,
        exclusions: ExclusionSynchronizer | None = None,
        selector: RewardAssetSelector | None = None,
        harvester: HarvestSwapOrchestrator | None = None,
        metrics: KeeperMetrics | None = None,
        stop_event: asyncio.Event | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        """
        Initialize the cycle.

        Components passed as None are disabled and reported as skipped.

        Args:
            vault: Vault gateway
            distribution: Distribution engine (owns the undistributed ledger)
            fees: Fee schedule controller
            exclusions: Exclusion synchronizer
            selector: Reward asset selector
            harvester: Harvest/swap orchestrator
            metrics: Prometheus metrics to update after each cycle
            stop_event: Set to stop at the next step boundary
            clock: Source of the current time
        """
        self.vault = vault
        self.distribution = distribution
        self.fees = fees
        self.exclusions = exclusions
        self.selector = selector
        self.harvester = harvester
        self.metrics = metrics
        self.stop_event = stop_event or asyncio.Event()
        self.clock = clock

    async def run(self) -> CycleReport:
        """
        Run every step once.

        Returns:
            Report with one outcome per step
        """
        report = CycleReport(started_at=self.clock())
        context: CycleContext | None = None
        try:
            context = await self._run_steps(report)
        finally:
            report.finished_at = self.clock()
            self._observe(report, context)

        log = logger.info if report.complete else logger.warning
        log(
            "Keeper cycle finished",
            cycle_id=str(report.cycle_id),
            complete=report.complete,
            cancelled=report.cancelled,
            harvested=report.harvested,
            distributed=report.distributed,
            undistributed=report.undistributed,
            steps={name: outcome.status.value for name, outcome in report.steps.items()},
        )
        return report

    async def _run_steps(self, report: CycleReport) -> CycleContext | None:
        for name, step in (
            ("fees", self._fees_step),
            ("exclusions", self._exclusions_step),
            ("rewards", self._rewards_step),
            ("pending", self._pending_step),
        ):
            if self._stopping(report):
                return None
            await self._guard(report, name, step, report)

        if self._stopping(report):
            return None
        # Harvested value is untracked until distributed or recorded, so a stop
        # request is not honoured again until the distribution step has run
        context = await self._guard(report, "harvest", self._harvest_step, report)

        if context is None:
            report.record("swap", StepStatus.SKIPPED, "vault state unavailable")
        else:
            await self._guard(report, "swap", self._swap_step, report, context)

        if context is None:
            report.record("distribution", StepStatus.SKIPPED, "vault state unavailable")
        else:
            await self._guard(report, "distribution", self._distribution_step, report, context)
        return context

    def _stopping(self, report: CycleReport) -> bool:
        if self.stop_event.is_set():
            report.cancelled = True
            logger.info("Stop requested, ending cycle early", completed_steps=list(report.steps))
            return True
        return False

    async def _guard(
        self,
        report: CycleReport,
        name: str,
        step: Callable[..., Awaitable[Any]],
        *args: Any,
    ) -> Any:
        try:
            return await step(*args)
        except KeeperError as e:
            report.record(name, StepStatus.FAILED, str(e))
            return None

    # ======== Steps ========

    @log_cycle_step("fees")
    async def _fees_step(self, report: CycleReport) -> None:
        if self.fees is None:
            report.record("fees", StepStatus.SKIPPED, "disabled")
            return
        outcome = await self.fees.reconcile()
        if outcome is None:
            report.record("fees", StepStatus.OK, "no change")
        else:
            report.record("fees", StepStatus.OK, f"fee set to {outcome.new_bps} bps")

    @log_cycle_step("exclusions")
    async def _exclusions_step(self, report: CycleReport) -> None:
        if self.exclusions is None:
            report.record("exclusions", StepStatus.SKIPPED, "disabled")
            return
        sync_report = await self.exclusions.sync()
        if sync_report.complete:
            report.record("exclusions", StepStatus.OK, f"{len(sync_report.added)} added")
        else:
            report.record(
                "exclusions", StepStatus.FAILED, f"{len(sync_report.failed)} additions failed"
            )

    @log_cycle_step("rewards")
    async def _rewards_step(self, report: CycleReport) -> None:
        if self.selector is None:
            report.record("rewards", StepStatus.SKIPPED, "disabled")
            return
        selection = await self.selector.tick(self.clock())
        report.record(
            "rewards",
            StepStatus.OK,
            f"{self.selector.state.value}, reward asset {selection.current_reward_asset}",
        )

    @log_cycle_step("pending")
    async def _pending_step(self, report: CycleReport) -> None:
        result = await self.distribution.resume_pending()
        if result is None:
            report.record("pending", StepStatus.SKIPPED, "nothing pending")
            return
        report.distributed += result.distributed_amount
        if result.complete:
            report.record("pending", StepStatus.OK, f"{len(result.completed)} transfers sent")
        else:
            report.record(
                "pending", StepStatus.FAILED, f"{len(result.failed)} transfers still pending"
            )

    @log_cycle_step("harvest")
    async def _harvest_step(self, report: CycleReport) -> CycleContext:
        state = await self.vault.fetch_state()
        exclusions = await self.vault.fetch_exclusions()
        # Read before the swap so swap proceeds are not counted as operating balance
        keeper_balance = await self.distribution.keeper_operating_balance()
        context = CycleContext(
            state=state,
            reward_exclusions=set(exclusions.reward_exclusions),
            keeper_balance=keeper_balance,
        )

        if self.harvester is None:
            report.record("harvest", StepStatus.SKIPPED, "disabled")
            return context

        accounts = await self.harvester.find_fee_accounts()
        if not self.harvester.should_harvest(accounts):
            report.record("harvest", StepStatus.SKIPPED, "withheld fees below threshold")
            return context

        result = await self.harvester.harvest(accounts)
        context.harvested = result.harvested_amount
        report.harvested = result.harvested_amount
        if result.complete:
            report.record("harvest", StepStatus.OK, f"{result.batches_total} batches")
        else:
            report.record(
                "harvest",
                StepStatus.FAILED,
                f"{len(result.failed_accounts)} accounts left for next cycle",
            )
        return context

    @log_cycle_step("swap")
    async def _swap_step(self, report: CycleReport, context: CycleContext) -> None:
        token_mint = context.state.token_mint
        if context.reward_asset == token_mint:
            context.received = context.harvested
            report.record("swap", StepStatus.SKIPPED, "reward asset is the token itself")
            return

        if self.harvester is None:
            report.record("swap", StepStatus.SKIPPED, "disabled")
            return

        ledger = self.distribution.ledger
        amount = context.harvested + ledger.take(token_mint)
        if amount == 0:
            report.record("swap", StepStatus.SKIPPED, "nothing to swap")
            return

        try:
            result = await self.harvester.swap(amount, token_mint, context.reward_asset)
        except FatalCycleError:
            context.swap_failed = True
            report.undistributed += amount
            ledger.record(
                UndistributedRecord(
                    asset=token_mint,
                    amount=amount,
                    reason=UndistributedReason.SWAP_FAILED,
                )
            )
            raise

        context.received = result.received_amount if result else amount
        report.record("swap", StepStatus.OK, f"received {context.received}")

    @log_cycle_step("distribution")
    async def _distribution_step(self, report: CycleReport, context: CycleContext) -> None:
        # After a failed swap only value carried over from earlier cycles is sent
        plan = await self.distribution.plan(
            context.received,
            context.reward_asset,
            context.state,
            context.reward_exclusions,
            context.keeper_balance,
        )
        if plan is None:
            report.record("distribution", StepStatus.SKIPPED, "nothing to distribute")
            return

        result = await self.distribution.execute(plan)
        report.distributed += result.distributed_amount
        report.undistributed += plan.undistributed + result.pending_amount + result.rejected_amount
        if result.complete:
            report.record(
                "distribution", StepStatus.OK, f"{len(result.completed)} transfers sent"
            )
        else:
            report.record(
                "distribution",
                StepStatus.FAILED,
                f"{len(result.failed)} transfers failed",
            )

    def _observe(self, report: CycleReport, context: CycleContext | None) -> None:
        if self.metrics is None:
            return
        reward_asset = context.reward_asset if context else None
        self.metrics.observe_cycle(report, reward_asset)
        if context is not None:
            self.metrics.keeper_balance.set(context.keeper_balance)
            self.metrics.fee_bps.set(context.state.launch.current_fee_bps)
        ledger = self.distribution.ledger
        self.metrics.set_undistributed({asset: ledger.total(asset) for asset in ledger.assets()})


class KeeperScheduler:
    """Runs keeper cycles on a timer without overlap."""

    def __init__(
        self,
        cycle: KeeperCycle,
        tick_interval: float = DEFAULT_TICK_INTERVAL_SECONDS,
        retry_delay: float = DEFAULT_RETRY_DELAY_SECONDS,
        shutdown_timeout: float = DEFAULT_SHUTDOWN_TIMEOUT_SECONDS,
    ):
        """
        Initialize the scheduler.

        Args:
            cycle: Cycle to run on every tick
            tick_interval: Maximum seconds between ticks
            retry_delay: Delay used while the reward selector has work pending
            shutdown_timeout: Seconds stop() waits before warning that a cycle is
                still running; the cycle is never cancelled
        """
        self.cycle = cycle
        self.tick_interval = tick_interval
        self.retry_delay = retry_delay
        self.shutdown_timeout = shutdown_timeout
        self.stop_event = cycle.stop_event
        self.running = False
        self.task: asyncio.Task | None = None
        self.last_report: CycleReport | None = None
        self._lock = asyncio.Lock()

    async def start(self) -> None:
        """Restore component state from the vault and start the loop."""
        if self.running:
            logger.warning("Scheduler is already running")
            return

        await self._restore()
        self.stop_event.clear()
        self.running = True
        self.task = asyncio.create_task(self._run_loop())
        logger.info("Keeper scheduler started", tick_interval=self.tick_interval)

    async def stop(self) -> None:
        """
        Stop at the next step boundary and wait for the loop to end.

        A running cycle is never cancelled: harvested value in flight is only
        safe once the distribution step has sent or recorded it.
        """
        if not self.running:
            return

        self.stop_event.set()
        self.running = False
        if self.task:
            done, _ = await asyncio.wait({self.task}, timeout=self.shutdown_timeout)
            if not done:
                logger.warning(
                    "Cycle still running after shutdown timeout, waiting for it to finish",
                    timeout=self.shutdown_timeout,
                )
                await self.task
            self.task = None

        logger.info("Keeper scheduler stopped")

    async def wait(self) -> None:
        """Block until the loop has ended."""
        if self.task:
            await asyncio.shield(self.task)

    async def tick(self) -> CycleReport | None:
        """
        Run one cycle unless another is still running.

        Returns:
            The cycle report, or None when the tick was skipped
        """
        if self._lock.locked():
            logger.warning("Previous cycle still running, skipping tick")
            return None

        async with self._lock:
            self.last_report = await self.cycle.run()
            return self.last_report

    async def run_once(self) -> CycleReport | None:
        """Restore component state and run a single cycle outside the loop."""
        await self._restore()
        return await self.tick()

    def next_delay(self, now: datetime | None = None) -> float:
        """Seconds to sleep before the next tick."""
        selector = self.cycle.selector
        if selector is None:
            return float(self.tick_interval)

        until_window = selector.seconds_until_next_window(now or self.cycle.clock())
        if until_window <= 0:
            return self.retry_delay
        return min(float(self.tick_interval), until_window)

    async def _restore(self) -> None:
        selector = self.cycle.selector
        if selector is None:
            return
        try:
            state = await self.cycle.vault.fetch_state()
        except KeeperError as e:
            # The selector restores itself on its first tick
            logger.warning("Could not restore reward selector at startup", error=str(e))
            return
        selector.restore(state.reward)

    async def _run_loop(self) -> None:
        while not self.stop_event.is_set():
            try:
                await self.tick()
            except Exception:
                logger.error("Unhandled error in keeper cycle", exc_info=True)

            delay = self.next_delay()
            logger.debug("Waiting for next tick", seconds=round(delay, 3))
            try:
                await asyncio.wait_for(self.stop_event.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass


__all__ = ["CycleContext", "KeeperCycle", "KeeperScheduler"]
