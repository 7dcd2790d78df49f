"""
Harvest and swap module for the Vault Keeper.

Transfer fees accumulate as withheld amounts on holders' token accounts. This
module finds those accounts, harvests them in batches of at most 20 (the
vault's per-instruction limit) and swaps the proceeds into the current reward
asset through the swap router.
"""

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception_type,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.wait import wait_base

from vault_keeper.core.constants import (
    DEFAULT_SLIPPAGE_BPS,
    HARVEST_BATCH_LIMIT,
    MAX_REMOTE_ATTEMPTS,
    MAX_SWAP_ATTEMPTS,
)
from vault_keeper.core.errors import FatalCycleError, KeeperError, TransientError
from vault_keeper.core.models import FeeAccount, HarvestResult, SwapResult
from vault_keeper.core.utils import chunked
from vault_keeper.gateways import SwapRouter, UnconfirmedTransactionError, VaultGateway

logger = structlog.get_logger(__name__)


class HarvestSwapOrchestrator:
    """Harvests withheld fees and converts them into the reward asset."""

    def __init__(
        self,
        vault: VaultGateway,
        router: SwapRouter,
        batch_size: int = HARVEST_BATCH_LIMIT,
        batch_attempts: int = MAX_REMOTE_ATTEMPTS,
        slippage_bps: int = DEFAULT_SLIPPAGE_BPS,
        max_swap_attempts: int = MAX_SWAP_ATTEMPTS,
        harvest_threshold: int = 0,
        retry_wait: wait_base | None = None,
        dry_run: bool = False,
    ):
        """
        Initialize the orchestrator.

        Args:
            vault: Vault gateway
            router: Swap router
            batch_size: Accounts per harvest call, at most 20
            batch_attempts: Attempts per batch on transient errors
            slippage_bps: Default swap slippage tolerance
            max_swap_attempts: Quotes tried before the swap is abandoned
            harvest_threshold: Minimum withheld total worth harvesting
            retry_wait: tenacity wait strategy between attempts
            dry_run: Log intended calls without sending them
        """
        if not 0 < batch_size <= HARVEST_BATCH_LIMIT:
            raise ValueError(f"Batch size must be between 1 and {HARVEST_BATCH_LIMIT}")
        self.vault = vault
        self.router = router
        self.batch_size = batch_size
        self.batch_attempts = batch_attempts
        self.slippage_bps = slippage_bps
        self.max_swap_attempts = max_swap_attempts
        self.harvest_threshold = harvest_threshold
        self.retry_wait = retry_wait or wait_exponential(multiplier=1, min=1, max=10)
        self.dry_run = dry_run

    async def find_fee_accounts(self) -> list[FeeAccount]:
        """Token accounts currently holding withheld fees."""
        accounts = await self.vault.find_fee_accounts()
        logger.debug(
            "Fee accounts found",
            count=len(accounts),
            withheld=sum(account.withheld_amount for account in accounts),
        )
        return accounts

    def should_harvest(self, accounts: list[FeeAccount]) -> bool:
        """Whether the withheld total is worth a harvest."""
        withheld = sum(account.withheld_amount for account in accounts)
        return withheld > 0 and withheld >= self.harvest_threshold

    async def harvest(self, accounts: list[FeeAccount] | list[str]) -> HarvestResult:
        """
        Harvest withheld fees in batches.

        Every batch is its own retried call. A batch that still fails is
        reported and its accounts are left for the next cycle; amounts from
        the other batches still count.

        Args:
            accounts: Fee accounts or plain account addresses

        Returns:
            Harvested total and per-batch outcome
        """
        addresses = [a.address if isinstance(a, FeeAccount) else a for a in accounts]
        batches = list(chunked(addresses, self.batch_size))
        result = HarvestResult(batches_total=len(batches))

        for index, batch in enumerate(batches):
            if self.dry_run:
                logger.info("Dry run: skipping harvest batch", batch=index, accounts=len(batch))
                result.batches_succeeded += 1
                continue

            try:
                amount = await self._harvest_batch(batch)
            except KeeperError as e:
                logger.error(
                    "Harvest batch failed, accounts left for next cycle",
                    batch=index,
                    accounts=len(batch),
                    error=str(e),
                )
                result.failed_accounts.extend(batch)
                continue

            result.batches_succeeded += 1
            result.harvested_amount += amount
            logger.info("Harvest batch completed", batch=index, accounts=len(batch), amount=amount)

        logger.info(
            "Harvest finished",
            harvested=result.harvested_amount,
            batches=result.batches_total,
            failed_batches=result.batches_total - result.batches_succeeded,
        )
        return result

    async def _harvest_batch(self, batch: list[str]) -> int:
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(TransientError),
            stop=stop_after_attempt(self.batch_attempts),
            wait=self.retry_wait,
            reraise=True,
        ):
            with attempt:
                amount = await self.vault.harvest(batch)
        return amount

    async def swap(
        self,
        amount: int,
        source: str,
        destination: str,
        slippage_bps: int | None = None,
    ) -> SwapResult | None:
        """
        Swap an amount of ``source`` into ``destination``.

        Every attempt takes a fresh quote, so a stale route or a failed
        execution is retried against current prices after the configured
        backoff. A swap whose outcome is unknown is never retried, since the
        tokens may already have been sold.

        Args:
            amount: Amount of the source asset, in base units
            source: Source mint (the taxed token)
            destination: Reward asset mint
            slippage_bps: Slippage tolerance (default: configured value)

        Returns:
            The swap result, or None when source and destination are the same

        Raises:
            FatalCycleError: If the swap could not be completed
        """
        if destination == source:
            logger.debug("Reward asset is the token itself, no swap needed")
            return None

        slippage = self.slippage_bps if slippage_bps is None else slippage_bps

        def log_requote(retry_state: RetryCallState) -> None:
            logger.warning(
                "Swap attempt failed, re-quoting",
                attempt=retry_state.attempt_number,
                max_attempts=self.max_swap_attempts,
                amount=amount,
                destination=destination,
                error=str(retry_state.outcome.exception()),
            )

        attempts = 0
        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type(KeeperError)
                & retry_if_not_exception_type(UnconfirmedTransactionError),
                stop=stop_after_attempt(self.max_swap_attempts),
                wait=self.retry_wait,
                before_sleep=log_requote,
            ):
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    route = await self.router.quote(amount, source, destination, slippage)
                    received = 0 if self.dry_run else await self.router.execute(route)
        except RetryError as e:
            error = e.last_attempt.exception()
            raise FatalCycleError(
                f"Swap failed after {attempts} attempts: {error}",
                operation="swap",
                address=destination,
                amount=amount,
                attempts=attempts,
            ) from error
        except UnconfirmedTransactionError as e:
            raise FatalCycleError(
                f"Swap outcome unknown: {e}",
                operation="swap",
                address=destination,
                amount=amount,
                attempts=attempts,
            ) from e

        if self.dry_run:
            logger.info(
                "Dry run: skipping swap execution",
                amount=amount,
                expected_out=route.out_amount,
            )
        else:
            logger.info(
                "Swap completed",
                amount_in=amount,
                amount_out=received,
                destination=destination,
                attempts=attempts,
            )
        return SwapResult(route=route, received_amount=received, attempts=attempts)
