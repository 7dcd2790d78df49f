"""
Distribution module for the Vault Keeper.

This module decides who is eligible for rewards, splits the harvested value
80/20 between holders and the project wallet, tops up the keeper's operating
balance when the reward asset is native and the keeper is running low, and
executes the resulting transfers.

All amounts are integers in the reward asset's base units. The holder pool is
floor(80%), the project share takes the rounding remainder, and holder shares
use the largest-remainder method so nothing is lost to rounding.
"""

from collections.abc import Iterable
from decimal import Decimal
from uuid import uuid4

import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.wait import wait_base

from vault_keeper.core.constants import (
    HOLDERS_SHARE_PERCENT,
    KEEPER_LOW_BALANCE_LAMPORTS,
    KEEPER_TOP_UP_TARGET_LAMPORTS,
    MAX_REMOTE_ATTEMPTS,
    MIN_HOLDER_VALUE_USD,
    NATIVE_MINT,
    TOKEN_2022_PROGRAM_ID,
    TOKEN_PROGRAM_ID,
)
from vault_keeper.core.errors import KeeperError, PolicyViolationError, TransientError
from vault_keeper.core.logger import get_distribution_logger
from vault_keeper.core.models import (
    DistributionPlan,
    DistributionResult,
    HolderEntry,
    HolderSnapshot,
    TransferInstruction,
    TransferKind,
    TransferResult,
    UndistributedReason,
    UndistributedRecord,
    VaultState,
)
from vault_keeper.core.utils import split_proportional
from vault_keeper.distribution.ledger import UndistributedLedger
from vault_keeper.gateways import DiscoveryProvider, UnconfirmedTransactionError, VaultGateway

logger = structlog.get_logger(__name__)
distribution_logger = get_distribution_logger()


def filter_eligible(
    snapshot: HolderSnapshot,
    reward_exclusions: Iterable[str],
    system_accounts: Iterable[str],
    threshold: Decimal = MIN_HOLDER_VALUE_USD,
) -> list[HolderEntry]:
    """
    Holders eligible for a reward share.

    A holder is eligible when its holding is worth at least ``threshold``, it
    holds a positive balance and it is neither reward-excluded nor one of the
    keeper's own system accounts.

    Args:
        snapshot: Current holder snapshot
        reward_exclusions: Addresses excluded from rewards
        system_accounts: Keeper, vault, project wallet and token programs
        threshold: Minimum holding value in USD

    Returns:
        Eligible entries, in snapshot order
    """
    blocked = set(reward_exclusions) | set(system_accounts)
    return [
        entry
        for entry in snapshot.holders
        if entry.token_balance > 0
        and entry.value_in_quote >= threshold
        and entry.holder_address not in blocked
    ]


def compute_keeper_top_up(
    reward_asset: str,
    keeper_balance: int,
    project_share: int,
    low_balance: int = KEEPER_LOW_BALANCE_LAMPORTS,
    target_balance: int = KEEPER_TOP_UP_TARGET_LAMPORTS,
) -> int:
    """
    Lamports withheld from the project share to refill the keeper.

    Only a native reward asset can top up the keeper, and only when the
    balance is strictly below ``low_balance``. The keeper is refilled towards
    ``target_balance`` but never by more than the project share.
    """
    if reward_asset != NATIVE_MINT or keeper_balance >= low_balance:
        return 0
    return max(min(project_share, target_balance - keeper_balance), 0)


def build_plan(
    harvested: int,
    snapshot: HolderSnapshot,
    keeper_balance: int,
    reward_asset: str,
    reward_exclusions: Iterable[str],
    *,
    project_wallet: str,
    keeper_address: str,
    system_accounts: Iterable[str] = (),
    threshold: Decimal = MIN_HOLDER_VALUE_USD,
    low_balance: int = KEEPER_LOW_BALANCE_LAMPORTS,
    target_balance: int = KEEPER_TOP_UP_TARGET_LAMPORTS,
) -> DistributionPlan:
    """
    Split a harvested amount into holder, project and keeper shares.

    Args:
        harvested: Distributable amount in reward asset base units
        snapshot: Current holder snapshot
        keeper_balance: Keeper operating balance in lamports
        reward_asset: Reward asset mint
        reward_exclusions: Addresses excluded from rewards
        project_wallet: Recipient of the project share
        keeper_address: Recipient of the keeper top-up
        system_accounts: Additional addresses that never receive rewards
        threshold: Minimum holding value in USD
        low_balance: Keeper balance below which a top-up is taken
        target_balance: Keeper balance the top-up aims for

    Returns:
        Frozen distribution plan
    """
    holder_pool_share = harvested * HOLDERS_SHARE_PERCENT // 100
    project_share = harvested - holder_pool_share

    system = {*system_accounts, project_wallet, keeper_address}
    eligible = filter_eligible(snapshot, reward_exclusions, system, threshold)

    weights: dict[str, int] = {}
    for entry in eligible:
        weights[entry.holder_address] = weights.get(entry.holder_address, 0) + entry.token_balance

    if weights:
        shares = split_proportional(holder_pool_share, weights)
        per_holder_share = {holder: share for holder, share in shares.items() if share > 0}
        undistributed = 0
    else:
        per_holder_share = {}
        undistributed = holder_pool_share

    keeper_top_up = compute_keeper_top_up(
        reward_asset, keeper_balance, project_share, low_balance, target_balance
    )

    return DistributionPlan(
        reward_asset=reward_asset,
        total_harvested=harvested,
        holder_pool_share=holder_pool_share,
        project_share=project_share - keeper_top_up,
        keeper_top_up=keeper_top_up,
        per_holder_share=per_holder_share,
        undistributed=undistributed,
        project_wallet=project_wallet,
        keeper_address=keeper_address,
    )


class DistributionEngine:
    """Builds and executes distribution plans."""

    def __init__(
        self,
        vault: VaultGateway,
        discovery: DiscoveryProvider,
        ledger: UndistributedLedger,
        min_holder_value_usd: Decimal = MIN_HOLDER_VALUE_USD,
        keeper_low_balance: int = KEEPER_LOW_BALANCE_LAMPORTS,
        keeper_top_up_target: int = KEEPER_TOP_UP_TARGET_LAMPORTS,
        transfer_attempts: int = MAX_REMOTE_ATTEMPTS,
        retry_wait: wait_base | None = None,
        dry_run: bool = False,
    ):
        """
        Initialize the engine.

        Args:
            vault: Vault gateway used for balances and transfers
            discovery: Holder and price provider
            ledger: Undistributed value ledger
            min_holder_value_usd: Eligibility threshold
            keeper_low_balance: Keeper balance below which a top-up is taken
            keeper_top_up_target: Keeper balance the top-up aims for
            transfer_attempts: Attempts per transfer on transient errors
            retry_wait: tenacity wait strategy between attempts
            dry_run: Plan and log without sending transfers
        """
        self.vault = vault
        self.discovery = discovery
        self.ledger = ledger
        self.min_holder_value_usd = min_holder_value_usd
        self.keeper_low_balance = keeper_low_balance
        self.keeper_top_up_target = keeper_top_up_target
        self.transfer_attempts = transfer_attempts
        self.retry_wait = retry_wait or wait_exponential(multiplier=1, min=1, max=10)
        self.dry_run = dry_run

    def system_accounts(self, state: VaultState) -> set[str]:
        """Addresses owned by the system that never receive rewards."""
        return {
            self.vault.keeper_address,
            self.vault.vault_address,
            state.owner_wallet,
            state.keeper_authority,
            TOKEN_PROGRAM_ID,
            TOKEN_2022_PROGRAM_ID,
        }

    async def keeper_operating_balance(self) -> int:
        """
        Keeper lamports that are not owed to anyone.

        Native value held for carry-over or pending transfers is subtracted
        so it is not mistaken for operating balance.
        """
        balance = await self.vault.get_native_balance(self.vault.keeper_address)
        owed = self.ledger.total(NATIVE_MINT) + self.ledger.pending_total(NATIVE_MINT)
        return max(balance - owed, 0)

    async def plan(
        self,
        amount: int,
        reward_asset: str,
        state: VaultState,
        reward_exclusions: set[str],
        keeper_balance: int,
    ) -> DistributionPlan | None:
        """
        Build the plan for this cycle, including carried-over value.

        Args:
            amount: Freshly swapped amount of the reward asset
            reward_asset: Reward asset mint
            state: Vault state read this cycle
            reward_exclusions: Reward exclusion list
            keeper_balance: Keeper operating balance read before the swap

        Returns:
            The plan, or None when there is nothing to distribute
        """
        carried = self.ledger.total(reward_asset)
        if amount + carried == 0:
            logger.debug("Nothing to distribute", reward_asset=reward_asset)
            return None

        system = self.system_accounts(state)
        snapshot = await self.discovery.get_holders(
            state.token_mint, excluding=set(reward_exclusions) | system
        )

        carried = self.ledger.take(reward_asset)
        plan = build_plan(
            amount + carried,
            snapshot,
            keeper_balance,
            reward_asset,
            reward_exclusions,
            project_wallet=state.owner_wallet,
            keeper_address=self.vault.keeper_address,
            system_accounts=system,
            threshold=self.min_holder_value_usd,
            low_balance=self.keeper_low_balance,
            target_balance=self.keeper_top_up_target,
        )

        logger.info(
            "Distribution plan built",
            plan_id=str(plan.plan_id),
            reward_asset=reward_asset,
            total=plan.total_harvested,
            carried_over=carried,
            holders=len(plan.per_holder_share),
            holder_pool_share=plan.holder_pool_share,
            project_share=plan.project_share,
            keeper_top_up=plan.keeper_top_up,
            undistributed=plan.undistributed,
        )

        if plan.undistributed:
            self.ledger.record(
                UndistributedRecord(
                    asset=reward_asset,
                    amount=plan.undistributed,
                    reason=UndistributedReason.NO_ELIGIBLE_HOLDERS,
                    plan_id=plan.plan_id,
                )
            )
        return plan

    async def execute(self, plan: DistributionPlan) -> DistributionResult:
        """
        Execute every transfer of a plan.

        The whole plan is queued in the ledger before the first send and
        each transfer is resolved as soon as it lands, so a run that is
        interrupted leaves every unsent transfer pending. Each transfer is
        retried on its own; a failure does not stop the remaining transfers.
        Failed transfers stay queued and are retried unchanged by
        ``resume_pending``. A transfer rejected before sending is carried
        over as undistributed value instead.

        Args:
            plan: Plan to execute

        Returns:
            Completed and failed transfers
        """
        result = DistributionResult(plan_id=plan.plan_id)
        self.ledger.add_pending(plan.transfers())

        for instruction in plan.transfers():
            self._settle(result, await self._execute_instruction(instruction))

        log = logger.info if result.complete else logger.warning
        log(
            "Distribution executed",
            plan_id=str(plan.plan_id),
            completed=len(result.completed),
            failed=len(result.failed),
            distributed_amount=result.distributed_amount,
            pending_amount=result.pending_amount,
            rejected_amount=result.rejected_amount,
        )
        return result

    async def resume_pending(self) -> DistributionResult | None:
        """
        Retry transfers left pending by earlier cycles.

        Returns:
            Result of the retry, or None when nothing was pending
        """
        pending = self.ledger.pending_transfers()
        if not pending:
            return None

        logger.info("Resuming pending transfers", count=len(pending))
        result = DistributionResult(plan_id=pending[0].plan_id)
        for instruction in pending:
            self._settle(result, await self._execute_instruction(instruction))
        return result

    def _settle(self, result: DistributionResult, transfer_result: TransferResult) -> None:
        instruction = transfer_result.instruction
        if transfer_result.succeeded:
            self.ledger.resolve_pending(instruction)
            result.completed.append(transfer_result)
            return

        if transfer_result.rejected:
            self.ledger.resolve_pending(instruction)
            self.ledger.record(
                UndistributedRecord(
                    asset=instruction.asset,
                    amount=instruction.amount,
                    reason=UndistributedReason.PARTIAL_EXECUTION,
                    plan_id=instruction.plan_id,
                )
            )
        result.failed.append(transfer_result)

    async def recover_to_project_wallet(self, asset: str) -> TransferResult | None:
        """
        Send the recorded undistributed amount of an asset to the project wallet.

        Operator path, not used by the automated cycle.

        Args:
            asset: Asset mint to recover

        Returns:
            The transfer result, or None when nothing was recorded
        """
        amount = self.ledger.total(asset)
        if amount == 0:
            logger.info("No undistributed value to recover", asset=asset)
            return None

        state = await self.vault.fetch_state()
        instruction = TransferInstruction(
            plan_id=uuid4(),
            recipient=state.owner_wallet,
            amount=amount,
            asset=asset,
            kind=TransferKind.PROJECT,
        )
        transfer_result = await self._execute_instruction(instruction)
        if transfer_result.succeeded:
            self.ledger.take(asset)
            logger.info(
                "Undistributed value recovered to project wallet",
                asset=asset,
                amount=amount,
                recipient=state.owner_wallet,
            )
        return transfer_result

    async def _execute_instruction(self, instruction: TransferInstruction) -> TransferResult:
        if (
            instruction.kind == TransferKind.KEEPER_TOP_UP
            and instruction.recipient == self.vault.keeper_address
        ):
            # Proceeds already sit in the keeper wallet
            distribution_logger.info(
                "Keeper top-up retained",
                plan_id=str(instruction.plan_id),
                amount=instruction.amount,
                asset=instruction.asset,
            )
            return TransferResult(instruction=instruction, retained=True)

        if self.dry_run:
            logger.info(
                "Dry run: skipping transfer",
                recipient=instruction.recipient,
                amount=instruction.amount,
                kind=instruction.kind.value,
            )
            return TransferResult(instruction=instruction, signature="dry-run")

        earlier = self.ledger.unconfirmed_signature(instruction)
        if earlier is not None:
            try:
                landed = await self.vault.transaction_landed(earlier)
            except KeeperError as e:
                logger.error(
                    "Cannot check earlier transfer attempt",
                    recipient=instruction.recipient,
                    signature=earlier,
                    error=str(e),
                )
                return TransferResult(instruction=instruction, error=str(e))
            if landed:
                self._log_executed(instruction, earlier, attempts=0)
                return TransferResult(instruction=instruction, signature=earlier)
            # Not landed a full tick later means its blockhash has expired
            self.ledger.forget_unconfirmed(instruction)

        attempts = 0
        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type(TransientError),
                stop=stop_after_attempt(self.transfer_attempts),
                wait=self.retry_wait,
                reraise=True,
            ):
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    signature = await self.vault.transfer(
                        instruction.recipient, instruction.amount, instruction.asset
                    )
        except UnconfirmedTransactionError as e:
            self.ledger.mark_unconfirmed(instruction, e.signature)
            self._log_failed(instruction, attempts, e)
            return TransferResult(instruction=instruction, attempts=attempts, error=str(e))
        except PolicyViolationError as e:
            self._log_failed(instruction, attempts, e)
            return TransferResult(
                instruction=instruction, attempts=attempts, error=str(e), rejected=True
            )
        except KeeperError as e:
            self._log_failed(instruction, attempts, e)
            return TransferResult(instruction=instruction, attempts=attempts, error=str(e))

        self._log_executed(instruction, signature, attempts)
        return TransferResult(instruction=instruction, signature=signature, attempts=attempts)

    def _log_executed(
        self, instruction: TransferInstruction, signature: str, attempts: int
    ) -> None:
        distribution_logger.info(
            "Transfer executed",
            plan_id=str(instruction.plan_id),
            recipient=instruction.recipient,
            amount=instruction.amount,
            asset=instruction.asset,
            kind=instruction.kind.value,
            signature=signature,
            attempts=attempts,
        )

    def _log_failed(self, instruction: TransferInstruction, attempts: int, e: KeeperError) -> None:
        logger.error(
            "Transfer failed",
            recipient=instruction.recipient,
            amount=instruction.amount,
            asset=instruction.asset,
            kind=instruction.kind.value,
            attempts=attempts,
            error=str(e),
            error_type=type(e).__name__,
        )
