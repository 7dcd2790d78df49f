"""
Exclusion synchronization module for the Vault Keeper.

Pool custody accounts and router programs must never pay the transfer fee or
receive rewards. This module finds the custody accounts of the configured
trading venues and adds any address missing from either exclusion list.
Addresses are never removed.
"""

import asyncio

import structlog
from pydantic import BaseModel, Field
from solders.pubkey import Pubkey

from vault_keeper.config import VenueConfig
from vault_keeper.core.errors import KeeperError
from vault_keeper.core.models import ExclusionList, ExclusionSet
from vault_keeper.core.utils import unique
from vault_keeper.gateways import VaultGateway

logger = structlog.get_logger(__name__)


class ExclusionAddition(BaseModel):
    """One address added to one list."""

    list_type: ExclusionList
    address: str
    signature: str


class ExclusionFailure(BaseModel):
    """One add that failed and will be retried on the next sync."""

    list_type: ExclusionList
    address: str
    error: str


class ExclusionSyncReport(BaseModel):
    """Result of one synchronization pass."""

    active_pools: list[str] = Field(default_factory=list)
    added: list[ExclusionAddition] = Field(default_factory=list)
    failed: list[ExclusionFailure] = Field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.failed


def derive_custody_address(venue: VenueConfig, token_mint: str) -> str:
    """
    Derive the venue's custody token account for the mint.

    Args:
        venue: Venue with program id, pool id and PDA seed
        token_mint: Token mint address

    Returns:
        Program-derived address of the custody account
    """
    address, _bump = Pubkey.find_program_address(
        [
            venue.seed.encode(),
            bytes(Pubkey.from_string(venue.pool_id)),
            bytes(Pubkey.from_string(token_mint)),
        ],
        Pubkey.from_string(venue.program_id),
    )
    return str(address)


class ExclusionSynchronizer:
    """Keeps pool custody accounts and routers in both exclusion lists."""

    def __init__(
        self,
        vault: VaultGateway,
        venues: list[VenueConfig],
        routers: list[str],
        dry_run: bool = False,
    ):
        self.vault = vault
        self.venues = venues
        self.routers = list(routers)
        self.dry_run = dry_run

    async def detect_pools(self, token_mint: str) -> list[str]:
        """
        Custody accounts of the configured venues that currently hold tokens.

        Balance lookups run concurrently; a venue whose lookup fails is
        skipped for this pass.

        Args:
            token_mint: Token mint address

        Returns:
            Custody addresses with a positive balance
        """
        custody_addresses = [derive_custody_address(venue, token_mint) for venue in self.venues]
        results = await asyncio.gather(
            *(self.vault.get_token_account_balance(address) for address in custody_addresses),
            return_exceptions=True,
        )

        active = []
        for venue, address, result in zip(self.venues, custody_addresses, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                logger.warning(
                    "Custody balance lookup failed, skipping venue",
                    venue=venue.name,
                    pool_id=venue.pool_id,
                    custody=address,
                    error=str(result),
                )
                continue
            if result > 0:
                active.append(address)
            else:
                logger.debug("Custody account empty", venue=venue.name, custody=address)

        return active

    async def sync(self) -> ExclusionSyncReport:
        """
        Add every active custody account and router to the lists it is missing from.

        Each list is checked independently, so an address left in only one
        list by an earlier partial failure is repaired here. A second sync
        with nothing new issues no add calls.

        Returns:
            Report of added and failed entries
        """
        state = await self.vault.fetch_state()
        exclusions = await self.vault.fetch_exclusions()

        report = ExclusionSyncReport(active_pools=await self.detect_pools(state.token_mint))

        for address in unique([*report.active_pools, *self.routers]):
            for list_type in exclusions.missing(address):
                await self._add(exclusions, list_type, address, report)

        if report.added or report.failed:
            logger.info(
                "Exclusion sync finished",
                added=len(report.added),
                failed=len(report.failed),
                active_pools=len(report.active_pools),
            )
        return report

    async def _add(
        self,
        exclusions: ExclusionSet,
        list_type: ExclusionList,
        address: str,
        report: ExclusionSyncReport,
    ) -> None:
        if self.dry_run:
            logger.info("Dry run: skipping exclusion add", list=list_type.value, address=address)
            return

        try:
            signature = await self.vault.add_exclusion(list_type, address)
        except KeeperError as e:
            logger.error(
                "Failed to add exclusion",
                list=list_type.value,
                address=address,
                error=str(e),
            )
            report.failed.append(
                ExclusionFailure(list_type=list_type, address=address, error=str(e))
            )
            return

        exclusions.members(list_type).add(address)
        report.added.append(
            ExclusionAddition(list_type=list_type, address=address, signature=signature)
        )
        logger.info("Exclusion added", list=list_type.value, address=address, signature=signature)

    async def is_excluded(self, address: str, list_type: ExclusionList) -> bool:
        """Whether the vault currently lists the address."""
        exclusions = await self.vault.fetch_exclusions()
        return exclusions.contains(address, list_type)
