"""
Shared fixtures for the Vault Keeper test suite.

The fakes below implement the gateway interfaces in memory. Failures are
injected per operation through ``fail(operation, *errors)``: each call to
that operation raises the next queued error until the queue is empty.
"""

from datetime import datetime, timezone
from decimal import Decimal

import pytest
from solders.pubkey import Pubkey
from tenacity import wait_none

from vault_keeper.core.constants import FEE_LAUNCH_BPS, NATIVE_MINT
from vault_keeper.core.errors import ResolutionError
from vault_keeper.core.models import (
    ExclusionList,
    ExclusionSet,
    FeeAccount,
    HolderEntry,
    HolderSnapshot,
    LaunchState,
    RewardSelection,
    SwapRoute,
    VaultState,
)
from vault_keeper.distribution import DistributionEngine
from vault_keeper.distribution.ledger import UndistributedLedger
from vault_keeper.gateways import (
    DiscoveryProvider,
    SocialSignalProvider,
    SwapRouter,
    VaultGateway,
)

TOKEN_MINT = str(Pubkey.new_unique())
PROJECT_WALLET = "ProjectWa11et111111111111111111111111111111"
KEEPER_AUTHORITY = "KeeperAuth1111111111111111111111111111111"
KEEPER_ADDRESS = "Keeper1111111111111111111111111111111111111"
VAULT_ADDRESS = "Vau1t11111111111111111111111111111111111111"
USDC_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"

LAUNCH_TIME = datetime(2025, 3, 3, 12, 0, tzinfo=timezone.utc)


def make_state(
    launch_timestamp: datetime | None = LAUNCH_TIME,
    current_fee_bps: int = FEE_LAUNCH_BPS,
    fee_finalized: bool = False,
    reward_asset: str = NATIVE_MINT,
    last_check: datetime | None = None,
    token_mint: str = TOKEN_MINT,
) -> VaultState:
    return VaultState(
        token_mint=token_mint,
        owner_wallet=PROJECT_WALLET,
        keeper_authority=KEEPER_AUTHORITY,
        launch=LaunchState(
            launch_timestamp=launch_timestamp,
            fee_finalized=fee_finalized,
            current_fee_bps=current_fee_bps,
        ),
        reward=RewardSelection(current_reward_asset=reward_asset, last_check_timestamp=last_check),
    )


class FailureInjector:
    """Mixin queueing errors per operation name."""

    def __init__(self):
        self.failures: dict[str, list[Exception]] = {}
        self.calls: dict[str, int] = {}

    def fail(self, operation: str, *errors: Exception) -> None:
        self.failures.setdefault(operation, []).extend(errors)

    def _call(self, operation: str) -> None:
        self.calls[operation] = self.calls.get(operation, 0) + 1
        queue = self.failures.get(operation)
        if queue:
            raise queue.pop(0)


class FakeVault(FailureInjector, VaultGateway):
    """In-memory vault and ledger."""

    def __init__(self, state: VaultState | None = None, exclusions: ExclusionSet | None = None):
        super().__init__()
        self.state = state or make_state()
        self.exclusions = exclusions or ExclusionSet()
        self.native_balances: dict[str, int] = {}
        self.token_balances: dict[tuple[str, str], int] = {}
        self.account_balances: dict[str, int] = {}
        self.fee_accounts: list[FeeAccount] = []
        self.fee_updates: list[tuple[int, bool]] = []
        self.exclusion_adds: list[tuple[ExclusionList, str]] = []
        self.reward_updates: list[str] = []
        self.harvest_batches: list[list[str]] = []
        self.transfers: list[tuple[str, int, str]] = []
        self.landed: set[str] = set()

    @property
    def keeper_address(self) -> str:
        return KEEPER_ADDRESS

    @property
    def vault_address(self) -> str:
        return VAULT_ADDRESS

    async def fetch_state(self) -> VaultState:
        self._call("fetch_state")
        return self.state.model_copy(deep=True)

    async def fetch_exclusions(self) -> ExclusionSet:
        self._call("fetch_exclusions")
        return self.exclusions.model_copy(deep=True)

    async def update_fee(self, bps: int, finalize: bool) -> str:
        self._call("update_fee")
        self.fee_updates.append((bps, finalize))
        self.state = self.state.model_copy(
            update={
                "launch": LaunchState(
                    launch_timestamp=self.state.launch.launch_timestamp,
                    fee_finalized=finalize,
                    current_fee_bps=bps,
                )
            }
        )
        return f"sig-fee-{len(self.fee_updates)}"

    async def add_exclusion(self, list_type: ExclusionList, address: str) -> str:
        self._call("add_exclusion")
        self.exclusion_adds.append((list_type, address))
        self.exclusions.members(list_type).add(address)
        return f"sig-excl-{len(self.exclusion_adds)}"

    async def harvest(self, accounts: list[str]) -> int:
        self._call("harvest")
        self.harvest_batches.append(list(accounts))
        withheld = {account.address: account.withheld_amount for account in self.fee_accounts}
        amount = sum(withheld.get(address, 0) for address in accounts)
        key = (self.keeper_address, self.state.token_mint)
        self.token_balances[key] = self.token_balances.get(key, 0) + amount
        return amount

    async def update_reward_asset(self, address: str) -> str:
        self._call("update_reward_asset")
        self.reward_updates.append(address)
        self.state = self.state.model_copy(
            update={"reward": RewardSelection(current_reward_asset=address)}
        )
        return f"sig-reward-{len(self.reward_updates)}"

    async def find_fee_accounts(self) -> list[FeeAccount]:
        self._call("find_fee_accounts")
        return list(self.fee_accounts)

    async def get_token_balance(self, owner: str, mint: str) -> int:
        self._call("get_token_balance")
        return self.token_balances.get((owner, mint), 0)

    async def get_token_account_balance(self, account: str) -> int:
        self._call("get_token_account_balance")
        return self.account_balances.get(account, 0)

    async def get_native_balance(self, address: str) -> int:
        self._call("get_native_balance")
        return self.native_balances.get(address, 0)

    async def transfer(self, recipient: str, amount: int, asset: str) -> str:
        self._call("transfer")
        self.transfers.append((recipient, amount, asset))
        return f"sig-transfer-{len(self.transfers)}"

    async def transaction_landed(self, signature: str) -> bool:
        self._call("transaction_landed")
        return signature in self.landed

    async def close(self) -> None:
        self.closed = True


class FakeDiscovery(FailureInjector, DiscoveryProvider):
    """Holders given as owner -> (raw balance, USD value)."""

    def __init__(
        self,
        holders: dict[str, tuple[int, Decimal]] | None = None,
        symbols: dict[str, str] | None = None,
        price: Decimal = Decimal("1"),
    ):
        super().__init__()
        self.holders = holders or {}
        self.symbols = symbols or {}
        self.price = price
        self.excluded_seen: set[str] = set()

    async def get_price(self, asset: str) -> Decimal:
        self._call("get_price")
        return self.price

    async def get_holders(self, token_mint: str, excluding: set[str]) -> HolderSnapshot:
        self._call("get_holders")
        self.excluded_seen = set(excluding)
        entries = [
            HolderEntry(holder_address=owner, token_balance=balance, value_in_quote=value)
            for owner, (balance, value) in sorted(
                self.holders.items(), key=lambda item: item[1][0], reverse=True
            )
            if owner not in excluding
        ]
        return HolderSnapshot(token_mint=token_mint, holders=entries, price=self.price)

    async def resolve_symbol(self, symbol: str) -> str:
        self._call("resolve_symbol")
        try:
            return self.symbols[symbol]
        except KeyError:
            raise ResolutionError(f"No token with symbol {symbol}") from None


class FakeSignal(FailureInjector, SocialSignalProvider):
    def __init__(self, symbol: str | None = None):
        super().__init__()
        self.symbol = symbol

    async def get_current_symbol(self) -> str | None:
        self._call("get_current_symbol")
        return self.symbol


class FakeRouter(FailureInjector, SwapRouter):
    """Quotes ``amount * rate`` of the output asset and credits it on execute."""

    def __init__(self, vault: FakeVault | None = None, rate: Decimal = Decimal("2")):
        super().__init__()
        self.vault = vault
        self.rate = rate
        self.quotes: list[SwapRoute] = []
        self.executed: list[SwapRoute] = []

    async def quote(
        self, amount: int, from_asset: str, to_asset: str, slippage_bps: int
    ) -> SwapRoute:
        self._call("quote")
        route = SwapRoute(
            input_mint=from_asset,
            output_mint=to_asset,
            in_amount=amount,
            out_amount=int(amount * self.rate),
            slippage_bps=slippage_bps,
        )
        self.quotes.append(route)
        return route

    async def execute(self, route: SwapRoute) -> int:
        self._call("execute")
        self.executed.append(route)
        if self.vault is not None and route.output_mint == NATIVE_MINT:
            keeper = self.vault.keeper_address
            self.vault.native_balances[keeper] = (
                self.vault.native_balances.get(keeper, 0) + route.out_amount
            )
        return route.out_amount


@pytest.fixture
def vault():
    return FakeVault()


@pytest.fixture
def discovery():
    return FakeDiscovery()


@pytest.fixture
def ledger(tmp_path):
    return UndistributedLedger(tmp_path / "undistributed.json")


@pytest.fixture
def engine(vault, discovery, ledger):
    return DistributionEngine(vault, discovery, ledger, retry_wait=wait_none())
