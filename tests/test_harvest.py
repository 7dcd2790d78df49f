"""
Tests for the harvest/swap orchestrator.
"""

import pytest
from tenacity import wait_none

from conftest import TOKEN_MINT, USDC_MINT, FakeRouter, FakeVault
from vault_keeper.core.errors import FatalCycleError
from vault_keeper.core.models import FeeAccount
from vault_keeper.gateways import (
    GatewayConnectionError,
    StaleQuoteError,
    TransactionError,
    UnconfirmedTransactionError,
)
from vault_keeper.harvest import HarvestSwapOrchestrator


def fee_accounts(count: int, withheld: int = 10) -> list[FeeAccount]:
    return [FeeAccount(address=f"account{i}", withheld_amount=withheld) for i in range(count)]


def make_orchestrator(vault: FakeVault, router: FakeRouter | None = None, **kwargs):
    return HarvestSwapOrchestrator(
        vault, router or FakeRouter(vault), retry_wait=wait_none(), **kwargs
    )


class TestHarvest:

    def test_batch_size_limit(self):
        with pytest.raises(ValueError):
            make_orchestrator(FakeVault(), batch_size=21)
        with pytest.raises(ValueError):
            make_orchestrator(FakeVault(), batch_size=0)

    async def test_accounts_split_into_batches_of_twenty(self):
        vault = FakeVault()
        vault.fee_accounts = fee_accounts(45)
        orchestrator = make_orchestrator(vault)

        result = await orchestrator.harvest(vault.fee_accounts)

        assert [len(batch) for batch in vault.harvest_batches] == [20, 20, 5]
        assert result.batches_total == 3
        assert result.complete
        assert result.harvested_amount == 450

    async def test_transient_batch_failure_retried(self):
        vault = FakeVault()
        vault.fee_accounts = fee_accounts(3)
        vault.fail("harvest", GatewayConnectionError("timeout"))

        result = await make_orchestrator(vault).harvest(vault.fee_accounts)

        assert result.complete
        assert result.harvested_amount == 30
        assert vault.calls["harvest"] == 2

    async def test_failed_batch_does_not_stop_others(self):
        """Test that a failing batch is reported and the other batches still count."""
        vault = FakeVault()
        vault.fee_accounts = fee_accounts(25)
        vault.fail("harvest", TransactionError("account closed"))

        result = await make_orchestrator(vault).harvest(vault.fee_accounts)

        assert not result.complete
        assert result.batches_succeeded == 1
        assert result.harvested_amount == 50
        assert result.failed_accounts == [f"account{i}" for i in range(20)]

    async def test_accepts_plain_addresses(self):
        vault = FakeVault()
        vault.fee_accounts = fee_accounts(2)

        result = await make_orchestrator(vault).harvest(["account0", "account1"])

        assert result.harvested_amount == 20

    async def test_threshold(self):
        vault = FakeVault()
        orchestrator = make_orchestrator(vault, harvest_threshold=100)

        assert not orchestrator.should_harvest([])
        assert not orchestrator.should_harvest(fee_accounts(5))
        assert orchestrator.should_harvest(fee_accounts(10))

    async def test_dry_run_sends_nothing(self):
        vault = FakeVault()
        vault.fee_accounts = fee_accounts(5)

        result = await make_orchestrator(vault, dry_run=True).harvest(vault.fee_accounts)

        assert vault.harvest_batches == []
        assert result.complete
        assert result.harvested_amount == 0


class TestSwap:

    async def test_swap_returns_received_amount(self):
        vault = FakeVault()
        router = FakeRouter(vault)

        result = await make_orchestrator(vault, router).swap(100, TOKEN_MINT, USDC_MINT)

        assert result.received_amount == 200
        assert result.attempts == 1
        assert router.quotes[0].slippage_bps == 100

    async def test_same_asset_needs_no_swap(self):
        vault = FakeVault()
        router = FakeRouter(vault)

        assert await make_orchestrator(vault, router).swap(100, TOKEN_MINT, TOKEN_MINT) is None
        assert router.quotes == []

    async def test_stale_quote_requoted(self):
        """Test that a failed execution takes a fresh quote before retrying."""
        vault = FakeVault()
        router = FakeRouter(vault)
        router.fail("execute", StaleQuoteError("slippage exceeded"))

        result = await make_orchestrator(vault, router).swap(100, TOKEN_MINT, USDC_MINT)

        assert result.attempts == 2
        assert len(router.quotes) == 2
        assert router.executed == [router.quotes[1]]

    async def test_exhausted_attempts_raise_fatal(self):
        vault = FakeVault()
        router = FakeRouter(vault)
        router.fail("quote", *[StaleQuoteError("no route")] * 3)

        with pytest.raises(FatalCycleError) as exc_info:
            await make_orchestrator(vault, router, max_swap_attempts=3).swap(
                100, TOKEN_MINT, USDC_MINT
            )

        assert exc_info.value.amount == 100
        assert exc_info.value.attempts == 3
        assert router.executed == []

    async def test_requotes_wait_between_attempts(self):
        """Test that each re-quote backs off with the configured wait strategy."""
        vault = FakeVault()
        router = FakeRouter(vault)
        router.fail("quote", *[StaleQuoteError("no route")] * 2)
        waited = []

        def recording_wait(retry_state):
            waited.append(retry_state.attempt_number)
            return 0

        orchestrator = HarvestSwapOrchestrator(
            vault, router, max_swap_attempts=3, retry_wait=recording_wait
        )
        result = await orchestrator.swap(100, TOKEN_MINT, USDC_MINT)

        assert result.attempts == 3
        assert waited == [1, 2]

    async def test_unconfirmed_swap_not_requoted(self):
        """Test that a swap that may have landed is never sent again."""
        vault = FakeVault()
        router = FakeRouter(vault)
        router.fail("execute", UnconfirmedTransactionError("no response", signature="sig-swap"))

        with pytest.raises(FatalCycleError) as exc_info:
            await make_orchestrator(vault, router).swap(100, TOKEN_MINT, USDC_MINT)

        assert exc_info.value.attempts == 1
        assert len(router.quotes) == 1
        assert isinstance(exc_info.value.__cause__, UnconfirmedTransactionError)

    async def test_custom_slippage(self):
        vault = FakeVault()
        router = FakeRouter(vault)

        await make_orchestrator(vault, router).swap(100, TOKEN_MINT, USDC_MINT, slippage_bps=300)

        assert router.quotes[0].slippage_bps == 300

    async def test_dry_run_quotes_but_does_not_execute(self):
        vault = FakeVault()
        router = FakeRouter(vault)

        result = await make_orchestrator(vault, router, dry_run=True).swap(
            100, TOKEN_MINT, USDC_MINT
        )

        assert result.received_amount == 0
        assert result.route.out_amount == 200
        assert router.executed == []
