"""
Jupiter swap router.

Quotes come from the Jupiter v6 ``/quote`` endpoint; execution asks
``/swap`` for a serialized transaction, which the vault gateway signs with
the keeper keypair and sends. The amount received is measured as the
keeper's balance change in the output asset. For native SOL output the
swap's network fee, paid from the same balance, is added back.
"""

import base64
import binascii
from decimal import Decimal, InvalidOperation

import httpx
import structlog
from tenacity.wait import wait_base

from vault_keeper.config import JupiterConfig
from vault_keeper.core.constants import NATIVE_MINT
from vault_keeper.core.models import SwapRoute
from vault_keeper.gateways import GatewayError, StaleQuoteError, SwapRouter, TransactionError
from vault_keeper.gateways.http import HttpApiClient
from vault_keeper.gateways.solana_vault import SolanaVaultGateway

logger = structlog.get_logger(__name__)

# Jupiter program error codes that mean the quote no longer holds
SLIPPAGE_ERROR_MARKERS = ("0x1771", "SlippageToleranceExceeded", "6001")


class JupiterSwapRouter(SwapRouter):
    """SwapRouter backed by the Jupiter aggregator."""

    def __init__(
        self,
        config: JupiterConfig,
        vault: SolanaVaultGateway,
        priority_fee_lamports: int | str = "auto",
        retry_wait: wait_base | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.vault = vault
        self.priority_fee_lamports = priority_fee_lamports
        self.api = HttpApiClient(
            "Jupiter",
            config.base_url,
            headers={"accept": "application/json"},
            timeout=config.timeout,
            retry_wait=retry_wait,
            transport=transport,
        )

    async def quote(
        self, amount: int, from_asset: str, to_asset: str, slippage_bps: int
    ) -> SwapRoute:
        try:
            body = await self.api.get(
                "/quote",
                "quote",
                params={
                    "inputMint": from_asset,
                    "outputMint": to_asset,
                    "amount": str(amount),
                    "slippageBps": slippage_bps,
                },
            )
        except GatewayError as e:
            if isinstance(e, StaleQuoteError) or "route" not in str(e).lower():
                raise
            raise StaleQuoteError(str(e), operation="quote", address=to_asset) from e

        if not body or not body.get("outAmount") or not body.get("routePlan"):
            raise StaleQuoteError("No route available", operation="quote", address=to_asset)

        try:
            price_impact = Decimal(str(body.get("priceImpactPct") or "0"))
        except InvalidOperation:
            price_impact = Decimal("0")

        route = SwapRoute(
            input_mint=from_asset,
            output_mint=to_asset,
            in_amount=int(body.get("inAmount", amount)),
            out_amount=int(body["outAmount"]),
            slippage_bps=int(body.get("slippageBps", slippage_bps)),
            price_impact_pct=price_impact,
            raw=body,
        )
        logger.info(
            "Swap quoted",
            input_mint=from_asset,
            output_mint=to_asset,
            in_amount=route.in_amount,
            out_amount=route.out_amount,
            price_impact_pct=str(price_impact),
        )
        return route

    async def _output_balance(self, mint: str) -> int:
        owner = self.vault.keeper_address
        if mint == NATIVE_MINT:
            return await self.vault.get_native_balance(owner)
        return await self.vault.get_token_balance(owner, mint)

    async def execute(self, route: SwapRoute) -> int:
        """
        Build, sign and send the swap transaction for a quoted route.

        Returns:
            Amount of the output asset received by the keeper

        Raises:
            StaleQuoteError: If the swap was rejected for slippage or an expired route
            TransactionError: If the ledger rejected the swap for another reason
        """
        body = await self.api.post(
            "/swap",
            "build_swap",
            json={
                "quoteResponse": route.raw,
                "userPublicKey": self.vault.keeper_address,
                "wrapAndUnwrapSol": True,
                "dynamicComputeUnitLimit": True,
                "prioritizationFeeLamports": self.priority_fee_lamports,
            },
        )
        encoded = (body or {}).get("swapTransaction")
        if not encoded:
            raise StaleQuoteError("Swap transaction not returned", operation="build_swap")
        try:
            raw_transaction = base64.b64decode(encoded)
        except (binascii.Error, ValueError) as e:
            raise GatewayError("Invalid swap transaction encoding", operation="build_swap") from e

        before = await self._output_balance(route.output_mint)
        try:
            signature = await self.vault.sign_and_send("swap", raw_transaction)
        except TransactionError as e:
            if any(marker in str(e) for marker in SLIPPAGE_ERROR_MARKERS):
                raise StaleQuoteError(
                    f"Slippage exceeded: {e}", operation="swap", address=route.output_mint
                ) from e
            raise
        after = await self._output_balance(route.output_mint)

        received = after - before
        if route.output_mint == NATIVE_MINT:
            received += await self._network_fee(signature)
        received = max(received, 0)
        logger.info(
            "Swap executed",
            signature=signature,
            output_mint=route.output_mint,
            quoted=route.out_amount,
            received=received,
        )
        return received

    async def _network_fee(self, signature: str) -> int:
        try:
            return await self.vault.transaction_fee(signature)
        except GatewayError as e:
            logger.warning(
                "Swap network fee unavailable, received amount is net of it",
                signature=signature,
                error=str(e),
            )
            return 0

    async def close(self) -> None:
        await self.api.close()
