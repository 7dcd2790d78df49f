"""
Birdeye discovery provider.

Holder lists, USD prices and symbol search through the Birdeye public API.
Requests are spaced at least ``min_request_interval`` apart (1 req/s on the
public tier).
"""

from decimal import Decimal, InvalidOperation
from typing import Any

import httpx
import structlog
from tenacity.wait import wait_base

from vault_keeper.config import BirdeyeConfig
from vault_keeper.core.constants import TOKEN_DECIMALS
from vault_keeper.core.errors import ResolutionError
from vault_keeper.core.models import HolderEntry, HolderSnapshot
from vault_keeper.core.utils import from_base_units, to_base_units
from vault_keeper.gateways import DiscoveryProvider, GatewayError
from vault_keeper.gateways.http import HttpApiClient

logger = structlog.get_logger(__name__)


def _decimal(value: Any) -> Decimal:
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return Decimal("0")


class BirdeyeDiscoveryProvider(DiscoveryProvider):
    """DiscoveryProvider backed by the Birdeye API."""

    def __init__(
        self,
        config: BirdeyeConfig,
        token_decimals: int = TOKEN_DECIMALS,
        retry_wait: wait_base | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Initialize the provider.

        Args:
            config: Birdeye section of the application config
            token_decimals: Decimals of the taxed token
            retry_wait: tenacity wait strategy between attempts
            transport: Custom httpx transport (tests)
        """
        headers = {"accept": "application/json", "x-chain": config.chain}
        if config.api_key is not None:
            headers["X-API-KEY"] = config.api_key.get_secret_value()
        else:
            logger.warning("Birdeye API key not configured, requests may be rejected")

        self.api = HttpApiClient(
            "Birdeye",
            config.base_url,
            headers=headers,
            timeout=config.timeout,
            min_request_interval=config.min_request_interval,
            retry_wait=retry_wait,
            transport=transport,
        )
        self.config = config
        self.token_decimals = token_decimals

    async def get_price(self, asset: str) -> Decimal:
        body = await self.api.get("/defi/v2/price", "get_price", params={"address": asset})
        data = body.get("data") or {}
        if data.get("value") is None:
            raise GatewayError("No price returned", operation="get_price", address=asset)
        return _decimal(data["value"])

    async def get_holders(self, token_mint: str, excluding: set[str]) -> HolderSnapshot:
        """
        Page through the holder list and value each holding at the current price.

        Holdings of the same owner across several token accounts are summed.
        """
        price = await self.get_price(token_mint)

        balances: dict[str, int] = {}
        offset = 0
        while offset < self.config.max_holders:
            limit = min(self.config.holders_page_size, self.config.max_holders - offset)
            body = await self.api.get(
                "/defi/v1/holders",
                "get_holders",
                params={
                    "address": token_mint,
                    "offset": offset,
                    "limit": limit,
                    "sort_by": "balance",
                    "sort_order": "desc",
                },
            )
            data = body.get("data") or {}
            page = data.get("holders") or data.get("items") or []
            for item in page:
                owner = item.get("owner")
                if not owner or owner in excluding:
                    continue
                balances[owner] = balances.get(owner, 0) + self._raw_balance(item)
            if len(page) < limit:
                break
            offset += limit

        holders = [
            HolderEntry(
                holder_address=owner,
                token_balance=balance,
                value_in_quote=from_base_units(balance, self.token_decimals) * price,
            )
            for owner, balance in sorted(balances.items(), key=lambda item: item[1], reverse=True)
            if balance > 0
        ]
        logger.info(
            "Holder snapshot fetched", token_mint=token_mint, holders=len(holders), price=str(price)
        )
        return HolderSnapshot(token_mint=token_mint, holders=holders, price=price)

    def _raw_balance(self, item: dict[str, Any]) -> int:
        if item.get("amount") is not None:
            return int(_decimal(item["amount"]))
        return to_base_units(_decimal(item.get("balance", 0)), self.token_decimals)

    async def resolve_symbol(self, symbol: str) -> str:
        """
        Resolve a symbol to the exact-match token with the highest 24h volume.

        Raises:
            ResolutionError: If no token has exactly this symbol
        """
        symbol = symbol.lstrip("$").upper()
        body = await self.api.get(
            "/defi/v2/tokens/search",
            "resolve_symbol",
            params={"keyword": symbol, "sort_by": "volume24h", "sort_order": "desc", "limit": 20},
        )
        tokens = (body.get("data") or {}).get("tokens") or []
        matches = [
            token
            for token in tokens
            if (token.get("symbol") or "").upper() == symbol and token.get("address")
        ]
        if not matches:
            raise ResolutionError(f"No token with symbol {symbol}", operation="resolve_symbol")

        best = max(matches, key=lambda token: _decimal(token.get("volume24h") or 0))
        logger.info(
            "Symbol resolved",
            symbol=symbol,
            address=best["address"],
            volume24h=best.get("volume24h"),
            candidates=len(matches),
        )
        return best["address"]

    async def close(self) -> None:
        await self.api.close()
