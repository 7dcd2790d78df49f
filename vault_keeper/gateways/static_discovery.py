"""
Static discovery provider.

Fixed price, holders and symbol table taken from configuration. Used on
devnet, where no market data exists for the token, and in dry runs.
"""

from decimal import Decimal

import structlog

from vault_keeper.config import StaticDiscoveryConfig
from vault_keeper.core.constants import TOKEN_DECIMALS
from vault_keeper.core.errors import ResolutionError
from vault_keeper.core.models import HolderEntry, HolderSnapshot
from vault_keeper.core.utils import from_base_units
from vault_keeper.gateways import DiscoveryProvider

logger = structlog.get_logger(__name__)


class StaticDiscoveryProvider(DiscoveryProvider):
    """DiscoveryProvider answering from a fixed table."""

    def __init__(self, config: StaticDiscoveryConfig, token_decimals: int = TOKEN_DECIMALS):
        self.price = config.price
        self.holders = dict(config.holders)
        self.symbols = {symbol.upper(): address for symbol, address in config.symbols.items()}
        self.token_decimals = token_decimals

    async def get_price(self, asset: str) -> Decimal:
        return self.price

    async def get_holders(self, token_mint: str, excluding: set[str]) -> HolderSnapshot:
        holders = [
            HolderEntry(
                holder_address=owner,
                token_balance=balance,
                value_in_quote=from_base_units(balance, self.token_decimals) * self.price,
            )
            for owner, balance in sorted(self.holders.items(), key=lambda item: item[1], reverse=True)
            if owner not in excluding and balance > 0
        ]
        return HolderSnapshot(token_mint=token_mint, holders=holders, price=self.price)

    async def resolve_symbol(self, symbol: str) -> str:
        symbol = symbol.lstrip("$").upper()
        try:
            return self.symbols[symbol]
        except KeyError:
            raise ResolutionError(
                f"Symbol {symbol} not in static table", operation="resolve_symbol"
            ) from None
