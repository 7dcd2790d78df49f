"""
Social signal providers.

The project announces the weekly reward asset as a ``$SYMBOL`` cashtag in
the pinned post of its account. ``TwitterSignalProvider`` reads it through
the Twitter API v2; ``StaticSignalProvider`` returns a configured symbol.
"""

import httpx
import structlog
from tenacity.wait import wait_base

from vault_keeper.config import TwitterConfig
from vault_keeper.core.utils import extract_cashtag
from vault_keeper.gateways import AuthenticationError, SocialSignalProvider
from vault_keeper.gateways.http import HttpApiClient

logger = structlog.get_logger(__name__)


class TwitterSignalProvider(SocialSignalProvider):
    """Reads the reward symbol from the account's pinned post."""

    def __init__(
        self,
        config: TwitterConfig,
        retry_wait: wait_base | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        if config.bearer_token is None:
            raise AuthenticationError("Twitter bearer token not configured")
        if not config.account:
            raise ValueError("Twitter account not configured")

        self.account = config.account.lstrip("@")
        self.api = HttpApiClient(
            "Twitter",
            config.base_url,
            headers={"Authorization": f"Bearer {config.bearer_token.get_secret_value()}"},
            timeout=config.timeout,
            retry_wait=retry_wait,
            transport=transport,
        )

    async def get_current_symbol(self) -> str | None:
        user = await self.api.get(
            f"/users/by/username/{self.account}",
            "get_user",
            params={"user.fields": "pinned_tweet_id"},
        )
        pinned_id = (user.get("data") or {}).get("pinned_tweet_id")
        if not pinned_id:
            logger.warning("Account has no pinned post", account=self.account)
            return None

        tweet = await self.api.get(
            f"/tweets/{pinned_id}",
            "get_pinned_tweet",
            params={"tweet.fields": "created_at"},
        )
        data = tweet.get("data") or {}
        symbol = extract_cashtag(data.get("text", ""))
        if symbol is None:
            logger.warning("No cashtag in pinned post", account=self.account, tweet_id=pinned_id)
            return None

        logger.info(
            "Reward symbol announced",
            symbol=symbol,
            tweet_id=pinned_id,
            created_at=data.get("created_at"),
        )
        return symbol

    async def close(self) -> None:
        await self.api.close()


class StaticSignalProvider(SocialSignalProvider):
    """Returns a fixed symbol, or None when none is configured."""

    def __init__(self, symbol: str | None = None):
        self.symbol = symbol.lstrip("$").upper() if symbol else None

    async def get_current_symbol(self) -> str | None:
        return self.symbol
