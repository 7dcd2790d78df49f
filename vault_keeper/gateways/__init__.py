"""
Gateway module for the Vault Keeper.

This module defines the interfaces for every external collaborator of the
keeper: the remote vault on the ledger, the holder/price discovery provider,
the social signal source and the swap router. Each concrete gateway abstracts
the API calls, authentication, rate limiting and error handling for one
provider, and raises the errors defined here.
"""

from abc import ABC, abstractmethod
from decimal import Decimal

from vault_keeper.core.errors import KeeperError, TransientError
from vault_keeper.core.models import (
    ExclusionList,
    ExclusionSet,
    FeeAccount,
    HolderSnapshot,
    SwapRoute,
    VaultState,
)


class GatewayError(KeeperError):
    """Base exception for all gateway-related errors."""

    pass


class GatewayConnectionError(GatewayError, TransientError):
    """Exception raised when a remote endpoint cannot be reached or times out."""

    pass


class RateLimitError(GatewayError, TransientError):
    """Exception raised when a provider rate limit is exceeded."""

    pass


class AuthenticationError(GatewayError):
    """Exception raised when a provider rejects the configured credentials."""

    pass


class TransactionError(GatewayError):
    """Exception raised when the ledger rejects a transaction."""

    pass


class UnconfirmedTransactionError(TransactionError):
    """
    A transaction was sent but its outcome is unknown.

    Not transient: the transaction may still land, so it must be looked up
    by signature before anything is sent again.
    """

    def __init__(self, message: str, *, signature: str, **kwargs):
        super().__init__(message, **kwargs)
        self.signature = signature


class StaleQuoteError(GatewayError, TransientError):
    """Exception raised when a swap quote can no longer be executed."""

    pass


class InsufficientFundsError(GatewayError):
    """Exception raised when the keeper cannot fund a transfer."""

    pass


class VaultGateway(ABC):
    """Interface to the remote vault and the ledger it lives on."""

    @property
    @abstractmethod
    def keeper_address(self) -> str:
        """Address of the keeper signing authority."""
        pass

    @property
    @abstractmethod
    def vault_address(self) -> str:
        """Address of the vault account."""
        pass

    @abstractmethod
    async def fetch_state(self) -> VaultState:
        """
        Read the vault state fresh from the ledger.

        Returns:
            Current vault state

        Raises:
            GatewayConnectionError: If the ledger cannot be reached
        """
        pass

    @abstractmethod
    async def fetch_exclusions(self) -> ExclusionSet:
        """Read both exclusion lists."""
        pass

    @abstractmethod
    async def update_fee(self, bps: int, finalize: bool) -> str:
        """
        Set the transfer fee.

        Args:
            bps: New fee in basis points
            finalize: Lock the schedule after this update

        Returns:
            Transaction signature
        """
        pass

    @abstractmethod
    async def add_exclusion(self, list_type: ExclusionList, address: str) -> str:
        """Add an address to one exclusion list. Returns the signature."""
        pass

    @abstractmethod
    async def harvest(self, accounts: list[str]) -> int:
        """
        Harvest withheld fees from a batch of token accounts.

        Args:
            accounts: At most 20 token accounts

        Returns:
            Amount collected, in raw token units
        """
        pass

    @abstractmethod
    async def update_reward_asset(self, address: str) -> str:
        """Set the reward asset. Returns the signature."""
        pass

    @abstractmethod
    async def find_fee_accounts(self) -> list[FeeAccount]:
        """Token accounts of the mint with withheld fees > 0."""
        pass

    @abstractmethod
    async def get_token_balance(self, owner: str, mint: str) -> int:
        """Balance of the owner's associated token account, 0 if missing."""
        pass

    @abstractmethod
    async def get_token_account_balance(self, account: str) -> int:
        """Balance of a token account by its own address, 0 if missing."""
        pass

    @abstractmethod
    async def get_native_balance(self, address: str) -> int:
        """Native balance in lamports."""
        pass

    @abstractmethod
    async def transfer(self, recipient: str, amount: int, asset: str) -> str:
        """
        Transfer an amount of an asset from the keeper to a recipient.

        Args:
            recipient: Wallet address
            amount: Amount in base units
            asset: Mint address; the native mint means a lamport transfer

        Returns:
            Transaction signature
        """
        pass

    @abstractmethod
    async def transaction_landed(self, signature: str) -> bool:
        """Whether a transaction with this signature executed successfully."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Release network resources."""
        pass


class DiscoveryProvider(ABC):
    """Price and holder discovery."""

    @abstractmethod
    async def get_price(self, asset: str) -> Decimal:
        """USD price of one whole token of the asset."""
        pass

    @abstractmethod
    async def get_holders(self, token_mint: str, excluding: set[str]) -> HolderSnapshot:
        """
        Current holders of the token with their holding values.

        Args:
            token_mint: Mint to list holders for
            excluding: Addresses to leave out of the snapshot

        Returns:
            Snapshot ordered by balance, largest first
        """
        pass

    @abstractmethod
    async def resolve_symbol(self, symbol: str) -> str:
        """
        Resolve a ticker symbol to a mint address.

        Raises:
            ResolutionError: If no asset matches the symbol exactly
        """
        pass

    async def close(self) -> None:
        """Release network resources."""
        return None


class SocialSignalProvider(ABC):
    """Source of the weekly reward symbol."""

    @abstractmethod
    async def get_current_symbol(self) -> str | None:
        """Currently announced symbol, or None when nothing is announced."""
        pass

    async def close(self) -> None:
        """Release network resources."""
        return None


class SwapRouter(ABC):
    """Quote and execute swaps."""

    @abstractmethod
    async def quote(
        self, amount: int, from_asset: str, to_asset: str, slippage_bps: int
    ) -> SwapRoute:
        """
        Quote a swap.

        Raises:
            StaleQuoteError: If no route is available right now
        """
        pass

    @abstractmethod
    async def execute(self, route: SwapRoute) -> int:
        """
        Execute a quoted route.

        Returns:
            Amount of the output asset received

        Raises:
            StaleQuoteError: If the quote expired or slippage was exceeded
        """
        pass

    async def close(self) -> None:
        """Release network resources."""
        return None


__all__ = [
    "GatewayError",
    "GatewayConnectionError",
    "RateLimitError",
    "AuthenticationError",
    "TransactionError",
    "StaleQuoteError",
    "InsufficientFundsError",
    "VaultGateway",
    "DiscoveryProvider",
    "SocialSignalProvider",
    "SwapRouter",
]
