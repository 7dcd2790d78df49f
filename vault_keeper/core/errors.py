"""
Error classes for the Vault Keeper.

Every error raised by a keeper component carries the operation that failed,
the address and amount involved and the number of attempts made, so a log
line is enough to tell what happened.
"""
from typing import Any


class KeeperError(Exception):
    """Base exception for all keeper errors."""

    def __init__(
        self,
        message: str,
        *,
        operation: str | None = None,
        address: str | None = None,
        amount: int | None = None,
        attempts: int = 0,
    ):
        super().__init__(message)
        self.message = message
        self.operation = operation
        self.address = address
        self.amount = amount
        self.attempts = attempts

    def context(self) -> dict[str, Any]:
        """Structured fields suitable for a log call."""
        return {
            "operation": self.operation,
            "address": self.address,
            "amount": self.amount,
            "attempts": self.attempts,
        }

    def __str__(self) -> str:
        details = ", ".join(
            f"{key}={value}" for key, value in self.context().items() if value not in (None, 0)
        )
        return f"{self.message} ({details})" if details else self.message


class TransientError(KeeperError):
    """Network, timeout, rate-limit or RPC congestion failure. Safe to retry."""

    pass


class PolicyViolationError(KeeperError):
    """Operation rejected locally before any remote call. Never retried."""

    pass


class FatalCycleError(KeeperError):
    """A cycle cannot continue, e.g. the swap retry budget is exhausted."""

    pass


class ResolutionError(KeeperError):
    """A reward symbol could not be resolved to an asset address."""

    pass
