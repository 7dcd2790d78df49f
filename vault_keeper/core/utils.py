"""
Utility functions for the Vault Keeper.

This module provides the arithmetic and conversion helpers used throughout the
application: lamport/SOL conversion, basis-point helpers, the proportional
split used for holder rewards, batching, instruction discriminators and
weekly-window time calculations.
"""
import hashlib
import re
from collections.abc import Iterable, Iterator, Mapping, Sequence
from datetime import datetime, timedelta, timezone
from decimal import ROUND_DOWN, Decimal
from typing import TypeVar, Union

from vault_keeper.core.constants import BASIS_POINTS_DENOMINATOR, LAMPORTS_PER_SOL

T = TypeVar("T")

# Cashtag as it appears in a post, e.g. "$BONK"
CASHTAG_PATTERN = re.compile(r"\$([A-Z][A-Z0-9]*)")


def lamports_to_sol(lamports: int) -> Decimal:
    """
    Convert lamports to SOL.

    Args:
        lamports: Amount in lamports

    Returns:
        Equivalent amount in SOL as a Decimal
    """
    return Decimal(lamports) / Decimal(LAMPORTS_PER_SOL)


def sol_to_lamports(sol_amount: Union[Decimal, str, int]) -> int:
    """
    Convert SOL to lamports, truncating sub-lamport precision.

    Args:
        sol_amount: Amount in SOL

    Returns:
        Equivalent amount in lamports as an integer
    """
    lamports = Decimal(str(sol_amount)) * Decimal(LAMPORTS_PER_SOL)
    return int(lamports.to_integral_value(rounding=ROUND_DOWN))


def to_base_units(amount: Union[Decimal, str], decimals: int) -> int:
    """Convert a UI amount to raw token units."""
    scaled = Decimal(str(amount)) * (Decimal(10) ** decimals)
    return int(scaled.to_integral_value(rounding=ROUND_DOWN))


def from_base_units(amount: int, decimals: int) -> Decimal:
    """Convert raw token units to a UI amount."""
    return Decimal(amount) / (Decimal(10) ** decimals)


def format_sol_amount(lamports: int, include_symbol: bool = True) -> str:
    """
    Format a lamport amount as SOL with 9 decimal places.

    Args:
        lamports: Amount in lamports
        include_symbol: Whether to append the "SOL" suffix

    Returns:
        Formatted string
    """
    formatted = f"{lamports_to_sol(lamports):.9f}"
    return f"{formatted} SOL" if include_symbol else formatted


def bps_to_percentage(bps: int) -> Decimal:
    """Convert basis points to a percentage, e.g. 3000 -> 30."""
    return Decimal(bps) * Decimal(100) / Decimal(BASIS_POINTS_DENOMINATOR)


def apply_bps(amount: int, bps: int) -> int:
    """Return floor(amount * bps / 10000)."""
    return amount * bps // BASIS_POINTS_DENOMINATOR


def split_proportional(total: int, weights: Mapping[str, int]) -> dict[str, int]:
    """
    Split an integer amount proportionally to integer weights.

    Each key receives floor(total * weight / sum(weights)). The units lost to
    flooring are handed out one at a time to the keys with the largest
    fractional remainder, ties going to the key listed first, so the result
    always sums exactly to ``total``.

    Args:
        total: Amount to split, in base units
        weights: Mapping of key to non-negative weight

    Returns:
        Mapping of key to its share; keys with zero weight receive 0

    Raises:
        ValueError: If total or any weight is negative
    """
    if total < 0:
        raise ValueError("Total must be non-negative")
    if any(weight < 0 for weight in weights.values()):
        raise ValueError("Weights must be non-negative")

    weight_sum = sum(weights.values())
    if weight_sum == 0 or total == 0:
        return {key: 0 for key in weights}

    shares: dict[str, int] = {}
    remainders: list[tuple[int, int, str]] = []
    for index, (key, weight) in enumerate(weights.items()):
        share, remainder = divmod(total * weight, weight_sum)
        shares[key] = share
        if weight > 0:
            remainders.append((-remainder, index, key))

    leftover = total - sum(shares.values())
    for _, _, key in sorted(remainders)[:leftover]:
        shares[key] += 1

    return shares


def chunked(items: Sequence[T], size: int) -> Iterator[list[T]]:
    """
    Yield consecutive chunks of at most ``size`` items.

    Raises:
        ValueError: If size is not positive
    """
    if size <= 0:
        raise ValueError("Chunk size must be positive")
    for start in range(0, len(items), size):
        yield list(items[start : start + size])


def anchor_discriminator(instruction_name: str) -> bytes:
    """
    Compute the 8-byte Anchor instruction discriminator.

    Args:
        instruction_name: Snake-case instruction name, e.g. "update_fee"

    Returns:
        First 8 bytes of sha256("global:<name>")
    """
    return hashlib.sha256(f"global:{instruction_name}".encode()).digest()[:8]


def account_discriminator(account_name: str) -> bytes:
    """Compute the 8-byte Anchor account discriminator."""
    return hashlib.sha256(f"account:{account_name}".encode()).digest()[:8]


def extract_cashtag(text: str) -> str | None:
    """Return the first ``$SYMBOL`` found in text, without the dollar sign."""
    match = CASHTAG_PATTERN.search(text or "")
    return match.group(1) if match else None


def unique(items: Iterable[T]) -> list[T]:
    """Deduplicate while keeping first-seen order."""
    seen: set = set()
    result = []
    for item in items:
        if item not in seen:
            seen.add(item)
            result.append(item)
    return result


def ensure_utc(dt: datetime) -> datetime:
    """Attach UTC to naive datetimes, convert aware ones to UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def timestamp_to_datetime(timestamp: Union[int, float]) -> datetime:
    """
    Convert a Unix timestamp to a datetime object.

    Args:
        timestamp: Unix timestamp (seconds since epoch)

    Returns:
        Equivalent datetime object (UTC)
    """
    return datetime.fromtimestamp(timestamp, tz=timezone.utc)


def datetime_to_timestamp(dt: datetime) -> int:
    """
    Convert a datetime object to a Unix timestamp.

    Args:
        dt: Datetime object; naive values are taken as UTC

    Returns:
        Unix timestamp (seconds since epoch)
    """
    return int(ensure_utc(dt).timestamp())


def weekly_occurrence(now: datetime, weekday: int, hour: int, minute: int) -> datetime:
    """
    Return this week's occurrence of a weekly wall-clock time.

    The result is in the same week as ``now`` (weeks start on Monday) and may
    lie in the past.
    """
    now = ensure_utc(now)
    week_start = (now - timedelta(days=now.weekday())).replace(
        hour=0, minute=0, second=0, microsecond=0
    )
    return week_start + timedelta(days=weekday, hours=hour, minutes=minute)


def next_weekly_occurrence(now: datetime, weekday: int, hour: int, minute: int) -> datetime:
    """
    Return the next occurrence of a weekly wall-clock time at or after ``now``.

    Args:
        now: Reference time
        weekday: Day of week, Monday is 0
        hour: Hour of day (UTC)
        minute: Minute of hour

    Returns:
        Datetime of the next occurrence (UTC)
    """
    now = ensure_utc(now)
    occurrence = weekly_occurrence(now, weekday, hour, minute)
    if occurrence < now:
        occurrence += timedelta(days=7)
    return occurrence


def seconds_between(start: datetime, end: datetime) -> float:
    """Signed number of seconds from start to end."""
    return (ensure_utc(end) - ensure_utc(start)).total_seconds()
