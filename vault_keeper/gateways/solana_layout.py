"""
Binary layouts used by the Solana vault gateway.

Decoding of the vault account, SPL token accounts and mints, and encoding of
the vault program's instruction data. Kept free of network code so it can be
tested on plain bytes.

Vault account layout (Anchor, little-endian):

    discriminator       8
    authority           32
    keeper_authority    32
    owner_wallet        32
    token_mint          32
    launch_timestamp    i64   (0 = not launched)
    fee_finalized       bool
    current_fee_bps     u16
    fee_exclusions      u32 length + 32 * n
    reward_exclusions   u32 length + 32 * n
    reward_token        32
    last_reward_update  i64   (0 = never)
"""

import struct

from solders.pubkey import Pubkey

from vault_keeper.core.constants import TOKEN_ACCOUNT_BASE_SIZE, TRANSFER_FEE_AMOUNT_EXTENSION
from vault_keeper.core.models import (
    ExclusionList,
    ExclusionSet,
    LaunchState,
    RewardSelection,
    VaultState,
)
from vault_keeper.core.utils import account_discriminator, anchor_discriminator, timestamp_to_datetime

VAULT_ACCOUNT_NAME = "VaultState"

# SPL token account: mint(32) owner(32) amount(8) ...
TOKEN_ACCOUNT_AMOUNT_OFFSET = 64
# SPL mint: mint_authority option(36) supply(8) decimals(1) ...
MINT_DECIMALS_OFFSET = 44

# Account type byte that follows the base layout of an extended token account
ACCOUNT_TYPE_ACCOUNT = 2

# Exclusion list selector used by manage_exclusions
EXCLUSION_LIST_CODES = {ExclusionList.FEE: 0, ExclusionList.REWARD: 1}
EXCLUSION_ACTION_ADD = 0


class LayoutError(ValueError):
    """Account data does not match the expected layout."""

    pass


class _Reader:
    def __init__(self, data: bytes, offset: int = 0):
        self.data = data
        self.offset = offset

    def take(self, fmt: str) -> int:
        try:
            (value,) = struct.unpack_from(fmt, self.data, self.offset)
        except struct.error as e:
            raise LayoutError(f"Account data truncated at offset {self.offset}") from e
        self.offset += struct.calcsize(fmt)
        return value

    def pubkey(self) -> str:
        end = self.offset + 32
        if end > len(self.data):
            raise LayoutError(f"Account data truncated at offset {self.offset}")
        key = Pubkey.from_bytes(self.data[self.offset : end])
        self.offset = end
        return str(key)

    def pubkeys(self) -> list[str]:
        return [self.pubkey() for _ in range(self.take("<I"))]


def decode_vault_account(data: bytes) -> tuple[VaultState, ExclusionSet]:
    """
    Decode the vault account.

    Args:
        data: Raw account data including the discriminator

    Returns:
        Vault state and both exclusion lists

    Raises:
        LayoutError: If the data is not a vault account
    """
    if data[:8] != account_discriminator(VAULT_ACCOUNT_NAME):
        raise LayoutError("Account is not a vault account")

    reader = _Reader(data, 8)
    reader.pubkey()  # admin authority
    keeper_authority = reader.pubkey()
    owner_wallet = reader.pubkey()
    token_mint = reader.pubkey()
    launch_timestamp = reader.take("<q")
    fee_finalized = bool(reader.take("<B"))
    current_fee_bps = reader.take("<H")
    fee_exclusions = reader.pubkeys()
    reward_exclusions = reader.pubkeys()
    reward_token = reader.pubkey()
    last_reward_update = reader.take("<q")

    state = VaultState(
        token_mint=token_mint,
        owner_wallet=owner_wallet,
        keeper_authority=keeper_authority,
        launch=LaunchState(
            launch_timestamp=timestamp_to_datetime(launch_timestamp) if launch_timestamp else None,
            fee_finalized=fee_finalized,
            current_fee_bps=current_fee_bps,
        ),
        reward=RewardSelection(
            current_reward_asset=reward_token,
            last_check_timestamp=(
                timestamp_to_datetime(last_reward_update) if last_reward_update else None
            ),
        ),
    )
    exclusions = ExclusionSet(
        fee_exclusions=set(fee_exclusions),
        reward_exclusions=set(reward_exclusions),
    )
    return state, exclusions


def encode_vault_account(
    *,
    authority: str,
    keeper_authority: str,
    owner_wallet: str,
    token_mint: str,
    launch_timestamp: int,
    fee_finalized: bool,
    current_fee_bps: int,
    fee_exclusions: list[str],
    reward_exclusions: list[str],
    reward_token: str,
    last_reward_update: int = 0,
) -> bytes:
    """Inverse of ``decode_vault_account``, used to build fixtures."""

    def keys(values: list[str]) -> bytes:
        return struct.pack("<I", len(values)) + b"".join(
            bytes(Pubkey.from_string(value)) for value in values
        )

    return b"".join(
        [
            account_discriminator(VAULT_ACCOUNT_NAME),
            bytes(Pubkey.from_string(authority)),
            bytes(Pubkey.from_string(keeper_authority)),
            bytes(Pubkey.from_string(owner_wallet)),
            bytes(Pubkey.from_string(token_mint)),
            struct.pack("<q?H", launch_timestamp, fee_finalized, current_fee_bps),
            keys(fee_exclusions),
            keys(reward_exclusions),
            bytes(Pubkey.from_string(reward_token)),
            struct.pack("<q", last_reward_update),
        ]
    )


def token_account_amount(data: bytes) -> int:
    """Amount held by an SPL token account."""
    if len(data) < TOKEN_ACCOUNT_AMOUNT_OFFSET + 8:
        raise LayoutError("Not a token account")
    return struct.unpack_from("<Q", data, TOKEN_ACCOUNT_AMOUNT_OFFSET)[0]


def mint_decimals(data: bytes) -> int:
    """Decimals of an SPL mint."""
    if len(data) <= MINT_DECIMALS_OFFSET:
        raise LayoutError("Not a mint account")
    return data[MINT_DECIMALS_OFFSET]


def withheld_amount(data: bytes) -> int:
    """
    Transfer fees withheld on a Token-2022 account.

    Walks the extension TLV entries after the base account layout and returns
    the TransferFeeAmount value, or 0 when the account has no such extension.
    """
    if len(data) <= TOKEN_ACCOUNT_BASE_SIZE or data[TOKEN_ACCOUNT_BASE_SIZE] != ACCOUNT_TYPE_ACCOUNT:
        return 0

    offset = TOKEN_ACCOUNT_BASE_SIZE + 1
    while offset + 4 <= len(data):
        extension_type, length = struct.unpack_from("<HH", data, offset)
        offset += 4
        if extension_type == TRANSFER_FEE_AMOUNT_EXTENSION and length >= 8:
            return struct.unpack_from("<Q", data, offset)[0]
        if extension_type == 0 and length == 0:
            # Uninitialized padding
            break
        offset += length
    return 0


# ======== Instruction data ========


def update_transfer_fee_data(bps: int, finalize: bool) -> bytes:
    return anchor_discriminator("update_transfer_fee") + struct.pack("<H?", bps, finalize)


def manage_exclusions_data(list_type: ExclusionList, address: str) -> bytes:
    return (
        anchor_discriminator("manage_exclusions")
        + struct.pack("<BB", EXCLUSION_LIST_CODES[list_type], EXCLUSION_ACTION_ADD)
        + bytes(Pubkey.from_string(address))
    )


def harvest_fees_data(accounts: list[str]) -> bytes:
    return (
        anchor_discriminator("harvest_fees")
        + struct.pack("<I", len(accounts))
        + b"".join(bytes(Pubkey.from_string(account)) for account in accounts)
    )


def withdraw_fees_from_mint_data() -> bytes:
    return anchor_discriminator("withdraw_fees_from_mint")


def update_reward_token_data(address: str) -> bytes:
    return anchor_discriminator("update_reward_token") + bytes(Pubkey.from_string(address))
