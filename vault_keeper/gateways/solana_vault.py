"""
Solana vault gateway for the Vault Keeper.

This module implements the VaultGateway interface on top of the Solana RPC
(``solana`` AsyncClient) and ``solders`` types. Vault instructions are
Anchor-style (8-byte discriminator + Borsh arguments); transactions are
compiled as v0 messages with compute-budget instructions and signed by the
keeper keypair.

Read calls are retried on transient errors. Sends are not retried here; the
calling component decides whether a failed send is retried. A send whose
outcome is unknown raises UnconfirmedTransactionError, which is never
transient.
"""

import asyncio
import json
from pathlib import Path
from typing import Any

import httpx
import structlog
from solana.exceptions import SolanaRpcException
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Commitment
from solana.rpc.core import RPCException, UnconfirmedTxError
from solana.rpc.types import MemcmpOpts, TxOpts
from solders.compute_budget import set_compute_unit_limit, set_compute_unit_price
from solders.instruction import AccountMeta, Instruction
from solders.keypair import Keypair
from solders.message import MessageV0
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.system_program import TransferParams
from solders.system_program import transfer as system_transfer
from solders.transaction import VersionedTransaction
from spl.token.instructions import (
    TransferCheckedParams,
    create_idempotent_associated_token_account,
    get_associated_token_address,
    transfer_checked,
)
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from vault_keeper.config import SolanaConfig
from vault_keeper.core.constants import (
    HARVEST_BATCH_LIMIT,
    MAX_REMOTE_ATTEMPTS,
    NATIVE_MINT,
    TOKEN_2022_PROGRAM_ID,
    VAULT_SEED,
)
from vault_keeper.core.errors import PolicyViolationError, TransientError
from vault_keeper.core.models import ExclusionList, ExclusionSet, FeeAccount, VaultState
from vault_keeper.gateways import (
    AuthenticationError,
    GatewayConnectionError,
    GatewayError,
    InsufficientFundsError,
    RateLimitError,
    TransactionError,
    UnconfirmedTransactionError,
    VaultGateway,
)
from vault_keeper.gateways import solana_layout as layout

logger = structlog.get_logger(__name__)


def load_keypair(config: SolanaConfig) -> Keypair:
    """
    Load the keeper keypair.

    The base58 secret in ``config.keypair`` wins over ``config.keypair_path``,
    which points at a JSON array of secret key bytes (solana-keygen format).

    Raises:
        AuthenticationError: If no usable keypair is configured
    """
    if config.keypair is not None:
        try:
            return Keypair.from_base58_string(config.keypair.get_secret_value())
        except ValueError as e:
            raise AuthenticationError("Configured keeper keypair is not valid base58") from e

    if config.keypair_path:
        path = Path(config.keypair_path).expanduser()
        try:
            secret = json.loads(path.read_text(encoding="utf-8"))
            return Keypair.from_bytes(bytes(secret))
        except (OSError, ValueError) as e:
            raise AuthenticationError(f"Cannot load keeper keypair from {path}") from e

    raise AuthenticationError("No keeper keypair configured")


def _executed(statuses_resp: Any) -> bool:
    """Whether a get_signature_statuses response shows a successful transaction."""
    status = statuses_resp.value[0] if statuses_resp.value else None
    return status is not None and status.err is None


def derive_vault_address(program_id: str, token_mint: str) -> Pubkey:
    vault, _ = Pubkey.find_program_address(
        [VAULT_SEED, bytes(Pubkey.from_string(token_mint))],
        Pubkey.from_string(program_id),
    )
    return vault


class SolanaVaultGateway(VaultGateway):
    """VaultGateway implementation backed by a Solana RPC node."""

    def __init__(self, config: SolanaConfig, keypair: Keypair | None = None):
        """
        Initialize the gateway.

        Args:
            config: Solana section of the application config
            keypair: Keeper keypair (default: loaded from config)
        """
        self.config = config
        self.keypair = keypair or load_keypair(config)
        self.commitment = Commitment(config.commitment)
        self.program_id = Pubkey.from_string(config.vault_program_id)
        self.token_mint = Pubkey.from_string(config.token_mint)
        self.vault = derive_vault_address(config.vault_program_id, config.token_mint)
        self.request_timeout = config.request_timeout
        self.client = AsyncClient(
            config.rpc_url, commitment=self.commitment, timeout=config.request_timeout
        )
        # Mint owner program and decimals never change
        self._mint_info: dict[str, tuple[Pubkey, int]] = {}

    @property
    def keeper_address(self) -> str:
        return str(self.keypair.pubkey())

    @property
    def vault_address(self) -> str:
        return str(self.vault)

    async def close(self) -> None:
        await self.client.close()

    # ======== Error handling ========

    def _map_rpc_error(self, operation: str, e: Exception) -> GatewayError:
        message = str(e)
        lowered = message.lower()
        if "429" in message or "too many requests" in lowered:
            return RateLimitError(f"RPC rate limit exceeded: {message}", operation=operation)
        if "blockhash not found" in lowered or "node is behind" in lowered:
            return GatewayConnectionError(f"RPC node not ready: {message}", operation=operation)
        if "insufficient" in lowered:
            return InsufficientFundsError(f"Insufficient funds: {message}", operation=operation)
        return TransactionError(f"RPC error: {message}", operation=operation)

    async def _call(self, operation: str, func: Any, *args: Any, **kwargs: Any) -> Any:
        """
        Call an RPC method and translate its failures into gateway errors.

        Raises:
            GatewayConnectionError: On timeouts and transport failures
            GatewayError: On RPC error responses
        """
        try:
            return await asyncio.wait_for(func(*args, **kwargs), timeout=self.request_timeout)
        except asyncio.TimeoutError as e:
            raise GatewayConnectionError(
                f"RPC call timed out after {self.request_timeout}s", operation=operation
            ) from e
        except (SolanaRpcException, httpx.HTTPError) as e:
            raise GatewayConnectionError(f"RPC connection failed: {e}", operation=operation) from e
        except RPCException as e:
            raise self._map_rpc_error(operation, e) from e

    @retry(
        retry=retry_if_exception_type(TransientError),
        stop=stop_after_attempt(MAX_REMOTE_ATTEMPTS),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        reraise=True,
    )
    async def _read(self, operation: str, func: Any, *args: Any, **kwargs: Any) -> Any:
        return await self._call(operation, func, *args, **kwargs)

    # ======== Reads ========

    async def _account_data(self, operation: str, address: Pubkey) -> bytes | None:
        resp = await self._read(
            operation, self.client.get_account_info, address, self.commitment, encoding="base64"
        )
        if resp.value is None:
            return None
        return bytes(resp.value.data)

    async def _vault_account(self) -> tuple[VaultState, ExclusionSet]:
        data = await self._account_data("fetch_state", self.vault)
        if data is None:
            raise GatewayError(
                "Vault account not found", operation="fetch_state", address=self.vault_address
            )
        try:
            return layout.decode_vault_account(data)
        except layout.LayoutError as e:
            raise GatewayError(
                f"Cannot decode vault account: {e}",
                operation="fetch_state",
                address=self.vault_address,
            ) from e

    async def fetch_state(self) -> VaultState:
        state, _ = await self._vault_account()
        return state

    async def fetch_exclusions(self) -> ExclusionSet:
        _, exclusions = await self._vault_account()
        return exclusions

    async def get_native_balance(self, address: str) -> int:
        resp = await self._read(
            "get_native_balance", self.client.get_balance, Pubkey.from_string(address), self.commitment
        )
        return resp.value

    async def get_token_account_balance(self, account: str) -> int:
        data = await self._account_data("get_token_account_balance", Pubkey.from_string(account))
        if data is None:
            return 0
        return layout.token_account_amount(data)

    async def get_token_balance(self, owner: str, mint: str) -> int:
        token_program, _ = await self._mint(mint)
        account = get_associated_token_address(
            Pubkey.from_string(owner), Pubkey.from_string(mint), token_program
        )
        return await self.get_token_account_balance(str(account))

    async def find_fee_accounts(self) -> list[FeeAccount]:
        resp = await self._read(
            "find_fee_accounts",
            self.client.get_program_accounts,
            Pubkey.from_string(TOKEN_2022_PROGRAM_ID),
            self.commitment,
            encoding="base64",
            filters=[MemcmpOpts(offset=0, bytes=str(self.token_mint))],
        )
        accounts = []
        for keyed in resp.value:
            withheld = layout.withheld_amount(bytes(keyed.account.data))
            if withheld > 0:
                accounts.append(FeeAccount(address=str(keyed.pubkey), withheld_amount=withheld))
        return accounts

    async def _mint(self, mint: str) -> tuple[Pubkey, int]:
        """Owner program and decimals of a mint."""
        if mint not in self._mint_info:
            resp = await self._read(
                "get_mint", self.client.get_account_info, Pubkey.from_string(mint), self.commitment
            )
            if resp.value is None:
                raise GatewayError("Mint not found", operation="get_mint", address=mint)
            self._mint_info[mint] = (resp.value.owner, layout.mint_decimals(bytes(resp.value.data)))
        return self._mint_info[mint]

    # ======== Transactions ========

    def _keeper_meta(self) -> AccountMeta:
        return AccountMeta(pubkey=self.keypair.pubkey(), is_signer=True, is_writable=True)

    def _vault_meta(self, writable: bool = True) -> AccountMeta:
        return AccountMeta(pubkey=self.vault, is_signer=False, is_writable=writable)

    def _vault_instruction(self, data: bytes, accounts: list[AccountMeta]) -> Instruction:
        return Instruction(program_id=self.program_id, data=data, accounts=accounts)

    async def _send(self, operation: str, instructions: list[Instruction]) -> str:
        """Compile, sign, send and confirm a transaction. Returns the signature."""
        blockhash_resp = await self._read(
            operation, self.client.get_latest_blockhash, self.commitment
        )
        message = MessageV0.try_compile(
            payer=self.keypair.pubkey(),
            instructions=[
                set_compute_unit_limit(self.config.compute_unit_limit),
                set_compute_unit_price(self.config.priority_fee_micro_lamports),
                *instructions,
            ],
            address_lookup_table_accounts=[],
            recent_blockhash=blockhash_resp.value.blockhash,
        )
        transaction = VersionedTransaction(message, [self.keypair])
        return await self.send_signed(operation, transaction)

    async def sign_and_send(self, operation: str, raw_transaction: bytes) -> str:
        """
        Sign a serialized transaction built elsewhere (e.g. by a swap API) and send it.

        Returns:
            Transaction signature
        """
        unsigned = VersionedTransaction.from_bytes(raw_transaction)
        transaction = VersionedTransaction(unsigned.message, [self.keypair])
        return await self.send_signed(operation, transaction)

    async def send_signed(self, operation: str, transaction: VersionedTransaction) -> str:
        """
        Send a signed transaction and wait for confirmation.

        The signature is fixed once the transaction is signed. When the send
        fails without an answer from the node the transaction may still have
        been submitted, so it is looked up by signature and reported as
        unconfirmed rather than as a retryable connection error.

        Raises:
            UnconfirmedTransactionError: When the outcome cannot be determined
            GatewayError: When the node rejected the transaction
        """
        signature: Signature = transaction.signatures[0]
        try:
            await self._call(
                operation,
                self.client.send_transaction,
                transaction,
                opts=TxOpts(skip_preflight=False, preflight_commitment=self.commitment),
            )
        except GatewayConnectionError as e:
            if isinstance(e.__cause__, RPCException):
                # Rejected in preflight, nothing was submitted
                raise
            if not await self._landed_after_send_failure(operation, signature):
                raise UnconfirmedTransactionError(
                    f"Transaction {signature} sent without a response: {e}",
                    operation=operation,
                    signature=str(signature),
                ) from e
            logger.info(
                "Transaction landed despite send failure",
                operation=operation,
                signature=str(signature),
            )
        await self._confirm(operation, signature)
        return str(signature)

    async def _landed_after_send_failure(self, operation: str, signature: Signature) -> bool:
        try:
            return await self._signature_landed(operation, signature)
        except GatewayError as e:
            logger.warning(
                "Cannot look up transaction status",
                operation=operation,
                signature=str(signature),
                error=str(e),
            )
            return False

    async def _signature_landed(self, operation: str, signature: Signature) -> bool:
        resp = await self._call(
            operation,
            self.client.get_signature_statuses,
            [signature],
            search_transaction_history=True,
        )
        return _executed(resp)

    async def transaction_landed(self, signature: str) -> bool:
        resp = await self._read(
            "transaction_landed",
            self.client.get_signature_statuses,
            [Signature.from_string(signature)],
            search_transaction_history=True,
        )
        return _executed(resp)

    async def transaction_fee(self, signature: str) -> int:
        """Network fee paid by a confirmed transaction, in lamports."""
        resp = await self._read(
            "transaction_fee",
            self.client.get_transaction,
            Signature.from_string(signature),
            "json",
            self.commitment,
            0,
        )
        if resp.value is None or resp.value.transaction.meta is None:
            return 0
        return resp.value.transaction.meta.fee

    async def _confirm(self, operation: str, signature: Signature) -> None:
        try:
            resp = await self._call(
                operation, self.client.confirm_transaction, signature, self.commitment
            )
        except (UnconfirmedTxError, GatewayConnectionError) as e:
            # The transaction may still land
            raise UnconfirmedTransactionError(
                f"Transaction {signature} not confirmed: {e}",
                operation=operation,
                signature=str(signature),
            ) from e

        status = resp.value[0] if resp.value else None
        if status is not None and status.err is not None:
            raise TransactionError(
                f"Transaction {signature} failed: {status.err}", operation=operation
            )

    async def update_fee(self, bps: int, finalize: bool) -> str:
        instruction = self._vault_instruction(
            layout.update_transfer_fee_data(bps, finalize),
            [
                self._vault_meta(),
                self._keeper_meta(),
                AccountMeta(pubkey=self.token_mint, is_signer=False, is_writable=True),
                AccountMeta(
                    pubkey=Pubkey.from_string(TOKEN_2022_PROGRAM_ID),
                    is_signer=False,
                    is_writable=False,
                ),
            ],
        )
        return await self._send("update_fee", [instruction])

    async def add_exclusion(self, list_type: ExclusionList, address: str) -> str:
        instruction = self._vault_instruction(
            layout.manage_exclusions_data(list_type, address),
            [self._vault_meta(), self._keeper_meta()],
        )
        return await self._send("add_exclusion", [instruction])

    async def update_reward_asset(self, address: str) -> str:
        instruction = self._vault_instruction(
            layout.update_reward_token_data(address),
            [self._vault_meta(), self._keeper_meta()],
        )
        return await self._send("update_reward_asset", [instruction])

    async def harvest(self, accounts: list[str]) -> int:
        """
        Harvest withheld fees from up to 20 accounts into the keeper's token account.

        Returns:
            Increase of the keeper's token balance
        """
        if not 0 < len(accounts) <= HARVEST_BATCH_LIMIT:
            raise PolicyViolationError(
                f"Harvest batch must hold 1 to {HARVEST_BATCH_LIMIT} accounts, got {len(accounts)}",
                operation="harvest",
            )

        token_program = Pubkey.from_string(TOKEN_2022_PROGRAM_ID)
        keeper = self.keypair.pubkey()
        destination = get_associated_token_address(keeper, self.token_mint, token_program)
        mint_meta = AccountMeta(pubkey=self.token_mint, is_signer=False, is_writable=True)
        program_meta = AccountMeta(pubkey=token_program, is_signer=False, is_writable=False)

        instructions = [
            create_idempotent_associated_token_account(
                keeper, keeper, self.token_mint, token_program_id=token_program
            ),
            self._vault_instruction(
                layout.harvest_fees_data(accounts),
                [
                    self._vault_meta(),
                    self._keeper_meta(),
                    mint_meta,
                    program_meta,
                    *(
                        AccountMeta(
                            pubkey=Pubkey.from_string(account), is_signer=False, is_writable=True
                        )
                        for account in accounts
                    ),
                ],
            ),
            self._vault_instruction(
                layout.withdraw_fees_from_mint_data(),
                [
                    self._vault_meta(),
                    self._keeper_meta(),
                    mint_meta,
                    AccountMeta(pubkey=destination, is_signer=False, is_writable=True),
                    program_meta,
                ],
            ),
        ]

        before = await self.get_token_account_balance(str(destination))
        signature = await self._send("harvest", instructions)
        after = await self.get_token_account_balance(str(destination))
        harvested = max(after - before, 0)
        logger.debug("Harvest transaction confirmed", signature=signature, amount=harvested)
        return harvested

    async def transfer(self, recipient: str, amount: int, asset: str) -> str:
        keeper = self.keypair.pubkey()
        try:
            destination_owner = Pubkey.from_string(recipient)
        except ValueError as e:
            raise PolicyViolationError(
                f"Invalid recipient address: {e}",
                operation="transfer",
                address=recipient,
                amount=amount,
            ) from e

        if asset == NATIVE_MINT:
            instructions = [
                system_transfer(
                    TransferParams(from_pubkey=keeper, to_pubkey=destination_owner, lamports=amount)
                )
            ]
            return await self._send("transfer", instructions)

        mint = Pubkey.from_string(asset)
        token_program, decimals = await self._mint(asset)
        source = get_associated_token_address(keeper, mint, token_program)
        destination = get_associated_token_address(destination_owner, mint, token_program)
        instructions = [
            create_idempotent_associated_token_account(
                keeper, destination_owner, mint, token_program_id=token_program
            ),
            transfer_checked(
                TransferCheckedParams(
                    program_id=token_program,
                    source=source,
                    mint=mint,
                    dest=destination,
                    owner=keeper,
                    amount=amount,
                    decimals=decimals,
                    signers=[],
                )
            ),
        ]
        return await self._send("transfer", instructions)


__all__ = ["SolanaVaultGateway", "derive_vault_address", "load_keypair"]
