"""
Undistributed value ledger.

Harvested value that could not be sent (no eligible holders, failed
transfers, failed swaps) is written to a JSON file so it survives restarts.
Recorded amounts are carried into the next distribution of the same asset;
pending transfers are retried as-is on the next cycle.
"""

import os
from pathlib import Path

import structlog
from pydantic import BaseModel, Field

from vault_keeper.core.models import TransferInstruction, UndistributedRecord

logger = structlog.get_logger(__name__)


class LedgerContents(BaseModel):
    """On-disk layout of the ledger file."""

    records: list[UndistributedRecord] = Field(default_factory=list)
    pending_transfers: list[TransferInstruction] = Field(default_factory=list)
    # Instruction key to the signature of a send that was never confirmed
    unconfirmed: dict[str, str] = Field(default_factory=dict)


class UndistributedLedger:
    """JSON-file backed ledger of undistributed value and pending transfers."""

    def __init__(self, path: str | Path, persist: bool = True):
        self.path = Path(path)
        # Dry runs keep changes in memory only
        self.persist = persist
        self._contents = self._load()

    def _load(self) -> LedgerContents:
        if not self.path.exists():
            return LedgerContents()
        contents = LedgerContents.model_validate_json(self.path.read_text(encoding="utf-8"))
        logger.info(
            "Undistributed ledger loaded",
            path=str(self.path),
            records=len(contents.records),
            pending_transfers=len(contents.pending_transfers),
        )
        return contents

    def _save(self) -> None:
        if not self.persist:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp_path.write_text(self._contents.model_dump_json(indent=2), encoding="utf-8")
        os.replace(tmp_path, self.path)

    # ======== Undistributed records ========

    def record(self, record: UndistributedRecord) -> None:
        """Track an undistributed amount."""
        self._contents.records.append(record)
        self._save()
        logger.info(
            "Undistributed value recorded",
            asset=record.asset,
            amount=record.amount,
            reason=record.reason.value,
            plan_id=str(record.plan_id) if record.plan_id else None,
        )

    def records(self, asset: str | None = None) -> list[UndistributedRecord]:
        return [r for r in self._contents.records if asset is None or r.asset == asset]

    def total(self, asset: str) -> int:
        """Sum of recorded amounts for an asset."""
        return sum(record.amount for record in self.records(asset))

    def assets(self) -> list[str]:
        """Assets with recorded value, in first-recorded order."""
        seen: list[str] = []
        for record in self._contents.records:
            if record.asset not in seen:
                seen.append(record.asset)
        return seen

    def take(self, asset: str) -> int:
        """Remove all records for an asset and return their sum."""
        amount = self.total(asset)
        if amount:
            self._contents.records = [r for r in self._contents.records if r.asset != asset]
            self._save()
            logger.info("Undistributed value taken", asset=asset, amount=amount)
        return amount

    # ======== Pending transfers ========

    def pending_transfers(self) -> list[TransferInstruction]:
        return list(self._contents.pending_transfers)

    def pending_total(self, asset: str) -> int:
        return sum(t.amount for t in self._contents.pending_transfers if t.asset == asset)

    def add_pending(self, instructions: list[TransferInstruction]) -> None:
        """
        Queue transfers until they are executed.

        Distribution queues a whole plan before the first send and resolves
        each transfer as it lands, so an interrupted run leaves every unsent
        transfer here. A transfer already queued is not duplicated.
        """
        known = {t.key for t in self._contents.pending_transfers}
        added = [t for t in instructions if t.key not in known]
        if not added:
            return
        self._contents.pending_transfers.extend(added)
        self._save()
        logger.debug(
            "Transfers queued",
            count=len(added),
            amount=sum(t.amount for t in added),
        )

    def resolve_pending(self, instruction: TransferInstruction) -> None:
        """Drop a pending transfer once it has been executed or carried over."""
        remaining = [t for t in self._contents.pending_transfers if t.key != instruction.key]
        dropped = self._contents.unconfirmed.pop(instruction.key, None) is not None
        if len(remaining) != len(self._contents.pending_transfers) or dropped:
            self._contents.pending_transfers = remaining
            self._save()

    # ======== Unconfirmed sends ========

    def mark_unconfirmed(self, instruction: TransferInstruction, signature: str) -> None:
        """Remember a sent transfer whose outcome is unknown."""
        self._contents.unconfirmed[instruction.key] = signature
        self._save()
        logger.warning(
            "Transfer outcome unknown, will check before resending",
            recipient=instruction.recipient,
            amount=instruction.amount,
            signature=signature,
        )

    def unconfirmed_signature(self, instruction: TransferInstruction) -> str | None:
        return self._contents.unconfirmed.get(instruction.key)

    def forget_unconfirmed(self, instruction: TransferInstruction) -> None:
        if self._contents.unconfirmed.pop(instruction.key, None) is not None:
            self._save()

    def clear(self, asset: str | None = None) -> None:
        """Drop records and pending transfers, for one asset or for all."""
        if asset is None:
            self._contents = LedgerContents()
        else:
            self._contents.records = [r for r in self._contents.records if r.asset != asset]
            self._contents.pending_transfers = [
                t for t in self._contents.pending_transfers if t.asset != asset
            ]
            keys = {t.key for t in self._contents.pending_transfers}
            self._contents.unconfirmed = {
                key: signature
                for key, signature in self._contents.unconfirmed.items()
                if key in keys
            }
        self._save()
        logger.info("Undistributed ledger cleared", asset=asset)
