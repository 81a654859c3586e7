"""
Fee ledger: durable fee records and the fee-transfer state machine.

    pending ──complete──▶ confirmed
       │                     ▲
       └──fail──▶ failed ────┘ (complete after a successful retry)

create_pending, complete and fail are the only writers of a fee
transfer's status. Both transitions are compare-and-set updates guarded by
the current status, so duplicate completions from retried background jobs
are no-ops and a confirmed record is never downgraded.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from .exceptions import VeloNotFoundError
from .fees import FeeCalculation, round_usd
from .persistence import RecordStore
from .records import (
    FEES,
    TRANSACTIONS,
    FeeRecord,
    FeeTransferRecord,
    FeeType,
    TransactionStatus,
    TransactionType,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FeeStats:
    transaction_count: int
    total_fees_collected: Decimal
    total_volume: Decimal
    average_fee: Decimal
    effective_rate: Decimal


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class FeeLedger:
    """Fee records and fee-transfer lifecycle over a RecordStore."""

    def __init__(self, store: RecordStore):
        self._store = store

    # ------------------------------------------------------------------
    # Fee transfer lifecycle
    # ------------------------------------------------------------------

    async def create_pending(
        self,
        *,
        user_id: str,
        from_address: str,
        treasury_address: str,
        amount: Decimal,
        chain: str,
        network: str,
        original_transaction_id: Optional[str] = None,
        fee_type: FeeType = FeeType.NORMAL_TRANSACTION,
        extra_details: Optional[Dict[str, Any]] = None,
    ) -> FeeTransferRecord:
        """Persist a new fee transfer in ``pending``.

        Args:
            amount: Fee in native token units
            original_transaction_id: Recipient payout this fee belongs to
        """
        details: Dict[str, Any] = {
            "fee_type": fee_type.value,
            "original_transaction_id": original_transaction_id,
            "is_fee_collection": True,
        }
        if extra_details:
            details.update(extra_details)

        record = FeeTransferRecord(
            user_id=user_id,
            from_address=from_address,
            treasury_address=treasury_address,
            amount=amount,
            chain=chain,
            network=network,
            details=details,
        )
        await self._store.save(TRANSACTIONS, record.to_row())
        logger.info(
            f"Fee transfer {record.id} pending: {amount} on {chain}/{network} "
            f"to {treasury_address or '<unresolved>'}"
        )
        return record

    async def get(self, record_id: str) -> FeeTransferRecord:
        row = await self._store.find_one(
            TRANSACTIONS,
            {"id": record_id, "type": TransactionType.FEE_COLLECTION.value},
        )
        if row is None:
            raise VeloNotFoundError("FeeTransferRecord", record_id)
        return FeeTransferRecord.from_row(row)

    async def complete(self, record_id: str, tx_hash: str) -> FeeTransferRecord:
        """Mark a fee transfer confirmed. No-op if it already is."""
        current = await self.get(record_id)
        if current.is_confirmed:
            if current.tx_hash != tx_hash:
                logger.warning(
                    f"Fee transfer {record_id} already confirmed with {current.tx_hash}; "
                    f"ignoring completion with {tx_hash}"
                )
            return current

        details = dict(current.details)
        details["completed_at"] = _now_iso()
        changed = await self._store.update(
            TRANSACTIONS,
            {
                "id": record_id,
                "status": [TransactionStatus.PENDING.value, TransactionStatus.FAILED.value],
            },
            {
                "status": TransactionStatus.CONFIRMED.value,
                "tx_hash": tx_hash,
                "error": None,
                "details": details,
            },
        )
        if changed:
            logger.info(f"Fee transfer {record_id} confirmed: {tx_hash}")
        # Lost the race to a concurrent completion: the stored row wins
        return await self.get(record_id)

    async def fail(self, record_id: str, error: str) -> FeeTransferRecord:
        """Mark a fee transfer failed. A confirmed record is left untouched."""
        current = await self.get(record_id)
        if current.is_confirmed:
            logger.warning(
                f"Ignoring failure for confirmed fee transfer {record_id}: {error}"
            )
            return current

        details = dict(current.details)
        details["failed_at"] = _now_iso()
        changed = await self._store.update(
            TRANSACTIONS,
            {
                "id": record_id,
                "status": [TransactionStatus.PENDING.value, TransactionStatus.FAILED.value],
            },
            {
                "status": TransactionStatus.FAILED.value,
                "error": error,
                "details": details,
            },
        )
        if changed:
            logger.error(f"Fee transfer {record_id} failed: {error}")
        return await self.get(record_id)

    async def list_pending(
        self,
        chain: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[FeeTransferRecord]:
        """Unresolved fee transfers, oldest first, for the sweeper."""
        criteria: Dict[str, Any] = {
            "type": TransactionType.FEE_COLLECTION.value,
            "status": TransactionStatus.PENDING.value,
        }
        if chain:
            criteria["chain"] = chain
        rows = await self._store.find(TRANSACTIONS, criteria, limit=limit)
        return [FeeTransferRecord.from_row(r) for r in rows]

    # ------------------------------------------------------------------
    # Fee records
    # ------------------------------------------------------------------

    async def record_fee(
        self,
        *,
        user_id: str,
        transaction_id: str,
        calculation: FeeCalculation,
        chain: str,
        network: str,
        fee_type: FeeType = FeeType.NORMAL_TRANSACTION,
        currency: str = "USD",
        description: str = "",
        onchain_tx_hash: Optional[str] = None,
    ) -> FeeRecord:
        metadata: Dict[str, Any] = {
            "recipient_receives": str(calculation.recipient_receives),
            "sender_pays": str(calculation.sender_pays),
        }
        if onchain_tx_hash:
            metadata["onchain_tx_hash"] = onchain_tx_hash

        record = FeeRecord(
            user_id=user_id,
            transaction_id=transaction_id,
            amount=calculation.amount,
            fee=calculation.fee,
            total=calculation.total,
            tier=calculation.tier,
            fee_percentage=calculation.fee_percentage,
            chain=chain,
            network=network,
            fee_type=fee_type,
            currency=currency,
            description=description,
            metadata=metadata,
        )
        await self._store.save(FEES, record.to_dict())
        return record

    async def get_fee_stats(
        self,
        *,
        user_id: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        chain: Optional[str] = None,
        network: Optional[str] = None,
    ) -> FeeStats:
        criteria: Dict[str, Any] = {}
        if user_id:
            criteria["user_id"] = user_id
        if chain:
            criteria["chain"] = chain
        if network:
            criteria["network"] = network
        fees = [FeeRecord.from_dict(r) for r in await self._store.find(FEES, criteria)]
        if start:
            fees = [f for f in fees if f.created_at >= start]
        if end:
            fees = [f for f in fees if f.created_at <= end]

        total_fees = sum((f.fee for f in fees), Decimal("0"))
        total_volume = sum((f.amount for f in fees), Decimal("0"))
        count = len(fees)
        return FeeStats(
            transaction_count=count,
            total_fees_collected=round_usd(total_fees),
            total_volume=round_usd(total_volume),
            average_fee=round_usd(total_fees / count) if count else Decimal("0"),
            effective_rate=round_usd(total_fees / total_volume * 100) if total_volume else Decimal("0"),
        )
