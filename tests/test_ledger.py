"""Tests for the fee ledger state machine."""
from __future__ import annotations

from decimal import Decimal

import pytest

from velo_settlement.exceptions import VeloNotFoundError
from velo_settlement.fees import calculate_fee
from velo_settlement.records import FEES, TRANSACTIONS, FeeType, TransactionStatus


async def _pending(ledger, **overrides):
    params = dict(
        user_id="user-1",
        from_address="0xsender",
        treasury_address="0xtreasury",
        amount=Decimal("0.001"),
        chain="ethereum",
        network="mainnet",
        original_transaction_id="tx-1",
    )
    params.update(overrides)
    return await ledger.create_pending(**params)


class TestCreatePending:
    @pytest.mark.asyncio
    async def test_stored_as_fee_collection_transaction(self, ledger, store):
        """Should persist the fee leg as a pending fee_collection row."""
        record = await _pending(ledger, fee_type=FeeType.SPLIT_PAYMENT)

        row = await store.find_one(TRANSACTIONS, {"id": record.id})
        assert row["type"] == "fee_collection"
        assert row["status"] == "pending"
        assert row["tx_hash"] == ""
        assert row["to_address"] == "0xtreasury"
        assert row["details"] == {
            "fee_type": "split_payment",
            "original_transaction_id": "tx-1",
            "is_fee_collection": True,
        }

    @pytest.mark.asyncio
    async def test_get_unknown(self, ledger):
        with pytest.raises(VeloNotFoundError):
            await ledger.get("missing")


class TestComplete:
    @pytest.mark.asyncio
    async def test_complete_sets_hash_and_timestamp(self, ledger):
        record = await _pending(ledger)

        done = await ledger.complete(record.id, "0xabc")

        assert done.status == TransactionStatus.CONFIRMED
        assert done.tx_hash == "0xabc"
        assert "completed_at" in done.details

    @pytest.mark.asyncio
    async def test_complete_is_idempotent(self, ledger, store):
        """Should leave a confirmed record untouched on a second completion."""
        record = await _pending(ledger)
        first = await ledger.complete(record.id, "0xabc")
        second = await ledger.complete(record.id, "0xabc")

        assert second.status == TransactionStatus.CONFIRMED
        assert second.tx_hash == "0xabc"
        assert second.details["completed_at"] == first.details["completed_at"]
        assert len(await store.find(TRANSACTIONS, {"type": "fee_collection"})) == 1

    @pytest.mark.asyncio
    async def test_complete_keeps_original_hash(self, ledger):
        record = await _pending(ledger)
        await ledger.complete(record.id, "0xfirst")

        again = await ledger.complete(record.id, "0xsecond")

        assert again.tx_hash == "0xfirst"

    @pytest.mark.asyncio
    async def test_complete_after_failure(self, ledger):
        """Should allow a retried fee transfer to confirm a failed record."""
        record = await _pending(ledger)
        await ledger.fail(record.id, "rpc down")

        done = await ledger.complete(record.id, "0xretry")

        assert done.status == TransactionStatus.CONFIRMED
        assert done.error is None


class TestFail:
    @pytest.mark.asyncio
    async def test_fail_records_error(self, ledger):
        record = await _pending(ledger)

        failed = await ledger.fail(record.id, "treasury not configured")

        assert failed.status == TransactionStatus.FAILED
        assert failed.error == "treasury not configured"
        assert "failed_at" in failed.details

    @pytest.mark.asyncio
    async def test_fail_never_downgrades_confirmed(self, ledger):
        record = await _pending(ledger)
        await ledger.complete(record.id, "0xabc")

        result = await ledger.fail(record.id, "late failure")

        assert result.status == TransactionStatus.CONFIRMED
        assert result.error is None


class TestListPending:
    @pytest.mark.asyncio
    async def test_only_pending_records(self, ledger):
        a = await _pending(ledger)
        b = await _pending(ledger, chain="stellar")
        c = await _pending(ledger)
        await ledger.complete(c.id, "0x1")

        assert {r.id for r in await ledger.list_pending()} == {a.id, b.id}
        assert [r.id for r in await ledger.list_pending(chain="stellar")] == [b.id]


class TestFeeRecords:
    @pytest.mark.asyncio
    async def test_record_fee_metadata(self, ledger, store):
        record = await ledger.record_fee(
            user_id="user-1",
            transaction_id="tx-1",
            calculation=calculate_fee(75),
            chain="ethereum",
            network="mainnet",
            onchain_tx_hash="0xabc",
        )

        row = await store.find_one(FEES, {"id": record.id})
        assert row["fee"] == "0.25"
        assert row["tier"] == "$51-$100"
        assert row["metadata"] == {
            "recipient_receives": "75",
            "sender_pays": "75.25",
            "onchain_tx_hash": "0xabc",
        }

    @pytest.mark.asyncio
    async def test_fee_stats(self, ledger):
        for amount in (75, 200, 2000):
            await ledger.record_fee(
                user_id="user-1",
                transaction_id=f"tx-{amount}",
                calculation=calculate_fee(amount),
                chain="ethereum",
                network="mainnet",
            )
        await ledger.record_fee(
            user_id="user-2",
            transaction_id="tx-other",
            calculation=calculate_fee(75),
            chain="ethereum",
            network="mainnet",
        )

        stats = await ledger.get_fee_stats(user_id="user-1")

        assert stats.transaction_count == 3
        assert stats.total_fees_collected == Decimal("11.25")
        assert stats.total_volume == Decimal("2275.00")
        assert stats.average_fee == Decimal("3.75")
        assert stats.effective_rate == Decimal("0.49")

    @pytest.mark.asyncio
    async def test_fee_stats_empty(self, ledger):
        stats = await ledger.get_fee_stats()
        assert stats.transaction_count == 0
        assert stats.average_fee == Decimal("0")
