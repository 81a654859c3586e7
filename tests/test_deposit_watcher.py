"""Tests for deposit polling."""
from __future__ import annotations

import asyncio
from decimal import Decimal

import pytest

from conftest import SENDER, FakeExecutor, add_address
from velo_settlement.chains import ChainTag
from velo_settlement.deposit_watcher import DepositWatcher
from velo_settlement.exceptions import ProviderUnavailableError
from velo_settlement.executors.registry import ExecutorRegistry
from velo_settlement.notifications import NotificationType
from velo_settlement.records import USER_ADDRESSES


@pytest.fixture
def watcher(store, registry, emitter):
    return DepositWatcher(store, registry, notifier=emitter, interval_seconds=3600)


class TestScanOnce:
    @pytest.mark.asyncio
    async def test_detects_increase(self, watcher, store, vault, eth_executor, emitter, notifier):
        """Should notify the owner with the balance difference."""
        record = await add_address(store, vault, last_known_balance="1.5")
        eth_executor.balances[SENDER] = Decimal("2")

        assert await watcher.scan_once() == 1
        await emitter.drain()

        user, event, payload = notifier.events[0]
        assert (user, event) == ("user-1", NotificationType.DEPOSIT)
        assert payload["amount"] == "0.5"
        assert payload["currency"] == "ETH"
        row = await store.find_one(USER_ADDRESSES, {"id": record.id})
        assert row["last_known_balance"] == "2"

    @pytest.mark.asyncio
    async def test_no_deposit_on_same_or_lower_balance(self, watcher, store, vault, eth_executor, notifier):
        record = await add_address(store, vault, last_known_balance="3")
        eth_executor.balances[SENDER] = Decimal("2")

        assert await watcher.scan_once() == 0

        row = await store.find_one(USER_ADDRESSES, {"id": record.id})
        assert row["last_known_balance"] == "2"
        assert notifier.events == []

    @pytest.mark.asyncio
    async def test_first_scan_counts_existing_balance(self, watcher, store, vault, eth_executor):
        await add_address(store, vault)
        eth_executor.balances[SENDER] = Decimal("1")

        assert await watcher.scan_once() == 1
        assert await watcher.scan_once() == 0

    @pytest.mark.asyncio
    async def test_token_addresses_skipped(self, watcher, store, vault, eth_executor):
        await add_address(store, vault, chain="usdt_erc20")
        eth_executor.balances[SENDER] = Decimal("5")

        assert await watcher.scan_once() == 0
        assert watcher.errors == 0

    @pytest.mark.asyncio
    async def test_errors_skip_address(self, store, vault, emitter):
        """Should keep scanning when one address cannot be checked."""
        class Down(FakeExecutor):
            async def get_balance(self, address):
                raise ProviderUnavailableError("Horizon unavailable", provider="horizon")

        eth = FakeExecutor()
        eth.balances[SENDER] = Decimal("1")
        watcher = DepositWatcher(store, ExecutorRegistry([eth, Down(chain=ChainTag.STELLAR)]), notifier=emitter)
        await add_address(store, vault, address="GSTELLAR", chain="stellar")
        await add_address(store, vault, address="solana-address", chain="solana")
        await add_address(store, vault)

        assert await watcher.scan_once() == 1
        assert watcher.errors == 2


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_runs_first_scan(self, watcher, store, vault, eth_executor):
        await add_address(store, vault)
        eth_executor.balances[SENDER] = Decimal("1")

        await watcher.start()
        try:
            for _ in range(50):
                if watcher.scans:
                    break
                await asyncio.sleep(0.01)
            status = watcher.status()
        finally:
            await watcher.stop()

        assert status["running"]
        assert status["scans"] == 1
        assert status["deposits_detected"] == 1
        assert status["last_run_at"] is not None
        assert not watcher.status()["running"]
