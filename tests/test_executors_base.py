"""Tests for the executor contract and registry."""
from __future__ import annotations

import asyncio
from decimal import Decimal

import pytest

from conftest import FakeExecutor
from velo_settlement.chains import ChainFamily, ChainTag, Network
from velo_settlement.config import VeloSettings
from velo_settlement.exceptions import (
    ConfirmationTimeoutError,
    ExecutorNotConfiguredError,
    UnsupportedChainError,
    VeloValidationError,
)
from velo_settlement.executors import EXECUTOR_FACTORIES, build_registry
from velo_settlement.executors.base import (
    OutputKind,
    OutputResult,
    OutputStatus,
    TransferOutput,
    TransferResult,
)
from velo_settlement.executors.evm import EvmExecutor
from velo_settlement.executors.registry import ExecutorRegistry
from velo_settlement.key_vault import SigningMaterial

MATERIAL = SigningMaterial("secret")


class TestOutputStatus:
    def test_sent_unconfirmed_counts_as_paid(self):
        assert OutputStatus.CONFIRMED.succeeded
        assert OutputStatus.SENT_UNCONFIRMED.succeeded
        assert not OutputStatus.FAILED.succeeded
        assert not OutputStatus.SKIPPED.succeeded

    def test_transfer_result_views(self):
        recipient = TransferOutput("a", Decimal("1"))
        fee = TransferOutput("t", Decimal("0.01"), OutputKind.FEE)
        result = TransferResult("0x1", [
            OutputResult(recipient, OutputStatus.CONFIRMED, "0x1"),
            OutputResult(fee, OutputStatus.SKIPPED),
        ])

        assert [r.to for r in result.recipient_results] == ["a"]
        assert result.fee_result.status == OutputStatus.SKIPPED
        assert [r.to for r in result.confirmed_outputs] == ["a"]


class TestTransferBatch:
    @pytest.mark.asyncio
    async def test_failures_stay_with_their_output(self):
        """Should report a failed output without aborting the rest."""
        executor = FakeExecutor(raise_for={"c"})
        outputs = [TransferOutput(to, Decimal("1")) for to in "abcde"]

        results = await executor.transfer_batch("sender", MATERIAL, outputs)

        statuses = [r.outputs[0].status for r in results]
        assert statuses == [OutputStatus.CONFIRMED] * 2 + [OutputStatus.FAILED] + [OutputStatus.CONFIRMED] * 2
        assert results[2].tx_hash is None
        assert "rejected by node" in results[2].outputs[0].error
        assert len(executor.calls) == 5

    @pytest.mark.asyncio
    async def test_unexpected_errors_are_isolated(self):
        class Crashing(FakeExecutor):
            async def transfer(self, from_address, signing_material, outputs):
                if outputs[0].to == "b":
                    raise KeyError("boom")
                return await super().transfer(from_address, signing_material, outputs)

        results = await Crashing().transfer_batch(
            "sender", MATERIAL, [TransferOutput("a", Decimal("1")), TransferOutput("b", Decimal("1"))]
        )

        assert [r.outputs[0].status for r in results] == [OutputStatus.CONFIRMED, OutputStatus.FAILED]


class TestAwaitConfirmation:
    @pytest.mark.asyncio
    async def test_confirmed(self):
        async def included():
            return None

        status = await FakeExecutor()._await_confirmation("0x1", included(), timeout=1)
        assert status == OutputStatus.CONFIRMED

    @pytest.mark.asyncio
    async def test_timeout_keeps_hash_as_sent(self):
        """Should downgrade a slow confirmation to sent_unconfirmed instead of failing."""
        async def never():
            await asyncio.sleep(10)

        status = await FakeExecutor()._await_confirmation("0x1", never(), timeout=0.01)
        assert status == OutputStatus.SENT_UNCONFIRMED

    @pytest.mark.asyncio
    async def test_confirmation_timeout_error(self):
        async def gives_up():
            raise ConfirmationTimeoutError("0x1", "stellar", 30)

        status = await FakeExecutor()._await_confirmation("0x1", gives_up(), timeout=1)
        assert status == OutputStatus.SENT_UNCONFIRMED


class TestRequireOutputs:
    def test_rejects_empty_and_non_positive(self):
        executor = FakeExecutor()
        with pytest.raises(VeloValidationError):
            executor._require_outputs([])
        with pytest.raises(VeloValidationError):
            executor._require_outputs([TransferOutput("a", Decimal("0"))])
        with pytest.raises(VeloValidationError):
            executor._require_outputs([TransferOutput("", Decimal("1"))])


class TestRegistry:
    def test_dispatch_by_chain_string(self):
        eth = FakeExecutor()
        btc = FakeExecutor(chain=ChainTag.BITCOIN, network=Network.TESTNET)
        registry = ExecutorRegistry([eth, btc])

        assert registry.get("ETH", "mainnet") is eth
        assert registry.get("btc", "testnet") is btc
        assert len(registry) == 2

    def test_missing_executor(self):
        registry = ExecutorRegistry([FakeExecutor()])
        with pytest.raises(ExecutorNotConfiguredError):
            registry.get("solana", "mainnet")
        assert not registry.has("ethereum", "testnet")

    def test_unknown_chain_string(self):
        with pytest.raises(UnsupportedChainError):
            ExecutorRegistry().get("dogecoin", "mainnet")

    def test_verify_names_every_missing_pair(self):
        """Should fail startup listing all chains without an executor."""
        registry = ExecutorRegistry([FakeExecutor()])
        with pytest.raises(ExecutorNotConfiguredError) as exc_info:
            registry.verify([("ethereum", "mainnet"), ("stellar", "mainnet"), ("dot", "testnet")])
        assert "stellar/mainnet" in exc_info.value.message
        assert "polkadot/testnet" in exc_info.value.message

    def test_verify_passes(self):
        ExecutorRegistry([FakeExecutor()]).verify([("eth", "mainnet")])


class TestBuildRegistry:
    def test_factory_per_family(self):
        assert set(EXECUTOR_FACTORIES) == set(ChainFamily)

    def test_builds_enabled_chains(self):
        settings = VeloSettings(enabled_chains=["ethereum", "usdt_erc20", "bitcoin"])

        registry = build_registry(settings, networks=[Network.MAINNET], environ={})

        assert len(registry) == 3
        assert isinstance(registry.get("usdt_erc20", "mainnet"), EvmExecutor)
        assert registry.get("bitcoin", "mainnet").batches_in_one_transaction
