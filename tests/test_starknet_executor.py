"""Tests for the Starknet multicall executor."""
from __future__ import annotations

from decimal import Decimal

import aiohttp
import pytest
from starknet_py.net.client_errors import ClientError

from velo_settlement.chains import Network, normalize_starknet_address
from velo_settlement.exceptions import (
    InsufficientFundsError,
    ProviderUnavailableError,
    SubmissionFailedError,
    VeloValidationError,
)
from velo_settlement.executors.base import OutputKind, OutputStatus, TransferOutput
from velo_settlement.executors.starknet import (
    STARKNET_TOKENS,
    ReceiptStatus,
    StarknetExecutor,
    to_uint256,
)
from velo_settlement.key_vault import SigningMaterial

SENDER = "0x0123"
RECIPIENT = "0x0456"
TREASURY = "0x0789"
KEY = SigningMaterial("0x1a2b3c")
STRK = 10 ** 18


class FakeStarknet:
    def __init__(self, deployed=True, strk=100 * STRK, eth=0, receipts=None, receipt_error=None):
        self.deployed = deployed
        self.balances = {"STRK": strk, "ETH": eth}
        self.receipts = list(receipts or [ReceiptStatus("ACCEPTED_ON_L2", "SUCCEEDED")])
        self.deploys = []
        self.executed = []
        self.receipt_error = receipt_error

    async def is_deployed(self, address):
        return self.deployed

    async def balance_of(self, token, owner):
        for symbol, info in STARKNET_TOKENS.items():
            if info.address == token:
                return self.balances.get(symbol, 0)
        return 0

    async def deploy_account(self, private_key, address):
        self.deploys.append((private_key, address))
        self.deployed = True
        return "0xdeploy"

    async def execute(self, private_key, address, calls):
        self.executed.append((address, list(calls)))
        return "0xmulticall"

    async def get_receipt_status(self, tx_hash):
        if self.receipt_error is not None:
            raise self.receipt_error
        return self.receipts.pop(0) if len(self.receipts) > 1 else self.receipts[0]

    async def close(self):
        return None


def executor(gateway, **kwargs):
    ex = StarknetExecutor(Network.TESTNET, gateway, **kwargs)
    ex.poll_interval_seconds = 0
    return ex


def outputs():
    return [
        TransferOutput(RECIPIENT, Decimal("5")),
        TransferOutput(TREASURY, Decimal("0.05"), OutputKind.FEE),
    ]


class TestStarknetExecutor:
    @pytest.mark.asyncio
    async def test_multicall_with_padded_addresses(self):
        gateway = FakeStarknet()

        result = await executor(gateway).transfer(SENDER, KEY, outputs())

        address, calls = gateway.executed[0]
        assert address == normalize_starknet_address(SENDER)
        assert [c.recipient for c in calls] == [
            normalize_starknet_address(RECIPIENT),
            normalize_starknet_address(TREASURY),
        ]
        assert calls[0].amount == 5 * STRK
        assert result.tx_hash == "0xmulticall"
        assert {o.status for o in result.outputs} == {OutputStatus.CONFIRMED}

    @pytest.mark.asyncio
    async def test_reverted_multicall_fails_all_outputs(self):
        gateway = FakeStarknet(receipts=[ReceiptStatus("ACCEPTED_ON_L2", "REVERTED", "u256_sub Overflow")])

        result = await executor(gateway).transfer(SENDER, KEY, outputs())

        assert {o.status for o in result.outputs} == {OutputStatus.FAILED}
        assert "u256_sub Overflow" in result.outputs[0].error

    @pytest.mark.asyncio
    async def test_slow_acceptance_reported_as_sent(self):
        gateway = FakeStarknet(receipts=[None])

        result = await executor(gateway, confirmation_timeout=0.05).transfer(SENDER, KEY, outputs())

        assert {o.status for o in result.outputs} == {OutputStatus.SENT_UNCONFIRMED}
        assert result.tx_hash == "0xmulticall"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error",
        [
            ClientError(message="node overloaded", code="503"),
            aiohttp.ClientConnectionError("connection reset"),
            ProviderUnavailableError("Every starknet endpoint failed", provider="starknet"),
        ],
    )
    async def test_status_lookup_failure_keeps_tx_hash(self, error):
        """Should report a sent multicall as unconfirmed when the receipt lookup fails."""
        gateway = FakeStarknet(receipt_error=error)

        result = await executor(gateway).transfer(SENDER, KEY, outputs())

        assert result.tx_hash == "0xmulticall"
        assert {o.status for o in result.outputs} == {OutputStatus.SENT_UNCONFIRMED}
        assert {o.tx_hash for o in result.outputs} == {"0xmulticall"}

    @pytest.mark.asyncio
    async def test_deploys_undeployed_account_first(self):
        gateway = FakeStarknet(deployed=False)

        await executor(gateway).transfer(SENDER, KEY, outputs())

        assert gateway.deploys == [(0x1a2b3c, normalize_starknet_address(SENDER))]
        assert len(gateway.executed) == 1

    @pytest.mark.asyncio
    async def test_unaccepted_deployment_blocks_transfer(self):
        gateway = FakeStarknet(deployed=False, receipt_error=aiohttp.ServerDisconnectedError())

        with pytest.raises(SubmissionFailedError) as exc_info:
            await executor(gateway).transfer(SENDER, KEY, outputs())

        assert exc_info.value.tx_hash == "0xdeploy"
        assert gateway.executed == []

    @pytest.mark.asyncio
    async def test_undeployed_account_needs_gas_funds(self):
        gateway = FakeStarknet(deployed=False, strk=STRK // 10, eth=0)

        with pytest.raises(InsufficientFundsError):
            await executor(gateway).transfer(SENDER, KEY, outputs())
        assert gateway.deploys == []

    @pytest.mark.asyncio
    async def test_preflight_adds_fee_buffer(self):
        gateway = FakeStarknet(strk=int(Decimal("5.05") * STRK))

        with pytest.raises(InsufficientFundsError):
            await executor(gateway).preflight_batch(SENDER, outputs())

    def test_address_validation(self):
        ex = executor(FakeStarknet())
        assert ex.validate_address("0x" + "a" * 64)
        assert not ex.validate_address("0x" + "a" * 65)
        assert not ex.validate_address("0xzz")

    def test_unknown_token(self):
        with pytest.raises(VeloValidationError):
            StarknetExecutor(Network.TESTNET, FakeStarknet(), token_symbol="DOGE")


class TestUint256:
    def test_split(self):
        assert to_uint256(5) == (5, 0)
        assert to_uint256((3 << 128) + 7) == (7, 3)

    def test_negative(self):
        with pytest.raises(ValueError):
            to_uint256(-1)
