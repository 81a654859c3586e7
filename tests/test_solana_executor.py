"""Tests for the Solana executor over scripted JSON-RPC."""
from __future__ import annotations

import json
from decimal import Decimal

import base58
import pytest
from solders.keypair import Keypair

from velo_settlement.chains import Network
from velo_settlement.exceptions import InsufficientFundsError, SubmissionFailedError, VeloValidationError
from velo_settlement.executors.base import OutputKind, OutputStatus, TransferOutput
from velo_settlement.executors.rpc_client import RPCError
from velo_settlement.executors.solana import SolanaExecutor, is_valid_address, parse_keypair
from velo_settlement.key_vault import SigningMaterial

SENDER = Keypair()
RECIPIENT = str(Keypair().pubkey())
TREASURY = str(Keypair().pubkey())
LAMPORTS = 10 ** 9
RENT = 890_880


class FakeSolanaNode:
    def __init__(self, balances=None, status=None, reject=False):
        self.balances = balances or {str(SENDER.pubkey()): 10 * LAMPORTS, RECIPIENT: 1, TREASURY: 1}
        self.status = status if status is not None else {"confirmationStatus": "confirmed", "err": None}
        self.reject = reject
        self.sent = []

    async def call(self, method, params=None):
        if method == "getBalance":
            return {"value": self.balances.get(params[0], 0)}
        if method == "getMinimumBalanceForRentExemption":
            return RENT
        if method == "getLatestBlockhash":
            return {"value": {"blockhash": "11111111111111111111111111111111", "lastValidBlockHeight": 1}}
        if method == "sendTransaction":
            if self.reject:
                raise RPCError("Blockhash not found", code=-32002)
            self.sent.append(params[0])
            return "5sig"
        if method == "getSignatureStatuses":
            return {"value": [self.status]}
        raise AssertionError(f"unexpected method {method}")

    async def close(self):
        return None


def executor(node):
    return SolanaExecutor(Network.TESTNET, node)


def outputs():
    return [
        TransferOutput(RECIPIENT, Decimal("1")),
        TransferOutput(TREASURY, Decimal("0.01"), OutputKind.FEE),
    ]


class TestSolanaExecutor:
    @pytest.mark.asyncio
    async def test_single_transaction_for_all_outputs(self):
        node = FakeSolanaNode()

        result = await executor(node).transfer(str(SENDER.pubkey()), SigningMaterial(str(SENDER)), outputs())

        assert len(node.sent) == 1
        assert result.tx_hash == "5sig"
        assert {o.status for o in result.outputs} == {OutputStatus.CONFIRMED}

    @pytest.mark.asyncio
    async def test_failed_signature_status(self):
        node = FakeSolanaNode(status={"confirmationStatus": "processed", "err": {"InstructionError": [0, "Custom"]}})

        result = await executor(node).transfer(str(SENDER.pubkey()), SigningMaterial(str(SENDER)), outputs())

        assert {o.status for o in result.outputs} == {OutputStatus.FAILED}

    @pytest.mark.asyncio
    async def test_rejected_send_raises(self):
        with pytest.raises(SubmissionFailedError):
            await executor(FakeSolanaNode(reject=True)).transfer(
                str(SENDER.pubkey()), SigningMaterial(str(SENDER)), outputs()
            )

    @pytest.mark.asyncio
    async def test_rent_for_new_accounts(self):
        """Should count rent exemption for recipients that hold nothing yet."""
        sender = str(SENDER.pubkey())
        needed = LAMPORTS + LAMPORTS // 100 + 5000
        node = FakeSolanaNode(balances={sender: needed + RENT - 1, TREASURY: 1})

        with pytest.raises(InsufficientFundsError):
            await executor(node).transfer(sender, SigningMaterial(str(SENDER)), outputs())
        assert node.sent == []

    @pytest.mark.asyncio
    async def test_balance(self):
        node = FakeSolanaNode(balances={RECIPIENT: 1_500_000_000})
        assert await executor(node).get_balance(RECIPIENT) == Decimal("1.5")


class TestParseKeypair:
    def test_json_array(self):
        assert parse_keypair(json.dumps(list(bytes(SENDER)))).pubkey() == SENDER.pubkey()

    def test_base58(self):
        assert parse_keypair(str(SENDER)).pubkey() == SENDER.pubkey()

    def test_hex_seed(self):
        seed = bytes(range(32))
        assert parse_keypair(seed.hex()).pubkey() == Keypair.from_seed(seed).pubkey()

    def test_wrong_length(self):
        with pytest.raises(VeloValidationError):
            parse_keypair(base58.b58encode(b"\x01" * 16).decode())

    def test_address_validation(self):
        assert is_valid_address(RECIPIENT)
        assert not is_valid_address("0xdeadbeef")
