"""Shared fixtures: in-memory storage and fake chain executors."""
from __future__ import annotations

import os
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Sequence

import pytest

os.environ.setdefault("VELO_ENVIRONMENT", "dev")
os.environ.setdefault("VELO_ENCRYPTION_KEY", "test-secret-for-velo-settlement")
os.environ.setdefault("VELO_DATABASE_URL", "memory://")

from velo_settlement.chains import ChainTag, Network
from velo_settlement.config import VeloSettings
from velo_settlement.exceptions import SubmissionFailedError
from velo_settlement.executors.base import (
    ChainExecutor,
    OutputKind,
    OutputResult,
    OutputStatus,
    TransferOutput,
    TransferResult,
)
from velo_settlement.executors.registry import ExecutorRegistry
from velo_settlement.key_vault import KeyVault, SigningMaterial
from velo_settlement.ledger import FeeLedger
from velo_settlement.notifications import NotificationEmitter
from velo_settlement.orchestrator import SettlementOrchestrator
from velo_settlement.persistence import InMemoryRecordStore
from velo_settlement.records import USER_ADDRESSES, UserAddress
from velo_settlement.treasury import TreasuryDirectory

SENDER = "0x1111111111111111111111111111111111111111"
RECIPIENT = "0x2222222222222222222222222222222222222222"
ETH_TREASURY = "0x9999999999999999999999999999999999999999"
SENDER_SECRET = "0x" + "ab" * 32


class FakeExecutor(ChainExecutor):
    """Records calls and answers with scripted statuses."""

    def __init__(
        self,
        chain: ChainTag = ChainTag.ETHEREUM,
        network: Network = Network.MAINNET,
        status: OutputStatus = OutputStatus.CONFIRMED,
        fee_status: Optional[OutputStatus] = None,
        raise_for: Iterable[str] = (),
        batches_in_one_transaction: bool = False,
    ):
        super().__init__(network)
        self.chain = chain
        self.status = status
        self.fee_status = fee_status
        self.raise_for = set(raise_for)
        self.batches_in_one_transaction = batches_in_one_transaction
        self.calls: List[tuple[str, SigningMaterial, List[TransferOutput]]] = []
        self.preflights: List[List[TransferOutput]] = []
        self.balances: Dict[str, Decimal] = {}

    def validate_address(self, address: str) -> bool:
        return bool(address) and not address.startswith("bad")

    async def get_balance(self, address: str) -> Decimal:
        return self.balances.get(address, Decimal("0"))

    async def preflight_batch(self, from_address: str, outputs: Sequence[TransferOutput]) -> None:
        self.preflights.append(list(outputs))

    async def transfer(
        self,
        from_address: str,
        signing_material: SigningMaterial,
        outputs: Sequence[TransferOutput],
    ) -> TransferResult:
        self.calls.append((from_address, signing_material, list(outputs)))
        for o in outputs:
            if o.to in self.raise_for:
                raise SubmissionFailedError("rejected by node", chain=self.chain.value, reason="rejected")
        tx_hash = f"0xtx{len(self.calls)}"
        results = []
        for o in outputs:
            status = self.status
            if o.kind == OutputKind.FEE and self.fee_status is not None:
                status = self.fee_status
            sent = status.succeeded
            results.append(OutputResult(
                o,
                status,
                tx_hash=tx_hash if sent else None,
                error=None if sent else f"{status.value} by fake",
            ))
        return TransferResult(tx_hash=tx_hash, outputs=results)

    @property
    def sent_outputs(self) -> List[TransferOutput]:
        return [o for _, _, outputs in self.calls for o in outputs]


class FakePriceFeed:
    def __init__(self, prices: Optional[Dict[str, Decimal]] = None):
        self.prices = prices or {"ETH": Decimal("1"), "BTC": Decimal("1"), "XLM": Decimal("1")}
        self.requests: List[str] = []

    async def get_price(self, symbol: str) -> Decimal:
        self.requests.append(symbol)
        return self.prices[symbol.upper()]


class RecordingNotifier:
    def __init__(self):
        self.events = []

    async def notify(self, user_id, event, payload):
        self.events.append((user_id, event, payload))


@pytest.fixture
def store():
    return InMemoryRecordStore()


@pytest.fixture
def vault():
    return KeyVault("unit-test-secret")


@pytest.fixture
def ledger(store):
    return FeeLedger(store)


@pytest.fixture
def settings():
    return VeloSettings(fee_queue_size=10, fee_queue_workers=1)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def emitter(notifier):
    return NotificationEmitter(notifier)


@pytest.fixture
def price_feed():
    return FakePriceFeed()


@pytest.fixture
def treasury_env():
    return {"ETHEREUM_MAINNET_TREASURY": ETH_TREASURY}


@pytest.fixture
def treasury(treasury_env):
    return TreasuryDirectory(environ=treasury_env)


@pytest.fixture
def eth_executor():
    return FakeExecutor()


@pytest.fixture
def registry(eth_executor):
    return ExecutorRegistry([eth_executor])


@pytest.fixture
def orchestrator(registry, store, vault, price_feed, treasury, ledger, emitter, settings):
    return SettlementOrchestrator(
        registry,
        store,
        vault=vault,
        price_feed=price_feed,
        treasury=treasury,
        ledger=ledger,
        notifier=emitter,
        settings=settings,
    )


async def add_address(
    store,
    vault: KeyVault,
    user_id: str = "user-1",
    address: str = SENDER,
    chain: str = "ethereum",
    network: str = "mainnet",
    secret: str = SENDER_SECRET,
    last_known_balance: Optional[str] = None,
) -> UserAddress:
    record = UserAddress(
        user_id=user_id,
        address=address,
        chain=chain,
        network=network,
        encrypted_private_key=vault.encrypt(secret),
        last_known_balance=last_known_balance,
    )
    await store.save(USER_ADDRESSES, record.to_dict())
    return record
