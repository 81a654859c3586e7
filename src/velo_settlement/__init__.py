"""Multi-chain custodial settlement with tiered fee collection."""

from .chains import ChainTag, Network, currency_for_chain, string_to_chain, string_to_network
from .config import VeloSettings, load_settings
from .deposit_watcher import DepositWatcher
from .exceptions import VeloException
from .executors import ExecutorRegistry, build_registry
from .fee_worker import FeeCollectionQueue, FeeJob
from .fees import FeeCalculation, calculate_fee, calculate_fee_from_total
from .key_vault import KeyVault, SigningMaterial
from .ledger import FeeLedger
from .notifications import NotificationEmitter, NotificationType
from .orchestrator import (
    BatchRecipient,
    BatchRequest,
    BatchResult,
    SendRequest,
    SendResult,
    SettlementOrchestrator,
)
from .persistence import create_record_store
from .price_feed import PriceFeed
from .split_payments import SplitPaymentService
from .treasury import TreasuryDirectory

__all__ = [
    "ChainTag",
    "Network",
    "currency_for_chain",
    "string_to_chain",
    "string_to_network",
    "VeloSettings",
    "load_settings",
    "DepositWatcher",
    "VeloException",
    "ExecutorRegistry",
    "build_registry",
    "FeeCollectionQueue",
    "FeeJob",
    "FeeCalculation",
    "calculate_fee",
    "calculate_fee_from_total",
    "KeyVault",
    "SigningMaterial",
    "FeeLedger",
    "NotificationEmitter",
    "NotificationType",
    "BatchRecipient",
    "BatchRequest",
    "BatchResult",
    "SendRequest",
    "SendResult",
    "SettlementOrchestrator",
    "create_record_store",
    "PriceFeed",
    "SplitPaymentService",
    "TreasuryDirectory",
]
