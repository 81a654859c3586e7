"""
Centralized constants for velo-settlement.

Timeouts, retry defaults and chain unit values live here so executors,
the orchestrator and the background workers agree on them.

Usage:
    from velo_settlement.constants import Timeouts, RetryDefaults
"""
from __future__ import annotations

from decimal import Decimal
from typing import Final


# =============================================================================
# Timeout Constants (seconds)
# =============================================================================

class Timeouts:
    """Network and confirmation timeouts."""

    HTTP_DEFAULT: Final[float] = 30.0
    HTTP_CONNECT: Final[float] = 10.0
    RPC_CALL: Final[float] = 30.0
    HEALTH_CHECK: Final[float] = 10.0
    PRICE_FETCH: Final[float] = 10.0

    # Confirmation waits per chain family
    EVM_CONFIRMATION: Final[float] = 60.0
    SOLANA_CONFIRMATION: Final[float] = 30.0
    STARKNET_CONFIRMATION: Final[float] = 120.0
    STELLAR_SUBMIT: Final[float] = 30.0
    POLKADOT_INCLUSION: Final[float] = 60.0


# =============================================================================
# Retry Configuration
# =============================================================================

class RetryDefaults:
    """Retry defaults for outbound calls."""

    DEFAULT_MAX_RETRIES: Final[int] = 3
    DEFAULT_BASE_DELAY: Final[float] = 1.0
    DEFAULT_MAX_DELAY: Final[float] = 30.0
    DEFAULT_EXPONENTIAL_BASE: Final[float] = 2.0
    DEFAULT_JITTER: Final[float] = 0.1

    # REST explorers (Blockstream, Horizon)
    REST_MAX_RETRIES: Final[int] = 3
    REST_BASE_DELAY: Final[float] = 0.5
    REST_MAX_DELAY: Final[float] = 5.0


# =============================================================================
# Fee Policy
# =============================================================================

class FeePolicy:
    """Tiered fee policy constants (USD)."""

    MINIMUM_AMOUNT: Final[Decimal] = Decimal("0.01")
    PERCENTAGE_RATE: Final[Decimal] = Decimal("0.005")
    VALIDATION_TOLERANCE: Final[Decimal] = Decimal("0.01")
    CURRENCY: Final[str] = "USD"
    MAX_BATCH_RECIPIENTS: Final[int] = 1000


# =============================================================================
# Chain Units
# =============================================================================

class BitcoinUnits:
    SATOSHIS_PER_BTC: Final[int] = 100_000_000
    DUST_THRESHOLD: Final[int] = 546
    DEFAULT_FEE_RATE: Final[int] = 20  # sat/byte
    MAX_INPUTS: Final[int] = 10
    TX_OVERHEAD_BYTES: Final[int] = 10
    INPUT_BYTES: Final[int] = 150
    OUTPUT_BYTES: Final[int] = 35


class SolanaUnits:
    LAMPORTS_PER_SOL: Final[int] = 1_000_000_000
    SIGNATURE_FEE_LAMPORTS: Final[int] = 5000
    BATCH_DELAY_SECONDS: Final[float] = 0.1


class StarknetUnits:
    DEPLOY_MINIMUM_WEI: Final[int] = 5 * 10**17  # 0.5 STRK
    BATCH_FEE_BUFFER: Final[Decimal] = Decimal("0.001")
    POLL_INTERVAL_SECONDS: Final[float] = 2.0
    BATCH_DELAY_SECONDS: Final[float] = 5.0


class StellarUnits:
    BASE_FEE_STROOPS: Final[int] = 100
    TX_TIMEOUT_SECONDS: Final[int] = 30
    MIN_STARTING_BALANCE: Final[Decimal] = Decimal("1")
    FEE_BUFFER: Final[Decimal] = Decimal("0.0001")
    BATCH_DELAY_SECONDS: Final[float] = 0.5


class PolkadotUnits:
    DECIMALS: Final[int] = 10
    SAFETY_BUFFER_PLANCK: Final[int] = 10**8  # 0.01 DOT
    BATCH_DELAY_SECONDS: Final[float] = 1.0
