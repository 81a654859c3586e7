"""Tiered transaction fee calculation.

The fee is additive: the recipient receives the full requested amount and
the sender pays amount + fee.

  $0 - $10        no fee
  $10.01 - $50    $0.10
  $51 - $100      $0.25
  $101 - $500     $1.00
  $501 - $1000    $2.00
  $1001+          0.5% of amount

The switch from a flat $2.00 to a percentage at $1001 is policy. Amounts
that fall between two tiers (e.g. $50.50) are charged at the higher tier.
All USD values are Decimals rounded half-up to cents.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Iterable, Optional, Union

from .constants import FeePolicy
from .exceptions import InvalidAmountError

logger = logging.getLogger(__name__)

Number = Union[Decimal, int, float, str]

CENT = Decimal("0.01")
ZERO = Decimal("0")


def to_decimal(value: Number) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def round_usd(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class FeeTier:
    """One row of the fee schedule."""

    min: Decimal
    max: Optional[Decimal]
    fee: Optional[Decimal]
    percentage: Optional[Decimal]
    description: str

    @property
    def label(self) -> str:
        if self.percentage is not None:
            return f"${_fmt(self.min)}+ ({_fmt(self.percentage)}%)"
        if self.max is None:
            return f"${_fmt(self.min)}+"
        return f"${_fmt(self.min)}-${_fmt(self.max)}"

    def contains(self, amount: Decimal) -> bool:
        return self.max is None or amount <= self.max


@dataclass(frozen=True)
class FeeCalculation:
    """Result of a tiered fee calculation."""

    amount: Decimal
    fee: Decimal
    total: Decimal
    tier: str
    fee_percentage: Decimal
    recipient_receives: Decimal
    sender_pays: Decimal

    def to_dict(self) -> dict[str, Any]:
        return {k: (str(v) if isinstance(v, Decimal) else v) for k, v in asdict(self).items()}


@dataclass(frozen=True)
class BatchFeeSummary:
    transactions: int
    total_amount: Decimal
    total_fee: Decimal
    total_payable: Decimal
    average_fee_percentage: Decimal
    breakdown: list[FeeCalculation] = field(default_factory=list)


@dataclass(frozen=True)
class BalanceCheck:
    valid: bool
    required: Decimal
    shortfall: Decimal


FEE_TIERS: tuple[FeeTier, ...] = (
    FeeTier(Decimal("0"), Decimal("10"), Decimal("0.00"), None,
            "No fee for micro transactions up to $10"),
    FeeTier(Decimal("10.01"), Decimal("50"), Decimal("0.10"), None,
            "Low-volume micro transactions"),
    FeeTier(Decimal("51"), Decimal("100"), Decimal("0.25"), None,
            "Entry-level user range"),
    FeeTier(Decimal("101"), Decimal("500"), Decimal("1.00"), None,
            "Average retail user"),
    FeeTier(Decimal("501"), Decimal("1000"), Decimal("2.00"), None,
            "SME and merchant payments"),
    FeeTier(Decimal("1001"), None, None, Decimal("0.5"),
            "Large or enterprise payments"),
)


def _fmt(value: Decimal) -> str:
    """Render 10 as "10" and 10.01 as "10.01"."""
    return format(value.normalize(), "f")


def _zero_calculation() -> FeeCalculation:
    return FeeCalculation(
        amount=ZERO,
        fee=ZERO,
        total=ZERO,
        tier="$0",
        fee_percentage=ZERO,
        recipient_receives=ZERO,
        sender_pays=ZERO,
    )


def select_tier(amount: Decimal) -> FeeTier:
    for tier in FEE_TIERS:
        if tier.contains(amount):
            return tier
    # Unreachable: the last tier is open-ended
    raise InvalidAmountError(amount, reason=f"No fee tier found for amount: ${amount}")


def calculate_fee(amount: Number) -> FeeCalculation:
    """Calculate the tiered fee for a USD amount.

    Args:
        amount: Transfer amount in USD

    Returns:
        FeeCalculation where recipient_receives == amount

    Raises:
        InvalidAmountError: If amount is negative
    """
    amount = to_decimal(amount)
    if amount < 0:
        raise InvalidAmountError(amount, reason="Transaction amount cannot be negative")
    amount = round_usd(amount)
    if amount == 0:
        return _zero_calculation()

    tier = select_tier(amount)
    if tier.percentage is not None:
        fee = round_usd(amount * tier.percentage / Decimal(100))
    else:
        fee = tier.fee

    total = round_usd(amount + fee)
    # Reported ratio, not the tier's nominal rate
    fee_percentage = round_usd(fee / amount * Decimal(100))

    return FeeCalculation(
        amount=amount,
        fee=fee,
        total=total,
        tier=tier.label,
        fee_percentage=fee_percentage,
        recipient_receives=amount,
        sender_pays=total,
    )


def calculate_batch_fees(amounts: Iterable[Number]) -> list[FeeCalculation]:
    """Per-element fees; no batch discount or shared minimum."""
    return [calculate_fee(a) for a in amounts]


def calculate_batch_summary(amounts: Iterable[Number]) -> BatchFeeSummary:
    calculations = calculate_batch_fees(amounts)
    total_amount = sum((c.amount for c in calculations), ZERO)
    total_fee = sum((c.fee for c in calculations), ZERO)
    total_payable = sum((c.total for c in calculations), ZERO)
    average = round_usd(total_fee / total_amount * 100) if total_amount else ZERO
    return BatchFeeSummary(
        transactions=len(calculations),
        total_amount=round_usd(total_amount),
        total_fee=round_usd(total_fee),
        total_payable=round_usd(total_payable),
        average_fee_percentage=average,
        breakdown=calculations,
    )


def calculate_fee_from_total(total: Number) -> FeeCalculation:
    """Find the calculation whose sender total matches `total`.

    Above $1003 the percentage tier applies and the amount is total / 1.005.
    Below it each flat fee is tried in turn.
    """
    total = to_decimal(total)
    if total < 0:
        raise InvalidAmountError(total, reason="Total amount cannot be negative")
    if total == 0:
        return _zero_calculation()

    if total > Decimal("1003"):
        return calculate_fee(round_usd(total / (1 + FeePolicy.PERCENTAGE_RATE)))

    for tier in FEE_TIERS:
        if tier.fee is None:
            continue
        candidate = total - tier.fee
        if candidate < 0:
            continue
        calc = calculate_fee(candidate)
        if abs(calc.total - total) < CENT:
            return calc

    return calculate_fee(max(total - Decimal("0.10"), ZERO))


def validate_fee(amount: Number, fee: Number, tolerance: Number = FeePolicy.VALIDATION_TOLERANCE) -> bool:
    expected = calculate_fee(amount)
    return abs(expected.fee - to_decimal(fee)) <= to_decimal(tolerance)


def calculate_net_amount(amount: Number) -> tuple[Decimal, Decimal]:
    """(net, fee) if the fee were taken out of the amount instead of added."""
    calc = calculate_fee(amount)
    return round_usd(calc.amount - calc.fee), calc.fee


def calculate_total_deduction(amount: Number) -> Decimal:
    return calculate_fee(amount).sender_pays


def validate_sufficient_balance(balance: Number, amount: Number) -> BalanceCheck:
    required = calculate_total_deduction(amount)
    balance = to_decimal(balance)
    shortfall = max(required - balance, ZERO)
    return BalanceCheck(valid=balance >= required, required=required, shortfall=round_usd(shortfall))


def get_minimum_transaction_amount() -> Decimal:
    return FeePolicy.MINIMUM_AMOUNT


def get_fee_tiers() -> tuple[FeeTier, ...]:
    return FEE_TIERS


def get_fee_config() -> dict[str, Any]:
    """Fee schedule in display form."""
    return {
        "tiers": [
            {
                "range": f"${_fmt(t.min)}+" if t.max is None else f"${_fmt(t.min)} - ${_fmt(t.max)}",
                "fee": f"${t.fee}" if t.fee is not None else f"{_fmt(t.percentage)}%",
                "description": t.description,
            }
            for t in FEE_TIERS
        ],
        "model": "Normal Transaction Model",
        "currency": FeePolicy.CURRENCY,
        "minimum_amount": str(FeePolicy.MINIMUM_AMOUNT),
    }
