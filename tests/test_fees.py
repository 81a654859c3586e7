"""Tests for the tiered fee calculator."""
from __future__ import annotations

from decimal import Decimal

import pytest

from velo_settlement.exceptions import InvalidAmountError
from velo_settlement.fees import (
    calculate_batch_fees,
    calculate_batch_summary,
    calculate_fee,
    calculate_fee_from_total,
    calculate_net_amount,
    get_fee_config,
    get_fee_tiers,
    validate_fee,
    validate_sufficient_balance,
)


class TestTierBoundaries:
    """Fee at and around each tier edge."""

    @pytest.mark.parametrize(
        "amount,fee",
        [
            ("0.01", "0.00"),
            ("10", "0.00"),
            ("10.01", "0.10"),
            ("50", "0.10"),
            ("51", "0.25"),
            ("100", "0.25"),
            ("101", "1.00"),
            ("500", "1.00"),
            ("501", "2.00"),
            ("1000", "2.00"),
        ],
    )
    def test_flat_tiers(self, amount, fee):
        """Should charge the tier's flat fee at inclusive boundaries."""
        assert calculate_fee(Decimal(amount)).fee == Decimal(fee)

    def test_percentage_tier_rounds_half_up(self):
        """Should charge 0.5% above $1000, rounded to cents."""
        result = calculate_fee(Decimal("1001"))
        assert result.fee == Decimal("5.01")
        assert result.tier == "$1001+ (0.5%)"

    def test_percentage_tier_large_amount(self):
        assert calculate_fee(Decimal("20000")).fee == Decimal("100.00")

    def test_gap_amounts_use_next_tier(self):
        """Should place amounts between tier ranges in the next tier."""
        assert calculate_fee(Decimal("50.5")).fee == Decimal("0.25")
        assert calculate_fee(Decimal("100.5")).fee == Decimal("1.00")
        assert calculate_fee(Decimal("1000.5")).tier == "$1001+ (0.5%)"


class TestCalculation:
    def test_seventy_five_dollars(self):
        """Should produce the documented fee breakdown for $75."""
        result = calculate_fee(75)

        assert result.fee == Decimal("0.25")
        assert result.tier == "$51-$100"
        assert result.sender_pays == Decimal("75.25")
        assert result.recipient_receives == Decimal("75")

    def test_recipient_always_receives_amount(self):
        for amount in ("5", "33.33", "999.99", "4321.5"):
            result = calculate_fee(Decimal(amount))
            assert result.recipient_receives == Decimal(amount)
            assert result.total == result.amount + result.fee

    def test_reported_percentage(self):
        """Should report fee / amount, not the tier's nominal rate."""
        assert calculate_fee(Decimal("20")).fee_percentage == Decimal("0.50")
        assert calculate_fee(Decimal("40")).fee_percentage == Decimal("0.25")

    def test_amount_rounded_to_cents(self):
        """Should quantize sub-cent input amounts half up before pricing."""
        result = calculate_fee(Decimal("10.005"))
        assert result.amount == Decimal("10.01")
        assert result.fee == Decimal("0.10")
        assert result.total == Decimal("10.11")
        assert calculate_fee(Decimal("0.004")).tier == "$0"

    def test_zero_amount(self):
        result = calculate_fee(0)
        assert result.fee == Decimal("0")
        assert result.total == Decimal("0")
        assert result.tier == "$0"

    def test_negative_amount_raises(self):
        with pytest.raises(InvalidAmountError):
            calculate_fee(-1)

    def test_to_dict_stringifies_decimals(self):
        data = calculate_fee(75).to_dict()
        assert data["fee"] == "0.25"
        assert data["tier"] == "$51-$100"


class TestBatchAndHelpers:
    def test_batch_has_no_discount(self):
        """Should apply the same function to each element independently."""
        fees = calculate_batch_fees([Decimal("75")] * 4)
        assert [f.fee for f in fees] == [Decimal("0.25")] * 4

    def test_batch_summary(self):
        summary = calculate_batch_summary([Decimal("5"), Decimal("75"), Decimal("200")])
        assert summary.transactions == 3
        assert summary.total_amount == Decimal("280.00")
        assert summary.total_fee == Decimal("1.25")
        assert summary.total_payable == Decimal("281.25")

    def test_fee_from_total_flat_tier(self):
        result = calculate_fee_from_total(Decimal("75.25"))
        assert result.amount == Decimal("75.00")
        assert result.fee == Decimal("0.25")

    def test_fee_from_total_percentage_tier(self):
        result = calculate_fee_from_total(Decimal("2010"))
        assert result.amount == Decimal("2000.00")
        assert result.fee == Decimal("10.00")

    def test_validate_fee_tolerance(self):
        assert validate_fee(75, Decimal("0.25"))
        assert validate_fee(75, Decimal("0.26"))
        assert not validate_fee(75, Decimal("0.30"))

    def test_net_amount(self):
        assert calculate_net_amount(Decimal("75")) == (Decimal("74.75"), Decimal("0.25"))

    def test_sufficient_balance(self):
        check = validate_sufficient_balance(Decimal("75"), Decimal("75"))
        assert not check.valid
        assert check.required == Decimal("75.25")
        assert check.shortfall == Decimal("0.25")

    def test_config_lists_every_tier(self):
        config = get_fee_config()
        assert len(config["tiers"]) == len(get_fee_tiers()) == 6
        assert config["minimum_amount"] == "0.01"
        assert config["currency"] == "USD"
