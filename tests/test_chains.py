"""Tests for chain identifiers and unit helpers."""
from __future__ import annotations

from decimal import Decimal

import pytest

from velo_settlement.chains import (
    ChainFamily,
    ChainTag,
    Network,
    ceil_to_decimals,
    currency_for_chain,
    family_of,
    from_base_units,
    normalize_starknet_address,
    short_starknet_address,
    string_to_chain,
    string_to_network,
    to_base_units,
    token_for_chain,
)
from velo_settlement.exceptions import UnsupportedChainError, VeloValidationError


class TestStringToChain:
    @pytest.mark.parametrize("value,expected", [
        ("ethereum", ChainTag.ETHEREUM),
        ("ETH", ChainTag.ETHEREUM),
        ("usdt_erc20", ChainTag.USDT_ERC20),
        (" btc ", ChainTag.BITCOIN),
        ("sol", ChainTag.SOLANA),
        ("starknet_sepolia", ChainTag.STARKNET),
        ("xlm", ChainTag.STELLAR),
        ("polkadot", ChainTag.POLKADOT),
    ])
    def test_aliases(self, value, expected):
        assert string_to_chain(value) == expected

    def test_tag_passes_through(self):
        assert string_to_chain(ChainTag.SOLANA) is ChainTag.SOLANA

    @pytest.mark.parametrize("value", ["dogecoin", "", "usdt_trc20"])
    def test_unknown_chain_rejected(self, value):
        """Should raise a typed validation error for unmapped chains."""
        with pytest.raises(UnsupportedChainError) as exc_info:
            string_to_chain(value)
        assert isinstance(exc_info.value, VeloValidationError)

    def test_networks(self):
        assert string_to_network("sepolia") == Network.TESTNET
        assert string_to_network("Mainnet") == Network.MAINNET
        with pytest.raises(UnsupportedChainError):
            string_to_network("regtest")


class TestChainMetadata:
    def test_families(self):
        assert family_of(ChainTag.USDT_ERC20) == ChainFamily.EVM
        assert family_of(ChainTag.POLKADOT) == ChainFamily.SUBSTRATE

    def test_token_decimals(self):
        assert token_for_chain(ChainTag.USDT_ERC20).decimals == 6
        assert token_for_chain(ChainTag.STELLAR).decimals == 7
        assert token_for_chain(ChainTag.POLKADOT).decimals == 10

    def test_currency_for_chain(self):
        assert currency_for_chain("usdt_erc20") == "USDT"
        assert currency_for_chain("usdt_polygon") == "USDT"
        assert currency_for_chain("bitcoin") == "BTC"
        assert currency_for_chain("near") == "NEAR"


class TestUnits:
    def test_to_base_units_floors(self):
        assert to_base_units(Decimal("1.23456789"), 6) == 1234567
        assert to_base_units(Decimal("0.5"), 18) == 5 * 10 ** 17

    def test_from_base_units(self):
        assert from_base_units(150_000_000, 8) == Decimal("1.5")

    def test_ceil_never_undercollects(self):
        assert ceil_to_decimals(Decimal("0.000000001"), 8) == Decimal("0.00000001")
        assert ceil_to_decimals(Decimal("0.25"), 6) == Decimal("0.250000")


class TestStarknetAddresses:
    def test_padded_and_short_forms(self):
        padded = normalize_starknet_address("0x0ABC")
        assert padded == "0x" + "0" * 61 + "abc"
        assert short_starknet_address(padded) == "0xabc"

    def test_zero_address(self):
        assert short_starknet_address("0x000") == "0x0"
