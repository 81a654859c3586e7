"""Tests for treasury address resolution."""
from __future__ import annotations

import logging

import pytest

from velo_settlement.chains import ChainTag, Network
from velo_settlement.exceptions import TreasuryNotConfiguredError, UnsupportedChainError
from velo_settlement.treasury import TreasuryDirectory

ETH = "0x" + "a" * 40
ETH_ALT = "0x" + "b" * 40
SOL = "9xQeWvG816bUx9EPjHmaT23yvVM2ZWbrrpZb9PusVFin"
XLM = "G" + "A" * 55


class TestResolve:
    def test_explicit_override_wins(self):
        """Should prefer {CHAIN}_{NETWORK}_TREASURY over the other names."""
        directory = TreasuryDirectory({
            "ETHEREUM_MAINNET_TREASURY": ETH,
            "VELO_TREASURY_ETH_MAINNET": ETH_ALT,
        })
        assert directory.resolve("ethereum", "mainnet") == ETH

    def test_secondary_convention(self):
        directory = TreasuryDirectory({"VELO_TREASURY_SOL_TESTNET": SOL})
        assert directory.resolve(ChainTag.SOLANA, Network.TESTNET) == SOL

    def test_sepolia_default_table(self):
        """Should find ethereum testnet under its Sepolia name."""
        directory = TreasuryDirectory({"VELO_TREASURY_ETH_SEPOLIA": ETH})
        assert directory.resolve("ethereum", "sepolia") == ETH

    def test_usdt_falls_back_to_ethereum(self):
        directory = TreasuryDirectory({"ETHEREUM_MAINNET_TREASURY": ETH})
        assert directory.resolve("usdt_erc20", "mainnet") == ETH

    def test_usdt_own_entry(self):
        directory = TreasuryDirectory({
            "ETHEREUM_MAINNET_TREASURY": ETH,
            "USDT_ERC20_MAINNET_TREASURY": ETH_ALT,
        })
        assert directory.resolve("usdt_erc20", "mainnet") == ETH_ALT

    def test_missing_raises(self):
        """Should fail loudly rather than return an empty address."""
        directory = TreasuryDirectory({})
        with pytest.raises(TreasuryNotConfiguredError) as exc_info:
            directory.resolve("stellar", "testnet")
        assert exc_info.value.chain == "stellar"
        assert exc_info.value.network == "testnet"

    def test_blank_value_is_missing(self):
        directory = TreasuryDirectory({"STELLAR_MAINNET_TREASURY": "   "})
        assert not directory.is_configured("stellar", "mainnet")

    def test_unknown_chain(self):
        with pytest.raises(UnsupportedChainError):
            TreasuryDirectory({}).resolve("dogecoin", "mainnet")

    def test_malformed_address_is_returned_with_warning(self, caplog):
        """Should log a shape mismatch but never block the payout."""
        directory = TreasuryDirectory({"STELLAR_MAINNET_TREASURY": "not-a-stellar-key"})
        with caplog.at_level(logging.WARNING):
            assert directory.resolve("stellar", "mainnet") == "not-a-stellar-key"
        assert "does not look like" in caplog.text

    def test_all_wallets(self):
        directory = TreasuryDirectory({
            "ETHEREUM_MAINNET_TREASURY": ETH,
            "STELLAR_TESTNET_TREASURY": XLM,
        })
        wallets = {(w.chain, w.network): w.address for w in directory.all_wallets()}
        assert wallets == {("ethereum", "mainnet"): ETH, ("stellar", "testnet"): XLM}


class TestValidate:
    @pytest.mark.parametrize(
        "address,chain",
        [
            (ETH, "ethereum"),
            ("0x" + "1" * 64, "starknet"),
            ("1A1zP1eP5QGefi2DMPTfTL5SLmv7DivfNa", "bitcoin"),
            ("bc1qar0srrr7xfkvy5l643lydnw9re59gtzzwf5mdq", "bitcoin"),
            ("tb1qw508d6qejxtdg4y5r3zarvary0c5xw7kxpjzsx", "bitcoin"),
            (SOL, "solana"),
            (XLM, "stellar"),
            ("15oF4uVJwmo4TdGW7VfQxNLavjCXviqxT9S1MgbjMNHr6Sp5", "polkadot"),
        ],
    )
    def test_valid_shapes(self, address, chain):
        assert TreasuryDirectory.validate(address, chain)

    @pytest.mark.parametrize(
        "address,chain",
        [
            ("", "ethereum"),
            ("0x123", "ethereum"),
            ("GABC", "stellar"),
            ("0OIl" * 10, "solana"),
        ],
    )
    def test_invalid_shapes(self, address, chain):
        assert not TreasuryDirectory.validate(address, chain)
