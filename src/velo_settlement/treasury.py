"""
Treasury payout address resolution.

Addresses come from the environment only. Lookup order for a chain and
network:

1. ``{CHAIN}_{NETWORK}_TREASURY``            e.g. SOLANA_TESTNET_TREASURY
2. ``VELO_TREASURY_{SYMBOL}_{NETWORK}``      e.g. VELO_TREASURY_SOL_TESTNET
3. the default table below (ethereum testnet is keyed as SEPOLIA)

USDT on Ethereum shares the ethereum treasury unless it has its own entry.
A missing address raises TreasuryNotConfiguredError; callers record the
fee leg as failed rather than skipping it.
"""
from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Pattern

from .chains import ChainTag, Network, string_to_chain, string_to_network
from .exceptions import TreasuryNotConfiguredError, UnsupportedChainError

logger = logging.getLogger(__name__)


_DEFAULT_ENV_KEYS: Dict[tuple[ChainTag, Network], str] = {
    (ChainTag.ETHEREUM, Network.MAINNET): "VELO_TREASURY_ETH_MAINNET",
    (ChainTag.ETHEREUM, Network.TESTNET): "VELO_TREASURY_ETH_SEPOLIA",
    (ChainTag.BITCOIN, Network.MAINNET): "VELO_TREASURY_BTC_MAINNET",
    (ChainTag.BITCOIN, Network.TESTNET): "VELO_TREASURY_BTC_TESTNET",
    (ChainTag.STARKNET, Network.MAINNET): "VELO_TREASURY_STRK_MAINNET",
    (ChainTag.STARKNET, Network.TESTNET): "VELO_TREASURY_STRK_TESTNET",
    (ChainTag.SOLANA, Network.MAINNET): "VELO_TREASURY_SOL_MAINNET",
    (ChainTag.SOLANA, Network.TESTNET): "VELO_TREASURY_SOL_TESTNET",
    (ChainTag.STELLAR, Network.MAINNET): "VELO_TREASURY_XLM_MAINNET",
    (ChainTag.STELLAR, Network.TESTNET): "VELO_TREASURY_XLM_TESTNET",
    (ChainTag.POLKADOT, Network.MAINNET): "VELO_TREASURY_DOT_MAINNET",
    (ChainTag.POLKADOT, Network.TESTNET): "VELO_TREASURY_DOT_TESTNET",
}

_ADDRESS_PATTERNS: Dict[ChainTag, Pattern[str]] = {
    ChainTag.ETHEREUM: re.compile(r"^0x[a-fA-F0-9]{40,64}$"),
    ChainTag.USDT_ERC20: re.compile(r"^0x[a-fA-F0-9]{40,64}$"),
    ChainTag.STARKNET: re.compile(r"^0x[a-fA-F0-9]{40,64}$"),
    ChainTag.BITCOIN: re.compile(
        r"^[13mn2][a-km-zA-HJ-NP-Z1-9]{25,34}$|^(bc1|tb1)[a-z0-9]{39,59}$"
    ),
    ChainTag.SOLANA: re.compile(r"^[1-9A-HJ-NP-Za-km-z]{32,44}$"),
    ChainTag.STELLAR: re.compile(r"^G[A-Z2-7]{55}$"),
    ChainTag.POLKADOT: re.compile(r"^[1-9A-HJ-NP-Za-km-z]{47,48}$"),
}

# Networks reported by all_wallets(); ethereum testnet is Sepolia
_LISTED_CHAINS = (
    ChainTag.ETHEREUM,
    ChainTag.BITCOIN,
    ChainTag.STARKNET,
    ChainTag.SOLANA,
    ChainTag.STELLAR,
    ChainTag.POLKADOT,
)


@dataclass(frozen=True)
class TreasuryWallet:
    address: str
    chain: str
    network: str
    description: str


def _network_names(chain: ChainTag, network: Network) -> List[str]:
    if chain in (ChainTag.ETHEREUM, ChainTag.USDT_ERC20) and network == Network.TESTNET:
        return ["SEPOLIA", "TESTNET"]
    return [network.value.upper()]


def _symbol_key(chain: ChainTag) -> str:
    return "SOL" if chain == ChainTag.SOLANA else chain.value.upper()


def display_network(chain: ChainTag, network: Network) -> str:
    return _network_names(chain, network)[0].lower()


class TreasuryDirectory:
    """Resolves treasury payout addresses from an environment mapping."""

    def __init__(self, environ: Optional[Mapping[str, str]] = None):
        self._environ = environ if environ is not None else os.environ

    def _lookup(self, key: str) -> str:
        return (self._environ.get(key) or "").strip()

    def _candidate_keys(self, chain: ChainTag, network: Network) -> List[str]:
        keys: List[str] = []
        for name in _network_names(chain, network):
            keys.append(f"{chain.value.upper()}_{name}_TREASURY")
        for name in _network_names(chain, network):
            keys.append(f"VELO_TREASURY_{_symbol_key(chain)}_{name}")
        default = _DEFAULT_ENV_KEYS.get((chain, network))
        if default:
            keys.append(default)
        return keys

    def resolve(self, chain: str | ChainTag, network: str | Network) -> str:
        """Return the treasury address or raise TreasuryNotConfiguredError."""
        chain_tag = string_to_chain(chain)
        net = string_to_network(network)

        for key in self._candidate_keys(chain_tag, net):
            address = self._lookup(key)
            if address:
                if not self.validate(address, chain_tag):
                    logger.warning(
                        f"Treasury address from {key} does not look like a "
                        f"{chain_tag.value} address: {address}"
                    )
                return address

        if chain_tag == ChainTag.USDT_ERC20:
            return self.resolve(ChainTag.ETHEREUM, net)

        raise TreasuryNotConfiguredError(chain_tag.value, net.value)

    def is_configured(self, chain: str | ChainTag, network: str | Network) -> bool:
        try:
            return bool(self.resolve(chain, network))
        except TreasuryNotConfiguredError:
            return False

    def all_wallets(self) -> List[TreasuryWallet]:
        wallets: List[TreasuryWallet] = []
        for chain in _LISTED_CHAINS:
            for network in (Network.MAINNET, Network.TESTNET):
                if not self.is_configured(chain, network):
                    continue
                name = display_network(chain, network)
                wallets.append(TreasuryWallet(
                    address=self.resolve(chain, network),
                    chain=chain.value,
                    network=name,
                    description=f"VELO {chain.value} {name} treasury",
                ))
        return wallets

    @staticmethod
    def validate(address: str, chain: str | ChainTag) -> bool:
        """Shape check only; a False result is logged, never enforced."""
        if not address:
            return False
        try:
            chain_tag = string_to_chain(chain)
        except UnsupportedChainError:
            return True
        pattern = _ADDRESS_PATTERNS.get(chain_tag)
        if pattern is None:
            return True
        return bool(pattern.match(address))

