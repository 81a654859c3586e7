"""
Chain and network identifiers with explicit string mappings.

Free-form chain strings coming from callers are resolved through fixed
lookup tables; anything not in the table is rejected with a typed error.
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_CEILING, ROUND_DOWN, Decimal
from enum import Enum
from typing import Dict, Union

from .exceptions import UnsupportedChainError


class ChainTag(str, Enum):
    ETHEREUM = "ethereum"
    USDT_ERC20 = "usdt_erc20"
    BITCOIN = "bitcoin"
    SOLANA = "solana"
    STARKNET = "starknet"
    STELLAR = "stellar"
    POLKADOT = "polkadot"


class ChainFamily(str, Enum):
    EVM = "evm"
    UTXO = "utxo"
    SOLANA = "solana"
    STARKNET = "starknet"
    STELLAR = "stellar"
    SUBSTRATE = "substrate"


class Network(str, Enum):
    MAINNET = "mainnet"
    TESTNET = "testnet"


@dataclass(frozen=True)
class TokenInfo:
    symbol: str
    decimals: int


_CHAIN_ALIASES: Dict[str, ChainTag] = {
    "ethereum": ChainTag.ETHEREUM,
    "eth": ChainTag.ETHEREUM,
    "usdt_erc20": ChainTag.USDT_ERC20,
    "bitcoin": ChainTag.BITCOIN,
    "btc": ChainTag.BITCOIN,
    "solana": ChainTag.SOLANA,
    "sol": ChainTag.SOLANA,
    "starknet": ChainTag.STARKNET,
    "strk": ChainTag.STARKNET,
    "stellar": ChainTag.STELLAR,
    "xlm": ChainTag.STELLAR,
    "polkadot": ChainTag.POLKADOT,
    "dot": ChainTag.POLKADOT,
}

_NETWORK_ALIASES: Dict[str, Network] = {
    "mainnet": Network.MAINNET,
    "mainnet-beta": Network.MAINNET,
    "public": Network.MAINNET,
    "testnet": Network.TESTNET,
    "sepolia": Network.TESTNET,
    "goerli": Network.TESTNET,
    "devnet": Network.TESTNET,
    "paseo": Network.TESTNET,
    "westend": Network.TESTNET,
}

CHAIN_FAMILY: Dict[ChainTag, ChainFamily] = {
    ChainTag.ETHEREUM: ChainFamily.EVM,
    ChainTag.USDT_ERC20: ChainFamily.EVM,
    ChainTag.BITCOIN: ChainFamily.UTXO,
    ChainTag.SOLANA: ChainFamily.SOLANA,
    ChainTag.STARKNET: ChainFamily.STARKNET,
    ChainTag.STELLAR: ChainFamily.STELLAR,
    ChainTag.POLKADOT: ChainFamily.SUBSTRATE,
}

CHAIN_TOKENS: Dict[ChainTag, TokenInfo] = {
    ChainTag.ETHEREUM: TokenInfo("ETH", 18),
    ChainTag.USDT_ERC20: TokenInfo("USDT", 6),
    ChainTag.BITCOIN: TokenInfo("BTC", 8),
    ChainTag.SOLANA: TokenInfo("SOL", 9),
    ChainTag.STARKNET: TokenInfo("STRK", 18),
    ChainTag.STELLAR: TokenInfo("XLM", 7),
    ChainTag.POLKADOT: TokenInfo("DOT", 10),
}


def string_to_chain(value: Union[str, ChainTag]) -> ChainTag:
    """Resolve a chain string to its tag, or raise UnsupportedChainError."""
    if isinstance(value, ChainTag):
        return value
    key = (value or "").strip().lower()
    if key.startswith("starknet_"):
        return ChainTag.STARKNET
    try:
        return _CHAIN_ALIASES[key]
    except KeyError:
        raise UnsupportedChainError(str(value), kind="chain") from None


def string_to_network(value: Union[str, Network]) -> Network:
    if isinstance(value, Network):
        return value
    key = (value or "").strip().lower()
    try:
        return _NETWORK_ALIASES[key]
    except KeyError:
        raise UnsupportedChainError(str(value), kind="network") from None


def family_of(chain: ChainTag) -> ChainFamily:
    return CHAIN_FAMILY[chain]


def token_for_chain(chain: ChainTag) -> TokenInfo:
    return CHAIN_TOKENS[chain]


def currency_for_chain(chain: str) -> str:
    """Display currency for a chain string (USDT variants collapse to USDT)."""
    key = (chain or "").strip().lower()
    if key.startswith("usdt_"):
        return "USDT"
    tag = _CHAIN_ALIASES.get(key)
    if tag is not None:
        return CHAIN_TOKENS[tag].symbol
    return key.upper()


# =============================================================================
# Unit conversion
# =============================================================================

def to_base_units(amount: Decimal, decimals: int) -> int:
    """Convert a display amount to integer base units (floored)."""
    scaled = Decimal(amount) * (Decimal(10) ** decimals)
    return int(scaled.to_integral_value(rounding=ROUND_DOWN))


def from_base_units(units: int, decimals: int) -> Decimal:
    return Decimal(units) / (Decimal(10) ** decimals)


def ceil_to_decimals(amount: Decimal, decimals: int) -> Decimal:
    """Round up to the token's precision so fees are never under-collected."""
    quantum = Decimal(1).scaleb(-decimals)
    return Decimal(amount).quantize(quantum, rounding=ROUND_CEILING)


# =============================================================================
# Starknet address forms
# =============================================================================

def normalize_starknet_address(address: str) -> str:
    """Lower-case and left-pad to 64 hex digits."""
    raw = address.strip().lower()
    if raw.startswith("0x"):
        raw = raw[2:]
    return "0x" + raw.rjust(64, "0")


def short_starknet_address(address: str) -> str:
    raw = address.strip().lower()
    if raw.startswith("0x"):
        raw = raw[2:]
    return "0x" + (raw.lstrip("0") or "0")
