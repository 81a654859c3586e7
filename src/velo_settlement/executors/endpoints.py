"""
Provider endpoint lists per chain and network.

Each list is ordered: an environment override first (if set), then the
keyed provider (Alchemy) when an API key is configured, then public
fallbacks. Duplicates are dropped.
"""
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional

from ..chains import ChainTag, Network
from ..constants import Timeouts


@dataclass
class RPCEndpointConfig:
    """Configuration for a single provider endpoint."""
    url: str
    priority: int = 0  # Lower is higher priority
    timeout_seconds: float = Timeouts.RPC_CALL
    health_check_interval_seconds: float = 60.0
    max_consecutive_failures: int = 3


_ALCHEMY_TEMPLATES: Dict[tuple[ChainTag, Network], str] = {
    (ChainTag.ETHEREUM, Network.MAINNET): "https://eth-mainnet.g.alchemy.com/v2/{key}",
    (ChainTag.ETHEREUM, Network.TESTNET): "https://eth-sepolia.g.alchemy.com/v2/{key}",
    (ChainTag.SOLANA, Network.MAINNET): "https://solana-mainnet.g.alchemy.com/v2/{key}",
    (ChainTag.SOLANA, Network.TESTNET): "https://solana-devnet.g.alchemy.com/v2/{key}",
    (ChainTag.STARKNET, Network.MAINNET): "https://starknet-mainnet.g.alchemy.com/starknet/version/rpc/v0_8/{key}",
    (ChainTag.STARKNET, Network.TESTNET): "https://starknet-sepolia.g.alchemy.com/starknet/version/rpc/v0_8/{key}",
}

_PUBLIC_ENDPOINTS: Dict[tuple[ChainTag, Network], List[str]] = {
    (ChainTag.ETHEREUM, Network.MAINNET): [
        "https://ethereum-rpc.publicnode.com",
        "https://cloudflare-eth.com",
    ],
    (ChainTag.ETHEREUM, Network.TESTNET): [
        "https://ethereum-sepolia-rpc.publicnode.com",
        "https://rpc.sepolia.org",
    ],
    (ChainTag.SOLANA, Network.MAINNET): ["https://api.mainnet-beta.solana.com"],
    (ChainTag.SOLANA, Network.TESTNET): ["https://api.devnet.solana.com"],
    (ChainTag.STARKNET, Network.MAINNET): [
        "https://starknet-mainnet.public.blastapi.io",
        "https://free-rpc.nethermind.io/mainnet-juno",
    ],
    (ChainTag.STARKNET, Network.TESTNET): [
        "https://starknet-sepolia.public.blastapi.io",
        "https://free-rpc.nethermind.io/sepolia-juno",
    ],
    # Esplora-compatible explorers
    (ChainTag.BITCOIN, Network.MAINNET): [
        "https://blockstream.info/api",
        "https://mempool.space/api",
    ],
    (ChainTag.BITCOIN, Network.TESTNET): [
        "https://blockstream.info/testnet/api",
        "https://mempool.space/testnet/api",
    ],
    (ChainTag.STELLAR, Network.MAINNET): [
        "https://horizon.stellar.org",
        "https://horizon.stellar.lobstr.co",
    ],
    (ChainTag.STELLAR, Network.TESTNET): ["https://horizon-testnet.stellar.org"],
    (ChainTag.POLKADOT, Network.MAINNET): [
        "wss://rpc.polkadot.io",
        "wss://polkadot-rpc.dwellir.com",
        "wss://polkadot.api.onfinality.io/public-ws",
    ],
    (ChainTag.POLKADOT, Network.TESTNET): ["wss://pas-rpc.stakeworld.io"],
}

# Named overrides kept from the wallet backend's deployment environment
_LEGACY_OVERRIDES: Dict[tuple[ChainTag, Network], str] = {
    (ChainTag.STARKNET, Network.MAINNET): "STARKNET_MAINNET_RPC",
    (ChainTag.STARKNET, Network.TESTNET): "STARKNET_SEPOLIA_RPC",
    (ChainTag.POLKADOT, Network.MAINNET): "POLKADOT_WS_MAINNET",
    (ChainTag.POLKADOT, Network.TESTNET): "POLKADOT_WS_TESTNET",
}


def _endpoint_chain(chain: ChainTag) -> ChainTag:
    # USDT settles over the ethereum endpoints
    return ChainTag.ETHEREUM if chain == ChainTag.USDT_ERC20 else chain


def endpoint_urls(
    chain: ChainTag,
    network: Network,
    alchemy_api_key: str = "",
    environ: Optional[Mapping[str, str]] = None,
) -> List[str]:
    env = environ if environ is not None else os.environ
    chain = _endpoint_chain(chain)
    key = (chain, network)

    urls: List[str] = []
    for env_key in (
        f"VELO_{chain.value.upper()}_{network.value.upper()}_RPC_URL",
        _LEGACY_OVERRIDES.get(key),
    ):
        if env_key and (env.get(env_key) or "").strip():
            urls.append(env[env_key].strip())

    template = _ALCHEMY_TEMPLATES.get(key)
    if template and alchemy_api_key:
        urls.append(template.format(key=alchemy_api_key))

    urls.extend(_PUBLIC_ENDPOINTS.get(key, []))

    seen: set[str] = set()
    ordered: List[str] = []
    for url in urls:
        if url not in seen:
            seen.add(url)
            ordered.append(url)
    return ordered


def endpoint_configs(
    chain: ChainTag,
    network: Network,
    alchemy_api_key: str = "",
    timeout_seconds: float = Timeouts.RPC_CALL,
    environ: Optional[Mapping[str, str]] = None,
) -> List[RPCEndpointConfig]:
    return [
        RPCEndpointConfig(url=url, priority=i, timeout_seconds=timeout_seconds)
        for i, url in enumerate(endpoint_urls(chain, network, alchemy_api_key, environ))
    ]
