"""Chain executors and the registry that dispatches to them."""
from __future__ import annotations

import logging
from typing import Callable, Dict, Iterable, Mapping, Optional

from ..chains import ChainFamily, ChainTag, Network, family_of, string_to_chain
from ..config import VeloSettings, load_settings
from .base import (
    ChainExecutor,
    OutputKind,
    OutputResult,
    OutputStatus,
    TransferOutput,
    TransferResult,
)
from .bitcoin import BitcoinExecutor, BlockstreamClient
from .endpoints import RPCEndpointConfig, endpoint_configs, endpoint_urls
from .evm import CHAIN_IDS, EvmExecutor
from .polkadot import PolkadotExecutor, SubstrateGateway
from .registry import ExecutorRegistry
from .rpc_client import FailoverRPCClient, RPCError
from .solana import SolanaExecutor
from .starknet import StarknetExecutor, StarknetPyGateway
from .stellar import HorizonGateway, StellarExecutor

logger = logging.getLogger(__name__)

ExecutorFactory = Callable[[ChainTag, Network, VeloSettings, Optional[Mapping[str, str]]], ChainExecutor]


def _build_evm(chain, network, settings, environ):
    rpc = FailoverRPCClient(
        name=f"{chain.value}-{network.value}",
        endpoints=endpoint_configs(chain, network, settings.alchemy_api_key, environ=environ),
        expected_chain_id=CHAIN_IDS[network],
    )
    return EvmExecutor(chain, network, rpc, confirmation_timeout=settings.evm_confirmation_timeout)


def _build_bitcoin(chain, network, settings, environ):
    urls = endpoint_urls(chain, network, environ=environ)
    return BitcoinExecutor(network, BlockstreamClient(urls), fee_rate=settings.btc_fee_rate_sat_per_byte)


def _build_solana(chain, network, settings, environ):
    rpc = FailoverRPCClient(
        name=f"solana-{network.value}",
        endpoints=endpoint_configs(chain, network, settings.alchemy_api_key, environ=environ),
    )
    return SolanaExecutor(network, rpc, confirmation_timeout=settings.solana_confirmation_timeout)


def _build_starknet(chain, network, settings, environ):
    urls = endpoint_urls(chain, network, settings.alchemy_api_key, environ=environ)
    return StarknetExecutor(
        network,
        StarknetPyGateway(urls, network),
        confirmation_timeout=settings.starknet_confirmation_timeout,
    )


def _build_stellar(chain, network, settings, environ):
    urls = endpoint_urls(chain, network, environ=environ)
    return StellarExecutor(
        network,
        HorizonGateway(urls, network, base_fee=settings.stellar_base_fee),
        base_fee=settings.stellar_base_fee,
    )


def _build_polkadot(chain, network, settings, environ):
    urls = endpoint_urls(chain, network, environ=environ)
    return PolkadotExecutor(network, SubstrateGateway(urls))


EXECUTOR_FACTORIES: Dict[ChainFamily, ExecutorFactory] = {
    ChainFamily.EVM: _build_evm,
    ChainFamily.UTXO: _build_bitcoin,
    ChainFamily.SOLANA: _build_solana,
    ChainFamily.STARKNET: _build_starknet,
    ChainFamily.STELLAR: _build_stellar,
    ChainFamily.SUBSTRATE: _build_polkadot,
}


def build_registry(
    settings: Optional[VeloSettings] = None,
    networks: Iterable[Network] = (Network.MAINNET, Network.TESTNET),
    environ: Optional[Mapping[str, str]] = None,
) -> ExecutorRegistry:
    """Build production executors for every enabled chain and network.

    Connections are opened lazily, so building the registry does no I/O.
    """
    settings = settings or load_settings()
    networks = list(networks)
    registry = ExecutorRegistry()
    for name in settings.enabled_chains:
        chain = string_to_chain(name)
        factory = EXECUTOR_FACTORIES[family_of(chain)]
        for network in networks:
            registry.register(factory(chain, network, settings, environ))
    logger.info(f"Built {len(registry)} executors for {', '.join(settings.enabled_chains)}")
    return registry


__all__ = [
    "ChainExecutor",
    "OutputKind",
    "OutputResult",
    "OutputStatus",
    "TransferOutput",
    "TransferResult",
    "ExecutorRegistry",
    "FailoverRPCClient",
    "RPCError",
    "RPCEndpointConfig",
    "EvmExecutor",
    "BitcoinExecutor",
    "SolanaExecutor",
    "StarknetExecutor",
    "StellarExecutor",
    "PolkadotExecutor",
    "EXECUTOR_FACTORIES",
    "build_registry",
]
