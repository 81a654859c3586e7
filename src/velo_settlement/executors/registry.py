"""Chain-tag dispatch table for executors."""
from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional, Tuple

from ..chains import ChainTag, Network, string_to_chain, string_to_network
from ..exceptions import ExecutorNotConfiguredError
from .base import ChainExecutor

logger = logging.getLogger(__name__)


class ExecutorRegistry:
    """Maps (chain, network) to the executor that settles on it."""

    def __init__(self, executors: Optional[Iterable[ChainExecutor]] = None):
        self._executors: Dict[Tuple[ChainTag, Network], ChainExecutor] = {}
        for executor in executors or []:
            self.register(executor)

    def register(self, executor: ChainExecutor) -> None:
        key = (executor.chain, executor.network)
        if key in self._executors:
            logger.warning(f"Replacing executor for {key[0].value}/{key[1].value}")
        self._executors[key] = executor

    def get(self, chain: str | ChainTag, network: str | Network) -> ChainExecutor:
        tag = string_to_chain(chain)
        net = string_to_network(network)
        try:
            return self._executors[(tag, net)]
        except KeyError:
            raise ExecutorNotConfiguredError(f"{tag.value}/{net.value}") from None

    def has(self, chain: str | ChainTag, network: str | Network) -> bool:
        try:
            self.get(chain, network)
            return True
        except ExecutorNotConfiguredError:
            return False

    def verify(self, required: Iterable[Tuple[str | ChainTag, str | Network]]) -> None:
        """Fail at startup if any required chain has no executor."""
        missing: List[str] = []
        for chain, network in required:
            if not self.has(chain, network):
                missing.append(f"{string_to_chain(chain).value}/{string_to_network(network).value}")
        if missing:
            raise ExecutorNotConfiguredError(", ".join(missing))
        logger.info(f"Executor registry verified for {len(self._executors)} chain/network pairs")

    def __iter__(self):
        return iter(self._executors.values())

    def __len__(self) -> int:
        return len(self._executors)

    async def close(self) -> None:
        for executor in self._executors.values():
            await executor.close()
