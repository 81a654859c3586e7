"""
JSON-RPC client with endpoint failover and health tracking.

Features:
- Ordered endpoint list with health-based selection
- Server errors, rate limits and transport failures move on to the next
  endpoint; exhausting the list raises ProviderUnavailableError
- Application errors (bad params, reverted call) are raised immediately
- Optional chain id check on first use (EVM)

SDK-backed chains (Bitcoin, Starknet, Stellar, Polkadot) hold one SDK
client per endpoint in an EndpointPool, which applies the same health
ranking and failover.
"""
from __future__ import annotations

import dataclasses
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Generic, List, Optional, Sequence, Tuple, Type, TypeVar

import httpx

from ..constants import Timeouts
from ..exceptions import ProviderUnavailableError, VeloConfigurationError
from ..retry import RetryConfig, RetryExhausted, retry_async
from .endpoints import RPCEndpointConfig

logger = logging.getLogger(__name__)

# Server error and rate-limit codes that warrant trying another endpoint
RETRYABLE_RPC_CODES = frozenset({-32000, -32005, -32603, 429})

# HTTP statuses that mean "this endpoint is struggling", not "request rejected"
UNAVAILABLE_HTTP_STATUSES = frozenset({429, 500, 502, 503, 504})

ClientT = TypeVar("ClientT")
R = TypeVar("R")


class EndpointStatus(str, Enum):
    """Health status of an endpoint."""
    HEALTHY = "healthy"
    DEGRADED = "degraded"  # High latency but working
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


@dataclass
class EndpointHealth:
    """Health tracking for an endpoint."""
    url: str
    status: EndpointStatus = EndpointStatus.UNKNOWN
    consecutive_failures: int = 0
    total_requests: int = 0
    total_failures: int = 0
    last_success: Optional[datetime] = None
    last_failure: Optional[datetime] = None
    avg_latency_ms: float = 0.0
    last_error: Optional[str] = None

    max_consecutive_failures: int = 3
    degraded_latency_ms: float = 5000.0

    def record_success(self, latency_ms: float) -> None:
        self.consecutive_failures = 0
        self.total_requests += 1
        self.last_success = datetime.now(timezone.utc)

        if self.avg_latency_ms == 0:
            self.avg_latency_ms = latency_ms
        else:
            self.avg_latency_ms = 0.9 * self.avg_latency_ms + 0.1 * latency_ms

        if latency_ms > self.degraded_latency_ms:
            self.status = EndpointStatus.DEGRADED
        else:
            self.status = EndpointStatus.HEALTHY

    def record_failure(self, error: str) -> None:
        self.consecutive_failures += 1
        self.total_requests += 1
        self.total_failures += 1
        self.last_failure = datetime.now(timezone.utc)
        self.last_error = error

        if self.consecutive_failures >= self.max_consecutive_failures:
            self.status = EndpointStatus.UNHEALTHY

    def get_priority_score(self, base_priority: int) -> float:
        """Lower score = tried earlier."""
        score = float(base_priority * 100)

        if self.status == EndpointStatus.UNHEALTHY:
            score += 10000
        elif self.status == EndpointStatus.DEGRADED:
            score += 1000

        score += self.avg_latency_ms / 10.0
        score += self.consecutive_failures * 100
        return score


class RPCError(Exception):
    """Non-retryable JSON-RPC error returned by a node."""

    def __init__(self, message: str, code: Optional[int] = None, data: Any = None):
        self.code = code
        self.data = data
        super().__init__(message)


class FailoverRPCClient:
    """JSON-RPC 2.0 over HTTP with ordered failover."""

    def __init__(
        self,
        name: str,
        endpoints: List[RPCEndpointConfig],
        expected_chain_id: Optional[int] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        if not endpoints:
            raise VeloConfigurationError(f"No RPC endpoints configured for {name}")
        self._name = name
        self._expected_chain_id = expected_chain_id
        self._chain_id_checked = expected_chain_id is None
        self._request_id = 0
        self._http_client = http_client
        self._endpoints: List[Tuple[RPCEndpointConfig, EndpointHealth]] = [
            (
                cfg,
                EndpointHealth(url=cfg.url, max_consecutive_failures=cfg.max_consecutive_failures),
            )
            for cfg in endpoints
        ]
        logger.info(f"Initialized RPC client for {name} with {len(self._endpoints)} endpoints")

    @property
    def name(self) -> str:
        return self._name

    def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(Timeouts.RPC_CALL, connect=Timeouts.HTTP_CONNECT),
                limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
            )
        return self._http_client

    def _ordered_endpoints(self) -> List[Tuple[RPCEndpointConfig, EndpointHealth]]:
        return sorted(
            self._endpoints,
            key=lambda pair: pair[1].get_priority_score(pair[0].priority),
        )

    async def _ensure_chain_id(self) -> None:
        if self._chain_id_checked:
            return
        result = await self._call_internal("eth_chainId", [])
        chain_id = int(result, 16)
        if chain_id != self._expected_chain_id:
            raise VeloConfigurationError(
                f"Chain ID mismatch for {self._name}: expected "
                f"{self._expected_chain_id}, got {chain_id}"
            )
        self._chain_id_checked = True

    async def call(self, method: str, params: Optional[List[Any]] = None) -> Any:
        """Make a JSON-RPC call with automatic failover.

        Raises:
            RPCError: If a node returns a non-retryable error
            ProviderUnavailableError: If every endpoint failed
        """
        await self._ensure_chain_id()
        return await self._call_internal(method, params or [])

    async def _call_internal(self, method: str, params: List[Any]) -> Any:
        self._request_id += 1
        payload = {
            "jsonrpc": "2.0",
            "id": self._request_id,
            "method": method,
            "params": params,
        }

        errors: List[Tuple[str, str]] = []
        client = self._get_client()

        for config, health in self._ordered_endpoints():
            start_time = time.monotonic()
            try:
                response = await client.post(
                    config.url,
                    json=payload,
                    headers={"Content-Type": "application/json"},
                    timeout=config.timeout_seconds,
                )
                latency_ms = (time.monotonic() - start_time) * 1000
                response.raise_for_status()
                result = response.json()
            except (httpx.HTTPError, ValueError) as e:
                error_msg = str(e) or type(e).__name__
                health.record_failure(error_msg)
                errors.append((config.url, error_msg))
                logger.warning(f"RPC {method} to {config.url} failed: {error_msg}")
                continue

            if "error" in result and result["error"]:
                error = result["error"]
                error_msg = str(error)
                error_code = error.get("code", 0) if isinstance(error, dict) else 0
                if error_code in RETRYABLE_RPC_CODES:
                    health.record_failure(error_msg)
                    errors.append((config.url, error_msg))
                    logger.warning(
                        f"RPC error from {config.url}: {error_msg}, trying next endpoint"
                    )
                    continue
                health.record_success(latency_ms)
                raise RPCError(
                    message=error.get("message", error_msg) if isinstance(error, dict) else error_msg,
                    code=error_code,
                    data=error.get("data") if isinstance(error, dict) else None,
                )

            health.record_success(latency_ms)
            logger.debug(f"RPC {method} to {config.url} succeeded in {latency_ms:.0f}ms")
            return result.get("result")

        raise ProviderUnavailableError(
            f"All RPC endpoints failed for {self._name}",
            provider=self._name,
            errors=errors,
        )

    async def health_check(self, check_method: str = "eth_blockNumber") -> Dict[str, Any]:
        """Probe every endpoint with a short timeout."""
        results: Dict[str, Any] = {"name": self._name, "endpoints": []}
        client = self._get_client()
        for config, health in self._endpoints:
            start_time = time.monotonic()
            try:
                response = await client.post(
                    config.url,
                    json={"jsonrpc": "2.0", "id": 1, "method": check_method, "params": []},
                    timeout=Timeouts.HEALTH_CHECK,
                )
                latency_ms = (time.monotonic() - start_time) * 1000
                healthy = response.status_code == 200 and "result" in response.json()
            except (httpx.HTTPError, ValueError) as e:
                health.record_failure(str(e))
                results["endpoints"].append({"url": config.url, "healthy": False, "error": str(e)})
                continue

            if healthy:
                health.record_success(latency_ms)
            else:
                health.record_failure(f"HTTP {response.status_code}")
            results["endpoints"].append({
                "url": config.url,
                "status": health.status.value,
                "latency_ms": latency_ms,
                "healthy": healthy,
            })
        results["healthy_count"] = sum(1 for e in results["endpoints"] if e["healthy"])
        return results

    def get_endpoint_stats(self) -> List[Dict[str, Any]]:
        return [
            {
                "url": cfg.url,
                "priority": cfg.priority,
                "status": health.status.value,
                "consecutive_failures": health.consecutive_failures,
                "total_requests": health.total_requests,
                "total_failures": health.total_failures,
                "avg_latency_ms": health.avg_latency_ms,
                "last_error": health.last_error,
            }
            for cfg, health in self._endpoints
        ]

    async def close(self) -> None:
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None


class EndpointPool(Generic[ClientT]):
    """Ordered failover across SDK clients, one client per endpoint URL.

    Errors listed in `failover_on` (transport failures, overloaded nodes)
    count against the endpoint and move the call to the next one; any
    other error is the node's answer and propagates unchanged. Clients
    are created on first use.

    Usage:
        pool = EndpointPool("horizon", urls, make_server, failover_on=(ConnectionError,))
        account = await pool.run("load_account", lambda server: server.load_account(address))
    """

    def __init__(
        self,
        name: str,
        urls: Sequence[str],
        factory: Callable[[str], ClientT],
        failover_on: Tuple[Type[BaseException], ...],
        retry_config: Optional[RetryConfig] = None,
        max_consecutive_failures: int = 3,
    ):
        if not urls:
            raise VeloConfigurationError(f"No endpoints configured for {name}")
        self._name = name
        self._factory = factory
        self._failover_on = failover_on
        self._retry_config = (
            dataclasses.replace(retry_config, retryable_exceptions=failover_on)
            if retry_config is not None
            else None
        )
        self._endpoints: List[Tuple[int, EndpointHealth]] = [
            (priority, EndpointHealth(url=url, max_consecutive_failures=max_consecutive_failures))
            for priority, url in enumerate(dict.fromkeys(urls))
        ]
        self._clients: Dict[str, ClientT] = {}

    @property
    def name(self) -> str:
        return self._name

    @property
    def urls(self) -> List[str]:
        return [health.url for _, health in self._endpoints]

    def client_for(self, url: str) -> ClientT:
        client = self._clients.get(url)
        if client is None:
            client = self._factory(url)
            self._clients[url] = client
        return client

    def _ordered_endpoints(self) -> List[Tuple[int, EndpointHealth]]:
        return sorted(self._endpoints, key=lambda pair: pair[1].get_priority_score(pair[0]))

    async def _attempt(self, client: ClientT, fn: Callable[[ClientT], Awaitable[R]]) -> R:
        if self._retry_config is None:
            return await fn(client)
        try:
            return await retry_async(fn, client, config=self._retry_config)
        except RetryExhausted as e:
            raise e.original_exception from e

    async def run(
        self,
        operation: str,
        fn: Callable[[ClientT], Awaitable[R]],
        failover: bool = True,
    ) -> R:
        """Run `fn` against the best endpoint, falling through the rest on failure.

        With ``failover=False`` only the best-ranked endpoint is tried; use
        it for calls that must not be repeated elsewhere, such as
        broadcasting a transaction whose outcome is unknown.

        Raises:
            ProviderUnavailableError: If every endpoint tried failed over
        """
        ordered = self._ordered_endpoints()
        if not failover:
            ordered = ordered[:1]

        errors: List[Tuple[str, str]] = []
        for _, health in ordered:
            client = self.client_for(health.url)
            start_time = time.monotonic()
            try:
                result = await self._attempt(client, fn)
            except self._failover_on as e:
                error_msg = str(e) or type(e).__name__
                health.record_failure(error_msg)
                errors.append((health.url, error_msg))
                logger.warning(f"{self._name} {operation} via {health.url} failed: {error_msg}")
                continue
            health.record_success((time.monotonic() - start_time) * 1000)
            return result

        raise ProviderUnavailableError(
            f"All endpoints failed for {self._name} ({operation})",
            provider=self._name,
            errors=errors,
        )

    def get_endpoint_stats(self) -> List[Dict[str, Any]]:
        return [
            {
                "url": health.url,
                "priority": priority,
                "status": health.status.value,
                "consecutive_failures": health.consecutive_failures,
                "total_failures": health.total_failures,
                "last_error": health.last_error,
            }
            for priority, health in self._endpoints
        ]

    async def close(self, closer: Callable[[ClientT], Awaitable[None]]) -> None:
        clients = list(self._clients.values())
        self._clients = {}
        for client in clients:
            await closer(client)
