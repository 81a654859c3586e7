"""
Starknet executor: ERC-20 transfers from OpenZeppelin accounts.

The recipient and fee legs are bundled as calls in one ``execute``
(multicall), so they succeed or revert together. Accounts that were
never deployed are deployed first, provided they hold enough STRK (or
ETH) to pay for it.

Network access goes through ``StarknetGateway``; ``StarknetPyGateway``
is the production adapter built on starknet-py, failing over across the
configured node URLs.
"""
from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from decimal import Decimal
from typing import Awaitable, Callable, Optional, Protocol, Sequence, Tuple, TypeVar, Union

import aiohttp
from starknet_py.hash.selector import get_selector_from_name
from starknet_py.net.account.account import Account
from starknet_py.net.client_errors import ClientError
from starknet_py.net.client_models import Call
from starknet_py.net.full_node_client import FullNodeClient
from starknet_py.net.models import StarknetChainId
from starknet_py.net.signer.stark_curve_signer import KeyPair

from ..chains import ChainTag, Network, from_base_units, normalize_starknet_address, to_base_units
from ..constants import StarknetUnits, Timeouts
from ..exceptions import (
    InsufficientFundsError,
    ProviderUnavailableError,
    SubmissionFailedError,
    VeloValidationError,
)
from ..key_vault import SigningMaterial
from .base import ChainExecutor, OutputStatus, TransferOutput, TransferResult
from .rpc_client import UNAVAILABLE_HTTP_STATUSES, EndpointPool

logger = logging.getLogger(__name__)

OZ_ACCOUNT_CLASS_HASH = 0x540D7F5EC7ECF317E68D48564934CB99259781B1EE3CEDBBC37EC5337F8E688

ACCEPTED_STATUSES = frozenset({"ACCEPTED_ON_L2", "ACCEPTED_ON_L1"})

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{1,64}$")

R = TypeVar("R")

# Raised by the node client when an endpoint cannot serve the request
TRANSPORT_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError)


@dataclass(frozen=True)
class StarknetToken:
    symbol: str
    address: str
    decimals: int


STARKNET_TOKENS = {
    "STRK": StarknetToken("STRK", "0x04718f5a0fc34cc1af16a1cdee98ffb20c31f5cd61d6ab07201858f4287c938d", 18),
    "ETH": StarknetToken("ETH", "0x049d36570d4e46f48e99674bd3fcc84644ddd6b96f7c741b1562b82f9e004dc7", 18),
    "USDC": StarknetToken("USDC", "0x053c91253bc9682c04929ca02ed00b3e423f6710d2ee7e0d5ebb06f3ecf368a8", 6),
    "USDT": StarknetToken("USDT", "0x068f5c6a61780768455de69077e07e89787839bf8166decfbf92b645209c0fb8", 6),
}


def to_uint256(value: int) -> Tuple[int, int]:
    """Split into (low, high) 128-bit felts."""
    if value < 0:
        raise ValueError("uint256 cannot be negative")
    return value & ((1 << 128) - 1), value >> 128


def parse_private_key(secret: str) -> int:
    raw = secret.strip()
    try:
        return int(raw, 16)
    except ValueError as e:
        raise VeloValidationError("Invalid Starknet private key", field="signing_material") from e


@dataclass(frozen=True)
class TokenCall:
    """ERC-20 ``transfer(recipient, uint256)`` on `token`."""
    token: str
    recipient: str
    amount: int


@dataclass(frozen=True)
class ReceiptStatus:
    finality_status: str
    execution_status: str
    revert_reason: Optional[str] = None

    @property
    def accepted(self) -> bool:
        return self.finality_status in ACCEPTED_STATUSES

    @property
    def reverted(self) -> bool:
        return self.execution_status == "REVERTED"


class StarknetGateway(Protocol):
    """Node operations the executor needs."""

    async def is_deployed(self, address: str) -> bool: ...

    async def balance_of(self, token: str, owner: str) -> int: ...

    async def deploy_account(self, private_key: int, address: str) -> str: ...

    async def execute(self, private_key: int, address: str, calls: Sequence[TokenCall]) -> str: ...

    async def get_receipt_status(self, tx_hash: str) -> Optional[ReceiptStatus]: ...

    async def close(self) -> None: ...


class StarknetNodeUnavailable(Exception):
    """An endpoint answered with an overload or server error."""


def _node_unavailable(error: ClientError) -> bool:
    try:
        return int(error.code) in UNAVAILABLE_HTTP_STATUSES
    except (TypeError, ValueError):
        return False


class StarknetPyGateway:
    """starknet-py FullNodeClient adapter over an ordered list of node URLs."""

    # JSON-RPC error codes
    CONTRACT_NOT_FOUND = 20
    TXN_HASH_NOT_FOUND = 29

    def __init__(self, node_urls: Union[str, Sequence[str]], network: Network):
        if isinstance(node_urls, str):
            node_urls = [node_urls]
        self._pool: EndpointPool[FullNodeClient] = EndpointPool(
            f"starknet-{network.value}",
            node_urls,
            factory=lambda url: FullNodeClient(node_url=url),
            failover_on=(*TRANSPORT_ERRORS, StarknetNodeUnavailable),
        )
        self._chain_id = StarknetChainId.MAINNET if network == Network.MAINNET else StarknetChainId.SEPOLIA

    @property
    def pool(self) -> EndpointPool[FullNodeClient]:
        return self._pool

    async def _run(
        self,
        operation: str,
        fn: Callable[[FullNodeClient], Awaitable[R]],
        failover: bool = True,
    ) -> R:
        async def call(client: FullNodeClient) -> R:
            try:
                return await fn(client)
            except ClientError as e:
                if _node_unavailable(e):
                    raise StarknetNodeUnavailable(str(e)) from e
                raise

        return await self._pool.run(operation, call, failover=failover)

    def _account(self, client: FullNodeClient, private_key: int, address: str) -> Account:
        return Account(
            address=int(address, 16),
            client=client,
            key_pair=KeyPair.from_private_key(private_key),
            chain=self._chain_id,
        )

    async def is_deployed(self, address: str) -> bool:
        async def lookup(client: FullNodeClient) -> bool:
            try:
                await client.get_class_hash_at(contract_address=int(address, 16))
                return True
            except ClientError as e:
                if e.code == self.CONTRACT_NOT_FOUND:
                    return False
                raise

        return await self._run("get_class_hash_at", lookup)

    async def balance_of(self, token: str, owner: str) -> int:
        call = Call(
            to_addr=int(token, 16),
            selector=get_selector_from_name("balanceOf"),
            calldata=[int(owner, 16)],
        )
        result = await self._run(
            "balanceOf", lambda client: client.call_contract(call, block_number="latest")
        )
        low, high = result[:2]
        return low + (high << 128)

    async def deploy_account(self, private_key: int, address: str) -> str:
        key_pair = KeyPair.from_private_key(private_key)

        async def deploy(client: FullNodeClient):
            return await Account.deploy_account_v3(
                address=int(address, 16),
                class_hash=OZ_ACCOUNT_CLASS_HASH,
                salt=key_pair.public_key,
                key_pair=key_pair,
                client=client,
                constructor_calldata=[key_pair.public_key],
                auto_estimate=True,
            )

        result = await self._run("deploy_account", deploy, failover=False)
        return hex(result.hash)

    async def execute(self, private_key: int, address: str, calls: Sequence[TokenCall]) -> str:
        selector = get_selector_from_name("transfer")
        prepared = [
            Call(
                to_addr=int(c.token, 16),
                selector=selector,
                calldata=[int(c.recipient, 16), *to_uint256(c.amount)],
            )
            for c in calls
        ]

        async def send(client: FullNodeClient):
            account = self._account(client, private_key, address)
            return await account.execute_v3(calls=prepared, auto_estimate=True)

        response = await self._run("execute", send, failover=False)
        return hex(response.transaction_hash)

    async def get_receipt_status(self, tx_hash: str) -> Optional[ReceiptStatus]:
        async def lookup(client: FullNodeClient):
            try:
                return await client.get_transaction_receipt(tx_hash=int(tx_hash, 16))
            except ClientError as e:
                if e.code == self.TXN_HASH_NOT_FOUND:
                    return None
                raise

        receipt = await self._run("get_transaction_receipt", lookup)
        if receipt is None:
            return None
        return ReceiptStatus(
            finality_status=getattr(receipt.finality_status, "value", str(receipt.finality_status)),
            execution_status=getattr(receipt.execution_status, "value", str(receipt.execution_status)),
            revert_reason=receipt.revert_reason,
        )

    async def close(self) -> None:
        return None


class StarknetExecutor(ChainExecutor):
    chain = ChainTag.STARKNET
    batch_delay_seconds = StarknetUnits.BATCH_DELAY_SECONDS
    poll_interval_seconds: float = StarknetUnits.POLL_INTERVAL_SECONDS

    def __init__(
        self,
        network: Network,
        gateway: StarknetGateway,
        confirmation_timeout: float = Timeouts.STARKNET_CONFIRMATION,
        token_symbol: str = "STRK",
    ):
        super().__init__(network)
        self._gateway = gateway
        self._confirmation_timeout = confirmation_timeout
        try:
            self._token = STARKNET_TOKENS[token_symbol.upper()]
        except KeyError:
            raise VeloValidationError(f"Unsupported Starknet token: {token_symbol}", field="token") from None

    def validate_address(self, address: str) -> bool:
        return bool(address) and bool(_ADDRESS_RE.match(address.strip()))

    async def get_balance(self, address: str) -> Decimal:
        units = await self._gateway.balance_of(self._token.address, normalize_starknet_address(address))
        return from_base_units(units, self._token.decimals)

    async def _wait_for_acceptance(self, tx_hash: str) -> None:
        while True:
            status = await self._gateway.get_receipt_status(tx_hash)
            if status is not None:
                if status.reverted:
                    raise SubmissionFailedError(
                        f"Transaction {tx_hash} reverted: {status.revert_reason}",
                        chain=self.chain.value,
                        tx_hash=tx_hash,
                        reason=status.revert_reason or "reverted",
                    )
                if status.accepted:
                    return
            await asyncio.sleep(self.poll_interval_seconds)

    async def ensure_deployed(self, address: str, private_key: int) -> Optional[str]:
        """Deploy the account contract if needed; returns the deploy hash."""
        if await self._gateway.is_deployed(address):
            return None

        minimum = StarknetUnits.DEPLOY_MINIMUM_WEI
        funded_with: Optional[str] = None
        for symbol in ("STRK", "ETH"):
            balance = await self._gateway.balance_of(STARKNET_TOKENS[symbol].address, address)
            if balance >= minimum:
                funded_with = symbol
                break
        if funded_with is None:
            raise InsufficientFundsError(
                "Account is not deployed and holds less than 0.5 STRK or ETH for deployment",
                required=str(from_base_units(minimum, 18)),
                token="STRK",
                chain=self.chain.value,
            )

        logger.info(f"Deploying Starknet account {address} (fees in {funded_with})")
        try:
            deploy_hash = await self._gateway.deploy_account(private_key, address)
        except ClientError as e:
            raise SubmissionFailedError(
                f"Starknet account deployment failed: {e}", chain=self.chain.value, reason=str(e)
            ) from e
        try:
            await asyncio.wait_for(self._wait_for_acceptance(deploy_hash), timeout=self._confirmation_timeout)
        except (ClientError, *TRANSPORT_ERRORS) as e:
            # The transfer is never sent from an account that is not yet live
            raise SubmissionFailedError(
                f"Starknet account deployment {deploy_hash} not accepted: {str(e) or type(e).__name__}",
                chain=self.chain.value,
                tx_hash=deploy_hash,
                reason="account deployment not accepted",
            ) from e
        logger.info(f"Starknet account {address} deployed in {deploy_hash}")
        return deploy_hash

    async def _check_funds(self, address: str, required: int) -> None:
        available = await self._gateway.balance_of(self._token.address, address)
        if available < required:
            raise InsufficientFundsError(
                f"Insufficient {self._token.symbol} balance",
                available=str(from_base_units(available, self._token.decimals)),
                required=str(from_base_units(required, self._token.decimals)),
                token=self._token.symbol,
                chain=self.chain.value,
            )

    async def preflight_batch(self, from_address: str, outputs: Sequence[TransferOutput]) -> None:
        total = sum((o.amount for o in outputs), Decimal(0))
        total += StarknetUnits.BATCH_FEE_BUFFER * len(outputs)
        await self._check_funds(
            normalize_starknet_address(from_address),
            to_base_units(total, self._token.decimals),
        )

    async def transfer(
        self,
        from_address: str,
        signing_material: SigningMaterial,
        outputs: Sequence[TransferOutput],
    ) -> TransferResult:
        self._require_outputs(outputs)
        for o in outputs:
            if not self.validate_address(o.to):
                raise VeloValidationError(f"Invalid Starknet address: {o.to}", field="to")

        address = normalize_starknet_address(from_address)
        private_key = parse_private_key(signing_material.secret)
        await self.ensure_deployed(address, private_key)

        calls = [
            TokenCall(
                token=self._token.address,
                recipient=normalize_starknet_address(o.to),
                amount=to_base_units(o.amount, self._token.decimals),
            )
            for o in outputs
        ]
        await self._check_funds(address, sum(c.amount for c in calls))

        try:
            tx_hash = await self._gateway.execute(private_key, address, calls)
        except ClientError as e:
            raise SubmissionFailedError(
                f"Starknet execute failed: {e}", chain=self.chain.value, reason=str(e)
            ) from e
        logger.info(f"Starknet multicall sent: {tx_hash} ({len(calls)} calls)")

        try:
            status = await self._await_confirmation(
                tx_hash, self._wait_for_acceptance(tx_hash), self._confirmation_timeout
            )
        except SubmissionFailedError as e:
            return TransferResult.uniform(tx_hash, outputs, OutputStatus.FAILED, e.message)
        except (ClientError, ProviderUnavailableError, *TRANSPORT_ERRORS) as e:
            # Broadcast succeeded; only the status lookup failed
            logger.warning(f"Could not confirm {tx_hash}: {e}")
            status = OutputStatus.SENT_UNCONFIRMED

        return TransferResult.uniform(tx_hash, outputs, status)

    async def close(self) -> None:
        await self._gateway.close()
