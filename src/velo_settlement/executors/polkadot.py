"""
Polkadot executor: native DOT via substrate-interface.

A single output is ``Balances.transfer_keep_alive``; several outputs
(recipient plus treasury fee) are wrapped in ``Utility.batch_all`` so
they dispatch atomically. substrate-interface is synchronous, so the
gateway runs it in a worker thread, one connection per configured node.
"""
from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Dict, Optional, Protocol, Sequence, Union

from substrateinterface import Keypair, KeypairType, SubstrateInterface
from substrateinterface.exceptions import SubstrateRequestException
from substrateinterface.utils.ss58 import ss58_decode
from websocket import WebSocketException

from ..chains import ChainTag, Network, from_base_units, to_base_units
from ..constants import PolkadotUnits, Timeouts
from ..exceptions import (
    ConfirmationTimeoutError,
    InsufficientFundsError,
    ProviderUnavailableError,
    SubmissionFailedError,
    VeloValidationError,
)
from ..key_vault import SigningMaterial
from .base import ChainExecutor, OutputStatus, TransferOutput, TransferResult
from .rpc_client import EndpointPool

logger = logging.getLogger(__name__)


def parse_keypair(secret: str, ss58_format: int = 0) -> Keypair:
    """sr25519 key from JSON {mnemonic|seed}, a mnemonic, a URI or a hex seed."""
    raw = secret.strip()
    try:
        if raw.startswith("{"):
            data = json.loads(raw)
            if data.get("mnemonic"):
                raw = data["mnemonic"]
            elif data.get("seed"):
                raw = data["seed"]
            else:
                raise ValueError("JSON key needs 'mnemonic' or 'seed'")

        if raw.startswith("//") or "//" in raw:
            return Keypair.create_from_uri(raw, ss58_format=ss58_format, crypto_type=KeypairType.SR25519)
        if len(raw.split()) >= 12:
            return Keypair.create_from_mnemonic(raw, ss58_format=ss58_format, crypto_type=KeypairType.SR25519)
        seed = raw if raw.startswith("0x") else f"0x{raw}"
        if len(seed) != 66:
            raise ValueError("hex seed must be 32 bytes")
        return Keypair.create_from_seed(seed, ss58_format=ss58_format, crypto_type=KeypairType.SR25519)
    except (ValueError, TypeError) as e:
        raise VeloValidationError(f"Invalid Polkadot key material: {e}", field="signing_material") from e


def same_account(a: str, b: str) -> bool:
    """Compare SS58 addresses by public key, ignoring the network prefix."""
    try:
        return ss58_decode(a) == ss58_decode(b)
    except ValueError:
        return False


def format_dispatch_error(error: Optional[Dict[str, Any]]) -> str:
    if not error:
        return "unknown dispatch error"
    section = error.get("module") or error.get("type") or "Dispatch"
    docs = error.get("docs") or []
    if isinstance(docs, (list, tuple)):
        docs = " ".join(str(d) for d in docs)
    return f"{section}.{error.get('name', 'Unknown')}: {docs}".rstrip(": ")


@dataclass(frozen=True)
class InclusionResult:
    extrinsic_hash: str
    success: bool
    error: Optional[Dict[str, Any]] = None
    block_hash: Optional[str] = None


@dataclass(frozen=True)
class SignedTransfer:
    """A signed extrinsic ready for submission."""
    extrinsic_hash: str
    payload: Any


class PolkadotGateway(Protocol):
    async def ss58_format(self) -> int: ...

    async def free_balance(self, address: str) -> int: ...

    async def existential_deposit(self) -> int: ...

    async def estimate_fee(self, keypair: Keypair, transfers: Sequence[tuple[str, int]]) -> int: ...

    async def sign(self, keypair: Keypair, transfers: Sequence[tuple[str, int]]) -> SignedTransfer: ...

    async def submit(self, signed: SignedTransfer) -> InclusionResult: ...

    async def close(self) -> None: ...


class SubstrateNodeUnavailable(Exception):
    """The websocket connection to a node could not be opened."""


# Transport failures from the websocket client; the connection is reopened
TRANSPORT_ERRORS = (ConnectionError, OSError, WebSocketException, asyncio.TimeoutError)


class SubstrateConnection:
    """One websocket connection to one node, opened on first use."""

    def __init__(self, url: str, connect: Callable[[str], SubstrateInterface]):
        self.url = url
        self._connect = connect
        self._substrate: Optional[SubstrateInterface] = None
        self._lock = asyncio.Lock()

    async def get(self) -> SubstrateInterface:
        async with self._lock:
            if self._substrate is None:
                try:
                    self._substrate = await asyncio.to_thread(self._connect, self.url)
                except (*TRANSPORT_ERRORS, SubstrateRequestException) as e:
                    raise SubstrateNodeUnavailable(f"{self.url}: {e}") from e
                logger.info(f"Connected to {self.url} ({self._substrate.chain})")
            return self._substrate

    async def reset(self) -> None:
        async with self._lock:
            substrate, self._substrate = self._substrate, None
        if substrate is not None:
            try:
                await asyncio.to_thread(substrate.close)
            except TRANSPORT_ERRORS as e:
                logger.debug(f"Closing {self.url} after a failure: {e}")

    async def close(self) -> None:
        await self.reset()


def _open(url: str) -> SubstrateInterface:
    return SubstrateInterface(url=url)


class SubstrateGateway:
    """substrate-interface adapter over an ordered list of node URLs."""

    def __init__(
        self,
        urls: Union[str, Sequence[str]],
        connect: Callable[[str], SubstrateInterface] = _open,
        inclusion_timeout: float = Timeouts.POLKADOT_INCLUSION,
    ):
        if isinstance(urls, str):
            urls = [urls]
        self._pool: EndpointPool[SubstrateConnection] = EndpointPool(
            "polkadot",
            urls,
            factory=lambda url: SubstrateConnection(url, connect),
            failover_on=(*TRANSPORT_ERRORS, SubstrateNodeUnavailable),
        )
        self._inclusion_timeout = inclusion_timeout

    @property
    def pool(self) -> EndpointPool[SubstrateConnection]:
        return self._pool

    async def _run(
        self,
        operation: str,
        fn: Callable[[SubstrateInterface], Any],
        failover: bool = True,
    ) -> Any:
        """Run the blocking `fn(substrate)` in a worker thread on the best node."""
        async def call(connection: SubstrateConnection) -> Any:
            substrate = await connection.get()
            try:
                return await asyncio.to_thread(fn, substrate)
            except TRANSPORT_ERRORS:
                await connection.reset()
                raise

        return await self._pool.run(operation, call, failover=failover)

    def _compose(self, substrate: SubstrateInterface, transfers: Sequence[tuple[str, int]]):
        calls = [
            substrate.compose_call(
                call_module="Balances",
                call_function="transfer_keep_alive",
                call_params={"dest": to, "value": value},
            )
            for to, value in transfers
        ]
        if len(calls) == 1:
            return calls[0]
        return substrate.compose_call(
            call_module="Utility",
            call_function="batch_all",
            call_params={"calls": calls},
        )

    async def ss58_format(self) -> int:
        return await self._run("ss58_format", lambda substrate: substrate.ss58_format)

    async def free_balance(self, address: str) -> int:
        account = await self._run(
            "System.Account", lambda substrate: substrate.query("System", "Account", [address])
        )
        return int(account.value["data"]["free"])

    async def existential_deposit(self) -> int:
        constant = await self._run(
            "ExistentialDeposit",
            lambda substrate: substrate.get_constant("Balances", "ExistentialDeposit"),
        )
        return int(constant.value)

    async def estimate_fee(self, keypair: Keypair, transfers: Sequence[tuple[str, int]]) -> int:
        info = await self._run(
            "payment_info",
            lambda substrate: substrate.get_payment_info(
                call=self._compose(substrate, transfers), keypair=keypair
            ),
        )
        return int(info["partialFee"])

    async def sign(self, keypair: Keypair, transfers: Sequence[tuple[str, int]]) -> SignedTransfer:
        extrinsic = await self._run(
            "sign",
            lambda substrate: substrate.create_signed_extrinsic(
                call=self._compose(substrate, transfers), keypair=keypair
            ),
        )
        return SignedTransfer(extrinsic_hash=f"0x{extrinsic.extrinsic_hash.hex()}", payload=extrinsic)

    async def submit(self, signed: SignedTransfer) -> InclusionResult:
        """Submit once to the best node and wait for inclusion.

        Raises:
            SubmissionFailedError: If the node rejected the extrinsic
            ConfirmationTimeoutError: If the connection failed after the
                extrinsic was handed over; it may still be included
        """
        try:
            receipt = await self._run(
                "submit_extrinsic",
                lambda substrate: substrate.submit_extrinsic(signed.payload, wait_for_inclusion=True),
                failover=False,
            )
        except SubstrateRequestException as e:
            raise SubmissionFailedError(
                f"Extrinsic rejected: {e}", chain=ChainTag.POLKADOT.value, reason=str(e)
            ) from e
        except ProviderUnavailableError as e:
            logger.warning(f"Lost the node while submitting {signed.extrinsic_hash}: {e.message}")
            raise ConfirmationTimeoutError(
                signed.extrinsic_hash, ChainTag.POLKADOT.value, self._inclusion_timeout
            ) from e
        return InclusionResult(
            extrinsic_hash=receipt.extrinsic_hash or signed.extrinsic_hash,
            success=receipt.is_success,
            error=None if receipt.is_success else receipt.error_message,
            block_hash=receipt.block_hash,
        )

    async def close(self) -> None:
        await self._pool.close(lambda connection: connection.close())


class PolkadotExecutor(ChainExecutor):
    chain = ChainTag.POLKADOT
    batch_delay_seconds = PolkadotUnits.BATCH_DELAY_SECONDS

    def __init__(
        self,
        network: Network,
        gateway: PolkadotGateway,
        inclusion_timeout: float = Timeouts.POLKADOT_INCLUSION,
    ):
        super().__init__(network)
        self._gateway = gateway
        self._inclusion_timeout = inclusion_timeout

    def validate_address(self, address: str) -> bool:
        if not address:
            return False
        try:
            ss58_decode(address)
            return True
        except ValueError:
            return False

    async def get_balance(self, address: str) -> Decimal:
        return from_base_units(await self._gateway.free_balance(address), PolkadotUnits.DECIMALS)

    async def _check_funds(self, from_address: str, amount: int, network_fee: int) -> None:
        existential = await self._gateway.existential_deposit()
        required = amount + network_fee + existential + PolkadotUnits.SAFETY_BUFFER_PLANCK
        free = await self._gateway.free_balance(from_address)
        if free < required:
            raise InsufficientFundsError(
                "Insufficient DOT balance (amount + fee + existential deposit + buffer)",
                available=str(from_base_units(free, PolkadotUnits.DECIMALS)),
                required=str(from_base_units(required, PolkadotUnits.DECIMALS)),
                token="DOT",
                chain=self.chain.value,
            )

    async def preflight_batch(self, from_address: str, outputs: Sequence[TransferOutput]) -> None:
        total = sum(to_base_units(o.amount, PolkadotUnits.DECIMALS) for o in outputs)
        await self._check_funds(from_address, total, 0)

    async def _include(self, signed: SignedTransfer) -> InclusionResult:
        result = await self._gateway.submit(signed)
        if not result.success:
            reason = format_dispatch_error(result.error)
            raise SubmissionFailedError(
                f"Extrinsic failed: {reason}",
                chain=self.chain.value,
                tx_hash=result.extrinsic_hash,
                reason=reason,
            )
        return result

    async def transfer(
        self,
        from_address: str,
        signing_material: SigningMaterial,
        outputs: Sequence[TransferOutput],
    ) -> TransferResult:
        self._require_outputs(outputs)
        for o in outputs:
            if not self.validate_address(o.to):
                raise VeloValidationError(f"Invalid Polkadot address: {o.to}", field="to")

        keypair = parse_keypair(signing_material.secret, await self._gateway.ss58_format())
        if not same_account(keypair.ss58_address, from_address):
            raise VeloValidationError("Signing key does not match source address", field="from_address")

        transfers = [(o.to, to_base_units(o.amount, PolkadotUnits.DECIMALS)) for o in outputs]
        network_fee = await self._gateway.estimate_fee(keypair, transfers)
        await self._check_funds(from_address, sum(v for _, v in transfers), network_fee)

        signed = await self._gateway.sign(keypair, transfers)
        logger.info(
            f"Submitting Polkadot extrinsic {signed.extrinsic_hash} "
            f"({'batch_all' if len(transfers) > 1 else 'transfer_keep_alive'}, {len(transfers)} transfers)"
        )
        try:
            status = await self._await_confirmation(
                signed.extrinsic_hash, self._include(signed), self._inclusion_timeout
            )
        except SubmissionFailedError as e:
            return TransferResult.uniform(signed.extrinsic_hash, outputs, OutputStatus.FAILED, e.message)

        return TransferResult.uniform(signed.extrinsic_hash, outputs, status)

    async def close(self) -> None:
        await self._gateway.close()
