"""
Stellar executor: native XLM via Horizon.

Recipients that do not exist yet are funded with ``createAccount``
(starting balance at least 1 XLM); existing accounts get a ``payment``.
The treasury fee operation is only added when the treasury account
exists on the network; otherwise the fee output is reported ``skipped``
and its ledger record stays pending for a later sweep.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import ROUND_DOWN, Decimal
from typing import Any, List, Protocol, Sequence, Union

from stellar_sdk import Asset, Keypair, Network as StellarNetwork, ServerAsync, StrKey, TransactionBuilder
from stellar_sdk.client.aiohttp_client import AiohttpClient
from stellar_sdk.exceptions import (
    BadRequestError,
    BaseHorizonError,
    ConnectionError as HorizonConnectionError,
    Ed25519SecretSeedInvalidError,
    NotFoundError,
)

from ..chains import ChainTag, Network
from ..constants import StellarUnits
from ..exceptions import (
    ConfirmationTimeoutError,
    InsufficientFundsError,
    SubmissionFailedError,
    VeloValidationError,
)
from ..key_vault import SigningMaterial
from ..retry import REST_RETRY_CONFIG
from .base import ChainExecutor, OutputKind, OutputResult, OutputStatus, TransferOutput, TransferResult
from .rpc_client import UNAVAILABLE_HTTP_STATUSES, EndpointPool

logger = logging.getLogger(__name__)

STROOP = Decimal("0.0000001")
STROOPS_PER_XLM = Decimal(10_000_000)


def format_amount(amount: Decimal) -> str:
    """Horizon amounts carry at most 7 decimals."""
    return format(Decimal(amount).quantize(STROOP, rounding=ROUND_DOWN), "f")


def parse_keypair(secret: str) -> Keypair:
    """Accept an ``S...`` secret seed or a 32-byte hex seed."""
    raw = secret.strip()
    try:
        if raw.startswith("S"):
            return Keypair.from_secret(raw)
        seed = bytes.fromhex(raw[2:] if raw.startswith("0x") else raw)
        if len(seed) != 32:
            raise ValueError(f"seed must be 32 bytes, got {len(seed)}")
        return Keypair.from_raw_ed25519_seed(seed)
    except (Ed25519SecretSeedInvalidError, ValueError) as e:
        raise VeloValidationError("Invalid Stellar secret", field="signing_material") from e


@dataclass(frozen=True)
class StellarOperation:
    """One operation in a Stellar transaction."""
    kind: str  # "create_account" | "payment"
    destination: str
    amount: Decimal


class StellarGateway(Protocol):
    async def account_exists(self, address: str) -> bool: ...

    async def native_balance(self, address: str) -> Decimal: ...

    async def submit(self, keypair: Keypair, operations: Sequence[StellarOperation]) -> str: ...

    async def close(self) -> None: ...


class HorizonUnavailable(Exception):
    """A Horizon host answered with an overload or server error."""


class HorizonGateway:
    """stellar-sdk ServerAsync adapter over an ordered list of Horizon URLs."""

    def __init__(
        self,
        horizon_urls: Union[str, Sequence[str]],
        network: Network,
        base_fee: int = StellarUnits.BASE_FEE_STROOPS,
        timeout_seconds: int = StellarUnits.TX_TIMEOUT_SECONDS,
    ):
        if isinstance(horizon_urls, str):
            horizon_urls = [horizon_urls]
        self._pool: EndpointPool[ServerAsync] = EndpointPool(
            f"horizon-{network.value}",
            horizon_urls,
            factory=lambda url: ServerAsync(horizon_url=url, client=AiohttpClient()),
            failover_on=(HorizonConnectionError, HorizonUnavailable),
            retry_config=REST_RETRY_CONFIG,
        )
        self._passphrase = (
            StellarNetwork.PUBLIC_NETWORK_PASSPHRASE
            if network == Network.MAINNET
            else StellarNetwork.TESTNET_NETWORK_PASSPHRASE
        )
        self._base_fee = base_fee
        self._timeout_seconds = timeout_seconds

    @property
    def pool(self) -> EndpointPool[ServerAsync]:
        return self._pool

    async def _load(self, server: ServerAsync, address: str) -> Any:
        try:
            return await server.accounts().account_id(address).call()
        except NotFoundError:
            return None
        except BaseHorizonError as e:
            if e.status in UNAVAILABLE_HTTP_STATUSES:
                raise HorizonUnavailable(f"HTTP {e.status}: {e.message}") from e
            raise

    async def account_exists(self, address: str) -> bool:
        account = await self._pool.run("load account", lambda server: self._load(server, address))
        return account is not None

    async def native_balance(self, address: str) -> Decimal:
        account = await self._pool.run("load account", lambda server: self._load(server, address))
        if account is None:
            return Decimal(0)
        for balance in account.get("balances", []):
            if balance.get("asset_type") == "native":
                return Decimal(balance["balance"])
        return Decimal(0)

    def _build(self, source: Any, keypair: Keypair, operations: Sequence[StellarOperation]) -> Any:
        builder = TransactionBuilder(
            source_account=source,
            network_passphrase=self._passphrase,
            base_fee=self._base_fee,
        )
        for op in operations:
            if op.kind == "create_account":
                builder.append_create_account_op(
                    destination=op.destination,
                    starting_balance=format_amount(op.amount),
                )
            else:
                builder.append_payment_op(
                    destination=op.destination,
                    asset=Asset.native(),
                    amount=format_amount(op.amount),
                )
        tx = builder.set_timeout(self._timeout_seconds).build()
        tx.sign(keypair)
        return tx

    async def _submit(self, server: ServerAsync, tx: Any) -> str:
        tx_hash = tx.hash_hex()
        try:
            response = await server.submit_transaction(tx)
        except BadRequestError as e:
            codes = (e.extras or {}).get("result_codes", {})
            raise SubmissionFailedError(
                f"Stellar transaction rejected: {codes or e.message}",
                chain=ChainTag.STELLAR.value,
                tx_hash=tx_hash,
                reason=str(codes or e.message),
            ) from e
        except BaseHorizonError as e:
            if e.status == 504:
                raise ConfirmationTimeoutError(tx_hash, ChainTag.STELLAR.value, self._timeout_seconds) from e
            raise SubmissionFailedError(
                f"Horizon error {e.status}: {e.message}",
                chain=ChainTag.STELLAR.value,
                tx_hash=tx_hash,
                reason=str(e.message),
            ) from e
        except HorizonConnectionError as e:
            raise ConfirmationTimeoutError(tx_hash, ChainTag.STELLAR.value, self._timeout_seconds) from e
        return response.get("hash", tx_hash)

    async def submit(self, keypair: Keypair, operations: Sequence[StellarOperation]) -> str:
        async def send(server: ServerAsync) -> str:
            # Loading the account may fail over; once submitted, errors are final
            try:
                source = await server.load_account(keypair.public_key)
            except NotFoundError as e:
                raise InsufficientFundsError(
                    "Source account is not funded on this network",
                    available="0",
                    token="XLM",
                    chain=ChainTag.STELLAR.value,
                ) from e
            except BaseHorizonError as e:
                if e.status in UNAVAILABLE_HTTP_STATUSES:
                    raise HorizonUnavailable(f"HTTP {e.status}: {e.message}") from e
                raise
            return await self._submit(server, self._build(source, keypair, operations))

        return await self._pool.run("submit", send)

    async def close(self) -> None:
        await self._pool.close(lambda server: server.close())


class StellarExecutor(ChainExecutor):
    chain = ChainTag.STELLAR
    batch_delay_seconds = StellarUnits.BATCH_DELAY_SECONDS

    def __init__(
        self,
        network: Network,
        gateway: StellarGateway,
        base_fee: int = StellarUnits.BASE_FEE_STROOPS,
    ):
        super().__init__(network)
        self._gateway = gateway
        self._base_fee = base_fee

    def validate_address(self, address: str) -> bool:
        return bool(address) and StrKey.is_valid_ed25519_public_key(address)

    async def get_balance(self, address: str) -> Decimal:
        return await self._gateway.native_balance(address)

    async def _plan(
        self,
        outputs: Sequence[TransferOutput],
    ) -> tuple[List[StellarOperation], List[OutputResult]]:
        operations: List[StellarOperation] = []
        results: List[OutputResult] = []
        for o in outputs:
            exists = await self._gateway.account_exists(o.to)
            if o.kind == OutputKind.FEE and not exists:
                logger.warning(f"Stellar treasury {o.to} does not exist; fee operation not added")
                results.append(OutputResult(o, OutputStatus.SKIPPED, error="treasury account not found"))
                continue
            if exists:
                operations.append(StellarOperation("payment", o.to, o.amount))
            else:
                starting = max(o.amount, StellarUnits.MIN_STARTING_BALANCE)
                operations.append(StellarOperation("create_account", o.to, starting))
            results.append(OutputResult(o, OutputStatus.SENT_UNCONFIRMED))
        return operations, results

    async def _check_funds(self, from_address: str, operations: Sequence[StellarOperation]) -> None:
        network_fee = Decimal(self._base_fee * len(operations)) / STROOPS_PER_XLM
        required = sum((op.amount for op in operations), Decimal(0)) + network_fee + StellarUnits.FEE_BUFFER
        available = await self._gateway.native_balance(from_address)
        if available < required:
            raise InsufficientFundsError(
                "Insufficient XLM balance",
                available=str(available),
                required=str(required),
                token="XLM",
                chain=self.chain.value,
            )

    async def preflight_batch(self, from_address: str, outputs: Sequence[TransferOutput]) -> None:
        operations, _ = await self._plan(outputs)
        await self._check_funds(from_address, operations)

    async def transfer(
        self,
        from_address: str,
        signing_material: SigningMaterial,
        outputs: Sequence[TransferOutput],
    ) -> TransferResult:
        self._require_outputs(outputs)
        for o in outputs:
            if not self.validate_address(o.to):
                raise VeloValidationError(f"Invalid Stellar address: {o.to}", field="to")

        keypair = parse_keypair(signing_material.secret)
        if keypair.public_key != from_address:
            raise VeloValidationError("Signing key does not match source address", field="from_address")

        operations, results = await self._plan(outputs)
        if not operations:
            raise VeloValidationError("Nothing to send", field="outputs")
        await self._check_funds(from_address, operations)

        status = OutputStatus.CONFIRMED
        try:
            tx_hash = await self._gateway.submit(keypair, operations)
        except ConfirmationTimeoutError as e:
            logger.warning(f"Stellar tx {e.tx_hash} submission timed out; reporting as sent but unconfirmed")
            tx_hash = e.tx_hash
            status = OutputStatus.SENT_UNCONFIRMED
        logger.info(f"Stellar tx submitted: {tx_hash} ({len(operations)} operations)")

        for result in results:
            if result.status != OutputStatus.SKIPPED:
                result.status = status
                result.tx_hash = tx_hash
        return TransferResult(tx_hash=tx_hash, outputs=results)

    async def close(self) -> None:
        await self._gateway.close()
