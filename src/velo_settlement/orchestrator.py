"""
Settlement orchestration.

A transfer moves through these stages:

    VALIDATED -> FEES_COMPUTED -> TREASURY_RESOLVED
              -> RECIPIENTS_PAID -> FEES_COLLECTED -> RECORDED

The recipient payout is the primary obligation. Fee legs never block or
undo it: a missing treasury, a skipped or failed fee output only changes
the FeeTransferRecord, which stays ``pending`` whenever a later sweep can
still collect it.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

from .chains import (
    ChainTag,
    Network,
    ceil_to_decimals,
    normalize_starknet_address,
    short_starknet_address,
    string_to_chain,
    string_to_network,
)
from .config import VeloSettings, load_settings
from .constants import FeePolicy
from .exceptions import (
    FeeCollectionFailedError,
    InvalidAmountError,
    SourceAddressNotOwnedError,
    TreasuryNotConfiguredError,
    UnsupportedChainError,
    VeloException,
    VeloValidationError,
)
from .executors.base import ChainExecutor, OutputKind, OutputResult, OutputStatus, TransferOutput, TransferResult
from .executors.registry import ExecutorRegistry
from .fee_worker import FeeCollectionQueue, FeeJob
from .fees import ZERO, FeeCalculation, calculate_fee, round_usd, to_decimal
from .key_vault import KeyVault, SigningMaterial
from .ledger import FeeLedger
from .logging_config import LogContext, log_settlement
from .notifications import NotificationEmitter, NotificationType
from .persistence import RecordStore
from .price_feed import PriceFeed
from .records import (
    TRANSACTIONS,
    USER_ADDRESSES,
    FeeTransferRecord,
    FeeType,
    TransactionRecord,
    TransactionStatus,
    TransactionType,
    UserAddress,
)
from .treasury import TreasuryDirectory

logger = logging.getLogger(__name__)


class SettlementStage(str, Enum):
    VALIDATED = "validated"
    FEES_COMPUTED = "fees_computed"
    TREASURY_RESOLVED = "treasury_resolved"
    RECIPIENTS_PAID = "recipients_paid"
    FEES_COLLECTED = "fees_collected"
    RECORDED = "recorded"


_TX_STATUS = {
    OutputStatus.CONFIRMED: TransactionStatus.CONFIRMED,
    OutputStatus.SENT_UNCONFIRMED: TransactionStatus.PENDING,
    OutputStatus.FAILED: TransactionStatus.FAILED,
    OutputStatus.SKIPPED: TransactionStatus.FAILED,
}


# =============================================================================
# Requests and results
# =============================================================================

@dataclass(frozen=True)
class SendRequest:
    """Single-recipient transfer; amount is in native token units."""
    user_id: str
    from_address: str
    to_address: str
    amount: Decimal
    chain: str
    network: str = Network.MAINNET.value


@dataclass(frozen=True)
class BatchRecipient:
    address: str
    amount: Decimal


@dataclass(frozen=True)
class BatchRequest:
    user_id: str
    from_address: str
    chain: str
    network: str
    recipients: Sequence[BatchRecipient]
    fee_type: FeeType = FeeType.NORMAL_TRANSACTION


@dataclass(frozen=True)
class FeeBreakdown:
    recipient_receives: Decimal
    fee: Decimal
    fee_native: Decimal
    sender_pays: Decimal
    tier: str
    fee_percentage: Decimal
    currency: str
    treasury_wallet: Optional[str]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "recipient_receives": str(self.recipient_receives),
            "fee": str(self.fee),
            "fee_native": str(self.fee_native),
            "sender_pays": str(self.sender_pays),
            "tier": self.tier,
            "fee_percentage": str(self.fee_percentage),
            "currency": self.currency,
            "treasury_wallet": self.treasury_wallet,
        }


@dataclass
class SendResult:
    success: bool
    status: OutputStatus
    stage: SettlementStage
    tx_hash: Optional[str]
    transaction_id: str
    fee_breakdown: FeeBreakdown
    fee_transfer: Optional[FeeTransferRecord] = None
    error: Optional[str] = None


@dataclass
class RecipientResult:
    address: str
    amount: Decimal
    success: bool
    fee: FeeCalculation
    fee_native: Decimal
    tx_hash: Optional[str] = None
    error: Optional[str] = None
    transaction_id: Optional[str] = None
    fee_transfer_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "address": self.address,
            "amount": str(self.amount),
            "success": self.success,
            "fee": str(self.fee.fee),
        }
        if self.success:
            data["tx_hash"] = self.tx_hash
        else:
            data["error"] = self.error
        return data


@dataclass
class BatchResult:
    total_recipients: int
    successful: int
    failed: int
    results: List[RecipientResult]
    fee_breakdown: Dict[str, Any]
    stage: SettlementStage = SettlementStage.RECORDED

    @property
    def tx_hashes(self) -> List[str]:
        seen: List[str] = []
        for r in self.results:
            if r.tx_hash and r.tx_hash not in seen:
                seen.append(r.tx_hash)
        return seen


@dataclass(frozen=True)
class FeeQuote:
    amount: Decimal
    chain: str
    network: str
    symbol: str
    price_usd: Decimal
    amount_usd: Decimal
    calculation: FeeCalculation
    fee_native: Decimal
    treasury_configured: bool


@dataclass
class _Leg:
    """Per-recipient working state inside a batch."""
    recipient: BatchRecipient
    calculation: FeeCalculation
    fee_native: Decimal
    result: Optional[OutputResult] = None
    transaction_id: Optional[str] = None
    fee_transfer_id: Optional[str] = None


def _same_address(a: str, b: str, chain: ChainTag) -> bool:
    if chain == ChainTag.STARKNET:
        return normalize_starknet_address(a) == normalize_starknet_address(b)
    if a.startswith("0x") and b.startswith("0x"):
        return a.lower() == b.lower()
    return a.strip() == b.strip()


def _address_candidates(address: str, chain: ChainTag) -> List[str]:
    if chain != ChainTag.STARKNET:
        return [address]
    candidates = [address, normalize_starknet_address(address), short_starknet_address(address)]
    return list(dict.fromkeys(candidates))


def _positive(amount: Any) -> Decimal:
    value = to_decimal(amount)
    if value <= 0:
        raise InvalidAmountError(amount, "Amount must be greater than zero")
    return value


class SettlementOrchestrator:
    """Runs sends, batch payouts and fee collection across chains.

    Usage:
        orchestrator = SettlementOrchestrator(registry, store, vault=vault, ...)
        await orchestrator.start()
        result = await orchestrator.send(SendRequest(...))
        await orchestrator.stop()
    """

    def __init__(
        self,
        registry: ExecutorRegistry,
        store: RecordStore,
        *,
        vault: KeyVault,
        price_feed: PriceFeed,
        treasury: Optional[TreasuryDirectory] = None,
        ledger: Optional[FeeLedger] = None,
        notifier: Optional[NotificationEmitter] = None,
        fee_queue: Optional[FeeCollectionQueue] = None,
        settings: Optional[VeloSettings] = None,
    ):
        settings = settings or load_settings()
        self._registry = registry
        self._store = store
        self._vault = vault
        self._price_feed = price_feed
        self._treasury = treasury or TreasuryDirectory()
        self._ledger = ledger or FeeLedger(store)
        self._notifier = notifier or NotificationEmitter()
        self.fee_queue = fee_queue or FeeCollectionQueue(
            self.collect_fee,
            ledger=self._ledger,
            maxsize=settings.fee_queue_size,
            workers=settings.fee_queue_workers,
        )
        # Fee records with a collection in progress in this process
        self._collecting: Set[str] = set()

    @property
    def ledger(self) -> FeeLedger:
        return self._ledger

    async def start(self) -> None:
        await self.fee_queue.start()

    async def stop(self) -> None:
        await self.fee_queue.stop()
        await self._notifier.drain()

    # ------------------------------------------------------------------
    # Shared steps
    # ------------------------------------------------------------------

    async def find_owned_address(
        self,
        user_id: str,
        address: str,
        chain: ChainTag,
        network: Network,
    ) -> UserAddress:
        """Return the user's stored address row or raise SourceAddressNotOwnedError."""
        rows = await self._store.find(
            USER_ADDRESSES,
            {"user_id": user_id, "address": _address_candidates(address, chain)},
        )
        for row in rows:
            candidate = UserAddress.from_dict(row)
            try:
                if (
                    string_to_chain(candidate.chain) == chain
                    and string_to_network(candidate.network) == network
                ):
                    return candidate
            except UnsupportedChainError:
                logger.warning(f"Skipping address {candidate.id} with unknown chain {candidate.chain}")
        raise SourceAddressNotOwnedError(address, user_id)

    def _resolve_treasury(
        self, chain: ChainTag, network: Network
    ) -> Tuple[Optional[str], Optional[TreasuryNotConfiguredError]]:
        try:
            return self._treasury.resolve(chain, network), None
        except TreasuryNotConfiguredError as e:
            logger.error(f"{e.message}; recipient payout continues, fee leg will be failed")
            return None, e

    async def _price_and_fee(
        self, executor: ChainExecutor, amount: Decimal
    ) -> Tuple[Decimal, FeeCalculation, Decimal]:
        price = await self._price_feed.get_price(executor.token.symbol)
        calculation = calculate_fee(round_usd(amount * price))
        return price, calculation, self._fee_in_native(calculation.fee, price, executor.token.decimals)

    @staticmethod
    def _fee_in_native(fee_usd: Decimal, price: Decimal, decimals: int) -> Decimal:
        if fee_usd <= 0 or price <= 0:
            return ZERO
        return ceil_to_decimals(fee_usd / price, decimals)

    async def _settle_fee_leg(
        self,
        *,
        user_id: str,
        from_address: str,
        chain: ChainTag,
        network: Network,
        fee_native: Decimal,
        treasury: Optional[str],
        treasury_error: Optional[TreasuryNotConfiguredError],
        original_transaction_id: str,
        main_tx_hash: Optional[str],
        fee_output: Optional[OutputResult],
        fee_type: FeeType,
    ) -> FeeTransferRecord:
        """Create the FeeTransferRecord and move it as far as the outcome allows.

        ``fee_output`` is None when the fee was not part of the payout
        transaction; the record is then left pending for the fee queue.
        """
        record = await self._ledger.create_pending(
            user_id=user_id,
            from_address=from_address,
            treasury_address=treasury or "",
            amount=fee_native,
            chain=chain.value,
            network=network.value,
            original_transaction_id=original_transaction_id,
            fee_type=fee_type,
        )
        if treasury_error is not None:
            return await self._ledger.fail(record.id, treasury_error.message)
        if fee_native <= 0:
            return await self._ledger.complete(record.id, main_tx_hash or "")
        if fee_output is None:
            return record
        if fee_output.succeeded:
            return await self._ledger.complete(record.id, fee_output.tx_hash or main_tx_hash or "")
        if fee_output.status == OutputStatus.SKIPPED:
            logger.info(f"Fee transfer {record.id} left pending: {fee_output.error}")
            return record
        return await self._ledger.fail(record.id, fee_output.error or "fee output failed")

    async def _notify_recipient(
        self, to_address: str, chain: ChainTag, payload: Dict[str, Any]
    ) -> None:
        for candidate in _address_candidates(to_address, chain):
            row = await self._store.find_one(USER_ADDRESSES, {"address": candidate})
            if row:
                self._notifier.emit(str(row["user_id"]), NotificationType.RECEIVE_MONEY, payload)
                return

    # ------------------------------------------------------------------
    # Single send
    # ------------------------------------------------------------------

    async def send(self, request: SendRequest) -> SendResult:
        """Pay one recipient and collect the fee in the same executor call."""
        chain = string_to_chain(request.chain)
        network = string_to_network(request.network)

        with LogContext(user_id=request.user_id, chain=chain.value):
            amount = _positive(request.amount)
            if not request.to_address:
                raise VeloValidationError("Recipient address is required", field="to_address")
            executor = self._registry.get(chain, network)
            if not executor.validate_address(request.to_address):
                raise VeloValidationError(
                    f"Invalid {chain.value} address: {request.to_address}", field="to_address"
                )
            owned = await self.find_owned_address(request.user_id, request.from_address, chain, network)
            material = self._vault.open(owned.encrypted_private_key)
            stage = SettlementStage.VALIDATED

            price, calculation, fee_native = await self._price_and_fee(executor, amount)
            stage = SettlementStage.FEES_COMPUTED

            treasury, treasury_error = self._resolve_treasury(chain, network)
            if treasury and _same_address(treasury, request.to_address, chain):
                logger.info("Recipient is the treasury wallet; no fee leg")
                fee_native = ZERO
            stage = SettlementStage.TREASURY_RESOLVED

            outputs = [TransferOutput(request.to_address, amount)]
            if treasury and fee_native > 0:
                outputs.append(TransferOutput(treasury, fee_native, OutputKind.FEE))

            result = await executor.transfer(request.from_address, material, outputs)
            recipient = result.recipient_results[0]
            if recipient.succeeded:
                stage = SettlementStage.RECIPIENTS_PAID

            breakdown = FeeBreakdown(
                recipient_receives=calculation.recipient_receives,
                fee=calculation.fee,
                fee_native=fee_native,
                sender_pays=calculation.sender_pays,
                tier=calculation.tier,
                fee_percentage=calculation.fee_percentage,
                currency=executor.token.symbol,
                treasury_wallet=treasury,
            )
            tx_record = TransactionRecord(
                user_id=request.user_id,
                type=TransactionType.SEND,
                amount=amount,
                chain=chain.value,
                network=network.value,
                from_address=request.from_address,
                to_address=request.to_address,
                tx_hash=recipient.tx_hash or result.tx_hash or "",
                status=_TX_STATUS[recipient.status],
                error=recipient.error,
                details={
                    "price_usd": str(price),
                    "amount_usd": str(calculation.amount),
                    "fee_breakdown": breakdown.to_dict(),
                    "delivery": recipient.status.value,
                },
            )
            await self._store.save(TRANSACTIONS, tx_record.to_dict())

            if not recipient.succeeded:
                log_settlement(
                    logger, "error", f"Send to {request.to_address} failed: {recipient.error}",
                    tx_hash=recipient.tx_hash, amount=str(amount), chain=chain.value,
                )
                return SendResult(
                    success=False,
                    status=recipient.status,
                    stage=stage,
                    tx_hash=recipient.tx_hash,
                    transaction_id=tx_record.id,
                    fee_breakdown=breakdown,
                    error=recipient.error,
                )

            await self._ledger.record_fee(
                user_id=request.user_id,
                transaction_id=tx_record.id,
                calculation=calculation,
                chain=chain.value,
                network=network.value,
                description=f"Transaction fee for {amount} {executor.token.symbol}",
                onchain_tx_hash=tx_record.tx_hash,
            )
            fee_transfer = await self._settle_fee_leg(
                user_id=request.user_id,
                from_address=request.from_address,
                chain=chain,
                network=network,
                fee_native=fee_native,
                treasury=treasury,
                treasury_error=treasury_error,
                original_transaction_id=tx_record.id,
                main_tx_hash=tx_record.tx_hash,
                fee_output=result.fee_result,
                fee_type=FeeType.NORMAL_TRANSACTION,
            )
            stage = SettlementStage.RECORDED

            payload = {
                "transaction_id": tx_record.id,
                "amount": str(amount),
                "currency": executor.token.symbol,
                "chain": chain.value,
                "network": network.value,
                "tx_hash": tx_record.tx_hash,
                "to_address": request.to_address,
            }
            self._notifier.emit(request.user_id, NotificationType.SEND_MONEY, payload)
            await self._notify_recipient(
                request.to_address, chain, {**payload, "from_address": request.from_address}
            )

            log_settlement(
                logger, "info",
                f"Sent {amount} {executor.token.symbol} to {request.to_address} "
                f"(fee {calculation.fee} USD, {fee_transfer.status.value})",
                tx_hash=tx_record.tx_hash, amount=str(amount), chain=chain.value,
            )
            return SendResult(
                success=True,
                status=recipient.status,
                stage=stage,
                tx_hash=tx_record.tx_hash,
                transaction_id=tx_record.id,
                fee_breakdown=breakdown,
                fee_transfer=fee_transfer,
            )

    # ------------------------------------------------------------------
    # Batch payouts
    # ------------------------------------------------------------------

    def _validate_batch(self, executor: ChainExecutor, recipients: Sequence[BatchRecipient]) -> None:
        if not recipients:
            raise VeloValidationError("At least one recipient is required", field="recipients")
        if len(recipients) > FeePolicy.MAX_BATCH_RECIPIENTS:
            raise VeloValidationError(
                f"At most {FeePolicy.MAX_BATCH_RECIPIENTS} recipients per batch",
                field="recipients",
            )
        for index, r in enumerate(recipients):
            if not r.address or not executor.validate_address(r.address):
                raise VeloValidationError(
                    f"Recipient {index} has an invalid address: {r.address!r}", field="recipients"
                )
            _positive(r.amount)

    async def send_batch(self, request: BatchRequest) -> BatchResult:
        """Pay every recipient independently; fee legs follow in the background.

        Bitcoin settles the whole batch (recipients, one aggregated fee output
        and change) in one transaction. Other chains pay recipients one by one
        and enqueue a fee job per successful payout.
        """
        chain = string_to_chain(request.chain)
        network = string_to_network(request.network)

        with LogContext(user_id=request.user_id, chain=chain.value):
            executor = self._registry.get(chain, network)
            self._validate_batch(executor, request.recipients)
            owned = await self.find_owned_address(request.user_id, request.from_address, chain, network)
            material = self._vault.open(owned.encrypted_private_key)

            price = await self._price_feed.get_price(executor.token.symbol)
            legs: List[_Leg] = []
            for r in request.recipients:
                amount = to_decimal(r.amount)
                calculation = calculate_fee(round_usd(amount * price))
                legs.append(_Leg(
                    recipient=BatchRecipient(r.address, amount),
                    calculation=calculation,
                    fee_native=self._fee_in_native(calculation.fee, price, executor.token.decimals),
                ))

            treasury, treasury_error = self._resolve_treasury(chain, network)
            if treasury:
                for leg in legs:
                    if _same_address(treasury, leg.recipient.address, chain):
                        leg.fee_native = ZERO
            total_fee_native = sum((leg.fee_native for leg in legs), ZERO)

            recipient_outputs = [TransferOutput(leg.recipient.address, leg.recipient.amount) for leg in legs]
            fee_outputs: List[TransferOutput] = []
            if treasury and total_fee_native > 0:
                fee_outputs.append(TransferOutput(treasury, total_fee_native, OutputKind.FEE))

            await executor.preflight_batch(request.from_address, recipient_outputs + fee_outputs)

            fee_output: Optional[OutputResult] = None
            if executor.batches_in_one_transaction:
                results = await executor.transfer_batch(
                    request.from_address, material, recipient_outputs + fee_outputs
                )
                flat = [o for r in results for o in r.outputs]
                for leg, out in zip(legs, flat[: len(legs)]):
                    leg.result = out
                fee_output = next((o for o in flat if o.kind == OutputKind.FEE), None)
            else:
                results = await executor.transfer_batch(request.from_address, material, recipient_outputs)
                for leg, res in zip(legs, results):
                    leg.result = res.outputs[0]

            tx_type = (
                TransactionType.SPLIT_PAYMENT
                if request.fee_type == FeeType.SPLIT_PAYMENT
                else TransactionType.SEND
            )
            for leg in legs:
                await self._record_batch_leg(
                    request, executor, chain, network, leg, tx_type,
                    treasury, treasury_error, fee_output, price, material,
                )

            successful = sum(1 for leg in legs if leg.result and leg.result.succeeded)
            failed = len(legs) - successful
            paid = [leg for leg in legs if leg.result and leg.result.succeeded]
            total_amount = sum((leg.recipient.amount for leg in legs), ZERO)
            total_fees = sum((leg.calculation.fee for leg in paid), ZERO)
            fee_breakdown = {
                "total_amount": str(total_amount),
                "total_fees_usd": str(round_usd(total_fees)),
                "total_fees_native": str(sum((leg.fee_native for leg in paid), ZERO)),
                "currency": executor.token.symbol,
                "treasury_wallet": treasury,
                "recipients": [
                    {"address": leg.recipient.address, **leg.calculation.to_dict()} for leg in legs
                ],
            }

            if successful:
                self._notifier.emit(request.user_id, NotificationType.SEND_MONEY, {
                    "batch": True,
                    "successful": successful,
                    "failed": failed,
                    "total_amount": str(total_amount),
                    "currency": executor.token.symbol,
                    "chain": chain.value,
                    "network": network.value,
                })

            log_settlement(
                logger, "info" if not failed else "warning",
                f"Batch of {len(legs)} on {chain.value}/{network.value}: "
                f"{successful} paid, {failed} failed",
                amount=str(total_amount), chain=chain.value,
            )
            return BatchResult(
                total_recipients=len(legs),
                successful=successful,
                failed=failed,
                results=[
                    RecipientResult(
                        address=leg.recipient.address,
                        amount=leg.recipient.amount,
                        success=bool(leg.result and leg.result.succeeded),
                        fee=leg.calculation,
                        fee_native=leg.fee_native,
                        tx_hash=leg.result.tx_hash if leg.result else None,
                        error=leg.result.error if leg.result else "not attempted",
                        transaction_id=leg.transaction_id,
                        fee_transfer_id=leg.fee_transfer_id,
                    )
                    for leg in legs
                ],
                fee_breakdown=fee_breakdown,
            )

    async def _record_batch_leg(
        self,
        request: BatchRequest,
        executor: ChainExecutor,
        chain: ChainTag,
        network: Network,
        leg: _Leg,
        tx_type: TransactionType,
        treasury: Optional[str],
        treasury_error: Optional[TreasuryNotConfiguredError],
        fee_output: Optional[OutputResult],
        price: Decimal,
        material: SigningMaterial,
    ) -> None:
        result = leg.result
        status = result.status if result else OutputStatus.FAILED
        tx_record = TransactionRecord(
            user_id=request.user_id,
            type=tx_type,
            amount=leg.recipient.amount,
            chain=chain.value,
            network=network.value,
            from_address=request.from_address,
            to_address=leg.recipient.address,
            tx_hash=(result.tx_hash if result else None) or "",
            status=_TX_STATUS[status],
            error=result.error if result else "not attempted",
            details={
                "price_usd": str(price),
                "amount_usd": str(leg.calculation.amount),
                "fee_usd": str(leg.calculation.fee),
                "delivery": status.value,
            },
        )
        await self._store.save(TRANSACTIONS, tx_record.to_dict())
        leg.transaction_id = tx_record.id
        if not status.succeeded:
            return

        await self._ledger.record_fee(
            user_id=request.user_id,
            transaction_id=tx_record.id,
            calculation=leg.calculation,
            chain=chain.value,
            network=network.value,
            fee_type=request.fee_type,
            description=f"Batch payout fee for {leg.recipient.amount} {executor.token.symbol}",
            onchain_tx_hash=tx_record.tx_hash,
        )
        fee_transfer = await self._settle_fee_leg(
            user_id=request.user_id,
            from_address=request.from_address,
            chain=chain,
            network=network,
            fee_native=leg.fee_native,
            treasury=treasury,
            treasury_error=treasury_error,
            original_transaction_id=tx_record.id,
            main_tx_hash=tx_record.tx_hash,
            fee_output=fee_output,
            fee_type=request.fee_type,
        )
        leg.fee_transfer_id = fee_transfer.id
        if fee_transfer.status == TransactionStatus.PENDING and not executor.batches_in_one_transaction:
            self.fee_queue.enqueue(FeeJob(fee_transfer.id, material))

    # ------------------------------------------------------------------
    # Fee collection
    # ------------------------------------------------------------------

    async def collect_fee(
        self,
        record_id: str,
        signing_material: Optional[SigningMaterial] = None,
    ) -> FeeTransferRecord:
        """Send the fee of a pending FeeTransferRecord to the treasury.

        A confirmed record is returned untouched, and so is a record whose
        collection is already in progress here. Sent-but-unconfirmed
        transfers complete the record with their hash.

        Raises:
            FeeCollectionFailedError: If the transfer failed; the record is marked failed
        """
        if record_id in self._collecting:
            logger.info(f"Fee transfer {record_id} is already being collected")
            return await self._ledger.get(record_id)
        self._collecting.add(record_id)
        try:
            return await self._collect_fee(record_id, signing_material)
        finally:
            self._collecting.discard(record_id)

    async def _collect_fee(
        self,
        record_id: str,
        signing_material: Optional[SigningMaterial],
    ) -> FeeTransferRecord:
        record = await self._ledger.get(record_id)
        if record.is_confirmed:
            logger.debug(f"Fee transfer {record_id} already confirmed")
            return record

        chain = string_to_chain(record.chain)
        network = string_to_network(record.network)
        with LogContext(user_id=record.user_id, chain=chain.value):
            treasury = record.treasury_address
            if not treasury:
                try:
                    treasury = self._treasury.resolve(chain, network)
                except TreasuryNotConfiguredError as e:
                    await self._ledger.fail(record.id, e.message)
                    raise FeeCollectionFailedError(record.id, e.message) from e

            try:
                executor = self._registry.get(chain, network)
                if signing_material is None:
                    owned = await self.find_owned_address(record.user_id, record.from_address, chain, network)
                    signing_material = self._vault.open(owned.encrypted_private_key)
                result: TransferResult = await executor.transfer(
                    record.from_address,
                    signing_material,
                    [TransferOutput(treasury, record.amount, OutputKind.FEE)],
                )
            except VeloException as e:
                await self._ledger.fail(record.id, e.message)
                raise FeeCollectionFailedError(record.id, e.message) from e

            outcome = result.outputs[0]
            if outcome.succeeded:
                tx_hash = outcome.tx_hash or result.tx_hash or ""
                log_settlement(
                    logger, "info", f"Collected fee {record.amount} for {record.id}",
                    tx_hash=tx_hash, amount=str(record.amount), chain=chain.value,
                )
                return await self._ledger.complete(record.id, tx_hash)
            if outcome.status == OutputStatus.SKIPPED:
                logger.info(f"Fee transfer {record.id} skipped: {outcome.error}; left pending")
                return record

            reason = outcome.error or "fee transfer failed"
            await self._ledger.fail(record.id, reason)
            raise FeeCollectionFailedError(record.id, reason)

    # ------------------------------------------------------------------
    # Quotes
    # ------------------------------------------------------------------

    async def quote(
        self,
        amount: Any,
        chain: str | ChainTag,
        network: str | Network = Network.MAINNET,
    ) -> FeeQuote:
        """Fee for `amount` native units without moving funds."""
        tag = string_to_chain(chain)
        net = string_to_network(network)
        value = _positive(amount)
        executor = self._registry.get(tag, net)
        price, calculation, fee_native = await self._price_and_fee(executor, value)
        return FeeQuote(
            amount=value,
            chain=tag.value,
            network=net.value,
            symbol=executor.token.symbol,
            price_usd=price,
            amount_usd=calculation.amount,
            calculation=calculation,
            fee_native=fee_native,
            treasury_configured=self._treasury.is_configured(tag, net),
        )
