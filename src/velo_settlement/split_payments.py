"""
Split payment templates.

A template is a reusable recipient list bound to one source address and
chain. Each execution runs a settlement batch and stores one result row
per recipient, so a partially failed run keeps the record of which
payouts landed.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from .chains import ChainTag, currency_for_chain, normalize_starknet_address, string_to_chain, string_to_network
from .constants import FeePolicy
from .exceptions import VeloException, VeloNotFoundError, VeloValidationError
from .fees import to_decimal
from .notifications import NotificationEmitter, NotificationType
from .orchestrator import BatchRecipient, BatchRequest, BatchResult, SettlementOrchestrator
from .persistence import RecordStore
from .records import (
    SPLIT_EXECUTIONS,
    SPLIT_PAYMENTS,
    SPLIT_RESULTS,
    ExecutionStatus,
    FeeType,
    PaymentResultStatus,
    SplitExecution,
    SplitExecutionResult,
    SplitPaymentStatus,
    SplitPaymentTemplate,
    SplitRecipient,
)

logger = logging.getLogger(__name__)

RecipientInput = Union[SplitRecipient, Mapping[str, Any]]


@dataclass
class ExecutionReport:
    execution: SplitExecution
    results: List[SplitExecutionResult]


@dataclass
class ExecutionPage:
    items: List[ExecutionReport]
    total: int
    page: int
    limit: int

    @property
    def pages(self) -> int:
        return (self.total + self.limit - 1) // self.limit if self.limit else 0


def _coerce_recipient(value: RecipientInput) -> SplitRecipient:
    if isinstance(value, SplitRecipient):
        return value
    return SplitRecipient.from_dict(dict(value))


def _final_status(successful: int, failed: int) -> ExecutionStatus:
    if failed == 0:
        return ExecutionStatus.COMPLETED
    if successful == 0:
        return ExecutionStatus.FAILED
    return ExecutionStatus.PARTIALLY_FAILED


class SplitPaymentService:
    """Create, run and browse split payment templates."""

    def __init__(
        self,
        store: RecordStore,
        orchestrator: SettlementOrchestrator,
        notifier: Optional[NotificationEmitter] = None,
    ):
        self._store = store
        self._orchestrator = orchestrator
        self._notifier = notifier or NotificationEmitter()

    async def create(
        self,
        user_id: str,
        title: str,
        chain: str,
        network: str,
        from_address: str,
        recipients: Sequence[RecipientInput],
        description: Optional[str] = None,
    ) -> SplitPaymentTemplate:
        """Validate and store a new active template.

        Raises:
            VeloValidationError: Empty title, bad recipients or too many of them
            SourceAddressNotOwnedError: ``from_address`` is not the user's
        """
        if not title or not title.strip():
            raise VeloValidationError("Title is required", field="title")
        if not recipients:
            raise VeloValidationError("At least one recipient is required", field="recipients")
        if len(recipients) > FeePolicy.MAX_BATCH_RECIPIENTS:
            raise VeloValidationError(
                f"At most {FeePolicy.MAX_BATCH_RECIPIENTS} recipients per split payment",
                field="recipients",
            )

        tag = string_to_chain(chain)
        net = string_to_network(network)
        parsed: List[SplitRecipient] = []
        for index, raw in enumerate(recipients):
            try:
                recipient = _coerce_recipient(raw)
            except (KeyError, ArithmeticError, ValueError) as e:
                raise VeloValidationError(f"Recipient {index} is malformed", field="recipients") from e
            if not recipient.address:
                raise VeloValidationError(f"Recipient {index} has no address", field="recipients")
            if recipient.amount <= 0:
                raise VeloValidationError(f"Recipient {index} amount must be positive", field="recipients")
            if tag == ChainTag.STARKNET:
                recipient.address = normalize_starknet_address(recipient.address)
            parsed.append(recipient)

        await self._orchestrator.find_owned_address(user_id, from_address, tag, net)

        template = SplitPaymentTemplate(
            user_id=user_id,
            title=title.strip(),
            chain=tag.value,
            network=net.value,
            from_address=from_address,
            currency=currency_for_chain(tag.value),
            total_amount=sum((r.amount for r in parsed), Decimal("0")),
            recipients=parsed,
            description=description,
        )
        await self._store.save(SPLIT_PAYMENTS, template.to_dict())
        logger.info(
            f"Split payment {template.id} created: {len(parsed)} recipients, "
            f"{template.total_amount} {template.currency}"
        )
        self._notifier.emit(user_id, NotificationType.SPLIT_PAYMENT_CREATED, {
            "split_payment_id": template.id,
            "title": template.title,
            "total_amount": str(template.total_amount),
            "currency": template.currency,
            "recipients": len(parsed),
        })
        return template

    async def get_template(self, user_id: str, template_id: str) -> SplitPaymentTemplate:
        row = await self._store.find_one(SPLIT_PAYMENTS, {"id": template_id, "user_id": user_id})
        if row is None:
            raise VeloNotFoundError("SplitPayment", template_id)
        return SplitPaymentTemplate.from_dict(row)

    async def list_templates(
        self,
        user_id: str,
        status: Optional[SplitPaymentStatus] = None,
    ) -> List[SplitPaymentTemplate]:
        criteria: Dict[str, Any] = {"user_id": user_id}
        if status is not None:
            criteria["status"] = status.value
        rows = await self._store.find(SPLIT_PAYMENTS, criteria, newest_first=True)
        return [SplitPaymentTemplate.from_dict(r) for r in rows]

    async def toggle(self, user_id: str, template_id: str) -> SplitPaymentTemplate:
        """Switch a template between active and inactive."""
        template = await self.get_template(user_id, template_id)
        new_status = (
            SplitPaymentStatus.INACTIVE
            if template.status == SplitPaymentStatus.ACTIVE
            else SplitPaymentStatus.ACTIVE
        )
        await self._store.update(SPLIT_PAYMENTS, {"id": template_id}, {"status": new_status.value})
        template.status = new_status
        logger.info(f"Split payment {template_id} is now {new_status.value}")
        return template

    async def execute(self, user_id: str, template_id: str) -> ExecutionReport:
        """Run the template's active recipients as one settlement batch.

        Per-recipient failures end up in the results; errors that stop the
        whole batch (insufficient funds, provider down) mark the execution
        failed and are re-raised.
        """
        template = await self.get_template(user_id, template_id)
        if template.status != SplitPaymentStatus.ACTIVE:
            raise VeloValidationError("Split payment is not active", field="status")
        recipients = template.active_recipients
        if not recipients:
            raise VeloValidationError("Split payment has no active recipients", field="recipients")

        execution = SplitExecution(
            split_payment_id=template.id,
            total_amount=sum((r.amount for r in recipients), Decimal("0")),
            total_recipients=len(recipients),
            status=ExecutionStatus.PROCESSING,
        )
        await self._store.save(SPLIT_EXECUTIONS, execution.to_dict())
        logger.info(f"Executing split payment {template.id} ({len(recipients)} recipients)")

        try:
            batch = await self._orchestrator.send_batch(BatchRequest(
                user_id=user_id,
                from_address=template.from_address,
                chain=template.chain,
                network=template.network,
                recipients=[BatchRecipient(r.address, to_decimal(r.amount)) for r in recipients],
                fee_type=FeeType.SPLIT_PAYMENT,
            ))
        except VeloException as e:
            await self._record_abort(template, execution, recipients, e.message)
            raise
        except Exception as e:
            logger.exception(f"Split payment {template.id} aborted by an unexpected error")
            await self._record_abort(template, execution, recipients, str(e) or type(e).__name__)
            raise

        results = await self._record_results(execution, recipients, batch)
        now = datetime.now(timezone.utc)
        execution.status = _final_status(batch.successful, batch.failed)
        execution.successful_payments = batch.successful
        execution.failed_payments = batch.failed
        execution.batch_tx_hashes = batch.tx_hashes
        execution.total_fees = sum((r.fees for r in results), Decimal("0"))
        execution.completed_at = now
        await self._store.update(SPLIT_EXECUTIONS, {"id": execution.id}, {
            "status": execution.status.value,
            "successful_payments": execution.successful_payments,
            "failed_payments": execution.failed_payments,
            "batch_tx_hashes": execution.batch_tx_hashes,
            "total_fees": str(execution.total_fees),
            "completed_at": now.isoformat(),
        })
        await self._mark_executed(template, now)

        self._notifier.emit(user_id, NotificationType.SPLIT_PAYMENT_EXECUTED, {
            "split_payment_id": template.id,
            "execution_id": execution.id,
            "status": execution.status.value,
            "successful": batch.successful,
            "failed": batch.failed,
            "total_amount": str(execution.total_amount),
            "currency": template.currency,
        })
        return ExecutionReport(execution=execution, results=results)

    async def _record_results(
        self,
        execution: SplitExecution,
        recipients: Sequence[SplitRecipient],
        batch: BatchResult,
    ) -> List[SplitExecutionResult]:
        now = datetime.now(timezone.utc)
        results: List[SplitExecutionResult] = []
        for recipient, outcome in zip(recipients, batch.results):
            result = SplitExecutionResult(
                execution_id=execution.id,
                recipient_address=recipient.address,
                amount=recipient.amount,
                name=recipient.name,
                email=recipient.email,
                status=PaymentResultStatus.SUCCESS if outcome.success else PaymentResultStatus.FAILED,
                tx_hash=outcome.tx_hash if outcome.success else None,
                fees=outcome.fee.fee if outcome.success else Decimal("0"),
                error_message=None if outcome.success else outcome.error,
                processed_at=now,
            )
            await self._store.save(SPLIT_RESULTS, result.to_dict())
            results.append(result)
        return results

    async def _record_abort(
        self,
        template: SplitPaymentTemplate,
        execution: SplitExecution,
        recipients: Sequence[SplitRecipient],
        error: str,
    ) -> None:
        logger.error(f"Split payment {template.id} execution {execution.id} failed: {error}")
        now = datetime.now(timezone.utc)
        for recipient in recipients:
            await self._store.save(SPLIT_RESULTS, SplitExecutionResult(
                execution_id=execution.id,
                recipient_address=recipient.address,
                amount=recipient.amount,
                name=recipient.name,
                email=recipient.email,
                status=PaymentResultStatus.FAILED,
                error_message=error,
                processed_at=now,
            ).to_dict())
        execution.status = ExecutionStatus.FAILED
        execution.failed_payments = len(recipients)
        execution.error_message = error
        execution.completed_at = now
        await self._store.update(SPLIT_EXECUTIONS, {"id": execution.id}, {
            "status": ExecutionStatus.FAILED.value,
            "failed_payments": len(recipients),
            "error_message": error,
            "completed_at": now.isoformat(),
        })
        await self._mark_executed(template, now)

    async def _mark_executed(self, template: SplitPaymentTemplate, when: datetime) -> None:
        template.execution_count += 1
        template.last_executed_at = when
        await self._store.update(SPLIT_PAYMENTS, {"id": template.id}, {
            "execution_count": template.execution_count,
            "last_executed_at": when.isoformat(),
        })

    async def execution_history(
        self,
        user_id: str,
        template_id: str,
        page: int = 1,
        limit: int = 20,
    ) -> ExecutionPage:
        """Executions of one template, newest first, with their results."""
        await self.get_template(user_id, template_id)
        page = max(1, page)
        limit = max(1, min(limit, 100))
        criteria = {"split_payment_id": template_id}
        total = len(await self._store.find(SPLIT_EXECUTIONS, criteria))
        rows = await self._store.find(
            SPLIT_EXECUTIONS, criteria, limit=limit, offset=(page - 1) * limit, newest_first=True
        )
        items: List[ExecutionReport] = []
        for row in rows:
            execution = SplitExecution.from_dict(row)
            result_rows = await self._store.find(SPLIT_RESULTS, {"execution_id": execution.id})
            items.append(ExecutionReport(
                execution=execution,
                results=[SplitExecutionResult.from_dict(r) for r in result_rows],
            ))
        return ExecutionPage(items=items, total=total, page=page, limit=limit)
