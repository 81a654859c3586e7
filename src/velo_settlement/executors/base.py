"""
Chain executor contract shared by every chain family.

``transfer(from_address, signing_material, outputs)`` moves value to one
or more outputs and reports a status per output:

- CONFIRMED         observed on chain
- SENT_UNCONFIRMED  broadcast, but the confirmation wait timed out;
                    the hash is kept and the output counts as paid
- FAILED            rejected or never sent
- SKIPPED           deliberately not sent (e.g. Stellar treasury absent)

Errors raised *before* anything is signed (bad input, insufficient funds,
provider down) propagate as exceptions. Once something was broadcast the
executor reports through statuses instead of raising.
"""
from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Awaitable, List, Optional, Sequence

from ..chains import ChainTag, Network, TokenInfo, token_for_chain
from ..exceptions import ConfirmationTimeoutError, VeloException, VeloValidationError
from ..key_vault import SigningMaterial
from ..treasury import TreasuryDirectory

logger = logging.getLogger(__name__)


class OutputKind(str, Enum):
    RECIPIENT = "recipient"
    FEE = "fee"


class OutputStatus(str, Enum):
    CONFIRMED = "confirmed"
    SENT_UNCONFIRMED = "sent_unconfirmed"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def succeeded(self) -> bool:
        return self in (OutputStatus.CONFIRMED, OutputStatus.SENT_UNCONFIRMED)


@dataclass(frozen=True)
class TransferOutput:
    """One value movement; amount is in display units of the chain token."""
    to: str
    amount: Decimal
    kind: OutputKind = OutputKind.RECIPIENT


@dataclass
class OutputResult:
    output: TransferOutput
    status: OutputStatus
    tx_hash: Optional[str] = None
    error: Optional[str] = None

    @property
    def to(self) -> str:
        return self.output.to

    @property
    def amount(self) -> Decimal:
        return self.output.amount

    @property
    def kind(self) -> OutputKind:
        return self.output.kind

    @property
    def succeeded(self) -> bool:
        return self.status.succeeded


@dataclass
class TransferResult:
    """Outcome of one executor call.

    ``tx_hash`` is the primary hash (the only one for single-transaction
    chains); per-output hashes differ only on EVM where every output is its
    own transaction.
    """
    tx_hash: Optional[str]
    outputs: List[OutputResult] = field(default_factory=list)

    @property
    def recipient_results(self) -> List[OutputResult]:
        return [o for o in self.outputs if o.kind == OutputKind.RECIPIENT]

    @property
    def fee_result(self) -> Optional[OutputResult]:
        for o in self.outputs:
            if o.kind == OutputKind.FEE:
                return o
        return None

    @property
    def confirmed_outputs(self) -> List[OutputResult]:
        return [o for o in self.outputs if o.succeeded]

    @classmethod
    def uniform(
        cls,
        tx_hash: Optional[str],
        outputs: Sequence[TransferOutput],
        status: OutputStatus,
        error: Optional[str] = None,
    ) -> "TransferResult":
        return cls(
            tx_hash=tx_hash,
            outputs=[OutputResult(o, status, tx_hash=tx_hash, error=error) for o in outputs],
        )


class ChainExecutor(ABC):
    """Build, sign, submit and confirm value transfers on one chain."""

    chain: ChainTag
    # Seconds between per-recipient transactions in a batch
    batch_delay_seconds: float = 0.0
    # True when transfer_batch settles every output in one transaction
    batches_in_one_transaction: bool = False

    def __init__(self, network: Network):
        self.network = network

    @property
    def token(self) -> TokenInfo:
        return token_for_chain(self.chain)

    @abstractmethod
    async def transfer(
        self,
        from_address: str,
        signing_material: SigningMaterial,
        outputs: Sequence[TransferOutput],
    ) -> TransferResult:
        """Send `outputs` from `from_address`."""

    @abstractmethod
    async def get_balance(self, address: str) -> Decimal:
        """Spendable balance in display units."""

    def validate_address(self, address: str) -> bool:
        return TreasuryDirectory.validate(address, self.chain)

    async def transfer_batch(
        self,
        from_address: str,
        signing_material: SigningMaterial,
        outputs: Sequence[TransferOutput],
    ) -> List[TransferResult]:
        """One transfer per output, in order; a failure stays with its output."""
        results: List[TransferResult] = []
        for index, output in enumerate(outputs):
            if index and self.batch_delay_seconds:
                await asyncio.sleep(self.batch_delay_seconds)
            try:
                results.append(await self.transfer(from_address, signing_material, [output]))
            except VeloException as e:
                logger.warning(
                    f"{self.chain.value} batch output {index} to {output.to} failed: {e.message}"
                )
                results.append(TransferResult.uniform(None, [output], OutputStatus.FAILED, e.message))
            except Exception as e:
                logger.exception(f"{self.chain.value} batch output {index} to {output.to} errored")
                results.append(TransferResult.uniform(None, [output], OutputStatus.FAILED, str(e)))
        return results

    async def preflight_batch(self, from_address: str, outputs: Sequence[TransferOutput]) -> None:
        """Optional whole-batch balance check before the first signature."""
        return None

    async def _await_confirmation(
        self,
        tx_hash: str,
        waiter: Awaitable[Any],
        timeout: float,
    ) -> OutputStatus:
        """Wait for inclusion; a timeout downgrades to SENT_UNCONFIRMED."""
        try:
            await asyncio.wait_for(waiter, timeout=timeout)
            return OutputStatus.CONFIRMED
        except (asyncio.TimeoutError, ConfirmationTimeoutError):
            logger.warning(
                f"{self.chain.value} tx {tx_hash} not confirmed within {timeout}s; "
                f"reporting as sent but unconfirmed"
            )
            return OutputStatus.SENT_UNCONFIRMED

    def _require_outputs(self, outputs: Sequence[TransferOutput]) -> None:
        if not outputs:
            raise VeloValidationError("At least one output is required", field="outputs")
        for o in outputs:
            if o.amount <= 0:
                raise VeloValidationError(f"Output amount must be positive: {o.amount}", field="amount")
            if not o.to:
                raise VeloValidationError("Output address is required", field="to")

    async def close(self) -> None:
        return None
