"""Persisted settlement records and their table names."""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

# Table names understood by every RecordStore
USERS = "users"
USER_ADDRESSES = "user_addresses"
TRANSACTIONS = "transactions"
FEES = "fees"
SPLIT_PAYMENTS = "split_payments"
SPLIT_EXECUTIONS = "split_payment_executions"
SPLIT_RESULTS = "split_payment_execution_results"


def _new_id() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _encode(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _encode(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_encode(v) for v in value]
    return value


def _dec(value: Any, default: str = "0") -> Decimal:
    if value is None or value == "":
        return Decimal(default)
    return Decimal(str(value))


def _dt(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


class _Record:
    """to_dict for flat dataclass records (Decimals and datetimes as strings)."""

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: _encode(getattr(self, f.name)) for f in fields(self)}


class TransactionType(str, Enum):
    SEND = "send"
    FEE_COLLECTION = "fee_collection"
    SPLIT_PAYMENT = "split_payment"
    DEPOSIT = "deposit"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class FeeType(str, Enum):
    NORMAL_TRANSACTION = "normal_transaction"
    SPLIT_PAYMENT = "split_payment"


@dataclass(slots=True)
class TransactionRecord(_Record):
    """A row in the transactions table (sends and fee collections)."""
    user_id: str
    type: TransactionType
    amount: Decimal
    chain: str
    network: str
    from_address: str
    to_address: str
    tx_hash: str = ""
    status: TransactionStatus = TransactionStatus.PENDING
    error: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=_now)

    @classmethod
    def from_dict(cls, row: Dict[str, Any]) -> "TransactionRecord":
        return cls(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            type=TransactionType(row["type"]),
            amount=_dec(row.get("amount")),
            chain=row["chain"],
            network=row["network"],
            from_address=row.get("from_address") or "",
            to_address=row.get("to_address") or "",
            tx_hash=row.get("tx_hash") or "",
            status=TransactionStatus(row.get("status") or "pending"),
            error=row.get("error"),
            details=dict(row.get("details") or {}),
            created_at=_dt(row.get("created_at")) or _now(),
        )


@dataclass(slots=True)
class FeeTransferRecord(_Record):
    """Fee leg of a settlement, persisted as a fee_collection transaction.

    Status changes only through FeeLedger.create_pending/complete/fail.
    """
    user_id: str
    from_address: str
    treasury_address: str
    amount: Decimal
    chain: str
    network: str
    status: TransactionStatus = TransactionStatus.PENDING
    tx_hash: str = ""
    error: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=_now)

    def to_row(self) -> Dict[str, Any]:
        return TransactionRecord(
            id=self.id,
            user_id=self.user_id,
            type=TransactionType.FEE_COLLECTION,
            amount=self.amount,
            chain=self.chain,
            network=self.network,
            from_address=self.from_address,
            to_address=self.treasury_address,
            tx_hash=self.tx_hash,
            status=self.status,
            error=self.error,
            details=self.details,
            created_at=self.created_at,
        ).to_dict()

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "FeeTransferRecord":
        tx = TransactionRecord.from_dict(row)
        return cls(
            id=tx.id,
            user_id=tx.user_id,
            from_address=tx.from_address,
            treasury_address=tx.to_address,
            amount=tx.amount,
            chain=tx.chain,
            network=tx.network,
            status=tx.status,
            tx_hash=tx.tx_hash,
            error=tx.error,
            details=tx.details,
            created_at=tx.created_at,
        )

    @property
    def is_confirmed(self) -> bool:
        return self.status == TransactionStatus.CONFIRMED


@dataclass(slots=True)
class FeeRecord(_Record):
    """Fee charged for one landed recipient payout. Immutable once saved."""
    user_id: str
    transaction_id: str
    amount: Decimal
    fee: Decimal
    total: Decimal
    tier: str
    fee_percentage: Decimal
    chain: str
    network: str
    fee_type: FeeType = FeeType.NORMAL_TRANSACTION
    currency: str = "USD"
    description: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=_now)

    @classmethod
    def from_dict(cls, row: Dict[str, Any]) -> "FeeRecord":
        return cls(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            transaction_id=str(row["transaction_id"]),
            amount=_dec(row.get("amount")),
            fee=_dec(row.get("fee")),
            total=_dec(row.get("total")),
            tier=row.get("tier") or "",
            fee_percentage=_dec(row.get("fee_percentage")),
            chain=row["chain"],
            network=row["network"],
            fee_type=FeeType(row.get("fee_type") or "normal_transaction"),
            currency=row.get("currency") or "USD",
            description=row.get("description") or "",
            metadata=dict(row.get("metadata") or {}),
            created_at=_dt(row.get("created_at")) or _now(),
        )


@dataclass(slots=True)
class UserAddress(_Record):
    user_id: str
    address: str
    chain: str
    network: str
    encrypted_private_key: str = ""
    last_known_balance: Optional[str] = None
    id: str = field(default_factory=_new_id)

    @classmethod
    def from_dict(cls, row: Dict[str, Any]) -> "UserAddress":
        return cls(
            id=str(row.get("id") or _new_id()),
            user_id=str(row["user_id"]),
            address=row["address"],
            chain=row["chain"],
            network=row["network"],
            encrypted_private_key=row.get("encrypted_private_key") or "",
            last_known_balance=row.get("last_known_balance"),
        )


# =============================================================================
# Split payments
# =============================================================================

class SplitPaymentStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class ExecutionStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    PARTIALLY_FAILED = "partially_failed"
    FAILED = "failed"


class PaymentResultStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


@dataclass(slots=True)
class SplitRecipient(_Record):
    address: str
    amount: Decimal
    name: Optional[str] = None
    email: Optional[str] = None
    is_active: bool = True

    @classmethod
    def from_dict(cls, row: Dict[str, Any]) -> "SplitRecipient":
        return cls(
            address=row["address"],
            amount=_dec(row.get("amount")),
            name=row.get("name"),
            email=row.get("email"),
            is_active=bool(row.get("is_active", True)),
        )


@dataclass(slots=True)
class SplitPaymentTemplate(_Record):
    user_id: str
    title: str
    chain: str
    network: str
    from_address: str
    currency: str
    total_amount: Decimal
    recipients: List[SplitRecipient] = field(default_factory=list)
    description: Optional[str] = None
    status: SplitPaymentStatus = SplitPaymentStatus.ACTIVE
    execution_count: int = 0
    last_executed_at: Optional[datetime] = None
    id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=_now)

    def to_dict(self) -> Dict[str, Any]:
        data = _Record.to_dict(self)
        data["recipients"] = [r.to_dict() for r in self.recipients]
        return data

    @property
    def active_recipients(self) -> List[SplitRecipient]:
        return [r for r in self.recipients if r.is_active]

    @classmethod
    def from_dict(cls, row: Dict[str, Any]) -> "SplitPaymentTemplate":
        return cls(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            title=row["title"],
            chain=row["chain"],
            network=row["network"],
            from_address=row["from_address"],
            currency=row.get("currency") or "",
            total_amount=_dec(row.get("total_amount")),
            recipients=[SplitRecipient.from_dict(r) for r in row.get("recipients") or []],
            description=row.get("description"),
            status=SplitPaymentStatus(row.get("status") or "active"),
            execution_count=int(row.get("execution_count") or 0),
            last_executed_at=_dt(row.get("last_executed_at")),
            created_at=_dt(row.get("created_at")) or _now(),
        )


@dataclass(slots=True)
class SplitExecution(_Record):
    split_payment_id: str
    total_amount: Decimal
    total_recipients: int
    status: ExecutionStatus = ExecutionStatus.PENDING
    successful_payments: int = 0
    failed_payments: int = 0
    batch_tx_hashes: List[str] = field(default_factory=list)
    total_fees: Decimal = field(default_factory=lambda: Decimal("0"))
    error_message: Optional[str] = None
    completed_at: Optional[datetime] = None
    id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=_now)

    @classmethod
    def from_dict(cls, row: Dict[str, Any]) -> "SplitExecution":
        return cls(
            id=str(row["id"]),
            split_payment_id=str(row["split_payment_id"]),
            total_amount=_dec(row.get("total_amount")),
            total_recipients=int(row.get("total_recipients") or 0),
            status=ExecutionStatus(row.get("status") or "pending"),
            successful_payments=int(row.get("successful_payments") or 0),
            failed_payments=int(row.get("failed_payments") or 0),
            batch_tx_hashes=list(row.get("batch_tx_hashes") or []),
            total_fees=_dec(row.get("total_fees")),
            error_message=row.get("error_message"),
            completed_at=_dt(row.get("completed_at")),
            created_at=_dt(row.get("created_at")) or _now(),
        )


@dataclass(slots=True)
class SplitExecutionResult(_Record):
    execution_id: str
    recipient_address: str
    amount: Decimal
    status: PaymentResultStatus = PaymentResultStatus.PENDING
    name: Optional[str] = None
    email: Optional[str] = None
    tx_hash: Optional[str] = None
    fees: Decimal = field(default_factory=lambda: Decimal("0"))
    error_message: Optional[str] = None
    processed_at: Optional[datetime] = None
    id: str = field(default_factory=_new_id)

    @classmethod
    def from_dict(cls, row: Dict[str, Any]) -> "SplitExecutionResult":
        return cls(
            id=str(row["id"]),
            execution_id=str(row["execution_id"]),
            recipient_address=row["recipient_address"],
            amount=_dec(row.get("amount")),
            status=PaymentResultStatus(row.get("status") or "pending"),
            name=row.get("name"),
            email=row.get("email"),
            tx_hash=row.get("tx_hash"),
            fees=_dec(row.get("fees")),
            error_message=row.get("error_message"),
            processed_at=_dt(row.get("processed_at")),
        )
