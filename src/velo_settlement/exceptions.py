"""Unified exception hierarchy for velo-settlement.

All settlement errors inherit from VeloException, enabling:
- Consistent handling between the orchestrator and its callers
- HTTP status mapping for whatever API layer wraps the engine
- Structured error payloads with machine-readable codes

Usage:
    from velo_settlement.exceptions import (
        VeloException,
        InsufficientFundsError,
        TreasuryNotConfiguredError,
    )

    try:
        result = await executor.transfer(...)
    except InsufficientFundsError as e:
        return e.to_dict()
"""
from __future__ import annotations

from typing import Any, Optional


class VeloException(Exception):
    """Base exception for all settlement errors.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code (e.g., "VALIDATION_ERROR")
        details: Optional additional context
    """

    error_code: str = "VELO_ERROR"
    http_status: int = 500

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to API response format."""
        result = {
            "error": self.error_code,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        return result


# =============================================================================
# Validation Errors (4xx)
# =============================================================================

class VeloValidationError(VeloException):
    """Malformed request: missing recipient, bad amount, bad address."""

    error_code = "VALIDATION_ERROR"
    http_status = 400

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if field:
            details["field"] = field
        super().__init__(message, details=details)


class InvalidAmountError(VeloValidationError):
    """Amount is negative or otherwise unusable."""

    error_code = "INVALID_AMOUNT"

    def __init__(self, amount: Any, reason: str = "Amount cannot be negative") -> None:
        super().__init__(reason, field="amount", details={"amount": str(amount)})


class UnsupportedChainError(VeloValidationError):
    """Chain or network string has no known mapping."""

    error_code = "UNSUPPORTED_CHAIN"

    def __init__(self, value: str, kind: str = "chain") -> None:
        super().__init__(f"Unsupported {kind}: {value!r}", field=kind)


class SourceAddressNotOwnedError(VeloException):
    """Source address does not belong to the requesting user."""

    error_code = "ADDRESS_NOT_OWNED"
    http_status = 403

    def __init__(self, address: str, user_id: str) -> None:
        super().__init__(
            f"Address {address} is not owned by user {user_id}",
            details={"address": address, "user_id": user_id},
        )


class VeloNotFoundError(VeloException):
    """Requested record not found."""

    error_code = "NOT_FOUND"
    http_status = 404

    def __init__(
        self,
        resource_type: str,
        resource_id: str,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        message = f"{resource_type} '{resource_id}' not found"
        details = details or {}
        details["resource_type"] = resource_type
        details["resource_id"] = resource_id
        super().__init__(message, details=details)


# =============================================================================
# Configuration Errors
# =============================================================================

class VeloConfigurationError(VeloException):
    """Invalid or missing configuration."""

    error_code = "CONFIGURATION_ERROR"
    http_status = 500


class TreasuryNotConfiguredError(VeloConfigurationError):
    """No treasury address is configured for a chain/network pair."""

    error_code = "TREASURY_NOT_CONFIGURED"

    def __init__(self, chain: str, network: str) -> None:
        super().__init__(
            f"Treasury wallet not configured for {chain} on {network}",
            details={"chain": chain, "network": network},
        )
        self.chain = chain
        self.network = network


class ExecutorNotConfiguredError(VeloConfigurationError):
    """No chain executor is registered for a chain tag."""

    error_code = "EXECUTOR_NOT_CONFIGURED"

    def __init__(self, chain: str) -> None:
        super().__init__(
            f"No executor registered for chain {chain}",
            details={"chain": chain},
        )


# =============================================================================
# Settlement Errors
# =============================================================================

class InsufficientFundsError(VeloException):
    """Preflight balance check failed; nothing was signed."""

    error_code = "INSUFFICIENT_FUNDS"
    http_status = 400

    def __init__(
        self,
        message: str,
        available: Optional[str] = None,
        required: Optional[str] = None,
        token: Optional[str] = None,
        chain: Optional[str] = None,
    ) -> None:
        details: dict[str, Any] = {}
        if available is not None:
            details["available"] = available
        if required is not None:
            details["required"] = required
        if token:
            details["token"] = token
        if chain:
            details["chain"] = chain
        super().__init__(message, details=details)


class ProviderUnavailableError(VeloException):
    """Every endpoint for an external provider failed."""

    error_code = "PROVIDER_UNAVAILABLE"
    http_status = 503

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        errors: Optional[list[tuple[str, str]]] = None,
    ) -> None:
        details: dict[str, Any] = {}
        if provider:
            details["provider"] = provider
        if errors:
            details["errors"] = [f"{url}: {err}" for url, err in errors[:3]]
        super().__init__(message, details=details)
        self.errors = errors or []


class PriceUnavailableError(ProviderUnavailableError):
    """No live or cached price is available for a symbol."""

    error_code = "PRICE_UNAVAILABLE"

    def __init__(self, symbol: str, reason: str = "no price available") -> None:
        super().__init__(f"Price for {symbol} unavailable: {reason}", provider="coingecko")
        self.symbol = symbol


class SubmissionFailedError(VeloException):
    """Signing or broadcast was rejected by the network."""

    error_code = "SUBMISSION_FAILED"
    http_status = 502

    def __init__(
        self,
        message: str,
        chain: Optional[str] = None,
        tx_hash: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> None:
        details: dict[str, Any] = {}
        if chain:
            details["chain"] = chain
        if tx_hash:
            details["tx_hash"] = tx_hash
        if reason:
            details["reason"] = reason
        super().__init__(message, details=details)
        self.tx_hash = tx_hash


class ConfirmationTimeoutError(VeloException):
    """Transaction was broadcast but not observed in time.

    Non-fatal: the transaction may still land, so callers keep tx_hash.
    """

    error_code = "CONFIRMATION_TIMEOUT"
    http_status = 504

    def __init__(self, tx_hash: str, chain: str, timeout_seconds: float) -> None:
        super().__init__(
            f"Transaction {tx_hash} on {chain} not confirmed within {timeout_seconds}s",
            details={"tx_hash": tx_hash, "chain": chain, "timeout_seconds": timeout_seconds},
        )
        self.tx_hash = tx_hash
        self.chain = chain


class FeeCollectionFailedError(VeloException):
    """Fee leg failed; the recipient payout is unaffected."""

    error_code = "FEE_COLLECTION_FAILED"
    http_status = 500

    def __init__(self, record_id: str, reason: str) -> None:
        super().__init__(
            f"Fee collection for {record_id} failed: {reason}",
            details={"record_id": record_id, "reason": reason},
        )
        self.record_id = record_id


class KeyVaultError(VeloException):
    """Stored key material could not be decrypted or encrypted."""

    error_code = "KEY_VAULT_ERROR"
    http_status = 500
