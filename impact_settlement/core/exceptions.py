"""
Exception taxonomy for the settlement engine.

Every exception carries an error code for client handling, the HTTP status an
outer API layer should map it to, and whether retrying the same request can
succeed. Nothing here knows about HTTP frameworks.
"""
from typing import Any, Dict, Optional


class SettlementError(Exception):
    """Base exception for all settlement errors."""

    error_code = "settlement_error"
    http_status = 500
    retryable = False

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        retryable: Optional[bool] = None,
        **details: Any,
    ):
        super().__init__(message)
        self.message = message
        if error_code is not None:
            self.error_code = error_code
        if retryable is not None:
            self.retryable = retryable
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for API responses."""
        return {
            "error": {
                "code": self.error_code,
                "message": self.message,
                "type": self.__class__.__name__,
                "retryable": self.retryable,
                "details": self.details,
            }
        }


# ============================================================================
# CLIENT ERRORS
# ============================================================================


class ValidationError(SettlementError):
    """Request is malformed or violates a business rule."""

    error_code = "validation_error"
    http_status = 400


class InactiveSKUError(ValidationError):
    error_code = "sku_inactive"

    def __init__(self, sku_code: str, **details: Any):
        super().__init__(f"SKU {sku_code} is not active", sku_code=sku_code, **details)


class InvalidAmountError(ValidationError):
    error_code = "invalid_amount"


class InsufficientBalanceError(ValidationError):
    """Redemption larger than the wallet's current balance."""

    error_code = "insufficient_balance"

    def __init__(self, requested: int, available: int, **details: Any):
        super().__init__(
            f"Insufficient balance: requested {requested}g, available {available}g",
            requested=requested,
            available=available,
            **details,
        )


class NotFoundError(SettlementError):
    error_code = "not_found"
    http_status = 404


class ConflictError(SettlementError):
    """
    State transition lost a race or was already applied.

    Raised for an already redeemed gift card and for flag downgrades.
    """

    error_code = "conflict"
    http_status = 409


class UnauthorizedError(SettlementError):
    """Webhook signature did not verify."""

    error_code = "unauthorized"
    http_status = 401


# ============================================================================
# SERVER ERRORS
# ============================================================================


class ConfigError(SettlementError):
    """
    Required configuration is missing or invalid.

    Fatal for the operation: nothing is written and retrying will not help
    until an admin fixes the value.
    """

    error_code = "config_error"
    http_status = 500


class UnknownPaymentModeError(SettlementError):
    error_code = "unknown_payment_mode"
    http_status = 500

    def __init__(self, payment_mode: str, **details: Any):
        super().__init__(
            f"Unknown payment mode: {payment_mode}", payment_mode=payment_mode, **details
        )


class ExternalServiceError(SettlementError):
    """Payment gateway failure, classified as retryable or permanent."""

    error_code = "external_service_error"
    http_status = 502
    retryable = True
