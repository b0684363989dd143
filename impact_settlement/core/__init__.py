"""Core settlement logic: ledgers, pricing rules and the settlement engine."""
from .exceptions import (
    ConfigError,
    ConflictError,
    ExternalServiceError,
    InactiveSKUError,
    InsufficientBalanceError,
    InvalidAmountError,
    NotFoundError,
    SettlementError,
    UnauthorizedError,
    UnknownPaymentModeError,
    ValidationError,
)

__all__ = [
    "ConfigError",
    "ConflictError",
    "ExternalServiceError",
    "InactiveSKUError",
    "InsufficientBalanceError",
    "InvalidAmountError",
    "NotFoundError",
    "SettlementError",
    "UnauthorizedError",
    "UnknownPaymentModeError",
    "ValidationError",
]
