"""Persistence layer: SQLAlchemy models and async session management."""
from impact_settlement.database.connection import (
    close_db,
    create_engine_from_settings,
    get_engine,
    get_session_factory,
    init_db,
    session_scope,
)
from impact_settlement.database.models import (
    SKU,
    Base,
    ConfigAuditLog,
    GiftCardCode,
    GlobalConfig,
    Merchant,
    OwnerType,
    PaymentMode,
    PaymentStatus,
    RegistrationLevel,
    Transaction,
    User,
    Wallet,
    WalletAdjustment,
)

__all__ = [
    "Base",
    "SKU",
    "ConfigAuditLog",
    "GiftCardCode",
    "GlobalConfig",
    "Merchant",
    "OwnerType",
    "PaymentMode",
    "PaymentStatus",
    "RegistrationLevel",
    "Transaction",
    "User",
    "Wallet",
    "WalletAdjustment",
    "close_db",
    "create_engine_from_settings",
    "get_engine",
    "get_session_factory",
    "init_db",
    "session_scope",
]
