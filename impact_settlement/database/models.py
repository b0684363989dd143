"""SQLAlchemy database models for the settlement engine."""
import uuid
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Numeric,
    String,
    Text,
    Uuid,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class PaymentMode(str, Enum):
    """How a SKU is paid for."""

    CLAIM = "CLAIM"  # pre-funded by the merchant
    PAY = "PAY"  # customer pays through Stripe
    GIFT_CARD = "GIFT_CARD"  # paid at point of sale, redeemed with a code
    ALLOCATION = "ALLOCATION"  # partner-funded, amount carried in the request


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    NA = "n/a"


class RegistrationLevel(str, Enum):
    """Amount of personal data collected for a user, ordered by rank."""

    MINIMAL = "minimal"
    STANDARD = "standard"
    FULL = "full"

    @property
    def rank(self) -> int:
        return _LEVEL_RANK[self]


_LEVEL_RANK = {
    RegistrationLevel.MINIMAL: 0,
    RegistrationLevel.STANDARD: 1,
    RegistrationLevel.FULL: 2,
}


class OwnerType(str, Enum):
    USER = "user"
    MERCHANT = "merchant"


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class SKU(Base):
    """
    Purchasable impact product.

    Pricing fields are immutable once a transaction references the SKU;
    only ``is_active`` and descriptive fields are edited afterwards.
    """

    __tablename__ = "skus"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    code: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    payment_mode: Mapped[str] = mapped_column(String(20), nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(10, 4), nullable=False, default=Decimal("0"))
    impact_multiplier: Mapped[Decimal] = mapped_column(
        Numeric(10, 4), nullable=False, default=Decimal("1")
    )
    requires_validation: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    # Overrides the global CORSAIR_THRESHOLD when set
    corsair_threshold: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )

    __table_args__ = (
        CheckConstraint(
            "payment_mode IN ('CLAIM', 'PAY', 'GIFT_CARD', 'ALLOCATION')",
            name="valid_payment_mode",
        ),
        CheckConstraint("price >= 0", name="non_negative_price"),
    )

    def __repr__(self) -> str:
        return f"<SKU(code={self.code}, mode={self.payment_mode}, price={self.price})>"


class GlobalConfig(Base):
    """Process-wide key/value settings edited by admins."""

    __tablename__ = "global_config"

    key: Mapped[str] = mapped_column(String(100), primary_key=True)
    value: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now(), onupdate=func.now()
    )

    def __repr__(self) -> str:
        return f"<GlobalConfig(key={self.key}, value={self.value})>"


class ConfigAuditLog(Base):
    """Append-only history of config changes."""

    __tablename__ = "config_audit_log"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    config_key: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    old_value: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    new_value: Mapped[str] = mapped_column(String(255), nullable=False)
    changed_by: Mapped[str] = mapped_column(String(255), nullable=False)
    changed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )


class Merchant(Base):
    """Seller whose sales generate impact; may own a Stripe connected account."""

    __tablename__ = "merchants"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    stripe_account_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    stripe_charges_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )

    @property
    def can_receive_split_payments(self) -> bool:
        return bool(self.stripe_account_id) and self.stripe_charges_enabled


class User(Base):
    """
    Customer identity.

    ``registration_level`` only ever moves up and ``corsair_connect_flag``
    only ever moves from false to true.
    """

    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    first_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    last_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    date_of_birth: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    street: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    city: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    postal_code: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    country: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    state: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    terms_accepted_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    registration_level: Mapped[str] = mapped_column(
        String(20), nullable=False, default=RegistrationLevel.MINIMAL.value
    )
    corsair_connect_flag: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        CheckConstraint(
            "registration_level IN ('minimal', 'standard', 'full')",
            name="valid_registration_level",
        ),
    )

    @property
    def level(self) -> RegistrationLevel:
        return RegistrationLevel(self.registration_level)

    def __repr__(self) -> str:
        return f"<User(id={self.id}, level={self.registration_level})>"


class Wallet(Base):
    """
    Running impact balance for one user or one merchant.

    Only ``core.wallets.WalletLedger`` writes to this table.
    """

    __tablename__ = "wallets"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id"), unique=True, nullable=True
    )
    merchant_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("merchants.id"), unique=True, nullable=True
    )
    total_accumulated: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_redeemed: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    current_balance: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_amount_spent: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, default=Decimal("0")
    )
    certified_asset_status: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        CheckConstraint(
            "(user_id IS NULL) <> (merchant_id IS NULL)", name="single_wallet_owner"
        ),
        CheckConstraint(
            "current_balance = total_accumulated - total_redeemed", name="balance_equation"
        ),
        CheckConstraint("current_balance >= 0", name="non_negative_balance"),
    )

    @property
    def owner_type(self) -> OwnerType:
        return OwnerType.USER if self.user_id is not None else OwnerType.MERCHANT

    def __repr__(self) -> str:
        return (
            f"<Wallet(id={self.id}, owner={self.owner_type.value}, "
            f"balance={self.current_balance})>"
        )


class WalletAdjustment(Base):
    """Immutable audit record of an admin wallet adjustment."""

    __tablename__ = "wallet_adjustments"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False, index=True
    )
    amount_grams: Mapped[int] = mapped_column(BigInteger, nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    adjusted_by: Mapped[str] = mapped_column(String(255), nullable=False)
    adjusted_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )


class GiftCardCode(Base):
    """
    One-time-use code bound to a SKU.

    ``is_redeemed`` with a null ``redeemed_by`` marks an admin invalidation.
    """

    __tablename__ = "gift_card_codes"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    code: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)
    sku_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("skus.id"), nullable=False)
    is_redeemed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    redeemed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    redeemed_by: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )

    sku: Mapped[SKU] = relationship(lazy="raise")

    @property
    def is_invalidated(self) -> bool:
        return self.is_redeemed and self.redeemed_by is None


class Transaction(Base):
    """
    Settlement record for one purchase event.

    Append-mostly: after insert only ``payment_status`` and
    ``stripe_payment_intent_id`` change, once, on gateway confirmation.
    """

    __tablename__ = "transactions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False, index=True
    )
    sku_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("skus.id"), nullable=False)
    master_id: Mapped[str] = mapped_column(String(255), nullable=False)
    merchant_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("merchants.id"), nullable=True, index=True
    )
    partner_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    order_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    calculated_impact: Mapped[int] = mapped_column(BigInteger, nullable=False)
    payment_status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    stripe_payment_intent_id: Mapped[Optional[str]] = mapped_column(
        String(255), unique=True, nullable=True
    )
    gift_card_code_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("gift_card_codes.id"), nullable=True
    )
    corsair_connect_flag: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now(), index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now(), onupdate=func.now()
    )

    user: Mapped[User] = relationship(lazy="raise")
    sku: Mapped[SKU] = relationship(lazy="raise")
    gift_card_code: Mapped[Optional[GiftCardCode]] = relationship(lazy="raise")

    __table_args__ = (
        CheckConstraint("amount >= 0", name="non_negative_amount"),
        CheckConstraint(
            "payment_status IN ('pending', 'completed', 'failed', 'n/a')",
            name="valid_payment_status",
        ),
        Index("idx_transactions_user_status", "user_id", "payment_status"),
    )

    @property
    def is_settled(self) -> bool:
        return self.payment_status in (PaymentStatus.COMPLETED, PaymentStatus.NA)

    def __repr__(self) -> str:
        return (
            f"<Transaction(id={self.id}, user_id={self.user_id}, "
            f"amount={self.amount}, status={self.payment_status})>"
        )
