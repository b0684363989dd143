"""
Wallet ledger.

Every mutation goes through ``_locked_wallet``, which returns the owner's row
selected ``FOR UPDATE`` (creating it first if needed), and every mutation ends
in ``_recompute`` so ``current_balance == total_accumulated - total_redeemed``
holds after each write.
"""
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Tuple

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from impact_settlement.core.exceptions import (
    InsufficientBalanceError,
    InvalidAmountError,
    NotFoundError,
    ValidationError,
)
from impact_settlement.database.models import OwnerType, Transaction, Wallet, WalletAdjustment
from impact_settlement.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class WalletTotals:
    """Point-in-time copy of a wallet's counters."""

    total_accumulated: int
    total_redeemed: int
    current_balance: int
    total_amount_spent: Decimal
    certified_asset_status: bool

    @classmethod
    def from_wallet(cls, wallet: Wallet) -> "WalletTotals":
        return cls(
            total_accumulated=wallet.total_accumulated,
            total_redeemed=wallet.total_redeemed,
            current_balance=wallet.current_balance,
            total_amount_spent=Decimal(wallet.total_amount_spent),
            certified_asset_status=wallet.certified_asset_status,
        )


@dataclass
class WalletHistory:
    wallet: Wallet
    transactions: List[Transaction]


def _owner_column(owner_type: OwnerType):
    return Wallet.user_id if OwnerType(owner_type) == OwnerType.USER else Wallet.merchant_id


def _recompute(wallet: Wallet) -> None:
    wallet.current_balance = wallet.total_accumulated - wallet.total_redeemed


class WalletLedger:
    """Sole writer of ``wallets`` and ``wallet_adjustments``."""

    async def _select(
        self, db: AsyncSession, owner_id: uuid.UUID, owner_type: OwnerType, for_update: bool
    ) -> Optional[Wallet]:
        query = select(Wallet).where(_owner_column(owner_type) == owner_id)
        if for_update:
            query = query.with_for_update()
        # Refresh attributes that may be stale from an earlier read in this session
        query = query.execution_options(populate_existing=True)
        result = await db.execute(query)
        return result.scalar_one_or_none()

    async def _locked_wallet(
        self, db: AsyncSession, owner_id: uuid.UUID, owner_type: OwnerType
    ) -> Wallet:
        wallet = await self._select(db, owner_id, owner_type, for_update=True)
        if wallet is not None:
            return wallet

        owner_type = OwnerType(owner_type)
        wallet = Wallet(
            user_id=owner_id if owner_type == OwnerType.USER else None,
            merchant_id=owner_id if owner_type == OwnerType.MERCHANT else None,
            total_accumulated=0,
            total_redeemed=0,
            current_balance=0,
            total_amount_spent=Decimal("0"),
            certified_asset_status=False,
        )
        try:
            async with db.begin_nested():
                db.add(wallet)
            logger.info("wallet_created", owner_id=str(owner_id), owner_type=owner_type.value)
        except IntegrityError:
            # Concurrent first reference created it; take the lock on theirs
            wallet = await self._select(db, owner_id, owner_type, for_update=True)
            if wallet is None:
                raise
        return wallet

    async def credit(
        self,
        db: AsyncSession,
        owner_id: uuid.UUID,
        owner_type: OwnerType,
        impact_grams: int,
        amount_spent: Decimal,
        threshold: Decimal,
    ) -> Wallet:
        """
        Add a settled purchase to the owner's wallet.

        Flushes, never commits: the caller owns the enclosing transaction so a
        credit is never persisted without its Transaction row.
        """
        if impact_grams < 0:
            raise InvalidAmountError("Impact must not be negative", impact_grams=impact_grams)

        wallet = await self._locked_wallet(db, owner_id, owner_type)
        wallet.total_accumulated += impact_grams
        wallet.total_amount_spent = Decimal(wallet.total_amount_spent) + Decimal(amount_spent)
        _recompute(wallet)
        # Certification never lapses, whichever SKU threshold applied last
        wallet.certified_asset_status = bool(
            wallet.certified_asset_status or wallet.total_amount_spent >= threshold
        )
        await db.flush()

        metrics.record_wallet_mutation("credit", OwnerType(owner_type).value, impact_grams)
        logger.info(
            "wallet_credited",
            wallet_id=str(wallet.id),
            owner_type=OwnerType(owner_type).value,
            grams=impact_grams,
            current_balance=wallet.current_balance,
            certified=wallet.certified_asset_status,
        )
        return wallet

    async def redeem(
        self, db: AsyncSession, owner_id: uuid.UUID, owner_type: OwnerType, amount_grams: int
    ) -> Wallet:
        """
        Spend grams from the wallet. Commits.

        Raises:
            InvalidAmountError: If amount_grams is not positive
            InsufficientBalanceError: If amount_grams exceeds the balance
        """
        if amount_grams <= 0:
            raise InvalidAmountError(
                "Redemption amount must be positive", amount_grams=amount_grams
            )

        try:
            wallet = await self._locked_wallet(db, owner_id, owner_type)
            if amount_grams > wallet.current_balance:
                raise InsufficientBalanceError(amount_grams, wallet.current_balance)

            wallet.total_redeemed += amount_grams
            _recompute(wallet)
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        metrics.record_wallet_mutation("redeem", OwnerType(owner_type).value, amount_grams)
        logger.info(
            "wallet_redeemed",
            wallet_id=str(wallet.id),
            grams=amount_grams,
            current_balance=wallet.current_balance,
        )
        return wallet

    async def adjust(
        self,
        db: AsyncSession,
        user_id: uuid.UUID,
        delta_grams: int,
        reason: str,
        adjusted_by: str,
    ) -> Tuple[Wallet, WalletAdjustment]:
        """
        Admin correction of a user wallet, recorded in ``wallet_adjustments``.

        Commits.

        Raises:
            ValidationError: If delta is zero, reason is empty, or the
                balance would go negative
        """
        if delta_grams == 0:
            raise ValidationError("Adjustment amount cannot be zero")
        if not reason or not reason.strip():
            raise ValidationError("Reason is required for wallet adjustments")
        if not adjusted_by:
            raise ValidationError("adjusted_by is required")

        try:
            wallet = await self._locked_wallet(db, user_id, OwnerType.USER)
            new_accumulated = wallet.total_accumulated + delta_grams
            if new_accumulated - wallet.total_redeemed < 0:
                raise ValidationError(
                    "Adjustment would result in negative balance",
                    current_balance=wallet.current_balance,
                    delta_grams=delta_grams,
                )

            wallet.total_accumulated = new_accumulated
            _recompute(wallet)
            adjustment = WalletAdjustment(
                user_id=user_id,
                amount_grams=delta_grams,
                reason=reason.strip(),
                adjusted_by=adjusted_by,
            )
            db.add(adjustment)
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        metrics.record_wallet_mutation("adjust", OwnerType.USER.value, delta_grams)
        logger.warning(
            "wallet_adjusted",
            wallet_id=str(wallet.id),
            user_id=str(user_id),
            delta_grams=delta_grams,
            adjusted_by=adjusted_by,
            current_balance=wallet.current_balance,
        )
        return wallet, adjustment

    async def get_wallet(
        self, db: AsyncSession, owner_id: uuid.UUID, owner_type: OwnerType
    ) -> Wallet:
        """
        Raises:
            NotFoundError: If the owner has no wallet yet
        """
        wallet = await self._select(db, owner_id, owner_type, for_update=False)
        if wallet is None:
            raise NotFoundError(
                "Wallet not found", owner_id=str(owner_id), owner_type=OwnerType(owner_type).value
            )
        return wallet

    async def get_wallet_with_history(
        self,
        db: AsyncSession,
        owner_id: uuid.UUID,
        owner_type: OwnerType,
        limit: int = 100,
        offset: int = 0,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> WalletHistory:
        """Wallet plus its owner's transactions, newest first, with SKUs loaded."""
        wallet = await self.get_wallet(db, owner_id, owner_type)

        owner_filter = (
            Transaction.user_id == owner_id
            if OwnerType(owner_type) == OwnerType.USER
            else Transaction.merchant_id == owner_id
        )
        query = (
            select(Transaction)
            .where(owner_filter)
            .options(selectinload(Transaction.sku))
            .order_by(Transaction.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        if start_date is not None:
            query = query.where(Transaction.created_at >= start_date)
        if end_date is not None:
            query = query.where(Transaction.created_at <= end_date)

        result = await db.execute(query)
        return WalletHistory(wallet=wallet, transactions=list(result.scalars().all()))

    async def get_adjustment_history(
        self, db: AsyncSession, user_id: uuid.UUID
    ) -> List[WalletAdjustment]:
        result = await db.execute(
            select(WalletAdjustment)
            .where(WalletAdjustment.user_id == user_id)
            .order_by(WalletAdjustment.adjusted_at.desc())
        )
        return list(result.scalars().all())
