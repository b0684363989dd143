"""
Gift card code ledger.

A code goes from unredeemed to redeemed exactly once. The transition is a
conditional ``UPDATE ... WHERE is_redeemed = false`` so two concurrent
redemptions cannot both succeed; the loser gets ``ConflictError``.
"""
import secrets
import string
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from impact_settlement.core.exceptions import (
    ConflictError,
    NotFoundError,
    SettlementError,
    ValidationError,
)
from impact_settlement.database.models import SKU, GiftCardCode
from impact_settlement.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

MAX_BATCH_SIZE = 1000
_BASE36 = string.digits + string.ascii_uppercase


def _base36(number: int) -> str:
    digits = []
    while number:
        number, remainder = divmod(number, 36)
        digits.append(_BASE36[remainder])
    return "".join(reversed(digits)) or "0"


def generate_code(sku_code: str, index: int) -> str:
    """``{SKU}-{time base36}-{4 random chars}-{index:04}``"""
    timestamp = _base36(int(time.time() * 1000))
    random_part = "".join(secrets.choice(_BASE36) for _ in range(4))
    return f"{sku_code}-{timestamp}-{random_part}-{index:04d}"


@dataclass
class InvalidationResult:
    code: str
    success: bool
    error: Optional[str] = None


class GiftCardLedger:
    """Validation, redemption and admin management of gift card codes."""

    async def _find(self, db: AsyncSession, code: str, with_sku: bool = False) -> Optional[GiftCardCode]:
        query = select(GiftCardCode).where(GiftCardCode.code == code)
        if with_sku:
            query = query.options(selectinload(GiftCardCode.sku))
        result = await db.execute(query.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    async def validate(
        self, db: AsyncSession, code: str, expected_sku_id: Optional[uuid.UUID] = None
    ) -> GiftCardCode:
        """
        Check a code is usable without consuming it.

        The answer can be stale by the time the code is redeemed, which is why
        ``redeem_and_bind`` checks again.

        Raises:
            NotFoundError: Unknown code
            ConflictError: Already redeemed or invalidated
            ValidationError: Code belongs to a different SKU
        """
        gift_card = await self._find(db, code, with_sku=True)
        if gift_card is None:
            raise NotFoundError("Invalid gift card code", code=code)
        if gift_card.is_redeemed:
            raise ConflictError("This gift card code has already been used", code=code)
        if expected_sku_id is not None and gift_card.sku_id != expected_sku_id:
            raise ValidationError(
                "This gift card code does not match the expected product",
                code=code,
                expected_sku_id=str(expected_sku_id),
            )
        return gift_card

    async def _transition(
        self, db: AsyncSession, code: str, redeemed_by: Optional[uuid.UUID]
    ) -> GiftCardCode:
        result = await db.execute(
            update(GiftCardCode)
            .where(GiftCardCode.code == code, GiftCardCode.is_redeemed.is_(False))
            .values(
                is_redeemed=True,
                redeemed_at=datetime.now(timezone.utc),
                redeemed_by=redeemed_by,
            )
            .execution_options(synchronize_session=False)
        )
        gift_card = await self._find(db, code)

        if result.rowcount == 0:
            if gift_card is None:
                metrics.record_gift_card_transition("not_found")
                raise NotFoundError("Gift card code not found", code=code)
            metrics.record_gift_card_transition("conflict")
            raise ConflictError("This gift card code has already been used", code=code)

        return gift_card

    async def redeem_and_bind(
        self, db: AsyncSession, code: str, user_id: uuid.UUID
    ) -> GiftCardCode:
        """
        Consume a code on behalf of a user. Flushes, never commits.

        Raises:
            NotFoundError: Unknown code
            ConflictError: Already redeemed, including by a concurrent request
        """
        gift_card = await self._transition(db, code, user_id)
        metrics.record_gift_card_transition("redeemed")
        logger.info("gift_card_redeemed", gift_card_id=str(gift_card.id), user_id=str(user_id))
        return gift_card

    async def invalidate(self, db: AsyncSession, code: str) -> GiftCardCode:
        """
        Admin invalidation: redeemed with no redeeming user. Commits.

        Raises:
            NotFoundError: Unknown code
            ConflictError: Already redeemed or invalidated
        """
        try:
            gift_card = await self._transition(db, code, None)
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        metrics.record_gift_card_transition("invalidated")
        logger.warning("gift_card_invalidated", gift_card_id=str(gift_card.id))
        return gift_card

    async def invalidate_many(self, db: AsyncSession, codes: List[str]) -> List[InvalidationResult]:
        """Invalidate each code independently and report per-code outcomes."""
        results = []
        for code in codes:
            try:
                await self.invalidate(db, code)
                results.append(InvalidationResult(code=code, success=True))
            except SettlementError as e:
                results.append(InvalidationResult(code=code, success=False, error=e.message))
        return results

    async def _get_sku(self, db: AsyncSession, sku_id: uuid.UUID) -> SKU:
        sku = await db.get(SKU, sku_id)
        if sku is None:
            raise NotFoundError("SKU not found", sku_id=str(sku_id))
        return sku

    async def _insert(self, db: AsyncSession, sku: SKU, codes: List[str]) -> List[GiftCardCode]:
        sku_code = sku.code
        gift_cards = [GiftCardCode(code=code, sku_id=sku.id) for code in codes]
        db.add_all(gift_cards)
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            raise ConflictError("One or more gift card codes already exist", sku_code=sku_code)

        logger.info("gift_cards_created", sku_code=sku_code, count=len(gift_cards))
        return gift_cards

    async def generate_codes(
        self, db: AsyncSession, sku_id: uuid.UUID, quantity: int
    ) -> List[GiftCardCode]:
        """
        Generate ``quantity`` fresh codes for a SKU. Commits.

        Raises:
            ValidationError: If quantity is outside 1..1000
            NotFoundError: If the SKU does not exist
        """
        if quantity <= 0 or quantity > MAX_BATCH_SIZE:
            raise ValidationError(
                f"Quantity must be between 1 and {MAX_BATCH_SIZE}", quantity=quantity
            )
        sku = await self._get_sku(db, sku_id)
        codes = [generate_code(sku.code, index) for index in range(1, quantity + 1)]
        return await self._insert(db, sku, codes)

    async def create_codes(
        self, db: AsyncSession, sku_id: uuid.UUID, codes: List[str]
    ) -> List[GiftCardCode]:
        """Register externally issued codes for a SKU. Commits."""
        cleaned = [code.strip() for code in codes]
        if not cleaned or any(not code for code in cleaned):
            raise ValidationError("Gift card codes must be non-empty")
        if len(cleaned) > MAX_BATCH_SIZE:
            raise ValidationError(f"At most {MAX_BATCH_SIZE} codes per batch")
        if len(set(cleaned)) != len(cleaned):
            raise ValidationError("Duplicate codes in batch")

        sku = await self._get_sku(db, sku_id)
        return await self._insert(db, sku, cleaned)

    async def get_code_status(self, db: AsyncSession, code: str) -> GiftCardCode:
        gift_card = await self._find(db, code, with_sku=True)
        if gift_card is None:
            raise NotFoundError("Gift card code not found", code=code)
        return gift_card

    async def list_codes(
        self,
        db: AsyncSession,
        sku_id: Optional[uuid.UUID] = None,
        is_redeemed: Optional[bool] = None,
    ) -> List[GiftCardCode]:
        query = (
            select(GiftCardCode)
            .options(selectinload(GiftCardCode.sku))
            .order_by(GiftCardCode.created_at.desc())
        )
        if sku_id is not None:
            query = query.where(GiftCardCode.sku_id == sku_id)
        if is_redeemed is not None:
            query = query.where(GiftCardCode.is_redeemed.is_(is_redeemed))
        result = await db.execute(query)
        return list(result.scalars().all())
