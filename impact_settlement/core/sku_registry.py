"""SKU lookup and admin management."""
import uuid
from decimal import Decimal
from typing import List, Optional, Union

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from impact_settlement.core.exceptions import (
    ConflictError,
    InactiveSKUError,
    NotFoundError,
    ValidationError,
)
from impact_settlement.database.models import SKU, PaymentMode

logger = structlog.get_logger(__name__)


def effective_threshold(sku: SKU, global_threshold: Decimal) -> Decimal:
    """Per-SKU certification threshold, falling back to the global one."""
    if sku.corsair_threshold is not None:
        return Decimal(sku.corsair_threshold)
    return global_threshold


class SKURegistry:
    """Resolves SKU codes to pricing rules."""

    async def get_by_code(self, db: AsyncSession, code: str) -> SKU:
        """
        Raises:
            NotFoundError: If no SKU has this code
        """
        result = await db.execute(select(SKU).where(SKU.code == code))
        sku = result.scalar_one_or_none()
        if sku is None:
            raise NotFoundError(f"SKU {code} not found", sku_code=code)
        return sku

    async def get_by_id(self, db: AsyncSession, sku_id: uuid.UUID) -> SKU:
        sku = await db.get(SKU, sku_id)
        if sku is None:
            raise NotFoundError(f"SKU {sku_id} not found", sku_id=str(sku_id))
        return sku

    async def resolve_purchasable(self, db: AsyncSession, code: str) -> SKU:
        """
        Resolve a SKU that can be bought right now.

        Raises:
            NotFoundError: If no SKU has this code
            InactiveSKUError: If the SKU is deactivated
        """
        sku = await self.get_by_code(db, code)
        if not sku.is_active:
            raise InactiveSKUError(code)
        return sku

    async def list_skus(self, db: AsyncSession, active_only: bool = False) -> List[SKU]:
        query = select(SKU).order_by(SKU.created_at.desc())
        if active_only:
            query = query.where(SKU.is_active.is_(True))
        result = await db.execute(query)
        return list(result.scalars().all())

    async def create_sku(
        self,
        db: AsyncSession,
        code: str,
        name: str,
        payment_mode: Union[PaymentMode, str],
        price: Decimal,
        impact_multiplier: Decimal = Decimal("1"),
        requires_validation: bool = False,
        corsair_threshold: Optional[Decimal] = None,
    ) -> SKU:
        """
        Create a SKU. Commits.

        Raises:
            ValidationError: On unknown payment mode or non-positive values
            ConflictError: If the code already exists
        """
        try:
            mode = PaymentMode(payment_mode)
        except ValueError:
            raise ValidationError(f"Unknown payment mode: {payment_mode}", payment_mode=str(payment_mode))

        price = Decimal(str(price))
        impact_multiplier = Decimal(str(impact_multiplier))
        if price < 0:
            raise ValidationError("SKU price must not be negative", sku_code=code)
        if impact_multiplier <= 0:
            raise ValidationError("Impact multiplier must be greater than zero", sku_code=code)
        if corsair_threshold is not None and Decimal(str(corsair_threshold)) <= 0:
            raise ValidationError("SKU threshold must be greater than zero", sku_code=code)

        sku = SKU(
            code=code,
            name=name,
            payment_mode=mode.value,
            price=price,
            impact_multiplier=impact_multiplier,
            requires_validation=requires_validation,
            corsair_threshold=corsair_threshold,
            is_active=True,
        )
        db.add(sku)
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            raise ConflictError(f'SKU code "{code}" already exists', sku_code=code)

        logger.info("sku_created", sku_code=code, payment_mode=mode.value, price=str(price))
        return sku

    async def set_active(self, db: AsyncSession, sku_id: uuid.UUID, is_active: bool) -> SKU:
        """
        Toggle availability. Pricing fields are never edited once created.

        Commits.
        """
        sku = await self.get_by_id(db, sku_id)
        sku.is_active = is_active
        await db.commit()
        logger.info("sku_availability_changed", sku_code=sku.code, is_active=is_active)
        return sku

    async def deactivate(self, db: AsyncSession, sku_id: uuid.UUID) -> SKU:
        return await self.set_active(db, sku_id, False)
