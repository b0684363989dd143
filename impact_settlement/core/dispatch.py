"""Payment-mode dispatch: how much a purchase costs and its initial status."""
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from impact_settlement.core.exceptions import UnknownPaymentModeError, ValidationError
from impact_settlement.database.models import SKU, PaymentMode, PaymentStatus


@dataclass(frozen=True)
class PricedPurchase:
    payment_mode: PaymentMode
    amount: Decimal
    status: PaymentStatus

    @property
    def settles_now(self) -> bool:
        """True when the wallet is credited at creation rather than on confirmation."""
        return self.status in (PaymentStatus.COMPLETED, PaymentStatus.NA)


class PaymentModeDispatcher:
    """
    Resolve amount and status for each payment mode.

    A SKU whose mode is outside ``PaymentMode`` raises; there is no default.
    """

    def price(
        self,
        sku: SKU,
        gift_card_code: Optional[str] = None,
        amount: Optional[Decimal] = None,
        via_checkout: bool = False,
    ) -> PricedPurchase:
        """
        Args:
            sku: Resolved, active SKU
            gift_card_code: Required for GIFT_CARD SKUs
            amount: Required (> 0) for ALLOCATION SKUs
            via_checkout: ALLOCATION paid through a split checkout stays pending

        Raises:
            ValidationError: If a mode's required input is missing or invalid
            UnknownPaymentModeError: If the SKU's mode is not recognised
        """
        try:
            mode = PaymentMode(sku.payment_mode)
        except ValueError:
            raise UnknownPaymentModeError(str(sku.payment_mode), sku_code=sku.code)

        if mode == PaymentMode.CLAIM:
            return PricedPurchase(mode, Decimal(sku.price), PaymentStatus.NA)

        if mode == PaymentMode.PAY:
            return PricedPurchase(mode, Decimal(sku.price), PaymentStatus.PENDING)

        if mode == PaymentMode.GIFT_CARD:
            if not gift_card_code:
                raise ValidationError(
                    "Gift card code is required for GIFT_CARD SKUs", sku_code=sku.code
                )
            return PricedPurchase(mode, Decimal(sku.price), PaymentStatus.COMPLETED)

        if mode == PaymentMode.ALLOCATION:
            if amount is None:
                raise ValidationError(
                    "Amount must be greater than zero for ALLOCATION SKUs", sku_code=sku.code
                )
            cents = Decimal(str(amount)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
            if cents <= 0:
                raise ValidationError(
                    "Amount must be greater than zero for ALLOCATION SKUs",
                    sku_code=sku.code,
                    amount=str(amount),
                )
            status = PaymentStatus.PENDING if via_checkout else PaymentStatus.COMPLETED
            return PricedPurchase(mode, cents, status)

        raise UnknownPaymentModeError(mode.value, sku_code=sku.code)
