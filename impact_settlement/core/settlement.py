"""
Transaction & settlement engine.

Orchestrates one purchase as a single database transaction:

1. Take a config snapshot and resolve the SKU
2. Price the purchase by payment mode and compute its impact
3. Resolve (and escalate) the purchasing user, row locked
4. Redeem the gift card, if any
5. Insert the Transaction
6. Credit wallets under row locks and detect threshold crossings
7. Commit, then dispatch side effects

PAY and split-checkout purchases are committed as ``pending`` first; the
gateway is called afterwards, so no row lock is ever held across a network
call. Their settlement happens in ``apply_payment_event`` when Stripe
confirms.
"""
import time
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import List, Optional, Tuple

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from impact_settlement.config import Settings, get_settings
from impact_settlement.core.config_store import ConfigSnapshot, ConfigStore
from impact_settlement.core.dispatch import PaymentModeDispatcher
from impact_settlement.core.events import (
    META_MERCHANT_ID,
    META_ORDER_ID,
    META_PARTNER_ID,
    META_SKU_CODE,
    META_TRANSACTION_ID,
    CHECKOUT_SESSION_COMPLETED,
    EventOutcome,
    PaymentEvent,
)
from impact_settlement.core.exceptions import (
    ConfigError,
    ConflictError,
    ExternalServiceError,
    NotFoundError,
    ValidationError,
)
from impact_settlement.core.gift_cards import GiftCardLedger
from impact_settlement.core.impact import (
    calculate_impact_grams,
    determine_registration_level,
    is_certificate_eligible,
)
from impact_settlement.core.side_effects import (
    LoggingSideEffectDispatcher,
    SettlementNotice,
    SideEffectDispatcher,
    crossed_threshold,
    dispatch_notices,
)
from impact_settlement.core.sku_registry import SKURegistry, effective_threshold
from impact_settlement.core.users import RegistrationData, UserDirectory
from impact_settlement.core.wallets import WalletLedger, WalletTotals
from impact_settlement.database.models import (
    SKU,
    Merchant,
    OwnerType,
    PaymentMode,
    PaymentStatus,
    Transaction,
    User,
)
from impact_settlement.integrations.stripe_client import LineItem, StripeGateway, to_cents
from impact_settlement.monitoring.logging import settlement_context
from impact_settlement.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

SETTLED_STATUSES = (PaymentStatus.COMPLETED.value, PaymentStatus.NA.value)


@dataclass
class PurchaseRequest:
    """
    One purchase event.

    Either ``user_id`` or ``registration`` (with at least an email) identifies
    the customer. ``amount`` is only read for ALLOCATION SKUs and
    ``gift_card_code`` only for GIFT_CARD SKUs.
    """

    sku_code: str
    user_id: Optional[uuid.UUID] = None
    registration: Optional[RegistrationData] = None
    amount: Optional[Decimal] = None
    gift_card_code: Optional[str] = None
    merchant_id: Optional[uuid.UUID] = None
    partner_id: Optional[str] = None
    order_id: Optional[str] = None


@dataclass
class CheckoutRequest:
    """Merchant e-commerce order paid through a split Checkout Session."""

    merchant_id: uuid.UUID
    order_id: str
    items: List[LineItem]
    plastic_fee: Decimal
    customer: RegistrationData
    success_url: str
    cancel_url: str
    partner_id: Optional[str] = None


@dataclass
class SettlementResult:
    transaction: Transaction
    client_secret: Optional[str] = None
    checkout_url: Optional[str] = None
    payment_intent_id: Optional[str] = None
    checkout_session_id: Optional[str] = None

    @property
    def is_settled(self) -> bool:
        return self.transaction.payment_status in SETTLED_STATUSES


@dataclass
class EventResult:
    outcome: EventOutcome
    transaction: Optional[Transaction] = None


@dataclass
class TransactionFilters:
    user_id: Optional[uuid.UUID] = None
    merchant_id: Optional[uuid.UUID] = None
    partner_id: Optional[str] = None
    sku_id: Optional[uuid.UUID] = None
    payment_status: Optional[PaymentStatus] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    limit: int = 100
    offset: int = 0


class SettlementEngine:
    """
    Creates and settles transactions.

    Collaborators are injected so tests can swap the gateway and the
    side-effect dispatcher; the defaults are the production ones.
    """

    def __init__(
        self,
        config_store: Optional[ConfigStore] = None,
        sku_registry: Optional[SKURegistry] = None,
        users: Optional[UserDirectory] = None,
        gift_cards: Optional[GiftCardLedger] = None,
        wallets: Optional[WalletLedger] = None,
        mode_dispatcher: Optional[PaymentModeDispatcher] = None,
        gateway: Optional[StripeGateway] = None,
        side_effects: Optional[SideEffectDispatcher] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.config_store = config_store or ConfigStore()
        self.sku_registry = sku_registry or SKURegistry()
        self.users = users or UserDirectory()
        self.gift_cards = gift_cards or GiftCardLedger()
        self.wallets = wallets or WalletLedger()
        self.mode_dispatcher = mode_dispatcher or PaymentModeDispatcher()
        self.side_effects = side_effects or LoggingSideEffectDispatcher()
        self._gateway = gateway

        logger.info("settlement_engine_initialized")

    @property
    def gateway(self) -> StripeGateway:
        if self._gateway is None:
            self._gateway = StripeGateway(self.settings)
        return self._gateway

    # ------------------------------------------------------------------
    # Purchase creation
    # ------------------------------------------------------------------

    async def create_transaction(
        self, db: AsyncSession, request: PurchaseRequest
    ) -> SettlementResult:
        """
        Record a purchase and settle it if its mode allows.

        CLAIM, GIFT_CARD and ALLOCATION purchases come back settled. PAY
        purchases come back ``pending`` with a Stripe client secret.

        Raises:
            ValidationError: Bad input, inactive SKU or missing tier data
            NotFoundError: Unknown SKU, user, merchant or gift card
            ConflictError: Gift card already used
            ConfigError: Missing or invalid configuration
            ExternalServiceError: Stripe failed after the PAY transaction was
                stored; ``details["transaction_id"]`` lets the caller retry
                through ``start_payment``
        """
        started = time.perf_counter()
        notice: Optional[SettlementNotice] = None

        try:
            snapshot = await self.config_store.snapshot(db)
            sku = await self.sku_registry.resolve_purchasable(db, request.sku_code)
            priced = self.mode_dispatcher.price(
                sku, gift_card_code=request.gift_card_code, amount=request.amount
            )
            threshold = effective_threshold(sku, snapshot.corsair_threshold)
            impact_grams = calculate_impact_grams(
                priced.amount, snapshot.csr_price, sku.impact_multiplier
            )

            if priced.payment_mode == PaymentMode.GIFT_CARD:
                await self.gift_cards.validate(db, request.gift_card_code, expected_sku_id=sku.id)

            merchant = None
            if request.merchant_id is not None:
                merchant = await self._get_merchant(db, request.merchant_id)

            user = await self.users.resolve_for_purchase(
                db,
                determine_registration_level(priced.amount, threshold),
                user_id=request.user_id,
                registration=request.registration,
            )

            gift_card_id = None
            if priced.payment_mode == PaymentMode.GIFT_CARD:
                gift_card = await self.gift_cards.redeem_and_bind(
                    db, request.gift_card_code, user.id
                )
                gift_card_id = gift_card.id

            transaction = Transaction(
                user_id=user.id,
                sku_id=sku.id,
                master_id=snapshot.master_id,
                merchant_id=request.merchant_id,
                partner_id=request.partner_id,
                order_id=request.order_id,
                amount=priced.amount,
                calculated_impact=impact_grams,
                payment_status=priced.status.value,
                gift_card_code_id=gift_card_id,
                corsair_connect_flag=is_certificate_eligible(priced.amount, threshold),
            )
            db.add(transaction)
            await db.flush()

            if priced.settles_now:
                notice = await self._settle(db, transaction, user, threshold)

            await db.commit()
        except Exception:
            await db.rollback()
            raise

        metrics.record_transaction_created(
            priced.payment_mode.value, priced.status.value, float(priced.amount)
        )
        metrics.record_settlement_duration(
            priced.payment_mode.value, time.perf_counter() - started
        )
        logger.info(
            "transaction_created",
            transaction_id=str(transaction.id),
            payment_mode=priced.payment_mode.value,
            payment_status=priced.status.value,
            amount=str(priced.amount),
            calculated_impact=impact_grams,
            user_id=str(user.id),
        )

        if notice is not None:
            await dispatch_notices(self.side_effects, notice)

        if priced.payment_mode == PaymentMode.PAY:
            return await self._request_payment(db, transaction, sku, merchant, snapshot)

        return SettlementResult(transaction=await self.get_transaction(db, transaction.id))

    async def create_manual_transaction(
        self,
        db: AsyncSession,
        user_id: uuid.UUID,
        sku_code: str,
        amount: Decimal,
        reason: str,
        created_by: str,
        merchant_id: Optional[uuid.UUID] = None,
        partner_id: Optional[str] = None,
    ) -> SettlementResult:
        """
        Admin-entered, already-settled transaction for an existing user.

        Uses the same impact formula, wallet credit and threshold logic as
        customer purchases but skips payment-mode pricing and tier checks.
        """
        if not reason or not reason.strip():
            raise ValidationError("Reason is required for manual transactions")
        if not created_by:
            raise ValidationError("created_by is required for manual transactions")
        amount = Decimal(str(amount)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
        if amount <= 0:
            raise ValidationError("Amount must be greater than zero", amount=str(amount))

        try:
            snapshot = await self.config_store.snapshot(db)
            sku = await self.sku_registry.get_by_code(db, sku_code)
            user = await self.users.get_by_id(db, user_id, for_update=True)
            if merchant_id is not None:
                await self._get_merchant(db, merchant_id)

            threshold = effective_threshold(sku, snapshot.corsair_threshold)
            impact_grams = calculate_impact_grams(amount, snapshot.csr_price, sku.impact_multiplier)

            transaction = Transaction(
                user_id=user.id,
                sku_id=sku.id,
                master_id=snapshot.master_id,
                merchant_id=merchant_id,
                partner_id=partner_id,
                order_id=f"MANUAL-{int(time.time() * 1000)}",
                amount=amount,
                calculated_impact=impact_grams,
                payment_status=PaymentStatus.COMPLETED.value,
                corsair_connect_flag=is_certificate_eligible(amount, threshold),
                notes=f"{reason.strip()} (by {created_by})",
            )
            db.add(transaction)
            await db.flush()

            notice = await self._settle(db, transaction, user, threshold)
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        logger.warning(
            "manual_transaction_created",
            transaction_id=str(transaction.id),
            user_id=str(user_id),
            amount=str(amount),
            calculated_impact=impact_grams,
            created_by=created_by,
        )
        await dispatch_notices(self.side_effects, notice)
        return SettlementResult(transaction=await self.get_transaction(db, transaction.id))

    # ------------------------------------------------------------------
    # Gateway-backed payments
    # ------------------------------------------------------------------

    async def start_payment(self, db: AsyncSession, transaction_id: uuid.UUID) -> SettlementResult:
        """
        (Re)create the Payment Intent for a pending PAY transaction.

        Safe to call repeatedly: the idempotency key is derived from the
        transaction id, so Stripe returns the same intent.

        Raises:
            NotFoundError: Unknown transaction
            ConflictError: Transaction is not pending
            ValidationError: Transaction is not a PAY purchase
            ExternalServiceError: Stripe failure
        """
        transaction = await self.get_transaction(db, transaction_id)
        if transaction.payment_status != PaymentStatus.PENDING:
            raise ConflictError(
                "Transaction is not awaiting payment",
                transaction_id=str(transaction_id),
                payment_status=transaction.payment_status,
            )
        if transaction.sku.payment_mode != PaymentMode.PAY:
            raise ValidationError(
                "Only PAY transactions are paid through a Payment Intent",
                transaction_id=str(transaction_id),
            )

        merchant = None
        if transaction.merchant_id is not None:
            merchant = await self._get_merchant(db, transaction.merchant_id)
        snapshot = await self.config_store.snapshot(db)
        return await self._request_payment(db, transaction, transaction.sku, merchant, snapshot)

    async def _request_payment(
        self,
        db: AsyncSession,
        transaction: Transaction,
        sku: SKU,
        merchant: Optional[Merchant],
        snapshot: ConfigSnapshot,
    ) -> SettlementResult:
        amount_cents = to_cents(transaction.amount)
        destination = None
        fee_cents = None
        if merchant is not None and merchant.can_receive_split_payments:
            destination = merchant.stripe_account_id
            fee_cents = int(
                (Decimal(amount_cents) * snapshot.platform_fee_percentage).quantize(
                    Decimal("1"), rounding=ROUND_HALF_UP
                )
            )

        metadata = {
            META_TRANSACTION_ID: str(transaction.id),
            "user_id": str(transaction.user_id),
            META_SKU_CODE: sku.code,
        }
        if transaction.merchant_id is not None:
            metadata[META_MERCHANT_ID] = str(transaction.merchant_id)
        if transaction.partner_id:
            metadata[META_PARTNER_ID] = transaction.partner_id
        if transaction.order_id:
            metadata[META_ORDER_ID] = transaction.order_id

        try:
            intent = await self.gateway.create_payment_intent(
                amount_cents=amount_cents,
                metadata=metadata,
                idempotency_key=f"txn-{transaction.id}",
                destination_account=destination,
                application_fee_cents=fee_cents,
            )
        except ExternalServiceError as e:
            e.details["transaction_id"] = str(transaction.id)
            logger.error(
                "payment_intent_request_failed",
                transaction_id=str(transaction.id),
                retryable=e.retryable,
            )
            raise

        return SettlementResult(
            transaction=await self.get_transaction(db, transaction.id),
            client_secret=intent.client_secret,
            payment_intent_id=intent.id,
        )

    async def create_checkout(self, db: AsyncSession, request: CheckoutRequest) -> SettlementResult:
        """
        Start a merchant split checkout for the plastic fee of an order.

        Stores a ``pending`` ALLOCATION transaction for the fee, then creates
        a Checkout Session whose application fee is that amount. Settled by
        ``checkout.session.completed`` or ``confirm_checkout``.

        Raises:
            NotFoundError: Unknown merchant
            ValidationError: Merchant cannot take split payments, or bad order data
            ConfigError: Checkout SKU missing or not an ALLOCATION SKU
            ExternalServiceError: Stripe failure
        """
        if not request.items:
            raise ValidationError("Checkout requires at least one item")
        if any(item.quantity <= 0 or item.unit_amount < 0 for item in request.items):
            raise ValidationError("Checkout items need a positive quantity and a non-negative price")
        if not request.order_id:
            raise ValidationError("order_id is required for checkout")

        try:
            merchant = await self._get_merchant(db, request.merchant_id)
            if not merchant.stripe_account_id:
                raise ValidationError(
                    "Merchant has not connected a Stripe account",
                    merchant_id=str(merchant.id),
                )
            if not merchant.stripe_charges_enabled:
                raise ValidationError(
                    "Merchant Stripe account cannot accept charges",
                    merchant_id=str(merchant.id),
                )

            snapshot = await self.config_store.snapshot(db)
            try:
                sku = await self.sku_registry.resolve_purchasable(
                    db, self.settings.checkout_sku_code
                )
            except NotFoundError:
                raise ConfigError(
                    "Checkout SKU is not configured", sku_code=self.settings.checkout_sku_code
                )
            if sku.payment_mode != PaymentMode.ALLOCATION:
                raise ConfigError(
                    "Checkout SKU must be an ALLOCATION SKU", sku_code=sku.code
                )

            priced = self.mode_dispatcher.price(sku, amount=request.plastic_fee, via_checkout=True)
            threshold = effective_threshold(sku, snapshot.corsair_threshold)
            impact_grams = calculate_impact_grams(
                priced.amount, snapshot.csr_price, sku.impact_multiplier
            )
            user = await self.users.resolve_for_purchase(
                db,
                determine_registration_level(priced.amount, threshold),
                registration=request.customer,
            )

            transaction = Transaction(
                user_id=user.id,
                sku_id=sku.id,
                master_id=snapshot.master_id,
                merchant_id=merchant.id,
                partner_id=request.partner_id,
                order_id=request.order_id,
                amount=priced.amount,
                calculated_impact=impact_grams,
                payment_status=PaymentStatus.PENDING.value,
                corsair_connect_flag=is_certificate_eligible(priced.amount, threshold),
            )
            db.add(transaction)
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        metrics.record_transaction_created(
            PaymentMode.ALLOCATION.value, PaymentStatus.PENDING.value, float(priced.amount)
        )
        logger.info(
            "checkout_transaction_created",
            transaction_id=str(transaction.id),
            merchant_id=str(merchant.id),
            order_id=request.order_id,
            plastic_fee=str(priced.amount),
        )

        metadata = {
            META_TRANSACTION_ID: str(transaction.id),
            META_ORDER_ID: request.order_id,
            META_MERCHANT_ID: str(merchant.id),
            META_PARTNER_ID: request.partner_id or "",
        }
        try:
            session = await self.gateway.create_checkout_session(
                items=request.items,
                fee_amount=priced.amount,
                destination_account=merchant.stripe_account_id,
                customer_email=user.email,
                success_url=request.success_url,
                cancel_url=request.cancel_url,
                metadata=metadata,
                idempotency_key=f"checkout-{transaction.id}",
            )
        except ExternalServiceError as e:
            e.details["transaction_id"] = str(transaction.id)
            raise

        return SettlementResult(
            transaction=await self.get_transaction(db, transaction.id),
            checkout_url=session.url,
            checkout_session_id=session.id,
        )

    async def confirm_checkout(self, db: AsyncSession, session_id: str) -> EventResult:
        """
        Settle a checkout from the merchant's success redirect.

        Fetches the session from Stripe and applies it exactly like a
        ``checkout.session.completed`` webhook, so whichever arrives second
        is a duplicate.
        """
        info = await self.gateway.retrieve_checkout_session(session_id)
        event = PaymentEvent(
            event_id=f"confirm:{info.id}",
            event_type=CHECKOUT_SESSION_COMPLETED,
            payment_intent_id=info.payment_intent_id,
            transaction_id=info.metadata.get(META_TRANSACTION_ID) or None,
            order_id=info.metadata.get(META_ORDER_ID) or None,
            checkout_session_id=info.id,
            payment_status=info.payment_status,
            metadata=info.metadata,
        )
        return await self.apply_payment_event(db, event)

    # ------------------------------------------------------------------
    # Asynchronous confirmation
    # ------------------------------------------------------------------

    async def apply_payment_event(self, db: AsyncSession, event: PaymentEvent) -> EventResult:
        """
        Apply a gateway event to its transaction, idempotently.

        Only ``pending`` transactions move, to ``completed`` or ``failed``.
        Redelivered completions are duplicates; unknown or already-terminal
        targets are discarded. Neither raises, so the gateway stops
        redelivering. Database and config errors do propagate.
        """
        if not (event.is_completion or event.is_failure):
            logger.info(
                "payment_event_ignored",
                event_id=event.event_id,
                event_type=event.event_type,
                payment_status=event.payment_status,
            )
            return EventResult(EventOutcome.IGNORED)

        notice: Optional[SettlementNotice] = None
        with settlement_context(
            event_id=event.event_id,
            payment_intent_id=event.payment_intent_id,
            correlated_transaction_id=event.transaction_id,
        ):
            try:
                if event.is_completion:
                    result, notice = await self._apply_completion(db, event)
                else:
                    result = await self._apply_failure(db, event)
                await db.commit()
            except Exception:
                await db.rollback()
                raise

        if notice is not None:
            await dispatch_notices(self.side_effects, notice)
        return result

    async def _find_by_payment_intent(
        self, db: AsyncSession, payment_intent_id: str
    ) -> Optional[Transaction]:
        result = await db.execute(
            select(Transaction)
            .where(Transaction.stripe_payment_intent_id == payment_intent_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _locate(self, db: AsyncSession, event: PaymentEvent) -> Optional[Transaction]:
        """Find the event's transaction by metadata id, else a pending one by order id."""
        if event.transaction_id:
            try:
                transaction_id = uuid.UUID(event.transaction_id)
            except ValueError:
                logger.warning(
                    "payment_event_bad_transaction_id",
                    event_id=event.event_id,
                    transaction_id=event.transaction_id,
                )
            else:
                transaction = await db.get(
                    Transaction, transaction_id, with_for_update=True, populate_existing=True
                )
                if transaction is not None:
                    return transaction

        if event.order_id:
            result = await db.execute(
                select(Transaction)
                .where(
                    Transaction.order_id == event.order_id,
                    Transaction.payment_status == PaymentStatus.PENDING.value,
                )
                .order_by(Transaction.created_at.desc())
                .limit(1)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            return result.scalar_one_or_none()

        return None

    async def _apply_completion(
        self, db: AsyncSession, event: PaymentEvent
    ) -> Tuple[EventResult, Optional[SettlementNotice]]:
        log = logger.bind(event_id=event.event_id, event_type=event.event_type)

        already = None
        if event.payment_intent_id:
            already = await self._find_by_payment_intent(db, event.payment_intent_id)
            if already is not None and already.payment_status == PaymentStatus.COMPLETED:
                metrics.record_webhook_dedup_hit("database")
                log.info("payment_event_duplicate", transaction_id=str(already.id))
                return EventResult(EventOutcome.DUPLICATE, already), None

        transaction = await self._locate(db, event)
        if transaction is None:
            log.warning(
                "payment_event_transaction_not_found",
                transaction_id=event.transaction_id,
                order_id=event.order_id,
            )
            return EventResult(EventOutcome.DISCARDED), None

        if already is not None and already.id != transaction.id:
            log.error(
                "payment_intent_bound_to_other_transaction",
                transaction_id=str(transaction.id),
                bound_transaction_id=str(already.id),
            )
            return EventResult(EventOutcome.DISCARDED, transaction), None

        if transaction.payment_status == PaymentStatus.COMPLETED:
            log.info("payment_event_duplicate", transaction_id=str(transaction.id))
            return EventResult(EventOutcome.DUPLICATE, transaction), None

        if transaction.payment_status != PaymentStatus.PENDING:
            log.warning(
                "payment_event_for_terminal_transaction",
                transaction_id=str(transaction.id),
                payment_status=transaction.payment_status,
            )
            return EventResult(EventOutcome.DISCARDED, transaction), None

        transaction.payment_status = PaymentStatus.COMPLETED.value
        if event.payment_intent_id:
            transaction.stripe_payment_intent_id = event.payment_intent_id
        await db.flush()

        user = await self.users.get_by_id(db, transaction.user_id, for_update=True)
        sku = await self.sku_registry.get_by_id(db, transaction.sku_id)
        snapshot = await self.config_store.snapshot(db)
        notice = await self._settle(
            db, transaction, user, effective_threshold(sku, snapshot.corsair_threshold)
        )

        log.info(
            "payment_confirmed",
            transaction_id=str(transaction.id),
            payment_intent_id=event.payment_intent_id,
            calculated_impact=transaction.calculated_impact,
        )
        return EventResult(EventOutcome.SETTLED, transaction), notice

    async def _apply_failure(self, db: AsyncSession, event: PaymentEvent) -> EventResult:
        log = logger.bind(event_id=event.event_id, event_type=event.event_type)

        transaction = await self._locate(db, event)
        if transaction is None and event.payment_intent_id:
            transaction = await self._find_by_payment_intent(db, event.payment_intent_id)
        if transaction is None:
            log.warning(
                "payment_event_transaction_not_found",
                transaction_id=event.transaction_id,
                order_id=event.order_id,
            )
            return EventResult(EventOutcome.DISCARDED)

        if transaction.payment_status != PaymentStatus.PENDING:
            log.warning(
                "payment_event_for_terminal_transaction",
                transaction_id=str(transaction.id),
                payment_status=transaction.payment_status,
            )
            return EventResult(EventOutcome.DISCARDED, transaction)

        transaction.payment_status = PaymentStatus.FAILED.value
        await db.flush()
        log.info("payment_failed", transaction_id=str(transaction.id))
        return EventResult(EventOutcome.FAILED, transaction)

    # ------------------------------------------------------------------
    # Shared settlement step
    # ------------------------------------------------------------------

    async def _settle(
        self, db: AsyncSession, transaction: Transaction, user: User, threshold: Decimal
    ) -> SettlementNotice:
        """
        Credit wallets and detect a threshold crossing, inside the caller's
        transaction. ``user`` must already be locked for update.
        """
        previous_flag = user.corsair_connect_flag

        user_wallet = await self.wallets.credit(
            db,
            user.id,
            OwnerType.USER,
            transaction.calculated_impact,
            transaction.amount,
            threshold,
        )
        if transaction.merchant_id is not None:
            await self.wallets.credit(
                db,
                transaction.merchant_id,
                OwnerType.MERCHANT,
                transaction.calculated_impact,
                transaction.amount,
                threshold,
            )

        threshold_totals = None
        if crossed_threshold(previous_flag, user_wallet):
            await self.users.set_threshold_flag(db, user.id, True)
            threshold_totals = WalletTotals.from_wallet(user_wallet)
            metrics.record_threshold_crossing()
            logger.info(
                "threshold_crossed",
                user_id=str(user.id),
                transaction_id=str(transaction.id),
                total_amount_spent=str(user_wallet.total_amount_spent),
            )

        return SettlementNotice(
            transaction=transaction,
            user=user,
            certificate_eligible=is_certificate_eligible(transaction.amount, threshold),
            threshold_totals=threshold_totals,
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def _get_merchant(self, db: AsyncSession, merchant_id: uuid.UUID) -> Merchant:
        merchant = await db.get(Merchant, merchant_id)
        if merchant is None:
            raise NotFoundError("Merchant not found", merchant_id=str(merchant_id))
        return merchant

    async def get_transaction(self, db: AsyncSession, transaction_id: uuid.UUID) -> Transaction:
        """Transaction with user, SKU and gift card loaded."""
        result = await db.execute(
            select(Transaction)
            .where(Transaction.id == transaction_id)
            .options(
                selectinload(Transaction.user),
                selectinload(Transaction.sku),
                selectinload(Transaction.gift_card_code),
            )
            .execution_options(populate_existing=True)
        )
        transaction = result.scalar_one_or_none()
        if transaction is None:
            raise NotFoundError("Transaction not found", transaction_id=str(transaction_id))
        return transaction

    async def list_transactions(
        self, db: AsyncSession, filters: Optional[TransactionFilters] = None
    ) -> List[Transaction]:
        filters = filters or TransactionFilters()
        query = (
            select(Transaction)
            .options(selectinload(Transaction.sku))
            .order_by(Transaction.created_at.desc())
            .limit(filters.limit)
            .offset(filters.offset)
        )
        if filters.user_id is not None:
            query = query.where(Transaction.user_id == filters.user_id)
        if filters.merchant_id is not None:
            query = query.where(Transaction.merchant_id == filters.merchant_id)
        if filters.partner_id is not None:
            query = query.where(Transaction.partner_id == filters.partner_id)
        if filters.sku_id is not None:
            query = query.where(Transaction.sku_id == filters.sku_id)
        if filters.payment_status is not None:
            query = query.where(
                Transaction.payment_status == PaymentStatus(filters.payment_status).value
            )
        if filters.start_date is not None:
            query = query.where(Transaction.created_at >= filters.start_date)
        if filters.end_date is not None:
            query = query.where(Transaction.created_at <= filters.end_date)

        result = await db.execute(query)
        return list(result.scalars().all())

    async def get_user_total_impact(self, db: AsyncSession, user_id: uuid.UUID) -> int:
        """Grams from the user's settled transactions."""
        result = await db.execute(
            select(func.coalesce(func.sum(Transaction.calculated_impact), 0)).where(
                Transaction.user_id == user_id,
                Transaction.payment_status.in_(SETTLED_STATUSES),
            )
        )
        return int(result.scalar_one())
