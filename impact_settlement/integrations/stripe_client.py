"""
Stripe gateway adapter.

Implements:
- Payment Intents and Checkout Sessions with destination charges
- Bounded call time (worker thread under ``asyncio.wait_for``)
- Circuit breaker pattern
- Error classification into retryable / permanent ``ExternalServiceError``
- Webhook signature verification

Creation calls are not retried here; callers retry with the same
idempotency key. Read-only session retrieval is retried with tenacity.
"""
import asyncio
import json
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, TypeVar, Union

import stripe
import structlog
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from impact_settlement.config import Settings, get_settings
from impact_settlement.core.events import PaymentEvent
from impact_settlement.core.exceptions import (
    ExternalServiceError,
    UnauthorizedError,
    ValidationError,
)
from impact_settlement.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class StripeErrorType(Enum):
    """Classification of Stripe errors for retry logic."""

    TRANSIENT = "transient"  # Retry these
    PERMANENT = "permanent"  # Don't retry these
    RATE_LIMIT = "rate_limit"  # Retry with longer backoff
    TIMEOUT = "timeout"


def to_cents(amount: Decimal) -> int:
    """Euros to integer cents, half-up."""
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


@dataclass(frozen=True)
class GatewayIntent:
    """Handle the caller needs to complete a payment."""

    id: str
    client_secret: Optional[str] = None
    url: Optional[str] = None
    expires_at: Optional[datetime] = None


@dataclass(frozen=True)
class CheckoutSessionInfo:
    id: str
    status: Optional[str]
    payment_status: Optional[str]
    payment_intent_id: Optional[str]
    metadata: Dict[str, str]


@dataclass(frozen=True)
class LineItem:
    name: str
    unit_amount: Decimal  # euros
    quantity: int = 1
    sku: Optional[str] = None
    description: Optional[str] = None


def _plain(obj: Any) -> Dict[str, Any]:
    if not obj:
        return {}
    return {str(k): v for k, v in obj.items()}


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, ExternalServiceError) and error.retryable


class CircuitBreaker:
    """
    Circuit breaker for Stripe API calls.

    Opens after ``failure_threshold`` consecutive retryable failures and
    rejects calls until ``timeout`` seconds have passed, then lets probes
    through (half open) until ``success_threshold`` of them succeed.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
    ):
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    def before_call(self) -> None:
        """
        Raises:
            ExternalServiceError: If the circuit is open
        """
        if self.state != "open":
            return
        if self.last_failure_time and time.time() - self.last_failure_time > self.timeout:
            self._set_state("half_open")
            self.success_count = 0
            logger.info("circuit_breaker_half_open")
            return
        raise ExternalServiceError(
            "Payment gateway temporarily unavailable (circuit open)",
            error_code="gateway_circuit_open",
        )

    def on_success(self) -> None:
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self._set_state("closed")
                logger.info("circuit_breaker_closed")

    def on_failure(self) -> None:
        self.failure_count += 1
        self.last_failure_time = time.time()
        if self.state == "half_open" or self.failure_count >= self.failure_threshold:
            self._set_state("open")
            logger.warning("circuit_breaker_opened", failure_count=self.failure_count)

    def _set_state(self, state: str) -> None:
        self.state = state
        metrics.set_circuit_breaker_state(state)


class StripeGateway:
    """Async facade over the blocking ``stripe`` SDK."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ) -> None:
        settings = settings or get_settings()
        stripe.api_key = settings.stripe_secret_key
        stripe.api_version = settings.stripe_api_version
        # Retry policy belongs to the caller; idempotency keys make it safe
        stripe.max_network_retries = 0
        self.settings = settings
        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            failure_threshold=settings.circuit_breaker_failure_threshold,
            timeout=settings.circuit_breaker_timeout_seconds,
        )

        logger.info(
            "stripe_gateway_initialized",
            api_version=settings.stripe_api_version,
            test_mode=settings.is_test_mode,
        )

    @staticmethod
    def _classify_error(error: stripe.StripeError) -> StripeErrorType:
        if isinstance(error, stripe.RateLimitError):
            return StripeErrorType.RATE_LIMIT
        elif isinstance(error, (stripe.APIConnectionError, stripe.APIError)):
            return StripeErrorType.TRANSIENT
        elif isinstance(
            error,
            (
                stripe.CardError,
                stripe.InvalidRequestError,
                stripe.AuthenticationError,
                stripe.PermissionError,
                stripe.IdempotencyError,
            ),
        ):
            return StripeErrorType.PERMANENT
        else:
            # Unknown errors are treated as transient
            return StripeErrorType.TRANSIENT

    async def _call(self, operation: str, func: Callable[[], T]) -> T:
        """Run a blocking SDK call in a thread with timeout and breaker."""
        self.circuit_breaker.before_call()
        started = time.perf_counter()
        try:
            result = await asyncio.wait_for(
                asyncio.to_thread(func), timeout=self.settings.gateway_timeout_seconds
            )
        except asyncio.TimeoutError:
            self.circuit_breaker.on_failure()
            metrics.record_stripe_api_error(StripeErrorType.TIMEOUT.value)
            metrics.record_stripe_api_call(operation, "timeout", time.perf_counter() - started)
            logger.error(
                "stripe_api_timeout",
                operation=operation,
                timeout_seconds=self.settings.gateway_timeout_seconds,
            )
            raise ExternalServiceError(
                f"Payment gateway timed out during {operation}",
                error_code="gateway_timeout",
                operation=operation,
            )
        except stripe.StripeError as e:
            error_type = self._classify_error(e)
            if error_type != StripeErrorType.PERMANENT:
                self.circuit_breaker.on_failure()
            metrics.record_stripe_api_error(error_type.value)
            metrics.record_stripe_api_call(operation, "error", time.perf_counter() - started)
            logger.error(
                "stripe_api_error",
                operation=operation,
                error_type=error_type.value,
                error_code=getattr(e, "code", None),
                error_message=str(e),
            )
            raise ExternalServiceError(
                str(e),
                error_code=f"gateway_{error_type.value}",
                retryable=error_type != StripeErrorType.PERMANENT,
                operation=operation,
                stripe_code=getattr(e, "code", None),
            ) from e

        self.circuit_breaker.on_success()
        metrics.record_stripe_api_call(operation, "success", time.perf_counter() - started)
        return result

    async def create_payment_intent(
        self,
        amount_cents: int,
        metadata: Dict[str, str],
        idempotency_key: str,
        destination_account: Optional[str] = None,
        application_fee_cents: Optional[int] = None,
    ) -> GatewayIntent:
        """
        Create a PaymentIntent, split to a connected account when given.

        Raises:
            ExternalServiceError: On gateway failure or timeout
        """
        params: Dict[str, Any] = {
            "amount": amount_cents,
            "currency": self.settings.currency,
            "metadata": metadata,
            "automatic_payment_methods": {"enabled": True},
            "idempotency_key": idempotency_key,
        }
        if destination_account:
            params["transfer_data"] = {"destination": destination_account}
            if application_fee_cents:
                params["application_fee_amount"] = application_fee_cents

        logger.info(
            "creating_payment_intent",
            amount_cents=amount_cents,
            idempotency_key=idempotency_key,
            split=bool(destination_account),
        )
        intent = await self._call(
            "create_payment_intent", lambda: stripe.PaymentIntent.create(**params)
        )
        logger.info("payment_intent_created", payment_intent_id=intent.id)
        return GatewayIntent(id=intent.id, client_secret=intent.client_secret)

    async def create_checkout_session(
        self,
        items: List[LineItem],
        fee_amount: Decimal,
        destination_account: str,
        customer_email: str,
        success_url: str,
        cancel_url: str,
        metadata: Dict[str, str],
        idempotency_key: str,
    ) -> GatewayIntent:
        """
        Create a hosted Checkout Session with a destination charge.

        The connected account receives the total minus ``fee_amount``, which
        the platform keeps as the application fee.
        """
        fee_cents = to_cents(fee_amount)
        line_items = [
            {
                "price_data": {
                    "currency": self.settings.currency,
                    "product_data": {
                        "name": item.name,
                        **({"metadata": {"sku": item.sku}} if item.sku else {}),
                    },
                    "unit_amount": to_cents(item.unit_amount),
                },
                "quantity": item.quantity,
            }
            for item in items
        ]
        line_items.append(
            {
                "price_data": {
                    "currency": self.settings.currency,
                    "product_data": {
                        "name": "Plastic Neutralization Fee",
                        "description": "Certified plastic removal",
                    },
                    "unit_amount": fee_cents,
                },
                "quantity": 1,
            }
        )

        separator = "&" if "?" in success_url else "?"
        expires_at = datetime.now(timezone.utc) + timedelta(
            minutes=self.settings.checkout_session_ttl_minutes
        )
        params: Dict[str, Any] = {
            "mode": "payment",
            "line_items": line_items,
            "customer_email": customer_email,
            "payment_intent_data": {
                "transfer_data": {"destination": destination_account},
                "application_fee_amount": fee_cents,
                "metadata": metadata,
            },
            "success_url": f"{success_url}{separator}session_id={{CHECKOUT_SESSION_ID}}",
            "cancel_url": cancel_url,
            "metadata": metadata,
            "expires_at": int(expires_at.timestamp()),
            "idempotency_key": idempotency_key,
        }

        logger.info(
            "creating_checkout_session",
            fee_cents=fee_cents,
            item_count=len(items),
            idempotency_key=idempotency_key,
        )
        session = await self._call(
            "create_checkout_session", lambda: stripe.checkout.Session.create(**params)
        )
        logger.info("checkout_session_created", checkout_session_id=session.id)
        return GatewayIntent(id=session.id, url=session.url, expires_at=expires_at)

    @retry(
        retry=retry_if_exception(_is_retryable),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.2, min=0.2, max=2),
        reraise=True,
    )
    async def retrieve_checkout_session(self, session_id: str) -> CheckoutSessionInfo:
        """
        Fetch a Checkout Session. Read-only, so transient failures are retried.

        Raises:
            ExternalServiceError: After retries are exhausted or on a permanent error
        """
        session = await self._call(
            "retrieve_checkout_session", lambda: stripe.checkout.Session.retrieve(session_id)
        )
        payment_intent = session.payment_intent
        if payment_intent is not None and not isinstance(payment_intent, str):
            payment_intent = payment_intent.id
        return CheckoutSessionInfo(
            id=session.id,
            status=session.status,
            payment_status=session.payment_status,
            payment_intent_id=payment_intent,
            metadata={k: str(v) for k, v in _plain(session.metadata).items()},
        )

    def verify_and_parse_webhook(
        self,
        raw_body: Union[bytes, str],
        signature: Optional[str],
        secret: Optional[str] = None,
    ) -> PaymentEvent:
        """
        Verify the Stripe-Signature header and decode the event.

        Raises:
            UnauthorizedError: If the signature is missing or does not match
            ValidationError: If the verified body is not a JSON event
        """
        webhook_secret = secret or self.settings.stripe_webhook_secret
        payload = raw_body.decode("utf-8") if isinstance(raw_body, bytes) else raw_body

        if not signature:
            logger.error("webhook_signature_missing")
            raise UnauthorizedError("Missing webhook signature")

        try:
            stripe.WebhookSignature.verify_header(payload, signature, webhook_secret)
        except stripe.SignatureVerificationError as e:
            logger.error("webhook_signature_verification_failed", error=str(e))
            raise UnauthorizedError(f"Invalid webhook signature: {e}")

        try:
            body = json.loads(payload)
        except ValueError as e:
            raise ValidationError(f"Webhook body is not valid JSON: {e}")

        event = PaymentEvent.from_stripe_event(body)
        logger.info(
            "webhook_signature_verified", event_id=event.event_id, event_type=event.event_type
        )
        return event
