"""Gateway confirmation events as seen by the settlement engine."""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

PAYMENT_INTENT_SUCCEEDED = "payment_intent.succeeded"
PAYMENT_INTENT_FAILED = "payment_intent.payment_failed"
PAYMENT_INTENT_CANCELED = "payment_intent.canceled"
CHECKOUT_SESSION_COMPLETED = "checkout.session.completed"
CHECKOUT_SESSION_ASYNC_SUCCEEDED = "checkout.session.async_payment_succeeded"
CHECKOUT_SESSION_ASYNC_FAILED = "checkout.session.async_payment_failed"
CHECKOUT_SESSION_EXPIRED = "checkout.session.expired"

COMPLETION_EVENTS = frozenset(
    {PAYMENT_INTENT_SUCCEEDED, CHECKOUT_SESSION_COMPLETED, CHECKOUT_SESSION_ASYNC_SUCCEEDED}
)
FAILURE_EVENTS = frozenset(
    {
        PAYMENT_INTENT_FAILED,
        PAYMENT_INTENT_CANCELED,
        CHECKOUT_SESSION_ASYNC_FAILED,
        CHECKOUT_SESSION_EXPIRED,
    }
)

# Metadata keys attached to intents and sessions at creation
META_TRANSACTION_ID = "transaction_id"
META_ORDER_ID = "order_id"
META_MERCHANT_ID = "merchant_id"
META_PARTNER_ID = "partner_id"
META_SKU_CODE = "sku_code"


class EventOutcome(str, Enum):
    """What applying an event did."""

    SETTLED = "settled"
    FAILED = "failed"
    DUPLICATE = "duplicate"
    DISCARDED = "discarded"
    IGNORED = "ignored"


@dataclass(frozen=True)
class PaymentEvent:
    """
    A verified gateway event reduced to the fields settlement needs.

    ``payment_status`` is only set for checkout sessions; a completed session
    is a payment only when it is ``"paid"``.
    """

    event_id: str
    event_type: str
    payment_intent_id: Optional[str] = None
    transaction_id: Optional[str] = None
    order_id: Optional[str] = None
    checkout_session_id: Optional[str] = None
    payment_status: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)

    @property
    def is_completion(self) -> bool:
        if self.event_type not in COMPLETION_EVENTS:
            return False
        if self.checkout_session_id is not None:
            return self.payment_status == "paid"
        return True

    @property
    def is_failure(self) -> bool:
        return self.event_type in FAILURE_EVENTS

    @classmethod
    def from_stripe_event(cls, event: Dict[str, Any]) -> "PaymentEvent":
        """Build from a decoded Stripe event body."""
        event_type = event.get("type", "")
        obj = (event.get("data") or {}).get("object") or {}
        metadata = {str(k): str(v) for k, v in (obj.get("metadata") or {}).items()}

        if obj.get("object") == "checkout.session" or event_type.startswith("checkout.session."):
            payment_intent = obj.get("payment_intent")
            if isinstance(payment_intent, dict):
                payment_intent = payment_intent.get("id")
            return cls(
                event_id=event.get("id", ""),
                event_type=event_type,
                payment_intent_id=payment_intent,
                transaction_id=metadata.get(META_TRANSACTION_ID) or None,
                order_id=metadata.get(META_ORDER_ID) or None,
                checkout_session_id=obj.get("id"),
                payment_status=obj.get("payment_status"),
                metadata=metadata,
            )

        return cls(
            event_id=event.get("id", ""),
            event_type=event_type,
            payment_intent_id=obj.get("id") if event_type.startswith("payment_intent.") else None,
            transaction_id=metadata.get(META_TRANSACTION_ID) or None,
            order_id=metadata.get(META_ORDER_ID) or None,
            metadata=metadata,
        )
