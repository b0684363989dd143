"""
Stripe webhook handler with signature verification and event deduplication.

Implements:
- Webhook signature verification (rejects with ``UnauthorizedError``)
- Event deduplication fast path using Redis (fail-open)
- Application of the event through ``SettlementEngine.apply_payment_event``

The Redis check only saves work. Correctness against redelivery comes from
the engine's database-level idempotency check.
"""
import time
from typing import Optional, Union

import redis.asyncio as aioredis
import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from impact_settlement.config import Settings
from impact_settlement.core.events import EventOutcome
from impact_settlement.core.settlement import EventResult, SettlementEngine
from impact_settlement.integrations.stripe_client import StripeGateway
from impact_settlement.monitoring.logging import settlement_context
from impact_settlement.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class WebhookHandler:
    """Entry point for raw Stripe webhook deliveries."""

    def __init__(
        self,
        engine: SettlementEngine,
        gateway: Optional[StripeGateway] = None,
        redis_client: Optional[aioredis.Redis] = None,
        settings: Optional[Settings] = None,
    ):
        """
        Args:
            engine: Settlement engine that applies events
            gateway: Verifies signatures; defaults to the engine's gateway
            redis_client: Optional Redis client for event deduplication
            settings: Defaults to the process settings
        """
        self.settings = settings or engine.settings
        self.engine = engine
        self.gateway = gateway or engine.gateway
        self.redis_client = redis_client

        logger.info("webhook_handler_initialized", dedup_enabled=self._dedup_enabled)

    @property
    def _dedup_enabled(self) -> bool:
        return self.redis_client is not None or bool(self.settings.redis_url)

    def _ensure_redis(self) -> Optional[aioredis.Redis]:
        if self.redis_client is None and self.settings.redis_url:
            self.redis_client = aioredis.from_url(
                self.settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self.redis_client

    @staticmethod
    def _key(event_id: str) -> str:
        return f"webhook:processed:{event_id}"

    async def is_event_processed(self, event_id: str) -> bool:
        """
        Check the dedup cache.

        Returns False when Redis is unavailable so the event is still
        applied; the database check makes that safe.
        """
        redis = self._ensure_redis()
        if redis is None:
            return False
        try:
            return bool(await redis.exists(self._key(event_id)))
        except Exception as e:
            logger.warning("webhook_dedup_check_error", error=str(e), event_id=event_id)
            return False

    async def mark_event_processed(self, event_id: str) -> None:
        redis = self._ensure_redis()
        if redis is None:
            return
        try:
            await redis.setex(self._key(event_id), self.settings.webhook_dedup_ttl_seconds, "1")
        except Exception as e:
            logger.warning("webhook_mark_processed_error", error=str(e), event_id=event_id)

    async def handle(
        self, db: AsyncSession, payload: Union[bytes, str], signature: Optional[str]
    ) -> EventResult:
        """
        Verify, deduplicate and apply one webhook delivery.

        Raises:
            UnauthorizedError: Bad or missing signature; nothing is applied
            ValidationError: Signed body is not JSON
        """
        started = time.perf_counter()
        event = self.gateway.verify_and_parse_webhook(payload, signature)
        with settlement_context(event_id=event.event_id, event_type=event.event_type):
            logger.info("processing_webhook_event")

            if await self.is_event_processed(event.event_id):
                metrics.record_webhook_dedup_hit("redis")
                metrics.record_webhook_event(
                    event.event_type, EventOutcome.DUPLICATE.value, time.perf_counter() - started
                )
                logger.info("webhook_event_already_processed")
                return EventResult(EventOutcome.DUPLICATE)

            result = await self.engine.apply_payment_event(db, event)
            await self.mark_event_processed(event.event_id)

            metrics.record_webhook_event(
                event.event_type, result.outcome.value, time.perf_counter() - started
            )
            logger.info("webhook_event_processed", outcome=result.outcome.value)
            return result
