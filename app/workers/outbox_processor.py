"""
Outbox Processor Worker

Delivers scheduling events from the outbox to the Notification Gateway.
Delivery is at-least-once: a failed POST leaves the event in the outbox with
an incremented retry_count until OUTBOX_MAX_RETRIES is reached. Receivers
de-duplicate by event_id.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

import httpx

from app.config import (
    NOTIFICATION_GATEWAY_URL,
    OUTBOX_BATCH_SIZE,
    OUTBOX_MAX_RETRIES,
    OUTBOX_POLL_INTERVAL,
)
from app.models.events import OutboxRecord
from app.observability.metrics import observe_event_delivery
from app.services.outbox_service import EventPublisher

logger = logging.getLogger(__name__)


class OutboxProcessor:
    """
    Processes the event outbox as the authoritative delivery queue
    """

    def __init__(
        self,
        outbox: EventPublisher,
        gateway_url: str = NOTIFICATION_GATEWAY_URL,
        http_client: Optional[httpx.AsyncClient] = None,
        poll_interval: float = OUTBOX_POLL_INTERVAL,
        batch_size: int = OUTBOX_BATCH_SIZE,
        max_retries: int = OUTBOX_MAX_RETRIES,
    ):
        self.outbox = outbox
        self.gateway_url = gateway_url
        self._client = http_client
        self.running = False
        self.poll_interval = poll_interval
        self.batch_size = batch_size
        self.max_retries = max_retries

        logger.info(
            f"OutboxProcessor initialized: poll_interval={self.poll_interval}s, "
            f"batch_size={self.batch_size}, max_retries={self.max_retries}"
        )

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(10.0, connect=5.0))
        return self._client

    async def start(self):
        """Start processing loop"""
        self.running = True
        if not self.gateway_url:
            logger.warning("NOTIFICATION_GATEWAY_URL not set; events stay in the outbox")
        logger.info("OutboxProcessor started")

        while self.running:
            try:
                await self.process_batch()
                await asyncio.sleep(self.poll_interval)
            except Exception as e:
                logger.error(f"Outbox processor error: {e}", exc_info=True)
                await asyncio.sleep(1)  # Brief pause on error

    async def stop(self):
        """Stop processing loop"""
        self.running = False
        if self._client is not None:
            await self._client.aclose()
            self._client = None
        logger.info("OutboxProcessor stopped")

    async def process_batch(self) -> int:
        """
        Deliver one batch of pending events.

        Returns:
            Number of events attempted
        """
        if not self.gateway_url:
            return 0

        try:
            records = await self.outbox.fetch_pending(self.batch_size, self.max_retries)
        except Exception as e:
            logger.error(f"Failed to fetch pending events: {e}", exc_info=True)
            return 0

        if records:
            logger.debug(f"Processing {len(records)} outbox events")
        for record in records:
            await self._process_record(record)
        return len(records)

    async def _process_record(self, record: OutboxRecord):
        event = record.event
        try:
            response = await self._get_client().post(
                self.gateway_url,
                json=event.model_dump(mode="json"),
                headers={"Idempotency-Key": event.event_id},
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            retry_count = record.retry_count + 1
            logger.warning(
                f"❌ Event {event.event_id} ({event.event_type.value}) delivery failed, "
                f"retry {retry_count}/{self.max_retries}: {e}"
            )
            observe_event_delivery("failed")
            await self._safe_update(self.outbox.mark_failed(event.event_id, str(e)[:500], retry_count))
            return

        observe_event_delivery("delivered")
        await self._safe_update(self.outbox.mark_delivered(event.event_id, datetime.now(timezone.utc)))
        logger.info(f"✅ Event {event.event_id} ({event.event_type.value}) delivered")

    @staticmethod
    async def _safe_update(update):
        try:
            await update
        except Exception as e:
            logger.error(f"Failed to update outbox status: {e}", exc_info=True)

