import asyncio
import logging
from datetime import datetime, timedelta
from typing import List, Optional

from tortoise import timezone
from tortoise.expressions import F

from prescription_cqrs.core.broker import StreamPublisher, build_event_publisher, connect_broker
from prescription_cqrs.core.config import (
    BATCH_SIZE,
    HOUSEKEEPING_INTERVAL,
    MAX_RETRIES,
    MONITOR_INTERVAL,
    OUTBOX_RETENTION_DAYS,
    POLLING_INTERVAL,
    SHUTDOWN_GRACE_PERIOD,
)
from prescription_cqrs.core.db import close_db, init_db
from prescription_cqrs.core.scheduler import PeriodicTask, run_until_stopped
from prescription_cqrs.events.schemas import PRESCRIPTION_CREATED, decode_event
from prescription_cqrs.events.sources import EventSource
from prescription_cqrs.models.outbox import OutboxEvent
from prescription_cqrs.services.projection_service import PrescriptionProjector

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
log = logging.getLogger("outbox_relay")

MAX_ERROR_LENGTH = 1000


class OutboxRelay(EventSource):
    """
    Publishes staged outbox rows to the broker with at-least-once delivery.

    Only one relay may run against an outbox table: rows are not claimed, so
    two relays would publish the same row twice.
    """
    name = "outbox-relay"

    def __init__(
        self,
        projector: PrescriptionProjector,
        publisher: StreamPublisher,
        poll_interval: float = POLLING_INTERVAL,
        batch_size: int = BATCH_SIZE,
        max_retries: int = MAX_RETRIES,
        retention_days: int = OUTBOX_RETENTION_DAYS,
        housekeeping_interval: float = HOUSEKEEPING_INTERVAL,
        monitor_interval: float = MONITOR_INTERVAL,
    ):
        super().__init__(projector)
        self.publisher = publisher
        self.poll_interval = poll_interval
        self.batch_size = batch_size
        self.max_retries = max_retries
        self.retention_days = retention_days
        self.housekeeping_interval = housekeeping_interval
        self.monitor_interval = monitor_interval

    async def fetch_pending(self) -> List[OutboxEvent]:
        # Oldest first; rows that exhausted their retries are never selected again
        return await OutboxEvent.filter(
            processed_at__isnull=True, retry_count__lt=self.max_retries
        ).order_by("created_at", "id").limit(self.batch_size)

    async def poll_once(self) -> int:
        """Runs one relay cycle. Returns how many events were published."""
        events = await self.fetch_pending()
        if not events:
            return 0

        log.info(f"Processing {len(events)} outbox event(s)...")
        published = 0
        for event in events:
            try:
                await self.process_event(event)
                published += 1
            except Exception as e:
                log.error(f"Error processing outbox event {event.id}: {e}")
                await self.mark_failed(event.id, str(e))
        return published

    async def process_event(self, event: OutboxEvent) -> None:
        log.info(
            f"Processing outbox event: ID={event.id} Type={event.event_type} "
            f"Aggregate={event.aggregate_type}/{event.aggregate_id}"
        )
        # 1. Publish; this is the only step that decides success
        published_at = await self.publisher.publish_raw(event.routing_key, event.payload)
        log.info(f"Event {event.id} published (topic: {self.publisher.topic}, key: {event.routing_key})")

        # 2. Project locally; failures here never block the publish
        try:
            await self.project_locally(event)
        except Exception as e:
            log.error(f"Error projecting outbox event {event.id} into views: {e}")

        # 3. Mark processed
        await self.mark_processed(event.id, published_at)

    async def project_locally(self, event: OutboxEvent) -> None:
        if event.event_type != PRESCRIPTION_CREATED:
            log.warning(f"No projection for event type: {event.event_type}")
            return
        notification = decode_event(event.payload).to_notification()
        result = await self.deliver(notification)
        if not result.ok:
            log.warning(f"Outbox event {event.id} projected with failures: {result.failures}")

    async def mark_processed(self, event_id: int, published_at: datetime) -> None:
        await OutboxEvent.filter(id=event_id).update(
            processed_at=timezone.now(), published_at=published_at, error_message=None
        )
        log.info(f"Event {event_id} marked as processed")

    async def mark_failed(self, event_id: int, error_message: str) -> None:
        try:
            await OutboxEvent.filter(id=event_id).update(
                retry_count=F("retry_count") + 1, error_message=error_message[:MAX_ERROR_LENGTH]
            )
        except Exception as e:
            log.error(f"Error recording failure of outbox event {event_id}: {e}")

    async def cleanup_processed(self, retention_days: Optional[int] = None) -> int:
        """Housekeeping: deletes processed rows older than the retention window."""
        days = self.retention_days if retention_days is None else retention_days
        cutoff = timezone.now() - timedelta(days=days)
        deleted = await OutboxEvent.filter(processed_at__isnull=False, processed_at__lt=cutoff).delete()
        if deleted:
            log.info(f"Cleanup: {deleted} old event(s) removed from the outbox")
        return deleted

    async def pending_count(self) -> int:
        return await OutboxEvent.filter(processed_at__isnull=True).count()

    async def dead_letter_count(self) -> int:
        return await OutboxEvent.filter(processed_at__isnull=True, retry_count__gte=self.max_retries).count()

    async def report_pending(self) -> int:
        count = await self.pending_count()
        if count > 0:
            dead = await self.dead_letter_count()
            log.info(f"Pending outbox events: {count} ({dead} exhausted retries)")
        return count

    def tasks(self) -> List[PeriodicTask]:
        return [
            PeriodicTask("outbox-poll", self.poll_interval, self.poll_once),
            PeriodicTask("outbox-housekeeping", self.housekeeping_interval, self.cleanup_processed),
            PeriodicTask("outbox-monitor", self.monitor_interval, self.report_pending),
        ]

    async def run(self, stop: asyncio.Event) -> None:
        await asyncio.gather(*(task.run(stop) for task in self.tasks()))


async def start_outbox_relay():
    """Main loop for the relay service."""
    await init_db()
    redis = None
    try:
        redis = await connect_broker()
        relay = OutboxRelay(PrescriptionProjector(), build_event_publisher(redis))
        log.info(f"--- Outbox Relay Started (polling every {relay.poll_interval}s) ---")
        await run_until_stopped([relay.run], grace_period=SHUTDOWN_GRACE_PERIOD)
    finally:
        if redis is not None:
            await redis.aclose()
        await close_db()
        log.info("Outbox Relay stopped.")


def main():
    asyncio.run(start_outbox_relay())


if __name__ == "__main__":
    main()
