import asyncio
import logging

from prescription_cqrs.core.broker import BrokerMessage, StreamConsumer, connect_broker
from prescription_cqrs.core.config import (
    CONSUMER_BATCH_SIZE,
    CONSUMER_BLOCK_MS,
    CONSUMER_GROUP,
    CONSUMER_NAME,
    EVENTS_TOPIC,
    SHUTDOWN_GRACE_PERIOD,
)
from prescription_cqrs.core.db import close_db, init_db
from prescription_cqrs.core.scheduler import run_until_stopped
from prescription_cqrs.consumers.stream_source import StreamEventSource
from prescription_cqrs.events.schemas import decode_event
from prescription_cqrs.services.projection_service import PrescriptionProjector

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
log = logging.getLogger("event_consumer")


class EventStreamConsumer(StreamEventSource):
    """Projects the prescription events that the direct strategy publishes after commit."""
    name = "event-stream-consumer"

    async def handle_message(self, message: BrokerMessage) -> None:
        event = decode_event(message.value)
        log.info(f"Processing event {event.id}: prescription {event.data.prescription_id} created")
        result = await self.deliver(event.to_notification())
        if not result.ok:
            log.warning(f"Event {event.id} projected with failures: {result.failures}")


def build_event_consumer(redis) -> StreamConsumer:
    return StreamConsumer(
        redis,
        topics=[EVENTS_TOPIC],
        group=CONSUMER_GROUP,
        consumer_name=CONSUMER_NAME,
        block_ms=CONSUMER_BLOCK_MS,
        batch_size=CONSUMER_BATCH_SIZE,
    )


async def start_event_consumer():
    """Main loop for the event handler of the direct-publish strategy."""
    await init_db()
    redis = None
    try:
        redis = await connect_broker()
        consumer = EventStreamConsumer(PrescriptionProjector(), build_event_consumer(redis))
        log.info("--- Event Handler Started, waiting for events ---")
        await run_until_stopped([consumer.run], grace_period=SHUTDOWN_GRACE_PERIOD)
    finally:
        if redis is not None:
            await redis.aclose()
        await close_db()
        log.info("Event Handler stopped.")


def main():
    asyncio.run(start_event_consumer())


if __name__ == "__main__":
    main()
