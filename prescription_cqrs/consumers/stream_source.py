import asyncio
import logging
from abc import abstractmethod

from redis.exceptions import RedisError

from prescription_cqrs.core.broker import BrokerMessage, StreamConsumer
from prescription_cqrs.core.config import REDELIVERY_INTERVAL
from prescription_cqrs.core.exceptions import EventDecodeError
from prescription_cqrs.events.sources import EventSource
from prescription_cqrs.services.projection_service import PrescriptionProjector

log = logging.getLogger("stream_consumer")

ERROR_BACKOFF_SECONDS = 1.0


class StreamEventSource(EventSource):
    """
    Event source fed by broker streams. A message is acknowledged only after
    it was handled; decode errors are permanent and are acknowledged (dropped)
    so they do not block the stream. Any other error leaves the message
    pending, and it is read again on the next redelivery pass.
    """

    def __init__(
        self,
        projector: PrescriptionProjector,
        consumer: StreamConsumer,
        redelivery_interval: float = REDELIVERY_INTERVAL,
    ):
        super().__init__(projector)
        self.consumer = consumer
        self.redelivery_interval = redelivery_interval

    @abstractmethod
    async def handle_message(self, message: BrokerMessage) -> None:
        """Decodes and projects one message. Raising leaves it unacknowledged."""

    async def process(self, message: BrokerMessage) -> bool:
        log.info(f"Message received from topic {message.topic} (id: {message.message_id}, key: {message.key})")
        try:
            await self.handle_message(message)
        except EventDecodeError as e:
            log.error(f"Dropping undecodable message {message.message_id} from {message.topic}: {e}")
            await self.consumer.ack(message)
            return False
        except Exception as e:
            log.error(f"Error processing message {message.message_id} from {message.topic}, left for redelivery: {e}")
            return False

        await self.consumer.ack(message)
        return True

    async def consume_once(self, pending: bool = False) -> int:
        """
        Processes one batch of new messages, or with ``pending`` the whole of
        this consumer's pending list, in stream order.
        """
        handled = 0
        if pending:
            async for message in self.consumer.iter_pending():
                if await self.process(message):
                    handled += 1
            return handled

        for message in await self.consumer.read():
            if await self.process(message):
                handled += 1
        return handled

    async def run(self, stop: asyncio.Event) -> None:
        await self.consumer.ensure_groups()
        log.info(f"{self.name} consuming topics: {self.consumer.topics}")

        loop = asyncio.get_running_loop()
        next_redelivery = loop.time()
        while not stop.is_set():
            try:
                if loop.time() >= next_redelivery:
                    await self.consume_once(pending=True)
                    next_redelivery = loop.time() + self.redelivery_interval
                await self.consume_once()
            except RedisError as e:
                log.error(f"{self.name} broker error: {e}")
                try:
                    await asyncio.wait_for(stop.wait(), timeout=ERROR_BACKOFF_SECONDS)
                except asyncio.TimeoutError:
                    pass
        log.info(f"{self.name} stopped consuming")
