"""Redis Streams adapter: one stream per topic, consumer groups for at-least-once delivery."""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import AsyncIterator, Dict, Iterable, List, Optional, Tuple, Union

from pydantic import BaseModel
from redis import asyncio as aioredis
from redis.exceptions import RedisError, ResponseError

from prescription_cqrs.core.config import (
    EVENTS_TOPIC,
    REDIS_URL,
    STARTUP_CONNECT_ATTEMPTS,
    STARTUP_CONNECT_DELAY,
    STREAM_MAXLEN,
)

log = logging.getLogger("broker")


@dataclass(frozen=True)
class BrokerMessage:
    topic: str
    message_id: str
    key: Optional[str]
    value: str


async def connect_broker(
    url: str = REDIS_URL,
    attempts: int = STARTUP_CONNECT_ATTEMPTS,
    delay: float = STARTUP_CONNECT_DELAY,
) -> aioredis.Redis:
    """Opens the process-wide Redis client, waiting for the broker to come up."""
    client = aioredis.from_url(url, decode_responses=True)
    for attempt in range(1, attempts + 1):
        try:
            await client.ping()
            log.info("Connected to broker at %s", url)
            return client
        except (RedisError, OSError) as e:
            if attempt == attempts:
                await client.aclose()
                log.critical("FATAL ERROR: Could not connect to broker at %s. Error: %s", url, e)
                raise
            log.info("Waiting for broker... attempt %d/%d", attempt, attempts)
            await asyncio.sleep(delay)


class StreamPublisher:
    """
    Appends messages to a single stream (topic).

    With ``maxlen`` set, every XADD also trims the stream to about that many
    entries (exactly that many when ``approximate`` is False). Trimming does
    not look at consumer groups: an entry still unacknowledged when it is
    trimmed is lost, so ``maxlen`` has to stay well above the backlog.
    """

    def __init__(
        self,
        redis: aioredis.Redis,
        topic: str,
        maxlen: Optional[int] = None,
        approximate: bool = True,
    ):
        self.redis = redis
        self.topic = topic
        self.maxlen = maxlen
        self.approximate = approximate

    async def publish_raw(self, key: str, value: Union[str, bytes]) -> datetime:
        """Publishes an already-serialized body. Returns the publish time."""
        if isinstance(value, bytes):
            value = value.decode("utf-8")
        message_id = await self.redis.xadd(
            self.topic, {"key": key, "value": value}, maxlen=self.maxlen, approximate=self.approximate
        )
        log.info("Message %s published to topic %s with key %s", message_id, self.topic, key)
        return datetime.now(timezone.utc)

    async def publish(self, key: str, event: BaseModel) -> datetime:
        return await self.publish_raw(key, event.model_dump_json())


def build_event_publisher(redis: aioredis.Redis) -> StreamPublisher:
    """Publisher for the prescription events stream, bounded by STREAM_MAXLEN."""
    return StreamPublisher(redis, EVENTS_TOPIC, maxlen=STREAM_MAXLEN)


class StreamConsumer:
    """
    Consumer-group reader over one or more streams.

    New messages are read with ``>``. Messages delivered to this consumer but
    never acknowledged stay in its pending list; ``iter_pending`` walks that
    whole list page by page, which is how failed messages are redelivered.
    """

    def __init__(
        self,
        redis: aioredis.Redis,
        topics: Iterable[str],
        group: str,
        consumer_name: str,
        block_ms: Optional[int] = None,
        batch_size: int = 50,
    ):
        self.redis = redis
        self.topics = list(topics)
        self.group = group
        self.consumer_name = consumer_name
        self.block_ms = block_ms
        self.batch_size = batch_size

    async def ensure_groups(self) -> None:
        for topic in self.topics:
            try:
                await self.redis.xgroup_create(topic, self.group, id="0", mkstream=True)
                log.info("Consumer group %s created on topic %s", self.group, topic)
            except ResponseError as e:
                if "BUSYGROUP" not in str(e):
                    raise

    async def read(self) -> List[BrokerMessage]:
        """Reads the next batch of messages never delivered to the group."""
        response = await self.redis.xreadgroup(
            self.group,
            self.consumer_name,
            {topic: ">" for topic in self.topics},
            count=self.batch_size,
            block=self.block_ms,
        )
        return [
            BrokerMessage(topic=topic, message_id=message_id, key=fields.get("key"), value=fields.get("value", ""))
            for topic, message_id, fields in self._entries(response)
            if fields
        ]

    async def iter_pending(self) -> AsyncIterator[BrokerMessage]:
        """
        Yields every message in this consumer's pending list, oldest first.

        Each page starts after the last id seen on that stream, so messages
        that keep failing never hide the ones behind them. A stream drops out
        once a page comes back empty. Entries trimmed from the stream while
        pending have no body left and are acknowledged here.
        """
        cursor: Dict[str, str] = {topic: "0" for topic in self.topics}
        while cursor:
            response = await self.redis.xreadgroup(
                self.group, self.consumer_name, cursor, count=self.batch_size
            )
            next_cursor: Dict[str, str] = {}
            for topic, message_id, fields in self._entries(response):
                next_cursor[topic] = message_id
                if not fields:
                    log.warning("Pending message %s on %s was trimmed from the stream, acknowledging it", message_id, topic)
                    await self.redis.xack(topic, self.group, message_id)
                    continue
                yield BrokerMessage(
                    topic=topic,
                    message_id=message_id,
                    key=fields.get("key"),
                    value=fields.get("value", ""),
                )
            cursor = next_cursor

    async def ack(self, message: BrokerMessage) -> None:
        await self.redis.xack(message.topic, self.group, message.message_id)

    @staticmethod
    def _entries(response) -> Iterable[Tuple[str, str, Optional[dict]]]:
        if not response:
            return
        # RESP2 returns [[stream, entries], ...]; RESP3 returns {stream: entries}
        streams = response.items() if isinstance(response, dict) else response
        for topic, entries in streams:
            for entry in entries:
                yield topic, entry[0], entry[1]


def topic_table(topic: str) -> str:
    """'hospital_db.public.prescriptions' -> 'prescriptions'."""
    return topic.rsplit(".", 1)[-1]
