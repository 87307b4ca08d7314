"""
Event sources: the interchangeable ways a committed prescription reaches the projector.

    DirectPublisher + EventStreamConsumer  publish after commit, best-effort
    OutboxRelay                            outbox row in the same transaction, relayed
    CdcAdapter                             row changes captured from the replication log

All of them hand a ChangeNotification to the same PrescriptionProjector.
"""
import asyncio
import logging
from abc import ABC, abstractmethod

from prescription_cqrs.core.broker import StreamPublisher
from prescription_cqrs.events.schemas import ChangeNotification, PrescriptionCreatedEvent
from prescription_cqrs.services.projection_service import PrescriptionProjector, ProjectionResult

log = logging.getLogger("event_sources")


class EventSource(ABC):
    name = "event-source"

    def __init__(self, projector: PrescriptionProjector):
        self.projector = projector

    async def deliver(self, notification: ChangeNotification) -> ProjectionResult:
        return await self.projector.project(notification)

    @abstractmethod
    async def run(self, stop: asyncio.Event) -> None:
        """Delivers notifications until ``stop`` is set."""


class DirectPublisher:
    """
    Write-side half of the direct strategy. Publishes on the request path
    after the transaction has committed; a failure is logged and swallowed
    because the write already succeeded and cannot be rolled back.
    """

    def __init__(self, publisher: StreamPublisher):
        self.publisher = publisher

    async def publish(self, event: PrescriptionCreatedEvent) -> bool:
        try:
            await self.publisher.publish(event.key, event)
            return True
        except Exception as e:
            log.warning(
                f"WARNING: Failed to publish {event.type} for prescription {event.data.prescription_id}, "
                f"but the prescription was created: {e}"
            )
            return False
