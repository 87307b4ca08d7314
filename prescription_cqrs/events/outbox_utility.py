from typing import Any
from prescription_cqrs.events.schemas import PRESCRIPTION_AGGREGATE, PrescriptionCreatedEvent
from prescription_cqrs.models.outbox import OutboxEvent


async def create_outbox_event(
    aggregate_type: str,
    aggregate_id: Any,
    event_type: str,
    payload: str,
    conn: Any = None
) -> OutboxEvent:
    """
    Creates a new Outbox event record using the provided database connection (transaction).

    CRITICAL: Passing 'conn' ensures the event is created atomically with the business data.
    """
    return await OutboxEvent.create(
        aggregate_type=aggregate_type,
        aggregate_id=str(aggregate_id),
        event_type=event_type,
        payload=payload,
        retry_count=0,
        using_db=conn
    )


async def stage_prescription_created(event: PrescriptionCreatedEvent, conn: Any) -> OutboxEvent:
    return await create_outbox_event(
        aggregate_type=PRESCRIPTION_AGGREGATE,
        aggregate_id=event.data.prescription_id,
        event_type=event.type,
        payload=event.model_dump_json(),
        conn=conn
    )
