import asyncio
import logging
import socket
from typing import Awaitable, Callable, Dict, Optional

from prescription_cqrs.core.broker import BrokerMessage, StreamConsumer, connect_broker, topic_table
from prescription_cqrs.core.config import (
    CDC_LINE_ITEM_TOPIC,
    CDC_PRESCRIPTION_TOPIC,
    CONSUMER_BATCH_SIZE,
    CONSUMER_BLOCK_MS,
    CONSUMER_GROUP,
    CONSUMER_NAME,
    SHUTDOWN_GRACE_PERIOD,
)
from prescription_cqrs.core.db import close_db, init_db
from prescription_cqrs.core.exceptions import ReferenceNotFoundError
from prescription_cqrs.core.scheduler import run_until_stopped
from prescription_cqrs.consumers.stream_source import StreamEventSource
from prescription_cqrs.events.cdc import (
    CdcRecord,
    PrescriptionMedicationRow,
    PrescriptionRow,
    decode_row,
    load_record,
)
from prescription_cqrs.events.schemas import ChangeNotification, PrescribedMedication
from prescription_cqrs.models.prescription import Prescription, PrescriptionMedication
from prescription_cqrs.services.projection_service import PrescriptionProjector, ProjectionResult

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
log = logging.getLogger("cdc_consumer")

PRESCRIPTIONS_TABLE = "prescriptions"
LINE_ITEMS_TABLE = "prescription_medications"


class CdcAdapter(StreamEventSource):
    """
    Turns captured row changes of the prescription tables into change
    notifications. Captured rows only hold foreign keys, so each handler
    re-reads the source store before projecting. No ordering between the two
    tables is assumed: the line-item handler fetches its parent row itself.
    """
    name = "cdc-adapter"

    def __init__(self, projector: PrescriptionProjector, consumer: StreamConsumer, **kwargs):
        super().__init__(projector, consumer, **kwargs)
        self.handlers: Dict[str, Callable[[dict], Awaitable[Optional[ProjectionResult]]]] = {
            PRESCRIPTIONS_TABLE: self.handle_prescription_change,
            LINE_ITEMS_TABLE: self.handle_line_item_change,
        }

    async def handle_message(self, message: BrokerMessage) -> None:
        table = topic_table(message.topic)
        handler = self.handlers.get(table)
        if handler is None:
            log.warning(f"Unknown CDC table: {table} (topic {message.topic}), dropping message")
            return
        await handler(load_record(message.value))

    @staticmethod
    def _should_project(record: dict, table: str) -> Optional[CdcRecord]:
        # Metadata is checked before the row body, so ignored rows never fail decoding
        meta = decode_row(record, CdcRecord)
        if not meta.is_projectable:
            log.info(f"Ignoring {table} change: op={meta.op.value} deleted={meta.deleted} - only inserts are projected")
            return None
        return meta

    async def handle_prescription_change(self, record: dict) -> Optional[ProjectionResult]:
        if not self._should_project(record, PRESCRIPTIONS_TABLE):
            return None
        row = decode_row(record, PrescriptionRow)
        log.info(
            f"Processing CDC prescription: ID={row.id} Prescriber={row.prescriber_id} "
            f"Patient={row.patient_id} Date={row.prescribed_at.isoformat()}"
        )

        lines = await PrescriptionMedication.filter(prescription_id=row.id).order_by("id")
        notification = ChangeNotification(
            event_type=f"{PRESCRIPTIONS_TABLE}.{row.op.value}",
            aggregate_id=str(row.id),
            prescription_id=row.id,
            prescriber_id=row.prescriber_id,
            patient_id=row.patient_id,
            prescribed_at=row.prescribed_at,
            medications=[
                PrescribedMedication(medication_id=line.medication_id, schedule=line.schedule, dosage=line.dosage)
                for line in lines
            ],
            operation=row.op,
            deleted=row.deleted,
            source_timestamp=row.source_timestamp,
        )
        return await self.deliver(notification)

    async def handle_line_item_change(self, record: dict) -> Optional[ProjectionResult]:
        if not self._should_project(record, LINE_ITEMS_TABLE):
            return None
        row = decode_row(record, PrescriptionMedicationRow)
        log.info(f"Processing CDC medication: Prescription={row.prescription_id} Medication={row.medication_id}")

        prescription = await Prescription.get_or_none(id=row.prescription_id)
        if not prescription:
            raise ReferenceNotFoundError("Prescription", row.prescription_id)

        notification = ChangeNotification(
            event_type=f"{LINE_ITEMS_TABLE}.{row.op.value}",
            aggregate_id=str(row.prescription_id),
            prescription_id=row.prescription_id,
            prescriber_id=prescription.prescriber_id,
            patient_id=prescription.patient_id,
            prescribed_at=prescription.prescribed_at,
            medications=[PrescribedMedication(medication_id=row.medication_id, schedule=row.schedule, dosage=row.dosage)],
            operation=row.op,
            deleted=row.deleted,
            source_timestamp=row.source_timestamp,
        )
        return await self.deliver(notification)


def build_cdc_consumer(redis, consumer_name: str = CONSUMER_NAME) -> StreamConsumer:
    return StreamConsumer(
        redis,
        topics=[CDC_PRESCRIPTION_TOPIC, CDC_LINE_ITEM_TOPIC],
        group=f"{CONSUMER_GROUP}-cdc",
        consumer_name=consumer_name or socket.gethostname(),
        block_ms=CONSUMER_BLOCK_MS,
        batch_size=CONSUMER_BATCH_SIZE,
    )


async def start_cdc_consumer():
    """Main loop for the CDC event handler service."""
    await init_db()
    redis = None
    try:
        redis = await connect_broker()
        adapter = CdcAdapter(PrescriptionProjector(), build_cdc_consumer(redis))
        log.info("--- CDC Event Handler Started ---")
        await run_until_stopped([adapter.run], grace_period=SHUTDOWN_GRACE_PERIOD)
    finally:
        if redis is not None:
            await redis.aclose()
        await close_db()
        log.info("CDC Event Handler stopped.")


def main():
    asyncio.run(start_cdc_consumer())


if __name__ == "__main__":
    main()
