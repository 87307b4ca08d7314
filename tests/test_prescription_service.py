import json
import pytest
from unittest.mock import AsyncMock, patch

from prescription_cqrs.core.config import PropagationStrategy
from prescription_cqrs.core.exceptions import ReferenceNotFoundError
from prescription_cqrs.events.schemas import PRESCRIPTION_CREATED, decode_event
from prescription_cqrs.events.sources import DirectPublisher
from prescription_cqrs.models.outbox import OutboxEvent
from prescription_cqrs.models.prescription import Prescription, PrescriptionMedication
from prescription_cqrs.services.prescription_service import (
    create_prescription,
    list_medications,
    list_patients,
    list_prescribers,
)


@pytest.mark.asyncio
async def test_outbox_row_committed_with_prescription(reference_data, medications):
    """The outbox row exists as soon as the write returns, before any relay cycle."""
    prescription, lines = await create_prescription(1, 2, medications, strategy=PropagationStrategy.OUTBOX)

    assert [(l.medication_id, l.schedule, l.dosage) for l in lines] == [(10, "08:00", "500mg"), (11, "20:00", "250mg")]
    assert await PrescriptionMedication.filter(prescription_id=prescription.id).count() == 2

    events = await OutboxEvent.filter(aggregate_id=str(prescription.id))
    assert len(events) == 1
    outbox = events[0]
    assert outbox.aggregate_type == "prescription"
    assert outbox.event_type == PRESCRIPTION_CREATED
    assert outbox.processed_at is None
    assert outbox.retry_count == 0

    event = decode_event(outbox.payload)
    assert event.data.prescription_id == prescription.id
    assert [m.medication_id for m in event.data.medications] == [10, 11]


@pytest.mark.asyncio
async def test_outbox_failure_rolls_back_prescription(reference_data, medications):
    with patch(
        "prescription_cqrs.services.prescription_service.stage_prescription_created",
        new_callable=AsyncMock,
        side_effect=RuntimeError("outbox insert failed"),
    ):
        with pytest.raises(RuntimeError):
            await create_prescription(1, 2, medications, strategy=PropagationStrategy.OUTBOX)

    assert await Prescription.all().count() == 0
    assert await PrescriptionMedication.all().count() == 0
    assert await OutboxEvent.all().count() == 0


@pytest.mark.asyncio
async def test_cdc_strategy_writes_no_outbox_row(reference_data, medications):
    prescription, _ = await create_prescription(1, 2, medications, strategy=PropagationStrategy.CDC)

    assert await Prescription.filter(id=prescription.id).exists()
    assert await OutboxEvent.all().count() == 0


@pytest.mark.asyncio
async def test_direct_publish_after_commit(reference_data, medications):
    publisher = AsyncMock(spec=DirectPublisher)

    prescription, _ = await create_prescription(
        1, 2, medications, strategy=PropagationStrategy.DIRECT, publisher=publisher
    )

    publisher.publish.assert_awaited_once()
    event = publisher.publish.call_args.args[0]
    assert event.key == f"prescription-{prescription.id}"
    assert await OutboxEvent.all().count() == 0


@pytest.mark.asyncio
async def test_direct_publish_failure_keeps_prescription(reference_data, medications):
    stream = AsyncMock()
    stream.publish.side_effect = ConnectionError("broker down")

    prescription, _ = await create_prescription(
        1, 2, medications, strategy=PropagationStrategy.DIRECT, publisher=DirectPublisher(stream)
    )

    stream.publish.assert_awaited_once()
    assert await Prescription.filter(id=prescription.id).exists()


@pytest.mark.asyncio
async def test_empty_medications_rejected(reference_data):
    with pytest.raises(ValueError):
        await create_prescription(1, 2, [], strategy=PropagationStrategy.OUTBOX)
    assert await Prescription.all().count() == 0


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "prescriber_id, patient_id, medication_id, entity",
    [
        (999, 2, 10, "Prescriber"),
        (1, 999, 10, "Patient"),
        (1, 2, 999, "Medication"),
    ],
)
async def test_missing_reference_rejected(reference_data, prescriber_id, patient_id, medication_id, entity):
    items = [{"medication_id": medication_id, "schedule": "08:00", "dosage": "500mg"}]

    with pytest.raises(ReferenceNotFoundError) as excinfo:
        await create_prescription(prescriber_id, patient_id, items, strategy=PropagationStrategy.OUTBOX)

    assert excinfo.value.entity == entity
    assert await Prescription.all().count() == 0
    assert await OutboxEvent.all().count() == 0


@pytest.mark.asyncio
async def test_reference_lists_ordered_by_name(reference_data):
    assert [m.name for m in await list_medications()] == ["Amoxicillin", "Metformin"]
    assert [p.id for p in await list_prescribers()] == [1]
    assert [p.id for p in await list_patients()] == [2]


@pytest.mark.asyncio
async def test_outbox_payload_is_versioned_envelope(reference_data, medications):
    prescription, _ = await create_prescription(1, 2, medications, strategy=PropagationStrategy.OUTBOX)

    outbox = await OutboxEvent.get(aggregate_id=str(prescription.id))
    body = json.loads(outbox.payload)
    assert set(body) == {"id", "type", "version", "timestamp", "data"}
    assert body["type"] == "prescription.created"
    assert body["version"] == 1
    assert set(body["data"]) == {"prescription_id", "prescriber_id", "patient_id", "prescribed_at", "medications"}
