import json
import pytest
from datetime import datetime, timezone

from prescription_cqrs.core.broker import BrokerMessage, StreamConsumer
from prescription_cqrs.core.config import PropagationStrategy
from prescription_cqrs.core.exceptions import EventDecodeError, ReferenceNotFoundError
from prescription_cqrs.consumers.cdc_consumer import CdcAdapter, build_cdc_consumer
from prescription_cqrs.events.cdc import CdcRecord, PrescriptionRow, decode_row, load_record, parse_source_timestamp
from prescription_cqrs.models.prescription import Prescription
from prescription_cqrs.models.views import PatientChartView, PharmacyView
from prescription_cqrs.services.prescription_service import create_prescription
from prescription_cqrs.services.projection_service import PrescriptionProjector

PRESCRIPTION_TOPIC = "hospital_db.public.prescriptions"
LINE_ITEM_TOPIC = "hospital_db.public.prescription_medications"
# 2024-05-01T09:30:00Z in epoch microseconds
PRESCRIBED_AT_MICROS = 1714555800000000


def prescription_record(prescription_id, op="c", deleted="false", **overrides):
    record = {
        "id": prescription_id,
        "prescriber_id": 1,
        "patient_id": 2,
        "prescribed_at": PRESCRIBED_AT_MICROS,
        "__op": op,
        "__deleted": deleted,
        "__source_ts_ms": 1714555800123,
    }
    record.update(overrides)
    return record


def line_item_record(prescription_id, medication_id=10, op="c", deleted="false"):
    return {
        "id": 500,
        "prescription_id": prescription_id,
        "medication_id": medication_id,
        "schedule": "08:00",
        "dosage": "500mg",
        "__op": op,
        "__deleted": deleted,
    }


def make_adapter(redis=None, batch_size=50):
    consumer = StreamConsumer(
        redis,
        topics=[PRESCRIPTION_TOPIC, LINE_ITEM_TOPIC],
        group="test-cdc",
        consumer_name="worker-1",
        batch_size=batch_size,
    )
    return CdcAdapter(PrescriptionProjector(), consumer)


async def committed_prescription(medications):
    prescription, _ = await create_prescription(1, 2, medications, strategy=PropagationStrategy.CDC)
    return prescription


class TestTimestampNormalization:
    def test_epoch_microseconds(self):
        assert parse_source_timestamp(PRESCRIBED_AT_MICROS) == datetime(2024, 5, 1, 9, 30, tzinfo=timezone.utc)

    def test_iso_with_fraction(self):
        parsed = parse_source_timestamp("2024-05-01T09:30:00.123456Z")
        assert parsed == datetime(2024, 5, 1, 9, 30, 0, 123456, tzinfo=timezone.utc)

    def test_iso_without_fraction(self):
        parsed = parse_source_timestamp("2024-05-01T09:30:00+00:00")
        assert parsed == datetime(2024, 5, 1, 9, 30, tzinfo=timezone.utc)

    def test_nanosecond_fraction_truncated(self):
        parsed = parse_source_timestamp("2024-05-01T09:30:00.123456789Z")
        assert parsed.microsecond == 123456

    @pytest.mark.parametrize("value", ["01/05/2024 09:30", "2024-05-01T09:30:00", None, True, [1]])
    def test_unrecognised_values_rejected(self, value):
        with pytest.raises(ValueError):
            parse_source_timestamp(value)

    def test_bad_timestamp_fails_row_decoding(self):
        with pytest.raises(EventDecodeError):
            decode_row(prescription_record(1, prescribed_at="yesterday"), PrescriptionRow)


class TestRecordDecoding:
    def test_metadata_aliases(self):
        meta = decode_row(prescription_record(1, op="r", deleted="true"), CdcRecord)
        assert meta.op.value == "r"
        assert meta.deleted is True
        assert meta.source_timestamp == datetime(2024, 5, 1, 9, 30, 0, 123000, tzinfo=timezone.utc)
        assert not meta.is_projectable

    @pytest.mark.parametrize("raw", ["not json", "[1, 2]"])
    def test_load_record_fails_closed(self, raw):
        with pytest.raises(EventDecodeError):
            load_record(raw)

    def test_unknown_operation_rejected(self):
        with pytest.raises(EventDecodeError):
            decode_row(prescription_record(1, op="x"), CdcRecord)


@pytest.mark.asyncio
async def test_prescription_insert_projects_line_items(reference_data, medications):
    prescription = await committed_prescription(medications)

    result = await make_adapter().handle_prescription_change(prescription_record(prescription.id))

    assert result.ok
    pharmacy = await PharmacyView.filter(prescription_id=prescription.id).order_by("id")
    assert [(r.medication_id, r.schedule) for r in pharmacy] == [(10, "08:00"), (11, "20:00")]
    assert pharmacy[0].prescribed_at == datetime(2024, 5, 1, 9, 30, tzinfo=timezone.utc)
    assert await PatientChartView.filter(patient_id=2).count() == 2


@pytest.mark.asyncio
@pytest.mark.parametrize("op, deleted", [("u", "false"), ("d", "false"), ("c", "true")])
async def test_updates_and_deletes_produce_no_writes(reference_data, medications, op, deleted):
    prescription = await committed_prescription(medications)
    adapter = make_adapter()

    assert await adapter.handle_prescription_change(prescription_record(prescription.id, op=op, deleted=deleted)) is None
    assert await adapter.handle_line_item_change(line_item_record(prescription.id, op=op, deleted=deleted)) is None

    assert await PharmacyView.all().count() == 0
    assert await PatientChartView.all().count() == 0


@pytest.mark.asyncio
async def test_ignored_changes_skip_row_validation(reference_data):
    # A delete tombstone only carries the key; the row body is never decoded
    result = await make_adapter().handle_prescription_change({"id": 1, "__op": "d", "__deleted": "true"})
    assert result is None


@pytest.mark.asyncio
async def test_line_item_refetches_parent(reference_data, medications):
    prescription = await committed_prescription(medications[:1])

    result = await make_adapter().handle_line_item_change(line_item_record(prescription.id, medication_id=11))

    assert result.pharmacy_rows == 1
    row = await PatientChartView.get(prescription_id=prescription.id)
    assert row.medication_name == "Metformin"
    assert row.prescriber_name == "Dr. Ana Souza"
    assert row.prescribed_at == prescription.prescribed_at


@pytest.mark.asyncio
async def test_line_item_without_parent_raises(reference_data):
    with pytest.raises(ReferenceNotFoundError):
        await make_adapter().handle_line_item_change(line_item_record(4242))


@pytest.mark.asyncio
async def test_messages_acked_only_after_projection(reference_data, medications, redis):
    adapter = make_adapter(redis)
    await adapter.consumer.ensure_groups()

    prescription = await committed_prescription(medications)
    await redis.xadd(PRESCRIPTION_TOPIC, {"key": "1", "value": json.dumps(prescription_record(prescription.id))})
    # Parent prescription does not exist yet: stays pending
    await redis.xadd(LINE_ITEM_TOPIC, {"key": "2", "value": json.dumps(line_item_record(4242))})

    assert await adapter.consume_once() == 1
    assert (await redis.xpending(PRESCRIPTION_TOPIC, "test-cdc"))["pending"] == 0
    assert (await redis.xpending(LINE_ITEM_TOPIC, "test-cdc"))["pending"] == 1

    # Redelivery retries the pending message and fails the same way
    assert await adapter.consume_once(pending=True) == 0
    assert (await redis.xpending(LINE_ITEM_TOPIC, "test-cdc"))["pending"] == 1
    assert await PharmacyView.all().count() == 2


@pytest.mark.asyncio
async def test_redelivery_reaches_messages_behind_failing_ones(reference_data, redis):
    adapter = make_adapter(redis, batch_size=1)
    await adapter.consumer.ensure_groups()

    await redis.xadd(LINE_ITEM_TOPIC, {"key": "1", "value": json.dumps(line_item_record(4242))})
    await redis.xadd(LINE_ITEM_TOPIC, {"key": "2", "value": json.dumps(line_item_record(100))})

    # Neither parent exists yet
    assert await adapter.consume_once() == 0
    assert await adapter.consume_once() == 0
    assert (await redis.xpending(LINE_ITEM_TOPIC, "test-cdc"))["pending"] == 2

    await Prescription.create(id=100, prescriber_id=1, patient_id=2, prescribed_at=datetime(2024, 5, 1, 9, 30, tzinfo=timezone.utc))

    # The first pending message still fails, the one behind it is projected
    assert await adapter.consume_once(pending=True) == 1
    assert await PharmacyView.all().count() == 1
    assert (await redis.xpending(LINE_ITEM_TOPIC, "test-cdc"))["pending"] == 1


@pytest.mark.asyncio
async def test_undecodable_messages_are_acked_and_dropped(reference_data, redis):
    adapter = make_adapter(redis)
    await adapter.consumer.ensure_groups()

    await redis.xadd(PRESCRIPTION_TOPIC, {"key": "1", "value": "{not json"})
    await redis.xadd(PRESCRIPTION_TOPIC, {"key": "2", "value": json.dumps(prescription_record(1, prescribed_at="soon"))})

    assert await adapter.consume_once() == 0
    assert (await redis.xpending(PRESCRIPTION_TOPIC, "test-cdc"))["pending"] == 0


@pytest.mark.asyncio
async def test_unknown_table_is_acked(reference_data, redis):
    adapter = make_adapter(redis)
    message = BrokerMessage(topic="hospital_db.public.invoices", message_id="1-0", key=None, value="{}")
    await redis.xadd("hospital_db.public.invoices", {"value": "{}"})
    await redis.xgroup_create("hospital_db.public.invoices", "test-cdc", id="0")

    assert await adapter.process(message) is True


def test_consumer_subscribes_both_tables(redis):
    consumer = build_cdc_consumer(redis, consumer_name="cdc-1")
    assert consumer.topics == [PRESCRIPTION_TOPIC, LINE_ITEM_TOPIC]
    assert consumer.group.endswith("-cdc")
