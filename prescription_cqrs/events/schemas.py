"""
Event and change-notification schemas shared by every propagation strategy.

Broker payloads are decoded into explicit, versioned pydantic models. Anything
that does not match a known ``type``/``version`` pair is rejected with an
``EventDecodeError`` instead of being passed along as a loose dict.
"""
import json
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Literal, Optional, Type, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from prescription_cqrs.core.exceptions import EventDecodeError

PRESCRIPTION_AGGREGATE = "prescription"
PRESCRIPTION_CREATED = "prescription.created"


class CdcOperation(str, Enum):
    CREATE = "c"
    READ = "r"  # Snapshot
    UPDATE = "u"
    DELETE = "d"


PROJECTABLE_OPERATIONS = (CdcOperation.CREATE, CdcOperation.READ)


def event_key(aggregate_type: str, aggregate_id) -> str:
    """Broker key that keeps every event of one aggregate in the same partition."""
    return f"{aggregate_type}-{aggregate_id}"


class PrescribedMedication(BaseModel):
    model_config = ConfigDict(extra="forbid")

    medication_id: int
    schedule: str
    dosage: str


class PrescriptionCreatedData(BaseModel):
    model_config = ConfigDict(extra="forbid")

    prescription_id: int
    prescriber_id: int
    patient_id: int
    prescribed_at: datetime
    medications: List[PrescribedMedication] = Field(min_length=1)


class PrescriptionCreatedEvent(BaseModel):
    """Envelope published for a committed prescription (schema version 1)."""
    model_config = ConfigDict(extra="forbid")

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    type: Literal["prescription.created"] = PRESCRIPTION_CREATED
    version: Literal[1] = 1
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    data: PrescriptionCreatedData

    @property
    def key(self) -> str:
        return event_key(PRESCRIPTION_AGGREGATE, self.data.prescription_id)

    def to_notification(self) -> "ChangeNotification":
        return ChangeNotification(
            event_type=self.type,
            aggregate_id=str(self.data.prescription_id),
            prescription_id=self.data.prescription_id,
            prescriber_id=self.data.prescriber_id,
            patient_id=self.data.patient_id,
            prescribed_at=self.data.prescribed_at,
            medications=list(self.data.medications),
        )


# The envelope ``type`` selects the model; new event types are registered here.
EVENT_TYPES: Dict[str, Type[BaseModel]] = {
    PRESCRIPTION_CREATED: PrescriptionCreatedEvent,
}


def decode_event(raw: Union[str, bytes]) -> PrescriptionCreatedEvent:
    """Decodes a broker/outbox payload into its typed event. Fails closed."""
    try:
        envelope = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise EventDecodeError(f"Event payload is not valid JSON: {e}") from e
    if not isinstance(envelope, dict):
        raise EventDecodeError("Event payload must be a JSON object")

    model = EVENT_TYPES.get(envelope.get("type"))
    if model is None:
        raise EventDecodeError(f"Unknown event type: {envelope.get('type')!r}")
    try:
        return model.model_validate(envelope)
    except ValidationError as e:
        raise EventDecodeError(f"Invalid {envelope['type']} payload: {e.errors()[0]['msg']}") from e


class ChangeNotification(BaseModel):
    """
    The one shape the projector consumes, whatever strategy delivered it.
    CDC notifications additionally carry the operation code, deleted flag and
    source timestamp of the captured row.
    """
    event_type: str
    aggregate_id: str
    prescription_id: int
    prescriber_id: int
    patient_id: int
    prescribed_at: datetime
    medications: List[PrescribedMedication]
    operation: Optional[CdcOperation] = None
    deleted: bool = False
    source_timestamp: Optional[datetime] = None

    @property
    def is_projectable(self) -> bool:
        # Only inserts and snapshot reads are projected; the domain is append-only.
        if self.deleted:
            return False
        return self.operation is None or self.operation in PROJECTABLE_OPERATIONS
