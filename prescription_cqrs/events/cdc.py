"""
Decoding of flattened CDC row-change records.

The capture pipeline unwraps each change into one flat JSON object holding the
row's columns plus metadata keys with a reserved ``__`` prefix::

    {"id": 100, "prescriber_id": 1, ..., "__op": "c", "__deleted": "false", "__source_ts_ms": 1700000000000}
"""
import json
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Type, TypeVar, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from prescription_cqrs.core.exceptions import EventDecodeError
from prescription_cqrs.events.schemas import CdcOperation, PROJECTABLE_OPERATIONS

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
ISO_FORMATS = (
    "%Y-%m-%dT%H:%M:%S.%f%z",
    "%Y-%m-%dT%H:%M:%S%z",
)
_FRACTION = re.compile(r"\.(\d{6})\d+")


def parse_source_timestamp(value: Any) -> datetime:
    """
    Normalizes a captured timestamp column.
    Accepts epoch microseconds (int/float) or an ISO-8601 string with or
    without fractional seconds; raises ValueError for anything else.
    """
    if isinstance(value, bool):
        raise ValueError(f"unsupported timestamp value: {value!r}")
    if isinstance(value, (int, float)):
        return EPOCH + timedelta(microseconds=int(value))
    if isinstance(value, str):
        # strptime's %f stops at microseconds; nanosecond fractions are truncated
        text = _FRACTION.sub(r".\1", value.strip())
        for fmt in ISO_FORMATS:
            try:
                return datetime.strptime(text, fmt)
            except ValueError:
                continue
        raise ValueError(f"unrecognised timestamp format: {value!r}")
    raise ValueError(f"unsupported timestamp type: {type(value).__name__}")


class CdcRecord(BaseModel):
    """Metadata common to every captured row."""
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    op: CdcOperation = Field(alias="__op")
    deleted: bool = Field(default=False, alias="__deleted")
    source_ts_ms: Optional[int] = Field(default=None, alias="__source_ts_ms")

    @property
    def source_timestamp(self) -> Optional[datetime]:
        if self.source_ts_ms is None:
            return None
        return EPOCH + timedelta(milliseconds=self.source_ts_ms)

    @property
    def is_projectable(self) -> bool:
        return not self.deleted and self.op in PROJECTABLE_OPERATIONS


class PrescriptionRow(CdcRecord):
    id: int
    prescriber_id: int
    patient_id: int
    prescribed_at: datetime

    @field_validator("prescribed_at", mode="before")
    @classmethod
    def _normalize_prescribed_at(cls, value):
        return parse_source_timestamp(value)


class PrescriptionMedicationRow(CdcRecord):
    id: int
    prescription_id: int
    medication_id: int
    schedule: str
    dosage: str


RowT = TypeVar("RowT", bound=CdcRecord)


def load_record(raw: Union[str, bytes]) -> Dict[str, Any]:
    try:
        record = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise EventDecodeError(f"CDC payload is not valid JSON: {e}") from e
    if not isinstance(record, dict):
        raise EventDecodeError("CDC payload must be a flat JSON object")
    return record


def decode_row(record: Dict[str, Any], model: Type[RowT]) -> RowT:
    """Validates a loaded record against a row model, failing closed."""
    try:
        return model.model_validate(record)
    except ValidationError as e:
        raise EventDecodeError(f"Invalid {model.__name__} record: {e.errors()[0]['msg']}") from e
