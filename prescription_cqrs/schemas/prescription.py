from datetime import date, datetime
from typing import List

from pydantic import BaseModel, ConfigDict, Field


class PrescriptionMedicationRequest(BaseModel):
    """Schema for a single medication in the prescription request."""
    medication_id: int
    schedule: str = Field(min_length=1, max_length=64)
    dosage: str = Field(min_length=1, max_length=64)


class PrescriptionRequest(BaseModel):
    """Schema for the full prescription request body."""
    prescriber_id: int
    patient_id: int
    medications: List[PrescriptionMedicationRequest]


class PrescriptionMedicationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    medication_id: int
    schedule: str
    dosage: str


class PrescriptionResponse(BaseModel):
    """The committed aggregate, returned with 201 Created."""
    id: int
    prescriber_id: int
    patient_id: int
    prescribed_at: datetime
    medications: List[PrescriptionMedicationResponse]


# Reference data

class PrescriberResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    specialty: str
    license_number: str


class PatientResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    birth_date: date
    address: str


class MedicationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    description: str
