from datetime import date, datetime
from typing import List

from pydantic import BaseModel


class ViewMedication(BaseModel):
    medication_id: int
    name: str
    description: str
    schedule: str
    dosage: str


class PharmacyPatient(BaseModel):
    id: int
    name: str
    birth_date: date


class PharmacyPrescription(BaseModel):
    """One prescription as the pharmacy sees it."""
    prescription_id: int
    prescribed_at: datetime
    patient: PharmacyPatient
    medications: List[ViewMedication]


class ChartPatient(PharmacyPatient):
    address: str


class ChartPrescriber(BaseModel):
    id: int
    name: str
    specialty: str
    license_number: str


class ChartPrescription(BaseModel):
    prescription_id: int
    prescribed_at: datetime
    prescriber: ChartPrescriber
    medications: List[ViewMedication]


class PatientChart(BaseModel):
    """Patient chart: the patient plus every projected prescription, newest first."""
    patient: ChartPatient
    prescriptions: List[ChartPrescription]
