# prescription_cqrs/models/__init__.py
from .reference import Prescriber, Patient, Medication
from .prescription import Prescription, PrescriptionMedication
from .outbox import OutboxEvent
from .views import PharmacyView, PatientChartView

# Export all models
__all__ = [
    "Medication",
    "OutboxEvent",
    "Patient",
    "PatientChartView",
    "PharmacyView",
    "Prescriber",
    "Prescription",
    "PrescriptionMedication",
]
