from typing import Dict, List

from prescription_cqrs.core.exceptions import NotFoundError
from prescription_cqrs.models.views import PatientChartView, PharmacyView


def _group_by_prescription(rows) -> Dict[int, list]:
    grouped: Dict[int, list] = {}
    for row in rows:
        grouped.setdefault(row.prescription_id, []).append(row)
    return grouped


def _medication(row) -> Dict:
    return {
        "medication_id": row.medication_id,
        "name": row.medication_name,
        "description": row.medication_description,
        "schedule": row.schedule,
        "dosage": row.dosage,
    }


def _pharmacy_prescription(rows: List[PharmacyView]) -> Dict:
    head = rows[0]
    return {
        "prescription_id": head.prescription_id,
        "prescribed_at": head.prescribed_at,
        "patient": {
            "id": head.patient_id,
            "name": head.patient_name,
            "birth_date": head.patient_birth_date,
        },
        "medications": [_medication(row) for row in rows],
    }


async def list_pharmacy_prescriptions() -> List[Dict]:
    """Pharmacy worklist: every projected prescription, newest first."""
    rows = await PharmacyView.all().order_by("-prescribed_at", "-prescription_id", "id")
    return [_pharmacy_prescription(group) for group in _group_by_prescription(rows).values()]


async def get_pharmacy_prescription(prescription_id: int) -> Dict:
    rows = await PharmacyView.filter(prescription_id=prescription_id).order_by("id")
    if not rows:
        raise NotFoundError(f"Prescription {prescription_id} not found in pharmacy view")
    return _pharmacy_prescription(rows)


async def get_patient_chart(patient_id: int) -> Dict:
    """
    The patient's chart as projected: patient details from the most recent row,
    and one entry per prescription (newest first) with its prescriber and
    medications.
    """
    rows = await PatientChartView.filter(patient_id=patient_id).order_by("-prescribed_at", "-prescription_id", "id")
    if not rows:
        raise NotFoundError(f"No chart found for patient {patient_id}")

    head = rows[0]
    prescriptions = []
    for group in _group_by_prescription(rows).values():
        first = group[0]
        prescriptions.append({
            "prescription_id": first.prescription_id,
            "prescribed_at": first.prescribed_at,
            "prescriber": {
                "id": first.prescriber_id,
                "name": first.prescriber_name,
                "specialty": first.prescriber_specialty,
                "license_number": first.prescriber_license_number,
            },
            "medications": [_medication(row) for row in group],
        })

    return {
        "patient": {
            "id": head.patient_id,
            "name": head.patient_name,
            "birth_date": head.patient_birth_date,
            "address": head.patient_address,
        },
        "prescriptions": prescriptions,
    }
