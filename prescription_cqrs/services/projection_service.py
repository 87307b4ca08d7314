import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List

from prescription_cqrs.core.exceptions import ReferenceNotFoundError
from prescription_cqrs.events.schemas import ChangeNotification, PrescribedMedication
from prescription_cqrs.models.reference import Medication, Patient, Prescriber
from prescription_cqrs.models.views import PatientChartView, PharmacyView

log = logging.getLogger("projector")


@dataclass
class ProjectionResult:
    prescription_id: int
    pharmacy_rows: int = 0
    chart_rows: int = 0
    failures: List[str] = field(default_factory=list)
    skipped: bool = False

    @property
    def ok(self) -> bool:
        return not self.failures


@dataclass
class ResolvedReferences:
    prescriber: Prescriber
    patient: Patient
    medications: Dict[int, Medication]


class PrescriptionProjector:
    """
    Fans one change notification out to the pharmacy and chart read models.

    References are resolved before anything is written, so a missing
    prescriber, patient or medication fails the whole notification with
    ReferenceNotFoundError. Once writing starts, each (entry, view) insert is
    isolated: failures are logged and reported in the result, never retried
    here. Redelivery is the caller's concern.

    Inserts are plain appends; projecting the same notification twice yields
    duplicate rows in both views.
    """

    async def project(self, notification: ChangeNotification) -> ProjectionResult:
        result = ProjectionResult(prescription_id=notification.prescription_id)
        if not notification.is_projectable:
            log.info(
                f"Skipping {notification.event_type} for prescription {notification.prescription_id} "
                f"(op={notification.operation}, deleted={notification.deleted})"
            )
            result.skipped = True
            return result

        refs = await self.resolve(notification)

        for entry in notification.medications:
            medication = refs.medications[entry.medication_id]
            try:
                await self._write_pharmacy_row(notification, refs.patient, medication, entry)
                result.pharmacy_rows += 1
            except Exception as e:
                log.error(f"Error updating pharmacy view for prescription {notification.prescription_id}: {e}")
                result.failures.append(f"pharmacy_view:{entry.medication_id}: {e}")

            try:
                await self._write_chart_row(notification, refs.prescriber, refs.patient, medication, entry)
                result.chart_rows += 1
            except Exception as e:
                log.error(f"Error updating chart view for prescription {notification.prescription_id}: {e}")
                result.failures.append(f"patient_chart_view:{entry.medication_id}: {e}")

        log.info(
            f"Views updated for prescription {notification.prescription_id}: "
            f"{result.pharmacy_rows} pharmacy row(s), {result.chart_rows} chart row(s), "
            f"{len(result.failures)} failure(s)"
        )
        return result

    async def resolve(self, notification: ChangeNotification) -> ResolvedReferences:
        prescriber = await Prescriber.get_or_none(id=notification.prescriber_id)
        if not prescriber:
            raise ReferenceNotFoundError("Prescriber", notification.prescriber_id)

        patient = await Patient.get_or_none(id=notification.patient_id)
        if not patient:
            raise ReferenceNotFoundError("Patient", notification.patient_id)

        medications = await self._resolve_medications(notification.medications)
        return ResolvedReferences(prescriber=prescriber, patient=patient, medications=medications)

    async def _resolve_medications(self, entries: Iterable[PrescribedMedication]) -> Dict[int, Medication]:
        wanted = {entry.medication_id for entry in entries}
        if not wanted:
            return {}
        found = {m.id: m for m in await Medication.filter(id__in=list(wanted))}
        missing = sorted(wanted - set(found))
        if missing:
            raise ReferenceNotFoundError("Medication", missing[0])
        return found

    async def _write_pharmacy_row(self, notification, patient, medication, entry) -> PharmacyView:
        return await PharmacyView.create(
            prescription_id=notification.prescription_id,
            prescribed_at=notification.prescribed_at,
            patient_id=patient.id,
            patient_name=patient.name,
            patient_birth_date=patient.birth_date,
            medication_id=medication.id,
            medication_name=medication.name,
            medication_description=medication.description,
            schedule=entry.schedule,
            dosage=entry.dosage,
        )

    async def _write_chart_row(self, notification, prescriber, patient, medication, entry) -> PatientChartView:
        return await PatientChartView.create(
            prescription_id=notification.prescription_id,
            prescribed_at=notification.prescribed_at,
            patient_id=patient.id,
            patient_name=patient.name,
            patient_birth_date=patient.birth_date,
            patient_address=patient.address,
            prescriber_id=prescriber.id,
            prescriber_name=prescriber.name,
            prescriber_specialty=prescriber.specialty,
            prescriber_license_number=prescriber.license_number,
            medication_id=medication.id,
            medication_name=medication.name,
            medication_description=medication.description,
            schedule=entry.schedule,
            dosage=entry.dosage,
        )
