import logging
from typing import Dict, List, Optional, Tuple

from tortoise import timezone
from tortoise.transactions import in_transaction

from prescription_cqrs.core.config import EVENT_STRATEGY, PropagationStrategy
from prescription_cqrs.core.exceptions import ReferenceNotFoundError
from prescription_cqrs.events.outbox_utility import stage_prescription_created
from prescription_cqrs.events.schemas import PrescribedMedication, PrescriptionCreatedData, PrescriptionCreatedEvent
from prescription_cqrs.events.sources import DirectPublisher
from prescription_cqrs.models.prescription import Prescription, PrescriptionMedication
from prescription_cqrs.models.reference import Medication, Patient, Prescriber

log = logging.getLogger("prescription_service")


async def validate_references(prescriber_id: int, patient_id: int, medication_ids: List[int]) -> None:
    """Raises ReferenceNotFoundError for the first prescriber/patient/medication that does not exist."""
    if not await Prescriber.filter(id=prescriber_id).exists():
        raise ReferenceNotFoundError("Prescriber", prescriber_id)
    if not await Patient.filter(id=patient_id).exists():
        raise ReferenceNotFoundError("Patient", patient_id)

    known = set(await Medication.filter(id__in=medication_ids).values_list("id", flat=True))
    for medication_id in medication_ids:
        if medication_id not in known:
            raise ReferenceNotFoundError("Medication", medication_id)


def build_created_event(prescription: Prescription, lines: List[PrescriptionMedication]) -> PrescriptionCreatedEvent:
    return PrescriptionCreatedEvent(
        data=PrescriptionCreatedData(
            prescription_id=prescription.id,
            prescriber_id=prescription.prescriber_id,
            patient_id=prescription.patient_id,
            prescribed_at=prescription.prescribed_at,
            medications=[
                PrescribedMedication(medication_id=line.medication_id, schedule=line.schedule, dosage=line.dosage)
                for line in lines
            ],
        )
    )


async def create_prescription(
    prescriber_id: int,
    patient_id: int,
    medications: List[Dict],
    strategy: PropagationStrategy = EVENT_STRATEGY,
    publisher: Optional[DirectPublisher] = None,
) -> Tuple[Prescription, List[PrescriptionMedication]]:
    """
    Persists a prescription and its line items in one transaction.

    outbox: the prescription.created event is written to the outbox in the
            same transaction, so it exists if and only if the prescription does.
    direct: the event is published after commit; a publish failure is logged
            and the committed prescription is still returned.
    cdc:    nothing extra; the capture pipeline picks the rows up from the log.
    """
    if not medications:
        raise ValueError("Prescription must contain at least one medication.")

    items = [PrescribedMedication(**item) for item in medications]
    await validate_references(prescriber_id, patient_id, [item.medication_id for item in items])

    async with in_transaction() as conn:
        # 1. Create the prescription header
        prescription = await Prescription.create(
            prescriber_id=prescriber_id,
            patient_id=patient_id,
            prescribed_at=timezone.now(),
            using_db=conn
        )

        # 2. Create the line items, keeping request order
        lines = []
        for item in items:
            line = await PrescriptionMedication.create(
                prescription=prescription,
                medication_id=item.medication_id,
                schedule=item.schedule,
                dosage=item.dosage,
                using_db=conn
            )
            lines.append(line)

        event = build_created_event(prescription, lines)

        # 3. ATOMIC EVENT: staged with the business data, relayed later
        if strategy == PropagationStrategy.OUTBOX:
            await stage_prescription_created(event, conn)

    if strategy == PropagationStrategy.OUTBOX:
        log.info(f"Prescription {prescription.id} created and event staged in the outbox")
    elif strategy == PropagationStrategy.DIRECT:
        if publisher is None:
            log.warning(f"Prescription {prescription.id} created but no publisher is configured; event not sent")
        else:
            await publisher.publish(event)
        log.info(f"Prescription {prescription.id} created")
    else:
        log.info(f"Prescription {prescription.id} created; change data capture will propagate it")

    return prescription, lines


async def list_prescribers() -> List[Prescriber]:
    return await Prescriber.all().order_by("name")


async def list_patients() -> List[Patient]:
    return await Patient.all().order_by("name")


async def list_medications() -> List[Medication]:
    return await Medication.all().order_by("name")
