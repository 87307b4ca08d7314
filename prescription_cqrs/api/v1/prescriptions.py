import logging
from fastapi import APIRouter, HTTPException, Request, status
from prescription_cqrs.core.config import EVENT_STRATEGY
from prescription_cqrs.core.exceptions import NotFoundError
from prescription_cqrs.schemas.response import SuccessResponse
from prescription_cqrs.schemas.prescription import (
    PrescriptionRequest,
    PrescriptionResponse,
    PrescriptionMedicationResponse,
    PrescriberResponse,
    PatientResponse,
    MedicationResponse,
)
from prescription_cqrs.services.prescription_service import (
    create_prescription,
    list_prescribers,
    list_patients,
    list_medications,
)

router = APIRouter()
reference_router = APIRouter()
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
log = logging.getLogger("uvicorn")


@router.post("", status_code=status.HTTP_201_CREATED, response_model=SuccessResponse)
async def create_prescription_endpoint(request_data: PrescriptionRequest, request: Request):
    """
    Creates a prescription. The read models are updated asynchronously by the
    configured propagation strategy, so they may lag behind this response.
    """
    try:
        medications = [item.model_dump() for item in request_data.medications]
        if not medications:
            raise HTTPException(status_code=400, detail="Prescription must contain at least one medication.")

        prescription, lines = await create_prescription(
            prescriber_id=request_data.prescriber_id,
            patient_id=request_data.patient_id,
            medications=medications,
            strategy=EVENT_STRATEGY,
            publisher=getattr(request.app.state, "publisher", None),
        )
        log.info(f"Prescription {prescription.id} created for patient {prescription.patient_id}.")
        data = PrescriptionResponse(
            id=prescription.id,
            prescriber_id=prescription.prescriber_id,
            patient_id=prescription.patient_id,
            prescribed_at=prescription.prescribed_at,
            medications=[PrescriptionMedicationResponse.model_validate(line) for line in lines],
        ).model_dump()
        return SuccessResponse(data=data)
    except NotFoundError as e:
        log.error(f"Missing reference creating prescription: {e}")
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        log.error(f"Value error creating prescription: {e}")
        raise HTTPException(status_code=400, detail=str(e))
    except HTTPException as he:
        log.error(f"HTTP error creating prescription: {he.detail}")
        raise he
    except Exception as e:
        log.exception(f"Error creating prescription: {e}")
        raise HTTPException(status_code=500, detail="Server failed to create prescription.")


@reference_router.get("/prescribers", response_model=SuccessResponse)
async def list_prescribers_endpoint():
    prescribers = await list_prescribers()
    return SuccessResponse(data=[PrescriberResponse.model_validate(p).model_dump() for p in prescribers])


@reference_router.get("/patients", response_model=SuccessResponse)
async def list_patients_endpoint():
    patients = await list_patients()
    return SuccessResponse(data=[PatientResponse.model_validate(p).model_dump() for p in patients])


@reference_router.get("/medications", response_model=SuccessResponse)
async def list_medications_endpoint():
    medications = await list_medications()
    return SuccessResponse(data=[MedicationResponse.model_validate(m).model_dump() for m in medications])
