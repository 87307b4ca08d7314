import logging
from fastapi import APIRouter, HTTPException
from prescription_cqrs.core.exceptions import NotFoundError
from prescription_cqrs.schemas.response import SuccessResponse
from prescription_cqrs.schemas.views import PatientChart, PharmacyPrescription
from prescription_cqrs.services.query_service import (
    get_patient_chart,
    get_pharmacy_prescription,
    list_pharmacy_prescriptions,
)

pharmacy_router = APIRouter()
chart_router = APIRouter()
log = logging.getLogger("uvicorn")


@pharmacy_router.get("/prescriptions", response_model=SuccessResponse)
async def list_pharmacy_prescriptions_endpoint():
    """Pharmacy worklist, read from the pharmacy view only."""
    prescriptions = await list_pharmacy_prescriptions()
    return SuccessResponse(data=[PharmacyPrescription(**p).model_dump() for p in prescriptions])


@pharmacy_router.get("/prescriptions/{prescription_id}", response_model=SuccessResponse)
async def get_pharmacy_prescription_endpoint(prescription_id: int):
    try:
        prescription = await get_pharmacy_prescription(prescription_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return SuccessResponse(data=PharmacyPrescription(**prescription).model_dump())


@chart_router.get("/patients/{patient_id}", response_model=SuccessResponse)
async def get_patient_chart_endpoint(patient_id: int):
    """Patient chart grouped by prescription, read from the chart view only."""
    try:
        chart = await get_patient_chart(patient_id)
    except NotFoundError as e:
        log.info(f"Chart requested for patient {patient_id}: {e}")
        raise HTTPException(status_code=404, detail=str(e))
    return SuccessResponse(data=PatientChart(**chart).model_dump())
