# scripts/seed_data.py
import asyncio
from datetime import date
from tortoise import Tortoise
from prescription_cqrs.core.db import DB_URL, MODELS_MODULES
from prescription_cqrs.models.reference import Prescriber, Patient, Medication

PRESCRIBERS = [
    {"id": 1, "name": "Dr. Ana Souza", "specialty": "Cardiology", "license_number": "CRM-SP-123456"},
    {"id": 2, "name": "Dr. Bruno Lima", "specialty": "General Practice", "license_number": "CRM-RJ-654321"},
]

PATIENTS = [
    {"id": 1, "name": "Carla Mendes", "birth_date": date(1985, 3, 14), "address": "Rua das Flores, 100"},
    {"id": 2, "name": "Daniel Rocha", "birth_date": date(1972, 11, 2), "address": "Av. Paulista, 2000"},
]

MEDICATIONS = [
    {"id": 10, "name": "Amoxicillin", "description": "Broad-spectrum penicillin antibiotic"},
    {"id": 11, "name": "Metformin", "description": "Oral antidiabetic (biguanide)"},
    {"id": 12, "name": "Losartan", "description": "Angiotensin II receptor blocker"},
]


def _without_id(data):
    return {k: v for k, v in data.items() if k != "id"}


async def init():
    await Tortoise.init(db_url=DB_URL, modules={"models": MODELS_MODULES})
    # safe=True: existing tables are left alone
    await Tortoise.generate_schemas(safe=True)


async def seed():
    # Upsert by id so the script can be run repeatedly
    for data in PRESCRIBERS:
        prescriber, _ = await Prescriber.update_or_create(id=data["id"], defaults=_without_id(data))
        print("Prescriber:", prescriber.id, prescriber.name)

    for data in PATIENTS:
        patient, _ = await Patient.update_or_create(id=data["id"], defaults=_without_id(data))
        print("Patient:", patient.id, patient.name)

    for data in MEDICATIONS:
        medication, _ = await Medication.update_or_create(id=data["id"], defaults=_without_id(data))
        print("Medication:", medication.id, medication.name)

    print("Reference data seeded.")


async def main():
    await init()
    await seed()
    await Tortoise.close_connections()

if __name__ == "__main__":
    asyncio.run(main())
