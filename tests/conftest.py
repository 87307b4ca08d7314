from datetime import date
from types import SimpleNamespace

import fakeredis
import pytest
import pytest_asyncio
from tortoise import Tortoise

from prescription_cqrs.core.db import MODELS_MODULES
from prescription_cqrs.models.reference import Medication, Patient, Prescriber


@pytest_asyncio.fixture
async def db(tmp_path):
    """Fresh sqlite database per test with every model registered."""
    await Tortoise.init(db_url=f"sqlite://{tmp_path / 'test.db'}", modules={"models": MODELS_MODULES})
    await Tortoise.generate_schemas()
    yield
    await Tortoise.close_connections()


@pytest_asyncio.fixture
async def redis():
    client = fakeredis.FakeAsyncRedis(decode_responses=True)
    yield client
    await client.aclose()


@pytest_asyncio.fixture
async def reference_data(db):
    prescriber = await Prescriber.create(
        id=1, name="Dr. Ana Souza", specialty="Cardiology", license_number="CRM-SP-123456"
    )
    patient = await Patient.create(
        id=2, name="Daniel Rocha", birth_date=date(1972, 11, 2), address="Av. Paulista, 2000"
    )
    amoxicillin = await Medication.create(id=10, name="Amoxicillin", description="Penicillin antibiotic")
    metformin = await Medication.create(id=11, name="Metformin", description="Oral antidiabetic")
    return SimpleNamespace(prescriber=prescriber, patient=patient, amoxicillin=amoxicillin, metformin=metformin)


@pytest.fixture
def medications():
    return [
        {"medication_id": 10, "schedule": "08:00", "dosage": "500mg"},
        {"medication_id": 11, "schedule": "20:00", "dosage": "250mg"},
    ]
