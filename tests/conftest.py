import pytest
from datetime import date, timedelta
from typing import AsyncGenerator
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import StaticPool

from app.main import app
from app.infrastructure.database import get_db, Base
from app.domain.pharmacy import models as pharmacy_models  # noqa: F401
from app.domain.pharmacy.models import Drug, DrugBatch, Prescription
from app.domain.pharmacy.service import (
    DrugService, DrugBatchService, PrescriptionService, DispensedDrugService
)


# Test database URL
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest.fixture(scope="function")
async def test_engine():
    engine = create_async_engine(
        TEST_DATABASE_URL,
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture(scope="function")
async def db_session(test_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create a fresh database session for each test."""
    TestSessionLocal = async_sessionmaker(
        test_engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
    )
    async with TestSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


@pytest.fixture(scope="function")
async def client(db_session: AsyncSession) -> AsyncGenerator[AsyncClient, None]:
    """Create a test client with database dependency override."""

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def drug_service(db_session: AsyncSession) -> DrugService:
    return DrugService(db_session)


@pytest.fixture
def batch_service(db_session: AsyncSession) -> DrugBatchService:
    return DrugBatchService(db_session)


@pytest.fixture
def prescription_service(db_session: AsyncSession) -> PrescriptionService:
    return PrescriptionService(db_session)


@pytest.fixture
def dispensed_service(db_session: AsyncSession) -> DispensedDrugService:
    return DispensedDrugService(db_session)


@pytest.fixture
def sample_drug_data() -> dict:
    """Sample drug data for testing."""
    return {
        "name": "Amoxicillin",
        "generic_name": "Amoxicillin trihydrate",
        "manufacturer": "Acme Pharma",
        "category": "Antibiotic",
        "strength": "500mg",
        "unit": "capsule",
        "reorder_level": 20,
        "cost_price": 0.4,
        "selling_price": 0.9,
        "location": "Shelf A3",
    }


@pytest.fixture
def batch_dates() -> dict:
    today = date.today()
    return {
        "manufacturing_date": today - timedelta(days=60),
        "expiry_date": today + timedelta(days=365),
    }


@pytest.fixture
async def drug(drug_service: DrugService, sample_drug_data: dict) -> Drug:
    return await drug_service.create_drug(sample_drug_data)


@pytest.fixture
async def prescription(prescription_service: PrescriptionService, drug: Drug) -> Prescription:
    return await prescription_service.create_prescription({
        "patient_id": "patient-001",
        "prescribed_by_id": "doctor-001",
        "drug_ids": [drug.id],
        "dosage": "1 capsule",
        "frequency": "3x daily",
    })


@pytest.fixture
async def batch(batch_service: DrugBatchService, drug: Drug, batch_dates: dict) -> DrugBatch:
    return await batch_service.create_batch(
        drug_id=drug.id,
        batch_number="B1",
        quantity=100,
        unit_cost=0.35,
        supplier="MedSupply Ltd",
        **batch_dates
    )


# Pytest configuration
def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "unit: mark test as a unit test"
    )
    config.addinivalue_line(
        "markers", "integration: mark test as an integration test"
    )
    config.addinivalue_line(
        "markers", "inventory: mark test as drug stock / batch related"
    )
    config.addinivalue_line(
        "markers", "dispensing: mark test as dispensing related"
    )
