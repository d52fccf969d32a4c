# tests/test_async_api.py
import pytest
from httpx import ASGITransport, AsyncClient

from clinicdesk.database import get_db
from clinicdesk.main import app

from conftest import CLINIC_DAY, TestingSessionLocal


@pytest.fixture
async def async_client(db):
    def override_get_db():
        session = TestingSessionLocal()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


async def test_health_async(async_client: AsyncClient):
    response = await async_client.get("/api/v1/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


async def test_slots_async(async_client: AsyncClient, doctor):
    response = await async_client.get("/api/v1/slots", params={"date": str(CLINIC_DAY), "doctor_id": doctor.id})
    assert response.status_code == 200
    assert len(response.json()["slots"]) == 24
