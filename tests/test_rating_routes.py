from fastapi.testclient import TestClient
import pytest

from deskrelay.core.config import Settings
from deskrelay.main import create_app
from deskrelay.runtime import build_memory_runtime

CUSTOMER = {"Authorization": "Bearer customer-token"}
ENGINEER = {"Authorization": "Bearer engineer-token"}


@pytest.fixture
def client():
    app = create_app()
    app.state.runtime = build_memory_runtime(Settings(postgres_dsn=None))
    return TestClient(app)


def _resolved_ticket(client: TestClient) -> str:
    response = client.post("/tickets", json={"problem_description": "Docking station dead"}, headers=CUSTOMER)
    ticket_id = response.json()["id"]
    client.post(f"/tickets/{ticket_id}/claim", headers=ENGINEER)
    client.post(f"/tickets/{ticket_id}/mark-fixed", headers=ENGINEER)
    client.post(f"/tickets/{ticket_id}/confirm", headers=CUSTOMER)
    return ticket_id


def test_rate_update_and_summarize(client):
    ticket_id = _resolved_ticket(client)

    created = client.post(f"/tickets/{ticket_id}/rating", json={"rating": 400, "notes": "Great"}, headers=CUSTOMER)
    duplicate = client.post(f"/tickets/{ticket_id}/rating", json={"rating": 100}, headers=CUSTOMER)
    updated = client.put(f"/tickets/{ticket_id}/rating", json={"rating": 451}, headers=CUSTOMER)
    fetched = client.get(f"/tickets/{ticket_id}/rating", headers=ENGINEER)
    summary = client.get("/engineers/engineer-1/ratings", headers=CUSTOMER)

    assert created.status_code == 201
    assert created.json()["rating_for"]["id"] == "engineer-1"
    assert duplicate.status_code == 409
    assert updated.json()["rating"] == 451
    assert fetched.json()["notes"] == "Great"
    assert summary.json() == {"engineer_id": "engineer-1", "average": 451, "count": 1}


def test_rating_requires_resolved_ticket_and_valid_score(client):
    open_ticket = client.post("/tickets", json={"problem_description": "Mouse lag"}, headers=CUSTOMER).json()["id"]
    ticket_id = _resolved_ticket(client)

    early = client.post(f"/tickets/{open_ticket}/rating", json={"rating": 300}, headers=CUSTOMER)
    out_of_range = client.post(f"/tickets/{ticket_id}/rating", json={"rating": 501}, headers=CUSTOMER)
    by_engineer = client.post(f"/tickets/{ticket_id}/rating", json={"rating": 300}, headers=ENGINEER)
    missing = client.get(f"/tickets/{ticket_id}/rating", headers=CUSTOMER)

    assert early.status_code == 409
    assert out_of_range.status_code == 422
    assert by_engineer.status_code == 403
    assert missing.status_code == 404
