import os
import importlib
from datetime import date

import pytest
from fastapi.testclient import TestClient

from config import settings
from errors import InfrastructureError
from library import Library

TODAY = date(2024, 1, 20)
HEADERS = {"X-API-Key": settings.api_key}


@pytest.fixture
def api(tmp_path, request):
    # Create a unique per-test DB and ensure api picks it up at import time
    db_file = str(tmp_path / f"api_test_{request.node.name}.db")
    os.environ["LIBRARY_DB_FILE"] = db_file

    import api as api_module
    # Reload api so its global Library() instance uses the test-specific DB
    importlib.reload(api_module)
    api_module.library = Library(db_file=db_file, today=lambda: TODAY)
    try:
        yield api_module
    finally:
        os.environ.pop("LIBRARY_DB_FILE", None)
        if os.path.exists(db_file):
            os.remove(db_file)


@pytest.fixture
def client(api):
    return TestClient(api.app)


@pytest.fixture
def people(api):
    lib = api.library
    return {
        "librarian": lib.add_user("Bob Librarian", role="Librarian").id,
        "member": lib.add_user("Alice Reader").id,
        "copy": lib.add_copy("DUNE-001").id,
    }


def _open(client, people, **overrides):
    payload = {
        "borrower_id": people["member"],
        "copy_id": people["copy"],
        "agent_id": people["librarian"],
        "loan_date": "2024-01-01",
        "due_date": "2024-01-15",
    }
    payload.update(overrides)
    return client.post("/loans", headers=HEADERS, json=payload)


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["db"] is True


def test_open_loan_requires_api_key(client, people):
    response = client.post("/loans", headers={"X-API-Key": "invalid-key"}, json={
        "borrower_id": people["member"], "copy_id": people["copy"], "agent_id": people["librarian"],
    })
    assert response.status_code == 403


def test_open_loan_requires_staff_agent(client, people):
    response = _open(client, people, agent_id=people["member"])
    assert response.status_code == 403


def test_open_loan_and_read_it_back(client, people):
    response = _open(client, people)
    assert response.status_code == 201
    loan = response.json()
    assert loan["status"] == "Active"
    assert loan["effective_status"] == "Overdue"
    assert loan["days_overdue"] == 5

    fetched = client.get(f"/loans/{loan['id']}")
    assert fetched.status_code == 200
    assert fetched.json()["id"] == loan["id"]


def test_error_kinds_map_to_status_codes(client, people):
    bad_dates = _open(client, people, due_date="2024-01-01")
    assert bad_dates.status_code == 400
    assert bad_dates.json()["kind"] == "validation_error"
    assert bad_dates.json()["field"] == "due_date"

    assert _open(client, people).status_code == 201
    conflict = _open(client, people)
    assert conflict.status_code == 409
    assert conflict.json()["kind"] == "conflict"

    missing = client.get("/loans/999")
    assert missing.status_code == 404
    assert missing.json()["kind"] == "not_found"


def test_infrastructure_errors_are_503(api, client, monkeypatch):
    def broken(*args, **kwargs):
        raise InfrastructureError("Database operation failed")

    monkeypatch.setattr(api.library, "list_loans", broken)
    response = client.get("/loans")
    assert response.status_code == 503
    assert "temporarily unavailable" in response.json()["detail"]


def test_loan_listings(client, people, api):
    overdue = _open(client, people).json()
    other_copy = api.library.add_copy("DUNE-002").id
    current = _open(client, people, copy_id=other_copy, loan_date="2024-01-18", due_date="2024-02-01").json()

    assert [l["id"] for l in client.get("/loans", params={"status": "Active"}).json()] == [current["id"]]
    assert [l["id"] for l in client.get("/loans", params={"status": "Overdue"}).json()] == [overdue["id"]]
    assert len(client.get("/loans/active").json()) == 2
    assert [l["id"] for l in client.get("/loans/overdue").json()] == [overdue["id"]]
    assert client.get("/loans/overdue", params={"as_of": "2024-01-10"}).json() == []
    assert client.get("/loans", params={"status": "Lost"}).status_code == 400


def test_return_flow_with_fine_and_payment(client, people):
    loan = _open(client, people).json()

    response = client.post("/returns", headers=HEADERS, json={
        "loan_id": loan["id"], "agent_id": people["librarian"], "return_date": "2024-01-20",
    })
    assert response.status_code == 201
    body = response.json()
    assert body["return"]["days_late"] == 5
    assert body["loan"]["status"] == "Returned"
    assert body["fine"]["kind"] == "Overdue"
    assert body["fine"]["amount"] == "25.00"
    assert body["fine_error"] is None

    again = client.post("/returns", headers=HEADERS, json={
        "loan_id": loan["id"], "agent_id": people["librarian"],
    })
    assert again.status_code == 409

    owed = client.get(f"/users/{people['member']}/fines/total").json()
    assert owed["total_owed"] == "25.00"

    fine_id = body["fine"]["id"]
    future = client.post(f"/fines/{fine_id}/pay", headers=HEADERS, json={"payment_date": "2024-02-01"})
    assert future.status_code == 400
    assert client.get(f"/fines/{fine_id}").json()["paid"] is False

    paid = client.post(f"/fines/{fine_id}/pay", headers=HEADERS)
    assert paid.status_code == 200
    assert paid.json()["payment_date"] == "2024-01-20"
    assert client.get(f"/users/{people['member']}/fines/total").json()["total_owed"] == "0.00"

    unpaid = client.post(f"/fines/{fine_id}/unpay", headers=HEADERS)
    assert unpaid.json()["paid"] is False
    assert unpaid.json()["payment_date"] is None


def test_returns_endpoints(client, people):
    loan = _open(client, people).json()
    record = client.post("/returns", headers=HEADERS, json={
        "loan_id": loan["id"], "agent_id": people["librarian"], "return_date": "2024-01-14",
    }).json()["return"]

    assert client.get(f"/returns/{record['id']}").json()["days_late"] == 0
    assert client.get("/returns", params={"late_only": True}).json() == []

    patched = client.patch(f"/returns/{record['id']}", headers=HEADERS, json={"condition": "Fair"})
    assert patched.status_code == 200
    assert patched.json()["condition"] == "Fair"

    assert client.delete(f"/returns/{record['id']}", headers=HEADERS).status_code == 200
    assert client.get(f"/returns/{record['id']}").status_code == 404


def test_fines_endpoints(client, people):
    created = client.post("/fines", headers=HEADERS, json={
        "user_id": people["member"], "agent_id": people["librarian"], "kind": "Damage",
        "amount": "15.5", "description": "Coffee stain",
    })
    assert created.status_code == 201
    fine = created.json()
    assert fine["amount"] == "15.50"
    assert fine["overdue"] is False

    assert [f["id"] for f in client.get("/fines", params={"unpaid_only": True}).json()] == [fine["id"]]
    assert client.get("/fines", params={"paid_only": True}).json() == []
    both = client.get("/fines", params={"paid_only": True, "unpaid_only": True})
    assert both.status_code == 400

    overdue_kind = client.post("/fines", headers=HEADERS, json={
        "user_id": people["member"], "agent_id": people["librarian"], "kind": "Overdue", "amount": "1",
    })
    assert overdue_kind.status_code == 400

    for huge in ("1e20", "1e30"):
        too_large = client.post("/fines", headers=HEADERS, json={
            "user_id": people["member"], "agent_id": people["librarian"], "kind": "Loss", "amount": huge,
        })
        assert too_large.status_code == 400
        assert too_large.json()["field"] == "amount"


def test_total_owed_for_unknown_user(client):
    assert client.get("/users/999/fines/total").status_code == 404


def test_cancel_and_delete_loan(client, people):
    loan = _open(client, people).json()
    cancelled = client.post(f"/loans/{loan['id']}/cancel", headers=HEADERS)
    assert cancelled.json()["status"] == "Cancelled"
    assert client.post(f"/loans/{loan['id']}/cancel", headers=HEADERS).status_code == 409
    assert client.delete(f"/loans/{loan['id']}", headers=HEADERS).status_code == 200
    assert client.get(f"/loans/{loan['id']}").status_code == 404

