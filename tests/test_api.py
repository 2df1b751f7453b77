import os
import importlib
from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient

from lendingdesk.config import settings

API_KEY = {"X-API-Key": settings.api_key}


@pytest.fixture
def api_module(tmp_path, request):
    # Create a unique per-test DB and make sure the api module picks it up at import time
    db_file = str(tmp_path / f"api_test_{request.node.name}.db")
    os.environ["LIBRARY_DB_FILE"] = db_file

    import lendingdesk.api as api_module
    # Reload so the module-level Library() binds to the test database
    importlib.reload(api_module)
    try:
        yield api_module
    finally:
        os.environ.pop("LIBRARY_DB_FILE", None)


@pytest.fixture
def client(api_module):
    return TestClient(api_module.app)


def make_user(client, name, email, role="reader"):
    response = client.post("/users", headers=API_KEY, json={"name": name, "email": email, "role": role})
    assert response.status_code == 201
    return response.json()["id"]


def as_user(user_id):
    return {"X-User-Id": str(user_id)}


@pytest.fixture
def people(client):
    return {
        "librarian": make_user(client, "Libby Librarian", "libby@example.com", "librarian"),
        "admin": make_user(client, "Ada Admin", "ada@example.com", "admin"),
        "reader": make_user(client, "Rita Reader", "rita@example.com"),
        "other": make_user(client, "Otto Reader", "otto@example.com"),
    }


@pytest.fixture
def book_id(client):
    response = client.post(
        "/books", headers=API_KEY, json={"title": "Dune", "authors": "Frank Herbert", "isbn": "978-0-441-17271-9", "copies": 1}
    )
    assert response.status_code == 201
    body = response.json()
    assert body["isbn"] == "9780441172719"
    assert body["available_copies"] == 1
    return body["id"]


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert response.json()["database"] is True


def test_catalog_writes_need_the_api_key(client):
    response = client.post("/books", headers={"X-API-Key": "invalid-key"}, json={"title": "Dune", "authors": "Frank Herbert"})
    assert response.status_code == 403


def test_invalid_isbn_is_rejected(client):
    response = client.post("/books", headers=API_KEY, json={"title": "Dune", "authors": "Frank Herbert", "isbn": "12345"})
    assert response.status_code == 400
    assert response.json()["code"] == "invalid"


def test_duplicate_email(client, people):
    response = client.post("/users", headers=API_KEY, json={"name": "Rita Again", "email": "rita@example.com"})
    assert response.status_code == 409
    assert response.json()["code"] == "duplicate"


def test_session_header_is_required(client, book_id):
    assert client.post("/loans", json={"book_id": book_id}).status_code == 401
    assert client.post("/loans", headers=as_user(999), json={"book_id": book_id}).status_code == 401


def test_borrow_and_return(client, people, book_id):
    response = client.post("/loans", headers=as_user(people["reader"]), json={"book_id": book_id})
    assert response.status_code == 201
    loan = response.json()
    assert loan["user_id"] == people["reader"]
    assert "due_date" in loan

    response = client.post("/loans", headers=as_user(people["other"]), json={"book_id": book_id})
    assert response.status_code == 409
    assert response.json()["code"] == "no_copy_available"

    mine = client.get("/loans/me", headers=as_user(people["reader"])).json()
    assert [item["id"] for item in mine] == [loan["loan_id"]]

    response = client.post(f"/loans/{loan['loan_id']}/return", headers=as_user(people["reader"]))
    assert response.status_code == 200
    assert response.json()["had_fine"] is False
    assert client.get(f"/books/{book_id}").json()["available_copies"] == 1

    response = client.post(f"/loans/{loan['loan_id']}/return", headers=as_user(people["librarian"]))
    assert response.status_code == 409
    assert response.json()["code"] == "loan_already_returned"


def test_staff_assisted_loan_and_self_return(client, people, book_id):
    response = client.post(
        "/loans", headers=as_user(people["librarian"]), json={"user_id": people["reader"], "book_id": book_id}
    )
    assert response.status_code == 201

    response = client.post("/loans/return", headers=as_user(people["reader"]), json={"book_id": book_id})
    assert response.status_code == 200
    response = client.post("/loans/return", headers=as_user(people["reader"]), json={"book_id": book_id})
    assert response.status_code == 404
    assert response.json()["code"] == "no_active_loan_for_book"


def test_loan_period_is_validated(client, people, book_id):
    response = client.post(
        "/loans", headers=as_user(people["reader"]), json={"book_id": book_id, "loan_period_days": 0}
    )
    assert response.status_code == 422


def test_extend(client, people, book_id):
    loan = client.post("/loans", headers=as_user(people["reader"]), json={"book_id": book_id}).json()

    response = client.post(f"/loans/{loan['loan_id']}/extend", headers=as_user(people["reader"]))
    assert response.status_code == 200
    assert response.json()["extensions_left"] == 1


def test_stock_adjustment(client, people, book_id):
    response = client.post(f"/books/{book_id}/stock", headers=as_user(people["reader"]), json={"delta": 2})
    assert response.status_code == 403
    assert response.json()["code"] == "permission_denied"

    response = client.post(f"/books/{book_id}/stock", headers=as_user(people["librarian"]), json={"delta": 2})
    assert response.status_code == 200
    assert response.json()["total_copies"] == 3

    response = client.post(f"/books/{book_id}/stock", headers=as_user(people["admin"]), json={"delta": -4})
    assert response.status_code == 409
    assert response.json()["code"] == "insufficient_available_copies"
    assert client.get(f"/books/{book_id}").json()["total_copies"] == 3


def test_copy_status_update(client, people, book_id):
    copy_id = client.get(f"/books/{book_id}").json()["copies"][0]["id"]
    response = client.patch(f"/copies/{copy_id}", headers=as_user(people["librarian"]), json={"status": "DAMAGED"})
    assert response.status_code == 200
    assert response.json()["status"] == "damaged"
    assert client.get(f"/books/{book_id}").json()["available_copies"] == 0


def test_overdue_fine_and_settlement(api_module, client, people, book_id):
    loan = client.post("/loans", headers=as_user(people["reader"]), json={"book_id": book_id}).json()
    due = datetime.fromisoformat(loan["due_date"])
    api_module.library.clock = lambda: due + timedelta(days=5)

    (view,) = client.get(f"/users/{people['reader']}/loans", headers=as_user(people["librarian"])).json()
    assert view["overdue"] is True
    assert view["fine"] == 10

    fines = client.get("/fines", headers=as_user(people["librarian"])).json()
    assert [f["loan_id"] for f in fines] == [loan["loan_id"]]

    other_book = client.post("/books", headers=API_KEY, json={"title": "Emma", "authors": "Jane Austen", "copies": 1}).json()
    response = client.post("/loans", headers=as_user(people["reader"]), json={"book_id": other_book["id"]})
    assert response.status_code == 409
    assert response.json()["code"] == "unpaid_fines"

    response = client.patch(f"/fines/{fines[0]['id']}", headers=as_user(people["reader"]), json={"status": "paid"})
    assert response.status_code == 403
    response = client.patch(f"/fines/{fines[0]['id']}", headers=as_user(people["librarian"]), json={"status": "PAID"})
    assert response.status_code == 200
    assert response.json()["status"] == "paid"
    response = client.patch(f"/fines/{fines[0]['id']}", headers=as_user(people["librarian"]), json={"status": "paid"})
    assert response.status_code == 409
    assert response.json()["code"] == "fine_already_settled"


def test_force_return_and_loan_listing(client, people, book_id):
    client.post("/loans", headers=as_user(people["reader"]), json={"book_id": book_id})

    assert len(client.get("/loans", params={"status": "ACTIVE"}, headers=as_user(people["librarian"])).json()) == 1
    assert client.get("/loans", headers=as_user(people["reader"])).status_code == 403

    response = client.post(f"/books/{book_id}/force-return", headers=as_user(people["admin"]))
    assert response.json() == {"book_id": book_id, "closed_count": 1}
    assert client.get("/loans", params={"status": "RETURNED"}, headers=as_user(people["librarian"])).json()[0]["status"] == "returned"


def test_notifications_logs_and_reconcile(client, people, book_id):
    client.post("/loans", headers=as_user(people["reader"]), json={"book_id": book_id})

    notes = client.get("/notifications", headers=as_user(people["reader"])).json()
    assert notes[0]["subject"] == "Book borrowed"
    response = client.post(f"/notifications/{notes[0]['id']}/read", headers=as_user(people["reader"]))
    assert response.json()["status"] == "read"

    logs = client.get("/admin/logs", headers=as_user(people["admin"])).json()
    assert logs[0]["action"] == "create_loan"
    assert client.get("/admin/logs", headers=as_user(people["librarian"])).status_code == 403

    assert client.post("/admin/reconcile", headers=as_user(people["admin"])).json() == {"fixed": 0, "drifts": []}
