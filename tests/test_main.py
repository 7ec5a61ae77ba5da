import pytest
from fastapi.testclient import TestClient

from circulation.api.routes import get_clock, get_sweeper
from circulation.core.config import get_settings
from circulation.core.database import get_db
from circulation.main import app
from circulation.services.reservations import ReservationEngine
from circulation.services.sweeper import Sweeper


@pytest.fixture
def client(db, session_factory, settings, clock):
    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_clock] = lambda: clock
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_sweeper] = lambda: Sweeper(session_factory, settings, clock)
    yield TestClient(app)
    app.dependency_overrides.clear()


def as_user(user_id, role="STUDENT"):
    return {"X-User-Id": str(user_id), "X-User-Role": role}


ADMIN = as_user(1, "ADMIN")


@pytest.fixture
def catalog(client):
    """One admin-created student and a single-copy book."""
    r = client.post("/users/", json={"name": "Test User", "email": "test@example.com"}, headers=ADMIN)
    assert r.status_code == 200
    user_id = r.json()["id"]

    r = client.post("/books/", json={"title": "Test Book", "author": "Author", "isbn": "978-0-13-235088-4",
                                     "total_copies": 1}, headers=ADMIN)
    assert r.status_code == 200
    book_id = r.json()["id"]
    return user_id, book_id


def test_create_user_and_book_and_borrow_return(client, catalog):
    user_id, book_id = catalog

    r = client.post("/borrowings/", json={"book_id": book_id}, headers=as_user(user_id))
    assert r.status_code == 200
    borrowing_id = r.json()["id"]
    assert r.json()["status"] == "ACTIVE"

    r = client.get(f"/books/{book_id}")
    assert r.json()["available_copies"] == 0
    assert r.json()["status"] == "BORROWED"

    r = client.post(f"/borrowings/{borrowing_id}/return", headers=as_user(user_id))
    assert r.status_code == 200
    body = r.json()
    assert body["borrowing"]["status"] == "RETURNED"
    assert body["fine"] is None
    assert body["promoted_reservation"] is None

    r = client.post(f"/borrowings/{borrowing_id}/return", headers=as_user(user_id))
    assert r.status_code == 400
    assert r.json()["kind"] == "AlreadyReturned"


def test_errors_carry_kind_and_status(client, catalog):
    user_id, book_id = catalog
    r = client.post("/users/", json={"name": "Other", "email": "other@example.com"}, headers=ADMIN)
    other_id = r.json()["id"]

    client.post("/borrowings/", json={"book_id": book_id}, headers=as_user(user_id))
    r = client.post("/borrowings/", json={"book_id": book_id}, headers=as_user(other_id))
    assert r.status_code == 409
    assert r.json() == {"detail": "No available copies of this book", "kind": "NoCopiesAvailable"}

    r = client.get("/books/999")
    assert r.status_code == 404
    assert r.json()["kind"] == "NotFound"

    r = client.post("/books/", json={"title": "Bad", "author": "A", "isbn": "ABCDEFGHIJ"}, headers=ADMIN)
    assert r.status_code == 422
    assert r.json()["kind"] == "InvalidInput"


def test_admin_only_operations(client, catalog):
    user_id, book_id = catalog
    r = client.post("/books/", json={"title": "T", "author": "A", "isbn": "9780441172719"}, headers=as_user(user_id))
    assert r.status_code == 403
    assert r.json()["kind"] == "Forbidden"

    r = client.post(f"/books/{book_id}/inventory", json={"delta": 2}, headers=as_user(user_id))
    assert r.status_code == 403

    r = client.post(f"/books/{book_id}/inventory", json={"delta": 2}, headers=ADMIN)
    assert r.status_code == 200
    assert r.json()["total_copies"] == 3

    r = client.post(f"/books/{book_id}/inventory", json={"delta": -5}, headers=ADMIN)
    assert r.status_code == 400
    assert r.json()["kind"] == "InvalidAdjustment"


def test_missing_identity_headers(client, catalog):
    _, book_id = catalog
    r = client.post("/borrowings/", json={"book_id": book_id})
    assert r.status_code == 422


def test_late_return_through_api(client, catalog, clock):
    user_id, book_id = catalog
    r = client.post("/borrowings/", json={"book_id": book_id}, headers=as_user(user_id))
    borrowing_id = r.json()["id"]

    clock.advance(days=36)
    r = client.get("/fines/summary", headers=as_user(user_id))
    assert r.json()["total_estimated"] == "3.00"

    r = client.post(f"/borrowings/{borrowing_id}/return", headers=as_user(user_id))
    fine = r.json()["fine"]
    assert fine["amount"] == "3.00"
    assert fine["status"] == "UNPAID"

    r = client.post(f"/fines/{fine['id']}/pay", json={"amount": "1.00"}, headers=as_user(user_id))
    assert r.status_code == 200
    assert r.json()["status"] == "PARTIAL"

    r = client.post(f"/fines/{fine['id']}/waive", json={"reason": "First offence"}, headers=ADMIN)
    assert r.json()["status"] == "PAID"
    assert r.json()["waiver_reason"] == "First offence"


def test_reservation_queue_and_promotion(client, catalog):
    user_id, book_id = catalog
    waiting = []
    for name in ("zed", "wendy"):
        r = client.post("/users/", json={"name": name, "email": f"{name}@example.com"}, headers=ADMIN)
        waiting.append(r.json()["id"])
    z, w = waiting

    r = client.post("/borrowings/", json={"book_id": book_id}, headers=as_user(user_id))
    borrowing_id = r.json()["id"]

    r = client.post("/reservations/", json={"book_id": book_id}, headers=as_user(z))
    assert r.status_code == 200
    assert r.json()["queue_position"] == 1
    z_reservation = r.json()["reservation"]["id"]

    r = client.post("/reservations/", json={"book_id": book_id}, headers=as_user(w))
    assert r.json()["queue_position"] == 2

    r = client.get(f"/books/{book_id}/queue", headers=as_user(w))
    assert r.json() == {"has_reservation": True, "position": 2, "total": 2}

    r = client.post(f"/borrowings/{borrowing_id}/renew", headers=as_user(user_id))
    assert r.status_code == 400
    assert r.json()["kind"] == "CannotRenew"

    r = client.post(f"/borrowings/{borrowing_id}/return", headers=as_user(user_id))
    promoted = r.json()["promoted_reservation"]
    assert promoted["id"] == z_reservation
    assert promoted["status"] == "READY"

    r = client.post(f"/reservations/{z_reservation}/cancel", headers=as_user(z))
    assert r.json()["status"] == "CANCELLED"

    r = client.get(f"/books/{book_id}/queue", headers=as_user(w))
    assert r.json() == {"has_reservation": True, "position": 1, "total": 1}

    r = client.get(f"/books/{book_id}/queue", headers=as_user(z))
    assert r.json()["has_reservation"] is False


def test_maintenance_sweeps(client, catalog, clock):
    user_id, book_id = catalog
    client.post("/borrowings/", json={"book_id": book_id}, headers=as_user(user_id))

    clock.advance(days=31)
    r = client.post("/maintenance/mark-overdue", headers=ADMIN)
    assert r.json() == {"count": 1}

    r = client.get("/borrowings/", params={"status": "OVERDUE"}, headers=as_user(user_id))
    assert len(r.json()) == 1

    r = client.post("/maintenance/expire-reservations", headers=ADMIN)
    assert r.json() == {"count": 0}

    r = client.post("/maintenance/mark-overdue", headers=as_user(user_id))
    assert r.status_code == 403


def test_students_only_see_their_own_records(client, catalog):
    user_id, book_id = catalog
    r = client.post("/borrowings/", json={"book_id": book_id}, headers=as_user(user_id))
    borrowing_id = r.json()["id"]

    r = client.get("/borrowings/", params={"user_id": user_id}, headers=as_user(user_id + 1))
    assert r.json() == []

    r = client.get(f"/borrowings/{borrowing_id}", headers=as_user(user_id + 1))
    assert r.status_code == 403

    r = client.get("/borrowings/", params={"user_id": user_id}, headers=ADMIN)
    assert [b["id"] for b in r.json()] == [borrowing_id]

    r = client.get(f"/users/{user_id}", headers=as_user(user_id + 1))
    assert r.status_code == 403


def test_book_search_lookup_and_update(client, catalog):
    _, book_id = catalog
    client.post("/books/", json={"title": "Dune", "author": "Frank Herbert", "isbn": "9780441172719"},
                headers=ADMIN)

    r = client.get("/books/", params={"q": "test"})
    assert [b["id"] for b in r.json()] == [book_id]
    assert len(client.get("/books/").json()) == 2

    r = client.get("/books/isbn/978-0-13-235088-4")
    assert r.json()["id"] == book_id
    assert client.get("/books/isbn/9781449373320").status_code == 404

    r = client.put(f"/books/{book_id}", json={"title": "Renamed"}, headers=ADMIN)
    assert r.status_code == 200
    assert r.json()["title"] == "Renamed"
    assert r.json()["author"] == "Author"

    r = client.put(f"/books/{book_id}", json={"title": "Nope"}, headers=as_user(2))
    assert r.status_code == 403


def test_reservation_without_a_queue_slot_reports_no_position(client, catalog, monkeypatch):
    user_id, book_id = catalog
    r = client.post("/users/", json={"name": "zed", "email": "zed@example.com"}, headers=ADMIN)
    z = r.json()["id"]
    client.post("/borrowings/", json={"book_id": book_id}, headers=as_user(user_id))

    # e.g. cancelled from another request before the position was read back
    monkeypatch.setattr(ReservationEngine, "get_queue_position", lambda self, book_id, user_id: None)
    r = client.post("/reservations/", json={"book_id": book_id}, headers=as_user(z))
    assert r.status_code == 200
    assert r.json()["queue_position"] is None
