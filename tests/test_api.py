import importlib
import sqlite3
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

import database
from config import settings


@pytest.fixture
def client(tmp_path, request, monkeypatch):
    # A unique per-test DB; api builds its services at import time, so reload it
    db_file = str(tmp_path / f"api_test_{request.node.name}.db")
    monkeypatch.setenv("LIBRARY_DB_FILE", db_file)
    monkeypatch.setattr(database, "DATABASE_FILE", db_file)
    monkeypatch.setattr(settings, "upload_dir", str(tmp_path / "covers"))
    monkeypatch.setattr(settings, "seed_file", None)

    import api as api_module
    importlib.reload(api_module)

    return TestClient(api_module.app)


def _login(client, username, password):
    response = client.post("/login", json={"username": username, "password": password})
    assert response.status_code == 200, response.text
    return {"Authorization": f"Bearer {response.json()['token']}"}


@pytest.fixture
def admin_headers(client):
    return _login(client, settings.admin_username, settings.admin_password)


def _register(client, username, password="secret1"):
    response = client.post("/register", json={
        "username": username,
        "password": password,
        "confirmPassword": password,
        "firstName": "Test",
        "lastName": "Reader",
        "email": f"{username}@example.com",
    })
    assert response.status_code == 201, response.text
    return _login(client, username, password)


def _add_book(client, headers, book_id, quantity=5, **fields):
    data = {"bookId": book_id, "title": f"Title {book_id}", "author": "Some Author", "quantity": str(quantity)}
    data.update(fields)
    return client.post("/books", headers=headers, data=data)


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_get_books_empty(client):
    response = client.get("/books")
    assert response.status_code == 200
    assert response.json() == []


def test_add_and_get_book(client, admin_headers):
    response = _add_book(client, admin_headers, "B001", quantity=5, title="Cien Años de Soledad",
                         isbn="978-0307474728", category="Novela")
    assert response.status_code == 201
    body = response.json()
    assert body["bookId"] == "B001"
    assert body["availableCopies"] == 5
    assert body["isAvailable"] is True

    response = client.get("/books/B001")
    assert response.status_code == 200
    assert response.json()["title"] == "Cien Años de Soledad"
    assert client.get("/categories").json() == [{"category": "Novela", "books": 1}]


def test_add_book_validation(client, admin_headers):
    assert _add_book(client, admin_headers, "B001").status_code == 201
    assert _add_book(client, admin_headers, "B001").status_code == 409

    response = client.post("/books", headers=admin_headers, data={"bookId": "B002", "title": "T", "author": "A"})
    assert response.status_code == 400
    assert _add_book(client, admin_headers, "B003", quantity="many").status_code == 400
    assert _add_book(client, admin_headers, "B004", author="").status_code == 400


def test_add_book_requires_admin(client):
    assert _add_book(client, {}, "B001").status_code == 401

    user_headers = _register(client, "alice")
    assert _add_book(client, user_headers, "B001").status_code == 403


def test_api_key(client):
    assert _add_book(client, {"X-API-Key": settings.api_key}, "B001").status_code == 201
    assert _add_book(client, {"X-API-Key": "invalid-key"}, "B002").status_code == 403


def test_books_are_listed_in_natural_order(client, admin_headers):
    for book_id in ["B10", "B2", "B1"]:
        _add_book(client, admin_headers, book_id)

    ids = [b["bookId"] for b in client.get("/books").json()]
    assert ids == ["B1", "B2", "B10"]


def test_update_book(client, admin_headers):
    _add_book(client, admin_headers, "B001", quantity=5)

    response = client.put("/books/B001", headers=admin_headers, json={"title": "New Title", "quantity": 8})
    assert response.status_code == 200
    assert response.json()["title"] == "New Title"
    assert response.json()["availableCopies"] == 8

    assert client.put("/books/B001", headers=admin_headers, json={}).status_code == 400
    assert client.put("/books/nope", headers=admin_headers, json={"title": "X"}).status_code == 404
    assert client.put("/books/B001", headers=admin_headers, json={"quantity": -1}).status_code == 400


def test_loan_and_return_flow(client, admin_headers):
    _add_book(client, admin_headers, "B001", quantity=5)
    headers = _register(client, "alice")

    response = client.post("/books/B001/loan", headers=headers, json={})
    assert response.status_code == 200
    assert response.json()["message"] == "Book loaned successfully"
    assert response.json()["book"]["availableCopies"] == 4

    loans = client.get("/books/user/alice/loans", headers=headers).json()
    assert [loan["bookId"] for loan in loans] == ["B001"]
    assert loans[0]["isOverdue"] is False

    response = client.post("/books/B001/return", headers=headers, json={})
    assert response.status_code == 200
    assert response.json()["book"]["availableCopies"] == 5

    response = client.post("/books/B001/return", headers=headers, json={})
    assert response.status_code == 400

    history = client.get("/books/user/alice/history", headers=headers).json()
    assert [entry["status"] for entry in history] == ["Returned", "Borrowed"]


def test_loan_limit_response(client, admin_headers):
    for i in range(1, 7):
        _add_book(client, admin_headers, f"B00{i}")
    headers = _register(client, "alice")
    for i in range(1, 6):
        assert client.post(f"/books/B00{i}/loan", headers=headers, json={}).status_code == 200

    response = client.post("/books/B006/loan", headers=headers, json={})
    assert response.status_code == 400
    assert response.json()["currentLoans"] == 5
    assert response.json()["maxLoans"] == 5


def test_last_copy_unavailable(client, admin_headers):
    _add_book(client, admin_headers, "B001", quantity=1)
    alice = _register(client, "alice")
    bob = _register(client, "bob")

    assert client.post("/books/B001/loan", headers=alice, json={}).json()["book"]["isAvailable"] is False
    response = client.post("/books/B001/loan", headers=bob, json={})
    assert response.status_code == 400
    assert client.post("/books/nope/loan", headers=bob, json={}).status_code == 404


def test_users_cannot_act_for_others(client, admin_headers):
    _add_book(client, admin_headers, "B001")
    alice = _register(client, "alice")
    _register(client, "bob")

    assert client.post("/books/B001/loan", headers=alice, json={"username": "bob"}).status_code == 403
    assert client.get("/books/user/bob/loans", headers=alice).status_code == 403
    assert client.get("/books/history", headers=alice).status_code == 403

    # admins may borrow on behalf of a user
    response = client.post("/books/B001/loan", headers=admin_headers, json={"username": "bob"})
    assert response.status_code == 200
    assert len(client.get("/books/user/bob/loans", headers=admin_headers).json()) == 1


def test_delete_book(client, admin_headers):
    _add_book(client, admin_headers, "B001")
    alice = _register(client, "alice")
    client.post("/books/B001/loan", headers=alice, json={})

    assert client.delete("/books/B001", headers=admin_headers).status_code == 409

    client.post("/books/B001/return", headers=alice, json={})
    response = client.delete("/books/B001", headers=admin_headers)
    assert response.status_code == 200
    assert response.json()["bookId"] == "B001"
    assert client.get("/books/B001").status_code == 404

    statuses = [entry["status"] for entry in client.get("/books/history", headers=admin_headers).json()]
    assert statuses[0] == "Deleted"
    assert "Created" in statuses


def test_register_and_login_errors(client):
    response = client.post("/register", json={
        "username": "ab", "password": "secret1", "confirmPassword": "secret1",
        "firstName": "A", "lastName": "B", "email": "ab@example.com",
    })
    assert response.status_code == 400
    assert response.json()["message"] == "Username must be at least 3 characters"

    _register(client, "alice")
    response = client.post("/login", json={"username": "alice", "password": "wrong"})
    assert response.status_code == 401
    assert client.get("/books/user/alice/loans").status_code == 401


def test_blocked_user(client, admin_headers):
    _add_book(client, admin_headers, "B001")
    alice = _register(client, "alice")

    response = client.post("/users/alice/block", headers=admin_headers, json={"block": True})
    assert response.status_code == 200
    assert response.json()["user"]["blocked"] is True

    # the old session is revoked and a new login is refused
    assert client.post("/books/B001/loan", headers=alice, json={}).status_code == 401
    response = client.post("/login", json={"username": "alice", "password": "secret1"})
    assert response.status_code == 403

    # the service key can still try on the user's behalf, and is refused
    response = client.post("/books/B001/loan", headers={"X-API-Key": settings.api_key},
                           json={"username": "alice"})
    assert response.status_code == 403


def test_logout(client):
    headers = _register(client, "alice")
    assert client.post("/logout", headers=headers).status_code == 200
    assert client.get("/books/user/alice/loans", headers=headers).status_code == 401


def test_change_password_and_profile(client, admin_headers):
    headers = _register(client, "alice")
    response = client.post("/change-password", json={
        "username": "alice", "currentPassword": "secret1",
        "newPassword": "newpass", "confirmPassword": "newpass",
    })
    assert response.status_code == 200
    _login(client, "alice", "newpass")

    response = client.put("/users/alice", headers=headers, json={"firstName": "Alicia"})
    assert response.status_code == 200
    assert response.json()["user"]["firstName"] == "Alicia"
    assert client.put("/users/alice", headers=headers, json={"role": "admin"}).status_code == 400

    users = client.get("/users", headers=admin_headers).json()
    assert {u["username"] for u in users} == {settings.admin_username, "alice"}
    assert all("password_hash" not in u for u in users)


def _add_with_cover(client, headers, book_id, content, filename="cover.png", **fields):
    data = {"bookId": book_id, "title": "T", "author": "A", "quantity": "1"}
    data.update(fields)
    return client.post("/books", headers=headers, data=data,
                       files={"coverImage": (filename, content, "image/png")})


def test_cover_upload(client, admin_headers):
    response = _add_with_cover(client, admin_headers, "B001", b"\x89PNG fake")
    assert response.status_code == 201
    cover = response.json()["coverImage"]
    assert cover.startswith("/covers/B001-")
    assert cover.endswith(".png")
    assert client.get(cover).content == b"\x89PNG fake"
    assert client.get("/books/B001").json()["coverImage"] == cover

    response = _add_with_cover(client, admin_headers, "B002", b"hello", filename="notes.txt")
    assert response.status_code == 400
    assert client.get("/covers/missing.png").status_code == 404


def test_covers_of_similar_ids_do_not_overwrite(client, admin_headers):
    # "B 1" and "B_1" sanitize to the same filename stem
    first = _add_with_cover(client, admin_headers, "B 1", b"FIRST").json()["coverImage"]
    second = _add_with_cover(client, admin_headers, "B_1", b"SECOND").json()["coverImage"]

    assert first != second
    assert client.get(first).content == b"FIRST"
    assert client.get(second).content == b"SECOND"


def test_rejected_create_leaves_no_cover_file(client, admin_headers):
    upload_dir = Path(settings.upload_dir)
    _add_book(client, admin_headers, "B001")

    # markup-only title fails after the cover was accepted
    assert _add_with_cover(client, admin_headers, "B9", b"IMG", title="<b></b>").status_code == 400
    # duplicate id
    assert _add_with_cover(client, admin_headers, "B001", b"IMG").status_code == 409

    stored = list(upload_dir.iterdir()) if upload_dir.exists() else []
    assert stored == []


def test_malformed_requests_are_400(client, admin_headers):
    _add_book(client, admin_headers, "B001")

    response = client.put("/books/B001", headers=admin_headers, json={"quantity": "abc"})
    assert response.status_code == 400
    assert "quantity" in response.json()["message"]

    response = client.post("/books/B001/loan", headers=admin_headers)
    assert response.status_code == 400
    response = client.post("/books/B001/return", headers=admin_headers)
    assert response.status_code == 400

    response = client.post("/login", content=b"not json", headers={"Content-Type": "application/json"})
    assert response.status_code == 400
    assert "message" in response.json()

    # nothing changed
    assert client.get("/books/B001").json()["availableCopies"] == 5


def test_locked_storage_is_503(client, admin_headers, monkeypatch):
    _add_book(client, admin_headers, "B001")
    alice = _register(client, "alice")
    monkeypatch.setattr(settings, "db_timeout", 0.2)

    blocker = sqlite3.connect(database.DATABASE_FILE, isolation_level=None)
    try:
        blocker.execute("BEGIN IMMEDIATE")
        response = client.post("/books/B001/loan", headers=alice, json={})
    finally:
        blocker.execute("ROLLBACK")
        blocker.close()

    assert response.status_code == 503
    assert response.json() == {"message": "Storage temporarily unavailable, please retry"}
    assert client.get("/books/B001").json()["availableCopies"] == 5
