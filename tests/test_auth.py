# tests/test_auth.py

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import select

import main

from .conftest import login, register


def test_register_then_login(client) -> None:
    resp = register(client, "alice", "pw1")
    assert resp.status_code == 201
    assert "token" not in resp.json()

    resp = client.post("/api/login", json={"username": "alice", "password": "pw1"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["username"] == "alice"
    assert body["token"]


def test_password_is_stored_hashed(client, db_engine) -> None:
    register(client, "alice", "pw1")
    with db_engine.connect() as conn:
        stored = conn.execute(select(main.users.c.password_hash)).scalar_one()
    assert stored != "pw1"
    assert main.verify_password("pw1", stored)
    assert not main.verify_password("pw2", stored)


def test_long_passwords_are_not_truncated() -> None:
    base = "x" * 80
    h = main.hash_password(base + "a")
    assert main.verify_password(base + "a", h)
    assert not main.verify_password(base + "b", h)


def test_register_requires_both_fields(client) -> None:
    for body in ({"username": "alice"}, {"password": "pw"}, {"username": "  ", "password": "pw"}, {}):
        resp = client.post("/api/register", json=body)
        assert resp.status_code == 400
        assert resp.json()["message"] == "Username and password are required"


def test_register_duplicate_username(client) -> None:
    assert register(client, "alice", "pw1").status_code == 201
    resp = register(client, "alice", "other")
    assert resp.status_code == 400
    assert resp.json()["message"] == "Username already exists"


def test_login_failures_look_the_same(client) -> None:
    register(client, "alice", "pw1")
    wrong_pw = client.post("/api/login", json={"username": "alice", "password": "nope"})
    unknown = client.post("/api/login", json={"username": "bob", "password": "pw1"})
    assert wrong_pw.status_code == unknown.status_code == 401
    assert wrong_pw.json() == unknown.json() == {"message": "Invalid credentials"}


def test_login_missing_fields(client) -> None:
    resp = client.post("/api/login", json={"username": "alice"})
    assert resp.status_code == 400


def test_token_carries_identity(client) -> None:
    register(client, "alice", "pw1")
    token = login(client, "alice", "pw1")
    claims = jwt.decode(token, main.JWT_SECRET, algorithms=[main.JWT_ALG])
    assert claims["username"] == "alice"
    assert claims["exp"] - main.now_ts() <= 24 * 3600

    resp = client.get("/api/me", headers={"Authorization": f"Bearer {token}"})
    assert resp.status_code == 200
    assert resp.json()["username"] == "alice"


def test_missing_token_is_401(client) -> None:
    resp = client.get("/api/todos")
    assert resp.status_code == 401
    assert resp.json()["message"] == "Authentication required"


def test_bad_signature_is_403(client) -> None:
    forged = jwt.encode({"sub": "1", "username": "alice", "exp": main.now_ts() + 60}, "other", algorithm="HS256")
    resp = client.get("/api/todos", headers={"Authorization": f"Bearer {forged}"})
    assert resp.status_code == 403
    assert resp.json()["message"] == "Invalid token"


def test_expired_token_is_403(client) -> None:
    expired = jwt.encode(
        {"sub": "1", "username": "alice", "exp": main.now_ts() - 10}, main.JWT_SECRET, algorithm=main.JWT_ALG
    )
    resp = client.get("/api/todos", headers={"Authorization": f"Bearer {expired}"})
    assert resp.status_code == 403


def test_garbage_token_is_403(client) -> None:
    resp = client.get("/api/todos", headers={"Authorization": "Bearer not-a-jwt"})
    assert resp.status_code == 403


PROTECTED_ROUTES = [
    ("GET", "/api/todos", None),
    ("POST", "/api/todos", {"text": "x"}),
    ("PATCH", "/api/todos/1", None),
    ("DELETE", "/api/todos/1", None),
    ("PATCH", "/api/todos/reorder", {"orderedIds": [1]}),
]


@pytest.mark.parametrize("method,path,body", PROTECTED_ROUTES)
def test_todo_routes_require_token(client, method, path, body) -> None:
    resp = client.request(method, path, json=body)
    assert resp.status_code == 401
    assert resp.json()["message"] == "Authentication required"


@pytest.mark.parametrize("method,path,body", PROTECTED_ROUTES)
def test_todo_routes_reject_forged_token(client, method, path, body) -> None:
    forged = jwt.encode({"sub": "1", "username": "alice", "exp": main.now_ts() + 60}, "other", algorithm="HS256")
    resp = client.request(method, path, json=body, headers={"Authorization": f"Bearer {forged}"})
    assert resp.status_code == 403
    assert resp.json()["message"] == "Invalid token"


@pytest.mark.parametrize("path", ["/api/register", "/api/login"])
def test_wrongly_typed_credentials(client, path) -> None:
    resp = client.post(path, json={"username": 123, "password": "pw"})
    assert resp.status_code == 400
    assert resp.json() == {"message": "Username and password are required"}


def test_unexpected_error_is_json_500(db_engine, monkeypatch) -> None:
    def broken_hash(pw: str) -> str:
        raise RuntimeError("bcrypt backend unavailable")

    monkeypatch.setattr(main, "hash_password", broken_hash)
    # the error middleware re-raises after answering; keep the response instead
    with TestClient(main.app, raise_server_exceptions=False) as c:
        resp = c.post("/api/register", json={"username": "alice", "password": "pw1"})
    assert resp.status_code == 500
    assert resp.headers["content-type"].startswith("application/json")
    assert resp.json() == {"message": "Internal server error"}
