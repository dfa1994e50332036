# tests/conftest.py

from __future__ import annotations

import os
from pathlib import Path

# Must be set before main is imported: it builds its engine and reads the
# bcrypt cost at import time.
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["JWT_SECRET"] = "test-secret"

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine

import main


@pytest.fixture()
def db_engine(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    """A fresh SQLite file per test, swapped in for the module's engine."""
    engine = create_engine(f"sqlite:///{tmp_path / 'todo.db'}", future=True)
    monkeypatch.setattr(main, "engine", engine)
    main.init_db()
    yield engine
    engine.dispose()


@pytest.fixture()
def client(db_engine) -> TestClient:
    with TestClient(main.app) as c:
        yield c


def register(client: TestClient, username: str, password: str):
    return client.post("/api/register", json={"username": username, "password": password})


def login(client: TestClient, username: str, password: str) -> str:
    resp = client.post("/api/login", json={"username": username, "password": password})
    assert resp.status_code == 200, resp.text
    return resp.json()["token"]


@pytest.fixture()
def make_user(client: TestClient):
    """Register + log in; returns Authorization headers for the new account."""

    def _make(username: str = "alice", password: str = "pw1") -> dict:
        assert register(client, username, password).status_code == 201
        return {"Authorization": f"Bearer {login(client, username, password)}"}

    return _make
