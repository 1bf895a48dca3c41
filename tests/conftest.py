import json

import pytest
from fastapi.testclient import TestClient

from database import InMemoryStore, get_store
from main import app

SOLVED_4X4 = [
    [1, 2, 3, 4],
    [3, 4, 1, 2],
    [2, 1, 4, 3],
    [4, 3, 2, 1],
]


class FakeClock:
    """Manually advanced clock for expiry tests."""

    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def solved_4x4():
    return [list(row) for row in SOLVED_4X4]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return InMemoryStore(clock=clock)


@pytest.fixture
def client(store):
    app.dependency_overrides[get_store] = lambda: store
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def register_and_login(client):
    def _register_and_login(username: str = "alice", password: str = "secret123") -> dict:
        response = client.post("/auth/register", json={"username": username, "password": password})
        assert response.status_code == 201
        login = client.post("/auth/login", json={"username": username, "password": password})
        assert login.status_code == 200
        body = login.json()
        return {"headers": {"Authorization": f"Bearer {body['token']}"}, "user": body["user"]}
    return _register_and_login


@pytest.fixture
def stored_solution(store):
    def _stored_solution(game_id: str):
        return json.loads(store.get(f"game:{game_id}"))["solution"]
    return _stored_solution
