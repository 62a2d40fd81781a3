"""Shared fixtures for API tests."""

import pytest
from fastapi.testclient import TestClient

from api.src.db.database import get_db
from api.src.main import app

class FakeScalars:
    def __init__(self, value):
        self.value = value

    def all(self):
        if self.value is None:
            return []
        return self.value if isinstance(self.value, list) else [self.value]

class FakeResult:
    def __init__(self, value=None):
        self.value = value

    def scalar_one_or_none(self):
        return self.value

    def scalar(self):
        return self.value

    def scalars(self):
        return FakeScalars(self.value)

    def all(self):
        return self.value or []

class FakeSession:
    """Answers queries in order from a prepared list of results."""

    def __init__(self, results=None):
        self.results = list(results or [])
        self.added = []
        self.commits = 0

    async def execute(self, query):
        return FakeResult(self.results.pop(0) if self.results else None)

    def add(self, obj):
        self.added.append(obj)

    async def flush(self):
        pass

    async def commit(self):
        self.commits += 1

@pytest.fixture
def fake_db():
    return FakeSession()

@pytest.fixture
def client(fake_db):
    async def override_get_db():
        yield fake_db

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()
