from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from contact_store import SqliteContactStore
from db_models import LinkPrecedence
from db_setup import create_schema, get_db_connection

BASE_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)


class CountingStore(SqliteContactStore):
    """SqliteContactStore that records every public call made on it."""

    def __init__(self, conn):
        super().__init__(conn)
        self.calls = []

    def find_many(self, **filters):
        self.calls.append("find_many")
        return super().find_many(**filters)

    def get(self, contact_id):
        self.calls.append("get")
        return super().get(contact_id)

    def create(self, **fields):
        self.calls.append("create")
        return super().create(**fields)

    def update(self, contact_id, **fields):
        self.calls.append("update")
        return super().update(contact_id, **fields)

    def transaction(self):
        self.calls.append("transaction")
        return super().transaction()

    def writes(self):
        return [c for c in self.calls if c in ("create", "update")]


@pytest.fixture()
def conn():
    connection = get_db_connection(":memory:")
    create_schema(connection)
    yield connection
    connection.close()


@pytest.fixture()
def store(conn):
    return CountingStore(conn)


@pytest.fixture()
def seed(store):
    """Insert a contact with createdAt `minute` minutes after BASE_TIME."""

    def _seed(minute, email=None, phone=None, linked_id=None, contact_id=None):
        precedence = LinkPrecedence.SECONDARY if linked_id else LinkPrecedence.PRIMARY
        return store.create(
            email=email,
            phone_number=phone,
            link_precedence=precedence,
            linked_id=linked_id,
            contact_id=contact_id,
            created_at=BASE_TIME + timedelta(minutes=minute),
        )

    return _seed


@pytest.fixture()
def client(store, tmp_path, monkeypatch: pytest.MonkeyPatch) -> TestClient:
    """TestClient with get_contact_store overridden to use the in-memory store."""
    monkeypatch.setenv("DATABASE_PATH", str(tmp_path / "contacts.db"))

    from settings import get_settings

    get_settings.cache_clear()

    from main import app, get_contact_store

    app.dependency_overrides[get_contact_store] = lambda: store
    with TestClient(app, raise_server_exceptions=False) as c:
        yield c
    app.dependency_overrides.clear()
    get_settings.cache_clear()
