"""Pytest configuration and shared fixtures."""

import os

# Must be set before access_schema.core.config builds the settings
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")

import fakeredis
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from access_schema.core.config import Settings
from access_schema.core.container import AccessSchema, get_access_schema
from access_schema.db.base import Base
from access_schema.db.session import get_db
from access_schema.services.cache_service import CacheService
import access_schema.models  # noqa: F401

READ_KEY = "ro-test-key"
WRITE_KEY = "rw-test-key"


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db(engine):
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def redis_client():
    return fakeredis.FakeRedis(decode_responses=True)


@pytest.fixture
def test_settings():
    return Settings(
        API_KEY_READONLY=READ_KEY,
        API_KEY_READWRITE=WRITE_KEY,
        CACHE_PREFIX="test",
        MAX_ROLES_PER_USER=5,
    )


@pytest.fixture
def cache(redis_client):
    return CacheService(client=redis_client, prefix="test", enabled=True)


@pytest.fixture
def schema(test_settings, cache):
    return AccessSchema(test_settings, cache=cache)


@pytest.fixture
def uncached_schema(test_settings):
    return AccessSchema(test_settings, cache=CacheService(prefix="test", enabled=False))


@pytest.fixture
def client(db, schema):
    from access_schema.main import app

    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_access_schema] = lambda: schema
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def read_headers():
    return {"x-api-key": READ_KEY}


@pytest.fixture
def write_headers():
    return {"x-api-key": WRITE_KEY}
