"""
Shared fixtures: an isolated in-memory SQLite store per test, fresh in-memory
registries, and a mocked command publisher.
"""

import os

# settings are read at import time
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("LOG_LEVEL", "WARNING")

from unittest.mock import Mock

import pytest
from sqlalchemy.pool import StaticPool

from solar_api import models  # noqa: F401  registers the tables
from solar_api.access_store import AccessStore
from solar_api.coordinator import DeviceCoordinator
from solar_api.db import init_db, make_engine
from solar_api.pairing import PairingRegistry
from solar_api.schemas import AuthUser
from solar_api.status_cache import LiveStatusCache


@pytest.fixture
def engine():
    eng = make_engine("sqlite://", poolclass=StaticPool, connect_args={"check_same_thread": False})
    init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def store(engine):
    return AccessStore(engine)


@pytest.fixture
def cache():
    return LiveStatusCache()


@pytest.fixture
def pairing():
    return PairingRegistry()


@pytest.fixture
def publisher():
    return Mock(spec=["publish_command"])


@pytest.fixture
def coordinator(store, cache, pairing, publisher):
    return DeviceCoordinator(store, cache=cache, pairing=pairing, publisher=publisher, stale_after=30)


def _auth(user) -> AuthUser:
    return AuthUser(id=user.id, email=user.email, google_id=user.google_id)


@pytest.fixture
def alice(store):
    return _auth(store.get_or_create_user("alice@example.com", "g-alice", name="Alice"))


@pytest.fixture
def bob(store):
    return _auth(store.get_or_create_user("bob@example.com", "g-bob", name="Bob"))


@pytest.fixture
def carol(store):
    return _auth(store.get_or_create_user("carol@example.com", "g-carol", name="Carol"))
