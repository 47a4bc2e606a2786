import os

import pytest
from fastapi.testclient import TestClient

from conformance_engine.config import Settings
from conformance_engine.core.element_validator import ValidationOptions
from conformance_engine.core.profile_validator import ProfileValidator
from conformance_engine.core.store import initialize_default_store
from conformance_engine.main import create_app


@pytest.fixture(scope="session", autouse=True)
def set_env():
    os.environ.setdefault("ADMIN_TOKEN", "test-token")
    os.environ.setdefault("LOG_LEVEL", "INFO")
    os.environ.setdefault("PRELOAD_PACKAGES", "")


@pytest.fixture()
def store_and_loader():
    return initialize_default_store(Settings())


@pytest.fixture()
def store(store_and_loader):
    return store_and_loader[0]


@pytest.fixture()
def loader(store_and_loader):
    return store_and_loader[1]


@pytest.fixture()
def validator(store):
    return ProfileValidator(store, options=ValidationOptions())


@pytest.fixture()
def client():
    app = create_app()
    return TestClient(app)
