"""Shared fixtures for keygate tests."""

import pytest
from fastapi.testclient import TestClient
from prometheus_client import CollectorRegistry

from keygate.admin import AdminService
from keygate.api import create_app
from keygate.config import GatewayConfig
from keygate.gate import AdmissionGate
from keygate.monitoring.metrics import GatewayMetrics
from keygate.storage import InMemoryCredentialStore, JsonFileCredentialStore

ADMIN_KEY = "sk_admin_test_key_0001"


@pytest.fixture
def metrics():
    return GatewayMetrics(registry=CollectorRegistry())


@pytest.fixture
def store(metrics):
    return InMemoryCredentialStore(metrics=metrics)


@pytest.fixture
def json_path(tmp_path):
    return tmp_path / "data" / "api-keys.json"


@pytest.fixture
def json_store(json_path):
    return JsonFileCredentialStore(str(json_path))


@pytest.fixture
def gate(store, metrics):
    return AdmissionGate(store, metrics=metrics)


@pytest.fixture
def admin(store, metrics):
    return AdminService(store, metrics=metrics)


@pytest.fixture
def admin_key():
    return ADMIN_KEY


@pytest.fixture
def config(admin_key):
    cfg = GatewayConfig()
    cfg.store.path = ":memory:"
    cfg.security.bootstrap_admin_key = admin_key
    return cfg


@pytest.fixture
def app(config):
    return create_app(config, store=InMemoryCredentialStore())


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


@pytest.fixture
def admin_headers(admin_key):
    return {"x-api-key": admin_key}
