import pytest
from fastapi.testclient import TestClient

from app import config, database
from app.models.lead import Lead
from app.modules.store.memory import MemoryStore

TEST_ENV = {
    "STORE_BACKEND": "memory",
    "WHATSAPP_PROVIDER": "meta",
    "WHATSAPP_APP_SECRET": "",
    "WHATSAPP_VERIFY_TOKEN": "verify-me",
    "TWILIO_AUTH_TOKEN": "",
    "CALENDLY_WEBHOOK_SECRET": "",
    "SIGNATURE_POLICY": "reject",
    "AUTO_REPLY_ENABLED": "true",
    "AUTO_REPLY_SEND": "false",
    "DEFAULT_COUNTRY_CODE": "972",
    "PERSISTENCE_RETRY_ATTEMPTS": "3",
    "PERSISTENCE_RETRY_DELAY_SECONDS": "0",
    "SYSTEM_USER_ID": "system",
}


@pytest.fixture(autouse=True)
def settings(monkeypatch):
    for key, value in TEST_ENV.items():
        monkeypatch.setenv(key, value)
    yield config.reload_settings()
    config._settings = None


@pytest.fixture
def configure(monkeypatch):
    """Override settings for one test: configure(signature_policy="skip")."""
    def _configure(**overrides):
        for key, value in overrides.items():
            monkeypatch.setenv(key.upper(), str(value))
        return config.reload_settings()
    return _configure


@pytest.fixture
def store():
    store = MemoryStore()
    database.set_store(store)
    yield store
    database.set_store(None)


@pytest.fixture
def add_lead(store):
    def _add_lead(**fields):
        fields.setdefault("tenant_id", "tenant-1")
        lead = Lead(**fields)
        store.leads[lead.id] = lead
        return lead
    return _add_lead


@pytest.fixture
def client(store):
    from app.main import app
    return TestClient(app)
