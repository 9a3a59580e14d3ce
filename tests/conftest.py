"""
Pytest configuration and shared fixtures.

Test environment variables are set here, before any whatsapp_ai import, so
the module-level settings and SQLAlchemy engine pick them up.
"""

import os
import tempfile

import pytest

_TEST_DIR = tempfile.mkdtemp(prefix="whatsapp-ai-tests-")

os.environ.update({
    "DATABASE_URL": f"sqlite:///{_TEST_DIR}/test.db",
    "LOG_LEVEL": "WARNING",
    "WHATSAPP_VERIFY_TOKEN": "test-verify-token",
    "META_APP_SECRET": "test-app-secret",
    "WHATSAPP_TOKEN": "test-whatsapp-token",
    "WHATSAPP_PHONE_NUMBER_ID": "123456789",
    "AUTHORIZED_PHONE_NUMBERS": "+14155550100,+972585722391",
    "ADMIN_TOKEN": "test-admin-token",
    "OPENAI_API_KEY": "",
})

# Clear settings cache before any app imports to ensure test env vars are used
from whatsapp_ai.config import get_settings  # noqa: E402
get_settings.cache_clear()

from fastapi.testclient import TestClient  # noqa: E402

from whatsapp_ai.main import app, get_ai_service, get_whatsapp_service  # noqa: E402
from whatsapp_ai.storage import Base, MemoryKeyValueBackend, engine  # noqa: E402
from whatsapp_ai import models  # noqa: E402,F401
from tests.utils import FakeAI, FakeWhatsApp  # noqa: E402


@pytest.fixture
def fake_whatsapp():
    return FakeWhatsApp()


@pytest.fixture
def fake_ai():
    return FakeAI()


@pytest.fixture
def memory_backend():
    return MemoryKeyValueBackend()


@pytest.fixture(scope="function")
def client(fake_whatsapp, fake_ai):
    """Test client on a fresh database with fake WhatsApp and AI collaborators."""
    Base.metadata.create_all(bind=engine)
    app.dependency_overrides[get_whatsapp_service] = lambda: fake_whatsapp
    app.dependency_overrides[get_ai_service] = lambda: fake_ai

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
    Base.metadata.drop_all(bind=engine)
