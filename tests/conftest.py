"""
Pytest configuration for Atelier Workflow Service tests.

This module provides:
1. A JSON-file store in a temp directory per test
2. A recording email sender with per-recipient failures
3. Seeded profiles for each role
4. A FastAPI test client wired to the same services
"""

import os
import tempfile

import pytest

# Keep the default store out of the real data directory
os.environ.setdefault("ATELIER_DATA_DIR", tempfile.mkdtemp())

from atelier.email_sender import EmailSender
from atelier.errors import EmailDeliveryError
from atelier.role_policy import Actor, Role
from atelier.services import build_services, reset_services, set_services
from atelier.store import JsonFileStore, set_store


# -----------------------------------------------------------------------------
# Test Constants
# -----------------------------------------------------------------------------
CHIEF_ID = "chief-1"
JUNIOR_ID = "junior-1"
INTERN_ID = "intern-1"
OTHER_INTERN_ID = "intern-2"

CHIEF = Actor(user_id=CHIEF_ID, role=Role.CHIEF_ARCHITECT)
JUNIOR = Actor(user_id=JUNIOR_ID, role=Role.JUNIOR_ARCHITECT)
INTERN = Actor(user_id=INTERN_ID, role=Role.INTERN)
OTHER_INTERN = Actor(user_id=OTHER_INTERN_ID, role=Role.INTERN)


# -----------------------------------------------------------------------------
# Email
# -----------------------------------------------------------------------------
class RecordingEmailSender(EmailSender):
    """Keeps sent messages; raises for addresses listed in fail_for."""

    def __init__(self, fail_for=(), error=None):
        self.sent = []
        self.fail_for = set(fail_for)
        self.error = error

    async def send(self, message):
        if message.to in self.fail_for:
            raise self.error or EmailDeliveryError("provider rejected", {"to": message.to})
        self.sent.append(message)
        return f"msg-{len(self.sent)}"


# -----------------------------------------------------------------------------
# Common Fixtures
# -----------------------------------------------------------------------------
@pytest.fixture
def store(tmp_path):
    """Fresh JSON-file store per test."""
    return JsonFileStore(tmp_path / "data")


@pytest.fixture
def email_sender():
    return RecordingEmailSender()


@pytest.fixture
def services(store, email_sender):
    """Services over the temp store with seeded profiles."""
    svc = build_services(store, email_sender)
    svc.profiles.register_profile(CHIEF_ID, "Chief Architect", "chief@studio.test", "chief_architect")
    svc.profiles.register_profile(JUNIOR_ID, "Junior Architect", "junior@studio.test", "junior_architect")
    svc.profiles.register_profile(INTERN_ID, "Intern One", "intern1@studio.test", "intern")
    svc.profiles.register_profile(OTHER_INTERN_ID, "Intern Two", "intern2@studio.test", "intern")
    return svc


@pytest.fixture
def client(services):
    """Create test client for FastAPI app bound to the test services."""
    from fastapi.testclient import TestClient
    from atelier.main import app

    set_store(services.store)
    set_services(services)
    yield TestClient(app)
    reset_services()
    set_store(None)


def headers(user_id):
    return {"X-User-Id": user_id}


# -----------------------------------------------------------------------------
# Session Configuration
# -----------------------------------------------------------------------------
def pytest_configure(config):
    """Configure pytest session."""
    config.addinivalue_line(
        "markers", "postgrest: tests that exercise the PostgREST backend over a mock transport"
    )
