"""
Test configuration and fixtures.

This module sets up the test environment and provides shared fixtures for all tests.
"""

import json
import os
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

import pytest

# Must be set BEFORE any import of shared.config reads the environment
os.environ["REDIS_URL"] = "redis://localhost:6379/0"
os.environ["CRM_WEBHOOK_TOKEN"] = "test-crm-token"
os.environ["PAYMENT_WEBHOOK_TOKEN"] = "test-payment-token"
os.environ["TIMEZONE"] = "America/Chicago"
os.environ["HOLD_MINUTES"] = "20"
os.environ["HOLD_WARNING_MINUTES"] = "10"
os.environ["DEPOSIT_AMOUNT_CENTS"] = "10000"
os.environ["MAX_SLOTS_OFFERED"] = "4"
os.environ["MESSAGE_DEBOUNCE_SECONDS"] = "0"
os.environ["PROVIDERS"] = json.dumps([
    {
        "name": "Joan",
        "user_id": "user-joan",
        "online_calendar_id": "cal-joan",
        "styles": ["realism", "black and grey"],
    },
    {
        "name": "Andrew",
        "user_id": "user-andrew",
        "online_calendar_id": "cal-andrew",
        "styles": ["fine line", "realism"],
    },
])
os.environ["INTERPRETERS"] = json.dumps([
    {"name": "Maria", "user_id": "user-maria", "online_calendar_id": "cal-maria"},
])

from shared.calendar_client import Slot  # noqa: E402
from shared.circuit_breaker import reset_circuit_breakers  # noqa: E402
from shared.config import get_settings  # noqa: E402

CHICAGO = ZoneInfo("America/Chicago")


@pytest.fixture(autouse=True)
def clear_settings_cache():
    """Each test sees settings built from the current environment."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture(autouse=True)
def closed_circuit_breakers():
    """Breaker state is module-global; failures in one test must not trip the next."""
    reset_circuit_breakers()
    yield
    reset_circuit_breakers()


@pytest.fixture
def chicago_tz() -> ZoneInfo:
    return CHICAGO


@pytest.fixture
def make_contact():
    """Build a CRM contact record with plain-mapping custom fields."""

    def _make(fields: dict | None = None, contact_id: str = "contact-1", **extra):
        return {"id": contact_id, "customFields": dict(fields or {}), **extra}

    return _make


@pytest.fixture
def make_slot():
    """Build a 30-minute Slot starting at a local Chicago time."""

    def _make(
        year: int = 2025,
        month: int = 12,
        day: int = 2,
        hour: int = 17,
        minute: int = 0,
        calendar_id: str = "cal-joan",
        **extra,
    ) -> Slot:
        start = datetime(year, month, day, hour, minute, tzinfo=CHICAGO)
        return Slot(
            start_time=start,
            end_time=start + timedelta(minutes=30),
            calendar_id=calendar_id,
            **extra,
        )

    return _make
