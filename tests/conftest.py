"""
Pytest configuration and fixtures.

CRITICAL: This file is loaded BEFORE test collection.
Environment variables MUST be loaded here for pytest.mark.skipif to work correctly.
"""

from datetime import date
from decimal import Decimal

import pytest
from dotenv import load_dotenv

# Load environment variables before pytest collects tests
# This ensures skipif conditions can access environment variables
load_dotenv()

from database.memory import InMemoryEntityStore  # noqa: E402
from invoicing.engine import InvoiceLifecycleEngine, InvoiceLockRegistry  # noqa: E402
from invoicing.events import EventBus  # noqa: E402
from state_machine.models import TaskCreate, TimeLogCreate  # noqa: E402

ORIGIN = "https://invoices.example.com"


@pytest.fixture
def store():
    """Fresh in-memory store for one owner."""
    return InMemoryEntityStore("owner-1")


@pytest.fixture
def event_bus():
    return EventBus()


@pytest.fixture
def engine(store, event_bus):
    """Lifecycle engine over the in-memory store."""
    engine = InvoiceLifecycleEngine(
        store,
        event_bus=event_bus,
        locks=InvoiceLockRegistry(),
        origin=ORIGIN,
    )
    yield engine
    engine.close()


def add_task(store, name="Website", rate="50"):
    return store.create_task(TaskCreate(name=name, rate=Decimal(rate)))


def log_hours(store, task, hours, day=date(2024, 3, 1)):
    return store.create_time_log(
        TimeLogCreate(task_id=task.id, hours=Decimal(hours), logged_on=day)
    )
