"""Entity stores and database storage."""

from database.base import ChangeAction, EntityStore, StoreChange
from database.memory import InMemoryEntityStore
from database.models import (
    Base,
    InvoiceHistoryModel,
    InvoiceModel,
    ProfileModel,
    TaskModel,
    TimeLogModel,
    TimerModel,
)
from database.session import get_engine, get_session, init_db, reset_engine, session_scope
from database.store import DatabaseEntityStore, owner_of_invoice

__all__ = [
    "Base",
    "ChangeAction",
    "DatabaseEntityStore",
    "EntityStore",
    "InMemoryEntityStore",
    "InvoiceHistoryModel",
    "InvoiceModel",
    "ProfileModel",
    "StoreChange",
    "TaskModel",
    "TimeLogModel",
    "TimerModel",
    "get_engine",
    "get_session",
    "init_db",
    "owner_of_invoice",
    "reset_engine",
    "session_scope",
]
