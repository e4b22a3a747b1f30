"""
Database layer — Multi-backend job persistence.

Backends:
  - SQL (MySQL / PostgreSQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)

Quick start:
  from database import create_store
  store = await create_store(settings.database)
  jobs = await store.select_eligible_batch(now, limit=10)
"""
from database.models import Base, MessageRow, UserRow, UserRateLimitRow
from database.session import Database
from database.store_base import (
    BaseJobStore, StoreError, JobNotFoundError, StatusChange, RATE_CHARGED_FLAG,
)
from database.store import SqlJobStore
from database.store_memory import InMemoryJobStore
from database.store_factory import create_store

__all__ = [
    # ORM models
    "Base", "MessageRow", "UserRow", "UserRateLimitRow",
    # Engine/session handle
    "Database",
    # Store interface
    "BaseJobStore", "StoreError", "JobNotFoundError", "StatusChange", "RATE_CHARGED_FLAG",
    # Store backends
    "SqlJobStore", "InMemoryJobStore",
    # Factory
    "create_store",
]
