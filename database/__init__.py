"""
Database layer — Durable action queue persistence.

Backends:
  - SQL (PostgreSQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)

Quick start:
  from database import create_store
  store = create_store({"store_backend": "memory"})
  jobs = await store.select_eligible(limit=20)
"""
from database.models import Base, ActionJobRow
from database.session import get_engine, get_session, init_db, close_db, use_database
from database.store_base import BaseJobStore
from database.store import SqlJobStore
from database.store_memory import InMemoryJobStore
from database.store_factory import create_store, get_store, reset_store

__all__ = [
    # ORM models
    "Base", "ActionJobRow",
    # Session management
    "get_engine", "get_session", "init_db", "close_db", "use_database",
    # Store interface
    "BaseJobStore",
    # Store backends
    "SqlJobStore", "InMemoryJobStore",
    # Factory
    "create_store", "get_store", "reset_store",
]
