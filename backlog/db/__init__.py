"""
Database module.
Contains database connection, models, and repository implementations.
"""

from backlog.db.connection import (
    close_db,
    create_schema,
    drop_schema,
    get_async_session,
    get_engine,
    get_session_context,
    get_session_factory,
    init_db,
)
from backlog.db.models import Base, Job

__all__ = [
    "get_async_session",
    "get_session_context",
    "get_session_factory",
    "get_engine",
    "init_db",
    "close_db",
    "create_schema",
    "drop_schema",
    "Job",
    "Base",
]
