"""
TaskPilot Database Package

SQLite board store for projects, tasks, requirements, workspaces,
automation settings and their audit logs.
"""

from taskpilot.db.database import (
    Database,
    DatabaseProtocol,
    SQLiteDatabase,
    format_ts,
    get_database,
    parse_ts,
)
from taskpilot.db.schema import SCHEMA_SQLITE

__all__ = [
    "Database",
    "DatabaseProtocol",
    "SQLiteDatabase",
    "format_ts",
    "get_database",
    "parse_ts",
    "SCHEMA_SQLITE",
]
