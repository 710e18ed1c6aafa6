"""
NAS Persistence module.

This module contains the database implementation for app and session storage.
Currently supports SQLite, but can be extended to PostgreSQL, MySQL, etc.

The persistence layer depends on nas_common for domain models and interfaces,
and is used by nas_server, nas_controller and nas_admin.
"""

from .sqlite_repository import SQLiteAppRepository

__all__ = ["SQLiteAppRepository"]
