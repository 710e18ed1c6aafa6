"""
Abstract repository interface for app persistence.

This module defines the contract that any database implementation must follow,
allowing easy swapping between SQLite, PostgreSQL, MySQL, etc.
"""

from abc import ABC, abstractmethod
from datetime import datetime

from .models import App


class AppRepository(ABC):
    """
    Abstract base class for app storage operations.

    A single-row update is the unit of atomicity; implementations must be
    async-safe and handle their own connection management.
    """

    @abstractmethod
    async def create_app(self, app: App) -> None:
        """
        Create a new app record.

        Args:
            app: App object to persist

        Raises:
            DuplicateSlugError: If an app with the same slug (or id) exists
        """
        pass

    @abstractmethod
    async def get_app(self, app_id: str) -> App | None:
        """
        Retrieve an app by its ID.

        Args:
            app_id: UUID of the app to retrieve

        Returns:
            App object if found, None otherwise
        """
        pass

    @abstractmethod
    async def get_app_by_slug(self, slug: str) -> App | None:
        """
        Retrieve an app by its slug.

        Args:
            slug: Unique slug of the app

        Returns:
            App object if found, None otherwise
        """
        pass

    @abstractmethod
    async def update_app(self, app: App) -> None:
        """
        Persist every mutable field of an app and stamp updated_at.

        Args:
            app: App object carrying the new state
        """
        pass

    @abstractmethod
    async def delete_app(self, app_id: str) -> None:
        """
        Delete an app record.

        Args:
            app_id: UUID of the app to delete

        Raises:
            AppNotFoundError: If no such app exists
        """
        pass

    @abstractmethod
    async def list_apps(self) -> list[App]:
        """
        List all apps, newest first.

        Returns:
            List of App objects
        """
        pass

    @abstractmethod
    async def get_used_ports(self, exclude_app_id: str | None = None) -> list[int]:
        """
        List every external port currently recorded on an app.

        Args:
            exclude_app_id: Optional app whose own port should not be counted

        Returns:
            List of port numbers
        """
        pass

    # Session management methods

    @abstractmethod
    async def create_session(self, token: str, expires_at: datetime) -> None:
        """Store a login session token."""
        pass

    @abstractmethod
    async def validate_session(self, token: str) -> bool:
        """Return True if the token exists and has not expired."""
        pass

    @abstractmethod
    async def delete_session(self, token: str) -> None:
        """Remove a session token (logout)."""
        pass

    @abstractmethod
    async def cleanup_expired_sessions(self) -> None:
        """Remove every expired session token."""
        pass

    @abstractmethod
    async def delete_all_sessions(self) -> int:
        """
        Remove every session token (e.g. after a password reset).

        Returns:
            Number of sessions removed
        """
        pass

    @abstractmethod
    async def initialize(self) -> None:
        """
        Initialize the database (create tables, etc.).

        Called once at application startup.
        """
        pass

    @abstractmethod
    async def close(self) -> None:
        """
        Close database connections and cleanup resources.

        Called at application shutdown.
        """
        pass
