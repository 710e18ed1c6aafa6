"""
SQLite implementation of the app repository.

Uses aiosqlite for async operations and provides thread-safe access.
Can be easily replaced with PostgreSQL/MySQL implementations.
"""

import json
from datetime import UTC, datetime
from typing import Any

import aiosqlite

from nas_common.errors import AppNotFoundError, DuplicateSlugError
from nas_common.models import App
from nas_common.repository import AppRepository

# Column order shared by INSERT and SELECT statements
APP_COLUMNS = (
    "id",
    "name",
    "slug",
    "description",
    "repo_url",
    "branch",
    "last_commit",
    "last_pulled",
    "dockerfile_path",
    "build_context",
    "build_args",
    "image_name",
    "container_name",
    "container_id",
    "internal_port",
    "external_port",
    "restart_policy",
    "env",
    "volumes",
    "status",
    "last_build",
    "last_build_duration",
    "last_build_success",
    "image_size",
    "created_at",
    "updated_at",
)

_SELECT_APPS = f"SELECT {', '.join(APP_COLUMNS)} FROM apps"


def _to_text(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _from_text(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _load_json(value: str | None, default: Any) -> Any:
    if not value:
        return default
    try:
        loaded = json.loads(value)
    except json.JSONDecodeError:
        return default
    return loaded if isinstance(loaded, type(default)) else default


class SQLiteAppRepository(AppRepository):
    """
    SQLite-based app storage implementation.

    Uses a single database file with two tables:
    - apps: One row per managed application (maps/lists stored as JSON)
    - sessions: Login session tokens with expiry
    """

    def __init__(self, db_path: str = "controller.db"):
        """
        Initialize the SQLite repository.

        Args:
            db_path: Path to the SQLite database file
        """
        self.db_path = db_path
        self._connection: aiosqlite.Connection | None = None

    async def _get_connection(self) -> aiosqlite.Connection:
        """Get or create database connection."""
        if self._connection is None:
            self._connection = await aiosqlite.connect(self.db_path)
            await self._connection.execute("PRAGMA journal_mode = WAL")
            await self._connection.execute("PRAGMA busy_timeout = 5000")
        return self._connection

    async def initialize(self) -> None:
        """
        Create database tables if they don't exist.

        Schema:
        - apps table: App identity, source, build/runtime config and observed state
        - sessions table: Session tokens (token, created_at, expires_at)
        """
        conn = await self._get_connection()

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS apps (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                slug TEXT UNIQUE NOT NULL,
                description TEXT DEFAULT '',
                repo_url TEXT NOT NULL,
                branch TEXT NOT NULL,
                last_commit TEXT DEFAULT '',
                last_pulled TEXT,
                dockerfile_path TEXT DEFAULT './Dockerfile',
                build_context TEXT DEFAULT '.',
                build_args TEXT DEFAULT '{}',
                image_name TEXT,
                container_name TEXT,
                container_id TEXT DEFAULT '',
                internal_port INTEGER DEFAULT 80,
                external_port INTEGER,
                restart_policy TEXT DEFAULT 'unless-stopped',
                env TEXT DEFAULT '{}',
                volumes TEXT DEFAULT '[]',
                status TEXT DEFAULT 'stopped',
                last_build TEXT,
                last_build_duration TEXT DEFAULT '',
                last_build_success INTEGER DEFAULT 0,
                image_size INTEGER DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS sessions (
                token TEXT PRIMARY KEY,
                created_at TEXT NOT NULL,
                expires_at TEXT NOT NULL
            )
        """)

        await conn.execute("CREATE INDEX IF NOT EXISTS idx_apps_slug ON apps(slug)")
        await conn.execute("CREATE INDEX IF NOT EXISTS idx_apps_status ON apps(status)")
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_sessions_expires ON sessions(expires_at)"
        )

        await conn.commit()

    async def close(self) -> None:
        """Close the database connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None

    @staticmethod
    def _row_params(app: App) -> tuple:
        return (
            app.id,
            app.name,
            app.slug,
            app.description,
            app.repo_url,
            app.branch,
            app.last_commit,
            _to_text(app.last_pulled),
            app.dockerfile_path,
            app.build_context,
            json.dumps(app.build_args),
            app.image_name,
            app.container_name,
            app.container_id,
            app.internal_port,
            app.external_port,
            app.restart_policy,
            json.dumps(app.env),
            json.dumps(app.volumes),
            app.status,
            _to_text(app.last_build),
            app.last_build_duration,
            1 if app.last_build_success else 0,
            app.image_size,
            _to_text(app.created_at),
            _to_text(app.updated_at),
        )

    @staticmethod
    def _row_to_app(row: tuple) -> App:
        values = dict(zip(APP_COLUMNS, row))
        return App(
            id=values["id"],
            name=values["name"],
            slug=values["slug"],
            description=values["description"] or "",
            repo_url=values["repo_url"],
            branch=values["branch"],
            last_commit=values["last_commit"] or "",
            last_pulled=_from_text(values["last_pulled"]),
            dockerfile_path=values["dockerfile_path"],
            build_context=values["build_context"],
            build_args=_load_json(values["build_args"], {}),
            image_name=values["image_name"] or "",
            container_name=values["container_name"] or "",
            container_id=values["container_id"] or "",
            internal_port=values["internal_port"],
            external_port=values["external_port"] or 0,
            restart_policy=values["restart_policy"],
            env=_load_json(values["env"], {}),
            volumes=_load_json(values["volumes"], []),
            status=values["status"],
            last_build=_from_text(values["last_build"]),
            last_build_duration=values["last_build_duration"] or "",
            last_build_success=bool(values["last_build_success"]),
            image_size=values["image_size"] or 0,
            created_at=_from_text(values["created_at"]) or datetime.now(UTC),
            updated_at=_from_text(values["updated_at"]) or datetime.now(UTC),
        )

    async def create_app(self, app: App) -> None:
        """
        Create a new app in the database.

        Args:
            app: App object to persist

        Raises:
            DuplicateSlugError: If the slug (or id) is already taken
        """
        conn = await self._get_connection()

        placeholders = ", ".join("?" for _ in APP_COLUMNS)
        try:
            await conn.execute(
                f"INSERT INTO apps ({', '.join(APP_COLUMNS)}) VALUES ({placeholders})",
                self._row_params(app),
            )
        except aiosqlite.IntegrityError as e:
            await conn.rollback()
            raise DuplicateSlugError(app.slug) from e
        await conn.commit()

    async def get_app(self, app_id: str) -> App | None:
        """
        Retrieve an app by ID.

        Args:
            app_id: UUID of the app to retrieve

        Returns:
            App object if found, None otherwise
        """
        conn = await self._get_connection()

        cursor = await conn.execute(f"{_SELECT_APPS} WHERE id = ?", (app_id,))
        row = await cursor.fetchone()

        if row is None:
            return None
        return self._row_to_app(row)

    async def get_app_by_slug(self, slug: str) -> App | None:
        """
        Retrieve an app by slug.

        Args:
            slug: Unique slug of the app

        Returns:
            App object if found, None otherwise
        """
        conn = await self._get_connection()

        cursor = await conn.execute(f"{_SELECT_APPS} WHERE slug = ?", (slug,))
        row = await cursor.fetchone()

        if row is None:
            return None
        return self._row_to_app(row)

    async def update_app(self, app: App) -> None:
        """
        Persist all mutable fields of an app.

        The id and slug are immutable and used only to locate the row;
        updated_at is stamped on the passed object as well as the row.

        Args:
            app: App carrying the new state
        """
        conn = await self._get_connection()

        app.updated_at = datetime.now(UTC)
        mutable = [c for c in APP_COLUMNS if c not in ("id", "slug", "created_at")]
        params = dict(zip(APP_COLUMNS, self._row_params(app)))

        sql = f"UPDATE apps SET {', '.join(f'{c} = ?' for c in mutable)} WHERE id = ?"
        await conn.execute(sql, [params[c] for c in mutable] + [app.id])
        await conn.commit()

    async def delete_app(self, app_id: str) -> None:
        """
        Delete an app from the database.

        Args:
            app_id: UUID of the app to delete

        Raises:
            AppNotFoundError: If no row matched
        """
        conn = await self._get_connection()

        cursor = await conn.execute("DELETE FROM apps WHERE id = ?", (app_id,))
        await conn.commit()

        if cursor.rowcount == 0:
            raise AppNotFoundError(app_id)

    async def list_apps(self) -> list[App]:
        """
        List all apps.

        Returns:
            List of App objects ordered by creation time, newest first
        """
        conn = await self._get_connection()

        cursor = await conn.execute(f"{_SELECT_APPS} ORDER BY created_at DESC")
        rows = await cursor.fetchall()

        return [self._row_to_app(row) for row in rows]

    async def get_used_ports(self, exclude_app_id: str | None = None) -> list[int]:
        """
        List all external ports recorded on apps.

        Args:
            exclude_app_id: Optional app whose own port is left out

        Returns:
            List of port numbers
        """
        conn = await self._get_connection()

        sql = "SELECT external_port FROM apps WHERE external_port IS NOT NULL AND external_port > 0"
        params: tuple = ()
        if exclude_app_id is not None:
            sql += " AND id != ?"
            params = (exclude_app_id,)

        cursor = await conn.execute(sql, params)
        rows = await cursor.fetchall()

        return [row[0] for row in rows]

    # Session management methods

    async def create_session(self, token: str, expires_at: datetime) -> None:
        conn = await self._get_connection()

        await conn.execute(
            "INSERT INTO sessions (token, created_at, expires_at) VALUES (?, ?, ?)",
            (token, datetime.now(UTC).isoformat(), expires_at.astimezone(UTC).isoformat()),
        )
        await conn.commit()

    async def validate_session(self, token: str) -> bool:
        conn = await self._get_connection()

        cursor = await conn.execute(
            "SELECT COUNT(*) FROM sessions WHERE token = ? AND expires_at > ?",
            (token, datetime.now(UTC).isoformat()),
        )
        row = await cursor.fetchone()
        return row is not None and row[0] > 0

    async def delete_session(self, token: str) -> None:
        conn = await self._get_connection()

        await conn.execute("DELETE FROM sessions WHERE token = ?", (token,))
        await conn.commit()

    async def cleanup_expired_sessions(self) -> None:
        conn = await self._get_connection()

        await conn.execute(
            "DELETE FROM sessions WHERE expires_at < ?", (datetime.now(UTC).isoformat(),)
        )
        await conn.commit()

    async def delete_all_sessions(self) -> int:
        conn = await self._get_connection()

        cursor = await conn.execute("DELETE FROM sessions")
        await conn.commit()
        return cursor.rowcount
