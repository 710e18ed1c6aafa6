"""
Authentication utilities for the NAS controller server.

A single operator password lives in <data_dir>/password.txt (generated on
first run). Logging in creates a session token stored in the database; the
token is accepted from the "session" cookie, an "Authorization: Bearer"
header, or a "token" query parameter (for WebSockets, which cannot set
headers from a browser).
"""

import logging
import os
import secrets
from datetime import UTC, datetime, timedelta
from pathlib import Path

from fastapi import Depends, HTTPException, Request, WebSocket

from nas_common.repository import AppRepository

logger = logging.getLogger(__name__)

SESSION_COOKIE = "session"
SESSION_TTL = timedelta(days=7)

PASSWORD_LENGTH = 16
SESSION_TOKEN_LENGTH = 32
MIN_PASSWORD_LENGTH = 8


def generate_password(length: int = PASSWORD_LENGTH) -> str:
    """
    Generate a random hex password.

    Example:
        >>> len(generate_password())
        16
    """
    return secrets.token_hex(length)[:length]


def generate_session_token() -> str:
    return secrets.token_hex(SESSION_TOKEN_LENGTH)[:SESSION_TOKEN_LENGTH]


class AuthService:
    """Manages the operator password file."""

    def __init__(self, data_dir: str):
        self.password_file = Path(data_dir) / "password.txt"

    def _write_password(self, password: str) -> None:
        self.password_file.parent.mkdir(parents=True, exist_ok=True)
        self.password_file.write_text(password)
        os.chmod(self.password_file, 0o600)

    def ensure_password(self) -> tuple[str, bool]:
        """
        Read the password, generating one on first run.

        Returns:
            Tuple of (password, newly_generated)
        """
        if not self.password_file.exists():
            password = generate_password()
            self._write_password(password)
            return password, True
        return self.password_file.read_text().strip(), False

    def validate_password(self, password: str) -> bool:
        try:
            stored = self.password_file.read_text().strip()
        except FileNotFoundError:
            return False
        return secrets.compare_digest(password.encode(), stored.encode())

    def update_password(self, current_password: str, new_password: str) -> bool:
        """
        Replace the password if the current one matches.

        Returns:
            True if the password was changed
        """
        if not self.validate_password(current_password):
            return False
        self._write_password(new_password)
        return True

    def reset_password(self) -> str:
        """Generate and store a new password unconditionally."""
        password = generate_password()
        self._write_password(password)
        return password


def session_expiry() -> datetime:
    return datetime.now(UTC) + SESSION_TTL


def extract_token(request: Request | WebSocket) -> str | None:
    """Find a session token in the cookie, bearer header or query string."""
    token = request.cookies.get(SESSION_COOKIE)
    if token:
        return token

    authorization = request.headers.get("authorization", "")
    scheme, _, credentials = authorization.partition(" ")
    if scheme.lower() == "bearer" and credentials:
        return credentials.strip()

    return request.query_params.get("token") or None


def create_require_session_dependency(get_repository_func):  # type: ignore
    """
    Create an HTTP dependency that rejects requests without a valid session.

    The repository getter is defined in app.py, so it is injected here to
    avoid a circular import.

    Args:
        get_repository_func: Function that returns the AppRepository instance

    Returns:
        Async function usable with Depends()
    """

    async def require_session(
        request: Request,
        repository: AppRepository = Depends(get_repository_func),
    ) -> str:
        token = extract_token(request)
        if not token or not await repository.validate_session(token):
            raise HTTPException(
                status_code=401,
                detail="unauthorized",
                headers={"WWW-Authenticate": "Bearer"},
            )
        return token

    return require_session


async def websocket_authorized(websocket: WebSocket, repository: AppRepository) -> bool:
    token = extract_token(websocket)
    return bool(token) and await repository.validate_session(token)
