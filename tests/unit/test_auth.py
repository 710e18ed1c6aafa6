"""
Unit tests for nas_server.auth.

Tests password generation and storage, and token extraction from requests.
"""

import re
import stat
from unittest.mock import MagicMock

from nas_server.auth import (
    PASSWORD_LENGTH,
    AuthService,
    extract_token,
    generate_password,
    generate_session_token,
)


class TestGeneration:
    """Test suite for password and token generation."""

    def test_password_format(self):
        password = generate_password()

        assert len(password) == PASSWORD_LENGTH
        assert re.match(r"^[0-9a-f]+$", password)

    def test_tokens_are_unique(self):
        tokens = {generate_session_token() for _ in range(100)}

        assert len(tokens) == 100
        assert all(len(t) == 32 for t in tokens)


class TestAuthService:
    """Test suite for the password file."""

    def test_first_run_generates_password(self, tmp_path):
        service = AuthService(str(tmp_path))

        password, is_new = service.ensure_password()

        assert is_new is True
        assert service.password_file.read_text() == password
        assert stat.S_IMODE(service.password_file.stat().st_mode) == 0o600

    def test_existing_password_is_kept(self, tmp_path):
        (tmp_path / "password.txt").write_text("operator-pass\n")
        service = AuthService(str(tmp_path))

        assert service.ensure_password() == ("operator-pass", False)

    def test_validate_password(self, tmp_path):
        service = AuthService(str(tmp_path))
        password, _ = service.ensure_password()

        assert service.validate_password(password)
        assert not service.validate_password("wrong")
        assert not service.validate_password("")

    def test_validate_without_file(self, tmp_path):
        assert not AuthService(str(tmp_path)).validate_password("anything")

    def test_update_password(self, tmp_path):
        service = AuthService(str(tmp_path))
        password, _ = service.ensure_password()

        assert not service.update_password("wrong", "new-password")
        assert service.validate_password(password)

        assert service.update_password(password, "new-password")
        assert service.validate_password("new-password")

    def test_reset_password(self, tmp_path):
        service = AuthService(str(tmp_path))
        old, _ = service.ensure_password()

        new = service.reset_password()

        assert new != old
        assert service.validate_password(new)


def make_request(cookies=None, headers=None, query=None):
    request = MagicMock()
    request.cookies = cookies or {}
    request.headers = headers or {}
    request.query_params = query or {}
    return request


class TestExtractToken:
    """Test suite for extract_token."""

    def test_cookie_wins(self):
        request = make_request(
            cookies={"session": "from-cookie"},
            headers={"authorization": "Bearer from-header"},
            query={"token": "from-query"},
        )
        assert extract_token(request) == "from-cookie"

    def test_bearer_header(self):
        request = make_request(headers={"authorization": "Bearer from-header"})
        assert extract_token(request) == "from-header"

    def test_non_bearer_scheme_ignored(self):
        request = make_request(headers={"authorization": "Basic dXNlcjpwYXNz"})
        assert extract_token(request) is None

    def test_query_parameter(self):
        assert extract_token(make_request(query={"token": "from-query"})) == "from-query"

    def test_missing(self):
        assert extract_token(make_request()) is None
        assert extract_token(make_request(query={"token": ""})) is None
