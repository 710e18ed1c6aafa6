"""Shared fixtures for the NAS controller test suite."""

from datetime import UTC, datetime

import pytest
import pytest_asyncio

from nas_common.models import App
from nas_persistence.sqlite_repository import SQLiteAppRepository


@pytest_asyncio.fixture
async def repo(tmp_path):
    """Initialized SQLite repository in a temporary directory."""
    repository = SQLiteAppRepository(str(tmp_path / "controller.db"))
    await repository.initialize()

    yield repository

    await repository.close()


@pytest.fixture
def make_app():
    """Factory for App objects with sensible defaults."""

    def _make_app(slug: str = "demo", **overrides) -> App:
        values = dict(
            id=f"app-{slug}",
            name=slug.capitalize(),
            slug=slug,
            repo_url=f"https://github.com/example/{slug}.git",
            branch="main",
            image_name=App.image_name_for(slug),
            container_name=slug,
            created_at=datetime.now(UTC),
        )
        values.update(overrides)
        return App(**values)

    return _make_app
