"""
Unit tests for the FastAPI endpoints.

The app manager and repository are replaced through dependency overrides, so
these tests cover routing, authentication, error mapping and serialization
without docker or git.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

import nas_server.app as app_module
from nas_common.errors import (
    AppNotFoundError,
    ContainerNotFoundError,
    ContainerRuntimeError,
    DuplicateSlugError,
    GitError,
    InvalidRepositoryError,
)
from nas_common.models import AppConfig, BuildProgress, CloneResult, UpdateCheckResult
from nas_controller.app_manager import AppManager
from nas_controller.build_pipeline import BuildPipeline
from nas_controller.container_manager import ContainerManager
from nas_controller.git_service import GitService
from nas_controller.port_allocator import PortAllocator
from nas_server.app import API_PREFIX, app, get_app_manager, get_auth_service, get_repository
from nas_server.auth import AuthService
from nas_server.config import Settings

TOKEN = "valid-session-token"
AUTH = {"Authorization": f"Bearer {TOKEN}"}
PASSWORD = "correct-horse-battery"


@pytest.fixture
def repository():
    repo = AsyncMock()
    repo.validate_session = AsyncMock(side_effect=lambda token: token == TOKEN)
    repo.get_app = AsyncMock(return_value=None)
    return repo


@pytest.fixture
def manager():
    mgr = MagicMock(spec=AppManager)
    mgr.build_pipeline = MagicMock(spec=BuildPipeline)
    mgr.build_pipeline.is_building = False
    mgr.build_pipeline.current_app_id = None
    mgr.container_manager = MagicMock(spec=ContainerManager)
    mgr.git_service = MagicMock(spec=GitService)
    mgr.port_allocator = MagicMock(spec=PortAllocator)
    return mgr


@pytest.fixture
def auth_service(tmp_path):
    service = AuthService(str(tmp_path))
    service.password_file.write_text(PASSWORD)
    return service


@pytest.fixture
def client(repository, manager, auth_service, tmp_path, monkeypatch):
    monkeypatch.setattr(app_module, "settings", Settings(data_dir=str(tmp_path)))
    app.dependency_overrides[get_repository] = lambda: repository
    app.dependency_overrides[get_app_manager] = lambda: manager
    app.dependency_overrides[get_auth_service] = lambda: auth_service

    yield TestClient(app)

    app.dependency_overrides.clear()


@pytest.fixture
def spawned(monkeypatch):
    """Record background operations instead of running them."""
    calls = []

    def fake_spawn(coro, description):
        coro.close()
        calls.append(description)

    monkeypatch.setattr(app_module, "spawn", fake_spawn)
    return calls


class TestHealthAndAuth:
    """Tests for health and the session endpoints."""

    def test_health_requires_no_auth(self, client):
        response = client.get(f"{API_PREFIX}/health")

        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    def test_protected_route_without_session(self, client):
        response = client.get(f"{API_PREFIX}/apps")

        assert response.status_code == 401
        assert response.json()["detail"] == "unauthorized"

    def test_invalid_token_rejected(self, client):
        response = client.get(f"{API_PREFIX}/apps", headers={"Authorization": "Bearer nope"})
        assert response.status_code == 401

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"headers": AUTH},
            {"headers": {"Cookie": f"session={TOKEN}"}},
            {"params": {"token": TOKEN}},
        ],
    )
    def test_token_sources(self, client, manager, kwargs):
        manager.list_apps.return_value = []

        response = client.get(f"{API_PREFIX}/apps", **kwargs)

        assert response.status_code == 200
        assert response.json() == []

    def test_login_wrong_password(self, client, repository):
        response = client.post(f"{API_PREFIX}/auth/login", json={"password": "wrong"})

        assert response.status_code == 401
        repository.create_session.assert_not_awaited()

    def test_login(self, client, repository):
        response = client.post(f"{API_PREFIX}/auth/login", json={"password": PASSWORD})

        assert response.status_code == 200
        token = response.json()["token"]
        assert len(token) == 32
        assert response.cookies["session"] == token
        repository.cleanup_expired_sessions.assert_awaited_once()
        assert repository.create_session.await_args.args[0] == token

    def test_logout(self, client, repository):
        response = client.post(f"{API_PREFIX}/auth/logout", headers=AUTH)

        assert response.status_code == 200
        repository.delete_session.assert_awaited_once_with(TOKEN)

    def test_check(self, client):
        assert client.get(f"{API_PREFIX}/auth/check").json() == {"authenticated": False}
        assert client.get(f"{API_PREFIX}/auth/check", headers=AUTH).json() == {
            "authenticated": True
        }

    def test_update_password(self, client, auth_service):
        response = client.put(
            f"{API_PREFIX}/auth/password",
            json={"current_password": PASSWORD, "new_password": "a-much-better-one"},
            headers=AUTH,
        )

        assert response.status_code == 200
        assert auth_service.validate_password("a-much-better-one")

    def test_update_password_wrong_current(self, client):
        response = client.put(
            f"{API_PREFIX}/auth/password",
            json={"current_password": "wrong", "new_password": "a-much-better-one"},
            headers=AUTH,
        )
        assert response.status_code == 401

    def test_update_password_too_short(self, client):
        response = client.put(
            f"{API_PREFIX}/auth/password",
            json={"current_password": PASSWORD, "new_password": "short"},
            headers=AUTH,
        )
        assert response.status_code == 422


class TestApps:
    """Tests for the app endpoints."""

    def test_create_app_spawns_build_and_start(self, client, manager, make_app, spawned):
        manager.create_app.return_value = make_app()

        response = client.post(
            f"{API_PREFIX}/apps",
            json={"repo_url": "https://github.com/example/demo.git", "env": {"A": "1"}},
            headers=AUTH,
        )

        assert response.status_code == 201
        assert response.json()["slug"] == "demo"
        manager.create_app.assert_awaited_once_with(
            "https://github.com/example/demo.git", "main", AppConfig(env={"A": "1"})
        )
        assert spawned == ["build-and-start of demo"]

    def test_create_app_without_auto_start(self, client, manager, make_app, spawned):
        manager.create_app.return_value = make_app()

        response = client.post(
            f"{API_PREFIX}/apps",
            json={"repo_url": "https://github.com/example/demo.git", "auto_start": False},
            headers=AUTH,
        )

        assert response.status_code == 201
        assert spawned == []

    @pytest.mark.parametrize(
        "error, status",
        [
            (InvalidRepositoryError("invalid repository URL"), 400),
            (DuplicateSlugError("demo"), 409),
            (GitError("git clone failed: not found"), 502),
        ],
    )
    def test_create_app_error_mapping(self, client, manager, error, status):
        manager.create_app.side_effect = error

        response = client.post(
            f"{API_PREFIX}/apps", json={"repo_url": "https://x/y.git"}, headers=AUTH
        )

        assert response.status_code == status
        assert response.json()["detail"] == str(error)

    def test_clone_preview(self, client, manager):
        manager.clone_and_validate.return_value = CloneResult(
            slug="demo", name="demo", has_dockerfile=True
        )

        response = client.post(
            f"{API_PREFIX}/apps/clone",
            json={"repo_url": "https://github.com/example/demo.git"},
            headers=AUTH,
        )

        assert response.status_code == 200
        assert response.json()["has_dockerfile"] is True

    def test_get_app_includes_uptime_when_running(self, client, manager, make_app):
        manager.get_app.return_value = make_app(status="running", container_id="abc")
        manager.get_container_uptime.return_value = "2h 5m"

        data = client.get(f"{API_PREFIX}/apps/app-demo", headers=AUTH).json()

        assert data["status"] == "running"
        assert data["uptime"] == "2h 5m"

    def test_get_unknown_app(self, client, manager):
        manager.get_app.side_effect = AppNotFoundError("missing")

        response = client.get(f"{API_PREFIX}/apps/missing", headers=AUTH)

        assert response.status_code == 404
        assert response.json()["detail"] == "app not found: missing"

    def test_update_app(self, client, manager, make_app):
        manager.update_app_config.return_value = make_app(name="Renamed")

        response = client.put(
            f"{API_PREFIX}/apps/app-demo",
            json={"name": "Renamed", "external_port": 13005},
            headers=AUTH,
        )

        assert response.status_code == 200
        config = manager.update_app_config.await_args.args[1]
        assert config.name == "Renamed"
        assert config.external_port == 13005
        assert config.env is None

    def test_update_app_rejects_bad_port(self, client):
        response = client.put(
            f"{API_PREFIX}/apps/app-demo", json={"external_port": 70000}, headers=AUTH
        )
        assert response.status_code == 422

    def test_delete_app(self, client, manager):
        response = client.delete(f"{API_PREFIX}/apps/app-demo", headers=AUTH)

        assert response.status_code == 200
        manager.delete_app.assert_awaited_once_with("app-demo")

    def test_build_accepted(self, client, manager, make_app, spawned):
        manager.get_app.return_value = make_app()

        response = client.post(f"{API_PREFIX}/apps/app-demo/build", headers=AUTH)

        assert response.status_code == 202
        assert spawned == ["build of demo"]

    def test_build_rejected_while_building(self, client, manager, make_app, spawned):
        manager.get_app.return_value = make_app()
        manager.build_pipeline.is_building = True

        response = client.post(f"{API_PREFIX}/apps/app-demo/build", headers=AUTH)

        assert response.status_code == 409
        assert spawned == []

    def test_cancel_build(self, client, manager, make_app):
        manager.get_app.return_value = make_app()
        manager.build_pipeline.current_app_id = "app-demo"
        manager.build_pipeline.cancel.return_value = True

        response = client.post(f"{API_PREFIX}/apps/app-demo/build/cancel", headers=AUTH)

        assert response.status_code == 200

    def test_cancel_without_build(self, client, manager, make_app):
        manager.get_app.return_value = make_app()

        response = client.post(f"{API_PREFIX}/apps/app-demo/build/cancel", headers=AUTH)

        assert response.status_code == 409
        manager.build_pipeline.cancel.assert_not_awaited()

    @pytest.mark.parametrize("action", ["start", "stop", "restart"])
    def test_lifecycle_actions(self, client, manager, make_app, action):
        method = getattr(manager, f"{action}_app")
        method.return_value = make_app(status="running" if action != "stop" else "stopped")

        response = client.post(f"{API_PREFIX}/apps/app-demo/{action}", headers=AUTH)

        assert response.status_code == 200
        assert response.json()["id"] == "app-demo"
        method.assert_awaited_once_with("app-demo")

    def test_pull_accepted(self, client, manager, make_app, spawned):
        manager.get_app.return_value = make_app()

        response = client.post(f"{API_PREFIX}/apps/app-demo/pull", headers=AUTH)

        assert response.status_code == 202
        assert spawned == ["pull-and-rebuild of demo"]

    def test_pull_rejected_during_build(self, client, manager, make_app):
        manager.get_app.return_value = make_app()
        manager.build_pipeline.is_building = True

        response = client.post(f"{API_PREFIX}/apps/app-demo/pull", headers=AUTH)

        assert response.status_code == 409

    def test_check_update(self, client, manager):
        manager.check_app_update.return_value = UpdateCheckResult(False, "aaaa1111", "aaaa1111")

        data = client.get(f"{API_PREFIX}/apps/app-demo/check-update", headers=AUTH).json()

        assert data["has_update"] is False

    def test_container_logs(self, client, manager):
        manager.get_app_logs.return_value = "line one\nline two\n"

        response = client.get(f"{API_PREFIX}/apps/app-demo/logs?tail=2", headers=AUTH)

        assert response.json() == {"logs": "line one\nline two\n"}
        manager.get_app_logs.assert_awaited_once_with("app-demo", 2)

    def test_container_logs_without_container(self, client, manager):
        manager.get_app_logs.side_effect = ContainerNotFoundError("demo")

        response = client.get(f"{API_PREFIX}/apps/app-demo/logs", headers=AUTH)

        assert response.status_code == 404

    def test_build_logs(self, client, manager, make_app):
        manager.get_app.return_value = make_app()
        manager.build_pipeline.get_build_log.return_value = "Starting build for Demo\n"

        response = client.get(f"{API_PREFIX}/apps/app-demo/build-logs", headers=AUTH)

        assert response.json() == {"logs": "Starting build for Demo\n"}

    def test_clear_build_logs(self, client, manager, make_app):
        manager.get_app.return_value = make_app()

        response = client.delete(f"{API_PREFIX}/apps/app-demo/logs", headers=AUTH)

        assert response.status_code == 200
        manager.build_pipeline.clear_build_log.assert_called_once_with("app-demo")


class TestStreams:
    """Tests for the WebSocket endpoints."""

    def test_build_stream_requires_session(self, client):
        with client.websocket_connect(f"{API_PREFIX}/apps/app-demo/build/stream") as ws:
            with pytest.raises(WebSocketDisconnect) as exc_info:
                ws.receive_json()

        assert exc_info.value.code == 4401

    def test_build_stream_unknown_app(self, client):
        with client.websocket_connect(
            f"{API_PREFIX}/apps/missing/build/stream?token={TOKEN}"
        ) as ws:
            event = ws.receive_json()

        assert event["type"] == "complete"
        assert event["success"] is False
        assert "app not found" in event["error"]

    def test_build_stream_runs_build(self, client, repository, manager, make_app):
        repository.get_app.return_value = make_app()

        async def fake_build(app_id, channel):
            channel.publish(BuildProgress.log(app_id, "Step 1/1 : FROM alpine\n"))
            channel.publish(BuildProgress.complete(app_id, True, message="done"))

        manager.build_app.side_effect = fake_build

        with client.websocket_connect(
            f"{API_PREFIX}/apps/app-demo/build/stream?token={TOKEN}"
        ) as ws:
            first = ws.receive_json()
            last = ws.receive_json()

        assert first == {"app_id": "app-demo", "type": "log", "data": "Step 1/1 : FROM alpine\n"}
        assert last["type"] == "complete"
        assert last["success"] is True

    def test_logs_stream_without_container(self, client, repository, make_app):
        repository.get_app.return_value = make_app()

        with client.websocket_connect(
            f"{API_PREFIX}/apps/app-demo/logs/stream?token={TOKEN}"
        ) as ws:
            assert ws.receive_text() == "No container running\n"

    def test_logs_stream_follows_container(self, client, repository, manager, make_app):
        repository.get_app.return_value = make_app(container_id="abc123")

        async def lines(container_id, follow=True):
            yield "2024-05-01T12:00:00Z hello\n"
            yield "2024-05-01T12:00:01Z world\n"

        manager.container_manager.stream_logs = lines

        with client.websocket_connect(
            f"{API_PREFIX}/apps/app-demo/logs/stream", headers=AUTH
        ) as ws:
            assert ws.receive_text().endswith("hello\n")
            assert ws.receive_text().endswith("world\n")


class TestSystem:
    """Tests for the system endpoints."""

    def test_info(self, client, manager, make_app):
        manager.list_apps.return_value = [make_app("a", status="running"), make_app("b")]
        manager.container_manager.get_docker_info.return_value = {"server_version": "24.0.7"}
        manager.build_pipeline.current_app_id = "app-b"

        data = client.get(f"{API_PREFIX}/system/info", headers=AUTH).json()

        assert data["total_apps"] == 2
        assert data["running_apps"] == 1
        assert data["building_app_id"] == "app-b"
        assert data["docker"] == {"server_version": "24.0.7"}

    def test_info_without_docker(self, client, manager):
        manager.list_apps.return_value = []
        manager.container_manager.get_docker_info.side_effect = ContainerRuntimeError("daemon unreachable")

        data = client.get(f"{API_PREFIX}/system/info", headers=AUTH).json()

        assert data["docker"] is None

    def test_storage(self, client, manager, make_app):
        manager.git_service.get_repos_size.return_value = 100
        manager.build_pipeline.get_logs_size.return_value = 20
        manager.list_apps.return_value = [make_app("a", image_size=1000), make_app("b", image_size=5)]

        data = client.get(f"{API_PREFIX}/system/storage", headers=AUTH).json()

        assert data == {
            "database": 0,
            "repositories": 100,
            "logs": 20,
            "images": 1005,
            "total": 1125,
        }

    def test_ports(self, client, manager):
        manager.port_allocator.get_used_ports = AsyncMock(return_value=[13001, 13004])
        manager.port_allocator.range_start = 13001
        manager.port_allocator.range_end = 13999

        data = client.get(f"{API_PREFIX}/system/ports", headers=AUTH).json()

        assert data == {"used_ports": [13001, 13004], "range": {"start": 13001, "end": 13999}}

    def test_prune(self, client, manager):
        manager.container_manager.prune_images.return_value = "1.2GB"

        data = client.post(f"{API_PREFIX}/system/prune", headers=AUTH).json()

        assert data["space_reclaimed"] == "1.2GB"

    def test_clear_all_logs(self, client, manager):
        response = client.delete(f"{API_PREFIX}/system/logs", headers=AUTH)

        assert response.status_code == 200
        manager.build_pipeline.clear_all_logs.assert_called_once_with()
