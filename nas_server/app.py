import asyncio
import logging
from collections.abc import Coroutine
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, Request, Response, WebSocket
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from starlette.websockets import WebSocketDisconnect

from nas_common.errors import (
    BuildInProgressError,
    ConflictError,
    ControllerError,
    ExternalError,
    NotFoundError,
    ValidationError,
)
from nas_common.models import STATUS_RUNNING, AppConfig, BuildProgress
from nas_common.repository import AppRepository
from nas_controller.app_manager import AppManager
from nas_controller.build_pipeline import BuildPipeline, ProgressChannel
from nas_controller.container_manager import ContainerManager
from nas_controller.git_service import GitService
from nas_controller.port_allocator import PortAllocator
from nas_controller.reconciler import StateReconciler
from nas_persistence.sqlite_repository import SQLiteAppRepository

from .auth import (
    MIN_PASSWORD_LENGTH,
    SESSION_COOKIE,
    SESSION_TTL,
    AuthService,
    create_require_session_dependency,
    extract_token,
    generate_session_token,
    session_expiry,
    websocket_authorized,
)
from .config import Settings

logger = logging.getLogger(__name__)

VERSION = "1.0.0"
API_PREFIX = "/api/v1"

# Global instances (initialized at startup)
settings: Settings | None = None
repository: AppRepository | None = None
app_manager: AppManager | None = None
auth_service: AuthService | None = None

# Background operations spawned by requests; referenced until they finish
background_tasks: set[asyncio.Task] = set()


def get_settings() -> Settings:
    """
    Get the active settings.

    Returns:
        Settings set by the entry point, or read from the environment
    """
    global settings
    if settings is None:
        settings = Settings.from_env()
    return settings


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for FastAPI app.

    - Startup: open the database, build the core components, make sure an
      operator password exists, and reconcile app state with docker before
      serving any request
    - Shutdown: cancel background operations and close the database
    """
    global repository, app_manager, auth_service

    config = get_settings()
    Path(config.data_dir).mkdir(parents=True, exist_ok=True)

    repository = SQLiteAppRepository(config.db_path)
    await repository.initialize()

    container_manager = ContainerManager()
    app_manager = AppManager(
        repository=repository,
        container_manager=container_manager,
        git_service=GitService(config.data_dir),
        port_allocator=PortAllocator(
            repository, config.port_range_start, config.port_range_end
        ),
        build_pipeline=BuildPipeline(container_manager, config.data_dir),
    )

    auth_service = AuthService(config.data_dir)
    password, is_new = auth_service.ensure_password()
    if is_new:
        logger.warning(f"FIRST RUN - Generated password: {password}")
        logger.warning(f"Save this password! It's also stored in {auth_service.password_file}")

    await StateReconciler(repository, container_manager).reconcile_once()

    yield

    for task in list(background_tasks):
        task.cancel()
    if background_tasks:
        await asyncio.gather(*background_tasks, return_exceptions=True)

    await repository.close()


app = FastAPI(title="NAS Controller", version=VERSION, lifespan=lifespan)


def get_repository() -> AppRepository:
    """
    Get the global repository instance.

    Raises:
        RuntimeError: If repository is not initialized
    """
    if repository is None:
        raise RuntimeError("Repository not initialized")
    return repository


def get_app_manager() -> AppManager:
    """
    Get the global app manager instance.

    Raises:
        RuntimeError: If app manager is not initialized
    """
    if app_manager is None:
        raise RuntimeError("App manager not initialized")
    return app_manager


def get_auth_service() -> AuthService:
    if auth_service is None:
        raise RuntimeError("Auth service not initialized")
    return auth_service


require_session = create_require_session_dependency(get_repository)


_ERROR_STATUS = (
    (ValidationError, 400),
    (NotFoundError, 404),
    (ConflictError, 409),
    (ExternalError, 502),
)


@app.exception_handler(ControllerError)
async def controller_error_handler(request: Request, exc: ControllerError) -> JSONResponse:
    status_code = 500
    for error_type, code in _ERROR_STATUS:
        if isinstance(exc, error_type):
            status_code = code
            break
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


def spawn(coro: Coroutine[Any, Any, Any], description: str) -> asyncio.Task:
    """
    Run an operation off the request path with the build timeout applied.

    Failures are logged; the app status records the outcome.
    """

    async def runner() -> None:
        try:
            await asyncio.wait_for(coro, timeout=get_settings().build_timeout)
            logger.info(f"Background {description} finished")
        except TimeoutError:
            logger.error(f"Background {description} timed out")
        except ControllerError as e:
            logger.warning(f"Background {description} failed: {e}")
        except asyncio.CancelledError:
            logger.info(f"Background {description} cancelled")
            raise
        except Exception as e:
            logger.error(f"Background {description} crashed: {e}", exc_info=True)

    task = asyncio.create_task(runner())
    background_tasks.add(task)
    task.add_done_callback(background_tasks.discard)
    return task


# Request bodies


class LoginRequest(BaseModel):
    password: str


class UpdatePasswordRequest(BaseModel):
    current_password: str
    new_password: str = Field(min_length=MIN_PASSWORD_LENGTH)


class AppConfigRequest(BaseModel):
    name: str = ""
    dockerfile_path: str = ""
    build_context: str = ""
    internal_port: int = Field(default=0, ge=0, le=65535)
    external_port: int = Field(default=0, ge=0, le=65535)
    restart_policy: str = ""
    env: dict[str, str] | None = None
    build_args: dict[str, str] | None = None
    volumes: list[str] | None = None

    def to_config(self) -> AppConfig:
        # Subclasses add request-only fields
        return AppConfig(**self.model_dump(include=set(AppConfigRequest.model_fields)))


class CreateAppRequest(AppConfigRequest):
    repo_url: str
    branch: str = "main"
    auto_start: bool = True


class CloneRequest(BaseModel):
    repo_url: str
    branch: str = "main"


# Health and auth


@app.get(f"{API_PREFIX}/health")
async def health_check() -> dict[str, str]:
    """
    Health check endpoint (no authentication required).
    """
    return {"status": "ok"}


@app.post(f"{API_PREFIX}/auth/login")
async def login(
    body: LoginRequest,
    response: Response,
    auth: AuthService = Depends(get_auth_service),
    repo: AppRepository = Depends(get_repository),
) -> dict[str, Any]:
    """
    Exchange the operator password for a session token.

    The token is returned in the body and set as the "session" cookie.
    """
    if not auth.validate_password(body.password):
        raise HTTPException(status_code=401, detail="invalid password")

    await repo.cleanup_expired_sessions()

    token = generate_session_token()
    expires_at = session_expiry()
    await repo.create_session(token, expires_at)

    response.set_cookie(
        SESSION_COOKIE,
        token,
        max_age=int(SESSION_TTL.total_seconds()),
        path="/",
        httponly=True,
    )
    return {"token": token, "expires_at": expires_at.isoformat()}


@app.post(f"{API_PREFIX}/auth/logout")
async def logout(
    request: Request,
    response: Response,
    repo: AppRepository = Depends(get_repository),
) -> dict[str, str]:
    token = extract_token(request)
    if token:
        await repo.delete_session(token)
    response.delete_cookie(SESSION_COOKIE, path="/")
    return {"message": "logged out"}


@app.get(f"{API_PREFIX}/auth/check")
async def check_auth(
    request: Request,
    repo: AppRepository = Depends(get_repository),
) -> dict[str, bool]:
    token = extract_token(request)
    return {"authenticated": bool(token) and await repo.validate_session(token)}


@app.put(f"{API_PREFIX}/auth/password")
async def update_password(
    body: UpdatePasswordRequest,
    _: str = Depends(require_session),
    auth: AuthService = Depends(get_auth_service),
) -> dict[str, str]:
    if not auth.update_password(body.current_password, body.new_password):
        raise HTTPException(status_code=401, detail="current password is incorrect")
    return {"message": "password updated"}


# Apps


@app.get(f"{API_PREFIX}/apps")
async def list_apps(
    _: str = Depends(require_session),
    manager: AppManager = Depends(get_app_manager),
) -> list[dict[str, Any]]:
    """List all apps, newest first."""
    return [a.to_dict() for a in await manager.list_apps()]


@app.post(f"{API_PREFIX}/apps", status_code=201)
async def create_app(
    body: CreateAppRequest,
    _: str = Depends(require_session),
    manager: AppManager = Depends(get_app_manager),
) -> dict[str, Any]:
    """
    Onboard a repository as a new app.

    The app is persisted as stopped; unless auto_start is false, a background
    build followed by a start is launched. Its outcome shows up in the app
    status and the build stream.
    """
    config = body.to_config()
    new_app = await manager.create_app(body.repo_url, body.branch, config)

    if body.auto_start:
        spawn(manager.build_and_start(new_app.id), f"build-and-start of {new_app.slug}")
    return new_app.to_dict()


@app.post(f"{API_PREFIX}/apps/clone")
async def clone_app(
    body: CloneRequest,
    _: str = Depends(require_session),
    manager: AppManager = Depends(get_app_manager),
) -> dict[str, Any]:
    """Clone and validate a repository without creating an app (onboarding preview)."""
    result = await manager.clone_and_validate(body.repo_url, body.branch)
    return result.to_dict()


@app.get(f"{API_PREFIX}/apps/{{app_id}}")
async def get_app(
    app_id: str,
    _: str = Depends(require_session),
    manager: AppManager = Depends(get_app_manager),
) -> dict[str, Any]:
    found = await manager.get_app(app_id)
    result = found.to_dict()
    result["uptime"] = (
        await manager.get_container_uptime(app_id) if found.status == STATUS_RUNNING else ""
    )
    return result


@app.put(f"{API_PREFIX}/apps/{{app_id}}")
async def update_app(
    app_id: str,
    body: AppConfigRequest,
    _: str = Depends(require_session),
    manager: AppManager = Depends(get_app_manager),
) -> dict[str, Any]:
    """Update app configuration; changes apply on the next build or start."""
    updated = await manager.update_app_config(app_id, body.to_config())
    return updated.to_dict()


@app.delete(f"{API_PREFIX}/apps/{{app_id}}")
async def delete_app(
    app_id: str,
    _: str = Depends(require_session),
    manager: AppManager = Depends(get_app_manager),
) -> dict[str, str]:
    await manager.delete_app(app_id)
    return {"message": "app deleted"}


@app.post(f"{API_PREFIX}/apps/{{app_id}}/build", status_code=202)
async def build_app(
    app_id: str,
    _: str = Depends(require_session),
    manager: AppManager = Depends(get_app_manager),
) -> dict[str, str]:
    """Start a background build (409 if any build is running)."""
    target = await manager.get_app(app_id)
    if manager.build_pipeline.is_building:
        raise BuildInProgressError()

    spawn(manager.build_app(app_id), f"build of {target.slug}")
    return {"message": "build started"}


@app.post(f"{API_PREFIX}/apps/{{app_id}}/build/cancel")
async def cancel_build(
    app_id: str,
    _: str = Depends(require_session),
    manager: AppManager = Depends(get_app_manager),
) -> dict[str, str]:
    await manager.get_app(app_id)
    pipeline = manager.build_pipeline
    if pipeline.current_app_id != app_id or not await pipeline.cancel():
        raise HTTPException(status_code=409, detail="no build in progress for this app")
    return {"message": "build cancelled"}


@app.post(f"{API_PREFIX}/apps/{{app_id}}/start")
async def start_app(
    app_id: str,
    _: str = Depends(require_session),
    manager: AppManager = Depends(get_app_manager),
) -> dict[str, Any]:
    return (await manager.start_app(app_id)).to_dict()


@app.post(f"{API_PREFIX}/apps/{{app_id}}/stop")
async def stop_app(
    app_id: str,
    _: str = Depends(require_session),
    manager: AppManager = Depends(get_app_manager),
) -> dict[str, Any]:
    return (await manager.stop_app(app_id)).to_dict()


@app.post(f"{API_PREFIX}/apps/{{app_id}}/restart")
async def restart_app(
    app_id: str,
    _: str = Depends(require_session),
    manager: AppManager = Depends(get_app_manager),
) -> dict[str, Any]:
    return (await manager.restart_app(app_id)).to_dict()


@app.post(f"{API_PREFIX}/apps/{{app_id}}/pull", status_code=202)
async def pull_app(
    app_id: str,
    _: str = Depends(require_session),
    manager: AppManager = Depends(get_app_manager),
) -> dict[str, str]:
    """Pull, rebuild and (if it was running) restart in the background."""
    target = await manager.get_app(app_id)
    if manager.build_pipeline.is_building:
        raise BuildInProgressError()

    spawn(manager.pull_and_rebuild(app_id), f"pull-and-rebuild of {target.slug}")
    return {"message": "pull and rebuild started"}


@app.get(f"{API_PREFIX}/apps/{{app_id}}/check-update")
async def check_update(
    app_id: str,
    _: str = Depends(require_session),
    manager: AppManager = Depends(get_app_manager),
) -> dict[str, Any]:
    return (await manager.check_app_update(app_id)).to_dict()


@app.get(f"{API_PREFIX}/apps/{{app_id}}/logs")
async def get_logs(
    app_id: str,
    tail: int = 100,
    _: str = Depends(require_session),
    manager: AppManager = Depends(get_app_manager),
) -> dict[str, str]:
    """Last lines of the app's container output."""
    return {"logs": await manager.get_app_logs(app_id, tail)}


@app.get(f"{API_PREFIX}/apps/{{app_id}}/build-logs")
async def get_build_logs(
    app_id: str,
    _: str = Depends(require_session),
    manager: AppManager = Depends(get_app_manager),
) -> dict[str, str]:
    await manager.get_app(app_id)
    return {"logs": manager.build_pipeline.get_build_log(app_id)}


@app.delete(f"{API_PREFIX}/apps/{{app_id}}/logs")
async def clear_build_logs(
    app_id: str,
    _: str = Depends(require_session),
    manager: AppManager = Depends(get_app_manager),
) -> dict[str, str]:
    await manager.get_app(app_id)
    manager.build_pipeline.clear_build_log(app_id)
    return {"message": "logs cleared"}


# Streams


async def build_with_progress(manager: AppManager, app_id: str, channel: ProgressChannel) -> None:
    """Run a build feeding a channel; rejections still end the stream."""
    try:
        await manager.build_app(app_id, channel)
    except ControllerError as e:
        channel.publish(BuildProgress.complete(app_id, False, error=str(e)))
        raise
    finally:
        channel.close()


@app.websocket(f"{API_PREFIX}/apps/{{app_id}}/build/stream")
async def build_stream(
    websocket: WebSocket,
    app_id: str,
    repo: AppRepository = Depends(get_repository),
    manager: AppManager = Depends(get_app_manager),
) -> None:
    """
    Stream build progress as JSON events until the terminal "complete" event.

    Attaches to the app's running build, or starts one if nothing is building.
    """
    await websocket.accept()
    if not await websocket_authorized(websocket, repo):
        await websocket.close(code=4401, reason="unauthorized")
        return

    if await repo.get_app(app_id) is None:
        event = BuildProgress.complete(app_id, False, error=f"app not found: {app_id}")
        await websocket.send_json(event.to_dict())
        await websocket.close()
        return

    pipeline = manager.build_pipeline
    if pipeline.is_building and pipeline.current_app_id == app_id:
        channel = pipeline.subscribe(app_id)
    else:
        channel = ProgressChannel()
        spawn(build_with_progress(manager, app_id, channel), f"streamed build of {app_id}")

    try:
        async for event in channel:
            await websocket.send_json(event.to_dict())
        await websocket.close()
    except WebSocketDisconnect:
        logger.debug(f"Build stream client for {app_id} disconnected")
    finally:
        pipeline.unsubscribe(app_id, channel)


@app.websocket(f"{API_PREFIX}/apps/{{app_id}}/logs/stream")
async def logs_stream(
    websocket: WebSocket,
    app_id: str,
    repo: AppRepository = Depends(get_repository),
    manager: AppManager = Depends(get_app_manager),
) -> None:
    """Follow the app's container output, one text message per line."""
    await websocket.accept()
    if not await websocket_authorized(websocket, repo):
        await websocket.close(code=4401, reason="unauthorized")
        return

    target = await repo.get_app(app_id)
    if target is None or not target.container_id:
        await websocket.send_text("No container running\n")
        await websocket.close()
        return

    lines = manager.container_manager.stream_logs(target.container_id, follow=True)
    try:
        async for line in lines:
            await websocket.send_text(line)
        await websocket.close()
    except WebSocketDisconnect:
        logger.debug(f"Log stream client for {app_id} disconnected")
    finally:
        await lines.aclose()


# System


@app.get(f"{API_PREFIX}/system/info")
async def system_info(
    _: str = Depends(require_session),
    manager: AppManager = Depends(get_app_manager),
) -> dict[str, Any]:
    apps = await manager.list_apps()
    try:
        docker_info = await manager.container_manager.get_docker_info()
    except ControllerError as e:
        logger.warning(f"Could not query docker info: {e}")
        docker_info = None

    return {
        "version": VERSION,
        "total_apps": len(apps),
        "running_apps": sum(1 for a in apps if a.status == STATUS_RUNNING),
        "building_app_id": manager.build_pipeline.current_app_id,
        "docker": docker_info,
    }


@app.get(f"{API_PREFIX}/system/storage")
async def system_storage(
    _: str = Depends(require_session),
    manager: AppManager = Depends(get_app_manager),
) -> dict[str, int]:
    """Disk usage in bytes per category."""
    db_file = Path(get_settings().db_path)
    database = db_file.stat().st_size if db_file.exists() else 0
    repositories = manager.git_service.get_repos_size()
    logs = manager.build_pipeline.get_logs_size()
    images = sum(a.image_size for a in await manager.list_apps())

    return {
        "database": database,
        "repositories": repositories,
        "logs": logs,
        "images": images,
        "total": database + repositories + logs + images,
    }


@app.get(f"{API_PREFIX}/system/ports")
async def system_ports(
    _: str = Depends(require_session),
    manager: AppManager = Depends(get_app_manager),
) -> dict[str, Any]:
    allocator = manager.port_allocator
    return {
        "used_ports": await allocator.get_used_ports(),
        "range": {"start": allocator.range_start, "end": allocator.range_end},
    }


@app.post(f"{API_PREFIX}/system/prune")
async def system_prune(
    _: str = Depends(require_session),
    manager: AppManager = Depends(get_app_manager),
) -> dict[str, str]:
    reclaimed = await manager.container_manager.prune_images()
    return {"message": "images pruned", "space_reclaimed": reclaimed}


@app.delete(f"{API_PREFIX}/system/logs")
async def system_clear_logs(
    _: str = Depends(require_session),
    manager: AppManager = Depends(get_app_manager),
) -> dict[str, str]:
    manager.build_pipeline.clear_all_logs()
    return {"message": "all logs cleared"}
