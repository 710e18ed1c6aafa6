"""
Lifecycle orchestration for managed apps.

AppManager drives each app through its states
(stopped, building, build-failed, starting, running, error), coordinating the
build pipeline, the port allocator, git and the container runtime. Every
failure path persists the resulting status before the error is raised, so the
record always shows which step failed.

Operations on the same app are serialized with a per-app lock; composite
operations (restart, pull-and-rebuild, build-and-start) hold it across all of
their steps.
"""

import asyncio
import logging
import time
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime

from nas_common.errors import (
    AppNotFoundError,
    ContainerNotFoundError,
    ControllerError,
    DuplicateSlugError,
    InvalidRepositoryError,
    NoPortsAvailableError,
    PortUnavailableError,
    ValidationError,
)
from nas_common.models import (
    DEFAULT_BUILD_CONTEXT,
    RESTART_POLICIES,
    STATUS_BUILD_FAILED,
    STATUS_BUILDING,
    STATUS_ERROR,
    STATUS_RUNNING,
    STATUS_STARTING,
    STATUS_STOPPED,
    App,
    AppConfig,
    CloneResult,
    UpdateCheckResult,
    format_duration,
    short_commit,
)
from nas_common.repository import AppRepository

from .build_pipeline import BuildPipeline, ProgressChannel
from .container_manager import ContainerManager
from .git_service import GitService
from .port_allocator import PortAllocator

logger = logging.getLogger(__name__)


class AppManager:
    """
    Orchestrates the lifecycle of managed apps.

    All methods are coroutines that return once the operation has finished;
    callers that want them off the request path spawn them as tasks.
    """

    def __init__(
        self,
        repository: AppRepository,
        container_manager: ContainerManager,
        git_service: GitService,
        port_allocator: PortAllocator,
        build_pipeline: BuildPipeline,
    ):
        """
        Initialize the app manager.

        Args:
            repository: App persistence
            container_manager: Container runtime wrapper
            git_service: Source control wrapper
            port_allocator: Host port allocator
            build_pipeline: Single-flight image builder
        """
        self.repository = repository
        self.container_manager = container_manager
        self.git_service = git_service
        self.port_allocator = port_allocator
        self.build_pipeline = build_pipeline

        self._app_locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, app_id: str) -> asyncio.Lock:
        lock = self._app_locks.get(app_id)
        if lock is None:
            lock = self._app_locks[app_id] = asyncio.Lock()
        return lock

    @asynccontextmanager
    async def _locked(self, app_id: str) -> AsyncIterator[None]:
        lock = self._lock_for(app_id)
        try:
            async with lock:
                yield
        except AppNotFoundError:
            # Unknown ids must not leave a lock behind
            if not lock.locked() and self._app_locks.get(app_id) is lock:
                del self._app_locks[app_id]
            raise

    async def _require_app(self, app_id: str) -> App:
        app = await self.repository.get_app(app_id)
        if app is None:
            raise AppNotFoundError(app_id)
        return app

    async def _set_status(self, app: App, status: str) -> None:
        if app.status != status:
            logger.info(f"App {app.slug}: {app.status} -> {status}")
        app.status = status
        await self.repository.update_app(app)

    # Onboarding

    async def clone_and_validate(self, repo_url: str, branch: str = "main") -> CloneResult:
        """
        Clone a repository and check that it can be deployed.

        Raises:
            InvalidRepositoryError: If the URL is missing or unusable
            DuplicateSlugError: If an app already uses the repository's slug
            GitError: If the clone fails
            DockerfileNotFoundError: If the repository has no Dockerfile
        """
        if not repo_url or not repo_url.strip():
            raise InvalidRepositoryError("repository URL is required")

        slug = self.git_service.extract_slug(repo_url)
        if not slug:
            raise InvalidRepositoryError(f"invalid repository URL: {repo_url!r}")

        # The clone would replace the existing app's working tree
        if await self.repository.get_app_by_slug(slug) is not None:
            raise DuplicateSlugError(slug)

        return await self.git_service.clone_repo(repo_url, branch or "main")

    async def create_app(
        self, repo_url: str, branch: str = "main", config: AppConfig | None = None
    ) -> App:
        """
        Onboard a repository as a new app in the stopped state.

        Args:
            repo_url: Repository URL
            branch: Branch to deploy
            config: Operator overrides (win over manifest values)

        Returns:
            The persisted app

        Raises:
            ValidationError: On a bad URL, missing Dockerfile or bad config
            ConflictError: On a duplicate slug, taken port or exhausted range
            GitError: If the clone fails
        """
        config = config or AppConfig()
        if config.restart_policy and config.restart_policy not in RESTART_POLICIES:
            raise ValidationError(f"invalid restart policy: {config.restart_policy}")

        branch = branch or "main"
        clone = await self.clone_and_validate(repo_url, branch)
        manifest = clone.manifest

        port = 0
        try:
            if config.external_port:
                if not self.port_allocator.in_range(config.external_port):
                    raise PortUnavailableError(
                        f"port {config.external_port} is outside the managed range"
                    )
                if not await self.port_allocator.is_port_available(
                    config.external_port, include_reservations=True
                ):
                    raise PortUnavailableError(f"port {config.external_port} is not available")
                port = config.external_port
            else:
                port = await self.port_allocator.allocate_port()

            env: dict[str, str] = {}
            if manifest is not None:
                env.update(manifest.env)
            env.update(config.env or {})

            volumes = list(config.volumes) if config.volumes is not None else []
            if not volumes and manifest is not None:
                volumes = list(manifest.volumes)

            app = App(
                id=str(uuid.uuid4()),
                name=config.name or clone.name,
                slug=clone.slug,
                description=clone.description,
                repo_url=repo_url.strip(),
                branch=branch,
                dockerfile_path=config.dockerfile_path or clone.dockerfile_path,
                build_context=config.build_context or DEFAULT_BUILD_CONTEXT,
                build_args=dict(config.build_args or {}),
                image_name=App.image_name_for(clone.slug),
                container_name=clone.slug,
                internal_port=config.internal_port or clone.suggested_port,
                external_port=port,
                env=env,
                volumes=volumes,
                status=STATUS_STOPPED,
                last_pulled=datetime.now(UTC),
            )
            if config.restart_policy:
                app.restart_policy = config.restart_policy

            try:
                app.last_commit = await self.git_service.get_last_commit(clone.slug)
            except ControllerError as e:
                logger.warning(f"Could not read HEAD of {clone.slug}: {e}")

            await self.repository.create_app(app)
        except BaseException:
            self.git_service.remove_repo(clone.slug)
            raise
        finally:
            if port:
                self.port_allocator.release(port)

        logger.info(f"Created app {app.slug} ({app.id}) on port {app.external_port}")
        return app

    # Build

    async def build_app(self, app_id: str, progress: ProgressChannel | None = None) -> App:
        """
        Build an app's image. A successful build always lands in stopped.

        Raises:
            AppNotFoundError: If the app does not exist
            BuildInProgressError: If any build is already running
            ContainerRuntimeError: If the build fails (status build-failed)
        """
        async with self._locked(app_id):
            return await self._build_locked(app_id, progress)

    async def _build_locked(self, app_id: str, progress: ProgressChannel | None) -> App:
        app = await self._require_app(app_id)
        async with self.build_pipeline.claim(app.id):
            return await self._build_claimed(app, progress)

    async def _build_claimed(self, app: App, progress: ProgressChannel | None) -> App:
        if app.status in (STATUS_RUNNING, STATUS_STARTING):
            # The old container would keep serving while the app reads stopped
            await self._stop_locked(app)

        app.last_build = datetime.now(UTC)
        await self._set_status(app, STATUS_BUILDING)

        repo_path = self.git_service.get_repo_path(app.slug)
        context_path = (repo_path / app.build_context).resolve()
        dockerfile_path = (repo_path / app.dockerfile_path).resolve()

        start = time.monotonic()
        try:
            await self.build_pipeline.build_claimed(
                app, str(context_path), progress, dockerfile_path=str(dockerfile_path)
            )
        except (Exception, asyncio.CancelledError):
            app.last_build_success = False
            app.last_build_duration = format_duration(time.monotonic() - start)
            await self._set_status(app, STATUS_BUILD_FAILED)
            raise

        app.last_build_success = True
        app.last_build_duration = format_duration(time.monotonic() - start)
        try:
            app.image_size = await self.container_manager.get_image_size(app.image_name)
        except ControllerError as e:
            logger.warning(f"Could not read image size of {app.image_name}: {e}")
        await self._set_status(app, STATUS_STOPPED)
        return app

    # Run

    async def start_app(self, app_id: str) -> App:
        """
        Create and start a fresh container for an app.

        Raises:
            AppNotFoundError: If the app does not exist
            NoPortsAvailableError: If no port can be assigned (status error)
            ContainerRuntimeError: If create or start fails (status error)
        """
        async with self._locked(app_id):
            return await self._start_locked(app_id)

    async def _remove_stale_containers(self, app: App) -> None:
        try:
            existing = await self.container_manager.get_container_by_name(app.container_name)
        except ControllerError as e:
            logger.warning(f"Could not look up container {app.container_name}: {e}")
            existing = None

        stale_ids = {app.container_id} if app.container_id else set()
        if existing is not None:
            stale_ids.add(existing.container_id)

        for container_id in stale_ids:
            try:
                await self.container_manager.remove_container(container_id, force=True)
            except ControllerError as e:
                logger.warning(f"Failed to remove container {container_id}: {e}")

    async def _start_locked(self, app_id: str) -> App:
        app = await self._require_app(app_id)

        await self._remove_stale_containers(app)
        app.container_id = ""

        try:
            port_ok = app.external_port > 0 and await self.port_allocator.is_port_available(
                app.external_port, exclude_app_id=app.id
            )
            if not port_ok:
                new_port = await self.port_allocator.find_next_available(
                    app.external_port, exclude_app_id=app.id
                )
                try:
                    logger.info(
                        f"Port {app.external_port} unavailable for {app.slug}, using {new_port}"
                    )
                    app.external_port = new_port
                    await self.repository.update_app(app)
                finally:
                    self.port_allocator.release(new_port)
        except NoPortsAvailableError:
            await self._set_status(app, STATUS_ERROR)
            raise

        try:
            container_id = await self.container_manager.create_container(
                name=app.container_name,
                image_name=app.image_name,
                internal_port=app.internal_port,
                external_port=app.external_port,
                env=app.env,
                restart_policy=app.restart_policy,
                volumes=app.volumes,
            )
        except Exception:
            await self._set_status(app, STATUS_ERROR)
            raise

        app.container_id = container_id
        await self._set_status(app, STATUS_STARTING)

        try:
            await self.container_manager.start_container(container_id)
        except Exception:
            await self._set_status(app, STATUS_ERROR)
            raise

        await self._set_status(app, STATUS_RUNNING)
        return app

    async def stop_app(self, app_id: str) -> App:
        """
        Stop an app's container. Always ends in stopped.

        Raises:
            AppNotFoundError: If the app does not exist
        """
        async with self._locked(app_id):
            app = await self._require_app(app_id)
            await self._stop_locked(app)
            return app

    async def _stop_locked(self, app: App) -> None:
        stopped = False
        if app.container_id:
            try:
                await self.container_manager.stop_container(app.container_id)
                stopped = True
            except ControllerError as e:
                logger.warning(f"Stop by id failed for {app.slug}: {e}")

        if not stopped:
            try:
                existing = await self.container_manager.get_container_by_name(app.container_name)
                if existing is not None and existing.running:
                    await self.container_manager.stop_container(existing.container_id)
            except ControllerError as e:
                logger.warning(f"Stop by name failed for {app.slug}: {e}")

        await self._set_status(app, STATUS_STOPPED)

    async def restart_app(self, app_id: str) -> App:
        """Stop (errors ignored) then start."""
        async with self._locked(app_id):
            app = await self._require_app(app_id)
            try:
                await self._stop_locked(app)
            except ControllerError as e:
                logger.warning(f"Ignoring stop failure while restarting {app.slug}: {e}")
            return await self._start_locked(app_id)

    async def build_and_start(self, app_id: str, progress: ProgressChannel | None = None) -> App:
        """Build the image, then start the app if the build succeeded."""
        async with self._locked(app_id):
            await self._build_locked(app_id, progress)
            return await self._start_locked(app_id)

    async def pull_and_rebuild(
        self, app_id: str, progress: ProgressChannel | None = None
    ) -> App:
        """
        Pull the latest source, rebuild, and restart if the app was running.

        A failure at the pull or build stage aborts without restarting.

        Raises:
            AppNotFoundError: If the app does not exist
            BuildInProgressError: If any build is already running
            GitError: If the pull fails
            ContainerRuntimeError: If the build or start fails
        """
        async with self._locked(app_id):
            app = await self._require_app(app_id)
            was_running = app.status == STATUS_RUNNING

            async with self.build_pipeline.claim(app.id):
                if was_running:
                    await self._stop_locked(app)

                commit = await self.git_service.pull_repo(app.slug, app.branch)
                app.last_commit = short_commit(commit)
                app.last_pulled = datetime.now(UTC)
                await self.repository.update_app(app)
                logger.info(f"Pulled {app.slug} at {app.last_commit}")

                app = await self._build_claimed(app, progress)

            if was_running:
                app = await self._start_locked(app_id)
            return app

    async def delete_app(self, app_id: str) -> None:
        """
        Tear down an app and delete its record.

        Container, image, working tree and build log removal are best-effort;
        only a failure to delete the record is raised.

        Raises:
            AppNotFoundError: If the app does not exist
        """
        async with self._locked(app_id):
            app = await self._require_app(app_id)

            if app.container_id:
                try:
                    await self.container_manager.stop_container(app.container_id)
                except ControllerError as e:
                    logger.warning(f"Failed to stop container for {app.slug}: {e}")
            await self._remove_stale_containers(app)

            try:
                await self.container_manager.remove_image(app.image_name)
            except ControllerError as e:
                logger.warning(f"Failed to remove image {app.image_name}: {e}")

            self.git_service.remove_repo(app.slug)

            try:
                self.build_pipeline.clear_build_log(app.id)
            except OSError as e:
                logger.warning(f"Failed to remove build log for {app.slug}: {e}")

            await self.repository.delete_app(app_id)
            logger.info(f"Deleted app {app.slug} ({app.id})")

        self._app_locks.pop(app_id, None)

    # Queries and configuration

    async def get_app(self, app_id: str) -> App:
        return await self._require_app(app_id)

    async def list_apps(self) -> list[App]:
        return await self.repository.list_apps()

    async def check_app_update(self, app_id: str) -> UpdateCheckResult:
        """Compare the app's checkout with its remote branch."""
        app = await self._require_app(app_id)
        return await self.git_service.check_for_updates(app.slug, app.branch)

    async def update_app_config(self, app_id: str, config: AppConfig) -> App:
        """
        Apply configuration changes; they take effect on the next build or start.

        Raises:
            AppNotFoundError: If the app does not exist
            ValidationError: On an unknown restart policy
            PortUnavailableError: If a new external port is out of range or taken
        """
        async with self._locked(app_id):
            app = await self._require_app(app_id)

            if config.restart_policy and config.restart_policy not in RESTART_POLICIES:
                raise ValidationError(f"invalid restart policy: {config.restart_policy}")

            if config.external_port and config.external_port != app.external_port:
                if not self.port_allocator.in_range(config.external_port):
                    raise PortUnavailableError(
                        f"port {config.external_port} is outside the managed range"
                    )
                if not await self.port_allocator.is_port_available(
                    config.external_port, exclude_app_id=app.id, include_reservations=True
                ):
                    raise PortUnavailableError(f"port {config.external_port} is not available")
                app.external_port = config.external_port

            if config.name:
                app.name = config.name
            if config.dockerfile_path:
                app.dockerfile_path = config.dockerfile_path
            if config.build_context:
                app.build_context = config.build_context
            if config.internal_port:
                app.internal_port = config.internal_port
            if config.restart_policy:
                app.restart_policy = config.restart_policy
            if config.env is not None:
                app.env = dict(config.env)
            if config.build_args is not None:
                app.build_args = dict(config.build_args)
            if config.volumes is not None:
                app.volumes = list(config.volumes)

            await self.repository.update_app(app)
            return app

    async def get_container_uptime(self, app_id: str) -> str:
        """Uptime of the app's container, or "" when it is not running."""
        app = await self._require_app(app_id)
        if not app.container_id:
            return ""
        try:
            return await self.container_manager.get_container_uptime(app.container_id)
        except ContainerNotFoundError:
            return ""

    async def get_app_logs(self, app_id: str, tail: int = 100) -> str:
        """
        Last lines of the app's container output.

        Raises:
            ContainerNotFoundError: If the app has no container
        """
        app = await self._require_app(app_id)
        if not app.container_id:
            raise ContainerNotFoundError(app.container_name)
        return await self.container_manager.get_container_logs(app.container_id, tail)
