"""
Startup reconciliation of persisted app state with live containers.

The container runtime is authoritative and the database advisory: after an
ungraceful shutdown, records may name containers that are gone, or miss the
id of a container that was created just before the crash.
"""

import logging

from nas_common.errors import ControllerError
from nas_common.models import STATUS_RUNNING, STATUS_STARTING, STATUS_STOPPED, App
from nas_common.repository import AppRepository

from .container_manager import ContainerManager

logger = logging.getLogger(__name__)


class StateReconciler:
    """Brings every app record in line with the container runtime."""

    def __init__(self, repository: AppRepository, container_manager: ContainerManager):
        self.repository = repository
        self.container_manager = container_manager

    async def reconcile_once(self) -> int:
        """
        Reconcile every persisted app once.

        Per-app failures are logged and do not abort the pass.

        Returns:
            Number of apps whose record changed
        """
        apps = await self.repository.list_apps()
        logger.info(f"Reconciling {len(apps)} apps")

        changed = 0
        for app in apps:
            try:
                if await self._reconcile_app(app):
                    changed += 1
            except Exception as e:
                logger.error(f"Error reconciling app {app.slug}: {e}", exc_info=True)

        logger.info(f"Reconciliation finished, {changed} apps corrected")
        return changed

    async def _reconcile_app(self, app: App) -> bool:
        before = (app.status, app.container_id)

        # 1. Adopt a container created before the id was persisted
        if not app.container_id and app.container_name:
            try:
                existing = await self.container_manager.get_container_by_name(app.container_name)
            except ControllerError as e:
                logger.warning(f"Could not look up container {app.container_name}: {e}")
                existing = None
            if existing is not None:
                logger.info(f"Adopting container {existing.container_id[:12]} for {app.slug}")
                app.container_id = existing.container_id

        # 2. Match status to the live container
        if app.container_id:
            try:
                live = await self.container_manager.get_container_status(app.container_id)
            except ControllerError as e:
                logger.info(f"Container for {app.slug} is gone: {e}")
                app.container_id = ""
                app.status = STATUS_STOPPED
            else:
                if live == "running":
                    app.status = STATUS_RUNNING
                else:
                    app.status = STATUS_STOPPED

        # 3. Running/starting are meaningless without a container
        elif app.status in (STATUS_RUNNING, STATUS_STARTING):
            app.status = STATUS_STOPPED

        # 4. Persist
        await self.repository.update_app(app)

        if (app.status, app.container_id) != before:
            logger.info(
                f"App {app.slug}: {before[0]} -> {app.status} "
                f"(container {app.container_id[:12] or 'none'})"
            )
            return True
        return False
