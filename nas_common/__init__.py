"""
NAS Common module.

This module contains shared domain models, the persistence interface and the
error taxonomy used across the controller components (server, controller,
persistence, admin).

The common module has no dependencies on other nas_* modules, making it
a pure domain layer that can be imported by any component.
"""

from .errors import (
    AppNotFoundError,
    BuildCancelledError,
    BuildInProgressError,
    ConflictError,
    ContainerNotFoundError,
    ContainerRuntimeError,
    ControllerError,
    DockerfileNotFoundError,
    DuplicateSlugError,
    ExternalError,
    GitError,
    InvalidRepositoryError,
    NoPortsAvailableError,
    NotFoundError,
    PortUnavailableError,
    ValidationError,
)
from .models import App, AppConfig, AppManifest, BuildProgress, CloneResult, UpdateCheckResult
from .repository import AppRepository

__all__ = [
    "App",
    "AppConfig",
    "AppManifest",
    "AppRepository",
    "BuildProgress",
    "CloneResult",
    "UpdateCheckResult",
    "ControllerError",
    "ValidationError",
    "InvalidRepositoryError",
    "DockerfileNotFoundError",
    "ConflictError",
    "BuildInProgressError",
    "NoPortsAvailableError",
    "DuplicateSlugError",
    "PortUnavailableError",
    "NotFoundError",
    "AppNotFoundError",
    "ContainerNotFoundError",
    "ExternalError",
    "GitError",
    "ContainerRuntimeError",
    "BuildCancelledError",
]
