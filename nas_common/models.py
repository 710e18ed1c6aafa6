"""
Data models for managed applications.

These models represent the domain objects used throughout the controller,
independent of the underlying storage mechanism.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

AppStatus = Literal["stopped", "building", "build-failed", "starting", "running", "error"]

STATUS_STOPPED = "stopped"
STATUS_BUILDING = "building"
STATUS_BUILD_FAILED = "build-failed"
STATUS_STARTING = "starting"
STATUS_RUNNING = "running"
STATUS_ERROR = "error"

RESTART_POLICIES = ("no", "always", "unless-stopped", "on-failure")

DEFAULT_DOCKERFILE_PATH = "./Dockerfile"
DEFAULT_BUILD_CONTEXT = "."
DEFAULT_INTERNAL_PORT = 80
DEFAULT_RESTART_POLICY = "unless-stopped"

SHORT_COMMIT_LENGTH = 8


def _isoformat(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(UTC).replace(tzinfo=None).isoformat() + "Z"


def short_commit(commit: str) -> str:
    """Truncate a full commit hash to its short display form."""
    return commit[:SHORT_COMMIT_LENGTH]


def format_duration(seconds: float) -> str:
    """
    Format a duration rounded to whole seconds, e.g. "45s", "1m23s", "1h2m3s".

    Args:
        seconds: Duration in seconds

    Returns:
        Compact human-readable duration string
    """
    total = int(round(seconds))
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)

    if hours:
        return f"{hours}h{minutes}m{secs}s"
    if minutes:
        return f"{minutes}m{secs}s"
    return f"{secs}s"


@dataclass
class App:
    """
    A managed application built from a git repository with a Dockerfile.

    Apps progress through states:
    stopped -> building -> stopped | build-failed
    stopped -> starting -> running | error
    """

    id: str
    name: str
    slug: str
    repo_url: str
    branch: str
    description: str = ""
    last_commit: str = ""
    last_pulled: datetime | None = None

    dockerfile_path: str = DEFAULT_DOCKERFILE_PATH  # relative to repo root
    build_context: str = DEFAULT_BUILD_CONTEXT  # subpath of repo root
    build_args: dict[str, str] = field(default_factory=dict)

    image_name: str = ""
    container_name: str = ""
    container_id: str = ""  # empty when no container exists
    internal_port: int = DEFAULT_INTERNAL_PORT
    external_port: int = 0
    restart_policy: str = DEFAULT_RESTART_POLICY
    env: dict[str, str] = field(default_factory=dict)
    volumes: list[str] = field(default_factory=list)  # "host:container" specs

    status: str = STATUS_STOPPED
    last_build: datetime | None = None
    last_build_duration: str = ""
    last_build_success: bool = False
    image_size: int = 0

    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @staticmethod
    def image_name_for(slug: str) -> str:
        """Image tag used for an app's builds."""
        return f"{slug}:latest"

    def to_dict(self) -> dict[str, Any]:
        """Convert app to dictionary format (for API responses)."""
        return {
            "id": self.id,
            "name": self.name,
            "slug": self.slug,
            "description": self.description,
            "repo_url": self.repo_url,
            "branch": self.branch,
            "last_commit": self.last_commit,
            "last_pulled": _isoformat(self.last_pulled),
            "dockerfile_path": self.dockerfile_path,
            "build_context": self.build_context,
            "build_args": dict(self.build_args),
            "image_name": self.image_name,
            "container_name": self.container_name,
            "container_id": self.container_id,
            "internal_port": self.internal_port,
            "external_port": self.external_port,
            "restart_policy": self.restart_policy,
            "env": dict(self.env),
            "volumes": list(self.volumes),
            "status": self.status,
            "last_build": _isoformat(self.last_build),
            "last_build_duration": self.last_build_duration,
            "last_build_success": self.last_build_success,
            "image_size": self.image_size,
            "created_at": _isoformat(self.created_at),
            "updated_at": _isoformat(self.updated_at),
        }


@dataclass
class BuildProgress:
    """
    A single event emitted while an image build runs.

    Events are ephemeral: they are streamed to observers but never persisted
    (the build log file is the durable record).
    """

    app_id: str
    type: str  # "log", "error" or "complete"
    data: str | None = None  # Log text for "log" and successful "complete"
    error: str | None = None  # Failure text for "error" and failed "complete"
    success: bool | None = None  # Result for "complete" type
    timestamp: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.type == "complete"

    @classmethod
    def log(cls, app_id: str, message: str) -> "BuildProgress":
        return cls(app_id=app_id, type="log", data=message, timestamp=datetime.now(UTC))

    @classmethod
    def complete(
        cls, app_id: str, success: bool, message: str | None = None, error: str | None = None
    ) -> "BuildProgress":
        return cls(
            app_id=app_id,
            type="complete",
            data=message,
            error=error,
            success=success,
            timestamp=datetime.now(UTC),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert event to dictionary format (for JSON serialization)."""
        result: dict[str, Any] = {"app_id": self.app_id, "type": self.type}
        if self.data is not None:
            result["data"] = self.data
        if self.error is not None:
            result["error"] = self.error
        if self.success is not None:
            result["success"] = self.success
        return result


@dataclass
class UpdateCheckResult:
    """Comparison of the local checkout against the remote branch tip."""

    has_update: bool
    local_commit: str
    remote_commit: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "has_update": self.has_update,
            "local_commit": self.local_commit,
            "remote_commit": self.remote_commit,
        }


@dataclass
class AppManifest:
    """
    Optional nas-controller.json shipped in a repository root.

    Supplies defaults for onboarding; operator-supplied config wins.
    """

    name: str = ""
    description: str = ""
    default_port: int = 0
    env: dict[str, str] = field(default_factory=dict)
    volumes: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AppManifest":
        """Create manifest from its JSON file contents, ignoring bad fields."""
        env = data.get("env") or {}
        volumes = data.get("volumes") or []
        try:
            default_port = int(data.get("defaultPort") or 0)
        except (TypeError, ValueError):
            default_port = 0
        return cls(
            name=str(data.get("name") or ""),
            description=str(data.get("description") or ""),
            default_port=default_port,
            env={str(k): str(v) for k, v in env.items()} if isinstance(env, dict) else {},
            volumes=[str(v) for v in volumes] if isinstance(volumes, list) else [],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "defaultPort": self.default_port,
            "env": dict(self.env),
            "volumes": list(self.volumes),
        }


@dataclass
class CloneResult:
    """Outcome of cloning and validating a repository during onboarding."""

    slug: str
    name: str
    description: str = ""
    has_dockerfile: bool = False
    dockerfile_path: str = DEFAULT_DOCKERFILE_PATH
    manifest: AppManifest | None = None
    suggested_port: int = DEFAULT_INTERNAL_PORT

    def to_dict(self) -> dict[str, Any]:
        return {
            "slug": self.slug,
            "name": self.name,
            "description": self.description,
            "has_dockerfile": self.has_dockerfile,
            "dockerfile_path": self.dockerfile_path,
            "manifest": self.manifest.to_dict() if self.manifest else None,
            "suggested_port": self.suggested_port,
        }


@dataclass
class AppConfig:
    """
    Operator overrides applied when creating or reconfiguring an app.

    Empty/zero/None fields mean "keep the current or detected value".
    """

    name: str = ""
    dockerfile_path: str = ""
    build_context: str = ""
    internal_port: int = 0
    external_port: int = 0
    restart_policy: str = ""
    env: dict[str, str] | None = None
    build_args: dict[str, str] | None = None
    volumes: list[str] | None = None
