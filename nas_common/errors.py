"""
Error taxonomy for the NAS controller.

Every error raised by the core derives from ControllerError and belongs to one
of four families. The API layer maps each family to a distinct HTTP status:

- ValidationError -> 400 (bad input, nothing was mutated)
- ConflictError   -> 409 (build in progress, ports exhausted, duplicate slug)
- NotFoundError   -> 404 (unknown app, missing container)
- ExternalError   -> 502 (git or container runtime failure)
"""


class ControllerError(Exception):
    """Base class for all controller errors."""


class ValidationError(ControllerError):
    """Request rejected before any state was touched."""


class InvalidRepositoryError(ValidationError):
    """Repository URL is missing or cannot be turned into a slug."""


class DockerfileNotFoundError(ValidationError):
    """Cloned repository does not contain a Dockerfile."""


class ConflictError(ControllerError):
    """Request conflicts with current system state."""


class BuildInProgressError(ConflictError):
    """Another image build is already running."""

    def __init__(self, message: str = "another build is in progress"):
        super().__init__(message)


class NoPortsAvailableError(ConflictError):
    """The managed port range is exhausted."""

    def __init__(self, range_start: int, range_end: int):
        super().__init__(f"no available ports in range {range_start}-{range_end}")
        self.range_start = range_start
        self.range_end = range_end


class DuplicateSlugError(ConflictError):
    """An app with the same slug already exists."""

    def __init__(self, slug: str):
        super().__init__(f"an app with slug '{slug}' already exists")
        self.slug = slug


class PortUnavailableError(ConflictError):
    """A requested external port is outside the range or already taken."""


class NotFoundError(ControllerError):
    """Referenced entity does not exist."""


class AppNotFoundError(NotFoundError):
    def __init__(self, app_id: str):
        super().__init__(f"app not found: {app_id}")
        self.app_id = app_id


class ContainerNotFoundError(NotFoundError):
    def __init__(self, container: str):
        super().__init__(f"container not found: {container}")
        self.container = container


class ExternalError(ControllerError):
    """An external process (git, docker) failed."""


class GitError(ExternalError):
    pass


class ContainerRuntimeError(ExternalError):
    pass


class BuildCancelledError(ContainerRuntimeError):
    def __init__(self, message: str = "build cancelled"):
        super().__init__(message)
