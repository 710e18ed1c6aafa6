"""
Container manager for Docker-based app execution.

This module provides an abstraction over Docker operations for building app
images and managing app containers. Every call shells out to the docker CLI
through asyncio subprocesses, so the controller only needs the docker binary
and access to the daemon socket.
"""

import asyncio
import json
import logging
import os
from collections.abc import AsyncGenerator
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Literal, Protocol

from nas_common.errors import ContainerNotFoundError, ContainerRuntimeError

logger = logging.getLogger(__name__)

# Seconds docker waits for a graceful stop before killing
STOP_TIMEOUT = 30


class LogWriter(Protocol):
    """Anything that accepts chunks of build output."""

    def write(self, data: str) -> None: ...


@dataclass
class ContainerInfo:
    """
    Information about a Docker container.

    Represents the current state of a container from Docker's perspective.
    """

    container_id: str
    name: str
    status: Literal[
        "created", "running", "exited", "paused", "restarting", "removing", "dead"
    ]
    exit_code: int | None
    started_at: datetime | None
    finished_at: datetime | None

    @property
    def running(self) -> bool:
        return self.status == "running"


def _parse_docker_time(value: str | None) -> datetime | None:
    """Parse docker's RFC 3339 timestamps (nanosecond precision, Z suffix)."""
    if not value or value.startswith("0001-01-01"):
        return None
    try:
        trimmed = value.replace("Z", "+00:00")
        # Python only accepts up to microseconds
        if "." in trimmed:
            head, tail = trimmed.split(".", 1)
            frac, _, offset = tail.partition("+")
            trimmed = f"{head}.{frac[:6]}+{offset}" if offset else f"{head}.{frac[:6]}"
        return datetime.fromisoformat(trimmed)
    except (ValueError, AttributeError):
        return None


def format_uptime(started_at: datetime, now: datetime | None = None) -> str:
    """
    Format container uptime as "2d 3h", "4h 12m" or "7m".

    Args:
        started_at: When the container started
        now: Reference time (defaults to current UTC time)

    Returns:
        Compact uptime string
    """
    now = now or datetime.now(UTC)
    seconds = max(0, int((now - started_at).total_seconds()))
    days, remainder = divmod(seconds, 86400)
    hours, remainder = divmod(remainder, 3600)
    minutes = remainder // 60

    if days > 0:
        return f"{days}d {hours}h"
    if hours > 0:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"


def restart_policy_arg(policy: str) -> str:
    """Translate an app restart policy into a docker --restart value."""
    if policy in ("always", "unless-stopped"):
        return policy
    if policy == "on-failure":
        return "on-failure:3"
    return "no"


class ContainerManager:
    """
    Manages Docker images and containers for managed apps.

    This class provides high-level operations for building images, creating,
    monitoring and cleaning up the containers that run the apps.
    """

    def __init__(self, docker_bin: str = "docker"):
        """
        Initialize the container manager.

        Args:
            docker_bin: Name or path of the docker CLI binary
        """
        self.docker_bin = docker_bin

    async def _run(self, *args: str) -> tuple[int, str, str]:
        """
        Run a docker command to completion.

        Args:
            *args: Arguments passed after the docker binary

        Returns:
            Tuple of (return code, stdout, stderr)
        """
        process = await asyncio.create_subprocess_exec(
            self.docker_bin,
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )

        stdout, stderr = await process.communicate()
        return process.returncode, stdout.decode().strip(), stderr.decode().strip()

    async def build_image(
        self,
        context_path: str,
        dockerfile_path: str,
        image_name: str,
        build_args: dict[str, str] | None,
        log_writer: LogWriter | None = None,
    ) -> None:
        """
        Build an image, streaming the build output into a writer.

        Args:
            context_path: Directory sent to the daemon as build context
            dockerfile_path: Dockerfile location (absolute, or relative to context)
            image_name: Tag for the resulting image
            build_args: Build-time variables
            log_writer: Receives every output line as it is produced

        Raises:
            ContainerRuntimeError: If the build fails

        Cancelling the calling task terminates the docker process.
        """
        if not os.path.isabs(dockerfile_path):
            dockerfile_path = os.path.join(context_path, dockerfile_path)

        args = [
            "build",
            "--rm",
            "--force-rm",
            "-t",
            image_name,
            "-f",
            dockerfile_path,
        ]
        for key, value in (build_args or {}).items():
            args.extend(["--build-arg", f"{key}={value}"])
        args.append(context_path)

        env = dict(os.environ)
        env["BUILDKIT_PROGRESS"] = "plain"

        process = await asyncio.create_subprocess_exec(
            self.docker_bin,
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            env=env,
        )

        assert process.stdout is not None

        tail: list[str] = []
        try:
            while True:
                line = await process.stdout.readline()
                if not line:
                    break
                text = line.decode(errors="replace")
                tail = (tail + [text])[-5:]
                if log_writer is not None:
                    log_writer.write(text)
            await process.wait()
        finally:
            # Clean up process if the build was cancelled mid-stream
            if process.returncode is None:
                process.terminate()
                await process.wait()

        if process.returncode != 0:
            detail = "".join(tail).strip()
            raise ContainerRuntimeError(
                f"image build failed (exit code {process.returncode}): {detail}"
            )

    async def create_container(
        self,
        name: str,
        image_name: str,
        internal_port: int,
        external_port: int,
        env: dict[str, str] | None = None,
        restart_policy: str = "unless-stopped",
        volumes: list[str] | None = None,
    ) -> str:
        """
        Create (but don't start) an app container.

        Args:
            name: Container name
            image_name: Image to run
            internal_port: Container-side port to publish
            external_port: Host-side port bound on all interfaces
            env: Environment variables
            restart_policy: One of no, always, unless-stopped, on-failure
            volumes: Bind specs in "host:container" form

        Returns:
            Docker container ID

        Raises:
            ContainerRuntimeError: If container creation fails
        """
        args = [
            "create",
            "--name",
            name,
            "-p",
            f"0.0.0.0:{external_port}:{internal_port}/tcp",
            "--restart",
            restart_policy_arg(restart_policy),
        ]
        for key, value in (env or {}).items():
            args.extend(["-e", f"{key}={value}"])
        for volume in volumes or []:
            args.extend(["-v", volume])
        args.append(image_name)

        code, stdout, stderr = await self._run(*args)
        if code != 0:
            raise ContainerRuntimeError(f"Failed to create container: {stderr}")

        return stdout.splitlines()[-1] if stdout else ""

    async def start_container(self, container_id: str) -> None:
        """
        Start a created container.

        Args:
            container_id: Docker container ID or name

        Raises:
            ContainerRuntimeError: If container start fails
        """
        code, _, stderr = await self._run("start", container_id)
        if code != 0:
            raise ContainerRuntimeError(f"Failed to start container: {stderr}")

    async def stop_container(self, container_id: str, timeout: int = STOP_TIMEOUT) -> None:
        """
        Stop a running container.

        Args:
            container_id: Docker container ID or name
            timeout: Seconds to wait before killing container

        Raises:
            ContainerNotFoundError: If the container does not exist
            ContainerRuntimeError: If stop operation fails
        """
        code, _, stderr = await self._run("stop", "--time", str(timeout), container_id)
        if code != 0:
            if "No such container" in stderr:
                raise ContainerNotFoundError(container_id)
            raise ContainerRuntimeError(f"Failed to stop container: {stderr}")

    async def remove_container(self, container_id: str, force: bool = False) -> None:
        """
        Remove a container.

        Args:
            container_id: Docker container ID or name
            force: If True, force removal even if running

        Raises:
            ContainerRuntimeError: If removal fails
        """
        args = ["rm"]
        if force:
            args.append("--force")
        args.append(container_id)

        code, _, stderr = await self._run(*args)
        if code != 0:
            # Ignore "already removed" errors
            if "No such container" not in stderr:
                raise ContainerRuntimeError(f"Failed to remove container: {stderr}")

    async def inspect_container(self, container: str) -> ContainerInfo:
        """
        Inspect a container by ID or name.

        Args:
            container: Docker container ID or name

        Returns:
            ContainerInfo for the container

        Raises:
            ContainerNotFoundError: If the container does not exist
            ContainerRuntimeError: If docker output cannot be parsed
        """
        code, stdout, _ = await self._run("container", "inspect", container)
        if code != 0:
            raise ContainerNotFoundError(container)

        try:
            data = json.loads(stdout)
            if not data:
                raise ContainerNotFoundError(container)

            info = data[0]
            state = info["State"]
            return ContainerInfo(
                container_id=info["Id"],
                name=info.get("Name", "").lstrip("/"),
                status=state["Status"].lower(),
                exit_code=state.get("ExitCode"),
                started_at=_parse_docker_time(state.get("StartedAt")),
                finished_at=_parse_docker_time(state.get("FinishedAt")),
            )
        except (json.JSONDecodeError, KeyError, IndexError) as e:
            raise ContainerRuntimeError(f"Failed to parse container info: {e}") from e

    async def get_container_status(self, container_id: str) -> str:
        """
        Report whether a container is running.

        Args:
            container_id: Docker container ID or name

        Returns:
            "running" or "stopped"

        Raises:
            ContainerNotFoundError: If the container does not exist
        """
        info = await self.inspect_container(container_id)
        return "running" if info.running else "stopped"

    async def get_container_by_name(self, name: str) -> ContainerInfo | None:
        """
        Find a container (running or not) by exact name.

        Args:
            name: Container name

        Returns:
            ContainerInfo if container exists, None otherwise
        """
        code, stdout, stderr = await self._run(
            "ps", "-a", "--filter", f"name=^/{name}$", "--format", "{{.ID}}"
        )
        if code != 0:
            raise ContainerRuntimeError(f"Failed to list containers: {stderr}")

        ids = [line for line in stdout.splitlines() if line]
        if not ids:
            return None

        try:
            return await self.inspect_container(ids[0])
        except ContainerNotFoundError:
            # Removed between ps and inspect
            return None

    async def get_container_uptime(self, container_id: str) -> str:
        """
        Get a running container's uptime.

        Args:
            container_id: Docker container ID or name

        Returns:
            Uptime string, or "" if the container is not running
        """
        info = await self.inspect_container(container_id)
        if not info.running or info.started_at is None:
            return ""
        return format_uptime(info.started_at)

    async def remove_image(self, image_name: str) -> None:
        """
        Force-remove an image.

        Raises:
            ContainerRuntimeError: If removal fails
        """
        code, _, stderr = await self._run("image", "rm", "--force", image_name)
        if code != 0:
            raise ContainerRuntimeError(f"Failed to remove image: {stderr}")

    async def get_image_size(self, image_name: str) -> int:
        """
        Get an image's size in bytes.

        Raises:
            ContainerRuntimeError: If the image cannot be inspected
        """
        code, stdout, stderr = await self._run(
            "image", "inspect", "--format", "{{.Size}}", image_name
        )
        if code != 0:
            raise ContainerRuntimeError(f"Failed to inspect image: {stderr}")
        try:
            return int(stdout)
        except ValueError as e:
            raise ContainerRuntimeError(f"Unexpected image size: {stdout!r}") from e

    async def prune_images(self) -> str:
        """
        Remove dangling images.

        Returns:
            Docker's "Total reclaimed space" figure (e.g. "1.2GB")
        """
        code, stdout, stderr = await self._run("image", "prune", "--force")
        if code != 0:
            raise ContainerRuntimeError(f"Failed to prune images: {stderr}")

        for line in stdout.splitlines():
            if line.startswith("Total reclaimed space:"):
                return line.split(":", 1)[1].strip()
        return "0B"

    async def get_docker_info(self) -> dict[str, object]:
        """
        Summarize the docker daemon.

        Returns:
            Dictionary with container/image counts, server version and memory
        """
        code, stdout, stderr = await self._run("info", "--format", "{{json .}}")
        if code != 0:
            raise ContainerRuntimeError(f"Failed to query docker info: {stderr}")

        try:
            info = json.loads(stdout)
        except json.JSONDecodeError as e:
            raise ContainerRuntimeError(f"Failed to parse docker info: {e}") from e

        return {
            "containers": info.get("Containers"),
            "containers_running": info.get("ContainersRunning"),
            "images": info.get("Images"),
            "server_version": info.get("ServerVersion"),
            "memory_total": info.get("MemTotal"),
        }

    async def get_container_logs(self, container_id: str, tail: int = 100) -> str:
        """
        Get the last lines of a container's output.

        Args:
            container_id: Docker container ID or name
            tail: Number of lines to return

        Returns:
            Combined stdout/stderr text with timestamps
        """
        process = await asyncio.create_subprocess_exec(
            self.docker_bin,
            "logs",
            "--timestamps",
            "--tail",
            str(tail),
            container_id,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )

        stdout, _ = await process.communicate()
        if process.returncode != 0:
            raise ContainerRuntimeError(f"Failed to read logs: {stdout.decode().strip()}")
        return stdout.decode(errors="replace")

    async def stream_logs(
        self, container_id: str, follow: bool = True
    ) -> AsyncGenerator[str, None]:
        """
        Stream logs from a container.

        Args:
            container_id: Docker container ID or name
            follow: If True, stream logs continuously. If False, return existing logs.

        Yields:
            Log lines as strings
        """
        args = ["logs", "--timestamps"]
        if follow:
            args.append("--follow")
        args.append(container_id)

        process = await asyncio.create_subprocess_exec(
            self.docker_bin,
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )

        assert process.stdout is not None

        try:
            while True:
                line = await process.stdout.readline()
                if not line:
                    break
                yield line.decode(errors="replace")
        finally:
            # Clean up process if still running
            if process.returncode is None:
                process.terminate()
                await process.wait()
