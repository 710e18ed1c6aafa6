"""
Single-flight image build pipeline.

At most one image build runs system-wide. Build output is duplicated into a
per-app log file (always complete) and into any number of live progress
channels (bounded, never blocking the build).

Sinks:
- FileSink: appends to the durable build log
- ChannelSink: forwards chunks as BuildProgress events to one ProgressChannel
- SubscriberSink: forwards to whichever channels are subscribed to the app
- FanOutSink: duplicates writes to several sinks
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable, Iterable
from contextlib import asynccontextmanager
from pathlib import Path
from typing import TextIO

from nas_common.errors import BuildCancelledError, BuildInProgressError
from nas_common.models import App, BuildProgress, format_duration

from .container_manager import ContainerManager

logger = logging.getLogger(__name__)

# Pending events per progress channel before the oldest are dropped
DEFAULT_CHANNEL_SIZE = 100


class ProgressChannel:
    """
    Bounded, non-blocking-to-produce stream of BuildProgress events.

    When full, publishing drops the oldest pending event, so a slow consumer
    misses intermediate log lines but always receives the terminal event.
    Iterating stops after the terminal event or close().
    """

    def __init__(self, maxsize: int = DEFAULT_CHANNEL_SIZE):
        if maxsize < 1:
            raise ValueError("maxsize must be at least 1")
        self._queue: asyncio.Queue[BuildProgress | None] = asyncio.Queue(maxsize)
        self.dropped = 0
        self.closed = False

    def _put(self, item: BuildProgress | None) -> None:
        if self._queue.full():
            self._queue.get_nowait()
            self.dropped += 1
        self._queue.put_nowait(item)

    def publish(self, event: BuildProgress) -> None:
        if self.closed:
            return
        self._put(event)
        if event.is_terminal:
            self.closed = True

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._put(None)

    async def get(self) -> BuildProgress | None:
        """Next event, or None once the channel was closed without a terminal event."""
        return await self._queue.get()

    async def __aiter__(self) -> AsyncIterator[BuildProgress]:
        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event
            if event.is_terminal:
                return


class LogSink(ABC):
    """Destination for raw build output."""

    @abstractmethod
    def write(self, data: str) -> None:
        pass

    def close(self) -> None:
        pass


class FileSink(LogSink):
    """Writes build output to a log file, flushing after every chunk."""

    def __init__(self, path: Path):
        self.path = path
        self._file: TextIO = open(path, "w", encoding="utf-8")

    def write(self, data: str) -> None:
        if self._file.closed:
            return
        self._file.write(data)
        self._file.flush()

    def close(self) -> None:
        self._file.close()


class ChannelSink(LogSink):
    """Wraps each non-empty chunk as a log event on a progress channel."""

    def __init__(self, app_id: str, channel: ProgressChannel):
        self.app_id = app_id
        self.channel = channel

    def write(self, data: str) -> None:
        if data:
            self.channel.publish(BuildProgress.log(self.app_id, data))


class SubscriberSink(LogSink):
    """Forwards chunks to the channels currently subscribed to an app."""

    def __init__(self, app_id: str, channels: Callable[[], Iterable[ProgressChannel]]):
        self.app_id = app_id
        self._channels = channels

    def write(self, data: str) -> None:
        if not data:
            return
        event = BuildProgress.log(self.app_id, data)
        for channel in self._channels():
            channel.publish(event)


class FanOutSink(LogSink):
    """Duplicates every write to each wrapped sink."""

    def __init__(self, *sinks: LogSink):
        self.sinks = list(sinks)

    def write(self, data: str) -> None:
        for sink in self.sinks:
            sink.write(data)

    def close(self) -> None:
        for sink in self.sinks:
            sink.close()


class BuildPipeline:
    """
    Runs image builds one at a time with persisted logs and live progress.

    The running flag and in-flight build task are owned by this object and
    guarded by a lock; a second build request while one runs is rejected
    immediately with BuildInProgressError rather than queued.
    """

    def __init__(
        self,
        container_manager: ContainerManager,
        data_dir: str,
        channel_size: int = DEFAULT_CHANNEL_SIZE,
    ):
        """
        Initialize the build pipeline.

        Args:
            container_manager: Runtime used to build images
            data_dir: Controller data directory; logs go to <data_dir>/logs
            channel_size: Capacity of channels created by subscribe()
        """
        self.container_manager = container_manager
        self.logs_dir = Path(data_dir) / "logs"
        self.logs_dir.mkdir(parents=True, exist_ok=True)
        self.channel_size = channel_size

        self._lock = asyncio.Lock()
        self._building = False
        self._current_app_id: str | None = None
        self._build_task: asyncio.Task | None = None
        self._cancel_requested = False
        self._observers: dict[str, list[ProgressChannel]] = {}

    @property
    def is_building(self) -> bool:
        return self._building

    @property
    def current_app_id(self) -> str | None:
        """App whose build is in flight, if any."""
        return self._current_app_id

    def log_path(self, app_id: str) -> Path:
        return self.logs_dir / f"build-{app_id}.log"

    def subscribe(self, app_id: str) -> ProgressChannel:
        """
        Observe the in-flight or next build of an app.

        The channel receives every event from the moment of subscription and
        is detached automatically after the build's terminal event.
        """
        channel = ProgressChannel(self.channel_size)
        self._observers.setdefault(app_id, []).append(channel)
        return channel

    def unsubscribe(self, app_id: str, channel: ProgressChannel) -> None:
        channels = self._observers.get(app_id, [])
        if channel in channels:
            channels.remove(channel)
        if not channels:
            self._observers.pop(app_id, None)

    def _subscribers(self, app_id: str) -> list[ProgressChannel]:
        return list(self._observers.get(app_id, []))

    def _publish(self, app_id: str, extra: ProgressChannel | None, event: BuildProgress) -> None:
        if extra is not None:
            extra.publish(event)
        for channel in self._subscribers(app_id):
            channel.publish(event)

    @asynccontextmanager
    async def claim(self, app_id: str) -> AsyncIterator[None]:
        """
        Hold the system-wide build slot for an app.

        Callers that must do work before the build itself (stopping the
        app's container, pulling sources) take the slot first, so a
        conflicting build is rejected before anything has changed.

        Raises:
            BuildInProgressError: If the slot is already held
        """
        async with self._lock:
            if self._building:
                raise BuildInProgressError()
            self._building = True
            self._current_app_id = app_id
            self._cancel_requested = False

        try:
            yield
        finally:
            async with self._lock:
                self._building = False
                self._current_app_id = None
                self._build_task = None
                self._cancel_requested = False
            self._observers.pop(app_id, None)

    async def build(
        self,
        app: App,
        context_path: str,
        progress: ProgressChannel | None = None,
        dockerfile_path: str | None = None,
    ) -> float:
        """
        Build an app's image.

        Args:
            app: App whose image is built (name, image, build args)
            context_path: Absolute build context directory
            progress: Optional channel receiving this build's events
            dockerfile_path: Dockerfile to use (defaults to app.dockerfile_path,
                             resolved against the context)

        Returns:
            Elapsed build time in seconds

        Raises:
            BuildInProgressError: If another build is running
            BuildCancelledError: If cancel() stopped the build
            ContainerRuntimeError: If the image build fails
        """
        async with self.claim(app.id):
            return await self._run_build(app, context_path, progress, dockerfile_path)

    async def build_claimed(
        self,
        app: App,
        context_path: str,
        progress: ProgressChannel | None = None,
        dockerfile_path: str | None = None,
    ) -> float:
        """Same as build(), inside a slot the caller already holds via claim()."""
        if not self._building or self._current_app_id != app.id:
            raise RuntimeError(f"build slot is not held for app {app.id}")
        return await self._run_build(app, context_path, progress, dockerfile_path)

    async def _run_build(
        self,
        app: App,
        context_path: str,
        progress: ProgressChannel | None,
        dockerfile_path: str | None,
    ) -> float:
        file_sink = FileSink(self.log_path(app.id))
        sinks: list[LogSink] = [file_sink, SubscriberSink(app.id, lambda: self._subscribers(app.id))]
        if progress is not None:
            sinks.append(ChannelSink(app.id, progress))
        writer = FanOutSink(*sinks)

        logger.info(f"Building image {app.image_name} for {app.name} from {context_path}")
        start = time.monotonic()

        try:
            writer.write(f"Starting build for {app.name}\n")
            writer.write(f"Context: {context_path}\n")
            writer.write(f"Dockerfile: {app.dockerfile_path}\n")
            writer.write(f"Image: {app.image_name}\n\n")

            self._build_task = asyncio.create_task(
                self.container_manager.build_image(
                    context_path,
                    dockerfile_path or app.dockerfile_path,
                    app.image_name,
                    app.build_args,
                    writer,
                )
            )

            try:
                await self._build_task
            except asyncio.CancelledError:
                if not self._cancel_requested:
                    # The caller itself was cancelled (e.g. timeout)
                    self._fail(app, file_sink, progress, "build interrupted")
                    raise
                error: Exception = BuildCancelledError()
                self._fail(app, file_sink, progress, str(error))
                raise error from None
            except Exception as e:
                self._fail(app, file_sink, progress, str(e))
                raise

            elapsed = time.monotonic() - start
            message = f"\n\nBuild completed successfully in {format_duration(elapsed)}\n"
            file_sink.write(message)
            self._publish(app.id, progress, BuildProgress.complete(app.id, True, message=message))
            logger.info(f"Build of {app.image_name} succeeded in {format_duration(elapsed)}")
            return elapsed
        finally:
            writer.close()

    def _fail(
        self, app: App, file_sink: FileSink, progress: ProgressChannel | None, error: str
    ) -> None:
        file_sink.write(f"\n\nBuild failed: {error}\n")
        self._publish(app.id, progress, BuildProgress.complete(app.id, False, error=error))
        logger.error(f"Build of {app.image_name} failed: {error}")

    async def cancel(self) -> bool:
        """
        Cancel the in-flight build.

        Returns:
            True if a build was signalled, False if none was running
        """
        async with self._lock:
            if self._build_task is None or self._build_task.done():
                return False
            self._cancel_requested = True
            self._build_task.cancel()
            logger.info(f"Cancelling build for app {self._current_app_id}")
            return True

    def get_build_log(self, app_id: str) -> str:
        """Return the last build log of an app ("" if none)."""
        try:
            return self.log_path(app_id).read_text(encoding="utf-8")
        except FileNotFoundError:
            return ""

    def clear_build_log(self, app_id: str) -> None:
        self.log_path(app_id).unlink(missing_ok=True)

    def clear_all_logs(self) -> None:
        for path in self.logs_dir.iterdir():
            if path.is_file():
                path.unlink(missing_ok=True)

    def get_logs_size(self) -> int:
        return sum(p.stat().st_size for p in self.logs_dir.iterdir() if p.is_file())
