"""
Unit tests for BuildPipeline and its sinks.

The image builder is replaced by a fake that writes scripted output and can
be held open with an event, so exclusivity and cancellation can be observed.
"""

import asyncio

import pytest

from nas_common.errors import BuildCancelledError, BuildInProgressError, ContainerRuntimeError
from nas_common.models import BuildProgress
from nas_controller.build_pipeline import (
    BuildPipeline,
    ChannelSink,
    FanOutSink,
    FileSink,
    ProgressChannel,
)


class FakeBuilder:
    """Stands in for ContainerManager.build_image."""

    def __init__(self, lines=("Step 1/2 : FROM alpine\n", "Step 2/2 : CMD true\n"), error=None):
        self.lines = list(lines)
        self.error = error
        self.gate: asyncio.Event | None = None
        self.started = asyncio.Event()
        self.calls = []

    async def build_image(self, context_path, dockerfile_path, image_name, build_args, log_writer=None):
        self.calls.append((context_path, dockerfile_path, image_name, build_args))
        for line in self.lines:
            log_writer.write(line)
        self.started.set()
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error


async def drain(channel: ProgressChannel) -> list[BuildProgress]:
    return [event async for event in channel]


@pytest.fixture
def builder():
    return FakeBuilder()


@pytest.fixture
def pipeline(tmp_path, builder):
    return BuildPipeline(builder, str(tmp_path))


class TestBuild:
    """Tests for BuildPipeline.build()."""

    @pytest.mark.asyncio
    async def test_successful_build_logs_and_events(self, pipeline, builder, make_app):
        app = make_app(build_args={"V": "1"})
        channel = ProgressChannel()

        await pipeline.build(app, "/repos/demo", channel, dockerfile_path="/repos/demo/Dockerfile")
        events = await drain(channel)

        assert builder.calls == [("/repos/demo", "/repos/demo/Dockerfile", "demo:latest", {"V": "1"})]
        assert not pipeline.is_building
        assert pipeline.current_app_id is None

        log = pipeline.get_build_log(app.id)
        assert log.startswith("Starting build for Demo\nContext: /repos/demo\n")
        assert "Dockerfile: ./Dockerfile\n" in log
        assert "Image: demo:latest\n\n" in log
        assert "Step 2/2 : CMD true\n" in log
        assert "Build completed successfully in" in log

        assert [e.type for e in events[:-1]] == ["log"] * 6
        assert events[-1].is_terminal
        assert events[-1].success is True

    @pytest.mark.asyncio
    async def test_failed_build(self, pipeline, builder, make_app):
        app = make_app()
        builder.error = ContainerRuntimeError("image build failed (exit code 1): no such file")
        channel = ProgressChannel()

        with pytest.raises(ContainerRuntimeError):
            await pipeline.build(app, "/repos/demo", channel)

        events = await drain(channel)
        assert events[-1].type == "complete"
        assert events[-1].success is False
        assert "no such file" in events[-1].error
        assert "Build failed: image build failed" in pipeline.get_build_log(app.id)
        assert not pipeline.is_building

    @pytest.mark.asyncio
    async def test_log_file_written_without_observer(self, pipeline, make_app):
        app = make_app()
        await pipeline.build(app, "/repos/demo")

        assert "Step 1/2 : FROM alpine" in pipeline.get_build_log(app.id)

    @pytest.mark.asyncio
    async def test_log_file_truncated_per_build(self, pipeline, builder, make_app):
        app = make_app()
        await pipeline.build(app, "/repos/demo")
        builder.lines = ["second run\n"]
        await pipeline.build(app, "/repos/demo")

        log = pipeline.get_build_log(app.id)
        assert "second run" in log
        assert "FROM alpine" not in log


class TestExclusivity:
    """Only one build runs at a time."""

    @pytest.mark.asyncio
    async def test_second_build_rejected_until_first_finishes(self, pipeline, builder, make_app):
        builder.gate = asyncio.Event()
        first = asyncio.create_task(pipeline.build(make_app("one"), "/repos/one"))
        await builder.started.wait()

        assert pipeline.is_building
        assert pipeline.current_app_id == "app-one"
        with pytest.raises(BuildInProgressError):
            await pipeline.build(make_app("two"), "/repos/two")

        builder.gate.set()
        await first

        builder.gate = None
        await pipeline.build(make_app("two"), "/repos/two")
        assert len(builder.calls) == 2

    @pytest.mark.asyncio
    async def test_flag_cleared_after_failure(self, pipeline, builder, make_app):
        builder.error = ContainerRuntimeError("boom")
        with pytest.raises(ContainerRuntimeError):
            await pipeline.build(make_app("one"), "/repos/one")

        builder.error = None
        await pipeline.build(make_app("two"), "/repos/two")

    @pytest.mark.asyncio
    async def test_claim_holds_slot_before_build(self, pipeline, builder, make_app):
        app = make_app("one")

        async with pipeline.claim(app.id):
            assert pipeline.is_building
            assert pipeline.current_app_id == "app-one"
            with pytest.raises(BuildInProgressError):
                await pipeline.build(make_app("two"), "/repos/two")

            await pipeline.build_claimed(app, "/repos/one")

        assert not pipeline.is_building
        assert len(builder.calls) == 1

    @pytest.mark.asyncio
    async def test_claim_released_on_error(self, pipeline):
        with pytest.raises(ValueError):
            async with pipeline.claim("app-one"):
                raise ValueError("pull failed")

        assert not pipeline.is_building
        assert pipeline.current_app_id is None

    @pytest.mark.asyncio
    async def test_build_claimed_requires_claim(self, pipeline, builder, make_app):
        with pytest.raises(RuntimeError):
            await pipeline.build_claimed(make_app("one"), "/repos/one")

        async with pipeline.claim("app-other"):
            with pytest.raises(RuntimeError):
                await pipeline.build_claimed(make_app("one"), "/repos/one")

        assert builder.calls == []


class TestCancel:
    """Tests for cancellation."""

    @pytest.mark.asyncio
    async def test_cancel_flows_through_failure_path(self, pipeline, builder, make_app):
        app = make_app()
        builder.gate = asyncio.Event()
        channel = ProgressChannel()
        task = asyncio.create_task(pipeline.build(app, "/repos/demo", channel))
        await builder.started.wait()

        assert await pipeline.cancel() is True
        with pytest.raises(BuildCancelledError):
            await task

        events = await drain(channel)
        assert events[-1].success is False
        assert events[-1].error == "build cancelled"
        assert "Build failed: build cancelled" in pipeline.get_build_log(app.id)
        assert not pipeline.is_building

    @pytest.mark.asyncio
    async def test_cancel_without_build(self, pipeline):
        assert await pipeline.cancel() is False

    @pytest.mark.asyncio
    async def test_caller_cancellation_propagates(self, pipeline, builder, make_app):
        app = make_app()
        builder.gate = asyncio.Event()
        channel = ProgressChannel()
        task = asyncio.create_task(pipeline.build(app, "/repos/demo", channel))
        await builder.started.wait()

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        events = await drain(channel)
        assert events[-1].success is False
        assert not pipeline.is_building


class TestObservers:
    """Tests for subscribe() and the progress channel policy."""

    @pytest.mark.asyncio
    async def test_subscriber_receives_build_events(self, pipeline, make_app):
        app = make_app()
        channel = pipeline.subscribe(app.id)

        await pipeline.build(app, "/repos/demo")
        events = await drain(channel)

        assert events[0].data == "Starting build for Demo\n"
        assert events[-1].success is True

    @pytest.mark.asyncio
    async def test_subscriber_for_other_app_gets_nothing(self, pipeline, make_app):
        other = pipeline.subscribe("app-other")
        await pipeline.build(make_app(), "/repos/demo")

        other.close()
        assert await drain(other) == []

    @pytest.mark.asyncio
    async def test_slow_consumer_loses_lines_but_gets_terminal_event(self, pipeline, builder, make_app):
        app = make_app()
        builder.lines = [f"line {i}\n" for i in range(50)]
        channel = ProgressChannel(maxsize=5)

        await pipeline.build(app, "/repos/demo", channel)
        events = await drain(channel)

        assert len(events) == 5
        assert channel.dropped > 0
        assert events[-1].is_terminal
        # The file keeps everything
        assert "line 0\n" in pipeline.get_build_log(app.id)
        assert "line 49\n" in pipeline.get_build_log(app.id)


class TestSinks:
    """Tests for the sink building blocks."""

    def test_fan_out_to_file_and_channel(self, tmp_path):
        channel = ProgressChannel()
        file_sink = FileSink(tmp_path / "out.log")
        sink = FanOutSink(file_sink, ChannelSink("app-1", channel))

        sink.write("hello\n")
        sink.write("")
        sink.close()

        assert (tmp_path / "out.log").read_text() == "hello\n"
        assert channel._queue.qsize() == 1

    def test_channel_ignores_events_after_terminal(self):
        channel = ProgressChannel()
        channel.publish(BuildProgress.complete("a", True))
        channel.publish(BuildProgress.log("a", "late"))

        assert channel._queue.qsize() == 1

    def test_invalid_channel_size(self):
        with pytest.raises(ValueError):
            ProgressChannel(0)


class TestLogFiles:
    """Tests for log housekeeping."""

    @pytest.mark.asyncio
    async def test_clear_and_size(self, pipeline, make_app):
        await pipeline.build(make_app("one"), "/repos/one")
        await pipeline.build(make_app("two"), "/repos/two")

        assert pipeline.get_logs_size() > 0

        pipeline.clear_build_log("app-one")
        assert pipeline.get_build_log("app-one") == ""
        assert pipeline.get_build_log("app-two") != ""

        pipeline.clear_all_logs()
        assert pipeline.get_logs_size() == 0

    def test_clear_missing_log(self, pipeline):
        pipeline.clear_build_log("nothing")
        assert pipeline.get_build_log("nothing") == ""
