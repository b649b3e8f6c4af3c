import asyncio

import pytest
from fakes import FakeSource, tone

from mintflow.errors import CaptureError
from mintflow.models import CaptureConstraints, CaptureState
from mintflow.recording.controller import CaptureController

pytestmark = pytest.mark.asyncio

CONSTRAINTS = CaptureConstraints(sample_rate=8000, channels=1)


def _controller(clock, collector, source):
    return CaptureController(clock=clock, source_factory=lambda c: source, event_sink=collector)


class TestCaptureController:

    async def test_auto_stop_finalizes_once_at_boundary(self, manual_clock, collector) -> None:
        source = FakeSource(samples=tone(20, 8000))
        controller = _controller(manual_clock, collector, source)

        session = await controller.start(15, CONSTRAINTS)
        await asyncio.sleep(0)
        manual_clock.advance(10)
        await asyncio.sleep(0)
        assert session.state is CaptureState.RECORDING

        manual_clock.advance(5)
        blob = await controller.wait(session)

        assert session.state is CaptureState.FINALIZED
        assert session.elapsed_seconds == 15
        assert collector.kinds().count("capture.finalized") == 1
        assert collector.events[-1].message == "max_duration"
        assert blob.mime_type == "audio/wav"
        assert blob.size_bytes > 0
        assert source.is_open is False

        # a late explicit stop returns the same blob and emits nothing new
        assert await controller.stop(session) is blob
        assert collector.kinds().count("capture.finalized") == 1

    async def test_explicit_stop_before_boundary(self, manual_clock, collector) -> None:
        source = FakeSource(samples=tone(3, 8000))
        controller = _controller(manual_clock, collector, source)

        session = await controller.start(15, CONSTRAINTS)
        await asyncio.sleep(0)
        manual_clock.advance(3)
        blob = await controller.stop(session)

        assert session.state is CaptureState.FINALIZED
        assert session.elapsed_seconds == 3
        assert blob.duration_seconds == 3

        manual_clock.advance(20)
        await asyncio.sleep(0)
        assert collector.kinds() == ["capture.recording", "capture.finalized"]
        assert collector.events[-1].message == "explicit"

    async def test_permission_denied_leaves_no_session(self, manual_clock, collector) -> None:
        source = FakeSource(open_error=CaptureError("denied", kind="permission_denied"))
        controller = _controller(manual_clock, collector, source)

        with pytest.raises(CaptureError) as exc:
            await controller.start(15, CONSTRAINTS)

        assert exc.value.kind == "permission_denied"
        assert controller.is_recording is False
        assert source.closed >= 1
        assert not collector.events

    async def test_second_start_is_busy(self, manual_clock, collector) -> None:
        controller = _controller(manual_clock, collector, FakeSource())
        session = await controller.start(15, CONSTRAINTS)

        with pytest.raises(CaptureError) as exc:
            await controller.start(15, CONSTRAINTS)
        assert exc.value.kind == "busy"

        await controller.stop(session)
        assert controller.is_recording is False

    async def test_no_samples_gives_empty_blob(self, manual_clock, collector) -> None:
        controller = _controller(manual_clock, collector, FakeSource())
        session = await controller.start(5, CONSTRAINTS)

        blob = await controller.stop(session)

        assert blob.data == b""
        assert controller.blob(session.id) is blob

    async def test_encode_failure_moves_to_error(self, manual_clock, collector) -> None:
        source = FakeSource(read_error=RuntimeError("buffer corrupt"))
        controller = _controller(manual_clock, collector, source)
        session = await controller.start(5, CONSTRAINTS)

        with pytest.raises(CaptureError) as exc:
            await controller.stop(session)

        assert exc.value.kind == "encode_failed"
        assert session.state is CaptureState.ERROR
        assert source.is_open is False
        assert controller.is_recording is False
        with pytest.raises(CaptureError):
            await controller.stop(session)

    async def test_discard_forgets_terminal_session(self, manual_clock, collector) -> None:
        controller = _controller(manual_clock, collector, FakeSource())
        session = await controller.start(5, CONSTRAINTS)
        await controller.stop(session)

        controller.discard(session.id)

        assert controller.get(session.id) is None
        assert controller.blob(session.id) is None


    async def test_waiter_gets_blob_from_explicit_stop(self, manual_clock, collector) -> None:
        controller = _controller(manual_clock, collector, FakeSource(samples=tone(3, 8000)))
        session = await controller.start(15, CONSTRAINTS)
        waiter = asyncio.create_task(controller.wait(session))
        await asyncio.sleep(0)

        manual_clock.advance(3)
        blob = await controller.stop(session)

        assert await waiter is blob
        assert collector.kinds().count("capture.finalized") == 1

    async def test_waiter_sees_finalize_error(self, manual_clock, collector) -> None:
        source = FakeSource(read_error=RuntimeError("buffer corrupt"))
        controller = _controller(manual_clock, collector, source)
        session = await controller.start(5, CONSTRAINTS)
        waiter = asyncio.create_task(controller.wait(session))
        await asyncio.sleep(0)

        with pytest.raises(CaptureError):
            await controller.stop(session)

        with pytest.raises(CaptureError, match="buffer corrupt"):
            await waiter
