import asyncio
import uuid
from typing import Callable

import structlog

from mintflow.clock import Clock, system_clock
from mintflow.config import settings
from mintflow.errors import CaptureError
from mintflow.events import EventSink, log_sink
from mintflow.models import CaptureConstraints, CaptureSession, CaptureState, ContentBlob
from mintflow.recording.audio_utils import samples_to_wav_bytes, trim_to_duration
from mintflow.recording.source import MediaSource, MicrophoneSource

logger = structlog.get_logger(__name__)

SourceFactory = Callable[[CaptureConstraints], MediaSource]


class CaptureController:
    """Owns one bounded-duration capture session at a time.

    Lifecycle::

        start() -> Recording -> stop()             -> Finalized
                             -> max duration hit   -> Finalized (exactly once)
                             -> device/encode fail -> Error

    The device stream is released on every exit path.  A second ``start()``
    while a session is recording fails with ``CaptureError(kind="busy")``.
    """

    def __init__(
        self,
        clock: Clock = system_clock,
        source_factory: SourceFactory = MicrophoneSource,
        event_sink: EventSink = log_sink,
    ) -> None:
        self._clock = clock
        self._source_factory = source_factory
        self._emit = event_sink

        self._active: CaptureSession | None = None
        self._source: MediaSource | None = None
        self._constraints: CaptureConstraints | None = None
        self._started_at: float = 0.0
        self._auto_stop_task: asyncio.Task | None = None
        self._lock = asyncio.Lock()

        self._sessions: dict[str, CaptureSession] = {}
        self._blobs: dict[str, ContentBlob] = {}
        # set once a session reaches Finalized or Error
        self._done: dict[str, asyncio.Event] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def start(
        self,
        max_duration_seconds: float,
        constraints: CaptureConstraints | None = None,
    ) -> CaptureSession:
        """Open the device and begin recording."""
        if max_duration_seconds <= 0:
            raise ValueError("max_duration_seconds must be positive")
        if self._active is not None and not self._active.is_terminal:
            raise CaptureError(
                f"capture {self._active.id} is still recording", kind="busy"
            )

        constraints = constraints or CaptureConstraints(
            sample_rate=settings.sample_rate, channels=settings.channels
        )
        source = self._source_factory(constraints)
        try:
            source.open()
        except CaptureError:
            source.close()
            logger.warning("capture_start_failed", max_duration_seconds=max_duration_seconds)
            raise

        session = CaptureSession(id=uuid.uuid4().hex, max_duration_seconds=max_duration_seconds)
        self._sessions[session.id] = session
        self._done[session.id] = asyncio.Event()
        self._active = session
        self._source = source
        self._constraints = constraints
        self._started_at = self._clock.monotonic()
        self._emit(session.transition(CaptureState.RECORDING))

        self._auto_stop_task = asyncio.create_task(self._auto_stop(session))
        logger.info("capture_started", session_id=session.id, max_duration_seconds=max_duration_seconds)
        return session

    async def stop(self, session: CaptureSession) -> ContentBlob:
        """Finalize the session (or return the blob if it already auto-stopped)."""
        if session.id in self._blobs:
            return self._blobs[session.id]
        if session.state is CaptureState.ERROR:
            raise CaptureError(session.error or f"capture {session.id} failed")
        if session is not self._active or session.state is not CaptureState.RECORDING:
            raise CaptureError(f"capture {session.id} is not recording", kind="not_recording")

        self._cancel_auto_stop()
        return await self._finalize(session, trigger="explicit")

    async def wait(self, session: CaptureSession) -> ContentBlob:
        """Wait until the session finalizes (explicit stop or max duration) and return the blob."""
        done = self._done.get(session.id)
        if done is not None:
            await done.wait()
        if session.id in self._blobs:
            return self._blobs[session.id]
        raise CaptureError(session.error or f"capture {session.id} did not finalize")

    def get(self, session_id: str) -> CaptureSession | None:
        return self._sessions.get(session_id)

    def blob(self, session_id: str) -> ContentBlob | None:
        return self._blobs.get(session_id)

    def elapsed(self, session: CaptureSession) -> float:
        if session is self._active and session.state is CaptureState.RECORDING:
            session.record_elapsed(self._clock.monotonic() - self._started_at)
        return session.elapsed_seconds

    def discard(self, session_id: str) -> None:
        """Forget a terminal session and its blob."""
        session = self._sessions.get(session_id)
        if session is not None and session.is_terminal:
            self._sessions.pop(session_id, None)
            self._blobs.pop(session_id, None)
            self._done.pop(session_id, None)

    @property
    def is_recording(self) -> bool:
        return self._active is not None and self._active.state is CaptureState.RECORDING

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _auto_stop(self, session: CaptureSession) -> None:
        await self._clock.sleep(session.max_duration_seconds)
        if session.state is not CaptureState.RECORDING:
            return
        logger.info("capture_auto_stop", session_id=session.id)
        try:
            await self._finalize(session, trigger="max_duration")
        except CaptureError:
            # already recorded on the session; wait()/stop() surface it
            pass

    def _cancel_auto_stop(self) -> None:
        task, self._auto_stop_task = self._auto_stop_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _finalize(self, session: CaptureSession, *, trigger: str) -> ContentBlob:
        async with self._lock:
            if session.id in self._blobs:
                return self._blobs[session.id]
            if session.state is not CaptureState.RECORDING:
                raise CaptureError(session.error or f"capture {session.id} is not recording")

            source = self._source
            constraints = self._constraints
            try:
                session.record_elapsed(self._clock.monotonic() - self._started_at)
                source.close()
                samples = trim_to_duration(
                    source.read_all(), constraints.sample_rate, session.max_duration_seconds
                )
                data = (
                    samples_to_wav_bytes(samples, constraints.sample_rate) if len(samples) else b""
                )
            except Exception as e:
                self._emit(session.transition(CaptureState.ERROR, reason=str(e)))
                self._done[session.id].set()
                logger.error("capture_finalize_failed", session_id=session.id, error=str(e))
                raise CaptureError(f"could not finalize capture: {e}", kind="encode_failed") from e
            finally:
                source.close()
                self._source = None
                self._active = None

            blob = ContentBlob(
                data=data,
                mime_type=source.mime_type,
                duration_seconds=session.elapsed_seconds,
            )
            self._blobs[session.id] = blob
            self._emit(session.transition(CaptureState.FINALIZED, reason=trigger))
            self._done[session.id].set()
            logger.info(
                "capture_finalized",
                session_id=session.id,
                trigger=trigger,
                size_bytes=blob.size_bytes,
                duration_seconds=blob.duration_seconds,
            )
            return blob
