import threading
from typing import Protocol

import numpy as np

from mintflow.errors import CaptureError
from mintflow.models import CaptureConstraints


class MediaSource(Protocol):
    """A device stream owned exclusively by one capture session."""

    mime_type: str

    def open(self) -> None: ...

    def close(self) -> None: ...

    def read_all(self) -> np.ndarray: ...


class MicrophoneSource:
    """Microphone input via sounddevice.

    Threading model:

    1. **Audio callback** runs in sounddevice's C audio thread.  It may ONLY
       append to the buffer under ``_lock``.  No I/O, no logging.

    2. Everything else (``open``, ``close``, ``read_all``) runs on the event
       loop thread, owned by :class:`~mintflow.recording.CaptureController`.

    sounddevice loads PortAudio when imported, so the import happens in
    :meth:`open` and hosts without an audio stack can still run the service.
    """

    mime_type = "audio/wav"

    def __init__(self, constraints: CaptureConstraints) -> None:
        self.constraints = constraints
        self._buffer: list[np.ndarray] = []
        self._lock = threading.Lock()
        self._stream = None

    def open(self) -> None:
        try:
            import sounddevice as sd
        except OSError as e:
            raise CaptureError(f"audio backend unavailable: {e}", kind="device_unavailable") from e

        try:
            self._stream = sd.InputStream(
                samplerate=self.constraints.sample_rate,
                channels=self.constraints.channels,
                dtype="float32",
                callback=self._audio_callback,
                blocksize=1024,
                device=self.constraints.device,
            )
            self._stream.start()
        except PermissionError as e:
            self.close()
            raise CaptureError(f"microphone permission denied: {e}", kind="permission_denied") from e
        except (sd.PortAudioError, ValueError) as e:
            self.close()
            kind = "permission_denied" if "permission" in str(e).lower() else "device_unavailable"
            raise CaptureError(f"microphone unavailable: {e}", kind=kind) from e

    def close(self) -> None:
        """Stop and release the stream.  Safe to call more than once."""
        stream, self._stream = self._stream, None
        if stream is None:
            return
        try:
            stream.stop()
        finally:
            stream.close()

    def read_all(self) -> np.ndarray:
        with self._lock:
            if not self._buffer:
                return np.zeros(0, dtype="float32")
            audio = np.concatenate(self._buffer, axis=0)
        if self.constraints.channels == 1:
            return audio.flatten()
        return audio

    def _audio_callback(self, indata: np.ndarray, frames: int, timeinfo, status) -> None:  # noqa: ANN001
        """sounddevice callback.  Must be fast: buffer only, no I/O."""
        with self._lock:
            self._buffer.append(indata.copy())
