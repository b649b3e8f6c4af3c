import io

import numpy as np
import soundfile as sf


def samples_to_wav_bytes(samples: np.ndarray, sample_rate: int) -> bytes:
    """Encode float32 samples as a 16-bit PCM WAV file held in memory."""
    buf = io.BytesIO()
    sf.write(buf, samples, sample_rate, subtype="PCM_16", format="WAV")
    return buf.getvalue()


def trim_to_duration(samples: np.ndarray, sample_rate: int, max_seconds: float) -> np.ndarray:
    """Drop any samples past *max_seconds*.

    Pure function.  The audio callback can deliver one block after the
    deadline fires; the finalized blob must still respect the session limit.
    """
    limit = int(round(max_seconds * sample_rate))
    if len(samples) <= limit:
        return samples
    return samples[:limit]
