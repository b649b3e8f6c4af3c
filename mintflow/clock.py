import asyncio
import time
from datetime import datetime, timezone


class Clock:
    """Wall time, monotonic time and scheduled sleeps behind one seam.

    Every backoff, timeout and freshness decision in the pipeline goes through
    a ``Clock`` so tests can swap in virtual time.
    """

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def monotonic(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


system_clock = Clock()
