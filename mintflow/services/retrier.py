from typing import Awaitable, Callable, TypeVar

import structlog

from mintflow.clock import Clock, system_clock
from mintflow.config import settings
from mintflow.errors import ReadRateLimitError

logger = structlog.get_logger(__name__)

T = TypeVar("T")

_MISSING = object()


class RateLimitedReadRetrier:
    """Bounded retry for ledger/indexer reads that hit a rate limit.

    Only :class:`ReadRateLimitError` is retried, on a fixed delay ladder
    (2s, 4s, 6s by default).  Any other error propagates on the first
    occurrence.  When the ladder is exhausted and the caller supplied a
    ``fallback`` (its last known-good result), that is returned instead of
    raising.
    """

    def __init__(
        self,
        clock: Clock = system_clock,
        delays_ms: list[int] | None = None,
        max_retries: int | None = None,
    ) -> None:
        self._clock = clock
        self.delays_ms = list(settings.rate_limit_delays_ms if delays_ms is None else delays_ms)
        self.max_retries = settings.rate_limit_max_retries if max_retries is None else max_retries

    def _delay_ms(self, retry: int) -> int:
        # the last rung repeats if max_retries outgrows the ladder
        return self.delays_ms[min(retry, len(self.delays_ms) - 1)] if self.delays_ms else 0

    async def wrap(
        self,
        read_fn: Callable[[], Awaitable[T]],
        *,
        fallback: T = _MISSING,  # type: ignore[assignment]
        label: str = "read",
    ) -> T:
        retries = 0
        while True:
            try:
                return await read_fn()
            except ReadRateLimitError as e:
                if retries >= self.max_retries:
                    if fallback is not _MISSING:
                        logger.warning("rate_limit_stale_fallback", label=label, retries=retries)
                        return fallback
                    logger.error("rate_limit_exhausted", label=label, retries=retries)
                    raise
                delay_ms = self._delay_ms(retries)
                retries += 1
                logger.info(
                    "rate_limit_retry",
                    label=label,
                    retry=retries,
                    delay_ms=delay_ms,
                    reason=e.reason,
                )
                await self._clock.sleep(delay_ms / 1000)
