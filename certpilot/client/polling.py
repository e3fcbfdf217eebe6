import asyncio
import logging
import time
import typing
from dataclasses import dataclass

logger = logging.getLogger(__name__)


class Clock:
    """Time source and sleep primitive of all polling loops.

    Tests replace it with a clock that advances instantly.
    """

    def monotonic(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


class Deadline:
    """Tracks a caller-supplied timeout.

    A timeout of *0* or *None* never expires.
    """

    def __init__(self, timeout: typing.Optional[float], clock: Clock):
        self.timeout = timeout
        self._clock = clock
        self._start = clock.monotonic()

    @property
    def elapsed(self) -> float:
        return self._clock.monotonic() - self._start

    def expired(self) -> bool:
        return bool(self.timeout) and self.elapsed > self.timeout


@dataclass
class RetryPolicy:
    """Retries a coroutine function on the given exceptions with a fixed delay."""

    delay: float = 60.0
    """The delay in seconds between attempts."""
    max_attempts: typing.Optional[int] = 10
    """The maximum number of attempts. *None* retries forever."""

    async def call(
        self,
        func: typing.Callable[..., typing.Awaitable],
        *args,
        retry_on: typing.Tuple[typing.Type[BaseException], ...],
        clock: Clock,
    ):
        attempt = 0
        while True:
            attempt += 1
            try:
                return await func(*args)
            except retry_on as e:
                if self.max_attempts is not None and attempt >= self.max_attempts:
                    raise
                logger.warning(
                    "%s failed (%s), attempt %d, retrying in %.0f seconds",
                    getattr(func, "__name__", func),
                    e,
                    attempt,
                    self.delay,
                )
                await clock.sleep(self.delay)
