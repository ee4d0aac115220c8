from collections.abc import Awaitable, Callable, Generator, Sequence
from typing import Any, TypeVar

import backoff
import structlog
from backoff._typing import Details

logger = structlog.get_logger()

T = TypeVar("T")

OnRetry = Callable[[Exception, int], Any]


class NonRetriableError(Exception):
    """Raised for failures that retrying cannot fix, e.g. malformed input."""


def schedule_wait(delays_ms: Sequence[int]) -> Generator[float | None, Any, None]:
    """
    backoff wait generator over an explicit schedule of millisecond delays.

    The delay used after attempt k is ``delays_ms[min(k-1, len(delays_ms)-1)]``.
    """
    # backoff primes the generator with a first next() whose value is ignored
    yield None
    attempt = 0
    while True:
        yield delays_ms[min(attempt, len(delays_ms) - 1)] / 1000
        attempt += 1


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    max_attempts: int = 3,
    backoff_ms: Sequence[int] = (1000, 2000, 4000),
    on_retry: OnRetry | None = None,
) -> T:
    """
    Calls ``fn`` until it succeeds or ``max_attempts`` calls have failed.

    A ``NonRetriableError`` is re-raised immediately without sleeping. After
    the last attempt the last error is raised.

    Args:
        fn: Zero-argument coroutine function to call.
        max_attempts: Total number of calls allowed, including the first.
        backoff_ms: Explicit per-attempt delays in milliseconds.
        on_retry: Observation hook, called with the error and the number of
            the attempt that failed before each retry. Errors raised by the
            hook are logged and ignored.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")
    if not backoff_ms:
        raise ValueError("backoff_ms must not be empty")

    def on_backoff(details: Details):
        error: Exception = details["exception"]  # type: ignore
        attempt = details["tries"]
        logger.warning(
            "retrying after error",
            attempt=attempt,
            wait=details.get("wait", 0),
            error=str(error),
        )
        if on_retry is None:
            return
        try:
            on_retry(error, attempt)
        except Exception as hook_error:
            logger.warning("on_retry hook failed", error=str(hook_error))

    @backoff.on_exception(
        schedule_wait,
        Exception,
        delays_ms=list(backoff_ms),
        max_tries=max_attempts,
        jitter=None,
        giveup=lambda e: isinstance(e, NonRetriableError),
        on_backoff=on_backoff,
        raise_on_giveup=True,
        logger=None,
    )
    async def call() -> T:
        return await fn()

    return await call()
