from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, TypeVar

T = TypeVar("T")

Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[None]]


@dataclass
class PollAttempt(Generic[T]):
    done: bool
    result: T | None = None
    error_message: str | None = None


@dataclass
class PollResult(Generic[T]):
    timed_out: bool
    result: T | None = None
    error_message: str | None = None


def format_error(exc: BaseException) -> str:
    message = str(exc).strip()
    return message or type(exc).__name__


async def poll_with_timeout(
    attempt: Callable[[], Awaitable[PollAttempt[T]]],
    *,
    timeout: float,
    interval: float,
    should_abort_on_error: Callable[[BaseException], bool] | None = None,
    clock: Clock = time.monotonic,
    sleep: Sleep = asyncio.sleep,
) -> PollResult[T]:
    """Run ``attempt`` every ``interval`` seconds until it reports done or ``timeout`` elapses.

    Exceptions raised by ``attempt`` are recorded as the last error unless
    ``should_abort_on_error`` returns ``True`` for them, in which case they
    propagate immediately.  ``clock`` and ``sleep`` are injectable so retry
    policies can be tested without real timers.
    """

    start = clock()
    last_result: T | None = None
    last_error: str | None = None

    while clock() - start < timeout:
        try:
            outcome = await attempt()
        except Exception as exc:
            if should_abort_on_error is not None and should_abort_on_error(exc):
                raise
            last_error = format_error(exc)
        else:
            if outcome.result is not None:
                last_result = outcome.result
            if outcome.done:
                return PollResult(timed_out=False, result=outcome.result if outcome.result is not None else last_result)
            if outcome.error_message:
                last_error = outcome.error_message

        await sleep(interval)

    return PollResult(timed_out=True, result=last_result, error_message=last_error)


__all__ = ["PollAttempt", "PollResult", "poll_with_timeout", "format_error"]
