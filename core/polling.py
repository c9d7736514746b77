"""Bounded polling helper used by every wait in the lifecycle."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from core.errors import CancelledOperationError

T = TypeVar("T")


@dataclass(frozen=True)
class PollResult(Generic[T]):
    """Outcome of :func:`repeat_call_until`.

    Attributes:
        ok: True when the probe returned a truthy value
        result: Last value returned by the probe (None on failure)
        calls: Number of probe invocations performed
        error: Exception raised by the last probe call, if any
    """

    ok: bool
    result: T | None
    calls: int
    error: BaseException | None = None


async def repeat_call_until(
    probe: Callable[[], Awaitable[T]],
    *,
    max_calls: int,
    interval: float,
    wait_before_first_call: float = 0.0,
    abort: asyncio.Event | None = None,
) -> PollResult[T]:
    """Call ``probe`` until it returns a truthy value or ``max_calls`` is reached.

    ``None`` and ``False`` count as failed attempts, as do exceptions raised by
    the probe. The probe is called at most ``max_calls`` times.

    Args:
        probe: Coroutine factory evaluated once per attempt
        max_calls: Hard ceiling on the number of attempts
        interval: Seconds to sleep between attempts
        wait_before_first_call: Seconds to sleep before the first attempt
        abort: Optional event; once set, polling stops with CancelledOperationError

    Returns:
        PollResult describing the final attempt

    Raises:
        ValueError: If max_calls < 1
        CancelledOperationError: If ``abort`` is set
    """
    if max_calls < 1:
        raise ValueError(f"max_calls must be >= 1, got {max_calls}")

    if wait_before_first_call > 0:
        await asyncio.sleep(wait_before_first_call)

    last_error: BaseException | None = None
    for call in range(1, max_calls + 1):
        if abort is not None and abort.is_set():
            raise CancelledOperationError("polling aborted", calls=call - 1)

        try:
            value = await probe()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            last_error = exc
            value = None
        else:
            last_error = None

        if value is not None and value is not False:
            return PollResult(ok=True, result=value, calls=call)

        if call < max_calls and interval > 0:
            await asyncio.sleep(interval)

    return PollResult(ok=False, result=None, calls=max_calls, error=last_error)


def describe_failure(result: PollResult[Any]) -> str:
    """Return a short human readable reason for a failed poll."""
    if result.error is not None:
        return f"{type(result.error).__name__}: {result.error}"
    return f"no success after {result.calls} attempts"
