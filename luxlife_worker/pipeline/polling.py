"""
Poll-with-backoff-until-terminal.

Both provider adapters poll a remote job until it reaches a terminal
status.  They differ only in their delay schedule and in what happens when
the attempt budget runs out:

  - Background generator: soft timeout, returns the last job state seen
  - Animator:             hard timeout, raises PollTimeoutError
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

import httpx

from .errors import PollTimeoutError, ProviderError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# (attempt, previous_fetch_failed) -> seconds to wait before this fetch
Backoff = Callable[[int, bool], float]


def linear_backoff(start: float = 1.0, step: float = 1.0, cap: float = 5.0) -> Backoff:
    """start, start+step, ... capped at `cap`, whatever the fetch outcome."""
    def _delay(attempt: int, failed: bool) -> float:
        return min(cap, start + attempt * step)
    return _delay


def fixed_backoff(after_success: float, after_failure: float) -> Backoff:
    """No wait before the first fetch, then a fixed delay chosen by the last outcome."""
    def _delay(attempt: int, failed: bool) -> float:
        if attempt == 0:
            return 0
        return after_failure if failed else after_success
    return _delay


async def poll_until(
    fetch: Callable[[], Awaitable[T]],
    *,
    is_terminal: Callable[[T], bool],
    max_attempts: int,
    backoff: Backoff,
    initial: Optional[T] = None,
    raise_on_exhaustion: bool = False,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    label: str = "job",
) -> Optional[T]:
    """
    Fetch until `is_terminal(state)` or `max_attempts` fetches have been made.

    Fetch failures (non-success responses, transport errors) are logged and
    count as an attempt; the loop keeps going.  On exhaustion the last seen
    state is returned, or PollTimeoutError is raised when
    `raise_on_exhaustion` is set.
    """
    current = initial
    failed = False

    for attempt in range(max_attempts):
        if current is not None and is_terminal(current):
            return current

        delay = backoff(attempt, failed)
        if delay > 0:
            await sleep(delay)

        try:
            current = await fetch()
            failed = False
        except (ProviderError, httpx.HTTPError) as e:
            failed = True
            logger.warning(f"{label} poll #{attempt + 1} failed: {e}")

    if current is not None and is_terminal(current):
        return current

    if raise_on_exhaustion:
        raise PollTimeoutError(f"{label} did not reach a terminal status after {max_attempts} attempts")

    logger.warning(f"{label} still non-terminal after {max_attempts} attempts; returning last state")
    return current
