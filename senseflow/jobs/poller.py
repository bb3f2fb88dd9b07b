from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Protocol

from senseflow.core.errors import PollTimeoutError
from senseflow.jobs.status import CallState, classify
from senseflow.schemas.calls import CallStatus

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_SECONDS = 5.0
DEFAULT_POLL_TIMEOUT_SECONDS = 300.0


class StatusSource(Protocol):
    async def get_call_status(self, call_id: str) -> CallStatus: ...


async def check_status(client: StatusSource, call_id: str) -> tuple[CallStatus, CallState]:
    status = await client.get_call_status(call_id)
    return status, classify(status)


async def await_completion(
    client: StatusSource,
    call_id: str,
    *,
    interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
    timeout_seconds: float = DEFAULT_POLL_TIMEOUT_SECONDS,
    sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> CallStatus:
    """Poll a phone call until it reaches ``completed`` or ``failed``.

    The terminal status is returned as-is, including ``failed``; deciding
    whether a failed call is an error belongs to the caller. Status query
    errors propagate immediately and are never retried. Every pending answer
    is followed by a cancellable sleep of ``interval_seconds``; once the
    elapsed time reaches ``timeout_seconds`` after a sleep,
    :class:`PollTimeoutError` is raised instead of querying again. At least
    one query is always made, so a timeout shorter than the interval still
    checks the call once.
    """
    if interval_seconds <= 0:
        raise ValueError("interval_seconds must be positive")

    started_at = clock()
    attempts = 0
    while True:
        status, state = await check_status(client, call_id)
        attempts += 1
        if state is not CallState.PENDING:
            logger.info("phone call id=%s finished status=%s attempts=%s", call_id, status.status, attempts)
            return status

        logger.debug("phone call id=%s still pending status=%s", call_id, status.status)
        await sleep(interval_seconds)

        elapsed = clock() - started_at
        if elapsed >= timeout_seconds:
            logger.warning("phone call id=%s timed out after %.1fs attempts=%s", call_id, elapsed, attempts)
            raise PollTimeoutError(call_id, elapsed=elapsed, attempts=attempts)
