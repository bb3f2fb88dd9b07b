from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

from opentelemetry import trace
from pydantic import ValidationError

from senseflow.core.errors import (
    InvalidWorkItemError,
    ItemProcessingError,
    RemoteApiError,
    UnsupportedOperationError,
    error_detail,
)
from senseflow.core.telemetry import mark_batch_finished, mark_batch_started, mark_item, mark_item_failed
from senseflow.jobs.poller import (
    DEFAULT_POLL_INTERVAL_SECONDS,
    DEFAULT_POLL_TIMEOUT_SECONDS,
    await_completion,
    check_status,
)
from senseflow.jobs.status import CallState
from senseflow.schemas.calls import (
    BatchResult,
    CallHandle,
    CallRequest,
    CallStatus,
    ItemResult,
    Operation,
    WorkItem,
)

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

DEFAULT_OPERATION = Operation.SUBMIT_AND_AWAIT


class CallApi(Protocol):
    async def start_call(self, request: CallRequest) -> CallHandle: ...

    async def get_call_status(self, call_id: str) -> CallStatus: ...


@dataclass(slots=True)
class _BatchOptions:
    operation: Operation | str | None
    continue_on_fail: bool
    wait_for_completion: bool
    interval_seconds: float
    timeout_seconds: float
    sleep: Callable[[float], Awaitable[object]]


@dataclass(slots=True)
class _Attempt:
    index: int
    call_id: str | None = None
    ready: bool = False
    payload: dict[str, Any] = field(default_factory=dict)
    error: Exception | None = None

    def aborts(self, options: _BatchOptions) -> bool:
        if self.error is None:
            return False
        if isinstance(self.error, RemoteApiError) and self.error.propagates_immediately:
            return True
        return not options.continue_on_fail


def resolve_operation(value: Operation | str | None) -> Operation:
    if value is None:
        return DEFAULT_OPERATION
    if isinstance(value, Operation):
        return value
    try:
        return Operation(value)
    except ValueError as exc:
        raise UnsupportedOperationError(value) from exc


async def process_batch(
    client: CallApi,
    items: Sequence[WorkItem],
    *,
    operation: Operation | str | None = None,
    continue_on_fail: bool = False,
    wait_for_completion: bool = False,
    interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
    timeout_seconds: float = DEFAULT_POLL_TIMEOUT_SECONDS,
    max_concurrency: int = 1,
    sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
) -> BatchResult:
    """Run every work item and split the results into Ready and Not Ready.

    Items are independent. ``RemoteApiError`` always aborts the batch and is
    re-raised with ``item_index`` set. Any other failure either lands in Not
    Ready with its error detail (``continue_on_fail``) or aborts the batch as
    :class:`ItemProcessingError` carrying the failing index and the results of
    the items before it.

    With ``max_concurrency > 1`` items run as concurrent tasks. An aborting
    failure cancels every item after it, including those still waiting for a
    slot, while earlier items run to completion. Results are then routed in
    input order, so outputs and the reported failing index match a sequential
    run.
    """
    options = _BatchOptions(
        operation=operation,
        continue_on_fail=continue_on_fail,
        wait_for_completion=wait_for_completion,
        interval_seconds=interval_seconds,
        timeout_seconds=timeout_seconds,
        sleep=sleep,
    )
    result = BatchResult()

    with tracer.start_as_current_span("batch.process") as span:
        mark_batch_started(span, size=len(items), continue_on_fail=continue_on_fail)

        if max_concurrency <= 1:
            for index, item in enumerate(items):
                attempt = await _run_item(client, index, item, options)
                _commit(result, attempt, item, options)
        else:
            for attempt in await _run_concurrently(client, items, options, max_concurrency):
                _commit(result, attempt, items[attempt.index], options)

        mark_batch_finished(span, result)

    logger.info("batch processed items=%s ready=%s not_ready=%s", len(items), len(result.ready), len(result.not_ready))
    return result


async def _run_concurrently(
    client: CallApi,
    items: Sequence[WorkItem],
    options: _BatchOptions,
    max_concurrency: int,
) -> list[_Attempt]:
    semaphore = asyncio.Semaphore(max_concurrency)
    tasks: list[asyncio.Task[_Attempt]] = []
    abort_index: int | None = None

    def abort_after(index: int) -> None:
        nonlocal abort_index
        if abort_index is not None and abort_index <= index:
            return
        abort_index = index
        for later in tasks[index + 1 :]:
            later.cancel()

    async def bounded(index: int, item: WorkItem) -> _Attempt:
        async with semaphore:
            attempt = await _run_item(client, index, item, options)
        if attempt.aborts(options):
            logger.info("item %s aborts batch; cancelling later items", index)
            abort_after(index)
        return attempt

    tasks.extend(asyncio.create_task(bounded(index, item)) for index, item in enumerate(items))
    settled = await asyncio.gather(*tasks, return_exceptions=True)

    attempts: list[_Attempt] = []
    for outcome in settled:
        if isinstance(outcome, asyncio.CancelledError):
            # Only items after the aborting one are cancelled; committing stops there.
            break
        if isinstance(outcome, BaseException):
            raise outcome
        attempts.append(outcome)
    return attempts


async def _run_item(client: CallApi, index: int, item: WorkItem, options: _BatchOptions) -> _Attempt:
    attempt = _Attempt(index=index)
    with tracer.start_as_current_span("batch.process_item") as span:
        mark_item(span, index=index)
        try:
            operation = resolve_operation(item.operation if item.operation is not None else options.operation)
            mark_item(span, index=index, operation=operation.value)

            if operation is Operation.SUBMIT_ONLY:
                handle = await client.start_call(_require_call(item, index))
                attempt.call_id = handle.id
                attempt.ready = True
                attempt.payload = {**item.json, "id": handle.id}
            elif operation is Operation.POLL_ONLY:
                attempt.call_id = _require_call_id(item, index)
                if options.wait_for_completion:
                    status = await _await(client, attempt.call_id, options)
                    attempt.ready = True
                else:
                    status, state = await check_status(client, attempt.call_id)
                    attempt.ready = state is not CallState.PENDING
                attempt.payload = {**item.json, **status.payload()}
            else:
                handle = await client.start_call(_require_call(item, index))
                attempt.call_id = handle.id
                status = await _await(client, handle.id, options)
                attempt.ready = True
                attempt.payload = {**item.json, **status.payload()}
        except Exception as exc:
            attempt.error = exc
            mark_item_failed(span, exc)
        mark_item(
            span,
            index=index,
            call_id=attempt.call_id,
            route=None if attempt.error is not None else _route(attempt),
            call_status=attempt.payload.get("status"),
        )
    return attempt


async def _await(client: CallApi, call_id: str, options: _BatchOptions) -> CallStatus:
    return await await_completion(
        client,
        call_id,
        interval_seconds=options.interval_seconds,
        timeout_seconds=options.timeout_seconds,
        sleep=options.sleep,
    )


def _route(attempt: _Attempt) -> str:
    return "ready" if attempt.ready else "not_ready"


def _commit(result: BatchResult, attempt: _Attempt, item: WorkItem, options: _BatchOptions) -> None:
    exc = attempt.error
    if exc is None:
        output = ItemResult(json=attempt.payload, paired_item=attempt.index)
        if attempt.ready:
            result.ready.append(output)
        else:
            result.not_ready.append(output)
        logger.info(
            "item %s routed to %s call_id=%s status=%s",
            attempt.index,
            _route(attempt),
            attempt.call_id,
            attempt.payload.get("status"),
        )
        return

    if isinstance(exc, RemoteApiError) and exc.propagates_immediately:
        exc.item_index = attempt.index
        logger.error("item %s aborted batch: %s", attempt.index, exc)
        raise exc

    if options.continue_on_fail:
        logger.warning("item %s routed to not_ready after error: %s", attempt.index, exc)
        result.not_ready.append(
            ItemResult(
                json=dict(item.json),
                paired_item=attempt.index,
                error=error_detail(exc, call_id=attempt.call_id),
            )
        )
        return

    partial = BatchResult(ready=list(result.ready), not_ready=list(result.not_ready))
    raise ItemProcessingError(attempt.index, exc, partial=partial) from exc


def _require_call(item: WorkItem, index: int) -> CallRequest:
    if item.call is None:
        raise InvalidWorkItemError(f"item {index} has no call request to submit")
    if isinstance(item.call, CallRequest):
        return item.call
    if not isinstance(item.call, dict):
        raise InvalidWorkItemError(f"item {index} call must be an object, got {type(item.call).__name__}")
    try:
        return CallRequest.model_validate(item.call)
    except ValidationError as exc:
        raise InvalidWorkItemError(f"item {index} has an invalid call request: {exc}") from exc


def _require_call_id(item: WorkItem, index: int) -> str:
    if not item.call_id or not item.call_id.strip():
        raise InvalidWorkItemError(f"item {index} has no call id to poll")
    return item.call_id.strip()
