from __future__ import annotations

from typing import TYPE_CHECKING, Any, ClassVar

if TYPE_CHECKING:
    from senseflow.schemas.calls import BatchResult


class SenseFlowError(Exception):
    """Base orchestration error."""


class TransportError(SenseFlowError):
    """Raised when the service cannot be reached (connection, DNS, TLS, read timeout)."""


class RemoteApiError(SenseFlowError):
    """Raised when the service answers with a non-2xx response.

    These errors already carry the upstream status and body, so the batch
    orchestrator never downgrades them to a Not Ready item.
    """

    propagates_immediately: ClassVar[bool] = True

    def __init__(self, status_code: int, body: Any, *, method: str, url: str) -> None:
        super().__init__(f"{method} {url} failed with HTTP {status_code}")
        self.status_code = status_code
        self.body = body
        self.method = method
        self.url = url
        self.item_index: int | None = None


class InvalidResponseError(SenseFlowError):
    """Raised when a 2xx response body is not the JSON object the service documents."""


class InvalidCallIdError(SenseFlowError):
    """Raised when a call id is missing or blank."""


class InvalidWorkItemError(SenseFlowError):
    """Raised when a work item lacks the fields its operation needs."""


class UnsupportedOperationError(SenseFlowError):
    def __init__(self, operation: Any) -> None:
        super().__init__(f"unsupported operation: {operation}")
        self.operation = operation


class PollTimeoutError(SenseFlowError, TimeoutError):
    def __init__(self, call_id: str, *, elapsed: float, attempts: int) -> None:
        super().__init__(
            f"waiting for phone call {call_id} timed out after {elapsed:.1f}s ({attempts} status checks)"
        )
        self.call_id = call_id
        self.elapsed = elapsed
        self.attempts = attempts


class ItemProcessingError(SenseFlowError):
    """Raised when strict batch processing stops at a failing item."""

    def __init__(self, item_index: int, cause: BaseException, *, partial: BatchResult | None = None) -> None:
        super().__init__(f"item {item_index} failed: {cause}")
        self.item_index = item_index
        self.cause = cause
        self.partial = partial


def error_detail(exc: BaseException, *, call_id: str | None = None) -> dict[str, Any]:
    detail: dict[str, Any] = {"type": type(exc).__name__, "message": str(exc)}
    call_id = getattr(exc, "call_id", None) or call_id
    if call_id:
        detail["call_id"] = call_id
    if isinstance(exc, PollTimeoutError):
        detail["elapsed_seconds"] = round(exc.elapsed, 3)
        detail["attempts"] = exc.attempts
    if isinstance(exc, UnsupportedOperationError):
        detail["operation"] = str(exc.operation)
    return detail
