from __future__ import annotations

from collections.abc import Mapping
from enum import Enum
from typing import Any

from senseflow.schemas.calls import CallStatus


class CallState(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    PENDING = "pending"


# Only these two values are terminal per the SenseFlow API contract. Anything
# else, including a missing status, keeps the call pending.
TERMINAL_STATES: dict[str, CallState] = {
    "completed": CallState.SUCCESS,
    "failed": CallState.FAILURE,
}


def classify(status: CallStatus | Mapping[str, Any]) -> CallState:
    raw = status.status if isinstance(status, CallStatus) else status.get("status")
    if not isinstance(raw, str):
        return CallState.PENDING
    return TERMINAL_STATES.get(raw, CallState.PENDING)


def is_terminal(status: CallStatus | Mapping[str, Any]) -> bool:
    return classify(status) is not CallState.PENDING
