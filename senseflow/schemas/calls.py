from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, field_validator


class Language(str, Enum):
    ENGLISH = "en"
    CZECH = "cs"


class Operation(str, Enum):
    SUBMIT_ONLY = "submit_only"
    POLL_ONLY = "poll_only"
    SUBMIT_AND_AWAIT = "submit_and_await"


class CallRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    to_number: str
    language: Language = Language.ENGLISH
    first_message: str = ""
    on_behalf_of: str = ""
    goal: str = ""
    context: str = ""

    @field_validator("to_number")
    @classmethod
    def _strip_number(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("to_number must be a non-empty string")
        return stripped

    def to_wire(self) -> dict[str, str]:
        return self.model_dump(mode="json")


class CallHandle(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str


class CallStatus(BaseModel):
    """Status document returned by ``GET /api/phone-call/{id}``.

    Only ``id`` and ``status`` are typed; every other field the service sends
    is kept as-is so it can be merged into the caller's payload.
    """

    model_config = ConfigDict(extra="allow")

    id: str | None = None
    # Service-defined; anything other than "completed" or "failed" is pending.
    status: Any = None

    def payload(self) -> dict[str, Any]:
        data: dict[str, Any] = {name: getattr(self, name) for name in ("id", "status") if name in self.model_fields_set}
        data.update(self.model_extra or {})
        return data


@dataclass(slots=True)
class WorkItem:
    json: dict[str, Any] = field(default_factory=dict)
    # Raw mappings are validated when the item runs.
    call: CallRequest | dict[str, Any] | None = None
    call_id: str | None = None
    operation: Operation | str | None = None

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> WorkItem:
        raw_json = raw.get("json")
        return cls(
            json=dict(raw_json) if isinstance(raw_json, dict) else {},
            call=raw.get("call"),
            call_id=raw.get("call_id"),
            operation=raw.get("operation"),
        )


@dataclass(slots=True)
class ItemResult:
    json: dict[str, Any]
    paired_item: int
    error: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"json": self.json, "paired_item": self.paired_item}
        if self.error is not None:
            data["error"] = self.error
        return data


@dataclass(slots=True)
class BatchResult:
    ready: list[ItemResult] = field(default_factory=list)
    not_ready: list[ItemResult] = field(default_factory=list)

    def outputs(self) -> list[list[ItemResult]]:
        return [self.ready, self.not_ready]

    def to_dict(self) -> dict[str, list[dict[str, Any]]]:
        return {
            "ready": [result.to_dict() for result in self.ready],
            "not_ready": [result.to_dict() for result in self.not_ready],
        }
