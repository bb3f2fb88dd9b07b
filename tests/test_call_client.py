from __future__ import annotations

import asyncio
import json
from typing import Any

import httpx
import pytest

from senseflow.core.errors import InvalidCallIdError, InvalidResponseError, RemoteApiError, TransportError
from senseflow.jobs.status import CallState, classify
from senseflow.schemas.calls import CallHandle, CallRequest, CallStatus, Language
from senseflow.services.call_client import CallClient


def _run_with_transport(handler, action):
    async def run() -> Any:
        transport = httpx.MockTransport(handler)
        async with httpx.AsyncClient(transport=transport) as http_client:
            client = CallClient(api_key="test-key", client=http_client)
            return await action(client)

    return asyncio.run(run())


def test_start_call_posts_snake_case_body_with_api_key() -> None:
    captured: dict[str, Any] = {}

    async def handler(request: httpx.Request) -> httpx.Response:
        captured["method"] = request.method
        captured["url"] = str(request.url)
        captured["api_key"] = request.headers.get("X-API-Key")
        captured["body"] = json.loads(request.content)
        return httpx.Response(status_code=201, json={"id": "abc-123"}, request=request)

    request = CallRequest(
        to_number="+15551234567",
        language=Language.CZECH,
        first_message="Hi John, this is the assistant of Berlin City Suites.",
        on_behalf_of="Berlin City Suites",
        goal="Confirm the check-in time for booking PA-8721.",
        context="Guest name: John Miller",
    )
    handle = _run_with_transport(handler, lambda client: client.start_call(request))

    assert handle == CallHandle(id="abc-123")
    assert captured["method"] == "POST"
    assert captured["url"] == "https://app.senseflow.io/api/phone-call/"
    assert captured["api_key"] == "test-key"
    assert captured["body"] == {
        "to_number": "+15551234567",
        "language": "cs",
        "first_message": "Hi John, this is the assistant of Berlin City Suites.",
        "on_behalf_of": "Berlin City Suites",
        "goal": "Confirm the check-in time for booking PA-8721.",
        "context": "Guest name: John Miller",
    }


def test_start_call_rejects_response_without_id() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code=200, json={"id": "  "}, request=request)

    with pytest.raises(InvalidCallIdError):
        _run_with_transport(handler, lambda client: client.start_call(CallRequest(to_number="+15551234567")))


def test_get_call_status_keeps_extra_fields() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        assert str(request.url) == "https://app.senseflow.io/api/phone-call/abc-123"
        assert request.headers.get("X-API-Key") == "test-key"
        return httpx.Response(
            status_code=200,
            json={"id": "abc-123", "status": "completed", "duration": 42, "transcript": ["Hello"]},
            request=request,
        )

    status = _run_with_transport(handler, lambda client: client.get_call_status("abc-123"))

    assert isinstance(status, CallStatus)
    assert status.status == "completed"
    assert status.payload() == {"id": "abc-123", "status": "completed", "duration": 42, "transcript": ["Hello"]}


def test_get_call_status_payload_omits_fields_the_service_did_not_send() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code=200, json={"progress": 0.5}, request=request)

    status = _run_with_transport(handler, lambda client: client.get_call_status("abc-123"))

    assert status.status is None
    assert status.payload() == {"progress": 0.5}


def test_get_call_status_accepts_non_string_status() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code=200, json={"id": "abc-123", "status": 3}, request=request)

    status = _run_with_transport(handler, lambda client: client.get_call_status("abc-123"))

    assert status.status == 3
    assert classify(status) is CallState.PENDING
    assert status.payload() == {"id": "abc-123", "status": 3}


def test_get_call_status_rejects_blank_call_id_without_request() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    with pytest.raises(InvalidCallIdError):
        _run_with_transport(handler, lambda client: client.get_call_status("   "))


def test_non_success_response_raises_remote_api_error_with_body() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code=404, json={"detail": "Not found."}, request=request)

    with pytest.raises(RemoteApiError) as excinfo:
        _run_with_transport(handler, lambda client: client.get_call_status("missing"))

    assert excinfo.value.status_code == 404
    assert excinfo.value.body == {"detail": "Not found."}
    assert excinfo.value.method == "GET"
    assert excinfo.value.url == "https://app.senseflow.io/api/phone-call/missing"


def test_non_json_error_body_is_kept_as_text() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code=502, text="bad gateway", request=request)

    with pytest.raises(RemoteApiError) as excinfo:
        _run_with_transport(handler, lambda client: client.start_call(CallRequest(to_number="+15551234567")))

    assert excinfo.value.status_code == 502
    assert excinfo.value.body == "bad gateway"


def test_connection_failure_raises_transport_error() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(TransportError) as excinfo:
        _run_with_transport(handler, lambda client: client.get_call_status("abc-123"))

    assert isinstance(excinfo.value.__cause__, httpx.ConnectError)


def test_non_object_body_raises_invalid_response_error() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code=200, json=["abc-123"], request=request)

    with pytest.raises(InvalidResponseError):
        _run_with_transport(handler, lambda client: client.get_call_status("abc-123"))


@pytest.mark.parametrize(("status_code", "expected"), [(200, True), (401, False), (403, False)])
def test_verify_credentials(status_code: int, expected: bool) -> None:
    seen: list[str] = []

    async def handler(request: httpx.Request) -> httpx.Response:
        seen.append(f"{request.method} {request.url}")
        return httpx.Response(status_code=status_code, json=[], request=request)

    assert _run_with_transport(handler, lambda client: client.verify_credentials()) is expected
    assert seen == ["GET https://app.senseflow.io/api/phone-call/"]


def test_verify_credentials_propagates_server_errors() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code=500, text="boom", request=request)

    with pytest.raises(RemoteApiError):
        _run_with_transport(handler, lambda client: client.verify_credentials())


def test_call_client_uses_configured_timeout(monkeypatch) -> None:
    captured: dict[str, Any] = {}

    class FakeAsyncClient:
        async def __aenter__(self) -> "FakeAsyncClient":
            return self

        async def __aexit__(self, exc_type, exc, tb) -> None:
            return None

        async def request(self, method: str, url: str, json: Any, headers: dict[str, str]) -> httpx.Response:
            captured["headers"] = headers
            request = httpx.Request(method, url, headers=headers)
            return httpx.Response(status_code=200, json={"id": "abc-123", "status": "queued"}, request=request)

    def fake_async_client(*args: Any, **kwargs: Any) -> FakeAsyncClient:
        captured.update(kwargs)
        return FakeAsyncClient()

    monkeypatch.setattr(httpx, "AsyncClient", fake_async_client)
    client = CallClient(base_url="https://calls.example.test/", api_key="key-1", timeout_seconds=3.5)
    status = asyncio.run(client.get_call_status("abc-123"))

    assert captured["timeout"] == 3.5
    assert captured["headers"] == {"X-API-Key": "key-1"}
    assert status.status == "queued"
