from __future__ import annotations

import logging
from typing import Any

import httpx
from pydantic import ValidationError

from senseflow.core.errors import InvalidCallIdError, InvalidResponseError, RemoteApiError, TransportError
from senseflow.schemas.calls import CallHandle, CallRequest, CallStatus

logger = logging.getLogger(__name__)

SENSEFLOW_API_BASE = "https://app.senseflow.io"
PHONE_CALL_PATH = "/api/phone-call/"


class CallClient:
    def __init__(
        self,
        base_url: str = SENSEFLOW_API_BASE,
        api_key: str = "",
        *,
        timeout_seconds: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.headers = {"X-API-Key": api_key}
        self.timeout_seconds = timeout_seconds
        self._client = client

    async def start_call(self, request: CallRequest) -> CallHandle:
        # Not idempotent: each POST creates a new remote call.
        payload = await self._request_json("POST", PHONE_CALL_PATH, json=request.to_wire())
        call_id = _as_call_id(payload.get("id"))
        if call_id is None:
            raise InvalidCallIdError("phone call submission response did not include an id")
        logger.info("started phone call id=%s language=%s", call_id, request.language.value)
        return CallHandle(id=call_id)

    async def get_call_status(self, call_id: str) -> CallStatus:
        checked_id = _as_call_id(call_id)
        if checked_id is None:
            raise InvalidCallIdError("call id must be a non-empty string")
        payload = await self._request_json("GET", f"{PHONE_CALL_PATH}{checked_id}")
        try:
            return CallStatus.model_validate(payload)
        except ValidationError as exc:
            raise InvalidResponseError(f"unexpected status document for call {checked_id}: {exc}") from exc

    async def verify_credentials(self) -> bool:
        try:
            response = await self._send("GET", PHONE_CALL_PATH)
        except RemoteApiError as exc:
            if exc.status_code in {401, 403}:
                logger.warning("credential check rejected with HTTP %s", exc.status_code)
                return False
            raise
        return response.status_code == 200

    async def _request_json(self, method: str, path: str, *, json: dict[str, Any] | None = None) -> dict[str, Any]:
        response = await self._send(method, path, json=json)
        try:
            payload = response.json()
        except ValueError as exc:
            raise InvalidResponseError(f"{method} {response.request.url} returned a non-JSON body") from exc
        if not isinstance(payload, dict):
            raise InvalidResponseError(
                f"{method} {response.request.url} returned {type(payload).__name__}, expected an object"
            )
        return payload

    async def _send(self, method: str, path: str, *, json: dict[str, Any] | None = None) -> httpx.Response:
        url = f"{self.base_url}{path}"
        logger.debug("senseflow request method=%s url=%s", method, url)
        try:
            if self._client is not None:
                response = await self._client.request(method, url, json=json, headers=self.headers)
            else:
                async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                    response = await client.request(method, url, json=json, headers=self.headers)
        except httpx.TransportError as exc:
            raise TransportError(f"{method} {url} failed: {exc}") from exc

        if not response.is_success:
            raise RemoteApiError(response.status_code, _response_body(response), method=method, url=url)
        return response


def _as_call_id(value: Any) -> str | None:
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return None


def _response_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text
