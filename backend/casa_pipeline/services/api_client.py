"""
Async HTTP client for the WordPress REST backend.

Every call resolves to an `ApiResponse` envelope instead of raising, so
callers branch on `success` and `status_code` the same way for transport
failures, HTTP errors, and handler-level `{"success": false}` bodies.
"""

from __future__ import annotations

import json as jsonlib
import logging
from dataclasses import dataclass
from typing import Any

import httpx

from casa_pipeline.config import settings
from casa_pipeline.errors import BackendError, Forbidden, SessionExpired
from casa_pipeline.middleware.request_context import get_request_id

logger = logging.getLogger(__name__)

GENERIC_ERROR = "An unexpected error occurred"
NO_RESPONSE_ERROR = "No response from server. Please check your connection."

CASA_NAMESPACE = "casa/v1"
JWT_NAMESPACE = "jwt-auth/v1"


@dataclass
class ApiResponse:
    success: bool
    data: Any = None
    error: str | None = None
    status_code: int | None = None

    @property
    def payload(self) -> Any:
        """The body with the WordPress `{success, data}` wrapper removed."""
        return unwrap(self.data)


def unwrap(body: Any) -> Any:
    if isinstance(body, dict) and "data" in body and ("success" in body or "message" in body):
        return body["data"]
    return body


def raise_for_envelope(response: ApiResponse) -> None:
    """Translate a failed envelope into the pipeline error taxonomy."""
    if response.success:
        return
    if response.status_code == 401:
        raise SessionExpired(response.error)
    if response.status_code == 403:
        raise Forbidden(response.error)
    raise BackendError(response.error)


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        msg = body.get("message") or body.get("error")
        if isinstance(msg, str) and msg:
            return msg
        if msg:
            return jsonlib.dumps(msg)
    return response.reason_phrase or GENERIC_ERROR


class ApiClient:
    """Thin wrapper over a shared `httpx.AsyncClient`."""

    def __init__(
        self,
        base_url: str | None = None,
        *,
        api_prefix: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = (base_url or settings.backend_url).rstrip("/")
        self.api_prefix = "/" + (api_prefix if api_prefix is not None else settings.api_prefix).strip("/")
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout if timeout is not None else settings.request_timeout,
            transport=transport,
            headers={"Content-Type": "application/json"},
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    def _url(self, endpoint: str) -> str:
        return f"{self.api_prefix}/{endpoint.lstrip('/')}"

    async def request(
        self,
        method: str,
        endpoint: str,
        *,
        json: Any = None,
        params: dict | None = None,
        token: str | None = None,
    ) -> ApiResponse:
        headers = {}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        request_id = get_request_id()
        if request_id:
            headers["X-Request-ID"] = request_id

        url = self._url(endpoint)
        try:
            response = await self._client.request(method, url, json=json, params=params, headers=headers)
        except httpx.HTTPError as exc:
            logger.warning("Backend %s %s failed: %s", method, url, type(exc).__name__)
            return ApiResponse(success=False, error=NO_RESPONSE_ERROR)

        if response.is_error:
            message = _error_message(response)
            logger.warning("Backend %s %s -> %s: %s", method, url, response.status_code, message)
            return ApiResponse(success=False, error=message, status_code=response.status_code)

        try:
            body = response.json() if response.content else None
        except ValueError:
            body = response.text

        if isinstance(body, dict) and body.get("success") is False:
            message = body.get("message") or body.get("error") or GENERIC_ERROR
            return ApiResponse(success=False, data=body, error=str(message), status_code=response.status_code)

        return ApiResponse(success=True, data=body, status_code=response.status_code)

    # ── Namespaced helpers ──

    async def get(self, endpoint: str, *, params: dict | None = None, token: str | None = None) -> ApiResponse:
        return await self.request("GET", endpoint, params=params, token=token)

    async def post(self, endpoint: str, json: Any = None, *, token: str | None = None) -> ApiResponse:
        return await self.request("POST", endpoint, json=json, token=token)

    async def casa_post(self, endpoint: str, json: Any = None, *, token: str | None = None) -> ApiResponse:
        return await self.post(f"{CASA_NAMESPACE}/{endpoint}", json, token=token)

    async def jwt_post(self, endpoint: str, json: Any = None, *, token: str | None = None) -> ApiResponse:
        return await self.post(f"{JWT_NAMESPACE}/{endpoint}", json, token=token)
