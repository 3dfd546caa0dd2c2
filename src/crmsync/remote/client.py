"""
Async HTTP client for the remote CRM's v1 REST API.

Every request carries the caller's API token as the ``api_token`` query
parameter. Successful responses arrive wrapped in an envelope:

    {"success": true, "data": ..., "additional_data": {"pagination": {...}}}

request() returns the envelope; the endpoint helpers unwrap ``data``.

Retry policy (tenacity, max_retries retries after the first attempt):
  - 429:                   wait for the Retry-After hint (default 1s)
  - transport error / 5xx: exponential backoff starting at retry_delay
  - 401:                   CredentialError, never retried
  - any other 4xx:         RemoteAPIError, never retried

When retries run out the last error is raised unchanged. The client holds
no state besides its configuration; each call opens its own httpx client.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx
from pydantic import BaseModel, ConfigDict, ValidationError
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt

from crmsync.config import get_settings

logger = logging.getLogger(__name__)

REMOTE_TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"


# ── Exceptions ────────────────────────────────────────────────────────────────

class RemoteError(Exception):
    """Base class for every failure talking to the remote CRM."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class CredentialError(RemoteError):
    """The API token is missing or was rejected (HTTP 401)."""


class RemoteNetworkError(RemoteError):
    """DNS, connect or timeout failure that outlived the retries."""


class RemoteAPIError(RemoteError):
    """Non-2xx response, or a 2xx envelope with ``success: false``."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RemoteServerError(RemoteAPIError):
    """5xx response. Retried like a transport failure."""


class RateLimitedError(RemoteAPIError):
    """HTTP 429. ``retry_after`` is the server's hint in seconds."""

    def __init__(self, retry_after: float, message: str = "Rate limit exceeded"):
        super().__init__(message, status_code=429)
        self.retry_after = retry_after


_RETRYABLE = (RateLimitedError, RemoteServerError, RemoteNetworkError)


# ── Response types ────────────────────────────────────────────────────────────

@dataclass
class RemoteResponse:
    status_code: int
    body: Dict[str, Any]

    @property
    def data(self) -> Any:
        return self.body.get("data")

    @property
    def pagination(self) -> Dict[str, Any]:
        additional = self.body.get("additional_data") or {}
        return additional.get("pagination") or {}

    @property
    def more_items(self) -> bool:
        return bool(self.pagination.get("more_items_in_collection"))

    @property
    def next_start(self) -> Optional[int]:
        return self.pagination.get("next_start")


class RemoteUser(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int
    name: Optional[str] = None
    email: Optional[str] = None


class RemoteFieldOption(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: Any
    label: str


class RemoteField(BaseModel):
    """Custom-field definition as returned by /organizationFields."""

    model_config = ConfigDict(extra="ignore")

    key: str
    name: str
    field_type: Optional[str] = None
    options: Optional[List[RemoteFieldOption]] = None


# ── Client ────────────────────────────────────────────────────────────────────

class RemoteClient:
    """
    Rate-limited, retrying client over the remote CRM resources.

    Args:
        api_token: The caller's API token. Blank tokens raise CredentialError.
        transport: Optional httpx transport (httpx.MockTransport in tests).
        sleep: Coroutine used between retries. Defaults to asyncio.sleep.

    All other keyword arguments default to the values in Settings.
    """

    def __init__(
        self,
        api_token: str,
        *,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        retry_delay: Optional[float] = None,
        default_retry_after: Optional[float] = None,
        page_size: Optional[int] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep=asyncio.sleep,
    ):
        if not api_token or not api_token.strip():
            raise CredentialError("Remote API key is required")

        settings = get_settings()
        self._api_token = api_token.strip()
        self._base_url = base_url or settings.remote_api_url
        self._timeout = timeout if timeout is not None else settings.remote_timeout_seconds
        self._max_retries = (
            max_retries if max_retries is not None else settings.remote_max_retries
        )
        self._retry_delay = (
            retry_delay if retry_delay is not None else settings.remote_retry_delay_seconds
        )
        self._default_retry_after = (
            default_retry_after
            if default_retry_after is not None
            else settings.remote_default_retry_after_seconds
        )
        self._page_size = page_size or settings.remote_page_size
        self._transport = transport
        self._sleep = sleep

    # ─── Core request ────────────────────────────────────────────────────────

    async def request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> RemoteResponse:
        """Send one logical request, retrying per the module's retry policy.

        Raises:
            CredentialError: on HTTP 401.
            RateLimitedError: when 429s outlast the retries.
            RemoteNetworkError: when transport failures outlast the retries.
            RemoteAPIError: on any other non-2xx or ``success: false`` body.
        """
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._max_retries + 1),
            wait=self._wait_seconds,
            retry=retry_if_exception_type(_RETRYABLE),
            sleep=self._sleep,
            before_sleep=self._log_retry,
            reraise=True,
        )
        return await retrying(self._send, method, path, params, json)

    async def _send(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]],
        json: Optional[Dict[str, Any]],
    ) -> RemoteResponse:
        query = dict(params or {})
        query["api_token"] = self._api_token

        try:
            async with self._client() as client:
                response = await client.request(method, path, params=query, json=json)
        except httpx.TransportError as exc:
            raise RemoteNetworkError(f"Failed to connect to remote CRM: {exc}") from exc

        body = _json_or_empty(response)
        status = response.status_code

        if status == 401:
            raise CredentialError("Remote API key expired or invalid")
        if status == 429:
            raise RateLimitedError(self._retry_after(response))
        if status >= 500:
            raise RemoteServerError(
                body.get("error") or f"HTTP {status}: {response.reason_phrase}", status
            )
        if status >= 400:
            raise RemoteAPIError(
                body.get("error") or f"HTTP {status}: {response.reason_phrase}", status
            )
        if body.get("success") is False:
            raise RemoteAPIError(body.get("error") or "Remote CRM reported failure", status)

        return RemoteResponse(status_code=status, body=body)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._base_url,
            timeout=self._timeout,
            transport=self._transport,
            headers={"Accept": "application/json"},
        )

    def _retry_after(self, response: httpx.Response) -> float:
        raw = response.headers.get("retry-after")
        if raw is None:
            return self._default_retry_after
        try:
            return max(0.0, float(raw))
        except ValueError:
            return self._default_retry_after

    def _wait_seconds(self, retry_state) -> float:
        exc = retry_state.outcome.exception()
        if isinstance(exc, RateLimitedError):
            return exc.retry_after
        return self._retry_delay * (2 ** (retry_state.attempt_number - 1))

    def _log_retry(self, retry_state) -> None:
        exc = retry_state.outcome.exception()
        logger.warning(
            "Remote request failed (attempt %d/%d): %s",
            retry_state.attempt_number,
            self._max_retries + 1,
            exc,
        )

    async def _paginate(
        self, path: str, params: Optional[Dict[str, Any]] = None
    ) -> List[Dict[str, Any]]:
        items: List[Dict[str, Any]] = []
        start = 0
        while True:
            page = await self.request(
                "GET", path, params={**(params or {}), "start": start, "limit": self._page_size}
            )
            items.extend(page.data or [])
            if not page.more_items:
                return items
            start = page.next_start if page.next_start is not None else start + self._page_size

    # ─── Endpoints ───────────────────────────────────────────────────────────

    async def whoami(self) -> RemoteUser:
        """Lightweight connectivity probe: the user owning the token."""
        response = await self.request("GET", "/users/me")
        return RemoteUser.model_validate(response.data or {})

    async def test_connection(self) -> Dict[str, Any]:
        """Probe the API and report the outcome instead of raising.

        Returns:
            {"success": bool, "user": {...} | None, "error": str | None,
             "diagnostics": {"responseTime": "...ms", "endpoint": "/users/me", ...}}
        """
        started = time.monotonic()
        user: Optional[RemoteUser] = None
        error: Optional[str] = None
        error_type: Optional[str] = None
        try:
            user = await self.whoami()
        except RemoteError as exc:
            error = exc.message
            error_type = type(exc).__name__
        elapsed_ms = int((time.monotonic() - started) * 1000)

        diagnostics: Dict[str, Any] = {
            "responseTime": f"{elapsed_ms}ms",
            "timestamp": datetime.utcnow().isoformat(),
            "endpoint": "/users/me",
        }
        if error_type:
            diagnostics["errorType"] = error_type
        return {
            "success": user is not None,
            "user": user.model_dump() if user else None,
            "error": error,
            "diagnostics": diagnostics,
        }

    async def list_persons(self, since: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """All persons, or only those changed after ``since`` (UTC)."""
        if since is None:
            return await self._paginate("/persons")

        entries = await self._paginate(
            "/recents",
            params={
                "items": "person",
                "since_timestamp": since.strftime(REMOTE_TIMESTAMP_FORMAT),
            },
        )
        # recents wraps each record: {"item": "person", "id": 1, "data": {...}}
        return [
            e["data"] for e in entries
            if e.get("item") == "person" and e.get("data") is not None
        ]

    async def list_organizations(self) -> List[Dict[str, Any]]:
        return await self._paginate("/organizations")

    async def list_organization_fields(self) -> List[RemoteField]:
        """Custom-field definitions. Malformed entries are logged and skipped."""
        response = await self.request("GET", "/organizationFields")
        fields: List[RemoteField] = []
        for raw in response.data or []:
            try:
                fields.append(RemoteField.model_validate(raw))
            except ValidationError as exc:
                key = raw.get("key") if isinstance(raw, dict) else None
                logger.warning("Skipping malformed organization field %r: %s", key, exc)
        return fields

    async def create_person(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        response = await self.request("POST", "/persons", json=payload)
        return response.data or {}

    async def update_person(self, person_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        response = await self.request("PUT", f"/persons/{person_id}", json=payload)
        return response.data or {}

    async def create_activity(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        response = await self.request("POST", "/activities", json=payload)
        return response.data or {}

    async def update_activity(self, activity_id: int, payload: Dict[str, Any]) -> Dict[str, Any]:
        response = await self.request("PUT", f"/activities/{activity_id}", json=payload)
        return response.data or {}


def _json_or_empty(response: httpx.Response) -> Dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}
