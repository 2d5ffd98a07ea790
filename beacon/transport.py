"""Transport: one network call per batch, classified into a tagged result.

The transport never retries. Retry policy lives in the queue and pool.
"""

import json
import logging
import time
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Protocol, runtime_checkable

import httpx

from beacon.errors import PermanentTransportError, TransientTransportError

logger = logging.getLogger(__name__)


class ServerError(StrEnum):
    """Error codes the collection service reports in 4xx bodies."""

    UNKNOWN = "UNKNOWN"
    INVALID_COLLECTION = "INVALID_COLLECTION"
    INVALID_PARTNER = "INVALID_PARTNER"
    INVALID_LOCATION = "INVALID_LOCATION"
    INVALID_DEVICE = "INVALID_DEVICE"
    INVALID_USER = "INVALID_USER"
    INVALID_CLIENT = "INVALID_CLIENT"
    PARTNER_NOT_FOUND = "PARTNER_NOT_FOUND"
    LOCATION_NOT_FOUND = "LOCATION_NOT_FOUND"
    INVALID_PAYLOAD = "INVALID_PAYLOAD"


@dataclass(frozen=True)
class Ok:
    latency_ms: float


@dataclass(frozen=True)
class TransientFailure:
    status_code: int | None = None
    reason: str = ""


@dataclass(frozen=True)
class PermanentFailure:
    error_code: str
    status_code: int | None = None


SendResult = Ok | TransientFailure | PermanentFailure


@dataclass(frozen=True)
class Endpoint:
    """Where a request goes. URL templating is the caller's concern."""

    url: str
    api_key: str | None = None
    headers: dict[str, str] = field(default_factory=dict)
    correlation_header: str | None = None


@runtime_checkable
class Transport(Protocol):
    """Single in-flight network call abstraction."""

    async def send(
        self, body: str, endpoint: Endpoint, *, correlation_id: str | None = None
    ) -> SendResult:
        """POST one batch body. Must not retry."""

    async def ping(self, endpoint: Endpoint) -> SendResult:
        """Liveness probe."""

    async def close(self) -> None:
        """Release connections."""


def _error_code(body: str, status: int) -> str:
    try:
        data = json.loads(body) if body else None
    except json.JSONDecodeError:
        data = None
    if isinstance(data, dict):
        code = data.get("error") or data.get("code")
        if isinstance(code, str) and code:
            try:
                return ServerError(code.upper()).value
            except ValueError:
                return code
    return f"HTTP_{status}"


def classify_status(status: int, body: str = "") -> None:
    """Raise according to status class: 4xx permanent, anything but 2xx transient."""
    if 200 <= status < 300:
        return
    if 400 <= status < 500:
        raise PermanentTransportError(_error_code(body, status), status)
    raise TransientTransportError(status, f"HTTP {status}")


def result_from_error(err: Exception) -> SendResult:
    """Map a raised transport error onto the result type."""
    if isinstance(err, PermanentTransportError):
        return PermanentFailure(err.error_code, err.status_code)
    if isinstance(err, TransientTransportError):
        return TransientFailure(err.status_code, err.reason)
    return TransientFailure(None, str(err) or type(err).__name__)


class HttpTransport:
    """httpx-based transport. One AsyncClient for the life of the pipeline."""

    def __init__(self, timeout: float = 10.0, client: httpx.AsyncClient | None = None) -> None:
        self._timeout = timeout
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    def _headers(self, endpoint: Endpoint, correlation_id: str | None) -> dict[str, str]:
        headers = dict(endpoint.headers)
        if endpoint.correlation_header and correlation_id:
            headers[endpoint.correlation_header] = correlation_id
        return headers

    def _params(self, endpoint: Endpoint) -> dict[str, str]:
        return {"key": endpoint.api_key} if endpoint.api_key else {}

    async def _request(self, method: str, endpoint: Endpoint, **kwargs) -> float:
        """Perform the call; return latency in ms or raise a transport error."""
        started = time.monotonic()
        try:
            resp = await self._get_client().request(
                method, endpoint.url, params=self._params(endpoint), **kwargs
            )
        except httpx.TimeoutException as e:
            raise TransientTransportError(None, "timeout") from e
        except httpx.TransportError as e:
            raise TransientTransportError(None, f"network error: {e}") from e
        latency_ms = (time.monotonic() - started) * 1000.0
        classify_status(resp.status_code, resp.text)
        return latency_ms

    async def send(
        self, body: str, endpoint: Endpoint, *, correlation_id: str | None = None
    ) -> SendResult:
        headers = self._headers(endpoint, correlation_id)
        headers.setdefault("Content-Type", "application/json")
        try:
            latency = await self._request("POST", endpoint, content=body, headers=headers)
        except (TransientTransportError, PermanentTransportError) as e:
            logger.debug("send to %s failed: %s", endpoint.url, e)
            return result_from_error(e)
        return Ok(latency)

    async def ping(self, endpoint: Endpoint) -> SendResult:
        try:
            latency = await self._request("GET", endpoint, headers=dict(endpoint.headers))
        except (TransientTransportError, PermanentTransportError) as e:
            logger.debug("ping %s failed: %s", endpoint.url, e)
            return result_from_error(e)
        return Ok(latency)

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None
