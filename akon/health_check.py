"""HTTP/HTTPS health checks used to verify VPN connectivity."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional, Union
from urllib.parse import urlsplit

import httpx

__all__ = ["HealthCheckResult", "HealthCheckError", "HealthChecker"]

logger = logging.getLogger(__name__)

_SUPPORTED_SCHEMES = ("http", "https")


@dataclass(frozen=True)
class HealthCheckResult:
    """Outcome of one health check."""

    success: bool
    duration: timedelta
    error: Optional[str] = None

    @classmethod
    def succeeded(cls, duration: timedelta) -> "HealthCheckResult":
        return cls(success=True, duration=duration, error=None)

    @classmethod
    def failed(cls, duration: timedelta, error: str) -> "HealthCheckResult":
        return cls(success=False, duration=duration, error=error)


class HealthCheckError(Exception):
    """The health check endpoint is unusable."""

    def __init__(self, detail: str) -> None:
        super().__init__(f"Invalid endpoint URL: {detail}")
        self.detail = detail


def _as_timedelta(value: Union[float, int, timedelta]) -> timedelta:
    if isinstance(value, timedelta):
        return value
    return timedelta(seconds=value)


def _format_duration(value: timedelta) -> str:
    return f"{value.total_seconds():g}s"


def _validate_endpoint(endpoint: str) -> None:
    try:
        parts = urlsplit(endpoint)
    except ValueError as exc:
        raise HealthCheckError(f"Failed to parse URL: {exc}") from None
    if not parts.scheme:
        raise HealthCheckError("Failed to parse URL: relative URL without a base")
    if parts.scheme not in _SUPPORTED_SCHEMES:
        raise HealthCheckError(
            f"Only HTTP/HTTPS schemes are supported, got: {parts.scheme}"
        )
    try:
        hostname = parts.hostname
    except ValueError as exc:
        raise HealthCheckError(f"Failed to parse URL: {exc}") from None
    if not hostname:
        raise HealthCheckError("Failed to parse URL: empty host")


class HealthChecker:
    """Sends GET requests to an endpoint to tell whether the VPN works.

    Usable as an async context manager, which closes the HTTP client on exit.
    """

    def __init__(self, endpoint: str, timeout: Union[float, int, timedelta]) -> None:
        _validate_endpoint(endpoint)
        self.endpoint = endpoint
        self.timeout = _as_timedelta(timeout)
        try:
            self._client = httpx.AsyncClient(
                timeout=self.timeout.total_seconds(), follow_redirects=True
            )
        except (httpx.HTTPError, ValueError) as exc:
            raise HealthCheckError(f"Failed to create HTTP client: {exc}") from exc

    async def __aenter__(self) -> "HealthChecker":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Release the underlying HTTP client."""
        await self._client.aclose()

    async def check(self) -> HealthCheckResult:
        """Request the endpoint; a 2xx or 3xx answer within the timeout is healthy."""
        start = time.monotonic()
        try:
            response = await self._client.get(self.endpoint)
        except httpx.HTTPError as exc:
            duration = timedelta(seconds=time.monotonic() - start)
            if isinstance(exc, httpx.TimeoutException):
                message = f"Request timeout after {_format_duration(self.timeout)}"
            elif isinstance(exc, httpx.ConnectError):
                message = "Connection refused or unreachable"
            else:
                message = f"Request failed: {exc}"
            logger.warning(
                "Health check of %s failed after %s: %s",
                self.endpoint,
                duration,
                message,
            )
            return HealthCheckResult.failed(duration, message)

        duration = timedelta(seconds=time.monotonic() - start)
        status = response.status_code
        status_text = f"{status} {response.reason_phrase}".strip()
        if 200 <= status < 400:
            logger.debug(
                "Health check of %s succeeded with %s in %s",
                self.endpoint,
                status_text,
                duration,
            )
            return HealthCheckResult.succeeded(duration)
        logger.warning(
            "Health check of %s failed with status %s in %s",
            self.endpoint,
            status_text,
            duration,
        )
        return HealthCheckResult.failed(duration, f"Unhealthy status code: {status_text}")

    async def is_reachable(self) -> bool:
        """True unless the request fails at network level (timeout or no connection)."""
        try:
            await self._client.get(self.endpoint)
        except (httpx.TimeoutException, httpx.ConnectError):
            return False
        except httpx.HTTPError:
            return True
        return True