"""Automatic VPN reconnection with exponential backoff and health checks."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Mapping, Optional, Protocol, Tuple
from urllib.parse import urlsplit

from akon.health_check import HealthCheckResult
from akon.state import (
    Connected,
    ConnectionMetadata,
    ConnectionState,
    Disconnected,
    Error,
    Reconnecting,
)

__all__ = [
    "PolicyValidationError",
    "ReconnectionError",
    "MaxAttemptsExceeded",
    "ReconnectionPolicy",
    "ReconnectionCommand",
    "Start",
    "Stop",
    "ResetRetries",
    "SetConnected",
    "CheckNow",
    "Shutdown",
    "ReconnectionManager",
]

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_INTERVAL_SECS = 5
DEFAULT_BACKOFF_MULTIPLIER = 2
DEFAULT_MAX_INTERVAL_SECS = 60
DEFAULT_CONSECUTIVE_FAILURES = 1
DEFAULT_HEALTH_CHECK_INTERVAL_SECS = 10

RETRY_INTERVAL = 5.0

_U32_MAX = 2**32 - 1
_U64_MAX = 2**64 - 1

_INTEGER_FIELDS = {
    "max_attempts": (DEFAULT_MAX_ATTEMPTS, _U32_MAX),
    "base_interval_secs": (DEFAULT_BASE_INTERVAL_SECS, _U32_MAX),
    "backoff_multiplier": (DEFAULT_BACKOFF_MULTIPLIER, _U32_MAX),
    "max_interval_secs": (DEFAULT_MAX_INTERVAL_SECS, _U32_MAX),
    "consecutive_failures_threshold": (DEFAULT_CONSECUTIVE_FAILURES, _U32_MAX),
    "health_check_interval_secs": (DEFAULT_HEALTH_CHECK_INTERVAL_SECS, _U64_MAX),
}


class PolicyValidationError(ValueError):
    """A reconnection policy is malformed or out of range."""


class ReconnectionError(Exception):
    """Base class for reconnection failures."""


class MaxAttemptsExceeded(ReconnectionError):
    def __init__(self) -> None:
        super().__init__("Max reconnection attempts exceeded")


def _check_range(name: str, value: int, low: int, high: int) -> None:
    if not low <= value <= high:
        raise PolicyValidationError(
            f"{name} must be between {low} and {high}, got: {value}"
        )


def _endpoint_problem(endpoint: str) -> Optional[str]:
    try:
        parts = urlsplit(endpoint)
    except ValueError as exc:
        return f"Failed to parse URL: {exc}"
    if not parts.scheme:
        return "Failed to parse URL: relative URL without a base"
    if parts.scheme not in ("http", "https"):
        return f"URL scheme must be http or https, got: {parts.scheme}"
    try:
        hostname = parts.hostname
    except ValueError as exc:
        return f"Failed to parse URL: {exc}"
    if not hostname:
        return "Failed to parse URL: empty host"
    return None


@dataclass(kw_only=True)
class ReconnectionPolicy:
    """How and when a dropped VPN connection is re-established."""

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    base_interval_secs: int = DEFAULT_BASE_INTERVAL_SECS
    backoff_multiplier: int = DEFAULT_BACKOFF_MULTIPLIER
    max_interval_secs: int = DEFAULT_MAX_INTERVAL_SECS
    consecutive_failures_threshold: int = DEFAULT_CONSECUTIVE_FAILURES
    health_check_interval_secs: int = DEFAULT_HEALTH_CHECK_INTERVAL_SECS
    health_check_endpoint: str

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "ReconnectionPolicy":
        """Build a policy from a configuration table, filling in defaults.

        Only types are checked here; ranges are checked by validate().
        """
        values = {}
        for name, (default, limit) in _INTEGER_FIELDS.items():
            value = data.get(name, default)
            if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value <= limit:
                raise PolicyValidationError(f"invalid value for {name}: {value!r}")
            values[name] = value
        if "health_check_endpoint" not in data:
            raise PolicyValidationError("missing field `health_check_endpoint`")
        endpoint = data["health_check_endpoint"]
        if not isinstance(endpoint, str):
            raise PolicyValidationError(
                f"invalid value for health_check_endpoint: {endpoint!r}"
            )
        return cls(health_check_endpoint=endpoint, **values)

    def validate(self) -> None:
        """Raise PolicyValidationError for the first field out of its range."""
        _check_range("max_attempts", self.max_attempts, 1, 20)
        _check_range("base_interval_secs", self.base_interval_secs, 1, 300)
        _check_range("backoff_multiplier", self.backoff_multiplier, 1, 10)
        if self.max_interval_secs < self.base_interval_secs:
            raise PolicyValidationError(
                f"max_interval_secs ({self.max_interval_secs}) must be >= "
                f"base_interval_secs ({self.base_interval_secs})"
            )
        _check_range(
            "consecutive_failures_threshold", self.consecutive_failures_threshold, 1, 10
        )
        _check_range("health_check_interval_secs", self.health_check_interval_secs, 10, 3600)
        problem = _endpoint_problem(self.health_check_endpoint)
        if problem is not None:
            raise PolicyValidationError(
                f"health_check_endpoint must be a valid HTTP/HTTPS URL: {problem}"
            )


@dataclass(frozen=True)
class ReconnectionCommand:
    """Base class of commands that steer a running manager."""


@dataclass(frozen=True)
class Start(ReconnectionCommand):
    """Begin automatic reconnection."""


@dataclass(frozen=True)
class Stop(ReconnectionCommand):
    """Stop reconnection attempts."""


@dataclass(frozen=True)
class ResetRetries(ReconnectionCommand):
    """Clear the retry and failure counters, leaving an error state."""


@dataclass(frozen=True)
class SetConnected(ReconnectionCommand):
    """Mark the VPN as connected to a server."""

    server: str
    username: str


@dataclass(frozen=True)
class CheckNow(ReconnectionCommand):
    """Run a health check immediately."""


@dataclass(frozen=True)
class Shutdown(ReconnectionCommand):
    """Stop the manager's event loop."""


class _Checker(Protocol):
    async def check(self) -> HealthCheckResult: ...


def _next_deadline(deadline: float, period: float, now: float) -> float:
    following = deadline + period
    return following if following > now else now + period


class ReconnectionManager:
    """Tracks the connection state and drives reconnection attempts."""

    def __init__(self, policy: ReconnectionPolicy, *, retry_interval: float = RETRY_INTERVAL) -> None:
        self.policy = policy
        self.retry_interval = retry_interval
        self._state: ConnectionState = Disconnected()
        self._version = 0
        self._changed = asyncio.Event()
        self._commands: "asyncio.Queue[ReconnectionCommand]" = asyncio.Queue()
        self._consecutive_failures = 0
        self._should_reconnect = False
        self._attempt = 1

    def _set_state(self, state: ConnectionState) -> None:
        self._state = state
        self._version += 1
        changed, self._changed = self._changed, asyncio.Event()
        changed.set()

    async def _changed_since(self, version: int) -> Tuple[int, ConnectionState]:
        while self._version == version:
            await self._changed.wait()
        return self._version, self._state

    def state(self) -> ConnectionState:
        return self._state

    async def wait_for_state_change(self) -> ConnectionState:
        """Wait for the next state update and return the current state."""
        _, state = await self._changed_since(self._version)
        return state

    def send_command(self, command: ReconnectionCommand) -> None:
        self._commands.put_nowait(command)

    def calculate_backoff(self, attempt: int) -> timedelta:
        """base × multiplier^(attempt-1) seconds, capped at the maximum interval."""
        if attempt < 1:
            raise ValueError(f"attempt must be at least 1, got: {attempt}")
        interval = self.policy.base_interval_secs * self.policy.backoff_multiplier ** (attempt - 1)
        return timedelta(seconds=min(interval, self.policy.max_interval_secs))

    async def attempt_reconnect(self, attempt: int) -> None:
        """Record a reconnection attempt, or fail once the attempts are used up."""
        max_attempts = self.policy.max_attempts
        if attempt > max_attempts:
            message = f"Max reconnection attempts ({max_attempts}) exceeded"
            logger.error(message)
            self._set_state(Error(message))
            raise MaxAttemptsExceeded()

        next_backoff = self.calculate_backoff(attempt + 1)
        logger.info(
            "Reconnection attempt %d/%d, backoff: %s", attempt, max_attempts, next_backoff
        )
        next_retry_at = int(time.time()) + int(next_backoff.total_seconds())
        logger.debug("Transitioning to Reconnecting state: attempt %d", attempt)
        self._set_state(
            Reconnecting(attempt=attempt, next_retry_at=next_retry_at, max_attempts=max_attempts)
        )

    async def handle_health_check(self, health_checker: _Checker) -> None:
        """Run one health check while connected; trigger reconnection at the threshold."""
        if not isinstance(self._state, Connected):
            logger.debug("Skipping health check - not in Connected state")
            return

        result = await health_checker.check()
        threshold = self.policy.consecutive_failures_threshold
        if result.success:
            previous = self._consecutive_failures
            self._consecutive_failures = 0
            if previous:
                logger.debug("Health check succeeded after %d failures, resetting counter", previous)
            else:
                logger.debug("Health check succeeded in %s", result.duration)
            return

        self._consecutive_failures += 1
        failures = self._consecutive_failures
        logger.warning(
            "Health check failed (%d/%d): %s", failures, threshold, result.error or "unknown"
        )
        if failures >= threshold:
            logger.error(
                "Consecutive health check failures reached threshold (%d/%d), "
                "triggering reconnection",
                failures,
                threshold,
            )
            self._set_state(Disconnected())
            self._consecutive_failures = 0

    def _begin_reconnecting(self) -> None:
        self._should_reconnect = True
        self._attempt = 1

    async def _handle_command(
        self, command: ReconnectionCommand, health_checker: Optional[_Checker]
    ) -> bool:
        """Apply a command; False means the loop should stop."""
        if isinstance(command, Shutdown):
            return False
        if isinstance(command, Start):
            self._begin_reconnecting()
        elif isinstance(command, Stop):
            self._should_reconnect = False
            self._set_state(Disconnected())
        elif isinstance(command, ResetRetries):
            self._attempt = 1
            self._consecutive_failures = 0
            if isinstance(self._state, Error):
                self._set_state(Disconnected())
                logger.info("Reset retries: transitioned from Error to Disconnected state")
            logger.info("Reset retries: cleared attempt counter and consecutive failures")
        elif isinstance(command, SetConnected):
            metadata = ConnectionMetadata.create(command.server, command.username)
            self._set_state(Connected(metadata))
            self._should_reconnect = False
            self._attempt = 1
            self._consecutive_failures = 0
            logger.info("State set to Connected, health check monitoring enabled")
        elif isinstance(command, CheckNow):
            if health_checker is not None:
                await self.handle_health_check(health_checker)
        return True

    async def _on_retry_tick(self) -> None:
        if isinstance(self._state, Disconnected) and not self._should_reconnect:
            logger.info("Detected Disconnected state, initiating reconnection")
            self._begin_reconnecting()
        if not self._should_reconnect:
            return
        try:
            await self.attempt_reconnect(self._attempt)
        except MaxAttemptsExceeded:
            self._should_reconnect = False
            self._attempt = 1
        except ReconnectionError:
            self._attempt += 1
        else:
            self._attempt += 1

    async def run(self, health_checker: Optional[_Checker] = None) -> None:
        """Process state changes, commands, retry ticks and health checks until shut down."""
        loop = asyncio.get_running_loop()
        health_period = float(self.policy.health_check_interval_secs)
        retry_deadline = loop.time() + self.retry_interval
        health_deadline = loop.time() + health_period
        self._should_reconnect = False
        self._attempt = 1

        seen_version = self._version
        state_task: Optional[asyncio.Future] = None
        command_task: Optional[asyncio.Future] = None
        try:
            while True:
                if state_task is None:
                    state_task = asyncio.ensure_future(self._changed_since(seen_version))
                if command_task is None:
                    command_task = asyncio.ensure_future(self._commands.get())

                deadline = retry_deadline
                if health_checker is not None:
                    deadline = min(deadline, health_deadline)
                done, _ = await asyncio.wait(
                    {state_task, command_task},
                    timeout=max(0.0, deadline - loop.time()),
                    return_when=asyncio.FIRST_COMPLETED,
                )

                if state_task in done:
                    seen_version, current = state_task.result()
                    state_task = None
                    if isinstance(current, Disconnected) and not self._should_reconnect:
                        logger.info(
                            "State changed to Disconnected, immediately initiating reconnection"
                        )
                        self._begin_reconnecting()

                if command_task in done:
                    command = command_task.result()
                    command_task = None
                    if not await self._handle_command(command, health_checker):
                        break

                now = loop.time()
                if now >= retry_deadline:
                    retry_deadline = _next_deadline(retry_deadline, self.retry_interval, now)
                    await self._on_retry_tick()

                now = loop.time()
                if health_checker is not None and now >= health_deadline:
                    health_deadline = _next_deadline(health_deadline, health_period, now)
                    await self.handle_health_check(health_checker)
        finally:
            for task in (state_task, command_task):
                if task is not None and not task.done():
                    task.cancel()