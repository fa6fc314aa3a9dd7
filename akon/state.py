"""VPN connection state machine and a thread-safe holder for it."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Optional

__all__ = [
    "ConnectionMetadata",
    "ConnectionState",
    "Disconnected",
    "Connecting",
    "Connected",
    "Error",
    "Disconnecting",
    "Reconnecting",
    "SharedConnectionState",
]


def _now() -> int:
    return max(0, int(time.time()))


@dataclass(frozen=True)
class ConnectionMetadata:
    """Details of an established connection."""

    server: str = ""
    connected_at: int = 0
    username: str = ""

    @classmethod
    def create(cls, server: str, username: str) -> "ConnectionMetadata":
        """Metadata for a connection starting now."""
        return cls(server=server, connected_at=_now(), username=username)

    def uptime_seconds(self) -> int:
        return max(0, _now() - self.connected_at)

    def uptime_display(self) -> str:
        seconds = self.uptime_seconds()
        if seconds < 60:
            return f"{seconds}s"
        if seconds < 3600:
            return f"{seconds // 60}m {seconds % 60}s"
        return f"{seconds // 3600}h {(seconds % 3600) // 60}m"


@dataclass(frozen=True)
class ConnectionState:
    """Base class of the VPN connection states."""


@dataclass(frozen=True)
class Disconnected(ConnectionState):
    def __str__(self) -> str:
        return "disconnected"


@dataclass(frozen=True)
class Connecting(ConnectionState):
    def __str__(self) -> str:
        return "connecting"


@dataclass(frozen=True)
class Connected(ConnectionState):
    metadata: ConnectionMetadata = field(default_factory=ConnectionMetadata)

    def __str__(self) -> str:
        return "connected"


@dataclass(frozen=True)
class Error(ConnectionState):
    message: str

    def __str__(self) -> str:
        return f"error: {self.message}"


@dataclass(frozen=True)
class Disconnecting(ConnectionState):
    def __str__(self) -> str:
        return "disconnecting"


@dataclass(frozen=True)
class Reconnecting(ConnectionState):
    """Automatic reconnection in progress (attempt is 1-based)."""

    attempt: int
    next_retry_at: Optional[int]
    max_attempts: int

    def __str__(self) -> str:
        return f"reconnecting (attempt {self.attempt} of {self.max_attempts})"


class SharedConnectionState:
    """A connection state guarded by a lock, starting out disconnected."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._state: ConnectionState = Disconnected()

    def get(self) -> ConnectionState:
        with self._lock:
            return self._state

    def set(self, state: ConnectionState) -> None:
        with self._lock:
            self._state = state

    def is_connected(self) -> bool:
        return isinstance(self.get(), Connected)

    def is_connecting(self) -> bool:
        return isinstance(self.get(), Connecting)

    def is_error(self) -> bool:
        return isinstance(self.get(), Error)

    def start_connecting(self) -> None:
        self.set(Connecting())

    def set_connected(self, server: str, username: str) -> None:
        self.set(Connected(ConnectionMetadata.create(server, username)))

    def set_disconnected(self) -> None:
        self.set(Disconnected())

    def set_error(self, error: str) -> None:
        self.set(Error(error))

    def start_disconnecting(self) -> None:
        self.set(Disconnecting())