"""Events emitted while an OpenConnect session is brought up and torn down."""

from __future__ import annotations

import enum
import ipaddress
from dataclasses import dataclass
from typing import Optional, Union

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

__all__ = [
    "IPAddress",
    "VpnError",
    "AuthenticationFailed",
    "NetworkError",
    "ConnectionFailed",
    "ProcessSpawnError",
    "TerminationError",
    "DisconnectReason",
    "ConnectionEvent",
    "ProcessStarted",
    "Authenticating",
    "F5SessionEstablished",
    "TunConfigured",
    "Connected",
    "Disconnected",
    "ErrorEvent",
    "UnknownOutput",
    "LinkPhase",
    "LinkState",
]


class VpnError(Exception):
    """Base class for VPN connection errors.

    Two errors compare equal when they are of the same type and carry the
    same arguments, so events holding them can be compared.
    """

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, VpnError):
            return NotImplemented
        return type(self) is type(other) and self.args == other.args

    def __hash__(self) -> int:
        return hash((type(self), self.args))


class AuthenticationFailed(VpnError):
    """The server rejected the supplied credentials."""

    def __init__(self) -> None:
        super().__init__("Authentication failed")


class _ReasonError(VpnError):
    _prefix = ""

    def __init__(self, reason: str) -> None:
        super().__init__(f"{self._prefix}: {reason}")
        self.reason = reason

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, VpnError):
            return NotImplemented
        return type(self) is type(other) and self.reason == getattr(other, "reason", None)

    def __hash__(self) -> int:
        return hash((type(self), self.reason))


class NetworkError(_ReasonError):
    """A network-level failure such as TLS, certificate or DNS problems."""

    _prefix = "Network error"


class ConnectionFailed(_ReasonError):
    """The VPN connection could not be established."""

    _prefix = "Connection failed"


class ProcessSpawnError(_ReasonError):
    """The OpenConnect process could not be started or fed."""

    _prefix = "Failed to start process"


class TerminationError(VpnError):
    """The OpenConnect process could not be signalled to stop."""

    def __init__(self) -> None:
        super().__init__("Failed to terminate process")


class DisconnectReason(enum.Enum):
    """Why a connection ended."""

    USER_REQUESTED = "user_requested"
    SERVER_DISCONNECT = "server_disconnect"
    PROCESS_TERMINATED = "process_terminated"
    TIMEOUT = "timeout"


@dataclass(frozen=True)
class ConnectionEvent:
    """Base class of all connection lifecycle events."""


@dataclass(frozen=True)
class ProcessStarted(ConnectionEvent):
    """The OpenConnect process is running under the given PID."""

    pid: int


@dataclass(frozen=True)
class Authenticating(ConnectionEvent):
    """Authentication with the server is in progress."""

    message: str


@dataclass(frozen=True)
class F5SessionEstablished(ConnectionEvent):
    """An F5 session manager session was opened; the token is redacted."""

    session_token: Optional[str] = None


@dataclass(frozen=True)
class TunConfigured(ConnectionEvent):
    """The TUN device was configured with an address."""

    device: str
    ip: IPAddress


@dataclass(frozen=True)
class Connected(ConnectionEvent):
    """The VPN connection is fully established."""

    ip: IPAddress
    device: str


@dataclass(frozen=True)
class Disconnected(ConnectionEvent):
    """The connection ended normally."""

    reason: DisconnectReason


@dataclass(frozen=True)
class ErrorEvent(ConnectionEvent):
    """An error was reported, together with the line that revealed it."""

    kind: VpnError
    raw_output: str


@dataclass(frozen=True)
class UnknownOutput(ConnectionEvent):
    """A line of output that matched no known pattern."""

    line: str


class LinkPhase(enum.Enum):
    """Phases of a connector's link."""

    IDLE = "idle"
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    ESTABLISHED = "established"
    DISCONNECTING = "disconnecting"
    FAILED = "failed"


@dataclass(frozen=True)
class LinkState:
    """Connector state: a phase plus the details that phase carries."""

    phase: LinkPhase = LinkPhase.IDLE
    ip: Optional[IPAddress] = None
    device: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def idle(cls) -> "LinkState":
        return cls(LinkPhase.IDLE)

    @classmethod
    def established(cls, ip: Union[str, IPAddress], device: str) -> "LinkState":
        return cls(LinkPhase.ESTABLISHED, ip=ipaddress.ip_address(ip), device=device)

    @classmethod
    def failed(cls, error: str) -> "LinkState":
        return cls(LinkPhase.FAILED, error=error)