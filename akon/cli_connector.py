"""Runs the OpenConnect command line client from start to termination."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
from dataclasses import dataclass
from typing import AsyncIterator, List, Optional

from akon.events import (
    Authenticating,
    Connected,
    ConnectionEvent,
    ConnectionFailed,
    Disconnected,
    DisconnectReason,
    ErrorEvent,
    IPAddress,
    LinkPhase,
    LinkState,
    ProcessSpawnError,
    ProcessStarted,
    TerminationError,
)
from akon.output_parser import OutputParser

__all__ = ["VpnSettings", "CliConnector", "build_command", "find_openconnect_daemon_pid"]

logger = logging.getLogger(__name__)

_DAEMON_STARTUP_DELAY = 0.2
_DAEMON_LOOKUP_ATTEMPTS = 15
_DAEMON_LOOKUP_INTERVAL = 0.1
_TERMINATION_POLL_INTERVAL = 0.5
_TERMINATION_POLLS = 10


@dataclass(frozen=True)
class VpnSettings:
    """What the connector needs to reach a VPN server."""

    server: str
    username: str
    protocol: str = "f5"
    no_dtls: bool = False


def build_command(settings: VpnSettings) -> List[str]:
    """The argument list that starts OpenConnect (through sudo) in the background."""
    command = [
        "sudo",
        "openconnect",
        "--protocol",
        settings.protocol,
        "--user",
        settings.username,
        "--passwd-on-stdin",
        "--background",
    ]
    if settings.no_dtls:
        command.append("--no-dtls")
        logger.debug("DTLS disabled per configuration")
    command.append(settings.server)
    return command


def _first_pid(output: bytes) -> Optional[int]:
    for line in output.decode("utf-8", errors="replace").splitlines():
        try:
            pid = int(line.strip())
        except ValueError:
            continue
        if pid >= 0:
            return pid
    return None


async def find_openconnect_daemon_pid(server: str) -> Optional[int]:
    """Look up the PID of the daemonised openconnect process serving this server."""
    await asyncio.sleep(_DAEMON_STARTUP_DELAY)
    pattern = f"openconnect.*{server}"
    for attempt in range(_DAEMON_LOOKUP_ATTEMPTS):
        try:
            proc = await asyncio.create_subprocess_exec(
                "pgrep",
                "-f",
                pattern,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            stdout, _ = await proc.communicate()
        except OSError:
            stdout = None
        else:
            if proc.returncode == 0:
                pid = _first_pid(stdout or b"")
                if pid is not None:
                    logger.debug("Found OpenConnect daemon PID %d for server %s", pid, server)
                    return pid
        if attempt < _DAEMON_LOOKUP_ATTEMPTS - 1:
            await asyncio.sleep(_DAEMON_LOOKUP_INTERVAL)

    logger.warning("Could not find OpenConnect daemon process for server %s", server)
    return None


async def _read_lines(reader: asyncio.StreamReader) -> AsyncIterator[str]:
    while True:
        try:
            raw = await reader.readline()
        except (OSError, ValueError):
            return
        if not raw:
            return
        line = raw.decode("utf-8", errors="replace")
        if line.endswith("\n"):
            line = line[:-1]
        if line.endswith("\r"):
            line = line[:-1]
        yield line


def _process_exists(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except OSError:
        return False
    return True


class CliConnector:
    """Starts OpenConnect, waits for the tunnel, then leaves it running as a daemon."""

    def __init__(self, settings: VpnSettings) -> None:
        self.settings = settings
        self._state = LinkState.idle()
        self._process: Optional[asyncio.subprocess.Process] = None
        self._pid: Optional[int] = None
        self._stdin = None
        self._events: "asyncio.Queue[ConnectionEvent]" = asyncio.Queue()
        self._parser = OutputParser()

    def state(self) -> LinkState:
        return self._state

    def is_connected(self) -> bool:
        return self._state.phase is LinkPhase.ESTABLISHED

    def pid(self) -> Optional[int]:
        """PID of the openconnect daemon itself, not of the sudo wrapper."""
        return self._pid

    async def _spawn(self) -> asyncio.subprocess.Process:
        try:
            process = await asyncio.create_subprocess_exec(
                *build_command(self.settings),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise ProcessSpawnError(f"Failed to spawn openconnect: {exc}") from exc
        logger.debug("OpenConnect process spawned with PID: %s", process.pid)
        return process

    async def _send_password(self, process: asyncio.subprocess.Process, password: str) -> None:
        stdin = process.stdin
        if stdin is None:
            return
        try:
            stdin.write(password.encode())
        except (OSError, RuntimeError) as exc:
            raise ProcessSpawnError(f"Failed to write password to stdin: {exc}") from exc
        try:
            stdin.write(b"\n")
        except (OSError, RuntimeError) as exc:
            raise ProcessSpawnError(f"Failed to write newline to stdin: {exc}") from exc
        try:
            await stdin.drain()
        except (OSError, RuntimeError) as exc:
            raise ProcessSpawnError(f"Failed to flush stdin: {exc}") from exc
        # Closing stdin would make openconnect exit, so it is kept open.
        self._stdin = stdin
        logger.debug("Password sent to OpenConnect, stdin kept alive")

    async def _watch_stderr(self, reader: asyncio.StreamReader) -> None:
        async for line in _read_lines(reader):
            logger.debug("OpenConnect stderr: %s", line)
            self._events.put_nowait(self._parser.parse_error(line))

    async def connect(self, password: str) -> None:
        """Start OpenConnect, authenticate and wait until the tunnel is up."""
        self._state = LinkState(LinkPhase.CONNECTING)

        process = await self._spawn()
        self._process = process
        try:
            logger.info("Spawned sudo wrapper with PID %s", process.pid)
            await self._send_password(process, password)

            if process.stdout is None:
                raise ProcessSpawnError("Failed to capture stdout")
            if process.stderr is None:
                raise ProcessSpawnError("Failed to capture stderr")

            ip_address: Optional[IPAddress] = None
            device: Optional[str] = None
            connected = False
            authenticating_sent = False
            last_error: Optional[str] = None

            stderr_task = asyncio.ensure_future(self._watch_stderr(process.stderr))
            try:
                async for line in _read_lines(process.stdout):
                    logger.debug("OpenConnect stdout: %s", line)
                    event = self._parser.parse_line(line)
                    if isinstance(event, Connected):
                        connected = True
                        ip_address = event.ip
                        device = event.device
                        self._events.put_nowait(event)
                        break
                    if isinstance(event, ErrorEvent):
                        last_error = f"{event.kind!r}: {event.raw_output}"
                        self._events.put_nowait(event)
                    elif isinstance(event, Authenticating):
                        if not authenticating_sent:
                            self._events.put_nowait(event)
                            authenticating_sent = True
                    else:
                        self._events.put_nowait(event)
            finally:
                stderr_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await stderr_task

            if not connected:
                if last_error is not None:
                    raise ConnectionFailed(last_error)
                raise ConnectionFailed(
                    f"No response from server '{self.settings.server}'. "
                    "Please verify the server address is correct."
                )

            daemon_pid = await find_openconnect_daemon_pid(self.settings.server)
            if daemon_pid is None:
                raise ProcessSpawnError("Could not find openconnect daemon process")

            self._pid = daemon_pid
            logger.info("OpenConnect daemonized with PID %d", daemon_pid)
            self._events.put_nowait(ProcessStarted(pid=daemon_pid))
            self._state = LinkState.established(ip_address or "0.0.0.0", device or "")
            logger.info("Detached from OpenConnect daemon, returning control to user")
        finally:
            # The wrapper is not waited on; openconnect lives on as a daemon.
            self._process = None

    async def next_event(self) -> ConnectionEvent:
        """Wait for the next connection event."""
        return await self._events.get()

    def _close_stdin(self) -> None:
        if self._stdin is not None:
            with contextlib.suppress(OSError, RuntimeError):
                self._stdin.close()
        self._stdin = None

    async def disconnect(self) -> None:
        """Stop the daemon with SIGTERM, falling back to SIGKILL after 5 seconds."""
        self._state = LinkState(LinkPhase.DISCONNECTING)

        pid = self._pid
        if pid is not None:
            if not _process_exists(pid):
                logger.info("OpenConnect process %d already terminated", pid)
                self._pid = None
                self._process = None
                self._close_stdin()
                return

            logger.info("Sending SIGTERM to OpenConnect process %d", pid)
            try:
                os.kill(pid, signal.SIGTERM)
            except OSError as exc:
                logger.error("Failed to send SIGTERM: %s", exc)
                raise TerminationError() from exc

            attempts = 0
            while True:
                await asyncio.sleep(_TERMINATION_POLL_INTERVAL)
                attempts += 1
                if not _process_exists(pid):
                    logger.info("OpenConnect process terminated gracefully")
                    break
                if attempts >= _TERMINATION_POLLS:
                    logger.warning("Graceful shutdown timed out, sending SIGKILL")
                    try:
                        os.kill(pid, signal.SIGKILL)
                    except OSError as exc:
                        logger.error("Failed to send SIGKILL: %s", exc)
                        raise TerminationError() from exc
                    await asyncio.sleep(_TERMINATION_POLL_INTERVAL)
                    logger.warning("Sent SIGKILL to process %d", pid)
                    break

            self._pid = None

        self._process = None
        self._state = LinkState.idle()
        self._events.put_nowait(Disconnected(reason=DisconnectReason.USER_REQUESTED))

    async def force_kill(self) -> None:
        """Kill a process still attached to this connector and return to idle."""
        process = self._process
        if process is not None:
            if process.pid is not None:
                try:
                    os.kill(process.pid, signal.SIGKILL)
                except OSError as exc:
                    raise TerminationError() from exc
                logger.warning("Sent SIGKILL to process %d", process.pid)
            self._process = None
        self._state = LinkState.idle()