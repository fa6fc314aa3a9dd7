"""Finding, terminating and cleaning up OpenConnect processes."""

from __future__ import annotations

import asyncio
import subprocess
from typing import List

__all__ = [
    "ProcessError",
    "ProcessNotFound",
    "TerminationFailed",
    "UnresponsiveProcess",
    "is_process_alive",
    "terminate_process",
    "cleanup_all_openconnect_processes",
]

_POLL_INTERVAL = 0.5
_GRACE_POLLS = 10


class ProcessError(Exception):
    """Base class for process management errors."""


class ProcessNotFound(ProcessError):
    def __init__(self, detail: str) -> None:
        super().__init__(f"Failed to find process: {detail}")
        self.detail = detail


class TerminationFailed(ProcessError):
    def __init__(self, detail: str) -> None:
        super().__init__(f"Failed to terminate process: {detail}")
        self.detail = detail


class UnresponsiveProcess(ProcessError):
    def __init__(self) -> None:
        super().__init__("Process did not respond to signals")


def _run(args: List[str]) -> subprocess.CompletedProcess:
    return subprocess.run(args, capture_output=True, check=False)


def _decode(data: object) -> str:
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return str(data or "")


def is_process_alive(pid: int) -> bool:
    """True if a process with this PID exists and is an openconnect process."""
    try:
        result = _run(["ps", "-p", str(pid), "-o", "comm="])
    except OSError:
        return False
    if result.returncode != 0:
        return False
    return "openconnect" in _decode(result.stdout).strip()


def _send_signal(pid: int, flag: str, name: str) -> None:
    try:
        _run(["kill", flag, str(pid)])
    except OSError as exc:
        raise TerminationFailed(f"Failed to send {name}: {exc}") from exc


async def terminate_process(pid: int) -> None:
    """Stop an OpenConnect process: SIGTERM, up to 5 s of grace, then SIGKILL."""
    if not is_process_alive(pid):
        return

    _send_signal(pid, "-TERM", "SIGTERM")
    for _ in range(_GRACE_POLLS):
        await asyncio.sleep(_POLL_INTERVAL)
        if not is_process_alive(pid):
            return

    _send_signal(pid, "-KILL", "SIGKILL")
    await asyncio.sleep(_POLL_INTERVAL)
    if is_process_alive(pid):
        raise UnresponsiveProcess()


async def cleanup_all_openconnect_processes() -> List[int]:
    """Terminate every openconnect process; return the PIDs that were stopped."""
    try:
        result = _run(["pgrep", "openconnect"])
    except OSError as exc:
        raise ProcessNotFound(f"pgrep failed: {exc}") from exc
    if result.returncode != 0:
        return []

    terminated: List[int] = []
    for line in _decode(result.stdout).splitlines():
        try:
            pid = int(line.strip())
        except ValueError:
            continue
        if pid < 0:
            continue
        try:
            await terminate_process(pid)
        except ProcessError:
            continue
        terminated.append(pid)
    return terminated