# akon

Asyncio building blocks for running and supervising OpenConnect VPN sessions.

## What it provides

- `akon.output_parser.OutputParser` classifies OpenConnect output.
  `parse_line()` handles stdout lines and `parse_error()` handles stderr lines;
  each returns a connection event from `akon.events`: `Connected`,
  `TunConfigured`, `Authenticating`, `F5SessionEstablished`, `ErrorEvent`
  (carrying a `VpnError` such as `AuthenticationFailed`, `NetworkError` or
  `ConnectionFailed`) or `UnknownOutput`.
- `akon.cli_connector.CliConnector` starts `sudo openconnect --background`
  with the arguments from `build_command(VpnSettings)`, writes the password to
  stdin, reads the output until a `Connected` event appears, then looks up the
  daemon's PID with `pgrep` (`find_openconnect_daemon_pid()`). Events are
  queued and read with `await connector.next_event()`; `state()` returns a
  `LinkState` and `pid()` the daemon's PID. `disconnect()` sends SIGTERM,
  waits up to five seconds and then sends SIGKILL. `force_kill()` SIGKILLs a
  process only while one is still attached (during `connect()`), and in any
  case returns the connector to the idle state. A failed connection raises
  `ConnectionFailed`; failures to start or find the process raise
  `ProcessSpawnError`.
- `akon.health_check.HealthChecker` sends GET requests (redirects followed)
  to an `http` or `https` endpoint. `check()` returns a `HealthCheckResult`
  that succeeds for a final 2xx or 3xx status; `is_reachable()` is `False`
  only on a timeout or connection failure. Close it with `aclose()` or use it
  as an async context manager. An unusable endpoint raises `HealthCheckError`.
- `akon.reconnection.ReconnectionManager` holds a connection state from
  `akon.state` (`Disconnected`, `Connected`, `Reconnecting`, `Error`, …),
  counts consecutive failed health checks, and on a timer records reconnection
  attempts with exponential backoff according to a `ReconnectionPolicy`. It is
  steered with `send_command()` and the commands `Start`, `Stop`,
  `ResetRetries`, `SetConnected`, `CheckNow` and `Shutdown`.
- `akon.state.SharedConnectionState` is a lock-guarded holder of a
  connection state; `ConnectionMetadata.uptime_display()` formats uptime as
  `42s`, `3m 5s` or `2h 10m`.
- `akon.process` has `is_process_alive()`, `terminate_process()` and
  `cleanup_all_openconnect_processes()` for finding and stopping stray
  `openconnect` processes.

The `openconnect`, `sudo`, `pgrep`, `ps` and `kill` programs must be installed
for the process-management parts.

## Installation

```
pip install .
```

For running the tests:

```
pip install ".[test]"
pytest
```

## Example

```python
import asyncio

from akon.cli_connector import CliConnector, VpnSettings
from akon.health_check import HealthChecker
from akon.reconnection import (
    ReconnectionManager,
    ReconnectionPolicy,
    SetConnected,
    Shutdown,
)
from akon.state import Error, Reconnecting


async def watch(manager: ReconnectionManager) -> None:
    while True:
        state = await manager.wait_for_state_change()
        print("state:", state)
        if isinstance(state, Reconnecting):
            pass  # reconnect here, then send SetConnected again
        elif isinstance(state, Error):
            manager.send_command(Shutdown())
            return


async def main() -> None:
    settings = VpnSettings(server="vpn.example.com", username="alice")
    connector = CliConnector(settings)
    password = "password"
    await connector.connect(password)
    print("connected, pid", connector.pid())

    endpoint = "https://intranet.example.com/healthz"
    policy = ReconnectionPolicy.from_mapping({"health_check_endpoint": endpoint})
    policy.validate()
    manager = ReconnectionManager(policy)

    async with HealthChecker(endpoint, timeout=5.0) as checker:
        manager.send_command(SetConnected(server=settings.server, username=settings.username))
        watcher = asyncio.create_task(watch(manager))
        try:
            await manager.run(checker)
        finally:
            watcher.cancel()
            await connector.disconnect()


asyncio.run(main())
```

## Reconnection policy

`ReconnectionPolicy.from_mapping()` fills in defaults and checks types;
`validate()` raises `PolicyValidationError` on the first field out of range.

| Field                             | Default  | Allowed range              |
|-----------------------------------|----------|----------------------------|
| `max_attempts`                    | 3        | 1–20                       |
| `base_interval_secs`              | 5        | 1–300                      |
| `backoff_multiplier`              | 2        | 1–10                       |
| `max_interval_secs`               | 60       | at least the base interval |
| `consecutive_failures_threshold`  | 1        | 1–10                       |
| `health_check_interval_secs`      | 10       | 10–3600                    |
| `health_check_endpoint`           | required | an http or https URL       |

`calculate_backoff(n)` returns `base_interval_secs × backoff_multiplier^(n-1)`
seconds, capped at `max_interval_secs`. The manager's retry timer fires every
five seconds by default (the `retry_interval` keyword changes it). Once the
attempt number passes `max_attempts`, the state becomes `Error` and
`attempt_reconnect()` raises `MaxAttemptsExceeded`.

## What it does not do

- There is no command-line program; the package is a library.
- It does not read configuration files or store credentials; the caller
  supplies the server, user name, password and policy values.
- `ReconnectionManager` only tracks state and records attempts as
  `Reconnecting` states. It does not start OpenConnect again itself; the
  caller watches the state (`wait_for_state_change()`), reconnects with a
  `CliConnector`, and reports success with `SetConnected`.