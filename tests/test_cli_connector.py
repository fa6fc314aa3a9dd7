import asyncio
import ipaddress
import signal
from unittest import mock

import pytest

from akon.cli_connector import (
    CliConnector,
    VpnSettings,
    build_command,
    find_openconnect_daemon_pid,
)
from akon.events import (
    Authenticating,
    Connected,
    ConnectionFailed,
    Disconnected,
    DisconnectReason,
    ErrorEvent,
    LinkPhase,
    LinkState,
    ProcessSpawnError,
    ProcessStarted,
    TerminationError,
)

SERVER = "vpn.example.com"
F5_LINE = b"Configured as 10.10.62.228, with SSL connected and DTLS disabled\n"


class FakeStdin:
    def __init__(self):
        self.data = b""
        self.closed = False

    def write(self, data):
        self.data += data

    async def drain(self):
        return None

    def close(self):
        self.closed = True


def make_reader(data):
    reader = asyncio.StreamReader()
    reader.feed_data(data)
    reader.feed_eof()
    return reader


class FakeOpenConnect:
    def __init__(self, stdout, stderr):
        self.pid = 4000
        self.stdin = FakeStdin()
        self.stdout = make_reader(stdout)
        self.stderr = make_reader(stderr)


class FakePgrep:
    def __init__(self, output, returncode):
        self.output = output
        self.returncode = returncode

    async def communicate(self):
        return self.output, b""


class Launcher:
    def __init__(self, stdout=b"", stderr=b"", pgrep_output=b"12345\n", pgrep_rc=0):
        self.stdout = stdout
        self.stderr = stderr
        self.pgrep_output = pgrep_output
        self.pgrep_rc = pgrep_rc
        self.calls = []
        self.openconnect = None

    async def __call__(self, *args, **kwargs):
        self.calls.append(args)
        if args[0] == "pgrep":
            return FakePgrep(self.pgrep_output, self.pgrep_rc)
        self.openconnect = FakeOpenConnect(self.stdout, self.stderr)
        return self.openconnect


async def collect(connector, count):
    return [await asyncio.wait_for(connector.next_event(), 1) for _ in range(count)]


async def connected_connector():
    launcher = Launcher(stdout=b"POST https://vpn.example.com/\n" + F5_LINE)
    connector = CliConnector(VpnSettings(server=SERVER, username="alice"))
    password = "password"
    with mock.patch("asyncio.create_subprocess_exec", new=launcher):
        await connector.connect(password)
    return connector


def test_build_command_default():
    settings = VpnSettings(server=SERVER, username="alice", protocol="f5")
    assert build_command(settings) == [
        "sudo",
        "openconnect",
        "--protocol",
        "f5",
        "--user",
        "alice",
        "--passwd-on-stdin",
        "--background",
        SERVER,
    ]


def test_build_command_no_dtls_before_server():
    settings = VpnSettings(server=SERVER, username="alice", no_dtls=True)
    command = build_command(settings)
    assert command[-2:] == ["--no-dtls", SERVER]


def test_new_connector_is_idle():
    connector = CliConnector(VpnSettings(server=SERVER, username="alice"))
    assert connector.state() == LinkState.idle()
    assert connector.is_connected() is False
    assert connector.pid() is None


@pytest.mark.asyncio
async def test_connect_success():
    launcher = Launcher(
        stdout=b"POST https://vpn.example.com/\nPOST https://vpn.example.com/again\n" + F5_LINE
    )
    connector = CliConnector(VpnSettings(server=SERVER, username="alice"))
    password = "password"
    with mock.patch("asyncio.create_subprocess_exec", new=launcher):
        await connector.connect(password)

    assert launcher.openconnect.stdin.data == b"password\n"
    assert launcher.calls[0] == tuple(build_command(connector.settings))
    assert connector.pid() == 12345
    assert connector.is_connected()
    assert connector.state() == LinkState.established("10.10.62.228", "tun")

    events = await collect(connector, 3)
    assert events == [
        Authenticating(message="Authenticating with server..."),
        Connected(ip=ipaddress.ip_address("10.10.62.228"), device="tun"),
        ProcessStarted(pid=12345),
    ]


@pytest.mark.asyncio
async def test_connect_reports_last_error():
    launcher = Launcher(stdout=b"Failed to authenticate\n")
    connector = CliConnector(VpnSettings(server=SERVER, username="alice"))
    password = "password"
    with mock.patch("asyncio.create_subprocess_exec", new=launcher):
        with pytest.raises(ConnectionFailed) as info:
            await connector.connect(password)
    assert "Failed to authenticate" in info.value.reason
    event = await asyncio.wait_for(connector.next_event(), 1)
    assert isinstance(event, ErrorEvent)
    assert event.raw_output == "Failed to authenticate"
    assert connector.is_connected() is False


@pytest.mark.asyncio
async def test_connect_without_output_fails():
    launcher = Launcher()
    connector = CliConnector(VpnSettings(server=SERVER, username="alice"))
    password = "password"
    with mock.patch("asyncio.create_subprocess_exec", new=launcher):
        with pytest.raises(ConnectionFailed) as info:
            await connector.connect(password)
    assert info.value.reason.startswith(f"No response from server '{SERVER}'")
    assert connector.state().phase is LinkPhase.CONNECTING


@pytest.mark.asyncio
async def test_connect_spawn_failure():
    async def broken(*args, **kwargs):
        raise FileNotFoundError("sudo")

    connector = CliConnector(VpnSettings(server=SERVER, username="alice"))
    password = "password"
    with mock.patch("asyncio.create_subprocess_exec", new=broken):
        with pytest.raises(ProcessSpawnError) as info:
            await connector.connect(password)
    assert info.value.reason.startswith("Failed to spawn openconnect")


@pytest.mark.asyncio
async def test_connect_without_daemon_pid():
    launcher = Launcher(stdout=F5_LINE, pgrep_output=b"", pgrep_rc=1)
    connector = CliConnector(VpnSettings(server=SERVER, username="alice"))
    password = "password"
    with mock.patch("asyncio.create_subprocess_exec", new=launcher), mock.patch(
        "asyncio.sleep", new=mock.AsyncMock()
    ):
        with pytest.raises(ProcessSpawnError) as info:
            await connector.connect(password)
    assert info.value.reason == "Could not find openconnect daemon process"
    assert connector.pid() is None


@pytest.mark.asyncio
async def test_find_daemon_pid_takes_first_number():
    launcher = Launcher(pgrep_output=b"abc\n4242\n5151\n")
    with mock.patch("asyncio.create_subprocess_exec", new=launcher):
        pid = await find_openconnect_daemon_pid(SERVER)
    assert pid == 4242
    assert launcher.calls[0] == ("pgrep", "-f", f"openconnect.*{SERVER}")


@pytest.mark.asyncio
async def test_find_daemon_pid_gives_up():
    launcher = Launcher(pgrep_output=b"", pgrep_rc=1)
    with mock.patch("asyncio.create_subprocess_exec", new=launcher), mock.patch(
        "asyncio.sleep", new=mock.AsyncMock()
    ):
        pid = await find_openconnect_daemon_pid(SERVER)
    assert pid is None
    assert len(launcher.calls) == 15


@pytest.mark.asyncio
async def test_disconnect_without_pid_goes_idle():
    connector = CliConnector(VpnSettings(server=SERVER, username="alice"))
    await connector.disconnect()
    assert connector.state() == LinkState.idle()
    event = await asyncio.wait_for(connector.next_event(), 1)
    assert event == Disconnected(reason=DisconnectReason.USER_REQUESTED)


@pytest.mark.asyncio
async def test_disconnect_when_process_already_gone():
    connector = await connected_connector()
    with mock.patch("os.kill", side_effect=ProcessLookupError()) as kill:
        await connector.disconnect()
    assert kill.call_args_list == [mock.call(12345, 0)]
    assert connector.pid() is None
    assert connector.state().phase is LinkPhase.DISCONNECTING


@pytest.mark.asyncio
async def test_disconnect_graceful():
    connector = await connected_connector()
    await collect(connector, 3)
    with mock.patch("os.kill", side_effect=[None, None, ProcessLookupError()]) as kill, mock.patch(
        "asyncio.sleep", new=mock.AsyncMock()
    ):
        await connector.disconnect()
    assert kill.call_args_list == [
        mock.call(12345, 0),
        mock.call(12345, signal.SIGTERM),
        mock.call(12345, 0),
    ]
    assert connector.pid() is None
    assert connector.state() == LinkState.idle()
    event = await asyncio.wait_for(connector.next_event(), 1)
    assert event == Disconnected(reason=DisconnectReason.USER_REQUESTED)


@pytest.mark.asyncio
async def test_disconnect_escalates_to_sigkill():
    connector = await connected_connector()
    with mock.patch("os.kill", return_value=None) as kill, mock.patch(
        "asyncio.sleep", new=mock.AsyncMock()
    ):
        await connector.disconnect()
    assert kill.call_args_list[-1] == mock.call(12345, signal.SIGKILL)
    assert mock.call(12345, signal.SIGTERM) in kill.call_args_list
    assert connector.state() == LinkState.idle()


@pytest.mark.asyncio
async def test_disconnect_sigterm_failure():
    connector = await connected_connector()
    with mock.patch("os.kill", side_effect=[None, PermissionError()]):
        with pytest.raises(TerminationError):
            await connector.disconnect()
    assert connector.pid() == 12345


@pytest.mark.asyncio
async def test_force_kill_returns_to_idle():
    connector = await connected_connector()
    await connector.force_kill()
    assert connector.state() == LinkState.idle()
    assert connector.is_connected() is False