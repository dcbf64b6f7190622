from __future__ import annotations

import types

import paramiko
import pytest

from openstack_tool.remote import shell as shell_mod
from openstack_tool.remote.shell import ParamikoConnection, ParamikoShell, SSHCredentials
from openstack_tool.util.errors import RemoteCommandError, RemoteConnectionError, RunTimeoutError


class FakeChannel:
    """Serves stdout/stderr in small chunks and reports exit once both are consumed."""

    def __init__(self, stdout: bytes, stderr: bytes = b"", status: int = 0, chunk: int = 4) -> None:
        self._stdout = [stdout[i : i + chunk] for i in range(0, len(stdout), chunk)]
        self._stderr = [stderr[i : i + chunk] for i in range(0, len(stderr), chunk)]
        self._status = status
        self.combine = None
        self.executed = None
        self.closed = False

    def set_combine_stderr(self, combine: bool) -> None:
        self.combine = combine

    def exec_command(self, command: str) -> None:
        self.executed = command

    def recv_ready(self) -> bool:
        return bool(self._stdout)

    def recv(self, nbytes: int) -> bytes:
        return self._stdout.pop(0)

    def recv_stderr_ready(self) -> bool:
        return bool(self._stderr)

    def recv_stderr(self, nbytes: int) -> bytes:
        return self._stderr.pop(0)

    def exit_status_ready(self) -> bool:
        return not self._stdout and not self._stderr

    def recv_exit_status(self) -> int:
        return self._status

    def close(self) -> None:
        self.closed = True


def _client(transport) -> types.SimpleNamespace:
    client = types.SimpleNamespace(closed=False)
    client.get_transport = lambda: transport
    client.close = lambda: setattr(client, "closed", True)
    return client


def _transport(channel=None, *, active: bool = True, error: Exception = None) -> types.SimpleNamespace:
    def _open_session(timeout=None):
        if error is not None:
            raise error
        return channel

    return types.SimpleNamespace(is_active=lambda: active, open_session=_open_session)


def _conn(transport) -> ParamikoConnection:
    return ParamikoConnection(_client(transport), "10.0.0.5", shell_mod.get_logger("test"))


def test_run_collects_output_and_exit_status() -> None:
    channel = FakeChannel(b"name=vm1,state=Running\n", b"warning\n", status=0)

    result = _conn(_transport(channel)).run("pvmctl vm list", timeout=5)

    assert result.ok
    assert result.stdout == "name=vm1,state=Running\n"
    assert result.stderr == "warning\n"
    assert channel.executed == "pvmctl vm list"
    assert channel.combine is False
    assert channel.closed


def test_run_combined_output_for_failed_command() -> None:
    channel = FakeChannel(b"HSCL1234 busy\n", status=1)

    result = _conn(_transport(channel)).run("delete", combine_stderr=True)

    assert not result.ok
    assert result.exit_status == 1
    assert result.output == "HSCL1234 busy\n"
    assert channel.combine is True


def test_run_on_inactive_transport() -> None:
    with pytest.raises(RemoteConnectionError, match="closed"):
        _conn(_transport(active=False)).run("delete")


def test_session_open_failure_is_command_error() -> None:
    transport = _transport(error=paramiko.ChannelException(1, "administratively prohibited"))

    with pytest.raises(RemoteCommandError, match="SSH session failed"):
        _conn(transport).run("delete")


def test_command_timeout_maps_to_run_timeout() -> None:
    class HungChannel(FakeChannel):
        def exit_status_ready(self) -> bool:
            return False

    with pytest.raises(RunTimeoutError):
        _conn(_transport(HungChannel(b""))).run("delete", timeout=0.01)


def test_stderr_is_drained_while_stdout_is_still_open() -> None:
    class StderrFirstChannel(FakeChannel):
        """stdout only flows once the remote could flush all of its stderr."""

        def recv_ready(self) -> bool:
            return not self._stderr and bool(self._stdout)

    channel = StderrFirstChannel(b"name=vm1,state=Running\n", b"W" * 64 + b"\n", status=0)

    result = _conn(_transport(channel)).run("pvmctl vm list", timeout=5)

    assert result.stdout == "name=vm1,state=Running\n"
    assert result.stderr == "W" * 64 + "\n"


def test_connect_uses_password_auth_and_maps_errors(monkeypatch) -> None:
    created = []

    class FakeSSHClient:
        def __init__(self) -> None:
            self.kwargs = None
            self.policy = None
            self.closed = False
            created.append(self)

        def set_missing_host_key_policy(self, policy) -> None:
            self.policy = policy

        def load_system_host_keys(self) -> None:
            pass

        def connect(self, **kwargs) -> None:
            self.kwargs = kwargs
            if kwargs["password"] == "wrong":
                raise paramiko.AuthenticationException("Authentication failed.")

        def get_transport(self):
            return None

        def close(self) -> None:
            self.closed = True

    monkeypatch.setattr(shell_mod.paramiko, "SSHClient", FakeSSHClient)

    conn = ParamikoShell().connect("10.0.0.5", SSHCredentials("padmin", "pw", port=2222), timeout=9)
    client = created[0]
    assert isinstance(conn, ParamikoConnection)
    assert client.kwargs["port"] == 2222
    assert client.kwargs["timeout"] == 9
    assert client.kwargs["look_for_keys"] is False
    assert isinstance(client.policy, paramiko.AutoAddPolicy)

    with pytest.raises(RemoteConnectionError, match="Authentication failed"):
        ParamikoShell(strict_host_keys=True).connect("10.0.0.5", SSHCredentials("padmin", "wrong"))
    assert isinstance(created[1].policy, paramiko.RejectPolicy)
    assert created[1].closed


def test_credentials_repr_hides_password() -> None:
    assert "hunter2" not in repr(SSHCredentials("padmin", "hunter2"))
