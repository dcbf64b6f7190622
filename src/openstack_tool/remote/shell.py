from __future__ import annotations

import logging
import socket
import time
from dataclasses import dataclass
from typing import Any, List, Optional, Protocol, Tuple, runtime_checkable

import paramiko

from ..logging import get_logger
from ..util.errors import RemoteCommandError, RemoteConnectionError, RunTimeoutError, map_ssh_error

DEFAULT_PORT = 22
_RECV_BYTES = 32768
_POLL_INTERVAL = 0.05


@dataclass(frozen=True)
class SSHCredentials:
    username: str
    password: str
    port: int = DEFAULT_PORT

    def __repr__(self) -> str:
        return f"SSHCredentials(username={self.username!r}, password='<redacted>', port={self.port})"


@dataclass(frozen=True)
class CommandResult:
    command: str
    exit_status: int
    stdout: str
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_status == 0

    @property
    def output(self) -> str:
        if self.stderr:
            return f"{self.stdout}{self.stderr}"
        return self.stdout


def _drain(channel: paramiko.Channel, timeout: Optional[float]) -> Tuple[bytes, bytes]:
    """
    Read stdout and stderr together until the command exits. Reading one
    stream to EOF first can stall the remote once the other stream's window
    is full. Without a timeout the wait is unbounded.
    """
    started = time.monotonic()
    stdout: List[bytes] = []
    stderr: List[bytes] = []
    while True:
        idle = True
        if channel.recv_ready():
            stdout.append(channel.recv(_RECV_BYTES))
            idle = False
        if channel.recv_stderr_ready():
            stderr.append(channel.recv_stderr(_RECV_BYTES))
            idle = False
        if not idle:
            continue
        if channel.exit_status_ready() and not channel.recv_ready() and not channel.recv_stderr_ready():
            break
        if timeout is not None and time.monotonic() - started >= timeout:
            raise socket.timeout(f"no exit status after {timeout:g}s")
        time.sleep(_POLL_INTERVAL)
    return b"".join(stdout), b"".join(stderr)


@runtime_checkable
class RemoteConnection(Protocol):
    def run(self, command: str, *, combine_stderr: bool = False, timeout: Optional[float] = None) -> CommandResult:
        """Open a fresh session, execute command and wait for its exit status."""
        ...

    def is_active(self) -> bool:
        ...

    def close(self) -> None:
        ...


@runtime_checkable
class RemoteShell(Protocol):
    def connect(self, host: str, credentials: SSHCredentials, *, timeout: Optional[float] = None) -> RemoteConnection:
        ...


class ParamikoConnection:
    """One authenticated SSH transport; every run() opens its own channel."""

    def __init__(self, client: paramiko.SSHClient, host: str, logger: logging.Logger) -> None:
        self._client = client
        self._host = host
        self._log = logger

    def __enter__(self) -> "ParamikoConnection":
        return self

    def __exit__(self, exc_type: Any, exc: Any, exc_tb: Any) -> None:
        self.close()

    def is_active(self) -> bool:
        transport = self._client.get_transport()
        return transport is not None and transport.is_active()

    def run(self, command: str, *, combine_stderr: bool = False, timeout: Optional[float] = None) -> CommandResult:
        transport = self._client.get_transport()
        if transport is None or not transport.is_active():
            raise RemoteConnectionError(f"SSH connection to {self._host} is closed")
        try:
            channel = transport.open_session(timeout=timeout)
        except Exception as e:
            mapped = map_ssh_error(e, f"SSH session failed on {self._host}")
            if isinstance(mapped, RunTimeoutError):
                raise mapped from e
            raise RemoteCommandError(f"SSH session failed on {self._host}: {e}") from e
        try:
            channel.set_combine_stderr(combine_stderr)
            self._log.debug("Executing on %s: %s", self._host, command)
            channel.exec_command(command)
            stdout, stderr = _drain(channel, timeout)
            exit_status = channel.recv_exit_status()
        except Exception as e:
            mapped = map_ssh_error(e, f"command failed on {self._host}")
            if mapped:
                raise mapped from e
            raise
        finally:
            channel.close()
        return CommandResult(
            command=command,
            exit_status=exit_status,
            stdout=stdout.decode("utf-8", "replace"),
            stderr=stderr.decode("utf-8", "replace"),
        )

    def close(self) -> None:
        self._client.close()


class ParamikoShell:
    """
    RemoteShell over paramiko password authentication.
    Unknown host keys are accepted unless strict_host_keys is set, in which case
    the system known_hosts is loaded and unknown hosts are rejected.
    """

    def __init__(self, *, strict_host_keys: bool = False, logger: Optional[logging.Logger] = None) -> None:
        self._strict_host_keys = strict_host_keys
        self._log = logger or get_logger(__name__)

    def _new_client(self) -> paramiko.SSHClient:
        client = paramiko.SSHClient()
        if self._strict_host_keys:
            client.load_system_host_keys()
            client.set_missing_host_key_policy(paramiko.RejectPolicy())
        else:
            client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        return client

    def connect(self, host: str, credentials: SSHCredentials, *, timeout: Optional[float] = None) -> ParamikoConnection:
        client = self._new_client()
        self._log.debug("Establishing SSH connection to %s:%d as %s", host, credentials.port, credentials.username)
        try:
            client.connect(
                hostname=host,
                port=credentials.port,
                username=credentials.username,
                password=credentials.password,
                timeout=timeout,
                banner_timeout=timeout,
                auth_timeout=timeout,
                allow_agent=False,
                look_for_keys=False,
            )
        except Exception as e:
            client.close()
            mapped = map_ssh_error(e, f"SSH connection to {host}:{credentials.port} failed")
            if mapped:
                raise mapped from e
            raise
        return ParamikoConnection(client, host, self._log)
