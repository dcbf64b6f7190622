from __future__ import annotations

import pytest

from fakes import FakeConnection, FakeShell, inventory_output
from openstack_tool.remote.inventory import RemoteInventoryReader, parse_inventory_line, parse_inventory_output
from openstack_tool.remote.shell import CommandResult, SSHCredentials
from openstack_tool.schema import RemoteInstance
from openstack_tool.util.errors import FetchError, RemoteCommandError, RemoteConnectionError, RunTimeoutError

CREDS = SSHCredentials(username="padmin", password="pw")


def test_parse_output_drops_management_partition_and_blank_lines() -> None:
    output = "name=vm1,state=Running\nname=ltc01-nova,state=Running\n\n"

    assert parse_inventory_output(output) == [RemoteInstance(name="vm1", state="Running")]


def test_parse_line_ignores_unknown_keys_and_malformed_fields() -> None:
    vm = parse_inventory_line("id=7,name=vm2,garbage,bad=a=b,state=Not Activated  ")

    assert vm == RemoteInstance(name="vm2", state="Not Activated")


def test_parse_line_requires_name_and_state() -> None:
    assert parse_inventory_line("name=vm1") is None
    assert parse_inventory_line("state=Running") is None
    assert parse_inventory_line("") is None


def test_parse_line_last_duplicate_wins() -> None:
    assert parse_inventory_line("name=a,state=Running,name=b") == RemoteInstance(name="b", state="Running")


def test_parse_output_without_management_pattern_keeps_everything() -> None:
    output = inventory_output(("vm1", "Running"), ("ltc01-nova", "Running"))

    names = [vm.name for vm in parse_inventory_output(output, management_pattern=None)]

    assert names == ["vm1", "ltc01-nova"]


def test_reader_runs_inventory_command_once_and_closes() -> None:
    conn = FakeConnection(lambda cmd: CommandResult(cmd, 0, inventory_output(("vm1", "Running"), ("vm2", "Shutdown"))))
    shell = FakeShell(conn)

    vms = RemoteInventoryReader(shell, command="list-vms").list_remote_instances(CREDS, "10.0.0.5")

    assert vms == [RemoteInstance("vm1", "Running"), RemoteInstance("vm2", "Shutdown")]
    assert conn.commands == ["list-vms"]
    assert conn.closed
    assert shell.connects == ["10.0.0.5"]


def test_reader_non_zero_exit_is_fetch_error() -> None:
    conn = FakeConnection(lambda cmd: CommandResult(cmd, 127, "", "pvmctl: not found"))

    with pytest.raises(FetchError, match="exit status 127"):
        RemoteInventoryReader(FakeShell(conn)).list_remote_instances(CREDS, "10.0.0.5")
    assert conn.closed


def test_reader_connection_failure_is_fetch_error() -> None:
    shell = FakeShell(RemoteConnectionError("Authentication failed"))

    with pytest.raises(FetchError, match="SSH connection failed"):
        RemoteInventoryReader(shell).list_remote_instances(CREDS, "10.0.0.5")


def test_reader_session_failure_is_fetch_error() -> None:
    def _fail(cmd: str) -> CommandResult:
        raise RemoteCommandError("SSH session failed on 10.0.0.5: channel closed")

    conn = FakeConnection(_fail)

    with pytest.raises(FetchError, match="command failed"):
        RemoteInventoryReader(FakeShell(conn)).list_remote_instances(CREDS, "10.0.0.5")
    assert conn.closed


def test_reader_timeout_passes_through() -> None:
    shell = FakeShell(RunTimeoutError("SSH connection to 10.0.0.5:22 failed: timed out"))

    with pytest.raises(RunTimeoutError):
        RemoteInventoryReader(shell).list_remote_instances(CREDS, "10.0.0.5")
