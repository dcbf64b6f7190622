from __future__ import annotations

import logging
import re
from typing import List, Optional, Pattern, Union

from ..config import DEFAULT_INVENTORY_COMMAND, DEFAULT_MANAGEMENT_PATTERN
from ..logging import get_logger
from ..schema import RemoteInstance
from ..util.errors import FetchError, RunTimeoutError, ToolError
from ..util.time import Deadline
from .shell import RemoteShell, SSHCredentials

NAME_KEY = "name"
STATE_KEY = "state"


def _compile(pattern: Union[str, Pattern[str], None]) -> Optional[Pattern[str]]:
    if pattern is None or pattern == "":
        return None
    if isinstance(pattern, str):
        return re.compile(pattern)
    return pattern


def parse_inventory_line(line: str) -> Optional[RemoteInstance]:
    """
    Parse one `key=value,key=value` line. Only `name` and `state` are read;
    other keys and fields that are not exactly `key=value` are ignored, and
    for a repeated key the last occurrence wins. Returns None when either
    required key is missing.
    """
    name: Optional[str] = None
    state: Optional[str] = None
    for field in line.split(","):
        parts = field.split("=")
        if len(parts) != 2:
            continue
        key = parts[0].strip()
        value = parts[1].strip()
        if key == NAME_KEY:
            name = value
        elif key == STATE_KEY:
            state = value
    if name is None or state is None:
        return None
    return RemoteInstance(name=name, state=state)


def parse_inventory_output(
    output: str,
    *,
    management_pattern: Union[str, Pattern[str], None] = DEFAULT_MANAGEMENT_PATTERN,
    logger: Optional[logging.Logger] = None,
) -> List[RemoteInstance]:
    """
    Parse the hypervisor inventory listing, dropping blank lines and
    management partitions (lines matching management_pattern).
    """
    log = logger or get_logger(__name__)
    excluded = _compile(management_pattern)
    instances: List[RemoteInstance] = []
    for raw in output.splitlines():
        line = raw.strip()
        if not line:
            continue
        if excluded is not None and excluded.search(line):
            log.debug("Skipping management partition line: %s", line)
            continue
        vm = parse_inventory_line(line)
        if vm is None:
            log.debug("Discarding inventory line without name/state: %s", line)
            continue
        instances.append(vm)
    return instances


class RemoteInventoryReader:
    """
    Lists the VMs a hypervisor reports locally, over one SSH connection and one
    session. Every failure is fatal: the hypervisor is the only source of truth
    for what physically exists there.
    """

    def __init__(
        self,
        shell: RemoteShell,
        *,
        command: str = DEFAULT_INVENTORY_COMMAND,
        management_pattern: Union[str, Pattern[str], None] = DEFAULT_MANAGEMENT_PATTERN,
        deadline: Optional[Deadline] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._shell = shell
        self._command = command
        self._pattern = _compile(management_pattern)
        self._deadline = deadline
        self._log = logger or get_logger(__name__)

    def _timeout(self) -> Optional[float]:
        if self._deadline is None:
            return None
        self._deadline.check("fetching remote VM list")
        return self._deadline.remaining()

    def list_remote_instances(self, credentials: SSHCredentials, host_ip: str) -> List[RemoteInstance]:
        try:
            conn = self._shell.connect(host_ip, credentials, timeout=self._timeout())
        except RunTimeoutError:
            raise
        except ToolError as e:
            raise FetchError(f"SSH connection failed: {e}") from e
        try:
            result = conn.run(self._command, timeout=self._timeout())
        except RunTimeoutError:
            raise
        except ToolError as e:
            raise FetchError(f"command failed: {e}") from e
        finally:
            conn.close()
        if not result.ok:
            raise FetchError(f"command failed with exit status {result.exit_status}: {result.output.strip()}")
        self._log.debug("Inventory command output: %s", result.stdout)
        instances = parse_inventory_output(result.stdout, management_pattern=self._pattern, logger=self._log)
        self._log.debug("Fetched %d remote VMs", len(instances))
        return instances
