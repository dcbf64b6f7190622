from __future__ import annotations

import logging
from contextlib import nullcontext
from shlex import quote
from typing import Callable, List, Optional, Sequence

from rich.console import Console

from ..config import DEFAULT_DELETE_COMMAND
from ..logging import get_logger
from ..remote.shell import RemoteConnection, RemoteShell, SSHCredentials
from ..schema import CleanupOutcome, CleanupReport, CleanupState, OrphanRecord, OutcomeStatus
from ..util.errors import DeletionError, RunTimeoutError, ToolError
from ..util.time import Deadline

CONFIRM_TOKEN = "confirm"

# Receives the prompt text, returns True only when the operator confirmed.
ConfirmationPrompt = Callable[[str], bool]


def token_prompt(read_line: Callable[[str], str], token: str = CONFIRM_TOKEN) -> ConfirmationPrompt:
    """
    Build a ConfirmationPrompt that reads one line and accepts only `token`
    (case-insensitive, surrounding whitespace ignored). EOF counts as a refusal.
    """

    def _prompt(message: str) -> bool:
        try:
            response = read_line(message)
        except EOFError:
            return False
        return (response or "").strip().lower() == token.lower()

    return _prompt


def console_prompt(console: Console, token: str = CONFIRM_TOKEN) -> ConfirmationPrompt:
    """Interactive prompt reading from the terminal through a rich Console."""
    return token_prompt(console.input, token)


class CleanupExecutor:
    """
    Deletes orphaned VMs on a hypervisor.

    Nothing happens without orphans; dry-run only reports; otherwise the
    operator must type the confirmation token. Deletions run sequentially over
    one SSH connection with a fresh session per VM, and a failed VM never
    stops the attempts on the following ones.
    """

    def __init__(
        self,
        shell: RemoteShell,
        prompt: ConfirmationPrompt,
        *,
        delete_command: str = DEFAULT_DELETE_COMMAND,
        deadline: Optional[Deadline] = None,
        logger: Optional[logging.Logger] = None,
        on_outcome: Optional[Callable[[CleanupOutcome], None]] = None,
    ) -> None:
        self._shell = shell
        self._prompt = prompt
        self._delete_command = delete_command
        self._deadline = deadline
        self._log = logger or get_logger(__name__)
        self._on_outcome = on_outcome

    def build_command(self, orphan: OrphanRecord) -> str:
        return self._delete_command.format(name=quote(orphan.instance_name))

    def _remaining(self) -> Optional[float]:
        return self._deadline.remaining() if self._deadline is not None else None

    def _record(self, outcomes: List[CleanupOutcome], outcome: CleanupOutcome) -> None:
        outcomes.append(outcome)
        if self._on_outcome is not None:
            self._on_outcome(outcome)

    def _pending(self, orphans: Sequence[OrphanRecord], message: str) -> List[CleanupOutcome]:
        return [
            CleanupOutcome(
                vm=o.instance_name,
                tenant=o.tenant_name,
                status=OutcomeStatus.PENDING,
                message=message,
                command=self.build_command(o),
            )
            for o in orphans
        ]

    def _run_delete(self, conn: RemoteConnection, orphan: OrphanRecord, command: str) -> str:
        # A delete that has started runs to completion; the deadline is checked between VMs.
        try:
            result = conn.run(command, combine_stderr=True, timeout=None)
        except ToolError as e:
            raise DeletionError(f"SSH session failed: {e}") from e
        if not result.ok:
            raise DeletionError(
                f"Failed to delete VM: exit status {result.exit_status}",
                exit_status=result.exit_status,
                output=result.output,
            )
        return result.output

    def _delete_one(self, conn: RemoteConnection, orphan: OrphanRecord) -> CleanupOutcome:
        command = self.build_command(orphan)
        self._log.debug("Executing deletion command for VM %s: %s", orphan.instance_name, command)
        try:
            output = self._run_delete(conn, orphan, command)
        except DeletionError as e:
            self._log.warning(
                "Failed to delete VM %s (Tenant: %s): %s",
                orphan.instance_name,
                orphan.tenant_name,
                e,
                extra={"vm": orphan.instance_name, "output": e.output},
            )
            return CleanupOutcome(
                vm=orphan.instance_name,
                tenant=orphan.tenant_name,
                status=OutcomeStatus.ERROR,
                message=str(e),
                command=command,
                output=e.output,
            )
        self._log.info("Deleted VM %s", orphan.instance_name, extra={"vm": orphan.instance_name})
        return CleanupOutcome(
            vm=orphan.instance_name,
            tenant=orphan.tenant_name,
            status=OutcomeStatus.SUCCESS,
            message="deleted",
            command=command,
            output=output,
        )

    def execute(
        self,
        orphans: Sequence[OrphanRecord],
        credentials: SSHCredentials,
        host_ip: str,
        dry_run: bool,
    ) -> CleanupReport:
        orphans = list(orphans)
        if not orphans:
            self._log.debug("No abandoned VMs to delete")
            return CleanupReport(state=CleanupState.NOTHING_TO_DO)
        if dry_run:
            self._log.debug("Dry run: %d VMs would be deleted", len(orphans))
            return CleanupReport(state=CleanupState.DRY_RUN, orphans=orphans)

        message = f"Type '{CONFIRM_TOKEN}' to delete {len(orphans)} VMs: "
        with self._deadline.paused() if self._deadline is not None else nullcontext():
            confirmed = self._prompt(message)
        if not confirmed:
            self._log.info("Deletion aborted by user")
            return CleanupReport(state=CleanupState.ABORTED, orphans=orphans)

        try:
            if self._deadline is not None:
                self._deadline.check("connecting for VM deletion")
            conn = self._shell.connect(host_ip, credentials, timeout=self._remaining())
        except ToolError as e:
            self._log.error("SSH connection error: %s", e)
            return CleanupReport(
                state=CleanupState.FAILED,
                orphans=orphans,
                outcomes=self._pending(orphans, "not attempted: SSH connection error"),
                error=f"SSH connection error: {e}",
                timed_out=isinstance(e, RunTimeoutError),
            )

        outcomes: List[CleanupOutcome] = []
        error: Optional[str] = None
        timed_out = False
        try:
            for index, orphan in enumerate(orphans):
                if self._deadline is not None and self._deadline.expired():
                    timed_out = True
                    error = f"timed out after {self._deadline.timeout:g}s during VM deletion"
                    outcomes.extend(self._pending(orphans[index:], "not attempted: run timed out"))
                    break
                if index and not conn.is_active():
                    error = f"SSH connection to {host_ip} lost"
                    outcomes.extend(self._pending(orphans[index:], "not attempted: SSH connection lost"))
                    break
                self._record(outcomes, self._delete_one(conn, orphan))
        finally:
            conn.close()

        state = CleanupState.FAILED if error else CleanupState.COMPLETED
        self._log.debug("Abandoned VM deletion process completed with state %s", state.value)
        return CleanupReport(state=state, orphans=orphans, outcomes=outcomes, error=error, timed_out=timed_out)
