from __future__ import annotations

import sys
from pathlib import Path
from typing import Optional, Protocol, TextIO

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from .schema import CleanupReport, CleanupState, OrphanRecord, OutcomeStatus, ReconcileResult, RunResult
from .util.serialization import dumps_document


class Reporter(Protocol):
    def report_reconciliation(self, result: ReconcileResult) -> None:
        ...

    def report_cleanup(self, report: CleanupReport) -> None:
        ...

    def finish(self, result: RunResult) -> None:
        """Called exactly once at the end of a run, also when it failed."""
        ...


def _truncate(s: str, max_len: int = 240) -> str:
    s = (s or "").strip()
    if len(s) <= max_len:
        return s
    return s[: max_len - 3] + "..."


def _orphan_line(vm: OrphanRecord) -> str:
    return f" - VM: {vm.instance_name}, Tenant: {vm.tenant_name}, Status: {vm.status}"


def write_report_file(path: Path, result: RunResult) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dumps_document(result.to_dict()) + "\n", encoding="utf-8")
    return path


class TableReporter:
    """Human-readable report on stdout."""

    def __init__(self, console: Optional[Console] = None, *, report_file: Optional[Path] = None) -> None:
        self._console = console or Console()
        self._report_file = report_file

    def _line(self, text: str) -> None:
        self._console.print(escape(text), highlight=False, soft_wrap=True)

    def report_reconciliation(self, result: ReconcileResult) -> None:
        skipped = result.control_plane.failed_projects
        self._line(f"OpenStack VM count: {len(result.control_plane.instances)}")
        self._line(f"Remote VM count: {len(result.remote)}")
        self._line(f"Missing VM count: {len(result.orphans)}")
        if skipped:
            self._line(
                f"Skipped projects: {len(skipped)} of {result.control_plane.total_projects} "
                "(their VMs may be reported as missing)"
            )
            for failure in skipped:
                self._line(f" - Project: {failure.project.name}, Error: {_truncate(failure.error)}")
        if not result.orphans:
            self._line("No missing VMs detected!")
            return
        self._line("Missing VMs:")
        for vm in result.orphans:
            self._line(_orphan_line(vm))

    def report_cleanup(self, report: CleanupReport) -> None:
        if report.state is CleanupState.NOTHING_TO_DO:
            self._line("No abandoned VMs to delete.")
            return
        if report.state is CleanupState.DRY_RUN:
            self._line("Dry-run mode enabled. VMs that would be deleted:")
            for vm in report.orphans:
                self._line(_orphan_line(vm))
            return
        if report.state is CleanupState.ABORTED:
            self._line("Deletion aborted by user.")
            return

        table = Table(title="Deletion results", show_header=True, header_style="bold")
        table.add_column("VM", style="cyan")
        table.add_column("Tenant")
        table.add_column("Status")
        table.add_column("Details", overflow="fold")
        styles = {OutcomeStatus.SUCCESS: "green", OutcomeStatus.ERROR: "red", OutcomeStatus.PENDING: "yellow"}
        for outcome in report.outcomes:
            details = outcome.command if outcome.status is OutcomeStatus.SUCCESS else outcome.message
            if outcome.output and outcome.status is OutcomeStatus.ERROR:
                details = f"{details}, Output: {_truncate(outcome.output)}"
            table.add_row(
                escape(outcome.vm),
                escape(outcome.tenant),
                f"[{styles[outcome.status]}]{outcome.status.value}[/]",
                escape(details),
            )
        self._console.print(table)
        self._line(f"Deleted: {report.succeeded}, Failed: {report.failed}, Pending: {report.pending}")
        if report.error:
            self._line(f"Deletion stopped: {report.error}")

    def finish(self, result: RunResult) -> None:
        if self._report_file is not None:
            write_report_file(self._report_file, result)


class JsonReporter:
    """
    Buffers the run and prints a single JSON document when it finishes, so
    stdout stays parseable even when the run fails half-way. Missing VMs are
    also listed on the notice stream (stderr) as soon as they are known, so
    the operator sees them before any confirmation prompt.
    """

    def __init__(
        self,
        stream: Optional[TextIO] = None,
        *,
        notice: Optional[TextIO] = None,
        report_file: Optional[Path] = None,
    ) -> None:
        self._stream = stream
        self._notice = notice
        self._report_file = report_file

    def report_reconciliation(self, result: ReconcileResult) -> None:
        if not result.orphans:
            return
        notice = self._notice or sys.stderr
        print("Missing VMs:", file=notice)
        for vm in result.orphans:
            print(_orphan_line(vm), file=notice)
        notice.flush()

    def report_cleanup(self, report: CleanupReport) -> None:
        pass

    def finish(self, result: RunResult) -> None:
        document = dumps_document(result.to_dict())
        print(document, file=self._stream or sys.stdout)
        if self._report_file is not None:
            write_report_file(self._report_file, result)


def make_reporter(output: str, *, report_file: Optional[Path] = None) -> Reporter:
    if output == "json":
        return JsonReporter(report_file=report_file)
    return TableReporter(report_file=report_file)
