from __future__ import annotations

import logging
from contextlib import nullcontext
from time import perf_counter
from typing import Any, Callable, Dict, List, Optional, TypeVar

from .auth.providers import AuthContext, AuthError, resolve_auth
from .cleanup.executor import CleanupExecutor, ConfirmationPrompt
from .config import RunConfig
from .logging import get_logger
from .openstack.clients import ComputeDirectory
from .openstack.hypervisors import list_hypervisors, resolve_hypervisor
from .openstack.inventory import ControlPlaneInventoryReader
from .reconcile.orphans import find_orphans
from .remote.inventory import RemoteInventoryReader
from .remote.shell import RemoteShell, SSHCredentials
from .report import Reporter
from .schema import (
    CleanupReport,
    CleanupState,
    ControlPlaneInventory,
    HypervisorRecord,
    ProjectRecord,
    ReconcileResult,
    RemoteInstance,
    RunResult,
    RunState,
)
from .util.concurrency import run_joined
from .util.errors import (
    AuthResolutionError,
    ConfigError,
    FetchError,
    RemoteConnectionError,
    RunTimeoutError,
    StepFailed,
)
from .util.retry import with_retry
from .util.rich_progress import RunProgress
from .util.time import Deadline, utc_now_iso

LOG = get_logger(__name__)

T = TypeVar("T")

# Builds an authenticated control-plane view; receives the remaining run budget.
DirectoryFactory = Callable[[AuthContext, Optional[float]], ComputeDirectory]


class _StepTimers:
    def __init__(self) -> None:
        self._starts: Dict[str, float] = {}

    def start(self, key: str) -> None:
        self._starts[key] = perf_counter()

    def finish(self, key: str) -> Optional[int]:
        started = self._starts.pop(key, None)
        if started is None:
            return None
        return int((perf_counter() - started) * 1000)


def _log_event(
    logger: Any,
    level: int,
    message: str,
    *,
    step: str,
    phase: str,
    timers: Optional[_StepTimers] = None,
    **extra: Any,
) -> None:
    duration_ms = None
    if timers is not None:
        if phase == "start":
            timers.start(step)
        elif phase in {"complete", "error", "skipped"}:
            duration_ms = timers.finish(step)
    payload: Dict[str, Any] = {"step": step, "phase": phase, "event": f"{step}.{phase}"}
    if duration_ms is not None:
        payload["duration_ms"] = duration_ms
    payload.update(extra)
    logger.log(level, message, extra=payload)


def require_credentials(cfg: RunConfig) -> SSHCredentials:
    missing: List[str] = []
    if not cfg.ssh_user:
        missing.append("--user")
    if not cfg.ssh_password:
        missing.append("--password")
    if not cfg.hypervisor_ip:
        missing.append("--ip")
    if missing:
        raise ConfigError(f"missing required arguments: {', '.join(missing)}")
    return SSHCredentials(username=str(cfg.ssh_user), password=str(cfg.ssh_password), port=cfg.ssh_port)


class _Run:
    """One pass of the stale VM cleanup state machine."""

    def __init__(
        self,
        cfg: RunConfig,
        directory_factory: DirectoryFactory,
        shell: RemoteShell,
        prompt: ConfirmationPrompt,
        reporter: Reporter,
        *,
        progress: Optional[RunProgress],
        logger: logging.Logger,
        deadline: Deadline,
    ) -> None:
        self.cfg = cfg
        self.directory_factory = directory_factory
        self.shell = shell
        self.prompt = prompt
        self.reporter = reporter
        self.progress = progress
        self.log = logger
        self.deadline = deadline
        self.timers = _StepTimers()
        self.result = RunResult(started_at=utc_now_iso())

    def step(self, state: RunState, message: str, func: Callable[[], T], **extra: Any) -> T:
        self.result.state = state
        _log_event(self.log, logging.INFO, f"{message} started", step=state.value, phase="start", timers=self.timers)
        try:
            value = func()
        except Exception as e:
            _log_event(
                self.log,
                logging.ERROR,
                f"{message} failed",
                step=state.value,
                phase="error",
                timers=self.timers,
                error=str(e),
            )
            raise StepFailed(state.value, e) from e
        _log_event(
            self.log,
            logging.INFO,
            f"{message} complete",
            step=state.value,
            phase="complete",
            timers=self.timers,
            **extra,
        )
        return value

    def authenticate(self) -> ComputeDirectory:
        ctx = resolve_auth(self.cfg.cloud, self.cfg.region)
        self.deadline.check("authenticating")
        try:
            return self.directory_factory(ctx, self.deadline.remaining())
        except AuthError as e:
            raise AuthResolutionError(str(e)) from e

    def find_hypervisor(self, directory: ComputeDirectory) -> HypervisorRecord:
        hypervisors = list_hypervisors(
            directory,
            attempts=self.cfg.retry_attempts,
            delay=self.cfg.retry_delay,
            deadline=self.deadline,
            logger=self.log,
        )
        hv = resolve_hypervisor(hypervisors, str(self.cfg.hypervisor_ip))
        self.log.info("Found hypervisor %s for IP %s", hv.hostname, hv.host_ip)
        return hv

    def _on_project_done(self, project: ProjectRecord, ok: bool) -> None:
        if self.progress is not None:
            self.progress.advance_projects(failed=not ok)

    def fetch_inventories(
        self, directory: ComputeDirectory, hypervisor: HypervisorRecord, credentials: SSHCredentials
    ) -> tuple[ControlPlaneInventory, List[RemoteInstance]]:
        control_plane = ControlPlaneInventoryReader(
            directory,
            max_workers=self.cfg.workers_projects,
            attempts=self.cfg.retry_attempts,
            delay=self.cfg.retry_delay,
            deadline=self.deadline,
            logger=self.log,
            on_project_done=self._on_project_done,
        )
        remote = RemoteInventoryReader(
            self.shell,
            command=self.cfg.inventory_command,
            management_pattern=self.cfg.management_pattern,
            deadline=self.deadline,
            logger=self.log,
        )

        def _remote() -> List[RemoteInstance]:
            return with_retry(
                lambda: remote.list_remote_instances(credentials, hypervisor.host_ip),
                attempts=self.cfg.retry_attempts,
                delay=self.cfg.retry_delay,
                retry_on=(FetchError,),
                deadline=self.deadline,
                what="fetching remote VM list",
                logger=self.log,
            )

        if self.progress is not None:
            self.progress.start_projects()
        with self.progress if self.progress is not None else nullcontext():
            joined = run_joined(
                {
                    "openstack": lambda: control_plane.list_instances_on_hypervisor(hypervisor.hostname),
                    "remote": _remote,
                },
                deadline=self.deadline,
            )
        for name in ("openstack", "remote"):
            unit = joined[name]
            if not unit.ok:
                raise unit.error  # type: ignore[misc]
        return joined["openstack"].value, joined["remote"].value  # type: ignore[return-value]

    def clean(self, reconciled: ReconcileResult, credentials: SSHCredentials) -> CleanupReport:
        executor = CleanupExecutor(
            self.shell,
            self.prompt,
            delete_command=self.cfg.delete_command,
            deadline=self.deadline,
            logger=self.log,
        )
        report = executor.execute(
            reconciled.orphans,
            credentials,
            reconciled.hypervisor.host_ip,
            dry_run=self.cfg.dry_run,
        )
        self.result.cleanup = report
        self.reporter.report_cleanup(report)
        if report.state is CleanupState.FAILED:
            if report.timed_out:
                raise RunTimeoutError(report.error or "timed out during VM deletion")
            raise RemoteConnectionError(report.error or "VM deletion failed")
        return report

    def execute(self, credentials: SSHCredentials) -> RunResult:
        cfg = self.cfg
        _log_event(
            self.log,
            logging.INFO,
            "Starting stale VM cleanup",
            step="run",
            phase="start",
            timers=self.timers,
            hypervisor_ip=cfg.hypervisor_ip,
            dry_run=cfg.dry_run,
            timeout=cfg.timeout,
        )
        try:
            directory = self.step(RunState.AUTHENTICATING, "Authentication", self.authenticate)
            hypervisor = self.step(
                RunState.RESOLVING_HYPERVISOR,
                "Hypervisor resolution",
                lambda: self.find_hypervisor(directory),
            )
            control_plane, remote = self.step(
                RunState.FETCHING_INVENTORIES,
                "Inventory fetch",
                lambda: self.fetch_inventories(directory, hypervisor, credentials),
            )
            reconciled = self.step(
                RunState.RECONCILING,
                "Reconciliation",
                lambda: ReconcileResult(
                    hypervisor=hypervisor,
                    control_plane=control_plane,
                    remote=remote,
                    orphans=find_orphans(control_plane.instances, remote, logger=self.log),
                ),
            )
            self.result.reconcile = reconciled
            self.step(
                RunState.REPORTING,
                "Reporting",
                lambda: self.reporter.report_reconciliation(reconciled),
                openstack_vms=len(control_plane.instances),
                remote_vms=len(remote),
                missing_vms=len(reconciled.orphans),
                skipped_projects=len(control_plane.failed_projects),
            )
            if reconciled.orphans:
                self.step(RunState.CLEANING, "Cleanup", lambda: self.clean(reconciled, credentials))
            else:
                self.result.state = RunState.IDLE
                self.result.cleanup = CleanupReport(state=CleanupState.NOTHING_TO_DO)
        except StepFailed as e:
            self.result.state = RunState.FAILED
            self.result.failed_step = e.step
            self.result.error = str(e.cause)
            self.result.finished_at = utc_now_iso()
            _log_event(
                self.log,
                logging.ERROR,
                "Stale VM cleanup failed",
                step="run",
                phase="error",
                timers=self.timers,
                failed_step=e.step,
            )
            self.reporter.finish(self.result)
            raise

        self.result.state = RunState.DONE
        self.result.finished_at = utc_now_iso()
        cleanup_state = self.result.cleanup.state.value if self.result.cleanup else None
        _log_event(
            self.log,
            logging.INFO,
            "Stale VM cleanup complete",
            step="run",
            phase="complete",
            timers=self.timers,
            cleanup_state=cleanup_state,
        )
        self.reporter.finish(self.result)
        return self.result


def run(
    cfg: RunConfig,
    directory_factory: DirectoryFactory,
    shell: RemoteShell,
    prompt: ConfirmationPrompt,
    reporter: Reporter,
    *,
    progress: Optional[RunProgress] = None,
    logger: Optional[logging.Logger] = None,
    deadline: Optional[Deadline] = None,
) -> RunResult:
    """
    Reconcile one hypervisor against the control plane and clean up the VMs
    only the hypervisor knows about.

    Steps: authenticate, resolve the hypervisor by IP, fetch both inventories
    concurrently, reconcile, report, then clean (or stay idle when nothing is
    missing). A fatal error at any step is raised as StepFailed naming the step;
    the reporter is finished before it propagates.
    """
    credentials = require_credentials(cfg)
    run_deadline = deadline or Deadline(cfg.timeout)
    return _Run(
        cfg,
        directory_factory,
        shell,
        prompt,
        reporter,
        progress=progress,
        logger=logger or LOG,
        deadline=run_deadline,
    ).execute(credentials)
