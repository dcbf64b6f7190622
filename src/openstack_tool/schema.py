from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

UNKNOWN_TENANT = "Unknown"


@dataclass(frozen=True)
class HypervisorRecord:
    host_ip: str
    hostname: str


@dataclass(frozen=True)
class ProjectRecord:
    id: str
    name: str


@dataclass(frozen=True)
class ServerRecord:
    """
    One server as returned by the compute directory.
    instance_name is the hypervisor-level name (OS-EXT-SRV-ATTR:instance_name),
    distinct from the display name.
    """

    name: str
    instance_name: Optional[str]
    hypervisor_hostname: Optional[str]
    status: str = ""


@dataclass(frozen=True)
class ControlPlaneInstance:
    instance_name: str
    tenant_name: str
    status: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"instance_name": self.instance_name, "tenant_name": self.tenant_name, "status": self.status}


@dataclass(frozen=True)
class RemoteInstance:
    name: str
    state: str

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "state": self.state}


@dataclass(frozen=True)
class OrphanRecord:
    instance_name: str
    status: str
    tenant_name: str = UNKNOWN_TENANT

    def to_dict(self) -> Dict[str, Any]:
        return {"instance_name": self.instance_name, "tenant_name": self.tenant_name, "status": self.status}


@dataclass(frozen=True)
class ProjectFailure:
    project: ProjectRecord
    error: str

    def to_dict(self) -> Dict[str, Any]:
        return {"project_id": self.project.id, "project_name": self.project.name, "error": self.error}


@dataclass(frozen=True)
class ControlPlaneInventory:
    instances: List[ControlPlaneInstance]
    failed_projects: List[ProjectFailure] = field(default_factory=list)
    total_projects: int = 0


class OutcomeStatus(str, Enum):
    SUCCESS = "success"
    ERROR = "error"
    PENDING = "pending"


@dataclass(frozen=True)
class CleanupOutcome:
    vm: str
    tenant: str
    status: OutcomeStatus
    message: str = ""
    command: str = ""
    output: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "vm": self.vm,
            "tenant": self.tenant,
            "status": self.status.value,
            "message": self.message,
            "command": self.command,
            "output": self.output,
        }


class CleanupState(str, Enum):
    NOTHING_TO_DO = "nothing_to_do"
    DRY_RUN = "dry_run"
    ABORTED = "aborted"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class CleanupReport:
    """
    Result of one CleanupExecutor pass. `orphans` is what was considered,
    `outcomes` holds one entry per orphan once deletion was attempted.
    """

    state: CleanupState
    orphans: List[OrphanRecord] = field(default_factory=list)
    outcomes: List[CleanupOutcome] = field(default_factory=list)
    error: Optional[str] = None
    timed_out: bool = False

    @property
    def succeeded(self) -> int:
        return sum(1 for o in self.outcomes if o.status is OutcomeStatus.SUCCESS)

    @property
    def failed(self) -> int:
        return sum(1 for o in self.outcomes if o.status is OutcomeStatus.ERROR)

    @property
    def pending(self) -> int:
        return sum(1 for o in self.outcomes if o.status is OutcomeStatus.PENDING)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "would_delete": [o.to_dict() for o in self.orphans] if self.state is CleanupState.DRY_RUN else [],
            "results": [o.to_dict() for o in self.outcomes],
            "summary": {
                "orphans": len(self.orphans),
                "succeeded": self.succeeded,
                "failed": self.failed,
                "pending": self.pending,
            },
            "error": self.error,
        }


@dataclass(frozen=True)
class ReconcileResult:
    hypervisor: HypervisorRecord
    control_plane: ControlPlaneInventory
    remote: List[RemoteInstance]
    orphans: List[OrphanRecord]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hypervisor": {"host_ip": self.hypervisor.host_ip, "hostname": self.hypervisor.hostname},
            "openstack_vms": [i.to_dict() for i in self.control_plane.instances],
            "remote_vms": [r.to_dict() for r in self.remote],
            "missing_vms": [o.to_dict() for o in self.orphans],
            "skipped_projects": [f.to_dict() for f in self.control_plane.failed_projects],
        }


class RunState(str, Enum):
    AUTHENTICATING = "authenticating"
    RESOLVING_HYPERVISOR = "resolving_hypervisor"
    FETCHING_INVENTORIES = "fetching_inventories"
    RECONCILING = "reconciling"
    REPORTING = "reporting"
    IDLE = "idle"
    CLEANING = "cleaning"
    DONE = "done"
    FAILED = "failed"


@dataclass
class RunResult:
    """
    Mutable record of one run, advanced by the orchestrator and handed to the
    reporter at the end whether the run succeeded or not.
    """

    started_at: str
    state: RunState = RunState.AUTHENTICATING
    finished_at: Optional[str] = None
    reconcile: Optional[ReconcileResult] = None
    cleanup: Optional[CleanupReport] = None
    failed_step: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "status": "failed" if self.state is RunState.FAILED else "ok",
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }
        if self.reconcile is not None:
            data.update(self.reconcile.to_dict())
        data["cleanup"] = self.cleanup.to_dict() if self.cleanup is not None else None
        if self.error:
            data["failed_step"] = self.failed_step
            data["error"] = self.error
        return data
