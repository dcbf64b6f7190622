from __future__ import annotations

import logging
from typing import Callable, List, Optional

from ..config import DEFAULT_RETRY_ATTEMPTS, DEFAULT_RETRY_DELAY, DEFAULT_WORKERS_PROJECTS, MAX_WORKERS_PROJECTS
from ..logging import get_logger
from ..schema import ControlPlaneInstance, ControlPlaneInventory, ProjectFailure, ProjectRecord
from ..util.concurrency import UnitResult, parallel_map_results
from ..util.errors import FetchError, PartialFetchError, RunTimeoutError, ToolError
from ..util.retry import with_retry
from ..util.time import Deadline
from .clients import ComputeDirectory


class ControlPlaneInventoryReader:
    """
    Collects the control plane's view of the instances living on one hypervisor.

    Projects are listed once (fatal on failure); each project's servers are then
    listed on a bounded pool. A project that cannot be listed is skipped and
    recorded as a ProjectFailure so the caller can report it; it never aborts
    the whole listing.
    """

    def __init__(
        self,
        directory: ComputeDirectory,
        *,
        max_workers: int = DEFAULT_WORKERS_PROJECTS,
        attempts: int = DEFAULT_RETRY_ATTEMPTS,
        delay: float = DEFAULT_RETRY_DELAY,
        deadline: Optional[Deadline] = None,
        logger: Optional[logging.Logger] = None,
        on_project_done: Optional[Callable[[ProjectRecord, bool], None]] = None,
    ) -> None:
        self._directory = directory
        self._max_workers = max(1, min(max_workers, MAX_WORKERS_PROJECTS))
        self._attempts = attempts
        self._delay = delay
        self._deadline = deadline
        self._log = logger or get_logger(__name__)
        self._on_project_done = on_project_done

    def list_projects(self) -> List[ProjectRecord]:
        try:
            return with_retry(
                self._directory.list_projects,
                attempts=self._attempts,
                delay=self._delay,
                deadline=self._deadline,
                what="listing projects",
                logger=self._log,
            )
        except ToolError:
            raise
        except Exception as e:
            raise FetchError(f"error fetching projects: {e}") from e

    def _instances_for_project(self, project: ProjectRecord, hypervisor_hostname: str) -> List[ControlPlaneInstance]:
        target = hypervisor_hostname.lower()
        servers = with_retry(
            lambda: self._directory.list_instances(project.id),
            attempts=self._attempts,
            delay=self._delay,
            deadline=self._deadline,
            what=f"listing servers of project {project.name}",
            logger=self._log,
        )
        kept: List[ControlPlaneInstance] = []
        for server in servers:
            if (server.hypervisor_hostname or "").lower() != target:
                continue
            if not server.instance_name:
                self._log.warning(
                    "Server %s missing OS-EXT-SRV-ATTR:instance_name; cannot match it on the hypervisor",
                    server.name,
                    extra={"project": project.name},
                )
                continue
            kept.append(ControlPlaneInstance(instance_name=server.instance_name, tenant_name=project.name))
        self._log.debug("Fetched %d VMs for project %s", len(kept), project.name)
        return kept

    def list_instances_on_hypervisor(self, hypervisor_hostname: str) -> ControlPlaneInventory:
        projects = self.list_projects()
        self._log.debug("Fetched %d projects", len(projects))

        def _done(unit: UnitResult[ProjectRecord, List[ControlPlaneInstance]]) -> None:
            if self._on_project_done is not None:
                self._on_project_done(unit.item, unit.ok)

        results = parallel_map_results(
            lambda project: self._instances_for_project(project, hypervisor_hostname),
            projects,
            max_workers=self._max_workers,
            deadline=self._deadline,
            on_done=_done,
        )

        instances: List[ControlPlaneInstance] = []
        failures: List[ProjectFailure] = []
        for unit in results:
            if unit.ok:
                instances.extend(unit.value or [])
                continue
            if isinstance(unit.error, RunTimeoutError):
                raise unit.error
            partial = PartialFetchError(unit.item.name, str(unit.error))
            self._log.warning(
                "Error fetching VMs for %s; project skipped",
                partial,
                extra={"project": unit.item.name, "project_id": unit.item.id},
            )
            failures.append(ProjectFailure(project=unit.item, error=str(unit.error)))

        self._log.debug(
            "Total OpenStack VMs fetched: %d (%d projects skipped)",
            len(instances),
            len(failures),
        )
        return ControlPlaneInventory(instances=instances, failed_projects=failures, total_projects=len(projects))
