from __future__ import annotations

from typing import Any, List, Optional, Protocol, runtime_checkable

from ..schema import HypervisorRecord, ProjectRecord, ServerRecord
from ..util.errors import map_openstack_error


@runtime_checkable
class ComputeDirectory(Protocol):
    """
    Read-only view of the control plane needed by the stale VM reconciliation.
    Implementations raise FetchError (or let SDK errors through) on failure.
    """

    def list_hypervisors(self) -> List[HypervisorRecord]:
        ...

    def list_projects(self) -> List[ProjectRecord]:
        ...

    def list_instances(self, project_id: str) -> List[ServerRecord]:
        ...


def _attr(obj: Any, name: str, default: Any = None) -> Any:
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


class OpenStackComputeDirectory:
    """
    ComputeDirectory backed by an openstacksdk Connection. The SDK proxies
    paginate internally; this class only maps resources to records.
    """

    def __init__(self, conn: Any) -> None:
        self._conn = conn

    def list_hypervisors(self) -> List[HypervisorRecord]:
        try:
            hypervisors = list(self._conn.compute.hypervisors(details=True))
        except Exception as e:
            mapped = map_openstack_error(e, "failed to list hypervisors")
            if mapped:
                raise mapped from e
            raise
        out: List[HypervisorRecord] = []
        for hv in hypervisors:
            # openstacksdk exposes hypervisor_hostname as `name`
            hostname = _attr(hv, "name") or _attr(hv, "hypervisor_hostname") or ""
            out.append(HypervisorRecord(host_ip=str(_attr(hv, "host_ip") or ""), hostname=str(hostname)))
        return out

    def list_projects(self) -> List[ProjectRecord]:
        try:
            projects = list(self._conn.identity.projects())
        except Exception as e:
            mapped = map_openstack_error(e, "failed to list projects")
            if mapped:
                raise mapped from e
            raise
        return [ProjectRecord(id=str(_attr(p, "id")), name=str(_attr(p, "name") or "")) for p in projects]

    def list_instances(self, project_id: str) -> List[ServerRecord]:
        try:
            servers = list(self._conn.compute.servers(details=True, all_projects=True, project_id=project_id))
        except Exception as e:
            mapped = map_openstack_error(e, f"failed to list servers for project {project_id}")
            if mapped:
                raise mapped from e
            raise
        return [
            ServerRecord(
                name=str(_attr(s, "name") or ""),
                instance_name=_attr(s, "instance_name") or None,
                hypervisor_hostname=_attr(s, "hypervisor_hostname") or None,
                status=str(_attr(s, "status") or ""),
            )
            for s in servers
        ]


def find_hypervisor(hypervisors: List[HypervisorRecord], host_ip: str) -> Optional[HypervisorRecord]:
    """Exact IP-string match against the hypervisor catalog; first match wins."""
    for hv in hypervisors:
        if hv.host_ip == host_ip:
            return hv
    return None
