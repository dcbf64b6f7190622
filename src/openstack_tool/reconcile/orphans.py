from __future__ import annotations

import logging
from typing import Iterable, List, Optional, Sequence

from ..logging import get_logger
from ..schema import UNKNOWN_TENANT, ControlPlaneInstance, OrphanRecord, RemoteInstance


def find_orphans(
    control_plane_instances: Iterable[ControlPlaneInstance],
    remote_instances: Sequence[RemoteInstance],
    *,
    logger: Optional[logging.Logger] = None,
) -> List[OrphanRecord]:
    """
    Return the remote VMs that have no case-insensitive name match among the
    control plane's instance names, in remote input order.

    Only remote minus control plane is computed; control-plane entries missing
    on the hypervisor are not reported. Tenant is always "Unknown" since the
    control plane has no record of these VMs.
    """
    log = logger or get_logger(__name__)
    known = {i.instance_name.lower() for i in control_plane_instances}

    missing: List[OrphanRecord] = []
    for remote in remote_instances:
        if remote.name.lower() in known:
            continue
        log.debug("Adding missing VM: %s", remote.name)
        missing.append(OrphanRecord(instance_name=remote.name, status=remote.state, tenant_name=UNKNOWN_TENANT))
    log.debug("Found %d missing VMs", len(missing))
    return missing
