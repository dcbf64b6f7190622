from __future__ import annotations

import logging
from typing import List, Optional

from ..schema import HypervisorRecord
from ..util.errors import FetchError, ResolutionError, ToolError
from ..util.retry import DEFAULT_ATTEMPTS, DEFAULT_DELAY, with_retry
from ..util.time import Deadline
from .clients import ComputeDirectory, find_hypervisor


def list_hypervisors(
    directory: ComputeDirectory,
    *,
    attempts: int = DEFAULT_ATTEMPTS,
    delay: float = DEFAULT_DELAY,
    deadline: Optional[Deadline] = None,
    logger: Optional[logging.Logger] = None,
) -> List[HypervisorRecord]:
    """
    Return the hypervisor catalog, retrying transient failures.
    """
    try:
        return with_retry(
            directory.list_hypervisors,
            attempts=attempts,
            delay=delay,
            deadline=deadline,
            what="listing hypervisors",
            logger=logger,
        )
    except ToolError:
        raise
    except Exception as e:
        raise FetchError(f"failed to list hypervisors: {e}") from e


def resolve_hypervisor(hypervisors: List[HypervisorRecord], host_ip: str) -> HypervisorRecord:
    hv = find_hypervisor(hypervisors, host_ip)
    if hv is None or not hv.hostname:
        raise ResolutionError(f"no matching hypervisor found for IP: {host_ip}")
    return hv
