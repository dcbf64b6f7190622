from __future__ import annotations

import socket
from enum import IntEnum
from typing import Optional


class ExitCode(IntEnum):
    OK = 0
    CONFIG_ERROR = 2
    AUTH_ERROR = 3
    OPENSTACK_ERROR = 4
    REMOTE_ERROR = 5
    TIMEOUT = 6
    RUNTIME_ERROR = 7


class ToolError(Exception):
    """Base error for the stale VM cleanup pipeline."""


class ConfigError(ToolError):
    """Raised for configuration, environment or argument issues."""


class AuthResolutionError(ToolError):
    """Raised when control-plane authentication or identity setup fails."""


class ResolutionError(ToolError):
    """Raised when no hypervisor matches the requested IP."""


class FetchError(ToolError):
    """Raised when an inventory cannot be fetched at all."""


class PartialFetchError(ToolError):
    """Raised for a single project whose instances could not be listed. Never fatal."""

    def __init__(self, project_name: str, message: str) -> None:
        super().__init__(f"project {project_name}: {message}")
        self.project_name = project_name


class RemoteConnectionError(ToolError):
    """Raised when an SSH connection to a hypervisor cannot be established or drops."""


class RemoteCommandError(ToolError):
    """Raised when a remote command exits non-zero or its session cannot be opened."""

    def __init__(self, message: str, *, exit_status: Optional[int] = None, output: str = "") -> None:
        super().__init__(message)
        self.exit_status = exit_status
        self.output = output


class DeletionError(RemoteCommandError):
    """Raised for a single VM whose deletion failed."""


class RunTimeoutError(ToolError):
    """Raised when the run deadline expires at a suspension point."""


class StepFailed(ToolError):
    """Wraps a fatal error with the run step that produced it."""

    def __init__(self, step: str, cause: BaseException) -> None:
        super().__init__(f"{step}: {cause}")
        self.step = step
        self.cause = cause


def as_exit_code(exc: BaseException) -> int:
    if isinstance(exc, StepFailed):
        return as_exit_code(exc.cause)
    if isinstance(exc, (ConfigError, ValueError)):
        return int(ExitCode.CONFIG_ERROR)
    if isinstance(exc, AuthResolutionError):
        return int(ExitCode.AUTH_ERROR)
    if isinstance(exc, (ResolutionError, FetchError)):
        return int(ExitCode.OPENSTACK_ERROR)
    if isinstance(exc, (RemoteConnectionError, RemoteCommandError)):
        return int(ExitCode.REMOTE_ERROR)
    if isinstance(exc, RunTimeoutError):
        return int(ExitCode.TIMEOUT)
    if isinstance(exc, ToolError):
        return int(ExitCode.RUNTIME_ERROR)
    return 1


def _openstack_error_types() -> tuple[type[BaseException], ...]:
    from keystoneauth1.exceptions import ClientException
    from openstack.exceptions import SDKException

    return (SDKException, ClientException)


def is_openstack_error(exc: BaseException) -> bool:
    """
    Return True if the exception looks like an openstacksdk or keystoneauth error.
    """
    if isinstance(exc, _openstack_error_types()):
        return True
    module = exc.__class__.__module__
    return module.startswith("openstack.") or module.startswith("keystoneauth1.")


def map_openstack_error(exc: BaseException, context: str) -> FetchError | None:
    """
    Wrap SDK errors with FetchError for consistent exit codes.
    """
    if not is_openstack_error(exc):
        return None
    return FetchError(f"{context}: {exc}")


def is_ssh_error(exc: BaseException) -> bool:
    import paramiko

    if isinstance(exc, (paramiko.SSHException, socket.error, EOFError)):
        return True
    return exc.__class__.__module__.startswith("paramiko.")


def map_ssh_error(exc: BaseException, context: str) -> ToolError | None:
    """
    Wrap paramiko/socket errors. Timeouts map to RunTimeoutError, the rest to
    RemoteConnectionError.
    """
    if isinstance(exc, socket.timeout):
        return RunTimeoutError(f"{context}: timed out")
    if not is_ssh_error(exc):
        return None
    return RemoteConnectionError(f"{context}: {exc}")
