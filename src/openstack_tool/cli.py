from __future__ import annotations

import sys
from typing import Any, Optional, Tuple

from rich.console import Console

from .auth.providers import AuthContext, AuthError, connect, resolve_auth, verify_identity
from .cleanup.executor import console_prompt
from .config import RunConfig, dump_config, load_run_config
from .logging import LogConfig, get_logger, setup_logging
from .openstack.clients import ComputeDirectory, OpenStackComputeDirectory
from .openstack.hypervisors import list_hypervisors
from .orchestrator import run
from .remote.shell import ParamikoShell
from .report import make_reporter
from .util.errors import AuthResolutionError, ConfigError, as_exit_code
from .util.rich_progress import RunProgress
from .util.time import Deadline

LOG = get_logger(__name__)


def _authenticate(cfg: RunConfig, api_timeout: Optional[float] = None) -> Tuple[AuthContext, Any]:
    ctx = resolve_auth(cfg.cloud, cfg.region)
    try:
        return ctx, connect(ctx, api_timeout=api_timeout)
    except AuthError as e:
        raise AuthResolutionError(str(e)) from e


def _directory_factory(ctx: AuthContext, api_timeout: Optional[float]) -> ComputeDirectory:
    return OpenStackComputeDirectory(connect(ctx, api_timeout=api_timeout))


def cmd_clean_stale_vms(cfg: RunConfig) -> int:
    json_output = cfg.output == "json"
    # In JSON mode stdout carries one document only; the prompt goes to stderr.
    prompt_console = Console(stderr=json_output)
    progress = RunProgress(enabled=not json_output and not cfg.json_logs)
    run(
        cfg,
        _directory_factory,
        ParamikoShell(strict_host_keys=cfg.strict_host_keys),
        console_prompt(prompt_console),
        make_reporter(cfg.output, report_file=cfg.report_file),
        progress=progress,
    )
    return 0


def cmd_validate_auth(cfg: RunConfig) -> int:
    ctx, conn = _authenticate(cfg, api_timeout=cfg.timeout)
    try:
        endpoint = verify_identity(conn)
    except AuthError as e:
        raise AuthResolutionError(str(e)) from e
    LOG.info("Authentication validated", extra={"method": ctx.method, "cloud": ctx.cloud, "region": ctx.region})
    # Print to stdout a concise success message (no secrets)
    print(f"OK: authentication validated; region {ctx.region}; identity endpoint: {endpoint}")
    return 0


def cmd_list_hypervisors(cfg: RunConfig) -> int:
    _, conn = _authenticate(cfg, api_timeout=cfg.timeout)
    hypervisors = list_hypervisors(
        OpenStackComputeDirectory(conn),
        attempts=cfg.retry_attempts,
        delay=cfg.retry_delay,
        deadline=Deadline(cfg.timeout),
        logger=LOG,
    )
    for hv in hypervisors:
        print(f"{hv.host_ip},{hv.hostname}")
    return 0


def main() -> None:
    try:
        command, cfg = load_run_config()
        setup_logging(LogConfig(level=cfg.log_level, json_logs=cfg.json_logs))
        LOG.debug("Effective configuration", extra={"command": command, "config": dump_config(cfg)})

        if command == "clean-nova-stale-vms":
            code = cmd_clean_stale_vms(cfg)
        elif command == "validate-auth":
            code = cmd_validate_auth(cfg)
        elif command == "list-hypervisors":
            code = cmd_list_hypervisors(cfg)
        else:
            raise ConfigError(f"Unknown command: {command}")

        sys.exit(code)
    except SystemExit:
        raise
    except BrokenPipeError:
        # Common when users pipe to `head` or similar tools.
        sys.exit(0)
    except KeyboardInterrupt:
        print("Interrupted", file=sys.stderr)
        sys.exit(130)
    except Exception as e:
        try:
            setup_logging(LogConfig())  # ensure something is configured
        except Exception:
            pass
        print(f"Error: {e}", file=sys.stderr)
        LOG.error("Execution failed", extra={"error": str(e)})
        sys.exit(as_exit_code(e))


if __name__ == "__main__":
    main()
