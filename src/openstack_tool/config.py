from __future__ import annotations

import argparse
import json
import os
import warnings
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

from .util.serialization import sanitize_for_json

# --------
# Defaults
# --------
DEFAULT_TIMEOUT = 300
DEFAULT_SSH_PORT = 22
DEFAULT_WORKERS_PROJECTS = 10
MAX_WORKERS_PROJECTS = 10
DEFAULT_RETRY_ATTEMPTS = 3
DEFAULT_RETRY_DELAY = 1.0
DEFAULT_INVENTORY_COMMAND = (
    "export TERM=xterm; pvmctl vm list --display-fields LogicalPartition.name LogicalPartition.state"
)
DEFAULT_DELETE_COMMAND = "pvmctl LogicalPartition delete --object-id name={name}"
DEFAULT_MANAGEMENT_PATTERN = r"ltc.*-nova"
OUTPUT_FORMATS = {"table", "json"}
ALLOWED_CONFIG_KEYS = {
    "ssh_user",
    "ssh_password",
    "hypervisor_ip",
    "ssh_port",
    "dry_run",
    "output",
    "timeout",
    "verbose",
    "log_level",
    "json_logs",
    "cloud",
    "region",
    "workers_projects",
    "retry_attempts",
    "retry_delay",
    "strict_host_keys",
    "inventory_command",
    "delete_command",
    "management_pattern",
    "report_file",
}
BOOL_CONFIG_KEYS = {"dry_run", "verbose", "json_logs", "strict_host_keys"}
INT_CONFIG_KEYS = {"ssh_port", "timeout", "workers_projects", "retry_attempts"}
FLOAT_CONFIG_KEYS = {"retry_delay"}
PATH_CONFIG_KEYS = {"report_file"}
STR_CONFIG_KEYS = {
    "ssh_user",
    "ssh_password",
    "hypervisor_ip",
    "output",
    "log_level",
    "cloud",
    "region",
    "inventory_command",
    "delete_command",
    "management_pattern",
}


@dataclass(frozen=True)
class RunConfig:
    # Target
    ssh_user: Optional[str] = None
    ssh_password: Optional[str] = None
    hypervisor_ip: Optional[str] = None
    ssh_port: int = DEFAULT_SSH_PORT
    strict_host_keys: bool = False

    # Behaviour
    dry_run: bool = False
    output: str = "table"
    timeout: int = DEFAULT_TIMEOUT
    report_file: Optional[Path] = None

    # Logging
    verbose: bool = False
    log_level: str = "INFO"
    json_logs: bool = False

    # Control plane
    cloud: Optional[str] = None  # clouds.yaml entry; env auth when unset
    region: Optional[str] = None

    # Performance / resilience
    workers_projects: int = DEFAULT_WORKERS_PROJECTS
    retry_attempts: int = DEFAULT_RETRY_ATTEMPTS
    retry_delay: float = DEFAULT_RETRY_DELAY

    # Remote commands
    inventory_command: str = DEFAULT_INVENTORY_COMMAND
    delete_command: str = DEFAULT_DELETE_COMMAND
    management_pattern: str = DEFAULT_MANAGEMENT_PATTERN


def _parse_config_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    text = path.read_text(encoding="utf-8")
    try:
        if path.suffix.lower() in {".yaml", ".yml"}:
            data = yaml.safe_load(text) or {}
        elif path.suffix.lower() == ".json":
            data = json.loads(text)
        else:
            # Try YAML first then JSON
            try:
                data = yaml.safe_load(text) or {}
            except Exception:
                data = json.loads(text)
    except Exception as e:
        raise ValueError(f"Failed to parse config file {path}: {e}") from e
    if not isinstance(data, dict):
        raise ValueError("Top-level config must be an object")
    return data


def _env_str(name: str) -> Optional[str]:
    raw = os.getenv(name)
    if raw is None:
        return None
    raw = raw.strip()
    if not raw:
        return None
    return raw


def _env_bool(name: str) -> Optional[bool]:
    raw = os.getenv(name)
    if raw is None:
        return None
    raw = raw.strip().lower()
    if not raw:
        return None
    return raw in {"1", "true", "yes", "on"}


def _env_int(name: str) -> Optional[int]:
    raw = os.getenv(name)
    if raw is None:
        return None
    try:
        return int(raw)
    except Exception:
        return None


def _env_float(name: str) -> Optional[float]:
    raw = os.getenv(name)
    if raw is None:
        return None
    try:
        return float(raw)
    except Exception:
        return None


def _coerce_bool(key: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        raw = value.strip().lower()
        if raw in {"1", "true", "yes", "on"}:
            return True
        if raw in {"0", "false", "no", "off"}:
            return False
    raise ValueError(f"Config field '{key}' must be a boolean")


def _coerce_int(key: str, value: Any) -> int:
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip():
        try:
            return int(value)
        except Exception:
            pass
    raise ValueError(f"Config field '{key}' must be an integer")


def _coerce_float(key: str, value: Any) -> float:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    if isinstance(value, str) and value.strip():
        try:
            return float(value)
        except Exception:
            pass
    raise ValueError(f"Config field '{key}' must be a number")


def _normalize_config_file(data: Dict[str, Any]) -> Dict[str, Any]:
    unknown = sorted(set(data.keys()) - ALLOWED_CONFIG_KEYS)
    if unknown:
        warnings.warn(f"Unknown config keys ignored: {', '.join(unknown)}")
    normalized: Dict[str, Any] = {}
    for key, value in data.items():
        if key not in ALLOWED_CONFIG_KEYS:
            continue
        if value is None:
            normalized[key] = None
            continue
        if key in BOOL_CONFIG_KEYS:
            normalized[key] = _coerce_bool(key, value)
        elif key in INT_CONFIG_KEYS:
            normalized[key] = _coerce_int(key, value)
        elif key in FLOAT_CONFIG_KEYS:
            normalized[key] = _coerce_float(key, value)
        elif key in PATH_CONFIG_KEYS:
            if isinstance(value, (str, Path)):
                normalized[key] = value
            else:
                raise ValueError(f"Config field '{key}' must be a string path")
        elif key in STR_CONFIG_KEYS:
            if isinstance(value, str):
                normalized[key] = value
            else:
                raise ValueError(f"Config field '{key}' must be a string")
        else:
            normalized[key] = value
    output = normalized.get("output")
    if output is not None:
        output = str(output).lower()
        if output not in OUTPUT_FORMATS:
            raise ValueError(f"Config field 'output' must be one of: {', '.join(sorted(OUTPUT_FORMATS))}")
        normalized["output"] = output
    return _compact_dict(normalized)


def _compact_dict(data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Drop keys with None values so they don't override lower-precedence config.
    """
    return {k: v for k, v in data.items() if v is not None}


def _merge_dicts(a: Dict[str, Any], b: Dict[str, Any]) -> Dict[str, Any]:
    """
    Shallow merge: values in b override a.
    """
    merged = dict(a)
    merged.update(b)
    return merged


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="openstack-tool", description="OpenStack operations CLI")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # common flags builder
    def add_common(p: argparse.ArgumentParser) -> None:
        p.add_argument("--config", type=Path, help="Optional YAML/JSON config file")
        p.add_argument(
            "--json-logs",
            action=argparse.BooleanOptionalAction,
            default=None,
            help="Enable JSON logs",
        )
        p.add_argument("--log-level", default=None, help="Log level (INFO, DEBUG, ...)")
        p.add_argument("--verbose", action="store_true", default=None, help="Enable verbose (DEBUG) logging")
        p.add_argument("--cloud", default=None, help="Cloud name in clouds.yaml (default: OS_* environment)")
        p.add_argument("--region", default=None, help="Region name (default: OS_REGION_NAME)")
        p.add_argument(
            "--timeout",
            type=int,
            default=None,
            help=f"Timeout in seconds for the whole run (default {DEFAULT_TIMEOUT})",
        )

    # clean-nova-stale-vms
    p_clean = subparsers.add_parser("clean-nova-stale-vms", help="Clean stale VMs on a hypervisor")
    add_common(p_clean)
    p_clean.add_argument("--user", dest="ssh_user", default=None, help="SSH username")
    p_clean.add_argument("--password", dest="ssh_password", default=None, help="SSH password")
    p_clean.add_argument("--ip", dest="hypervisor_ip", default=None, help="Hypervisor IP address")
    p_clean.add_argument("--port", dest="ssh_port", type=int, default=None, help="SSH port (default 22)")
    p_clean.add_argument(
        "--dry-run",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Perform a dry run without deleting VMs",
    )
    p_clean.add_argument("--output", default=None, choices=sorted(OUTPUT_FORMATS), help="Output format")
    p_clean.add_argument(
        "--workers",
        dest="workers_projects",
        type=int,
        default=None,
        help=f"Max parallel project queries (default {DEFAULT_WORKERS_PROJECTS}, max {MAX_WORKERS_PROJECTS})",
    )
    p_clean.add_argument(
        "--retries",
        dest="retry_attempts",
        type=int,
        default=None,
        help=f"Attempts per control-plane or inventory call (default {DEFAULT_RETRY_ATTEMPTS})",
    )
    p_clean.add_argument(
        "--strict-host-keys",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Reject hypervisors whose SSH host key is not in known_hosts",
    )
    p_clean.add_argument("--report-file", type=Path, default=None, help="Also write the JSON report to this file")

    # validate-auth
    p_val = subparsers.add_parser("validate-auth", help="Validate control-plane authentication")
    add_common(p_val)

    # list-hypervisors
    p_lh = subparsers.add_parser("list-hypervisors", help="List hypervisors as ip,hostname")
    add_common(p_lh)

    return parser


def _resolve_log_level(verbose: bool, *layers: Dict[str, Any]) -> str:
    """
    Walk the layers from highest precedence down. Within one layer an
    explicit log_level beats verbose; an effective verbose selects DEBUG at
    the layer that set it.
    """
    for layer in reversed(layers):
        if layer.get("log_level"):
            return str(layer["log_level"]).upper()
        if verbose and "verbose" in layer:
            return "DEBUG"
    return "INFO"


def load_run_config(
    args: Optional[argparse.Namespace] = None,
    argv: Optional[list[str]] = None,
    subcommand: Optional[str] = None,
) -> Tuple[str, RunConfig]:
    """
    Build RunConfig by merging defaults, optional config file, env vars, and CLI args.
    Precedence (low -> high): defaults < config file < env < CLI.

    Returns:
      (command, RunConfig) where command is: clean-nova-stale-vms|validate-auth|list-hypervisors
    """
    parser = build_parser()
    ns = args if args is not None else parser.parse_args(argv)
    command = ns.command if subcommand is None else subcommand

    # defaults
    base: Dict[str, Any] = {
        "ssh_port": DEFAULT_SSH_PORT,
        "dry_run": False,
        "output": "table",
        "timeout": DEFAULT_TIMEOUT,
        "verbose": False,
        "log_level": None,
        "json_logs": False,
        "workers_projects": DEFAULT_WORKERS_PROJECTS,
        "retry_attempts": DEFAULT_RETRY_ATTEMPTS,
        "retry_delay": DEFAULT_RETRY_DELAY,
        "strict_host_keys": False,
        "inventory_command": DEFAULT_INVENTORY_COMMAND,
        "delete_command": DEFAULT_DELETE_COMMAND,
        "management_pattern": DEFAULT_MANAGEMENT_PATTERN,
    }

    # config file
    file_cfg: Dict[str, Any] = {}
    if getattr(ns, "config", None):
        file_cfg = _normalize_config_file(_parse_config_file(Path(ns.config)))

    # env
    env_cfg: Dict[str, Any] = _compact_dict(
        {
            "ssh_user": _env_str("OS_TOOL_SSH_USER"),
            "ssh_password": _env_str("OS_TOOL_SSH_PASSWORD"),
            "hypervisor_ip": _env_str("OS_TOOL_HYPERVISOR_IP"),
            "ssh_port": _env_int("OS_TOOL_SSH_PORT"),
            "dry_run": _env_bool("OS_TOOL_DRY_RUN"),
            "output": _env_str("OS_TOOL_OUTPUT"),
            "timeout": _env_int("OS_TOOL_TIMEOUT"),
            "verbose": _env_bool("OS_TOOL_VERBOSE"),
            "log_level": _env_str("OS_TOOL_LOG_LEVEL"),
            "json_logs": _env_bool("OS_TOOL_JSON_LOGS"),
            "cloud": _env_str("OS_CLOUD"),
            "region": _env_str("OS_REGION_NAME"),
            "workers_projects": _env_int("OS_TOOL_WORKERS_PROJECTS"),
            "retry_attempts": _env_int("OS_TOOL_RETRY_ATTEMPTS"),
            "retry_delay": _env_float("OS_TOOL_RETRY_DELAY"),
            "strict_host_keys": _env_bool("OS_TOOL_STRICT_HOST_KEYS"),
            "report_file": _env_str("OS_TOOL_REPORT_FILE"),
        }
    )

    # CLI
    cli_cfg: Dict[str, Any] = _compact_dict(
        {
            "ssh_user": getattr(ns, "ssh_user", None),
            "ssh_password": getattr(ns, "ssh_password", None),
            "hypervisor_ip": getattr(ns, "hypervisor_ip", None),
            "ssh_port": getattr(ns, "ssh_port", None),
            "dry_run": getattr(ns, "dry_run", None),
            "output": getattr(ns, "output", None),
            "timeout": getattr(ns, "timeout", None),
            "verbose": getattr(ns, "verbose", None),
            "log_level": getattr(ns, "log_level", None),
            "json_logs": getattr(ns, "json_logs", None),
            "cloud": getattr(ns, "cloud", None),
            "region": getattr(ns, "region", None),
            "workers_projects": getattr(ns, "workers_projects", None),
            "retry_attempts": getattr(ns, "retry_attempts", None),
            "strict_host_keys": getattr(ns, "strict_host_keys", None),
            "report_file": getattr(ns, "report_file", None),
        }
    )

    merged = _merge_dicts(base, _merge_dicts(file_cfg, _merge_dicts(env_cfg, cli_cfg)))

    output = str(merged.get("output") or "table").lower()
    if output not in OUTPUT_FORMATS:
        raise ValueError(f"Output format must be one of: {', '.join(sorted(OUTPUT_FORMATS))}")

    verbose = bool(merged["verbose"])
    log_level = _resolve_log_level(verbose, base, file_cfg, env_cfg, cli_cfg)
    workers_projects = int(merged["workers_projects"] or DEFAULT_WORKERS_PROJECTS)
    workers_projects = max(1, min(workers_projects, MAX_WORKERS_PROJECTS))
    report_file = Path(merged["report_file"]) if merged.get("report_file") else None

    cfg = RunConfig(
        ssh_user=merged.get("ssh_user"),
        ssh_password=merged.get("ssh_password"),
        hypervisor_ip=merged.get("hypervisor_ip"),
        ssh_port=int(merged["ssh_port"] or DEFAULT_SSH_PORT),
        strict_host_keys=bool(merged["strict_host_keys"]),
        dry_run=bool(merged["dry_run"]),
        output=output,
        timeout=int(merged["timeout"] if merged.get("timeout") is not None else DEFAULT_TIMEOUT),
        report_file=report_file,
        verbose=verbose,
        log_level=log_level,
        json_logs=bool(merged["json_logs"]),
        cloud=merged.get("cloud"),
        region=merged.get("region"),
        workers_projects=workers_projects,
        retry_attempts=max(1, int(merged["retry_attempts"] or DEFAULT_RETRY_ATTEMPTS)),
        retry_delay=float(merged["retry_delay"] if merged.get("retry_delay") is not None else DEFAULT_RETRY_DELAY),
        inventory_command=str(merged["inventory_command"]),
        delete_command=str(merged["delete_command"]),
        management_pattern=str(merged["management_pattern"]),
    )
    return command, cfg


def dump_config(cfg: RunConfig) -> Dict[str, Any]:
    return sanitize_for_json(
        {
            "ssh_user": cfg.ssh_user,
            "ssh_password": cfg.ssh_password,
            "hypervisor_ip": cfg.hypervisor_ip,
            "ssh_port": cfg.ssh_port,
            "strict_host_keys": cfg.strict_host_keys,
            "dry_run": cfg.dry_run,
            "output": cfg.output,
            "timeout": cfg.timeout,
            "report_file": str(cfg.report_file) if cfg.report_file else None,
            "verbose": cfg.verbose,
            "log_level": cfg.log_level,
            "json_logs": cfg.json_logs,
            "cloud": cfg.cloud,
            "region": cfg.region,
            "workers_projects": cfg.workers_projects,
            "retry_attempts": cfg.retry_attempts,
            "retry_delay": cfg.retry_delay,
            "inventory_command": cfg.inventory_command,
            "delete_command": cfg.delete_command,
            "management_pattern": cfg.management_pattern,
        }
    )
