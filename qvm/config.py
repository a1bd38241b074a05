"""Settings loading and per-OS defaults for qvm."""

from __future__ import annotations

from pathlib import Path
from typing import Dict, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from qvm.constants import (
    COMMON_DEFAULTS,
    DEFAULT_LIMITS,
    DEFAULT_SETTINGS_PATH,
    DEFAULT_TIMEOUTS,
    LINUX_DEFAULTS,
    OS_TYPES,
    WINDOWS_DEFAULTS,
)
from qvm.exceptions import ManagerError, ValidationError
from qvm.models import Settings
from qvm.utils import get_env, log, parse_int_env

_TIMEOUT_FIELDS = {
    "shutdown": "shutdown_timeout",
    "lock": "lock_timeout",
    "lock_stale": "lock_stale_after",
    "socket": "socket_timeout",
    "registry_cache_ttl": "registry_cache_ttl",
}

_OS_DEFAULT_KEYS = set(LINUX_DEFAULTS) | set(COMMON_DEFAULTS)


def _section(data: Dict, key: str, path: Path) -> Dict:
    value = data.get(key) or {}
    if not isinstance(value, dict):
        raise ManagerError(f"Settings file {path}: '{key}' must be a mapping")
    return value


def _number(value, label: str, path: Path, integer: bool = False):
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ManagerError(f"Settings file {path}: '{label}' must be a number (got {value!r})")
    if integer and not isinstance(value, int):
        raise ManagerError(f"Settings file {path}: '{label}' must be an integer (got {value!r})")
    if value <= 0:
        raise ManagerError(f"Settings file {path}: '{label}' must be > 0 (got {value})")
    return value


def load_settings(config_path: Optional[Path] = None) -> Settings:
    """Merge built-in defaults, the optional YAML settings file and env overrides."""
    if config_path is None:
        config_path = DEFAULT_SETTINGS_PATH
    values: Dict[str, object] = dict(DEFAULT_LIMITS)
    for key, attr in _TIMEOUT_FIELDS.items():
        values[attr] = DEFAULT_TIMEOUTS[key]
    os_defaults: Dict[str, Dict[str, object]] = {}

    if config_path.exists():
        try:
            data = yaml.safe_load(config_path.read_text()) or {}
        except yaml.YAMLError as exc:
            raise ManagerError(f"Settings file {config_path} contains invalid YAML: {exc}")
        if not isinstance(data, dict):
            raise ManagerError(f"Settings file {config_path} must contain a YAML mapping")

        known = {"limits", "timeouts", "checks", "os_defaults"}
        for key in sorted(set(data) - known):
            log("WARN", f"Ignoring unknown settings section '{key}' in {config_path}")

        for key, value in _section(data, "limits", config_path).items():
            if key not in DEFAULT_LIMITS:
                log("WARN", f"Ignoring unknown limit '{key}' in {config_path}")
                continue
            values[key] = _number(value, f"limits.{key}", config_path, integer=True)

        for key, value in _section(data, "timeouts", config_path).items():
            if key not in _TIMEOUT_FIELDS:
                log("WARN", f"Ignoring unknown timeout '{key}' in {config_path}")
                continue
            values[_TIMEOUT_FIELDS[key]] = float(_number(value, f"timeouts.{key}", config_path))

        checks = _section(data, "checks", config_path)
        if "host_ports" in checks:
            if not isinstance(checks["host_ports"], bool):
                raise ManagerError(f"Settings file {config_path}: 'checks.host_ports' must be true or false")
            values["check_host_ports"] = checks["host_ports"]

        for os_type, table in _section(data, "os_defaults", config_path).items():
            if os_type not in OS_TYPES:
                log("WARN", f"Ignoring defaults for unknown OS type '{os_type}' in {config_path}")
                continue
            if not isinstance(table, dict):
                raise ManagerError(f"Settings file {config_path}: 'os_defaults.{os_type}' must be a mapping")
            unknown = set(table) - _OS_DEFAULT_KEYS
            for key in sorted(unknown):
                log("WARN", f"Ignoring unknown default '{os_type}.{key}' in {config_path}")
            os_defaults[os_type] = {k: v for k, v in table.items() if k not in unknown}
        log("DEBUG", f"Loaded settings from {config_path}")

    if get_env("QVM_MAX_VMS") is not None:
        values["max_vms"] = parse_int_env("QVM_MAX_VMS", "50")
    if get_env("QVM_LOCK_TIMEOUT") is not None:
        values["lock_timeout"] = float(parse_int_env("QVM_LOCK_TIMEOUT", "30"))
    if get_env("QVM_SHUTDOWN_TIMEOUT") is not None:
        values["shutdown_timeout"] = float(parse_int_env("QVM_SHUTDOWN_TIMEOUT", "30"))

    return Settings(os_defaults=os_defaults, **values)  # type: ignore[arg-type]


def os_defaults(os_type: str, settings: Optional[Settings] = None) -> Dict[str, object]:
    """Return the record defaults for a guest OS, with settings overrides applied."""
    if os_type not in OS_TYPES:
        raise ValidationError(f"Invalid os-type '{os_type}'. Must be 'linux' or 'windows'")
    base = WINDOWS_DEFAULTS if os_type == "windows" else LINUX_DEFAULTS
    merged: Dict[str, object] = dict(COMMON_DEFAULTS)
    merged.update(base)
    if settings is not None:
        merged.update(settings.os_defaults.get(os_type, {}))
    return merged
