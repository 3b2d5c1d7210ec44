"""Engine configuration management.

Configuration is loaded from a YAML file with environment overrides:
- --config PATH: explicit file (must exist)
- $PVE_DSC_CONFIG: file named by the environment
- /etc/pve-dsc/config.yaml: system default (optional)

Every scalar field can then be overridden with PVE_DSC_<FIELD>, e.g.
PVE_DSC_LOCK_TIMEOUT=120. Timeouts and lock behaviour are policy, so they
live here rather than in the code that uses them.
"""

import os
import socket
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Optional

import yaml

ENV_PREFIX = 'PVE_DSC_'
DEFAULT_CONFIG_FILE = Path('/etc/pve-dsc/config.yaml')


class ConfigError(Exception):
    """Configuration error."""


@dataclass
class EngineConfig:
    """Policy and connection settings for one reconciliation run.

    Attributes:
        node: PVE node name whose guests are reconciled (default: local hostname)
        ssh_host: Run host commands over SSH on this host ('' = run locally)
        ssh_user: SSH user when ssh_host is set
        lock_file: Path of the process-wide advisory lock
        lock_timeout: Seconds to wait for the lock before giving up
        read_timeout: Bound for inventory/status queries
        create_timeout: Bound for pct create / qm create / qm clone
        set_timeout: Bound for set/resize reconfiguration calls
        start_timeout: Bound for start calls
        graceful_stop_timeout: Seconds a guest gets to shut down cleanly
        force_stop_timeout: Bound for the forced stop fallback
        ignore_templates: Leave PVE templates out of the inventory
        ignore_ids: Guest ids that are never classified (e.g. infra guests)
    """
    node: str = field(default_factory=socket.gethostname)
    ssh_host: str = ''
    ssh_user: str = 'root'
    lock_file: Path = Path('/run/lock/pve-dsc.lock')
    lock_timeout: int = 60
    read_timeout: int = 30
    create_timeout: int = 600
    set_timeout: int = 60
    start_timeout: int = 120
    graceful_stop_timeout: int = 60
    force_stop_timeout: int = 60
    ignore_templates: bool = True
    ignore_ids: list[int] = field(default_factory=list)
    source_path: Optional[Path] = field(default=None, repr=False)

    def __post_init__(self):
        if isinstance(self.lock_file, str):
            self.lock_file = Path(self.lock_file)
        self.validate()

    def validate(self) -> None:
        """Check value ranges.

        Raises:
            ConfigError: If any value is out of range
        """
        if not self.node:
            raise ConfigError("node must not be empty")
        for name in ('lock_timeout', 'read_timeout', 'create_timeout', 'set_timeout',
                     'start_timeout', 'graceful_stop_timeout', 'force_stop_timeout'):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                raise ConfigError(f"{name} must be a positive integer, got {value!r}")
        for vmid in self.ignore_ids:
            if isinstance(vmid, bool) or not isinstance(vmid, int) or vmid <= 0:
                raise ConfigError(f"ignore_ids entries must be positive integers, got {vmid!r}")

    @property
    def is_remote(self) -> bool:
        """True when host commands go over SSH."""
        return bool(self.ssh_host)

    @classmethod
    def from_dict(cls, data: dict, source_path: Optional[Path] = None) -> 'EngineConfig':
        """Create EngineConfig from a dictionary, rejecting unknown keys."""
        known = {f.name for f in fields(cls) if f.name != 'source_path'}
        unknown = sorted(set(data) - known)
        if unknown:
            where = f" in {source_path}" if source_path else ''
            raise ConfigError(f"Unknown config key(s){where}: {', '.join(unknown)}")
        return cls(source_path=source_path, **data)


def _parse_yaml(path: Path) -> dict:
    """Parse a YAML file and return contents."""
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except OSError as e:
        raise ConfigError(f"Cannot read config file {path}: {e}")
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in config file {path}: {e}")
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must be a YAML object (dict)")
    return data


def _coerce_env(name: str, raw: str, current: Any) -> Any:
    """Convert an environment string to the type of the field's current value."""
    if isinstance(current, bool):
        lowered = raw.strip().lower()
        if lowered in ('1', 'true', 'yes', 'on'):
            return True
        if lowered in ('0', 'false', 'no', 'off'):
            return False
        raise ConfigError(f"{ENV_PREFIX}{name.upper()} must be a boolean, got {raw!r}")
    if isinstance(current, int):
        try:
            return int(raw)
        except ValueError:
            raise ConfigError(f"{ENV_PREFIX}{name.upper()} must be an integer, got {raw!r}")
    if isinstance(current, list):
        try:
            return [int(part) for part in raw.replace(',', ' ').split()]
        except ValueError:
            raise ConfigError(f"{ENV_PREFIX}{name.upper()} must be a list of integers, got {raw!r}")
    if isinstance(current, Path):
        return Path(raw)
    return raw


def resolve_config_path(path: Optional[str] = None, environ: Optional[dict] = None) -> Optional[Path]:
    """Find the config file to load.

    Resolution order:
    1. Explicit path (must exist)
    2. $PVE_DSC_CONFIG environment variable (must exist)
    3. /etc/pve-dsc/config.yaml (optional)

    Returns:
        Path to load, or None to use built-in defaults
    """
    if path:
        explicit = Path(path)
        if not explicit.exists():
            raise ConfigError(f"Config file not found: {explicit}")
        return explicit

    environ = os.environ if environ is None else environ
    if env_path := environ.get(f'{ENV_PREFIX}CONFIG'):
        env_file = Path(env_path)
        if not env_file.exists():
            raise ConfigError(f"{ENV_PREFIX}CONFIG={env_path} does not exist")
        return env_file

    if DEFAULT_CONFIG_FILE.exists():
        return DEFAULT_CONFIG_FILE

    return None


def load_engine_config(path: Optional[str] = None, environ: Optional[dict] = None) -> EngineConfig:
    """Load engine configuration from file and environment.

    Args:
        path: Optional explicit config file
        environ: Environment mapping (default: os.environ)

    Returns:
        Validated EngineConfig

    Raises:
        ConfigError: If the file is unreadable or any value is invalid
    """
    environ = os.environ if environ is None else environ
    config_path = resolve_config_path(path, environ)
    data = _parse_yaml(config_path) if config_path else {}

    # Environment overrides: PVE_DSC_<FIELD>
    defaults = EngineConfig.from_dict(data, source_path=config_path)
    for f in fields(EngineConfig):
        if f.name in ('source_path',):
            continue
        key = f'{ENV_PREFIX}{f.name.upper()}'
        if key in environ:
            data[f.name] = _coerce_env(f.name, environ[key], getattr(defaults, f.name))

    return EngineConfig.from_dict(data, source_path=config_path)
