"""Manifest loading and validation for host reconciliation.

A manifest is the desired state of one PVE node: a sequence of resource
objects, each a container or virtual machine keyed by its numeric id.

    - kind: container
      id: 100
      hostname: web01
      template: local:vztmpl/debian-12-standard_12.7-1_amd64.tar.zst
      memory: 1024
      cores: 2
      network: name=eth0,bridge=vmbr0,ip=dhcp
      storage: local-lvm:8
      power: running

The top level may also be a mapping with a ``resources`` key. JSON and YAML
are both accepted. The engine never writes the manifest.

Validation collects every malformed entry instead of stopping at the first,
so one report shows the operator everything that needs fixing.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from config import ConfigError

logger = logging.getLogger(__name__)

KIND_CONTAINER = 'container'
KIND_VM = 'virtualMachine'
KINDS = (KIND_CONTAINER, KIND_VM)

POWER_RUNNING = 'running'
POWER_STOPPED = 'stopped'
POWER_STATES = (POWER_RUNNING, POWER_STOPPED)

# Manifest keys in serialization order; aliases map onto them
FIELDS = ('kind', 'id', 'hostname', 'template', 'memory', 'cores', 'network', 'storage', 'power')
ALIASES = {
    'memoryMB': 'memory',
    'networkSpec': 'network',
    'storageSpec': 'storage',
    'desiredPower': 'power',
}

STORAGE_RE = re.compile(r'^(?P<pool>[A-Za-z0-9][A-Za-z0-9._-]*):(?P<size>[1-9]\d*)$')


class ManifestError(ConfigError):
    """Manifest could not be read, or contains invalid entries.

    Attributes:
        errors: One message per malformed entry (may be empty for
            file-level problems, which are described by the message)
    """

    def __init__(self, message: str, errors: Optional[list[str]] = None):
        super().__init__(message)
        self.errors = errors or []


def parse_storage(value: Optional[str]) -> Optional[tuple[str, int]]:
    """Split '<pool>:<sizeGB>' into (pool, size). Returns None if malformed."""
    if not value:
        return None
    match = STORAGE_RE.match(value)
    if not match:
        return None
    return match.group('pool'), int(match.group('size'))


@dataclass
class ResourceSpec:
    """Desired state of one guest.

    Attributes:
        kind: 'container' or 'virtualMachine'
        id: PVE vmid, the join key with host inventory
        hostname: Container hostname / VM name
        template: Creation source (ostemplate, disk image, or VM template id)
        memory: Memory in MB
        cores: CPU cores
        network: net0 option string passed through to the host
        storage: Root disk as '<pool>:<sizeGB>'
        power: 'running' or 'stopped'
    """
    kind: str
    id: int
    hostname: str
    memory: int
    cores: int
    template: Optional[str] = None
    network: Optional[str] = None
    storage: Optional[str] = None
    power: str = POWER_RUNNING

    @property
    def is_container(self) -> bool:
        return self.kind == KIND_CONTAINER

    @property
    def label(self) -> str:
        """Short human label, e.g. 'container 100 (web01)'."""
        return f"{self.kind} {self.id} ({self.hostname})"

    def to_dict(self) -> dict:
        """Convert to manifest-shaped dictionary, omitting unset fields."""
        d: dict[str, Any] = {}
        for name in FIELDS:
            value = getattr(self, name)
            if value is not None:
                d[name] = value
        return d


@dataclass
class Manifest:
    """A parsed manifest.

    Attributes:
        resources: Valid entries, in manifest order
        errors: One message per invalid entry
        claimed_ids: Ids named by invalid entries (duplicates included).
            Host guests with these ids are the subject of an error, so they
            are neither managed nor foreign in this run.
        source_path: Where the manifest was loaded from
    """
    resources: list[ResourceSpec] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    claimed_ids: set[int] = field(default_factory=set)
    source_path: Optional[Path] = None

    @property
    def is_valid(self) -> bool:
        return not self.errors


def _parse_positive_int(value: Any) -> Optional[int]:
    """Accept ints and digit strings; reject bools, floats, zero and negatives."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value > 0 else None
    if isinstance(value, str) and value.strip().isdigit():
        parsed = int(value.strip())
        return parsed if parsed > 0 else None
    return None


def _optional_str(entry: dict, key: str, problems: list[str]) -> Optional[str]:
    value = entry.get(key)
    if value is None:
        return None
    if not isinstance(value, str) or not value.strip():
        problems.append(f"{key} must be a non-empty string")
        return None
    return value.strip()


def _validate_entry(raw: Any) -> tuple[Optional[ResourceSpec], Optional[int], list[str]]:
    """Validate one manifest entry.

    Returns:
        (spec, vmid, problems): spec is None when any problem was found;
        vmid is the parsed id (if parseable) so duplicates can be tracked
        even for otherwise-invalid entries.
    """
    if not isinstance(raw, dict):
        return None, None, [f"entry must be an object, got {type(raw).__name__}"]

    problems: list[str] = []
    entry: dict[str, Any] = {}
    for key, value in raw.items():
        canonical = ALIASES.get(key, key)
        if canonical not in FIELDS:
            problems.append(f"unknown field '{key}'")
            continue
        if canonical in entry:
            problems.append(f"field '{canonical}' given more than once (via alias '{key}')")
            continue
        entry[canonical] = value

    kind = entry.get('kind')
    if kind not in KINDS:
        problems.append(f"kind must be one of {', '.join(KINDS)}, got {kind!r}")

    vmid = _parse_positive_int(entry.get('id'))
    if vmid is None:
        problems.append(f"id must be a positive integer, got {entry.get('id')!r}")

    hostname = entry.get('hostname')
    if not isinstance(hostname, str) or not hostname.strip():
        problems.append("hostname is required")

    memory = _parse_positive_int(entry.get('memory'))
    if memory is None:
        problems.append(f"memory must be a positive integer (MB), got {entry.get('memory')!r}")

    cores = _parse_positive_int(entry.get('cores'))
    if cores is None:
        problems.append(f"cores must be a positive integer, got {entry.get('cores')!r}")

    power = entry.get('power', POWER_RUNNING)
    if power is None:
        power = POWER_RUNNING
    if power not in POWER_STATES:
        problems.append(f"power must be one of {', '.join(POWER_STATES)}, got {power!r}")

    template = entry.get('template')
    if isinstance(template, int) and not isinstance(template, bool):
        template = str(template)  # VM template id written as a bare number
        entry['template'] = template
    template = _optional_str(entry, 'template', problems)
    network = _optional_str(entry, 'network', problems)
    storage = _optional_str(entry, 'storage', problems)
    if storage is not None and parse_storage(storage) is None:
        problems.append(f"storage must look like '<pool>:<sizeGB>', got {storage!r}")

    if problems:
        return None, vmid, problems

    assert vmid is not None and memory is not None and cores is not None
    return ResourceSpec(
        kind=kind,
        id=vmid,
        hostname=hostname.strip(),
        template=template,
        memory=memory,
        cores=cores,
        network=network,
        storage=storage,
        power=power,
    ), vmid, []


def parse_manifest(data: Any, source_path: Optional[Path] = None) -> Manifest:
    """Validate manifest data and build a Manifest.

    Entry-level problems never raise: they are collected into
    Manifest.errors so the caller can report them together with anything
    else the run finds.

    Args:
        data: Parsed document (list of entries, or dict with 'resources')
        source_path: Optional source path for messages

    Returns:
        Manifest with valid resources and per-entry errors

    Raises:
        ManifestError: If the document itself has the wrong shape
    """
    if isinstance(data, dict):
        if set(data) != {'resources'}:
            raise ManifestError("Manifest object must contain only a 'resources' list")
        data = data['resources']
    if data is None:
        data = []
    if not isinstance(data, list):
        raise ManifestError(f"Manifest must be a list of resources, got {type(data).__name__}")

    manifest = Manifest(source_path=source_path)
    candidates: list[tuple[int, ResourceSpec]] = []
    seen: dict[int, int] = {}

    for index, raw in enumerate(data):
        spec, vmid, problems = _validate_entry(raw)
        where = f"entry {index}" + (f" (id {vmid})" if vmid is not None else '')
        for problem in problems:
            manifest.errors.append(f"{where}: {problem}")

        if vmid is None:
            continue
        if vmid in seen:
            manifest.errors.append(
                f"{where}: duplicate id {vmid} (first defined at entry {seen[vmid]})"
            )
            manifest.claimed_ids.add(vmid)
            continue
        seen[vmid] = index
        if spec is None:
            manifest.claimed_ids.add(vmid)
        else:
            candidates.append((index, spec))

    # A duplicated id withdraws every entry carrying it: neither copy wins
    manifest.resources = [spec for _, spec in candidates if spec.id not in manifest.claimed_ids]

    if manifest.errors:
        logger.debug(f"Manifest has {len(manifest.errors)} error(s)")
    return manifest


def load_manifest(path: str | Path) -> Manifest:
    """Load and validate a manifest file.

    Files ending in .json are parsed as JSON; anything else as YAML (which
    also accepts JSON documents).

    Args:
        path: Path to manifest file

    Returns:
        Manifest instance (check .errors)

    Raises:
        ManifestError: If the file is missing, unreadable, or not a list
    """
    path = Path(path)
    if not path.exists():
        raise ManifestError(f"Manifest file not found: {path}")

    try:
        with open(path, encoding='utf-8') as f:
            if path.suffix == '.json':
                data = json.load(f)
            else:
                data = yaml.safe_load(f)
    except OSError as e:
        raise ManifestError(f"Cannot read manifest {path}: {e}")
    except json.JSONDecodeError as e:
        raise ManifestError(f"Invalid JSON in manifest {path}: {e}")
    except yaml.YAMLError as e:
        raise ManifestError(f"Invalid YAML in manifest {path}: {e}")

    manifest = parse_manifest(data, source_path=path)
    logger.info(f"Loaded manifest {path}: {len(manifest.resources)} resource(s), "
                f"{len(manifest.errors)} error(s)")
    return manifest
