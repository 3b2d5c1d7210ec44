"""Inventory scanning: the host's actual guests, read fresh every run.

The scan does not look at the manifest. Any failure to read the host is
fatal for the run: decisions are only as safe as the inventory they are
based on, so a partial scan is never used.
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional

from config import EngineConfig
from manifest import KIND_CONTAINER, KIND_VM, POWER_RUNNING, POWER_STOPPED
from pve.guests import GuestCommands, guest_commands
from pve.host import HostQueryError, PveHost

logger = logging.getLogger(__name__)

POWER_UNKNOWN = 'unknown'

# pct and qm apply this when a guest config has no memory key
DEFAULT_MEMORY = 512


@dataclass
class InventoryEntry:
    """One guest as observed on the host.

    Attributes:
        kind: 'container' or 'virtualMachine'
        id: PVE vmid
        hostname: Container hostname / VM name ('' if unset)
        memory: Memory in MB (None if the host did not report it)
        cores: CPU cores (None if the host did not report it)
        power: 'running', 'stopped', or whatever other status was observed
        network: net0 option string, if any
        storage: Root disk as '<pool>:<sizeGB>', if any
        is_template: True for PVE templates
    """
    kind: str
    id: int
    hostname: str = ''
    memory: Optional[int] = None
    cores: Optional[int] = None
    power: str = POWER_UNKNOWN
    network: Optional[str] = None
    storage: Optional[str] = None
    is_template: bool = False

    @property
    def label(self) -> str:
        name = f" ({self.hostname})" if self.hostname else ''
        return f"{self.kind} {self.id}{name}"

    @property
    def power_known(self) -> bool:
        return self.power in (POWER_RUNNING, POWER_STOPPED)

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'kind': self.kind,
            'id': self.id,
            'hostname': self.hostname,
            'power': self.power,
        }
        if self.memory is not None:
            d['memory'] = self.memory
        if self.cores is not None:
            d['cores'] = self.cores
        if self.network is not None:
            d['network'] = self.network
        if self.storage is not None:
            d['storage'] = self.storage
        if self.is_template:
            d['template'] = True
        return d


def _as_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.isdigit():
        return int(value)
    return None


class InventoryScanner:
    """Reads every container and VM on the configured node."""

    def __init__(self, host: PveHost, config: Optional[EngineConfig] = None):
        """Initialize scanner.

        Args:
            host: Transport to the PVE node
            config: Engine config for ignore rules (default: host.config)
        """
        self.host = host
        self.config = config or host.config
        self.surfaces: list[GuestCommands] = [
            guest_commands(host, KIND_CONTAINER),
            guest_commands(host, KIND_VM),
        ]

    def scan(self) -> list[InventoryEntry]:
        """Return all guests on the node, sorted by id.

        Raises:
            HostQueryError: If any listing or config read fails
        """
        entries: list[InventoryEntry] = []
        for surface in self.surfaces:
            for item in surface.list_guests():
                entry = self._build_entry(surface, item)
                if entry is None:
                    continue
                entries.append(entry)

        seen: dict[int, InventoryEntry] = {}
        for entry in entries:
            if entry.id in seen:
                # pvesh never reports this; a clash means the data is not trustworthy
                raise HostQueryError(f"Host reports id {entry.id} twice "
                                     f"({seen[entry.id].kind} and {entry.kind})")
            seen[entry.id] = entry

        entries.sort(key=lambda e: e.id)
        logger.info(f"[scan] Found {len(entries)} guest(s) on node {self.host.node}")
        return entries

    def _build_entry(self, surface: GuestCommands, item: dict) -> Optional[InventoryEntry]:
        vmid = _as_int(item.get('vmid'))
        if vmid is None:
            raise HostQueryError(f"{surface.api} listing has an entry without vmid: {item}")

        is_template = bool(_as_int(item.get('template')))
        if vmid in self.config.ignore_ids:
            logger.debug(f"[scan] Ignoring {surface.kind} {vmid} (ignore_ids)")
            return None
        if is_template and self.config.ignore_templates:
            logger.debug(f"[scan] Ignoring {surface.kind} {vmid} (template)")
            return None

        guest_config = surface.read_config(vmid)
        memory = _as_int(guest_config.get('memory'))
        if memory is None:
            memory = DEFAULT_MEMORY
        cores = _as_int(guest_config.get('cores'))
        if cores is None:
            if surface.kind == KIND_VM:
                cores = 1  # qm default when unset
            else:
                cores = _as_int(item.get('cpus'))

        entry = InventoryEntry(
            kind=surface.kind,
            id=vmid,
            hostname=str(guest_config.get(surface.name_key) or item.get('name') or ''),
            memory=memory,
            cores=cores,
            power=str(item.get('status') or POWER_UNKNOWN),
            network=guest_config.get('net0'),
            storage=surface.storage_of(guest_config),
            is_template=is_template,
        )
        logger.debug(f"[scan] {entry.label}: {entry.to_dict()}")
        return entry
