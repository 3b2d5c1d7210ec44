"""Kind-specific command surfaces for containers (pct) and VMs (qm).

Both surfaces expose the same operations: list, read_config, status,
create, set_options, resize, start, shutdown (graceful) and stop (forced).
Mutating operations return an ActionResult instead of raising, so a failed
guest never interrupts work on the others.
"""

import logging
import math
import re
import time
from dataclasses import dataclass
from typing import Any, Optional

from common import ActionResult
from manifest import KIND_CONTAINER, KIND_VM, ResourceSpec, parse_storage
from pve.host import HostQueryError, PveHost

logger = logging.getLogger(__name__)

SIZE_RE = re.compile(r'(?:^|,)size=(?P<num>\d+(?:\.\d+)?)(?P<unit>[KMGT]?)(?:,|$)')
UNIT_TO_GB = {'K': 1 / (1024 * 1024), 'M': 1 / 1024, 'G': 1, 'T': 1024, '': 1 / (1024 ** 3)}


def disk_size_gb(value: str) -> Optional[int]:
    """Extract the size=... option of a PVE disk string, in whole GB (rounded up)."""
    match = SIZE_RE.search(value)
    if not match:
        return None
    return math.ceil(float(match.group('num')) * UNIT_TO_GB[match.group('unit')])


def disk_pool(value: str) -> str:
    """Storage pool of a PVE disk string ('local-lvm:vm-100-disk-0,size=8G' -> 'local-lvm')."""
    volume = value.split(',', 1)[0]
    return volume.split(':', 1)[0] if ':' in volume else ''


@dataclass
class GuestCommands:
    """Commands common to both guest kinds.

    Attributes:
        host: Transport to the PVE node
        kind: Manifest kind this surface manages
        tool: CLI used for mutations (pct or qm)
        api: pvesh collection under /nodes/<node>/ (lxc or qemu)
        name_key: Config key holding the hostname
        disk_keys: Config keys probed, in order, for the root disk
    """
    host: PveHost
    kind: str = ''
    tool: str = ''
    api: str = ''
    name_key: str = ''
    disk_keys: tuple[str, ...] = ()

    # -------------------------------------------------------------------------
    # Reads (raise HostQueryError)
    # -------------------------------------------------------------------------

    def list_guests(self) -> list[dict]:
        """List guests of this kind on the node (vmid, name, status, template)."""
        data = self.host.query(f'/nodes/{self.host.node}/{self.api}')
        if not isinstance(data, list):
            raise HostQueryError(f"Unexpected {self.api} listing: {type(data).__name__}")
        return data

    def read_config(self, vmid: int) -> dict:
        """Read the current configuration of one guest."""
        data = self.host.query(f'/nodes/{self.host.node}/{self.api}/{vmid}/config')
        if not isinstance(data, dict):
            raise HostQueryError(f"Unexpected config for {self.kind} {vmid}: {type(data).__name__}")
        return data

    def root_disk(self, config: dict) -> Optional[tuple[str, str]]:
        """Return (key, value) of the guest's root disk, if it has one."""
        for key in self.disk_keys:
            value = config.get(key)
            if isinstance(value, str) and 'media=cdrom' not in value:
                return key, value
        return None

    def storage_of(self, config: dict) -> Optional[str]:
        """Describe the root disk as '<pool>:<sizeGB>' (manifest form)."""
        disk = self.root_disk(config)
        if disk is None:
            return None
        size = disk_size_gb(disk[1])
        if size is None:
            return None
        return f"{disk_pool(disk[1])}:{size}"

    # -------------------------------------------------------------------------
    # Status and power (bounded, never raise)
    # -------------------------------------------------------------------------

    def status(self, vmid: int) -> ActionResult:
        """Query power status; result.context_updates['status'] holds it."""
        start = time.time()
        rc, out, err = self.host.run(
            [self.tool, 'status', str(vmid)], timeout=self.host.config.read_timeout)
        if rc != 0:
            return ActionResult(
                success=False,
                message=f"{self.tool} status {vmid} failed: {err.strip() or out.strip()}",
                duration=time.time() - start
            )
        # Output is "status: running"
        status = out.strip().split(':', 1)[-1].strip() or 'unknown'
        return ActionResult(
            success=True,
            message=f"{self.kind} {vmid} is {status}",
            duration=time.time() - start,
            context_updates={'status': status}
        )

    def start(self, vmid: int) -> ActionResult:
        return self._mutate('start', [self.tool, 'start', str(vmid)],
                            self.host.config.start_timeout)

    def shutdown(self, vmid: int) -> ActionResult:
        """Request a clean guest shutdown, bounded by graceful_stop_timeout."""
        wait = self.host.config.graceful_stop_timeout
        # Outer bound leaves the tool room to give up on its own first
        return self._mutate('shutdown', [self.tool, 'shutdown', str(vmid), '--timeout', str(wait)],
                            wait + 30)

    def stop(self, vmid: int) -> ActionResult:
        """Force the guest off."""
        return self._mutate('stop', [self.tool, 'stop', str(vmid)],
                            self.host.config.force_stop_timeout)

    # -------------------------------------------------------------------------
    # Reconfiguration
    # -------------------------------------------------------------------------

    def set_options(self, vmid: int, options: dict[str, Any]) -> ActionResult:
        """Apply several config options in a single set call."""
        cmd = [self.tool, 'set', str(vmid)]
        for key, value in options.items():
            cmd += [f'--{key}', str(value)]
        return self._mutate('set', cmd, self.host.config.set_timeout)

    def resize(self, vmid: int, disk: str, size_gb: int) -> ActionResult:
        """Grow a disk to an absolute size."""
        return self._mutate('resize', [self.tool, 'resize', str(vmid), disk, f'{size_gb}G'],
                            self.host.config.set_timeout)

    def hostname_options(self, hostname: str) -> dict[str, Any]:
        return {self.name_key: hostname}

    def create(self, spec: ResourceSpec) -> ActionResult:
        raise NotImplementedError

    def _mutate(self, step: str, cmd: list[str], timeout: int) -> ActionResult:
        """Run a mutating command and wrap the outcome."""
        start = time.time()
        rc, out, err = self.host.run(cmd, timeout=timeout)
        if rc != 0:
            return ActionResult(
                success=False,
                message=f"{step} failed: {err.strip() or out.strip() or f'rc={rc}'}",
                duration=time.time() - start
            )
        return ActionResult(
            success=True,
            message=step,
            duration=time.time() - start
        )


@dataclass
class ContainerCommands(GuestCommands):
    """LXC containers via pct."""
    kind: str = KIND_CONTAINER
    tool: str = 'pct'
    api: str = 'lxc'
    name_key: str = 'hostname'
    disk_keys: tuple[str, ...] = ('rootfs',)

    def create(self, spec: ResourceSpec) -> ActionResult:
        """Create a stopped container from its ostemplate."""
        if not spec.template:
            return ActionResult(success=False, message="create failed: container has no template")
        cmd = [
            'pct', 'create', str(spec.id), spec.template,
            '--hostname', spec.hostname,
            '--memory', str(spec.memory),
            '--cores', str(spec.cores),
            '--start', '0',
        ]
        if spec.network:
            cmd += ['--net0', spec.network]
        if spec.storage:
            cmd += ['--rootfs', spec.storage]
        return self._mutate('create', cmd, self.host.config.create_timeout)


@dataclass
class VmCommands(GuestCommands):
    """QEMU virtual machines via qm.

    A numeric template is a VM template to full-clone; any other template is
    a disk image imported as scsi0; no template creates a blank disk.
    """
    kind: str = KIND_VM
    tool: str = 'qm'
    api: str = 'qemu'
    name_key: str = 'name'
    disk_keys: tuple[str, ...] = ('scsi0', 'virtio0', 'sata0', 'ide0')

    def create(self, spec: ResourceSpec) -> ActionResult:
        """Create a stopped VM, then size its root disk."""
        if spec.template and spec.template.isdigit():
            return self._create_from_clone(spec)
        return self._create_from_image(spec)

    def _create_from_clone(self, spec: ResourceSpec) -> ActionResult:
        cmd = ['qm', 'clone', spec.template, str(spec.id), '--name', spec.hostname, '--full', '1']
        storage = parse_storage(spec.storage)
        if storage:
            cmd += ['--storage', storage[0]]
        result = self._mutate('clone', cmd, self.host.config.create_timeout)
        if not result.success:
            return result

        options: dict[str, Any] = {'memory': spec.memory, 'cores': spec.cores}
        if spec.network:
            options['net0'] = spec.network
        result = self.set_options(spec.id, options)
        if not result.success or storage is None:
            return result

        return self._grow_root_disk(spec.id, storage[1], result)

    def _grow_root_disk(self, vmid: int, size_gb: int, result: ActionResult) -> ActionResult:
        """Resize the root disk up to size_gb; a disk already that big is left alone."""
        try:
            disk = self.root_disk(self.read_config(vmid))
        except HostQueryError as e:
            return ActionResult(success=False, message=f"create failed: {e}")
        if disk is None:
            return ActionResult(success=False, message="create failed: no root disk after create")
        if size_gb > (disk_size_gb(disk[1]) or 0):
            return self.resize(vmid, disk[0], size_gb)
        return result

    def _create_from_image(self, spec: ResourceSpec) -> ActionResult:
        storage = parse_storage(spec.storage)
        cmd = [
            'qm', 'create', str(spec.id),
            '--name', spec.hostname,
            '--memory', str(spec.memory),
            '--cores', str(spec.cores),
            '--scsihw', 'virtio-scsi-pci',
        ]
        if spec.network:
            cmd += ['--net0', spec.network]
        if spec.template:
            if storage is None:
                return ActionResult(success=False,
                                    message="create failed: importing a disk image needs storage")
            cmd += ['--scsi0', f'{storage[0]}:0,import-from={spec.template}', '--boot', 'order=scsi0']
        elif storage:
            cmd += ['--scsi0', spec.storage, '--boot', 'order=scsi0']
        result = self._mutate('create', cmd, self.host.config.create_timeout)
        if not result.success or not spec.template or storage is None:
            return result
        # Imported disks keep the image's size
        return self._grow_root_disk(spec.id, storage[1], result)


def guest_commands(host: PveHost, kind: str) -> GuestCommands:
    """Return the command surface for a manifest kind."""
    if kind == KIND_CONTAINER:
        return ContainerCommands(host)
    if kind == KIND_VM:
        return VmCommands(host)
    raise ValueError(f"Unknown guest kind: {kind}")
