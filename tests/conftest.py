"""Shared pytest fixtures for pve-dsc tests."""

import json
import re
import sys
from dataclasses import dataclass, field
from pathlib import Path

import pytest
import yaml

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from config import EngineConfig  # noqa: E402
from pve.host import PveHost  # noqa: E402

NODE = 'pve1'
IMAGE_SIZE_GB = 2


class FakeNode:
    """In-memory PVE node that answers pvesh/pct/qm command lines.

    Keeps enough state for a live run to be followed by a dry run that sees
    the result. Every command is recorded in `calls`.

    Attributes:
        guests: vmid -> {'kind': 'lxc'|'qemu', 'status': str, 'template': bool, 'config': dict}
        calls: Every argv received, in order
        failures: (verb, vmid) -> stderr for commands that must fail
        stubborn: vmids that ignore a graceful shutdown
        broken_reads: pvesh paths that fail
    """

    def __init__(self):
        self.guests: dict[int, dict] = {}
        self.calls: list[list[str]] = []
        self.timeouts: list[int] = []
        self.failures: dict[tuple[str, int], str] = {}
        self.stubborn: set[int] = set()
        self.broken_reads: set[str] = set()

    # -------------------------------------------------------------------------
    # Setup helpers
    # -------------------------------------------------------------------------

    def add_container(self, vmid, hostname='ct', memory=512, cores=1, status='running',
                      net0=None, rootfs=None, template=False):
        config = {'hostname': hostname, 'memory': memory, 'cores': cores,
                  'rootfs': rootfs or f'local-lvm:vm-{vmid}-disk-0,size=8G'}
        if net0:
            config['net0'] = net0
        self.guests[vmid] = {'kind': 'lxc', 'status': status, 'template': template, 'config': config}

    def add_vm(self, vmid, name='vm', memory=2048, cores=2, status='running',
               net0=None, scsi0=None, template=False):
        config = {'name': name, 'memory': memory, 'cores': cores,
                  'scsi0': scsi0 or f'local-lvm:vm-{vmid}-disk-0,size=32G'}
        if net0:
            config['net0'] = net0
        self.guests[vmid] = {'kind': 'qemu', 'status': status, 'template': template, 'config': config}

    def mutations(self) -> list[list[str]]:
        """Calls that change state (everything but pvesh reads and status)."""
        return [c for c in self.calls if c[0] in ('pct', 'qm') and c[1] != 'status']

    def verbs(self, vmid: int) -> list[str]:
        """Mutating verbs issued against one guest, in order."""
        result = []
        for call in self.mutations():
            target = call[3] if call[1] == 'clone' else call[2]
            if int(target) == vmid:
                result.append(call[1])
        return result

    # -------------------------------------------------------------------------
    # Command handling
    # -------------------------------------------------------------------------

    def handle(self, cmd: list[str]) -> tuple[int, str, str]:
        if cmd[0] == 'pvesh':
            return self._pvesh(cmd[2])

        tool, verb = cmd[0], cmd[1]
        vmid = int(cmd[3] if verb == 'clone' else cmd[2])
        if (verb, vmid) in self.failures:
            return 1, '', self.failures[(verb, vmid)]

        if verb in ('create', 'clone'):
            return self._create(tool, verb, vmid, cmd)

        guest = self.guests.get(vmid)
        if guest is None:
            return 2, '', f"Configuration file 'nodes/{NODE}/{vmid}.conf' does not exist"

        if verb == 'status':
            return 0, f"status: {guest['status']}\n", ''
        if verb == 'start':
            guest['status'] = 'running'
        elif verb == 'shutdown':
            if vmid in self.stubborn:
                return 255, '', 'VM quit/powerdown failed - got timeout'
            guest['status'] = 'stopped'
        elif verb == 'stop':
            guest['status'] = 'stopped'
        elif verb == 'set':
            guest['config'].update(self._options(cmd[3:], vmid, tool))
        elif verb == 'resize':
            disk, size = cmd[3], cmd[4]
            guest['config'][disk] = re.sub(r'size=[^,]*', f'size={size}', guest['config'][disk])
        return 0, '', ''

    def _pvesh(self, path: str) -> tuple[int, str, str]:
        if path in self.broken_reads:
            return 1, '', f'500 Internal Server Error for {path}'
        parts = path.strip('/').split('/')
        api = parts[2]
        if len(parts) == 3:
            listing = []
            for vmid, guest in sorted(self.guests.items()):
                if guest['kind'] != api:
                    continue
                item = {'vmid': vmid, 'status': guest['status'],
                        'name': guest['config'].get('hostname') or guest['config'].get('name'),
                        'cpus': guest['config'].get('cores')}
                if guest['template']:
                    item['template'] = 1
                listing.append(item)
            return 0, json.dumps(listing), ''
        guest = self.guests.get(int(parts[3]))
        if guest is None or guest['kind'] != api:
            return 2, '', f"Configuration file 'nodes/{NODE}/{parts[3]}.conf' does not exist"
        return 0, json.dumps(guest['config']), ''

    def _create(self, tool: str, verb: str, vmid: int, cmd: list[str]) -> tuple[int, str, str]:
        if vmid in self.guests:
            return 25, '', f"unable to create {vmid}: config file already exists"

        if verb == 'clone':
            source = self.guests[int(cmd[2])]
            config = dict(source['config'])
            options = self._options(cmd[4:], vmid, tool)
            pool = options.pop('storage', None) or config['scsi0'].split(':', 1)[0]
            config['scsi0'] = re.sub(r'^[^:]+:[^,]+', f'{pool}:vm-{vmid}-disk-0', config['scsi0'])
            config['name'] = options['name']
            self.guests[vmid] = {'kind': 'qemu', 'status': 'stopped', 'template': False, 'config': config}
            return 0, '', ''

        if tool == 'pct':
            options = self._options(cmd[4:], vmid, tool)
            options.pop('start', None)
            options['ostemplate'] = cmd[3]
            rootfs = options.pop('rootfs', 'local-lvm:8')
            pool, size = rootfs.split(':')
            options['rootfs'] = f'{pool}:vm-{vmid}-disk-0,size={size}G'
            self.guests[vmid] = {'kind': 'lxc', 'status': 'stopped', 'template': False, 'config': options}
            return 0, '', ''

        options = self._options(cmd[3:], vmid, tool)
        scsi0 = options.get('scsi0')
        if scsi0:
            pool, rest = scsi0.split(':', 1)
            size = IMAGE_SIZE_GB if 'import-from' in rest else int(rest)
            options['scsi0'] = f'{pool}:vm-{vmid}-disk-0,size={size}G'
        self.guests[vmid] = {'kind': 'qemu', 'status': 'stopped', 'template': False, 'config': options}
        return 0, '', ''

    def _options(self, args: list[str], vmid: int, tool: str) -> dict:
        options = {}
        for key, value in zip(args[::2], args[1::2]):
            key = key.lstrip('-')
            options[key] = int(value) if value.isdigit() else value
        if 'net0' in options:
            options['net0'] = self._with_mac(str(options['net0']), vmid, tool)
        return options

    @staticmethod
    def _with_mac(net0: str, vmid: int, tool: str) -> str:
        """Add the MAC the host generates for a new interface."""
        mac = f'BC:24:11:00:{vmid // 256 % 256:02X}:{vmid % 256:02X}'
        if tool == 'pct':
            return net0 if 'hwaddr=' in net0 else f'{net0},hwaddr={mac},type=veth'
        tokens = [f'{t}={mac}' if t in ('virtio', 'e1000') else t for t in net0.split(',')]
        return ','.join(tokens)


@dataclass
class FakeHost(PveHost):
    """PveHost whose commands go to a FakeNode instead of a shell."""
    sim: FakeNode = field(default_factory=FakeNode)

    def run(self, cmd: list[str], timeout: int) -> tuple[int, str, str]:
        self.sim.calls.append(list(cmd))
        self.sim.timeouts.append(timeout)
        return self.sim.handle(cmd)


@pytest.fixture
def engine_config(tmp_path):
    """Engine config with a private lock file and short lock wait."""
    return EngineConfig(node=NODE, lock_file=tmp_path / 'run' / 'pve-dsc.lock', lock_timeout=1)


@pytest.fixture
def fake_node():
    return FakeNode()


@pytest.fixture
def fake_host(engine_config, fake_node):
    return FakeHost(engine_config, sim=fake_node)


@pytest.fixture
def write_manifest(tmp_path):
    """Write resources to a manifest file and return its path."""
    def _write(resources, name='manifest.yaml'):
        path = tmp_path / name
        if name.endswith('.json'):
            path.write_text(json.dumps(resources))
        else:
            path.write_text(yaml.safe_dump(resources, sort_keys=False))
        return path
    return _write


@pytest.fixture
def container_entry():
    """A valid manifest entry for container 100."""
    return {
        'kind': 'container',
        'id': 100,
        'hostname': 'app01',
        'template': 'local:vztmpl/debian-12-standard_12.7-1_amd64.tar.zst',
        'memory': 1024,
        'cores': 2,
        'power': 'running',
    }
