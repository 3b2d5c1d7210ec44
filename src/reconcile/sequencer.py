"""Mutation sequencer: applies creations and diffs one guest at a time.

Cold-apply protocol for memory, cores, network and storage changes:

1. Graceful shutdown (bounded); if the guest is still running, forced stop
2. One reconfiguration step: a single set call with every pending option,
   plus a root disk resize for a storage change
3. Start, only if the desired power state is running

A failed step ends work on that guest only. Guests are processed
sequentially, so a failure never races with a stop/start elsewhere.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Optional

from common import ActionResult
from manifest import POWER_RUNNING, POWER_STOPPED, ResourceSpec, parse_storage
from pve.guests import GuestCommands, disk_size_gb, guest_commands
from pve.host import HostQueryError, PveHost
from reconcile.drift import Diff

logger = logging.getLogger(__name__)


@dataclass
class ResourceOutcome:
    """Result of applying changes to one guest.

    Attributes:
        kind: Guest kind
        id: Guest id
        hostname: Desired hostname
        action: 'create' or 'update'
        status: pending, applied, failed
        steps: Mutating steps that succeeded, in order
        error: Failure message, if failed
    """
    kind: str
    id: int
    hostname: str
    action: str
    status: str = 'pending'
    steps: list[str] = field(default_factory=list)
    error: Optional[str] = None
    started_at: Optional[float] = None
    completed_at: Optional[float] = None

    @property
    def label(self) -> str:
        return f"{self.kind} {self.id} ({self.hostname})"

    @property
    def success(self) -> bool:
        return self.status == 'applied'

    @property
    def duration(self) -> Optional[float]:
        if self.started_at is not None and self.completed_at is not None:
            return self.completed_at - self.started_at
        return None

    def start(self) -> None:
        self.started_at = time.time()

    def record(self, step: str) -> None:
        self.steps.append(step)

    def complete(self) -> None:
        self.status = 'applied'
        self.completed_at = time.time()

    def fail(self, error: str) -> None:
        self.status = 'failed'
        self.error = error
        self.completed_at = time.time()

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'kind': self.kind,
            'id': self.id,
            'hostname': self.hostname,
            'action': self.action,
            'status': self.status,
            'steps': list(self.steps),
        }
        if self.error is not None:
            d['error'] = self.error
        return d


class MutationSequencer:
    """Drives guests toward their manifest state through pct/qm."""

    def __init__(self, host: PveHost):
        """Initialize sequencer.

        Args:
            host: Transport to the PVE node; its config supplies every
                per-call timeout
        """
        self.host = host

    def apply(self, missing: list[ResourceSpec], diffs: list[Diff]) -> list[ResourceOutcome]:
        """Create missing guests, then apply diffs, each in id order.

        Returns:
            One outcome per guest touched
        """
        outcomes: list[ResourceOutcome] = []
        for spec in sorted(missing, key=lambda s: s.id):
            outcomes.append(self.create(spec))
        for diff in sorted(diffs, key=lambda d: d.id):
            outcomes.append(self.reconcile(diff))

        failed = [o for o in outcomes if not o.success]
        logger.info(f"[sequencer] {len(outcomes) - len(failed)} applied, {len(failed)} failed")
        return outcomes

    # -------------------------------------------------------------------------
    # Creation
    # -------------------------------------------------------------------------

    def create(self, spec: ResourceSpec) -> ResourceOutcome:
        """Create a missing guest, then bring it to its desired power state."""
        outcome = ResourceOutcome(kind=spec.kind, id=spec.id, hostname=spec.hostname, action='create')
        outcome.start()
        surface = guest_commands(self.host, spec.kind)

        logger.info(f"[sequencer] Creating {spec.label}...")
        if not self._step(outcome, 'create', surface.create(spec)):
            return outcome

        if spec.power == POWER_RUNNING:
            if not self._step(outcome, 'start', surface.start(spec.id)):
                return outcome

        outcome.complete()
        logger.info(f"[sequencer] Created {spec.label} ({outcome.duration:.1f}s)")
        return outcome

    # -------------------------------------------------------------------------
    # Drift
    # -------------------------------------------------------------------------

    def reconcile(self, diff: Diff) -> ResourceOutcome:
        """Apply one diff using the least disruptive strategy."""
        spec, entry = diff.spec, diff.entry
        outcome = ResourceOutcome(kind=spec.kind, id=spec.id, hostname=spec.hostname, action='update')
        outcome.start()
        surface = guest_commands(self.host, spec.kind)

        if not entry.power_known:
            outcome.fail(f"actual power state '{entry.power}' is not running or stopped; not touching it")
            logger.error(f"[sequencer] {spec.label}: {outcome.error}")
            return outcome

        if diff.needs_cold_apply:
            self._cold_apply(diff, surface, outcome)
        else:
            self._live_apply(diff, surface, outcome)

        if outcome.status == 'pending':
            outcome.complete()
            logger.info(f"[sequencer] Reconciled {spec.label}: {', '.join(outcome.steps) or 'no-op'} "
                        f"({outcome.duration:.1f}s)")
        return outcome

    def _cold_apply(self, diff: Diff, surface: GuestCommands, outcome: ResourceOutcome) -> None:
        spec, entry = diff.spec, diff.entry
        options = self._pending_options(diff, surface)

        # Disk change is validated before any stop
        resize: Optional[tuple[str, int]] = None
        if diff.get('storage'):
            resize, error = self._plan_resize(spec, surface)
            if error:
                outcome.fail(error)
                logger.error(f"[sequencer] {spec.label}: {error}")
                return

        logger.info(f"[sequencer] Cold apply on {spec.label}: "
                    f"{', '.join(d.attribute for d in diff.deltas)}")

        # 1. Stop
        if entry.power != POWER_STOPPED:
            if not self._stop(surface, spec.id, outcome):
                return

        # 2. Reconfigure
        if options:
            if not self._step(outcome, 'set', surface.set_options(spec.id, options)):
                return
        if resize is not None:
            if not self._step(outcome, 'resize', surface.resize(spec.id, resize[0], resize[1])):
                return

        # 3. Start
        if spec.power == POWER_RUNNING:
            self._step(outcome, 'start', surface.start(spec.id))

    def _live_apply(self, diff: Diff, surface: GuestCommands, outcome: ResourceOutcome) -> None:
        spec = diff.spec
        if diff.get('hostname'):
            result = surface.set_options(spec.id, surface.hostname_options(spec.hostname))
            if not self._step(outcome, 'set', result):
                return

        if diff.get('power'):
            if spec.power == POWER_RUNNING:
                self._step(outcome, 'start', surface.start(spec.id))
            else:
                self._stop(surface, spec.id, outcome)

    def _pending_options(self, diff: Diff, surface: GuestCommands) -> dict[str, Any]:
        """Collect set-able options (everything but storage and power)."""
        options: dict[str, Any] = {}
        for delta in diff.deltas:
            if delta.attribute in ('memory', 'cores'):
                options[delta.attribute] = delta.desired
            elif delta.attribute == 'network':
                options['net0'] = delta.desired
            elif delta.attribute == 'hostname':
                options.update(surface.hostname_options(delta.desired))
        return options

    def _plan_resize(self, spec: ResourceSpec, surface: GuestCommands) -> tuple[Optional[tuple[str, int]], Optional[str]]:
        """Work out (disk, size) for a storage change.

        Returns:
            ((disk_key, size_gb), None) or (None, error)
        """
        storage = parse_storage(spec.storage)
        if storage is None:
            return None, f"cannot parse storage '{spec.storage}'"
        try:
            disk = surface.root_disk(surface.read_config(spec.id))
        except HostQueryError as e:
            return None, f"cannot read config: {e}"
        if disk is None:
            return None, "guest has no root disk to resize"
        current = disk_size_gb(disk[1]) or 0
        if storage[1] < current:
            return None, f"storage shrink from {current}G to {storage[1]}G is not supported"
        return (disk[0], storage[1]), None

    def _stop(self, surface: GuestCommands, vmid: int, outcome: ResourceOutcome) -> bool:
        """Graceful shutdown, falling back to a forced stop.

        Both attempts are bounded by their configured timeouts. Returns True
        once the guest is confirmed stopped.
        """
        result = surface.shutdown(vmid)
        if result.success:
            outcome.record('shutdown')
        else:
            logger.warning(f"[sequencer] {outcome.label}: graceful {result.message}")

        if self._is_stopped(surface, vmid):
            return True

        logger.warning(f"[sequencer] {outcome.label} still running, forcing stop")
        if not self._step(outcome, 'stop', surface.stop(vmid)):
            return False
        if not self._is_stopped(surface, vmid):
            outcome.fail("guest still running after forced stop")
            logger.error(f"[sequencer] {outcome.label}: {outcome.error}")
            return False
        return True

    def _is_stopped(self, surface: GuestCommands, vmid: int) -> bool:
        result = surface.status(vmid)
        return result.success and result.context_updates.get('status') == POWER_STOPPED

    def _step(self, outcome: ResourceOutcome, step: str, result: ActionResult) -> bool:
        """Record a step; on failure, mark the outcome failed and return False."""
        if result.success:
            outcome.record(step)
            logger.debug(f"[sequencer] {outcome.label}: {step} ok ({result.duration:.1f}s)")
            return True
        outcome.fail(result.message)
        logger.error(f"[sequencer] {outcome.label}: {result.message}")
        return False
