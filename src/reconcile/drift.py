"""Drift detection between desired and actual guest state.

Pure functions: nothing here touches the host. A diff lists one Delta per
differing attribute in a fixed order (memory, cores, hostname, network,
storage, power). Memory, cores, network and storage need a cold apply
(stop, reconfigure, start); hostname and power can be changed in place.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from manifest import ResourceSpec, parse_storage
from reconcile.classify import Classification
from reconcile.inventory import InventoryEntry

logger = logging.getLogger(__name__)

ATTRIBUTES = ('memory', 'cores', 'hostname', 'network', 'storage', 'power')
COLD_ATTRIBUTES = frozenset({'memory', 'cores', 'network', 'storage'})


@dataclass(frozen=True)
class Delta:
    """One attribute that differs.

    Attributes:
        attribute: Name from ATTRIBUTES
        desired: Value from the manifest
        actual: Value observed on the host
    """
    attribute: str
    desired: Any
    actual: Any

    @property
    def cold(self) -> bool:
        """True if the change needs the guest stopped."""
        return self.attribute in COLD_ATTRIBUTES

    def to_dict(self) -> dict:
        return {
            'attribute': self.attribute,
            'desired': self.desired,
            'actual': self.actual,
            'cold': self.cold,
        }


@dataclass
class Diff:
    """Drift of one managed guest."""
    spec: ResourceSpec
    entry: InventoryEntry
    deltas: list[Delta] = field(default_factory=list)

    @property
    def id(self) -> int:
        return self.spec.id

    @property
    def converged(self) -> bool:
        return not self.deltas

    @property
    def needs_cold_apply(self) -> bool:
        return any(d.cold for d in self.deltas)

    def get(self, attribute: str) -> Optional[Delta]:
        for delta in self.deltas:
            if delta.attribute == attribute:
                return delta
        return None

    def to_dict(self) -> dict:
        return {
            'kind': self.spec.kind,
            'id': self.spec.id,
            'hostname': self.spec.hostname,
            'cold_apply': self.needs_cold_apply,
            'deltas': [d.to_dict() for d in self.deltas],
        }


def parse_net_options(value: Optional[str]) -> dict[str, Optional[str]]:
    """Split a net0 string into options; bare tokens map to None.

    'virtio=BC:24:11:00:00:01,bridge=vmbr0' -> {'virtio': 'BC:..', 'bridge': 'vmbr0'}
    """
    options: dict[str, Optional[str]] = {}
    if not value:
        return options
    for token in value.split(','):
        token = token.strip()
        if not token:
            continue
        if '=' in token:
            key, val = token.split('=', 1)
            options[key.strip()] = val.strip()
        else:
            options[token] = None
    return options


def network_matches(desired: str, actual: Optional[str]) -> bool:
    """True if every option named in desired is present in actual with the same value.

    Options the host adds on its own (hwaddr, type, a generated MAC after the
    model name) are not drift as long as the manifest does not pin them.
    """
    wanted = parse_net_options(desired)
    have = parse_net_options(actual)
    for key, value in wanted.items():
        if key not in have:
            return False
        if value is not None and have[key] != value:
            return False
    return True


def storage_matches(desired: str, actual: Optional[str]) -> bool:
    """Compare root disk size; the pool is only a creation-time placement."""
    want = parse_storage(desired)
    have = parse_storage(actual)
    if want is None or have is None:
        return want == have
    return want[1] == have[1]


def detect_drift(spec: ResourceSpec, entry: InventoryEntry) -> Diff:
    """Compare desired vs actual for one managed guest.

    Numbers compare exactly. Optional manifest fields (network, storage) are
    only compared when the manifest sets them.
    """
    deltas: list[Delta] = []
    for attribute in ATTRIBUTES:
        desired = getattr(spec, attribute)
        actual = getattr(entry, attribute)
        if attribute == 'network':
            if desired is None or network_matches(desired, actual):
                continue
        elif attribute == 'storage':
            if desired is None or storage_matches(desired, actual):
                continue
        elif desired == actual:
            continue
        deltas.append(Delta(attribute=attribute, desired=desired, actual=actual))
    return Diff(spec=spec, entry=entry, deltas=deltas)


def detect_all(classification: Classification) -> list[Diff]:
    """Diff every managed guest and keep only those that drifted."""
    diffs = []
    for spec, entry in classification.managed:
        if spec.kind != entry.kind:
            continue  # reported as a configuration error instead
        diff = detect_drift(spec, entry)
        if diff.converged:
            logger.debug(f"[drift] {spec.label} converged")
            continue
        logger.debug(f"[drift] {spec.label}: {', '.join(d.attribute for d in diff.deltas)}")
        diffs.append(diff)
    return diffs
