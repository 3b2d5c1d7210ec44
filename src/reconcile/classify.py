"""Classification of manifest resources against host inventory.

Joins purely on numeric id. Hostnames and every other attribute are
irrelevant here; they only matter to drift detection.

Host guests fall into managed or foreign, with one addition: a guest whose
id is claimed by an invalid or duplicated manifest entry is ``rejected``.
It is neither managed nor foreign, so no adoption fragment is offered for
it; the manifest error for that id already blocks the run.
"""

from dataclasses import dataclass, field
from typing import Iterable

from manifest import ResourceSpec
from reconcile.inventory import InventoryEntry


@dataclass
class Classification:
    """Partition of every id seen in the manifest or on the host.

    Attributes:
        managed: (spec, entry) pairs present in both
        foreign: Host guests absent from the manifest
        missing: Manifest resources absent from the host
        rejected: Host guests whose manifest entry failed validation
    """
    managed: list[tuple[ResourceSpec, InventoryEntry]] = field(default_factory=list)
    foreign: list[InventoryEntry] = field(default_factory=list)
    missing: list[ResourceSpec] = field(default_factory=list)
    rejected: list[InventoryEntry] = field(default_factory=list)


def classify(
    specs: Iterable[ResourceSpec],
    entries: Iterable[InventoryEntry],
    rejected_ids: Iterable[int] = (),
) -> Classification:
    """Partition specs and inventory by id.

    Args:
        specs: Valid manifest resources (ids unique)
        entries: Host inventory (ids unique)
        rejected_ids: Ids claimed by invalid manifest entries

    Returns:
        Classification with every list sorted by id
    """
    by_id = {spec.id: spec for spec in specs}
    rejected = set(rejected_ids)
    result = Classification()
    on_host: set[int] = set()

    for entry in sorted(entries, key=lambda e: e.id):
        on_host.add(entry.id)
        if entry.id in by_id:
            result.managed.append((by_id[entry.id], entry))
        elif entry.id in rejected:
            result.rejected.append(entry)
        else:
            result.foreign.append(entry)

    result.missing = sorted(
        (spec for vmid, spec in by_id.items() if vmid not in on_host),
        key=lambda s: s.id,
    )
    return result


def kind_conflicts(classification: Classification) -> list[str]:
    """Describe managed ids whose kind differs between manifest and host.

    A container cannot be reconciled into a VM (or back), so these are
    reported as configuration errors rather than drift.
    """
    return [
        f"id {spec.id}: manifest declares {spec.kind} but host has {entry.kind}"
        for spec, entry in classification.managed
        if spec.kind != entry.kind
    ]
