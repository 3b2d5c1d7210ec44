"""Safety gate: decides once per run whether mutation may proceed.

The gate is conservative. Any foreign guest or any configuration error
blocks the whole run, however clean the managed guests look. Foreign guests
come with an adoption fragment: the manifest entry that would bring them
under management.
"""

import logging
from dataclasses import dataclass, field
from typing import Any

from manifest import POWER_RUNNING, POWER_STOPPED
from reconcile.classify import Classification
from reconcile.inventory import InventoryEntry

logger = logging.getLogger(__name__)

PROCEED = 'PROCEED'
BLOCK = 'BLOCK'


@dataclass
class GateDecision:
    """Outcome of the safety gate.

    Attributes:
        verdict: PROCEED or BLOCK
        reasons: Human-readable reasons for a BLOCK (empty on PROCEED)
        adoptions: Adoption fragment per foreign guest id
    """
    verdict: str
    reasons: list[str] = field(default_factory=list)
    adoptions: dict[int, dict] = field(default_factory=dict)

    @property
    def proceed(self) -> bool:
        return self.verdict == PROCEED


def adoption_fragment(entry: InventoryEntry) -> dict[str, Any]:
    """Manifest entry describing a foreign guest as it is now.

    Pasting it into the manifest makes the guest managed with zero drift
    (template is unknown for an existing guest and only matters at creation).
    """
    fragment: dict[str, Any] = {
        'kind': entry.kind,
        'id': entry.id,
        'hostname': entry.hostname or f'guest-{entry.id}',
    }
    if entry.memory is not None:
        fragment['memory'] = entry.memory
    if entry.cores is not None:
        fragment['cores'] = entry.cores
    if entry.network:
        fragment['network'] = entry.network
    if entry.storage:
        fragment['storage'] = entry.storage
    if entry.power in (POWER_RUNNING, POWER_STOPPED):
        fragment['power'] = entry.power
    return fragment


def evaluate(classification: Classification, errors: list[str]) -> GateDecision:
    """Decide BLOCK or PROCEED from a completed dry pass.

    Args:
        classification: Result of classify()
        errors: Every configuration error collected in the pass

    Returns:
        GateDecision
    """
    reasons: list[str] = []
    adoptions: dict[int, dict] = {}

    if classification.foreign:
        reasons.append(f"{len(classification.foreign)} foreign guest(s) on host")
        for entry in classification.foreign:
            adoptions[entry.id] = adoption_fragment(entry)

    if errors:
        reasons.append(f"{len(errors)} configuration error(s)")

    if reasons:
        logger.warning(f"[gate] BLOCK: {'; '.join(reasons)}")
        return GateDecision(verdict=BLOCK, reasons=reasons, adoptions=adoptions)

    logger.info("[gate] PROCEED")
    return GateDecision(verdict=PROCEED)
