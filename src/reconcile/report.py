"""Run report: what one reconciliation pass found and did.

Built fresh each run and never persisted. Both serializations are free of
timestamps and durations, so repeated dry runs over unchanged inputs give
byte-identical output.

Text form, one line per item, sorted by id within each section:

    VERDICT: BLOCKED (mode=dry-run, gate=BLOCK)
    ERROR: entry 2 (id 100): duplicate id 100 (first defined at entry 0)
    FOREIGN: container 999 (stray) adopt={"kind": "container", ...}
    MISSING: container 100 (app)
    DRIFT: container 101 (db) memory 1024 -> 2048 [cold]
    APPLIED: container 101 (db) steps=shutdown,set,start
    FAILED: virtualMachine 200 (vm) create failed: ...

Callers parse the FOREIGN: and ERROR: markers, so their format is stable.
"""

import json
from dataclasses import dataclass, field
from typing import Optional

from manifest import ResourceSpec
from reconcile.drift import Diff
from reconcile.gate import GateDecision
from reconcile.inventory import InventoryEntry
from reconcile.sequencer import ResourceOutcome

MODE_DRY = 'dry-run'
MODE_LIVE = 'live'

VERDICT_BLOCKED = 'BLOCKED'
VERDICT_CONVERGED = 'CONVERGED'
VERDICT_APPLIED = 'APPLIED'
VERDICT_PENDING = 'PENDING'


@dataclass
class RunReport:
    """Aggregated result of one run.

    Attributes:
        mode: dry-run or live
        gate: Safety gate decision
        missing: Manifest resources to be created
        diffs: Managed guests that drifted
        foreign: Host guests absent from the manifest
        errors: Configuration errors
        outcomes: Per-guest mutation results (live runs past the gate)
    """
    mode: str
    gate: GateDecision
    missing: list[ResourceSpec] = field(default_factory=list)
    diffs: list[Diff] = field(default_factory=list)
    foreign: list[InventoryEntry] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    outcomes: list[ResourceOutcome] = field(default_factory=list)

    @property
    def verdict(self) -> str:
        if not self.gate.proceed:
            return VERDICT_BLOCKED
        if self.outcomes:
            return VERDICT_APPLIED
        if self.pending:
            return VERDICT_PENDING
        return VERDICT_CONVERGED

    @property
    def failures(self) -> list[ResourceOutcome]:
        return [o for o in self.outcomes if not o.success]

    @property
    def pending(self) -> bool:
        """True if the dry pass found missing guests or drift."""
        return bool(self.missing or self.diffs)

    def to_dict(self) -> dict:
        """Return the report as a JSON-serializable dictionary."""
        return {
            'mode': self.mode,
            'gate': self.gate.verdict,
            'verdict': self.verdict,
            'reasons': list(self.gate.reasons),
            'errors': list(self.errors),
            'foreign': [
                {**entry.to_dict(), 'adoption': self.gate.adoptions.get(entry.id)}
                for entry in sorted(self.foreign, key=lambda e: e.id)
            ],
            'missing': [spec.to_dict() for spec in sorted(self.missing, key=lambda s: s.id)],
            'diffs': [diff.to_dict() for diff in sorted(self.diffs, key=lambda d: d.id)],
            'outcomes': [o.to_dict() for o in sorted(self.outcomes, key=lambda o: o.id)],
        }

    def to_json(self, indent: Optional[int] = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)

    def to_text(self) -> str:
        """Render the line-oriented report with stable markers."""
        lines = [f"VERDICT: {self.verdict} (mode={self.mode}, gate={self.gate.verdict})"]

        for error in self.errors:
            lines.append(f"ERROR: {error}")

        for entry in sorted(self.foreign, key=lambda e: e.id):
            adoption = self.gate.adoptions.get(entry.id)
            hint = f" adopt={json.dumps(adoption)}" if adoption else ''
            lines.append(f"FOREIGN: {entry.label}{hint}")

        for spec in sorted(self.missing, key=lambda s: s.id):
            lines.append(f"MISSING: {spec.label}")

        for diff in sorted(self.diffs, key=lambda d: d.id):
            for delta in diff.deltas:
                mode = 'cold' if delta.cold else 'live'
                lines.append(f"DRIFT: {diff.spec.label} {delta.attribute} "
                             f"{_show(delta.actual)} -> {_show(delta.desired)} [{mode}]")

        for outcome in sorted(self.outcomes, key=lambda o: o.id):
            if outcome.success:
                lines.append(f"APPLIED: {outcome.label} steps={','.join(outcome.steps) or 'none'}")
            else:
                lines.append(f"FAILED: {outcome.label} {outcome.error}")

        return '\n'.join(lines) + '\n'


def _show(value) -> str:
    return '-' if value is None else str(value)
