"""Run coordinator: one locked reconciliation pass.

Sequence (both modes):

1. Take the run lock (bounded wait)
2. Load the manifest; entry errors are collected, a bad file is fatal
3. Scan the host; any read failure is fatal
4. Classify, detect drift, evaluate the safety gate
5. Live mode only, and only on PROCEED: hand missing guests and diffs to the
   mutation sequencer

Fatal conditions raise (LockTimeout, ManifestError, HostQueryError) before any
decision is made; everything else ends up in the RunReport.
"""

import logging
from pathlib import Path
from typing import Optional

from config import EngineConfig
from locking import run_lock
from manifest import Manifest, load_manifest
from pve.host import PveHost
from reconcile.classify import classify, kind_conflicts
from reconcile.drift import detect_all
from reconcile.gate import evaluate
from reconcile.inventory import InventoryEntry, InventoryScanner
from reconcile.report import MODE_DRY, MODE_LIVE, VERDICT_BLOCKED, RunReport
from reconcile.sequencer import MutationSequencer

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_BLOCKED = 3
EXIT_FAILED = 4


def exit_code(report: RunReport) -> int:
    """Map a completed run to the process exit code.

    0 converged, applied cleanly, or any dry run (a blocked dry run is a
    deliberate no-op; callers read the FOREIGN/ERROR markers);
    3 live run blocked by the safety gate; 4 applied with at least one failure.
    """
    if report.verdict == VERDICT_BLOCKED:
        return EXIT_BLOCKED if report.mode == MODE_LIVE else EXIT_OK
    if report.failures:
        return EXIT_FAILED
    return EXIT_OK


class RunCoordinator:
    """Orchestrates a dry or live reconciliation against one node."""

    def __init__(self, config: EngineConfig, host: Optional[PveHost] = None):
        """Initialize coordinator.

        Args:
            config: Engine configuration
            host: Host transport (default: PveHost(config))
        """
        self.config = config
        self.host = host or PveHost(config)

    def run(self, manifest_path: str | Path, live: bool = False) -> RunReport:
        """Execute one pass under the run lock.

        Args:
            manifest_path: Path to the manifest file
            live: Apply changes when the gate allows it

        Returns:
            RunReport

        Raises:
            LockTimeout: If another run holds the lock
            ManifestError: If the manifest file cannot be read or parsed
            HostQueryError: If the host inventory cannot be read
        """
        mode = MODE_LIVE if live else MODE_DRY
        logger.info(f"Starting {mode} run on node {self.host.node} "
                    f"(manifest: {manifest_path})")

        with run_lock(self.config.lock_file, self.config.lock_timeout):
            manifest = load_manifest(manifest_path)
            entries = InventoryScanner(self.host, self.config).scan()
            report = self.plan(manifest, entries, mode)

            if live and report.gate.proceed and report.pending:
                sequencer = MutationSequencer(self.host)
                report.outcomes = sequencer.apply(report.missing, report.diffs)
            elif live and not report.gate.proceed:
                logger.warning("Live run blocked; no changes made")

        self._log_summary(report)
        return report

    def plan(self, manifest: Manifest, entries: list[InventoryEntry], mode: str = MODE_DRY) -> RunReport:
        """Build the dry-pass report from a manifest and a fresh inventory.

        Pure: nothing here touches the host.
        """
        classification = classify(manifest.resources, entries, manifest.claimed_ids)
        errors = list(manifest.errors) + kind_conflicts(classification)
        diffs = detect_all(classification)
        gate = evaluate(classification, errors)

        return RunReport(
            mode=mode,
            gate=gate,
            missing=classification.missing,
            diffs=diffs,
            foreign=classification.foreign,
            errors=errors,
        )

    def _log_summary(self, report: RunReport) -> None:
        logger.info(f"Run finished: {report.verdict} "
                    f"(missing={len(report.missing)}, drifted={len(report.diffs)}, "
                    f"foreign={len(report.foreign)}, errors={len(report.errors)}, "
                    f"failed={len(report.failures)})")
