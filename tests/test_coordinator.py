"""Tests for reconcile.coordinator - end-to-end runs against a fake node."""

import sys
from pathlib import Path

import pytest
from filelock import FileLock

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from locking import LockTimeout
from manifest import ManifestError
from pve.host import HostQueryError
from reconcile.coordinator import (
    EXIT_BLOCKED,
    EXIT_FAILED,
    EXIT_OK,
    RunCoordinator,
    exit_code,
)


@pytest.fixture
def coordinator(engine_config, fake_host):
    return RunCoordinator(engine_config, fake_host)


class TestMissingScenario:
    """Manifest declares container 100; host has nothing."""

    def test_dry_run_reports_missing(self, coordinator, fake_node, write_manifest, container_entry):
        report = coordinator.run(write_manifest([container_entry]), live=False)
        assert [s.id for s in report.missing] == [100]
        assert report.foreign == []
        assert report.gate.proceed
        assert report.verdict == 'PENDING'
        assert exit_code(report) == EXIT_OK
        assert fake_node.mutations() == []

    def test_live_run_creates_and_starts(self, coordinator, fake_node, write_manifest, container_entry):
        report = coordinator.run(write_manifest([container_entry]), live=True)
        assert report.verdict == 'APPLIED'
        assert exit_code(report) == EXIT_OK
        assert fake_node.verbs(100) == ['create', 'start']
        assert fake_node.guests[100]['status'] == 'running'

    def test_idempotent(self, coordinator, fake_node, write_manifest, container_entry):
        path = write_manifest([container_entry])
        coordinator.run(path, live=True)
        fake_node.calls.clear()

        report = coordinator.run(path, live=True)
        assert report.verdict == 'CONVERGED'
        assert report.outcomes == []
        assert fake_node.mutations() == []


class TestForeignScenario:
    """Host has container 999 that the manifest does not declare."""

    def test_dry_run_blocks_with_adoption(self, coordinator, fake_node, write_manifest, container_entry):
        fake_node.add_container(999, hostname='stray', memory=256, cores=1)
        report = coordinator.run(write_manifest([container_entry]), live=False)
        assert report.verdict == 'BLOCKED'
        assert exit_code(report) == EXIT_OK
        assert [e.id for e in report.foreign] == [999]
        assert report.gate.adoptions[999]['hostname'] == 'stray'
        assert 'FOREIGN: container 999 (stray)' in report.to_text()

    def test_live_run_mutates_nothing(self, coordinator, fake_node, write_manifest, container_entry):
        fake_node.add_container(999, hostname='stray')
        # Managed guest 101 has drift that would otherwise be applied
        fake_node.add_container(101, hostname='db01', memory=512, cores=1)
        db = dict(container_entry, id=101, hostname='db01', memory=4096, cores=1)
        report = coordinator.run(write_manifest([container_entry, db]), live=True)

        assert report.verdict == 'BLOCKED'
        assert exit_code(report) == EXIT_BLOCKED
        assert report.outcomes == []
        assert fake_node.mutations() == []


class TestColdDriftScenario:
    """Managed container 100 has memory 1024; manifest wants 2048."""

    def test_live_run_stops_sets_starts(self, coordinator, fake_node, write_manifest, container_entry):
        fake_node.add_container(100, hostname='app01', memory=1024, cores=2)
        report = coordinator.run(write_manifest([dict(container_entry, memory=2048)]), live=True)

        assert report.verdict == 'APPLIED'
        assert [d.attribute for d in report.diffs[0].deltas] == ['memory']
        assert fake_node.mutations() == [
            ['pct', 'shutdown', '100', '--timeout', '60'],
            ['pct', 'set', '100', '--memory', '2048'],
            ['pct', 'start', '100'],
        ]


class TestDuplicateScenario:
    """Manifest has two entries with id 100."""

    def test_blocks(self, coordinator, fake_node, write_manifest, container_entry):
        fake_node.add_container(100, hostname='app01', memory=1024, cores=2)
        report = coordinator.run(write_manifest([container_entry, dict(container_entry)]), live=True)

        assert report.verdict == 'BLOCKED'
        assert report.errors == ['entry 1 (id 100): duplicate id 100 (first defined at entry 0)']
        # Neither copy wins, and the host guest is not reported foreign
        assert report.foreign == []
        assert report.missing == []
        assert fake_node.mutations() == []
        assert 'ERROR: entry 1 (id 100)' in report.to_text()


class TestRunBehaviour:
    """Cross-cutting properties of a run."""

    def test_dry_reports_byte_identical(self, coordinator, fake_node, write_manifest, container_entry):
        fake_node.add_container(999, hostname='stray')
        fake_node.add_vm(200, name='vm01')
        path = write_manifest([container_entry, dict(container_entry, id=101, hostname='b')])
        first = coordinator.run(path, live=False)
        second = coordinator.run(path, live=False)
        assert first.to_text() == second.to_text()
        assert first.to_json() == second.to_json()

    def test_kind_conflict_blocks(self, coordinator, fake_node, write_manifest, container_entry):
        fake_node.add_vm(100, name='app01')
        report = coordinator.run(write_manifest([container_entry]), live=True)
        assert report.verdict == 'BLOCKED'
        assert report.errors == ['id 100: manifest declares container but host has virtualMachine']
        assert fake_node.mutations() == []

    def test_applied_with_failure_exit_code(self, coordinator, fake_node, write_manifest, container_entry):
        fake_node.failures[('create', 100)] = 'no space left'
        report = coordinator.run(write_manifest([container_entry]), live=True)
        assert report.verdict == 'APPLIED'
        assert exit_code(report) == EXIT_FAILED

    def test_scan_failure_is_fatal(self, coordinator, fake_node, write_manifest, container_entry):
        fake_node.broken_reads.add('/nodes/pve1/lxc')
        with pytest.raises(HostQueryError):
            coordinator.run(write_manifest([container_entry]), live=True)
        assert fake_node.mutations() == []

    def test_unreadable_manifest_is_fatal(self, coordinator, tmp_path):
        with pytest.raises(ManifestError):
            coordinator.run(tmp_path / 'missing.yaml')

    def test_lock_held_elsewhere(self, coordinator, engine_config, fake_node, write_manifest, container_entry):
        engine_config.lock_file.parent.mkdir(parents=True, exist_ok=True)
        with FileLock(str(engine_config.lock_file)):
            with pytest.raises(LockTimeout):
                coordinator.run(write_manifest([container_entry]), live=True)
        assert fake_node.calls == []

    def test_lock_released_after_failure(self, coordinator, fake_node, write_manifest, container_entry):
        fake_node.broken_reads.add('/nodes/pve1/lxc')
        path = write_manifest([container_entry])
        with pytest.raises(HostQueryError):
            coordinator.run(path)
        fake_node.broken_reads.clear()
        assert coordinator.run(path).verdict == 'PENDING'
