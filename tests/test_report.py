"""Tests for reconcile.report - verdicts and serialization."""

import json
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from manifest import ResourceSpec
from reconcile.drift import detect_drift
from reconcile.gate import BLOCK, PROCEED, GateDecision
from reconcile.inventory import InventoryEntry
from reconcile.report import RunReport
from reconcile.sequencer import ResourceOutcome


def _spec(vmid=100, **kwargs):
    fields = dict(kind='container', id=vmid, hostname='app01', memory=1024, cores=2)
    fields.update(kwargs)
    return ResourceSpec(**fields)


def _entry(vmid=100, **kwargs):
    fields = dict(kind='container', hostname='app01', memory=1024, cores=2, power='running')
    fields.update(kwargs)
    return InventoryEntry(id=vmid, **fields)


class TestVerdict:
    """Tests for the overall verdict."""

    def test_blocked(self):
        report = RunReport(mode='dry-run', gate=GateDecision(verdict=BLOCK), missing=[_spec()])
        assert report.verdict == 'BLOCKED'

    def test_converged(self):
        assert RunReport(mode='dry-run', gate=GateDecision(verdict=PROCEED)).verdict == 'CONVERGED'

    def test_pending_on_dry_run_with_work(self):
        report = RunReport(mode='dry-run', gate=GateDecision(verdict=PROCEED), missing=[_spec()])
        assert report.verdict == 'PENDING'
        assert report.pending

    def test_pending_reflects_work_regardless_of_gate(self):
        report = RunReport(mode='live', gate=GateDecision(verdict=BLOCK), missing=[_spec()])
        assert report.verdict == 'BLOCKED'
        assert report.pending
        assert not RunReport(mode='live', gate=GateDecision(verdict=PROCEED)).pending

    def test_applied(self):
        outcome = ResourceOutcome(kind='container', id=100, hostname='app01', action='create',
                                  status='failed', error='boom')
        report = RunReport(mode='live', gate=GateDecision(verdict=PROCEED), missing=[_spec()],
                           outcomes=[outcome])
        assert report.verdict == 'APPLIED'
        assert report.failures == [outcome]


class TestText:
    """Tests for the line-oriented report."""

    def test_markers(self):
        foreign = _entry(999, hostname='stray')
        gate = GateDecision(verdict=BLOCK, reasons=['1 foreign guest(s) on host'],
                            adoptions={999: {'kind': 'container', 'id': 999, 'hostname': 'stray'}})
        diff = detect_drift(_spec(101), _entry(101, memory=512, hostname='old'))
        report = RunReport(mode='dry-run', gate=gate, missing=[_spec(100)], diffs=[diff],
                           foreign=[foreign], errors=['entry 3 (id 7): hostname is required'])
        assert report.to_text().splitlines() == [
            'VERDICT: BLOCKED (mode=dry-run, gate=BLOCK)',
            'ERROR: entry 3 (id 7): hostname is required',
            'FOREIGN: container 999 (stray) adopt={"kind": "container", "id": 999, "hostname": "stray"}',
            'MISSING: container 100 (app01)',
            'DRIFT: container 101 (app01) memory 512 -> 1024 [cold]',
            'DRIFT: container 101 (app01) hostname old -> app01 [live]',
        ]

    def test_outcomes(self):
        ok = ResourceOutcome(kind='container', id=100, hostname='a', action='create',
                             status='applied', steps=['create', 'start'])
        bad = ResourceOutcome(kind='container', id=101, hostname='b', action='update',
                              status='failed', error='set failed: locked')
        report = RunReport(mode='live', gate=GateDecision(verdict=PROCEED), outcomes=[bad, ok])
        assert report.to_text().splitlines()[1:] == [
            'APPLIED: container 100 (a) steps=create,start',
            'FAILED: container 101 (b) set failed: locked',
        ]

    def test_clean_report_has_no_markers(self):
        text = RunReport(mode='dry-run', gate=GateDecision(verdict=PROCEED)).to_text()
        assert text == 'VERDICT: CONVERGED (mode=dry-run, gate=PROCEED)\n'
        assert 'FOREIGN' not in text
        assert 'ERROR' not in text

    def test_sorted_by_id(self):
        report = RunReport(mode='dry-run', gate=GateDecision(verdict=PROCEED),
                           missing=[_spec(300), _spec(100), _spec(200)])
        lines = report.to_text().splitlines()[1:]
        assert [line.split()[2] for line in lines] == ['100', '200', '300']


class TestJson:
    """Tests for the JSON report."""

    def test_to_dict(self):
        gate = GateDecision(verdict=BLOCK, reasons=['1 foreign guest(s) on host'],
                            adoptions={999: {'kind': 'container', 'id': 999, 'hostname': 'stray'}})
        report = RunReport(mode='dry-run', gate=gate, foreign=[_entry(999, hostname='stray')])
        data = json.loads(report.to_json())
        assert data['verdict'] == 'BLOCKED'
        assert data['gate'] == 'BLOCK'
        assert data['foreign'][0]['id'] == 999
        assert data['foreign'][0]['adoption']['hostname'] == 'stray'
        assert data['missing'] == []
        assert data['outcomes'] == []

    def test_no_timestamps(self):
        outcome = ResourceOutcome(kind='container', id=100, hostname='a', action='create')
        outcome.start()
        outcome.complete()
        report = RunReport(mode='live', gate=GateDecision(verdict=PROCEED), outcomes=[outcome])
        assert 'started_at' not in report.to_json()
        assert 'duration' not in report.to_json()
