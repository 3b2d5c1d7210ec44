"""Desired-state reconciliation for a single PVE node.

Compares a manifest against the host's guests and, when the safety gate
allows it, converges the host: creating missing guests and applying drift.
Nothing is kept between runs; the manifest and the live host are the only
state.
"""
