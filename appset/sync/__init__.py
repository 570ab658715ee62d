"""Sync layer — the platform side of reconciliation.

This package provides the primitives for:
- Permission gate: project boundaries checked before anything is applied
- Diffing: minimal plans and drift detection against live state
- Execution: compare-and-set apply, prune and delete against a target
- History: an append-only record of sync results
"""
