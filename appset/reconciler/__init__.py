"""Reconciler — per-identity state machine and the worker pool that drives it."""
