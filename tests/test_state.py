"""Tests for the per-identity state machine."""

import pytest

from appset.errors import InvalidTransition
from appset.models.application import (
    ApplicationDescriptor,
    Destination,
    SourceLocation,
    SyncPolicy,
)
from appset.reconciler.state import AppRecord, AppState, can_transition


def _record():
    descriptor = ApplicationDescriptor(
        name="svc-a",
        project="default",
        source=SourceLocation(repo_url="local", revision="HEAD", path="services/a"),
        destination=Destination(namespace="team-a"),
        sync_policy=SyncPolicy(),
        rule_name="services",
    )
    return AppRecord(descriptor=descriptor)


def test_full_lifecycle_is_recorded():
    record = _record()
    for state in (
        AppState.PENDING,
        AppState.SYNCED,
        AppState.OUT_OF_SYNC,
        AppState.SYNCED,
        AppState.PRUNING,
        AppState.ABSENT,
    ):
        record.transition(state)

    assert record.state == AppState.ABSENT
    assert record.transitions[0] == (AppState.ABSENT, AppState.PENDING)
    assert len(record.transitions) == 6


def test_same_state_is_a_no_op():
    record = _record()
    record.transition(AppState.ABSENT)
    assert record.transitions == []


def test_invalid_transition_raises():
    record = _record()
    with pytest.raises(InvalidTransition, match="svc-a: Absent -> Synced"):
        record.transition(AppState.SYNCED)
    assert record.state == AppState.ABSENT

    record.transition(AppState.PENDING)
    record.transition(AppState.PRUNING)
    with pytest.raises(InvalidTransition):
        record.transition(AppState.SYNCED)


def test_error_retries_to_pending_or_pruning():
    assert can_transition(AppState.ERROR, AppState.PENDING)
    assert can_transition(AppState.ERROR, AppState.PRUNING)
    assert not can_transition(AppState.ERROR, AppState.SYNCED)
    assert not can_transition(AppState.ABSENT, AppState.ERROR)


def test_snapshot_to_dict():
    record = _record()
    record.transition(AppState.PENDING)
    data = record.snapshot().to_dict()
    assert data["state"] == "Pending"
    assert data["namespace"] == "team-a"
    assert data["sync_status"] is None
    assert data["attempts"] == 0
