"""Per-identity lifecycle state machine.

    Absent -> Pending -> Synced <-> OutOfSync -> Pruning -> Absent

plus Error, reachable from every state except Absent. Error goes back to
Pending (or to Pruning, when the failed operation was a delete) once its
backoff expires.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum

from appset.errors import InvalidTransition
from appset.models.application import ApplicationDescriptor, SyncResult

logger = logging.getLogger(__name__)


class AppState(Enum):
    ABSENT = "Absent"
    PENDING = "Pending"
    SYNCED = "Synced"
    OUT_OF_SYNC = "OutOfSync"
    PRUNING = "Pruning"
    ERROR = "Error"


TRANSITIONS: dict[AppState, frozenset[AppState]] = {
    AppState.ABSENT: frozenset({AppState.PENDING}),
    AppState.PENDING: frozenset({
        AppState.SYNCED,
        AppState.OUT_OF_SYNC,   # applied, but changed concurrently
        AppState.PRUNING,       # removed while the first apply was in flight
        AppState.ABSENT,        # released
        AppState.ERROR,
    }),
    AppState.SYNCED: frozenset({
        AppState.OUT_OF_SYNC,
        AppState.PENDING,       # descriptor changed
        AppState.PRUNING,
        AppState.ABSENT,
        AppState.ERROR,
    }),
    AppState.OUT_OF_SYNC: frozenset({
        AppState.SYNCED,
        AppState.PENDING,
        AppState.PRUNING,
        AppState.ABSENT,
        AppState.ERROR,
    }),
    AppState.PRUNING: frozenset({AppState.ABSENT, AppState.ERROR}),
    AppState.ERROR: frozenset({
        AppState.PENDING,
        AppState.PRUNING,
        AppState.ABSENT,
    }),
}


def can_transition(current: AppState, new: AppState) -> bool:
    return new == current or new in TRANSITIONS[current]


@dataclass
class AppRecord:
    """Everything the reconciler tracks for one application identity."""

    descriptor: ApplicationDescriptor
    state: AppState = AppState.ABSENT
    last_result: SyncResult | None = None
    attempts: int = 0
    next_retry_at: float | None = None
    # Memo of the inputs a PermissionDenied was decided on.
    denied_key: tuple[str, str, str] | None = None
    # Project fingerprint the last allowed decision was made against.
    authorized_project: str = ""
    pending_delete: bool = False
    transitions: list[tuple[AppState, AppState]] = field(default_factory=list)

    @property
    def name(self) -> str:
        return self.descriptor.name

    def transition(self, new: AppState) -> None:
        """Move to ``new``.

        Raises:
            InvalidTransition: ``new`` is not reachable from the current state.
        """
        if new == self.state:
            return
        if not can_transition(self.state, new):
            raise InvalidTransition(f"{self.name}: {self.state.value} -> {new.value}")
        logger.info(f"{self.name}: {self.state.value} -> {new.value}")
        self.transitions.append((self.state, new))
        self.state = new

    def snapshot(self) -> "AppSnapshot":
        return AppSnapshot(
            name=self.name,
            state=self.state,
            descriptor=self.descriptor,
            last_result=self.last_result,
            attempts=self.attempts,
            next_retry_at=self.next_retry_at,
        )


@dataclass(frozen=True)
class AppSnapshot:
    """Read-only view of an AppRecord at one instant."""

    name: str
    state: AppState
    descriptor: ApplicationDescriptor
    last_result: SyncResult | None
    attempts: int
    next_retry_at: float | None

    def to_dict(self) -> dict:
        result = self.last_result
        return {
            "name": self.name,
            "state": self.state.value,
            "rule": self.descriptor.rule_name,
            "project": self.descriptor.project,
            "wave": self.descriptor.wave,
            "repo_url": self.descriptor.source.repo_url,
            "path": self.descriptor.source.path,
            "cluster": self.descriptor.destination.cluster,
            "namespace": self.descriptor.destination.namespace,
            "sync_status": result.status.value if result else None,
            "health": result.health.value if result else None,
            "revision": result.revision if result else "",
            "cause": result.cause if result else "",
            "message": result.message if result else "",
            "timestamp": result.timestamp if result else "",
            "attempts": self.attempts,
            "next_retry_at": self.next_retry_at,
        }
