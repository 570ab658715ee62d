"""Reconciler — drive every application identity toward its desired state.

``reconcile`` receives the desired descriptor set of each rule and returns
immediately. Work happens on two pools:

- one rollout driver per rule, which walks the rule's waves in ascending
  order and waits for each wave to settle before starting the next;
- a bounded worker pool that runs apply, check and delete operations.

Operations on one identity never overlap. A request that arrives while an
operation is in flight is queued behind it (the latest request wins), and a
removal cancels an in-flight apply (including a self-heal) at its next
resource boundary.

A failed operation never sleeps on a worker. The identity moves to Error
with a ``next_retry_at`` deadline and a retry timer re-runs its rule once the
deadline passes. After ``retry.limit`` consecutive failures the timer is no
longer armed and the identity is retried by the next poll instead.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import defaultdict
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterable

from appset.backoff import Backoff
from appset.errors import (
    AppSetError,
    ApplyError,
    PermissionDenied,
    SyncCancelled,
)
from appset.models.application import (
    ApplicationDescriptor,
    HealthStatus,
    SyncResult,
    SyncStatus,
)
from appset.reconciler.state import AppRecord, AppSnapshot, AppState
from appset.sync.executor import RenderedSource, SyncExecutor
from appset.sync.gate import ProjectGate
from appset.sync.history import SyncHistory

logger = logging.getLogger(__name__)


class Action(Enum):
    APPLY = "apply"
    CHECK = "check"
    DELETE = "delete"
    RELEASE = "release"


@dataclass
class _Slot:
    """Serialization point for one identity."""

    running: bool = False
    action: Action | None = None
    cancel: threading.Event = field(default_factory=threading.Event)
    queued: tuple[Action, ApplicationDescriptor, Future] | None = None


class Reconciler:
    """Tracks application identities and schedules their operations."""

    def __init__(
        self,
        executor: SyncExecutor,
        gate: ProjectGate,
        max_concurrency: int = 10,
        retry: Backoff | None = None,
        history: SyncHistory | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.executor = executor
        self.gate = gate
        self.retry = retry or Backoff()
        self.history = history
        self._clock = clock

        self._records: dict[str, AppRecord] = {}
        self._slots: dict[str, _Slot] = {}
        self._pending_rollouts: dict[str, tuple[frozenset[ApplicationDescriptor], str]] = {}
        self._active_rollouts: set[str] = set()
        self._last_desired: dict[str, tuple[frozenset[ApplicationDescriptor], str]] = {}
        self._retry_timers: dict[str, threading.Timer] = {}
        self._closed = False
        self._lock = threading.RLock()
        self._idle = threading.Condition(self._lock)

        self._workers = ThreadPoolExecutor(
            max_workers=max_concurrency, thread_name_prefix="appset-sync"
        )
        self._rollouts = ThreadPoolExecutor(thread_name_prefix="appset-rollout")

    # -- public surface -------------------------------------------------

    def reconcile(
        self,
        desired_by_rule: dict[str, Iterable[ApplicationDescriptor]],
        revisions: dict[str, str] | None = None,
    ) -> None:
        """Schedule a rollout of each rule's desired set. Does not block.

        A rule whose rollout is still running gets the new set queued; only
        the most recent set is rolled out next.
        """
        revisions = revisions or {}
        with self._lock:
            for rule_name, descriptors in desired_by_rule.items():
                desired = frozenset(descriptors)
                pending = (desired, revisions.get(rule_name, ""))
                self._last_desired[rule_name] = pending
                self._pending_rollouts[rule_name] = pending
                if rule_name in self._active_rollouts:
                    self._cancel_removed(rule_name, {d.name for d in desired})
                else:
                    self._start_rollout(rule_name)

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until no rollout, operation or armed retry remains. False on timeout."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._idle:
            while self._busy():
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return False
                self._idle.wait(remaining)
            return True

    def status(self) -> list[AppSnapshot]:
        """Snapshots of every tracked (not Absent) identity, by name."""
        with self._lock:
            return [
                r.snapshot()
                for _, r in sorted(self._records.items())
                if r.state != AppState.ABSENT
            ]

    def get(self, name: str) -> AppSnapshot | None:
        with self._lock:
            record = self._records.get(name)
            return record.snapshot() if record else None

    def now(self) -> float:
        """Current time on the clock retry deadlines are measured with."""
        return self._clock()

    def owner_of(self, name: str) -> str | None:
        """Rule currently tracking ``name``, if any."""
        with self._lock:
            record = self._records.get(name)
            if record is None or record.state == AppState.ABSENT:
                return None
            return record.descriptor.rule_name

    def transitions(self, name: str) -> list[tuple[AppState, AppState]]:
        with self._lock:
            record = self._records.get(name)
            return list(record.transitions) if record else []

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            self._closed = True
            for timer in self._retry_timers.values():
                timer.cancel()
            self._retry_timers.clear()
        self._rollouts.shutdown(wait=wait)
        self._workers.shutdown(wait=wait)

    # -- rollouts ---------------------------------------------------------

    def _busy(self) -> bool:
        return (
            bool(self._active_rollouts)
            or bool(self._retry_timers)
            or any(s.running for s in self._slots.values())
        )

    def _start_rollout(self, rule_name: str) -> None:
        self._active_rollouts.add(rule_name)
        self._rollouts.submit(self._drive, rule_name)

    def _cancel_removed(self, rule_name: str, desired_names: set[str]) -> None:
        """Cancel in-flight applies of identities the rule no longer declares.

        The running rollout may be waiting on exactly those applies, so the
        removal cannot wait for the next rollout to cancel them.
        """
        for name, record in self._records.items():
            if record.descriptor.rule_name != rule_name or name in desired_names:
                continue
            slot = self._slots.get(name)
            if slot is not None:
                self._cancel_in_flight(name, slot)

    def _cancel_in_flight(self, name: str, slot: _Slot) -> None:
        # A check may turn into a self-heal apply, so it is cancelled too.
        if slot.running and slot.action in (Action.APPLY, Action.CHECK):
            logger.info(f"{name}: removed from desired state, cancelling in-flight apply")
            slot.cancel.set()

    def _drive(self, rule_name: str) -> None:
        while True:
            with self._lock:
                pending = self._pending_rollouts.pop(rule_name, None)
                if pending is None:
                    self._active_rollouts.discard(rule_name)
                    self._idle.notify_all()
                    return
            desired, revision = pending
            try:
                self._rollout(rule_name, desired, revision)
            except Exception:
                logger.exception(f"Rollout of rule {rule_name!r} failed")

    def _rollout(
        self,
        rule_name: str,
        desired: frozenset[ApplicationDescriptor],
        revision: str,
    ) -> None:
        now = self._clock()
        futures: list[Future] = []
        waves: dict[int, list[tuple[Action, ApplicationDescriptor]]] = defaultdict(list)

        with self._lock:
            desired_names = {d.name for d in desired}
            for descriptor in sorted(desired, key=lambda d: d.name):
                action = self._desired_action(rule_name, descriptor, revision, now)
                if action is not None:
                    waves[descriptor.wave].append((action, descriptor))

            removed = [
                r for r in self._records.values()
                if r.descriptor.rule_name == rule_name
                and r.name not in desired_names
                and r.state != AppState.ABSENT
            ]
            for record in sorted(removed, key=lambda r: r.name):
                action = self._removal_action(record, now)
                if action is not None:
                    futures.append(self._submit(action, record.descriptor))

        for wave in sorted(waves):
            with self._lock:
                batch = [self._submit(action, d) for action, d in waves[wave]]
            logger.debug(f"Rule {rule_name!r}: wave {wave} started ({len(batch)} app(s))")
            wait(batch)
            futures.extend(batch)
        wait(futures)

    def _desired_action(
        self,
        rule_name: str,
        descriptor: ApplicationDescriptor,
        revision: str,
        now: float,
    ) -> Action | None:
        record = self._records.get(descriptor.name)
        if record is None:
            self._records[descriptor.name] = AppRecord(descriptor=descriptor)
            return Action.APPLY

        if record.state != AppState.ABSENT and record.descriptor.rule_name != rule_name:
            logger.error(
                f"{descriptor.name} is already managed by rule "
                f"{record.descriptor.rule_name!r}; ignoring rule {rule_name!r}"
            )
            return None

        if record.state == AppState.ABSENT or record.descriptor != descriptor:
            return Action.APPLY
        if record.state == AppState.ERROR:
            if record.denied_key is not None:
                # Without a revision from the watcher the source counts as unchanged.
                current = self._deny_key(descriptor, revision or record.denied_key[2])
                return None if current == record.denied_key else Action.APPLY
            if record.next_retry_at is not None and now < record.next_retry_at:
                return None
            return Action.APPLY
        if record.state in (AppState.SYNCED, AppState.OUT_OF_SYNC):
            return Action.CHECK
        slot = self._slots.get(descriptor.name)
        if record.state == AppState.PENDING and not (slot and slot.running):
            return Action.APPLY
        # Pending or Pruning with an operation in flight.
        return None

    def _removal_action(self, record: AppRecord, now: float) -> Action | None:
        if record.pending_delete or record.state == AppState.PRUNING:
            if record.next_retry_at is not None and now < record.next_retry_at:
                return None
            return Action.DELETE
        if record.descriptor.sync_policy.auto_prune:
            return Action.DELETE
        return Action.RELEASE

    def _deny_key(self, descriptor: ApplicationDescriptor, revision: str) -> tuple[str, str, str]:
        return (
            descriptor.fingerprint(),
            self.gate.project_fingerprint(descriptor.project),
            revision,
        )

    # -- per-identity serialization --------------------------------------

    def _submit(self, action: Action, descriptor: ApplicationDescriptor) -> Future:
        """Run ``action`` for the identity, or queue it behind the running one."""
        slot = self._slots.setdefault(descriptor.name, _Slot())
        if slot.running:
            if action in (Action.DELETE, Action.RELEASE):
                self._cancel_in_flight(descriptor.name, slot)
            if slot.queued is not None:
                future = slot.queued[2]
            else:
                future = Future()
            slot.queued = (action, descriptor, future)
            return future

        future = Future()
        slot.running = True
        self._workers.submit(self._run_slot, descriptor.name, action, descriptor, future)
        return future

    def _run_slot(
        self,
        name: str,
        action: Action,
        descriptor: ApplicationDescriptor,
        future: Future,
    ) -> None:
        while True:
            with self._lock:
                slot = self._slots[name]
                slot.action = action
                slot.cancel = threading.Event()
                cancel = slot.cancel
            try:
                self._execute(name, action, descriptor, cancel)
            except AppSetError as e:
                with self._lock:
                    self._fail(self._records[name], e, deleting=action == Action.DELETE)
            except Exception as e:
                logger.exception(f"{name}: {action.value} failed unexpectedly")
                with self._lock:
                    self._fail(self._records[name], e, deleting=action == Action.DELETE)
            finally:
                future.set_result(None)

            with self._lock:
                if slot.queued is not None:
                    action, descriptor, future = slot.queued
                    slot.queued = None
                    continue
                slot.running = False
                slot.action = None
                self._idle.notify_all()
                return

    # -- operations -------------------------------------------------------

    def _execute(
        self,
        name: str,
        action: Action,
        descriptor: ApplicationDescriptor,
        cancel: threading.Event,
    ) -> None:
        with self._lock:
            record = self._records[name]

        if action == Action.APPLY:
            with self._lock:
                record.descriptor = descriptor
                record.pending_delete = False
                record.transition(AppState.PENDING)
            self._apply(record, descriptor, cancel)
        elif action == Action.CHECK:
            self._check(record, descriptor, cancel)
        elif action == Action.DELETE:
            self._delete(record)
        elif action == Action.RELEASE:
            with self._lock:
                if record.state in (AppState.ABSENT, AppState.PRUNING):
                    return
                record.transition(AppState.ABSENT)
                self._reset(record)
            logger.info(f"{name}: released; auto-prune is off, live resources left in place")

    def _apply(
        self,
        record: AppRecord,
        descriptor: ApplicationDescriptor,
        cancel: threading.Event,
        rendered: RenderedSource | None = None,
    ) -> None:
        try:
            if rendered is None:
                rendered = self.executor.render(descriptor)
            if not self._authorize(record, descriptor, rendered):
                return
            result = self.executor.apply(descriptor, rendered, cancel)
        except SyncCancelled as e:
            logger.info(str(e))
            with self._lock:
                record.last_result = SyncResult.from_error(record.name, e)
            return
        except AppSetError as e:
            with self._lock:
                self._fail(record, e)
            return
        with self._lock:
            self._succeed(record, result)

    def _authorize(
        self,
        record: AppRecord,
        descriptor: ApplicationDescriptor,
        rendered: RenderedSource,
    ) -> bool:
        """Ask the gate; a deny is recorded as Error and memoized."""
        decision = self.gate.authorize(descriptor, rendered.manifests)
        with self._lock:
            if not decision.allowed:
                self._fail(
                    record,
                    PermissionDenied(decision.reason),
                    revision=rendered.revision,
                    denied_key=self._deny_key(descriptor, rendered.revision),
                )
                return False
            record.authorized_project = self.gate.project_fingerprint(descriptor.project)
            return True

    def _check(
        self,
        record: AppRecord,
        descriptor: ApplicationDescriptor,
        cancel: threading.Event,
    ) -> None:
        with self._lock:
            if record.state not in (AppState.SYNCED, AppState.OUT_OF_SYNC):
                return
            project_changed = (
                self.gate.project_fingerprint(descriptor.project) != record.authorized_project
            )

        rendered = None
        if project_changed:
            # The project was edited since the last apply; re-decide before reporting.
            rendered = self.executor.render(descriptor)
            if not self._authorize(record, descriptor, rendered):
                return

        result = self.executor.check(descriptor, rendered)
        if result.status == SyncStatus.SYNCED:
            with self._lock:
                self._succeed(record, result)
            return

        with self._lock:
            if record.state == AppState.SYNCED:
                logger.warning(
                    f"{record.name}: drift detected: {', '.join(result.drifted) or 'unknown'}"
                )
            record.transition(AppState.OUT_OF_SYNC)
            record.last_result = result
        if descriptor.sync_policy.self_heal:
            logger.info(f"{record.name}: self-healing")
            self._apply(record, descriptor, cancel, rendered)
        else:
            self._record_history(result)

    def _delete(self, record: AppRecord) -> None:
        with self._lock:
            if record.state == AppState.ABSENT:
                return
            record.transition(AppState.PRUNING)
            record.pending_delete = True
            descriptor = record.descriptor
        try:
            deleted = self.executor.delete(descriptor)
        except ApplyError as e:
            with self._lock:
                self._fail(record, e, deleting=True)
            return

        result = SyncResult(
            name=record.name,
            status=SyncStatus.SYNCED,
            health=HealthStatus.HEALTHY,
            message="deleted",
            pruned=deleted,
        )
        with self._lock:
            record.transition(AppState.ABSENT)
            record.pending_delete = False
            self._reset(record)
            record.last_result = result
        self._record_history(result)

    # -- retries ----------------------------------------------------------

    def _arm_retry(self, record: AppRecord, delay: float) -> None:
        self._disarm_retry(record.name)
        if self._closed:
            return
        timer = threading.Timer(delay, self._retry_due, args=(record.name,))
        timer.daemon = True
        self._retry_timers[record.name] = timer
        timer.start()

    def _disarm_retry(self, name: str) -> None:
        timer = self._retry_timers.pop(name, None)
        if timer is not None:
            timer.cancel()

    def _retry_due(self, name: str) -> None:
        """Timer callback: re-run the rule that owns ``name``."""
        with self._lock:
            if self._retry_timers.get(name) is not threading.current_thread():
                return
            del self._retry_timers[name]
            record = self._records.get(name)
            if not self._closed and record is not None and record.next_retry_at is not None:
                record.next_retry_at = min(record.next_retry_at, self._clock())
                rule_name = record.descriptor.rule_name
                if rule_name not in self._pending_rollouts and rule_name in self._last_desired:
                    self._pending_rollouts[rule_name] = self._last_desired[rule_name]
                if rule_name not in self._active_rollouts:
                    self._start_rollout(rule_name)
            self._idle.notify_all()

    # -- bookkeeping (called with the lock held) --------------------------

    def _reset(self, record: AppRecord) -> None:
        record.attempts = 0
        record.next_retry_at = None
        record.denied_key = None
        self._disarm_retry(record.name)

    def _succeed(self, record: AppRecord, result: SyncResult) -> None:
        self._reset(record)
        record.transition(
            AppState.SYNCED if result.status == SyncStatus.SYNCED else AppState.OUT_OF_SYNC
        )
        record.last_result = result
        self._record_history(result)

    def _fail(
        self,
        record: AppRecord,
        error: Exception,
        revision: str = "",
        denied_key: tuple[str, str, str] | None = None,
        deleting: bool = False,
    ) -> None:
        record.attempts += 1
        record.denied_key = denied_key
        if denied_key is not None:
            # Only a change to the descriptor, project or source retries a deny.
            record.next_retry_at = None
            self._disarm_retry(record.name)
        else:
            delay = self.retry.delay(record.attempts - 1)
            record.next_retry_at = self._clock() + delay
            if record.attempts <= self.retry.limit:
                self._arm_retry(record, delay)
            else:
                self._disarm_retry(record.name)
        if deleting:
            record.pending_delete = True
        if record.state != AppState.ABSENT:
            record.transition(AppState.ERROR)
        record.last_result = SyncResult.from_error(record.name, error, revision=revision)
        logger.error(f"{record.name}: {record.last_result.cause}")
        self._record_history(record.last_result)

    def _record_history(self, result: SyncResult) -> None:
        if self.history is not None:
            self.history.record(result)
