"""Controller — the poll loop that feeds the reconciler.

Each poll is a single-threaded expansion step: observe every rule's source
tree, expand the matched paths into descriptors, and hand the desired sets
to the Reconciler, which does the actual work on its own threads. A poll
happens on a timer or as soon as ``refresh`` is called.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from appset.config.loader import ControllerConfig
from appset.errors import FetchError, NamingCollisionError, TemplateError
from appset.generator.engine import expand
from appset.models.application import ApplicationDescriptor, now_iso
from appset.models.rule import GeneratorRule
from appset.reconciler.reconciler import Reconciler
from appset.reconciler.state import AppSnapshot
from appset.source.tree import GitSourceProvider, SourceProvider, SourceTree
from appset.source.watcher import SourceWatcher
from appset.sync.executor import SyncExecutor
from appset.sync.gate import ProjectGate
from appset.sync.history import SyncHistory
from appset.sync.target import Targets

logger = logging.getLogger(__name__)


@dataclass
class RuleStatus:
    """Outcome of the latest poll for one rule."""

    name: str
    repo_url: str
    revision: str = ""
    paths: list[str] = field(default_factory=list)
    applications: list[str] = field(default_factory=list)
    stale: bool = False
    error: str = ""
    last_poll: str = ""
    last_success: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "repo_url": self.repo_url,
            "revision": self.revision,
            "paths": list(self.paths),
            "applications": list(self.applications),
            "stale": self.stale,
            "error": self.error,
            "last_poll": self.last_poll,
            "last_success": self.last_success,
        }


class Controller:
    """Wires watcher, generator, gate, executor and reconciler together."""

    def __init__(
        self,
        config: ControllerConfig,
        source: SourceProvider | None = None,
        targets: Targets | None = None,
        sleep: Callable[[float], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        settings = config.settings
        self.config = config
        self.source = source or GitSourceProvider(
            cache_dir=settings.cache_dir or None,
            timeout=settings.operation_timeout_seconds,
        )
        self.targets = targets or Targets.kubectl(timeout=settings.operation_timeout_seconds)
        self.history = SyncHistory(settings.history_dir) if settings.history_dir else None
        self.gate = ProjectGate(config.projects)
        self.watcher = SourceWatcher(self.source, settings.fetch, sleep=sleep or time.sleep)
        self.executor = SyncExecutor(self.source, self.targets)
        self.reconciler = Reconciler(
            self.executor,
            self.gate,
            max_concurrency=settings.max_concurrency,
            retry=settings.retry,
            history=self.history,
            clock=clock,
        )

        self._last_good: dict[str, frozenset[ApplicationDescriptor]] = {}
        self._rule_status: dict[str, RuleStatus] = {}
        self._known_rules: set[str] = set()
        self._poll_lock = threading.Lock()
        self._wake = threading.Event()
        self._stop = threading.Event()

    # -- expansion --------------------------------------------------------

    def _expand_rule(
        self, rule: GeneratorRule
    ) -> tuple[frozenset[ApplicationDescriptor] | None, frozenset[str], Exception | None]:
        """Desired set for one rule, or None with the error that prevented it."""
        tree = SourceTree.for_rule(rule)
        try:
            paths = self.watcher.observe(tree)
        except FetchError as e:
            logger.error(f"Rule {rule.name!r}: {e}")
            return None, frozenset(), e
        try:
            return frozenset(expand(rule, paths)), paths, None
        except (NamingCollisionError, TemplateError) as e:
            logger.error(f"Rule {rule.name!r}: {e}")
            return None, paths, e

    def preview(self) -> dict[str, tuple[list[ApplicationDescriptor], str]]:
        """Expand every rule without reconciling: descriptors and error per rule."""
        results = {}
        for rule in sorted(self.config.rules, key=lambda r: r.name):
            desired, _, error = self._expand_rule(rule)
            descriptors = sorted(desired or (), key=lambda d: (d.wave, d.name))
            message = f"{getattr(error, 'kind', 'Error')}: {error}" if error else ""
            results[rule.name] = (descriptors, message)
        return results

    def poll_once(self) -> dict[str, frozenset[ApplicationDescriptor]]:
        """Observe, expand and hand every rule's desired set to the reconciler.

        A rule that cannot be expanded (fetch failure with nothing cached, a
        naming collision, a bad template) keeps its last good desired set so
        that nothing is pruned because of the failure. Rules are processed by
        name; an identity already claimed by an earlier rule is a collision
        for the later one.
        """
        with self._poll_lock:
            desired_by_rule: dict[str, frozenset[ApplicationDescriptor]] = {}
            revisions: dict[str, str] = {}
            claimed: dict[str, str] = {}

            for rule in sorted(self.config.rules, key=lambda r: r.name):
                desired, paths, error = self._expand_rule(rule)
                if desired is not None:
                    clashes = {d.name: claimed[d.name] for d in desired if d.name in claimed}
                    if clashes:
                        error = NamingCollisionError(
                            rule.name,
                            {name: [f"rule:{other}", f"rule:{rule.name}"]
                             for name, other in clashes.items()},
                        )
                        logger.error(str(error))
                        desired = None
                    else:
                        self._last_good[rule.name] = desired
                if desired is None:
                    desired = frozenset(
                        d for d in self._last_good.get(rule.name, frozenset())
                        if d.name not in claimed
                    )
                for descriptor in desired:
                    claimed[descriptor.name] = rule.name

                desired_by_rule[rule.name] = desired
                tree = SourceTree.for_rule(rule)
                revisions[rule.name] = self.watcher.revision(tree)
                self._update_rule_status(rule, tree, paths, desired, error)

            current = set(desired_by_rule)
            for removed in sorted(self._known_rules - current):
                logger.info(f"Rule {removed!r} was removed from configuration")
                desired_by_rule[removed] = frozenset()
                self._last_good.pop(removed, None)
                self._rule_status.pop(removed, None)
            self._known_rules = current

            self.reconciler.reconcile(desired_by_rule, revisions)
            return desired_by_rule

    def _update_rule_status(
        self,
        rule: GeneratorRule,
        tree: SourceTree,
        paths: frozenset[str],
        desired: frozenset[ApplicationDescriptor],
        error: Exception | None,
    ) -> None:
        watch = self.watcher.status(tree)
        message = ""
        if error is not None:
            message = f"{getattr(error, 'kind', type(error).__name__)}: {error}"
        elif watch is not None and watch.stale:
            message = f"FetchError: {watch.last_error}"
        self._rule_status[rule.name] = RuleStatus(
            name=rule.name,
            repo_url=rule.repo_url,
            revision=watch.revision if watch else "",
            paths=sorted(paths),
            applications=sorted(d.name for d in desired),
            stale=bool(watch and watch.stale),
            error=message,
            last_poll=now_iso(),
            last_success=watch.last_success if watch else "",
        )

    # -- scheduling -------------------------------------------------------

    def run_once(self, timeout: float | None = None) -> list[AppSnapshot]:
        """Poll, wait for every rollout to finish and return the app status."""
        self.poll_once()
        if not self.reconciler.wait_idle(timeout):
            logger.warning(f"Reconciliation still running after {timeout}s")
        return self.status()

    def run_forever(self, stop: threading.Event | None = None) -> None:
        """Poll every ``poll_interval_seconds`` until stopped; ``refresh`` polls early."""
        stop = stop or self._stop
        logger.info(
            f"Controller started: {len(self.config.rules)} rule(s), "
            f"polling every {self.config.settings.poll_interval_seconds}s"
        )
        while not stop.is_set():
            try:
                self.poll_once()
            except Exception:
                logger.exception("Poll failed")
            self._wake.wait(self.config.settings.poll_interval_seconds)
            self._wake.clear()
        logger.info("Controller stopped")

    def refresh(self) -> None:
        """Request a poll now (e.g. from a push webhook)."""
        self._wake.set()

    def stop(self) -> None:
        self._stop.set()
        self._wake.set()

    def reload(self, config: ControllerConfig) -> None:
        """Switch to a new configuration; takes effect at the next poll."""
        with self._poll_lock:
            self.config = config
            self.gate.projects = dict(config.projects)
        self.refresh()

    # -- queries ----------------------------------------------------------

    def status(self) -> list[AppSnapshot]:
        return self.reconciler.status()

    def get(self, name: str) -> AppSnapshot | None:
        return self.reconciler.get(name)

    def rule_status(self) -> list[RuleStatus]:
        with self._poll_lock:
            return [self._rule_status[name] for name in sorted(self._rule_status)]

    def shutdown(self) -> None:
        self.stop()
        self.reconciler.shutdown()
