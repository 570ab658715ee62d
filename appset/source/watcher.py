"""Source watcher — discover matching directories, surviving transient failures.

A fetch that fails after its retry budget never turns into "no directories":
the last set observed successfully is returned instead, and the failure is
kept on the tree's WatchStatus. Only a tree that has never been read
successfully raises FetchError.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field, replace
from typing import Callable

from appset.backoff import Backoff, retry_call
from appset.errors import FetchError
from appset.models.application import now_iso
from appset.models.rule import select_paths
from appset.source.tree import SourceProvider, SourceTree

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WatchStatus:
    """What the watcher last knew about one tree."""

    repo_url: str
    revision: str = ""  # last resolved commit
    paths: frozenset[str] = field(default_factory=frozenset)
    last_success: str = ""
    last_error: str = ""
    stale: bool = False


class SourceWatcher:
    """Observes SourceTrees and caches the last-known-good result per tree."""

    def __init__(
        self,
        provider: SourceProvider,
        backoff: Backoff | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.provider = provider
        self.backoff = backoff or Backoff(limit=3, base_seconds=2.0, max_seconds=30.0)
        self._sleep = sleep
        self._status: dict[SourceTree, WatchStatus] = {}
        self._lock = threading.Lock()

    def observe(self, tree: SourceTree) -> frozenset[str]:
        """Return the directories in ``tree`` that match its patterns.

        Raises:
            FetchError: The fetch failed and no earlier result exists.
        """
        try:
            commit, directories = retry_call(
                lambda: self._fetch(tree),
                self.backoff,
                retry_on=(FetchError,),
                sleep=self._sleep,
                description=f"fetch {tree.repo_url}@{tree.revision}",
            )
        except FetchError as e:
            with self._lock:
                previous = self._status.get(tree)
                if previous is None or not previous.last_success:
                    self._status[tree] = WatchStatus(
                        repo_url=tree.repo_url, last_error=str(e), stale=True,
                    )
                    raise
                self._status[tree] = replace(previous, last_error=str(e), stale=True)
            logger.warning(
                f"Keeping last-known-good directories for {tree.repo_url} "
                f"({len(previous.paths)} path(s)) after fetch failure: {e}"
            )
            return previous.paths

        paths = select_paths(directories, tree.include, tree.exclude)
        with self._lock:
            previous = self._status.get(tree)
            if previous is None or previous.revision != commit:
                logger.info(
                    f"{tree.repo_url}@{tree.revision} -> {commit[:12]}: "
                    f"{len(paths)} matching director{'y' if len(paths) == 1 else 'ies'}"
                )
            self._status[tree] = WatchStatus(
                repo_url=tree.repo_url,
                revision=commit,
                paths=paths,
                last_success=now_iso(),
            )
        return paths

    def _fetch(self, tree: SourceTree) -> tuple[str, list[str]]:
        commit = self.provider.resolve(tree.repo_url, tree.revision, refresh=True)
        return commit, self.provider.list_directories(tree.repo_url, commit)

    def status(self, tree: SourceTree) -> WatchStatus | None:
        with self._lock:
            return self._status.get(tree)

    def revision(self, tree: SourceTree) -> str:
        status = self.status(tree)
        return status.revision if status else ""
