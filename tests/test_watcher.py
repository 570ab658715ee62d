"""Tests for the source watcher's retry and last-known-good behavior."""

import pytest

from appset.backoff import Backoff, retry_call
from appset.errors import FetchError
from appset.source.tree import SourceProvider, SourceTree
from appset.source.watcher import SourceWatcher


class FakeProvider(SourceProvider):
    """Serves a fixed directory list; fails while ``failures`` is positive."""

    def __init__(self, directories, failures=0):
        self.directories = list(directories)
        self.failures = failures
        self.commit = "c1"
        self.calls = 0

    def resolve(self, repo_url, revision, refresh=True):
        self.calls += 1
        if self.failures > 0:
            self.failures -= 1
            raise FetchError("connection refused", repo_url=repo_url)
        return self.commit

    def list_directories(self, repo_url, commit):
        return list(self.directories)

    def read_files(self, repo_url, commit, path):
        return []


TREE = SourceTree(repo_url="https://git.example.com/platform.git", include=("services/*",))
NO_WAIT = Backoff(limit=2, base_seconds=0.0, jitter=False)


def test_observe_filters_by_patterns():
    provider = FakeProvider(["services", "services/a", "services/b", "services/a/x", "docs"])
    watcher = SourceWatcher(provider, NO_WAIT, sleep=lambda s: None)
    assert watcher.observe(TREE) == frozenset({"services/a", "services/b"})

    status = watcher.status(TREE)
    assert status.revision == "c1"
    assert not status.stale
    assert status.last_success


def test_transient_failure_is_retried():
    sleeps = []
    provider = FakeProvider(["services/a"], failures=2)
    watcher = SourceWatcher(provider, Backoff(limit=3, base_seconds=1.0, jitter=False), sleep=sleeps.append)

    assert watcher.observe(TREE) == frozenset({"services/a"})
    assert provider.calls == 3
    assert sleeps == [1.0, 2.0]


def test_exhausted_retries_keep_last_known_good():
    provider = FakeProvider(["services/a", "services/b"])
    watcher = SourceWatcher(provider, NO_WAIT, sleep=lambda s: None)
    assert watcher.observe(TREE) == frozenset({"services/a", "services/b"})

    provider.failures = 10
    provider.directories = []
    assert watcher.observe(TREE) == frozenset({"services/a", "services/b"})

    status = watcher.status(TREE)
    assert status.stale
    assert "connection refused" in status.last_error
    assert status.revision == "c1"


def test_never_fetched_raises():
    provider = FakeProvider(["services/a"], failures=10)
    watcher = SourceWatcher(provider, NO_WAIT, sleep=lambda s: None)
    with pytest.raises(FetchError):
        watcher.observe(TREE)
    assert watcher.status(TREE).stale
    assert watcher.revision(TREE) == ""


def test_recovery_clears_stale_flag():
    provider = FakeProvider(["services/a"])
    watcher = SourceWatcher(provider, NO_WAIT, sleep=lambda s: None)
    watcher.observe(TREE)
    provider.failures = 10
    watcher.observe(TREE)
    provider.failures = 0
    provider.commit = "c2"
    watcher.observe(TREE)

    status = watcher.status(TREE)
    assert not status.stale
    assert status.last_error == ""
    assert status.revision == "c2"


def test_retry_call_only_retries_listed_errors():
    calls = []

    def boom():
        calls.append(1)
        raise ValueError("not retried")

    with pytest.raises(ValueError):
        retry_call(boom, NO_WAIT, retry_on=(FetchError,), sleep=lambda s: None)
    assert len(calls) == 1


def test_backoff_is_capped():
    backoff = Backoff(limit=10, base_seconds=5.0, factor=2.0, max_seconds=30.0, jitter=False)
    assert [backoff.delay(i) for i in range(4)] == [5.0, 10.0, 20.0, 30.0]
    jittered = Backoff(base_seconds=4.0, jitter=True)
    assert 3.0 <= jittered.delay(0) <= 5.0
