"""Source trees and the providers that read them.

A SourceTree names what to observe (repository, revision, directory
patterns). A SourceProvider is the read-only collaborator behind it: it
resolves revisions, lists directories and reads manifests at a commit.
"""

from __future__ import annotations

import hashlib
import logging
import tempfile
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from git import GitCommandError, InvalidGitRepositoryError, NoSuchPathError, Repo
from git.exc import BadName

from appset.errors import FetchError
from appset.models.rule import GeneratorRule
from appset.source.manifests import is_manifest_file, parse_manifests

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SourceTree:
    """A path-addressable view of a repository at a revision."""

    repo_url: str
    revision: str = "HEAD"
    include: tuple[str, ...] = ()
    exclude: tuple[str, ...] = ()

    @classmethod
    def for_rule(cls, rule: GeneratorRule) -> "SourceTree":
        return cls(
            repo_url=rule.repo_url,
            revision=rule.revision,
            include=rule.include_patterns,
            exclude=rule.exclude_patterns,
        )


class SourceProvider(ABC):
    """Read-only access to a versioned source repository."""

    @abstractmethod
    def resolve(self, repo_url: str, revision: str, refresh: bool = True) -> str:
        """Resolve ``revision`` to an immutable commit id.

        With ``refresh`` the provider fetches from the remote first;
        otherwise it answers from what it fetched last.

        Raises:
            FetchError: The repository or revision cannot be read.
        """

    @abstractmethod
    def list_directories(self, repo_url: str, commit: str) -> list[str]:
        """Every directory path in the tree at ``commit``."""

    @abstractmethod
    def read_files(self, repo_url: str, commit: str, path: str) -> list[tuple[str, str]]:
        """``(file_name, text)`` for each manifest file directly under ``path``."""

    def read_manifests(self, repo_url: str, commit: str, path: str) -> list[dict[str, Any]]:
        return parse_manifests(self.read_files(repo_url, commit, path))


class LocalSourceProvider(SourceProvider):
    """A plain directory tree standing in for a repository.

    If ``root`` is None the repository URL itself is used as the directory.
    The resolved "commit" is a digest of every file's path and contents, so
    edits on disk look like new revisions.
    """

    def __init__(self, root: str | Path | None = None):
        self.root = Path(root) if root else None

    def _base(self, repo_url: str) -> Path:
        base = self.root if self.root is not None else Path(repo_url)
        if not base.is_dir():
            raise FetchError(f"Source directory not found: {base}", repo_url=repo_url)
        return base

    def resolve(self, repo_url: str, revision: str, refresh: bool = True) -> str:
        base = self._base(repo_url)
        digest = hashlib.sha1()
        for p in sorted(base.rglob("*")):
            if p.is_file():
                digest.update(str(p.relative_to(base)).encode("utf-8"))
                digest.update(p.read_bytes())
        return digest.hexdigest()

    def list_directories(self, repo_url: str, commit: str) -> list[str]:
        base = self._base(repo_url)
        return sorted(
            p.relative_to(base).as_posix()
            for p in base.rglob("*")
            if p.is_dir() and not p.name.startswith(".")
        )

    def read_files(self, repo_url: str, commit: str, path: str) -> list[tuple[str, str]]:
        directory = self._base(repo_url) / path
        if not directory.is_dir():
            raise FetchError(f"Path not found in source: {path}", repo_url=repo_url)
        return [
            (p.name, p.read_text(encoding="utf-8"))
            for p in sorted(directory.iterdir())
            if p.is_file() and is_manifest_file(p.name)
        ]


class GitSourceProvider(SourceProvider):
    """Git repositories through GitPython, with a bare-clone cache per URL."""

    def __init__(self, cache_dir: str | Path | None = None, timeout: float = 60.0):
        self.cache_dir = (
            Path(cache_dir) if cache_dir else Path(tempfile.gettempdir()) / "appset-repos"
        )
        self.timeout = timeout
        self._repos: dict[str, Repo] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, repo_url: str) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(repo_url, threading.Lock())

    def _local_path(self, repo_url: str) -> Path:
        key = hashlib.sha256(repo_url.encode("utf-8")).hexdigest()[:16]
        return self.cache_dir / key

    def _open(self, repo_url: str) -> tuple[Repo, bool]:
        """Return the cached clone, cloning it first if needed."""
        if repo_url in self._repos:
            return self._repos[repo_url], False
        local = self._local_path(repo_url)
        cloned = False
        try:
            if local.exists():
                repo = Repo(local)
            else:
                local.parent.mkdir(parents=True, exist_ok=True)
                logger.info(f"Cloning {repo_url} into {local}")
                repo = Repo.clone_from(repo_url, local, bare=True)
                cloned = True
        except (GitCommandError, InvalidGitRepositoryError, NoSuchPathError) as e:
            raise FetchError(f"Cannot clone {repo_url}: {e}", repo_url=repo_url) from e
        self._repos[repo_url] = repo
        return repo, cloned

    def resolve(self, repo_url: str, revision: str, refresh: bool = True) -> str:
        with self._lock_for(repo_url):
            repo, cloned = self._open(repo_url)
            if refresh and not cloned:
                try:
                    repo.remotes.origin.fetch(
                        refspec=["+refs/heads/*:refs/heads/*", "+refs/tags/*:refs/tags/*"],
                        prune=True,
                        kill_after_timeout=self.timeout,
                    )
                except GitCommandError as e:
                    raise FetchError(
                        f"Fetch failed for {repo_url}: {e}", repo_url=repo_url, revision=revision
                    ) from e
            try:
                return repo.commit(revision).hexsha
            except (BadName, ValueError, GitCommandError) as e:
                raise FetchError(
                    f"Unknown revision {revision!r} in {repo_url}",
                    repo_url=repo_url,
                    revision=revision,
                ) from e

    def _commit(self, repo_url: str, commit: str):
        repo, _ = self._open(repo_url)
        try:
            return repo.commit(commit)
        except (BadName, ValueError) as e:
            raise FetchError(f"Unknown commit {commit!r} in {repo_url}", repo_url=repo_url) from e

    def list_directories(self, repo_url: str, commit: str) -> list[str]:
        with self._lock_for(repo_url):
            tree = self._commit(repo_url, commit).tree
            return sorted(item.path for item in tree.traverse() if item.type == "tree")

    def read_files(self, repo_url: str, commit: str, path: str) -> list[tuple[str, str]]:
        with self._lock_for(repo_url):
            root = self._commit(repo_url, commit).tree
            try:
                tree = root / path.strip("/") if path.strip("/") else root
            except KeyError:
                raise FetchError(
                    f"Path not found in {repo_url}@{commit[:12]}: {path}", repo_url=repo_url
                ) from None
            return [
                (blob.name, blob.data_stream.read().decode("utf-8"))
                for blob in sorted(tree.blobs, key=lambda b: b.name)
                if is_manifest_file(blob.name)
            ]
