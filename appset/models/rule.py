"""Generator rules — path patterns mapped to application templates."""

from __future__ import annotations

import fnmatch
from dataclasses import dataclass, field

from appset.generator.template import Template, parse_template
from appset.models.application import DEFAULT_CLUSTER, SyncPolicy


@dataclass(frozen=True)
class DirectoryMatch:
    """A directory glob; ``exclude`` entries remove matches of include entries."""

    path: str
    exclude: bool = False


@dataclass(frozen=True)
class WaveStep:
    """Assigns ``wave`` to every matched directory that fits one of ``paths``."""

    wave: int
    paths: tuple[str, ...] = ()

    def matches(self, path: str) -> bool:
        return any(match_path(pattern, path) for pattern in self.paths)


@dataclass(frozen=True)
class ApplicationTemplate:
    """Per-application fields, with path-derived parts as tagged templates."""

    name: Template
    namespace: Template
    project: str = "default"
    cluster: str = DEFAULT_CLUSTER
    path: Template = field(default_factory=lambda: parse_template("{{path}}"))
    sync_policy: SyncPolicy = field(default_factory=SyncPolicy)
    labels: tuple[tuple[str, str], ...] = ()


@dataclass(frozen=True)
class GeneratorRule:
    """A named directory generator: which paths to discover and how to name them."""

    name: str
    repo_url: str
    template: ApplicationTemplate
    revision: str = "HEAD"
    directories: tuple[DirectoryMatch, ...] = ()
    waves: tuple[WaveStep, ...] = ()

    @property
    def include_patterns(self) -> tuple[str, ...]:
        return tuple(d.path for d in self.directories if not d.exclude)

    @property
    def exclude_patterns(self) -> tuple[str, ...]:
        return tuple(d.path for d in self.directories if d.exclude)

    def wave_for(self, path: str) -> int:
        """Wave of the first step matching ``path``; 0 when none matches."""
        for step in self.waves:
            if step.matches(path):
                return step.wave
        return 0


def match_path(pattern: str, path: str) -> bool:
    """Segment-wise glob match: ``services/*`` matches ``services/a`` only.

    ``*`` never crosses a ``/``, so the pattern and the path must have the
    same number of segments.
    """
    pattern_parts = [p for p in pattern.strip("/").split("/") if p]
    path_parts = [p for p in path.strip("/").split("/") if p]
    if len(pattern_parts) != len(path_parts):
        return False
    return all(
        fnmatch.fnmatchcase(part, pat)
        for pat, part in zip(pattern_parts, path_parts)
    )


def select_paths(
    directories: list[str] | set[str] | frozenset[str],
    include: tuple[str, ...],
    exclude: tuple[str, ...] = (),
) -> frozenset[str]:
    """Return the directories matching any include pattern and no exclude pattern."""
    selected = set()
    for directory in directories:
        normalized = directory.strip("/")
        if not any(match_path(p, normalized) for p in include):
            continue
        if any(match_path(p, normalized) for p in exclude):
            continue
        selected.add(normalized)
    return frozenset(selected)
