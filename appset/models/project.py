"""Projects — authorization boundaries for generated applications."""

from __future__ import annotations

import hashlib
import json
from dataclasses import asdict, dataclass, field


@dataclass(frozen=True)
class GroupKind:
    """A (group, kind) pattern. Both fields accept ``*`` globs."""

    group: str = "*"
    kind: str = "*"


@dataclass(frozen=True)
class ProjectDestination:
    """An allowed (cluster, namespace) pattern pair."""

    cluster: str = "*"
    namespace: str = "*"


@dataclass(frozen=True)
class Project:
    """What the applications assigned to this project may touch.

    Cluster-scoped kinds are denied unless whitelisted. Namespaced kinds are
    allowed when whitelisted and not blacklisted.
    """

    name: str
    description: str = ""
    source_repos: tuple[str, ...] = ("*",)
    destinations: tuple[ProjectDestination, ...] = (ProjectDestination(),)
    cluster_resource_whitelist: tuple[GroupKind, ...] = ()
    namespace_resource_whitelist: tuple[GroupKind, ...] = (GroupKind(),)
    namespace_resource_blacklist: tuple[GroupKind, ...] = field(default_factory=tuple)

    def fingerprint(self) -> str:
        payload = json.dumps(asdict(self), sort_keys=True)
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:16]
