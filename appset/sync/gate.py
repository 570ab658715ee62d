"""Project/permission gate — project boundaries enforced before any apply.

The gate answers Allow or Deny(reason) for a descriptor and the manifests it
would apply. A deny is final for that attempt: the reconciler records it as
an error and does not retry until the descriptor, project or source changes.
"""

from __future__ import annotations

import fnmatch
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable

from appset.models.application import (
    ApplicationDescriptor,
    ResourceKey,
    is_cluster_scoped,
)
from appset.models.project import GroupKind, Project


class GateAction(Enum):
    ALLOW = "allow"
    DENY = "deny"


@dataclass(frozen=True)
class Decision:
    """Result of authorizing one descriptor."""

    action: GateAction
    reason: str = ""

    @property
    def allowed(self) -> bool:
        return self.action == GateAction.ALLOW


ALLOW = Decision(GateAction.ALLOW)


def deny(reason: str) -> Decision:
    return Decision(GateAction.DENY, reason)


class ProjectGate:
    """Checks descriptors against the projects they are assigned to."""

    def __init__(self, projects: dict[str, Project]):
        self.projects = dict(projects)

    def project_fingerprint(self, name: str) -> str:
        project = self.projects.get(name)
        return project.fingerprint() if project else ""

    def authorize(
        self,
        descriptor: ApplicationDescriptor,
        manifests: Iterable[dict[str, Any]] = (),
    ) -> Decision:
        """Allow or deny ``descriptor`` and the resources it declares."""
        project = self.projects.get(descriptor.project)
        if project is None:
            return deny(f"project '{descriptor.project}' does not exist")

        if not any(_glob(p, descriptor.source.repo_url) for p in project.source_repos):
            return deny(
                f"source repository '{descriptor.source.repo_url}' is not permitted "
                f"in project '{project.name}'"
            )

        cluster = descriptor.destination.cluster
        namespace = descriptor.destination.namespace
        if not _destination_allowed(project, cluster, namespace):
            return deny(
                f"destination {cluster}/{namespace} is not permitted in project '{project.name}'"
            )

        for manifest in manifests:
            key = ResourceKey.from_manifest(manifest)
            if is_cluster_scoped(key.kind):
                if not _group_kind_listed(project.cluster_resource_whitelist, key):
                    return deny(
                        f"cluster-scoped resource {_gk(key)} is not permitted "
                        f"in project '{project.name}'"
                    )
                continue

            if key.namespace and not _destination_allowed(project, cluster, key.namespace):
                return deny(
                    f"resource {key} targets namespace '{key.namespace}', which is not "
                    f"permitted in project '{project.name}'"
                )
            if not _group_kind_listed(project.namespace_resource_whitelist, key):
                return deny(
                    f"resource {_gk(key)} is not whitelisted in project '{project.name}'"
                )
            if _group_kind_listed(project.namespace_resource_blacklist, key):
                return deny(
                    f"resource {_gk(key)} is blacklisted in project '{project.name}'"
                )

        return ALLOW


def _glob(pattern: str, value: str) -> bool:
    return fnmatch.fnmatchcase(value, pattern)


def _destination_allowed(project: Project, cluster: str, namespace: str) -> bool:
    return any(
        _glob(d.cluster, cluster) and _glob(d.namespace, namespace)
        for d in project.destinations
    )


def _group_kind_listed(entries: tuple[GroupKind, ...], key: ResourceKey) -> bool:
    return any(_glob(e.group, key.group) and _glob(e.kind, key.kind) for e in entries)


def _gk(key: ResourceKey) -> str:
    return f"{key.kind}.{key.group}" if key.group else key.kind
