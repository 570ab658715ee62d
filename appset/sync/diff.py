"""Diffing — minimal sync plans and drift detection.

Live objects carry fields the server adds (defaults, status, bookkeeping
metadata), so comparison is one-directional: a live object is in sync when
every field the desired manifest declares has the same value live.

Drift happens when:
1. A declared resource is missing from the target
2. A declared field was changed out-of-band
3. An owned resource is no longer declared (only pruned with auto-prune)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from appset.models.application import SYNC_WAVE_ANNOTATION, ResourceKey

# Server-managed metadata that never takes part in a comparison.
_IGNORED_METADATA = frozenset({
    "resourceVersion",
    "uid",
    "creationTimestamp",
    "generation",
    "managedFields",
    "selfLink",
    "deletionTimestamp",
})

# Apply order by kind; dependencies first. Unlisted kinds go last.
KIND_ORDER = [
    "Namespace",
    "NetworkPolicy",
    "ResourceQuota",
    "LimitRange",
    "PodSecurityPolicy",
    "PodDisruptionBudget",
    "ServiceAccount",
    "Secret",
    "ConfigMap",
    "StorageClass",
    "PersistentVolume",
    "PersistentVolumeClaim",
    "CustomResourceDefinition",
    "ClusterRole",
    "ClusterRoleBinding",
    "Role",
    "RoleBinding",
    "Service",
    "DaemonSet",
    "Pod",
    "ReplicaSet",
    "Deployment",
    "HorizontalPodAutoscaler",
    "StatefulSet",
    "Job",
    "CronJob",
    "IngressClass",
    "Ingress",
    "APIService",
]
_KIND_RANK = {kind: i for i, kind in enumerate(KIND_ORDER)}


def resource_wave(manifest: dict[str, Any]) -> int:
    annotations = (manifest.get("metadata") or {}).get("annotations") or {}
    try:
        return int(annotations.get(SYNC_WAVE_ANNOTATION, 0))
    except (TypeError, ValueError):
        return 0


def apply_order_key(manifest: dict[str, Any]) -> tuple:
    """Sort key: resource wave, kind rank, then kind/namespace/name."""
    key = ResourceKey.from_manifest(manifest)
    return (
        resource_wave(manifest),
        _KIND_RANK.get(key.kind, len(KIND_ORDER)),
        key.kind,
        key.group,
        key.namespace,
        key.name,
    )


def sort_for_apply(manifests: list[dict[str, Any]]) -> list[dict[str, Any]]:
    return sorted(manifests, key=apply_order_key)


def sort_for_delete(manifests: list[dict[str, Any]]) -> list[dict[str, Any]]:
    return sorted(manifests, key=apply_order_key, reverse=True)


def normalize(manifest: dict[str, Any]) -> dict[str, Any]:
    """Copy of ``manifest`` without status and server-managed metadata."""
    result = {k: v for k, v in manifest.items() if k != "status"}
    metadata = dict(result.get("metadata") or {})
    for name in _IGNORED_METADATA:
        metadata.pop(name, None)
    annotations = dict(metadata.get("annotations") or {})
    annotations.pop("kubectl.kubernetes.io/last-applied-configuration", None)
    if annotations:
        metadata["annotations"] = annotations
    else:
        metadata.pop("annotations", None)
    result["metadata"] = metadata
    return result


def diff_paths(desired: Any, live: Any, path: str = "") -> list[str]:
    """Paths of fields declared in ``desired`` that differ in ``live``."""
    if isinstance(desired, dict):
        if not isinstance(live, dict):
            return [path or "."]
        changed: list[str] = []
        for key, value in desired.items():
            sub = f"{path}.{key}" if path else key
            if key not in live:
                changed.append(sub)
            else:
                changed.extend(diff_paths(value, live[key], sub))
        return changed
    if isinstance(desired, list):
        if not isinstance(live, list) or len(desired) != len(live):
            return [path or "."]
        changed = []
        for i, (d, l) in enumerate(zip(desired, live)):
            changed.extend(diff_paths(d, l, f"{path}[{i}]"))
        return changed
    return [] if desired == live else [path or "."]


def is_in_sync(desired: dict[str, Any], live: dict[str, Any] | None) -> bool:
    if live is None:
        return False
    return not diff_paths(normalize(desired), normalize(live))


@dataclass
class SyncPlan:
    """What one apply has to do, in execution order."""

    create: list[dict[str, Any]] = field(default_factory=list)
    update: list[tuple[dict[str, Any], dict[str, Any]]] = field(default_factory=list)
    unchanged: list[dict[str, Any]] = field(default_factory=list)
    prune: list[dict[str, Any]] = field(default_factory=list)
    extraneous: list[dict[str, Any]] = field(default_factory=list)

    @property
    def in_sync(self) -> bool:
        return not (self.create or self.update or self.prune)

    def drifted(self) -> list[str]:
        """Human-readable list of every resource that differs from desired."""
        lines = [f"{ResourceKey.from_manifest(m)} (missing)" for m in self.create]
        for desired, live in self.update:
            fields = ", ".join(diff_paths(normalize(desired), normalize(live))[:5])
            lines.append(f"{ResourceKey.from_manifest(desired)} ({fields})")
        lines.extend(f"{ResourceKey.from_manifest(m)} (extraneous)" for m in self.prune)
        return lines

    def steps(self) -> list[tuple[dict[str, Any], dict[str, Any] | None]]:
        """``(desired, live_or_None)`` pairs to apply, in apply order."""
        pairs = [(m, None) for m in self.create] + list(self.update)
        return sorted(pairs, key=lambda pair: apply_order_key(pair[0]))


def compute_plan(
    desired: list[dict[str, Any]],
    live: dict[ResourceKey, dict[str, Any]],
    owned: list[dict[str, Any]],
    prune: bool,
) -> SyncPlan:
    """Plan the minimal changes that bring the target to ``desired``.

    Args:
        desired: Rendered manifests, namespaces already defaulted.
        live: Current live object for each desired key (absent keys missing).
        owned: Live objects carrying this application's ownership labels.
        prune: Whether owned-but-undeclared objects should be deleted.
    """
    plan = SyncPlan()
    desired_keys = set()
    for manifest in sort_for_apply(desired):
        key = ResourceKey.from_manifest(manifest)
        desired_keys.add(key)
        current = live.get(key)
        if current is None:
            plan.create.append(manifest)
        elif is_in_sync(manifest, current):
            plan.unchanged.append(manifest)
        else:
            plan.update.append((manifest, current))

    leftovers = [
        obj for obj in owned if ResourceKey.from_manifest(obj) not in desired_keys
    ]
    if prune:
        plan.prune = sort_for_delete(leftovers)
    else:
        plan.extraneous = sort_for_delete(leftovers)
    return plan
