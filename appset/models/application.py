"""Application descriptors, live resource keys and sync results.

An ApplicationDescriptor is derived, never authored: the generator engine
produces it from a (rule, path) pair. Everything here is frozen so that
descriptors can live in sets and be compared across polls.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


OWNER_LABEL = "appset.io/instance"
MANAGED_BY_LABEL = "appset.io/managed-by"
MANAGED_BY_VALUE = "appset"
SYNC_WAVE_ANNOTATION = "appset.io/sync-wave"

DEFAULT_CLUSTER = "in-cluster"

# Kinds that are not namespaced. Anything else is treated as namespaced.
CLUSTER_SCOPED_KINDS = frozenset({
    "APIService",
    "ClusterIssuer",
    "ClusterRole",
    "ClusterRoleBinding",
    "CustomResourceDefinition",
    "IngressClass",
    "MutatingWebhookConfiguration",
    "Namespace",
    "Node",
    "PersistentVolume",
    "PriorityClass",
    "StorageClass",
    "ValidatingWebhookConfiguration",
})


class SyncStatus(Enum):
    """Whether live state matches the desired manifests."""

    SYNCED = "Synced"
    OUT_OF_SYNC = "OutOfSync"
    ERROR = "Error"


class HealthStatus(Enum):
    """Aggregated health of an application's resources."""

    HEALTHY = "Healthy"
    PROGRESSING = "Progressing"
    DEGRADED = "Degraded"
    UNKNOWN = "Unknown"

    @property
    def severity(self) -> int:
        return _HEALTH_ORDER.index(self)


_HEALTH_ORDER = [
    HealthStatus.HEALTHY,
    HealthStatus.PROGRESSING,
    HealthStatus.DEGRADED,
    HealthStatus.UNKNOWN,
]


@dataclass(frozen=True)
class SyncPolicy:
    """Automation flags for one application."""

    auto_prune: bool = False
    self_heal: bool = False
    create_namespace: bool = False


@dataclass(frozen=True)
class SourceLocation:
    """Where an application's manifests live."""

    repo_url: str
    revision: str
    path: str


@dataclass(frozen=True)
class Destination:
    """Where an application's resources are applied."""

    namespace: str
    cluster: str = DEFAULT_CLUSTER


@dataclass(frozen=True)
class ApplicationDescriptor:
    """Desired state of one materialized deployment unit."""

    name: str
    project: str
    source: SourceLocation
    destination: Destination
    sync_policy: SyncPolicy = field(default_factory=SyncPolicy)
    rule_name: str = ""
    wave: int = 0
    labels: tuple[tuple[str, str], ...] = ()

    def fingerprint(self) -> str:
        """Stable digest of every field; changes whenever the descriptor does."""
        payload = json.dumps(asdict(self), sort_keys=True, default=str)
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:16]

    def owner_labels(self) -> dict[str, str]:
        labels = dict(self.labels)
        labels[OWNER_LABEL] = self.name
        labels[MANAGED_BY_LABEL] = MANAGED_BY_VALUE
        return labels


@dataclass(frozen=True, order=True)
class ResourceKey:
    """Identity of a single live resource."""

    group: str
    kind: str
    namespace: str
    name: str

    @classmethod
    def from_manifest(cls, manifest: dict[str, Any]) -> "ResourceKey":
        api_version = manifest.get("apiVersion", "")
        group = api_version.rsplit("/", 1)[0] if "/" in api_version else ""
        metadata = manifest.get("metadata") or {}
        return cls(
            group=group,
            kind=manifest.get("kind", ""),
            namespace=metadata.get("namespace", "") or "",
            name=metadata.get("name", ""),
        )

    def __str__(self) -> str:
        kind = f"{self.kind}.{self.group}" if self.group else self.kind
        if self.namespace:
            return f"{kind}/{self.namespace}/{self.name}"
        return f"{kind}/{self.name}"


def is_cluster_scoped(kind: str) -> bool:
    return kind in CLUSTER_SCOPED_KINDS


@dataclass
class SyncResult:
    """Outcome of one reconciliation pass for one application."""

    name: str
    status: SyncStatus
    health: HealthStatus = HealthStatus.UNKNOWN
    timestamp: str = ""
    revision: str = ""
    cause: str = ""  # "<ErrorKind>: <message>" when status is Error
    message: str = ""
    applied: list[str] = field(default_factory=list)
    pruned: list[str] = field(default_factory=list)
    drifted: list[str] = field(default_factory=list)

    def __post_init__(self):
        if not self.timestamp:
            self.timestamp = now_iso()

    @property
    def is_synced(self) -> bool:
        return self.status == SyncStatus.SYNCED

    @classmethod
    def from_error(cls, name: str, error: Exception, revision: str = "") -> "SyncResult":
        kind = getattr(error, "kind", type(error).__name__)
        return cls(
            name=name,
            status=SyncStatus.ERROR,
            health=HealthStatus.UNKNOWN,
            revision=revision,
            cause=f"{kind}: {error}",
        )

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        data["health"] = self.health.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SyncResult":
        return cls(
            name=data["name"],
            status=SyncStatus(data["status"]),
            health=HealthStatus(data.get("health", "Unknown")),
            timestamp=data.get("timestamp", ""),
            revision=data.get("revision", ""),
            cause=data.get("cause", ""),
            message=data.get("message", ""),
            applied=data.get("applied", []),
            pruned=data.get("pruned", []),
            drifted=data.get("drifted", []),
        )


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()
