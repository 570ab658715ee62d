"""Sync executor — the only component that mutates live state.

One call brings one application's owned resources to the manifests at its
source path:
1. Render: read manifests, default namespaces, stamp ownership labels
2. Plan: diff against what is live (``appset.sync.diff``)
3. Apply creates and updates in dependency order, compare-and-set
4. Prune owned leftovers when auto-prune is on
5. Verify and assess health
"""

from __future__ import annotations

import copy
import logging
import threading
from dataclasses import dataclass, field
from typing import Any

from appset.errors import ConflictError, ManifestError, SyncCancelled
from appset.models.application import (
    ApplicationDescriptor,
    HealthStatus,
    ResourceKey,
    SyncResult,
    SyncStatus,
    is_cluster_scoped,
)
from appset.source.tree import SourceProvider
from appset.sync import health
from appset.sync.diff import SyncPlan, compute_plan, sort_for_delete
from appset.sync.target import Target, Targets, resource_version

logger = logging.getLogger(__name__)


@dataclass
class RenderedSource:
    """Manifests ready to apply, read at one source commit.

    ``namespace`` is the Namespace object added for ``create_namespace``. It
    is not part of the application's declared resources: it carries no
    ownership labels and is never pruned.
    """

    revision: str
    manifests: list[dict[str, Any]] = field(default_factory=list)
    namespace: dict[str, Any] | None = None

    def all_manifests(self) -> list[dict[str, Any]]:
        extra = [self.namespace] if self.namespace is not None else []
        return extra + list(self.manifests)


class SyncExecutor:
    """Renders, plans and applies applications against their targets."""

    def __init__(self, source: SourceProvider, targets: Targets):
        self.source = source
        self.targets = targets

    def render(self, descriptor: ApplicationDescriptor) -> RenderedSource:
        """Read and prepare the manifests at ``descriptor.source``.

        Raises:
            FetchError: The source cannot be read.
            ManifestError: A manifest is invalid or declared twice.
        """
        src = descriptor.source
        commit = self.source.resolve(src.repo_url, src.revision, refresh=False)
        raw = self.source.read_manifests(src.repo_url, commit, src.path)

        namespace = descriptor.destination.namespace
        labels = descriptor.owner_labels()
        manifests = []
        seen: set[ResourceKey] = set()
        for original in raw:
            manifest = copy.deepcopy(original)
            metadata = manifest.setdefault("metadata", {})
            if is_cluster_scoped(manifest.get("kind", "")):
                metadata.pop("namespace", None)
            elif not metadata.get("namespace"):
                metadata["namespace"] = namespace
            metadata["labels"] = {**(metadata.get("labels") or {}), **labels}

            key = ResourceKey.from_manifest(manifest)
            if key in seen:
                raise ManifestError(f"{descriptor.name}: {key} is declared more than once")
            seen.add(key)
            manifests.append(manifest)

        rendered = RenderedSource(revision=commit, manifests=manifests)
        namespace_key = ResourceKey("", "Namespace", "", namespace)
        if descriptor.sync_policy.create_namespace and namespace_key not in seen:
            rendered.namespace = {
                "apiVersion": "v1",
                "kind": "Namespace",
                "metadata": {"name": namespace},
            }
        return rendered

    def _observe(
        self, descriptor: ApplicationDescriptor, target: Target, rendered: RenderedSource
    ) -> SyncPlan:
        live = {}
        for manifest in rendered.all_manifests():
            key = ResourceKey.from_manifest(manifest)
            obj = target.get(key)
            if obj is not None:
                live[key] = obj
        owned = target.list_owned(descriptor.name)
        return compute_plan(
            rendered.all_manifests(), live, owned, prune=descriptor.sync_policy.auto_prune
        )

    def check(
        self, descriptor: ApplicationDescriptor, rendered: RenderedSource | None = None
    ) -> SyncResult:
        """Compare live state with desired state without changing anything."""
        rendered = rendered or self.render(descriptor)
        target = self.targets.for_cluster(descriptor.destination.cluster)
        plan = self._observe(descriptor, target, rendered)
        return self._result(descriptor, target, rendered, plan)

    def apply(
        self,
        descriptor: ApplicationDescriptor,
        rendered: RenderedSource | None = None,
        cancel: threading.Event | None = None,
    ) -> SyncResult:
        """Bring live state to ``rendered`` (rendered now if not given).

        ``cancel`` is checked before every resource; once set, the apply
        stops there and raises SyncCancelled.

        Raises:
            ApplyError: The target rejected a resource.
            SyncCancelled: ``cancel`` was set.
        """
        rendered = rendered or self.render(descriptor)
        target = self.targets.for_cluster(descriptor.destination.cluster)
        plan = self._observe(descriptor, target, rendered)

        applied: list[str] = []
        pruned: list[str] = []
        conflicts: list[str] = []

        for desired, live in plan.steps():
            _check_cancel(cancel, descriptor)
            key = ResourceKey.from_manifest(desired)
            try:
                target.apply(desired, resource_version(live))
            except ConflictError as e:
                logger.warning(f"{descriptor.name}: {e}")
                conflicts.append(str(key))
                continue
            applied.append(str(key))

        for obj in plan.prune:
            _check_cancel(cancel, descriptor)
            key = ResourceKey.from_manifest(obj)
            try:
                if target.delete(key, resource_version(obj)):
                    pruned.append(str(key))
                    logger.info(f"{descriptor.name}: pruned {key}")
            except ConflictError as e:
                logger.warning(f"{descriptor.name}: {e}")
                conflicts.append(str(key))

        verified = self._observe(descriptor, target, rendered) if applied or pruned else plan
        result = self._result(descriptor, target, rendered, verified)
        result.applied = applied
        result.pruned = pruned
        if conflicts:
            result.status = SyncStatus.OUT_OF_SYNC
            note = f"changed concurrently, retried next cycle: {', '.join(conflicts)}"
            result.message = f"{result.message}; {note}" if result.message else note
        return result

    def delete(self, descriptor: ApplicationDescriptor) -> list[str]:
        """Delete every owned live resource, in reverse apply order.

        Idempotent: resources that are already gone are skipped. Returns the
        keys actually deleted.
        """
        target = self.targets.for_cluster(descriptor.destination.cluster)
        deleted = []
        for obj in sort_for_delete(target.list_owned(descriptor.name)):
            key = ResourceKey.from_manifest(obj)
            if target.delete(key):
                deleted.append(str(key))
                logger.info(f"{descriptor.name}: deleted {key}")
        return deleted

    def _result(
        self,
        descriptor: ApplicationDescriptor,
        target: Target,
        rendered: RenderedSource,
        plan: SyncPlan,
    ) -> SyncResult:
        status = SyncStatus.SYNCED if plan.in_sync else SyncStatus.OUT_OF_SYNC
        health_status, reasons = self._assess(target, rendered)
        messages = list(reasons)
        if plan.extraneous:
            names = ", ".join(str(ResourceKey.from_manifest(m)) for m in plan.extraneous)
            messages.append(f"not pruned (auto-prune disabled): {names}")
        return SyncResult(
            name=descriptor.name,
            status=status,
            health=health_status,
            revision=rendered.revision,
            message="; ".join(messages),
            drifted=plan.drifted(),
        )

    def _assess(self, target: Target, rendered: RenderedSource) -> tuple[HealthStatus, list[str]]:
        statuses = []
        reasons = []
        declared = {ResourceKey.from_manifest(m) for m in rendered.all_manifests()}
        for manifest in rendered.manifests:
            key = ResourceKey.from_manifest(manifest)
            status, reason = health.assess(target.get(key))
            statuses.append(status)
            if reason and status != HealthStatus.HEALTHY:
                reasons.append(f"{key}: {reason}")

            for secret in health.image_pull_secrets(manifest):
                secret_key = ResourceKey("", "Secret", key.namespace, secret)
                if secret_key not in declared and target.get(secret_key) is None:
                    statuses.append(HealthStatus.DEGRADED)
                    reasons.append(f"{key}: image pull secret {key.namespace}/{secret} not found")
        return health.aggregate(statuses), reasons


def _check_cancel(cancel: threading.Event | None, descriptor: ApplicationDescriptor) -> None:
    if cancel is not None and cancel.is_set():
        raise SyncCancelled(f"{descriptor.name}: apply cancelled")
