"""Targets — the cluster API collaborator.

Every mutation of live state goes through ``Target.apply`` and
``Target.delete``, both compare-and-set on ``metadata.resourceVersion``: a
caller passes the version it last observed, and the call fails with
ConflictError if the object changed since. ``None`` means "must not exist"
for apply and "any version" for delete.
"""

from __future__ import annotations

import copy
import json
import logging
import subprocess
import threading
from abc import ABC, abstractmethod
from typing import Any, Callable

from appset.errors import ApplyError, ConflictError
from appset.models.application import (
    DEFAULT_CLUSTER,
    MANAGED_BY_LABEL,
    MANAGED_BY_VALUE,
    OWNER_LABEL,
    ResourceKey,
)

logger = logging.getLogger(__name__)


class Target(ABC):
    """Apply, get, delete and list-by-owner on one cluster."""

    @abstractmethod
    def get(self, key: ResourceKey) -> dict[str, Any] | None:
        """Return the live object, or None if it does not exist."""

    @abstractmethod
    def apply(self, manifest: dict[str, Any], expected_version: str | None = None) -> dict[str, Any]:
        """Create or update ``manifest``; returns the live object.

        Raises:
            ConflictError: The live version differs from ``expected_version``.
            ApplyError: The target rejected the object.
        """

    @abstractmethod
    def delete(self, key: ResourceKey, expected_version: str | None = None) -> bool:
        """Delete the object. Returns False if it was already absent."""

    @abstractmethod
    def list_owned(self, owner: str) -> list[dict[str, Any]]:
        """Every live object labelled as managed by appset for ``owner``."""


def resource_version(obj: dict[str, Any] | None) -> str | None:
    if obj is None:
        return None
    return (obj.get("metadata") or {}).get("resourceVersion")


def is_owned_by(obj: dict[str, Any], owner: str) -> bool:
    labels = (obj.get("metadata") or {}).get("labels") or {}
    return labels.get(OWNER_LABEL) == owner and labels.get(MANAGED_BY_LABEL) == MANAGED_BY_VALUE


class InMemoryTarget(Target):
    """A thread-safe fake cluster.

    ``validator`` is called with each manifest before it is stored and may
    raise ApplyError to reject it, the way an admission webhook would.
    """

    def __init__(self, validator: Callable[[dict[str, Any]], None] | None = None):
        self.validator = validator
        self._objects: dict[ResourceKey, dict[str, Any]] = {}
        self._version = 0
        self._lock = threading.Lock()
        self.operations: list[tuple[str, ResourceKey]] = []

    def _next_version(self) -> str:
        self._version += 1
        return str(self._version)

    def get(self, key: ResourceKey) -> dict[str, Any] | None:
        with self._lock:
            obj = self._objects.get(key)
            return copy.deepcopy(obj) if obj is not None else None

    def apply(self, manifest: dict[str, Any], expected_version: str | None = None) -> dict[str, Any]:
        key = ResourceKey.from_manifest(manifest)
        if self.validator is not None:
            self.validator(manifest)
        with self._lock:
            current = self._objects.get(key)
            if resource_version(current) != expected_version:
                raise ConflictError(
                    f"{key}: expected resourceVersion {expected_version}, "
                    f"found {resource_version(current)}"
                )
            obj = copy.deepcopy(manifest)
            obj.setdefault("metadata", {})["resourceVersion"] = self._next_version()
            if current is not None and "status" in current and "status" not in obj:
                obj["status"] = copy.deepcopy(current["status"])
            self._objects[key] = obj
            self.operations.append(("apply", key))
            return copy.deepcopy(obj)

    def delete(self, key: ResourceKey, expected_version: str | None = None) -> bool:
        with self._lock:
            current = self._objects.get(key)
            if current is None:
                return False
            if expected_version is not None and resource_version(current) != expected_version:
                raise ConflictError(
                    f"{key}: expected resourceVersion {expected_version}, "
                    f"found {resource_version(current)}"
                )
            del self._objects[key]
            self.operations.append(("delete", key))
            return True

    def list_owned(self, owner: str) -> list[dict[str, Any]]:
        with self._lock:
            return [
                copy.deepcopy(obj)
                for key, obj in sorted(self._objects.items())
                if is_owned_by(obj, owner)
            ]

    def list_all(self) -> list[dict[str, Any]]:
        with self._lock:
            return [copy.deepcopy(obj) for _, obj in sorted(self._objects.items())]

    def put(self, manifest: dict[str, Any]) -> dict[str, Any]:
        """Write an object out-of-band, bypassing compare-and-set."""
        key = ResourceKey.from_manifest(manifest)
        with self._lock:
            obj = copy.deepcopy(manifest)
            obj.setdefault("metadata", {})["resourceVersion"] = self._next_version()
            self._objects[key] = obj
            return copy.deepcopy(obj)


class KubectlTarget(Target):
    """A real cluster through the ``kubectl`` binary.

    Applies are server-side with a dedicated field manager. When the caller
    passes an expected version it is written into the object, so the API
    server itself enforces compare-and-set.
    """

    FIELD_MANAGER = "appset"

    def __init__(
        self,
        context: str | None = None,
        kubectl: str = "kubectl",
        timeout: float = 60.0,
    ):
        self.context = context
        self.kubectl = kubectl
        self.timeout = timeout
        self._listable: list[str] | None = None

    def _run(self, args: list[str], stdin: str | None = None) -> subprocess.CompletedProcess:
        cmd = [self.kubectl]
        if self.context:
            cmd += ["--context", self.context]
        cmd += args
        try:
            return subprocess.run(
                cmd,
                input=stdin,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise ApplyError(f"kubectl {args[0]} timed out after {self.timeout}s") from e
        except FileNotFoundError as e:
            raise ApplyError(f"kubectl executable not found: {self.kubectl}") from e

    @staticmethod
    def _resource(key: ResourceKey) -> str:
        return f"{key.kind}.{key.group}" if key.group else key.kind

    def _namespace_args(self, key: ResourceKey) -> list[str]:
        return ["-n", key.namespace] if key.namespace else []

    def get(self, key: ResourceKey) -> dict[str, Any] | None:
        proc = self._run(
            ["get", self._resource(key), key.name, *self._namespace_args(key), "-o", "json"]
        )
        if proc.returncode != 0:
            if "NotFound" in proc.stderr or "not found" in proc.stderr:
                return None
            raise ApplyError(f"kubectl get {key} failed: {proc.stderr.strip()}")
        return json.loads(proc.stdout)

    def apply(self, manifest: dict[str, Any], expected_version: str | None = None) -> dict[str, Any]:
        key = ResourceKey.from_manifest(manifest)
        obj = copy.deepcopy(manifest)
        if expected_version is None:
            if self.get(key) is not None:
                raise ConflictError(f"{key}: already exists")
        else:
            obj.setdefault("metadata", {})["resourceVersion"] = expected_version
        proc = self._run(
            [
                "apply", "--server-side", f"--field-manager={self.FIELD_MANAGER}",
                "--force-conflicts", "-o", "json", "-f", "-",
            ],
            stdin=json.dumps(obj),
        )
        if proc.returncode != 0:
            stderr = proc.stderr.strip()
            if "the object has been modified" in stderr or "Conflict" in stderr:
                raise ConflictError(f"{key}: {stderr}")
            raise ApplyError(f"kubectl apply {key} failed: {stderr}")
        return json.loads(proc.stdout)

    def delete(self, key: ResourceKey, expected_version: str | None = None) -> bool:
        if expected_version is not None:
            live = self.get(key)
            if live is None:
                return False
            if resource_version(live) != expected_version:
                raise ConflictError(f"{key}: changed since it was observed")
        proc = self._run(
            [
                "delete", self._resource(key), key.name, *self._namespace_args(key),
                "--ignore-not-found", "-o", "name",
            ]
        )
        if proc.returncode != 0:
            raise ApplyError(f"kubectl delete {key} failed: {proc.stderr.strip()}")
        return bool(proc.stdout.strip())

    def _listable_resources(self) -> list[str]:
        if self._listable is None:
            proc = self._run(["api-resources", "--verbs=list", "-o", "name"])
            if proc.returncode != 0:
                raise ApplyError(f"kubectl api-resources failed: {proc.stderr.strip()}")
            # Events are noisy and never owned by an application.
            self._listable = [
                r for r in proc.stdout.split()
                if r and r not in ("events", "events.events.k8s.io")
            ]
        return self._listable

    def list_owned(self, owner: str) -> list[dict[str, Any]]:
        selector = f"{OWNER_LABEL}={owner},{MANAGED_BY_LABEL}={MANAGED_BY_VALUE}"
        proc = self._run(
            [
                "get", ",".join(self._listable_resources()),
                "--all-namespaces", "-l", selector, "-o", "json",
            ]
        )
        if proc.returncode != 0:
            raise ApplyError(f"kubectl get -l {selector} failed: {proc.stderr.strip()}")
        return list(json.loads(proc.stdout).get("items", []))


class Targets:
    """Maps destination cluster names to targets, creating them on demand."""

    def __init__(
        self,
        factory: Callable[[str], Target] | None = None,
        default: Target | None = None,
    ):
        if factory is None and default is None:
            raise ValueError("Targets needs a factory or a default target")
        self._factory = factory
        self._default = default
        self._targets: dict[str, Target] = {}
        self._lock = threading.Lock()

    @classmethod
    def single(cls, target: Target) -> "Targets":
        """Serve every cluster from one target."""
        return cls(default=target)

    @classmethod
    def kubectl(cls, timeout: float = 60.0) -> "Targets":
        """One KubectlTarget per cluster; ``in-cluster`` uses the current context."""
        return cls(factory=lambda cluster: KubectlTarget(
            context=None if cluster == DEFAULT_CLUSTER else cluster, timeout=timeout,
        ))

    def for_cluster(self, cluster: str) -> Target:
        if self._factory is None:
            return self._default
        with self._lock:
            if cluster not in self._targets:
                self._targets[cluster] = self._factory(cluster)
            return self._targets[cluster]
