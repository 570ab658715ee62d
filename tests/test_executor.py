"""Tests for the sync executor against an in-memory target."""

import tempfile
import threading
from pathlib import Path

import pytest
import yaml

from appset.errors import ConflictError, ManifestError, SyncCancelled
from appset.models.application import (
    ApplicationDescriptor,
    Destination,
    HealthStatus,
    ResourceKey,
    SourceLocation,
    SyncPolicy,
    SyncStatus,
)
from appset.source.tree import LocalSourceProvider
from appset.sync.executor import SyncExecutor
from appset.sync.target import InMemoryTarget, Targets


def _configmap(name, data=None, **metadata):
    return {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": {"name": name, **metadata},
        "data": data or {"key": "value"},
    }


def _write(root: Path, path: str, *manifests):
    directory = root / path
    directory.mkdir(parents=True, exist_ok=True)
    (directory / "manifests.yaml").write_text(yaml.safe_dump_all(manifests))


def _descriptor(path="services/a", auto_prune=True, create_namespace=False):
    return ApplicationDescriptor(
        name="svc-a",
        project="default",
        source=SourceLocation(repo_url="local", revision="HEAD", path=path),
        destination=Destination(namespace="team-a"),
        sync_policy=SyncPolicy(auto_prune=auto_prune, create_namespace=create_namespace),
        rule_name="services",
    )


def _executor(root, target):
    return SyncExecutor(LocalSourceProvider(root), Targets.single(target))


def test_render_defaults_namespace_and_labels():
    with tempfile.TemporaryDirectory() as tmpdir:
        root = Path(tmpdir)
        _write(root, "services/a",
               _configmap("a"),
               _configmap("pinned", namespace="team-a-extra"),
               {"apiVersion": "rbac.authorization.k8s.io/v1", "kind": "ClusterRole",
                "metadata": {"name": "reader", "namespace": "ignored"}})
        rendered = _executor(root, InMemoryTarget()).render(_descriptor())

        by_name = {m["metadata"]["name"]: m for m in rendered.manifests}
        assert by_name["a"]["metadata"]["namespace"] == "team-a"
        assert by_name["pinned"]["metadata"]["namespace"] == "team-a-extra"
        assert "namespace" not in by_name["reader"]["metadata"]
        assert by_name["a"]["metadata"]["labels"]["appset.io/instance"] == "svc-a"
        assert rendered.namespace is None
        assert rendered.revision


def test_duplicate_manifest_is_rejected():
    with tempfile.TemporaryDirectory() as tmpdir:
        root = Path(tmpdir)
        _write(root, "services/a", _configmap("a"), _configmap("a"))
        with pytest.raises(ManifestError, match="more than once"):
            _executor(root, InMemoryTarget()).render(_descriptor())


def test_apply_creates_then_is_idempotent():
    with tempfile.TemporaryDirectory() as tmpdir:
        root = Path(tmpdir)
        _write(root, "services/a", _configmap("a"), _configmap("b"))
        target = InMemoryTarget()
        executor = _executor(root, target)

        result = executor.apply(_descriptor())
        assert result.status == SyncStatus.SYNCED
        assert result.health == HealthStatus.HEALTHY
        assert result.applied == ["ConfigMap/team-a/a", "ConfigMap/team-a/b"]

        writes = len(target.operations)
        again = executor.apply(_descriptor())
        assert again.status == SyncStatus.SYNCED
        assert again.applied == []
        assert len(target.operations) == writes


def test_create_namespace_is_applied_first_and_never_owned():
    with tempfile.TemporaryDirectory() as tmpdir:
        root = Path(tmpdir)
        _write(root, "services/a", _configmap("a"))
        target = InMemoryTarget()
        result = _executor(root, target).apply(_descriptor(create_namespace=True))

        assert result.applied[0] == "Namespace/team-a"
        namespace = target.get(ResourceKey("", "Namespace", "", "team-a"))
        assert namespace["metadata"].get("labels") is None
        assert [o["kind"] for o in target.list_owned("svc-a")] == ["ConfigMap"]


def test_prune_removes_only_owned_leftovers():
    with tempfile.TemporaryDirectory() as tmpdir:
        root = Path(tmpdir)
        _write(root, "services/a", _configmap("a"), _configmap("old"))
        target = InMemoryTarget()
        target.put(_configmap("unowned", namespace="team-a"))
        executor = _executor(root, target)
        executor.apply(_descriptor())

        _write(root, "services/a", _configmap("a"))
        result = executor.apply(_descriptor())
        assert result.pruned == ["ConfigMap/team-a/old"]
        assert result.status == SyncStatus.SYNCED
        assert target.get(ResourceKey("", "ConfigMap", "team-a", "unowned")) is not None
        assert target.get(ResourceKey("", "ConfigMap", "team-a", "old")) is None


def test_without_auto_prune_leftovers_are_reported():
    with tempfile.TemporaryDirectory() as tmpdir:
        root = Path(tmpdir)
        _write(root, "services/a", _configmap("a"), _configmap("old"))
        target = InMemoryTarget()
        executor = _executor(root, target)
        executor.apply(_descriptor(auto_prune=False))

        _write(root, "services/a", _configmap("a"))
        result = executor.apply(_descriptor(auto_prune=False))
        assert result.pruned == []
        assert result.status == SyncStatus.SYNCED
        assert "not pruned (auto-prune disabled): ConfigMap/team-a/old" in result.message
        assert target.get(ResourceKey("", "ConfigMap", "team-a", "old")) is not None


def test_check_reports_drift_without_changing_anything():
    with tempfile.TemporaryDirectory() as tmpdir:
        root = Path(tmpdir)
        _write(root, "services/a", _configmap("a"))
        target = InMemoryTarget()
        executor = _executor(root, target)
        executor.apply(_descriptor())

        live = target.get(ResourceKey("", "ConfigMap", "team-a", "a"))
        live["data"] = {"key": "edited"}
        target.put(live)
        writes = len(target.operations)

        result = executor.check(_descriptor())
        assert result.status == SyncStatus.OUT_OF_SYNC
        assert result.drifted == ["ConfigMap/team-a/a (data.key)"]
        assert len(target.operations) == writes
        assert target.get(ResourceKey("", "ConfigMap", "team-a", "a"))["data"] == {"key": "edited"}


def test_conflict_yields_out_of_sync():
    with tempfile.TemporaryDirectory() as tmpdir:
        root = Path(tmpdir)
        _write(root, "services/a", _configmap("a"), _configmap("b"))

        def race(manifest):
            if manifest["metadata"]["name"] == "a":
                raise ConflictError("ConfigMap/team-a/a: modified concurrently")

        target = InMemoryTarget(validator=race)
        result = _executor(root, target).apply(_descriptor())

        assert result.status == SyncStatus.OUT_OF_SYNC
        assert result.applied == ["ConfigMap/team-a/b"]
        assert "changed concurrently" in result.message
        assert "ConfigMap/team-a/a" in result.message


def test_cancelled_apply_stops_before_first_resource():
    with tempfile.TemporaryDirectory() as tmpdir:
        root = Path(tmpdir)
        _write(root, "services/a", _configmap("a"))
        target = InMemoryTarget()
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(SyncCancelled):
            _executor(root, target).apply(_descriptor(), cancel=cancel)
        assert target.list_all() == []


def test_delete_is_idempotent_and_reverse_ordered():
    with tempfile.TemporaryDirectory() as tmpdir:
        root = Path(tmpdir)
        _write(root, "services/a",
               _configmap("a"),
               {"apiVersion": "v1", "kind": "Service", "metadata": {"name": "web"},
                "spec": {"ports": [{"port": 80}]}})
        target = InMemoryTarget()
        target.put(_configmap("unowned", namespace="team-a"))
        executor = _executor(root, target)
        executor.apply(_descriptor())

        deleted = executor.delete(_descriptor())
        assert deleted == ["Service/team-a/web", "ConfigMap/team-a/a"]
        assert executor.delete(_descriptor()) == []
        assert [o["metadata"]["name"] for o in target.list_all()] == ["unowned"]


def test_missing_image_pull_secret_degrades_health():
    deployment = {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {"name": "web"},
        "spec": {
            "replicas": 1,
            "template": {"spec": {
                "imagePullSecrets": [{"name": "registry"}],
                "containers": [{"name": "web", "image": "registry.example.com/web:1"}],
            }},
        },
    }
    with tempfile.TemporaryDirectory() as tmpdir:
        root = Path(tmpdir)
        _write(root, "services/a", deployment)
        target = InMemoryTarget()
        result = _executor(root, target).apply(_descriptor())

        assert result.status == SyncStatus.SYNCED
        assert result.health == HealthStatus.DEGRADED
        assert "image pull secret team-a/registry not found" in result.message
        assert target.get(ResourceKey("", "Secret", "team-a", "registry")) is None
