"""Tests for targets: the in-memory cluster and the kubectl wrapper."""

import json
import subprocess

import pytest

from appset.errors import ApplyError, ConflictError
from appset.models.application import ResourceKey
from appset.sync.target import InMemoryTarget, KubectlTarget, Targets, resource_version


def _cm(name, owner=None, data=None, namespace="apps"):
    labels = {}
    if owner:
        labels = {"appset.io/instance": owner, "appset.io/managed-by": "appset"}
    return {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": {"name": name, "namespace": namespace, "labels": labels},
        "data": data or {"k": "v"},
    }


# --- InMemoryTarget ---


def test_create_requires_absence():
    target = InMemoryTarget()
    live = target.apply(_cm("a"))
    assert resource_version(live) == "1"
    with pytest.raises(ConflictError):
        target.apply(_cm("a"))


def test_update_is_compare_and_set():
    target = InMemoryTarget()
    live = target.apply(_cm("a"))
    updated = target.apply(_cm("a", data={"k": "v2"}), resource_version(live))
    assert updated["data"] == {"k": "v2"}

    with pytest.raises(ConflictError):
        target.apply(_cm("a", data={"k": "v3"}), resource_version(live))
    assert target.get(ResourceKey.from_manifest(_cm("a")))["data"] == {"k": "v2"}


def test_out_of_band_write_breaks_cas():
    target = InMemoryTarget()
    live = target.apply(_cm("a"))
    target.put(_cm("a", data={"k": "edited"}))
    with pytest.raises(ConflictError):
        target.apply(_cm("a"), resource_version(live))


def test_delete_is_idempotent():
    target = InMemoryTarget()
    target.apply(_cm("a"))
    key = ResourceKey.from_manifest(_cm("a"))
    assert target.delete(key) is True
    assert target.delete(key) is False
    assert target.get(key) is None


def test_delete_with_stale_version_conflicts():
    target = InMemoryTarget()
    target.apply(_cm("a"))
    with pytest.raises(ConflictError):
        target.delete(ResourceKey.from_manifest(_cm("a")), "999")


def test_list_owned_filters_by_labels():
    target = InMemoryTarget()
    target.apply(_cm("a1", owner="svc-a"))
    target.apply(_cm("b1", owner="svc-b"))
    target.apply(_cm("unowned"))
    owned = target.list_owned("svc-a")
    assert [o["metadata"]["name"] for o in owned] == ["a1"]


def test_status_survives_apply():
    target = InMemoryTarget()
    obj = _cm("a")
    obj["status"] = {"phase": "Ready"}
    live = target.put(obj)
    updated = target.apply(_cm("a"), resource_version(live))
    assert updated["status"] == {"phase": "Ready"}


def test_validator_rejects():
    def reject(manifest):
        raise ApplyError("admission webhook denied the request")

    target = InMemoryTarget(validator=reject)
    with pytest.raises(ApplyError, match="admission"):
        target.apply(_cm("a"))
    assert target.list_all() == []


def test_targets_single_and_factory():
    target = InMemoryTarget()
    assert Targets.single(target).for_cluster("anything") is target

    created = []
    targets = Targets(factory=lambda cluster: created.append(cluster) or InMemoryTarget())
    first = targets.for_cluster("prod")
    assert targets.for_cluster("prod") is first
    assert created == ["prod"]


# --- KubectlTarget ---


class FakeKubectl:
    """Records kubectl invocations and answers from a queue."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def __call__(self, cmd, input=None, capture_output=True, text=True, timeout=None):
        self.calls.append({"cmd": cmd, "input": input, "timeout": timeout})
        returncode, stdout, stderr = self.responses.pop(0)
        return subprocess.CompletedProcess(cmd, returncode, stdout, stderr)


def test_kubectl_get_not_found(monkeypatch):
    fake = FakeKubectl((1, "", 'Error from server (NotFound): configmaps "a" not found'))
    monkeypatch.setattr(subprocess, "run", fake)

    target = KubectlTarget(context="dev", timeout=5)
    assert target.get(ResourceKey("", "ConfigMap", "apps", "a")) is None
    assert fake.calls[0]["cmd"] == [
        "kubectl", "--context", "dev", "get", "ConfigMap", "a", "-n", "apps", "-o", "json",
    ]
    assert fake.calls[0]["timeout"] == 5


def test_kubectl_apply_sends_expected_version(monkeypatch):
    live = _cm("a")
    live["metadata"]["resourceVersion"] = "42"
    fake = FakeKubectl((0, json.dumps(live), ""))
    monkeypatch.setattr(subprocess, "run", fake)

    result = KubectlTarget().apply(_cm("a"), expected_version="41")
    assert result["metadata"]["resourceVersion"] == "42"

    call = fake.calls[0]
    assert "--server-side" in call["cmd"]
    assert "--field-manager=appset" in call["cmd"]
    assert json.loads(call["input"])["metadata"]["resourceVersion"] == "41"


def test_kubectl_apply_conflict(monkeypatch):
    fake = FakeKubectl((
        1, "",
        "Operation cannot be fulfilled on configmaps \"a\": the object has been modified",
    ))
    monkeypatch.setattr(subprocess, "run", fake)
    with pytest.raises(ConflictError):
        KubectlTarget().apply(_cm("a"), expected_version="1")


def test_kubectl_create_when_present_conflicts(monkeypatch):
    fake = FakeKubectl((0, json.dumps(_cm("a")), ""))
    monkeypatch.setattr(subprocess, "run", fake)
    with pytest.raises(ConflictError, match="already exists"):
        KubectlTarget().apply(_cm("a"))


def test_kubectl_rejection_is_apply_error(monkeypatch):
    fake = FakeKubectl((1, "", 'The ConfigMap "a" is invalid: data: Invalid value'))
    monkeypatch.setattr(subprocess, "run", fake)
    with pytest.raises(ApplyError) as exc:
        KubectlTarget().apply(_cm("a"), expected_version="1")
    assert not isinstance(exc.value, ConflictError)


def test_kubectl_timeout_is_apply_error(monkeypatch):
    def hang(cmd, **kwargs):
        raise subprocess.TimeoutExpired(cmd, kwargs.get("timeout"))

    monkeypatch.setattr(subprocess, "run", hang)
    with pytest.raises(ApplyError, match="timed out"):
        KubectlTarget(timeout=1).get(ResourceKey("", "ConfigMap", "apps", "a"))


def test_kubectl_delete_and_list_owned(monkeypatch):
    fake = FakeKubectl(
        (0, "configmap/a\n", ""),
        (0, "configmaps\ndeployments.apps\nevents\n", ""),
        (0, json.dumps({"kind": "List", "items": [_cm("a", owner="svc-a")]}), ""),
    )
    monkeypatch.setattr(subprocess, "run", fake)

    target = KubectlTarget()
    assert target.delete(ResourceKey("", "ConfigMap", "apps", "a")) is True
    owned = target.list_owned("svc-a")
    assert [o["metadata"]["name"] for o in owned] == ["a"]

    list_cmd = fake.calls[2]["cmd"]
    assert "configmaps,deployments.apps" in list_cmd
    assert "appset.io/instance=svc-a,appset.io/managed-by=appset" in list_cmd
