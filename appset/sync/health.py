"""Health assessment of live resources.

Each kind with a meaningful status gets its own check; everything else is
Healthy as soon as it exists. An application's health is the worst health
of its resources.
"""

from __future__ import annotations

from typing import Any, Iterable

from appset.models.application import HealthStatus

_WORKLOAD_KINDS = ("Deployment", "StatefulSet", "DaemonSet", "ReplicaSet")


def _conditions(obj: dict[str, Any]) -> dict[str, dict[str, Any]]:
    status = obj.get("status") or {}
    return {c.get("type", ""): c for c in status.get("conditions") or []}


def _deployment_health(obj: dict[str, Any]) -> tuple[HealthStatus, str]:
    status = obj.get("status") or {}
    spec = obj.get("spec") or {}
    conditions = _conditions(obj)

    progressing = conditions.get("Progressing")
    if progressing and progressing.get("reason") == "ProgressDeadlineExceeded":
        return HealthStatus.DEGRADED, progressing.get("message", "progress deadline exceeded")

    generation = (obj.get("metadata") or {}).get("generation")
    observed = status.get("observedGeneration")
    if generation is not None and observed is not None and observed < generation:
        return HealthStatus.PROGRESSING, "waiting for rollout to be observed"

    desired = spec.get("replicas", 1)
    updated = status.get("updatedReplicas", 0)
    available = status.get("availableReplicas", 0)
    if updated < desired:
        return HealthStatus.PROGRESSING, f"{updated} of {desired} replicas updated"
    if available < desired:
        return HealthStatus.PROGRESSING, f"{available} of {desired} replicas available"
    return HealthStatus.HEALTHY, ""


def _statefulset_health(obj: dict[str, Any]) -> tuple[HealthStatus, str]:
    status = obj.get("status") or {}
    desired = (obj.get("spec") or {}).get("replicas", 1)
    ready = status.get("readyReplicas", 0)
    if ready < desired:
        return HealthStatus.PROGRESSING, f"{ready} of {desired} replicas ready"
    return HealthStatus.HEALTHY, ""


def _daemonset_health(obj: dict[str, Any]) -> tuple[HealthStatus, str]:
    status = obj.get("status") or {}
    desired = status.get("desiredNumberScheduled", 0)
    ready = status.get("numberReady", 0)
    if ready < desired:
        return HealthStatus.PROGRESSING, f"{ready} of {desired} pods ready"
    return HealthStatus.HEALTHY, ""


def _replicaset_health(obj: dict[str, Any]) -> tuple[HealthStatus, str]:
    failure = _conditions(obj).get("ReplicaFailure")
    if failure and failure.get("status") == "True":
        return HealthStatus.DEGRADED, failure.get("message", "replica failure")
    return _statefulset_health(obj)


def _pod_health(obj: dict[str, Any]) -> tuple[HealthStatus, str]:
    status = obj.get("status") or {}
    phase = status.get("phase", "")
    if phase in ("Running", "Succeeded"):
        return HealthStatus.HEALTHY, ""
    if phase == "Failed":
        return HealthStatus.DEGRADED, status.get("message", "pod failed")
    for container in status.get("containerStatuses") or []:
        waiting = (container.get("state") or {}).get("waiting") or {}
        if waiting.get("reason") in ("ImagePullBackOff", "ErrImagePull", "CrashLoopBackOff"):
            return HealthStatus.DEGRADED, f"{container.get('name')}: {waiting['reason']}"
    if phase == "Pending":
        return HealthStatus.PROGRESSING, "pod pending"
    return HealthStatus.UNKNOWN, f"pod phase {phase or 'unknown'}"


def _pvc_health(obj: dict[str, Any]) -> tuple[HealthStatus, str]:
    phase = (obj.get("status") or {}).get("phase", "")
    if phase == "Bound":
        return HealthStatus.HEALTHY, ""
    if phase == "Lost":
        return HealthStatus.DEGRADED, "claim lost"
    return HealthStatus.PROGRESSING, f"claim {phase or 'pending'}"


def _job_health(obj: dict[str, Any]) -> tuple[HealthStatus, str]:
    conditions = _conditions(obj)
    failed = conditions.get("Failed")
    if failed and failed.get("status") == "True":
        return HealthStatus.DEGRADED, failed.get("message", "job failed")
    complete = conditions.get("Complete")
    if complete and complete.get("status") == "True":
        return HealthStatus.HEALTHY, ""
    return HealthStatus.PROGRESSING, "job running"


_CHECKS = {
    "Deployment": _deployment_health,
    "StatefulSet": _statefulset_health,
    "DaemonSet": _daemonset_health,
    "ReplicaSet": _replicaset_health,
    "Pod": _pod_health,
    "PersistentVolumeClaim": _pvc_health,
    "Job": _job_health,
}


def assess(obj: dict[str, Any] | None) -> tuple[HealthStatus, str]:
    """Health of one live object and a short reason when it is not Healthy.

    A workload that reports no status yet (the controller has not seen it)
    is Progressing.
    """
    if obj is None:
        return HealthStatus.DEGRADED, "resource missing"
    kind = obj.get("kind", "")
    check = _CHECKS.get(kind)
    if check is None:
        return HealthStatus.HEALTHY, ""
    if kind in _WORKLOAD_KINDS and not obj.get("status"):
        return HealthStatus.PROGRESSING, "no status reported yet"
    return check(obj)


def aggregate(statuses: Iterable[HealthStatus]) -> HealthStatus:
    """Worst of ``statuses``; Healthy for an empty application."""
    worst = HealthStatus.HEALTHY
    for status in statuses:
        if status.severity > worst.severity:
            worst = status
    return worst


def image_pull_secrets(manifest: dict[str, Any]) -> list[str]:
    """Names of the image pull secrets a workload's pod template references."""
    kind = manifest.get("kind", "")
    spec = manifest.get("spec") or {}
    if kind == "Pod":
        pod_spec = spec
    elif kind == "CronJob":
        pod_spec = ((((spec.get("jobTemplate") or {}).get("spec") or {})
                     .get("template") or {}).get("spec") or {})
    else:
        pod_spec = (spec.get("template") or {}).get("spec") or {}
    return [
        ref["name"]
        for ref in pod_spec.get("imagePullSecrets") or []
        if isinstance(ref, dict) and ref.get("name")
    ]
