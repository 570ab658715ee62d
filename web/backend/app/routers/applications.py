"""Applications router -- reconciliation state and sync history."""

from __future__ import annotations

from fastapi import APIRouter, HTTPException, Query

from web.backend.app.models.api import (
    ApplicationResponse,
    DestinationResponse,
    SourceResponse,
    SyncPolicyResponse,
    SyncResultResponse,
)
from web.backend.app.state import get_controller

router = APIRouter(tags=["applications"])


def _result_to_response(result) -> SyncResultResponse:
    """Convert a SyncResult dataclass to a Pydantic response."""
    return SyncResultResponse(**result.to_dict())


def _snapshot_to_response(snapshot, now: float) -> ApplicationResponse:
    """Convert an AppSnapshot to a Pydantic response."""
    descriptor = snapshot.descriptor
    policy = descriptor.sync_policy
    retry_in = None
    if snapshot.next_retry_at is not None:
        retry_in = max(0.0, snapshot.next_retry_at - now)
    return ApplicationResponse(
        name=snapshot.name,
        state=snapshot.state.value,
        rule=descriptor.rule_name,
        project=descriptor.project,
        wave=descriptor.wave,
        source=SourceResponse(
            repo_url=descriptor.source.repo_url,
            revision=descriptor.source.revision,
            path=descriptor.source.path,
        ),
        destination=DestinationResponse(
            cluster=descriptor.destination.cluster,
            namespace=descriptor.destination.namespace,
        ),
        sync_policy=SyncPolicyResponse(
            auto_prune=policy.auto_prune,
            self_heal=policy.self_heal,
            create_namespace=policy.create_namespace,
        ),
        last_result=_result_to_response(snapshot.last_result) if snapshot.last_result else None,
        attempts=snapshot.attempts,
        next_retry_in_seconds=retry_in,
    )


@router.get(
    "/api/applications",
    response_model=list[ApplicationResponse],
    summary="List tracked applications",
)
async def list_applications(
    state: str | None = Query(None, description="Only applications in this state"),
):
    """Every application the controller currently tracks, by name."""
    controller = get_controller()
    now = controller.reconciler.now()
    return [
        _snapshot_to_response(s, now)
        for s in controller.status()
        if state is None or s.state.value == state
    ]


@router.get(
    "/api/applications/{name}",
    response_model=ApplicationResponse,
    summary="Get one application",
)
async def get_application(name: str):
    """State, descriptor and last result of one application."""
    controller = get_controller()
    snapshot = controller.get(name)
    if snapshot is None:
        raise HTTPException(status_code=404, detail=f"Application '{name}' not found")
    return _snapshot_to_response(snapshot, controller.reconciler.now())


@router.get(
    "/api/applications/{name}/history",
    response_model=list[SyncResultResponse],
    summary="Sync history of one application",
)
async def application_history(name: str, limit: int = Query(50, ge=1, le=1000)):
    """Recorded results, oldest first. Requires ``history_dir`` to be configured."""
    controller = get_controller()
    if controller.history is None:
        raise HTTPException(status_code=404, detail="Sync history is disabled (no history_dir)")
    return [_result_to_response(r) for r in controller.history.get_history(name, limit=limit)]
