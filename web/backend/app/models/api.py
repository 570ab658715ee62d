"""Pydantic models for API request/response serialization.

These models mirror the appset dataclasses and provide proper JSON
serialization for the FastAPI endpoints.
"""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Application models
# ---------------------------------------------------------------------------


class SyncResultResponse(BaseModel):
    """Mirrors appset.models.application.SyncResult."""

    name: str
    status: str
    health: str = "Unknown"
    timestamp: str = ""
    revision: str = ""
    cause: str = ""
    message: str = ""
    applied: list[str] = Field(default_factory=list)
    pruned: list[str] = Field(default_factory=list)
    drifted: list[str] = Field(default_factory=list)


class SourceResponse(BaseModel):
    repo_url: str
    revision: str
    path: str


class DestinationResponse(BaseModel):
    cluster: str
    namespace: str


class SyncPolicyResponse(BaseModel):
    auto_prune: bool = False
    self_heal: bool = False
    create_namespace: bool = False


class ApplicationResponse(BaseModel):
    """An application identity and its reconciliation state."""

    name: str
    state: str
    rule: str = ""
    project: str = ""
    wave: int = 0
    source: SourceResponse
    destination: DestinationResponse
    sync_policy: SyncPolicyResponse = Field(default_factory=SyncPolicyResponse)
    last_result: Optional[SyncResultResponse] = None
    attempts: int = 0
    next_retry_in_seconds: Optional[float] = None


# ---------------------------------------------------------------------------
# Rule and project models
# ---------------------------------------------------------------------------


class RuleStatusResponse(BaseModel):
    """Mirrors appset.controller.RuleStatus."""

    name: str
    repo_url: str
    revision: str = ""
    paths: list[str] = Field(default_factory=list)
    applications: list[str] = Field(default_factory=list)
    stale: bool = False
    error: str = ""
    last_poll: str = ""
    last_success: str = ""


class GroupKindResponse(BaseModel):
    group: str = ""
    kind: str = "*"


class ProjectDestinationResponse(BaseModel):
    cluster: str = "*"
    namespace: str = "*"


class ProjectResponse(BaseModel):
    """Mirrors appset.models.project.Project."""

    name: str
    description: str = ""
    source_repos: list[str] = Field(default_factory=list)
    destinations: list[ProjectDestinationResponse] = Field(default_factory=list)
    cluster_resource_whitelist: list[GroupKindResponse] = Field(default_factory=list)
    namespace_resource_whitelist: list[GroupKindResponse] = Field(default_factory=list)
    namespace_resource_blacklist: list[GroupKindResponse] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Refresh / webhook models
# ---------------------------------------------------------------------------


class RefreshResponse(BaseModel):
    refreshed: bool = True
    rules: list[str] = Field(default_factory=list)
    message: str = ""
