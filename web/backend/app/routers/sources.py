"""Sources router -- rules, projects, manual refresh and Git push webhooks."""

from __future__ import annotations

import hashlib
import hmac
import json

from fastapi import APIRouter, HTTPException, Request

from web.backend.app.models.api import (
    GroupKindResponse,
    ProjectDestinationResponse,
    ProjectResponse,
    RefreshResponse,
    RuleStatusResponse,
)
from web.backend.app.state import get_controller

router = APIRouter(tags=["sources"])

SIGNATURE_HEADER = "X-Hub-Signature-256"


def _compute_signature(payload_bytes: bytes, secret: str) -> str:
    """HMAC-SHA256 signature in the ``sha256=<hex>`` form Git hosts send."""
    mac = hmac.new(secret.encode("utf-8"), payload_bytes, hashlib.sha256)
    return f"sha256={mac.hexdigest()}"


def _normalize_url(url: str) -> str:
    url = url.strip().rstrip("/")
    if url.endswith(".git"):
        url = url[:-4]
    return url.lower()


def _payload_urls(payload: dict) -> set[str]:
    repository = payload.get("repository") or {}
    keys = ("clone_url", "ssh_url", "git_url", "html_url", "url", "git_http_url", "git_ssh_url")
    return {_normalize_url(repository[k]) for k in keys if isinstance(repository.get(k), str)}


@router.get(
    "/api/rules",
    response_model=list[RuleStatusResponse],
    summary="Status of every generator rule",
)
async def list_rules():
    """Latest poll outcome per rule: revision, matched paths, errors."""
    controller = get_controller()
    return [RuleStatusResponse(**r.to_dict()) for r in controller.rule_status()]


@router.get(
    "/api/projects",
    response_model=list[ProjectResponse],
    summary="List projects",
)
async def list_projects():
    controller = get_controller()
    projects = controller.config.projects
    return [
        ProjectResponse(
            name=p.name,
            description=p.description,
            source_repos=list(p.source_repos),
            destinations=[
                ProjectDestinationResponse(cluster=d.cluster, namespace=d.namespace)
                for d in p.destinations
            ],
            cluster_resource_whitelist=[
                GroupKindResponse(group=g.group, kind=g.kind) for g in p.cluster_resource_whitelist
            ],
            namespace_resource_whitelist=[
                GroupKindResponse(group=g.group, kind=g.kind) for g in p.namespace_resource_whitelist
            ],
            namespace_resource_blacklist=[
                GroupKindResponse(group=g.group, kind=g.kind) for g in p.namespace_resource_blacklist
            ],
        )
        for _, p in sorted(projects.items())
    ]


@router.post(
    "/api/refresh",
    response_model=RefreshResponse,
    summary="Poll every source now",
)
async def refresh():
    controller = get_controller()
    controller.refresh()
    return RefreshResponse(refreshed=True, rules=[r.name for r in controller.config.rules])


@router.post(
    "/api/webhook/git",
    response_model=RefreshResponse,
    summary="Git push notification",
)
async def git_webhook(request: Request):
    """Wake the poll loop when a watched repository receives a push.

    When ``webhook_secret`` is configured the request must carry a valid
    ``X-Hub-Signature-256`` header. A payload without repository details
    refreshes every rule.
    """
    controller = get_controller()
    body = await request.body()

    secret = controller.config.settings.webhook_secret
    if secret:
        signature = request.headers.get(SIGNATURE_HEADER, "")
        if not hmac.compare_digest(signature, _compute_signature(body, secret)):
            raise HTTPException(status_code=401, detail="Invalid webhook signature")

    try:
        payload = json.loads(body) if body else {}
    except ValueError:
        raise HTTPException(status_code=400, detail="Payload is not valid JSON")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Payload must be a JSON object")

    urls = _payload_urls(payload)
    rules = [
        rule.name
        for rule in controller.config.rules
        if not urls or _normalize_url(rule.repo_url) in urls
    ]
    if not rules:
        return RefreshResponse(
            refreshed=False, message="No rule watches the pushed repository"
        )

    controller.refresh()
    return RefreshResponse(refreshed=True, rules=rules)
