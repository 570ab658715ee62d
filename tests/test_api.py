"""Tests for the REST API."""

import hashlib
import hmac
import json
import tempfile
from pathlib import Path

import pytest
import yaml
from fastapi.testclient import TestClient

from appset.config.loader import parse_config
from appset.controller import Controller
from appset.source.tree import LocalSourceProvider
from appset.sync.target import InMemoryTarget, Targets
from web.backend.app.main import app
from web.backend.app.state import set_controller

SECRET = "s3cret"
REPO = "https://git.example.com/platform.git"


def _config(history_dir="", secret=SECRET):
    settings = {"webhook_secret": secret}
    if history_dir:
        settings["history_dir"] = history_dir
    return parse_config({
        "settings": settings,
        "projects": [{"name": "platform", "namespace_resource_blacklist": [{"kind": "Secret"}]}],
        "rules": [{
            "name": "services",
            "repo_url": REPO,
            "directories": [{"path": "services/*"}],
            "template": {
                "name": "svc-{{path.basename}}",
                "namespace": "team-{{path.basename}}",
                "project": "platform",
            },
        }],
    })


@pytest.fixture
def client():
    with tempfile.TemporaryDirectory() as tmpdir:
        root = Path(tmpdir)
        for name in ("a", "b"):
            directory = root / "repo" / "services" / name
            directory.mkdir(parents=True)
            (directory / "cm.yaml").write_text(yaml.safe_dump({
                "apiVersion": "v1", "kind": "ConfigMap", "metadata": {"name": name},
            }))
        controller = Controller(
            _config(history_dir=str(root / "state")),
            source=LocalSourceProvider(root / "repo"),
            targets=Targets.single(InMemoryTarget()),
            sleep=lambda s: None,
        )
        controller.run_once(timeout=10)
        set_controller(controller)
        try:
            yield TestClient(app)
        finally:
            set_controller(None)
            controller.shutdown()


def _signed(body: bytes, secret=SECRET) -> dict:
    mac = hmac.new(secret.encode("utf-8"), body, hashlib.sha256)
    return {"X-Hub-Signature-256": f"sha256={mac.hexdigest()}", "Content-Type": "application/json"}


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}


def test_list_applications(client):
    response = client.get("/api/applications")
    assert response.status_code == 200
    apps = response.json()
    assert [a["name"] for a in apps] == ["svc-a", "svc-b"]
    assert apps[0]["state"] == "Synced"
    assert apps[0]["destination"] == {"cluster": "in-cluster", "namespace": "team-a"}
    assert apps[0]["last_result"]["health"] == "Healthy"
    assert apps[0]["next_retry_in_seconds"] is None

    assert client.get("/api/applications", params={"state": "Error"}).json() == []


def test_get_application(client):
    response = client.get("/api/applications/svc-b")
    assert response.status_code == 200
    body = response.json()
    assert body["rule"] == "services"
    assert body["project"] == "platform"
    assert body["source"]["path"] == "services/b"
    assert body["last_result"]["applied"] == ["ConfigMap/team-b/b"]

    assert client.get("/api/applications/nope").status_code == 404


def test_application_history(client):
    response = client.get("/api/applications/svc-a/history", params={"limit": 5})
    assert response.status_code == 200
    history = response.json()
    assert len(history) == 1
    assert history[0]["status"] == "Synced"


def test_history_disabled_is_404():
    controller = Controller(
        _config(),
        source=LocalSourceProvider("/nonexistent"),
        targets=Targets.single(InMemoryTarget()),
    )
    set_controller(controller)
    try:
        response = TestClient(app).get("/api/applications/svc-a/history")
        assert response.status_code == 404
    finally:
        set_controller(None)
        controller.shutdown()


def test_rules_and_projects(client):
    rules = client.get("/api/rules").json()
    assert rules[0]["name"] == "services"
    assert rules[0]["paths"] == ["services/a", "services/b"]
    assert rules[0]["stale"] is False

    projects = {p["name"]: p for p in client.get("/api/projects").json()}
    assert set(projects) == {"default", "platform"}
    assert projects["platform"]["namespace_resource_blacklist"] == [{"group": "", "kind": "Secret"}]


def test_refresh(client):
    response = client.post("/api/refresh")
    assert response.status_code == 200
    assert response.json()["refreshed"] is True
    assert response.json()["rules"] == ["services"]


def test_webhook_requires_valid_signature(client):
    body = json.dumps({"repository": {"clone_url": REPO}}).encode("utf-8")
    response = client.post("/api/webhook/git", content=body, headers=_signed(body, "wrong"))
    assert response.status_code == 401

    response = client.post("/api/webhook/git", content=body)
    assert response.status_code == 401


def test_webhook_refreshes_matching_rules(client):
    body = json.dumps({
        "ref": "refs/heads/main",
        "repository": {"clone_url": "https://git.example.com/Platform"},
    }).encode("utf-8")
    response = client.post("/api/webhook/git", content=body, headers=_signed(body))
    assert response.status_code == 200
    assert response.json() == {"refreshed": True, "rules": ["services"], "message": ""}


def test_webhook_for_unwatched_repository(client):
    body = json.dumps({"repository": {"clone_url": "https://git.example.com/other.git"}}).encode()
    response = client.post("/api/webhook/git", content=body, headers=_signed(body))
    assert response.status_code == 200
    assert response.json()["refreshed"] is False
    assert "No rule watches" in response.json()["message"]


def test_webhook_rejects_invalid_json(client):
    body = b"{not json"
    response = client.post("/api/webhook/git", content=body, headers=_signed(body))
    assert response.status_code == 400
