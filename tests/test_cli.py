"""Tests for the appset command line."""

import tempfile
from pathlib import Path

import yaml
from click.testing import CliRunner

from appset.cli import main


def _invoke(args, **env):
    # Wide enough that rich never wraps table cells.
    return CliRunner().invoke(main, args, env={"COLUMNS": "200", **env})


def _setup(root: Path, history=True) -> Path:
    for name in ("a", "b"):
        directory = root / "repo" / "services" / name
        directory.mkdir(parents=True)
        (directory / "configmap.yaml").write_text(yaml.safe_dump({
            "apiVersion": "v1",
            "kind": "ConfigMap",
            "metadata": {"name": name},
            "data": {"k": "v"},
        }))

    settings = {"history_dir": str(root / "state")} if history else {}
    config = {
        "settings": settings,
        "projects": [{"name": "platform", "destinations": [{"namespace": "team-*"}]}],
        "rules": [{
            "name": "services",
            "repo_url": "https://git.example.com/platform.git",
            "directories": [{"path": "services/*"}],
            "waves": [{"wave": -1, "paths": ["services/b"]}],
            "template": {
                "name": "svc-{{path.basename}}",
                "namespace": "team-{{path.basename}}",
                "project": "platform",
                "sync_policy": {"auto_prune": True},
            },
        }],
    }
    path = root / "appset.yaml"
    path.write_text(yaml.safe_dump(config))
    return path


def test_validate():
    with tempfile.TemporaryDirectory() as tmpdir:
        config = _setup(Path(tmpdir))
        result = _invoke(["--config", str(config), "validate"])
        assert result.exit_code == 0
        assert "Valid!" in result.output
        assert "1 rule(s)" in result.output


def test_validate_reports_issues():
    with tempfile.TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "appset.yaml"
        path.write_text(yaml.safe_dump({"rules": [{"name": "x"}]}))
        result = _invoke(["--config", str(path), "validate"])
        assert result.exit_code == 1
        assert "Configuration is invalid" in result.output
        assert "repo_url" in result.output


def test_missing_config_file():
    result = _invoke(["--config", "/nonexistent/appset.yaml", "validate"])
    assert result.exit_code == 1
    assert "Config file not found" in result.output


def test_config_from_environment():
    with tempfile.TemporaryDirectory() as tmpdir:
        config = _setup(Path(tmpdir))
        result = _invoke(["rules"], APPSET_CONFIG=str(config))
        assert result.exit_code == 0
        assert "services" in result.output


def test_preview_lists_generated_applications():
    with tempfile.TemporaryDirectory() as tmpdir:
        root = Path(tmpdir)
        config = _setup(root)
        result = _invoke([
            "--config", str(config), "preview", "--local-source", str(root / "repo"),
        ])
        assert result.exit_code == 0
        assert "svc-a" in result.output
        assert "svc-b" in result.output
        assert result.output.index("svc-b") < result.output.index("svc-a")
        assert not (root / "state").exists()


def test_reconcile_then_status_and_history():
    with tempfile.TemporaryDirectory() as tmpdir:
        root = Path(tmpdir)
        config = _setup(root)

        result = _invoke([
            "--config", str(config), "reconcile",
            "--local-source", str(root / "repo"), "--in-memory", "--timeout", "10",
        ])
        assert result.exit_code == 0
        assert "svc-a" in result.output
        assert "Synced" in result.output

        result = _invoke(["--config", str(config), "status"])
        assert result.exit_code == 0
        assert "svc-a" in result.output
        assert "svc-b" in result.output

        result = _invoke(["--config", str(config), "history", "svc-a", "-n", "5"])
        assert result.exit_code == 0
        assert "Applied:" in result.output


def test_reconcile_denied_application_fails():
    with tempfile.TemporaryDirectory() as tmpdir:
        root = Path(tmpdir)
        config = _setup(root, history=False)
        data = yaml.safe_load(config.read_text())
        data["projects"][0]["destinations"] = [{"namespace": "elsewhere"}]
        config.write_text(yaml.safe_dump(data))

        result = _invoke([
            "--config", str(config), "reconcile",
            "--local-source", str(root / "repo"), "--in-memory", "--timeout", "10",
        ])
        assert result.exit_code == 1
        assert "in Error" in result.output


def test_history_requires_history_dir():
    with tempfile.TemporaryDirectory() as tmpdir:
        config = _setup(Path(tmpdir), history=False)
        result = _invoke(["--config", str(config), "status"])
        assert result.exit_code == 1
        assert "history is disabled" in result.output


def test_projects_lists_default_and_configured():
    with tempfile.TemporaryDirectory() as tmpdir:
        config = _setup(Path(tmpdir))
        result = _invoke(["--config", str(config), "projects"])
        assert result.exit_code == 0
        assert "platform" in result.output
        assert "default" in result.output
