"""Tests for source providers and manifest parsing."""

import json
import shutil
import tempfile
from pathlib import Path

import pytest
from git import Actor, Repo

from appset.errors import FetchError, ManifestError
from appset.source.manifests import parse_manifests
from appset.source.tree import GitSourceProvider, LocalSourceProvider

CONFIGMAP = """\
apiVersion: v1
kind: ConfigMap
metadata:
  name: {name}
data:
  key: value
"""


def _write(root: Path, files: dict[str, str]) -> None:
    for rel, content in files.items():
        path = root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)


# --- Manifest parsing ---


def test_parse_multi_document_yaml_skips_empty():
    text = CONFIGMAP.format(name="one") + "---\n---\n" + CONFIGMAP.format(name="two")
    manifests = parse_manifests([("cm.yaml", text)])
    assert [m["metadata"]["name"] for m in manifests] == ["one", "two"]


def test_parse_files_in_name_order_and_json():
    obj = {"apiVersion": "v1", "kind": "Secret", "metadata": {"name": "creds"}}
    manifests = parse_manifests([
        ("z.yaml", CONFIGMAP.format(name="late")),
        ("a.json", json.dumps(obj)),
    ])
    assert [m["metadata"]["name"] for m in manifests] == ["creds", "late"]


def test_list_objects_are_flattened():
    text = (
        "apiVersion: v1\nkind: List\nitems:\n"
        "- apiVersion: v1\n  kind: ConfigMap\n  metadata:\n    name: a\n"
        "- apiVersion: v1\n  kind: ConfigMap\n  metadata:\n    name: b\n"
    )
    manifests = parse_manifests([("list.yaml", text)])
    assert [m["metadata"]["name"] for m in manifests] == ["a", "b"]


def test_missing_name_is_manifest_error():
    with pytest.raises(ManifestError, match="metadata.name"):
        parse_manifests([("bad.yaml", "apiVersion: v1\nkind: ConfigMap\nmetadata: {}\n")])


def test_unparseable_yaml_is_manifest_error():
    with pytest.raises(ManifestError, match="failed to parse"):
        parse_manifests([("bad.yaml", "a: [unclosed\n")])


# --- Local provider ---


def test_local_provider_lists_and_reads():
    with tempfile.TemporaryDirectory() as tmpdir:
        root = Path(tmpdir)
        _write(root, {
            "services/a/cm.yaml": CONFIGMAP.format(name="a"),
            "services/a/README.md": "not a manifest",
            "services/b/cm.yml": CONFIGMAP.format(name="b"),
            ".git/config": "",
        })
        provider = LocalSourceProvider()
        commit = provider.resolve(tmpdir, "HEAD")

        directories = provider.list_directories(tmpdir, commit)
        assert "services/a" in directories
        assert "services/b" in directories
        assert ".git" not in directories

        manifests = provider.read_manifests(tmpdir, commit, "services/a")
        assert [m["metadata"]["name"] for m in manifests] == ["a"]


def test_local_provider_revision_changes_with_content():
    with tempfile.TemporaryDirectory() as tmpdir:
        root = Path(tmpdir)
        _write(root, {"services/a/cm.yaml": CONFIGMAP.format(name="a")})
        provider = LocalSourceProvider(root)
        before = provider.resolve("ignored", "HEAD")
        assert provider.resolve("ignored", "HEAD") == before

        _write(root, {"services/a/cm.yaml": CONFIGMAP.format(name="changed")})
        assert provider.resolve("ignored", "HEAD") != before


def test_local_provider_missing_directory():
    provider = LocalSourceProvider()
    with pytest.raises(FetchError):
        provider.resolve("/nonexistent/source/tree", "HEAD")


# --- Git provider ---

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")
AUTHOR = Actor("Test", "test@example.com")


def _commit(repo: Repo, root: Path, files: dict[str, str], message: str):
    _write(root, files)
    repo.index.add(list(files))
    return repo.index.commit(message, author=AUTHOR, committer=AUTHOR)


@requires_git
def test_git_provider_reads_commit():
    with tempfile.TemporaryDirectory() as tmpdir:
        origin_dir = Path(tmpdir) / "origin"
        origin_dir.mkdir()
        origin = Repo.init(origin_dir)
        first = _commit(origin, origin_dir, {
            "services/a/cm.yaml": CONFIGMAP.format(name="a"),
            "services/b/cm.yaml": CONFIGMAP.format(name="b"),
        }, "initial")

        provider = GitSourceProvider(cache_dir=Path(tmpdir) / "cache", timeout=30)
        url = str(origin_dir)
        commit = provider.resolve(url, "HEAD")
        assert commit == first.hexsha

        directories = provider.list_directories(url, commit)
        assert {"services", "services/a", "services/b"} <= set(directories)

        manifests = provider.read_manifests(url, commit, "services/b")
        assert manifests[0]["metadata"]["name"] == "b"

        second = _commit(origin, origin_dir, {
            "services/c/cm.yaml": CONFIGMAP.format(name="c"),
        }, "add c")
        assert provider.resolve(url, "HEAD", refresh=False) == first.hexsha
        assert provider.resolve(url, "HEAD") == second.hexsha
        assert "services/c" in provider.list_directories(url, second.hexsha)


@requires_git
def test_git_provider_unknown_revision():
    with tempfile.TemporaryDirectory() as tmpdir:
        origin_dir = Path(tmpdir) / "origin"
        origin_dir.mkdir()
        origin = Repo.init(origin_dir)
        _commit(origin, origin_dir, {"a/cm.yaml": CONFIGMAP.format(name="a")}, "initial")

        provider = GitSourceProvider(cache_dir=Path(tmpdir) / "cache")
        with pytest.raises(FetchError, match="Unknown revision"):
            provider.resolve(str(origin_dir), "no-such-branch")


@requires_git
def test_git_provider_unreachable_repository():
    with tempfile.TemporaryDirectory() as tmpdir:
        provider = GitSourceProvider(cache_dir=Path(tmpdir) / "cache")
        with pytest.raises(FetchError, match="Cannot clone"):
            provider.resolve(str(Path(tmpdir) / "missing"), "HEAD")
