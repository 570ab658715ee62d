"""Manifest parsing — YAML/JSON files in an application directory to objects."""

from __future__ import annotations

import json
from typing import Any, Iterable

import yaml

from appset.errors import ManifestError

MANIFEST_SUFFIXES = (".yaml", ".yml", ".json")


def is_manifest_file(name: str) -> bool:
    return name.endswith(MANIFEST_SUFFIXES)


def parse_manifests(files: Iterable[tuple[str, str]]) -> list[dict[str, Any]]:
    """Parse ``(file_name, text)`` pairs into resource objects.

    Files are read in name order. YAML files may hold several documents;
    empty documents are skipped and ``List`` objects are flattened.

    Raises:
        ManifestError: A file does not parse or holds a non-resource object.
    """
    manifests: list[dict[str, Any]] = []
    for name, text in sorted(files):
        try:
            if name.endswith(".json"):
                documents = [json.loads(text)]
            else:
                documents = list(yaml.safe_load_all(text))
        except (yaml.YAMLError, json.JSONDecodeError) as e:
            raise ManifestError(f"{name}: failed to parse: {e}") from e

        for index, doc in enumerate(documents):
            if doc is None:
                continue
            for obj in _flatten(doc):
                _check_resource(obj, f"{name}[{index}]")
                manifests.append(obj)
    return manifests


def _flatten(doc: Any) -> list[Any]:
    if isinstance(doc, dict) and doc.get("kind", "").endswith("List") and "items" in doc:
        return list(doc.get("items") or [])
    return [doc]


def _check_resource(obj: Any, where: str) -> None:
    if not isinstance(obj, dict):
        raise ManifestError(f"{where}: expected a mapping, got {type(obj).__name__}")
    for required in ("apiVersion", "kind"):
        if not obj.get(required):
            raise ManifestError(f"{where}: missing '{required}'")
    metadata = obj.get("metadata")
    if not isinstance(metadata, dict) or not metadata.get("name"):
        raise ManifestError(f"{where}: missing 'metadata.name'")
