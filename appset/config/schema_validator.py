"""Schema validator — structural validation of the controller configuration.

Walks the JSON Schema in ``appset.config.schema`` and reports every
required/type/enum/pattern/bounds issue with a dotted path, so the loader can
reject a file with all of its problems at once.
"""

from __future__ import annotations

import re

from appset.config.schema import get_schema


def validate_schema(data: dict) -> list[str]:
    """Validate a parsed configuration dict.

    Args:
        data: The parsed YAML document.

    Returns:
        List of error messages. Empty list means valid.
    """
    issues: list[str] = []
    _validate_node(data, get_schema(), "", issues)
    return issues


def _validate_node(data, schema: dict, path: str, issues: list[str]):
    """Recursively validate data against a JSON Schema node."""
    schema_type = schema.get("type")
    where = path or "/"

    if schema_type and not _type_matches(data, schema_type):
        issues.append(f"{where}: expected type '{schema_type}', got {type(data).__name__}")
        return

    if "enum" in schema and data not in schema["enum"]:
        issues.append(f"{where}: value '{data}' not in allowed values {schema['enum']}")

    if schema_type == "string" and isinstance(data, str):
        min_len = schema.get("minLength", 0)
        if len(data) < min_len:
            issues.append(f"{where}: string too short (min {min_len}, got {len(data)})")
        if "pattern" in schema and not re.match(schema["pattern"], data):
            issues.append(f"{where}: string '{data}' does not match pattern '{schema['pattern']}'")

    if schema_type in ("integer", "number") and "minimum" in schema:
        if data < schema["minimum"]:
            issues.append(f"{where}: value {data} is below minimum {schema['minimum']}")

    if schema_type == "object" and isinstance(data, dict):
        for req in schema.get("required", []):
            if req not in data:
                issues.append(f"{where}: missing required property '{req}'")

        props = schema.get("properties", {})
        for key, value in data.items():
            if key in props:
                _validate_node(value, props[key], f"{path}.{key}", issues)
            elif schema.get("additionalProperties") is False:
                issues.append(f"{where}: unknown property '{key}'")

    if schema_type == "array" and isinstance(data, list):
        min_items = schema.get("minItems", 0)
        if len(data) < min_items:
            issues.append(f"{where}: array too short (min {min_items}, got {len(data)})")

        items_schema = schema.get("items")
        if items_schema:
            for i, item in enumerate(data):
                _validate_node(item, items_schema, f"{path}[{i}]", issues)


def _type_matches(data, schema_type: str) -> bool:
    """Check if data matches the expected JSON Schema type."""
    type_map = {
        "string": str,
        "integer": int,
        "number": (int, float),
        "boolean": bool,
        "array": list,
        "object": dict,
        "null": type(None),
    }
    expected = type_map.get(schema_type)
    if expected is None:
        return True
    # YAML booleans are ints in Python; don't let them pass as numbers
    if schema_type in ("integer", "number") and isinstance(data, bool):
        return False
    return isinstance(data, expected)
