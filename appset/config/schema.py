"""JSON Schema for the controller configuration file.

This is the structural definition of ``appset.yaml``: settings, projects and
generator rules. It is checked before any field is converted, so a malformed
file is rejected with every issue listed at once.
"""

_GROUP_KIND = {
    "type": "object",
    "required": ["kind"],
    "additionalProperties": False,
    "properties": {
        "group": {"type": "string"},
        "kind": {"type": "string", "minLength": 1},
    },
}

_SYNC_POLICY = {
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "auto_prune": {"type": "boolean"},
        "self_heal": {"type": "boolean"},
        "create_namespace": {"type": "boolean"},
    },
}

CONFIG_SCHEMA: dict = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "title": "appset controller configuration",
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "settings": {
            "type": "object",
            "additionalProperties": False,
            "properties": {
                "poll_interval_seconds": {"type": "number", "minimum": 1},
                "max_concurrency": {"type": "integer", "minimum": 1},
                "operation_timeout_seconds": {"type": "number", "minimum": 1},
                "history_dir": {"type": "string"},
                "cache_dir": {"type": "string"},
                "retry": {
                    "type": "object",
                    "additionalProperties": False,
                    "properties": {
                        "limit": {"type": "integer", "minimum": 0},
                        "backoff_seconds": {"type": "number", "minimum": 0},
                        "factor": {"type": "number", "minimum": 1},
                        "max_backoff_seconds": {"type": "number", "minimum": 0},
                    },
                },
                "fetch": {
                    "type": "object",
                    "additionalProperties": False,
                    "properties": {
                        "retries": {"type": "integer", "minimum": 0},
                        "backoff_seconds": {"type": "number", "minimum": 0},
                        "max_backoff_seconds": {"type": "number", "minimum": 0},
                    },
                },
                "webhook_secret": {"type": "string"},
            },
        },
        "projects": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["name"],
                "additionalProperties": False,
                "properties": {
                    "name": {"type": "string", "pattern": "^[a-z0-9][-a-z0-9]*$"},
                    "description": {"type": "string"},
                    "source_repos": {"type": "array", "items": {"type": "string"}},
                    "destinations": {
                        "type": "array",
                        "items": {
                            "type": "object",
                            "additionalProperties": False,
                            "properties": {
                                "cluster": {"type": "string"},
                                "namespace": {"type": "string"},
                            },
                        },
                    },
                    "cluster_resource_whitelist": {"type": "array", "items": _GROUP_KIND},
                    "namespace_resource_whitelist": {"type": "array", "items": _GROUP_KIND},
                    "namespace_resource_blacklist": {"type": "array", "items": _GROUP_KIND},
                },
            },
        },
        "rules": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["name", "repo_url", "directories", "template"],
                "additionalProperties": False,
                "properties": {
                    "name": {"type": "string", "pattern": "^[a-z0-9][-a-z0-9]*$"},
                    "repo_url": {"type": "string", "minLength": 1},
                    "revision": {"type": "string", "minLength": 1},
                    "directories": {
                        "type": "array",
                        "minItems": 1,
                        "items": {
                            "type": "object",
                            "required": ["path"],
                            "additionalProperties": False,
                            "properties": {
                                "path": {"type": "string", "minLength": 1},
                                "exclude": {"type": "boolean"},
                            },
                        },
                    },
                    "waves": {
                        "type": "array",
                        "items": {
                            "type": "object",
                            "required": ["wave", "paths"],
                            "additionalProperties": False,
                            "properties": {
                                "wave": {"type": "integer"},
                                "paths": {
                                    "type": "array",
                                    "minItems": 1,
                                    "items": {"type": "string"},
                                },
                            },
                        },
                    },
                    "template": {
                        "type": "object",
                        "required": ["name", "namespace"],
                        "additionalProperties": False,
                        "properties": {
                            "name": {"type": "string", "minLength": 1},
                            "namespace": {"type": "string", "minLength": 1},
                            "project": {"type": "string"},
                            "cluster": {"type": "string"},
                            "path": {"type": "string"},
                            "sync_policy": _SYNC_POLICY,
                            "labels": {"type": "object"},
                        },
                    },
                },
            },
        },
    },
}


def get_schema() -> dict:
    """Return the configuration JSON Schema."""
    return CONFIG_SCHEMA
