"""
Configuration loading for the controller.

Reads ``appset.yaml`` — settings, projects and generator rules — validates it
structurally and converts it into frozen dataclasses.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from appset.backoff import Backoff
from appset.config.schema_validator import validate_schema
from appset.errors import ConfigError, TemplateError
from appset.generator.template import parse_template
from appset.models.application import DEFAULT_CLUSTER, SyncPolicy
from appset.models.project import GroupKind, Project, ProjectDestination
from appset.models.rule import (
    ApplicationTemplate,
    DirectoryMatch,
    GeneratorRule,
    WaveStep,
)

CONFIG_ENV_VAR = "APPSET_CONFIG"


@dataclass(frozen=True)
class ControllerSettings:
    """Timing, concurrency and retry settings, with documented defaults."""

    poll_interval_seconds: float = 180.0
    max_concurrency: int = 10
    operation_timeout_seconds: float = 60.0
    retry: Backoff = field(default_factory=lambda: Backoff(
        limit=5, base_seconds=5.0, factor=2.0, max_seconds=180.0,
    ))
    fetch: Backoff = field(default_factory=lambda: Backoff(
        limit=3, base_seconds=2.0, factor=2.0, max_seconds=30.0,
    ))
    history_dir: str = ""
    cache_dir: str = ""
    webhook_secret: str = ""


@dataclass(frozen=True)
class ControllerConfig:
    """Everything the controller needs: settings, projects and rules."""

    settings: ControllerSettings = field(default_factory=ControllerSettings)
    projects: dict[str, Project] = field(default_factory=dict)
    rules: tuple[GeneratorRule, ...] = ()

    def get_rule(self, name: str) -> GeneratorRule | None:
        for rule in self.rules:
            if rule.name == name:
                return rule
        return None


def load_config(config_path: str | Path | None = None) -> ControllerConfig:
    """
    Load the controller configuration from a YAML file.

    Args:
        config_path: Path to the config file. If None, ``$APPSET_CONFIG`` is
            used, falling back to ``./appset.yaml``.

    Returns:
        ControllerConfig with parsed settings, projects and rules

    Raises:
        FileNotFoundError: If the config file doesn't exist
        yaml.YAMLError: If the config file is invalid YAML
        ConfigError: If validation fails
    """
    if config_path is None:
        config_path = os.environ.get(CONFIG_ENV_VAR, "appset.yaml")
    config_path = Path(config_path)

    with open(config_path, "r") as f:
        data = yaml.safe_load(f)

    return parse_config(data or {})


def parse_config(data: dict[str, Any]) -> ControllerConfig:
    """Validate and convert an already-parsed configuration document."""
    issues = validate_schema(data)
    if issues:
        raise ConfigError("Invalid configuration", issues)

    settings = _parse_settings(data.get("settings") or {})

    projects: dict[str, Project] = {}
    for project_data in data.get("projects") or []:
        project = _parse_project(project_data)
        if project.name in projects:
            issues.append(f"duplicate project name '{project.name}'")
        projects[project.name] = project
    if "default" not in projects:
        projects["default"] = Project(name="default", description="Unrestricted default project")

    rules: list[GeneratorRule] = []
    seen: set[str] = set()
    for rule_data in data.get("rules") or []:
        name = rule_data["name"]
        if name in seen:
            issues.append(f"duplicate rule name '{name}'")
        seen.add(name)
        try:
            rules.append(_parse_rule(rule_data))
        except TemplateError as e:
            issues.append(f"rule '{name}': {e}")

    if issues:
        raise ConfigError("Invalid configuration", issues)

    return ControllerConfig(settings=settings, projects=projects, rules=tuple(rules))


def _parse_settings(data: dict[str, Any]) -> ControllerSettings:
    defaults = ControllerSettings()
    retry_data = data.get("retry") or {}
    fetch_data = data.get("fetch") or {}
    return ControllerSettings(
        poll_interval_seconds=data.get("poll_interval_seconds", defaults.poll_interval_seconds),
        max_concurrency=data.get("max_concurrency", defaults.max_concurrency),
        operation_timeout_seconds=data.get(
            "operation_timeout_seconds", defaults.operation_timeout_seconds
        ),
        retry=Backoff(
            limit=retry_data.get("limit", defaults.retry.limit),
            base_seconds=retry_data.get("backoff_seconds", defaults.retry.base_seconds),
            factor=retry_data.get("factor", defaults.retry.factor),
            max_seconds=retry_data.get("max_backoff_seconds", defaults.retry.max_seconds),
        ),
        fetch=Backoff(
            limit=fetch_data.get("retries", defaults.fetch.limit),
            base_seconds=fetch_data.get("backoff_seconds", defaults.fetch.base_seconds),
            max_seconds=fetch_data.get("max_backoff_seconds", defaults.fetch.max_seconds),
        ),
        history_dir=data.get("history_dir", ""),
        cache_dir=data.get("cache_dir", ""),
        webhook_secret=data.get("webhook_secret", ""),
    )


def _parse_group_kinds(items: list[dict[str, Any]] | None) -> tuple[GroupKind, ...]:
    return tuple(GroupKind(group=i.get("group", ""), kind=i["kind"]) for i in items or [])


def _parse_project(data: dict[str, Any]) -> Project:
    destinations = data.get("destinations")
    whitelist = data.get("namespace_resource_whitelist")
    return Project(
        name=data["name"],
        description=data.get("description", ""),
        source_repos=tuple(data.get("source_repos", ["*"])),
        destinations=(
            tuple(
                ProjectDestination(
                    cluster=d.get("cluster", "*"),
                    namespace=d.get("namespace", "*"),
                )
                for d in destinations
            )
            if destinations is not None
            else (ProjectDestination(),)
        ),
        cluster_resource_whitelist=_parse_group_kinds(data.get("cluster_resource_whitelist")),
        namespace_resource_whitelist=(
            _parse_group_kinds(whitelist) if whitelist is not None else (GroupKind(),)
        ),
        namespace_resource_blacklist=_parse_group_kinds(data.get("namespace_resource_blacklist")),
    )


def _parse_rule(data: dict[str, Any]) -> GeneratorRule:
    template_data = data["template"]
    policy_data = template_data.get("sync_policy") or {}
    labels = template_data.get("labels") or {}

    template = ApplicationTemplate(
        name=parse_template(template_data["name"]),
        namespace=parse_template(template_data["namespace"]),
        project=template_data.get("project", "default"),
        cluster=template_data.get("cluster", DEFAULT_CLUSTER),
        path=parse_template(template_data.get("path", "{{path}}")),
        sync_policy=SyncPolicy(
            auto_prune=policy_data.get("auto_prune", False),
            self_heal=policy_data.get("self_heal", False),
            create_namespace=policy_data.get("create_namespace", False),
        ),
        labels=tuple(sorted((str(k), str(v)) for k, v in labels.items())),
    )

    return GeneratorRule(
        name=data["name"],
        repo_url=data["repo_url"],
        revision=data.get("revision", "HEAD"),
        template=template,
        directories=tuple(
            DirectoryMatch(path=d["path"], exclude=d.get("exclude", False))
            for d in data["directories"]
        ),
        waves=tuple(
            WaveStep(wave=w["wave"], paths=tuple(w["paths"]))
            for w in data.get("waves") or []
        ),
    )
