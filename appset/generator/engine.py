"""Generator engine — expand a rule over discovered paths.

``expand`` is pure: the same rule and path set always produce the same
descriptors. Names that collide under a rule are a configuration error and
fail the whole rule instead of being merged or silently dropped.
"""

from __future__ import annotations

import re
from collections import defaultdict

from appset.errors import NamingCollisionError, TemplateError
from appset.models.application import (
    ApplicationDescriptor,
    Destination,
    SourceLocation,
)
from appset.models.rule import GeneratorRule

# DNS-1123 label: the identity doubles as a label value and resource name.
_NAME_RE = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")
_MAX_NAME_LENGTH = 63


def derive_name(rule: GeneratorRule, path: str) -> str:
    """Derive the application identity for ``path`` under ``rule``."""
    name = rule.template.name.render(path)
    if not name:
        raise TemplateError(
            f"Rule {rule.name!r}: name template {rule.template.name} "
            f"renders empty for path {path!r}"
        )
    if len(name) > _MAX_NAME_LENGTH or not _NAME_RE.match(name):
        raise TemplateError(
            f"Rule {rule.name!r}: derived name {name!r} for path {path!r} "
            "is not a valid DNS-1123 label"
        )
    return name


def build_descriptor(rule: GeneratorRule, path: str) -> ApplicationDescriptor:
    """Build the full descriptor for a single matched path."""
    template = rule.template
    namespace = template.namespace.render(path)
    if not namespace:
        raise TemplateError(
            f"Rule {rule.name!r}: namespace template {template.namespace} "
            f"renders empty for path {path!r}"
        )
    return ApplicationDescriptor(
        name=derive_name(rule, path),
        project=template.project,
        source=SourceLocation(
            repo_url=rule.repo_url,
            revision=rule.revision,
            path=template.path.render(path),
        ),
        destination=Destination(namespace=namespace, cluster=template.cluster),
        sync_policy=template.sync_policy,
        rule_name=rule.name,
        wave=rule.wave_for(path),
        labels=template.labels,
    )


def expand(rule: GeneratorRule, paths: set[str] | frozenset[str]) -> set[ApplicationDescriptor]:
    """Map every path to an ApplicationDescriptor.

    Raises:
        NamingCollisionError: Two or more paths derive the same name. No
            descriptor is produced for the rule.
        TemplateError: A path renders an empty or invalid value.
    """
    by_name: dict[str, list[str]] = defaultdict(list)
    descriptors: dict[str, ApplicationDescriptor] = {}

    for path in sorted(paths):
        descriptor = build_descriptor(rule, path)
        by_name[descriptor.name].append(path)
        descriptors[descriptor.name] = descriptor

    collisions = {name: ps for name, ps in by_name.items() if len(ps) > 1}
    if collisions:
        raise NamingCollisionError(rule.name, collisions)

    return set(descriptors.values())
