"""Error taxonomy for the reconciliation engine.

Every failure that can reach an application's SyncResult is one of these.
``kind`` is the stable, user-visible name recorded as the result's cause.
"""

from __future__ import annotations


class AppSetError(Exception):
    """Base class for all appset errors."""

    kind = "Error"


class ConfigError(AppSetError):
    """The controller configuration is invalid."""

    kind = "ConfigError"

    def __init__(self, message: str, issues: list[str] | None = None):
        self.issues = issues or []
        if self.issues:
            message = message + ":\n" + "\n".join(f"  - {i}" for i in self.issues)
        super().__init__(message)


class TemplateError(AppSetError):
    """A template could not be parsed or rendered to a valid value."""

    kind = "TemplateError"


class FetchError(AppSetError):
    """The source repository could not be read (network, auth, not found)."""

    kind = "FetchError"

    def __init__(self, message: str, repo_url: str = "", revision: str = ""):
        super().__init__(message)
        self.repo_url = repo_url
        self.revision = revision


class ManifestError(AppSetError):
    """A manifest file in the source tree is not a valid resource object."""

    kind = "ManifestError"


class NamingCollisionError(AppSetError):
    """Two or more paths under one rule derive the same application identity."""

    kind = "NamingCollisionError"

    def __init__(self, rule_name: str, collisions: dict[str, list[str]]):
        self.rule_name = rule_name
        self.collisions = collisions
        details = "; ".join(
            f"{name} <- {', '.join(sorted(paths))}"
            for name, paths in sorted(collisions.items())
        )
        super().__init__(f"Rule {rule_name!r} derives colliding names: {details}")


class PermissionDenied(AppSetError):
    """The owning project does not allow the destination, source or resource."""

    kind = "PermissionDenied"


class ApplyError(AppSetError):
    """The target rejected an apply or delete operation."""

    kind = "ApplyError"


class ConflictError(ApplyError):
    """Compare-and-set failed: the live object changed since it was observed."""

    kind = "Conflict"


class SyncCancelled(AppSetError):
    """An in-flight apply was cancelled at a safe stopping point."""

    kind = "Cancelled"


class InvalidTransition(AppSetError):
    """A state machine transition that the reconciler does not allow."""

    kind = "InvalidTransition"
