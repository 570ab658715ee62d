"""Tagged templates for path-derived strings.

A template such as ``svc-{{path.basename}}`` is parsed into a tuple of
literal and path-token segments rather than being interpolated as
a free-form string. Rendering is then a total function of the path, and the
set of inputs a name depends on is known before any path is seen.

Supported tokens:
- ``{{path}}``                      full matched path
- ``{{path.basename}}``             last path segment
- ``{{path.basenameNormalized}}``   basename lowercased, invalid chars -> ``-``
- ``{{path[N]}}``                   N-th segment (negative indexes allowed)
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum

from appset.errors import TemplateError

_TOKEN_RE = re.compile(r"\{\{\s*([^{}]*?)\s*\}\}")
_SEGMENT_RE = re.compile(r"^path\[(-?\d+)\]$")
_NORMALIZE_RE = re.compile(r"[^a-z0-9-]+")


class TokenKind(Enum):
    PATH = "path"
    BASENAME = "path.basename"
    BASENAME_NORMALIZED = "path.basenameNormalized"
    SEGMENT = "path[]"


@dataclass(frozen=True)
class Literal:
    text: str

    def render(self, path: str) -> str:
        return self.text


@dataclass(frozen=True)
class PathToken:
    kind: TokenKind
    index: int = 0

    def render(self, path: str) -> str:
        segments = [s for s in path.strip("/").split("/") if s]
        if self.kind == TokenKind.PATH:
            return "/".join(segments)
        if self.kind == TokenKind.BASENAME:
            return segments[-1] if segments else ""
        if self.kind == TokenKind.BASENAME_NORMALIZED:
            base = segments[-1] if segments else ""
            return _NORMALIZE_RE.sub("-", base.lower()).strip("-")
        try:
            return segments[self.index]
        except IndexError:
            raise TemplateError(
                f"path {path!r} has no segment {self.index} "
                f"({len(segments)} segment(s))"
            ) from None


@dataclass(frozen=True)
class Template:
    """A parsed template: an ordered tuple of literal and token segments."""

    source: str
    segments: tuple[Literal | PathToken, ...]

    @property
    def is_constant(self) -> bool:
        return all(isinstance(s, Literal) for s in self.segments)

    def render(self, path: str) -> str:
        return "".join(segment.render(path) for segment in self.segments)

    def __str__(self) -> str:
        return self.source


def parse_template(source: str) -> Template:
    """Parse ``source`` into a Template.

    Raises:
        TemplateError: If the template contains an unknown token or stray braces.
    """
    segments: list[Literal | PathToken] = []
    pos = 0
    for match in _TOKEN_RE.finditer(source):
        if match.start() > pos:
            segments.append(_literal(source[pos:match.start()], source))
        segments.append(_token(match.group(1), source))
        pos = match.end()
    if pos < len(source):
        segments.append(_literal(source[pos:], source))
    return Template(source=source, segments=tuple(segments))


def _literal(text: str, source: str) -> Literal:
    if "{{" in text or "}}" in text:
        raise TemplateError(f"Unbalanced braces in template {source!r}")
    return Literal(text)


def _token(expr: str, source: str) -> PathToken:
    if expr == TokenKind.PATH.value:
        return PathToken(TokenKind.PATH)
    if expr == TokenKind.BASENAME.value:
        return PathToken(TokenKind.BASENAME)
    if expr == TokenKind.BASENAME_NORMALIZED.value:
        return PathToken(TokenKind.BASENAME_NORMALIZED)
    m = _SEGMENT_RE.match(expr)
    if m:
        return PathToken(TokenKind.SEGMENT, int(m.group(1)))
    raise TemplateError(f"Unknown token {{{{{expr}}}}} in template {source!r}")
