"""Ignore-field handling for managed objects.

``ignoreFields`` entries are JSONPath-style expressions:

- ``$.spec.replicas``
- ``$.spec.template.spec.containers[0].image``
- ``$.metadata.annotations['app.kubernetes.io/name']``
- ``$.spec.containers[*].image``

Filter expressions (``[?(...)]``) and recursive descent (``..``) are not
supported and are rejected by :func:`parse_path`.
"""

from __future__ import annotations

import copy
import re
from collections.abc import Iterable
from typing import Any

WILDCARD = object()

Segment = str | int | object
ConcretePath = tuple[str | int, ...]

_NAME = re.compile(r"[A-Za-z0-9_\-$@]+")


def parse_path(expr: str) -> tuple[Segment, ...]:
    """Parse an expression into key / index / wildcard segments.

    Raises:
        ValueError: if the expression is malformed or unsupported.
    """
    if not expr or not expr.startswith("$"):
        raise ValueError(f"invalid path {expr!r}: must start with '$'")
    segments: list[Segment] = []
    pos = 1
    while pos < len(expr):
        char = expr[pos]
        if char == ".":
            if expr.startswith("..", pos):
                raise ValueError(f"invalid path {expr!r}: recursive descent is not supported")
            if expr.startswith(".*", pos):
                segments.append(WILDCARD)
                pos += 2
                continue
            match = _NAME.match(expr, pos + 1)
            if not match:
                raise ValueError(f"invalid path {expr!r}: expected a field name at offset {pos + 1}")
            segments.append(match.group())
            pos = match.end()
        elif char == "[":
            end = _bracket_end(expr, pos)
            segments.append(_parse_bracket(expr, expr[pos + 1 : end]))
            pos = end + 1
        else:
            raise ValueError(f"invalid path {expr!r}: unexpected {char!r} at offset {pos}")
    if not segments:
        raise ValueError(f"invalid path {expr!r}: the root object cannot be ignored")
    return tuple(segments)


def _bracket_end(expr: str, start: int) -> int:
    quote = ""
    for pos in range(start + 1, len(expr)):
        char = expr[pos]
        if quote:
            if char == quote:
                quote = ""
        elif char in "'\"":
            quote = char
        elif char == "]":
            return pos
    raise ValueError(f"invalid path {expr!r}: unterminated '['")


def _parse_bracket(expr: str, inner: str) -> Segment:
    inner = inner.strip()
    if inner == "*":
        return WILDCARD
    if len(inner) >= 2 and inner[0] == inner[-1] and inner[0] in "'\"":
        key = inner[1:-1]
        if not key:
            raise ValueError(f"invalid path {expr!r}: empty key")
        return key
    if re.fullmatch(r"-?\d+", inner):
        return int(inner)
    raise ValueError(f"invalid path {expr!r}: unsupported selector [{inner}]")


def validate_path(expr: str) -> str | None:
    """Return an error message for *expr*, or None when it is valid."""
    try:
        parse_path(expr)
    except ValueError as exc:
        return str(exc)
    return None


# ---------------------------------------------------------------------------
# Traversal
# ---------------------------------------------------------------------------


def _children(node: Any, segment: Segment) -> Iterable[tuple[str | int, Any]]:
    if segment is WILDCARD:
        if isinstance(node, dict):
            return list(node.items())
        if isinstance(node, list):
            return list(enumerate(node))
        return []
    if isinstance(segment, int):
        if isinstance(node, list) and -len(node) <= segment < len(node):
            index = segment % len(node)
            return [(index, node[index])]
        return []
    if isinstance(node, dict) and segment in node:
        return [(segment, node[segment])]
    return []


def _expand(data: Any, segments: tuple[Segment, ...]) -> list[tuple[ConcretePath, Any]]:
    """Return every concrete path (and its value) matching *segments*."""
    matches: list[tuple[ConcretePath, Any]] = [((), data)]
    for segment in segments:
        matches = [
            ((*path, key), child) for path, node in matches for key, child in _children(node, segment)
        ]
    return matches


def _parent(data: Any, path: ConcretePath, create: bool) -> Any:
    node = data
    for key in path[:-1]:
        if isinstance(node, dict):
            if key not in node:
                if not create or isinstance(key, int):
                    return None
                node[key] = {}
            node = node[key]
        elif isinstance(node, list) and isinstance(key, int) and 0 <= key < len(node):
            node = node[key]
        else:
            return None
    return node


def _set(data: Any, path: ConcretePath, value: Any) -> bool:
    parent = _parent(data, path, create=True)
    key = path[-1]
    if isinstance(parent, dict) and isinstance(key, str):
        parent[key] = copy.deepcopy(value)
        return True
    if isinstance(parent, list) and isinstance(key, int) and 0 <= key < len(parent):
        parent[key] = copy.deepcopy(value)
        return True
    return False


def _remove(data: Any, path: ConcretePath) -> None:
    parent = _parent(data, path, create=False)
    key = path[-1]
    if isinstance(parent, dict):
        parent.pop(key, None)
    elif isinstance(parent, list) and isinstance(key, int) and 0 <= key < len(parent):
        parent.pop(key)


# ---------------------------------------------------------------------------
# Filter
# ---------------------------------------------------------------------------


class FieldFilter:
    """A parsed set of ignore-field expressions."""

    def __init__(self, paths: Iterable[str] = ()) -> None:
        self.paths = list(paths)
        self._parsed = [parse_path(p) for p in self.paths]

    def __bool__(self) -> bool:
        return bool(self._parsed)

    def remove_ignored_fields(self, obj: dict[str, Any]) -> None:
        """Delete every matching field from *obj* in place; missing paths are ignored."""
        for segments in self._parsed:
            # Deepest first so list indices stay valid
            for path, _ in reversed(_expand(obj, segments)):
                _remove(obj, path)

    def preserve_ignored_fields(self, desired: dict[str, Any], existing: dict[str, Any] | None) -> None:
        """Make ignored fields of *desired* match *existing*, in place.

        A value present on the live object is copied onto the desired object;
        a path absent from the live object is removed from the desired one.
        With no live object (create) every ignored field is removed.
        """
        if existing is None:
            self.remove_ignored_fields(desired)
            return
        for segments in self._parsed:
            live = dict(_expand(existing, segments))
            for path, _ in reversed(_expand(desired, segments)):
                if path not in live:
                    _remove(desired, path)
            for path, value in live.items():
                _set(desired, path, value)

    def matching_fields(self, obj: dict[str, Any]) -> dict[str, list[Any]]:
        """Return the values each expression currently selects in *obj*."""
        result: dict[str, list[Any]] = {}
        for expr, segments in zip(self.paths, self._parsed, strict=True):
            values = [value for _, value in _expand(obj, segments)]
            if values:
                result[expr] = values
        return result
