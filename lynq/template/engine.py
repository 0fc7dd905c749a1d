"""Template rendering for resource names, namespaces, metadata and bodies.

Templates are Jinja2 with strict undefined variables: a typo in a variable
name is a render error rather than an empty string.  Use the ``default``
filter for optional values.

Typed helpers (``toInt``, ``toFloat``, ``toBool``) wrap their result in a
marker that :func:`parse_typed_value` turns back into a native value when a
manifest body is rendered, so ``replicas: "{{ toInt(replicas) }}"`` becomes
an integer in the applied object.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any
from urllib.parse import urlparse

from jinja2 import StrictUndefined, Template, TemplateError
from jinja2.sandbox import SandboxedEnvironment

from lynq.errors import TemplateRenderError

MARKER_INT = "__LYNQ_TYPE_INT__"
MARKER_FLOAT = "__LYNQ_TYPE_FLOAT__"
MARKER_BOOL = "__LYNQ_TYPE_BOOL__"

_TRUTHY = {"true", "1", "yes", "on", "t", "y"}
_MAX_CACHED_TEMPLATES = 2048


# ---------------------------------------------------------------------------
# Helper functions exposed to templates
# ---------------------------------------------------------------------------


def to_host(raw_url: str) -> str:
    """Extract the hostname from a URL; bare hosts lose their port."""
    parsed = urlparse(raw_url)
    if parsed.hostname and parsed.scheme:
        return parsed.hostname
    host, _, _ = raw_url.partition(":")
    return host


def trunc63(value: str) -> str:
    """Truncate to the 63-character Kubernetes label/name limit."""
    return value[:63]


def sha1sum(value: str) -> str:
    return hashlib.sha1(value.encode()).hexdigest()  # noqa: S324


def from_json(value: str) -> Any:
    """Parse JSON; returns an empty dict on malformed input so templates keep rendering."""
    try:
        return json.loads(value)
    except (TypeError, ValueError):
        return {}


def to_int(value: Any) -> str:
    result = 0
    if isinstance(value, bool):
        result = int(value)
    elif isinstance(value, int | float):
        result = int(value)
    elif isinstance(value, str):
        try:
            result = int(value)
        except ValueError:
            try:
                result = int(float(value))
            except ValueError:
                result = 0
    return f"{MARKER_INT}{result}"


def to_float(value: Any) -> str:
    result = 0.0
    if isinstance(value, bool):
        result = float(value)
    elif isinstance(value, int | float):
        result = float(value)
    elif isinstance(value, str):
        try:
            result = float(value)
        except ValueError:
            result = 0.0
    # 42.0 renders as "42"
    text = str(int(result)) if result.is_integer() else repr(result)
    return f"{MARKER_FLOAT}{text}"


def to_bool(value: Any) -> str:
    if isinstance(value, bool):
        result = value
    elif isinstance(value, int | float):
        result = value != 0
    elif isinstance(value, str):
        result = value.strip().lower() in _TRUTHY
    else:
        result = False
    return f"{MARKER_BOOL}{'true' if result else 'false'}"


def strip_type_marker(value: str) -> str:
    """Remove a type marker, leaving the textual value."""
    for marker in (MARKER_INT, MARKER_FLOAT, MARKER_BOOL):
        if value.startswith(marker):
            return value[len(marker) :]
    return value


def parse_typed_value(value: str) -> Any:
    """Convert a marked string back into int / float / bool; other strings pass through."""
    if value.startswith(MARKER_INT):
        try:
            return int(value[len(MARKER_INT) :])
        except ValueError:
            return value
    if value.startswith(MARKER_FLOAT):
        try:
            return float(value[len(MARKER_FLOAT) :])
        except ValueError:
            return value
    if value.startswith(MARKER_BOOL):
        return value[len(MARKER_BOOL) :] == "true"
    return value


_HELPERS = {
    "toHost": to_host,
    "trunc63": trunc63,
    "sha1sum": sha1sum,
    "fromJson": from_json,
    "toInt": to_int,
    "toFloat": to_float,
    "toBool": to_bool,
}


# ---------------------------------------------------------------------------
# Variables
# ---------------------------------------------------------------------------


def build_variables(
    uid: str,
    activate: str = "",
    host_or_url: str = "",
    extra: dict[str, Any] | None = None,
    hub_id: str = "",
    template_ref: str = "",
) -> dict[str, Any]:
    """Build the variable set available to every template of a node.

    ``hostOrUrl`` / ``host`` are only populated when the row provides a value.
    Extra value mappings are merged last and may not shadow ``uid``.
    """
    variables: dict[str, Any] = {
        "uid": uid,
        "activate": activate,
        "hubId": hub_id,
        "templateRef": template_ref,
    }
    if host_or_url:
        variables["hostOrUrl"] = host_or_url
        variables["host"] = to_host(host_or_url)
    for key, value in (extra or {}).items():
        if key == "uid":
            continue
        variables[key] = value
    return variables


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class TemplateEngine:
    """Renders template strings and manifest bodies with node variables."""

    def __init__(self) -> None:
        # Forms are user-authored; the sandbox blocks access to Python internals
        self._env = SandboxedEnvironment(
            undefined=StrictUndefined,
            autoescape=False,  # noqa: S701 - output is YAML/JSON values, not HTML
            keep_trailing_newline=True,
        )
        self._env.filters.update(_HELPERS)
        self._env.globals.update(_HELPERS)
        self._cache: dict[str, Template] = {}

    def _compile(self, source: str) -> Template:
        template = self._cache.get(source)
        if template is None:
            if len(self._cache) >= _MAX_CACHED_TEMPLATES:
                self._cache.clear()
            template = self._env.from_string(source)
            self._cache[source] = template
        return template

    def validate(self, source: str) -> None:
        """Parse *source* without rendering.

        Raises:
            TemplateRenderError: on syntax errors.
        """
        if not _is_template(source):
            return
        try:
            self._env.parse(source)
        except TemplateError as exc:
            raise TemplateRenderError(source, exc) from exc

    def render(self, source: str, variables: dict[str, Any]) -> str:
        """Render a single template string.

        Raises:
            TemplateRenderError: on syntax errors, undefined variables, sandbox
                violations or any error raised while evaluating an expression.
        """
        if not source:
            return ""
        if not _is_template(source):
            return source
        try:
            return self._compile(source).render(**variables)
        except Exception as exc:  # noqa: BLE001 - expressions and helpers may raise anything
            raise TemplateRenderError(source, exc) from exc

    def render_map(self, values: dict[str, str], variables: dict[str, Any]) -> dict[str, str]:
        """Render every value of a string map; type markers are stripped."""
        return {key: strip_type_marker(self.render(str(value), variables)) for key, value in values.items()}

    def render_value(self, value: Any, variables: dict[str, Any]) -> Any:
        """Recursively render the string leaves of a manifest body.

        Keys are rendered too.  Leaves produced by typed helpers become native
        ints, floats and bools.
        """
        if isinstance(value, str):
            return parse_typed_value(self.render(value, variables))
        if isinstance(value, dict):
            return {
                self.render(str(key), variables): self.render_value(item, variables) for key, item in value.items()
            }
        if isinstance(value, list):
            return [self.render_value(item, variables) for item in value]
        return value


def _is_template(source: str) -> bool:
    return "{{" in source or "{%" in source or "{#" in source
