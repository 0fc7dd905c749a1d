"""Error taxonomy shared by the controllers.

Resource-scoped errors (render, conflict, readiness timeout) are converted to
per-resource outcomes inside a node pass and never abort sibling resources.
``TransientAPIError`` surfaces as a reconcile error so the work queue backs off.
"""

from __future__ import annotations


class LynqError(Exception):
    """Base class for all Lynq errors."""


class ValidationError(LynqError):
    """A form or dependency graph is invalid; rejects the write entirely."""

    def __init__(self, messages: list[str] | str) -> None:
        self.messages = [messages] if isinstance(messages, str) else list(messages)
        super().__init__("; ".join(self.messages))


class DependencyCycleError(ValidationError):
    """The dependency graph contains a cycle (including self-reference)."""

    def __init__(self, cycle: list[str]) -> None:
        self.cycle = list(cycle)
        super().__init__(f"dependency cycle detected: {' -> '.join(self.cycle)}")


class MissingDependencyError(ValidationError):
    """A ``dependIds`` entry references an id that is not declared."""

    def __init__(self, resource_id: str, missing: str) -> None:
        self.resource_id = resource_id
        self.missing = missing
        super().__init__(f"resource {resource_id!r} depends on unknown resource {missing!r}")


class TemplateRenderError(LynqError):
    """A template failed to parse or execute for one resource."""

    def __init__(self, template: str, cause: Exception | str) -> None:
        self.template = template
        self.cause = cause
        super().__init__(f"failed to render template {template!r}: {cause}")


class ConflictError(LynqError):
    """The target object exists and is owned by someone else."""

    def __init__(self, kind: str, namespace: str, name: str, reason: str) -> None:
        self.kind = kind
        self.namespace = namespace
        self.name = name
        self.reason = reason
        super().__init__(f"{kind} {namespace}/{name}: {reason}")


class ReadinessTimeoutError(LynqError):
    """A resource did not become ready within its timeout."""

    def __init__(self, kind: str, namespace: str, name: str, timeout_seconds: float) -> None:
        self.kind = kind
        self.namespace = namespace
        self.name = name
        self.timeout_seconds = timeout_seconds
        super().__init__(f"{kind} {namespace}/{name} not ready after {timeout_seconds:g}s")


class TransientAPIError(LynqError):
    """An API call failed for a reason unrelated to the resource itself."""

    def __init__(self, message: str, status: int | None = None) -> None:
        self.status = status
        super().__init__(message if status is None else f"{message} (status={status})")


class ConcurrentModificationError(TransientAPIError):
    """A write carried a stale version token (HTTP 409)."""

    def __init__(self, message: str) -> None:
        super().__init__(message, status=409)


class ResourceNotFoundError(LynqError):
    """The requested object does not exist."""

    def __init__(self, kind: str, namespace: str, name: str) -> None:
        self.kind = kind
        self.namespace = namespace
        self.name = name
        super().__init__(f"{kind} {namespace}/{name} not found")


class DataSourceError(LynqError):
    """A hub's data source could not be resolved or queried."""

    def __init__(self, hub: str, message: str) -> None:
        self.hub = hub
        super().__init__(f"hub {hub}: {message}")
