"""Admission-time validation of LynqForm objects.

Shared by the validating webhook, the form controller and ``lynq validate``.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import Any

from lynq.errors import TemplateRenderError, ValidationError
from lynq.fieldfilter import validate_path
from lynq.graph import build_graph
from lynq.models.form import RESOURCE_FIELDS, ResourceSpec
from lynq.template import TemplateEngine

MIN_PROGRESS_DEADLINE_SECONDS = 60
MAX_PROGRESS_DEADLINE_SECONDS = 3600


@dataclass
class ValidationReport:
    """Validation findings for one form; empty ``messages`` means valid."""

    messages: list[str] = field(default_factory=list)
    duplicate_ids: list[str] = field(default_factory=list)
    dependency_error: str = ""
    hub_missing: bool = False

    @property
    def valid(self) -> bool:
        return not self.messages

    def raise_for_errors(self) -> None:
        if self.messages:
            raise ValidationError(self.messages)


def _template_strings(value: Any) -> list[str]:
    if isinstance(value, str):
        return [value]
    if isinstance(value, dict):
        return [s for k, v in value.items() for s in (*_template_strings(str(k)), *_template_strings(v))]
    if isinstance(value, list):
        return [s for item in value for s in _template_strings(item)]
    return []


def _parse_resources(spec: dict[str, Any], report: ValidationReport) -> list[ResourceSpec]:
    resources: list[ResourceSpec] = []
    for list_field, gvk in RESOURCE_FIELDS.items():
        entries = spec.get(list_field) or []
        if not isinstance(entries, list):
            report.messages.append(f"spec.{list_field} must be a list")
            continue
        for index, entry in enumerate(entries):
            where = f"spec.{list_field}[{index}]"
            if not isinstance(entry, dict):
                report.messages.append(f"{where} must be an object")
                continue
            if not entry.get("id"):
                report.messages.append(f"{where}: id is required")
                continue
            try:
                resources.append(ResourceSpec.from_dict(entry, gvk))
            except (TypeError, ValueError) as exc:
                report.messages.append(f"{where}: {exc}")
    return resources


def _check_templates(resource: ResourceSpec, engine: TemplateEngine, report: ValidationReport) -> None:
    if not resource.name_template:
        report.messages.append(f"resource {resource.id!r}: nameTemplate is required")
    sources = [
        ("nameTemplate", resource.name_template),
        ("targetNamespace", resource.target_namespace),
        *((f"labelsTemplate[{k}]", v) for k, v in resource.labels_template.items()),
        *((f"annotationsTemplate[{k}]", v) for k, v in resource.annotations_template.items()),
        *(("spec", s) for s in _template_strings(resource.body)),
    ]
    for where, source in sources:
        try:
            engine.validate(str(source))
        except TemplateRenderError as exc:
            report.messages.append(f"resource {resource.id!r}: invalid template in {where}: {exc.cause}")


def _check_rollout(spec: dict[str, Any], report: ValidationReport) -> None:
    rollout = spec.get("rollout")
    if not rollout:
        return
    if not isinstance(rollout, dict):
        report.messages.append("spec.rollout must be an object")
        return
    try:
        max_skew = int(rollout.get("maxSkew", 0) or 0)
    except (TypeError, ValueError):
        report.messages.append("spec.rollout.maxSkew must be an integer")
    else:
        if max_skew < 0:
            report.messages.append("spec.rollout.maxSkew must be >= 0")
    deadline = rollout.get("progressDeadlineSeconds")
    if deadline is None:
        return
    try:
        deadline = int(deadline)
    except (TypeError, ValueError):
        report.messages.append("spec.rollout.progressDeadlineSeconds must be an integer")
        return
    if not MIN_PROGRESS_DEADLINE_SECONDS <= deadline <= MAX_PROGRESS_DEADLINE_SECONDS:
        report.messages.append(
            f"spec.rollout.progressDeadlineSeconds must be between "
            f"{MIN_PROGRESS_DEADLINE_SECONDS} and {MAX_PROGRESS_DEADLINE_SECONDS}"
        )


def validate_form(
    obj: dict[str, Any], hub_found: bool | None = None, engine: TemplateEngine | None = None
) -> ValidationReport:
    """Validate a LynqForm object.

    *hub_found* is the result of looking up ``spec.hubId``; None skips the check.
    """
    report = ValidationReport()
    spec = obj.get("spec") or {}
    if not isinstance(spec, dict):
        report.messages.append("spec must be an object")
        return report
    if not spec.get("hubId"):
        report.messages.append("spec.hubId is required")
    elif hub_found is False:
        report.hub_missing = True
        report.messages.append(f"LynqHub {spec['hubId']!r} not found")

    resources = _parse_resources(spec, report)

    counts = Counter(r.id for r in resources)
    report.duplicate_ids = sorted(rid for rid, n in counts.items() if n > 1)
    if report.duplicate_ids:
        report.messages.append(f"duplicate resource ids: {', '.join(report.duplicate_ids)}")
    else:
        try:
            build_graph(resources).validate()
        except ValidationError as exc:
            report.dependency_error = str(exc)
            report.messages.append(str(exc))

    engine = engine or TemplateEngine()
    for resource in resources:
        _check_templates(resource, engine, report)
        for path in resource.ignore_fields:
            error = validate_path(path)
            if error:
                report.messages.append(f"resource {resource.id!r}: invalid ignoreFields entry: {error}")

    _check_rollout(spec, report)
    return report
