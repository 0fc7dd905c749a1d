"""Click entry point for the ``lynq`` command."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

import click
import yaml

from lynq.errors import ValidationError
from lynq.graph import build_graph
from lynq.models.form import collect_resources
from lynq.models.labels import KIND_FORM
from lynq.validation import validate_form


def _load_forms(path: Path) -> list[dict[str, Any]]:
    try:
        documents = list(yaml.safe_load_all(path.read_text(encoding="utf-8")))
    except yaml.YAMLError as exc:
        raise click.ClickException(f"{path}: invalid YAML: {exc}") from exc
    forms = [d for d in documents if isinstance(d, dict) and d.get("kind") == KIND_FORM]
    if not forms:
        raise click.ClickException(f"{path}: no {KIND_FORM} documents found")
    return forms


def _form_name(obj: dict[str, Any]) -> str:
    return str((obj.get("metadata") or {}).get("name", "<unnamed>"))


@click.group()
@click.version_option(package_name="lynq")
def cli() -> None:
    """Lynq multi-tenant resource orchestrator."""


@cli.command()
def run() -> None:
    """Run the controller (configuration from LYNQ_* environment variables)."""
    from lynq.app import main

    asyncio.run(main())


@cli.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def validate(file: Path) -> None:
    """Validate the LynqForm manifests in FILE."""
    failed = False
    for obj in _load_forms(file):
        report = validate_form(obj)
        if report.valid:
            click.echo(f"{_form_name(obj)}: ok")
            continue
        failed = True
        click.echo(f"{_form_name(obj)}: invalid", err=True)
        for message in report.messages:
            click.echo(f"  - {message}", err=True)
    if failed:
        raise SystemExit(1)


@cli.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def order(file: Path) -> None:
    """Print the order in which each form's resources are applied."""
    for obj in _load_forms(file):
        try:
            resolved = build_graph(collect_resources(obj.get("spec") or {})).topological_order()
        except (ValidationError, ValueError) as exc:
            raise click.ClickException(f"{_form_name(obj)}: {exc}") from exc
        click.echo(f"{_form_name(obj)}:")
        for position, resource_id in enumerate(resolved, start=1):
            click.echo(f"  {position}. {resource_id}")
