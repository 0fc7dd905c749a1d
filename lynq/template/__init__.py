"""Jinja2 templating for node resources."""

from lynq.template.engine import TemplateEngine, build_variables, parse_typed_value

__all__ = ["TemplateEngine", "build_variables", "parse_typed_value"]
