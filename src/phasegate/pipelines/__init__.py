"""
phasegate — pipeline definitions

File: src/phasegate/pipelines/__init__.py
Last updated: 2026-10-18

Purpose
- Turn YAML definitions and built-in templates into Pipeline objects.
"""

from phasegate.pipelines.loader import (
    discover_pipelines,
    load_pipeline,
    parse_pipeline,
    parse_pipeline_text,
    resolve_pipeline_path,
)
from phasegate.pipelines.templates import load_template, render_template, template_names

__all__ = [
    "discover_pipelines",
    "load_pipeline",
    "load_template",
    "parse_pipeline",
    "parse_pipeline_text",
    "render_template",
    "resolve_pipeline_path",
    "template_names",
]
