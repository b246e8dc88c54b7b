"""CLI utility functions."""

from __future__ import annotations

import functools
import json
from typing import Any, Optional

import click

from ..context import ContextInfo
from ..errors import KeydocsError
from ..models import to_jsonable


def parse_list(value: Optional[str]) -> Optional[list[str]]:
    """Parse a comma-separated option value."""
    if not value:
        return None
    return [v.strip() for v in value.split(",") if v.strip()]


def echo_json(data: Any) -> None:
    click.echo(json.dumps(to_jsonable(data), indent=2))


def context_options(func):
    """Attach the execution-context options shared by context commands."""
    options = [
        click.option("--app", "active_app", help="Active application name"),
        click.option("--path", "file_path", help="Path of the file being edited"),
        click.option("--ext", "file_extension", help="File extension (without dot)"),
        click.option("--project-type", help="Project type, e.g. node or django"),
        click.option("--language", help="Programming language"),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def build_context(**kwargs: Optional[str]) -> ContextInfo:
    return ContextInfo(
        active_app=kwargs.get("active_app"),
        file_path=kwargs.get("file_path"),
        file_extension=kwargs.get("file_extension"),
        project_type=kwargs.get("project_type"),
        language=kwargs.get("language"),
    )


def handle_errors(func):
    """Turn keydocs errors into clean CLI failures."""
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except KeydocsError as e:
            raise click.ClickException(str(e)) from e
    return wrapper
