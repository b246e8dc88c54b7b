"""Configuration CLI commands."""

from __future__ import annotations

import click

from ..config import DEFAULT_CONFIG_PATH, get_config
from .utils import echo_json


@click.group()
def config():
    """Inspect configuration."""
    pass


@config.command("show")
@click.option("--json", "json_output", is_flag=True, help="Machine-readable JSON output")
def show(json_output: bool):
    """Show the effective configuration."""
    cfg = get_config()
    data = {
        "embedding": {
            "backend": cfg.embedding.backend,
            "model": cfg.embedding.model,
            "dimensions": cfg.embedding.dimensions,
        },
        "search": cfg.search,
        "context": cfg.context,
        "chunking": cfg.chunking,
    }

    if json_output:
        echo_json(data)
        return

    click.echo(f"Config file: {DEFAULT_CONFIG_PATH}")
    click.echo(f"Embedding: {cfg.embedding.backend} ({cfg.embedding.model}, {cfg.embedding.dimensions} dims)")
    click.echo(
        f"Search: min_similarity={cfg.search.min_similarity}, "
        f"max_results={cfg.search.max_results}"
    )
    click.echo(f"Context cache: {cfg.context.cache_dir}")
