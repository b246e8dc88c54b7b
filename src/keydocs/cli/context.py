"""Credential context CLI commands."""

from __future__ import annotations

from typing import Optional

import click

from ..config import get_config
from ..context import ContextRelevanceEngine
from .utils import build_context, context_options, echo_json, handle_errors


def _engine() -> ContextRelevanceEngine:
    engine = ContextRelevanceEngine(get_config().context)
    engine.load()
    return engine


@click.group()
def context():
    """Suggest credentials for an execution context."""
    pass


@context.command("suggest")
@click.argument("key_ids", nargs=-1, required=True)
@context_options
@click.option("--json", "json_output", is_flag=True, help="Machine-readable JSON output")
@handle_errors
def suggest(key_ids: tuple[str, ...], json_output: bool, **context_fields: Optional[str]):
    """Rank candidate credentials KEY_IDS for the given context."""
    engine = _engine()
    prediction = engine.analyze_context(build_context(**context_fields), list(key_ids))
    engine.close()

    if json_output:
        echo_json(prediction)
        return

    if not prediction.api_key_suggestions:
        click.echo("No suggestions for this context.")
    for suggestion in prediction.api_key_suggestions:
        click.echo(
            f"{suggestion.key_id}  {suggestion.confidence:.2f}  "
            f"({suggestion.suggested_format.value}) {suggestion.reason}"
        )

    security = prediction.security_score
    color = {"low": "green", "medium": "yellow"}.get(security.risk_level.value, "red")
    click.secho(f"Risk: {security.risk_level.value} ({security.score:.2f})", fg=color)
    for reason in security.reasons:
        click.echo(f"  - {reason}")
    click.echo(f"Context confidence: {prediction.context_confidence:.2f}")


@context.command("record")
@click.argument("key_id")
@context_options
@click.option("--failed", is_flag=True, help="Record an unsuccessful use")
@handle_errors
def record(key_id: str, failed: bool, **context_fields: Optional[str]):
    """Record one use of KEY_ID in the given context."""
    engine = _engine()
    engine.record_usage(key_id, build_context(**context_fields), success=not failed)
    engine.close()
    click.echo(f"Recorded {'failed' if failed else 'successful'} use of {key_id}")


@context.command("stats")
@click.option("--json", "json_output", is_flag=True, help="Machine-readable JSON output")
@handle_errors
def stats(json_output: bool):
    """Show recorded usage per credential."""
    engine = _engine()
    usage = engine.get_usage_stats()
    engine.close()

    if json_output:
        echo_json(usage)
        return

    if not usage:
        click.echo("No usage recorded.")
        return

    for key_id in sorted(usage):
        entry = usage[key_id]
        click.echo(
            f"{key_id}: {entry['usage_count']} use(s), "
            f"{entry['success_rate'] * 100:.0f}% success"
        )
