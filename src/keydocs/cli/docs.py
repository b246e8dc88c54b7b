"""Documentation CLI commands."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import click

from ..chunking import ChunkingConfig, segment_document
from ..config import get_config
from ..indexer import DocumentationIndexer
from ..store import EXPORT_FORMATS
from .utils import echo_json, handle_errors, parse_list


@click.group()
def docs():
    """Segment, search and export documentation files."""
    pass


def _index_files(paths: tuple[str, ...]) -> tuple[DocumentationIndexer, list[str]]:
    indexer = DocumentationIndexer(config=get_config())
    library_ids = []
    for path in paths:
        file_path = Path(path)
        library_id = indexer.create_library(name=file_path.stem, url=str(file_path.resolve()))
        indexer.ingest_document(library_id, file_path.read_text(), source_url=str(file_path))
        library_ids.append(library_id)
    return indexer, library_ids


@docs.command("chunk")
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
@click.option(
    "--strategy",
    type=click.Choice(["auto", "headers", "delimiter", "fixed", "single", "none"]),
    default=None,
    help="Segmentation strategy (default: from config, else auto)",
)
@click.option("--max-size", type=int, help="Maximum segment size in tokens")
@click.option("--json", "json_output", is_flag=True, help="Machine-readable JSON output")
@handle_errors
def chunk(path: str, strategy: Optional[str], max_size: Optional[int], json_output: bool):
    """Show how a documentation file would be segmented."""
    options = dict(get_config().chunking)
    if strategy:
        options["strategy"] = strategy
    if max_size:
        options["max_chunk_size"] = max_size
    try:
        chunking = ChunkingConfig(**options)
    except ValueError as e:
        raise click.BadParameter(str(e)) from e

    result = segment_document(Path(path).read_text(), chunking)

    if json_output:
        echo_json({
            "strategy": result.strategy,
            "strategy_reason": result.strategy_reason,
            "summary": result.summary(),
            "segments": [
                {
                    "index": s.index,
                    "title": s.title,
                    "section_path": s.section_path,
                    "lines": [s.start_line, s.end_line],
                    "tokens": s.token_count,
                    "metadata": s.to_metadata(),
                }
                for s in result.segments
            ],
            "warnings": result.warnings,
        })
        return

    click.echo(f"Strategy: {result.strategy} ({result.strategy_reason})")
    click.echo(f"Segments: {len(result.segments)}, ~{result.total_tokens} tokens")
    for segment in result.segments:
        metadata = segment.to_metadata()
        section = " > ".join(segment.section_path)
        click.echo(
            f"  [{segment.index}] {segment.title or '(untitled)'}  "
            f"lines {segment.start_line}-{segment.end_line}, "
            f"{segment.token_count} tokens, {metadata.content_type.value}"
        )
        if section:
            click.secho(f"      {section}", dim=True)
    for warning in result.warnings:
        click.secho(f"Warning: {warning}", fg="yellow", err=True)


@docs.command("search")
@click.argument("paths", nargs=-1, required=True, type=click.Path(exists=True, dir_okay=False))
@click.option("--query", "-q", required=True, help="Search query")
@click.option("--content-type", "-t", help="Comma-separated content types")
@click.option("--section", "-s", help="Comma-separated section path terms")
@click.option("--limit", "-n", type=int, help="Maximum results")
@click.option("--min-similarity", type=float, help="Minimum similarity (0.0-1.0)")
@click.option("--no-boost", is_flag=True, help="Disable the recency boost")
@click.option("--json", "json_output", is_flag=True, help="Machine-readable JSON output")
@handle_errors
def search(
    paths: tuple[str, ...],
    query: str,
    content_type: Optional[str],
    section: Optional[str],
    limit: Optional[int],
    min_similarity: Optional[float],
    no_boost: bool,
    json_output: bool,
):
    """Index documentation files and search them."""
    indexer, _ = _index_files(paths)
    results = indexer.search(
        query,
        content_types=parse_list(content_type),
        section_filter=parse_list(section),
        max_results=limit,
        min_similarity=min_similarity,
        boost_recent=not no_boost,
    )

    if json_output:
        echo_json(results)
        return

    if not results:
        click.echo("No matching documentation found.")
        return

    for i, result in enumerate(results, 1):
        click.echo(f"{i}. {result.title} [{result.content_type.value}]")
        click.echo(
            f"   similarity {result.similarity_score:.3f}, relevance {result.relevance_score:.3f}"
        )
        if result.section_path:
            click.secho(f"   {' > '.join(result.section_path)}", dim=True)
        preview = result.content.strip().replace("\n", " ")
        click.echo(f"   {preview[:120]}{'...' if len(preview) > 120 else ''}")


@docs.command("export")
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
@click.option(
    "--format",
    "fmt",
    type=click.Choice(EXPORT_FORMATS),
    default="markdown",
    help="Export format (default: markdown)",
)
@handle_errors
def export(path: str, fmt: str):
    """Index a documentation file and print it in an export format."""
    indexer, library_ids = _index_files((path,))
    click.echo(indexer.store.export_library(library_ids[0], fmt))
