"""CLI entry point for search.

Allows searching turns and conversations via command line.
"""

import sys
from pathlib import Path

import click

from conv_memory.config import Config, load_config
from conv_memory.exceptions import ConvMemoryError
from conv_memory.logging import setup_logging
from conv_memory.models import ConversationSummary, SearchResult
from conv_memory.processor.daemon import build_embedder
from conv_memory.processor.storage import MetaValue, SqliteStorage
from conv_memory.search.engine import SearchParams, search_with_text

SNIPPET_CHARS = 300


def snippet(text: str | None, limit: int = SNIPPET_CHARS) -> str:
    """Collapse whitespace and truncate text for display."""
    if not text:
        return ""
    text = " ".join(text.split())
    if len(text) > limit:
        return text[:limit] + "..."
    return text


def parse_meta_filters(pairs: tuple[str, ...]) -> dict[str, MetaValue]:
    """Split key=value pairs. Values stay strings; numbers match by text."""
    filters: dict[str, MetaValue] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep:
            raise click.BadParameter(f"expected key=value, got '{pair}'", param_hint="--meta")
        filters[key] = value
    return filters


def print_turn(result: SearchResult) -> None:
    """Print a turn search hit."""
    click.echo(f"\033[36m[{result.score:.4f}]\033[0m \033[1m{result.conversation_id}\033[0m #{result.turn_index}")
    if result.user_text:
        click.echo(f"\033[32mUser:\033[0m {snippet(result.user_text)}")
    if result.assistant_text:
        click.echo(f"\033[32mAssistant:\033[0m {snippet(result.assistant_text)}")
    click.echo("-" * 40)


def print_conversation(summary: ConversationSummary, verbose: bool = False) -> None:
    """Print a conversation search hit."""
    click.echo(f"\033[36m[{summary.ended_at or 'unknown'}]\033[0m \033[1m{summary.id}\033[0m")
    click.echo(f"Model: \033[32m{summary.model or 'unknown'}\033[0m | Turns: {summary.turn_count}")
    if verbose:
        click.echo(f"Cwd: {summary.cwd or 'unknown'}")
        click.echo(f"Path: {summary.rollout_path}")

    click.echo(f"Preview: {snippet(summary.preview)}")
    click.echo("-" * 40)


@click.group()
@click.option("--config", "config_path", type=click.Path(path_type=Path), help="Path to config.yaml")
@click.option("--database", type=click.Path(path_type=Path), help="SQLite database path")
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None, database: Path | None) -> None:
    """Search imported conversation history."""
    config = load_config(config_path)
    if database is not None:
        config.storage.db_path = database
    setup_logging("search", log_dir=config.log_dir, console=False)
    ctx.obj = config


@cli.command()
@click.argument("query")
@click.option("--meta", multiple=True, help="Session metadata filter, e.g. git.branch=main")
@click.option("--conversation", "conversation_ids", multiple=True, help="Restrict to a conversation id")
@click.option("--limit", "-n", type=int, help="Number of results")
@click.option("--prefetch", type=int, help="Candidate turns to rerank")
@click.option("--embed-model", help="sentence-transformers model name or path")
@click.pass_obj
def turns(
    config: Config,
    query: str,
    meta: tuple[str, ...],
    conversation_ids: tuple[str, ...],
    limit: int | None,
    prefetch: int | None,
    embed_model: str | None,
) -> None:
    """Search turns by semantic similarity."""
    if embed_model is not None:
        config.embedding.model = embed_model
    embedder = build_embedder(config)
    if embedder is None:
        click.echo("No embedding model configured; pass --embed-model", err=True)
        sys.exit(1)

    params = SearchParams(
        limit=limit if limit is not None else config.search.default_limit,
        meta_equals=parse_meta_filters(meta),
        conversation_ids=list(conversation_ids),
        prefetch=prefetch if prefetch is not None else config.search.prefetch,
    )

    try:
        with SqliteStorage(config.storage.db_path) as storage:
            results = search_with_text(storage, embedder, query, params)
    except ConvMemoryError as e:
        click.echo(f"Error searching turns: {e}", err=True)
        sys.exit(1)

    click.echo(f"Found {len(results)} turns:\n")

    for result in results:
        print_turn(result)


@cli.command()
@click.argument("query")
@click.option("--limit", "-n", type=int, help="Number of results")
@click.option("--verbose", "-v", is_flag=True, help="Show more details")
@click.pass_obj
def conversations(config: Config, query: str, limit: int | None, verbose: bool) -> None:
    """Search conversations by keyword."""
    try:
        with SqliteStorage(config.storage.db_path) as storage:
            results = storage.search_conversations(
                query,
                limit=limit if limit is not None else config.search.default_limit,
            )
    except ConvMemoryError as e:
        click.echo(f"Error searching conversations: {e}", err=True)
        sys.exit(1)

    click.echo(f"Found {len(results)} conversations:\n")

    for summary in results:
        print_conversation(summary, verbose)


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
