"""CLI entry point for importing rollouts.

Allows running the importer as a module:
    python -m conv_memory.processor [SOURCE]
"""

import logging
import signal
import sys
from pathlib import Path
from types import FrameType

import click

from conv_memory.config import load_config
from conv_memory.exceptions import ConvMemoryError
from conv_memory.logging import get_logger, setup_logging
from conv_memory.processor.daemon import build_embedder, request_shutdown, run_updater
from conv_memory.processor.pipeline import (
    process_rollout_dir,
    process_rollout_file,
    update_rollout_dir,
)
from conv_memory.processor.storage import SqliteStorage

logger = get_logger("processor")


def signal_handler(signum: int, frame: FrameType | None) -> None:
    """Handle shutdown signals gracefully."""
    sig_name = signal.Signals(signum).name
    logger.info("Received signal %s, shutting down", sig_name)
    request_shutdown()


@click.command()
@click.argument("source", required=False, type=click.Path(path_type=Path))
@click.option("--config", "config_path", type=click.Path(path_type=Path), help="Path to config.yaml")
@click.option("--database", type=click.Path(path_type=Path), help="SQLite database path")
@click.option("--embed-model", help="sentence-transformers model name or path")
@click.option("--batch-size", type=int, help="Summaries per embedding batch")
@click.option("--conversation-id", help="Store a single file under this id")
@click.option("--update", is_flag=True, help="Only re-ingest new or changed rollouts")
@click.option("--watch", is_flag=True, help="Keep running and re-ingest changes periodically")
@click.option("--interval", default=30, show_default=True, help="Seconds between watch cycles")
@click.option("--verbose", "-v", is_flag=True, help="Log skipped files and other debug detail")
def main(
    source: Path | None,
    config_path: Path | None,
    database: Path | None,
    embed_model: str | None,
    batch_size: int | None,
    conversation_id: str | None,
    update: bool,
    watch: bool,
    interval: int,
    verbose: bool,
) -> None:
    """Import Codex rollout files into the conversation store.

    SOURCE may be a single rollout file or a directory searched recursively.
    It defaults to the configured sessions directory.
    """
    config = load_config(config_path)
    if database is not None:
        config.storage.db_path = database
    if embed_model is not None:
        config.embedding.model = embed_model
    if batch_size is not None:
        config.embedding.batch_size = batch_size

    if source is None:
        source = config.source.sessions_path
    if conversation_id is not None and not source.is_file():
        raise click.UsageError("--conversation-id needs SOURCE to be a single rollout file")
    level = logging.DEBUG if verbose else logging.INFO

    if watch:
        # Set up signal handlers for graceful shutdown
        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)
        try:
            run_updater(config, interval_seconds=interval, sessions_path=source, level=level)
        except KeyboardInterrupt:
            logger.info("Interrupted, shutting down")
            request_shutdown()
        sys.exit(0)

    setup_logging("processor", log_dir=config.log_dir, level=level)
    embedder = build_embedder(config)

    try:
        with SqliteStorage(config.storage.db_path) as storage:
            if source.is_file():
                stored_id = process_rollout_file(
                    source,
                    storage,
                    embedder,
                    conversation_id,
                    config.embedding.batch_size,
                )
                click.echo(f"Imported {source} as {stored_id}")
            elif update:
                stats = update_rollout_dir(
                    source, storage, embedder, batch_size=config.embedding.batch_size
                )
                click.echo(f"Processed {stats.processed} rollouts, skipped {stats.skipped}")
            else:
                count = process_rollout_dir(
                    source, storage, embedder, batch_size=config.embedding.batch_size
                )
                click.echo(f"Imported {count} rollouts from {source}")
    except ConvMemoryError as e:
        logger.exception("Import failed: source=%s", source)
        click.echo(f"Error importing rollouts: {e}", err=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
