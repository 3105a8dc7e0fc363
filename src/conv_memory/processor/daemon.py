"""Updater daemon loop for re-ingesting changed rollout files."""

import logging
import time
from pathlib import Path

from conv_memory.config import Config
from conv_memory.logging import get_logger, setup_logging
from conv_memory.models import UpdateStats
from conv_memory.processor.embedding import (
    DEFAULT_BATCH_SIZE,
    EmbeddingBackend,
    SentenceTransformerBackend,
)
from conv_memory.processor.pipeline import discover_rollouts, update_rollout_file
from conv_memory.processor.storage import ConversationStore, SqliteStorage

logger = get_logger("processor")

# Global flag for graceful shutdown
_shutdown_requested = False


def request_shutdown() -> None:
    """Request graceful shutdown of the updater daemon."""
    global _shutdown_requested
    _shutdown_requested = True


def is_shutdown_requested() -> bool:
    """Check if shutdown has been requested."""
    return _shutdown_requested


def reset_shutdown() -> None:
    """Reset shutdown flag (useful for testing)."""
    global _shutdown_requested
    _shutdown_requested = False


def build_embedder(config: Config) -> EmbeddingBackend | None:
    """Create the configured embedding backend, or None if embeddings are off."""
    if not config.embedding.model:
        return None
    return SentenceTransformerBackend(
        config.embedding.model,
        normalize_embeddings=config.embedding.normalize,
        device=config.embedding.device,
    )


def run_updater_cycle(
    sessions_path: Path,
    storage: ConversationStore,
    embedder: EmbeddingBackend | None,
    batch_size: int = DEFAULT_BATCH_SIZE,
) -> UpdateStats | None:
    """Run one update pass over the sessions directory.

    Each rollout is updated on its own: a file that fails is logged, counted
    and retried next cycle, and later files are still processed.

    Args:
        sessions_path: Root directory holding rollout files
        storage: Persistence backend
        embedder: Embedding backend (or None to skip embeddings)
        batch_size: Summaries per embedding batch

    Returns:
        UpdateStats for the pass, or None if the directory could not be listed
    """
    try:
        paths = discover_rollouts(sessions_path)
    except Exception:
        logger.exception("Update cycle failed: path=%s", sessions_path)
        return None

    stats = UpdateStats()
    for path in paths:
        try:
            if update_rollout_file(path, storage, embedder, batch_size):
                stats.processed += 1
            else:
                stats.skipped += 1
        except Exception:
            logger.exception("Failed to update rollout: path=%s", path)
            stats.failed += 1

    return stats


def run_updater(
    config: Config,
    interval_seconds: int = 30,
    sessions_path: Path | None = None,
    embedder: EmbeddingBackend | None = None,
    level: int = logging.INFO,
) -> None:
    """Run the updater daemon main loop.

    Re-ingests new or changed rollouts on every cycle until shutdown is
    requested.

    Args:
        config: Application configuration
        interval_seconds: Seconds between update cycles
        sessions_path: Directory to watch (defaults to config.source.sessions_path)
        embedder: Embedding backend (defaults to the configured one)
        level: Logging level for the processor log
    """
    reset_shutdown()

    setup_logging("processor", log_dir=config.log_dir, level=level)

    if sessions_path is None:
        sessions_path = config.source.sessions_path
    if embedder is None:
        embedder = build_embedder(config)
    db_path = config.storage.db_path

    logger.info(
        "Starting updater daemon: sessions=%s db=%s embeddings=%s interval=%ds",
        sessions_path,
        db_path,
        config.embedding.model or "disabled",
        interval_seconds,
    )

    with SqliteStorage(db_path) as storage:
        while not is_shutdown_requested():
            stats = run_updater_cycle(
                sessions_path,
                storage,
                embedder,
                config.embedding.batch_size,
            )

            if stats is not None and (stats.processed > 0 or stats.failed > 0):
                logger.info(
                    "Cycle complete: processed=%d skipped=%d failed=%d",
                    stats.processed,
                    stats.skipped,
                    stats.failed,
                )
            else:
                logger.debug("Cycle complete: no changed rollouts")

            if is_shutdown_requested():
                break

            logger.debug("Waiting %ds until next cycle", interval_seconds)

            # Sleep in small increments to allow graceful shutdown
            sleep_remaining = interval_seconds
            while sleep_remaining > 0 and not is_shutdown_requested():
                sleep_time = min(1.0, sleep_remaining)
                time.sleep(sleep_time)
                sleep_remaining -= sleep_time

    logger.info("Updater daemon stopped")
