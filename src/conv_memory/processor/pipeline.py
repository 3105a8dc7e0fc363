"""Rollout ingestion: fingerprinting, parsing, stats, embeddings and storage."""

import hashlib
import os
from datetime import UTC, datetime
from pathlib import Path

from conv_memory.exceptions import RolloutReadError
from conv_memory.logging import get_logger
from conv_memory.models import RolloutFingerprint, UpdateStats
from conv_memory.processor.embedding import (
    DEFAULT_BATCH_SIZE,
    EmbeddingBackend,
    embed_turn_summaries,
)
from conv_memory.processor.parsers import CodexParser
from conv_memory.processor.stats import compute_conversation_stats
from conv_memory.processor.storage import ConversationStore
from conv_memory.processor.summary import render_turn_summary

logger = get_logger("pipeline")

ROLLOUT_PREFIX = "rollout-"
ROLLOUT_SUFFIX = ".jsonl"

_parser = CodexParser()


def is_rollout_file(name: str) -> bool:
    """Whether a file name follows the rollout naming convention."""
    return name.startswith(ROLLOUT_PREFIX) and name.endswith(ROLLOUT_SUFFIX)


def discover_rollouts(root: Path) -> list[Path]:
    """Find all rollout files under root, recursively.

    Args:
        root: Directory to search

    Returns:
        Rollout paths sorted by full path; empty if root does not exist
    """
    if not root.exists():
        return []

    rollouts: list[Path] = []
    for dirpath, _dirnames, filenames in os.walk(root, onerror=_raise_walk_error):
        for name in filenames:
            if is_rollout_file(name):
                path = Path(dirpath) / name
                if path.is_file():
                    rollouts.append(path)
    return sorted(rollouts)


def _raise_walk_error(error: OSError) -> None:
    raise RolloutReadError(str(error.filename), error) from error


def file_metadata(stat: os.stat_result) -> tuple[datetime, int]:
    """Modification time (UTC) and size from a stat result."""
    modified_at = datetime.fromtimestamp(stat.st_mtime, tz=UTC)
    return modified_at, stat.st_size


def load_rollout_data(
    path: Path,
    stat: os.stat_result | None = None,
) -> tuple[bytes, RolloutFingerprint]:
    """Read a rollout file and fingerprint it.

    Args:
        path: Rollout file path
        stat: Metadata already fetched for path, if any

    Returns:
        Tuple of (file contents, fingerprint)

    Raises:
        RolloutReadError: If the file or its metadata cannot be read
    """
    try:
        if stat is None:
            stat = path.stat()
        data = path.read_bytes()
    except OSError as exc:
        raise RolloutReadError(str(path), exc) from exc

    modified_at, size_bytes = file_metadata(stat)
    fingerprint = RolloutFingerprint(
        modified_at=modified_at,
        size_bytes=size_bytes,
        sha256=hashlib.sha256(data).hexdigest(),
    )
    return data, fingerprint


def fingerprint_matches(
    stored: RolloutFingerprint,
    modified_at: datetime | None,
    size_bytes: int | None,
) -> bool:
    """Whether stored metadata matches the file's current mtime and size.

    The content hash is not compared; mtime and size act as a cheap proxy
    for "unchanged".
    """
    if stored.modified_at is None or modified_at is None:
        return False
    if stored.size_bytes is None or size_bytes is None:
        return False
    return stored.modified_at == modified_at and stored.size_bytes == size_bytes


def ingest_rollout_bytes(
    rollout_path: Path,
    data: bytes,
    fingerprint: RolloutFingerprint,
    storage: ConversationStore,
    embedder: EmbeddingBackend | None = None,
    conversation_id: str | None = None,
    batch_size: int = DEFAULT_BATCH_SIZE,
) -> str:
    """Normalise rollout bytes and persist the result.

    Parsing, stats and embeddings are computed before anything is written;
    the writes then happen in one storage transaction.

    Returns:
        The id the conversation was stored under
    """
    record = _parser.parse_bytes(data)
    stats = compute_conversation_stats(record)

    embeddings = None
    if embedder is not None:
        summaries = [render_turn_summary(turn) for turn in record.turns]
        embeddings = embed_turn_summaries(summaries, embedder, batch_size=batch_size)

    with storage.transaction():
        stored_id = storage.upsert_conversation(
            rollout_path,
            record,
            fingerprint,
            stats,
            conversation_id,
        )
        for idx, turn in enumerate(record.turns):
            vector = embeddings[idx] if embeddings is not None else None
            storage.insert_turn(stored_id, turn, vector)
        removed = storage.delete_turns_from(stored_id, len(record.turns))

    if removed:
        logger.debug("Removed stale turns: id=%s count=%d", stored_id, removed)
    return stored_id


def process_rollout_file(
    rollout_path: Path,
    storage: ConversationStore,
    embedder: EmbeddingBackend | None = None,
    conversation_id: str | None = None,
    batch_size: int = DEFAULT_BATCH_SIZE,
) -> str:
    """Ingest a single rollout file.

    Args:
        rollout_path: Path to the rollout file
        storage: Persistence backend
        embedder: Embedding backend, or None to store turns without vectors
        conversation_id: Store under this id instead of the derived one
        batch_size: Summaries per embedding batch

    Returns:
        The id the conversation was stored under
    """
    data, fingerprint = load_rollout_data(rollout_path)
    stored_id = ingest_rollout_bytes(
        rollout_path,
        data,
        fingerprint,
        storage,
        embedder,
        conversation_id,
        batch_size,
    )
    logger.info(
        "Ingested rollout: id=%s path=%s bytes=%d embedded=%s",
        stored_id,
        rollout_path,
        fingerprint.size_bytes,
        embedder is not None,
    )
    return stored_id


def process_rollout_dir(
    root: Path,
    storage: ConversationStore,
    embedder: EmbeddingBackend | None = None,
    batch_size: int = DEFAULT_BATCH_SIZE,
) -> int:
    """Ingest every rollout under root.

    Stops at the first file that fails and propagates its error.

    Returns:
        Number of files ingested
    """
    processed = 0
    for path in discover_rollouts(root):
        process_rollout_file(path, storage, embedder, batch_size=batch_size)
        processed += 1
    return processed


def update_rollout_file(
    path: Path,
    storage: ConversationStore,
    embedder: EmbeddingBackend | None = None,
    batch_size: int = DEFAULT_BATCH_SIZE,
) -> bool:
    """Ingest one rollout if its mtime or size changed since last time.

    Returns:
        True if the file was ingested, False if it was unchanged
    """
    try:
        stat = path.stat()
    except OSError as exc:
        raise RolloutReadError(str(path), exc) from exc
    modified_at, size_bytes = file_metadata(stat)

    stored = storage.get_rollout_fingerprint(path)
    if stored is not None and fingerprint_matches(stored, modified_at, size_bytes):
        logger.debug("Skipping unchanged rollout: path=%s", path)
        return False

    data, fingerprint = load_rollout_data(path, stat)
    stored_id = ingest_rollout_bytes(
        path,
        data,
        fingerprint,
        storage,
        embedder,
        batch_size=batch_size,
    )
    logger.info("Updated rollout: id=%s path=%s", stored_id, path)
    return True


def update_rollout_dir(
    root: Path,
    storage: ConversationStore,
    embedder: EmbeddingBackend | None = None,
    batch_size: int = DEFAULT_BATCH_SIZE,
) -> UpdateStats:
    """Ingest rollouts under root whose mtime or size changed since last time.

    Stops at the first file that fails and propagates its error.

    Returns:
        UpdateStats with processed and skipped counts
    """
    stats = UpdateStats()

    for path in discover_rollouts(root):
        if update_rollout_file(path, storage, embedder, batch_size):
            stats.processed += 1
        else:
            stats.skipped += 1

    return stats
