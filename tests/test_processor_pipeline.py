"""Tests for the rollout ingestion pipeline."""

import hashlib
import os
from pathlib import Path

import pytest

from conv_memory.exceptions import (
    EmbeddingDimensionMismatchError,
    InvalidJsonError,
    RolloutReadError,
)
from conv_memory.models import RolloutFingerprint
from conv_memory.processor.pipeline import (
    discover_rollouts,
    fingerprint_matches,
    load_rollout_data,
    process_rollout_dir,
    process_rollout_file,
    update_rollout_dir,
    update_rollout_file,
)
from conv_memory.processor.storage import SqliteStorage

from conftest import SESSION_ID, KeywordEmbedder, ShortBatchEmbedder, basic_rollout_records


def second_turn_records() -> list[dict]:
    return [
        {
            "timestamp": "2026-01-22T15:53:00.000Z",
            "type": "turn_context",
            "payload": {"model": "gpt-5-codex"},
        },
        {
            "timestamp": "2026-01-22T15:53:01.000Z",
            "type": "response_item",
            "payload": {
                "type": "message",
                "role": "user",
                "content": [{"type": "input_text", "text": "And beta?"}],
            },
        },
        {
            "timestamp": "2026-01-22T15:53:02.000Z",
            "type": "response_item",
            "payload": {
                "type": "message",
                "role": "assistant",
                "content": [{"type": "output_text", "text": "Beta works."}],
            },
        },
    ]


def records_with_id(conv_id: str) -> list[dict]:
    records = basic_rollout_records()
    records[0]["payload"]["id"] = conv_id
    return records


def count(storage: SqliteStorage, table: str) -> int:
    return storage.connection.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]


def turn_rows(storage: SqliteStorage) -> list:
    return storage.connection.execute(
        "SELECT * FROM turns ORDER BY conversation_id, turn_index"
    ).fetchall()


class TestDiscoverRollouts:
    """Tests for discover_rollouts."""

    def test_missing_root(self, tmp_path: Path) -> None:
        """A missing root directory yields no files."""
        assert discover_rollouts(tmp_path / "missing") == []

    def test_recursive_and_sorted(self, tmp_path: Path) -> None:
        """Rollouts are found recursively and sorted by full path."""
        paths = [
            tmp_path / "2026" / "02" / "rollout-b.jsonl",
            tmp_path / "2026" / "01" / "rollout-z.jsonl",
            tmp_path / "rollout-a.jsonl",
        ]
        for path in paths:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text("")
        (tmp_path / "notes.jsonl").write_text("")
        (tmp_path / "rollout-c.json").write_text("")
        (tmp_path / "rollout-dir.jsonl").mkdir()

        assert discover_rollouts(tmp_path) == sorted(paths)


class TestLoadRolloutData:
    """Tests for load_rollout_data and fingerprint_matches."""

    def test_fingerprint(self, tmp_path: Path) -> None:
        """The fingerprint carries mtime, size and content hash."""
        path = tmp_path / "rollout-x.jsonl"
        path.write_bytes(b'{"a": 1}\n')

        data, fingerprint = load_rollout_data(path)

        assert data == b'{"a": 1}\n'
        assert fingerprint.size_bytes == len(data)
        assert fingerprint.sha256 == hashlib.sha256(data).hexdigest()
        assert fingerprint.modified_at is not None
        assert fingerprint.modified_at.tzinfo is not None
        assert fingerprint.modified_at.timestamp() == pytest.approx(os.stat(path).st_mtime)

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(RolloutReadError):
            load_rollout_data(tmp_path / "rollout-missing.jsonl")

    def test_fingerprint_matches(self, tmp_path: Path) -> None:
        """Only mtime and size are compared."""
        path = tmp_path / "rollout-x.jsonl"
        path.write_bytes(b"{}\n")
        _, fp = load_rollout_data(path)

        stored = RolloutFingerprint(modified_at=fp.modified_at, size_bytes=fp.size_bytes, sha256="other")
        assert fingerprint_matches(stored, fp.modified_at, fp.size_bytes) is True
        assert fingerprint_matches(stored, fp.modified_at, fp.size_bytes + 1) is False
        assert fingerprint_matches(RolloutFingerprint(), fp.modified_at, fp.size_bytes) is False
        assert fingerprint_matches(stored, None, fp.size_bytes) is False


class TestProcessRolloutFile:
    """Tests for process_rollout_file."""

    def test_stores_conversation_and_turns(self, storage: SqliteStorage, write_rollout) -> None:
        """A rollout is stored with its metadata id and one row per turn."""
        path = write_rollout(basic_rollout_records() + second_turn_records())

        conv_id = process_rollout_file(path, storage)

        assert conv_id == SESSION_ID
        rows = turn_rows(storage)
        assert [r["turn_index"] for r in rows] == [0, 1]
        assert rows[0]["user_text"] == "Why does alpha fail?"
        assert rows[1]["assistant_text"] == "Beta works."
        assert all(r["embedding"] is None for r in rows)

        conv = storage.connection.execute("SELECT * FROM conversations").fetchone()
        assert conv["rollout_path"] == str(path)
        assert conv["turn_count"] == 2
        assert conv["model"] == "gpt-5-codex"
        assert conv["preview"] == "And beta?"
        assert "pytest" in conv["commands_json"]

    def test_embeddings_stored(self, storage: SqliteStorage, write_rollout, embedder: KeywordEmbedder) -> None:
        """With an embedder every turn gets a vector."""
        path = write_rollout(basic_rollout_records() + second_turn_records())

        conv_id = process_rollout_file(path, storage, embedder)

        rows = turn_rows(storage)
        assert all(len(r["embedding"]) == 4 * embedder.embedding_dimension() for r in rows)
        assert storage.get_embedding_dim(conv_id) == embedder.embedding_dimension()

    def test_idempotent(self, storage: SqliteStorage, write_rollout, embedder: KeywordEmbedder) -> None:
        """Processing the same file twice leaves the same rows."""
        path = write_rollout(basic_rollout_records())

        process_rollout_file(path, storage, embedder)
        first = [tuple(r) for r in turn_rows(storage)]
        first_conv = tuple(storage.connection.execute("SELECT * FROM conversations").fetchone())
        process_rollout_file(path, storage, embedder)

        assert count(storage, "conversations") == 1
        assert [tuple(r) for r in turn_rows(storage)] == first
        assert tuple(storage.connection.execute("SELECT * FROM conversations").fetchone()) == first_conv

    def test_conversation_id_override(self, storage: SqliteStorage, write_rollout) -> None:
        path = write_rollout(basic_rollout_records())
        assert process_rollout_file(path, storage, conversation_id="custom") == "custom"

    def test_stale_turns_removed(self, storage: SqliteStorage, write_rollout) -> None:
        """Re-ingesting a shorter rollout removes turns beyond the new count."""
        path = write_rollout(basic_rollout_records() + second_turn_records())
        process_rollout_file(path, storage)

        write_rollout(basic_rollout_records())
        process_rollout_file(path, storage)

        assert [r["turn_index"] for r in turn_rows(storage)] == [0]

    def test_parse_failure_leaves_store_untouched(self, storage: SqliteStorage, write_rollout) -> None:
        path = write_rollout(basic_rollout_records())
        path.write_text(path.read_text() + "{broken\n")

        with pytest.raises(InvalidJsonError):
            process_rollout_file(path, storage)

        assert count(storage, "conversations") == 0

    def test_dimension_mismatch_persists_nothing(self, storage: SqliteStorage, write_rollout) -> None:
        """A failed re-ingest keeps the previously stored revision intact."""
        path = write_rollout(basic_rollout_records())
        process_rollout_file(path, storage, KeywordEmbedder())

        write_rollout(basic_rollout_records(assistant_reply="A different reply."))
        with pytest.raises(EmbeddingDimensionMismatchError):
            process_rollout_file(path, storage, KeywordEmbedder(keywords=("alpha",)))

        rows = turn_rows(storage)
        assert len(rows) == 1
        assert rows[0]["assistant_text"] == "Try the alpha approach."

    def test_short_batches_recovered(self, storage: SqliteStorage, write_rollout) -> None:
        """Short batch output still yields one vector per turn."""
        path = write_rollout(basic_rollout_records() + second_turn_records())

        process_rollout_file(path, storage, ShortBatchEmbedder())

        assert all(r["embedding"] is not None for r in turn_rows(storage))


class TestProcessRolloutDir:
    """Tests for process_rollout_dir."""

    def test_processes_all(self, storage: SqliteStorage, write_rollout, tmp_path: Path) -> None:
        write_rollout(records_with_id("one"), name="rollout-1.jsonl")
        write_rollout(records_with_id("two"), name="rollout-2.jsonl", subdir="2026/01/23")

        assert process_rollout_dir(tmp_path / "sessions", storage) == 2
        assert count(storage, "conversations") == 2

    def test_missing_dir(self, storage: SqliteStorage, tmp_path: Path) -> None:
        assert process_rollout_dir(tmp_path / "missing", storage) == 0

    def test_stops_at_first_failure(self, storage: SqliteStorage, write_rollout, tmp_path: Path) -> None:
        bad = write_rollout(records_with_id("one"), name="rollout-1.jsonl")
        bad.write_text("{broken\n")
        write_rollout(records_with_id("two"), name="rollout-2.jsonl")

        with pytest.raises(InvalidJsonError):
            process_rollout_dir(tmp_path / "sessions", storage)
        assert count(storage, "conversations") == 0


class TestUpdateRolloutDir:
    """Tests for update_rollout_dir."""

    def test_skips_unchanged(self, storage: SqliteStorage, write_rollout, tmp_path: Path) -> None:
        """An unchanged file is skipped on the second run."""
        write_rollout(basic_rollout_records())
        root = tmp_path / "sessions"

        first = update_rollout_dir(root, storage)
        second = update_rollout_dir(root, storage)

        assert (first.processed, first.skipped) == (1, 0)
        assert (second.processed, second.skipped) == (0, 1)

    def test_reprocesses_changed(self, storage: SqliteStorage, write_rollout, tmp_path: Path) -> None:
        """A file whose size changed is re-ingested."""
        write_rollout(basic_rollout_records())
        root = tmp_path / "sessions"
        update_rollout_dir(root, storage)

        write_rollout(basic_rollout_records(assistant_reply="Use the beta approach instead."))
        stats = update_rollout_dir(root, storage)

        assert (stats.processed, stats.skipped) == (1, 0)
        assert turn_rows(storage)[0]["assistant_text"] == "Use the beta approach instead."

    def test_new_file_processed(self, storage: SqliteStorage, write_rollout, tmp_path: Path) -> None:
        root = tmp_path / "sessions"
        write_rollout(records_with_id("one"), name="rollout-1.jsonl")
        update_rollout_dir(root, storage)

        write_rollout(records_with_id("two"), name="rollout-2.jsonl")
        stats = update_rollout_dir(root, storage)

        assert (stats.processed, stats.skipped) == (1, 1)


class TestUpdateRolloutFile:
    """Tests for update_rollout_file."""

    def test_processed_then_skipped(self, storage: SqliteStorage, write_rollout) -> None:
        path = write_rollout(basic_rollout_records())

        assert update_rollout_file(path, storage) is True
        assert update_rollout_file(path, storage) is False

    def test_failure_propagates(self, storage: SqliteStorage, write_rollout) -> None:
        path = write_rollout(basic_rollout_records())
        path.write_text("{broken\n")

        with pytest.raises(InvalidJsonError):
            update_rollout_file(path, storage)
        assert storage.get_rollout_fingerprint(path) is None

    def test_missing_file(self, storage: SqliteStorage, tmp_path: Path) -> None:
        with pytest.raises(RolloutReadError):
            update_rollout_file(tmp_path / "rollout-gone.jsonl", storage)
