"""SQLite persistence for conversations, turns and turn embeddings."""

import json
import sqlite3
import time
from collections.abc import Iterator, Mapping, Sequence
from contextlib import AbstractContextManager, contextmanager
from datetime import datetime
from pathlib import Path
from typing import Protocol, Self

from conv_memory.exceptions import EmbeddingDimensionMismatchError, StorageError
from conv_memory.logging import get_logger
from conv_memory.models import (
    ConversationRecord,
    ConversationStats,
    ConversationSummary,
    RolloutFingerprint,
    StoredTurnRow,
    TokenUsageBreakdown,
    TurnRecord,
    format_timestamp,
)
from conv_memory.processor.embedding import encode_vector

logger = get_logger("storage")

MetaValue = str | int | float

CONVERSATION_COLUMNS: dict[str, str] = {
    "rollout_path": "TEXT NOT NULL",
    "started_at": "TEXT",
    "ended_at": "TEXT",
    "duration_seconds": "INTEGER",
    "token_input": "INTEGER",
    "token_cached": "INTEGER",
    "token_output": "INTEGER",
    "token_reasoning": "INTEGER",
    "token_total": "INTEGER",
    "token_model_context": "INTEGER",
    "embedding_dim": "INTEGER",
    "meta_json": "TEXT",
    "rollout_modified_at": "TEXT",
    "rollout_size_bytes": "INTEGER",
    "rollout_hash": "TEXT",
    "preview": "TEXT",
    "first_question": "TEXT",
    "last_question": "TEXT",
    "last_user_message": "TEXT",
    "model": "TEXT",
    "turn_count": "INTEGER",
    "has_live_events": "INTEGER",
    "commands_json": "TEXT",
    "files_json": "TEXT",
    "questions_json": "TEXT",
    "search_blob": "TEXT",
    "cwd": "TEXT",
    "ingested_at": "INTEGER",
}

# Columns written by upsert_conversation, in statement order.
UPSERT_COLUMNS = [c for c in CONVERSATION_COLUMNS if c != "embedding_dim"]


class ConversationStore(Protocol):
    """Persistence operations used by the pipeline and the search engine."""

    def transaction(self) -> AbstractContextManager[None]: ...

    def upsert_conversation(
        self,
        rollout_path: Path,
        record: ConversationRecord,
        fingerprint: RolloutFingerprint,
        stats: ConversationStats,
        conversation_id: str | None = None,
    ) -> str: ...

    def insert_turn(
        self,
        conversation_id: str,
        turn: TurnRecord,
        embedding: Sequence[float] | None = None,
    ) -> None: ...

    def delete_turns_from(self, conversation_id: str, start_index: int) -> int: ...

    def get_rollout_fingerprint(self, rollout_path: Path) -> RolloutFingerprint | None: ...

    def query_turns_with_embeddings(
        self,
        meta_equals: Mapping[str, MetaValue],
        conversation_ids: Sequence[str],
        limit: int,
    ) -> list[StoredTurnRow]: ...


def estimate_token_count(text: str) -> int:
    """Approximate token count as the number of whitespace-separated words."""
    return len(text.split())


def approximate_input_tokens(record: ConversationRecord) -> int | None:
    total = sum(
        estimate_token_count(user_input.text)
        for turn in record.turns
        for user_input in turn.user_inputs
        if user_input.text is not None
    )
    return total or None


def approximate_output_tokens(record: ConversationRecord) -> int | None:
    total = 0
    for turn in record.turns:
        result = turn.result
        total += sum(estimate_token_count(t) for t in result.assistant_messages)
        total += sum(estimate_token_count(t) for t in result.reasoning_summaries)
        if result.fallback is not None:
            total += estimate_token_count(result.fallback.text)
    return total or None


def best_breakdown(record: ConversationRecord) -> TokenUsageBreakdown | None:
    usage = record.token_usage
    return usage.total if usage.total is not None else usage.last


def conversation_id_from_filename(path: Path) -> str:
    """Derive a conversation id from a rollout file name.

    rollout-YYYY-MM-DDTHH-MM-SS-<uuid>.jsonl yields the uuid; any other name
    yields the file stem.
    """
    stem = path.stem
    if stem.startswith("rollout-"):
        parts = stem[len("rollout-"):].split("-")
        # Skip YYYY, MM, DDTHH, MM, SS and take the rest as UUID
        if len(parts) >= 7:
            return "-".join(parts[5:])
    return stem or str(path)


def extract_conversation_id(record: ConversationRecord, rollout_path: Path) -> str:
    """Conversation id from session metadata, else from the file name."""
    meta = record.session_meta if isinstance(record.session_meta, dict) else {}
    for key in ("id", "conversation_id"):
        value = meta.get(key)
        if isinstance(value, str) and value:
            return value
    return conversation_id_from_filename(rollout_path)


def meta_json_path(key: str) -> str:
    """JSON path for a dotted metadata key, e.g. 'git.branch' -> '$."git"."branch"'."""
    return "$." + ".".join(f'"{segment}"' for segment in key.split("."))


class SqliteStorage:
    """Manages conversation persistence in a SQLite database.

    Writes commit immediately unless they run inside `transaction()`, in
    which case they commit together or not at all.
    """

    def __init__(self, db_path: Path | str) -> None:
        """Open (or create) the database.

        Args:
            db_path: Path to SQLite database file, or ":memory:". Parent
                     directories will be created if they don't exist.
        """
        if str(db_path) != ":memory:":
            db_path = Path(db_path)
            db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db_path = db_path
        self._transaction_depth = 0
        try:
            self._conn = sqlite3.connect(db_path)
            self._conn.row_factory = sqlite3.Row
            self.ensure_schema()
        except sqlite3.Error as exc:
            raise StorageError("open", exc, {"db_path": str(db_path)}) from exc

    @property
    def connection(self) -> sqlite3.Connection:
        """Raw connection for ad-hoc queries."""
        return self._conn

    def ensure_schema(self) -> None:
        """Create tables, and add any columns missing from older databases."""
        column_defs = ",\n".join(f"{name} {ty}" for name, ty in CONVERSATION_COLUMNS.items())
        self._conn.executescript(f"""
            PRAGMA foreign_keys = ON;
            CREATE TABLE IF NOT EXISTS conversations (
                id TEXT PRIMARY KEY,
                {column_defs}
            );
            CREATE TABLE IF NOT EXISTS turns (
                conversation_id TEXT NOT NULL REFERENCES conversations(id) ON DELETE CASCADE,
                turn_index INTEGER NOT NULL,
                started_at TEXT,
                user_text TEXT,
                assistant_text TEXT,
                fallback_text TEXT,
                actions_json TEXT,
                telemetry_json TEXT,
                embedding BLOB,
                PRIMARY KEY (conversation_id, turn_index)
            );
            CREATE INDEX IF NOT EXISTS idx_turns_conversation ON turns(conversation_id);
            CREATE INDEX IF NOT EXISTS idx_conversations_rollout_path ON conversations(rollout_path);
        """)
        for column, ty in CONVERSATION_COLUMNS.items():
            self._ensure_column("conversations", column, ty.replace(" NOT NULL", ""))
        self._conn.commit()

    def _ensure_column(self, table: str, column: str, ty: str) -> None:
        existing = {row["name"] for row in self._conn.execute(f"PRAGMA table_info({table})")}
        if column not in existing:
            self._conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {ty}")
            logger.info("Added missing column: table=%s column=%s", table, column)

    @contextmanager
    def _translate(self, operation: str) -> Iterator[None]:
        try:
            yield
        except sqlite3.Error as exc:
            raise StorageError(operation, exc) from exc

    def _commit(self) -> None:
        if self._transaction_depth == 0:
            self._conn.commit()

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Group writes so they commit together or roll back together."""
        self._transaction_depth += 1
        try:
            yield
        except BaseException:
            self._transaction_depth -= 1
            if self._transaction_depth == 0:
                self._conn.rollback()
            raise
        self._transaction_depth -= 1
        if self._transaction_depth == 0:
            with self._translate("commit"):
                self._conn.commit()

    def upsert_conversation(
        self,
        rollout_path: Path,
        record: ConversationRecord,
        fingerprint: RolloutFingerprint,
        stats: ConversationStats,
        conversation_id: str | None = None,
    ) -> str:
        """Insert or update conversation metadata.

        ingested_at only moves when the path or content hash changed, so
        re-ingesting an unchanged file leaves the row identical.

        Args:
            rollout_path: Source rollout file
            record: Parsed conversation
            fingerprint: Fingerprint of the file that produced the record
            stats: Derived conversation statistics
            conversation_id: Explicit id, overriding the one derived from the record

        Returns:
            The id the conversation was stored under
        """
        if conversation_id is None:
            conversation_id = extract_conversation_id(record, Path(rollout_path))

        breakdown = best_breakdown(record) or TokenUsageBreakdown()
        token_input = breakdown.input_tokens
        token_output = breakdown.output_tokens
        token_total = breakdown.total_tokens
        if token_input is None:
            token_input = approximate_input_tokens(record)
        if token_output is None:
            token_output = approximate_output_tokens(record)
        if token_total is None and (token_input is not None or token_output is not None):
            token_total = (token_input or 0) + (token_output or 0)

        values = {
            "rollout_path": str(rollout_path),
            "started_at": format_timestamp(record.started_at),
            "ended_at": format_timestamp(record.ended_at),
            "duration_seconds": record.duration_seconds,
            "token_input": token_input,
            "token_cached": breakdown.cached_input_tokens,
            "token_output": token_output,
            "token_reasoning": breakdown.reasoning_output_tokens,
            "token_total": token_total,
            "token_model_context": record.token_usage.model_context_window,
            "meta_json": json.dumps(record.session_meta) if record.session_meta is not None else None,
            "rollout_modified_at": format_timestamp(fingerprint.modified_at),
            "rollout_size_bytes": fingerprint.size_bytes,
            "rollout_hash": fingerprint.sha256,
            "preview": stats.preview,
            "first_question": stats.first_question,
            "last_question": stats.last_question,
            "last_user_message": stats.last_user_message,
            "model": stats.model,
            "turn_count": stats.turn_count,
            "has_live_events": int(stats.has_live_events),
            "commands_json": json.dumps(stats.commands),
            "files_json": json.dumps(stats.files_touched),
            "questions_json": json.dumps(stats.questions),
            "search_blob": stats.search_blob or None,
            "cwd": stats.cwd,
            "ingested_at": int(time.time()),
        }

        columns = ", ".join(["id", *UPSERT_COLUMNS])
        placeholders = ", ".join("?" for _ in range(len(UPSERT_COLUMNS) + 1))
        updates = ",\n".join(f"{c} = excluded.{c}" for c in UPSERT_COLUMNS if c != "ingested_at")
        # Re-ingesting identical content keeps the row unchanged
        updates += (
            ",\ningested_at = CASE WHEN rollout_path IS excluded.rollout_path"
            " AND rollout_hash IS excluded.rollout_hash"
            " THEN ingested_at ELSE excluded.ingested_at END"
        )

        with self._translate("upsert_conversation"):
            self._conn.execute(
                f"""
                INSERT INTO conversations ({columns})
                VALUES ({placeholders})
                ON CONFLICT(id) DO UPDATE SET
                {updates}
                """,
                [conversation_id, *(values[c] for c in UPSERT_COLUMNS)],
            )
            self._commit()

        logger.debug("Upserted conversation: id=%s path=%s", conversation_id, rollout_path)
        return conversation_id

    def insert_turn(
        self,
        conversation_id: str,
        turn: TurnRecord,
        embedding: Sequence[float] | None = None,
    ) -> None:
        """Insert or replace a turn and its embedding.

        The first embedding stored for a conversation fixes its dimension.

        Raises:
            EmbeddingDimensionMismatchError: If the conversation already holds
                embeddings of a different dimension
            StorageError: If the write fails
        """
        blob = None
        if embedding is not None:
            dim = len(embedding)
            stored_dim = self.get_embedding_dim(conversation_id)
            if stored_dim is not None and stored_dim != dim:
                raise EmbeddingDimensionMismatchError(conversation_id, stored_dim, dim)
            blob = encode_vector(embedding)

        fallback_text = turn.result.fallback.tagged() if turn.result.fallback else None

        with self._translate("insert_turn"):
            self._conn.execute(
                """
                INSERT INTO turns
                (conversation_id, turn_index, started_at, user_text, assistant_text,
                 fallback_text, actions_json, telemetry_json, embedding)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(conversation_id, turn_index) DO UPDATE SET
                    started_at = excluded.started_at,
                    user_text = excluded.user_text,
                    assistant_text = excluded.assistant_text,
                    fallback_text = excluded.fallback_text,
                    actions_json = excluded.actions_json,
                    telemetry_json = excluded.telemetry_json,
                    embedding = excluded.embedding
                """,
                (
                    conversation_id,
                    turn.index,
                    format_timestamp(turn.started_at),
                    turn.user_text,
                    turn.assistant_text,
                    fallback_text,
                    json.dumps([action.to_dict() for action in turn.actions]),
                    json.dumps(turn.telemetry.to_dict()),
                    blob,
                ),
            )
            if embedding is not None:
                self._conn.execute(
                    "UPDATE conversations SET embedding_dim = ? WHERE id = ? AND embedding_dim IS NULL",
                    (len(embedding), conversation_id),
                )
            self._commit()

    def delete_turns_from(self, conversation_id: str, start_index: int) -> int:
        """Delete turns with index >= start_index. Returns the number deleted."""
        with self._translate("delete_turns_from"):
            cursor = self._conn.execute(
                "DELETE FROM turns WHERE conversation_id = ? AND turn_index >= ?",
                (conversation_id, start_index),
            )
            self._commit()
        return cursor.rowcount

    def get_embedding_dim(self, conversation_id: str) -> int | None:
        with self._translate("get_embedding_dim"):
            row = self._conn.execute(
                "SELECT embedding_dim FROM conversations WHERE id = ?",
                (conversation_id,),
            ).fetchone()
        if row is None:
            return None
        return row["embedding_dim"]

    def clear_embeddings(self, conversation_id: str) -> None:
        """Drop stored vectors and the recorded dimension for a conversation.

        This is the migration path when switching embedding models.
        """
        with self._translate("clear_embeddings"):
            self._conn.execute(
                "UPDATE turns SET embedding = NULL WHERE conversation_id = ?",
                (conversation_id,),
            )
            self._conn.execute(
                "UPDATE conversations SET embedding_dim = NULL WHERE id = ?",
                (conversation_id,),
            )
            self._commit()
        logger.info("Cleared embeddings: id=%s", conversation_id)

    def get_rollout_fingerprint(self, rollout_path: Path) -> RolloutFingerprint | None:
        """Get the most recently stored fingerprint for an exact rollout path.

        Args:
            rollout_path: Rollout file path

        Returns:
            RolloutFingerprint if the path was ingested before, None otherwise
        """
        with self._translate("get_rollout_fingerprint"):
            row = self._conn.execute(
                """
                SELECT rollout_modified_at, rollout_size_bytes, rollout_hash
                FROM conversations
                WHERE rollout_path = ?
                ORDER BY ingested_at DESC
                LIMIT 1
                """,
                (str(rollout_path),),
            ).fetchone()
        if row is None:
            return None

        modified_at = None
        if row["rollout_modified_at"]:
            try:
                modified_at = datetime.fromisoformat(row["rollout_modified_at"])
            except ValueError:
                logger.warning(
                    "Ignoring unparseable stored mtime: path=%s value=%s",
                    rollout_path,
                    row["rollout_modified_at"],
                )
        return RolloutFingerprint(
            modified_at=modified_at,
            size_bytes=row["rollout_size_bytes"],
            sha256=row["rollout_hash"],
        )

    def query_turns_with_embeddings(
        self,
        meta_equals: Mapping[str, MetaValue],
        conversation_ids: Sequence[str],
        limit: int,
    ) -> list[StoredTurnRow]:
        """Fetch candidate turns that have an embedding.

        Args:
            meta_equals: Dotted session-metadata keys mapped to required values;
                a string value also matches a stored number with that text
            conversation_ids: Restrict to these conversations (empty = all)
            limit: Maximum number of rows

        Returns:
            Rows in (conversation_id, turn_index) order
        """
        sql = (
            "SELECT t.conversation_id, t.turn_index, t.user_text, t.assistant_text, t.embedding "
            "FROM turns t JOIN conversations c ON c.id = t.conversation_id "
            "WHERE t.embedding IS NOT NULL"
        )
        params: list[object] = []

        if conversation_ids:
            sql += f" AND t.conversation_id IN ({', '.join('?' for _ in conversation_ids)})"
            params.extend(conversation_ids)

        # A JSON number also matches its text form, so "1234" finds 1234
        for key, value in meta_equals.items():
            path = meta_json_path(key)
            sql += (
                " AND (json_extract(c.meta_json, ?) = ?"
                " OR CAST(json_extract(c.meta_json, ?) AS TEXT) = ?)"
            )
            params.extend([path, value, path, str(value)])

        sql += " ORDER BY t.conversation_id, t.turn_index LIMIT ?"
        params.append(limit)

        with self._translate("query_turns_with_embeddings"):
            rows = self._conn.execute(sql, params).fetchall()

        return [
            StoredTurnRow(
                conversation_id=row["conversation_id"],
                turn_index=row["turn_index"],
                user_text=row["user_text"],
                assistant_text=row["assistant_text"],
                embedding=bytes(row["embedding"]),
            )
            for row in rows
        ]

    def search_conversations(self, text: str, limit: int = 10) -> list[ConversationSummary]:
        """Find conversations whose search blob contains text (case-insensitive).

        Args:
            text: Substring to look for
            limit: Maximum number of conversations

        Returns:
            Matching conversations, most recent first
        """
        escaped = text.lower().replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        with self._translate("search_conversations"):
            rows = self._conn.execute(
                """
                SELECT id, rollout_path, started_at, ended_at, preview, model, cwd, turn_count
                FROM conversations
                WHERE search_blob LIKE ? ESCAPE '\\'
                ORDER BY ended_at DESC, id
                LIMIT ?
                """,
                (f"%{escaped}%", limit),
            ).fetchall()
        return [
            ConversationSummary(
                id=row["id"],
                rollout_path=row["rollout_path"],
                started_at=row["started_at"],
                ended_at=row["ended_at"],
                preview=row["preview"],
                model=row["model"],
                cwd=row["cwd"],
                turn_count=row["turn_count"] or 0,
            )
            for row in rows
        ]

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()

    def __enter__(self) -> Self:
        """Enter context manager."""
        return self

    def __exit__(self, exc_type: type | None, exc_val: Exception | None, exc_tb: object) -> None:
        """Exit context manager, closing database connection."""
        self.close()
