"""Shared fixtures for conv-memory tests."""

import json
import logging
from collections.abc import Callable, Iterator, Sequence
from pathlib import Path
from typing import Any

import pytest

from conv_memory.processor.storage import SqliteStorage

SESSION_ID = "019be668-4c23-7792-8b9c-7995e5bfdeee"
ROLLOUT_NAME = f"rollout-2026-01-22T10-52-33-{SESSION_ID}.jsonl"


class KeywordEmbedder:
    """Deterministic embedder: one dimension per keyword, counted in the text."""

    def __init__(self, keywords: Sequence[str] = ("alpha", "beta", "gamma")) -> None:
        self.keywords = list(keywords)
        self.batch_calls = 0
        self.single_calls = 0

    def _vector(self, text: str) -> list[float]:
        lowered = text.lower()
        # Trailing constant keeps every vector non-zero
        return [float(lowered.count(k)) for k in self.keywords] + [1.0]

    def embed(self, text: str) -> list[float]:
        self.single_calls += 1
        return self._vector(text)

    def embed_batch(self, texts: Sequence[str]) -> list[list[float]]:
        self.batch_calls += 1
        return [self._vector(t) for t in texts]

    def embedding_dimension(self) -> int:
        return len(self.keywords) + 1


class ShortBatchEmbedder(KeywordEmbedder):
    """Drops the last vector of every batch."""

    def embed_batch(self, texts: Sequence[str]) -> list[list[float]]:
        return super().embed_batch(texts)[:-1]


def basic_rollout_records(assistant_reply: str = "Try the alpha approach.") -> list[dict[str, Any]]:
    """Records for a one-turn rollout with a shell call."""
    return [
        {
            "timestamp": "2026-01-22T15:52:33.575Z",
            "type": "session_meta",
            "payload": {
                "id": SESSION_ID,
                "cwd": "/home/user/project",
                "git": {"branch": "main"},
            },
        },
        {
            "timestamp": "2026-01-22T15:52:34.000Z",
            "type": "turn_context",
            "payload": {"cwd": "/home/user/project", "model": "gpt-5-codex"},
        },
        {
            "timestamp": "2026-01-22T15:52:35.000Z",
            "type": "response_item",
            "payload": {
                "type": "message",
                "role": "user",
                "content": [{"type": "input_text", "text": "Why does alpha fail?"}],
            },
        },
        {
            "timestamp": "2026-01-22T15:52:36.000Z",
            "type": "response_item",
            "payload": {
                "type": "function_call",
                "name": "shell",
                "call_id": "call_1",
                "arguments": json.dumps({"command": ["pytest -q", "tests"], "workdir": "/home/user/project"}),
            },
        },
        {
            "timestamp": "2026-01-22T15:52:37.000Z",
            "type": "response_item",
            "payload": {
                "type": "function_call_output",
                "call_id": "call_1",
                "output": json.dumps({"content": "1 failed", "success": False}),
            },
        },
        {
            "timestamp": "2026-01-22T15:52:43.000Z",
            "type": "response_item",
            "payload": {
                "type": "message",
                "role": "assistant",
                "content": [{"type": "output_text", "text": assistant_reply}],
            },
        },
    ]


def dump_records(records: Sequence[dict[str, Any]]) -> str:
    return "\n".join(json.dumps(r) for r in records) + "\n"


def drop_log_handlers() -> None:
    """Remove handlers a command attached to the package logger."""
    logger = logging.getLogger("conv_memory")
    for handler in list(logger.handlers):
        handler.close()
        logger.removeHandler(handler)


@pytest.fixture(autouse=True)
def reset_package_logger() -> Iterator[None]:
    yield
    drop_log_handlers()


@pytest.fixture
def write_rollout(tmp_path: Path) -> Callable[..., Path]:
    """Write rollout records to a file under tmp_path/sessions."""

    def _write(
        records: Sequence[dict[str, Any]],
        name: str = ROLLOUT_NAME,
        subdir: str = "2026/01/22",
    ) -> Path:
        path = tmp_path / "sessions" / subdir / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(dump_records(records), encoding="utf-8")
        return path

    return _write


@pytest.fixture
def storage() -> Iterator[SqliteStorage]:
    """Provide an in-memory SqliteStorage."""
    store = SqliteStorage(":memory:")
    yield store
    store.close()


@pytest.fixture
def embedder() -> KeywordEmbedder:
    return KeywordEmbedder()
