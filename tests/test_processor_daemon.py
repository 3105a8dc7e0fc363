"""Tests for the updater daemon module."""

from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from conv_memory.config import Config, EmbeddingConfig, SourceConfig, StorageConfig
from conv_memory.exceptions import RolloutReadError
from conv_memory.models import UpdateStats
from conv_memory.processor.daemon import (
    build_embedder,
    is_shutdown_requested,
    request_shutdown,
    reset_shutdown,
    run_updater,
    run_updater_cycle,
)
from conv_memory.processor.embedding import SentenceTransformerBackend
from conv_memory.processor.storage import SqliteStorage

from conftest import basic_rollout_records


def records_with_id(conv_id: str) -> list[dict]:
    records = basic_rollout_records()
    records[0]["payload"]["id"] = conv_id
    return records


@pytest.fixture
def test_config(tmp_path: Path) -> Config:
    """Create a test configuration."""
    return Config(
        storage=StorageConfig(db_path=tmp_path / "db" / "conv.sqlite"),
        source=SourceConfig(sessions_path=tmp_path / "sessions"),
        log_dir=tmp_path / "logs",
    )


class TestShutdownFlags:
    """Tests for shutdown flag management."""

    def test_initial_state_not_shutdown(self) -> None:
        """Should start with shutdown not requested."""
        reset_shutdown()
        assert is_shutdown_requested() is False

    def test_request_shutdown_sets_flag(self) -> None:
        """request_shutdown should set the flag."""
        reset_shutdown()
        request_shutdown()
        assert is_shutdown_requested() is True
        reset_shutdown()

    def test_reset_shutdown_clears_flag(self) -> None:
        """reset_shutdown should clear the flag."""
        request_shutdown()
        reset_shutdown()
        assert is_shutdown_requested() is False


class TestBuildEmbedder:
    """Tests for build_embedder."""

    def test_disabled_without_model(self, test_config: Config) -> None:
        assert build_embedder(test_config) is None

    def test_configured_model(self, test_config: Config) -> None:
        """A configured model yields a lazily loaded backend."""
        test_config.embedding = EmbeddingConfig(model="all-MiniLM-L6-v2", device="cpu")
        embedder = build_embedder(test_config)

        assert isinstance(embedder, SentenceTransformerBackend)
        assert embedder.model_name == "all-MiniLM-L6-v2"


class TestRunUpdaterCycle:
    """Tests for run_updater_cycle."""

    def test_ingests_changed_rollouts(self, write_rollout, tmp_path: Path) -> None:
        """A cycle ingests new files and skips them the next time."""
        write_rollout(basic_rollout_records())

        with SqliteStorage(tmp_path / "conv.sqlite") as storage:
            first = run_updater_cycle(tmp_path / "sessions", storage, None)
            second = run_updater_cycle(tmp_path / "sessions", storage, None)

        assert first == UpdateStats(processed=1, skipped=0)
        assert second == UpdateStats(processed=0, skipped=1)

    def test_failed_file_logged_not_raised(self, write_rollout, tmp_path: Path, caplog) -> None:
        """A failing rollout is logged and counted, not raised."""
        path = write_rollout(basic_rollout_records())
        path.write_text("{broken\n")

        with SqliteStorage(tmp_path / "conv.sqlite") as storage:
            result = run_updater_cycle(tmp_path / "sessions", storage, None)

        assert result == UpdateStats(processed=0, skipped=0, failed=1)
        assert "Failed to update rollout" in caplog.text

    def test_corrupt_file_does_not_block_later_files(self, write_rollout, tmp_path: Path) -> None:
        """A truncated rollout sorting first does not stop later rollouts."""
        bad = write_rollout(records_with_id("first"), name="rollout-1.jsonl")
        bad.write_text(bad.read_text() + '{"timestamp": "2026-01-22T15:54:00Z", "ty')
        write_rollout(records_with_id("second"), name="rollout-2.jsonl")

        with SqliteStorage(tmp_path / "conv.sqlite") as storage:
            first = run_updater_cycle(tmp_path / "sessions", storage, None)
            second = run_updater_cycle(tmp_path / "sessions", storage, None)
            stored = [r[0] for r in storage.connection.execute("SELECT id FROM conversations")]

        assert first == UpdateStats(processed=1, skipped=0, failed=1)
        assert second == UpdateStats(processed=0, skipped=1, failed=1)
        assert stored == ["second"]

    def test_unlistable_directory(self, tmp_path: Path, caplog) -> None:
        """A directory walk failure ends the cycle with None."""
        with (
            SqliteStorage(":memory:") as storage,
            patch(
                "conv_memory.processor.daemon.discover_rollouts",
                side_effect=RolloutReadError(str(tmp_path), PermissionError("denied")),
            ),
        ):
            result = run_updater_cycle(tmp_path, storage, None)

        assert result is None
        assert "Update cycle failed" in caplog.text


class TestRunUpdater:
    """Tests for run_updater main loop."""

    def test_runs_until_shutdown(self, test_config: Config, caplog) -> None:
        """Should run cycles until shutdown is requested."""
        reset_shutdown()
        cycle_count = 0

        def mock_cycle(*args, **kwargs):
            nonlocal cycle_count
            cycle_count += 1
            if cycle_count >= 2:
                request_shutdown()
            return UpdateStats()

        with patch(
            "conv_memory.processor.daemon.run_updater_cycle",
            side_effect=mock_cycle,
        ):
            run_updater(test_config, interval_seconds=1)

        assert cycle_count >= 2

        assert "Starting updater daemon" in caplog.text
        assert "Updater daemon stopped" in caplog.text

    def test_logs_cycle_results(self, test_config: Config, caplog) -> None:
        """Should log results after each cycle."""
        reset_shutdown()

        def mock_cycle(*args, **kwargs):
            request_shutdown()
            return UpdateStats(processed=3, skipped=7, failed=2)

        with patch(
            "conv_memory.processor.daemon.run_updater_cycle",
            side_effect=mock_cycle,
        ):
            run_updater(test_config, interval_seconds=1)

        assert "processed=3" in caplog.text
        assert "skipped=7" in caplog.text
        assert "failed=2" in caplog.text

    def test_uses_given_path_and_embedder(self, test_config: Config, tmp_path: Path) -> None:
        """Explicit sessions path and embedder override the config."""
        reset_shutdown()
        embedder = MagicMock()

        def mock_cycle(*args, **kwargs):
            request_shutdown()
            return UpdateStats()

        with patch(
            "conv_memory.processor.daemon.run_updater_cycle",
            side_effect=mock_cycle,
        ) as cycle:
            run_updater(test_config, interval_seconds=1, sessions_path=tmp_path / "other", embedder=embedder)

        args = cycle.call_args.args
        assert args[0] == tmp_path / "other"
        assert args[2] is embedder

    def test_ingests_real_rollouts(self, test_config: Config, write_rollout) -> None:
        """One real cycle writes the rollout to the configured database."""
        reset_shutdown()
        write_rollout(basic_rollout_records())
        real_cycle = run_updater_cycle

        def one_cycle(*args, **kwargs):
            request_shutdown()
            return real_cycle(*args, **kwargs)

        with patch("conv_memory.processor.daemon.run_updater_cycle", side_effect=one_cycle):
            run_updater(test_config, interval_seconds=1)

        with SqliteStorage(test_config.storage.db_path) as storage:
            count = storage.connection.execute("SELECT COUNT(*) FROM conversations").fetchone()[0]
        assert count == 1
