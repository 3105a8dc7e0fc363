"""Configuration loading and management."""

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

DEFAULT_HOME = Path.home() / "conv-memory"


@dataclass
class StorageConfig:
    db_path: Path = field(default_factory=lambda: DEFAULT_HOME / "conv-memory.sqlite")


@dataclass
class SourceConfig:
    sessions_path: Path = field(default_factory=lambda: Path.home() / ".codex" / "sessions")


@dataclass
class EmbeddingConfig:
    model: str | None = None  # None disables embeddings
    batch_size: int = 32
    normalize: bool = True
    device: str | None = None


@dataclass
class SearchConfig:
    default_limit: int = 10
    prefetch: int | None = None


@dataclass
class Config:
    storage: StorageConfig = field(default_factory=StorageConfig)
    source: SourceConfig = field(default_factory=SourceConfig)
    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    search: SearchConfig = field(default_factory=SearchConfig)
    log_dir: Path = field(default_factory=lambda: DEFAULT_HOME / "logs")


def expand_env_var(value: str) -> str:
    """Expand environment variables in string (e.g. ${VAR})."""
    if value.startswith("${") and value.endswith("}"):
        env_var = value[2:-1]
        return os.environ.get(env_var, value)
    return value


def expand_path(path_str: str) -> Path:
    """Expand ~ and environment variables in path."""
    return Path(os.path.expandvars(os.path.expanduser(path_str)))


def load_config(config_path: Path | None = None) -> Config:
    """Load configuration from YAML file."""
    if config_path is None:
        search_paths = [
            Path.cwd() / "config.yaml",
            Path.home() / ".config" / "conv-memory" / "config.yaml",
            Path("/etc/conv-memory/config.yaml"),
        ]
        for path in search_paths:
            if path.exists():
                config_path = path
                break

    if config_path is None or not config_path.exists():
        return Config()

    with open(config_path) as f:
        data = yaml.safe_load(f) or {}

    storage_data = data.get("storage", {})
    storage = StorageConfig(
        db_path=expand_path(storage_data.get("db_path", "~/conv-memory/conv-memory.sqlite")),
    )

    source_data = data.get("source", {})
    source = SourceConfig(
        sessions_path=expand_path(source_data.get("sessions_path", "~/.codex/sessions")),
    )

    embedding_data = data.get("embedding", {})
    model = embedding_data.get("model")
    if model:
        model = expand_env_var(model)
    embedding = EmbeddingConfig(
        model=model or None,
        batch_size=embedding_data.get("batch_size", 32),
        normalize=embedding_data.get("normalize", True),
        device=embedding_data.get("device"),
    )

    search_data = data.get("search", {})
    search = SearchConfig(
        default_limit=search_data.get("default_limit", 10),
        prefetch=search_data.get("prefetch"),
    )

    return Config(
        storage=storage,
        source=source,
        embedding=embedding,
        search=search,
        log_dir=expand_path(data.get("log_dir", "~/conv-memory/logs")),
    )
