"""Parsers for Codex rollout transcripts."""

from .base import Parser, parse_timestamp
from .codex import CodexParser

__all__ = [
    "CodexParser",
    "Parser",
    "parse_timestamp",
]
