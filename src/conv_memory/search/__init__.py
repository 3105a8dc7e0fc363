"""Vector search over ingested conversation turns."""

from .engine import (
    SearchParams,
    cosine_similarity,
    ensure_valid_meta_key,
    search_with_text,
    search_with_vector,
)

__all__ = [
    "SearchParams",
    "cosine_similarity",
    "ensure_valid_meta_key",
    "search_with_text",
    "search_with_vector",
]
