"""Two-phase vector search over stored turn embeddings.

Phase one asks the store for a bounded, filtered set of candidate turns.
Phase two scores each candidate against the query vector with cosine
similarity and keeps the best `limit` of them.
"""

import math
import re
from collections.abc import Sequence
from dataclasses import dataclass, field

import numpy as np

from conv_memory.exceptions import InvalidFilterError, InvalidPrefetchError
from conv_memory.logging import get_logger
from conv_memory.models import SearchResult
from conv_memory.processor.embedding import EmbeddingBackend, decode_vector
from conv_memory.processor.storage import ConversationStore, MetaValue

logger = get_logger("search")

PREFETCH_MULTIPLIER = 8

_META_SEGMENT = re.compile(r"[A-Za-z0-9_-]+")


@dataclass
class SearchParams:
    """Query options.

    Attributes:
        limit: Maximum number of results
        meta_equals: Dotted session-metadata keys mapped to required values
        conversation_ids: Restrict results to these conversations (empty = all)
        prefetch: Candidates fetched in phase one; defaults to limit * 8
    """

    limit: int = 10
    meta_equals: dict[str, MetaValue] = field(default_factory=dict)
    conversation_ids: list[str] = field(default_factory=list)
    prefetch: int | None = None

    def effective_prefetch(self) -> int:
        """Candidate count for phase one.

        Raises:
            InvalidPrefetchError: If an explicit prefetch is zero or negative
        """
        if self.prefetch is not None:
            if self.prefetch <= 0:
                raise InvalidPrefetchError(self.prefetch)
            return self.prefetch
        return max(self.limit, self.limit * PREFETCH_MULTIPLIER)


def ensure_valid_meta_key(key: str) -> None:
    """Reject metadata keys that are not dot-separated [A-Za-z0-9_-] segments.

    Raises:
        InvalidFilterError: If any segment is empty or has other characters
    """
    if not key or not all(_META_SEGMENT.fullmatch(segment) for segment in key.split(".")):
        raise InvalidFilterError(key)


def cosine_similarity(query: np.ndarray, candidate: np.ndarray) -> float | None:
    """Cosine similarity of two vectors, or None if it is undefined.

    Undefined covers differing dimensions, a zero-norm vector and
    non-finite results.
    """
    if query.shape != candidate.shape:
        return None
    query_norm = float(np.linalg.norm(query))
    candidate_norm = float(np.linalg.norm(candidate))
    if query_norm == 0.0 or candidate_norm == 0.0:
        return None
    score = float(np.dot(query, candidate) / (query_norm * candidate_norm))
    if not math.isfinite(score):
        return None
    return score


def search_with_vector(
    storage: ConversationStore,
    vector: Sequence[float],
    params: SearchParams,
) -> list[SearchResult]:
    """Rank stored turns by similarity to a query vector.

    Args:
        storage: Store to query candidates from
        vector: Query embedding
        params: Limit, filters and prefetch size

    Returns:
        Up to params.limit results, highest score first. Ties keep the
        store's (conversation_id, turn_index) order.

    Raises:
        InvalidFilterError: If a metadata key is malformed
        InvalidPrefetchError: If params.prefetch is zero or negative
        StorageError: If the candidate query fails
    """
    if len(vector) == 0 or params.limit <= 0:
        return []

    for key in params.meta_equals:
        ensure_valid_meta_key(key)
    prefetch = params.effective_prefetch()

    query = np.asarray(vector, dtype=np.float32)
    if float(np.linalg.norm(query)) == 0.0:
        return []

    rows = storage.query_turns_with_embeddings(
        params.meta_equals,
        params.conversation_ids,
        prefetch,
    )

    results: list[SearchResult] = []
    skipped = 0
    for row in rows:
        candidate = decode_vector(row.embedding)
        if candidate is None:
            skipped += 1
            continue
        score = cosine_similarity(query, candidate)
        if score is None:
            skipped += 1
            continue
        results.append(
            SearchResult(
                conversation_id=row.conversation_id,
                turn_index=row.turn_index,
                score=score,
                user_text=row.user_text,
                assistant_text=row.assistant_text,
            )
        )

    if skipped:
        logger.debug("Skipped unscorable candidates: count=%d", skipped)

    # sorted() is stable, so equal scores keep candidate order
    results = sorted(results, key=lambda r: r.score, reverse=True)
    return results[:params.limit]


def search_with_text(
    storage: ConversationStore,
    embedder: EmbeddingBackend,
    text: str,
    params: SearchParams,
) -> list[SearchResult]:
    """Embed text with the backend, then run search_with_vector."""
    vector = embedder.embed(text)
    return search_with_vector(storage, vector, params)
