"""Embedding backends and batched turn embedding."""

import threading
from collections.abc import Sequence
from typing import TYPE_CHECKING, Protocol, runtime_checkable

import numpy as np

from conv_memory.exceptions import (
    EmbeddingInferenceError,
    EmbeddingOutputMismatchError,
    EmbeddingUnavailableError,
)
from conv_memory.logging import get_logger

if TYPE_CHECKING:
    from sentence_transformers import SentenceTransformer

__all__ = [
    "DEFAULT_BATCH_SIZE",
    "EmbeddingBackend",
    "SentenceTransformerBackend",
    "decode_vector",
    "embed_turn_summaries",
    "encode_vector",
]

logger = get_logger("embedding")

DEFAULT_BATCH_SIZE = 32


@runtime_checkable
class EmbeddingBackend(Protocol):
    """Contract for text-to-vector backends.

    `embed_batch` may return fewer vectors than inputs when some inputs
    failed; callers are expected to handle that.
    """

    def embed(self, text: str) -> list[float]:
        """Generate an embedding vector for text."""
        ...

    def embed_batch(self, texts: Sequence[str]) -> list[list[float]]:
        """Generate embeddings for several texts."""
        ...

    def embedding_dimension(self) -> int:
        """Dimensionality of produced vectors."""
        ...


def encode_vector(vector: Sequence[float]) -> bytes:
    """Serialise a vector as little-endian float32 bytes."""
    return np.asarray(vector, dtype="<f4").tobytes()


def decode_vector(blob: bytes) -> np.ndarray | None:
    """Deserialise float32 bytes, or None if the blob is malformed."""
    if not blob or len(blob) % 4 != 0:
        return None
    return np.frombuffer(blob, dtype="<f4")


class SentenceTransformerBackend:
    """Embedding backend backed by a sentence-transformers model.

    The model is loaded lazily on first use and shared by every caller
    holding this backend.

    Args:
        model_name_or_path: HuggingFace model name or local model directory
        normalize_embeddings: Whether to normalise vectors to unit length
        device: Torch device string, or None for the library default
    """

    def __init__(
        self,
        model_name_or_path: str,
        *,
        normalize_embeddings: bool = True,
        device: str | None = None,
    ) -> None:
        self._model_name_or_path = model_name_or_path
        self._normalize_embeddings = normalize_embeddings
        self._device = device
        self._model: SentenceTransformer | None = None
        self._lock = threading.Lock()

    @property
    def model_name(self) -> str:
        return self._model_name_or_path

    def _get_model(self) -> "SentenceTransformer":
        if self._model is None:
            with self._lock:
                if self._model is None:
                    self._model = self._load_model()
        return self._model

    def _load_model(self) -> "SentenceTransformer":
        try:
            from sentence_transformers import SentenceTransformer
        except ImportError as exc:
            raise EmbeddingUnavailableError(
                "sentence-transformers is not installed; install conv-memory[embeddings]",
                {"model": self._model_name_or_path},
            ) from exc
        try:
            model = SentenceTransformer(self._model_name_or_path, device=self._device)
        except Exception as exc:
            raise EmbeddingUnavailableError(
                f"Failed to load embedding model: {self._model_name_or_path}",
                {"model": self._model_name_or_path, "cause": str(exc)},
            ) from exc
        logger.info("Loaded embedding model: model=%s", self._model_name_or_path)
        return model

    def _encode(self, texts: list[str]) -> np.ndarray:
        model = self._get_model()
        try:
            return model.encode(
                texts,
                convert_to_numpy=True,
                normalize_embeddings=self._normalize_embeddings,
            )
        except Exception as exc:
            raise EmbeddingInferenceError(
                "Embedding inference failed",
                {"model": self._model_name_or_path, "inputs": len(texts), "cause": str(exc)},
            ) from exc

    def embed(self, text: str) -> list[float]:
        vectors = self._encode([text])
        if len(vectors) == 0:
            raise EmbeddingOutputMismatchError(expected=1, actual=0)
        return vectors[0].astype(np.float32).tolist()

    def embed_batch(self, texts: Sequence[str]) -> list[list[float]]:
        if not texts:
            return []
        vectors = self._encode(list(texts))
        return [vector.astype(np.float32).tolist() for vector in vectors]

    def embedding_dimension(self) -> int:
        dim = self._get_model().get_sentence_embedding_dimension()
        if dim is None:
            raise EmbeddingUnavailableError(
                f"Embedding dimension is unknown for model {self._model_name_or_path}",
                {"model": self._model_name_or_path},
            )
        return int(dim)


def embed_turn_summaries(
    summaries: Sequence[str],
    embedder: EmbeddingBackend,
    batch_size: int = DEFAULT_BATCH_SIZE,
) -> list[list[float]]:
    """Embed turn summaries in fixed-size batches.

    A batch that comes back with the wrong number of vectors is re-embedded
    one item at a time.

    Args:
        summaries: Rendered turn summaries, one per turn
        embedder: Embedding backend
        batch_size: Number of summaries per batch call

    Returns:
        One vector per summary, in order

    Raises:
        EmbeddingOutputMismatchError: If the vector count still does not match
        EmbeddingError: If the backend fails
    """
    if batch_size <= 0:
        raise ValueError(f"batch_size must be positive: {batch_size}")

    vectors: list[list[float]] = []
    for start in range(0, len(summaries), batch_size):
        chunk = list(summaries[start:start + batch_size])
        chunk_vectors = embedder.embed_batch(chunk)
        if len(chunk_vectors) != len(chunk):
            logger.warning(
                "Batch embedding returned %d vectors for %d inputs, embedding singly",
                len(chunk_vectors),
                len(chunk),
            )
            chunk_vectors = [embedder.embed(item) for item in chunk]
        vectors.extend(chunk_vectors)

    if len(vectors) != len(summaries):
        raise EmbeddingOutputMismatchError(expected=len(summaries), actual=len(vectors))
    return vectors
