"""Helpers around the caller-supplied embedding function.

Embedding generation itself is external: callers hand in an ``embed(text)``
callable (or an object exposing ``embed``) that returns one vector.
"""

from __future__ import annotations

import math
from typing import Callable, List, Protocol, Sequence, Union, runtime_checkable

from common.logging import get_logger

logger = get_logger(__name__)


class EmbeddingClientError(RuntimeError):
    """Raised when the embedder fails or returns an unusable vector."""


@runtime_checkable
class SupportsEmbed(Protocol):
    def embed(self, text: str) -> Sequence[float]: ...


Embedder = Union[Callable[[str], Sequence[float]], SupportsEmbed]


def coerce_vector(value: object) -> List[float]:
    """Validate an embedder result and return it as a list of floats."""

    if value is None or isinstance(value, (str, bytes)):
        raise EmbeddingClientError("Embedder returned no vector")
    try:
        floats = [float(component) for component in value]  # type: ignore[union-attr]
    except (TypeError, ValueError) as exc:
        raise EmbeddingClientError("Embedder returned a non-numeric vector") from exc
    if not floats:
        raise EmbeddingClientError("Embedder returned an empty vector")
    if any(not math.isfinite(component) for component in floats):
        raise EmbeddingClientError("Embedder returned non-finite vector components")
    return floats


def _embed_callable(embedder: Embedder) -> Callable[[str], Sequence[float]]:
    if isinstance(embedder, SupportsEmbed):
        return embedder.embed
    if callable(embedder):
        return embedder
    raise EmbeddingClientError("Embedder must be callable or provide embed(text)")


def embed_text(embedder: Embedder, text: str) -> List[float]:
    """Embed ``text`` through ``embedder`` and validate the result."""

    func = _embed_callable(embedder)
    try:
        raw = func(text)
    except EmbeddingClientError:
        raise
    except Exception as exc:
        logger.warning(
            "rag.embedding.failed",
            exc_type=exc.__class__.__name__,
            error=str(exc),
        )
        raise EmbeddingClientError(f"Embedding failed: {exc}") from exc
    return coerce_vector(raw)


__all__ = [
    "Embedder",
    "EmbeddingClientError",
    "SupportsEmbed",
    "coerce_vector",
    "embed_text",
]
