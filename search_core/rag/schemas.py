from __future__ import annotations

import math
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

SEARCH_TYPE_SEMANTIC = "semantic"
SEARCH_TYPE_KEYWORD = "keyword"


def source_identifier(
    metadata: Mapping[str, Any] | None, *, fallback: object | None = None
) -> str:
    """Return the key identifying the document a chunk originates from.

    Chunks carrying both ``title`` and ``published`` share the identifier of
    their parent document. Anything else is identified by ``fallback`` when
    given, or by a fresh UUID so it never collides with another record.
    """

    meta = metadata or {}
    title = meta.get("title")
    published = meta.get("published")
    if title and published:
        return f"title:{title}-timestamp:{published}"
    if fallback not in (None, ""):
        return str(fallback)
    return str(uuid.uuid4())


class EmbeddingRow(BaseModel):
    """A vector submitted for storage in a namespace."""

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    vector: List[float]
    metadata: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)

    @field_validator("vector")
    @classmethod
    def _check_vector(cls, value: List[float]) -> List[float]:
        if not value:
            raise ValueError("vector must not be empty")
        if any(math.isnan(item) or math.isinf(item) for item in value):
            raise ValueError("vector components must be finite")
        return value

    def literal(self) -> str:
        """Render the vector in pgvector's text input format."""

        return format_vector(self.vector)


def format_vector(values: List[float]) -> str:
    return "[" + ",".join(repr(float(value)) for value in values) + "]"


@dataclass
class SearchResultItem:
    """A single retrieval hit; lives only for the duration of one query."""

    text: str
    metadata: Dict[str, Any]
    score: float
    search_type: str = SEARCH_TYPE_SEMANTIC
    vector_score: Optional[float] = None
    keyword_score: Optional[float] = None
    hybrid_alpha: Optional[float] = None
    matched_terms: Optional[List[str]] = None
    query_terms: Optional[List[str]] = None
    rrf_score: Optional[float] = None
    row_id: Optional[str] = None

    def source_id(self) -> str:
        return source_identifier(self.metadata, fallback=self.row_id)

    def to_source(self) -> Dict[str, Any]:
        """Flatten into the metadata-plus-scores document returned to callers."""

        payload: Dict[str, Any] = dict(self.metadata)
        payload["text"] = self.text
        payload["score"] = self.score
        payload["search_type"] = self.search_type
        optional = {
            "vector_score": self.vector_score,
            "keyword_score": self.keyword_score,
            "hybrid_alpha": self.hybrid_alpha,
            "matched_terms": self.matched_terms,
            "query_terms": self.query_terms,
            "rrf_score": self.rrf_score,
        }
        payload.update({key: value for key, value in optional.items() if value is not None})
        return payload


@dataclass
class SearchResponse:
    """Outcome of :func:`perform_similarity_search`.

    ``message`` is ``None`` for successful searches (including a missing
    namespace) and carries the error text when the search failed.
    """

    context_texts: List[str] = field(default_factory=list)
    sources: List[Dict[str, Any]] = field(default_factory=list)
    message: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "context_texts": list(self.context_texts),
            "sources": list(self.sources),
            "message": self.message,
        }


__all__ = [
    "EmbeddingRow",
    "SEARCH_TYPE_KEYWORD",
    "SEARCH_TYPE_SEMANTIC",
    "SearchResponse",
    "SearchResultItem",
    "format_vector",
    "source_identifier",
]
