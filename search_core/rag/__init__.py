"""Hybrid vector and keyword retrieval on PostgreSQL with pgvector."""

from __future__ import annotations

from .connection import (
    ConnectionStatus,
    VectorStoreConfigurationError,
    validate_connection,
)
from .embeddings import EmbeddingClientError
from .hybrid_search import curate_sources, perform_similarity_search
from .sanitize import sanitize_for_jsonb
from .schemas import EmbeddingRow, SearchResponse, SearchResultItem, source_identifier
from .score_fusion import distance_to_similarity, resolve_hybrid_alpha, rrf_fuse
from .term_extractor import extract_terms
from .term_library import load_term_library, reset_term_library_cache
from .vector_client import PgVectorStore, VectorDimensionError
from .vector_schema import VectorSchemaError, VectorSchemaErrorCode

__all__ = [
    "ConnectionStatus",
    "EmbeddingClientError",
    "EmbeddingRow",
    "PgVectorStore",
    "SearchResponse",
    "SearchResultItem",
    "VectorDimensionError",
    "VectorSchemaError",
    "VectorSchemaErrorCode",
    "VectorStoreConfigurationError",
    "curate_sources",
    "distance_to_similarity",
    "extract_terms",
    "load_term_library",
    "perform_similarity_search",
    "reset_term_library_cache",
    "resolve_hybrid_alpha",
    "rrf_fuse",
    "sanitize_for_jsonb",
    "source_identifier",
    "validate_connection",
]
