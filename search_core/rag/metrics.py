"""Prometheus instrumentation for the vector store and hybrid search."""

from __future__ import annotations

from prometheus_client import Counter, Histogram

RAG_SEARCH_REQUESTS = Counter(
    "search_core_search_requests_total",
    "Similarity searches executed, labelled by retrieval mode.",
    ["mode"],
)
RAG_SEARCH_FAILURES = Counter(
    "search_core_search_failures_total",
    "Similarity searches that failed and returned an error message.",
)
RAG_SEARCH_LATENCY_MS = Histogram(
    "search_core_search_latency_ms",
    "Wall-clock duration of orchestrated searches in milliseconds.",
    buckets=(5, 10, 25, 50, 100, 250, 500, 1000, 2500, 5000, 10000),
)
RAG_KEYWORD_PROBES = Counter(
    "search_core_keyword_probes_total",
    "Full-text probe queries issued, one per extracted term.",
)
RAG_UPSERT_ROWS = Counter(
    "search_core_upsert_rows_total",
    "Embedding rows committed to the vector table.",
)
RAG_UPSERT_FAILURES = Counter(
    "search_core_upsert_failures_total",
    "Batch upserts rolled back because a row failed.",
)

__all__ = [
    "RAG_KEYWORD_PROBES",
    "RAG_SEARCH_FAILURES",
    "RAG_SEARCH_LATENCY_MS",
    "RAG_SEARCH_REQUESTS",
    "RAG_UPSERT_FAILURES",
    "RAG_UPSERT_ROWS",
]
