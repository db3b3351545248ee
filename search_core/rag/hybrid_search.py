"""Orchestrated similarity search: embed, retrieve, probe terms and fuse.

Semantic retrieval always runs. With ``hybrid`` enabled the query is also
broken into a few salient terms, each term is probed with a full-text
search, and the per-term hits are fused with the semantic ranking through
weighted Reciprocal Rank Fusion (``strategy="rrf"``). ``strategy="blend"``
instead asks the database for a single blended lexical/vector ranking.
"""

from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor
from contextvars import copy_context
from dataclasses import replace
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Mapping, Sequence, Tuple

from common.logging import get_logger, log_context

from . import metrics
from .connection import VectorStoreConfigurationError
from .embeddings import Embedder, embed_text
from .schemas import SearchResponse, SearchResultItem
from .score_fusion import (
    annotate_matched_terms,
    merge_keyword_hits,
    resolve_hybrid_alpha,
    rrf_fuse,
)
from .term_extractor import extract_terms
from .term_library import TermLibrary

if TYPE_CHECKING:
    from .vector_client import PgVectorStore

logger = get_logger(__name__)

STRATEGY_RRF = "rrf"
STRATEGY_BLEND = "blend"
STRATEGIES = frozenset({STRATEGY_RRF, STRATEGY_BLEND})

_STRIPPED_SOURCE_KEYS = ("vector", "_distance")


def curate_sources(sources: Iterable[Mapping[str, Any]]) -> List[Dict[str, Any]]:
    """Flatten source documents for callers.

    Raw vectors and distances are dropped, a nested ``metadata`` mapping is
    lifted to the top level, and entries left empty are skipped.
    """

    documents: List[Dict[str, Any]] = []
    for source in sources:
        rest = {
            key: value
            for key, value in source.items()
            if key not in _STRIPPED_SOURCE_KEYS and key != "text"
        }
        text = source.get("text")
        nested = rest.get("metadata")
        payload = dict(nested) if isinstance(nested, Mapping) else rest
        if not payload:
            continue
        document = {
            key: value
            for key, value in payload.items()
            if key not in _STRIPPED_SOURCE_KEYS
        }
        if text:
            document["text"] = text
        documents.append(document)
    return documents


def _gather_candidates(
    store: "PgVectorStore",
    conn: object,
    namespace: str,
    query_vector: Sequence[float],
    terms: Sequence[str],
    *,
    top_n: int,
    threshold: float,
    exclusions: Sequence[str],
) -> Tuple[List[SearchResultItem], List[List[SearchResultItem]]]:
    """Run the semantic query and one keyword probe per term.

    With more than one worker the queries run concurrently, each on its own
    connection; otherwise they run in order on ``conn``.
    """

    per_term_limit = store.config.keyword_per_term_limit
    workers = min(store.config.search_workers, 1 + len(terms))

    def _probe(term: str, connection: object | None = None) -> List[SearchResultItem]:
        metrics.RAG_KEYWORD_PROBES.inc()
        hits = store.keyword_search(
            namespace, term, per_term_limit, threshold, exclusions, conn=connection
        )
        return [replace(hit, matched_terms=[term]) for hit in hits]

    if workers <= 1:
        semantic = store.semantic_search(
            namespace, query_vector, top_n, threshold, exclusions, conn=conn
        )
        return semantic, [_probe(term, conn) for term in terms]

    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="search-core") as executor:
        semantic_future = executor.submit(
            copy_context().run,
            store.semantic_search,
            namespace,
            query_vector,
            top_n,
            threshold,
            exclusions,
        )
        term_futures = [
            executor.submit(copy_context().run, _probe, term) for term in terms
        ]
        semantic = semantic_future.result()
        per_term = [future.result() for future in term_futures]
    return semantic, per_term


def _search(
    store: "PgVectorStore",
    namespace: str,
    query_text: str,
    embedder: Embedder,
    *,
    threshold: float,
    top_n: int,
    exclusions: Sequence[str],
    hybrid: bool,
    alpha: object,
    strategy: str,
    library: TermLibrary | None,
) -> SearchResponse:
    cfg = store.config
    with store.connection() as conn:
        if not store.namespace_exists(namespace, conn=conn):
            logger.info("rag.search.namespace_missing", namespace=namespace)
            return SearchResponse()

        query_vector = embed_text(embedder, query_text)
        resolved_alpha = resolve_hybrid_alpha(alpha, config=cfg)
        terms: List[str] = []

        if not hybrid:
            results = store.semantic_search(
                namespace, query_vector, top_n, threshold, exclusions, conn=conn
            )
        elif strategy == STRATEGY_BLEND:
            results = store.hybrid_semantic_search(
                namespace,
                query_vector,
                query_text,
                top_n,
                resolved_alpha,
                threshold,
                exclusions,
                conn=conn,
            )
            terms = extract_terms(query_text, config=cfg, library=library)
        else:
            terms = extract_terms(query_text, config=cfg, library=library)
            semantic, per_term = _gather_candidates(
                store,
                conn,
                namespace,
                query_vector,
                terms,
                top_n=top_n,
                threshold=threshold,
                exclusions=exclusions,
            )
            keyword_hits = merge_keyword_hits(per_term, top_n)
            results = rrf_fuse(
                semantic,
                [keyword_hits],
                weight_semantic=resolved_alpha,
                weight_keyword=1.0 - resolved_alpha,
                config=cfg,
            )
            logger.info(
                "rag.hybrid.fused",
                namespace=namespace,
                terms=terms,
                semantic=len(semantic),
                keyword=len(keyword_hits),
                fused=len(results),
                alpha=resolved_alpha,
            )

    if terms:
        results = annotate_matched_terms(results, terms)
    sources = curate_sources(item.to_source() for item in results)
    return SearchResponse(
        context_texts=[item.text for item in results],
        sources=sources,
        message=None,
    )


def perform_similarity_search(
    store: "PgVectorStore",
    namespace: str,
    query_text: str,
    embedder: Embedder | None,
    *,
    threshold: float = 0.25,
    top_n: int = 4,
    exclusions: Sequence[str] = (),
    hybrid: bool = False,
    alpha: object = None,
    strategy: str = STRATEGY_RRF,
    library: TermLibrary | None = None,
) -> SearchResponse:
    """Answer ``query_text`` from ``namespace``.

    Missing arguments raise :class:`VectorStoreConfigurationError`. A
    namespace without rows yields an empty response with ``message=None``.
    Any other failure is logged and returned as an empty response whose
    ``message`` carries the error text.
    """

    if not namespace or not query_text or embedder is None:
        raise VectorStoreConfigurationError("Invalid request to perform_similarity_search.")
    if strategy not in STRATEGIES:
        raise VectorStoreConfigurationError(f"Unknown hybrid strategy: {strategy}")

    mode = f"hybrid_{strategy}" if hybrid else "semantic"
    metrics.RAG_SEARCH_REQUESTS.labels(mode=mode).inc()
    started = time.perf_counter()
    with log_context(namespace=namespace):
        try:
            response = _search(
                store,
                namespace,
                query_text,
                embedder,
                threshold=threshold,
                top_n=top_n,
                exclusions=tuple(exclusions or ()),
                hybrid=hybrid,
                alpha=alpha,
                strategy=strategy,
                library=library,
            )
        except VectorStoreConfigurationError:
            raise
        except Exception as exc:
            metrics.RAG_SEARCH_FAILURES.inc()
            logger.error(
                "rag.search.failed",
                mode=mode,
                exc_type=exc.__class__.__name__,
                error=str(exc),
                exc_info=True,
            )
            return SearchResponse(message=str(exc) or "Similarity search failed.")
        finally:
            duration_ms = (time.perf_counter() - started) * 1000
            metrics.RAG_SEARCH_LATENCY_MS.observe(duration_ms)

    logger.info(
        "rag.search.completed",
        namespace=namespace,
        mode=mode,
        results=len(response.sources),
        duration_ms=round(duration_ms, 2),
    )
    return response


__all__ = [
    "STRATEGIES",
    "STRATEGY_BLEND",
    "STRATEGY_RRF",
    "curate_sources",
    "perform_similarity_search",
]
