"""Round trips against a live PostgreSQL with pgvector.

Skipped unless ``SEARCH_CORE_TEST_DATABASE_URL`` points at a reachable server.
"""

import pytest

from search_core.rag.hybrid_search import perform_similarity_search
from search_core.rag.schemas import EmbeddingRow
from search_core.rag.term_library import TermLibrary

from .doubles import constant_embedder

pytestmark = pytest.mark.pg


def _seed(store):
    rows = [
        EmbeddingRow(vector=[0, 0, 1], metadata={"id": "id1", "text": "红楼梦简介"}),
        EmbeddingRow(vector=[1, 0, 0], metadata={"id": "id2", "text": "三国演义是名著"}),
    ]
    assert store.upsert_batch("docs", rows, 3), store.last_upsert_error
    return rows


def test_validate_connection_and_schema(pg_store):
    _seed(pg_store)

    status = pg_store.validate_connection()

    assert status.success, status.error


def test_semantic_round_trip(pg_store):
    _seed(pg_store)

    response = perform_similarity_search(
        pg_store, "docs", "红楼梦", constant_embedder([0, 0, 0.9]), top_n=1
    )

    assert response.message is None
    assert response.context_texts == ["红楼梦简介"]
    assert response.sources[0]["score"] == pytest.approx(1.0, abs=1e-6)


def test_batch_with_wrong_dimension_stores_nothing(pg_store):
    _seed(pg_store)
    bad = [
        EmbeddingRow(vector=[0, 1, 0], metadata={"text": "ok"}),
        EmbeddingRow(vector=[0, 1, 0, 0], metadata={"text": "too long"}),
    ]

    assert pg_store.upsert_batch("docs", bad, 4) is False
    assert pg_store.namespace_count("docs") == 2


def test_namespace_lifecycle(pg_store):
    rows = _seed(pg_store)

    assert pg_store.namespace_stats("docs") == {"name": "docs", "vector_count": 2}
    assert pg_store.delete_by_ids([str(rows[0].id)]) == 1
    assert pg_store.delete_namespace("docs") == {
        "message": "Namespace docs was deleted along with 1 vectors."
    }
    assert pg_store.namespace_exists("docs") is False
    assert pg_store.reset() == {"reset": True}
    assert pg_store.table_exists() is False


def test_hybrid_rrf_with_keyword_probe(pg_store):
    rows = [
        EmbeddingRow(vector=[0, 0, 1], metadata={"id": "a", "text": "萧炎 的 故事"}),
        EmbeddingRow(vector=[1, 0, 0], metadata={"id": "b", "text": "萧炎 萧炎 药老"}),
    ]
    assert pg_store.upsert_batch("docs", rows, 3)

    response = perform_similarity_search(
        pg_store,
        "docs",
        "萧炎是谁",
        constant_embedder([0, 0, 1]),
        threshold=0.01,
        hybrid=True,
        alpha=0.7,
        library=TermLibrary.from_terms(["萧炎"]),
    )

    assert response.message is None
    types = [source["search_type"] for source in response.sources]
    assert types[0] == "semantic"
    assert "keyword" in types
