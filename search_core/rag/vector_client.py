"""pgvector-backed store for namespaced embedding rows."""

from __future__ import annotations

import json
import time
from contextlib import contextmanager
from typing import Dict, Iterable, Iterator, List, Mapping, Sequence

from psycopg2 import errors as pg_errors
from psycopg2 import sql
from psycopg2.extras import Json

from common.logging import get_logger
from search_core.infra.config import SearchConfig, get_config

from . import metrics
from .connection import (
    ConnectFactory,
    ConnectionStatus,
    VectorStoreConfigurationError,
    open_connection,
    scoped_connection,
    validate_connection,
)
from .embeddings import Embedder, EmbeddingClientError, coerce_vector, embed_text
from .sanitize import sanitize_for_jsonb
from .schemas import (
    SEARCH_TYPE_KEYWORD,
    SEARCH_TYPE_SEMANTIC,
    EmbeddingRow,
    SearchResponse,
    SearchResultItem,
    format_vector,
)
from .score_fusion import distance_to_similarity, resolve_hybrid_alpha
from .vector_schema import ensure_embedding_table, table_exists

logger = get_logger(__name__)


class VectorDimensionError(ValueError):
    """Raised when a row's vector length differs from the table dimension."""


_SEMANTIC_SQL = sql.SQL(
    "SELECT id, embedding <=> %s::vector AS _distance, metadata "
    "FROM {table} WHERE namespace = %s "
    "ORDER BY _distance ASC LIMIT %s"
)

_HYBRID_SQL = sql.SQL(
    "WITH ranked AS ("
    "SELECT id, metadata, embedding <=> %s::vector AS _distance, "
    "ts_rank_cd("
    "to_tsvector('simple', COALESCE(metadata->>'text', '')), "
    "plainto_tsquery('simple', COALESCE(%s, ''))"
    ") AS _keyword_score "
    "FROM {table} WHERE namespace = %s"
    ") "
    "SELECT id, metadata, _distance, _keyword_score, "
    "((1.0 - %s::float) * _keyword_score "
    "+ %s::float * GREATEST(0, 1 - _distance)) AS _hybrid_score "
    "FROM ranked ORDER BY _hybrid_score DESC LIMIT %s"
)

_KEYWORD_SQL = sql.SQL(
    "WITH ranked AS ("
    "SELECT id, metadata, ts_rank_cd("
    "to_tsvector('simple', COALESCE(metadata->>'text', '')), "
    "plainto_tsquery('simple', COALESCE(%s, ''))"
    ") AS _keyword_score "
    "FROM {table} WHERE namespace = %s"
    ") "
    "SELECT id, metadata, _keyword_score FROM ranked "
    "WHERE _keyword_score > 0 "
    "ORDER BY _keyword_score DESC LIMIT %s"
)

_INSERT_SQL = sql.SQL(
    "INSERT INTO {table} (id, namespace, embedding, metadata) "
    "VALUES (%s, %s, %s::vector, %s)"
)
_DELETE_ID_SQL = sql.SQL("DELETE FROM {table} WHERE id = %s")
_DELETE_NAMESPACE_SQL = sql.SQL("DELETE FROM {table} WHERE namespace = %s")
_NAMESPACE_EXISTS_SQL = sql.SQL("SELECT 1 FROM {table} WHERE namespace = %s LIMIT 1")
_NAMESPACE_COUNT_SQL = sql.SQL("SELECT COUNT(id) FROM {table} WHERE namespace = %s")
_TOTAL_COUNT_SQL = sql.SQL("SELECT COUNT(id) FROM {table}")
_DOCUMENT_IDS_SQL = sql.SQL(
    "SELECT id FROM {table} WHERE namespace = %s AND metadata->>%s = %s"
)
_DROP_TABLE_SQL = sql.SQL("DROP TABLE IF EXISTS {table}")


def _coerce_metadata(value: object) -> Dict[str, object]:
    if value is None:
        return {}
    if isinstance(value, Mapping):
        return dict(value)
    if isinstance(value, (str, bytes, bytearray)):
        try:
            parsed = json.loads(value)
        except ValueError:
            return {}
        return dict(parsed) if isinstance(parsed, Mapping) else {}
    return {}


def _coerce_row(row: EmbeddingRow | Mapping[str, object]) -> EmbeddingRow:
    if isinstance(row, EmbeddingRow):
        return row
    return EmbeddingRow.model_validate(dict(row))


def _row_text(metadata: Mapping[str, object]) -> str:
    text = metadata.get("text")
    return "" if text is None else str(text)


def _is_excluded(item: SearchResultItem, exclusions: Sequence[str]) -> bool:
    return bool(exclusions) and item.source_id() in exclusions


class PgVectorStore:
    """Namespaced embedding storage and retrieval on PostgreSQL + pgvector.

    Every public operation acquires its own scoped connection unless a
    connection is passed in via ``conn``; connections are closed on every
    exit path. Write failures in :meth:`upsert_batch` are reported as
    ``False`` with the cause kept on :attr:`last_upsert_error`.
    """

    def __init__(
        self,
        config: SearchConfig | None = None,
        *,
        connection_string: str | None = None,
        table_name: str | None = None,
        connect: ConnectFactory = open_connection,
    ) -> None:
        self._config = config or get_config()
        self._connection_string = connection_string or self._config.connection_string
        self._table_name = table_name or self._config.table_name
        self._connect = connect
        self.last_upsert_error: BaseException | None = None

    @classmethod
    def from_env(cls) -> "PgVectorStore":
        return cls(get_config())

    @property
    def config(self) -> SearchConfig:
        return self._config

    @property
    def table_name(self) -> str:
        return self._table_name

    def _statement(self, template: sql.SQL) -> sql.Composed:
        return template.format(table=sql.Identifier(self._table_name))

    def _debug(self, event: str, **fields: object) -> None:
        if self._config.hybrid_debug:
            logger.info(event, **fields)
        else:
            logger.debug(event, **fields)

    @contextmanager
    def connection(self) -> Iterator[object]:
        """Yield a fresh connection that is closed when the block exits."""

        if not self._table_name:
            raise VectorStoreConfigurationError("No table name provided")
        with scoped_connection(self._connection_string, connect=self._connect) as conn:
            yield conn

    @contextmanager
    def _using(self, conn: object | None) -> Iterator[object]:
        if conn is not None:
            yield conn
            return
        with self.connection() as fresh:
            yield fresh

    # -- connectivity -----------------------------------------------------

    def validate_connection(self) -> ConnectionStatus:
        return validate_connection(
            self._connection_string,
            self._table_name,
            timeout_ms=self._config.connection_timeout_ms,
            connect=self._connect,
        )

    def heartbeat(self) -> Dict[str, int]:
        with self.connection() as conn:
            with conn.cursor() as cur:  # type: ignore[attr-defined]
                cur.execute("SELECT 1")
                cur.fetchone()
        return {"heartbeat": int(time.time() * 1000)}

    def table_exists(self, *, conn: object | None = None) -> bool:
        with self._using(conn) as active:
            with active.cursor() as cur:  # type: ignore[attr-defined]
                return table_exists(cur, self._table_name)

    def total_vectors(self) -> int:
        with self.connection() as conn:
            if not self.table_exists(conn=conn):
                return 0
            with conn.cursor() as cur:  # type: ignore[attr-defined]
                cur.execute(self._statement(_TOTAL_COUNT_SQL))
                row = cur.fetchone()
        return int(row[0]) if row else 0

    # -- namespaces -------------------------------------------------------

    def namespace_exists(self, namespace: str, *, conn: object | None = None) -> bool:
        """Return whether ``namespace`` holds at least one row.

        A missing embedding table means no namespace exists yet.
        """

        if not namespace:
            raise VectorStoreConfigurationError("No namespace provided")
        with self._using(conn) as active:
            try:
                with active.cursor() as cur:  # type: ignore[attr-defined]
                    cur.execute(self._statement(_NAMESPACE_EXISTS_SQL), (namespace,))
                    return cur.fetchone() is not None
            except pg_errors.UndefinedTable:
                active.rollback()  # type: ignore[attr-defined]
                return False

    def namespace_count(self, namespace: str, *, conn: object | None = None) -> int:
        if not namespace:
            raise VectorStoreConfigurationError("No namespace provided")
        with self._using(conn) as active:
            try:
                with active.cursor() as cur:  # type: ignore[attr-defined]
                    cur.execute(self._statement(_NAMESPACE_COUNT_SQL), (namespace,))
                    row = cur.fetchone()
            except pg_errors.UndefinedTable:
                active.rollback()  # type: ignore[attr-defined]
                return 0
        return int(row[0]) if row else 0

    def namespace_stats(self, namespace: str) -> Dict[str, object]:
        if not namespace:
            raise VectorStoreConfigurationError("namespace required")
        try:
            with self.connection() as conn:
                if not self.table_exists(conn=conn):
                    return {"message": "No table found in database"}
                if not self.namespace_exists(namespace, conn=conn):
                    return {
                        "message": (
                            f"Error fetching stats for namespace {namespace}: "
                            "Namespace by that name does not exist."
                        )
                    }
                count = self.namespace_count(namespace, conn=conn)
        except VectorStoreConfigurationError:
            raise
        except Exception as exc:
            logger.warning(
                "rag.vector.namespace_stats_failed",
                namespace=namespace,
                exc_type=exc.__class__.__name__,
                error=str(exc),
            )
            return {"message": f"Error fetching stats for namespace {namespace}: {exc}"}
        return {"name": namespace, "vector_count": count}

    def delete_namespace(self, namespace: str) -> Dict[str, str]:
        if not namespace:
            raise VectorStoreConfigurationError("No namespace provided")
        try:
            with self.connection() as conn:
                count = self.namespace_count(namespace, conn=conn)
                if count == 0:
                    return {"message": f"Namespace {namespace} does not exist or has no vectors."}
                try:
                    with conn.cursor() as cur:  # type: ignore[attr-defined]
                        cur.execute(self._statement(_DELETE_NAMESPACE_SQL), (namespace,))
                    conn.commit()  # type: ignore[attr-defined]
                except Exception:
                    conn.rollback()  # type: ignore[attr-defined]
                    raise
        except VectorStoreConfigurationError:
            raise
        except Exception as exc:
            logger.warning(
                "rag.vector.delete_namespace_failed",
                namespace=namespace,
                exc_type=exc.__class__.__name__,
                error=str(exc),
            )
            return {"message": f"Error deleting namespace {namespace}: {exc}"}
        logger.info("rag.vector.namespace_deleted", namespace=namespace, rows=count)
        return {"message": f"Namespace {namespace} was deleted along with {count} vectors."}

    def reset(self) -> Dict[str, bool]:
        """Drop the embedding table."""

        try:
            with self.connection() as conn:
                try:
                    with conn.cursor() as cur:  # type: ignore[attr-defined]
                        cur.execute(self._statement(_DROP_TABLE_SQL))
                    conn.commit()  # type: ignore[attr-defined]
                except Exception:
                    conn.rollback()  # type: ignore[attr-defined]
                    raise
        except VectorStoreConfigurationError:
            raise
        except Exception as exc:
            logger.warning(
                "rag.vector.reset_failed",
                table=self._table_name,
                exc_type=exc.__class__.__name__,
                error=str(exc),
            )
            return {"reset": False}
        logger.info("rag.vector.reset", table=self._table_name)
        return {"reset": True}

    # -- writes -----------------------------------------------------------

    def upsert_batch(
        self,
        namespace: str,
        rows: Iterable[EmbeddingRow | Mapping[str, object]],
        dimensions: int,
    ) -> bool:
        """Insert ``rows`` into ``namespace`` in one transaction.

        Rows are written in input order. Any failing row rolls back the
        whole batch; the method then logs the cause, stores it on
        :attr:`last_upsert_error` and returns ``False``.
        """

        if not namespace:
            raise VectorStoreConfigurationError("No namespace provided")
        row_list = list(rows)
        self.last_upsert_error = None
        try:
            with self.connection() as conn:
                try:
                    with conn.cursor() as cur:  # type: ignore[attr-defined]
                        ensure_embedding_table(cur, self._table_name, dimensions)
                    conn.commit()  # type: ignore[attr-defined]
                    with conn.cursor() as cur:  # type: ignore[attr-defined]
                        for position, raw in enumerate(row_list):
                            row = _coerce_row(raw)
                            if len(row.vector) != int(dimensions):
                                raise VectorDimensionError(
                                    f"Row {position} ({row.id}) has {len(row.vector)} "
                                    f"dimensions, expected {int(dimensions)}"
                                )
                            cur.execute(
                                self._statement(_INSERT_SQL),
                                (
                                    str(row.id),
                                    namespace,
                                    row.literal(),
                                    Json(sanitize_for_jsonb(row.metadata)),
                                ),
                            )
                    conn.commit()  # type: ignore[attr-defined]
                except Exception:
                    conn.rollback()  # type: ignore[attr-defined]
                    raise
        except VectorStoreConfigurationError:
            raise
        except Exception as exc:
            self.last_upsert_error = exc
            metrics.RAG_UPSERT_FAILURES.inc()
            logger.error(
                "rag.vector.upsert_failed",
                namespace=namespace,
                rows=len(row_list),
                dimensions=dimensions,
                exc_type=exc.__class__.__name__,
                error=str(exc),
                exc_info=True,
            )
            return False

        metrics.RAG_UPSERT_ROWS.inc(len(row_list))
        logger.info(
            "rag.vector.upsert_committed",
            namespace=namespace,
            rows=len(row_list),
            dimensions=dimensions,
        )
        return True

    def _delete_ids(self, conn: object, ids: Sequence[str]) -> int:
        deleted = 0
        try:
            with conn.cursor() as cur:  # type: ignore[attr-defined]
                for vector_id in ids:
                    cur.execute(self._statement(_DELETE_ID_SQL), (str(vector_id),))
                    deleted += max(0, int(getattr(cur, "rowcount", 0) or 0))
            conn.commit()  # type: ignore[attr-defined]
        except Exception:
            conn.rollback()  # type: ignore[attr-defined]
            raise
        return deleted

    def delete_by_ids(self, ids: Iterable[str]) -> int:
        """Delete rows by primary key in one transaction; failures propagate."""

        id_list = [str(value) for value in ids]
        if not id_list:
            return 0
        with self.connection() as conn:
            deleted = self._delete_ids(conn, id_list)
        logger.info("rag.vector.deleted_ids", requested=len(id_list), deleted=deleted)
        return deleted

    def delete_document(
        self,
        namespace: str,
        doc_id: str,
        vector_ids: Sequence[str] | None = None,
    ) -> bool:
        """Delete every row belonging to ``doc_id`` within ``namespace``.

        ``vector_ids`` lets callers that track row ids pass them directly;
        otherwise rows are located by the configured document id field in
        their metadata. Returns ``False`` when nothing was deleted or the
        deletion failed.
        """

        if not namespace:
            raise VectorStoreConfigurationError("No namespace provided")
        if not doc_id:
            raise VectorStoreConfigurationError("No doc_id provided")
        try:
            with self.connection() as conn:
                if not self.namespace_exists(namespace, conn=conn):
                    logger.warning(
                        "rag.vector.delete_document_namespace_missing",
                        namespace=namespace,
                        doc_id=doc_id,
                    )
                    return False
                if vector_ids is None:
                    with conn.cursor() as cur:  # type: ignore[attr-defined]
                        cur.execute(
                            self._statement(_DOCUMENT_IDS_SQL),
                            (namespace, self._config.document_id_field, str(doc_id)),
                        )
                        ids = [str(row[0]) for row in cur.fetchall() or []]
                else:
                    ids = [str(value) for value in vector_ids]
                if not ids:
                    return False
                deleted = self._delete_ids(conn, ids)
        except VectorStoreConfigurationError:
            raise
        except Exception as exc:
            logger.warning(
                "rag.vector.delete_document_failed",
                namespace=namespace,
                doc_id=doc_id,
                exc_type=exc.__class__.__name__,
                error=str(exc),
            )
            return False
        logger.info(
            "rag.vector.document_deleted",
            namespace=namespace,
            doc_id=doc_id,
            rows=deleted,
        )
        return True

    def add_document(
        self,
        namespace: str,
        doc_id: str,
        chunks: Sequence[str],
        embedder: Embedder,
        metadata: Mapping[str, object] | None = None,
    ) -> Dict[str, object]:
        """Embed pre-split ``chunks`` and store them as one batch.

        Each row carries the caller metadata plus the chunk ``text`` and the
        document id under the configured field.
        """

        if not namespace:
            raise VectorStoreConfigurationError("No namespace provided")
        texts = [chunk for chunk in chunks if isinstance(chunk, str) and chunk.strip()]
        if not texts:
            return {"vectorized": False, "error": "No content to embed", "vector_ids": []}

        base_metadata = {key: value for key, value in (metadata or {}).items() if key != "id"}
        base_metadata[self._config.document_id_field] = doc_id
        try:
            rows = [
                EmbeddingRow(vector=embed_text(embedder, text), metadata={**base_metadata, "text": text})
                for text in texts
            ]
        except EmbeddingClientError as exc:
            logger.warning(
                "rag.vector.add_document_embedding_failed",
                namespace=namespace,
                doc_id=doc_id,
                error=str(exc),
            )
            return {"vectorized": False, "error": str(exc), "vector_ids": []}

        if not self.upsert_batch(namespace, rows, len(rows[0].vector)):
            error = self.last_upsert_error
            return {
                "vectorized": False,
                "error": str(error) if error is not None else "Upsert failed",
                "vector_ids": [],
            }
        return {
            "vectorized": True,
            "error": None,
            "vector_ids": [str(row.id) for row in rows],
        }

    # -- reads ------------------------------------------------------------

    def semantic_search(
        self,
        namespace: str,
        query_vector: Sequence[float],
        top_n: int = 4,
        threshold: float = 0.25,
        exclusions: Sequence[str] = (),
        *,
        conn: object | None = None,
    ) -> List[SearchResultItem]:
        """Nearest rows by cosine distance, filtered after scoring."""

        literal = format_vector(coerce_vector(query_vector))
        with self._using(conn) as active:
            with active.cursor() as cur:  # type: ignore[attr-defined]
                cur.execute(
                    self._statement(_SEMANTIC_SQL), (literal, namespace, int(top_n))
                )
                rows = cur.fetchall() or []

        results: List[SearchResultItem] = []
        for row_id, distance, raw_metadata in rows:
            similarity = distance_to_similarity(distance)
            if similarity < threshold:
                continue
            metadata = _coerce_metadata(raw_metadata)
            item = SearchResultItem(
                text=_row_text(metadata),
                metadata=metadata,
                score=similarity,
                search_type=SEARCH_TYPE_SEMANTIC,
                row_id=str(row_id) if row_id is not None else None,
            )
            if _is_excluded(item, exclusions):
                logger.info("rag.search.source_pinned", source=item.source_id())
                continue
            results.append(item)
        return results

    def hybrid_semantic_search(
        self,
        namespace: str,
        query_vector: Sequence[float],
        query_text: str,
        top_n: int = 4,
        alpha: object = None,
        threshold: float = 0.25,
        exclusions: Sequence[str] = (),
        *,
        conn: object | None = None,
    ) -> List[SearchResultItem]:
        """Rank rows by a blend of lexical rank and vector similarity.

        A row passes the threshold when either its vector similarity or its
        lexical rank reaches it; the blended score only orders the rows.
        """

        resolved_alpha = resolve_hybrid_alpha(alpha, config=self._config)
        literal = format_vector(coerce_vector(query_vector))
        self._debug(
            "rag.hybrid.params",
            namespace=namespace,
            top_n=top_n,
            threshold=threshold,
            alpha=resolved_alpha,
            query_preview=(query_text or "")[:120],
        )
        with self._using(conn) as active:
            with active.cursor() as cur:  # type: ignore[attr-defined]
                cur.execute(
                    self._statement(_HYBRID_SQL),
                    (
                        literal,
                        query_text or "",
                        namespace,
                        resolved_alpha,
                        resolved_alpha,
                        int(top_n),
                    ),
                )
                rows = cur.fetchall() or []

        results: List[SearchResultItem] = []
        for index, (row_id, raw_metadata, distance, keyword_raw, hybrid_raw) in enumerate(rows):
            vector_score = distance_to_similarity(distance)
            keyword_score = float(keyword_raw or 0.0)
            hybrid_score = float(hybrid_raw or 0.0)
            passes = max(vector_score, keyword_score) >= threshold
            metadata = _coerce_metadata(raw_metadata)
            item = SearchResultItem(
                text=_row_text(metadata),
                metadata=metadata,
                score=hybrid_score,
                search_type=SEARCH_TYPE_SEMANTIC,
                vector_score=vector_score,
                keyword_score=keyword_score,
                hybrid_alpha=resolved_alpha,
                row_id=str(row_id) if row_id is not None else None,
            )
            self._debug(
                "rag.hybrid.score",
                index=index,
                distance=distance,
                vector_score=vector_score,
                keyword_score=keyword_score,
                hybrid_score=hybrid_score,
                alpha=resolved_alpha,
                passes=passes,
                source=item.source_id(),
            )
            if not passes:
                continue
            if _is_excluded(item, exclusions):
                logger.info("rag.search.source_pinned", source=item.source_id())
                continue
            results.append(item)
        return results

    def keyword_search(
        self,
        namespace: str,
        term: str,
        top_n: int = 4,
        threshold: float = 0.0,
        exclusions: Sequence[str] = (),
        *,
        conn: object | None = None,
    ) -> List[SearchResultItem]:
        """Full-text probe of ``metadata.text`` for a single term."""

        if not term:
            return []
        self._debug("rag.keyword.query", namespace=namespace, term=term, top_n=top_n)
        with self._using(conn) as active:
            with active.cursor() as cur:  # type: ignore[attr-defined]
                cur.execute(self._statement(_KEYWORD_SQL), (term, namespace, int(top_n)))
                rows = cur.fetchall() or []

        results: List[SearchResultItem] = []
        for row_id, raw_metadata, keyword_raw in rows:
            keyword_score = float(keyword_raw or 0.0)
            if keyword_score <= 0 or keyword_score < threshold:
                continue
            metadata = _coerce_metadata(raw_metadata)
            item = SearchResultItem(
                text=_row_text(metadata),
                metadata=metadata,
                score=keyword_score,
                search_type=SEARCH_TYPE_KEYWORD,
                keyword_score=keyword_score,
                row_id=str(row_id) if row_id is not None else None,
            )
            if _is_excluded(item, exclusions):
                logger.info("rag.search.source_pinned", source=item.source_id())
                continue
            results.append(item)
        self._debug(
            "rag.keyword.results",
            term=term,
            count=len(results),
            top_scores=[item.keyword_score for item in results[:3]],
        )
        return results

    def search(
        self,
        namespace: str,
        query_text: str,
        embedder: Embedder,
        threshold: float = 0.25,
        top_n: int = 4,
        exclusions: Sequence[str] = (),
        hybrid: bool = False,
        alpha: object = None,
        *,
        strategy: str = "rrf",
    ) -> SearchResponse:
        from .hybrid_search import perform_similarity_search

        return perform_similarity_search(
            self,
            namespace,
            query_text,
            embedder,
            threshold=threshold,
            top_n=top_n,
            exclusions=exclusions,
            hybrid=hybrid,
            alpha=alpha,
            strategy=strategy,
        )


__all__ = ["PgVectorStore", "VectorDimensionError"]
