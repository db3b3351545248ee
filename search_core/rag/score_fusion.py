from __future__ import annotations

import math
from dataclasses import dataclass, replace
from typing import Dict, Iterable, List, Sequence

from common.logging import get_logger
from search_core.infra.config import SearchConfig, clamp_alpha, get_config

from .schemas import SEARCH_TYPE_KEYWORD, SEARCH_TYPE_SEMANTIC, SearchResultItem
from .term_library import is_latin_term

logger = get_logger(__name__)


def distance_to_similarity(distance: object) -> float:
    """Map a cosine distance onto a similarity in ``[0, 1]``.

    Distances of 1 or more map to 0, negative distances to ``1 - |d|`` and
    anything that is not a finite number to 0.
    """

    if distance is None or isinstance(distance, bool):
        return 0.0
    try:
        value = float(distance)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(value) or math.isinf(value):
        return 0.0
    if value >= 1:
        return 0.0
    if value < 0:
        return max(0.0, 1.0 - abs(value))
    return 1.0 - value


def resolve_hybrid_alpha(
    explicit: object = None, *, config: SearchConfig | None = None
) -> float:
    """Resolve the hybrid weight: explicit argument, then config, then 0.5."""

    if explicit is not None:
        return clamp_alpha(explicit)
    cfg = config or get_config()
    return clamp_alpha(cfg.hybrid_alpha)


def item_identity(item: SearchResultItem) -> str:
    record_id = item.metadata.get("id") if item.metadata else None
    if record_id not in (None, ""):
        return str(record_id)
    return item.source_id()


def keyword_identity(item: SearchResultItem, base: str | None = None) -> str:
    base_key = base if base is not None else item_identity(item)
    if item.matched_terms:
        return f"{base_key}::{'|'.join(item.matched_terms)}"
    return base_key


def merge_keyword_hits(
    per_term_hits: Iterable[Sequence[SearchResultItem]], top_n: int
) -> List[SearchResultItem]:
    """Flatten per-term keyword hits, best keyword score first.

    Hits sharing a source and term set collapse to the first one seen; the
    merged list holds at most ``top_n`` entries.
    """

    flattened = [item for hits in per_term_hits for item in hits]
    flattened.sort(key=lambda item: item.keyword_score or 0.0, reverse=True)
    merged: List[SearchResultItem] = []
    seen: set[str] = set()
    for item in flattened:
        if len(merged) >= top_n:
            break
        key = keyword_identity(item)
        if key in seen:
            continue
        seen.add(key)
        merged.append(item)
    return merged


@dataclass
class _FusedEntry:
    item: SearchResultItem
    score: float = 0.0
    keyword: bool = False


def rrf_fuse(
    semantic: Sequence[SearchResultItem],
    keyword_lists: Sequence[Sequence[SearchResultItem]] = (),
    *,
    weight_semantic: float | None = None,
    weight_keyword: float | None = None,
    k: int | None = None,
    config: SearchConfig | None = None,
) -> List[SearchResultItem]:
    """Combine ranked lists with weighted Reciprocal Rank Fusion.

    Each item at 1-based rank ``r`` contributes ``weight / (k + r)``.
    Semantic items are keyed by identity and position, so they never
    collapse into each other; keyword items are keyed by identity and
    matched terms. Items from a list whose weight is zero stay in the output
    with a zero score, after every weighted item; negative weights count as zero.
    """

    cfg = config or get_config()
    w_semantic = max(
        0.0, float(cfg.rrf_weight_semantic if weight_semantic is None else weight_semantic)
    )
    w_keyword = max(
        0.0, float(cfg.rrf_weight_keyword if weight_keyword is None else weight_keyword)
    )
    rrf_k = int(cfg.rrf_k if k is None else k)

    entries: Dict[str, _FusedEntry] = {}

    for index, item in enumerate(semantic):
        key = f"{item_identity(item)}::{index}"
        entry = entries.get(key)
        if entry is None:
            entry = entries[key] = _FusedEntry(item=replace(item))
        entry.score += w_semantic / (rrf_k + index + 1)

    for hits in keyword_lists:
        for index, item in enumerate(hits):
            key = keyword_identity(item)
            entry = entries.get(key)
            if entry is None:
                entry = entries[key] = _FusedEntry(item=replace(item), keyword=True)
            else:
                current = entry.item
                entry.item = replace(
                    current,
                    text=item.text or current.text,
                    metadata={**current.metadata, **item.metadata},
                    keyword_score=(
                        item.keyword_score
                        if item.keyword_score is not None
                        else current.keyword_score
                    ),
                    matched_terms=item.matched_terms or current.matched_terms,
                )
                entry.keyword = True
            entry.score += w_keyword / (rrf_k + index + 1)

    ordered = sorted(entries.values(), key=lambda entry: entry.score, reverse=True)
    fused: List[SearchResultItem] = []
    for entry in ordered:
        fused.append(
            replace(
                entry.item,
                search_type=SEARCH_TYPE_KEYWORD if entry.keyword else SEARCH_TYPE_SEMANTIC,
                rrf_score=entry.score,
            )
        )

    logger.debug(
        "rag.hybrid.fusion_summary",
        semantic_candidates=len(semantic),
        keyword_candidates=sum(len(hits) for hits in keyword_lists),
        fused_candidates=len(fused),
        weight_semantic=w_semantic,
        weight_keyword=w_keyword,
        rrf_k=rrf_k,
    )
    return fused


def annotate_matched_terms(
    items: Iterable[SearchResultItem], terms: Sequence[str]
) -> List[SearchResultItem]:
    """Record which query terms literally occur in each item's text.

    Latin terms match case-insensitively, CJK terms exactly.
    """

    query_terms = [term for term in terms if term]
    annotated: List[SearchResultItem] = []
    for item in items:
        text = item.text or ""
        lowered = text.lower()
        matched = [
            term
            for term in query_terms
            if (term.lower() in lowered if is_latin_term(term) else term in text)
        ]
        annotated.append(replace(item, matched_terms=matched, query_terms=list(query_terms)))
    return annotated


__all__ = [
    "annotate_matched_terms",
    "distance_to_similarity",
    "item_identity",
    "keyword_identity",
    "merge_keyword_hits",
    "resolve_hybrid_alpha",
    "rrf_fuse",
]
