"""Pull a handful of salient terms out of a free-text query.

Dictionary matches win: the query is scanned against the term library with a
longest-match-at-each-position trie walk. Only when the library contributes
nothing do the heuristics run (quoted or bracketed spans, spans after naming
markers, and title-like spans ending in a genre suffix), filtered through
:func:`is_probable_term`.
"""

from __future__ import annotations

import re
from typing import Iterable, List, Optional

from common.logging import get_logger
from search_core.infra.config import SearchConfig, get_config

from .term_library import (
    CJK_CHAR_RE,
    TermLibrary,
    TrieNode,
    dedupe_and_limit,
    is_latin_term,
    load_term_library,
)

logger = get_logger(__name__)

_BRACKETED_RE = re.compile(r"[《<【]([^》>】]{2,30})[》>】]")
_QUOTED_RE = re.compile(r"[\"“”'‘’]([^\"“”'‘’]{2,20})[\"“”'‘’]")
_MARKER_RES = (
    re.compile(
        r"(?:名字叫|名叫|名为|叫做|书名是|书名|标题|题为)[:：\s]*([\u4e00-\u9fff]{2,20})"
    ),
    re.compile(r"(?:小说|作品|书)([\u4e00-\u9fff]{2,20})"),
)
_TITLE_SUFFIX_RE = re.compile(r"([\u4e00-\u9fff]{2,12}(?:传|记|录|书|篇|志|经|诀|典|集))")

GENERIC_TERMS = frozenset(
    {"小说", "作品", "电影", "动画", "作者", "主角", "故事", "内容", "名字", "标题", "书", "书籍"}
)
_REJECT_PATTERNS = (
    re.compile(r"(是一|是个|是一个|是一部|属于|叫做|名叫|名为)"),
    re.compile(r"(的|了|着|过|吗|吧|啊|呢|呀)"),
    re.compile(r"(很好看|好看|非常|特别|比较|不错|一般|推荐)"),
    re.compile(r"(经过|来到|去到|可以|需要|应该|怎么|如何)"),
    re.compile(r"(因为|所以|但是|如果|然后|因此)"),
)


def scan_trie(text: str, trie: TrieNode | None) -> List[str]:
    """Return the longest dictionary match starting at each position."""

    if trie is None or not text:
        return []
    matches: List[str] = []
    length = len(text)
    for start in range(length):
        node = trie
        longest: Optional[str] = None
        for end in range(start, length):
            node = node.children.get(text[end])
            if node is None:
                break
            if node.end:
                longest = text[start : end + 1]
        if longest:
            matches.append(longest)
    return matches


def match_library(text: str, library: TermLibrary) -> List[str]:
    """Match ``text`` against both tries, falling back to substring search."""

    if not library.terms:
        return []
    matches = scan_trie(text, library.cjk_trie)
    matches.extend(scan_trie(text.lower(), library.latin_trie))
    if matches:
        return matches

    lowered = text.lower()
    fallback: List[str] = []
    for term in library.terms:
        if is_latin_term(term):
            if term.lower() in lowered:
                fallback.append(term.lower())
        elif term in text:
            fallback.append(term)
    return fallback


def is_probable_term(term: str, max_len: int = 20) -> bool:
    """Reject generic nouns, function words and sentence fragments."""

    if not term:
        return False
    if len(term) < 2 or len(term) > max_len:
        return False
    if term in GENERIC_TERMS:
        return False
    if any(pattern.search(term) for pattern in _REJECT_PATTERNS):
        return False
    return bool(CJK_CHAR_RE.search(term))


def heuristic_candidates(text: str) -> List[str]:
    candidates: List[str] = []
    for pattern in (_BRACKETED_RE, _QUOTED_RE):
        candidates.extend(match.strip() for match in pattern.findall(text))
    for pattern in _MARKER_RES:
        candidates.extend(pattern.findall(text))
    candidates.extend(_TITLE_SUFFIX_RE.findall(text))
    return [candidate for candidate in candidates if candidate]


def _filter_probable(candidates: Iterable[str], max_len: int) -> List[str]:
    return [candidate for candidate in candidates if is_probable_term(candidate, max_len)]


def extract_terms(
    text: object,
    max_terms: int | None = None,
    *,
    library: TermLibrary | None = None,
    config: SearchConfig | None = None,
) -> List[str]:
    """Return up to ``max_terms`` distinct terms found in ``text``.

    Terms are ordered longest first and no returned term is a substring of
    another. Non-string or blank input yields an empty list.
    """

    if not isinstance(text, str) or not text.strip():
        return []
    cfg = config or get_config()
    limit = cfg.term_extract_max if max_terms is None else max_terms
    if limit <= 0:
        return []
    lib = library if library is not None else load_term_library(cfg)

    candidates = match_library(text, lib)
    origin = "library"
    if not candidates:
        candidates = _filter_probable(heuristic_candidates(text), cfg.term_max_len_cjk)
        origin = "heuristic"

    terms = dedupe_and_limit(candidates, limit)
    log = logger.info if cfg.hybrid_debug else logger.debug
    log(
        "rag.terms.extracted",
        origin=origin,
        terms=terms,
        library_size=len(lib),
    )
    return terms


__all__ = [
    "GENERIC_TERMS",
    "extract_terms",
    "heuristic_candidates",
    "is_probable_term",
    "match_library",
    "scan_trie",
]
