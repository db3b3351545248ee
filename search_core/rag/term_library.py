"""Dictionary of known query terms, parsed from inline config or a file.

The library is process-wide state. It is loaded lazily on first use and
rebuilt only when its backing file's modification time (or the inline value)
changes. A rebuild produces a new immutable :class:`TermLibrary` that replaces
the cached reference in one assignment, so concurrent readers never observe a
partially built library.
"""

from __future__ import annotations

import json
import re
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from common.logging import get_logger
from search_core.infra.config import SearchConfig, get_config

logger = get_logger(__name__)

CJK_CHAR_RE = re.compile(r"[\u4e00-\u9fff]")
CJK_RUN_RE = re.compile(r"[\u4e00-\u9fff]{2,}")
LATIN_CHAR_RE = re.compile(r"[A-Za-z]")
_FIELD_SPLIT_RE = re.compile(r"[/、，,;；|]")
_PLAIN_SPLIT_RE = re.compile(r"[,;|]")
_WHITESPACE_RE = re.compile(r"\s+")


@dataclass(frozen=True)
class TermParseOptions:
    max_len_cjk: int = 20
    max_len_latin: int = 60
    include_latin: bool = False

    @classmethod
    def from_config(cls, config: SearchConfig) -> "TermParseOptions":
        return cls(
            max_len_cjk=config.term_max_len_cjk,
            max_len_latin=config.term_max_len_latin,
            include_latin=config.term_include_latin,
        )


def is_latin_term(term: str) -> bool:
    return bool(LATIN_CHAR_RE.search(term))


def clean_term(value: object, max_len: int | None = None) -> Optional[str]:
    if value is None:
        return None
    term = str(value).replace("**", "").strip()
    if len(term) < 2:
        return None
    term = _WHITESPACE_RE.sub(" ", term)
    if max_len and len(term) > max_len:
        return None
    return term


def extract_cjk_terms(value: object, max_len: int = 20) -> List[str]:
    """Split ``value`` on list delimiters and keep each ideograph run of 2+."""

    if value is None:
        return []
    results: List[str] = []
    for part in _FIELD_SPLIT_RE.split(str(value).replace("**", "")):
        part = part.strip()
        if not part:
            continue
        for match in CJK_RUN_RE.findall(part):
            term = clean_term(match, max_len)
            if term:
                results.append(term)
    return results


def extract_latin_terms(value: object, max_len: int = 60) -> List[str]:
    if value is None:
        return []
    results: List[str] = []
    for part in _FIELD_SPLIT_RE.split(str(value).replace("**", "")):
        term = clean_term(part, max_len)
        if term and is_latin_term(term):
            results.append(term)
    return results


def remove_subterms(terms: Iterable[str]) -> List[str]:
    """Drop every term contained in an already kept (longer) term."""

    kept: List[str] = []
    for term in terms:
        if any(term in existing for existing in kept):
            continue
        kept.append(term)
    return kept


def dedupe_and_limit(terms: Iterable[str], max_terms: int) -> List[str]:
    """Deduplicate, order longest-first, suppress substrings and truncate."""

    unique = list(dict.fromkeys(terms))
    unique.sort(key=len, reverse=True)
    return remove_subterms(unique)[: max(0, int(max_terms))]


def _terms_from_json_array(text: str) -> Optional[List[str]]:
    try:
        data = json.loads(text)
    except ValueError:
        return None
    if not isinstance(data, list):
        return None
    terms: List[str] = []
    for entry in data:
        if not isinstance(entry, Mapping):
            continue
        for key in ("chinese", "english"):
            value = entry.get(key)
            if value is None:
                continue
            candidate = str(value).strip()
            if len(candidate) >= 2:
                terms.append(candidate)
    return terms


def _terms_from_json_object(candidate: str, options: TermParseOptions) -> Optional[List[str]]:
    try:
        entry = json.loads(candidate)
    except ValueError:
        return None
    if not isinstance(entry, Mapping):
        return None
    terms = extract_cjk_terms(entry.get("chinese"), options.max_len_cjk)
    if options.include_latin:
        terms.extend(extract_latin_terms(entry.get("english"), options.max_len_latin))
    return terms


def _terms_from_plain_line(line: str, options: TermParseOptions) -> List[str]:
    terms: List[str] = []
    for part in _PLAIN_SPLIT_RE.split(line):
        terms.extend(extract_cjk_terms(part, options.max_len_cjk))
        if options.include_latin:
            terms.extend(extract_latin_terms(part, options.max_len_latin))
    return terms


def parse_term_list(raw: str | None, options: TermParseOptions | None = None) -> List[str]:
    """Parse a term library source into a normalised list of terms.

    Accepted formats, tried in order: a JSON array of ``{chinese, english}``
    objects; JSON lines (objects may span several lines); plain lines split
    on ``,``, ``;`` or ``|``. Malformed entries are skipped.
    """

    opts = options or TermParseOptions()
    text = (raw or "").strip()
    if not text:
        return []

    if text.startswith("[") and text.endswith("]"):
        array_terms = _terms_from_json_array(text)
        if array_terms is not None:
            return dedupe_and_limit(array_terms, len(array_terms))

    terms: List[str] = []
    buffer: List[str] = []
    balance = 0
    for line in text.splitlines():
        trimmed = line.strip()
        if not buffer and (not trimmed or trimmed.startswith("#")):
            continue
        if buffer or trimmed.startswith("{"):
            buffer.append(trimmed)
            balance += trimmed.count("{") - trimmed.count("}")
            if balance <= 0 and trimmed.endswith("}"):
                candidate = "\n".join(buffer)
                buffer, balance = [], 0
                parsed = _terms_from_json_object(candidate, opts)
                if parsed is None:
                    logger.debug("rag.terms.malformed_entry", preview=candidate[:80])
                    parsed = _terms_from_plain_line(candidate, opts)
                terms.extend(parsed)
            continue
        terms.extend(_terms_from_plain_line(trimmed, opts))

    # An object that never closed: salvage its lines as plain entries.
    for pending in buffer:
        terms.extend(_terms_from_plain_line(pending, opts))

    return dedupe_and_limit(terms, len(terms))


class TrieNode:
    __slots__ = ("children", "end")

    def __init__(self) -> None:
        self.children: Dict[str, "TrieNode"] = {}
        self.end = False


def build_trie(terms: Iterable[str]) -> TrieNode:
    root = TrieNode()
    for term in terms:
        node = root
        for char in term:
            node = node.children.setdefault(char, TrieNode())
        node.end = True
    return root


@dataclass(frozen=True)
class TermLibrary:
    """Immutable snapshot of the parsed term dictionary and its tries."""

    terms: Tuple[str, ...] = ()
    source: str = "empty"
    cjk_trie: Optional[TrieNode] = field(default=None, compare=False, repr=False)
    latin_trie: Optional[TrieNode] = field(default=None, compare=False, repr=False)

    @classmethod
    def from_terms(cls, terms: Sequence[str], *, source: str = "inline") -> "TermLibrary":
        ordered = tuple(terms)
        cjk_terms = [term for term in ordered if not is_latin_term(term)]
        latin_terms = [term.lower() for term in ordered if is_latin_term(term)]
        return cls(
            terms=ordered,
            source=source,
            cjk_trie=build_trie(cjk_terms) if cjk_terms else None,
            latin_trie=build_trie(latin_terms) if latin_terms else None,
        )

    def __len__(self) -> int:
        return len(self.terms)


EMPTY_LIBRARY = TermLibrary()

_LOAD_LOCK = threading.Lock()
_CACHE: Optional[Tuple[tuple, TermLibrary]] = None
_WARNED_EMPTY = False


def reset_term_library_cache() -> None:
    global _CACHE, _WARNED_EMPTY
    with _LOAD_LOCK:
        _CACHE = None
        _WARNED_EMPTY = False


def resolve_library_path(value: str | None) -> Optional[Path]:
    if not value or not value.strip():
        return None
    path = Path(value.strip()).expanduser()
    if not path.is_absolute():
        path = Path.cwd() / path
    return path


def _cached(key: tuple) -> Optional[TermLibrary]:
    entry = _CACHE
    if entry is not None and entry[0] == key:
        return entry[1]
    return None


def _warn_empty_once(path: Path) -> None:
    global _WARNED_EMPTY
    if _WARNED_EMPTY:
        return
    _WARNED_EMPTY = True
    logger.warning(
        "rag.terms.library_empty",
        path=str(path),
        hint="TERM_LIBRARY_PATH loaded but no terms were parsed. Check file format.",
    )


def _load_inline(raw: str, options: TermParseOptions) -> TermLibrary:
    global _CACHE
    key = ("inline", raw, options)
    library = _cached(key)
    if library is not None:
        return library
    with _LOAD_LOCK:
        library = _cached(key)
        if library is not None:
            return library
        terms = parse_term_list(raw, options)
        library = TermLibrary.from_terms(terms, source="inline") if terms else EMPTY_LIBRARY
        _CACHE = (key, library)
    return library


def load_term_library(config: SearchConfig | None = None) -> TermLibrary:
    """Return the term library, reparsing only when its source changed."""

    global _CACHE
    cfg = config or get_config()
    options = TermParseOptions.from_config(cfg)
    path = resolve_library_path(cfg.term_library_path)
    if path is None:
        return _load_inline(cfg.term_library_inline, options)

    try:
        mtime = path.stat().st_mtime_ns
    except OSError as exc:
        logger.warning(
            "rag.terms.library_unreadable",
            path=str(path),
            error=str(exc),
        )
        return _load_inline(cfg.term_library_inline, options)

    key = ("file", str(path), mtime, options)
    library = _cached(key)
    if library is not None:
        return library

    with _LOAD_LOCK:
        library = _cached(key)
        if library is not None:
            return library
        try:
            raw = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            logger.warning(
                "rag.terms.library_unreadable",
                path=str(path),
                error=str(exc),
            )
            raw = None
        if raw is None:
            library = None
        else:
            terms = parse_term_list(raw, options)
            library = TermLibrary.from_terms(terms, source="file") if terms else EMPTY_LIBRARY
            log = logger.info if cfg.hybrid_debug else logger.debug
            log("rag.terms.library_loaded", path=str(path), terms=len(terms))
            if not terms:
                _warn_empty_once(path)
            _CACHE = (key, library)

    if library is None:
        return _load_inline(cfg.term_library_inline, options)
    return library


__all__ = [
    "EMPTY_LIBRARY",
    "TermLibrary",
    "TermParseOptions",
    "TrieNode",
    "build_trie",
    "clean_term",
    "dedupe_and_limit",
    "extract_cjk_terms",
    "extract_latin_terms",
    "is_latin_term",
    "load_term_library",
    "parse_term_list",
    "remove_subterms",
    "reset_term_library_cache",
    "resolve_library_path",
]
