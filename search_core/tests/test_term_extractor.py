import pytest
from structlog.testing import capture_logs

from search_core.infra.config import SearchConfig
from search_core.rag.term_extractor import (
    extract_terms,
    heuristic_candidates,
    is_probable_term,
    match_library,
    scan_trie,
)
from search_core.rag.term_library import EMPTY_LIBRARY, TermLibrary, build_trie

CONFIG = SearchConfig(term_extract_max=3)


def test_scan_trie_prefers_longest_match_per_position():
    trie = build_trie(["龙傲", "龙傲天"])

    assert scan_trie("龙傲天出现了", trie) == ["龙傲天"]
    assert scan_trie("", trie) == []
    assert scan_trie("龙傲天", None) == []


def test_library_match_returns_longest_term():
    library = TermLibrary.from_terms(["龙傲天", "龙傲"])

    assert extract_terms("龙傲天出现了", library=library, config=CONFIG) == ["龙傲天"]


def test_bracketed_title_is_extracted_without_library():
    terms = extract_terms("《斗破苍穹》讲述了萧炎的故事", library=EMPTY_LIBRARY, config=CONFIG)

    assert terms == ["斗破苍穹"]


def test_library_hits_suppress_heuristics():
    library = TermLibrary.from_terms(["萧炎"])

    terms = extract_terms("《斗破苍穹》讲述了萧炎的故事", library=library, config=CONFIG)

    assert terms == ["萧炎"]


def test_latin_library_terms_match_case_insensitively():
    library = TermLibrary.from_terms(["Harry Potter", "霍格沃茨"])

    terms = extract_terms("who is HARRY POTTER in 霍格沃茨", library=library, config=CONFIG)

    assert terms == ["harry potter", "霍格沃茨"]


def test_marker_and_quoted_heuristics():
    assert "龙傲天" in heuristic_candidates("主角名叫龙傲天")
    assert "斗气大陆" in heuristic_candidates("他们来到“斗气大陆”")


def test_title_suffix_heuristic():
    terms = extract_terms("推荐一下，笑傲江湖传", library=EMPTY_LIBRARY, config=CONFIG)

    assert terms == ["笑傲江湖传"]


def test_results_are_capped_and_free_of_substrings():
    library = TermLibrary.from_terms(["萧炎", "药老", "美杜莎", "纳兰嫣然", "萧炎哥哥"])

    terms = extract_terms("萧炎哥哥和药老遇见了美杜莎与纳兰嫣然", library=library, config=CONFIG)

    assert terms == ["萧炎哥哥", "纳兰嫣然", "美杜莎"]
    assert "萧炎" not in terms


@pytest.mark.parametrize("value", [None, 42, "", "   ", ["萧炎"]])
def test_non_text_input_yields_nothing(value):
    assert extract_terms(value, library=EMPTY_LIBRARY, config=CONFIG) == []


def test_zero_limit_yields_nothing():
    library = TermLibrary.from_terms(["萧炎"])

    assert extract_terms("萧炎", max_terms=0, library=library, config=CONFIG) == []


@pytest.mark.parametrize(
    "term,expected",
    [
        ("斗破苍穹", True),
        ("小说", False),
        ("很好看", False),
        ("萧炎的", False),
        ("abc", False),
        ("天", False),
        ("天" * 21, False),
    ],
)
def test_is_probable_term(term, expected):
    assert is_probable_term(term) is expected


def test_substring_fallback_when_trie_misses():
    library = TermLibrary(terms=("萧炎",), source="inline")

    assert match_library("萧炎来了", library) == ["萧炎"]


def test_extraction_is_logged_with_origin():
    with capture_logs() as logs:
        extract_terms("《斗破苍穹》", library=EMPTY_LIBRARY, config=CONFIG)

    entry = next(item for item in logs if item["event"] == "rag.terms.extracted")
    assert entry["origin"] == "heuristic"
    assert entry["terms"] == ["斗破苍穹"]
