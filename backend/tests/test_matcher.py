from __future__ import annotations

import pytest
from backend.app.discovery.matcher import (
    FULL_NAME_SCORE,
    CatalogIndex,
    RelevanceMatcher,
    coerce_catalog,
    tokenize,
)
from backend.app.discovery.types import BusinessRecord, MatchCandidate, MatchInfo


@pytest.fixture
def active_rows(catalog_rows):
    return [row for row in catalog_rows if row["status"] == "active"]


@pytest.fixture
def matcher(active_rows):
    return RelevanceMatcher(active_rows)


def test_tokenize_drops_short_words_and_punctuation():
    assert tokenize("Hi, I'd like pasta & a pizza!") == ["i'd", "like", "pasta", "pizza"]
    assert tokenize(None) == []


def test_full_name_query_scores_every_tier(matcher):
    outcome = matcher.search("Trattoria Roma")
    top = outcome.candidates[0]
    assert top.business.id == "biz-roma"
    # full name 20 + two words 10 each + substring hits on both words and the name
    assert top.score == FULL_NAME_SCORE + 20 + 15
    assert top.matched_term == "trattoria roma"
    assert outcome.match_info.exact_match is True


def test_partial_name_gives_single_exact_candidate(matcher):
    outcome = matcher.search("spice pavilion")
    assert [c.business.id for c in outcome.candidates] == ["biz-spice"]
    assert outcome.candidates[0].score == 35
    info = outcome.match_info
    assert info.exact_match and not info.partial_match and not info.no_match
    assert info.search_method == "inverted_index"


def test_shared_term_ties_keep_catalog_order(matcher):
    outcome = matcher.search("pasta")
    assert [c.business.id for c in outcome.candidates] == ["biz-roma", "biz-cucina"]
    assert [c.score for c in outcome.candidates] == [15, 15]
    assert outcome.match_info.has_multiple_matches is True
    assert outcome.match_info.partial_match is True
    assert outcome.match_info.total_matches == 2


def test_single_low_score_candidate_is_partial(matcher):
    outcome = matcher.search("kitchen")
    assert len(outcome.candidates) == 1
    assert outcome.candidates[0].score == 15
    info = outcome.match_info
    assert not info.exact_match
    assert info.partial_match
    assert not info.has_multiple_matches


@pytest.mark.parametrize("query", ["", "   ", "xylophone repairs"])
def test_no_candidates_is_no_match(matcher, query):
    outcome = matcher.search(query)
    assert outcome.candidates == []
    assert outcome.match_info.no_match is True
    assert outcome.match_info.partial_match is False
    assert outcome.match_info.total_matches == 0


def test_search_is_deterministic(matcher):
    first = matcher.search("pasta pizza kitchen")
    for _ in range(5):
        again = matcher.search("pasta pizza kitchen")
        assert [(c.business.id, c.score) for c in again.candidates] == [
            (c.business.id, c.score) for c in first.candidates
        ]


def test_candidates_are_capped_and_total_reports_all():
    rows = [
        {"id": f"biz-{idx}", "name": f"Noodle Bar {idx}", "description": "noodles"}
        for idx in range(15)
    ]
    outcome = RelevanceMatcher(rows, limit=10).search("noodle")
    assert len(outcome.candidates) == 10
    assert outcome.match_info.total_matches == 15
    assert [c.business.id for c in outcome.candidates] == [f"biz-{idx}" for idx in range(10)]


def test_classification_flags_are_consistent():
    record = BusinessRecord(id="1", name="Solo")
    cases = [
        [],
        [MatchCandidate(business=record, score=10, matched_term="solo")],
        [MatchCandidate(business=record, score=25, matched_term="solo")],
        [MatchCandidate(business=record, score=25, matched_term="solo")] * 2,
    ]
    for candidates in cases:
        info = MatchInfo.classify(candidates, len(candidates), "inverted_index")
        assert [info.exact_match, info.partial_match, info.no_match].count(True) == 1
        assert info.has_multiple_matches == (len(candidates) > 1)


def test_malformed_entries_are_skipped():
    records = coerce_catalog(
        [
            {"id": "ok", "name": "Fine Place"},
            {"id": "", "name": "No Id"},
            {"id": "no-name"},
            "not a mapping",
            None,
            {"id": "ok", "name": "Duplicate Id"},
        ]
    )
    assert [r.id for r in records] == ["ok"]
    assert coerce_catalog(42) == ()
    assert RelevanceMatcher(None).search("anything").match_info.no_match


def test_camel_case_rows_are_accepted():
    (record,) = coerce_catalog(
        [{"id": 7, "businessName": "Nail Nook", "industryType": "Salon", "suburb": "Carlton"}]
    )
    assert record.id == "7"
    assert record.industry_type == "salon"
    assert record.location == "Carlton"


def test_same_catalog_reuses_index(matcher, active_rows):
    index = matcher.index
    matcher.search("pasta", catalog=[dict(row) for row in active_rows])
    assert matcher.index is index


def test_changed_catalog_rebuilds_index(matcher):
    index = matcher.index
    outcome = matcher.search("ramen", catalog=[{"id": "r1", "name": "Ramen House"}])
    assert matcher.index is not index
    assert [c.business.id for c in outcome.candidates] == ["r1"]
    # the new snapshot is now the default
    assert matcher.search("pasta").match_info.no_match


def test_index_terms_are_unique_per_business():
    index = CatalogIndex.build(coerce_catalog([{"id": "x", "name": "Pasta Pasta", "description": "pasta"}]))
    assert index.terms["pasta"] == (0,)
