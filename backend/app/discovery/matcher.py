"""Deterministic relevance search over the business catalog."""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from .types import BusinessRecord, MatchCandidate, MatchInfo, SearchOutcome

logger = logging.getLogger(__name__)

FULL_NAME_SCORE = 20
WORD_SCORE = 10
PARTIAL_SCORE = 5
MIN_TERM_LENGTH = 3
CANDIDATE_LIMIT = 10
SEARCH_METHOD = "inverted_index"

_WORD_RE = re.compile(r"[^\W_]+(?:'[^\W_]+)?", re.UNICODE)


def normalize(text: str | None) -> str:
    return " ".join((text or "").lower().split())


def tokenize(text: str | None) -> list[str]:
    """Lower-cased words longer than two characters, in order of appearance."""
    return [word for word in _WORD_RE.findall((text or "").lower()) if len(word) >= MIN_TERM_LENGTH]


def coerce_catalog(catalog: Iterable[Any] | None) -> tuple[BusinessRecord, ...]:
    """Turn a raw catalog into records, dropping entries without an id or name."""
    if catalog is None:
        return ()
    records: list[BusinessRecord] = []
    seen: set[str] = set()
    try:
        entries = list(catalog)
    except TypeError:
        logger.warning("Catalog is not iterable (%s); treating as empty", type(catalog).__name__)
        return ()
    for position, entry in enumerate(entries):
        if isinstance(entry, BusinessRecord):
            record = entry
        elif isinstance(entry, Mapping):
            try:
                record = BusinessRecord.from_mapping(dict(entry))
            except ValueError:
                logger.debug("Skipping malformed catalog entry at position %s", position)
                continue
        else:
            logger.debug("Skipping catalog entry of type %s", type(entry).__name__)
            continue
        if record.id in seen:
            continue
        seen.add(record.id)
        records.append(record)
    return tuple(records)


@dataclass(frozen=True)
class CatalogIndex:
    """
    Inverted index from search term to catalog positions.

    Built once per catalog snapshot and never mutated; a refresh builds a new
    index and swaps the reference.
    """

    records: tuple[BusinessRecord, ...]
    terms: Mapping[str, tuple[int, ...]]
    full_names: Mapping[str, tuple[int, ...]]

    @classmethod
    def build(cls, records: Iterable[BusinessRecord]) -> CatalogIndex:
        snapshot = tuple(records)
        terms: dict[str, list[int]] = {}
        full_names: dict[str, list[int]] = {}
        for position, record in enumerate(snapshot):
            own_terms: list[str] = []
            for term in tokenize(record.name) + tokenize(record.description):
                if term not in own_terms:
                    own_terms.append(term)
            full_name = normalize(record.name)
            if full_name:
                full_names.setdefault(full_name, []).append(position)
                if full_name not in own_terms:
                    own_terms.append(full_name)
            for term in own_terms:
                terms.setdefault(term, []).append(position)
        return cls(
            records=snapshot,
            terms={term: tuple(positions) for term, positions in terms.items()},
            full_names={name: tuple(positions) for name, positions in full_names.items()},
        )

    def __len__(self) -> int:
        return len(self.records)

    def score(self, query: str) -> dict[int, tuple[int, str]]:
        """Return position -> (score, best matched term) for every business that scored."""
        query_text = normalize(query)
        if not query_text:
            return {}
        scores: dict[int, int] = {}
        best: dict[int, tuple[int, str]] = {}

        def award(position: int, points: int, term: str) -> None:
            scores[position] = scores.get(position, 0) + points
            current = best.get(position)
            if current is None or points > current[0]:
                best[position] = (points, term)

        for position in self.full_names.get(query_text, ()):
            award(position, FULL_NAME_SCORE, query_text)

        seen_words: set[str] = set()
        for word in tokenize(query_text):
            if word in seen_words:
                continue
            seen_words.add(word)
            for position in self.terms.get(word, ()):
                award(position, WORD_SCORE, word)

        for term, positions in self.terms.items():
            if term in query_text or query_text in term:
                for position in positions:
                    award(position, PARTIAL_SCORE, term)

        return {position: (scores[position], best[position][1]) for position in scores}


class RelevanceMatcher:
    def __init__(self, catalog: Iterable[Any] | None = None, *, limit: int = CANDIDATE_LIMIT) -> None:
        self.limit = limit
        self._index = CatalogIndex.build(coerce_catalog(catalog))
        self._source: Any = catalog

    @property
    def index(self) -> CatalogIndex:
        return self._index

    def rebuild(self, catalog: Iterable[Any] | None) -> CatalogIndex:
        """Build a fresh index and swap it in with one assignment."""
        index = CatalogIndex.build(coerce_catalog(catalog))
        self._index = index
        self._source = catalog
        logger.info("Catalog index rebuilt with %s businesses", len(index))
        return index

    def _index_for(self, catalog: Iterable[Any] | None) -> CatalogIndex:
        if catalog is None or catalog is self._source:
            return self._index
        current = self._index
        records = coerce_catalog(catalog)
        if records == current.records:
            return current
        return self.rebuild(records)

    def search(self, query: str, catalog: Iterable[Any] | None = None) -> SearchOutcome:
        """
        Score the catalog against `query`.

        Passing `catalog=None` searches the current index. Candidates are ordered by
        score, then by catalog position, and capped at `limit`.
        """
        index = self._index_for(catalog)
        scored = index.score(query)
        ranked = sorted(scored.items(), key=lambda item: (-item[1][0], item[0]))
        candidates = [
            MatchCandidate(business=index.records[position], score=score, matched_term=term)
            for position, (score, term) in ranked[: self.limit]
        ]
        info = MatchInfo.classify(candidates, total_matches=len(scored), search_method=SEARCH_METHOD)
        return SearchOutcome(candidates=candidates, match_info=info)


__all__ = ["CatalogIndex", "RelevanceMatcher", "coerce_catalog", "normalize", "tokenize"]
