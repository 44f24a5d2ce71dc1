from __future__ import annotations

import logging
from hashlib import sha256

from pydantic import ValidationError

from ..schemas import ProviderIntent
from .prompts import intent_prompt
from .providers.registry import ProviderRegistry
from .results import Extracted
from .types import Intent

logger = logging.getLogger(__name__)

RULE_CONFIDENCE = 0.6
RULE_TYPED_CONFIDENCE = 0.8
PROVIDER_CONFIDENCE_FLOOR = 0.8
PROVIDER_CONFIDENCE_CEILING = 0.95

STOP_WORDS = frozenset(
    {"the", "and", "for", "with", "best", "good", "great", "find", "me", "want", "need"}
)

BUSINESS_TYPE_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    (
        "restaurant",
        (
            "restaurant", "food", "eat", "dining", "pizza", "burger", "sushi", "cafe",
            "bistro", "lunch", "dinner", "breakfast", "meal", "hungry", "cuisine", "menu",
            "takeaway", "delivery", "delicious", "tasty", "yummy", "pasta", "curry",
        ),
    ),
    (
        "salon",
        ("salon", "hair", "beauty", "spa", "nails", "massage", "haircut", "styling"),
    ),
)
CUISINE_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("italian", ("italian", "pizza", "pasta")),
    ("chinese", ("chinese", "asian")),
    ("indian", ("indian", "curry", "tandoor")),
    ("thai", ("thai",)),
    ("japanese", ("japanese", "sushi", "ramen")),
    ("mexican", ("mexican", "burrito")),
)
SERVICE_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("hair", ("haircut", "hair")),
    ("color", ("color", "colour", "highlights")),
    ("nails", ("nails", "manicure")),
    ("spa", ("massage", "spa")),
)
LOCATION_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("cbd", ("cbd", "city")),
    ("north", ("brunswick", "fitzroy")),
    ("south", ("st kilda", "south yarra")),
)


class IntentUnavailable(RuntimeError):
    """Raised when provider output cannot be turned into an intent."""


def extract_keywords(query: str) -> tuple[str, ...]:
    """Query words minus stop words, first occurrence order, no duplicates."""
    keywords: list[str] = []
    for word in query.lower().split():
        word = word.strip(".,!?;:\"'()[]")
        if len(word) <= 2 or word in STOP_WORDS or word in keywords:
            continue
        keywords.append(word)
    return tuple(keywords)


def _last_match(lowered: str, table: tuple[tuple[str, tuple[str, ...]], ...]) -> str | None:
    # Later rows win, matching the order the table is written in.
    found = None
    for value, words in table:
        if any(word in lowered for word in words):
            found = value
    return found


def rule_intent(query: str) -> Intent:
    lowered = query.lower()
    business_type = _last_match(lowered, BUSINESS_TYPE_KEYWORDS)
    cuisine = _last_match(lowered, CUISINE_KEYWORDS) if business_type == "restaurant" else None
    service = _last_match(lowered, SERVICE_KEYWORDS) if business_type == "salon" else None
    return Intent(
        query=query,
        business_type=business_type,
        cuisine=cuisine,
        service=service,
        location=_last_match(lowered, LOCATION_KEYWORDS),
        keywords=extract_keywords(query),
        confidence=RULE_TYPED_CONFIDENCE if business_type else RULE_CONFIDENCE,
        source="rules",
    )


def _clamp(value: float) -> float:
    return max(PROVIDER_CONFIDENCE_FLOOR, min(PROVIDER_CONFIDENCE_CEILING, value))


class IntentExtractor:
    def __init__(self, registry: ProviderRegistry | None = None) -> None:
        self.registry = registry

    async def _provider_intent(self, query: str) -> Intent:
        if self.registry is None:
            raise IntentUnavailable("No provider registry")
        result = await self.registry.extract_structured(intent_prompt(query))
        if not isinstance(result, Extracted):
            raise IntentUnavailable(f"Structured extraction degraded: {result.reason}")
        digest = sha256(query.encode("utf-8")).hexdigest()[:10]
        try:
            parsed = ProviderIntent.model_validate(result.data)
        except ValidationError as exc:
            logger.warning("Intent validation failed (%s): %s", digest, result.data)
            raise IntentUnavailable("Invalid intent format") from exc
        logger.debug("Intent parsed %s via %s", digest, result.provider)
        return Intent(
            query=query,
            business_type=parsed.business_type,
            cuisine=parsed.cuisine,
            service=parsed.service,
            location=parsed.location,
            keywords=extract_keywords(query),
            confidence=_clamp(parsed.confidence),
            source="provider",
        )

    async def extract(self, query: str, provider_available: bool) -> Intent:
        """Provider-backed intent when possible, keyword rules otherwise."""
        if provider_available and query.strip():
            try:
                return await self._provider_intent(query)
            except IntentUnavailable as exc:
                logger.info("Falling back to rule-based intent: %s", exc)
        return rule_intent(query)


__all__ = ["IntentExtractor", "IntentUnavailable", "extract_keywords", "rule_intent"]
