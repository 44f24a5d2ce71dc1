"""
Request orchestration for discovery queries.

Each query walks a fixed state machine:

    START -> SECURITY_CHECK -> FAST_PATH | FULL_PATH -> INTENT -> MATCH
          -> EXACT | DISAMBIGUATE | NO_MATCH | DEFAULT -> NARRATE -> SANITIZE -> DONE

with BLOCKED as the terminal state for rejected queries. Whatever happens
inside, `compose` returns a DiscoveryResponse and never raises.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from hashlib import sha256
from typing import Any

import sentry_sdk

from ..metrics import discovery_duration_seconds, discovery_responses_total
from ..schemas import Action, BusinessOut, DiscoveryResponse
from ..settings import settings
from .catalog import CatalogService
from .guardrails import IntentionGuardrail, SecurityFilter
from .intent import IntentExtractor, rule_intent
from .prompts import narration_prompt
from .providers.registry import ProviderRegistry
from .results import Generated
from .types import (
    ComposerState,
    DiscoveryContext,
    Intent,
    MatchCandidate,
    MatchInfo,
    SearchOutcome,
    SecurityVerdict,
    VerificationIssue,
)

logger = logging.getLogger(__name__)

RESPONSE_LIMIT = 3
LAST_RESORT_MESSAGE = "I couldn't process that right now"
BOOKING_WORDS = ("book", "reserve", "reservation", "table")
FOOD_WORDS = ("food", "eat", "restaurant", "table", "dining", "hungry", "lunch", "dinner")
BEAUTY_WORDS = ("hair", "beauty", "salon", "nails", "spa", "massage")
LOCATION_WORDS = ("near", "cbd", "city", "suburb")

BROWSE_ACTION = Action(type="search", label="Browse Categories", description="Explore business categories")
CLARIFY_ACTION = Action(type="clarify", label="Narrow it down", description="Tell me the location or business you meant")
SIGNUP_ACTION = Action(type="signup", label="Sign up to book", description="Create an account to book instantly")
DETAILS_ACTION = Action(type="explore", label="View Details", description="See more info")


@dataclass
class _Shape:
    state: ComposerState
    understanding: str
    insights: list[str]
    actions: list[Action]
    recommendations: list[MatchCandidate] = field(default_factory=list)


def _digest(text: str) -> str:
    return sha256(text.encode("utf-8")).hexdigest()[:10]


def _has_any(lowered: str, words: Sequence[str]) -> bool:
    return any(word in lowered for word in words)


class DiscoveryComposer:
    def __init__(
        self,
        catalog: CatalogService,
        *,
        registry: ProviderRegistry | None = None,
        security: SecurityFilter | None = None,
        intent_extractor: IntentExtractor | None = None,
        intention_guardrail: IntentionGuardrail | None = None,
        city: str | None = None,
    ) -> None:
        self.catalog = catalog
        self.registry = registry
        self.security = security or SecurityFilter()
        self.intent_extractor = intent_extractor or IntentExtractor(registry)
        self.intention_guardrail = intention_guardrail
        self.city = city or settings.CITY_LABEL

    async def compose(self, query: str, context: DiscoveryContext | None = None) -> DiscoveryResponse:
        context = context or DiscoveryContext()
        states: list[ComposerState] = []
        started = time.perf_counter()
        try:
            response = await self._compose(query or "", context, states)
        except Exception:
            logger.exception("Discovery composition failed (%s)", _digest(query or ""))
            states.append(ComposerState.FAILED)
            response = self._last_resort(states)
        state = response.metadata.get("state", ComposerState.FAILED.value)
        discovery_responses_total.labels(
            state=state, ai_powered=str(bool(response.metadata.get("ai_powered"))).lower()
        ).inc()
        discovery_duration_seconds.observe(time.perf_counter() - started)
        sentry_sdk.add_breadcrumb(
            category="discovery",
            message=state,
            data={"query_fp": _digest(query or ""), "provider": response.metadata.get("provider")},
        )
        return response

    async def _compose(
        self, query: str, context: DiscoveryContext, states: list[ComposerState]
    ) -> DiscoveryResponse:
        states.append(ComposerState.START)
        states.append(ComposerState.SECURITY_CHECK)
        verdict = self._check(query, context)
        if not verdict.is_valid:
            states.append(ComposerState.BLOCKED)
            return self._blocked(verdict, states)

        states.append(ComposerState.FAST_PATH if verdict.fast_path else ComposerState.FULL_PATH)
        issues = [] if verdict.fast_path else self._verify_intention(verdict.sanitized_query, context)
        text = verdict.sanitized_query

        degraded = False
        provider_available = False
        states.append(ComposerState.INTENT)
        try:
            if self.registry is not None and not verdict.fast_path:
                provider_available = await self.registry.select_provider() is not None
            intent = await self.intent_extractor.extract(text, provider_available)
        except Exception:
            logger.exception("Intent extraction failed; using keyword rules")
            intent = rule_intent(text)
            degraded = True

        states.append(ComposerState.MATCH)
        try:
            outcome = self.catalog.search(text)
        except Exception:
            logger.exception("Catalog match failed; treating as no match")
            outcome = SearchOutcome(
                candidates=[], match_info=MatchInfo.classify([], 0, "unavailable")
            )
            degraded = True

        shape = self._shape(text, intent, outcome, degraded)
        states.append(shape.state)

        provider_name = "fallback"
        ai_powered = False
        states.append(ComposerState.NARRATE)
        try:
            narration, provider_name, ai_powered = await self._narrate(text, outcome)
        except Exception:
            logger.exception("Narration failed; returning deterministic response")
            narration = None
            if shape.state is not ComposerState.DEFAULT:
                shape.state = ComposerState.DEFAULT
                states.append(ComposerState.DEFAULT)

        states.append(ComposerState.SANITIZE)
        insights = list(shape.insights)
        if narration:
            cleaned = self.security.sanitize_output(narration)
            if cleaned:
                insights.append(cleaned)
        for issue in issues:
            insights.append(issue.message if not issue.suggestion else f"{issue.message} {issue.suggestion}")
        states.append(ComposerState.DONE)

        metadata: dict[str, Any] = {
            "provider": provider_name,
            "ai_powered": ai_powered,
            "state": shape.state.value,
            "states": [s.value for s in states],
            "fast_path": verdict.fast_path,
            "risk_level": verdict.risk_level,
            "match_info": outcome.match_info.to_dict(),
            "query_intent": intent.to_dict(),
            "data_source": self.catalog.data_source,
            "total_businesses": len(self.catalog),
            "degraded": degraded,
        }
        if verdict.warnings:
            metadata["warnings"] = list(verdict.warnings)
        if issues:
            metadata["verification_issues"] = [issue.type for issue in issues]

        return DiscoveryResponse(
            understanding=shape.understanding,
            recommendations=[self._business_out(c) for c in shape.recommendations[:RESPONSE_LIMIT]],
            insights=insights,
            actions=shape.actions,
            metadata=metadata,
        )

    def _check(self, query: str, context: DiscoveryContext) -> SecurityVerdict:
        try:
            return self.security.validate(query, context)
        except Exception:
            logger.exception("Security validation raised; continuing without it")
            return SecurityVerdict(
                is_valid=True,
                sanitized_query=" ".join(query.split()),
                warnings=["Security validation skipped"],
            )

    def _verify_intention(self, query: str, context: DiscoveryContext) -> list[VerificationIssue]:
        if self.intention_guardrail is None:
            return []
        try:
            issues = list(self.intention_guardrail.validate_query(query))
            issues.extend(self.intention_guardrail.verify_intention(query, context))
        except Exception:
            logger.warning("Intention guardrail failed; skipping verification", exc_info=True)
            return []
        return issues

    async def _narrate(self, query: str, outcome: SearchOutcome) -> tuple[str | None, str, bool]:
        if self.registry is None:
            return None, "fallback", False
        prompt = narration_prompt(
            query, outcome.candidates[:RESPONSE_LIMIT], outcome.match_info, city=self.city
        )
        result = await self.registry.generate(prompt)
        if isinstance(result, Generated):
            return result.text, result.provider, True
        logger.info("Narration degraded after %s attempt(s): %s", result.attempts, result.reason)
        return result.text or None, "fallback", False

    # response shapes

    def _location(self, candidate: MatchCandidate) -> str:
        return candidate.business.location or self.city

    def _shape(self, query: str, intent: Intent, outcome: SearchOutcome, degraded: bool) -> _Shape:
        info = outcome.match_info
        if degraded:
            return self._default(query, intent, outcome.candidates)
        if info.exact_match:
            return self._exact(query, outcome.candidates[0])
        if info.has_multiple_matches:
            return self._disambiguate(outcome.candidates)
        if info.no_match:
            return self._no_match(query, intent)
        return self._default(query, intent, outcome.candidates)

    def _exact(self, query: str, candidate: MatchCandidate) -> _Shape:
        business = candidate.business
        lowered = query.lower()
        insights = [
            f"{business.name} is a {business.industry_type} in {self._location(candidate)}",
        ]
        if business.description:
            insights.append(business.description)
        if _has_any(lowered, BOOKING_WORDS):
            understanding = f"I found {business.name}! I can see you want to make a booking."
            insights.extend(
                [
                    "To complete your booking, please sign up first.",
                    "After you sign up I can check real-time availability.",
                    "I can book with your preferences and send confirmation details.",
                    "I can also help with changes or cancellations.",
                ]
            )
        else:
            understanding = f"I found {business.name}!"
            insights.append("Sign up to book with them instantly.")
        return _Shape(
            state=ComposerState.EXACT,
            understanding=understanding,
            insights=insights,
            actions=[SIGNUP_ACTION, DETAILS_ACTION],
            recommendations=[candidate],
        )

    def _disambiguate(self, candidates: list[MatchCandidate]) -> _Shape:
        shown = candidates[:RESPONSE_LIMIT]
        insights = [
            f"{idx}. {c.business.name} - {c.business.industry_type} in {self._location(c)}"
            for idx, c in enumerate(shown, start=1)
        ]
        first = shown[0]
        insights.append(
            f'Try being more specific, for example "{first.business.name} {self._location(first)}".'
        )
        return _Shape(
            state=ComposerState.DISAMBIGUATE,
            understanding=f"I found {len(candidates)} businesses that might match. Which one did you mean?",
            insights=insights,
            actions=[CLARIFY_ACTION],
            recommendations=shown,
        )

    def _suggestions(self, query: str, intent: Intent) -> list[str]:
        lowered = query.lower()
        suggestions: list[str] = []
        if intent.business_type == "restaurant" or _has_any(lowered, FOOD_WORDS):
            suggestions += [
                '"Italian restaurants CBD"',
                f'"Asian food {self.city}"',
                '"Fine dining restaurants"',
            ]
        if intent.business_type == "salon" or _has_any(lowered, BEAUTY_WORDS):
            suggestions += ['"Hair salons near me"', '"Nail salons CBD"', f'"Beauty treatments {self.city}"']
        if intent.location or _has_any(lowered, LOCATION_WORDS) or self.city.lower() in lowered:
            suggestions.append('Try a specific suburb, for example "Fitzroy" or "South Yarra"')
        if not suggestions:
            suggestions = [
                "Try searching by business category",
                "Include your preferred location",
                "Browse our featured businesses",
            ]
        return suggestions

    def _no_match(self, query: str, intent: Intent) -> _Shape:
        insights = [
            "Possible reasons:",
            "The business name might be spelled differently",
            'Try searching by category, for example "Italian restaurant" or "hair salon"',
            'Include a location, for example "CBD" or "near me"',
            "Suggestions based on your query:",
            *self._suggestions(query, intent),
        ]
        return _Shape(
            state=ComposerState.NO_MATCH,
            understanding=f'I couldn\'t find matches for "{query}". Let me help you find what you\'re looking for!',
            insights=insights,
            actions=[BROWSE_ACTION],
        )

    def _default(self, query: str, intent: Intent, candidates: list[MatchCandidate]) -> _Shape:
        shown = candidates[:RESPONSE_LIMIT]
        if not shown:
            return _Shape(
                state=ComposerState.DEFAULT,
                understanding="I couldn't pin that down, but you can browse the catalog by category.",
                insights=["Browse restaurants, salons and other local services", *self._suggestions(query, intent)],
                actions=[BROWSE_ACTION],
            )
        if intent.business_type == "restaurant" and intent.cuisine:
            understanding = f"Looking for {intent.cuisine} food? Here are some places to try."
        elif intent.business_type == "salon" and intent.service:
            understanding = f"Need {intent.service} services? These salons can help."
        else:
            understanding = f'Found {len(shown)} options for "{query}".'
        insights = [f"{c.business.name} - {c.business.industry_type} in {self._location(c)}" for c in shown]
        insights.append("Sign up to book instantly.")
        return _Shape(
            state=ComposerState.DEFAULT,
            understanding=understanding,
            insights=insights,
            actions=[DETAILS_ACTION, SIGNUP_ACTION],
            recommendations=shown,
        )

    def _blocked(self, verdict: SecurityVerdict, states: list[ComposerState]) -> DiscoveryResponse:
        return DiscoveryResponse(
            understanding=(
                f"I can only help you find businesses in {self.city}. "
                "Please ask about restaurants, salons, or other local services."
            ),
            insights=[
                "Security notice: your query was filtered for safety",
                "Please ask about local businesses, dining, or beauty services",
            ],
            actions=[BROWSE_ACTION],
            metadata={
                "provider": "security_filter",
                "ai_powered": False,
                "blocked": True,
                "risk_level": verdict.risk_level,
                "state": ComposerState.BLOCKED.value,
                "states": [s.value for s in states],
            },
        )

    def _last_resort(self, states: list[ComposerState]) -> DiscoveryResponse:
        return DiscoveryResponse(
            understanding=LAST_RESORT_MESSAGE,
            insights=[
                "Try a business name or a category such as restaurants or salons",
                "Include a suburb to narrow things down",
            ],
            actions=[BROWSE_ACTION],
            metadata={
                "provider": "fallback",
                "ai_powered": False,
                "state": ComposerState.FAILED.value,
                "states": [s.value for s in states],
            },
        )

    def _business_out(self, candidate: MatchCandidate) -> BusinessOut:
        business = candidate.business
        return BusinessOut(
            id=business.id,
            name=business.name,
            description=business.description,
            industry_type=business.industry_type,
            slug=business.slug,
            location=business.location or self.city,
            score=candidate.score,
        )


__all__ = ["LAST_RESORT_MESSAGE", "DiscoveryComposer"]
