"""
Input validation and output sanitization for discovery queries.

The filter runs independently of whichever provider is active: queries are
checked before any catalog or provider work, and generated narration is
sanitized before it is returned.
"""

from __future__ import annotations

import re
import time
from abc import ABC, abstractmethod
from collections import deque
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from ..logging_config import get_logger
from ..metrics import guardrail_verdicts_total
from ..settings import FastPathSettings, settings
from .types import DiscoveryContext, SecurityVerdict, VerificationIssue

logger = get_logger(__name__)

TRUNCATION_MARKER = "... [Response truncated for safety]"
FILTERED = "[FILTERED]"
SUSPICIOUS_LOG_SIZE = 1000

INJECTION_PATTERNS: tuple[str, ...] = (
    # prompt injection
    r"ignore\s+(previous|above|all)\s+(instructions?|prompts?|rules?)",
    r"forget\s+(everything|all|previous)",
    r"you\s+are\s+now\s+a?\s*(different|new)",
    r"system\s*:\s*you\s+are",
    r"override\s+(system|security|instructions?)",
    # role manipulation
    r"pretend\s+you\s+are",
    r"act\s+as\s+(a\s+)?(developer|admin|system|root)",
    r"change\s+your\s+(role|identity|purpose)",
    # data extraction
    r"show\s+me\s+(all|your)\s+(data|database|table|schema)",
    r"list\s+(all|every)\s+(user|business|customer)",
    r"what\s+(data|information)\s+do\s+you\s+have",
    r"dump\s+(database|table|schema)",
    r"select\s+\*\s+from",
    # system probing
    r"what\s+(model|ai|system)\s+are\s+you",
    r"(show|reveal)\s+(the\s+)?(your\s+)?system\s+(prompt|instructions)",
    r"reveal\s+your\s+(prompt|instructions|code)",
    r"how\s+were\s+you\s+(trained|built|created)",
    # encoding and injection bypass
    r"base64|\bhex\b|rot13|unicode|\\u[0-9a-f]{4}",
    r"\{\{\s*.*\s*\}\}",
    r"\$\{.*\}",
    r"<script|javascript:",
    # business logic bypass
    r"free\s+(access|premium|subscription)",
    r"unlimited\s+(credits|queries|access)",
    r"admin\s+(panel|access|privileges)",
)

OFF_TOPIC_PATTERNS: tuple[str, ...] = (
    r"weather|temperature|forecast",
    r"sports|football|cricket|tennis",
    r"politics|government|election",
    r"\bnews\b|current events",
    r"programming|\bcode\b|software",
    r"\bmath|calculation|\bsolve\b",
    r"history|world war|ancient",
)

# Applied in order; later patterns never match the FILTERED token.
OUTPUT_REDACTIONS: tuple[re.Pattern[str], ...] = (
    re.compile(r"<\s*script\b.*?<\s*/\s*script\s*>", re.IGNORECASE | re.DOTALL),
    re.compile(r"\bbearer\s+[a-z0-9._~+/=-]+", re.IGNORECASE),
    re.compile(r"\bsk-[a-z0-9_-]{8,}", re.IGNORECASE),
    re.compile(
        r"\b(?:api[_-]?key|password|passwd|secret|token)s?\b\s*[:=]\s*[^\s,;]+",
        re.IGNORECASE,
    ),
    re.compile(r"\b(?:api[_-]?key|password|passwd|secret|token)s?\b", re.IGNORECASE),
    re.compile(r"<\s*script\b|javascript\s*:|\bdata\s*:\s*text/html", re.IGNORECASE),
    re.compile(r"\b(?:system|prompt|instruction)\s*:", re.IGNORECASE),
    re.compile(r"\b(?:api|database|schema|table|sql|server)\b", re.IGNORECASE),
)

_TAG_RE = re.compile(r"<[^>]*>")
# In-word apostrophes (joe's) survive so the query tokenizes like the index.
_QUOTE_RE = re.compile(r"[\";\\]|(?<![^\W_])'|'(?![^\W_])")
_UNICODE_ESCAPE_RE = re.compile(r"\\u[0-9a-f]{4}", re.IGNORECASE)
_ENCODED_RUN_RE = re.compile(r"[A-Za-z0-9+/]{20,}={0,2}")
_LAST_SPACE_RE = re.compile(r"\s\S*$")
_TRAILING_WORD_RE = re.compile(r"[^\W_]+$")


def sanitize_query(query: str) -> str:
    cleaned = _TAG_RE.sub("", query)
    cleaned = _UNICODE_ESCAPE_RE.sub("", cleaned)
    cleaned = _QUOTE_RE.sub("", cleaned)
    cleaned = _ENCODED_RUN_RE.sub("", cleaned)
    return " ".join(cleaned.split())


class GuardrailPolicy(ABC):
    """Decides which queries are hostile and which are off-topic."""

    @abstractmethod
    def blocked_reasons(self, query: str) -> list[str]:
        """Reasons the query must be blocked; empty when it may proceed."""

    @abstractmethod
    def off_topic_warnings(self, query: str) -> list[str]:
        """Warnings for queries unrelated to business discovery."""


class PatternGuardrailPolicy(GuardrailPolicy):
    def __init__(
        self,
        injection_patterns: Iterable[str] = INJECTION_PATTERNS,
        off_topic_patterns: Iterable[str] = OFF_TOPIC_PATTERNS,
    ) -> None:
        self.injection = [re.compile(p, re.IGNORECASE) for p in injection_patterns]
        self.off_topic = [re.compile(p, re.IGNORECASE) for p in off_topic_patterns]

    def blocked_reasons(self, query: str) -> list[str]:
        return [
            f"Suspicious pattern detected: {pattern.pattern}"
            for pattern in self.injection
            if pattern.search(query)
        ]

    def off_topic_warnings(self, query: str) -> list[str]:
        if any(pattern.search(query) for pattern in self.off_topic):
            return ["Query appears to be off-topic for business discovery"]
        return []


@dataclass
class FastPathPolicy:
    """
    When a query counts as an ordinary public catalog lookup.

    Matching queries skip throttling, off-topic analysis and intention checks.
    They are still screened for injection patterns before this policy is asked.
    """

    enabled: bool = True
    allow_unauthenticated: bool = True
    category_patterns: Sequence[str] = field(default_factory=tuple)
    business_names: Sequence[str] = field(default_factory=tuple)

    @classmethod
    def from_settings(cls, config: FastPathSettings | None = None) -> FastPathPolicy:
        config = config or settings.fast_path_policy
        return cls(
            enabled=config.enabled,
            allow_unauthenticated=config.allow_unauthenticated,
            category_patterns=tuple(config.category_patterns),
            business_names=tuple(config.business_names),
        )

    def reason(self, query: str, context: DiscoveryContext) -> str | None:
        """Name of the rule that admits the query, or None."""
        if not self.enabled:
            return None
        lowered = query.lower()
        if any(name and name in lowered for name in self.business_names):
            return "business_name"
        for pattern in self.category_patterns:
            if pattern and re.search(rf"\b{re.escape(pattern)}", lowered):
                return "category"
        if self.allow_unauthenticated and not context.authenticated and not context.user_id:
            return "unauthenticated"
        return None

    def matches(self, query: str, context: DiscoveryContext) -> bool:
        return self.reason(query, context) is not None


class QueryThrottle:
    """Sliding-window query counter per requester."""

    def __init__(
        self,
        limit: int | None = None,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        max_requesters: int = 10_000,
    ) -> None:
        self.limit = limit if limit is not None else settings.QUERY_RATE_LIMIT_PER_MINUTE
        self.window = window_seconds
        self._clock = clock
        self._max_requesters = max_requesters
        self._hits: dict[str, deque[float]] = {}

    def allow(self, requester: str) -> bool:
        if self.limit <= 0:
            return True
        now = self._clock()
        hits = self._hits.get(requester)
        if hits is None:
            if len(self._hits) >= self._max_requesters:
                self._evict(now)
            hits = self._hits.setdefault(requester, deque())
        while hits and now - hits[0] >= self.window:
            hits.popleft()
        if len(hits) >= self.limit:
            return False
        hits.append(now)
        return True

    def _evict(self, now: float) -> None:
        stale = [key for key, hits in self._hits.items() if not hits or now - hits[-1] >= self.window]
        for key in stale:
            del self._hits[key]

    def __len__(self) -> int:
        return len(self._hits)


class IntentionGuardrail:
    """Flags underspecified requests so the response can ask for detail."""

    GENERIC_QUESTIONS = ("menu", "prices", "hours", "booking", "reservation")
    LOCATION_QUESTIONS = ("open", "hours", "parking", "address", "directions", "near")
    KNOWN_AREAS = ("cbd", "city", "south yarra", "fitzroy", "brunswick", "richmond", "st kilda")
    BUSINESS_WORDS = ("restaurant", "cafe", "bistro", "kitchen", "palace", "pavilion", "garden", "house", "salon")

    def __init__(self, city: str | None = None) -> None:
        self.city = (city or settings.CITY_LABEL).lower()

    def _business_named(self, query: str) -> bool:
        words = query.split()
        if any(word[:1].isupper() for word in words[1:]):
            return True
        lowered = [w.lower() for w in words]
        return any(word in lowered[1:] for word in self.BUSINESS_WORDS)

    def _location_named(self, lowered: str) -> bool:
        return self.city in lowered or any(area in lowered for area in self.KNOWN_AREAS)

    def validate_query(self, query: str) -> list[VerificationIssue]:
        lowered = query.lower()
        issues: list[VerificationIssue] = []
        if any(q in lowered for q in self.GENERIC_QUESTIONS) and not self._business_named(query):
            issues.append(
                VerificationIssue(
                    type="business_unclear",
                    message="Which business are you asking about?",
                    suggestion="Name the business, for example 'Spice Pavilion menu'.",
                )
            )
        if re.search(r"\b(do|are) you\b", lowered):
            issues.append(
                VerificationIssue(
                    type="assumption_trap",
                    message="I'm an assistant that helps you find businesses. Which business are you interested in?",
                    suggestion="Try asking about a specific business by name.",
                )
            )
        return issues

    def verify_intention(self, query: str, context: DiscoveryContext) -> list[VerificationIssue]:
        lowered = query.lower()
        issues: list[VerificationIssue] = []
        if any(re.search(rf"\b{w}\b", lowered) for w in self.LOCATION_QUESTIONS):
            has_location = self._location_named(lowered) or bool(context.user_location)
            if not self._business_named(query) and not has_location:
                issues.append(
                    VerificationIssue(
                        type="location_unclear",
                        message="Which business and location are you asking about?",
                        suggestion="Add an area, for example 'Italian restaurant CBD'.",
                    )
                )
        return issues


class SecurityFilter:
    def __init__(
        self,
        policy: GuardrailPolicy | None = None,
        fast_path: FastPathPolicy | None = None,
        throttle: QueryThrottle | None = None,
        *,
        max_query_length: int | None = None,
        max_output_chars: int | None = None,
    ) -> None:
        self.policy = policy or PatternGuardrailPolicy()
        self.fast_path = fast_path or FastPathPolicy.from_settings()
        self.throttle = throttle or QueryThrottle()
        self.max_query_length = max_query_length or settings.QUERY_MAX_LENGTH
        self.max_output_chars = max_output_chars or settings.NARRATION_MAX_CHARS
        self._suspicious: deque[dict[str, Any]] = deque(maxlen=SUSPICIOUS_LOG_SIZE)

    def validate(self, query: str, context: DiscoveryContext | None = None) -> SecurityVerdict:
        context = context or DiscoveryContext()
        query = query or ""

        if len(query) > self.max_query_length:
            verdict = SecurityVerdict(
                is_valid=False,
                sanitized_query="",
                blocked_reasons=[f"Query exceeds maximum length ({self.max_query_length} characters)"],
                risk_level="high",
            )
            return self._finish(query, context, verdict)

        reasons = self.policy.blocked_reasons(query)
        if reasons:
            verdict = SecurityVerdict(
                is_valid=False,
                sanitized_query=sanitize_query(query),
                blocked_reasons=reasons,
                risk_level="high",
            )
            return self._finish(query, context, verdict)

        if self.fast_path.matches(query, context):
            verdict = SecurityVerdict(
                is_valid=True, sanitized_query=sanitize_query(query), fast_path=True
            )
            return self._finish(query, context, verdict)

        if not self.throttle.allow(context.requester):
            verdict = SecurityVerdict(
                is_valid=False,
                sanitized_query=sanitize_query(query),
                blocked_reasons=["Rate limit exceeded"],
                risk_level="medium",
            )
            return self._finish(query, context, verdict)

        warnings = self.policy.off_topic_warnings(query)
        verdict = SecurityVerdict(
            is_valid=True,
            sanitized_query=sanitize_query(query),
            risk_level="medium" if warnings else "low",
            warnings=warnings,
        )
        return self._finish(query, context, verdict)

    def _finish(self, query: str, context: DiscoveryContext, verdict: SecurityVerdict) -> SecurityVerdict:
        if not verdict.is_valid:
            outcome = "blocked"
        elif verdict.fast_path:
            outcome = "fast_path"
        elif verdict.warnings:
            outcome = "warned"
        else:
            outcome = "passed"
        guardrail_verdicts_total.labels(outcome=outcome).inc()
        if not verdict.is_valid or verdict.risk_level == "high":
            self._record(query, context, verdict)
        return verdict

    def _record(self, query: str, context: DiscoveryContext, verdict: SecurityVerdict) -> None:
        self._suspicious.append(
            {
                "timestamp": datetime.now(UTC),
                "requester": context.requester,
                "risk_level": verdict.risk_level,
                "blocked_reasons": list(verdict.blocked_reasons),
            }
        )
        logger.warning(
            "suspicious_query",
            query=query,
            risk_level=verdict.risk_level,
            requester=context.requester,
            reasons=verdict.blocked_reasons,
        )

    def sanitize_output(self, text: str | None) -> str:
        """Redact leaked internals and cap the length; applying it twice changes nothing."""
        body = text or ""
        truncated = False
        if body.endswith(TRUNCATION_MARKER):
            body = body[: -len(TRUNCATION_MARKER)]
            truncated = True
        for pattern in OUTPUT_REDACTIONS:
            body = pattern.sub(FILTERED, body)
        while len(body) > self.max_output_chars:
            cut = body[: self.max_output_chars]
            # No partial word may remain at the cut; a fragment like "table" would redact on a later pass.
            if not body[self.max_output_chars].isspace():
                boundary = _LAST_SPACE_RE.search(cut)
                cut = cut[: boundary.start()] if boundary else _TRAILING_WORD_RE.sub("", cut)
            for pattern in OUTPUT_REDACTIONS:
                cut = pattern.sub(FILTERED, cut)
            body = cut.rstrip()
            truncated = True
        return body + TRUNCATION_MARKER if truncated else body

    def security_stats(self) -> dict[str, Any]:
        now = datetime.now(UTC)
        recent = [
            entry for entry in self._suspicious if (now - entry["timestamp"]).total_seconds() <= 3600
        ]
        breakdown = {level: 0 for level in ("high", "medium", "low")}
        for entry in recent:
            breakdown[entry["risk_level"]] += 1
        return {
            "total_suspicious_queries": len(self._suspicious),
            "suspicious_queries_last_hour": len(recent),
            "active_rate_limits": len(self.throttle),
            "risk_level_breakdown": breakdown,
        }


__all__ = [
    "FILTERED",
    "TRUNCATION_MARKER",
    "FastPathPolicy",
    "GuardrailPolicy",
    "IntentionGuardrail",
    "PatternGuardrailPolicy",
    "QueryThrottle",
    "SecurityFilter",
    "sanitize_query",
]
