from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal

RiskLevel = Literal["low", "medium", "high"]


@dataclass(frozen=True)
class BusinessRecord:
    id: str
    name: str
    description: str = ""
    industry_type: str = "business"
    slug: str | None = None
    status: str = "active"
    location: str | None = None

    @classmethod
    def from_mapping(cls, payload: dict[str, Any]) -> BusinessRecord:
        """Build a record from a catalog row; accepts camelCase or snake_case keys."""
        raw_id = payload.get("id")
        name = payload.get("name") or payload.get("businessName") or payload.get("business_name")
        if raw_id is None or raw_id == "" or not isinstance(name, str) or not name.strip():
            raise ValueError("catalog entry requires id and name")
        industry = (
            payload.get("industry_type")
            or payload.get("industryType")
            or payload.get("type")
            or "business"
        )
        return cls(
            id=str(raw_id),
            name=name.strip(),
            description=str(payload.get("description") or "").strip(),
            industry_type=str(industry).strip().lower(),
            slug=payload.get("slug"),
            status=str(payload.get("status") or "active").lower(),
            location=payload.get("location") or payload.get("suburb"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "industry_type": self.industry_type,
            "slug": self.slug,
            "status": self.status,
            "location": self.location,
        }


@dataclass
class DiscoveryContext:
    user_location: str | None = None
    conversation_history: list[str] = field(default_factory=list)
    search_context: dict[str, Any] | None = None
    authenticated: bool = False
    user_id: str | None = None
    ip: str | None = None

    @property
    def requester(self) -> str:
        return self.user_id or self.ip or "anonymous"


@dataclass(frozen=True)
class Intent:
    query: str
    business_type: str | None = None
    cuisine: str | None = None
    service: str | None = None
    location: str | None = None
    keywords: tuple[str, ...] = ()
    confidence: float = 0.6
    source: Literal["provider", "rules"] = "rules"

    def to_dict(self) -> dict[str, Any]:
        return {
            "business_type": self.business_type,
            "cuisine": self.cuisine,
            "service": self.service,
            "location": self.location,
            "keywords": list(self.keywords),
            "confidence": self.confidence,
            "source": self.source,
        }


@dataclass(frozen=True)
class MatchCandidate:
    business: BusinessRecord
    score: int
    matched_term: str


@dataclass(frozen=True)
class MatchInfo:
    exact_match: bool
    partial_match: bool
    no_match: bool
    has_multiple_matches: bool
    search_method: str
    total_matches: int

    @classmethod
    def classify(
        cls, candidates: list[MatchCandidate], total_matches: int, search_method: str
    ) -> MatchInfo:
        count = len(candidates)
        exact = count == 1 and candidates[0].score > 15
        none = count == 0
        return cls(
            exact_match=exact,
            partial_match=not exact and not none,
            no_match=none,
            has_multiple_matches=count > 1,
            search_method=search_method,
            total_matches=total_matches,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "exact_match": self.exact_match,
            "partial_match": self.partial_match,
            "no_match": self.no_match,
            "has_multiple_matches": self.has_multiple_matches,
            "search_method": self.search_method,
            "total_matches": self.total_matches,
        }


@dataclass(frozen=True)
class SearchOutcome:
    candidates: list[MatchCandidate]
    match_info: MatchInfo


@dataclass
class ProviderDescriptor:
    name: str
    cost_per_k_tokens: float
    avg_latency_ms: float
    local: bool = False
    available: bool | None = None
    probed_at: float | None = None
    detail: str | None = None


@dataclass
class SecurityVerdict:
    is_valid: bool
    sanitized_query: str
    blocked_reasons: list[str] = field(default_factory=list)
    risk_level: RiskLevel = "low"
    fast_path: bool = False
    warnings: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class VerificationIssue:
    type: str
    message: str
    suggestion: str | None = None


class ComposerState(str, Enum):
    START = "start"
    SECURITY_CHECK = "security_check"
    BLOCKED = "blocked"
    FAST_PATH = "fast_path"
    FULL_PATH = "full_path"
    INTENT = "intent"
    MATCH = "match"
    EXACT = "exact"
    DISAMBIGUATE = "disambiguate"
    NO_MATCH = "no_match"
    DEFAULT = "default"
    NARRATE = "narrate"
    SANITIZE = "sanitize"
    DONE = "done"
    FAILED = "failed"
