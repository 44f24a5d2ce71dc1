from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


def _blank_to_none(value: Any) -> Any:
    if isinstance(value, str):
        cleaned = value.strip().lower()
        if cleaned in ("", "null", "none", "n/a"):
            return None
        return cleaned
    return value


class ProviderIntent(BaseModel):
    """Shape a provider must return for intent extraction."""

    model_config = ConfigDict(extra="ignore")

    business_type: Literal["restaurant", "salon"] | None = Field(
        default=None, validation_alias=AliasChoices("business_type", "businessType")
    )
    cuisine: Literal["italian", "chinese", "indian", "thai", "japanese", "mexican"] | None = None
    service: Literal["hair", "color", "nails", "spa"] | None = None
    location: Literal["cbd", "north", "south"] | None = None
    confidence: float = Field(ge=0.0, le=1.0)

    @field_validator("business_type", "cuisine", "service", "location", mode="before")
    @classmethod
    def _normalize(cls, value):  # type: ignore[override]
        return _blank_to_none(value)


class DiscoveryContextIn(BaseModel):
    user_location: str | None = Field(
        default=None, max_length=120, validation_alias=AliasChoices("user_location", "userLocation")
    )
    conversation_history: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("conversation_history", "conversationHistory"),
    )
    search_context: dict[str, Any] | None = Field(
        default=None, validation_alias=AliasChoices("search_context", "searchContext")
    )
    authenticated: bool = False
    user_id: str | None = Field(
        default=None, max_length=128, validation_alias=AliasChoices("user_id", "userId")
    )

    @field_validator("conversation_history", mode="before")
    @classmethod
    def _history(cls, value):  # type: ignore[override]
        if value is None:
            return []
        if isinstance(value, list):
            return [str(item) if not isinstance(item, dict) else str(item.get("content", "")) for item in value]
        return value


class DiscoveryRequest(BaseModel):
    query: str = Field(max_length=4000)
    context: DiscoveryContextIn = Field(default_factory=DiscoveryContextIn)


class Action(BaseModel):
    type: str
    label: str
    description: str


class BusinessOut(BaseModel):
    id: str
    name: str
    description: str = ""
    industry_type: str = "business"
    slug: str | None = None
    location: str | None = None
    score: int | None = None


class DiscoveryResponse(BaseModel):
    understanding: str
    recommendations: list[BusinessOut] = Field(default_factory=list, max_length=3)
    insights: list[str] = Field(default_factory=list)
    actions: list[Action] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)


class DiscoveryStatus(BaseModel):
    status: Literal["operational", "degraded"] = "operational"
    active_provider: str
    providers: dict[str, dict[str, Any]] = Field(default_factory=dict)
    registered: list[str] = Field(default_factory=list)
    catalog_size: int = 0
    catalog_source: str | None = None
    catalog_refreshed_at: float | None = None
    security: dict[str, Any] = Field(default_factory=dict)
