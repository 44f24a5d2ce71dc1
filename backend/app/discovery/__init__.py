"""Conversational business discovery: guardrails, intent, matching and narration."""

from .catalog import CatalogService, JsonCatalogSource, StaticCatalogSource
from .composer import DiscoveryComposer
from .guardrails import IntentionGuardrail, SecurityFilter
from .matcher import RelevanceMatcher

__all__ = [
    "CatalogService",
    "DiscoveryComposer",
    "IntentionGuardrail",
    "JsonCatalogSource",
    "RelevanceMatcher",
    "SecurityFilter",
    "StaticCatalogSource",
]
