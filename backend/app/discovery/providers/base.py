from __future__ import annotations

import json
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

from ..types import ProviderDescriptor

_CODE_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)


class ProviderUnavailable(RuntimeError):
    """Raised when a text-generation backend cannot serve a call."""


@dataclass(frozen=True)
class GenerationOptions:
    temperature: float = 0.7
    max_tokens: int = 300
    timeout: float | None = None


STRUCTURED_OPTIONS = GenerationOptions(temperature=0.1, max_tokens=150)


def parse_json_object(raw: str) -> dict[str, Any]:
    """
    Pull the first JSON object out of model output.

    Small local models wrap JSON in prose or code fences; anything that is not an
    object at the root is rejected rather than coerced.
    """
    if not isinstance(raw, str):
        raise ValueError("payload must be a string")
    text = raw.strip()
    if not text:
        raise ValueError("payload is empty")

    fence_match = _CODE_FENCE_RE.search(text)
    if fence_match:
        text = fence_match.group(1).strip()

    decoder = json.JSONDecoder()
    for index, char in enumerate(text):
        if char != "{":
            continue
        try:
            obj, _ = decoder.raw_decode(text[index:])
        except json.JSONDecodeError:
            continue
        if isinstance(obj, dict):
            return obj
    raise ValueError("No JSON object found in payload")


class Provider(ABC):
    """A pluggable text-generation backend."""

    name: str = "provider"
    local: bool = False

    @abstractmethod
    async def is_available(self) -> bool:
        """Cheap reachability probe; must not raise for ordinary network failures."""

    @abstractmethod
    async def generate(self, prompt: str, options: GenerationOptions | None = None) -> str:
        """Return generated text or raise ProviderUnavailable."""

    @abstractmethod
    def cost(self) -> float:
        """Cost in USD per 1k tokens."""

    @abstractmethod
    def latency(self) -> float:
        """Typical response latency in milliseconds."""

    async def extract_structured(self, prompt: str) -> dict[str, Any]:
        text = await self.generate(
            prompt + "\n\nReturn only valid JSON:", STRUCTURED_OPTIONS
        )
        try:
            return parse_json_object(text)
        except ValueError as exc:
            raise ProviderUnavailable(f"{self.name} returned non-JSON output") from exc

    def describe(self) -> ProviderDescriptor:
        return ProviderDescriptor(
            name=self.name,
            cost_per_k_tokens=self.cost(),
            avg_latency_ms=self.latency(),
            local=self.local,
        )

    def __repr__(self) -> str:
        return f"<{type(self).__name__} name={self.name!r}>"
