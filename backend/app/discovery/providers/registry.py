"""Provider selection, caching and the fallback chain."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Iterable, Sequence
from dataclasses import replace
from typing import Any

from ...metrics import provider_available, provider_failures_total, provider_selections_total
from ...settings import settings
from ..results import Degraded, Extracted, Generated, GenerationResult, StructuredResult
from ..types import ProviderDescriptor
from .anthropic import AnthropicProvider
from .base import GenerationOptions, Provider
from .fallback import FallbackGenerator
from .ollama import OllamaProvider
from .openai import OpenAIProvider

logger = logging.getLogger(__name__)

COST_CAP = 0.01
COST_WEIGHT = 1000.0
LOCAL_BONUS = 20.0


def provider_score(provider: Provider) -> float:
    """Faster, cheaper and local backends rank higher."""
    score = (1000.0 - provider.latency()) / 10.0
    score += (COST_CAP - provider.cost()) * COST_WEIGHT
    if provider.local:
        score += LOCAL_BONUS
    return score


class ProviderCache:
    """
    Process-scoped record of the selected provider.

    The winner is kept until the TTL lapses or a call through it fails. The
    ranked list from the same probe round is kept alongside so a failed call can
    move to the next-best provider without re-probing.
    """

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._active: Provider | None = None
        self._ranked: tuple[Provider, ...] = ()
        self._stored_at: float | None = None

    def is_fresh(self) -> bool:
        """True while the last probe round (even one with no winner) is within the TTL."""
        if self._stored_at is None:
            return False
        if self._ttl > 0 and self._clock() - self._stored_at >= self._ttl:
            self.invalidate()
            return False
        return True

    def get(self) -> Provider | None:
        return self._active if self.is_fresh() else None

    def set(self, ranked: Sequence[Provider]) -> None:
        # Single assignment of an immutable tuple; readers see old or new, never a mix.
        self._ranked = tuple(ranked)
        self._active = self._ranked[0] if self._ranked else None
        self._stored_at = self._clock()

    def invalidate(self) -> None:
        self._active = None
        self._ranked = ()
        self._stored_at = None

    @property
    def ranked(self) -> tuple[Provider, ...]:
        return self._ranked

    @property
    def age(self) -> float | None:
        if self._stored_at is None:
            return None
        return self._clock() - self._stored_at


class ProviderRegistry:
    def __init__(
        self,
        providers: Iterable[Provider],
        *,
        cache: ProviderCache | None = None,
        fallback: FallbackGenerator | None = None,
        probe_timeout: float | None = None,
        generation_timeout: float | None = None,
    ) -> None:
        self._providers: list[Provider] = list(providers)
        self.cache = cache or ProviderCache(settings.PROVIDER_CACHE_TTL_SECONDS)
        self.fallback = fallback or FallbackGenerator()
        self.probe_timeout = (
            probe_timeout if probe_timeout is not None else settings.PROVIDER_PROBE_TIMEOUT_SECONDS
        )
        self.generation_timeout = (
            generation_timeout
            if generation_timeout is not None
            else settings.PROVIDER_GENERATION_TIMEOUT_SECONDS
        )
        self._descriptors: dict[str, ProviderDescriptor] = {
            p.name: p.describe() for p in self._providers
        }
        self._probe_lock = asyncio.Lock()

    @property
    def providers(self) -> list[Provider]:
        return list(self._providers)

    @property
    def descriptors(self) -> dict[str, ProviderDescriptor]:
        return dict(self._descriptors)

    async def _probe_one(self, provider: Provider) -> bool:
        try:
            return bool(await asyncio.wait_for(provider.is_available(), self.probe_timeout))
        except TimeoutError:
            logger.info("Provider %s probe timed out after %.1fs", provider.name, self.probe_timeout)
            return False
        except Exception as exc:
            logger.warning("Provider %s probe failed: %s", provider.name, exc)
            return False

    async def probe(self) -> list[Provider]:
        """Probe every provider concurrently and return the available ones, best first."""
        results = await asyncio.gather(*(self._probe_one(p) for p in self._providers))
        probed_at = time.time()
        descriptors: dict[str, ProviderDescriptor] = {}
        available: list[Provider] = []
        for provider, ok in zip(self._providers, results):
            descriptors[provider.name] = replace(
                provider.describe(), available=ok, probed_at=probed_at
            )
            provider_available.labels(provider=provider.name).set(1.0 if ok else 0.0)
            if ok:
                available.append(provider)
        self._descriptors = descriptors
        # sorted() is stable, so equal scores keep registration order
        return sorted(available, key=provider_score, reverse=True)

    async def refresh(self) -> Provider | None:
        """Force a probe round and replace the cached selection."""
        async with self._probe_lock:
            ranked = await self.probe()
            self.cache.set(ranked)
        winner = ranked[0] if ranked else None
        provider_selections_total.labels(provider=winner.name if winner else "none").inc()
        if winner:
            logger.info("Selected text provider %s", winner.name)
        else:
            logger.warning("No text providers available; using deterministic fallback")
        return winner

    async def select_provider(self) -> Provider | None:
        if self.cache.is_fresh():
            return self.cache.get()
        async with self._probe_lock:
            if self.cache.is_fresh():
                return self.cache.get()
            ranked = await self.probe()
            self.cache.set(ranked)
        winner = ranked[0] if ranked else None
        provider_selections_total.labels(provider=winner.name if winner else "none").inc()
        return winner

    def mark_unavailable(self, provider: Provider, reason: str, operation: str) -> None:
        descriptor = self._descriptors.get(provider.name)
        if descriptor is not None:
            self._descriptors[provider.name] = replace(
                descriptor, available=False, probed_at=time.time(), detail=reason
            )
        provider_available.labels(provider=provider.name).set(0.0)
        provider_failures_total.labels(provider=provider.name, operation=operation).inc()
        self.cache.invalidate()
        logger.warning("Provider %s failed during %s: %s", provider.name, operation, reason)

    async def _attempt_chain(self, operation: str, call) -> tuple[Any, Provider | None, int, str]:
        """
        Run `call(provider)` against the active provider, then at most one alternate.

        Returns (value, provider, attempts, last_error). `value` is None when both
        attempts failed or no provider was available.
        """
        primary = await self.select_provider()
        if primary is None:
            return None, None, 0, "no provider available"
        alternates = [p for p in self.cache.ranked if p is not primary]
        attempts = 0
        last_error = ""
        for provider in [primary, *alternates[:1]]:
            attempts += 1
            try:
                value = await asyncio.wait_for(call(provider), self.generation_timeout)
            except TimeoutError:
                last_error = f"{provider.name} timed out"
                self.mark_unavailable(provider, last_error, operation)
                continue
            except Exception as exc:
                last_error = f"{provider.name}: {exc}"
                self.mark_unavailable(provider, str(exc), operation)
                continue
            if provider is not primary:
                # Promote the alternate; keep whatever else was ranked behind it.
                self.cache.set([provider, *alternates[1:]])
            return value, provider, attempts, last_error
        return None, None, attempts, last_error

    async def generate(
        self, prompt: str, options: GenerationOptions | None = None
    ) -> GenerationResult:
        text, provider, attempts, error = await self._attempt_chain(
            "generate", lambda p: p.generate(prompt, options)
        )
        if provider is not None and text:
            return Generated(text=text, provider=provider.name, attempts=attempts)
        return Degraded(
            reason=error or "empty generation",
            text=self.fallback.generate(prompt),
            attempts=attempts,
        )

    async def extract_structured(self, prompt: str) -> StructuredResult:
        data, provider, attempts, error = await self._attempt_chain(
            "extract_structured", lambda p: p.extract_structured(prompt)
        )
        if provider is not None and isinstance(data, dict):
            return Extracted(data=data, provider=provider.name)
        return Degraded(reason=error or "no structured output", attempts=attempts)

    def status(self) -> dict[str, Any]:
        active = self.cache.get()
        return {
            "active_provider": active.name if active else FallbackGenerator.name,
            "registered": [p.name for p in self._providers],
            "cache_age_seconds": self.cache.age,
            "providers": {
                name: {
                    "available": d.available,
                    "local": d.local,
                    "cost_per_k_tokens": d.cost_per_k_tokens,
                    "avg_latency_ms": d.avg_latency_ms,
                    "probed_at": d.probed_at,
                    "detail": d.detail,
                }
                for name, d in self._descriptors.items()
            },
        }


def build_default_registry() -> ProviderRegistry:
    """Register the providers named in PROVIDERS_ENABLED that have credentials."""
    providers: list[Provider] = []
    for name in settings.enabled_providers:
        if name == "ollama":
            providers.append(OllamaProvider())
        elif name == "openai":
            if settings.OPENAI_API_KEY:
                providers.append(OpenAIProvider())
        elif name == "anthropic":
            if settings.ANTHROPIC_API_KEY:
                providers.append(AnthropicProvider())
        else:
            logger.warning("Unknown text provider %r in PROVIDERS_ENABLED", name)
    return ProviderRegistry(providers)


__all__ = ["ProviderCache", "ProviderRegistry", "build_default_registry", "provider_score"]
