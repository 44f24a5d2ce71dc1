from __future__ import annotations

from typing import Any

import httpx

from ...settings import settings
from .base import (
    STRUCTURED_OPTIONS,
    GenerationOptions,
    Provider,
    ProviderUnavailable,
    parse_json_object,
)
from .http import get_client, get_ok, post_json


class OllamaProvider(Provider):
    """Locally hosted models served by an Ollama daemon."""

    name = "ollama"
    local = True

    def __init__(
        self,
        endpoint: str | None = None,
        model: str | None = None,
        *,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.endpoint = (endpoint or settings.OLLAMA_ENDPOINT).rstrip("/")
        self.model = model or settings.OLLAMA_MODEL
        self._client = client

    async def _http(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        return await get_client(self.endpoint)

    async def is_available(self) -> bool:
        client = await self._http()
        response = await get_ok(client, "/api/tags", timeout=settings.PROVIDER_PROBE_TIMEOUT_SECONDS)
        if response is None:
            return False
        try:
            payload = response.json()
        except ValueError:
            return False
        family = self.model.split(":", 1)[0]
        models = payload.get("models") if isinstance(payload, dict) else None
        if not models:
            return False
        return any(family in str(entry.get("name", "")) for entry in models)

    async def _call(self, body: dict[str, Any], timeout: float | None) -> str:
        client = await self._http()
        response = await post_json(
            client,
            "/api/generate",
            body,
            timeout=timeout or settings.PROVIDER_GENERATION_TIMEOUT_SECONDS,
            provider=self.name,
        )
        text = response.get("response")
        if not isinstance(text, str) or not text.strip():
            raise ProviderUnavailable("ollama returned an empty response")
        return text

    async def generate(self, prompt: str, options: GenerationOptions | None = None) -> str:
        options = options or GenerationOptions()
        return await self._call(
            {
                "model": self.model,
                "prompt": prompt,
                "stream": False,
                "options": {
                    "temperature": options.temperature,
                    "num_predict": options.max_tokens,
                },
            },
            options.timeout,
        )

    async def extract_structured(self, prompt: str) -> dict[str, Any]:
        # Ollama can constrain decoding to JSON directly.
        text = await self._call(
            {
                "model": self.model,
                "prompt": prompt,
                "stream": False,
                "format": "json",
                "options": {
                    "temperature": STRUCTURED_OPTIONS.temperature,
                    "num_predict": STRUCTURED_OPTIONS.max_tokens,
                },
            },
            STRUCTURED_OPTIONS.timeout,
        )
        try:
            return parse_json_object(text)
        except ValueError as exc:
            raise ProviderUnavailable("ollama returned non-JSON output") from exc

    def cost(self) -> float:
        return 0.0

    def latency(self) -> float:
        return 400.0
