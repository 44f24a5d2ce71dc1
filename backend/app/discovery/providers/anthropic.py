from __future__ import annotations

import httpx

from ...settings import settings
from .base import GenerationOptions, Provider, ProviderUnavailable
from .http import get_client, post_json

ANTHROPIC_VERSION = "2023-06-01"


class AnthropicProvider(Provider):
    name = "anthropic"

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        base_url: str | None = None,
        *,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.api_key = api_key if api_key is not None else settings.ANTHROPIC_API_KEY
        self.model = model or settings.ANTHROPIC_MODEL
        self.base_url = (base_url or settings.ANTHROPIC_API_BASE).rstrip("/")
        self._client = client

    async def is_available(self) -> bool:
        # No free probe endpoint; a configured key is the availability signal.
        return bool(self.api_key)

    async def generate(self, prompt: str, options: GenerationOptions | None = None) -> str:
        if not self.api_key:
            raise ProviderUnavailable("ANTHROPIC_API_KEY not configured")
        options = options or GenerationOptions()
        client = self._client or await get_client(self.base_url)
        response = await post_json(
            client,
            "/messages",
            {
                "model": self.model,
                "max_tokens": options.max_tokens,
                "temperature": options.temperature,
                "messages": [{"role": "user", "content": prompt}],
            },
            headers={
                "x-api-key": self.api_key,
                "anthropic-version": ANTHROPIC_VERSION,
                "Content-Type": "application/json",
            },
            timeout=options.timeout or settings.PROVIDER_GENERATION_TIMEOUT_SECONDS,
            provider=self.name,
        )
        blocks = response.get("content") or []
        text = "".join(
            block.get("text", "")
            for block in blocks
            if isinstance(block, dict) and block.get("type") == "text"
        )
        if not text.strip():
            raise ProviderUnavailable("anthropic returned empty content")
        return text

    def cost(self) -> float:
        return 0.0008

    def latency(self) -> float:
        return 600.0
