from __future__ import annotations

import httpx

from ...settings import settings
from .base import GenerationOptions, Provider, ProviderUnavailable
from .http import get_client, get_ok, post_json

_NEW_STYLE_MODEL_PREFIXES = ("gpt-4o", "gpt-4.1", "gpt-5", "o1", "o3", "o4", "o-")


def _token_param(model: str | None) -> str:
    name = (model or "").lower()
    if name.startswith(_NEW_STYLE_MODEL_PREFIXES):
        return "max_completion_tokens"
    return "max_tokens"


class OpenAIProvider(Provider):
    name = "openai"

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        base_url: str | None = None,
        *,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.api_key = api_key if api_key is not None else settings.OPENAI_API_KEY
        self.model = model or settings.OPENAI_MODEL
        self.base_url = (base_url or settings.OPENAI_API_BASE).rstrip("/")
        self._client = client

    def _headers(self) -> dict[str, str]:
        if not self.api_key:
            raise ProviderUnavailable("OPENAI_API_KEY not configured")
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    async def _http(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        return await get_client(self.base_url)

    async def is_available(self) -> bool:
        if not self.api_key:
            return False
        client = await self._http()
        response = await get_ok(
            client,
            "/models",
            headers=self._headers(),
            timeout=settings.PROVIDER_PROBE_TIMEOUT_SECONDS,
        )
        return response is not None

    async def generate(self, prompt: str, options: GenerationOptions | None = None) -> str:
        options = options or GenerationOptions()
        headers = self._headers()
        payload = {
            "model": self.model,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": options.temperature,
        }
        payload[_token_param(self.model)] = options.max_tokens
        client = await self._http()
        response = await post_json(
            client,
            "/chat/completions",
            payload,
            headers=headers,
            timeout=options.timeout or settings.PROVIDER_GENERATION_TIMEOUT_SECONDS,
            provider=self.name,
        )
        try:
            content = response["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise ProviderUnavailable("openai payload missing content") from exc
        if not isinstance(content, str) or not content.strip():
            raise ProviderUnavailable("openai returned empty content")
        return content

    def cost(self) -> float:
        return 0.002

    def latency(self) -> float:
        return 800.0
