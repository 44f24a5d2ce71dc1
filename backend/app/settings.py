from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

REPO_ROOT = Path(__file__).resolve().parents[2]
ENV_FILE = REPO_ROOT / ".env"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE), env_file_encoding="utf-8", extra="ignore"
    )

    DEBUG: bool = False

    # catalog snapshot directory (defaults to ~/.local-discovery-data)
    DATA_DIR: Path | None = None
    CATALOG_FILENAME: str = "businesses.json"
    CATALOG_REFRESH_INTERVAL_SECONDS: int = 900
    CITY_LABEL: str = "Melbourne"

    # CORS allow origins (comma-separated). Default empty (no cross-origin).
    CORS_ALLOW_ORIGINS: str = ""

    # HTTP rate limiting
    RATE_LIMIT_ENABLED: bool = True
    RATE_LIMIT_REQUESTS: int = 300  # per window per client
    RATE_LIMIT_WINDOW_SECONDS: int = 60
    TRUSTED_PROXIES: str = ""

    # Text-generation providers
    PROVIDERS_ENABLED: str = "ollama,openai,anthropic"
    OLLAMA_ENDPOINT: str = "http://localhost:11434"
    OLLAMA_MODEL: str = "llama3.2:3b"
    OPENAI_API_KEY: str | None = None
    OPENAI_API_BASE: str = "https://api.openai.com/v1"
    OPENAI_MODEL: str = "gpt-3.5-turbo"
    ANTHROPIC_API_KEY: str | None = None
    ANTHROPIC_API_BASE: str = "https://api.anthropic.com/v1"
    ANTHROPIC_MODEL: str = "claude-3-haiku-20240307"
    PROVIDER_PROBE_TIMEOUT_SECONDS: float = 2.0
    PROVIDER_GENERATION_TIMEOUT_SECONDS: float = 10.0
    PROVIDER_CONNECT_TIMEOUT_SECONDS: float = 2.0
    PROVIDER_CACHE_TTL_SECONDS: float = 300.0

    # Guardrails
    FAST_PATH_ENABLED: bool = True
    FAST_PATH_UNAUTHENTICATED: bool = True
    FAST_PATH_PATTERNS: str = (
        "restaurant,cafe,salon,hair,beauty,food,dining,italian,chinese,thai,indian"
    )
    FAST_PATH_BUSINESS_NAMES: str = "spice pavilion"
    QUERY_MAX_LENGTH: int = 500
    QUERY_RATE_LIMIT_PER_MINUTE: int = 20
    NARRATION_MAX_CHARS: int = 500
    CONVERSATION_HISTORY_LIMIT: int = 6

    # Observability
    SENTRY_DSN: str | None = None
    SENTRY_ENVIRONMENT: str = "development"
    SENTRY_RELEASE: str | None = None
    SENTRY_TRACES_SAMPLE_RATE: float = 0.2

    @property
    def allow_origins(self) -> list[str]:
        s = (self.CORS_ALLOW_ORIGINS or "").strip()
        if s == "*":
            return ["*"]
        if s == "":
            return []
        return [part.strip() for part in s.split(",") if part.strip()]

    @property
    def data_dir(self) -> Path:
        # Blank DATA_DIR values count as unset rather than Path(".").
        def _materialize(path: Path) -> Path:
            path.mkdir(parents=True, exist_ok=True)
            return path

        raw_env = os.getenv("DATA_DIR")
        if raw_env is not None:
            trimmed = raw_env.strip()
            if trimmed:
                return _materialize(Path(trimmed).expanduser().resolve())
            return _materialize(Path.home() / ".local-discovery-data")

        if self.DATA_DIR is not None:
            candidate = Path(self.DATA_DIR).expanduser()
            candidate_str = str(candidate).strip()
            if candidate_str and candidate_str not in {".", "./", ".\\"}:
                return _materialize(candidate.resolve())
        return _materialize(Path.home() / ".local-discovery-data")

    @property
    def catalog_path(self) -> Path:
        return self.data_dir / self.CATALOG_FILENAME

    @property
    def enabled_providers(self) -> list[str]:
        return _split_csv(self.PROVIDERS_ENABLED)

    @property
    def fast_path_policy(self) -> FastPathSettings:
        return FastPathSettings(
            enabled=self.FAST_PATH_ENABLED,
            allow_unauthenticated=self.FAST_PATH_UNAUTHENTICATED,
            category_patterns=_split_csv(self.FAST_PATH_PATTERNS),
            business_names=_split_csv(self.FAST_PATH_BUSINESS_NAMES),
        )


@dataclass(slots=True)
class FastPathSettings:
    enabled: bool = True
    allow_unauthenticated: bool = True
    category_patterns: list[str] = field(default_factory=list)
    business_names: list[str] = field(default_factory=list)


def _split_csv(payload: str | None) -> list[str]:
    if not payload:
        return []
    return [part.strip().lower() for part in payload.split(",") if part.strip()]


settings = Settings()
