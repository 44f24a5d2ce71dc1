import os
import sys
from pathlib import Path

import pytest
import sentry_sdk
from fastapi.testclient import TestClient

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# Disable outbound Sentry calls during tests
sentry_sdk.init = lambda *args, **kwargs: None  # type: ignore[assignment]
os.environ["SENTRY_DSN"] = ""
os.environ["PROVIDERS_ENABLED"] = ""
test_data_dir = ROOT / "artifacts" / "test-data"
test_data_dir.mkdir(parents=True, exist_ok=True)
os.environ["DATA_DIR"] = str(test_data_dir)

from backend.app.discovery import CatalogService, DiscoveryComposer, SecurityFilter  # noqa: E402
from backend.app.discovery.guardrails import FastPathPolicy, QueryThrottle  # noqa: E402
from backend.app.discovery.providers.base import Provider, ProviderUnavailable  # noqa: E402
from backend.app.discovery.providers.registry import ProviderCache, ProviderRegistry  # noqa: E402
from backend.app.health import health_checker  # noqa: E402
from backend.app.main import app  # noqa: E402
from backend.app.settings import settings  # noqa: E402

CATALOG = [
    {
        "id": "biz-spice",
        "name": "Spice Pavilion CBD",
        "description": "Modern Indian dining with tandoor classics and curries",
        "industryType": "restaurant",
        "slug": "spice-pavilion-cbd",
        "status": "active",
        "location": "Melbourne CBD",
    },
    {
        "id": "biz-roma",
        "name": "Trattoria Roma",
        "description": "Handmade pasta and wood-fired pizza",
        "industryType": "restaurant",
        "slug": "trattoria-roma",
        "status": "active",
        "location": "South Yarra",
    },
    {
        "id": "biz-cucina",
        "name": "Bella Cucina",
        "description": "Family-run kitchen serving fresh pasta",
        "industryType": "restaurant",
        "slug": "bella-cucina",
        "status": "active",
        "location": "Fitzroy",
    },
    {
        "id": "biz-glow",
        "name": "Glow Hair Studio",
        "description": "Cuts, colour and styling by senior stylists",
        "industryType": "salon",
        "slug": "glow-hair-studio",
        "status": "active",
        "location": "Richmond",
    },
    {
        "id": "biz-closed",
        "name": "Shuttered Diner",
        "description": "Closed for renovations",
        "industryType": "restaurant",
        "slug": "shuttered-diner",
        "status": "inactive",
    },
]


class ScriptedProvider(Provider):
    """Test double that records calls and replays canned behaviour."""

    def __init__(
        self,
        name: str,
        *,
        available: bool = True,
        text: str | None = "Scripted narration",
        structured: dict | None = None,
        error: Exception | None = None,
        cost: float = 0.0,
        latency: float = 500.0,
        local: bool = False,
    ) -> None:
        self.name = name
        self.local = local
        self._available = available
        self._text = text
        self._structured = structured
        self._error = error
        self._cost = cost
        self._latency = latency
        self.probe_calls = 0
        self.generate_calls = 0
        self.structured_calls = 0

    async def is_available(self) -> bool:
        self.probe_calls += 1
        return self._available

    async def generate(self, prompt, options=None):
        self.generate_calls += 1
        if self._error is not None:
            raise self._error
        if not self._text:
            raise ProviderUnavailable(f"{self.name} returned nothing")
        return self._text

    async def extract_structured(self, prompt):
        self.structured_calls += 1
        if self._error is not None:
            raise self._error
        if self._structured is None:
            raise ProviderUnavailable(f"{self.name} returned non-JSON output")
        return self._structured

    def cost(self) -> float:
        return self._cost

    def latency(self) -> float:
        return self._latency


@pytest.fixture
def scripted_provider():
    return ScriptedProvider


@pytest.fixture
def catalog_rows():
    return [dict(row) for row in CATALOG]


@pytest.fixture
def catalog_service(catalog_rows):
    return CatalogService.from_records(catalog_rows)


@pytest.fixture
def make_registry():
    def _make(*providers, ttl: float = 300.0, clock=None):
        cache = ProviderCache(ttl, clock=clock) if clock else ProviderCache(ttl)
        return ProviderRegistry(providers, cache=cache, probe_timeout=0.5, generation_timeout=0.5)

    return _make


@pytest.fixture
def make_composer(catalog_service):
    def _make(registry=None, *, fast_path=None, throttle=None, intention_guardrail=None):
        security = SecurityFilter(
            fast_path=fast_path or FastPathPolicy(enabled=False),
            throttle=throttle or QueryThrottle(limit=1000),
        )
        return DiscoveryComposer(
            catalog_service,
            registry=registry,
            security=security,
            intention_guardrail=intention_guardrail,
            city="Melbourne",
        )

    return _make


@pytest.fixture
def client(make_composer):
    app.state.composer = make_composer()
    with TestClient(app, base_url="http://api.testserver") as test_client:
        yield test_client
    app.state.composer = None


@pytest.fixture(autouse=True)
def reset_state():
    settings.RATE_LIMIT_ENABLED = False
    settings.SENTRY_DSN = None
    settings.OPENAI_API_KEY = None
    settings.ANTHROPIC_API_KEY = None
    limiter = getattr(app.state, "rate_limiter", None)
    if limiter:
        limiter.reset()
    health_checker.clear_cache()
    yield
