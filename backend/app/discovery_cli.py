#!/usr/bin/env python3
from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from backend.app.discovery import (  # noqa: E402
    CatalogService,
    DiscoveryComposer,
    IntentionGuardrail,
    JsonCatalogSource,
    SecurityFilter,
)
from backend.app.discovery.providers import build_default_registry  # noqa: E402
from backend.app.discovery.providers.http import close_clients  # noqa: E402
from backend.app.discovery.types import DiscoveryContext  # noqa: E402
from backend.app.schemas import DiscoveryResponse  # noqa: E402


async def run(args: argparse.Namespace) -> DiscoveryResponse:
    source = JsonCatalogSource(Path(args.catalog)) if args.catalog else None
    catalog = CatalogService(source, refresh_interval=0)
    await catalog.refresh()
    composer = DiscoveryComposer(
        catalog,
        registry=None if args.offline else build_default_registry(),
        security=SecurityFilter(),
        intention_guardrail=IntentionGuardrail(),
    )
    context = DiscoveryContext(
        user_location=args.location,
        authenticated=args.authenticated,
        user_id="cli" if args.authenticated else None,
    )
    try:
        return await composer.compose(args.query, context)
    finally:
        await close_clients()


def main() -> None:
    parser = argparse.ArgumentParser(description="Discovery CLI for local business search.")
    parser.add_argument("query", help="Free-text question, e.g. 'italian near the cbd'")
    parser.add_argument("--catalog", help="Path to a businesses.json snapshot (defaults to DATA_DIR)")
    parser.add_argument("--location", help="Location hint passed as user context")
    parser.add_argument(
        "--authenticated",
        action="store_true",
        help="Treat the caller as signed in (disables the unauthenticated fast path)",
    )
    parser.add_argument(
        "--offline", action="store_true", help="Skip text providers and use deterministic text only"
    )
    parser.add_argument("--json", action="store_true", help="Emit JSON instead of text")
    args = parser.parse_args()

    response = asyncio.run(run(args))

    if args.json:
        print(json.dumps(response.model_dump(), ensure_ascii=False, indent=2))
        return
    print(response.understanding)
    for business in response.recommendations:
        print(f"  * {business.name} ({business.industry_type}, {business.location})")
    for insight in response.insights:
        print(f"  - {insight}")


if __name__ == "__main__":
    main()
