from __future__ import annotations

import asyncio
import json
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Any

from ..metrics import catalog_size
from ..settings import settings
from .matcher import RelevanceMatcher, coerce_catalog
from .types import BusinessRecord, SearchOutcome

logger = logging.getLogger(__name__)

SAMPLE_BUSINESSES: tuple[dict[str, Any], ...] = (
    {
        "id": "sample-1",
        "name": "Magical Bites",
        "description": "Fusion restaurant with Asian-Australian flavours. Famous for laksa ramen.",
        "industry_type": "restaurant",
        "slug": "magical-bites",
        "status": "active",
        "location": "Collins Street",
    },
    {
        "id": "sample-2",
        "name": "Enchanted Cuts Salon",
        "description": "Premium hair salon with expert colourists and stylists.",
        "industry_type": "salon",
        "slug": "enchanted-cuts-salon",
        "status": "active",
        "location": "Chapel Street",
    },
    {
        "id": "sample-3",
        "name": "Spice Kingdom",
        "description": "Authentic Indian restaurant with traditional tandoor specialties.",
        "industry_type": "restaurant",
        "slug": "spice-kingdom",
        "status": "active",
        "location": "Melbourne CBD",
    },
)


class CatalogUnavailable(RuntimeError):
    """Raised when a catalog source cannot be read."""


class CatalogSource(ABC):
    name = "catalog"

    @abstractmethod
    async def fetch_active(self) -> list[BusinessRecord]:
        """Return active businesses; raise CatalogUnavailable when the store is unreachable."""


class StaticCatalogSource(CatalogSource):
    name = "static"

    def __init__(self, entries: Iterable[BusinessRecord | Mapping[str, Any]], name: str | None = None) -> None:
        self._records = coerce_catalog(entries)
        if name:
            self.name = name

    async def fetch_active(self) -> list[BusinessRecord]:
        return [record for record in self._records if record.status == "active"]


class JsonCatalogSource(CatalogSource):
    """Reads a businesses.json snapshot: a list of rows or {"businesses": [...]}."""

    name = "json_file"

    def __init__(self, path: Path | None = None) -> None:
        self.path = Path(path) if path is not None else settings.catalog_path

    def _load(self) -> list[Any]:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError as exc:
            raise CatalogUnavailable(f"Catalog file not found: {self.path}") from exc
        except OSError as exc:
            raise CatalogUnavailable(f"Catalog file unreadable: {exc}") from exc
        try:
            payload = json.loads(raw) if raw.strip() else []
        except json.JSONDecodeError as exc:
            raise CatalogUnavailable(f"Catalog file is not valid JSON: {exc}") from exc
        if isinstance(payload, dict):
            payload = payload.get("businesses", [])
        if not isinstance(payload, list):
            raise CatalogUnavailable("Catalog file must hold a list of businesses")
        return payload

    async def fetch_active(self) -> list[BusinessRecord]:
        rows = await asyncio.to_thread(self._load)
        active = [
            row for row in rows
            if isinstance(row, Mapping) and str(row.get("status") or "active").lower() == "active"
        ]
        return list(coerce_catalog(active))


class CatalogService:
    """Owns the catalog snapshot and keeps the matcher index in step with it."""

    def __init__(
        self,
        source: CatalogSource | None = None,
        *,
        matcher: RelevanceMatcher | None = None,
        fallback: CatalogSource | None = None,
        refresh_interval: float | None = None,
    ) -> None:
        self.source = source or JsonCatalogSource()
        self.fallback = fallback or StaticCatalogSource(SAMPLE_BUSINESSES, name="sample_data")
        self.matcher = matcher or RelevanceMatcher()
        self._refresh_interval = (
            refresh_interval
            if refresh_interval is not None
            else settings.CATALOG_REFRESH_INTERVAL_SECONDS
        )
        self._refresh_task: asyncio.Task | None = None
        self._running = False
        self.data_source: str | None = None
        self.refreshed_at: float | None = None

    @classmethod
    def from_records(cls, entries: Iterable[BusinessRecord | Mapping[str, Any]]) -> CatalogService:
        """A service over a fixed in-memory catalog, indexed immediately."""
        source = StaticCatalogSource(list(entries))
        service = cls(source, fallback=source)
        service._install([r for r in source._records if r.status == "active"], source.name)
        return service

    @property
    def records(self) -> tuple[BusinessRecord, ...]:
        return self.matcher.index.records

    def __len__(self) -> int:
        return len(self.matcher.index)

    def search(self, query: str) -> SearchOutcome:
        return self.matcher.search(query)

    def _install(self, records: list[BusinessRecord], source_name: str) -> None:
        self.matcher.rebuild(records)
        self.data_source = source_name
        self.refreshed_at = time.time()
        catalog_size.set(len(records))

    async def refresh(self) -> int:
        """Fetch the catalog and swap in a new index; the sample catalog covers an empty store."""
        try:
            records = await self.source.fetch_active()
            source_name = self.source.name
        except CatalogUnavailable as exc:
            logger.warning("Catalog source %s unavailable: %s", self.source.name, exc)
            records = []
            source_name = self.source.name
        if not records:
            if self.records and self.data_source == self.source.name:
                logger.warning("Catalog refresh returned nothing; keeping previous snapshot")
                return len(self.records)
            records = await self.fallback.fetch_active()
            source_name = self.fallback.name
            logger.info("Using %s catalog (%s businesses)", source_name, len(records))
        self._install(records, source_name)
        return len(records)

    async def startup(self) -> None:
        if self._refresh_task:
            return
        await self.refresh()
        if self._refresh_interval <= 0:
            return
        self._running = True
        self._refresh_task = asyncio.get_running_loop().create_task(self._refresh_loop())

    async def shutdown(self) -> None:
        self._running = False
        if self._refresh_task:
            self._refresh_task.cancel()
            try:
                await self._refresh_task
            except asyncio.CancelledError:
                pass
            self._refresh_task = None

    async def _refresh_loop(self) -> None:
        try:
            while self._running:
                await asyncio.sleep(self._refresh_interval)
                try:
                    await self.refresh()
                except Exception:
                    logger.exception("Unexpected catalog refresh failure")
        except asyncio.CancelledError:
            pass

    def status(self) -> dict[str, Any]:
        return {
            "catalog_size": len(self),
            "catalog_source": self.data_source,
            "catalog_refreshed_at": self.refreshed_at,
        }


__all__ = [
    "SAMPLE_BUSINESSES",
    "CatalogService",
    "CatalogSource",
    "CatalogUnavailable",
    "JsonCatalogSource",
    "StaticCatalogSource",
]
