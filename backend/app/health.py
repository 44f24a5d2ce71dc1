"""Health check module with dependency verification."""

from __future__ import annotations

import time
from typing import Any

from .settings import settings


def _is_configured(value: str | None) -> bool:
    """Return True when a config string is non-empty after trimming."""
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    return bool(value)


class HealthChecker:
    """Health checker for the catalog and text providers."""

    def __init__(self) -> None:
        self._check_cache: dict[str, tuple[dict[str, Any], float]] = {}
        self._cache_ttl = 30.0  # Cache health checks for 30 seconds

    async def check_all(self, composer=None) -> dict[str, Any]:
        """
        Check health of all dependencies.

        An empty catalog makes the service degraded; a missing provider does not,
        since responses fall back to deterministic text.
        """
        checks = {
            "catalog": self._check_catalog(composer),
            "providers": await self._check_providers(composer),
            "sentry": self._check_sentry() if _is_configured(settings.SENTRY_DSN) else {"status": "disabled"},
        }
        all_ok = all(
            check.get("status") in {"ok", "disabled", "fallback"} for check in checks.values()
        )
        return {
            "status": "healthy" if all_ok else "degraded",
            "timestamp": time.time(),
            "checks": checks,
        }

    def _check_catalog(self, composer) -> dict[str, Any]:
        if composer is None:
            return {"status": "error", "error": "Discovery engine not initialised"}
        try:
            status = composer.catalog.status()
        except Exception as exc:
            return {"status": "error", "error": str(exc), "error_type": type(exc).__name__}
        if not status["catalog_size"]:
            return {"status": "error", "error": "Catalog is empty", **status}
        return {"status": "ok", "storage_path": str(settings.data_dir), **status}

    async def _check_providers(self, composer) -> dict[str, Any]:
        if composer is None or composer.registry is None:
            return {"status": "disabled", "reason": "No provider registry"}
        cached = self._get_cached_check("providers")
        if cached is not None:
            return cached
        try:
            active = await composer.registry.select_provider()
        except Exception as exc:
            result = {"status": "error", "error": str(exc), "error_type": type(exc).__name__}
        else:
            if active is None:
                result = {"status": "fallback", "active_provider": "fallback"}
            else:
                result = {"status": "ok", "active_provider": active.name}
        self._cache_check("providers", result)
        return result

    def _check_sentry(self) -> dict[str, Any]:
        """Check if Sentry is configured (doesn't actually test connectivity)."""
        cached = self._get_cached_check("sentry")
        if cached is not None:
            return cached
        dsn = settings.SENTRY_DSN or ""
        if "@" in dsn and "//" in dsn:
            result = {
                "status": "ok",
                "environment": settings.SENTRY_ENVIRONMENT,
                "release": settings.SENTRY_RELEASE or "unset",
            }
        else:
            result = {"status": "error", "error": "Invalid SENTRY_DSN format"}
        self._cache_check("sentry", result)
        return result

    def _get_cached_check(self, key: str) -> dict[str, Any] | None:
        """Get cached health check result if still valid."""
        if key not in self._check_cache:
            return None

        result, timestamp = self._check_cache[key]
        if time.time() - timestamp > self._cache_ttl:
            return None

        return result

    def _cache_check(self, key: str, result: dict[str, Any]) -> None:
        """Cache a health check result."""
        self._check_cache[key] = (result, time.time())

    def clear_cache(self) -> None:
        """Clear cached dependency checks (useful for tests)."""
        self._check_cache.clear()


# Global health checker instance
health_checker = HealthChecker()


__all__ = ["health_checker", "HealthChecker"]
