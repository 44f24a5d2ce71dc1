"""Explicit success/degraded results for calls that may fall back."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Union


@dataclass(frozen=True)
class Generated:
    text: str
    provider: str
    attempts: int = 1

    @property
    def degraded(self) -> bool:
        return False


@dataclass(frozen=True)
class Extracted:
    data: dict[str, Any]
    provider: str

    @property
    def degraded(self) -> bool:
        return False


@dataclass(frozen=True)
class Degraded:
    """Fallback outcome; `text` carries the deterministic replacement when one exists."""

    reason: str
    text: str = ""
    attempts: int = 0

    @property
    def degraded(self) -> bool:
        return True


GenerationResult = Union[Generated, Degraded]
StructuredResult = Union[Extracted, Degraded]

__all__ = ["Degraded", "Extracted", "Generated", "GenerationResult", "StructuredResult"]
