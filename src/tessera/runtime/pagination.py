"""
Pagination translator.

Decides whether a list response is paged. Paged and unpaged responses share
the same flat-array body; paging metadata travels in X-* headers only.
"""

from __future__ import annotations

import math
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from tessera.specs.entity import EntitySpec

MIN_PER_PAGE = 1
MAX_PER_PAGE = 100


@dataclass(frozen=True)
class Paginated:
    page: int
    per_page: int

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.per_page


@dataclass(frozen=True)
class Unpaged:
    pass


PageDecision = Paginated | Unpaged


def _to_int(raw: Any) -> int:
    """Non-numeric input counts as 0."""
    if isinstance(raw, bool):
        return int(raw)
    if isinstance(raw, int):
        return raw
    try:
        return int(float(str(raw).strip()))
    except (ValueError, OverflowError):
        return 0


def clamp_per_page(raw: Any) -> int:
    return max(MIN_PER_PAGE, min(_to_int(raw), MAX_PER_PAGE))


def decide(entity: EntitySpec, params: Mapping[str, Any]) -> PageDecision:
    """
    Paged on an explicit ``per_page`` or when the entity enables pagination.

    Examples:
        per_page=0 -> 1, per_page=500 -> 100, page=-3 -> 1
        per_page= (empty) -> same as absent
    """
    raw_per_page = params.get("per_page")
    if isinstance(raw_per_page, str) and not raw_per_page.strip():
        raw_per_page = None
    if raw_per_page is None and not entity.pagination_enabled:
        return Unpaged()

    per_page = clamp_per_page(entity.per_page if raw_per_page is None else raw_per_page)
    page = max(1, _to_int(params.get("page", 1)))
    return Paginated(page=page, per_page=per_page)


@dataclass(frozen=True)
class Page:
    """One page of results plus its metadata."""

    items: list[dict[str, Any]]
    total: int
    page: int
    per_page: int

    @property
    def last_page(self) -> int:
        return max(1, math.ceil(self.total / self.per_page))

    def headers(self) -> dict[str, str]:
        return {
            "X-Current-Page": str(self.page),
            "X-Last-Page": str(self.last_page),
            "X-Per-Page": str(self.per_page),
            "X-Total": str(self.total),
        }
