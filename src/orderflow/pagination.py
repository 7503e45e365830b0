"""Pagination helper."""

from dataclasses import dataclass
from math import ceil
from typing import Any, Callable, Generic, TypeVar

T = TypeVar("T")

DEFAULT_PAGE = 1
DEFAULT_LIMIT = 10
MAX_LIMIT = 100


@dataclass
class Page(Generic[T]):
    """One page of results plus the numbers needed to navigate."""

    data: list[T]
    total: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        return ceil(self.total / self.limit) if self.limit else 0

    @property
    def has_next_page(self) -> bool:
        return self.page < self.total_pages

    @property
    def has_previous_page(self) -> bool:
        return self.page > 1

    def to_dict(self, serialize: Callable[[T], Any]) -> dict[str, Any]:
        return {
            "data": [serialize(item) for item in self.data],
            "total": self.total,
            "page": self.page,
            "limit": self.limit,
            "total_pages": self.total_pages,
            "has_next_page": self.has_next_page,
            "has_previous_page": self.has_previous_page,
        }


def paginate(
    find_many: Callable[[int, int], list[T]],
    count: Callable[[], int],
    page: int | None = None,
    limit: int | None = None,
) -> Page[T]:
    """
    Fetch one page.

    Args:
        find_many: Called with (skip, take).
        count: Returns the total number of matching rows.
        page: 1-based page number (missing or < 1 means the first page).
        limit: Page size (missing or < 1 means the default, capped at MAX_LIMIT).
    """
    page = page if page and page > 0 else DEFAULT_PAGE
    limit = min(limit if limit and limit > 0 else DEFAULT_LIMIT, MAX_LIMIT)
    skip = (page - 1) * limit
    return Page(data=find_many(skip, limit), total=count(), page=page, limit=limit)
