"""
Paged list traversal.

Walks an offset/limit list endpoint until the upstream reports that no
more pages remain, accumulating every record into one ordered list. The
traversal is generic over the record type and only knows about the page
fetch callable, never about cache collections.
"""

from dataclasses import dataclass, field
from typing import Awaitable, Callable, Generic, List, Optional, TypeVar

from shared.errors import PaginationError
from shared.logging import get_logger


T = TypeVar("T")

DEFAULT_PAGE_LIMIT = 100

logger = get_logger("pagerduty_cache.pagination")


@dataclass
class Page(Generic[T]):
    """One page of a list response."""

    records: List[T] = field(default_factory=list)
    more: bool = False
    total: Optional[int] = None
    offset: Optional[int] = None
    limit: Optional[int] = None


@dataclass
class PageCursor:
    """Position of a traversal; lives only for one ``list_all`` call."""

    offset: int = 0
    limit: int = DEFAULT_PAGE_LIMIT
    more: bool = True

    def advance(self, page: Page) -> None:
        step = page.limit if page.limit else self.limit
        self.offset += step
        self.more = page.more


PageFetcher = Callable[[int, int], Awaitable[Page[T]]]


async def list_all(
    fetch_page: PageFetcher,
    *,
    limit: int = DEFAULT_PAGE_LIMIT,
    max_pages: Optional[int] = None,
) -> List[T]:
    """Fetch every page and return the concatenated records.

    ``fetch_page(offset, limit)`` is awaited once per page. Any exception it
    raises propagates unchanged and nothing accumulated so far is returned.
    """
    if limit <= 0:
        raise ValueError("page limit must be positive")

    cursor = PageCursor(offset=0, limit=limit)
    records: List[T] = []
    pages = 0

    while cursor.more:
        if max_pages is not None and pages >= max_pages:
            raise PaginationError(
                f"Traversal exceeded {max_pages} pages",
                details={"offset": cursor.offset, "records": len(records)},
            )

        page = await fetch_page(cursor.offset, cursor.limit)
        pages += 1
        records.extend(page.records)

        if page.more and not page.records:
            logger.warning(
                "Upstream reported more pages but returned none; stopping",
                offset=cursor.offset,
                total=page.total,
            )
            break

        cursor.advance(page)

    logger.debug("Traversal complete", pages=pages, records=len(records))
    return records
