"""
Unit tests for the paged list traversal.
"""

import pytest

from shared.errors import PaginationError
from service_pagerduty_cache.app.pagination import Page, PageCursor, list_all


class PagedUpstream:
    """Serves ``total`` numbered records in offset/limit pages."""

    def __init__(self, total: int, max_limit: int = None):
        self.total = total
        self.max_limit = max_limit
        self.requests = []

    async def fetch(self, offset: int, limit: int) -> Page:
        self.requests.append((offset, limit))
        if self.max_limit:
            limit = min(limit, self.max_limit)
        records = [{"id": f"P{i:04d}"} for i in range(offset, min(offset + limit, self.total))]
        return Page(
            records=records,
            more=offset + limit < self.total,
            total=self.total,
            offset=offset,
            limit=limit,
        )


class TestListAll:
    """Test cases for list_all."""

    @pytest.mark.asyncio
    async def test_collects_every_page(self):
        """250 records in pages of 100 take three requests."""
        upstream = PagedUpstream(total=250)

        records = await list_all(upstream.fetch, limit=100)

        assert len(records) == 250
        ids = [r["id"] for r in records]
        assert len(set(ids)) == 250
        assert ids == [f"P{i:04d}" for i in range(250)]
        assert [offset for offset, _ in upstream.requests] == [0, 100, 200]

    @pytest.mark.asyncio
    async def test_single_page(self):
        upstream = PagedUpstream(total=7)

        records = await list_all(upstream.fetch, limit=100)

        assert len(records) == 7
        assert upstream.requests == [(0, 100)]

    @pytest.mark.asyncio
    async def test_empty_collection(self):
        upstream = PagedUpstream(total=0)

        assert await list_all(upstream.fetch) == []
        assert len(upstream.requests) == 1

    @pytest.mark.asyncio
    async def test_follows_upstream_page_size(self):
        """When the upstream caps the page size, offsets advance by the echoed limit."""
        upstream = PagedUpstream(total=120, max_limit=50)

        records = await list_all(upstream.fetch, limit=100)

        assert len(records) == 120
        assert [offset for offset, _ in upstream.requests] == [0, 50, 100]

    @pytest.mark.asyncio
    async def test_error_propagates_without_partial_results(self):
        calls = []

        async def fetch(offset, limit):
            calls.append(offset)
            if offset == 100:
                raise RuntimeError("upstream exploded")
            return Page(records=[{"id": str(i)} for i in range(limit)], more=True, limit=limit)

        with pytest.raises(RuntimeError, match="upstream exploded"):
            await list_all(fetch, limit=100)

        assert calls == [0, 100]

    @pytest.mark.asyncio
    async def test_stops_on_empty_page_claiming_more(self):
        requests = []

        async def fetch(offset, limit):
            requests.append(offset)
            if offset == 0:
                return Page(records=[{"id": "a"}], more=True, limit=1)
            return Page(records=[], more=True, limit=1)

        records = await list_all(fetch, limit=1)

        assert records == [{"id": "a"}]
        assert requests == [0, 1]

    @pytest.mark.asyncio
    async def test_max_pages_bounds_traversal(self):
        upstream = PagedUpstream(total=1000)

        with pytest.raises(PaginationError):
            await list_all(upstream.fetch, limit=100, max_pages=2)

        assert len(upstream.requests) == 2

    @pytest.mark.asyncio
    async def test_rejects_non_positive_limit(self):
        upstream = PagedUpstream(total=10)

        with pytest.raises(ValueError):
            await list_all(upstream.fetch, limit=0)

        assert upstream.requests == []


def test_cursor_advance_uses_requested_limit_without_echo():
    cursor = PageCursor(offset=0, limit=25)

    cursor.advance(Page(records=[{}] * 25, more=True))

    assert cursor.offset == 25
    assert cursor.more is True
