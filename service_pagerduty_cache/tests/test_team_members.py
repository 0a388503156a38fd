"""
Tests for the lazily populated team membership cache.
"""

from unittest.mock import AsyncMock

import pytest

from shared.errors import CacheDisabledError, UpstreamError
from service_pagerduty_cache.app.cache.team_members import TeamMembersCache


MEMBERS = [
    {"user": {"id": "PUSER01", "type": "user_reference"}, "role": "manager"},
    {"user": {"id": "PUSER02", "type": "user_reference"}, "role": "responder"},
]


@pytest.fixture
def upstream():
    client = AsyncMock()
    client.list_team_members.return_value = MEMBERS
    return client


class TestTeamMembersCache:
    """Test cases for TeamMembersCache."""

    @pytest.mark.asyncio
    async def test_miss_fetches_then_hit_serves_from_cache(self, cache, upstream):
        members = TeamMembersCache(cache, upstream)

        first = await members.get_members("PTEAM01")
        second = await members.get_members("PTEAM01")

        assert first == MEMBERS
        assert second == MEMBERS
        upstream.list_team_members.assert_awaited_once_with("PTEAM01")

    @pytest.mark.asyncio
    async def test_invalidate_forces_refetch(self, cache, upstream):
        members = TeamMembersCache(cache, upstream)
        await members.get_members("PTEAM01")

        assert await members.invalidate("PTEAM01") is True
        await members.get_members("PTEAM01")

        assert upstream.list_team_members.await_count == 2

    @pytest.mark.asyncio
    async def test_invalidate_unknown_team(self, cache, upstream):
        members = TeamMembersCache(cache, upstream)

        assert await members.invalidate("PNOPE") is False

    @pytest.mark.asyncio
    async def test_teams_are_cached_independently(self, cache, upstream):
        members = TeamMembersCache(cache, upstream)
        await members.get_members("PTEAM01")
        await members.get_members("PTEAM02")

        await members.invalidate("PTEAM01")
        await members.get_members("PTEAM02")

        assert upstream.list_team_members.await_count == 2

    @pytest.mark.asyncio
    async def test_disabled_cache_always_fetches(self, disabled_cache, upstream):
        members = TeamMembersCache(disabled_cache, upstream)

        await members.get_members("PTEAM01")
        await members.get_members("PTEAM01")

        assert upstream.list_team_members.await_count == 2

    @pytest.mark.asyncio
    async def test_invalidate_when_disabled_raises(self, disabled_cache, upstream):
        members = TeamMembersCache(disabled_cache, upstream)

        with pytest.raises(CacheDisabledError):
            await members.invalidate("PTEAM01")

        # The quiet variant swallows it for mutating callers
        await members.invalidate_quietly("PTEAM01")

    @pytest.mark.asyncio
    async def test_backing_store_failure_falls_through_to_upstream(self, cache, upstream, fake_redis):
        fake_redis.fail_commands.update({"hget", "hset"})
        members = TeamMembersCache(cache, upstream)

        assert await members.get_members("PTEAM01") == MEMBERS
        assert "pagerduty:team_members" not in fake_redis.hashes

    @pytest.mark.asyncio
    async def test_invalidate_quietly_tolerates_backend_failure(self, cache, upstream, fake_redis):
        fake_redis.fail_commands.add("hdel")
        members = TeamMembersCache(cache, upstream)

        await members.invalidate_quietly("PTEAM01")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("raw", ["\x00garbage", '{"members": []}'])
    async def test_unreadable_entry_is_refetched(self, cache, upstream, fake_redis, raw):
        fake_redis.hashes["pagerduty:team_members"] = {"PTEAM01": raw}
        members = TeamMembersCache(cache, upstream)

        assert await members.get_members("PTEAM01") == MEMBERS

        upstream.list_team_members.assert_awaited_once_with("PTEAM01")
        assert await members.get_members("PTEAM01") == MEMBERS
        assert upstream.list_team_members.await_count == 1

    @pytest.mark.asyncio
    async def test_upstream_failure_is_not_cached(self, cache, upstream, fake_redis):
        upstream.list_team_members.side_effect = UpstreamError("boom", status_code=502)
        members = TeamMembersCache(cache, upstream)

        with pytest.raises(UpstreamError):
            await members.get_members("PTEAM01")

        assert "pagerduty:team_members" not in fake_redis.hashes

    @pytest.mark.asyncio
    async def test_records_hit_and_miss(self, cache, upstream, metrics):
        members = TeamMembersCache(cache, upstream)

        await members.get_members("PTEAM01")
        await members.get_members("PTEAM01")

        assert metrics.get_sample_value("team_members_cache_total", result="miss") == 1.0
        assert metrics.get_sample_value("team_members_cache_total", result="hit") == 1.0
