"""Unit tests for Redis client singleton and active-hold tracking."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from shared.redis_client import (
    ACTIVE_HOLDS_KEY,
    get_active_hold_contacts,
    get_redis_client,
    track_active_hold,
    untrack_active_hold,
)


@pytest.fixture(autouse=True)
def clear_redis_cache():
    get_redis_client.cache_clear()
    yield
    get_redis_client.cache_clear()


class TestRedisClient:
    """Tests for Redis client singleton."""

    def test_get_redis_client_returns_instance(self):
        """Test that get_redis_client returns a Redis instance."""
        with patch("shared.redis_client.redis.from_url") as mock_from_url:
            mock_client = MagicMock()
            mock_from_url.return_value = mock_client

            result = get_redis_client()

            assert result == mock_client
            mock_from_url.assert_called_once()

    def test_get_redis_client_is_singleton(self):
        """Test that get_redis_client returns the same instance (cached)."""
        with patch("shared.redis_client.redis.from_url") as mock_from_url:
            mock_from_url.return_value = MagicMock()

            result1 = get_redis_client()
            result2 = get_redis_client()

            assert result1 is result2
            assert mock_from_url.call_count == 1

    def test_redis_client_configured_with_pool(self):
        """Test that the client decodes responses and uses a bounded pool."""
        with patch("shared.redis_client.redis.from_url") as mock_from_url:
            get_redis_client()

            kwargs = mock_from_url.call_args.kwargs
            assert mock_from_url.call_args.args[0] == "redis://localhost:6379/0"
            assert kwargs["decode_responses"] is True
            assert kwargs["max_connections"] == 20


class TestActiveHolds:
    """Tests for the active-hold set used by the expiration worker."""

    @pytest.mark.asyncio
    async def test_track_and_untrack(self):
        client = MagicMock()
        client.sadd = AsyncMock()
        client.srem = AsyncMock()
        with patch("shared.redis_client.get_redis_client", return_value=client):
            await track_active_hold("contact-1")
            await untrack_active_hold("contact-1")

        client.sadd.assert_awaited_once_with(ACTIVE_HOLDS_KEY, "contact-1")
        client.srem.assert_awaited_once_with(ACTIVE_HOLDS_KEY, "contact-1")

    @pytest.mark.asyncio
    async def test_members_are_sorted(self):
        client = MagicMock()
        client.smembers = AsyncMock(return_value={"c2", "c1"})
        with patch("shared.redis_client.get_redis_client", return_value=client):
            assert await get_active_hold_contacts() == ["c1", "c2"]
