"""
Unit tests for the Redis rule snapshot cache.
"""

import json
import pytest
from unittest.mock import AsyncMock, MagicMock, patch

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from prometheus_client import CollectorRegistry

from shared.errors import ExternalServiceError
from shared.metrics import MetricsCollector
from service_rules.app.cache.redis_cache import CachingRuleRepository, RedisRuleCache
from service_rules.app.rules.models import (
    BusinessRule, ConditionOperator, RuleAction, RuleCondition, RuleEventType, RuleStatus, RuleType
)


@pytest.fixture
def rule():
    """Create an ACTIVE allocation rule."""
    return BusinessRule(
        rule_id="large-order",
        name="Large order",
        rule_type=RuleType.ALLOCATION,
        status=RuleStatus.ACTIVE,
        priority=80,
        trigger_events=[RuleEventType.ORDER_CREATED],
        conditions=[RuleCondition(field="itemCount", operator=ConditionOperator.GREATER_THAN, value=20,
                                  condition_id="c-0")],
        actions=[RuleAction(action_type="SET_PRIORITY", parameters={"value": "URGENT"}, action_id="a-0")],
        execution_count=4,
    )


class TestRedisRuleCache:
    """Test cases for RedisRuleCache."""

    @pytest.fixture
    def cache(self):
        """Create cache with a mocked Redis client."""
        cache = RedisRuleCache("redis://localhost:6379/0", ttl_seconds=30)
        cache.redis = AsyncMock()
        return cache

    @pytest.mark.asyncio
    async def test_start_failure(self):
        """Test an unreachable Redis raises ExternalServiceError."""
        client = AsyncMock()
        client.ping.side_effect = ConnectionError("refused")

        with patch("service_rules.app.cache.redis_cache.redis.from_url", return_value=client):
            cache = RedisRuleCache("redis://nowhere:6379/0")
            with pytest.raises(ExternalServiceError):
                await cache.start()

    @pytest.mark.asyncio
    async def test_cache_miss(self, cache):
        """Test a missing key returns None."""
        cache.redis.get.return_value = None

        assert await cache.get_eligible_rules(RuleEventType.ORDER_CREATED, "order") is None
        cache.redis.get.assert_called_once_with("rules:eligible:ORDER_CREATED:order")

    @pytest.mark.asyncio
    async def test_set_then_get_snapshot(self, cache, rule):
        """Test a stored snapshot is rebuilt into rules."""
        await cache.set_eligible_rules(RuleEventType.ORDER_CREATED, "Order", [rule])

        key, ttl, payload = cache.redis.setex.call_args.args
        assert key == "rules:eligible:ORDER_CREATED:order"
        assert ttl == 30

        cache.redis.get.return_value = payload
        rules = await cache.get_eligible_rules(RuleEventType.ORDER_CREATED, "order")

        assert rules[0].rule_id == "large-order"
        assert rules[0].conditions[0].operator == ConditionOperator.GREATER_THAN
        assert rules[0].actions[0].parameters == {"value": "URGENT"}
        assert rules[0].execution_count == 4

    @pytest.mark.asyncio
    async def test_ttl_is_clamped(self, cache, rule):
        """Test TTL bounds."""
        await cache.set_eligible_rules(RuleEventType.ORDER_CREATED, None, [rule], ttl_seconds=100000)

        key, ttl, _ = cache.redis.setex.call_args.args
        assert key == "rules:eligible:ORDER_CREATED:*"
        assert ttl == 3600

    @pytest.mark.asyncio
    async def test_redis_errors_degrade_to_miss(self, cache, rule):
        """Test Redis failures never raise."""
        cache.redis.get.side_effect = ConnectionError("gone")
        cache.redis.setex.side_effect = ConnectionError("gone")

        assert await cache.get_eligible_rules(RuleEventType.ORDER_CREATED, "order") is None
        assert await cache.set_eligible_rules(RuleEventType.ORDER_CREATED, "order", [rule]) is False

    @pytest.mark.asyncio
    async def test_corrupt_snapshot_is_a_miss(self, cache):
        """Test undecodable payloads are ignored."""
        cache.redis.get.return_value = json.dumps([{"rule_id": "half"}])

        assert await cache.get_eligible_rules(RuleEventType.ORDER_CREATED, "order") is None

    @pytest.mark.asyncio
    async def test_invalidate_all(self, cache):
        """Test every snapshot key is deleted."""
        cache.redis.keys.return_value = ["rules:eligible:ORDER_CREATED:order", "rules:eligible:ORDER_UPDATED:*"]

        assert await cache.invalidate_all() == 2
        cache.redis.keys.assert_called_once_with("rules:eligible:*")
        cache.redis.delete.assert_called_once_with(
            "rules:eligible:ORDER_CREATED:order", "rules:eligible:ORDER_UPDATED:*"
        )

    @pytest.mark.asyncio
    async def test_cache_stats(self, cache):
        """Test statistics and hit rate."""
        cache.redis.info.return_value = {
            "redis_version": "7.2.0",
            "used_memory_human": "1M",
            "keyspace_hits": 3,
            "keyspace_misses": 1,
        }
        cache.redis.keys.return_value = ["rules:eligible:ORDER_CREATED:order"]

        stats = await cache.get_cache_stats()

        assert stats["snapshot_keys"] == 1
        assert stats["hit_rate"] == 0.75

    @pytest.mark.asyncio
    async def test_health_check(self, cache):
        """Test health check reflects ping."""
        assert await cache.health_check() is True

        cache.redis.ping.side_effect = ConnectionError("down")
        assert await cache.health_check() is False


class TestCachingRuleRepository:
    """Test cases for CachingRuleRepository."""

    @pytest.fixture
    def backing(self, rule):
        """Create mocked underlying repository."""
        repository = MagicMock()
        repository.load_eligible_rules = AsyncMock(return_value=[rule])
        repository.save_rule = AsyncMock(side_effect=lambda r: r)
        repository.delete_rule = AsyncMock(return_value=True)
        repository.increment_execution_count = AsyncMock()
        repository.load_rule = AsyncMock(return_value=rule)
        repository.list_rules = AsyncMock(return_value=([rule], 1))
        return repository

    @pytest.fixture
    def cache(self):
        """Create mocked cache."""
        cache = AsyncMock()
        cache.get_eligible_rules.return_value = None
        return cache

    @pytest.fixture
    def metrics(self):
        """Create metrics collector on an isolated registry."""
        return MetricsCollector("rules", CollectorRegistry())

    @pytest.mark.asyncio
    async def test_miss_reads_through(self, backing, cache, metrics, rule):
        """Test a miss loads from the repository and fills the cache."""
        repository = CachingRuleRepository(backing, cache, metrics)

        rules = await repository.load_eligible_rules(RuleEventType.ORDER_CREATED, "order")

        assert rules == [rule]
        cache.set_eligible_rules.assert_awaited_once_with(RuleEventType.ORDER_CREATED, "order", [rule])
        assert metrics.registry.get_sample_value("rule_cache_lookups_total", {"result": "miss"}) == 1.0

    @pytest.mark.asyncio
    async def test_hit_skips_repository(self, backing, cache, metrics, rule):
        """Test a hit never touches the repository."""
        cache.get_eligible_rules.return_value = [rule]
        repository = CachingRuleRepository(backing, cache, metrics)

        assert await repository.load_eligible_rules(RuleEventType.ORDER_CREATED, "order") == [rule]
        backing.load_eligible_rules.assert_not_called()
        assert metrics.registry.get_sample_value("rule_cache_lookups_total", {"result": "hit"}) == 1.0

    @pytest.mark.asyncio
    async def test_writes_invalidate(self, backing, cache, rule):
        """Test save and delete drop cached snapshots."""
        repository = CachingRuleRepository(backing, cache)

        await repository.save_rule(rule)
        await repository.delete_rule(rule.rule_id)

        assert cache.invalidate_all.await_count == 2

    @pytest.mark.asyncio
    async def test_failed_delete_keeps_cache(self, backing, cache):
        """Test deleting an unknown rule does not invalidate."""
        backing.delete_rule.return_value = False
        repository = CachingRuleRepository(backing, cache)

        assert await repository.delete_rule("nope") is False
        cache.invalidate_all.assert_not_called()

    @pytest.mark.asyncio
    async def test_pass_through(self, backing, cache, rule):
        """Test reads and increments go to the repository."""
        repository = CachingRuleRepository(backing, cache)

        await repository.increment_execution_count("large-order")
        assert await repository.load_rule("large-order") is rule
        assert await repository.list_rules(status=RuleStatus.ACTIVE) == ([rule], 1)

        backing.increment_execution_count.assert_awaited_once_with("large-order")
        backing.list_rules.assert_awaited_once_with(
            status=RuleStatus.ACTIVE, rule_type=None, offset=0, limit=50, include_archived=False
        )
