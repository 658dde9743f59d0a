"""
Redis caching layer for the Rules Service.
"""

import json
from typing import Any, Dict, List, Optional, Tuple

import redis.asyncio as redis

from shared.errors import ExternalServiceError
from shared.logging import get_logger
from shared.metrics import MetricsCollector

from ..persistence.base import RuleRepository
from ..rules.models import BusinessRule, RuleEventType, RuleStatus, RuleType


class RedisRuleCache:
    """Stores eligible-rule snapshots keyed by event and entity type."""

    ELIGIBLE_PREFIX = "rules:eligible:"

    def __init__(self, redis_url: str, ttl_seconds: int = 30):
        self.redis_url = redis_url
        self.logger = get_logger("rules.cache.redis")
        self.redis: Optional[redis.Redis] = None

        self.default_ttl = ttl_seconds
        self.max_ttl = 3600
        self.min_ttl = 1

    async def start(self):
        """Start the Redis cache."""
        try:
            self.redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
                retry_on_timeout=True,
                health_check_interval=30
            )

            # Test connection
            await self.redis.ping()

            self.logger.info("Redis cache started")

        except Exception as e:
            self.logger.error("Failed to start Redis cache", error=str(e))
            raise ExternalServiceError("redis", str(e))

    async def stop(self):
        """Stop the Redis cache."""
        if self.redis:
            await self.redis.close()
            self.logger.info("Redis cache stopped")

    async def get_eligible_rules(self, event: RuleEventType,
                                 entity_type: Optional[str]) -> Optional[List[BusinessRule]]:
        """Get a cached snapshot, or None on a miss or any cache error."""
        try:
            cache_key = self._get_eligible_key(event, entity_type)
            cached_data = await self.redis.get(cache_key)
            if not cached_data:
                return None

            rules = [BusinessRule.from_dict(data) for data in json.loads(cached_data)]
            self.logger.debug("Cache hit for eligible rules", cache_key=cache_key, count=len(rules))
            return rules

        except Exception as e:
            self.logger.error("Error getting cached rules", error=str(e))
            return None

    async def set_eligible_rules(self, event: RuleEventType, entity_type: Optional[str],
                                 rules: List[BusinessRule], ttl_seconds: Optional[int] = None) -> bool:
        """Cache an eligible-rule snapshot."""
        try:
            cache_key = self._get_eligible_key(event, entity_type)
            ttl_seconds = ttl_seconds if ttl_seconds is not None else self.default_ttl
            ttl_seconds = max(self.min_ttl, min(self.max_ttl, ttl_seconds))

            await self.redis.setex(
                cache_key,
                ttl_seconds,
                json.dumps([rule.to_dict() for rule in rules], default=str)
            )

            self.logger.debug("Cached eligible rules", cache_key=cache_key, ttl=ttl_seconds, count=len(rules))
            return True

        except Exception as e:
            self.logger.error("Error caching rules", error=str(e))
            return False

    async def invalidate_all(self) -> int:
        """Drop every cached snapshot."""
        try:
            keys = await self.redis.keys(f"{self.ELIGIBLE_PREFIX}*")
            if keys:
                await self.redis.delete(*keys)
                self.logger.info("Invalidated cached rule snapshots", count=len(keys))
                return len(keys)
            return 0

        except Exception as e:
            self.logger.error("Error invalidating rule snapshots", error=str(e))
            return 0

    async def get_cache_stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        try:
            info = await self.redis.info()
            keys = await self.redis.keys(f"{self.ELIGIBLE_PREFIX}*")

            return {
                "redis_version": info.get("redis_version"),
                "used_memory": info.get("used_memory_human"),
                "snapshot_keys": len(keys),
                "hit_rate": self._calculate_hit_rate(info)
            }

        except Exception as e:
            self.logger.error("Error getting cache stats", error=str(e))
            return {}

    def _get_eligible_key(self, event: RuleEventType, entity_type: Optional[str]) -> str:
        """Generate cache key for an eligible-rule snapshot."""
        entity_part = (entity_type or "*").strip().lower()
        return f"{self.ELIGIBLE_PREFIX}{event.value}:{entity_part}"

    def _calculate_hit_rate(self, info: Dict[str, Any]) -> float:
        hits = info.get("keyspace_hits", 0)
        misses = info.get("keyspace_misses", 0)
        total = hits + misses

        if total == 0:
            return 0.0

        return hits / total

    async def health_check(self) -> bool:
        """Check Redis health."""
        try:
            await self.redis.ping()
            return True
        except Exception:
            return False


class CachingRuleRepository(RuleRepository):
    """Reads eligible rules through a Redis snapshot cache.

    Any write through this wrapper invalidates every snapshot. Execution
    count increments go straight to the underlying repository, so cached
    snapshots may carry a stale ``execution_count`` until they expire.
    """

    def __init__(self, repository: RuleRepository, cache: RedisRuleCache,
                 metrics: Optional[MetricsCollector] = None):
        self.repository = repository
        self.cache = cache
        self.metrics = metrics
        self.logger = get_logger("rules.cache.repository")

    async def start(self):
        await self.repository.start()
        await self.cache.start()

    async def stop(self):
        await self.cache.stop()
        await self.repository.stop()

    async def load_eligible_rules(self, event: RuleEventType,
                                  entity_type: Optional[str]) -> List[BusinessRule]:
        cached = await self.cache.get_eligible_rules(event, entity_type)
        if cached is not None:
            self._record_lookup("hit")
            return cached

        self._record_lookup("miss")
        rules = await self.repository.load_eligible_rules(event, entity_type)
        await self.cache.set_eligible_rules(event, entity_type, rules)
        return rules

    async def increment_execution_count(self, rule_id: str) -> None:
        await self.repository.increment_execution_count(rule_id)

    async def load_rule(self, rule_id: str) -> Optional[BusinessRule]:
        return await self.repository.load_rule(rule_id)

    async def save_rule(self, rule: BusinessRule) -> BusinessRule:
        saved = await self.repository.save_rule(rule)
        await self.cache.invalidate_all()
        return saved

    async def list_rules(self, status: Optional[RuleStatus] = None,
                         rule_type: Optional[RuleType] = None,
                         offset: int = 0, limit: int = 50,
                         include_archived: bool = False) -> Tuple[List[BusinessRule], int]:
        return await self.repository.list_rules(
            status=status, rule_type=rule_type, offset=offset, limit=limit,
            include_archived=include_archived
        )

    async def delete_rule(self, rule_id: str) -> bool:
        deleted = await self.repository.delete_rule(rule_id)
        if deleted:
            await self.cache.invalidate_all()
        return deleted

    async def health_check(self) -> bool:
        return await self.repository.health_check() and await self.cache.health_check()

    def _record_lookup(self, result: str):
        if self.metrics:
            self.metrics.increment_counter("rule_cache_lookups_total", result=result)
