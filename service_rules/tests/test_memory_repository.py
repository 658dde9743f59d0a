"""
Unit tests for the in-memory rule repository.
"""

import pytest
from datetime import timedelta

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from service_rules.app.persistence.memory import InMemoryRuleRepository
from service_rules.app.rules.models import BusinessRule, RuleEventType, RuleStatus, RuleType, utcnow


def make_rule(rule_id, priority=50, status=RuleStatus.ACTIVE, rule_type=RuleType.PICKING,
              events=None, **kwargs):
    return BusinessRule(
        rule_id=rule_id,
        name=f"Rule {rule_id}",
        rule_type=rule_type,
        status=status,
        priority=priority,
        trigger_events=events or [RuleEventType.PICK_CONFIRMED],
        **kwargs
    )


class TestInMemoryRuleRepository:
    """Test cases for InMemoryRuleRepository."""

    @pytest.fixture
    def repository(self):
        """Create repository with a mix of rules."""
        now = utcnow()
        return InMemoryRuleRepository([
            make_rule("pick-b", priority=20),
            make_rule("pick-a", priority=20),
            make_rule("pick-high", priority=90),
            make_rule("pick-draft", status=RuleStatus.DRAFT),
            make_rule("pick-archived", status=RuleStatus.ARCHIVED),
            make_rule("inventory", rule_type=RuleType.INVENTORY),
            make_rule("shipment", events=[RuleEventType.SHIPMENT_CREATED]),
            make_rule("expired", end_date=now - timedelta(hours=1)),
        ])

    @pytest.mark.asyncio
    async def test_load_eligible_rules(self, repository):
        """Test filtering by status, event, entity type and window, in priority order."""
        rules = await repository.load_eligible_rules(RuleEventType.PICK_CONFIRMED, "pick_task")

        assert [r.rule_id for r in rules] == ["pick-high", "pick-a", "pick-b"]

    @pytest.mark.asyncio
    async def test_entity_type_scoping(self, repository):
        """Test inventory rules only see inventory entity types."""
        rules = await repository.load_eligible_rules(RuleEventType.PICK_CONFIRMED, "location")

        assert [r.rule_id for r in rules] == ["inventory"]

    @pytest.mark.asyncio
    async def test_returned_rules_are_copies(self, repository):
        """Test callers cannot mutate stored rules."""
        rule = await repository.load_rule("pick-high")
        rule.priority = 1

        assert (await repository.load_rule("pick-high")).priority == 90

    @pytest.mark.asyncio
    async def test_increment_execution_count(self, repository):
        """Test atomic count increments."""
        await repository.increment_execution_count("pick-a")
        await repository.increment_execution_count("pick-a")

        rule = await repository.load_rule("pick-a")
        assert rule.execution_count == 2
        assert rule.last_executed_at is not None

    @pytest.mark.asyncio
    async def test_increment_unknown_rule(self, repository):
        """Test incrementing a missing rule raises."""
        with pytest.raises(KeyError):
            await repository.increment_execution_count("nope")

    @pytest.mark.asyncio
    async def test_save_and_delete(self, repository):
        """Test saving then deleting a rule."""
        saved = await repository.save_rule(make_rule("new-rule"))

        assert saved.rule_id == "new-rule"
        assert await repository.load_rule("new-rule") is not None
        assert await repository.delete_rule("new-rule") is True
        assert await repository.delete_rule("new-rule") is False
        assert await repository.load_rule("new-rule") is None

    @pytest.mark.asyncio
    async def test_list_rules_filters(self, repository):
        """Test status and type filters."""
        page, total = await repository.list_rules(status=RuleStatus.DRAFT)
        assert [r.rule_id for r in page] == ["pick-draft"]
        assert total == 1

        page, total = await repository.list_rules(rule_type=RuleType.INVENTORY)
        assert [r.rule_id for r in page] == ["inventory"]

        _, total = await repository.list_rules()
        assert total == 7

        _, total = await repository.list_rules(include_archived=True)
        assert total == 8

    @pytest.mark.asyncio
    async def test_health_check(self, repository):
        """Test default lifecycle hooks."""
        await repository.start()
        assert await repository.health_check() is True
        await repository.stop()
