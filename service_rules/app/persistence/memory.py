"""
In-memory rule repository.
"""

import copy
import threading
from typing import Dict, Iterable, List, Optional, Tuple

from shared.logging import get_logger

from ..rules.models import BusinessRule, RuleEventType, RuleStatus, RuleType, utcnow
from .base import RuleRepository


class InMemoryRuleRepository(RuleRepository):
    """Dictionary-backed repository guarded by a lock."""

    def __init__(self, rules: Optional[Iterable[BusinessRule]] = None):
        self.logger = get_logger("rules.persistence.memory")
        self._rules: Dict[str, BusinessRule] = {}
        self._lock = threading.Lock()
        for rule in rules or []:
            self._rules[rule.rule_id] = copy.deepcopy(rule)

    async def load_eligible_rules(self, event: RuleEventType,
                                  entity_type: Optional[str]) -> List[BusinessRule]:
        now = utcnow()
        with self._lock:
            rules = [
                copy.deepcopy(rule) for rule in self._rules.values()
                if rule.is_eligible(event, entity_type, now)
            ]
        rules.sort(key=lambda r: (-r.priority, r.rule_id))
        return rules

    async def increment_execution_count(self, rule_id: str) -> None:
        with self._lock:
            rule = self._rules.get(rule_id)
            if rule is None:
                raise KeyError(rule_id)
            rule.execution_count += 1
            rule.last_executed_at = utcnow()

    async def load_rule(self, rule_id: str) -> Optional[BusinessRule]:
        with self._lock:
            rule = self._rules.get(rule_id)
            return copy.deepcopy(rule) if rule else None

    async def save_rule(self, rule: BusinessRule) -> BusinessRule:
        with self._lock:
            self._rules[rule.rule_id] = copy.deepcopy(rule)
        self.logger.info("Rule saved", rule_id=rule.rule_id, name=rule.name, version=rule.version)
        return copy.deepcopy(rule)

    async def list_rules(self, status: Optional[RuleStatus] = None,
                         rule_type: Optional[RuleType] = None,
                         offset: int = 0, limit: int = 50,
                         include_archived: bool = False) -> Tuple[List[BusinessRule], int]:
        with self._lock:
            rules = [
                rule for rule in self._rules.values()
                if (status is None or rule.status == status)
                and (rule_type is None or rule.rule_type == rule_type)
                and (include_archived or status is not None or rule.status != RuleStatus.ARCHIVED)
            ]
            rules.sort(key=lambda r: (-r.priority, r.rule_id))
            page = [copy.deepcopy(rule) for rule in rules[offset:offset + limit]]
        return page, len(rules)

    async def delete_rule(self, rule_id: str) -> bool:
        with self._lock:
            removed = self._rules.pop(rule_id, None)
        if removed is None:
            self.logger.warning("Rule not found for deletion", rule_id=rule_id)
            return False
        self.logger.info("Rule deleted", rule_id=rule_id)
        return True
