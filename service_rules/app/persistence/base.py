"""
Rule repository contract.
"""

from abc import ABC, abstractmethod
from typing import List, Optional, Tuple

from ..rules.models import BusinessRule, RuleEventType, RuleStatus, RuleType


class RuleRepository(ABC):
    """Storage for business rules.

    Every method returns snapshots: callers may mutate what they get back
    without affecting stored state or other callers.
    """

    async def start(self):
        """Acquire connections. No-op for repositories that need none."""

    async def stop(self):
        """Release connections."""

    @abstractmethod
    async def load_eligible_rules(self, event: RuleEventType,
                                  entity_type: Optional[str]) -> List[BusinessRule]:
        """Load ACTIVE rules triggered by ``event`` inside their activity window."""

    @abstractmethod
    async def increment_execution_count(self, rule_id: str) -> None:
        """Atomically add one to a rule's execution count."""

    @abstractmethod
    async def load_rule(self, rule_id: str) -> Optional[BusinessRule]:
        """Load one rule in any status, or None when it does not exist."""

    @abstractmethod
    async def save_rule(self, rule: BusinessRule) -> BusinessRule:
        """Insert or replace a rule definition."""

    @abstractmethod
    async def list_rules(self, status: Optional[RuleStatus] = None,
                         rule_type: Optional[RuleType] = None,
                         offset: int = 0, limit: int = 50,
                         include_archived: bool = False) -> Tuple[List[BusinessRule], int]:
        """List rules ordered by priority, returning one page and the total.

        ARCHIVED rules are left out unless ``include_archived`` is set or
        ``status`` asks for them explicitly.
        """

    @abstractmethod
    async def delete_rule(self, rule_id: str) -> bool:
        """Delete a rule. Returns False when it did not exist."""

    async def health_check(self) -> bool:
        return True
