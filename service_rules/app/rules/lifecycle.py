"""
Rule lifecycle management and validation.

Status transitions::

    DRAFT ──activate──> ACTIVE <──toggle──> INACTIVE
      └────────────── archive ──────────────> ARCHIVED (terminal)

Every persisted edit, status changes included, bumps ``version``. Edits
never reset ``execution_count``.
"""

import re
import uuid
from typing import Any, Dict, List, Optional, Tuple

from shared.errors import RuleLifecycleError, RuleNotFoundError, ValidationError
from shared.logging import get_logger

from .models import (
    BusinessRule, ConditionOperator, RuleCreateRequest, RuleStatus, RuleType,
    RuleUpdateRequest, _aware, utcnow
)
from ..persistence.base import RuleRepository

NAME_MIN_LENGTH = 3
NAME_MAX_LENGTH = 100
PRIORITY_MIN = 0
PRIORITY_MAX = 100

ALLOWED_TRANSITIONS = {
    RuleStatus.DRAFT: {RuleStatus.ACTIVE, RuleStatus.ARCHIVED},
    RuleStatus.ACTIVE: {RuleStatus.INACTIVE, RuleStatus.ARCHIVED},
    RuleStatus.INACTIVE: {RuleStatus.ACTIVE, RuleStatus.ARCHIVED},
    RuleStatus.ARCHIVED: set(),
}


def validation_errors(rule: BusinessRule) -> List[Dict[str, Any]]:
    """Collect every problem with a rule definition."""
    errors: List[Dict[str, Any]] = []

    def error(field: str, message: str):
        errors.append({"field": field, "message": message})

    name = (rule.name or "").strip()
    if not NAME_MIN_LENGTH <= len(name) <= NAME_MAX_LENGTH:
        error("name", f"must be between {NAME_MIN_LENGTH} and {NAME_MAX_LENGTH} characters")

    if not PRIORITY_MIN <= rule.priority <= PRIORITY_MAX:
        error("priority", f"must be between {PRIORITY_MIN} and {PRIORITY_MAX}")

    if not rule.trigger_events:
        error("trigger_events", "at least one trigger event is required")

    if rule.start_date and rule.end_date and _aware(rule.end_date) < _aware(rule.start_date):
        error("end_date", "must not be before start_date")

    for index, condition in enumerate(rule.conditions):
        prefix = f"conditions[{index}]"
        if not condition.field or not condition.field.strip():
            error(f"{prefix}.field", "field path is required")
        if not isinstance(condition.operator, ConditionOperator):
            error(f"{prefix}.operator", f"unknown operator {condition.operator!r}")
            continue
        if condition.operator == ConditionOperator.BETWEEN and condition.value2 is None:
            error(f"{prefix}.value2", "BETWEEN requires an upper bound")
        if condition.operator in (ConditionOperator.IN, ConditionOperator.NOT_IN) \
                and not isinstance(condition.value, (list, tuple)):
            error(f"{prefix}.value", f"{condition.operator.value} requires a list value")
        if condition.operator == ConditionOperator.MATCHES_REGEX:
            try:
                re.compile(str(condition.value))
            except re.error as e:
                error(f"{prefix}.value", f"invalid regular expression: {e}")

    for index, action in enumerate(rule.actions):
        if not action.action_type or not action.action_type.strip():
            error(f"actions[{index}].action_type", "action type is required")

    return errors


def validate_rule(rule: BusinessRule) -> BusinessRule:
    """Raise ``ValidationError`` listing every problem, or return the rule."""
    errors = validation_errors(rule)
    if errors:
        raise ValidationError("Invalid rule definition", {"rule_id": rule.rule_id, "errors": errors})
    return rule


def check_transition(rule: BusinessRule, target: RuleStatus):
    if target not in ALLOWED_TRANSITIONS[rule.status]:
        raise RuleLifecycleError(
            f"Cannot move rule {rule.rule_id} from {rule.status.value} to {target.value}",
            {"rule_id": rule.rule_id, "from": rule.status.value, "to": target.value}
        )


def build_rule(request: RuleCreateRequest, rule_id: Optional[str] = None) -> BusinessRule:
    """Build an unsaved DRAFT rule from an API request."""
    rule_id = rule_id or str(uuid.uuid4())
    conditions = []
    for position, payload in enumerate(request.conditions):
        condition = payload.to_condition()
        condition.condition_id = f"{rule_id}-condition-{position}"
        condition.rule_id = rule_id
        conditions.append(condition)

    actions = []
    for position, payload in enumerate(request.actions):
        action = payload.to_action()
        action.action_id = f"{rule_id}-action-{position}"
        action.rule_id = rule_id
        actions.append(action)

    return BusinessRule(
        rule_id=rule_id,
        name=request.name.strip(),
        description=request.description,
        rule_type=request.rule_type,
        status=RuleStatus.DRAFT,
        priority=request.priority,
        trigger_events=list(dict.fromkeys(request.trigger_events)),
        conditions=conditions,
        actions=actions,
        start_date=request.start_date,
        end_date=request.end_date,
        created_by=request.created_by,
    )


class RuleManager:
    """Create, edit and move rules through their lifecycle."""

    def __init__(self, repository: RuleRepository):
        self.repository = repository
        self.logger = get_logger("rules.lifecycle")

    async def create_rule(self, request: RuleCreateRequest) -> BusinessRule:
        rule = validate_rule(build_rule(request))
        saved = await self.repository.save_rule(rule)
        self.logger.info("Rule created", rule_id=saved.rule_id, name=saved.name, rule_type=saved.rule_type.value)
        return saved

    async def get_rule(self, rule_id: str) -> BusinessRule:
        rule = await self.repository.load_rule(rule_id)
        if rule is None:
            raise RuleNotFoundError(rule_id)
        return rule

    async def list_rules(
        self,
        status: Optional[RuleStatus] = None,
        rule_type: Optional[RuleType] = None,
        page: int = 1,
        limit: int = 50,
        include_archived: bool = False
    ) -> Tuple[List[BusinessRule], int]:
        offset = (max(page, 1) - 1) * limit
        return await self.repository.list_rules(
            status=status, rule_type=rule_type, offset=offset, limit=limit,
            include_archived=include_archived
        )

    async def update_rule(self, rule_id: str, request: RuleUpdateRequest) -> BusinessRule:
        rule = await self.get_rule(rule_id)
        if rule.status == RuleStatus.ARCHIVED:
            raise RuleLifecycleError(f"Rule {rule_id} is archived and cannot be edited", {"rule_id": rule_id})

        changes = request.model_dump(exclude_unset=True)
        if "name" in changes and request.name is not None:
            rule.name = request.name.strip()
        if "description" in changes:
            rule.description = request.description
        if "priority" in changes and request.priority is not None:
            rule.priority = request.priority
        if "trigger_events" in changes and request.trigger_events is not None:
            rule.trigger_events = list(dict.fromkeys(request.trigger_events))
        if "start_date" in changes:
            rule.start_date = request.start_date
        if "end_date" in changes:
            rule.end_date = request.end_date

        if "conditions" in changes and request.conditions is not None:
            rule.conditions = []
            for position, payload in enumerate(request.conditions):
                condition = payload.to_condition()
                condition.condition_id = f"{rule_id}-condition-v{rule.version + 1}-{position}"
                condition.rule_id = rule_id
                rule.conditions.append(condition)

        if "actions" in changes and request.actions is not None:
            rule.actions = []
            for position, payload in enumerate(request.actions):
                action = payload.to_action()
                action.action_id = f"{rule_id}-action-v{rule.version + 1}-{position}"
                action.rule_id = rule_id
                rule.actions.append(action)

        validate_rule(rule)
        saved = await self._persist(rule, request.updated_by)
        self.logger.info("Rule updated", rule_id=rule_id, version=saved.version, fields=sorted(changes))
        return saved

    async def activate(self, rule_id: str, user: Optional[str] = None) -> BusinessRule:
        return await self._transition(rule_id, RuleStatus.ACTIVE, user)

    async def deactivate(self, rule_id: str, user: Optional[str] = None) -> BusinessRule:
        return await self._transition(rule_id, RuleStatus.INACTIVE, user)

    async def toggle(self, rule_id: str, user: Optional[str] = None) -> BusinessRule:
        """Flip an ACTIVE rule to INACTIVE and back."""
        rule = await self.get_rule(rule_id)
        target = RuleStatus.INACTIVE if rule.status == RuleStatus.ACTIVE else RuleStatus.ACTIVE
        return await self._apply_transition(rule, target, user)

    async def archive(self, rule_id: str, user: Optional[str] = None) -> BusinessRule:
        rule = await self.get_rule(rule_id)
        if rule.status == RuleStatus.ARCHIVED:
            return rule
        return await self._apply_transition(rule, RuleStatus.ARCHIVED, user)

    async def delete_rule(self, rule_id: str) -> bool:
        deleted = await self.repository.delete_rule(rule_id)
        if not deleted:
            raise RuleNotFoundError(rule_id)
        self.logger.info("Rule deleted", rule_id=rule_id)
        return True

    async def _transition(self, rule_id: str, target: RuleStatus, user: Optional[str]) -> BusinessRule:
        rule = await self.get_rule(rule_id)
        return await self._apply_transition(rule, target, user)

    async def _apply_transition(self, rule: BusinessRule, target: RuleStatus,
                                user: Optional[str]) -> BusinessRule:
        check_transition(rule, target)
        if target == RuleStatus.ACTIVE:
            validate_rule(rule)

        previous = rule.status
        rule.status = target
        saved = await self._persist(rule, user)
        self.logger.info(
            "Rule status changed",
            rule_id=rule.rule_id,
            from_status=previous.value,
            to_status=target.value,
            version=saved.version
        )
        return saved

    async def _persist(self, rule: BusinessRule, user: Optional[str]) -> BusinessRule:
        # Keep the stored counter; fires may have incremented it since the load
        current = await self.repository.load_rule(rule.rule_id)
        if current is not None:
            rule.execution_count = max(rule.execution_count, current.execution_count)
            rule.last_executed_at = current.last_executed_at or rule.last_executed_at

        rule.version += 1
        rule.updated_at = utcnow()
        rule.updated_by = user or rule.updated_by
        return await self.repository.save_rule(rule)
