"""
Rule data models for the Warehouse Rules service.

Domain objects (rules, conditions, actions, execution records) are plain
dataclasses; the HTTP request/response shapes are pydantic models.
"""

from typing import Dict, Any, Optional, List, FrozenSet
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _TolerantEnum(str, Enum):
    """String enum that also accepts lowercase / padded spellings."""

    @classmethod
    def _missing_(cls, value):
        if isinstance(value, str):
            normalized = value.strip().upper()
            for member in cls:
                if member.value == normalized:
                    return member
        return None


class RuleType(_TolerantEnum):
    """Functional domain a rule belongs to."""
    ALLOCATION = "ALLOCATION"
    PICKING = "PICKING"
    SHIPPING = "SHIPPING"
    INVENTORY = "INVENTORY"
    VALIDATION = "VALIDATION"
    NOTIFICATION = "NOTIFICATION"


class RuleStatus(_TolerantEnum):
    """Rule lifecycle status."""
    DRAFT = "DRAFT"
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    ARCHIVED = "ARCHIVED"


class RuleEventType(_TolerantEnum):
    """Warehouse lifecycle events rules can be triggered by."""
    ORDER_CREATED = "ORDER_CREATED"
    ORDER_UPDATED = "ORDER_UPDATED"
    ORDER_CLAIMED = "ORDER_CLAIMED"
    INVENTORY_ADDED = "INVENTORY_ADDED"
    INVENTORY_REMOVED = "INVENTORY_REMOVED"
    INVENTORY_ADJUSTED = "INVENTORY_ADJUSTED"
    LOCATION_CAPACITY_CHANGED = "LOCATION_CAPACITY_CHANGED"
    USER_ASSIGNED = "USER_ASSIGNED"
    SHIPMENT_CREATED = "SHIPMENT_CREATED"
    PICK_CONFIRMED = "PICK_CONFIRMED"
    PICK_TASK_COMPLETED = "PICK_TASK_COMPLETED"


class ConditionOperator(_TolerantEnum):
    """Condition operators."""
    EQUALS = "EQUALS"
    NOT_EQUALS = "NOT_EQUALS"
    GREATER_THAN = "GREATER_THAN"
    LESS_THAN = "LESS_THAN"
    GREATER_OR_EQUAL = "GREATER_OR_EQUAL"
    LESS_OR_EQUAL = "LESS_OR_EQUAL"
    CONTAINS = "CONTAINS"
    NOT_CONTAINS = "NOT_CONTAINS"
    STARTS_WITH = "STARTS_WITH"
    ENDS_WITH = "ENDS_WITH"
    IN = "IN"
    NOT_IN = "NOT_IN"
    BETWEEN = "BETWEEN"
    IS_NULL = "IS_NULL"
    IS_NOT_NULL = "IS_NOT_NULL"
    MATCHES_REGEX = "MATCHES_REGEX"

    @classmethod
    def _missing_(cls, value):
        if isinstance(value, str):
            normalized = value.strip().upper()
            normalized = _OPERATOR_ALIASES.get(normalized, normalized)
            for member in cls:
                if member.value == normalized:
                    return member
        return None


# Spellings used by stored rules from the previous schema
_OPERATOR_ALIASES = {
    "GREATER_THAN_OR_EQUAL": "GREATER_OR_EQUAL",
    "LESS_THAN_OR_EQUAL": "LESS_OR_EQUAL",
    "EQ": "EQUALS",
    "NE": "NOT_EQUALS",
    "GT": "GREATER_THAN",
    "GTE": "GREATER_OR_EQUAL",
    "LT": "LESS_THAN",
    "LTE": "LESS_OR_EQUAL",
}


class LogicalOperator(_TolerantEnum):
    """Connector between a condition and the next one."""
    AND = "AND"
    OR = "OR"


# Entity types each rule type may evaluate; None means any entity type.
RULE_TYPE_ENTITY_TYPES: Dict[RuleType, Optional[FrozenSet[str]]] = {
    RuleType.ALLOCATION: frozenset({"order"}),
    RuleType.PICKING: frozenset({"order", "pick_task"}),
    RuleType.SHIPPING: frozenset({"order", "shipment"}),
    RuleType.INVENTORY: frozenset({"inventory", "location", "sku"}),
    RuleType.VALIDATION: None,
    RuleType.NOTIFICATION: None,
}


def rule_type_accepts(rule_type: RuleType, entity_type: Optional[str]) -> bool:
    """Check whether a rule type may evaluate the given entity type."""
    if entity_type is None:
        return True
    allowed = RULE_TYPE_ENTITY_TYPES.get(rule_type)
    if allowed is None:
        return True
    return entity_type.strip().lower() in allowed


@dataclass
class RuleCondition:
    """One evaluable predicate of a rule."""
    field: str
    operator: ConditionOperator
    value: Any = None
    value2: Any = None
    logical_operator: Optional[LogicalOperator] = None
    order: int = 0
    condition_id: Optional[str] = None
    rule_id: Optional[str] = None

    def __post_init__(self):
        self.operator = ConditionOperator(self.operator)
        if self.logical_operator is not None:
            self.logical_operator = LogicalOperator(self.logical_operator)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "condition_id": self.condition_id,
            "rule_id": self.rule_id,
            "field": self.field,
            "operator": self.operator.value,
            "value": self.value,
            "value2": self.value2,
            "logical_operator": self.logical_operator.value if self.logical_operator else None,
            "order": self.order,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RuleCondition":
        logical = data.get("logical_operator")
        return cls(
            field=data["field"],
            operator=ConditionOperator(data["operator"]),
            value=data.get("value"),
            value2=data.get("value2"),
            logical_operator=LogicalOperator(logical) if logical else None,
            order=int(data.get("order") or 0),
            condition_id=data.get("condition_id"),
            rule_id=data.get("rule_id"),
        )


@dataclass
class RuleAction:
    """One action to perform when a rule matches."""
    action_type: str
    parameters: Dict[str, Any] = field(default_factory=dict)
    order: int = 0
    action_id: Optional[str] = None
    rule_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action_id": self.action_id,
            "rule_id": self.rule_id,
            "action_type": self.action_type,
            "parameters": dict(self.parameters),
            "order": self.order,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RuleAction":
        return cls(
            action_type=str(data["action_type"]).strip().upper(),
            parameters=dict(data.get("parameters") or {}),
            order=int(data.get("order") or 0),
            action_id=data.get("action_id"),
            rule_id=data.get("rule_id"),
        )


@dataclass
class BusinessRule:
    """A named, versioned automation unit."""
    rule_id: str
    name: str
    rule_type: RuleType
    trigger_events: List[RuleEventType]
    description: Optional[str] = None
    status: RuleStatus = RuleStatus.DRAFT
    priority: int = 0
    conditions: List[RuleCondition] = field(default_factory=list)
    actions: List[RuleAction] = field(default_factory=list)
    execution_count: int = 0
    version: int = 1
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    created_by: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_by: Optional[str] = None
    updated_at: Optional[datetime] = None
    last_executed_at: Optional[datetime] = None

    def ordered_conditions(self) -> List[RuleCondition]:
        return sorted(self.conditions, key=lambda c: c.order)

    def ordered_actions(self) -> List[RuleAction]:
        return sorted(self.actions, key=lambda a: a.order)

    def is_active_at(self, moment: datetime) -> bool:
        """Check the optional start/end activity window."""
        if self.start_date and _aware(self.start_date) > moment:
            return False
        if self.end_date and _aware(self.end_date) < moment:
            return False
        return True

    def is_eligible(self, event: RuleEventType, entity_type: Optional[str],
                    moment: Optional[datetime] = None) -> bool:
        """Check whether the rule may fire for an event on an entity type."""
        return (
            self.status == RuleStatus.ACTIVE
            and event in self.trigger_events
            and rule_type_accepts(self.rule_type, entity_type)
            and self.is_active_at(moment or utcnow())
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rule_id": self.rule_id,
            "name": self.name,
            "description": self.description,
            "rule_type": self.rule_type.value,
            "status": self.status.value,
            "priority": self.priority,
            "trigger_events": [e.value for e in self.trigger_events],
            "conditions": [c.to_dict() for c in self.conditions],
            "actions": [a.to_dict() for a in self.actions],
            "execution_count": self.execution_count,
            "version": self.version,
            "start_date": _isoformat(self.start_date),
            "end_date": _isoformat(self.end_date),
            "created_by": self.created_by,
            "created_at": _isoformat(self.created_at),
            "updated_by": self.updated_by,
            "updated_at": _isoformat(self.updated_at),
            "last_executed_at": _isoformat(self.last_executed_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BusinessRule":
        return cls(
            rule_id=data["rule_id"],
            name=data["name"],
            description=data.get("description"),
            rule_type=RuleType(data["rule_type"]),
            status=RuleStatus(data.get("status") or RuleStatus.DRAFT.value),
            priority=int(data.get("priority") or 0),
            trigger_events=[RuleEventType(e) for e in data.get("trigger_events") or []],
            conditions=[RuleCondition.from_dict(c) for c in data.get("conditions") or []],
            actions=[RuleAction.from_dict(a) for a in data.get("actions") or []],
            execution_count=int(data.get("execution_count") or 0),
            version=int(data.get("version") or 1),
            start_date=_parse_datetime(data.get("start_date")),
            end_date=_parse_datetime(data.get("end_date")),
            created_by=data.get("created_by"),
            created_at=_parse_datetime(data.get("created_at")) or utcnow(),
            updated_by=data.get("updated_by"),
            updated_at=_parse_datetime(data.get("updated_at")),
            last_executed_at=_parse_datetime(data.get("last_executed_at")),
        )


@dataclass
class ConditionResult:
    """Outcome of one condition inside a group evaluation."""
    field: str
    operator: str
    expected: Any
    expected2: Any
    actual: Any
    matched: bool
    evaluated: bool = True
    diagnostic: Optional[str] = None
    condition_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "condition_id": self.condition_id,
            "field": self.field,
            "operator": self.operator,
            "expected": self.expected,
            "expected2": self.expected2,
            "actual": self.actual,
            "matched": self.matched,
            "evaluated": self.evaluated,
            "diagnostic": self.diagnostic,
        }


@dataclass
class ActionResult:
    """Outcome of one dispatched action."""
    succeeded: bool
    error: Optional[str] = None
    output: Any = None
    action_type: Optional[str] = None
    action_id: Optional[str] = None
    skipped: bool = False

    @classmethod
    def ok(cls, output: Any = None) -> "ActionResult":
        return cls(succeeded=True, output=output)

    @classmethod
    def failed(cls, error: str) -> "ActionResult":
        return cls(succeeded=False, error=error)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action_id": self.action_id,
            "action_type": self.action_type,
            "succeeded": self.succeeded,
            "error": self.error,
            "output": self.output,
            "skipped": self.skipped,
        }


@dataclass
class ExecutionRecord:
    """Audit record for one rule considered during a fire call."""
    rule_id: str
    event_type: RuleEventType
    entity_type: Optional[str]
    entity_id: Optional[str]
    matched: bool
    rule_name: Optional[str] = None
    rule_version: Optional[int] = None
    priority: int = 0
    condition_results: List[ConditionResult] = field(default_factory=list)
    action_results: List[ActionResult] = field(default_factory=list)
    error: Optional[str] = None
    triggered_by: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)
    execution_time_ms: float = 0.0

    @property
    def failed(self) -> bool:
        return self.error is not None

    @property
    def actions_succeeded(self) -> bool:
        return all(r.succeeded for r in self.action_results)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rule_id": self.rule_id,
            "rule_name": self.rule_name,
            "rule_version": self.rule_version,
            "priority": self.priority,
            "event_type": self.event_type.value,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "matched": self.matched,
            "condition_results": [c.to_dict() for c in self.condition_results],
            "action_results": [a.to_dict() for a in self.action_results],
            "error": self.error,
            "triggered_by": self.triggered_by,
            "timestamp": _isoformat(self.timestamp),
            "execution_time_ms": self.execution_time_ms,
        }


@dataclass
class EvaluationTrace:
    """Everything a fire call considered, in evaluation order."""
    event_type: RuleEventType
    entity_type: Optional[str]
    entity_id: Optional[str] = None
    records: List[ExecutionRecord] = field(default_factory=list)
    started_at: datetime = field(default_factory=utcnow)
    duration_ms: float = 0.0
    stopped_early: bool = False

    @property
    def rule_ids(self) -> List[str]:
        return [r.rule_id for r in self.records]

    @property
    def matched_rule_ids(self) -> List[str]:
        return [r.rule_id for r in self.records if r.matched]

    @property
    def failed_rule_ids(self) -> List[str]:
        return [r.rule_id for r in self.records if r.failed]

    def record_for(self, rule_id: str) -> Optional[ExecutionRecord]:
        for record in self.records:
            if record.rule_id == rule_id:
                return record
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": self.event_type.value,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "started_at": _isoformat(self.started_at),
            "duration_ms": self.duration_ms,
            "stopped_early": self.stopped_early,
            "matched_rules": self.matched_rule_ids,
            "failed_rules": self.failed_rule_ids,
            "records": [r.to_dict() for r in self.records],
        }


@dataclass
class ResolvedAction:
    """An action as it would be handed to the executor."""
    action_type: str
    parameters: Dict[str, Any]
    order: int = 0
    action_id: Optional[str] = None
    handler_registered: Optional[bool] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action_id": self.action_id,
            "action_type": self.action_type,
            "parameters": self.parameters,
            "order": self.order,
            "handler_registered": self.handler_registered,
        }


@dataclass
class TestResult:
    """Dry-run outcome of a rule against a sample entity."""
    __test__ = False

    rule_id: str
    matched: bool
    condition_trace: List[ConditionResult] = field(default_factory=list)
    would_fire_actions: List[ResolvedAction] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rule_id": self.rule_id,
            "matched": self.matched,
            "condition_trace": [c.to_dict() for c in self.condition_trace],
            "would_fire_actions": [a.to_dict() for a in self.would_fire_actions],
        }


def _aware(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment


def _isoformat(moment: Optional[datetime]) -> Optional[str]:
    return moment.isoformat() if moment else None


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


# ---------------------------------------------------------------------------
# API models
# ---------------------------------------------------------------------------


class ConditionPayload(BaseModel):
    """Condition as accepted over HTTP."""
    field: str = Field(..., min_length=1, description="Dotted path into the entity")
    operator: ConditionOperator = Field(..., description="Condition operator")
    value: Any = Field(None, description="Comparison value")
    value2: Any = Field(None, description="Upper bound for BETWEEN")
    logical_operator: Optional[LogicalOperator] = Field(None, description="Connector to the next condition")
    order: int = Field(0, description="Evaluation order")

    def to_condition(self) -> RuleCondition:
        return RuleCondition(
            field=self.field,
            operator=self.operator,
            value=self.value,
            value2=self.value2,
            logical_operator=self.logical_operator,
            order=self.order,
        )


class ActionPayload(BaseModel):
    """Action as accepted over HTTP."""
    action_type: str = Field(..., min_length=1, description="Registered capability tag")
    parameters: Dict[str, Any] = Field(default_factory=dict, description="Handler parameters")
    order: int = Field(0, description="Execution order")

    def to_action(self) -> RuleAction:
        return RuleAction(
            action_type=self.action_type.strip().upper(),
            parameters=dict(self.parameters),
            order=self.order,
        )


class RuleCreateRequest(BaseModel):
    """Request model for creating a rule."""
    name: str = Field(..., description="Rule name")
    description: Optional[str] = Field(None, description="Rule description")
    rule_type: RuleType = Field(..., description="Functional domain")
    priority: int = Field(0, description="Rule priority (0-100, higher first)")
    trigger_events: List[RuleEventType] = Field(..., description="Events the rule fires on")
    conditions: List[ConditionPayload] = Field(default_factory=list)
    actions: List[ActionPayload] = Field(default_factory=list)
    start_date: Optional[datetime] = Field(None, description="Start of the activity window")
    end_date: Optional[datetime] = Field(None, description="End of the activity window")
    created_by: Optional[str] = Field(None, description="Author")


class RuleUpdateRequest(BaseModel):
    """Request model for updating a rule."""
    name: Optional[str] = None
    description: Optional[str] = None
    priority: Optional[int] = None
    trigger_events: Optional[List[RuleEventType]] = None
    conditions: Optional[List[ConditionPayload]] = None
    actions: Optional[List[ActionPayload]] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    updated_by: Optional[str] = None


class FireEventRequest(BaseModel):
    """Request model for firing an event against the engine."""
    event_type: RuleEventType
    entity_type: str = Field(..., min_length=1)
    entity: Dict[str, Any] = Field(default_factory=dict)
    entity_id: Optional[str] = None
    triggered_by: Optional[str] = None


class RuleTestRequest(BaseModel):
    """Request model for dry-running a stored rule."""
    sample_entity: Dict[str, Any] = Field(default_factory=dict)


class AdHocRuleTestRequest(BaseModel):
    """Request model for dry-running an unsaved rule definition."""
    rule: RuleCreateRequest
    sample_entity: Dict[str, Any] = Field(default_factory=dict)


class RuleListResponse(BaseModel):
    """Response model for rule list."""
    rules: List[Dict[str, Any]]
    total: int
    page: int
    limit: int
