"""
Rule orchestration engine for the Rules Service.
"""

import asyncio
import time
from typing import Any, Dict, List, Optional, Union

from shared.errors import RuleEngineError, RuleNotFoundError, ValidationError
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from shared.tracing import add_span_attributes, add_span_event, trace_function

from .actions import ActionExecutor, CapabilityRegistry
from .conditions import ConditionGroupEvaluator
from .models import (
    ActionResult, BusinessRule, EvaluationTrace, ExecutionRecord,
    RuleEventType, TestResult, utcnow
)
from .tester import RuleTester
from ..audit.sink import AuditSink
from ..persistence.base import RuleRepository


class RuleEngine:
    """Selects, orders, evaluates and executes rules for warehouse events."""

    def __init__(
        self,
        repository: RuleRepository,
        capabilities: Optional[CapabilityRegistry] = None,
        audit_sink: Optional[AuditSink] = None,
        metrics: Optional[MetricsCollector] = None,
        stop_on_first_match: bool = False,
        halt_actions_on_failure: bool = False,
        audit_timeout_seconds: float = 2.0
    ):
        self.logger = get_logger("rules.engine")
        self.repository = repository
        self.capabilities = capabilities if capabilities is not None else CapabilityRegistry()
        self.audit_sink = audit_sink
        self.metrics = metrics
        self.stop_on_first_match = stop_on_first_match
        self.halt_actions_on_failure = halt_actions_on_failure
        self.audit_timeout_seconds = audit_timeout_seconds

        self.evaluator = ConditionGroupEvaluator()
        self.executor = ActionExecutor(self.capabilities)
        self.tester = RuleTester(self.capabilities)

    @trace_function("rules.fire")
    async def fire(
        self,
        event: Union[RuleEventType, str],
        entity: Any,
        entity_type: str,
        entity_id: Optional[str] = None,
        triggered_by: Optional[str] = None
    ) -> EvaluationTrace:
        """Evaluate every eligible rule for an event and execute matched actions.

        Failures inside one rule are recorded on that rule's execution record
        and never stop the remaining rules. Only a failure to load rules
        aborts the call.
        """
        event = _coerce_event(event)
        start_time = time.time()
        log = self.logger.bind(event_type=event.value, entity_type=entity_type, entity_id=entity_id)
        add_span_attributes(event_type=event.value, entity_type=entity_type, entity_id=entity_id)

        trace = EvaluationTrace(event_type=event, entity_type=entity_type, entity_id=entity_id)

        try:
            rules = await self.repository.load_eligible_rules(event, entity_type)
        except Exception as e:
            log.error("Failed to load rules", error=str(e))
            if self.metrics:
                self.metrics.record_error("rule_load_failed")
            raise RuleEngineError(
                "RULE_LOAD_FAILED",
                f"Failed to load rules for {event.value}",
                {"event_type": event.value, "entity_type": entity_type, "error": str(e)}
            ) from e

        for rule in self._order(rules, event, entity_type):
            record = await self._run_rule(rule, event, entity, entity_type, entity_id, triggered_by)
            trace.records.append(record)
            await self._emit(record)

            if record.matched and self.stop_on_first_match:
                trace.stopped_early = True
                break

        trace.duration_ms = (time.time() - start_time) * 1000

        if self.metrics:
            self.metrics.increment_counter("rule_fires_total", event_type=event.value)
            self.metrics.observe_histogram(
                "rule_fire_duration_seconds", trace.duration_ms / 1000, event_type=event.value
            )

        log.info(
            "Rules fired",
            considered=len(trace.records),
            matched=trace.matched_rule_ids,
            failed=trace.failed_rule_ids,
            duration_ms=round(trace.duration_ms, 2)
        )
        return trace

    def test(self, rule: BusinessRule, sample_entity: Dict[str, Any]) -> TestResult:
        """Dry-run a rule definition against a sample entity."""
        return self.tester.test(rule, sample_entity)

    async def test_rule(self, rule_id: str, sample_entity: Dict[str, Any]) -> TestResult:
        """Dry-run a stored rule in any status."""
        rule = await self.repository.load_rule(rule_id)
        if rule is None:
            raise RuleNotFoundError(rule_id)
        return self.tester.test(rule, sample_entity)

    def _order(self, rules: List[BusinessRule], event: RuleEventType,
               entity_type: str) -> List[BusinessRule]:
        now = utcnow()
        eligible = []
        for rule in rules:
            if rule.is_eligible(event, entity_type, now):
                eligible.append(rule)
            else:
                self.logger.debug("Skipping ineligible rule", rule_id=rule.rule_id, status=rule.status.value)
        eligible.sort(key=lambda r: (-r.priority, r.rule_id))
        return eligible

    async def _run_rule(
        self,
        rule: BusinessRule,
        event: RuleEventType,
        entity: Any,
        entity_type: str,
        entity_id: Optional[str],
        triggered_by: Optional[str]
    ) -> ExecutionRecord:
        start_time = time.time()
        record = ExecutionRecord(
            rule_id=rule.rule_id,
            event_type=event,
            entity_type=entity_type,
            entity_id=entity_id,
            matched=False,
            rule_name=rule.name,
            rule_version=rule.version,
            priority=rule.priority,
            triggered_by=triggered_by,
        )
        outcome = "not_matched"

        try:
            group = self.evaluator.trace_group(rule.ordered_conditions(), entity)
            record.condition_results = group.results
            record.matched = group.matched

            if group.matched:
                outcome = "matched"
                add_span_event("rule_matched", rule_id=rule.rule_id, priority=rule.priority)
                record.action_results = await self._run_actions(rule, entity)
                await self._increment_count(rule)

                self.logger.info(
                    "Rule matched",
                    rule_id=rule.rule_id,
                    actions=len(record.action_results),
                    actions_succeeded=record.actions_succeeded
                )
        except Exception as e:
            outcome = "error"
            record.error = str(e) or type(e).__name__
            self.logger.error("Rule evaluation failed", rule_id=rule.rule_id, error=record.error)

        record.execution_time_ms = (time.time() - start_time) * 1000
        if self.metrics:
            self.metrics.increment_counter(
                "rule_evaluations_total", rule_type=rule.rule_type.value, outcome=outcome
            )
        return record

    async def _run_actions(self, rule: BusinessRule, entity: Any) -> List[ActionResult]:
        results: List[ActionResult] = []
        halted = False

        for action in rule.ordered_actions():
            if halted:
                result = ActionResult(
                    succeeded=False,
                    error="skipped after an earlier action failed",
                    action_type=action.action_type,
                    action_id=action.action_id,
                    skipped=True,
                )
            else:
                result = await self.executor.execute(action, entity)
                if not result.succeeded and self.halt_actions_on_failure:
                    halted = True

            results.append(result)
            if self.metrics:
                status = "skipped" if result.skipped else ("success" if result.succeeded else "failed")
                self.metrics.increment_counter("rule_actions_total", action_type=action.action_type, status=status)

        return results

    async def _increment_count(self, rule: BusinessRule):
        try:
            await self.repository.increment_execution_count(rule.rule_id)
            rule.execution_count += 1
        except Exception as e:
            self.logger.warning("Failed to increment execution count", rule_id=rule.rule_id, error=str(e))

    async def _emit(self, record: ExecutionRecord):
        if self.audit_sink is None:
            return
        try:
            await asyncio.wait_for(self.audit_sink.record(record), timeout=self.audit_timeout_seconds)
        except asyncio.TimeoutError:
            self.logger.warning("Audit sink timed out", rule_id=record.rule_id, timeout=self.audit_timeout_seconds)
            if self.metrics:
                self.metrics.increment_counter("rule_audit_failures_total", reason="timeout")
        except Exception as e:
            self.logger.warning("Audit sink failed", rule_id=record.rule_id, error=str(e))
            if self.metrics:
                self.metrics.increment_counter("rule_audit_failures_total", reason="error")


def _coerce_event(event: Union[RuleEventType, str]) -> RuleEventType:
    if isinstance(event, RuleEventType):
        return event
    try:
        return RuleEventType(event)
    except ValueError:
        raise ValidationError(f"Unknown event type: {event}", {"event_type": str(event)})
