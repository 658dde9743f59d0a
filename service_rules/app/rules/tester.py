"""
Side-effect-free rule preview.
"""

import copy
from typing import Any, Dict, Optional

from shared.logging import get_logger

from .actions import CapabilityRegistry, DryRunActionExecutor
from .conditions import ConditionGroupEvaluator
from .models import BusinessRule, TestResult


class RuleTester:
    """Runs a rule against a sample entity without executing anything.

    Every condition is evaluated (no short-circuit) so the trace explains
    the full outcome, and matched actions are resolved rather than invoked.
    Rule status is ignored: DRAFT and INACTIVE rules can be previewed.
    """

    def __init__(self, registry: Optional[CapabilityRegistry] = None):
        self.logger = get_logger("rules.tester")
        self.evaluator = ConditionGroupEvaluator(short_circuit=False)
        self.dry_run = DryRunActionExecutor(registry)

    def test(self, rule: BusinessRule, sample_entity: Dict[str, Any]) -> TestResult:
        sample = copy.deepcopy(sample_entity)
        outcome = self.evaluator.trace_group(rule.ordered_conditions(), sample)

        would_fire = []
        if outcome.matched:
            would_fire = [self.dry_run.resolve(action) for action in rule.ordered_actions()]

        self.logger.debug(
            "Rule tested",
            rule_id=rule.rule_id,
            matched=outcome.matched,
            actions=len(would_fire)
        )
        return TestResult(
            rule_id=rule.rule_id,
            matched=outcome.matched,
            condition_trace=outcome.results,
            would_fire_actions=would_fire,
        )
