"""
Validation engine

Evaluates declarative post-readiness rules against the observable state of
a fully healthy stack.
"""

import asyncio
import logging
from collections.abc import Mapping

from indexer_toolkit.core.exceptions import ValidationBarrierError
from indexer_toolkit.core.interfaces import IServiceRuntime
from indexer_toolkit.stack.models import (
    RuleOutcome,
    ServiceInstance,
    ServiceState,
    ValidationRule,
)
from indexer_toolkit.validation.readers import AttributeReadError

logger = logging.getLogger(__name__)


class ValidationEngine:
    """
    Evaluate validation rules against live services

    Rules are independent and side-effect free, so they are evaluated
    concurrently and their order never changes the outcome.

    Example:
        engine = ValidationEngine(runtime)
        outcomes = await engine.evaluate(definition.rules, live_services)
        failing = [o for o in outcomes if not o.passed]
    """

    def __init__(self, runtime: IServiceRuntime):
        self.runtime = runtime

    async def evaluate(
        self,
        rules: list[ValidationRule],
        live_services: Mapping[str, ServiceInstance],
    ) -> list[RuleOutcome]:
        """
        Evaluate every rule

        Args:
            rules: Rules to evaluate
            live_services: Service instances of the current attempt, by name

        Returns:
            One outcome per rule, in rule order

        Raises:
            ValidationBarrierError: If a required service is not healthy
        """
        pending = [
            name
            for name, instance in live_services.items()
            if instance.spec.required and instance.state != ServiceState.HEALTHY
        ]
        if pending:
            raise ValidationBarrierError(sorted(pending))

        outcomes = await asyncio.gather(
            *(self._evaluate_rule(rule, live_services) for rule in rules)
        )

        passed = sum(1 for outcome in outcomes if outcome.passed)
        logger.info(f"Validation: {passed}/{len(outcomes)} rule(s) passed")
        for outcome in outcomes:
            if not outcome.passed:
                logger.warning(f"[WARN]  Rule failed - {outcome.describe()}")
        return list(outcomes)

    async def _evaluate_rule(
        self,
        rule: ValidationRule,
        live_services: Mapping[str, ServiceInstance],
    ) -> RuleOutcome:
        instance = live_services.get(rule.target)
        if instance is None:
            return RuleOutcome(rule=rule, passed=False, error=f"service '{rule.target}' is not part of the stack")
        if instance.state != ServiceState.HEALTHY:
            return RuleOutcome(rule=rule, passed=False, error=f"service '{rule.target}' is {instance.state.value}")

        reader = instance.spec.attributes
        if reader is None:
            return RuleOutcome(rule=rule, passed=False, error=f"service '{rule.target}' exposes no attributes")

        try:
            observed = await reader.read(rule.query, instance, self.runtime)
        except AttributeReadError as e:
            return RuleOutcome(rule=rule, passed=False, error=e.message)
        except Exception as e:
            logger.debug(f"Unexpected error reading {rule.label}", exc_info=True)
            return RuleOutcome(rule=rule, passed=False, error=str(e))

        passed = rule.comparator.compare(observed, rule.expected)
        logger.debug(f"Rule {rule.label}: observed {observed!r} -> {'pass' if passed else 'fail'}")
        return RuleOutcome(rule=rule, passed=passed, observed=observed)
