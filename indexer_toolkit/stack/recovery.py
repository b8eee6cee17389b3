"""
Recovery controller

Decides whether a failed attempt is retried and, before each retry,
destroys the persisted state of the services implicated in the failure so
their next start behaves like a fresh install.
"""

import logging
import shutil
from collections.abc import Mapping
from pathlib import Path

from indexer_toolkit.core.exceptions import RecoveryExhausted, StackDefinitionError, StateOwnershipError
from indexer_toolkit.core.interfaces import IServiceRuntime
from indexer_toolkit.stack.models import (
    AttemptResult,
    RecoveryDecision,
    RuleOutcome,
    RunAttempt,
    ServiceInstance,
    ServiceState,
)

logger = logging.getLogger(__name__)

VOLUME_PREFIX = "volume:"


class RecoveryController:
    """
    Bounded retry loop with state destruction

    The controller owns the attempt history of one run. Every failed attempt
    is handed to recover(); it answers RETRY while attempts remain and
    EXHAUSTED once max_attempts attempts have been consumed.

    Example:
        recovery = RecoveryController(runtime, max_attempts=3, working_dir=Path(".indexer-stack"))
        decision = recovery.recover(attempt, instances)
        if decision == RecoveryDecision.EXHAUSTED:
            raise recovery.exhausted_error()
    """

    def __init__(self, runtime: IServiceRuntime, max_attempts: int, working_dir: Path):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.runtime = runtime
        self.max_attempts = max_attempts
        self.working_dir = working_dir
        self.history: list[RunAttempt] = []

    @property
    def attempts_used(self) -> int:
        return len(self.history)

    def record(self, attempt: RunAttempt) -> None:
        """Add an attempt to the history (idempotent)"""
        if not any(recorded is attempt for recorded in self.history):
            self.history.append(attempt)

    def recover(
        self,
        attempt: RunAttempt,
        instances: Mapping[str, ServiceInstance],
        failing_rules: list[RuleOutcome] | None = None,
        failing_services: list[str] | None = None,
    ) -> RecoveryDecision:
        """
        Handle a failed attempt

        Args:
            attempt: The attempt that just failed
            instances: Service instances of that attempt (all must be stopped
                before their state can be destroyed)
            failing_rules: Failed rule outcomes (default: from the attempt)
            failing_services: Services that never became healthy (default: from the attempt)

        Returns:
            RETRY after destroying implicated state, or EXHAUSTED

        Raises:
            StateOwnershipError: If an implicated service is still running
        """
        if attempt.result == AttemptResult.SUCCESS:
            raise ValueError(f"Attempt {attempt.index} succeeded; nothing to recover")

        self.record(attempt)
        rules = attempt.failing_rules if failing_rules is None else failing_rules
        services = attempt.failed_services if failing_services is None else failing_services

        if self.attempts_used >= self.max_attempts:
            logger.error(f"[ERROR] Attempt {attempt.index} failed; {self.max_attempts} attempt(s) exhausted")
            return RecoveryDecision.EXHAUSTED

        implicated = self._implicated(instances, rules, services)
        logger.info(
            f"Recovering from attempt {attempt.index}/{self.max_attempts}: "
            f"resetting {', '.join(implicated) or 'nothing'}"
        )

        for name in implicated:
            instance = instances.get(name)
            if instance is None:
                continue
            if not instance.is_stopped:
                raise StateOwnershipError(name)
            for location in instance.spec.state_locations:
                self.destroy(location)
                attempt.destroyed_state.append(location)

        return RecoveryDecision.RETRY

    def _implicated(
        self,
        instances: Mapping[str, ServiceInstance],
        rules: list[RuleOutcome],
        services: list[str],
    ) -> list[str]:
        names = {name for outcome in rules for name in outcome.rule.reset_targets} | set(services)
        if not names:
            # Attempt-level failure with no specific culprit: every service
            # that did not make it to healthy is suspect
            names = {name for name, inst in instances.items() if inst.state != ServiceState.HEALTHY}
        return sorted(names)

    def destroy(self, location: str) -> None:
        """
        Destroy one persisted-state location

        "volume:<name>" removes a runtime volume; anything else is a path
        (relative paths resolve against the working directory).
        """
        if location.startswith(VOLUME_PREFIX):
            volume = location[len(VOLUME_PREFIX):]
            logger.info(f"Removing volume {volume}")
            self.runtime.remove_volume(volume)
            return

        path = Path(location)
        if not path.is_absolute():
            path = self.working_dir / path
        path = path.resolve()
        if path == Path(path.anchor) or path == Path.home().resolve():
            raise StackDefinitionError(f"Refusing to remove {path}", field="state", value=location)

        if path.is_dir():
            logger.info(f"Removing directory {path}")
            shutil.rmtree(path)
        elif path.exists():
            logger.info(f"Removing file {path}")
            path.unlink()
        else:
            logger.debug(f"State location {path} already absent")

    def failures_by_attempt(self) -> dict[int, list[str]]:
        return {attempt.index: attempt.failure_descriptions() for attempt in self.history}

    def exhausted_error(self) -> RecoveryExhausted:
        return RecoveryExhausted(self.attempts_used, self.failures_by_attempt())
