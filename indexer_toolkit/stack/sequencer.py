"""
Service sequencer

Brings a stack up: render configuration, start services in dependency
order, poll each to readiness, release the validation barrier and hand
failed attempts to the RecoveryController.
"""

import asyncio
import heapq
import logging
from collections.abc import Sequence
from pathlib import Path

from indexer_toolkit.core.config import ARTIFACTS_SUBDIR, Settings, get_settings
from indexer_toolkit.core.exceptions import (
    ConfigurationError,
    DependencyCycleError,
    RecoverableError,
    RuntimeCommandError,
    StackDefinitionError,
    StartupTimeoutError,
    StructuralError,
    ToolkitError,
    ValidationFailure,
)
from indexer_toolkit.core.interfaces import IServiceRuntime
from indexer_toolkit.stack.models import (
    AttemptResult,
    RecoveryDecision,
    RunAttempt,
    RunResources,
    RunResult,
    ServiceInstance,
    ServiceSpec,
    ServiceState,
    StackDefinition,
    utcnow,
)
from indexer_toolkit.stack.recovery import RecoveryController
from indexer_toolkit.templating.renderer import ConfigTemplater
from indexer_toolkit.validation.engine import ValidationEngine

logger = logging.getLogger(__name__)


def topological_order(specs: Sequence[ServiceSpec]) -> list[str]:
    """
    Order services so that every service comes after its dependencies

    Ties are broken by name, so the result is deterministic.

    Raises:
        StackDefinitionError: On duplicate names or unknown dependencies
        DependencyCycleError: If the dependency graph has a cycle
    """
    by_name: dict[str, ServiceSpec] = {}
    for spec in specs:
        if spec.name in by_name:
            raise StackDefinitionError(f"Duplicate service name '{spec.name}'", field="services", value=spec.name)
        by_name[spec.name] = spec

    for spec in specs:
        for dependency in spec.depends_on:
            if dependency not in by_name:
                raise StackDefinitionError(
                    f"Service '{spec.name}' depends on unknown service '{dependency}'",
                    field=f"services.{spec.name}.depends_on",
                    value=dependency,
                )

    remaining_deps = {name: len(spec.depends_on) for name, spec in by_name.items()}
    dependents: dict[str, list[str]] = {name: [] for name in by_name}
    for spec in specs:
        for dependency in spec.depends_on:
            dependents[dependency].append(spec.name)

    ready = [name for name, count in remaining_deps.items() if count == 0]
    heapq.heapify(ready)
    order: list[str] = []
    while ready:
        name = heapq.heappop(ready)
        order.append(name)
        for dependent in dependents[name]:
            remaining_deps[dependent] -= 1
            if remaining_deps[dependent] == 0:
                heapq.heappush(ready, dependent)

    if len(order) < len(by_name):
        blocked = {name for name in by_name if name not in order}
        raise DependencyCycleError(_find_cycle(by_name, blocked))
    return order


def _find_cycle(by_name: dict[str, ServiceSpec], blocked: set[str]) -> list[str]:
    # Every blocked service still waits on another blocked service, so
    # following those edges must revisit a node
    path: list[str] = []
    current = min(blocked)
    while current not in path:
        path.append(current)
        current = min(dep for dep in by_name[current].depends_on if dep in blocked)
    cycle = path[path.index(current):]
    return cycle + [current]


def dependency_waves(specs: Sequence[ServiceSpec]) -> list[list[str]]:
    """
    Group services into waves that can start together

    Wave n holds the services whose dependencies all sit in earlier waves.
    """
    order = topological_order(specs)
    by_name = {spec.name: spec for spec in specs}
    level: dict[str, int] = {}
    for name in order:
        level[name] = max((level[dep] + 1 for dep in by_name[name].depends_on), default=0)

    waves: list[list[str]] = [[] for _ in range(max(level.values(), default=-1) + 1)]
    for name in order:
        waves[level[name]].append(name)
    return waves


class ServiceSequencer:
    """
    Run a stack to a validated healthy state

    Every attempt renders configuration, starts services wave by wave (a
    service starts as soon as all of its dependencies are healthy), and runs
    the validation rules once everything is healthy. A failed attempt stops
    every started service in reverse start order and asks the
    RecoveryController whether to retry.

    Example:
        sequencer = ServiceSequencer(runtime, ConfigTemplater(resolver))
        result = await sequencer.run(definition, max_attempts=3, per_service_timeout=120)
        result.raise_for_status()
    """

    def __init__(
        self,
        runtime: IServiceRuntime,
        templater: ConfigTemplater,
        validation: ValidationEngine | None = None,
        settings: Settings | None = None,
    ):
        self.runtime = runtime
        self.templater = templater
        self.validation = validation or ValidationEngine(runtime)
        self.settings = settings or get_settings()

    @property
    def working_dir(self) -> Path:
        return self.settings.working_dir.resolve()

    async def run(
        self,
        definition: StackDefinition,
        max_attempts: int | None = None,
        per_service_timeout: float | None = None,
    ) -> RunResult:
        """
        Bring the stack up, retrying with state destruction on failure

        Args:
            definition: Stack to run
            max_attempts: Attempt cap (default: settings.max_attempts)
            per_service_timeout: Readiness timeout for services without
                their own (default: settings.service_timeout)

        Returns:
            RunResult; on exhaustion success is False and error is
            RecoveryExhausted

        Raises:
            DependencyCycleError: Before any service is started
            StackDefinitionError: On an inconsistent definition
            ConfigRenderError: If configuration cannot be rendered
        """
        max_attempts = max_attempts if max_attempts is not None else self.settings.max_attempts
        timeout = per_service_timeout if per_service_timeout is not None else self.settings.service_timeout
        if max_attempts < 1:
            raise ConfigurationError(f"max_attempts must be at least 1, got {max_attempts}")
        if timeout <= 0:
            raise ConfigurationError(f"Service timeout must be positive, got {timeout}")

        order = topological_order(definition.services)
        self._check_rules(definition)

        working_dir = self.working_dir
        artifact_dir = working_dir / ARTIFACTS_SUBDIR
        resources = RunResources(working_dir=working_dir, artifact_dir=artifact_dir, runtime=self.runtime)
        recovery = RecoveryController(self.runtime, max_attempts, working_dir)

        logger.info(f"Bringing up stack '{definition.name}': {' -> '.join(order)}")
        logger.info(f"Attempt cap {max_attempts}, per-service timeout {timeout:.1f}s")

        attempt: RunAttempt | None = None
        start_order: list[str] = []
        for index in range(1, max_attempts + 1):
            logger.info("=" * 60)
            logger.info(f"Attempt {index}/{max_attempts}")
            logger.info("=" * 60)

            attempt = RunAttempt(index=index)
            artifacts = self.templater.render_all(definition, artifact_dir)
            resources.host_address = artifacts.host_address

            instances = {name: ServiceInstance(spec=definition.get_service(name), attempt=index) for name in order}
            start_order = []
            try:
                await self._run_attempt(definition, order, instances, start_order, timeout, attempt)
            except RecoverableError as e:
                attempt.result = AttemptResult.FAILURE
                attempt.error = e
                logger.warning(f"[WARN]  Attempt {index} failed: {e.message}")
            except Exception:
                attempt.result = AttemptResult.FATAL
                await self._stop_started(start_order, instances)
                raise
            else:
                attempt.result = AttemptResult.SUCCESS
            finally:
                attempt.service_status = {name: instance.status() for name, instance in instances.items()}
                attempt.finished_at = utcnow()

            if attempt.result == AttemptResult.SUCCESS:
                recovery.record(attempt)
                logger.info(f"[OK] Stack '{definition.name}' healthy after {index} attempt(s)")
                return RunResult(
                    success=True,
                    per_service_status=attempt.service_status,
                    attempts=recovery.attempts_used,
                    history=list(recovery.history),
                    start_order=start_order,
                    resources=resources,
                )

            await self._stop_started(start_order, instances)
            try:
                decision = recovery.recover(attempt, instances)
            except StructuralError:
                raise
            except ToolkitError as e:
                logger.error(f"[ERROR] Recovery after attempt {index} failed: {e.message}")
                failures = [f for _, lines in sorted(recovery.failures_by_attempt().items()) for f in lines]
                return self._failed_result(recovery, attempt, start_order, resources, e, failures + [e.message])
            if decision == RecoveryDecision.EXHAUSTED:
                break

        error = recovery.exhausted_error()
        logger.error(f"[ERROR] {error.message}")
        return self._failed_result(recovery, attempt, start_order, resources, error, error.failures)

    def _failed_result(
        self,
        recovery: RecoveryController,
        attempt: RunAttempt | None,
        start_order: list[str],
        resources: RunResources,
        error: ToolkitError,
        failures: list[str],
    ) -> RunResult:
        return RunResult(
            success=False,
            per_service_status=attempt.service_status if attempt else {},
            attempts=recovery.attempts_used,
            failures=failures,
            history=list(recovery.history),
            start_order=start_order,
            error=error,
            resources=resources,
        )

    def _check_rules(self, definition: StackDefinition) -> None:
        for rule in definition.rules:
            if definition.get_service(rule.target) is None:
                raise StackDefinitionError(
                    f"Rule '{rule.label}' targets unknown service '{rule.target}'",
                    field="rules.target",
                    value=rule.target,
                )
            for name in rule.resets:
                if definition.get_service(name) is None:
                    raise StackDefinitionError(
                        f"Rule '{rule.label}' resets unknown service '{name}'",
                        field="rules.resets",
                        value=name,
                    )

    async def _run_attempt(
        self,
        definition: StackDefinition,
        order: list[str],
        instances: dict[str, ServiceInstance],
        start_order: list[str],
        timeout: float,
        attempt: RunAttempt,
    ) -> None:
        deadline = self.settings.attempt_deadline
        try:
            async with asyncio.timeout(deadline):
                await self._start_all(order, instances, start_order, timeout, attempt)
        except TimeoutError:
            if deadline is None:
                raise
            pending = sorted(name for name, inst in instances.items() if inst.state != ServiceState.HEALTHY)
            raise StartupTimeoutError(
                "attempt",
                deadline,
                f"attempt deadline exceeded while waiting for {', '.join(pending)}",
            )

        outcomes = await self.validation.evaluate(definition.rules, instances)
        attempt.rule_outcomes = outcomes
        if attempt.failing_rules:
            raise ValidationFailure([outcome.describe() for outcome in attempt.failing_rules])

    async def _start_all(
        self,
        order: list[str],
        instances: dict[str, ServiceInstance],
        start_order: list[str],
        timeout: float,
        attempt: RunAttempt,
    ) -> None:
        """Wavefront scheduling; the first required failure ends the attempt"""
        semaphore = asyncio.Semaphore(self.settings.max_workers)
        waiting = list(order)
        running: dict[asyncio.Task, str] = {}
        failure: StartupTimeoutError | None = None

        try:
            while waiting or running:
                for name in list(waiting):
                    instance = instances[name]
                    deps = [instances[dep] for dep in instance.spec.depends_on]
                    failed_dep = next((d.name for d in deps if d.state == ServiceState.FAILED), None)
                    if failed_dep is not None:
                        waiting.remove(name)
                        instance.transition(ServiceState.FAILED, f"dependency '{failed_dep}' failed")
                        attempt.failed_services.append(name)
                        if instance.spec.required:
                            failure = failure or StartupTimeoutError(name, timeout, f"dependency '{failed_dep}' failed")
                    elif all(d.state == ServiceState.HEALTHY for d in deps):
                        waiting.remove(name)
                        task = asyncio.create_task(
                            self._bring_up(instance, semaphore, timeout, start_order),
                            name=f"start-{name}",
                        )
                        running[task] = name

                if failure is not None or not running:
                    break

                done, _ = await asyncio.wait(running, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    name = running.pop(task)
                    error = task.result()
                    if error is None:
                        continue
                    attempt.failed_services.append(name)
                    if instances[name].spec.required:
                        failure = failure or error
                    else:
                        logger.warning(f"[WARN]  Optional service {name} failed: {error.message}")
                if failure is not None:
                    break
        finally:
            for task in running:
                task.cancel()
            if running:
                await asyncio.gather(*running, return_exceptions=True)

        if failure is not None:
            raise failure

    async def _bring_up(
        self,
        instance: ServiceInstance,
        semaphore: asyncio.Semaphore,
        timeout: float,
        start_order: list[str],
    ) -> StartupTimeoutError | None:
        spec = instance.spec
        service_timeout = spec.timeout or timeout

        async with semaphore:
            instance.transition(ServiceState.STARTING)
            start_order.append(instance.name)
            logger.info(f"[{instance.name}] starting ({spec.start.kind.value}: {spec.start.value})")
            start_future = asyncio.ensure_future(asyncio.to_thread(self.runtime.start, spec, self.working_dir))
            try:
                try:
                    await asyncio.shield(start_future)
                except RuntimeCommandError as e:
                    error = StartupTimeoutError(instance.name, service_timeout, f"failed to start: {e.message}")
                    instance.transition(ServiceState.FAILED, error.message)
                    logger.error(f"[ERROR] [{instance.name}] {error.message}")
                    return error

                result = await spec.probe.poll(
                    instance,
                    self.runtime,
                    interval=self.settings.poll_interval,
                    timeout=service_timeout,
                    backoff=self.settings.poll_backoff,
                    max_interval=self.settings.max_poll_interval,
                )
            except asyncio.CancelledError:
                await self._settle_start(instance, start_future)
                if instance.state == ServiceState.STARTING:
                    instance.transition(ServiceState.FAILED, "cancelled")
                raise

        if result.healthy:
            instance.transition(ServiceState.HEALTHY)
            logger.info(f"[OK] [{instance.name}] healthy after {result.elapsed:.2f}s")
            return None

        instance.transition(ServiceState.FAILED, result.error.message)
        logger.error(f"[ERROR] [{instance.name}] {result.error.message}")
        return result.error

    async def _settle_start(self, instance: ServiceInstance, start_future: asyncio.Future) -> None:
        # The runtime call keeps running in its thread after cancellation;
        # the service may only be stopped once it has returned
        if not start_future.done():
            logger.info(f"[{instance.name}] cancelled while starting, waiting for the runtime to return")
        while not start_future.done():
            try:
                await asyncio.wait([start_future])
            except asyncio.CancelledError:
                continue
        if not start_future.cancelled() and start_future.exception() is not None:
            logger.warning(f"[WARN]  [{instance.name}] start failed after cancellation: {start_future.exception()}")

    async def _stop_started(self, start_order: list[str], instances: dict[str, ServiceInstance]) -> None:
        for name in reversed(start_order):
            instance = instances[name]
            if instance.stopped_at is not None:
                continue
            try:
                await asyncio.to_thread(self.runtime.stop, name)
            except RuntimeCommandError as e:
                logger.error(f"[ERROR] Failed to stop {name}: {e.message}")
                continue
            instance.mark_stopped()
            logger.debug(f"Stopped {name}")

    async def down(self, definition: StackDefinition, destroy_state: bool = False) -> list[str]:
        """
        Stop every service in reverse dependency order

        Args:
            definition: Stack to stop
            destroy_state: Also destroy every service's persisted state

        Returns:
            Names of the services that were stopped

        Raises:
            RuntimeCommandError: If a service cannot be stopped
        """
        order = topological_order(definition.services)
        stopped = []
        for name in reversed(order):
            await asyncio.to_thread(self.runtime.stop, name)
            stopped.append(name)
            logger.info(f"Stopped {name}")

        if destroy_state:
            recovery = RecoveryController(self.runtime, 1, self.working_dir)
            for name in reversed(order):
                for location in definition.get_service(name).state_locations:
                    recovery.destroy(location)
        return stopped
