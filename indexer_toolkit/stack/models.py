"""
Stack models and data structures

Defines the core data models for service definitions, per-attempt runtime
records, validation rules, templates and run results.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

from indexer_toolkit.core.exceptions import InvalidStateTransition, ToolkitError

if TYPE_CHECKING:
    from indexer_toolkit.core.interfaces import IServiceRuntime
    from indexer_toolkit.health.probes import HealthProbe
    from indexer_toolkit.validation.comparators import Comparator
    from indexer_toolkit.validation.readers import AttributeReader


def utcnow() -> datetime:
    return datetime.now(UTC)


class DirectiveKind(str, Enum):
    """How a service is started"""

    IMAGE = "image"
    COMMAND = "command"


class ServiceState(str, Enum):
    """Lifecycle state of a service instance within one attempt"""

    PENDING = "pending"
    STARTING = "starting"
    HEALTHY = "healthy"
    FAILED = "failed"


class AttemptResult(str, Enum):
    """Aggregate outcome of one attempt"""

    SUCCESS = "success"
    FAILURE = "failure"
    FATAL = "fatal"


class RecoveryDecision(str, Enum):
    """What the RecoveryController wants the sequencer to do next"""

    RETRY = "retry"
    EXHAUSTED = "exhausted"


_ALLOWED_TRANSITIONS: dict[ServiceState, set[ServiceState]] = {
    ServiceState.PENDING: {ServiceState.STARTING, ServiceState.FAILED},
    ServiceState.STARTING: {ServiceState.HEALTHY, ServiceState.FAILED},
    ServiceState.HEALTHY: set(),
    ServiceState.FAILED: set(),
}


@dataclass(frozen=True)
class StartDirective:
    """
    Start directive for a service

    Attributes:
        kind: image (container) or command (local process)
        value: Image reference or command line
        env: Environment variables
        ports: Port publications ("host:container")
        mounts: Bind mounts or volumes ("source:target[:mode]")
        args: Extra arguments passed to the image entrypoint / command
    """

    kind: DirectiveKind
    value: str
    env: Mapping[str, str] = field(default_factory=dict)
    ports: tuple[str, ...] = ()
    mounts: tuple[str, ...] = ()
    args: tuple[str, ...] = ()


@dataclass(frozen=True)
class ServiceSpec:
    """
    Static description of a manageable service

    Attributes:
        name: Unique service name
        start: Start directive
        probe: Readiness probe
        depends_on: Names of services that must be healthy first
        timeout: Readiness timeout in seconds (None = run default)
        state_locations: Persisted state owned by the service
            (filesystem paths, or "volume:<name>" for runtime volumes)
        attributes: Reader for observable attributes used by validation rules
        required: Whether the validation barrier waits for this service
    """

    name: str
    start: StartDirective
    probe: "HealthProbe"
    depends_on: frozenset[str] = frozenset()
    timeout: float | None = None
    state_locations: tuple[str, ...] = ()
    attributes: "AttributeReader | None" = None
    required: bool = True


@dataclass
class ServiceInstance:
    """
    Runtime record for one ServiceSpec during one attempt

    A fresh instance is created in PENDING when an attempt begins and is
    discarded when the attempt ends.
    """

    spec: ServiceSpec
    attempt: int
    state: ServiceState = ServiceState.PENDING
    transitions: list[tuple[ServiceState, datetime]] = field(default_factory=list)
    started_at: datetime | None = None
    healthy_at: datetime | None = None
    stopped_at: datetime | None = None
    error: str | None = None

    def __post_init__(self) -> None:
        self.transitions.append((self.state, utcnow()))

    @property
    def name(self) -> str:
        return self.spec.name

    @property
    def is_terminal(self) -> bool:
        return self.state in (ServiceState.HEALTHY, ServiceState.FAILED)

    @property
    def was_started(self) -> bool:
        return self.started_at is not None

    @property
    def is_stopped(self) -> bool:
        """True when the service was never started or has been stopped since"""
        return not self.was_started or self.stopped_at is not None

    def transition(self, target: ServiceState, error: str | None = None) -> None:
        """
        Move to a new state

        Raises:
            InvalidStateTransition: If the edge is not part of the state machine
        """
        if target not in _ALLOWED_TRANSITIONS[self.state]:
            raise InvalidStateTransition(self.name, self.state.value, target.value)

        now = utcnow()
        self.state = target
        self.transitions.append((target, now))
        if target == ServiceState.STARTING:
            self.started_at = now
        elif target == ServiceState.HEALTHY:
            self.healthy_at = now
        elif target == ServiceState.FAILED:
            self.error = error

    def mark_stopped(self) -> None:
        self.stopped_at = utcnow()

    def status(self) -> "ServiceStatus":
        elapsed = None
        if self.started_at is not None:
            end = self.healthy_at or (self.transitions[-1][1] if self.is_terminal else None)
            if end is not None:
                elapsed = (end - self.started_at).total_seconds()
        return ServiceStatus(
            name=self.name,
            state=self.state,
            started_at=self.started_at,
            healthy_at=self.healthy_at,
            elapsed_seconds=elapsed,
            error=self.error,
        )


@dataclass
class ServiceStatus:
    """Per-service report carried by a RunAttempt / RunResult"""

    name: str
    state: ServiceState
    started_at: datetime | None = None
    healthy_at: datetime | None = None
    elapsed_seconds: float | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "healthy_at": self.healthy_at.isoformat() if self.healthy_at else None,
            "elapsed_seconds": self.elapsed_seconds,
            "error": self.error,
        }


@dataclass(frozen=True)
class ValidationRule:
    """
    Declarative post-readiness assertion

    Attributes:
        target: Service whose state is observed
        query: Observable attribute selector (e.g. "server_encoding")
        expected: Expected value
        comparator: Comparison applied as comparator(observed, expected)
        name: Optional display name
        resets: Services whose state is reset when the rule fails (default:
            the target)
    """

    target: str
    query: str
    expected: Any
    comparator: "Comparator"
    name: str = ""
    resets: tuple[str, ...] = ()

    @property
    def label(self) -> str:
        return self.name or f"{self.target}.{self.query} {self.comparator.name} {self.expected!r}"

    @property
    def reset_targets(self) -> tuple[str, ...]:
        return self.resets or (self.target,)


@dataclass
class RuleOutcome:
    """Result of evaluating one ValidationRule"""

    rule: ValidationRule
    passed: bool
    observed: Any = None
    error: str | None = None

    def describe(self) -> str:
        if self.error:
            return f"{self.rule.label}: could not read value ({self.error})"
        return f"{self.rule.label}: observed {self.observed!r}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "rule": self.rule.label,
            "target": self.rule.target,
            "passed": self.passed,
            "observed": self.observed,
            "error": self.error,
        }


@dataclass(frozen=True)
class ConfigTemplate:
    """
    Parameterized configuration artifact

    Attributes:
        name: Template name
        target: Output path relative to the artifact directory
        text: Template text with {{ token }} placeholders
        placeholders: Token -> variable name mapping; tokens missing from
            the mapping are looked up under their own name
    """

    name: str
    target: str
    text: str
    placeholders: Mapping[str, str] = field(default_factory=dict)


@dataclass
class StackDefinition:
    """Everything the orchestrator needs to bring a stack up"""

    name: str
    services: list[ServiceSpec]
    rules: list[ValidationRule] = field(default_factory=list)
    templates: list[ConfigTemplate] = field(default_factory=list)
    variables: dict[str, Any] = field(default_factory=dict)
    payloads: dict[str, bytes] = field(default_factory=dict)

    def get_service(self, name: str) -> ServiceSpec | None:
        for spec in self.services:
            if spec.name == name:
                return spec
        return None


@dataclass
class RunAttempt:
    """
    Record of one render -> start-all -> validate cycle

    Attributes:
        index: 1-based attempt number
        service_status: Final status of every service in the attempt
        rule_outcomes: Outcome of each validation rule (empty if not reached)
        failed_services: Services that failed to become healthy
        result: Aggregate result
        error: Error that ended the attempt
    """

    index: int
    started_at: datetime = field(default_factory=utcnow)
    finished_at: datetime | None = None
    service_status: dict[str, ServiceStatus] = field(default_factory=dict)
    rule_outcomes: list[RuleOutcome] = field(default_factory=list)
    failed_services: list[str] = field(default_factory=list)
    destroyed_state: list[str] = field(default_factory=list)
    result: AttemptResult | None = None
    error: ToolkitError | None = None

    @property
    def failing_rules(self) -> list[RuleOutcome]:
        return [outcome for outcome in self.rule_outcomes if not outcome.passed]

    def failure_descriptions(self) -> list[str]:
        lines = []
        for name in self.failed_services:
            status = self.service_status.get(name)
            detail = status.error if status and status.error else "did not become healthy"
            lines.append(f"service {name}: {detail}")
        lines.extend(f"rule {outcome.describe()}" for outcome in self.failing_rules)
        if not lines and self.error is not None:
            lines.append(self.error.message)
        return lines

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "result": self.result.value if self.result else None,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "services": {name: s.to_dict() for name, s in self.service_status.items()},
            "rules": [outcome.to_dict() for outcome in self.rule_outcomes],
            "failed_services": self.failed_services,
            "destroyed_state": self.destroyed_state,
            "error": self.error.message if self.error else None,
        }


@dataclass
class RunResources:
    """
    Resource handles owned by one run

    Threaded through the RunResult instead of living in module globals so
    separate runs never share state.
    """

    working_dir: Path
    artifact_dir: Path
    runtime: "IServiceRuntime"
    host_address: str | None = None


@dataclass
class RunResult:
    """
    Outcome of ServiceSequencer.run

    Attributes:
        success: Whether the final attempt passed
        per_service_status: Status of each service in the final attempt
        attempts: Number of attempts performed
        failures: Every failure description across all attempts
        history: All attempts in order
        start_order: Service names in the order they were started (final attempt)
        error: RecoveryExhausted when every attempt failed, or the error that
            stopped the recovery loop (e.g. a volume that could not be removed)
        resources: Handles owned by this run
    """

    success: bool
    per_service_status: dict[str, ServiceStatus]
    attempts: int
    failures: list[str] = field(default_factory=list)
    history: list[RunAttempt] = field(default_factory=list)
    start_order: list[str] = field(default_factory=list)
    error: ToolkitError | None = None
    resources: RunResources | None = None

    def raise_for_status(self) -> None:
        if self.error is not None:
            raise self.error

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "attempts": self.attempts,
            "start_order": self.start_order,
            "services": {name: s.to_dict() for name, s in self.per_service_status.items()},
            "failures": self.failures,
            "history": [attempt.to_dict() for attempt in self.history],
            "error": self.error.message if self.error else None,
        }
