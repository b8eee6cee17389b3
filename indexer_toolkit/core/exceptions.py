"""
Base exception hierarchy

Provides a consistent exception structure across the toolkit with clear
error messages and recovery hints.

Errors fall into three groups:
- StructuralError: the stack definition itself is broken, retrying is pointless
- RecoverableError: absorbed by the RecoveryController up to the attempt cap
- RecoveryExhausted: terminal failure of a run after every attempt was used
"""

from typing import Any


class ToolkitError(Exception):
    """
    Base exception for all toolkit errors

    Attributes:
        message: Error message
        component: Component that raised the error
        recovery_hint: Optional hint for recovery
    """

    def __init__(self, message: str, component: str = "", recovery_hint: str = ""):
        self.message = message
        self.component = component
        self.recovery_hint = recovery_hint
        super().__init__(message)

    def __str__(self) -> str:
        msg = super().__str__()
        if self.component:
            msg = f"[{self.component}] {msg}"
        if self.recovery_hint:
            msg += f"\nRecovery: {self.recovery_hint}"
        return msg


# ============================================================
# Structural errors (fatal, never retried)
# ============================================================


class StructuralError(ToolkitError):
    """A defect in the stack definition or its inputs; a new attempt would fail identically"""


class ConfigurationError(StructuralError):
    """Configuration-related errors"""

    def __init__(self, message: str, recovery_hint: str = ""):
        super().__init__(
            message,
            component="Configuration",
            recovery_hint=recovery_hint or "Check your .env file and settings",
        )


class StackDefinitionError(StructuralError):
    """
    Error loading or validating a stack definition

    Attributes:
        field: The field that failed validation
        value: The invalid value
    """

    def __init__(self, message: str, field: str = "", value: Any = None, recovery_hint: str = ""):
        self.field = field
        self.value = value
        super().__init__(
            message,
            component="StackDefinition",
            recovery_hint=recovery_hint or "Check stack.yaml against the documented structure",
        )


class ConfigRenderError(StructuralError):
    """A template could not be rendered (missing variable, unresolvable host address)"""

    def __init__(self, message: str, template: str = "", missing: list[str] | None = None, recovery_hint: str = ""):
        self.template = template
        self.missing = missing or []
        super().__init__(
            message,
            component="ConfigTemplater",
            recovery_hint=recovery_hint or "Supply the missing variables in stack.yaml or the environment",
        )


class DependencyCycleError(StructuralError):
    """The service dependency graph contains a cycle"""

    def __init__(self, cycle: list[str]):
        self.cycle = cycle
        super().__init__(
            f"Dependency cycle detected: {' -> '.join(cycle)}",
            component="ServiceSequencer",
            recovery_hint="Remove one of the depends_on edges in the cycle",
        )


# ============================================================
# Recoverable errors (handed to the RecoveryController)
# ============================================================


class RecoverableError(ToolkitError):
    """A failure that destroying persisted state and retrying may fix"""


class StartupTimeoutError(RecoverableError):
    """A service did not become healthy within its timeout"""

    def __init__(self, service: str, timeout: float, detail: str = ""):
        self.service = service
        self.timeout = timeout
        message = f"Service '{service}' not healthy after {timeout:.1f}s"
        if detail:
            message += f": {detail}"
        super().__init__(message, component="HealthProbe")


class ValidationFailure(RecoverableError):
    """One or more validation rules did not hold against a healthy stack"""

    def __init__(self, failures: list[str]):
        self.failures = failures
        super().__init__(
            f"{len(failures)} validation rule(s) failed: " + "; ".join(failures),
            component="ValidationEngine",
        )


class RecoveryExhausted(ToolkitError):
    """
    Every allowed attempt was consumed without success

    Attributes:
        attempts: Number of attempts performed
        history: Failure descriptions per attempt index
    """

    def __init__(self, attempts: int, history: dict[int, list[str]]):
        self.attempts = attempts
        self.history = history
        lines = [f"Stack not healthy after {attempts} attempt(s)"]
        for index, failures in sorted(history.items()):
            for failure in failures:
                lines.append(f"  attempt {index}: {failure}")
        super().__init__(
            "\n".join(lines),
            component="RecoveryController",
            recovery_hint="Inspect service logs; raise --max-attempts or --timeout if services are slow",
        )

    @property
    def failures(self) -> list[str]:
        return [f for _, failures in sorted(self.history.items()) for f in failures]


# ============================================================
# Programming / runtime contract errors
# ============================================================


class InvalidStateTransition(ToolkitError):
    """A ServiceInstance was moved along an edge the state machine does not allow"""

    def __init__(self, service: str, current: str, target: str):
        super().__init__(
            f"Service '{service}' cannot move from {current} to {target}",
            component="ServiceInstance",
        )


class StateOwnershipError(ToolkitError):
    """Persisted state was about to be destroyed while its service was still live"""

    def __init__(self, service: str):
        self.service = service
        super().__init__(
            f"Refusing to destroy state of '{service}': service is not stopped",
            component="RecoveryController",
        )


class ValidationBarrierError(ToolkitError):
    """Validation was requested before every required service was healthy"""

    def __init__(self, pending: list[str]):
        self.pending = pending
        super().__init__(
            f"Validation barrier not reached, services not healthy: {', '.join(pending)}",
            component="ValidationEngine",
        )


class RuntimeCommandError(ToolkitError):
    """A start/stop/inspect/exec primitive of the service runtime failed"""

    def __init__(self, message: str, command: list[str] | None = None, recovery_hint: str = ""):
        self.command = command or []
        super().__init__(
            message,
            component="Runtime",
            recovery_hint=recovery_hint or "Ensure Docker is installed and running",
        )
