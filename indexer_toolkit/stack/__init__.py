"""
Stack definitions and orchestration

This module provides:
- Service, rule and template models
- YAML stack loading and the default topology
- Dependency-ordered startup with bounded recovery

Only the models are re-exported here; import the sequencer, recovery,
loader and catalog from their own modules.
"""

from indexer_toolkit.stack.models import (
    AttemptResult,
    ConfigTemplate,
    DirectiveKind,
    RecoveryDecision,
    RuleOutcome,
    RunAttempt,
    RunResources,
    RunResult,
    ServiceInstance,
    ServiceSpec,
    ServiceState,
    ServiceStatus,
    StackDefinition,
    StartDirective,
    ValidationRule,
)

__all__ = [
    "AttemptResult",
    "ConfigTemplate",
    "DirectiveKind",
    "RecoveryDecision",
    "RuleOutcome",
    "RunAttempt",
    "RunResources",
    "RunResult",
    "ServiceInstance",
    "ServiceSpec",
    "ServiceState",
    "ServiceStatus",
    "StackDefinition",
    "StartDirective",
    "ValidationRule",
]
