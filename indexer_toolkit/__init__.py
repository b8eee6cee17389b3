"""
Indexer Toolkit

Local orchestration engine that brings up a blockchain indexing development
stack: renders configuration, starts services in dependency order, waits for
readiness, validates the result and recovers by resetting state and retrying.
"""

__version__ = "0.3.0"

from indexer_toolkit.stack.loader import StackLoader
from indexer_toolkit.stack.models import RunResult, ServiceSpec, StackDefinition
from indexer_toolkit.stack.sequencer import ServiceSequencer, topological_order

__all__ = [
    "ServiceSequencer",
    "StackLoader",
    "StackDefinition",
    "ServiceSpec",
    "RunResult",
    "topological_order",
]
