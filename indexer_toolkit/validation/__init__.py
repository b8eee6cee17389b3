"""
Validation module - post-readiness assertions

Comparators decide whether an observed value satisfies a rule, attribute
readers fetch observed values, and the ValidationEngine ties them together.
"""

from indexer_toolkit.validation.comparators import (
    COMPARATORS,
    AtLeast,
    AtMost,
    Comparator,
    Contains,
    Equals,
    NotEquals,
    get_comparator,
)
from indexer_toolkit.validation.engine import ValidationEngine
from indexer_toolkit.validation.readers import (
    AttributeReader,
    AttributeReadError,
    ExecAttributeReader,
    HttpAttributeReader,
    MetricsAttributeReader,
    SqlAttributeReader,
    build_reader,
)

__all__ = [
    "COMPARATORS",
    "Comparator",
    "Equals",
    "NotEquals",
    "Contains",
    "AtLeast",
    "AtMost",
    "get_comparator",
    "ValidationEngine",
    "AttributeReader",
    "AttributeReadError",
    "HttpAttributeReader",
    "MetricsAttributeReader",
    "SqlAttributeReader",
    "ExecAttributeReader",
    "build_reader",
]
