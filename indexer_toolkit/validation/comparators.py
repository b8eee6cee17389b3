"""
Comparators for validation rules

A comparator decides whether an observed attribute value satisfies the
expected value of a rule. Equality is the default.
"""

from abc import ABC, abstractmethod
from typing import Any

from indexer_toolkit.core.exceptions import StackDefinitionError


class Comparator(ABC):
    """Base interface for rule comparators"""

    name: str = "abstract"

    @abstractmethod
    def compare(self, observed: Any, expected: Any) -> bool:
        """Return True if observed satisfies expected"""

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"

    def __eq__(self, other: object) -> bool:
        return type(self) is type(other)

    def __hash__(self) -> int:
        return hash(self.name)


class Equals(Comparator):
    """String equality ("UTF8" == "UTF8", 5 == "5")"""

    name = "equals"

    def compare(self, observed: Any, expected: Any) -> bool:
        if observed is None:
            return expected is None
        return str(observed) == str(expected)


class NotEquals(Comparator):
    name = "not_equals"

    def compare(self, observed: Any, expected: Any) -> bool:
        return not Equals().compare(observed, expected)


class Contains(Comparator):
    name = "contains"

    def compare(self, observed: Any, expected: Any) -> bool:
        if observed is None:
            return False
        if isinstance(observed, (list, tuple, set, dict)):
            return expected in observed
        return str(expected) in str(observed)


class _Threshold(Comparator):
    """Numeric comparison; non-numeric observations never pass"""

    @staticmethod
    def _as_number(value: Any) -> float | None:
        if isinstance(value, bool):
            return None
        try:
            return float(value)
        except (TypeError, ValueError):
            return None

    def compare(self, observed: Any, expected: Any) -> bool:
        left = self._as_number(observed)
        right = self._as_number(expected)
        if left is None or right is None:
            return False
        return self._holds(left, right)

    @abstractmethod
    def _holds(self, observed: float, expected: float) -> bool: ...


class AtLeast(_Threshold):
    name = "at_least"

    def _holds(self, observed: float, expected: float) -> bool:
        return observed >= expected


class AtMost(_Threshold):
    name = "at_most"

    def _holds(self, observed: float, expected: float) -> bool:
        return observed <= expected


COMPARATORS: dict[str, type[Comparator]] = {
    cls.name: cls for cls in (Equals, NotEquals, Contains, AtLeast, AtMost)
}


def get_comparator(name: str | None) -> Comparator:
    """
    Look up a comparator by name (None means equals)

    Raises:
        StackDefinitionError: If the name is unknown
    """
    if name is None:
        return Equals()
    try:
        return COMPARATORS[name]()
    except KeyError:
        raise StackDefinitionError(
            f"Unknown comparator '{name}'. Valid comparators: {', '.join(COMPARATORS)}",
            field="comparator",
            value=name,
        )
