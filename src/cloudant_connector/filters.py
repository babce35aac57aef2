"""Filter predicates handed over by the host engine.

Predicates form a small expression tree over top-level columns. Each node can
evaluate itself against a decoded row with SQL three-valued logic (``None``
stands for *unknown*), which is how residual predicates the store cannot
evaluate exactly are applied after reading.
"""

from abc import ABC, abstractmethod
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass
from typing import Any, TypeAlias

Row: TypeAlias = dict[str, Any]


def _comparable(left: Any, right: Any) -> bool:
    if left is None or right is None:
        return False
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool)
    if isinstance(left, int | float) and isinstance(right, int | float):
        return True
    return isinstance(left, str) and isinstance(right, str)


@dataclass(frozen=True)
class Predicate(ABC):
    """Base class for all predicate nodes."""

    @abstractmethod
    def references(self) -> set[str]:
        """Return the columns this predicate reads."""

    @abstractmethod
    def evaluate(self, row: Mapping[str, Any]) -> bool | None:
        """Evaluate against a row; ``None`` means unknown."""

    def matches(self, row: Mapping[str, Any]) -> bool:
        """Return whether a row passes this predicate."""
        return self.evaluate(row) is True


@dataclass(frozen=True)
class ColumnPredicate(Predicate):
    """Predicate over a single column."""

    column: str

    def references(self) -> set[str]:
        return {self.column}


@dataclass(frozen=True)
class Comparison(ColumnPredicate):
    """Binary comparison of a column with a literal."""

    value: Any

    def evaluate(self, row: Mapping[str, Any]) -> bool | None:
        actual = row.get(self.column)
        if actual is None or self.value is None:
            return None
        if not _comparable(actual, self.value):
            # Only equality is defined between values of different kinds
            return False if isinstance(self, EqualTo) else None
        return self._compare(actual, self.value)

    @abstractmethod
    def _compare(self, actual: Any, expected: Any) -> bool:
        """Compare two values already known to be comparable."""


@dataclass(frozen=True)
class EqualTo(Comparison):
    """``column = value``."""

    def _compare(self, actual: Any, expected: Any) -> bool:
        return actual == expected


@dataclass(frozen=True)
class GreaterThan(Comparison):
    """``column > value``."""

    def _compare(self, actual: Any, expected: Any) -> bool:
        return actual > expected


@dataclass(frozen=True)
class GreaterThanOrEqual(Comparison):
    """``column >= value``."""

    def _compare(self, actual: Any, expected: Any) -> bool:
        return actual >= expected


@dataclass(frozen=True)
class LessThan(Comparison):
    """``column < value``."""

    def _compare(self, actual: Any, expected: Any) -> bool:
        return actual < expected


@dataclass(frozen=True)
class LessThanOrEqual(Comparison):
    """``column <= value``."""

    def _compare(self, actual: Any, expected: Any) -> bool:
        return actual <= expected


@dataclass(frozen=True)
class In(ColumnPredicate):
    """``column IN (values)``."""

    values: tuple[Any, ...]

    def evaluate(self, row: Mapping[str, Any]) -> bool | None:
        actual = row.get(self.column)
        if actual is None:
            return None
        unknown = False
        for value in self.values:
            if value is None:
                unknown = True
                continue
            if _comparable(actual, value) and actual == value:
                return True
        return None if unknown else False


@dataclass(frozen=True)
class IsNull(ColumnPredicate):
    """``column IS NULL`` (absent fields are null)."""

    def evaluate(self, row: Mapping[str, Any]) -> bool | None:
        return row.get(self.column) is None


@dataclass(frozen=True)
class IsNotNull(ColumnPredicate):
    """``column IS NOT NULL``."""

    def evaluate(self, row: Mapping[str, Any]) -> bool | None:
        return row.get(self.column) is not None


@dataclass(frozen=True)
class StringStartsWith(ColumnPredicate):
    """``column LIKE 'prefix%'``."""

    prefix: str

    def evaluate(self, row: Mapping[str, Any]) -> bool | None:
        actual = row.get(self.column)
        if actual is None:
            return None
        return isinstance(actual, str) and actual.startswith(self.prefix)


@dataclass(frozen=True)
class StringContains(ColumnPredicate):
    """``column LIKE '%fragment%'``."""

    fragment: str

    def evaluate(self, row: Mapping[str, Any]) -> bool | None:
        actual = row.get(self.column)
        if actual is None:
            return None
        return isinstance(actual, str) and self.fragment in actual


@dataclass(frozen=True)
class And(Predicate):
    """Conjunction."""

    left: Predicate
    right: Predicate

    def references(self) -> set[str]:
        return self.left.references() | self.right.references()

    def evaluate(self, row: Mapping[str, Any]) -> bool | None:
        left = self.left.evaluate(row)
        if left is False:
            return False
        right = self.right.evaluate(row)
        if right is False:
            return False
        if left is None or right is None:
            return None
        return True


@dataclass(frozen=True)
class Or(Predicate):
    """Disjunction."""

    left: Predicate
    right: Predicate

    def references(self) -> set[str]:
        return self.left.references() | self.right.references()

    def evaluate(self, row: Mapping[str, Any]) -> bool | None:
        left = self.left.evaluate(row)
        if left is True:
            return True
        right = self.right.evaluate(row)
        if right is True:
            return True
        if left is None or right is None:
            return None
        return False


@dataclass(frozen=True)
class Not(Predicate):
    """Negation."""

    child: Predicate

    def references(self) -> set[str]:
        return self.child.references()

    def evaluate(self, row: Mapping[str, Any]) -> bool | None:
        result = self.child.evaluate(row)
        return None if result is None else not result


def conjuncts(predicates: Iterable[Predicate]) -> list[Predicate]:
    """Split top-level ``And`` nodes into a flat list of conjuncts."""
    flat: list[Predicate] = []
    for predicate in predicates:
        if isinstance(predicate, And):
            flat.extend(conjuncts([predicate.left, predicate.right]))
        else:
            flat.append(predicate)
    return flat


def references(predicates: Iterable[Predicate]) -> set[str]:
    """Return every column read by the given predicates."""
    columns: set[str] = set()
    for predicate in predicates:
        columns |= predicate.references()
    return columns


def apply_filters(
    rows: Iterable[Mapping[str, Any]], predicates: list[Predicate]
) -> Iterator[Mapping[str, Any]]:
    """Yield the rows that satisfy every predicate."""
    for row in rows:
        if all(predicate.matches(row) for predicate in predicates):
            yield row
