"""
quotaledger/features/store/conditions.py

Composable condition expressions for the key-value store.

Conditions are plain objects evaluated against the current stored item, so
every backend applies them the same way under its per-item atomic write:

    Attr("version").eq(3) & Attr("status").is_in(["ACTIVE", "PAID"])
    Key("pk").eq("ORG#acme") & Key("sk").begins_with("SUB#")

A missing item is evaluated as None: every comparison is False and only
`not_exists()` holds.
"""

from typing import Any, Iterable, Optional, Tuple

from quotaledger.core.errors import ValidationError

_MISSING = object()


def _resolve(item: Optional[dict], name: str) -> Any:
    if item is None:
        return _MISSING
    return item.get(name, _MISSING)


class Condition:
    """Base class; subclasses implement evaluate()."""

    def evaluate(self, item: Optional[dict]) -> bool:
        raise NotImplementedError

    def __and__(self, other: "Condition") -> "Condition":
        return And(self, other)

    def __or__(self, other: "Condition") -> "Condition":
        return Or(self, other)

    def __invert__(self) -> "Condition":
        return Not(self)


class Comparison(Condition):
    _OPERATORS = {
        "eq": lambda a, b: a == b,
        "ne": lambda a, b: a != b,
        "lt": lambda a, b: a < b,
        "lte": lambda a, b: a <= b,
        "gt": lambda a, b: a > b,
        "gte": lambda a, b: a >= b,
    }

    def __init__(self, name: str, operator: str, *values: Any):
        self.name = name
        self.operator = operator
        self.values = values

    def evaluate(self, item: Optional[dict]) -> bool:
        actual = _resolve(item, self.name)
        if self.operator == "exists":
            return actual is not _MISSING
        if self.operator == "not_exists":
            return actual is _MISSING
        if actual is _MISSING:
            return False
        try:
            if self.operator == "between":
                low, high = self.values
                return low <= actual <= high
            if self.operator == "begins_with":
                return isinstance(actual, str) and actual.startswith(self.values[0])
            if self.operator == "is_in":
                return actual in self.values[0]
            return self._OPERATORS[self.operator](actual, self.values[0])
        except TypeError:
            # Mismatched types never satisfy a condition
            return False

    def __repr__(self) -> str:
        args = ", ".join(repr(v) for v in self.values)
        return f"{self.name}.{self.operator}({args})"


class And(Condition):
    def __init__(self, *conditions: Condition):
        self.conditions = conditions

    def evaluate(self, item: Optional[dict]) -> bool:
        return all(c.evaluate(item) for c in self.conditions)

    def __repr__(self) -> str:
        return "(" + " AND ".join(repr(c) for c in self.conditions) + ")"


class Or(Condition):
    def __init__(self, *conditions: Condition):
        self.conditions = conditions

    def evaluate(self, item: Optional[dict]) -> bool:
        return any(c.evaluate(item) for c in self.conditions)

    def __repr__(self) -> str:
        return "(" + " OR ".join(repr(c) for c in self.conditions) + ")"


class Not(Condition):
    def __init__(self, condition: Condition):
        self.condition = condition

    def evaluate(self, item: Optional[dict]) -> bool:
        return not self.condition.evaluate(item)

    def __repr__(self) -> str:
        return f"NOT {self.condition!r}"


class Attr:
    """Builder for conditions on a named attribute."""

    def __init__(self, name: str):
        self.name = name

    def eq(self, value: Any) -> Comparison:
        return Comparison(self.name, "eq", value)

    def ne(self, value: Any) -> Comparison:
        return Comparison(self.name, "ne", value)

    def lt(self, value: Any) -> Comparison:
        return Comparison(self.name, "lt", value)

    def lte(self, value: Any) -> Comparison:
        return Comparison(self.name, "lte", value)

    def gt(self, value: Any) -> Comparison:
        return Comparison(self.name, "gt", value)

    def gte(self, value: Any) -> Comparison:
        return Comparison(self.name, "gte", value)

    def between(self, low: Any, high: Any) -> Comparison:
        return Comparison(self.name, "between", low, high)

    def begins_with(self, prefix: str) -> Comparison:
        return Comparison(self.name, "begins_with", prefix)

    def is_in(self, values: Iterable[Any]) -> Comparison:
        return Comparison(self.name, "is_in", tuple(values))

    def exists(self) -> Comparison:
        return Comparison(self.name, "exists")

    def not_exists(self) -> Comparison:
        return Comparison(self.name, "not_exists")


class Key(Attr):
    """Builder for key conditions used by query()."""

    _SORT_OPERATORS = {"eq", "lt", "lte", "gt", "gte", "between", "begins_with"}


def split_key_condition(condition: Condition, partition_attr: str) -> Tuple[Any, Optional[Comparison]]:
    """Split a key condition into (partition value, optional sort-key comparison).

    Raises:
        ValidationError: If the condition is not `pk == v` optionally AND-ed
            with a single supported comparison on another attribute.
    """
    parts = condition.conditions if isinstance(condition, And) else (condition,)
    partition_value = _MISSING
    sort_condition = None

    for part in parts:
        if not isinstance(part, Comparison):
            raise ValidationError(f"Unsupported key condition: {condition!r}")
        if part.name == partition_attr:
            if part.operator != "eq" or partition_value is not _MISSING:
                raise ValidationError(f"Partition key must be matched with a single eq(): {condition!r}")
            partition_value = part.values[0]
        else:
            if sort_condition is not None or part.operator not in Key._SORT_OPERATORS:
                raise ValidationError(f"Unsupported sort key condition: {condition!r}")
            sort_condition = part

    if partition_value is _MISSING:
        raise ValidationError(f"Key condition must match partition key '{partition_attr}'")
    return partition_value, sort_condition
