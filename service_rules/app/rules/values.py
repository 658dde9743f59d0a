"""
Typed view over the loosely-typed values found in rules and entities.

Every comparison the condition evaluator makes goes through ``RuleValue`` so
the coercion rules live in one place:

- numbers and numeric strings compare numerically when *both* sides parse
  as finite numbers;
- booleans are never numeric and render as ``"true"`` / ``"false"``;
- everything else compares as text, except lists and mappings which compare
  structurally and ``None`` which only equals ``None``.
"""

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, List, Optional

from .resolver import MISSING


class ValueKind(str, Enum):
    MISSING = "missing"
    NULL = "null"
    BOOLEAN = "boolean"
    NUMBER = "number"
    STRING = "string"
    LIST = "list"
    MAPPING = "mapping"
    OTHER = "other"


@dataclass(frozen=True)
class RuleValue:
    """A raw value tagged with its kind."""
    kind: ValueKind
    raw: Any

    @classmethod
    def of(cls, raw: Any) -> "RuleValue":
        if isinstance(raw, RuleValue):
            return raw
        if raw is MISSING:
            return cls(ValueKind.MISSING, raw)
        if raw is None:
            return cls(ValueKind.NULL, raw)
        if isinstance(raw, bool):
            return cls(ValueKind.BOOLEAN, raw)
        if isinstance(raw, (int, float, Decimal)):
            return cls(ValueKind.NUMBER, raw)
        if isinstance(raw, str):
            return cls(ValueKind.STRING, raw)
        if isinstance(raw, (list, tuple, set, frozenset)):
            return cls(ValueKind.LIST, list(raw))
        if isinstance(raw, dict):
            return cls(ValueKind.MAPPING, raw)
        if isinstance(raw, Enum):
            return cls.of(raw.value)
        return cls(ValueKind.OTHER, raw)

    @property
    def is_missing(self) -> bool:
        return self.kind is ValueKind.MISSING

    @property
    def is_null(self) -> bool:
        return self.kind is ValueKind.NULL

    def as_number(self) -> Optional[Decimal]:
        """Exact numeric view, or None when the value is not a finite number."""
        if self.kind is ValueKind.NUMBER:
            if isinstance(self.raw, Decimal):
                number = self.raw
            elif isinstance(self.raw, int):
                number = Decimal(self.raw)
            else:
                # str() keeps the shortest repr, so 0.1 stays 0.1
                number = Decimal(str(self.raw))
        elif self.kind is ValueKind.STRING:
            text = self.raw.strip()
            if not text:
                return None
            try:
                number = Decimal(text)
            except (InvalidOperation, ValueError):
                return None
        else:
            return None
        if not number.is_finite():
            return None
        return number

    def as_text(self) -> Optional[str]:
        """Text view used for string comparison and substring operators."""
        if self.kind is ValueKind.STRING:
            return self.raw
        if self.kind is ValueKind.BOOLEAN:
            return "true" if self.raw else "false"
        if self.kind is ValueKind.NUMBER:
            if isinstance(self.raw, float) and self.raw.is_integer():
                return str(int(self.raw))
            return str(self.raw)
        if self.kind is ValueKind.OTHER:
            return str(self.raw)
        return None

    def as_list(self) -> Optional[List[Any]]:
        if self.kind is ValueKind.LIST:
            return self.raw
        return None


def values_equal(left: Any, right: Any) -> bool:
    """Equality after coercion. MISSING never equals anything."""
    a = RuleValue.of(left)
    b = RuleValue.of(right)

    if a.is_missing or b.is_missing:
        return False
    if a.is_null or b.is_null:
        return a.is_null and b.is_null

    a_num = a.as_number()
    b_num = b.as_number()
    if a_num is not None and b_num is not None:
        return a_num == b_num

    if a.kind is ValueKind.LIST or b.kind is ValueKind.LIST:
        if a.kind is not b.kind or len(a.raw) != len(b.raw):
            return False
        return all(values_equal(x, y) for x, y in zip(a.raw, b.raw))

    if a.kind is ValueKind.MAPPING or b.kind is ValueKind.MAPPING:
        if a.kind is not b.kind or set(a.raw) != set(b.raw):
            return False
        return all(values_equal(a.raw[key], b.raw[key]) for key in a.raw)

    return a.as_text() == b.as_text()


def compare_numbers(left: Any, right: Any) -> Optional[int]:
    """Three-way numeric comparison, or None when either side is non-numeric."""
    a_num = RuleValue.of(left).as_number()
    b_num = RuleValue.of(right).as_number()
    if a_num is None or b_num is None:
        return None
    if a_num < b_num:
        return -1
    if a_num > b_num:
        return 1
    return 0
