"""
Field resolution against entity snapshots.
"""

from typing import Any, Mapping, Sequence


class _Missing:
    """Sentinel for a field that is not present on the entity."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False

    def __copy__(self):
        return self

    def __deepcopy__(self, memo):
        return self

    def __reduce__(self):
        return (_Missing, ())


MISSING = _Missing()


def resolve_field(entity: Any, field_path: str) -> Any:
    """Resolve a dotted path (``customer.tier``) against an entity.

    Mappings are read by key and other objects by attribute. Lists are never
    flattened; a purely numeric segment indexes a list or tuple explicitly.
    Any absent segment, or a ``None`` in the middle of the path, yields
    ``MISSING``. A ``None`` leaf is returned as ``None``.
    """
    if not field_path:
        return MISSING

    current = entity
    for segment in field_path.split("."):
        if current is None or current is MISSING:
            return MISSING
        current = _step(current, segment)
    return current


def _step(current: Any, segment: str) -> Any:
    if isinstance(current, Mapping):
        return current.get(segment, MISSING)

    if isinstance(current, Sequence) and not isinstance(current, (str, bytes)):
        if segment.lstrip("-").isdigit():
            index = int(segment)
            if -len(current) <= index < len(current):
                return current[index]
        return MISSING

    if isinstance(current, (str, bytes, int, float, bool)):
        return MISSING

    if segment.startswith("_"):
        return MISSING
    try:
        return getattr(current, segment, MISSING)
    except Exception:
        # Property errors read as absent data
        return MISSING
