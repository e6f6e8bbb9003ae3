"""Total accessors over decoded JSON.

Upstream payloads drop, rename and retype fields between endpoints and
revisions.  ``Payload`` wraps any decoded JSON value and answers every lookup
with a typed value or an explicit default, so the normalizer can read optional
fields without guarding each step::

    Payload(raw).child("Installer").string("Type")      # "" when absent
    Payload(raw).array("Images")                        # [] when absent

Required fields are checked by the caller, which raises ``SchemaError``.
"""

from __future__ import annotations

import json
from typing import Any, Iterator

_MISSING = object()


class Payload:
    """Read-only view of one JSON node."""

    __slots__ = ("_value",)

    def __init__(self, value: Any = _MISSING) -> None:
        self._value = value

    @classmethod
    def loads(cls, data: bytes | str) -> "Payload":
        """Decode JSON text; raises ``ValueError`` on malformed input."""
        return cls(json.loads(data))

    # ------------------------------------------------------------------
    # Shape
    # ------------------------------------------------------------------

    @property
    def value(self) -> Any:
        """The wrapped value, or ``None`` for a missing node."""
        return None if self._value is _MISSING else self._value

    @property
    def is_missing(self) -> bool:
        return self._value is _MISSING

    @property
    def is_object(self) -> bool:
        return isinstance(self._value, dict)

    @property
    def is_array(self) -> bool:
        return isinstance(self._value, list)

    def has(self, key: str) -> bool:
        return self.is_object and key in self._value

    def elements(self) -> list["Payload"]:
        """Items of an array node; ``[]`` for anything else."""
        return [Payload(v) for v in self._value] if self.is_array else []

    def __iter__(self) -> Iterator["Payload"]:
        return iter(self.elements())

    def __repr__(self) -> str:
        return "Payload(<missing>)" if self.is_missing else f"Payload({self._value!r})"

    # ------------------------------------------------------------------
    # Field readers
    # ------------------------------------------------------------------

    def child(self, key: str) -> "Payload":
        if self.is_object and key in self._value:
            return Payload(self._value[key])
        return Payload()

    def string(self, key: str, default: str = "") -> str:
        v = self._raw(key)
        return v if isinstance(v, str) else default

    def number(self, key: str, default: float = 0.0) -> float:
        v = self._raw(key)
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return float(v)
        return default

    def integer(self, key: str, default: int = 0) -> int:
        v = self._raw(key)
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return int(v)
        return default

    def integer_text(self, key: str, default: int = 0) -> int:
        """Integer that may also be encoded as a decimal string."""
        v = self._raw(key)
        if isinstance(v, str) and v.strip().isdigit():
            return int(v)
        return self.integer(key, default)

    def boolean(self, key: str, default: bool = False) -> bool:
        v = self._raw(key)
        return v if isinstance(v, bool) else default

    def array(self, key: str) -> list["Payload"]:
        return self.child(key).elements()

    def first(self, key: str) -> "Payload | None":
        """First element of the array at *key*, or ``None`` if absent/empty."""
        items = self.array(key)
        return items[0] if items else None

    def _raw(self, key: str) -> Any:
        if self.is_object:
            return self._value.get(key, _MISSING)
        return _MISSING
