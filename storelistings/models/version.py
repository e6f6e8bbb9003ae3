"""Four-part package versions (``major.minor.build.revision``).

Store packages carry versions in two encodings:

- dotted text, e.g. ``"1.2.3.4"`` or ``"6.6.11"`` (missing parts are 0);
- the 64-bit *Windows representation* used by the display catalog and the
  update service, with 16 bits per part, most significant first.

``Version`` is ordered field by field, so every "best version" and "minimum
version satisfied" decision in the resolver is a plain comparison.
"""

from __future__ import annotations

from dataclasses import dataclass

_PART_MAX = 0xFFFF


@dataclass(frozen=True, slots=True, order=True)
class Version:
    major: int = 0
    minor: int = 0
    build: int = 0
    revision: int = 0

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def parse(cls, text: str) -> "Version":
        """Parse dotted text; raises ``ValueError`` when it is not a version."""
        parts = text.strip().split(".")
        if not parts or len(parts) > 4 or any(not p.isdigit() for p in parts):
            raise ValueError(f"Not a version: {text!r}")
        numbers = [int(p) for p in parts]
        if any(n > _PART_MAX for n in numbers):
            raise ValueError(f"Version part out of range: {text!r}")
        numbers += [0] * (4 - len(numbers))
        return cls(*numbers)

    @classmethod
    def try_parse(cls, text: str) -> "Version | None":
        try:
            return cls.parse(text)
        except ValueError:
            return None

    @classmethod
    def from_windows(cls, value: int) -> "Version":
        """Decode the packed 64-bit Windows representation."""
        if value < 0 or value > 0xFFFF_FFFF_FFFF_FFFF:
            raise ValueError(f"Windows version out of range: {value}")
        return cls(
            (value >> 48) & _PART_MAX,
            (value >> 32) & _PART_MAX,
            (value >> 16) & _PART_MAX,
            value & _PART_MAX,
        )

    def to_windows(self) -> int:
        return (
            (self.major << 48)
            | (self.minor << 32)
            | (self.build << 16)
            | self.revision
        )

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}.{self.build}.{self.revision}"
