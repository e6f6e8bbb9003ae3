"""Human-readable sizes and counts for console output."""

from __future__ import annotations


def _short(value: float) -> str:
    """One decimal place, dropping a trailing ``.0``."""
    text = f"{value:.1f}"
    return text[:-2] if text.endswith(".0") else text


def format_size(size: int) -> str:
    """``1_500_000`` -> ``"1.5 MB"`` (decimal units)."""
    for threshold, unit in (
        (1_000_000_000_000, "TB"),
        (1_000_000_000, "GB"),
        (1_000_000, "MB"),
        (1_000, "KB"),
    ):
        if size >= threshold:
            return f"{_short(size / threshold)} {unit}"
    return f"{size} B"


def format_rating_count(count: int) -> str | None:
    """``1_234`` -> ``"1K"``, ``2_500_000`` -> ``"2.5M"``; ``None`` for zero."""
    if count >= 1_000_000_000:
        return _short(count / 1_000_000_000) + "B"
    if count >= 1_000_000:
        return _short(count / 1_000_000) + "M"
    if count >= 1_000:
        return f"{count / 1_000:.0f}K"
    if count > 0:
        return str(count)
    return None
