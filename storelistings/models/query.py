"""Selectors accepted by the listing endpoints."""

from __future__ import annotations

from enum import Enum


class Category(str, Enum):
    """Recommendation collections."""

    TOP_FREE = "TopFree"
    TOP_PAID = "TopPaid"
    BEST_RATED = "BestRated"
    DEAL = "Deal"
    NEW_AND_RISING = "NewAndRising"
    TOP_GROSSING = "TopGrossing"
    MOST_POPULAR = "Mostpopular"


class MediaType(str, Enum):
    ALL = "all"
    APPS = "apps"
    GAMES = "games"
    DEVICES = "devices"
    PASSES = "passes"
    FONTS = "fonts"
    THEMES = "themes"

    @property
    def recommendable(self) -> bool:
        """Recommendation collections only exist for these media types."""
        return self in (MediaType.ALL, MediaType.APPS, MediaType.GAMES)


class PriceType(str, Enum):
    ALL = "All"
    FREE = "Free"
    PAID = "Paid"
    SALE = "Sale"


def parse_choice(enum_cls, name: str):
    """Case-insensitive lookup by value or member name; ``ValueError`` if unknown."""
    key = name.strip().lower()
    for member in enum_cls:
        if member.value.lower() == key or member.name.lower() == key:
            return member
    choices = ", ".join(m.value for m in enum_cls)
    raise ValueError(f"Unknown {enum_cls.__name__} {name!r}; expected one of: {choices}")
