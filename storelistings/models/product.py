"""Canonical listing entities.

The store exposes the same product through several differently shaped
payloads (search cards, the product detail payload, the product page, the
display catalog).  ``backend.normalize`` folds all of them into the types
defined here, so callers never see upstream field names.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class InstallerType(str, Enum):
    """How a product is delivered."""

    PACKAGED = "Packaged"        # APPX / MSIX through the update service
    UNPACKAGED = "Unpackaged"    # MSI / EXE from a package manifest
    UNKNOWN = "Unknown"          # not downloadable by this client


@dataclass(frozen=True, slots=True)
class Image:
    url: str
    background_color: str
    height: int
    width: int

    @property
    def is_square(self) -> bool:
        return self.height == self.width

    def to_dict(self) -> dict:
        return {
            "url": self.url,
            "background_color": self.background_color,
            "height": self.height,
            "width": self.width,
        }


# Used wherever a listing has no usable image; never ``None``.
PLACEHOLDER_IMAGE = Image(url="", background_color="Transparent", height=0, width=0)


@dataclass(frozen=True, slots=True)
class Card:
    """Lightweight entry returned by search, recommendations, suggestions and bundles."""

    product_id: str
    title: str
    image: Image = PLACEHOLDER_IMAGE
    display_price: str | None = None
    # Cards always show a rating, so zero is kept rather than unset.
    average_rating: float = 0.0
    installer_type: InstallerType = InstallerType.UNKNOWN

    def to_dict(self) -> dict:
        d: dict = {
            "product_id": self.product_id,
            "title": self.title,
            "average_rating": self.average_rating,
            "installer_type": self.installer_type.value,
            "image": self.image.to_dict(),
        }
        if self.display_price is not None:
            d["display_price"] = self.display_price
        return d


@dataclass(frozen=True, slots=True)
class Product:
    """Full detail record for one product.

    Fields are grouped by concern:

    *Identity*: required; a payload lacking either raises ``SchemaError``.
    *Display*: descriptions, publisher, media.
    *Reception*: ``None`` when the store reports zero.
    *Delivery*: installer type and packaging identifiers.
    """

    # ── Identity (required) ───────────────────────────────────────────────
    product_id: str
    title: str

    # ── Display ───────────────────────────────────────────────────────────
    short_description: str = ""
    description: str = ""
    publisher_name: str = ""
    revision_id: str = ""
    logo: Image = PLACEHOLDER_IMAGE
    screenshots: tuple[Image, ...] = ()

    # ── Reception ─────────────────────────────────────────────────────────
    rating: float | None = None
    rating_count: int | None = None

    # ── Delivery ──────────────────────────────────────────────────────────
    size: int | None = None
    installer_type: InstallerType = InstallerType.UNKNOWN
    is_bundle: bool = False
    package_family_name: str | None = None
    version: str | None = None
    last_updated: datetime | None = None

    def to_dict(self) -> dict:
        d: dict = {
            "product_id": self.product_id,
            "title": self.title,
            "short_description": self.short_description,
            "description": self.description,
            "publisher_name": self.publisher_name,
            "revision_id": self.revision_id,
            "logo": self.logo.to_dict(),
            "screenshots": [s.to_dict() for s in self.screenshots],
            "installer_type": self.installer_type.value,
            "is_bundle": self.is_bundle,
        }
        _opt(d, "rating", self.rating)
        _opt(d, "rating_count", self.rating_count)
        _opt(d, "size", self.size)
        _opt(d, "package_family_name", self.package_family_name)
        _opt(d, "version", self.version)
        if self.last_updated is not None:
            d["last_updated"] = self.last_updated.isoformat()
        return d


# ---------------------------------------------------------------------------
# Serialisation helpers
# ---------------------------------------------------------------------------

def _opt(d: dict, key: str, value) -> None:
    if value is not None:
        d[key] = value


@dataclass(frozen=True, slots=True)
class Suggestions:
    """Autosuggest answer: completion strings plus matching product cards."""

    terms: tuple[str, ...] = ()
    cards: tuple[Card, ...] = ()

    def to_dict(self) -> dict:
        return {
            "terms": list(self.terms),
            "cards": [c.to_dict() for c in self.cards],
        }
