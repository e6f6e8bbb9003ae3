"""Fold the store's upstream payload shapes into canonical entities.

Three structurally different sources describe the same products:

Cards
    Search results, recommendations, suggestions and bundle parts.  Each
    card carries ``Images`` (``Url``/``Height``/``Width``/``BackgroundColor``)
    and either ``Installer.Type`` or a flat ``InstallerType``.
Product payload
    The detail endpoint (``{"Payload": {...}}``) and the product page
    (an *array* of such envelopes, one of which describes the product).
Display catalog
    ``{"Product": {...}}`` with localized/market property blocks and one
    package per SKU packaging target.

The selection rules below resolve real upstream inconsistencies and must stay
deterministic: for the same payload they always pick the same image,
description and version.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime

from storelistings.backend.errors import SchemaError
from storelistings.models.package import FrameworkDependency, Package, PlatformDependency
from storelistings.models.platform import DeviceFamily, architecture_priorities
from storelistings.models.product import PLACEHOLDER_IMAGE, Card, Image, InstallerType, Product
from storelistings.models.version import Version
from storelistings.utils.payload import Payload

log = logging.getLogger(__name__)

CARD_IMAGE_EDGE = 300
PRODUCT_LOGO_EDGE = 100
PACKAGE_LOGO_EDGE = 300

SHORT_DESCRIPTION_LIMIT = 150
ELLIPSIS = "..."

TRANSPARENT = "Transparent"

_LOGO_TYPES = frozenset({"logo", "icon", "poster", "boxart"})
_SCREENSHOT_TYPE = "screenshot"

_INSTALLER_TYPES: dict[str, InstallerType] = {
    "WindowsUpdate": InstallerType.PACKAGED,
    "WPM": InstallerType.UNPACKAGED,
    "DirectInstall": InstallerType.UNPACKAGED,
}


# ---------------------------------------------------------------------------
# Scalar heuristics
# ---------------------------------------------------------------------------

def background_color(value: str | None) -> str:
    """Accept only ``#``-prefixed colors; everything else is transparent."""
    if value and value.startswith("#"):
        return value
    return TRANSPARENT


def installer_type(tag: str | None) -> InstallerType:
    """Map a raw installer tag (case-sensitive) onto ``InstallerType``."""
    return _INSTALLER_TYPES.get(tag or "", InstallerType.UNKNOWN)


def short_description(explicit: str | None, full: str | None) -> str:
    """Return *explicit* if non-empty, else derive a teaser from *full*.

    Derivation cuts just after the first period, else at the first line
    break, else at ``SHORT_DESCRIPTION_LIMIT`` characters plus an ellipsis.
    """
    if explicit:
        return explicit
    if not full:
        return ""
    period = full.find(".")
    if period != -1:
        return full[: period + 1]
    newline = full.find("\n")
    if newline != -1:
        return full[:newline].rstrip("\r")
    if len(full) > SHORT_DESCRIPTION_LIMIT:
        return full[:SHORT_DESCRIPTION_LIMIT] + ELLIPSIS
    return full


def optional_rating(value: float) -> float | None:
    return value if value != 0 else None


def optional_count(value: int) -> int | None:
    return value if value != 0 else None


def resolve_version(payload: Payload, kind: InstallerType, architecture: str) -> str | None:
    """Top-level ``Version``, else the best per-architecture installer version.

    The architecture map is only consulted for unpackaged listings; the
    first entry in ``architecture_priorities(architecture)`` order with a
    non-empty ``Version`` wins.
    """
    version = payload.string("Version")
    if version:
        return version
    if kind is not InstallerType.UNPACKAGED:
        return None
    arch_map = payload.child("Installer").child("Architectures")
    for arch in architecture_priorities(architecture):
        entry = arch_map.child(arch)
        if entry.is_object:
            candidate = entry.string("Version")
            if candidate:
                return candidate
    return None


def is_bundle(payload: Payload) -> bool:
    """A product is a bundle when its first SKU lists bundled SKUs."""
    sku = payload.first("Skus")
    return sku is not None and len(sku.array("BundledSkus")) > 0


def select_payload(root: Payload, product_id: str) -> Payload:
    """Pick the envelope payload that describes *product_id*.

    An array of envelopes resolves to the first whose ``Payload.ProductId``
    matches case-insensitively, falling back to the last envelope.
    """
    if root.is_object:
        payload = root.child("Payload")
        if payload.is_object:
            return payload
        raise SchemaError("Payload")
    envelopes = root.elements()
    if not envelopes:
        raise SchemaError("Payload", "Response contains no payload envelopes")
    wanted = product_id.lower()
    for envelope in envelopes:
        payload = envelope.child("Payload")
        pid = payload.string("ProductId")
        if pid and pid.lower() == wanted:
            return payload
    payload = envelopes[-1].child("Payload")
    if not payload.is_object:
        raise SchemaError("Payload")
    return payload


# ---------------------------------------------------------------------------
# Images
# ---------------------------------------------------------------------------

def _image(node: Payload, url_key: str = "Url") -> Image:
    url = node.string(url_key)
    if url.startswith("//"):
        url = "https:" + url
    return Image(
        url=url,
        background_color=background_color(node.string("BackgroundColor")),
        height=node.integer("Height"),
        width=node.integer("Width"),
    )


def select_card_image(images: list[Image]) -> Image:
    """Last exactly-300x300 image, else the first image, else the placeholder."""
    for image in reversed(images):
        if image.height == CARD_IMAGE_EDGE and image.width == CARD_IMAGE_EDGE:
            return image
    return images[0] if images else PLACEHOLDER_IMAGE


def select_logo(candidates: list[Image], edge: int = PRODUCT_LOGO_EDGE) -> Image:
    """Last *edge* x *edge* candidate, else the largest square, else the first."""
    for image in reversed(candidates):
        if image.height == edge and image.width == edge:
            return image
    squares = [c for c in candidates if c.is_square]
    if squares:
        # max() keeps the first of equally sized squares.
        return max(squares, key=lambda c: c.height)
    return candidates[0] if candidates else PLACEHOLDER_IMAGE


def classify_images(
    nodes: list[Payload], *, type_key: str = "ImageType", url_key: str = "Url"
) -> tuple[list[Image], list[Image]]:
    """Split image nodes into ``(logo_candidates, screenshots)``.

    Nodes without a URL and types outside the logo/screenshot sets are
    dropped.
    """
    logos: list[Image] = []
    screenshots: list[Image] = []
    for node in nodes:
        if not node.string(url_key):
            continue
        kind = node.string(type_key).lower()
        if kind == _SCREENSHOT_TYPE:
            screenshots.append(_image(node, url_key))
        elif kind in _LOGO_TYPES:
            logos.append(_image(node, url_key))
    return logos, screenshots


# ---------------------------------------------------------------------------
# Cards
# ---------------------------------------------------------------------------

def parse_card(node: Payload) -> Card:
    product_id = node.string("ProductId")
    title = node.string("Title")
    if not product_id:
        raise SchemaError("ProductId")
    if not title:
        raise SchemaError("Title")
    images = [_image(img) for img in node.array("Images")]
    tag = node.child("Installer").string("Type") or node.string("InstallerType")
    return Card(
        product_id=product_id,
        title=title,
        image=select_card_image(images),
        display_price=node.string("DisplayPrice") or None,
        average_rating=node.number("AverageRating"),
        installer_type=installer_type(tag),
    )


def parse_cards(nodes: list[Payload]) -> list[Card]:
    """Parse every card, skipping entries without an id or title."""
    cards: list[Card] = []
    for node in nodes:
        try:
            cards.append(parse_card(node))
        except SchemaError as exc:
            log.warning("Skipping malformed card %r: %s", node.string("ProductId"), exc)
    return cards


# ---------------------------------------------------------------------------
# Product payload (detail endpoint and product page)
# ---------------------------------------------------------------------------

def parse_product(payload: Payload, *, architecture: str = "x64") -> Product:
    """Build a ``Product`` from a detail or page payload."""
    product_id = payload.string("ProductId")
    title = payload.string("Title")
    if not product_id:
        raise SchemaError("ProductId")
    if not title:
        raise SchemaError("Title")

    logos, screenshots = classify_images(payload.array("Images"))
    description = payload.string("Description")
    kind = installer_type(payload.child("Installer").string("Type"))

    family_names = payload.array("PackageFamilyNames")
    package_family_name = (
        payload.string("PackageFamilyName")
        or (family_names[0].value if family_names and isinstance(family_names[0].value, str) else "")
    )

    return Product(
        product_id=product_id,
        title=title,
        short_description=short_description(payload.string("ShortDescription"), description),
        description=description,
        publisher_name=payload.string("PublisherName"),
        revision_id=payload.string("RevisionId"),
        logo=select_logo(logos),
        screenshots=tuple(screenshots),
        rating=optional_rating(payload.number("AverageRating")),
        rating_count=optional_count(payload.integer("RatingCount")),
        size=payload.integer("ApproximateSizeInBytes") if payload.has("ApproximateSizeInBytes") else None,
        installer_type=kind,
        is_bundle=is_bundle(payload),
        package_family_name=package_family_name or None,
        version=resolve_version(payload, kind, architecture),
        last_updated=_parse_date(
            payload.string("PackageLastUpdateDateUtc") or payload.string("RevisionId")
        ),
    )


def _parse_date(text: str) -> datetime | None:
    if not text:
        return None
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None


# ---------------------------------------------------------------------------
# Display catalog
# ---------------------------------------------------------------------------

def parse_packages(root: Payload) -> list[Package]:
    """Expand a display catalog response into one ``Package`` per target.

    Bundles produce a single metadata-only package.
    """
    product = root.child("Product")
    if not product.is_object:
        raise SchemaError("Product")

    localized = product.first("LocalizedProperties") or Payload()
    market = product.first("MarketProperties") or Payload()
    props = product.child("Properties")

    product_id = product.string("ProductId")
    title = localized.string("ProductTitle")
    if not product_id:
        raise SchemaError("ProductId")
    if not title:
        raise SchemaError("ProductTitle")

    description = localized.string("ProductDescription")
    logos, screenshots = classify_images(
        localized.array("Images"), type_key="ImagePurpose", url_key="Uri"
    )
    rating, rating_count = _catalog_ratings(market, props)

    sku_entry = product.first("DisplaySkuAvailabilities") or Payload()
    sku = sku_entry.child("Sku")
    sku_props = sku.child("Properties")
    bundle = sku_props.boolean("IsBundle") or len(sku_props.array("BundledSkus")) > 0

    base = Package(
        product_id=product_id,
        title=title,
        short_description=short_description(localized.string("ShortDescription"), description),
        description=description,
        publisher_name=localized.string("PublisherName") or props.string("PublisherName"),
        revision_id=product.string("LastModifiedDate") or props.string("RevisionId"),
        package_family_name=props.string("PackageFamilyName"),
        package_identity_name=props.string("PackageIdentityName"),
        is_bundle=bundle,
        rating=optional_rating(rating),
        rating_count=optional_count(rating_count),
        logo=select_logo(logos, PACKAGE_LOGO_EDGE),
        screenshots=tuple(screenshots),
    )
    if bundle:
        return [base]

    packages: list[Package] = []
    for node in sku_props.array("Packages"):
        packages.append(
            replace(
                base,
                package_full_name=node.string("PackageFullName"),
                wu_category_id=node.child("FulfillmentData").string("WuCategoryId") or None,
                app_version=_windows_version(node.integer_text("Version")),
                size=node.integer("MaxDownloadSizeInBytes") if node.has("MaxDownloadSizeInBytes") else None,
                platform_dependencies=_platform_dependencies(node),
                framework_dependencies=_framework_dependencies(node),
            )
        )
    return packages


def _catalog_ratings(market: Payload, props: Payload) -> tuple[float, int]:
    """All-time usage figures, falling back to the product properties."""
    usage = market.array("UsageData")
    target = next(
        (u for u in usage if u.string("AggregateTimeSpan").lower() == "alltime"),
        usage[0] if usage else None,
    )
    rating = target.number("AverageRating") if target is not None else 0.0
    count = target.integer("RatingCount") if target is not None else 0
    if rating == 0:
        rating = props.number("RatingAverage")
    if count == 0:
        count = props.integer("RatingCount")
    return rating, count


def _platform_dependencies(node: Payload) -> tuple[PlatformDependency, ...]:
    deps: list[PlatformDependency] = []
    for dep in node.array("PlatformDependencies"):
        deps.append(
            PlatformDependency(
                platform=DeviceFamily.from_name(dep.string("PlatformName")),
                min_version=_windows_version(dep.integer_text("MinVersion")) or Version(),
            )
        )
    return tuple(deps)


def _framework_dependencies(node: Payload) -> tuple[FrameworkDependency, ...]:
    deps: list[FrameworkDependency] = []
    for dep in node.array("FrameworkDependencies"):
        deps.append(
            FrameworkDependency(
                package_identity=dep.string("PackageIdentity"),
                min_version=_windows_version(dep.integer_text("MinVersion")) or Version(),
            )
        )
    return tuple(deps)


def _windows_version(raw: int) -> Version | None:
    """Decode a packed version; zero and out-of-range values are unset."""
    if not raw:
        return None
    try:
        return Version.from_windows(raw)
    except ValueError:
        return None
