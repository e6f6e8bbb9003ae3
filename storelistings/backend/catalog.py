"""Store catalog endpoints.

Endpoints
---------
- ``storeedgefd`` ``/v9.0/products/{id}``          → product detail payload
- ``storeedge``   ``/v9.0/pages/pdp``               → product page (array of envelopes)
- ``storeedgefd`` ``/v9.0/search``                  → search cards
- ``storeedgefd`` ``/v9.0/recommendations/…``       → collection cards
- ``storeedgefd`` ``/v9.0/autosuggest``             → suggestion terms and cards
- ``storeedgefd`` ``/v9.0/products/{id}/BundleParts`` → bundle cards
- ``storeedgefd`` ``/v9.0/packageManifests/{id}``   → unpackaged installer manifest
- ``displaycatalog`` ``/v7.0/products/{id}``        → packages and dependencies

All requests go through the injected ``HttpClient``; parsing lives in
``backend.normalize``.
"""

from __future__ import annotations

import logging
import secrets
import string
import threading
from base64 import urlsafe_b64encode
from typing import Callable, TypeVar
from urllib.parse import quote

from storelistings.backend import normalize
from storelistings.backend.errors import SchemaError, StoreError
from storelistings.backend.http import HttpClient
from storelistings.models.package import Package
from storelistings.models.platform import DeviceFamily
from storelistings.models.product import Card, Product, Suggestions
from storelistings.models.query import Category, MediaType, PriceType
from storelistings.utils.payload import Payload

log = logging.getLogger(__name__)

T = TypeVar("T")

STOREEDGEFD = "https://storeedgefd.dsx.mp.microsoft.com/v9.0"
STOREEDGE = "https://storeedge.microsoft.com/v9.0"
DISPLAY_CATALOG = "https://displaycatalog.mp.microsoft.com/v7.0"

# Bundle part collections, in order of preference.
_BUNDLE_KEYS = ("0017", "0010")

# The search cursor is base64url("o=<skip>&s=<nonce>") with a 21-character
# payload after "o=".
_CURSOR_WIDTH = 21
_CURSOR_ALPHABET = string.ascii_letters + string.digits


# ---------------------------------------------------------------------------
# URL builders
# ---------------------------------------------------------------------------

def _locale(market: str, language: str) -> str:
    return f"market={market}&locale={language}-{market}"


def product_url(product_id: str, family: DeviceFamily, market: str, language: str) -> str:
    return (
        f"{STOREEDGEFD}/products/{quote(product_id)}?{_locale(market, language)}"
        f"&deviceFamily={family.platform_name}"
    )


def page_url(product_id: str, architecture: str, market: str, language: str) -> str:
    return (
        f"{STOREEDGE}/pages/pdp?{_locale(market, language)}&deviceFamily=Windows.Desktop"
        f"&architecture={architecture}&itemType=Apps&productId={quote(product_id)}"
    )


def packages_url(product_id: str, market: str, language: str, include_neutral: bool) -> str:
    languages = f"{language}-{market},{language}" + (",neutral" if include_neutral else "")
    return f"{DISPLAY_CATALOG}/products/{quote(product_id)}?market={market}&languages={languages}"


def search_url(
    query: str,
    family: DeviceFamily,
    market: str,
    language: str,
    *,
    skip: int = 0,
    media_type: MediaType = MediaType.ALL,
    price_type: PriceType = PriceType.ALL,
) -> str:
    filters = "" if price_type is PriceType.ALL else f"PriceType%3d{price_type.value}"
    return (
        f"{STOREEDGEFD}/search?query={quote(query)}&{_locale(market, language)}"
        f"&deviceFamily={family.platform_name}&mediaType={media_type.value}"
        f"&filters={filters}&cursor={search_cursor(skip)}%3d"
    )


def search_cursor(skip: int) -> str:
    nonce_len = max(_CURSOR_WIDTH - len(str(skip)), 0)
    nonce = "".join(secrets.choice(_CURSOR_ALPHABET) for _ in range(nonce_len))
    raw = f"o={skip}&s={nonce}".encode()
    return urlsafe_b64encode(raw).decode().rstrip("=")


def recommendations_url(
    category: Category,
    family: DeviceFamily,
    market: str,
    language: str,
    *,
    media_type: MediaType = MediaType.APPS,
    skip: int = 0,
    page_size: int = 20,
) -> str:
    return (
        f"{STOREEDGEFD}/recommendations/collections/{category.value}?{_locale(market, language)}"
        f"&deviceFamily={family.platform_name}&mediaType={media_type.value}"
        f"&pageSize={page_size}&skipItems={skip}"
    )


def suggestions_url(query: str, family: DeviceFamily, market: str, language: str) -> str:
    return (
        f"{STOREEDGEFD}/autosuggest?prefix={quote(query)}&{_locale(market, language)}"
        f"&deviceFamily={family.platform_name}"
    )


def bundle_parts_url(product_id: str, family: DeviceFamily, market: str, language: str) -> str:
    return (
        f"{STOREEDGEFD}/products/{quote(product_id)}/BundleParts?{_locale(market, language)}"
        f"&deviceFamily={family.platform_name}"
    )


def package_manifest_url(product_id: str) -> str:
    return f"{STOREEDGEFD}/packageManifests/{quote(product_id)}"


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------

class Catalog:
    """Fetches and normalizes catalog data for one set of request defaults.

    Every method raises a ``StoreError`` subclass on failure; ``Store``
    turns those into ``Result`` values.
    """

    def __init__(self, http: HttpClient) -> None:
        self._http = http

    # ------------------------------------------------------------------
    # Products
    # ------------------------------------------------------------------

    def product(
        self,
        product_id: str,
        *,
        device_family: DeviceFamily = DeviceFamily.DESKTOP,
        market: str = "US",
        language: str = "en",
        architecture: str = "x64",
        cancel_event: threading.Event | None = None,
    ) -> Product:
        root = self._fetch(product_url(product_id, device_family, market, language), cancel_event)
        return _parsed(
            lambda: normalize.parse_product(
                normalize.select_payload(root, product_id), architecture=architecture
            )
        )

    def page(
        self,
        product_id: str,
        *,
        architecture: str = "x64",
        market: str = "US",
        language: str = "en",
        cancel_event: threading.Event | None = None,
    ) -> Product:
        """Product page; the response may hold envelopes for related products."""
        root = self._fetch(page_url(product_id, architecture, market, language), cancel_event)
        return _parsed(
            lambda: normalize.parse_product(
                normalize.select_payload(root, product_id), architecture=architecture
            )
        )

    def packages(
        self,
        product_id: str,
        *,
        market: str = "US",
        language: str = "en",
        include_neutral: bool = False,
        cancel_event: threading.Event | None = None,
    ) -> list[Package]:
        root = self._fetch(packages_url(product_id, market, language, include_neutral), cancel_event)
        packages = _parsed(lambda: normalize.parse_packages(root))
        log.info("Display catalog lists %d package(s) for %s", len(packages), product_id)
        return packages

    def package_manifest(
        self, product_id: str, *, cancel_event: threading.Event | None = None
    ) -> Payload:
        return self._fetch(package_manifest_url(product_id), cancel_event)

    # ------------------------------------------------------------------
    # Listings
    # ------------------------------------------------------------------

    def search(
        self,
        query: str,
        *,
        device_family: DeviceFamily = DeviceFamily.DESKTOP,
        market: str = "US",
        language: str = "en",
        skip: int = 0,
        media_type: MediaType = MediaType.ALL,
        price_type: PriceType = PriceType.ALL,
        cancel_event: threading.Event | None = None,
    ) -> list[Card]:
        url = search_url(
            query, device_family, market, language,
            skip=skip, media_type=media_type, price_type=price_type,
        )
        root = self._fetch(url, cancel_event)
        return _parsed(
            lambda: normalize.parse_cards(root.child("Payload").array("SearchResults"))
        )

    def recommendations(
        self,
        category: Category,
        *,
        device_family: DeviceFamily = DeviceFamily.DESKTOP,
        market: str = "US",
        language: str = "en",
        media_type: MediaType = MediaType.APPS,
        skip: int = 0,
        page_size: int = 20,
        cancel_event: threading.Event | None = None,
    ) -> list[Card]:
        if not media_type.recommendable:
            raise StoreError(f"No recommendation collections for media type {media_type.value!r}")
        url = recommendations_url(
            category, device_family, market, language,
            media_type=media_type, skip=skip, page_size=page_size,
        )
        root = self._fetch(url, cancel_event)
        return _parsed(lambda: normalize.parse_cards(root.child("Payload").array("Cards")))

    def suggestions(
        self,
        query: str,
        *,
        device_family: DeviceFamily = DeviceFamily.DESKTOP,
        market: str = "US",
        language: str = "en",
        cancel_event: threading.Event | None = None,
    ) -> Suggestions:
        root = self._fetch(suggestions_url(query, device_family, market, language), cancel_event)
        payload = root.child("Payload")
        if not payload.is_object:
            raise SchemaError("Payload", "Response missing 'Payload'")
        terms = tuple(
            t.value for t in payload.array("SearchSuggestions")
            if isinstance(t.value, str) and t.value
        )
        cards = _parsed(lambda: normalize.parse_cards(payload.array("AssetSuggestions")))
        return Suggestions(terms=terms, cards=tuple(cards))

    def bundle_parts(
        self,
        product_id: str,
        *,
        device_family: DeviceFamily = DeviceFamily.DESKTOP,
        market: str = "US",
        language: str = "en",
        cancel_event: threading.Event | None = None,
    ) -> list[Card]:
        root = self._fetch(bundle_parts_url(product_id, device_family, market, language), cancel_event)
        payload = root.child("Payload")
        for key in _BUNDLE_KEYS:
            products = payload.child(key).array("Products")
            if products:
                return _parsed(lambda: normalize.parse_cards(products))
        return []

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _fetch(self, url: str, cancel_event: threading.Event | None) -> Payload:
        return self._http.get_json(url, cancel_event=cancel_event)


def _parsed(parse: Callable[[], T]) -> T:
    """Run *parse*, reporting unexpected shape errors as ``SchemaError``."""
    try:
        return parse()
    except (KeyError, TypeError, ValueError) as exc:
        raise SchemaError("<payload>", f"Unexpected payload shape: {exc}") from exc
