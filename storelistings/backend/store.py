"""Public entry point: every operation returns a ``Result``.

``Store`` is built once by the caller with an ``HttpClient`` and (optionally)
a sync transport, and wires the catalog, sync client and resolver together.
Backend modules raise ``StoreError`` subclasses; this is the only place they
are caught.

Threading
---------
All methods are **blocking**.  Pass a ``threading.Event`` as *cancel_event*
to abort a call from another thread; the call then returns a ``Cancelled``
failure rather than a partial result.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import replace
from pathlib import Path
from typing import Callable, TypeVar

from storelistings.backend import unpackaged
from storelistings.backend.catalog import Catalog
from storelistings.backend.downloader import ProgressCallback, download_file
from storelistings.backend.errors import Result, StoreError, stage
from storelistings.backend.fe3 import Fe3Transport
from storelistings.backend.http import HttpClient
from storelistings.backend.resolver import DEFAULT_WORKERS, PackageResolver
from storelistings.backend.sync import SyncClient, SyncTransport
from storelistings.models.download import DownloadGroup, OSDescriptor
from storelistings.models.manifest import InstallerInfo
from storelistings.models.package import Package
from storelistings.models.platform import DeviceFamily
from storelistings.models.product import Card, Product, Suggestions
from storelistings.models.query import Category, MediaType, PriceType

log = logging.getLogger(__name__)

T = TypeVar("T")


class Store:
    def __init__(
        self,
        http: HttpClient,
        *,
        sync_transport: SyncTransport | None = None,
        workers: int = DEFAULT_WORKERS,
    ) -> None:
        self._http = http
        self.catalog = Catalog(http)
        self.sync = SyncClient(sync_transport or Fe3Transport(http))
        self._resolver = PackageResolver(self.catalog, self.sync, workers=workers)

    # ------------------------------------------------------------------
    # Core operations
    # ------------------------------------------------------------------

    def resolve_product(
        self,
        product_id: str,
        device_family: DeviceFamily = DeviceFamily.DESKTOP,
        market: str = "US",
        language: str = "en",
        *,
        architecture: str = "x64",
        cancel_event: threading.Event | None = None,
    ) -> Result[Product]:
        return _run(
            "querying the product ID",
            lambda: self.catalog.product(
                product_id,
                device_family=device_family,
                market=market,
                language=language,
                architecture=architecture,
                cancel_event=cancel_event,
            ),
        )

    def resolve_catalog_packages(
        self,
        product_id: str,
        market: str = "US",
        language: str = "en",
        include_neutral_locale: bool = False,
        *,
        cancel_event: threading.Event | None = None,
    ) -> Result[list[Package]]:
        return _run(
            "querying packages",
            lambda: self.catalog.packages(
                product_id,
                market=market,
                language=language,
                include_neutral=include_neutral_locale,
                cancel_event=cancel_event,
            ),
        )

    def resolve_unpackaged_install(
        self,
        product_id: str,
        market: str = "US",
        language: str = "en",
        *,
        prefer_market_locale: bool = False,
        cancel_event: threading.Event | None = None,
    ) -> Result[InstallerInfo]:
        def _resolve() -> InstallerInfo:
            manifest = self.catalog.package_manifest(product_id, cancel_event=cancel_event)
            return unpackaged.resolve_installer(
                manifest, product_id, language, market,
                prefer_market_locale=prefer_market_locale,
            )

        return _run("getting unpackaged install", _resolve)

    def resolve_download_set(
        self,
        product_id: str,
        device_family: DeviceFamily = DeviceFamily.DESKTOP,
        market: str = "US",
        language: str = "en",
        os: OSDescriptor | None = None,
        *,
        cancel_event: threading.Event | None = None,
    ) -> Result[list[DownloadGroup]]:
        target = replace(
            os or OSDescriptor(), device_family=device_family, market=market, language=language
        )
        return _run(
            "resolving packages",
            lambda: self._resolver.resolve(product_id, target, cancel_event=cancel_event),
        )

    # ------------------------------------------------------------------
    # Listings
    # ------------------------------------------------------------------

    def page(
        self,
        product_id: str,
        architecture: str = "x64",
        market: str = "US",
        language: str = "en",
        *,
        cancel_event: threading.Event | None = None,
    ) -> Result[Product]:
        return _run(
            "querying the product page",
            lambda: self.catalog.page(
                product_id,
                architecture=architecture,
                market=market,
                language=language,
                cancel_event=cancel_event,
            ),
        )

    def search(
        self,
        query: str,
        device_family: DeviceFamily = DeviceFamily.DESKTOP,
        market: str = "US",
        language: str = "en",
        *,
        skip: int = 0,
        media_type: MediaType = MediaType.ALL,
        price_type: PriceType = PriceType.ALL,
        cancel_event: threading.Event | None = None,
    ) -> Result[list[Card]]:
        return _run(
            "querying the product",
            lambda: self.catalog.search(
                query,
                device_family=device_family,
                market=market,
                language=language,
                skip=skip,
                media_type=media_type,
                price_type=price_type,
                cancel_event=cancel_event,
            ),
        )

    def recommendations(
        self,
        category: Category,
        device_family: DeviceFamily = DeviceFamily.DESKTOP,
        market: str = "US",
        language: str = "en",
        *,
        media_type: MediaType = MediaType.APPS,
        skip: int = 0,
        page_size: int = 20,
        cancel_event: threading.Event | None = None,
    ) -> Result[list[Card]]:
        return _run(
            "querying recommendations",
            lambda: self.catalog.recommendations(
                category,
                device_family=device_family,
                market=market,
                language=language,
                media_type=media_type,
                skip=skip,
                page_size=page_size,
                cancel_event=cancel_event,
            ),
        )

    def suggestions(
        self,
        query: str,
        device_family: DeviceFamily = DeviceFamily.DESKTOP,
        market: str = "US",
        language: str = "en",
        *,
        cancel_event: threading.Event | None = None,
    ) -> Result[Suggestions]:
        return _run(
            "querying suggestions",
            lambda: self.catalog.suggestions(
                query,
                device_family=device_family,
                market=market,
                language=language,
                cancel_event=cancel_event,
            ),
        )

    def bundle_parts(
        self,
        product_id: str,
        device_family: DeviceFamily = DeviceFamily.DESKTOP,
        market: str = "US",
        language: str = "en",
        *,
        cancel_event: threading.Event | None = None,
    ) -> Result[list[Card]]:
        return _run(
            "querying bundles",
            lambda: self.catalog.bundle_parts(
                product_id,
                device_family=device_family,
                market=market,
                language=language,
                cancel_event=cancel_event,
            ),
        )

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    def download_files(
        self,
        resolved: list[DownloadGroup] | InstallerInfo,
        dest_dir: Path,
        *,
        progress_cb: Callable[[str, int, int], None] | None = None,
        cancel_event: threading.Event | None = None,
    ) -> Result[list[Path]]:
        """Fetch a resolved download set or unpackaged installer into *dest_dir*.

        *progress_cb* receives ``(file_name, done_bytes, total_bytes)``.
        Files shared by several groups are fetched once.
        """
        if isinstance(resolved, InstallerInfo):
            jobs = [(resolved.installer_url, resolved.file_name, resolved.installer_sha256)]
        else:
            seen: set[str] = set()
            jobs = []
            for group in resolved:
                for file in group.files():
                    if file.url in seen:
                        continue
                    seen.add(file.url)
                    jobs.append((file.url, file.update.file_name, ""))

        def _fetch() -> list[Path]:
            paths = []
            for url, name, sha256 in jobs:
                with stage(f"downloading {name}"):
                    paths.append(
                        download_file(
                            self._http,
                            url,
                            dest_dir,
                            name,
                            expected_sha256=sha256,
                            progress_cb=_bind_progress(progress_cb, name),
                            cancel_event=cancel_event,
                        )
                    )
            return paths

        return _run("downloading files", _fetch)


def _bind_progress(
    progress_cb: Callable[[str, int, int], None] | None, name: str
) -> ProgressCallback | None:
    if progress_cb is None:
        return None
    return lambda done, total: progress_cb(name, done, total)


def _run(stage_name: str, operation: Callable[[], T]) -> Result[T]:
    try:
        with stage(stage_name):
            return Result.success(operation())
    except StoreError as exc:
        log.debug("%s", exc.describe(), exc_info=True)
        return Result.failure(exc)
