"""Command-line entry point for storelistings.

Sub-commands
------------
query                  search the catalog by keyword
query-bundles          list the parts of a bundle
query-recommendations  list a recommendation collection
query-suggestions      autosuggest terms and products for a prefix
query-product          product detail
query-page             product detail from the product page endpoint
query-packages         display catalog packages and their dependencies
download               resolve download links (``--output DIR`` fetches them)
config                 show or change the stored defaults

Defaults for market, language, device family and the OS descriptor come from
``backend.config``.  Exit status is 0 on success, 1 on failure and 130 when
interrupted.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
import threading
from dataclasses import asdict, replace
from pathlib import Path

from storelistings.backend.config import Settings, load_settings, set_setting
from storelistings.backend.errors import Result, StoreError
from storelistings.backend.fe3 import Fe3Transport
from storelistings.backend.http import store_client, update_client
from storelistings.backend.store import Store
from storelistings.models.download import DownloadGroup
from storelistings.models.manifest import InstallerInfo
from storelistings.models.package import Package
from storelistings.models.platform import Architecture, DeviceFamily
from storelistings.models.product import Card, InstallerType, Product
from storelistings.models.query import Category, MediaType, PriceType, parse_choice
from storelistings.models.version import Version
from storelistings.utils.format import format_rating_count, format_size

log = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_INTERRUPTED = 130

NO_APPLICABLE = "No applicable packages were found for your OS options."


# ---------------------------------------------------------------------------
# Output helpers
# ---------------------------------------------------------------------------

def _field(name: str, value) -> None:
    print(f"{name}: {value}")


def _dump(value) -> None:
    print(json.dumps(value, indent=2, ensure_ascii=False))


def _fail(result: Result) -> int:
    error = result.error
    print(error.describe() if error is not None else "Unknown error", file=sys.stderr)
    return EXIT_FAILURE


def _print_card(card: Card) -> None:
    _field("Product ID", card.product_id)
    _field("Title", card.title)
    if card.display_price is not None:
        _field("Display price", card.display_price)
    _field("Average rating", card.average_rating)
    _field("Image", card.image.url)
    print()


def _print_cards(cards: list[Card], as_json: bool) -> None:
    if as_json:
        _dump([c.to_dict() for c in cards])
        return
    for card in cards:
        _print_card(card)


def _print_product(product: Product) -> None:
    _field("Product ID", product.product_id)
    _field("Title", product.title)
    _field("Logo", product.logo.url)
    _field("Screenshots", len(product.screenshots))
    for screenshot in product.screenshots:
        print(screenshot.url)
    _field("Revision ID", product.revision_id)
    if product.rating is not None:
        _field("Average rating", product.rating)
    if product.rating_count is not None:
        _field("Rating count", format_rating_count(product.rating_count))
    if product.size is not None:
        _field("Size", format_size(product.size))
    if product.version:
        _field("Version", product.version)
    if product.last_updated is not None:
        _field("Last updated", product.last_updated.isoformat())
    if product.package_family_name:
        _field("Package Family Name", product.package_family_name)
    _field("Short Description", product.short_description)
    _field("Description", product.description)
    _field("Publisher", product.publisher_name)
    _field("Installer Type", product.installer_type.value)
    _field("Is Bundle", product.is_bundle)


def _print_package(package: Package) -> None:
    _field("Product ID", package.product_id)
    _field("Title", package.title)
    _field("Short Description", package.short_description)
    _field("Publisher", package.publisher_name)
    _field("Revision ID", package.revision_id)
    _field("Average rating", package.rating if package.rating is not None else "Missing")
    _field("Rating count", package.rating_count if package.rating_count is not None else "Missing")
    _field("Size", format_size(package.size) if package.size is not None else "Missing")
    _field("Is Bundle", package.is_bundle)
    _field("Package Family Name", package.package_family_name or "Missing")
    _field("Package Full Name", package.package_full_name or "Missing")
    _field("Logo", package.logo.url or "Missing")
    _field("Version", package.app_version or "Missing")
    _field("WuCategoryId", package.wu_category_id or "Missing")
    _field("Platform Dependencies", ", ".join(str(p) for p in package.platform_dependencies))
    _field("Framework Dependencies", ", ".join(str(f) for f in package.framework_dependencies))
    print()


def _print_groups(groups: list[DownloadGroup]) -> None:
    for group in groups:
        print()
        print(group.version)
        print(f"Main package ({group.main.update.file_name}):")
        print(group.main.url)
        print()
        if not group.dependencies_resolved:
            print(f"Failed to get dependencies for version {group.version}")
            continue
        print("Dependencies:")
        print()
        for dep in group.dependencies:
            print(dep.update.file_name)
            print(dep.url)
        print()


def _print_installer(info: InstallerInfo) -> None:
    _field("Installer file name", info.file_name)
    _field("Installer URL", info.installer_url)
    _field("Installer silent switches", info.installer_switches)
    _field("Version", info.version)
    _field("Installer SHA256", info.installer_sha256)


def _progress(name: str, done: int, total: int) -> None:
    if total:
        sys.stderr.write(f"\r{name}: {done * 100 // total}%")
    else:
        sys.stderr.write(f"\r{name}: {format_size(done)}")
    if total and done >= total:
        sys.stderr.write("\n")
    sys.stderr.flush()


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def cmd_query(store: Store, args, cancel: threading.Event) -> int:
    result = store.search(
        args.query, args.device_family, args.market, args.language,
        skip=args.skip, media_type=args.media_type, price_type=args.price_type,
        cancel_event=cancel,
    )
    if not result.ok:
        return _fail(result)
    _print_cards(result.value, args.json)
    return EXIT_OK


def cmd_query_bundles(store: Store, args, cancel: threading.Event) -> int:
    result = store.bundle_parts(
        args.product_id, args.device_family, args.market, args.language, cancel_event=cancel
    )
    if not result.ok:
        return _fail(result)
    _print_cards(result.value, args.json)
    return EXIT_OK


def cmd_query_recommendations(store: Store, args, cancel: threading.Event) -> int:
    result = store.recommendations(
        args.category, args.device_family, args.market, args.language,
        media_type=args.media_type, skip=args.skip, page_size=args.page_size,
        cancel_event=cancel,
    )
    if not result.ok:
        return _fail(result)
    _print_cards(result.value, args.json)
    return EXIT_OK


def cmd_query_suggestions(store: Store, args, cancel: threading.Event) -> int:
    result = store.suggestions(
        args.query, args.device_family, args.market, args.language, cancel_event=cancel
    )
    if not result.ok:
        return _fail(result)
    if args.json:
        _dump(result.value.to_dict())
        return EXIT_OK
    _field("Suggestions", ", ".join(result.value.terms))
    print()
    for card in result.value.cards:
        _print_card(card)
    return EXIT_OK


def cmd_query_product(store: Store, args, cancel: threading.Event) -> int:
    result = store.resolve_product(
        args.product_id, args.device_family, args.market, args.language,
        architecture=args.architecture, cancel_event=cancel,
    )
    if not result.ok:
        return _fail(result)
    if args.json:
        _dump(result.value.to_dict())
    else:
        _print_product(result.value)
    return EXIT_OK


def cmd_query_page(store: Store, args, cancel: threading.Event) -> int:
    result = store.page(
        args.product_id, args.architecture, args.market, args.language, cancel_event=cancel
    )
    if not result.ok:
        return _fail(result)
    if args.json:
        _dump(result.value.to_dict())
    else:
        _print_product(result.value)
    return EXIT_OK


def cmd_query_packages(store: Store, args, cancel: threading.Event) -> int:
    result = store.resolve_catalog_packages(
        args.product_id, args.market, args.language, True, cancel_event=cancel
    )
    if not result.ok:
        return _fail(result)
    if args.json:
        _dump([p.to_dict() for p in result.value])
        return EXIT_OK
    for package in result.value:
        _print_package(package)
    return EXIT_OK


def cmd_download(store: Store, args, cancel: threading.Event) -> int:
    product = store.resolve_product(
        args.product_id, args.device_family, args.market, args.language, cancel_event=cancel
    )
    if not product.ok:
        return _fail(product)

    kind = product.value.installer_type
    if kind is InstallerType.PACKAGED:
        os_descriptor = replace(
            args.settings.os_descriptor(),
            branch=args.branch,
            flight_ring=args.flight_ring,
            flighting_branch_name=args.flighting_branch,
            os_version=args.os_version,
        )
        result = store.resolve_download_set(
            args.product_id, args.device_family, args.market, args.language,
            os_descriptor, cancel_event=cancel,
        )
        if not result.ok:
            return _fail(result)
        if not result.value:
            print(NO_APPLICABLE, file=sys.stderr)
            return EXIT_FAILURE
        if args.json:
            _dump([g.to_dict() for g in result.value])
        else:
            _print_groups(result.value)
    elif kind is InstallerType.UNPACKAGED:
        result = store.resolve_unpackaged_install(
            args.product_id, args.market, args.language, cancel_event=cancel
        )
        if not result.ok:
            return _fail(result)
        if args.json:
            _dump(result.value.to_dict())
        else:
            _print_installer(result.value)
    else:
        print("The product has an unsupported installer type.", file=sys.stderr)
        return EXIT_FAILURE

    if args.output is None:
        return EXIT_OK
    fetched = store.download_files(
        result.value, args.output, progress_cb=_progress, cancel_event=cancel
    )
    if not fetched.ok:
        return _fail(fetched)
    for path in fetched.value:
        print(f"Saved {path}", file=sys.stderr)
    return EXIT_OK


def cmd_config(args) -> int:
    settings = args.settings
    if args.value is not None:
        try:
            settings = set_setting(args.key, args.value)
        except ValueError as exc:
            print(exc, file=sys.stderr)
            return EXIT_FAILURE
    values = asdict(settings)
    if args.key is not None:
        if args.key not in values:
            print(f"Unknown setting {args.key!r}", file=sys.stderr)
            return EXIT_FAILURE
        values = {args.key: values[args.key]}
    if args.json:
        _dump(values)
        return EXIT_OK
    for name, value in values.items():
        _field(name, value)
    return EXIT_OK


# ---------------------------------------------------------------------------
# Argument parsing
# ---------------------------------------------------------------------------

def _choice(enum_cls):
    def _parse(text: str):
        try:
            return parse_choice(enum_cls, text)
        except ValueError as exc:
            raise argparse.ArgumentTypeError(str(exc)) from exc
    _parse.__name__ = enum_cls.__name__
    return _parse


def _device_family(text: str) -> DeviceFamily:
    family = DeviceFamily.from_name(text)
    if family is DeviceFamily.UNKNOWN:
        raise argparse.ArgumentTypeError(f"Unknown device family {text!r}")
    return family


def _architecture(text: str) -> str:
    try:
        return Architecture.from_name(text).value
    except ValueError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from exc


def _version(text: str) -> Version:
    try:
        return Version.parse(text)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from exc


def build_parser(settings: Settings) -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("-m", "--market", default=settings.market,
                        help="store market/region (default: %(default)s)")
    common.add_argument("-l", "--language", default=settings.language,
                        help="listing language (default: %(default)s)")
    common.add_argument("--json", action="store_true", help="print JSON instead of text")
    common.add_argument("--verbose", action="store_true", help="enable debug logging")

    family = argparse.ArgumentParser(add_help=False)
    family.add_argument("-d", "--device-family", type=_device_family,
                        default=DeviceFamily.from_name(settings.device_family),
                        help="device family (default: %(default)s)")

    arch = argparse.ArgumentParser(add_help=False)
    arch.add_argument("-a", "--architecture", type=_architecture, default=settings.architecture,
                      help="CPU architecture (default: %(default)s)")

    parser = argparse.ArgumentParser(
        prog="storelistings",
        description="Query Microsoft Store listings and resolve package downloads.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("query", parents=[common, family], help="search products by keyword")
    p.add_argument("query")
    p.add_argument("--skip", type=int, default=0)
    p.add_argument("--media-type", type=_choice(MediaType), default=MediaType.ALL)
    p.add_argument("--price-type", type=_choice(PriceType), default=PriceType.ALL)
    p.set_defaults(func=cmd_query)

    p = sub.add_parser("query-bundles", parents=[common, family], help="list bundle parts")
    p.add_argument("product_id")
    p.set_defaults(func=cmd_query_bundles)

    p = sub.add_parser("query-recommendations", parents=[common, family],
                       help="list a recommendation collection")
    p.add_argument("category", type=_choice(Category))
    p.add_argument("--media-type", type=_choice(MediaType), default=MediaType.APPS,
                   help="all, apps or games (default: apps)")
    p.add_argument("--skip", type=int, default=0)
    p.add_argument("--page-size", type=int, default=20)
    p.set_defaults(func=cmd_query_recommendations)

    p = sub.add_parser("query-suggestions", parents=[common, family],
                       help="autosuggest terms and products")
    p.add_argument("query")
    p.set_defaults(func=cmd_query_suggestions)

    p = sub.add_parser("query-product", parents=[common, family, arch], help="product detail")
    p.add_argument("product_id")
    p.set_defaults(func=cmd_query_product)

    p = sub.add_parser("query-page", parents=[common, arch], help="product detail page")
    p.add_argument("product_id")
    p.set_defaults(func=cmd_query_page)

    p = sub.add_parser("query-packages", parents=[common], help="display catalog packages")
    p.add_argument("product_id")
    p.set_defaults(func=cmd_query_packages)

    p = sub.add_parser("download", parents=[common, family], help="resolve download links")
    p.add_argument("product_id")
    p.add_argument("-r", "--flight-ring", default=settings.flight_ring)
    p.add_argument("-b", "--flighting-branch", default=settings.flighting_branch_name)
    p.add_argument("-c", "--branch", default=settings.branch)
    p.add_argument("-v", "--os-version", type=_version,
                   default=settings.os_descriptor().os_version,
                   help="OS version (default: %(default)s)")
    p.add_argument("-o", "--output", type=Path, default=None,
                   help="download the resolved files into this directory")
    p.set_defaults(func=cmd_download)

    p = sub.add_parser("config", help="show or change the stored defaults")
    p.add_argument("key", nargs="?", help="setting name")
    p.add_argument("value", nargs="?", help="new value (JSON literal or plain text)")
    p.add_argument("--json", action="store_true", help="print JSON instead of text")
    p.add_argument("--verbose", action="store_true", help="enable debug logging")
    p.set_defaults(func=cmd_config)

    return parser


def _build_store(settings: Settings) -> Store:
    tls = {"timeout": settings.timeout, "ssl_verify": settings.ssl_verify, "ca_cert": settings.ca_cert}
    http = store_client(language=settings.language, **tls)
    transport = Fe3Transport(update_client(**tls))
    return Store(http, sync_transport=transport, workers=settings.workers)


def main(argv: list[str] | None = None) -> int:
    settings = load_settings()
    args = build_parser(settings).parse_args(argv)
    args.settings = settings

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    if args.command == "config":
        return cmd_config(args)
    if args.command == "query-recommendations" and not args.media_type.recommendable:
        print("Recommendations only support the media types all, apps and games.", file=sys.stderr)
        return EXIT_FAILURE

    cancel = threading.Event()
    try:
        return args.func(_build_store(settings), args, cancel)
    except KeyboardInterrupt:
        cancel.set()
        print("Interrupted.", file=sys.stderr)
        return EXIT_INTERRUPTED
    except StoreError as exc:
        print(exc.describe(), file=sys.stderr)
        return EXIT_FAILURE


if __name__ == "__main__":
    sys.exit(main())
