"""Pick the installer for an unpackaged (MSI/EXE) product from its manifest.

Manifest shape::

    {"Data": {"Versions": [
        {"PackageVersion": "6.6.11 (23272)",
         "DefaultLocale": {"PackageName": "Example"},
         "Installers": [
             {"InstallerLocale": "en-US", "InstallerUrl": "https://…",
              "InstallerType": "exe", "InstallerSha256": "…",
              "InstallerSwitches": {"Silent": "/S"}}]}]}}
"""

from __future__ import annotations

import logging

from storelistings.backend.errors import NoInstallerFound
from storelistings.models.manifest import InstallerInfo
from storelistings.models.version import Version
from storelistings.utils.payload import Payload

log = logging.getLogger(__name__)

DEFAULT_EXTENSION = "exe"


def version_key(text: str) -> Version | None:
    """Parse the numeric prefix of a manifest version (text before the first space)."""
    prefix = text.strip().split(" ", 1)[0] if text.strip() else ""
    return Version.try_parse(prefix)


def select_version(versions: list[Payload]) -> Payload:
    """Greatest parseable ``PackageVersion``, else the first entry."""
    best: Payload | None = None
    best_key: Version | None = None
    for entry in versions:
        key = version_key(entry.string("PackageVersion"))
        if key is not None and (best_key is None or key > best_key):
            best, best_key = entry, key
    return best if best is not None else versions[0]


def select_installer(
    installers: list[Payload],
    language: str,
    market: str,
    *,
    prefer_market_locale: bool = False,
) -> Payload:
    """First installer whose locale starts with *language*, else the first one.

    With *prefer_market_locale* an exact ``language-market`` locale wins over
    an earlier bare-language match.
    """
    lang = language.lower()
    exact = f"{language}-{market}".lower()
    matches = [i for i in installers if i.string("InstallerLocale").lower().startswith(lang)]
    if prefer_market_locale:
        for installer in matches:
            if installer.string("InstallerLocale").lower() == exact:
                return installer
    if matches:
        return matches[0]
    log.debug("No installer for language %s; using the first listed", language)
    return installers[0]


def resolve_installer(
    manifest: Payload,
    product_id: str,
    language: str,
    market: str,
    *,
    prefer_market_locale: bool = False,
) -> InstallerInfo:
    versions = manifest.child("Data").array("Versions")
    if not versions:
        raise NoInstallerFound(f"Package manifest for {product_id} lists no versions")
    version = select_version(versions)
    installers = version.array("Installers")
    if not installers:
        raise NoInstallerFound(
            f"Version {version.string('PackageVersion')!r} of {product_id} lists no installers"
        )
    installer = select_installer(
        installers, language, market, prefer_market_locale=prefer_market_locale
    )

    package_name = version.child("DefaultLocale").string("PackageName") or product_id
    extension = installer.string("InstallerType").lower() or DEFAULT_EXTENSION
    info = InstallerInfo(
        installer_url=installer.string("InstallerUrl"),
        file_name=f"{package_name}.{extension}",
        installer_switches=installer.child("InstallerSwitches").string("Silent"),
        version=version.string("PackageVersion"),
        installer_sha256=installer.string("InstallerSha256"),
    )
    if not info.installer_url:
        raise NoInstallerFound(f"Selected installer for {product_id} has no URL")
    log.info("Selected %s installer %s for %s", info.version, info.file_name, product_id)
    return info
