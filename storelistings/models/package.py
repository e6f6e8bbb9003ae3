"""Display catalog packages and their declared dependencies."""

from __future__ import annotations

from dataclasses import dataclass

from storelistings.models.platform import DeviceFamily
from storelistings.models.product import PLACEHOLDER_IMAGE, Image
from storelistings.models.version import Version


@dataclass(frozen=True, slots=True)
class PlatformDependency:
    """A compatibility floor for one device family."""

    platform: DeviceFamily
    min_version: Version

    def admits(self, family: DeviceFamily, os_version: Version) -> bool:
        return family.accepts(self.platform) and self.min_version <= os_version

    def __str__(self) -> str:
        return f"{self.platform.value}: {self.min_version}"


@dataclass(frozen=True, slots=True)
class FrameworkDependency:
    """A shared runtime package required at or above ``min_version``."""

    package_identity: str
    min_version: Version

    def __str__(self) -> str:
        return f"{self.package_identity}: {self.min_version}"


@dataclass(frozen=True, slots=True)
class Package:
    """One packaging target of a product, as listed by the display catalog.

    Carries a copy of the parent product's metadata so a single entry is
    self-describing.  ``framework_dependencies`` only matter when resolving
    downloads.
    """

    # ── Parent product ────────────────────────────────────────────────────
    product_id: str
    title: str
    short_description: str = ""
    description: str = ""
    publisher_name: str = ""
    revision_id: str = ""
    package_family_name: str = ""
    package_identity_name: str = ""
    is_bundle: bool = False
    rating: float | None = None
    rating_count: int | None = None
    logo: Image = PLACEHOLDER_IMAGE
    screenshots: tuple[Image, ...] = ()

    # ── Packaging target ──────────────────────────────────────────────────
    package_full_name: str = ""
    wu_category_id: str | None = None
    app_version: Version | None = None
    size: int | None = None
    platform_dependencies: tuple[PlatformDependency, ...] = ()
    framework_dependencies: tuple[FrameworkDependency, ...] = ()

    def is_applicable(self, family: DeviceFamily, os_version: Version) -> bool:
        """True when any platform dependency admits *family* at *os_version*."""
        return any(p.admits(family, os_version) for p in self.platform_dependencies)

    def to_dict(self) -> dict:
        d: dict = {
            "product_id": self.product_id,
            "title": self.title,
            "short_description": self.short_description,
            "description": self.description,
            "publisher_name": self.publisher_name,
            "revision_id": self.revision_id,
            "package_family_name": self.package_family_name,
            "package_identity_name": self.package_identity_name,
            "is_bundle": self.is_bundle,
            "logo": self.logo.to_dict(),
            "screenshots": [s.to_dict() for s in self.screenshots],
            "package_full_name": self.package_full_name,
            "platform_dependencies": [str(p) for p in self.platform_dependencies],
            "framework_dependencies": [str(f) for f in self.framework_dependencies],
        }
        if self.rating is not None:
            d["rating"] = self.rating
        if self.rating_count is not None:
            d["rating_count"] = self.rating_count
        if self.wu_category_id:
            d["wu_category_id"] = self.wu_category_id
        if self.app_version is not None:
            d["app_version"] = str(self.app_version)
        if self.size is not None:
            d["size"] = self.size
        return d
