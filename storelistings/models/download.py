"""Types exchanged with the update (sync) service and produced by the resolver."""

from __future__ import annotations

from dataclasses import dataclass, field

from storelistings.models.platform import DeviceFamily
from storelistings.models.version import Version

DEFAULT_OS_VERSION = Version(10, 0, 26100, 0)


@dataclass(frozen=True, slots=True)
class OSDescriptor:
    """The machine the download set is resolved for."""

    branch: str = "ge_release"
    flight_ring: str = "Retail"
    flighting_branch_name: str = "Retail"
    os_version: Version = DEFAULT_OS_VERSION
    device_family: DeviceFamily = DeviceFamily.DESKTOP
    language: str = "en"
    market: str = "US"

    @property
    def locale(self) -> str:
        return f"{self.language}-{self.market}"


@dataclass(frozen=True, slots=True)
class SessionCookie:
    """Opaque, short-lived sync credential.  Never persisted."""

    encrypted_data: str
    expiration: str = ""

    def __repr__(self) -> str:
        return f"SessionCookie(expiration={self.expiration!r})"


@dataclass(frozen=True, slots=True)
class TargetPlatform:
    family: DeviceFamily
    min_version: Version

    def admits(self, family: DeviceFamily, os_version: Version) -> bool:
        return family.accepts(self.family) and self.min_version <= os_version


@dataclass(frozen=True, slots=True)
class Update:
    """One installable file offered by the sync service."""

    update_id: str
    revision_number: int
    digest: str
    version: Version
    file_name: str
    is_framework: bool = False
    package_identity_name: str = ""
    target_platforms: tuple[TargetPlatform, ...] = ()

    def is_applicable(self, family: DeviceFamily, os_version: Version) -> bool:
        return any(t.admits(family, os_version) for t in self.target_platforms)


@dataclass(frozen=True, slots=True)
class DownloadResource:
    url: str
    digest: str = ""


@dataclass(frozen=True, slots=True)
class PackageDownloadInfo:
    package: DownloadResource
    blockmap: DownloadResource | None = None


@dataclass(frozen=True, slots=True)
class ResolvedFile:
    """An ``Update`` paired with the download info fetched for it."""

    update: Update
    download: PackageDownloadInfo

    @property
    def url(self) -> str:
        return self.download.package.url

    def to_dict(self) -> dict:
        d: dict = {
            "file_name": self.update.file_name,
            "package_identity_name": self.update.package_identity_name,
            "version": str(self.update.version),
            "is_framework": self.update.is_framework,
            "url": self.url,
            "digest": self.update.digest,
        }
        if self.download.blockmap is not None:
            d["blockmap_url"] = self.download.blockmap.url
        return d


@dataclass(frozen=True, slots=True)
class DownloadGroup:
    """A main package and the framework files it needs.

    ``dependencies_resolved`` is ``False`` when the main update had no
    matching catalog package, so its dependencies could not be determined.
    """

    main: ResolvedFile
    dependencies: tuple[ResolvedFile, ...] = field(default=())
    dependencies_resolved: bool = True

    @property
    def version(self) -> Version:
        return self.main.update.version

    def files(self) -> tuple[ResolvedFile, ...]:
        return (self.main, *self.dependencies)

    def to_dict(self) -> dict:
        return {
            "version": str(self.version),
            "main": self.main.to_dict(),
            "dependencies": [d.to_dict() for d in self.dependencies],
            "dependencies_resolved": self.dependencies_resolved,
        }
