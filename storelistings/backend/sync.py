"""Session-based update sync protocol.

The protocol runs in three dependent stages::

    acquire_session()                     -> SessionCookie
    sync_updates(cookie, category, os)    -> SyncResult(updates, cookie')
    get_download_info(cookie', update, os) -> PackageDownloadInfo

``sync_updates`` may hand back a refreshed cookie; callers must use
``SyncResult.cookie`` for every later call.  ``SyncClient`` holds no
session state of its own.

The wire format sits behind ``SyncTransport``, which returns parsed trees:

- ``get_cookie``          ``{"EncryptedData": str, "Expiration": str}``
- ``sync_updates``        ``{"NewCookie": {...} | absent, "Updates": [update, ...]}``
  where each update is ``{"UpdateId", "RevisionNumber", "Digest", "Version",
  "FileName", "IsFramework", "PackageIdentityName",
  "TargetPlatforms": [{"PlatformName", "MinVersion"}]}``
- ``get_file_locations``  ``{"FileLocations": [{"Url", "FileDigest"}]}``

``backend.fe3.Fe3Transport`` implements it for the Windows Update service.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Protocol

from storelistings.backend.errors import SchemaError
from storelistings.models.download import (
    DownloadResource,
    OSDescriptor,
    PackageDownloadInfo,
    SessionCookie,
    TargetPlatform,
    Update,
)
from storelistings.models.platform import DeviceFamily
from storelistings.models.version import Version
from storelistings.utils.payload import Payload

log = logging.getLogger(__name__)


class SyncTransport(Protocol):
    def get_cookie(self, *, cancel_event: threading.Event | None = None) -> Payload: ...

    def sync_updates(
        self,
        cookie: SessionCookie,
        category_id: str,
        os: OSDescriptor,
        *,
        cancel_event: threading.Event | None = None,
    ) -> Payload: ...

    def get_file_locations(
        self,
        cookie: SessionCookie,
        update: Update,
        os: OSDescriptor,
        *,
        cancel_event: threading.Event | None = None,
    ) -> Payload: ...


@dataclass(frozen=True, slots=True)
class SyncResult:
    updates: tuple[Update, ...]
    cookie: SessionCookie


class SyncClient:
    def __init__(self, transport: SyncTransport) -> None:
        self._transport = transport

    def acquire_session(self, *, cancel_event: threading.Event | None = None) -> SessionCookie:
        tree = self._transport.get_cookie(cancel_event=cancel_event)
        cookie = parse_cookie(tree)
        if cookie is None:
            raise SchemaError("EncryptedData", "Sync service returned no session cookie")
        return cookie

    def sync_updates(
        self,
        cookie: SessionCookie,
        category_id: str,
        os: OSDescriptor,
        *,
        cancel_event: threading.Event | None = None,
    ) -> SyncResult:
        tree = self._transport.sync_updates(cookie, category_id, os, cancel_event=cancel_event)
        updates: list[Update] = []
        for node in tree.array("Updates"):
            try:
                updates.append(parse_update(node))
            except SchemaError as exc:
                log.warning("Skipping malformed update %r: %s", node.string("UpdateId"), exc)
        refreshed = parse_cookie(tree.child("NewCookie"))
        log.info("Sync returned %d update(s) for category %s", len(updates), category_id)
        return SyncResult(updates=tuple(updates), cookie=refreshed or cookie)

    def get_download_info(
        self,
        cookie: SessionCookie,
        update: Update,
        os: OSDescriptor,
        *,
        cancel_event: threading.Event | None = None,
    ) -> PackageDownloadInfo:
        tree = self._transport.get_file_locations(cookie, update, os, cancel_event=cancel_event)
        return select_download(tree, update.digest)


# ---------------------------------------------------------------------------
# Tree parsing
# ---------------------------------------------------------------------------

def parse_cookie(node: Payload) -> SessionCookie | None:
    data = node.string("EncryptedData")
    if not data:
        return None
    return SessionCookie(encrypted_data=data, expiration=node.string("Expiration"))


def parse_update(node: Payload) -> Update:
    update_id = node.string("UpdateId")
    file_name = node.string("FileName")
    if not update_id:
        raise SchemaError("UpdateId")
    if not file_name:
        raise SchemaError("FileName")
    version = Version.try_parse(node.string("Version"))
    if version is None:
        raise SchemaError("Version", f"Unparsable version {node.string('Version')!r}")
    platforms = []
    for target in node.array("TargetPlatforms"):
        platforms.append(
            TargetPlatform(
                family=DeviceFamily.from_name(target.string("PlatformName")),
                min_version=Version.try_parse(target.string("MinVersion")) or Version(),
            )
        )
    return Update(
        update_id=update_id,
        revision_number=node.integer("RevisionNumber"),
        digest=node.string("Digest"),
        version=version,
        file_name=file_name,
        is_framework=node.boolean("IsFramework"),
        package_identity_name=node.string("PackageIdentityName"),
        target_platforms=tuple(platforms),
    )


def select_download(tree: Payload, digest: str) -> PackageDownloadInfo:
    """Pick the package file and its block map from a location list.

    The package is the location whose digest matches the update's, else the
    first location that is not a block map.
    """
    locations = [
        DownloadResource(url=loc.string("Url"), digest=loc.string("FileDigest"))
        for loc in tree.array("FileLocations")
        if loc.string("Url")
    ]
    if not locations:
        raise SchemaError("FileLocations", "Sync service returned no file locations")

    blockmap = next((loc for loc in locations if _is_blockmap(loc.url)), None)
    package = next((loc for loc in locations if digest and loc.digest == digest), None)
    if package is None:
        package = next((loc for loc in locations if not _is_blockmap(loc.url)), None)
    if package is None:
        raise SchemaError("FileLocations", "Sync service returned only block map locations")
    return PackageDownloadInfo(package=package, blockmap=blockmap)


def _is_blockmap(url: str) -> bool:
    return "blockmap" in url.lower()
