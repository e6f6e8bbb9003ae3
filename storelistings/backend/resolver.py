"""Resolve a packaged product into downloadable, dependency-complete file groups.

Steps:

1. Fetch the display catalog packages; at least one must be applicable to
   the requested device family and OS version.
2. Acquire a sync session and sync the first applicable package's update
   category.
3. Fetch download info for every update on a bounded worker pool.
4. For each applicable main (non-framework) update, newest first, find its
   catalog package by identity and exact version and pick, per framework
   dependency, the highest-version group of matching framework files.  A
   single unsatisfied dependency drops the whole main update.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait

from storelistings.backend.catalog import Catalog
from storelistings.backend.errors import (
    DependencyUnsatisfied,
    NoApplicablePackage,
    SchemaError,
    raise_if_cancelled,
    stage,
)
from storelistings.backend.sync import SyncClient
from storelistings.models.download import (
    DownloadGroup,
    OSDescriptor,
    ResolvedFile,
    SessionCookie,
    Update,
)
from storelistings.models.package import FrameworkDependency, Package

log = logging.getLogger(__name__)

DEFAULT_WORKERS = 4

# How often the download-info wait wakes up to look at the cancel event.
CANCEL_POLL_INTERVAL = 0.1


class PackageResolver:
    def __init__(self, catalog: Catalog, sync: SyncClient, *, workers: int = DEFAULT_WORKERS) -> None:
        self._catalog = catalog
        self._sync = sync
        self._workers = max(1, workers)

    def resolve(
        self,
        product_id: str,
        os: OSDescriptor,
        *,
        cancel_event: threading.Event | None = None,
    ) -> list[DownloadGroup]:
        with stage("querying packages"):
            packages = self._catalog.packages(
                product_id,
                market=os.market,
                language=os.language,
                include_neutral=True,
                cancel_event=cancel_event,
            )
            applicable = [p for p in packages if p.is_applicable(os.device_family, os.os_version)]
            if not applicable:
                raise NoApplicablePackage("No applicable packages were found for your OS options")
            category_id = applicable[0].wu_category_id
            if not category_id:
                raise SchemaError(
                    "WuCategoryId",
                    f"Package {applicable[0].package_full_name!r} has no update category",
                )

        raise_if_cancelled(cancel_event)
        with stage("getting Windows Update cookies"):
            cookie = self._sync.acquire_session(cancel_event=cancel_event)

        raise_if_cancelled(cancel_event)
        with stage("syncing updates"):
            synced = self._sync.sync_updates(cookie, category_id, os, cancel_event=cancel_event)
        if not synced.updates:
            log.info("Sync returned no updates for %s", product_id)
            return []

        files = self._fetch_download_info(synced.cookie, synced.updates, os, cancel_event)
        raise_if_cancelled(cancel_event)
        return build_groups(files, packages, os)

    def _fetch_download_info(
        self,
        cookie: SessionCookie,
        updates: tuple[Update, ...],
        os: OSDescriptor,
        cancel_event: threading.Event | None,
    ) -> list[ResolvedFile]:
        """Fetch download info concurrently, correlated back by update identity."""

        def _work(update: Update):
            raise_if_cancelled(cancel_event)
            return self._sync.get_download_info(cookie, update, os, cancel_event=cancel_event)

        resolved: dict[tuple[str, int], ResolvedFile] = {}
        pool = ThreadPoolExecutor(max_workers=self._workers)
        futures = {pool.submit(_work, u): u for u in updates}
        pending = set(futures)
        try:
            while pending:
                raise_if_cancelled(cancel_event)
                done, pending = wait(
                    pending, timeout=CANCEL_POLL_INTERVAL, return_when=FIRST_COMPLETED
                )
                for fut in done:
                    update = futures[fut]
                    with stage(f"getting file URL for file {update.file_name}"):
                        info = fut.result()
                    resolved[(update.update_id, update.revision_number)] = ResolvedFile(update, info)
        except BaseException:
            # Requests already on the wire finish on their own threads; results are dropped.
            pool.shutdown(wait=False, cancel_futures=True)
            raise
        pool.shutdown()
        return [resolved[(u.update_id, u.revision_number)] for u in updates]


# ---------------------------------------------------------------------------
# Grouping
# ---------------------------------------------------------------------------

def build_groups(
    files: list[ResolvedFile], packages: list[Package], os: OSDescriptor
) -> list[DownloadGroup]:
    """Pair each applicable main update with its framework files."""
    mains = [f for f in files if not f.update.is_framework]
    frameworks = [f for f in files if f.update.is_framework]
    mains.sort(key=lambda f: f.update.version, reverse=True)

    groups: list[DownloadGroup] = []
    for main in mains:
        update = main.update
        if not update.is_applicable(os.device_family, os.os_version):
            log.debug("Skipping %s: no compatible target platform", update.file_name)
            continue

        package = match_package(update, packages)
        if package is None:
            log.warning("Failed to get dependencies for version %s", update.version)
            groups.append(DownloadGroup(main=main, dependencies_resolved=False))
            continue

        try:
            dependencies = [
                f
                for dep in package.framework_dependencies
                for f in select_dependency(dep, frameworks, os)
            ]
        except DependencyUnsatisfied as exc:
            log.warning("Dropping %s %s: %s", update.file_name, update.version, exc)
            continue
        groups.append(DownloadGroup(main=main, dependencies=tuple(dependencies)))
    return groups


def match_package(update: Update, packages: list[Package]) -> Package | None:
    identity = update.package_identity_name.lower()
    for package in packages:
        if package.package_identity_name.lower() == identity and package.app_version == update.version:
            return package
    return None


def select_dependency(
    dependency: FrameworkDependency, frameworks: list[ResolvedFile], os: OSDescriptor
) -> list[ResolvedFile]:
    """All framework files at the highest version satisfying *dependency*.

    Raises ``DependencyUnsatisfied`` when none qualifies.
    """
    identity = dependency.package_identity.lower()
    candidates = [
        f
        for f in frameworks
        if f.update.package_identity_name.lower() == identity
        and f.update.version >= dependency.min_version
        and f.update.is_applicable(os.device_family, os.os_version)
    ]
    if not candidates:
        raise DependencyUnsatisfied(dependency.package_identity, dependency.min_version)
    best = max(f.update.version for f in candidates)
    return [f for f in candidates if f.update.version == best]
