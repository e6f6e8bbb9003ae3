"""Tests for storelistings/backend/resolver.py."""

from __future__ import annotations

import threading

import pytest

from storelistings.backend.errors import (
    Cancelled,
    NoApplicablePackage,
    SchemaError,
    UpstreamError,
)
from storelistings.backend.resolver import PackageResolver, build_groups, select_dependency
from storelistings.backend.sync import SyncClient
from storelistings.models.download import (
    DownloadResource,
    OSDescriptor,
    PackageDownloadInfo,
    ResolvedFile,
    TargetPlatform,
    Update,
)
from storelistings.models.package import FrameworkDependency, Package, PlatformDependency
from storelistings.models.platform import DeviceFamily
from storelistings.models.version import Version
from storelistings.utils.payload import Payload

OS = OSDescriptor()
DESKTOP_1809 = PlatformDependency(DeviceFamily.DESKTOP, Version(10, 0, 17763, 0))


def _package(version="2.0", deps=(("Contoso.Runtime", "1.5"),), platforms=(DESKTOP_1809,), category="cat-1"):
    return Package(
        product_id="9APP",
        title="App",
        package_identity_name="Contoso.App",
        wu_category_id=category,
        app_version=Version.parse(version),
        platform_dependencies=tuple(platforms),
        framework_dependencies=tuple(
            FrameworkDependency(name, Version.parse(v)) for name, v in deps
        ),
    )


def _update_node(uid, identity, version, *, framework=False, family="Windows.Desktop"):
    return {
        "UpdateId": uid,
        "RevisionNumber": 1,
        "Digest": f"digest-{uid}",
        "Version": version,
        "FileName": f"{identity}_{version}.msix",
        "IsFramework": framework,
        "PackageIdentityName": identity,
        "TargetPlatforms": [{"PlatformName": family, "MinVersion": "10.0.0.0"}],
    }


class _FakeCatalog:
    def __init__(self, packages):
        self._packages = packages
        self.calls = []

    def packages(self, product_id, *, market, language, include_neutral, cancel_event=None):
        self.calls.append((product_id, market, language, include_neutral))
        return self._packages


class _FakeTransport:
    def __init__(self, updates, *, fail_on=None, cancel_event=None):
        self._updates = updates
        self._fail_on = fail_on
        self._cancel_event = cancel_event
        self.categories = []
        self.location_cookies = []

    def get_cookie(self, *, cancel_event=None):
        return Payload({"EncryptedData": "c0"})

    def sync_updates(self, cookie, category_id, os, *, cancel_event=None):
        self.categories.append(category_id)
        if self._cancel_event is not None:
            self._cancel_event.set()
        return Payload({"Updates": self._updates, "NewCookie": {"EncryptedData": "c1"}})

    def get_file_locations(self, cookie, update, os, *, cancel_event=None):
        self.location_cookies.append(cookie.encrypted_data)
        if update.update_id == self._fail_on:
            raise UpstreamError(500, "boom")
        return Payload({"FileLocations": [{"Url": f"https://dl/{update.update_id}", "FileDigest": update.digest}]})


def _resolver(packages, updates, **transport_kwargs):
    transport = _FakeTransport(updates, **transport_kwargs)
    return PackageResolver(_FakeCatalog(packages), SyncClient(transport), workers=2), transport


def _file(identity, version, *, framework=False, family=DeviceFamily.DESKTOP):
    update = Update(
        update_id=f"{identity}-{version}",
        revision_number=1,
        digest="d",
        version=Version.parse(version),
        file_name=f"{identity}_{version}.msix",
        is_framework=framework,
        package_identity_name=identity,
        target_platforms=(TargetPlatform(family, Version(10)),),
    )
    return ResolvedFile(update, PackageDownloadInfo(DownloadResource(f"https://dl/{update.update_id}")))


# ---------------------------------------------------------------------------
# PackageResolver.resolve
# ---------------------------------------------------------------------------

def test_resolve_picks_highest_satisfying_framework():
    resolver, transport = _resolver(
        [_package()],
        [
            _update_node("app", "Contoso.App", "2.0.0.0"),
            _update_node("rt14", "Contoso.Runtime", "1.4.0.0", framework=True),
            _update_node("rt16", "Contoso.Runtime", "1.6.0.0", framework=True),
        ],
    )
    (group,) = resolver.resolve("9APP", OS)
    assert group.main.update.update_id == "app"
    assert [d.update.update_id for d in group.dependencies] == ["rt16"]
    assert group.dependencies_resolved
    assert group.main.url == "https://dl/app"
    assert transport.categories == ["cat-1"]
    # Later calls use the cookie refreshed by the sync.
    assert set(transport.location_cookies) == {"c1"}


def test_resolve_drops_main_with_unsatisfied_dependency():
    resolver, _ = _resolver(
        [_package()],
        [
            _update_node("app", "Contoso.App", "2.0.0.0"),
            _update_node("rt14", "Contoso.Runtime", "1.4.0.0", framework=True),
        ],
    )
    assert resolver.resolve("9APP", OS) == []


def test_resolve_zero_updates_is_empty():
    resolver, transport = _resolver([_package()], [])
    assert resolver.resolve("9APP", OS) == []
    assert transport.location_cookies == []


def test_resolve_without_catalog_match_marks_unresolved():
    resolver, _ = _resolver(
        [_package(version="1.0")],
        [_update_node("app", "Contoso.App", "2.0.0.0")],
    )
    (group,) = resolver.resolve("9APP", OS)
    assert group.dependencies_resolved is False
    assert group.dependencies == ()


def test_resolve_no_applicable_package():
    xbox_only = _package(platforms=(PlatformDependency(DeviceFamily.XBOX, Version(10)),))
    resolver, transport = _resolver([xbox_only], [])
    with pytest.raises(NoApplicablePackage, match="OS options"):
        resolver.resolve("9APP", OS)
    assert transport.categories == []


def test_resolve_rejects_too_old_os():
    resolver, _ = _resolver([_package()], [])
    with pytest.raises(NoApplicablePackage):
        resolver.resolve("9APP", OSDescriptor(os_version=Version(10, 0, 10240, 0)))


def test_resolve_requires_category():
    resolver, _ = _resolver([_package(category=None)], [])
    with pytest.raises(SchemaError) as exc_info:
        resolver.resolve("9APP", OS)
    assert exc_info.value.stage == "querying packages"


def test_resolve_reports_failing_file_stage():
    resolver, _ = _resolver(
        [_package(deps=())],
        [_update_node("app", "Contoso.App", "2.0.0.0")],
        fail_on="app",
    )
    with pytest.raises(UpstreamError) as exc_info:
        resolver.resolve("9APP", OS)
    assert exc_info.value.stage == "getting file URL for file Contoso.App_2.0.0.0.msix"


def test_resolve_cancelled_mid_run():
    event = threading.Event()
    resolver, transport = _resolver(
        [_package(deps=())],
        [_update_node("app", "Contoso.App", "2.0.0.0")],
        cancel_event=event,
    )
    with pytest.raises(Cancelled):
        resolver.resolve("9APP", OS, cancel_event=event)
    assert transport.location_cookies == []


def test_resolve_cancelled_before_start():
    event = threading.Event()
    event.set()
    resolver, transport = _resolver([_package()], [])
    with pytest.raises(Cancelled):
        resolver.resolve("9APP", OS, cancel_event=event)
    assert transport.categories == []


# ---------------------------------------------------------------------------
# build_groups
# ---------------------------------------------------------------------------

def test_groups_sorted_newest_first():
    files = [_file("Contoso.App", "1.0"), _file("Contoso.App", "3.0"), _file("Contoso.App", "2.0")]
    packages = [_package(version=v, deps=()) for v in ("1.0", "2.0", "3.0")]
    groups = build_groups(files, packages, OS)
    assert [str(g.version) for g in groups] == ["3.0.0.0", "2.0.0.0", "1.0.0.0"]


def test_groups_skip_inapplicable_mains():
    files = [_file("Contoso.App", "2.0", family=DeviceFamily.XBOX)]
    assert build_groups(files, [_package(deps=())], OS) == []


def test_package_identity_match_is_case_insensitive():
    files = [_file("contoso.app", "2.0")]
    (group,) = build_groups(files, [_package(deps=())], OS)
    assert group.dependencies_resolved


def test_select_dependency_keeps_all_files_at_best_version():
    frameworks = [
        _file("Contoso.Runtime", "1.6", framework=True),
        _file("Contoso.Runtime", "1.6", framework=True, family=DeviceFamily.UNIVERSAL),
        _file("Contoso.Runtime", "1.5", framework=True),
        _file("Other.Runtime", "9.0", framework=True),
    ]
    chosen = select_dependency(FrameworkDependency("contoso.runtime", Version(1, 5)), frameworks, OS)
    assert [str(f.update.version) for f in chosen] == ["1.6.0.0", "1.6.0.0"]


def test_group_files_and_dict():
    main = _file("Contoso.App", "2.0")
    dep = _file("Contoso.Runtime", "1.6", framework=True)
    (group,) = build_groups([main, dep], [_package()], OS)
    assert group.files() == (main, dep)
    d = group.to_dict()
    assert d["version"] == "2.0.0.0"
    assert d["dependencies"][0]["is_framework"] is True


class _StalledTransport(_FakeTransport):
    """Cancels while a file-location request is still waiting on the service."""

    def __init__(self, updates, cancel_event):
        super().__init__(updates)
        self._cancel = cancel_event
        self.release = threading.Event()
        self.finished = threading.Event()

    def get_file_locations(self, cookie, update, os, *, cancel_event=None):
        self._cancel.set()
        self.release.wait(5)
        self.finished.set()
        return super().get_file_locations(cookie, update, os, cancel_event=cancel_event)


def test_resolve_cancel_does_not_wait_for_stalled_request():
    event = threading.Event()
    transport = _StalledTransport([_update_node("app", "Contoso.App", "2.0.0.0")], event)
    resolver = PackageResolver(_FakeCatalog([_package(deps=())]), SyncClient(transport), workers=2)
    try:
        with pytest.raises(Cancelled):
            resolver.resolve("9APP", OS, cancel_event=event)
        assert not transport.finished.is_set()
    finally:
        transport.release.set()
