"""Tests for storelistings/backend/store.py (the Result boundary)."""

from __future__ import annotations

import io
import json
import threading
from contextlib import contextmanager
from pathlib import Path

from storelistings.backend.errors import Cancelled, NoInstallerFound, UpstreamError
from storelistings.backend.store import Store
from storelistings.models.download import (
    DownloadGroup,
    DownloadResource,
    PackageDownloadInfo,
    ResolvedFile,
    Update,
)
from storelistings.models.manifest import InstallerInfo
from storelistings.models.platform import DeviceFamily
from storelistings.models.query import Category, MediaType
from storelistings.models.version import Version
from storelistings.utils.payload import Payload

FIXTURES = Path(__file__).parent / "fixtures"


def _load(name: str):
    return json.loads((FIXTURES / name).read_text(encoding="utf-8"))


class _Body:
    def __init__(self, data: bytes):
        self._buf = io.BytesIO(data)
        self.headers = {"Content-Length": str(len(data))}

    def read(self, n: int = -1) -> bytes:
        return self._buf.read(n)


class _FakeHttp:
    """Routes catalog URLs to fixtures and serves file bodies for downloads."""

    def __init__(self, routes: dict[str, object] | None = None, files: dict[str, bytes] | None = None):
        self._routes = routes or {}
        self._files = files or {}
        self.urls: list[str] = []
        self.streamed: list[str] = []

    def get_json(self, url, *, cancel_event=None):
        self.urls.append(url)
        for fragment, answer in self._routes.items():
            if fragment in url:
                if isinstance(answer, Exception):
                    raise answer
                return Payload(answer)
        raise UpstreamError(404, "Not found")

    @contextmanager
    def stream(self, url, *, cancel_event=None):
        self.streamed.append(url)
        yield _Body(self._files[url])


class _NoSync:
    def get_cookie(self, *, cancel_event=None):
        raise AssertionError("sync not expected")


def _store(http) -> Store:
    return Store(http, sync_transport=_NoSync())


def _resolved(url: str, name: str) -> ResolvedFile:
    update = Update(name, 1, "d", Version(1), name)
    return ResolvedFile(update, PackageDownloadInfo(DownloadResource(url)))


# ---------------------------------------------------------------------------
# Result wrapping
# ---------------------------------------------------------------------------

def test_resolve_product_success():
    store = _store(_FakeHttp({"/products/": _load("product.json")}))
    result = store.resolve_product("9NBLGGH4NNS1")
    assert result.ok
    assert result.unwrap().title == "App Installer"


def test_failure_is_tagged_with_stage():
    store = _store(_FakeHttp())
    result = store.resolve_product("9MISSING", DeviceFamily.XBOX)
    assert not result.ok
    assert isinstance(result.error, UpstreamError)
    assert result.error.stage == "querying the product ID"
    assert result.error.describe() == "Error while querying the product ID: HTTP 404: Not found"


def test_unwrap_raises_stored_error():
    result = _store(_FakeHttp()).search("anything")
    try:
        result.unwrap()
    except UpstreamError as exc:
        assert exc is result.error
    else:
        raise AssertionError("unwrap should raise")


def test_cancelled_is_a_failure():
    event = threading.Event()
    event.set()
    store = _store(_FakeHttp({"/products/": Cancelled()}))
    result = store.resolve_product("9X", cancel_event=event)
    assert isinstance(result.error, Cancelled)


def test_catalog_packages_neutral_locale():
    http = _FakeHttp({"displaycatalog": _load("packages.json")})
    result = _store(http).resolve_catalog_packages("9NBLGGH4NNS1", "GB", "en", True)
    assert len(result.unwrap()) == 2
    assert "languages=en-GB,en,neutral" in http.urls[0]


def test_unpackaged_install():
    http = _FakeHttp({"/packageManifests/": _load("manifest.json")})
    info = _store(http).resolve_unpackaged_install("XP89DCGQ3K6VLD").unwrap()
    assert info.installer_url == "https://dl.example/en-gb.msi"


def test_unpackaged_install_failure_stage():
    http = _FakeHttp({"/packageManifests/": {"Data": {"Versions": []}}})
    result = _store(http).resolve_unpackaged_install("XP1")
    assert isinstance(result.error, NoInstallerFound)
    assert result.error.stage == "getting unpackaged install"


def test_suggestions_and_bundles():
    http = _FakeHttp({
        "/autosuggest": {"Payload": {"SearchSuggestions": ["a"], "AssetSuggestions": []}},
        "/BundleParts": {"Payload": {"0017": {"Products": [{"ProductId": "9P", "Title": "Part"}]}}},
    })
    store = _store(http)
    assert store.suggestions("a").unwrap().terms == ("a",)
    assert [c.product_id for c in store.bundle_parts("9B").unwrap()] == ["9P"]



def test_recommendations_unsupported_media_type_is_a_failure():
    http = _FakeHttp()
    result = _store(http).recommendations(Category.TOP_FREE, media_type=MediaType.DEVICES)
    assert not result.ok
    assert result.error.stage == "querying recommendations"
    assert "devices" in result.error.describe()
    assert http.urls == []


# ---------------------------------------------------------------------------
# download_files
# ---------------------------------------------------------------------------

def test_download_files_dedupes_shared_frameworks(tmp_path):
    runtime = _resolved("https://dl/rt", "Runtime.appx")
    groups = [
        DownloadGroup(main=_resolved("https://dl/app2", "App2.msix"), dependencies=(runtime,)),
        DownloadGroup(main=_resolved("https://dl/app1", "App1.msix"), dependencies=(runtime,)),
    ]
    http = _FakeHttp(files={"https://dl/app2": b"2", "https://dl/app1": b"1", "https://dl/rt": b"r"})
    progress = []
    result = _store(http).download_files(
        groups, tmp_path, progress_cb=lambda name, done, total: progress.append(name)
    )
    assert [p.name for p in result.unwrap()] == ["App2.msix", "Runtime.appx", "App1.msix"]
    assert http.streamed == ["https://dl/app2", "https://dl/rt", "https://dl/app1"]
    assert progress == ["App2.msix", "Runtime.appx", "App1.msix"]


def test_download_files_installer_checksum_failure(tmp_path):
    info = InstallerInfo("https://dl/setup", "Tool.exe", "/S", "1.0", installer_sha256="00" * 32)
    result = _store(_FakeHttp(files={"https://dl/setup": b"data"})).download_files(info, tmp_path)
    assert not result.ok
    assert result.error.stage == "downloading Tool.exe"
    assert "SHA256 mismatch" in result.error.describe()
