"""Tests for storelistings/backend/fe3.py (SOAP envelopes and response parsing)."""

from __future__ import annotations

import json
import xml.etree.ElementTree as ET
from datetime import datetime, timezone
from xml.sax.saxutils import escape

import pytest

from storelistings.backend.errors import SchemaError, UpstreamError
from storelistings.backend.fe3 import (
    CLIENT_URL,
    SECURED_URL,
    Fe3Transport,
    build_envelope,
    device_attributes,
    parse_moniker,
    parse_response,
    target_platforms,
)
from storelistings.backend.http import HttpResponse
from storelistings.models.download import OSDescriptor, SessionCookie, Update
from storelistings.models.platform import DeviceFamily
from storelistings.models.version import Version

_WU = "http://www.microsoft.com/SoftwareDistribution/Server/ClientWebService"
_SOAP = "http://www.w3.org/2003/05/soap-envelope"


def _envelope(body: str) -> bytes:
    return (
        f'<s:Envelope xmlns:s="{_SOAP}"><s:Body>{body}</s:Body></s:Envelope>'
    ).encode()


def _blob(*targets: tuple[int, int]) -> str:
    return json.dumps({
        "content.targetPlatforms": [
            {"platform.target": t, "platform.minVersion": v} for t, v in targets
        ]
    })


def _update_xml(moniker: str, file_name: str, digest: str, *, framework: bool = False, blob: str = "") -> str:
    return (
        "<UpdateIdentity UpdateID='x'/>"
        "<Files>"
        f"<File FileName='{file_name}.BlockMap' Digest='bm'/>"
        f"<File FileName='{file_name}' Digest='{digest}' InstallerSpecificIdentifier='{moniker}'/>"
        "</Files>"
        "<ApplicabilityRules><Metadata><AppxPackageMetadata>"
        f"<AppxMetadata PackageMoniker='{moniker}' IsAppxFramework='{str(framework).lower()}'>"
        f"<ApplicabilityBlob>{escape(blob)}</ApplicabilityBlob>"
        "</AppxMetadata>"
        "</AppxPackageMetadata></Metadata></ApplicabilityRules>"
    )


def _sync_response() -> bytes:
    desktop = _blob((3, 2814750931222528))
    new_updates = "".join(
        f"<UpdateInfo><ID>{n}</ID><Xml>{escape(xml)}</Xml></UpdateInfo>"
        for n, xml in (
            ("10", "<UpdateIdentity UpdateID='guid-app' RevisionNumber='1'/>"),
            ("11", "<UpdateIdentity UpdateID='guid-fw' RevisionNumber='7'/>"),
            ("12", "<UpdateIdentity UpdateID='guid-category' RevisionNumber='1'/>"),
        )
    )
    extended = "".join(
        f"<Update><ID>{n}</ID><Xml>{escape(xml)}</Xml></Update>"
        for n, xml in (
            ("10", _update_xml("Contoso.App_2.0.0.0_x64__8wekyb3d8bbwe", "Contoso.App.msixbundle", "dA", blob=desktop)),
            ("11", _update_xml("Contoso.Runtime_1.6.0.0_x64__8wekyb3d8bbwe", "Contoso.Runtime.appx", "dF", framework=True, blob=_blob((0, 0)))),
            ("12", "<Properties UpdateType='Detectoid'/>"),
        )
    )
    return _envelope(
        f'<SyncUpdatesResponse xmlns="{_WU}"><SyncUpdatesResult>'
        f"<NewUpdates>{new_updates}</NewUpdates>"
        f"<ExtendedUpdateInfo><Updates>{extended}</Updates></ExtendedUpdateInfo>"
        "<NewCookie><Expiration>later</Expiration><EncryptedData>fresh</EncryptedData></NewCookie>"
        "</SyncUpdatesResult></SyncUpdatesResponse>"
    )


class _FakeHttp:
    def __init__(self, *responses: HttpResponse):
        self._responses = list(responses)
        self.calls = []

    def request(self, method, url, *, data=None, headers=None, cancel_event=None):
        self.calls.append((method, url, data.decode(), headers))
        return self._responses.pop(0)


# ---------------------------------------------------------------------------
# Envelope
# ---------------------------------------------------------------------------

def test_envelope_is_well_formed():
    now = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
    xml = build_envelope("GetCookie", CLIENT_URL, "<Ping/>", now=now)
    root = ET.fromstring(xml)
    assert root.tag == f"{{{_SOAP}}}Envelope"
    assert "<Created>2024-01-02T03:04:05.000Z</Created>" in xml
    assert "<Expires>2024-01-02T03:09:05.000Z</Expires>" in xml
    assert "ClientWebService/GetCookie</a:Action>" in xml
    assert root.find(f"{{{_SOAP}}}Body/Ping") is not None


def test_device_attributes():
    attrs = device_attributes(OSDescriptor(device_family=DeviceFamily.XBOX, os_version=Version(10, 0, 19041, 0)))
    assert attrs.startswith("E:")
    pairs = dict(p.split("=", 1) for p in attrs[2:].split("&"))
    assert pairs["DeviceFamily"] == "Windows.Xbox"
    assert pairs["OSVersion"] == "10.0.19041.0"
    assert pairs["FlightRing"] == "Retail"
    assert pairs["IsFlightingEnabled"] == "0"
    assert pairs["InstallLanguage"] == "en-US"


# ---------------------------------------------------------------------------
# Response parsing
# ---------------------------------------------------------------------------

def test_parse_response_fault_raises_upstream():
    body = _envelope(
        "<s:Fault><s:Reason><s:Text>Invalid cookie</s:Text></s:Reason></s:Fault>"
    )
    with pytest.raises(UpstreamError, match="Invalid cookie") as exc_info:
        parse_response(HttpResponse(500, body))
    assert exc_info.value.status == 500


def test_parse_response_non_xml_error_status():
    with pytest.raises(UpstreamError, match="Service Unavailable"):
        parse_response(HttpResponse(503, b"Service Unavailable"))


def test_parse_response_non_xml_success_is_schema_error():
    with pytest.raises(SchemaError):
        parse_response(HttpResponse(200, b"not xml"))


def test_parse_moniker():
    assert parse_moniker("Contoso.App_2.0.0.0_x64__8wekyb3d8bbwe") == ("Contoso.App", "2.0.0.0")
    assert parse_moniker("bare") == ("bare", "")


def test_target_platforms():
    platforms = target_platforms(_blob((3, 2814750931222528), (2, 0), (99, 0)))
    assert platforms == [
        {"PlatformName": "Desktop", "MinVersion": "10.0.17763.0"},
        {"PlatformName": "Xbox", "MinVersion": "0.0.0.0"},
        {"PlatformName": "Unknown", "MinVersion": "0.0.0.0"},
    ]
    assert target_platforms("") == []
    assert target_platforms("{broken") == []


# ---------------------------------------------------------------------------
# Fe3Transport
# ---------------------------------------------------------------------------

def test_get_cookie():
    http = _FakeHttp(HttpResponse(200, _envelope(
        f'<GetCookieResponse xmlns="{_WU}"><GetCookieResult>'
        "<Expiration>2030-01-01</Expiration><EncryptedData>secret</EncryptedData>"
        "</GetCookieResult></GetCookieResponse>"
    )))
    tree = Fe3Transport(http).get_cookie()
    assert tree.string("EncryptedData") == "secret"
    assert tree.string("Expiration") == "2030-01-01"
    method, url, body, headers = http.calls[0]
    assert method == "POST"
    assert url == CLIENT_URL
    assert headers["Content-Type"].startswith("application/soap+xml")
    assert "<GetCookie " in body


def test_get_cookie_missing_result():
    http = _FakeHttp(HttpResponse(200, _envelope("<Other/>")))
    with pytest.raises(SchemaError, match="GetCookieResult"):
        Fe3Transport(http).get_cookie()


def test_sync_updates_builds_tree():
    http = _FakeHttp(HttpResponse(200, _sync_response()))
    tree = Fe3Transport(http).sync_updates(
        SessionCookie("c&0", "exp"), "cat-guid", OSDescriptor()
    )
    body = http.calls[0][2]
    assert "<Id>cat-guid</Id>" in body
    assert "<EncryptedData>c&amp;0</EncryptedData>" in body
    ET.fromstring(body)

    app, runtime = tree.array("Updates")
    assert app.string("UpdateId") == "guid-app"
    assert app.integer("RevisionNumber") == 1
    assert app.string("FileName") == "Contoso.App.msixbundle"
    assert app.string("Digest") == "dA"
    assert app.string("Version") == "2.0.0.0"
    assert app.string("PackageIdentityName") == "Contoso.App"
    assert app.boolean("IsFramework") is False
    assert app.array("TargetPlatforms")[0].string("PlatformName") == "Desktop"
    assert runtime.string("UpdateId") == "guid-fw"
    assert runtime.integer("RevisionNumber") == 7
    assert runtime.boolean("IsFramework") is True
    assert tree.child("NewCookie").string("EncryptedData") == "fresh"


def test_get_file_locations():
    http = _FakeHttp(HttpResponse(200, _envelope(
        f'<GetExtendedUpdateInfo2Response xmlns="{_WU}"><GetExtendedUpdateInfo2Result>'
        "<FileLocations>"
        "<FileLocation><FileDigest>dA</FileDigest><Url>https://tlu.dl/app</Url></FileLocation>"
        "<FileLocation><FileDigest>bm</FileDigest><Url>https://tlu.dl/app.BlockMap</Url></FileLocation>"
        "</FileLocations>"
        "</GetExtendedUpdateInfo2Result></GetExtendedUpdateInfo2Response>"
    )))
    update = Update("guid-app", 1, "dA", Version(2), "Contoso.App.msixbundle")
    tree = Fe3Transport(http).get_file_locations(SessionCookie("c"), update, OSDescriptor())
    assert [loc.string("Url") for loc in tree.array("FileLocations")] == [
        "https://tlu.dl/app", "https://tlu.dl/app.BlockMap",
    ]
    _, url, body, _ = http.calls[0]
    assert url == SECURED_URL
    assert "<UpdateID>guid-app</UpdateID>" in body
    assert "<RevisionNumber>1</RevisionNumber>" in body
