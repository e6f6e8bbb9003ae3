"""SOAP transport for the Windows Update FE3 delivery service.

Three operations are used:

- ``GetCookie``               (client.asmx)          → session cookie
- ``SyncUpdates``             (client.asmx)          → updates for an app category
- ``GetExtendedUpdateInfo2``  (client.asmx/secured)  → file URLs for one update

Responses are converted into the plain trees described in ``backend.sync``,
so ``SyncClient`` never sees XML.  The service reports most failures as SOAP
faults inside an HTTP 500; both the fault reason and the status end up in
``UpstreamError``.
"""

from __future__ import annotations

import logging
import threading
import uuid
import xml.etree.ElementTree as ET
from datetime import datetime, timedelta, timezone
from xml.sax.saxutils import escape

from storelistings.backend.errors import SchemaError, UpstreamError
from storelistings.backend.http import UPDATE_USER_AGENT, HttpClient, HttpResponse
from storelistings.models.download import OSDescriptor, SessionCookie, Update
from storelistings.models.platform import DeviceFamily
from storelistings.models.version import Version
from storelistings.utils.payload import Payload

log = logging.getLogger(__name__)

CLIENT_URL = "https://fe3.delivery.mp.microsoft.com/ClientWebService/client.asmx"
SECURED_URL = CLIENT_URL + "/secured"

_SOAP_NS = "http://www.w3.org/2003/05/soap-envelope"
_WU_NS = "http://www.microsoft.com/SoftwareDistribution/Server/ClientWebService"
_ACTION_BASE = "http://www.microsoft.com/SoftwareDistribution/Server/ClientWebService/"
_CONTENT_TYPE = "application/soap+xml; charset=utf-8"

_S = f"{{{_SOAP_NS}}}"
_W = f"{{{_WU_NS}}}"

# Updates the service expects a client to already have installed; without
# them SyncUpdates answers with the prerequisite tree instead of app files.
_INSTALLED_NON_LEAF_UPDATE_IDS = (
    1, 2, 3, 11, 19, 544, 549, 2359974, 2359977, 5169044, 8788830, 23110993,
    23110994, 54341900, 54343656, 59830006, 59830007, 59830008, 60484010,
    62450018, 62450019, 62450020, 66027979, 66053150, 97657898, 98822896,
    98959022, 98959023, 98959024, 98959025, 98959026, 104433538, 104900364,
    105489019, 117765322, 129905029, 130040031, 132387090, 132393049,
    133399034, 138537048, 140377312, 143747671, 158941041, 158941042,
    158941043, 158941044, 159123858, 159130928, 164836897, 164847386,
    164848327, 164852241, 164852246, 164852252, 164852253,
)

_FILE_INFO_TYPES = (
    "FileUrl",
    "FileDecryption",
    "EsrpDecryptionInformation",
    "PiecesHashUrl",
    "BlockMapUrl",
)

# ``platform.target`` values in an AppX applicability blob.
PLATFORM_TARGETS: dict[int, DeviceFamily] = {
    0: DeviceFamily.UNIVERSAL,
    1: DeviceFamily.MOBILE,
    2: DeviceFamily.XBOX,
    3: DeviceFamily.DESKTOP,
    4: DeviceFamily.HOLOGRAPHIC,
    5: DeviceFamily.TEAM,
    6: DeviceFamily.IOT,
    7: DeviceFamily.SERVER,
    8: DeviceFamily.CORE,
}


class Fe3Transport:
    """``SyncTransport`` speaking SOAP 1.2 to the FE3 service."""

    def __init__(self, http: HttpClient) -> None:
        self._http = http

    # ------------------------------------------------------------------
    # SyncTransport
    # ------------------------------------------------------------------

    def get_cookie(self, *, cancel_event: threading.Event | None = None) -> Payload:
        now = _timestamp(datetime.now(timezone.utc))
        body = (
            f'<GetCookie xmlns="{_WU_NS}">'
            f"<oldCookie><Expiration>{now}</Expiration></oldCookie>"
            f"<lastChange>{now}</lastChange>"
            f"<currentTime>{now}</currentTime>"
            "<protocolVersion>1.40</protocolVersion>"
            "</GetCookie>"
        )
        root = self._call("GetCookie", CLIENT_URL, body, cancel_event)
        result = root.find(f".//{_W}GetCookieResult")
        if result is None:
            raise SchemaError("GetCookieResult")
        return Payload(_cookie_tree(result))

    def sync_updates(
        self,
        cookie: SessionCookie,
        category_id: str,
        os: OSDescriptor,
        *,
        cancel_event: threading.Event | None = None,
    ) -> Payload:
        installed = "".join(f"<int>{i}</int>" for i in _INSTALLED_NON_LEAF_UPDATE_IDS)
        body = (
            f'<SyncUpdates xmlns="{_WU_NS}">'
            f"{_cookie_xml(cookie)}"
            "<parameters>"
            "<ExpressQuery>false</ExpressQuery>"
            f"<InstalledNonLeafUpdateIDs>{installed}</InstalledNonLeafUpdateIDs>"
            "<OtherCachedUpdateIDs/>"
            "<SkipSoftwareSync>false</SkipSoftwareSync>"
            "<NeedTwoGroupOutOfScopeUpdates>true</NeedTwoGroupOutOfScopeUpdates>"
            "<FilterAppCategoryIds><CategoryIdentifier>"
            f"<Id>{escape(category_id)}</Id>"
            "</CategoryIdentifier></FilterAppCategoryIds>"
            "<TreatAppCategoryIdsAsInstalled>true</TreatAppCategoryIdsAsInstalled>"
            "<AlsoPerformRegularSync>false</AlsoPerformRegularSync>"
            "<ComputerSpec/>"
            "<ExtendedUpdateInfoParameters>"
            "<XmlUpdateFragmentTypes>"
            "<XmlUpdateFragmentType>Extended</XmlUpdateFragmentType>"
            "<XmlUpdateFragmentType>LocalizedProperties</XmlUpdateFragmentType>"
            "</XmlUpdateFragmentTypes>"
            f"<Locales><string>{escape(os.locale)}</string><string>{escape(os.language)}</string></Locales>"
            "</ExtendedUpdateInfoParameters>"
            f"<ClientPreferredLanguages><string>{escape(os.locale)}</string></ClientPreferredLanguages>"
            "<ProductsParameters>"
            "<SyncCurrentVersionOnly>false</SyncCurrentVersionOnly>"
            f"<DeviceAttributes>{escape(device_attributes(os))}</DeviceAttributes>"
            "<CallerAttributes>E:Interactive=1&amp;IsSeeker=1&amp;SheddingAware=1&amp;</CallerAttributes>"
            "<Products/>"
            "</ProductsParameters>"
            "</parameters>"
            "</SyncUpdates>"
        )
        root = self._call("SyncUpdates", CLIENT_URL, body, cancel_event)
        result = root.find(f".//{_W}SyncUpdatesResult")
        if result is None:
            raise SchemaError("SyncUpdatesResult")
        return Payload(parse_sync_result(result))

    def get_file_locations(
        self,
        cookie: SessionCookie,
        update: Update,
        os: OSDescriptor,
        *,
        cancel_event: threading.Event | None = None,
    ) -> Payload:
        # The secured endpoint authenticates through the tickets token; it has
        # no cookie element.
        info_types = "".join(
            f"<XmlUpdateFragmentType>{t}</XmlUpdateFragmentType>" for t in _FILE_INFO_TYPES
        )
        body = (
            f'<GetExtendedUpdateInfo2 xmlns="{_WU_NS}">'
            "<updateIDs><UpdateIdentity>"
            f"<UpdateID>{escape(update.update_id)}</UpdateID>"
            f"<RevisionNumber>{update.revision_number}</RevisionNumber>"
            "</UpdateIdentity></updateIDs>"
            f"<infoTypes>{info_types}</infoTypes>"
            f"<deviceAttributes>{escape(device_attributes(os))}</deviceAttributes>"
            "</GetExtendedUpdateInfo2>"
        )
        root = self._call("GetExtendedUpdateInfo2", SECURED_URL, body, cancel_event)
        locations = [
            {
                "Url": loc.findtext(f"{_W}Url", ""),
                "FileDigest": loc.findtext(f"{_W}FileDigest", ""),
            }
            for loc in root.iterfind(f".//{_W}FileLocations/{_W}FileLocation")
        ]
        return Payload({"FileLocations": locations})

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _call(
        self, action: str, url: str, body: str, cancel_event: threading.Event | None
    ) -> ET.Element:
        envelope = build_envelope(action, url, body)
        log.debug("FE3 %s", action)
        response = self._http.request(
            "POST",
            url,
            data=envelope.encode("utf-8"),
            headers={"Content-Type": _CONTENT_TYPE, "User-Agent": UPDATE_USER_AGENT},
            cancel_event=cancel_event,
        )
        return parse_response(response)


# ---------------------------------------------------------------------------
# Envelope
# ---------------------------------------------------------------------------

def build_envelope(action: str, url: str, body: str, *, now: datetime | None = None) -> str:
    created = now or datetime.now(timezone.utc)
    expires = created + timedelta(minutes=5)
    return (
        f'<s:Envelope xmlns:a="http://www.w3.org/2005/08/addressing" xmlns:s="{_SOAP_NS}">'
        "<s:Header>"
        f'<a:Action s:mustUnderstand="1">{_ACTION_BASE}{action}</a:Action>'
        f"<a:MessageID>urn:uuid:{uuid.uuid4()}</a:MessageID>"
        f'<a:To s:mustUnderstand="1">{url}</a:To>'
        '<o:Security s:mustUnderstand="1" '
        'xmlns:o="http://docs.oasis-open.org/wss/2004/01/oasis-200401-wss-wssecurity-secext-1.0.xsd">'
        '<Timestamp xmlns="http://docs.oasis-open.org/wss/2004/01/oasis-200401-wss-wssecurity-utility-1.0.xsd">'
        f"<Created>{_timestamp(created)}</Created>"
        f"<Expires>{_timestamp(expires)}</Expires>"
        "</Timestamp>"
        '<wuws:WindowsUpdateTicketsToken wsu:id="ClientMSA" '
        'xmlns:wsu="http://docs.oasis-open.org/wss/2004/01/oasis-200401-wss-wssecurity-utility-1.0.xsd" '
        'xmlns:wuws="http://schemas.microsoft.com/msus/2014/10/WindowsUpdateAuthorization">'
        '<TicketType Name="AAD" Version="1.0" Policy="MBI_SSL"></TicketType>'
        "</wuws:WindowsUpdateTicketsToken>"
        "</o:Security>"
        "</s:Header>"
        f"<s:Body>{body}</s:Body>"
        "</s:Envelope>"
    )


def device_attributes(os: OSDescriptor) -> str:
    """The ``E:``-prefixed attribute string describing the requesting device."""
    attrs = {
        "BranchReadinessLevel": "CB",
        "CurrentBranch": os.branch,
        "OEMModel": "Virtual Machine",
        "FlightRing": os.flight_ring,
        "AttrDataVer": "21",
        "InstallLanguage": os.locale,
        "OSUILocale": os.locale,
        "InstallationType": "Client",
        "FlightingBranchName": os.flighting_branch_name,
        "OSSkuId": "48",
        "App": "WU_STORE",
        "ProcessorManufacturer": "GenuineIntel",
        "OSArchitecture": "AMD64",
        "IsFlightingEnabled": "0" if os.flight_ring.lower() == "retail" else "1",
        "TelemetryLevel": "1",
        "DefaultUserRegion": "244",
        "WuClientVer": str(os.os_version),
        "OSVersion": str(os.os_version),
        "DeviceFamily": os.device_family.platform_name,
    }
    return "E:" + "&".join(f"{k}={v}" for k, v in attrs.items())


def _timestamp(moment: datetime) -> str:
    return moment.strftime("%Y-%m-%dT%H:%M:%S.000Z")


def _cookie_xml(cookie: SessionCookie) -> str:
    return (
        "<cookie>"
        f"<Expiration>{escape(cookie.expiration)}</Expiration>"
        f"<EncryptedData>{escape(cookie.encrypted_data)}</EncryptedData>"
        "</cookie>"
    )


# ---------------------------------------------------------------------------
# Response parsing
# ---------------------------------------------------------------------------

def parse_response(response: HttpResponse) -> ET.Element:
    """Parse a SOAP response, raising ``UpstreamError`` for faults."""
    try:
        root = ET.fromstring(response.body)
    except ET.ParseError as exc:
        if not response.ok:
            raise UpstreamError(response.status, response.text().strip()) from exc
        raise SchemaError("<body>", f"Response is not valid XML: {exc}") from exc

    fault = root.find(f".//{_S}Fault")
    if fault is not None or not response.ok:
        reason = ""
        if fault is not None:
            reason = (
                fault.findtext(f"{_S}Reason/{_S}Text")
                or fault.findtext(f".//{_W}ErrorCode")
                or ""
            ).strip()
        raise UpstreamError(response.status, reason or response.text().strip())
    return root


def _cookie_tree(node: ET.Element | None) -> dict:
    if node is None:
        return {}
    return {
        "EncryptedData": node.findtext(f"{_W}EncryptedData", ""),
        "Expiration": node.findtext(f"{_W}Expiration", ""),
    }


def _fragment(text: str | None) -> ET.Element | None:
    """Parse the escaped, root-less XML fragment carried in an ``Xml`` element."""
    if not text:
        return None
    try:
        return ET.fromstring(f"<Xml>{text}</Xml>")
    except ET.ParseError as exc:
        log.warning("Skipping unparsable update fragment: %s", exc)
        return None


def parse_sync_result(result: ET.Element) -> dict:
    """Convert a ``SyncUpdatesResult`` element into the sync tree."""
    identities: dict[str, tuple[str, int]] = {}
    for info in result.iterfind(f"{_W}NewUpdates/{_W}UpdateInfo"):
        fragment = _fragment(info.findtext(f"{_W}Xml"))
        identity = fragment.find("UpdateIdentity") if fragment is not None else None
        if identity is None:
            continue
        identities[info.findtext(f"{_W}ID", "")] = (
            identity.get("UpdateID", ""),
            int(identity.get("RevisionNumber", "0") or 0),
        )

    updates = []
    for node in result.iterfind(f"{_W}ExtendedUpdateInfo/{_W}Updates/{_W}Update"):
        number = node.findtext(f"{_W}ID", "")
        if number not in identities:
            continue
        fragment = _fragment(node.findtext(f"{_W}Xml"))
        if fragment is None:
            continue
        update = _update_tree(fragment, *identities[number])
        if update is not None:
            updates.append(update)

    tree: dict = {"Updates": updates}
    new_cookie = result.find(f"{_W}NewCookie")
    if new_cookie is not None:
        tree["NewCookie"] = _cookie_tree(new_cookie)
    return tree


def _update_tree(fragment: ET.Element, update_id: str, revision: int) -> dict | None:
    files = fragment.findall("Files/File")
    appx = fragment.find(".//AppxMetadata")
    if not files or appx is None:
        # Non-leaf updates (category and prerequisite entries) carry no file.
        return None
    file = next((f for f in files if f.get("InstallerSpecificIdentifier")), files[0])
    moniker = appx.get("PackageMoniker") or file.get("InstallerSpecificIdentifier", "")
    identity, version = parse_moniker(moniker)
    return {
        "UpdateId": update_id,
        "RevisionNumber": revision,
        "Digest": file.get("Digest", ""),
        "Version": version,
        "FileName": file.get("FileName", ""),
        "IsFramework": (
            appx.get("IsAppxFramework", "").lower() == "true"
            or appx.get("PackageType", "").lower() == "framework"
        ),
        "PackageIdentityName": identity,
        "TargetPlatforms": target_platforms(appx.findtext(".//ApplicabilityBlob", "")),
    }


def parse_moniker(moniker: str) -> tuple[str, str]:
    """Split ``Name_1.2.3.4_arch_resource_publisher`` into identity and version."""
    parts = moniker.split("_")
    if len(parts) < 2:
        return moniker, ""
    return parts[0], parts[1]


def target_platforms(blob: str) -> list[dict]:
    """Read ``content.targetPlatforms`` from an applicability blob."""
    if not blob:
        return []
    try:
        payload = Payload.loads(blob)
    except ValueError as exc:
        log.warning("Ignoring unparsable applicability blob: %s", exc)
        return []
    platforms = []
    for entry in payload.array("content.targetPlatforms"):
        family = PLATFORM_TARGETS.get(entry.integer("platform.target", -1), DeviceFamily.UNKNOWN)
        try:
            min_version = Version.from_windows(entry.integer("platform.minVersion"))
        except ValueError:
            min_version = Version()
        platforms.append({"PlatformName": family.value, "MinVersion": str(min_version)})
    return platforms
