"""
Message Codec - Build and Parse Management Point Messages

Requests are XML documents encoded as NUL-terminated UTF-16LE, zlib
compressed and framed as multipart/mixed together with a "Msg" routing
header. Each document is serialized exactly once; the signature is computed
over the serialized bytes and those bytes are sent unchanged.

Usage:
    codec = MessageCodec()
    message = codec.build_message(
        MessageType.POLICY_REQUEST,
        PolicyRequestParams(client_name="WS01"),
        identity,
        target_host="mp01.corp.local",
    )
"""

import uuid
import xml.etree.ElementTree as ET
import zlib
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Tuple, Union

from requests_toolbelt.multipart.decoder import (
    ImproperBodyPartContentException,
    MultipartDecoder,
    NonMultipartContentTypeException,
)

from ..errors import (
    ClientTokenError,
    EmptyResponseError,
    InvalidArgumentCombinationError,
    MalformedResponseError,
)
from ..identity.provider import ClientIdentity, normalize_client_token
from ..logging import get_logger
from ..utils.config import SccmSettings, settings as default_settings
from .models import (
    AUTHENTICATED_REQUEST_PATH,
    ENDPOINT_PATHS,
    HASH_ALGORITHM_OID,
    MULTIPART_CONTENT_TYPE,
    Acknowledgment,
    ContentLocation,
    ContentLocationReply,
    MessageType,
    PolicyBody,
    PolicyReply,
    ProtocolMessage,
    RegistrationReply,
    RelayTarget,
    ResponsePayload,
    ServerResponse,
)
from .signer import sign, sign_client_token, sign_text

logger = get_logger(__name__)

NULL_CORRELATION_ID = "{00000000-0000-0000-0000-000000000000}"
DISCOVERY_ACTION_ID = "{00000000-0000-0000-0000-000000000003}"
MESSAGE_TIMEOUT_MS = "60000"


# =============================================================================
# Per-type parameters
# =============================================================================


@dataclass(frozen=True)
class RegistrationParams:
    client_name: str
    client_fqdn: Optional[str] = None
    authenticated: bool = False


@dataclass(frozen=True)
class DiscoveryParams:
    client_name: str
    domain: Optional[str] = None
    ip_addresses: Tuple[str, ...] = ()
    relay_target: Optional[RelayTarget] = None
    ad_site: str = "Default-First-Site-Name"


@dataclass(frozen=True)
class PolicyRequestParams:
    client_name: str
    client_fqdn: Optional[str] = None
    resource_type: str = "Machine"
    user_sid: Optional[str] = None


@dataclass(frozen=True)
class PolicyBodyParams:
    location: str


@dataclass(frozen=True)
class ContentLocationParams:
    package_id: str
    package_version: int
    client_name: str
    domain: str = ""
    ad_site: str = "Default-First-Site-Name"
    ip_address: Optional[str] = None
    subnet: Optional[str] = None


MessageParams = Union[
    RegistrationParams, DiscoveryParams, PolicyRequestParams, PolicyBodyParams, ContentLocationParams
]

_PARAMS_FOR_TYPE = {
    MessageType.REGISTRATION: RegistrationParams,
    MessageType.DISCOVERY_RECORD: DiscoveryParams,
    MessageType.POLICY_REQUEST: PolicyRequestParams,
    MessageType.POLICY_BODY_REQUEST: PolicyBodyParams,
    MessageType.CONTENT_LOCATION_REQUEST: ContentLocationParams,
}

_EXPECTED_ROOTS = {
    MessageType.REGISTRATION: "ClientRegistrationResponse",
    MessageType.POLICY_REQUEST: "ReplyAssignments",
    MessageType.CONTENT_LOCATION_REQUEST: "ContentLocationReply",
}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _xml(element: ET.Element) -> str:
    return ET.tostring(element, encoding="unicode")


def _sub(parent: ET.Element, tag: str, text: Optional[str] = None, **attrib: str) -> ET.Element:
    child = ET.SubElement(parent, tag, attrib)
    if text is not None:
        child.text = text
    return child


def encode_payload(document: str) -> bytes:
    """NUL-terminated UTF-16LE document followed by the CRLF part delimiter."""
    return (document + "\x00").encode("utf-16-le") + b"\r\n"


class MessageCodec:
    """
    Build signed protocol messages and parse management point replies.
    """

    def __init__(
        self,
        settings: Optional[SccmSettings] = None,
        clock: Callable[[], datetime] = _utc_now,
    ):
        self.settings = settings or default_settings
        self.clock = clock

    # -------------------------------------------------------------------------
    # Building
    # -------------------------------------------------------------------------

    def build_message(
        self,
        message_type: MessageType,
        params: MessageParams,
        identity: ClientIdentity,
        target_host: Optional[str] = None,
    ) -> ProtocolMessage:
        """
        Build a ready-to-send message of the given type.

        Args:
            message_type: Kind of request
            params: Parameters dataclass matching message_type
            identity: Signing identity; every type except registration
                requires a bound client token
            target_host: Management point named in the routing header

        Raises:
            InvalidArgumentCombinationError: params do not match message_type
            ClientTokenError: identity is unregistered where a token is needed
        """
        expected = _PARAMS_FOR_TYPE[message_type]
        if not isinstance(params, expected):
            raise InvalidArgumentCombinationError(
                f"{message_type.value} requires {expected.__name__}, got {type(params).__name__}"
            )
        if message_type is not MessageType.REGISTRATION:
            identity.require_token()

        host = target_host or self.settings.MANAGEMENT_POINT or ""
        now = self.clock().strftime("%Y-%m-%dT%H:%M:%SZ")
        message_id = "{" + str(uuid.uuid4()).upper() + "}"

        if message_type is MessageType.POLICY_BODY_REQUEST:
            return self._policy_body_request(params, identity, host, now, message_id)

        if message_type is MessageType.REGISTRATION:
            document = self._registration_body(params, identity, now)
            source_host = params.client_name
        elif message_type is MessageType.DISCOVERY_RECORD:
            document = self._discovery_body(params, identity, now)
            source_host = str(params.relay_target) if params.relay_target else params.client_name
        elif message_type is MessageType.POLICY_REQUEST:
            document = self._policy_request_body(params, identity)
            source_host = params.client_name
        else:
            document = self._content_location_body(params)
            source_host = params.client_name

        body = encode_payload(document)
        compressed = zlib.compress(body)
        signature = None
        hooks: Optional[Dict[str, str]] = None
        if message_type is not MessageType.REGISTRATION:
            signature = sign(identity.private_key, compressed)
            hooks = {
                "AuthSenderMachine": source_host,
                "PublicKey": identity.public_key_blob_hex,
                "ClientIDSignature": sign_text(identity.private_key, identity.client_token),
                "PayloadSignature": signature.hex().upper(),
                "ClientCapabilities": "NonSSL",
                "HashAlgorithm": HASH_ALGORITHM_OID,
            }

        header = self._header(
            message_type,
            message_id=message_id,
            sent_time=now,
            body_length=len(body) - 2,
            source_host=source_host,
            target_host=host,
            source_token=identity.client_token,
            client_auth=hooks,
        )

        authenticated = isinstance(params, RegistrationParams) and params.authenticated
        relay_target = params.relay_target if isinstance(params, DiscoveryParams) else None
        logger.debug(f"Built {message_type.value} message {message_id}")
        return ProtocolMessage(
            type=message_type,
            message_id=message_id,
            sent_time=now,
            source_token=identity.client_token,
            source_host=source_host,
            target_host=host,
            site_code=self.settings.SITE_CODE,
            header=header,
            body=body,
            compressed_body=compressed,
            signature=signature,
            path=AUTHENTICATED_REQUEST_PATH if authenticated else ENDPOINT_PATHS[message_type],
            http_headers={"Content-Type": MULTIPART_CONTENT_TYPE},
            relay_target=relay_target,
            authenticated=authenticated,
        )

    def _header(
        self,
        message_type: MessageType,
        message_id: str,
        sent_time: str,
        body_length: int,
        source_host: str,
        target_host: str,
        source_token: Optional[str],
        client_auth: Optional[Dict[str, str]],
    ) -> str:
        msg = ET.Element("Msg", {"ReplyCompression": "zlib", "SchemaVersion": "1.1"})
        _sub(msg, "Body", Type="ByteRange", Length=str(body_length), Offset="0")
        _sub(msg, "CorrelationID", NULL_CORRELATION_ID)
        hooks = _sub(msg, "Hooks")
        if client_auth:
            hook = _sub(hooks, "Hook2", Name="clientauth")
            for name, value in client_auth.items():
                _sub(hook, "Property", value, Name=name)
        _sub(hooks, "Hook3", Name="zlib-compress")
        _sub(msg, "ID", message_id)
        _sub(msg, "Payload", Type="inline")
        _sub(msg, "Priority", "0")
        _sub(msg, "Protocol", "http")
        _sub(msg, "ReplyMode", "Sync")
        _sub(msg, "ReplyTo", f"direct:{source_host}:SccmMessaging")
        _sub(msg, "SentTime", sent_time)
        if source_token:
            _sub(msg, "SourceID", source_token)
        _sub(msg, "SourceHost", source_host)
        _sub(msg, "TargetAddress", f"mp:{message_type.target_endpoint}")
        _sub(msg, "TargetEndpoint", message_type.target_endpoint)
        _sub(msg, "TargetHost", target_host)
        _sub(msg, "Timeout", MESSAGE_TIMEOUT_MS)
        return _xml(msg)

    def _registration_body(self, params: RegistrationParams, identity: ClientIdentity, now: str) -> str:
        data = ET.Element(
            "Data",
            {"HashAlgorithm": HASH_ALGORITHM_OID, "SMSID": "", "RequestType": "Registration", "TimeStamp": now},
        )
        _sub(
            data,
            "AgentInformation",
            AgentIdentity=self.settings.AGENT_IDENTITY,
            AgentVersion=self.settings.CLIENT_VERSION,
            AgentType="0",
        )
        certificates = _sub(data, "Certificates")
        der_hex = identity.certificate_der_hex
        _sub(certificates, "Encryption", der_hex, Encoding="HexBinary", KeyType="1")
        _sub(certificates, "Signing", der_hex, Encoding="HexBinary", KeyType="1")
        discovery = _sub(data, "DiscoveryProperties")
        _sub(discovery, "Property", Name="Netbios Name", Value=params.client_name)
        _sub(discovery, "Property", Name="FQ Name", Value=params.client_fqdn or params.client_name)
        _sub(discovery, "Property", Name="Locale ID", Value=str(self.settings.LOCALE_ID))
        _sub(discovery, "Property", Name="InternetFlag", Value="0")

        # Data is signed as serialized and embedded verbatim
        data_xml = _xml(data)
        signature = sign(identity.private_key, data_xml.encode("utf-16-le")).hex().upper()
        return (
            f"<ClientRegistrationRequest>{data_xml}"
            f"<Signature><SignatureValue>{signature}</SignatureValue></Signature>"
            f"</ClientRegistrationRequest>"
        )

    def _discovery_body(self, params: DiscoveryParams, identity: ClientIdentity, now: str) -> str:
        netbios_name = str(params.relay_target) if params.relay_target else params.client_name
        addresses = list(params.ip_addresses)
        if params.relay_target and params.relay_target.host not in addresses:
            addresses.insert(0, params.relay_target.host)

        report = ET.Element("Report")
        header = _sub(report, "ReportHeader")
        machine = _sub(_sub(header, "Identification"), "Machine")
        _sub(machine, "ClientInstalled", "0")
        _sub(machine, "ClientType", "1")
        _sub(machine, "ClientID", identity.client_token)
        _sub(machine, "ClientVersion", self.settings.CLIENT_VERSION)
        _sub(machine, "NetBIOSName", netbios_name)
        _sub(machine, "CodePage", str(self.settings.CODE_PAGE))
        _sub(machine, "SystemDefaultLCID", str(self.settings.LOCALE_ID))
        _sub(machine, "Priority")
        details = _sub(header, "ReportDetails")
        _sub(details, "ReportContent", "Inventory Data")
        _sub(details, "ReportType", "Full")
        _sub(details, "Date", now)
        _sub(details, "Version", "1.0")
        _sub(details, "Format", "1.1")
        action = _sub(header, "InventoryAction", ActionType="Predefined")
        _sub(action, "InventoryActionID", DISCOVERY_ACTION_ID)
        _sub(action, "Description", "Discovery")
        _sub(action, "InventoryActionLastUpdateTime", now)

        body = _sub(report, "ReportBody")
        discovery = _sub(
            body,
            "Instance",
            ParentClass="CCM_DiscoveryData",
            Class="CCM_DiscoveryData",
            Namespace=f"\\\\{netbios_name}\\ROOT\\ccm",
            Content="New",
        )
        data = _sub(discovery, "CCM_DiscoveryData")
        _sub(data, "PlatformID", "Microsoft Windows NT Workstation 10.0")
        _sub(data, "NetBIOSName", netbios_name)
        if params.domain:
            _sub(data, "ResourceDomainORWorkgroup", params.domain)
        _sub(data, "ADSiteName", params.ad_site)
        for address in addresses:
            adapter = _sub(
                body,
                "Instance",
                ParentClass="CCM_NetworkAdapterConfiguration",
                Class="CCM_NetworkAdapterConfiguration",
                Namespace=f"\\\\{netbios_name}\\ROOT\\cimv2",
                Content="New",
            )
            _sub(_sub(adapter, "CCM_NetworkAdapterConfiguration"), "IPAddress", address)
        return _xml(report)

    def _policy_request_body(self, params: PolicyRequestParams, identity: ClientIdentity) -> str:
        resource_type = params.resource_type.capitalize()
        if resource_type not in ("Machine", "User"):
            raise InvalidArgumentCombinationError(f"unknown policy resource type {params.resource_type}")
        if resource_type == "User" and not params.user_sid:
            raise InvalidArgumentCombinationError("user policy requests need a user SID")

        request = ET.Element(
            "RequestAssignments", {"SchemaVersion": "1.00", "ACK": "false", "RequestType": "Always"}
        )
        identification = _sub(request, "Identification")
        machine = _sub(identification, "Machine")
        _sub(machine, "ClientID", identity.client_token)
        _sub(machine, "FQDN", params.client_fqdn or params.client_name)
        _sub(machine, "NetBIOSName", params.client_name)
        _sub(machine, "SID")
        user = _sub(identification, "User")
        if params.user_sid:
            _sub(user, "UserSID", params.user_sid)
        _sub(request, "PolicySource", f"SMS:{self.settings.SITE_CODE or ''}")
        _sub(request, "Resource", ResourceType=resource_type)
        _sub(request, "ServerCookie")
        return _xml(request)

    def _content_location_body(self, params: ContentLocationParams) -> str:
        request = ET.Element("ContentLocationRequest", {"SchemaVersion": "1.00"})
        _sub(request, "Package", ID=params.package_id, Version=str(params.package_version))
        _sub(request, "AssignedSite", SiteCode=self.settings.SITE_CODE or "")
        info = _sub(
            request,
            "ClientLocationInfo",
            LocationType="SMSPACKAGE",
            DistributeOnDemand="0",
            UseProtected="0",
            AllowCaching="0",
            BranchDPFlags="0",
            AllowHTTP="1",
            AllowSMB="0",
            AllowMulticast="0",
            UseAzure="1",
            DPTokenAuth="1",
            UseInternetDP="0",
        )
        _sub(info, "ADSite", Name=params.ad_site)
        _sub(info, "Forest", Name=params.domain)
        _sub(info, "Domain", Name=params.domain)
        addresses = _sub(info, "IPAddresses")
        if params.ip_address:
            _sub(addresses, "IPAddress", SubnetAddress=params.subnet or "", Address=params.ip_address)
        return _xml(request)

    def _policy_body_request(
        self,
        params: PolicyBodyParams,
        identity: ClientIdentity,
        host: str,
        now: str,
        message_id: str,
    ) -> ProtocolMessage:
        path = policy_body_path(params.location)
        token, signature_hex = sign_client_token(identity, self.clock())
        return ProtocolMessage(
            type=MessageType.POLICY_BODY_REQUEST,
            message_id=message_id,
            sent_time=now,
            source_token=identity.client_token,
            source_host="",
            target_host=host,
            site_code=self.settings.SITE_CODE,
            signature=bytes.fromhex(signature_hex),
            path=path,
            http_headers={"ClientToken": token, "ClientTokenSignature": signature_hex},
        )

    # -------------------------------------------------------------------------
    # Parsing
    # -------------------------------------------------------------------------

    def parse_response(
        self,
        raw: bytes,
        expected_type: MessageType,
        content_type: Optional[str] = None,
        status: int = 200,
        request_id: Optional[str] = None,
    ) -> ServerResponse:
        """
        Decode a reply into the payload variant for expected_type.

        Raises:
            EmptyResponseError: the reply carries no payload
            MalformedResponseError: the reply cannot be decoded or validated
        """
        payload = self._decode_payload(raw, expected_type, content_type, request_id)
        return ServerResponse(status=status, raw_body=raw, payload=payload)

    def _decode_payload(
        self,
        raw: bytes,
        expected_type: MessageType,
        content_type: Optional[str],
        request_id: Optional[str],
    ) -> ResponsePayload:
        if not raw or not raw.strip(b"\x00\r\n "):
            if expected_type is MessageType.DISCOVERY_RECORD:
                return Acknowledgment(accepted=True)
            raise EmptyResponseError(expected_type.value, request_id=request_id)

        if expected_type is MessageType.POLICY_BODY_REQUEST:
            return PolicyBody(content=raw)

        document = _decode_reply(raw, content_type or MULTIPART_CONTENT_TYPE, expected_type, request_id)
        if expected_type is MessageType.DISCOVERY_RECORD:
            return Acknowledgment(accepted=True)

        root = _parse_document(document, expected_type, request_id)
        expected_root = _EXPECTED_ROOTS[expected_type]
        if _local_name(root.tag) != expected_root:
            raise MalformedResponseError(
                f"expected <{expected_root}>, got <{_local_name(root.tag)}>",
                expected_type=expected_type.value,
                request_id=request_id,
            )

        if expected_type is MessageType.REGISTRATION:
            return _registration_reply(root, request_id)
        if expected_type is MessageType.POLICY_REQUEST:
            return PolicyReply(document=document)
        return _content_location_reply(root)


def policy_body_path(location: str) -> str:
    """Reduce a PolicyLocation URL ("http://<mp>/SMS_MP/.sms_pol?...") to its path and query."""
    value = location.strip()
    if "://" in value:
        value = value.split("://", 1)[1]
        value = value[value.find("/"):] if "/" in value else "/"
    if not value.startswith("/"):
        value = "/" + value
    return value


def decode_utf16(data: bytes) -> str:
    """Decode UTF-16 text with or without a BOM and drop NUL terminators."""
    if data[:2] in (b"\xff\xfe", b"\xfe\xff"):
        text = data.decode("utf-16")
    else:
        text = data.decode("utf-16-le")
    return text.rstrip("\x00\r\n").lstrip("\ufeff")


def _decode_reply(
    raw: bytes, content_type: str, expected_type: MessageType, request_id: Optional[str]
) -> str:
    try:
        if "multipart" not in content_type.lower():
            return decode_utf16(_inflate_if_compressed(raw))

        if "boundary=" not in content_type.lower():
            raise MalformedResponseError(
                "multipart reply declares no boundary", expected_type=expected_type.value, request_id=request_id
            )
        parts = MultipartDecoder(raw, content_type).parts
        body: Optional[bytes] = None
        for index, part in enumerate(parts):
            part_type = part.headers.get(b"content-type", b"").lower()
            if part_type.startswith(b"application/octet-stream"):
                body = zlib.decompress(part.content)
                break
            if index > 0 and body is None:
                body = part.content
    except (ImproperBodyPartContentException, NonMultipartContentTypeException, zlib.error, UnicodeDecodeError) as e:
        raise MalformedResponseError(
            "reply frame could not be decoded", expected_type=expected_type.value, request_id=request_id
        ) from e

    if body is None or not body.strip(b"\x00"):
        raise EmptyResponseError(expected_type.value, request_id=request_id)
    try:
        return decode_utf16(body)
    except UnicodeDecodeError as e:
        raise MalformedResponseError(
            "reply body is not UTF-16", expected_type=expected_type.value, request_id=request_id
        ) from e


def _inflate_if_compressed(data: bytes) -> bytes:
    # zlib streams start with 0x78
    if data[:1] == b"\x78":
        return zlib.decompress(data)
    return data


def _parse_document(document: str, expected_type: MessageType, request_id: Optional[str]) -> ET.Element:
    try:
        return ET.fromstring(document.replace("\x00", ""))
    except ET.ParseError as e:
        raise MalformedResponseError(
            "reply is not well-formed XML", expected_type=expected_type.value, request_id=request_id
        ) from e


def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _registration_reply(root: ET.Element, request_id: Optional[str]) -> RegistrationReply:
    sms_id = root.get("SMSID")
    if not sms_id:
        raise MalformedResponseError(
            "registration reply has no SMSID", expected_type=MessageType.REGISTRATION.value, request_id=request_id
        )
    try:
        token = normalize_client_token(sms_id)
    except ClientTokenError as e:
        raise MalformedResponseError(
            "registration reply SMSID is not a GUID",
            expected_type=MessageType.REGISTRATION.value,
            request_id=request_id,
        ) from e
    return RegistrationReply(client_token=token, attributes=dict(root.attrib))


def _content_location_reply(root: ET.Element) -> ContentLocationReply:
    locations: List[ContentLocation] = []
    for site in root.iter("Site"):
        mp_site = site.find("MPSite")
        site_code = mp_site.get("SiteCode") if mp_site is not None else None
        for record in site.iter("LocationRecord"):
            locations.append(_location(record, site_code))
    if not locations:
        locations = [_location(record, None) for record in root.iter("LocationRecord")]
    return ContentLocationReply(locations=tuple(loc for loc in locations if loc.server or loc.url))


def _location(record: ET.Element, site_code: Optional[str]) -> ContentLocation:
    url = record.find("URL")
    return ContentLocation(
        server=(record.findtext("ServerRemoteName") or "").strip(),
        url=url.get("Name") if url is not None else None,
        locality=record.findtext("Locality"),
        site_code=site_code,
    )
