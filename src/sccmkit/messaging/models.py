"""
Protocol message and response types.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple, Union

from ..errors import InvalidRelayTargetError

MULTIPART_BOUNDARY = "aAbBcCdDv1234567890VxXyYzZ"
MULTIPART_CONTENT_TYPE = f'multipart/mixed; boundary="{MULTIPART_BOUNDARY}"'

# SHA256 with RSA
HASH_ALGORITHM_OID = "1.2.840.113549.1.1.11"


class MessageType(str, Enum):
    """Messages a client can send, with the server endpoint each targets."""
    REGISTRATION = "registration"
    DISCOVERY_RECORD = "discovery_record"
    POLICY_REQUEST = "policy_request"
    POLICY_BODY_REQUEST = "policy_body_request"
    CONTENT_LOCATION_REQUEST = "content_location_request"

    @property
    def target_endpoint(self) -> Optional[str]:
        return _TARGET_ENDPOINTS[self]

    @property
    def is_multipart(self) -> bool:
        return self is not MessageType.POLICY_BODY_REQUEST


_TARGET_ENDPOINTS = {
    MessageType.REGISTRATION: "MP_ClientRegistration",
    MessageType.DISCOVERY_RECORD: "MP_DdrEndpoint",
    MessageType.POLICY_REQUEST: "MP_PolicyManager",
    MessageType.POLICY_BODY_REQUEST: None,
    MessageType.CONTENT_LOCATION_REQUEST: "MP_LocationManager",
}

REQUEST_PATH = "/ccm_system/request"
AUTHENTICATED_REQUEST_PATH = "/ccm_system_windowsauth/request"
POLICY_BODY_PATH = "/SMS_MP/.sms_pol"

ENDPOINT_PATHS = {
    MessageType.REGISTRATION: REQUEST_PATH,
    MessageType.DISCOVERY_RECORD: REQUEST_PATH,
    MessageType.POLICY_REQUEST: REQUEST_PATH,
    MessageType.POLICY_BODY_REQUEST: POLICY_BODY_PATH,
    MessageType.CONTENT_LOCATION_REQUEST: REQUEST_PATH,
}

_RELAY_TARGET = re.compile(r"^(?P<host>[A-Za-z0-9_.\-]+)(?:@(?P<port>\d{1,5}))?$")


@dataclass(frozen=True)
class RelayTarget:
    """
    Host the management point is coerced to authenticate to.

    A non-default port is written host@port, the notation the server
    accepts as a NetBIOS name with a WebDAV port.
    """
    host: str
    port: Optional[int] = None

    @classmethod
    def parse(cls, value: str) -> "RelayTarget":
        match = _RELAY_TARGET.match(value.strip()) if value else None
        if not match:
            raise InvalidRelayTargetError(value or "")
        port = match.group("port")
        if port is not None and not 0 < int(port) < 65536:
            raise InvalidRelayTargetError(value)
        return cls(host=match.group("host"), port=int(port) if port else None)

    def __str__(self) -> str:
        return f"{self.host}@{self.port}" if self.port else self.host


@dataclass(frozen=True)
class ProtocolMessage:
    """
    A fully built, signed request.

    The message is immutable after signing: compressed_body holds exactly the
    bytes covered by the signature and exactly the bytes that are sent.
    """
    type: MessageType
    message_id: str
    sent_time: str
    source_token: Optional[str]
    source_host: str
    target_host: str
    site_code: Optional[str]
    header: str = ""
    body: bytes = b""
    compressed_body: bytes = b""
    signature: Optional[bytes] = None
    path: str = REQUEST_PATH
    http_headers: Mapping[str, str] = field(default_factory=dict)
    relay_target: Optional[RelayTarget] = None
    authenticated: bool = False

    @property
    def method(self) -> str:
        return "CCM_POST" if self.type.is_multipart else "GET"

    def encode(self) -> bytes:
        """Render the multipart/mixed frame sent to the management point."""
        if not self.type.is_multipart:
            return b""
        return (
            f"--{MULTIPART_BOUNDARY}\r\ncontent-type: text/plain; charset=UTF-16\r\n\r\n".encode("ascii")
            + self.header.encode("utf-16")
            + b"\r\n"
            + f"--{MULTIPART_BOUNDARY}\r\ncontent-type: application/octet-stream\r\n\r\n".encode("ascii")
            + self.compressed_body
            + b"\r\n"
            + f"--{MULTIPART_BOUNDARY}--\r\n".encode("ascii")
        )


@dataclass(frozen=True)
class RegistrationReply:
    client_token: str
    attributes: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class PolicyReply:
    document: str


@dataclass(frozen=True)
class PolicyBody:
    content: bytes


@dataclass(frozen=True)
class ContentLocation:
    server: str
    url: Optional[str] = None
    locality: Optional[str] = None
    site_code: Optional[str] = None


@dataclass(frozen=True)
class ContentLocationReply:
    locations: Tuple[ContentLocation, ...] = ()


@dataclass(frozen=True)
class Acknowledgment:
    accepted: bool


ResponsePayload = Union[RegistrationReply, PolicyReply, PolicyBody, ContentLocationReply, Acknowledgment]


@dataclass(frozen=True)
class ServerResponse:
    status: int
    raw_body: bytes
    payload: ResponsePayload
    headers: Dict[str, Any] = field(default_factory=dict)
