"""
Policy Resolver - Assignments, Bodies and Protected Values

Turns a policy assignment reply into PolicyAssignment records, downloads
individual policy bodies, and locates every protected value inside them.

Usage:
    resolver = PolicyResolver(transport, "mp01.corp.local")
    assignments = resolver.request_assignments(identity, PolicyRequestParams("WS01"))
    for assignment in select_secret_assignments(assignments):
        body = resolver.fetch_body(assignment, identity)
        blobs = resolver.extract_secrets(body)
"""

import re
import xml.etree.ElementTree as ET
from typing import Iterator, List, Optional, Union

from ..errors import MalformedResponseError
from ..identity.provider import ClientIdentity
from ..logging import get_logger
from ..messaging.codec import MessageCodec, PolicyBodyParams, PolicyRequestParams, decode_utf16
from ..messaging.models import MessageType, PolicyBody, PolicyReply, ServerResponse
from ..messaging.signer import unwrap_policy_body, verify_policy_hash
from ..messaging.transport import Transport
from .models import SECRET_CLASSES, PolicyAssignment, ProtectionContext, SecretBlob

logger = get_logger(__name__)

# Policy categories whose bodies can carry protected values
SECRET_CATEGORIES = frozenset({"NAAConfig", "TaskSequence", "CollectionSettings"})

# Non-secret property naming an instance, where the class has one
LABEL_PROPERTIES = {
    "CCM_CollectionVariable": "Name",
    "CCM_TaskSequence": "PKG_Name",
}

_XML_DECLARATION = re.compile(r"^\s*<\?xml[^>]*\?>")
_HEX = re.compile(r"^[0-9A-Fa-f]+$")


def select_secret_assignments(assignments: List[PolicyAssignment]) -> List[PolicyAssignment]:
    """Assignments in categories that can carry protected values."""
    return [a for a in assignments if a.category in SECRET_CATEGORIES and a.has_body]


def decode_policy_document(raw: bytes) -> str:
    """Decode a policy body delivered as UTF-16 (with or without BOM) or UTF-8."""
    try:
        if raw[:2] in (b"\xff\xfe", b"\xfe\xff") or (len(raw) > 1 and raw[1] == 0):
            text = decode_utf16(raw)
        else:
            if raw[:3] == b"\xef\xbb\xbf":
                raw = raw[3:]
            text = raw.decode("utf-8").rstrip("\x00")
    except UnicodeDecodeError as e:
        raise MalformedResponseError("policy body is not text", expected_type="policy_body_request") from e
    return _XML_DECLARATION.sub("", text, count=1)


def parse_assignments(document: str) -> List[PolicyAssignment]:
    """Parse a ReplyAssignments document into assignment records."""
    try:
        root = ET.fromstring(_XML_DECLARATION.sub("", document, count=1))
    except ET.ParseError as e:
        raise MalformedResponseError("assignment reply is not well-formed XML", expected_type="policy_request") from e

    assignments: List[PolicyAssignment] = []
    for assignment in root.iter("PolicyAssignment"):
        assignment_id = assignment.get("PolicyAssignmentID", "")
        for policy in assignment.iter("Policy"):
            policy_id = policy.get("PolicyID")
            if not policy_id:
                raise MalformedResponseError(
                    f"assignment {assignment_id} has a policy without PolicyID", expected_type="policy_request"
                )
            location = policy.find("PolicyLocation")
            known = {"PolicyID", "PolicyVersion", "PolicyCategory", "PolicyType"}
            assignments.append(
                PolicyAssignment(
                    name=assignment_id,
                    policy_id=policy_id,
                    policy_version=policy.get("PolicyVersion", ""),
                    category=policy.get("PolicyCategory"),
                    policy_type=policy.get("PolicyType"),
                    target_collection=policy.get("CollectionID") or assignment.get("CollectionID"),
                    location=(location.text or "").strip() if location is not None else None,
                    policy_hash=location.get("PolicyHash") if location is not None else None,
                    flags={k: v for k, v in policy.attrib.items() if k not in known},
                )
            )
    return assignments


def extract_secrets(raw_body: bytes, source: Optional[str] = None) -> List[SecretBlob]:
    """
    Locate every protected property of a secret-bearing class in a policy body.

    Returns one SecretBlob per property marked secret="1", in document order.
    """
    document = decode_policy_document(raw_body)
    try:
        root = ET.fromstring(document)
    except ET.ParseError as e:
        raise MalformedResponseError("policy body is not well-formed XML", expected_type="policy_body_request") from e

    blobs: List[SecretBlob] = []
    seen = {name: 0 for name in SECRET_CLASSES}
    for instance in _instances(root):
        class_name = instance.get("class")
        if class_name not in SECRET_CLASSES:
            continue
        index = seen[class_name]
        seen[class_name] += 1

        properties = list(instance.iter("property"))
        label = None
        label_property = LABEL_PROPERTIES.get(class_name)
        for prop in properties:
            if prop.get("name") == label_property and prop.get("secret") != "1":
                label = (prop.findtext("value") or "").strip() or None

        for prop in properties:
            if prop.get("secret") != "1":
                continue
            value = (prop.findtext("value") or "").strip()
            if _HEX.match(value) and len(value) % 2 == 0:
                ciphertext = bytes.fromhex(value)
            else:
                logger.warning(f"{class_name}.{prop.get('name')} is not hex encoded")
                ciphertext = value.encode("utf-8")
            blobs.append(
                SecretBlob(
                    context=ProtectionContext.POLICY,
                    ciphertext=ciphertext,
                    origin=SECRET_CLASSES[class_name],
                    name=prop.get("name", ""),
                    instance=class_name,
                    instance_index=index,
                    label=label,
                    source=source,
                )
            )

    logger.debug(f"Found {len(blobs)} protected values")
    return blobs


def _instances(root: ET.Element) -> Iterator[ET.Element]:
    """Yield instance elements, including instances embedded as escaped text."""
    for element in root.iter():
        if element.tag == "instance":
            yield element
        elif element.text and "<instance" in element.text:
            try:
                fragment = ET.fromstring(f"<embedded>{element.text.strip()}</embedded>")
            except ET.ParseError:
                logger.warning(f"Unparseable instance text inside <{element.tag}>")
                continue
            yield from _instances(fragment)


class PolicyResolver:
    """
    Resolve assignments and fetch policy bodies from a management point.
    """

    def __init__(
        self,
        transport: Transport,
        management_point: str,
        port: Optional[int] = None,
        codec: Optional[MessageCodec] = None,
    ):
        self.transport = transport
        self.management_point = management_point
        self.port = port
        self.codec = codec or transport.codec

    def list_assignments(self, policy_response: Union[ServerResponse, PolicyReply, str]) -> List[PolicyAssignment]:
        if isinstance(policy_response, ServerResponse):
            policy_response = policy_response.payload
        if isinstance(policy_response, PolicyReply):
            policy_response = policy_response.document
        if not isinstance(policy_response, str):
            raise MalformedResponseError("not a policy assignment reply", expected_type="policy_request")
        assignments = parse_assignments(policy_response)
        logger.info(f"Resolved {len(assignments)} policy assignments")
        return assignments

    def request_assignments(self, identity: ClientIdentity, params: PolicyRequestParams) -> List[PolicyAssignment]:
        message = self.codec.build_message(
            MessageType.POLICY_REQUEST, params, identity, target_host=self.management_point
        )
        response = self.transport.send(message, self.management_point, self.port)
        return self.list_assignments(response)

    def fetch_body(self, assignment: PolicyAssignment, identity: ClientIdentity) -> bytes:
        """
        Download one policy body and unwrap its envelope.

        Raises:
            MalformedResponseError: assignment has no location or body is unreadable
            TransportError: download failed
        """
        if not assignment.location:
            raise MalformedResponseError(f"policy {assignment.policy_id} has no body location")
        location = assignment.location.replace("<mp>", self.management_point)
        message = self.codec.build_message(
            MessageType.POLICY_BODY_REQUEST,
            PolicyBodyParams(location=location),
            identity,
            target_host=self.management_point,
        )
        response = self.transport.send(message, self.management_point, self.port)
        if not isinstance(response.payload, PolicyBody):
            raise MalformedResponseError("policy body reply has no content", expected_type="policy_body_request")

        raw = response.payload.content
        verify_policy_hash(raw, assignment.policy_hash)
        body = unwrap_policy_body(raw, identity)
        logger.info(f"Fetched policy {assignment.policy_id} ({assignment.category})")
        return body

    def extract_secrets(self, raw_body: bytes, source: Optional[str] = None) -> List[SecretBlob]:
        return extract_secrets(raw_body, source=source)
