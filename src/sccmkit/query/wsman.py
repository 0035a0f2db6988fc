"""
WS-Management backend for ObjectQuery.

Queries are sent as WQL-filtered Enumerate requests followed by Pull
requests until the server reports the end of the sequence. Methods are
invoked with the class resource URI as action prefix.

Usage:
    query = WsManObjectQuery("site01.corp.local", r"root\\sms\\site_PS1", auth=("CORP\\admin", "..."))
    members = query.query("SMS_FullCollectionMembership", where="CollectionID = 'PS100020'")
"""

import uuid
import xml.etree.ElementTree as ET
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from ..errors import ObjectQueryError, TransportError
from ..logging import get_logger
from ..utils.config import SccmSettings, settings as default_settings
from ..utils.http import StandardClient
from .base import build_wql

logger = get_logger(__name__)

SOAP_NS = "http://www.w3.org/2003/05/soap-envelope"
ADDRESSING_NS = "http://schemas.xmlsoap.org/ws/2004/08/addressing"
WSMAN_NS = "http://schemas.dmtf.org/wbem/wsman/1/wsman.xsd"
ENUMERATION_NS = "http://schemas.xmlsoap.org/ws/2004/09/enumeration"
MS_WSMAN_NS = "http://schemas.microsoft.com/wbem/wsman/1/wsman.xsd"
XSI_NS = "http://www.w3.org/2001/XMLSchema-instance"
XML_NS = "http://www.w3.org/XML/1998/namespace"

NS = {"s": SOAP_NS, "a": ADDRESSING_NS, "w": WSMAN_NS, "n": ENUMERATION_NS, "p": MS_WSMAN_NS}
for _prefix, _uri in NS.items():
    ET.register_namespace(_prefix, _uri)
ET.register_namespace("xsi", XSI_NS)

ACTION_ENUMERATE = f"{ENUMERATION_NS}/Enumerate"
ACTION_PULL = f"{ENUMERATION_NS}/Pull"
ANONYMOUS = f"{ADDRESSING_NS}/role/anonymous"
WQL_DIALECT = "http://schemas.microsoft.com/wbem/wsman/1/WQL"
WMI_RESOURCE_BASE = "http://schemas.microsoft.com/wbem/wsman/1/wmi"

WSMAN_PATH = "/wsman"
MAX_ENVELOPE_SIZE = 512000
OPERATION_TIMEOUT = "PT60S"


def resource_uri(namespace: str, class_name: str = "*") -> str:
    path = namespace.replace("\\", "/").strip("/")
    return f"{WMI_RESOURCE_BASE}/{path}/{class_name}"


def _q(prefix: str, name: str) -> str:
    return f"{{{NS[prefix]}}}{name}"


def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _instance_to_dict(element: ET.Element) -> Dict[str, Any]:
    """Flatten one returned instance; repeated properties become lists."""
    result: Dict[str, Any] = {}
    for child in element:
        name = _local_name(child.tag)
        if child.get(f"{{{XSI_NS}}}nil") == "true":
            value: Any = None
        elif len(child):
            value = _instance_to_dict(child)
        else:
            value = child.text or ""
        if name in result:
            if not isinstance(result[name], list):
                result[name] = [result[name]]
            result[name].append(value)
        else:
            result[name] = value
    return result


def _fault_reason(root: ET.Element) -> Optional[str]:
    fault = root.find("s:Body/s:Fault", NS)
    if fault is None:
        return None
    message = fault.find(".//{http://schemas.microsoft.com/wbem/wsman/1/wsmanfault}Message")
    if message is not None and "".join(message.itertext()).strip():
        return "".join(message.itertext()).strip()
    reason = fault.findtext("s:Reason/s:Text", default="", namespaces=NS).strip()
    return reason or "SOAP fault"


class WsManObjectQuery:
    """ObjectQuery over WinRM."""

    def __init__(
        self,
        host: str,
        namespace: str,
        auth: Any = None,
        port: Optional[int] = None,
        use_https: Optional[bool] = None,
        settings: Optional[SccmSettings] = None,
        client: Optional[StandardClient] = None,
    ):
        self.settings = settings or default_settings
        self.host = host
        self.namespace = namespace
        use_https = self.settings.WSMAN_USE_HTTPS if use_https is None else use_https
        scheme = "https" if use_https else "http"
        port = port or (5986 if use_https and self.settings.WSMAN_PORT == 5985 else self.settings.WSMAN_PORT)
        self.url = f"{scheme}://{host}:{port}{WSMAN_PATH}"
        self.client = client or StandardClient(
            f"{scheme}://{host}:{port}",
            user_agent=self.settings.USER_AGENT,
            verify=self.settings.VERIFY_TLS,
            auth=auth,
            timeout=self.settings.HTTP_TIMEOUT_SECONDS,
        )

    # -------------------------------------------------------------------------
    # ObjectQuery
    # -------------------------------------------------------------------------

    def query(
        self,
        class_name: str,
        properties: Optional[Sequence[str]] = None,
        where: Optional[str] = None,
        order_by: Optional[str] = None,
        namespace: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        statement = build_wql(class_name, properties, where, order_by)
        resource = resource_uri(namespace or self.namespace)
        logger.debug(f"WQL: {statement}")

        enumerate_ = ET.Element(_q("n", "Enumerate"))
        ET.SubElement(enumerate_, _q("w", "OptimizeEnumeration"))
        ET.SubElement(enumerate_, _q("w", "MaxElements")).text = str(self.settings.WSMAN_MAX_ELEMENTS)
        filter_ = ET.SubElement(enumerate_, _q("w", "Filter"), {"Dialect": WQL_DIALECT})
        filter_.text = statement

        root = self._post(ACTION_ENUMERATE, resource, enumerate_, statement=statement)
        response = root.find("s:Body/n:EnumerateResponse", NS)
        if response is None:
            raise ObjectQueryError("reply is not an EnumerateResponse", statement=statement)
        items, context, finished = self._page(response, "w", statement)

        while not finished and context:
            pull = ET.Element(_q("n", "Pull"))
            ET.SubElement(pull, _q("n", "EnumerationContext")).text = context
            ET.SubElement(pull, _q("n", "MaxElements")).text = str(self.settings.WSMAN_MAX_ELEMENTS)
            root = self._post(ACTION_PULL, resource, pull, statement=statement)
            response = root.find("s:Body/n:PullResponse", NS)
            if response is None:
                raise ObjectQueryError("reply is not a PullResponse", statement=statement)
            page, context, finished = self._page(response, "n", statement)
            items.extend(page)

        logger.debug(f"{class_name}: {len(items)} instances")
        return items

    def count(self, class_name: str, where: Optional[str] = None, namespace: Optional[str] = None) -> int:
        return len(self.query(class_name, where=where, namespace=namespace))

    def invoke_method(
        self,
        class_name: str,
        method: str,
        selectors: Optional[Mapping[str, Any]] = None,
        params: Optional[Mapping[str, Any]] = None,
        namespace: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Invoke a class or instance method.

        A dict parameter value is sent as an embedded instance; its
        "__class__" key names the class.

        Raises:
            ObjectQueryError: fault, or a non-zero ReturnValue
        """
        namespace = namespace or self.namespace
        resource = resource_uri(namespace, class_name)
        body = ET.Element(f"{{{resource}}}{method}_INPUT")
        for name, value in (params or {}).items():
            self._append_parameter(body, resource, namespace, name, value)

        logger.info(f"Invoking {class_name}.{method}")
        root = self._post(f"{resource}/{method}", resource, body, selectors=selectors, statement=f"{class_name}.{method}")
        output = root.find(f"s:Body/{{{resource}}}{method}_OUTPUT", NS)
        if output is None:
            raise ObjectQueryError(f"no {method}_OUTPUT in reply", statement=f"{class_name}.{method}")
        result = _instance_to_dict(output)
        return_value = result.get("ReturnValue")
        if return_value not in (None, "", "0"):
            raise ObjectQueryError(f"{class_name}.{method} returned {return_value}", statement=f"{class_name}.{method}")
        return result

    def close(self) -> None:
        self.client.close()

    # -------------------------------------------------------------------------
    # SOAP plumbing
    # -------------------------------------------------------------------------

    def _page(self, response: ET.Element, items_prefix: str, statement: str) -> Tuple[List[Dict[str, Any]], Optional[str], bool]:
        items_element = response.find(f"{items_prefix}:Items", NS)
        items = [_instance_to_dict(item) for item in items_element] if items_element is not None else []
        context = response.findtext("n:EnumerationContext", default=None, namespaces=NS)
        finished = (
            response.find(f"{items_prefix}:EndOfSequence", NS) is not None
            or response.find("n:EndOfSequence", NS) is not None
        )
        return items, context, finished

    def _append_parameter(self, parent: ET.Element, resource: str, namespace: str, name: str, value: Any) -> None:
        if isinstance(value, (list, tuple)):
            for item in value:
                self._append_parameter(parent, resource, namespace, name, item)
            return
        element = ET.SubElement(parent, f"{{{resource}}}{name}")
        if isinstance(value, Mapping):
            embedded_class = value["__class__"]
            embedded_resource = resource_uri(namespace, embedded_class)
            element.set(f"{{{XSI_NS}}}type", f"{embedded_class}_Type")
            for key, item in value.items():
                if key != "__class__":
                    self._append_parameter(element, embedded_resource, namespace, key, item)
        elif isinstance(value, bool):
            element.text = "true" if value else "false"
        elif value is None:
            element.set(f"{{{XSI_NS}}}nil", "true")
        else:
            element.text = str(value)

    def _envelope(
        self, action: str, resource: str, body: ET.Element, selectors: Optional[Mapping[str, Any]] = None
    ) -> bytes:
        must = {_q("s", "mustUnderstand"): "true"}
        envelope = ET.Element(_q("s", "Envelope"))
        header = ET.SubElement(envelope, _q("s", "Header"))
        ET.SubElement(header, _q("a", "To")).text = self.url
        ET.SubElement(header, _q("w", "ResourceURI"), must).text = resource
        reply_to = ET.SubElement(header, _q("a", "ReplyTo"))
        ET.SubElement(reply_to, _q("a", "Address"), must).text = ANONYMOUS
        ET.SubElement(header, _q("a", "Action"), must).text = action
        ET.SubElement(header, _q("a", "MessageID")).text = f"uuid:{uuid.uuid4()}"
        ET.SubElement(header, _q("w", "MaxEnvelopeSize"), must).text = str(MAX_ENVELOPE_SIZE)
        ET.SubElement(
            header, _q("w", "Locale"), {f"{{{XML_NS}}}lang": "en-US", _q("s", "mustUnderstand"): "false"}
        )
        ET.SubElement(header, _q("w", "OperationTimeout")).text = OPERATION_TIMEOUT
        if selectors:
            selector_set = ET.SubElement(header, _q("w", "SelectorSet"))
            for name, value in selectors.items():
                ET.SubElement(selector_set, _q("w", "Selector"), {"Name": name}).text = str(value)
        ET.SubElement(envelope, _q("s", "Body")).append(body)
        return ET.tostring(envelope, encoding="utf-8")

    def _post(
        self,
        action: str,
        resource: str,
        body: ET.Element,
        selectors: Optional[Mapping[str, Any]] = None,
        statement: Optional[str] = None,
    ) -> ET.Element:
        payload = self._envelope(action, resource, body, selectors)
        try:
            response = self.client.request(
                "POST",
                WSMAN_PATH,
                headers={"Content-Type": "application/soap+xml;charset=UTF-8"},
                data=payload,
            )
        except TransportError as e:
            reason = None
            if e.response_body:
                try:
                    reason = _fault_reason(ET.fromstring(e.response_body))
                except ET.ParseError:
                    reason = None
            raise ObjectQueryError(reason or e.message, statement=statement) from e

        try:
            root = ET.fromstring(response.content)
        except ET.ParseError as e:
            raise ObjectQueryError("reply is not well-formed XML", statement=statement) from e
        reason = _fault_reason(root)
        if reason:
            raise ObjectQueryError(reason, statement=statement)
        return root
