import xml.etree.ElementTree as ET
from unittest.mock import MagicMock

import pytest

from sccmkit.errors import ObjectQueryError, TransportError
from sccmkit.query.base import build_wql, quote_wql
from sccmkit.query.wsman import NS, WsManObjectQuery, resource_uri

SITE_NAMESPACE = r"root\sms\site_PS1"
ENVELOPE = (
    '<s:Envelope xmlns:s="http://www.w3.org/2003/05/soap-envelope"'
    ' xmlns:n="http://schemas.xmlsoap.org/ws/2004/09/enumeration"'
    ' xmlns:w="http://schemas.dmtf.org/wbem/wsman/1/wsman.xsd"'
    ' xmlns:xsi="http://www.w3.org/2001/XMLSchema-instance">'
    "<s:Header/><s:Body>{body}</s:Body></s:Envelope>"
)
MEMBER_NS = "http://schemas.microsoft.com/wbem/wsman/1/wmi/root/sms/site_PS1/SMS_FullCollectionMembership"


def member(resource_id, name):
    return (
        f'<p:SMS_FullCollectionMembership xmlns:p="{MEMBER_NS}">'
        f"<p:ResourceID>{resource_id}</p:ResourceID><p:Name>{name}</p:Name>"
        '<p:Domain xsi:nil="true"/>'
        "</p:SMS_FullCollectionMembership>"
    )


def reply(body):
    response = MagicMock()
    response.content = ENVELOPE.format(body=body).encode("utf-8")
    return response


@pytest.fixture
def client():
    return MagicMock()


@pytest.fixture
def query(test_settings, client):
    return WsManObjectQuery("site01.corp.local", SITE_NAMESPACE, settings=test_settings, client=client)


def _sent(client, index):
    return ET.fromstring(client.request.call_args_list[index].kwargs["data"])


def test_build_wql():
    assert build_wql("SMS_Collection") == "SELECT * FROM SMS_Collection"
    assert (
        build_wql("SMS_R_System", ["ResourceID", "Name"], where="Name = 'WS01'", order_by="Name")
        == "SELECT ResourceID, Name FROM SMS_R_System WHERE Name = 'WS01' ORDER BY Name"
    )


def test_quote_wql():
    assert quote_wql("O'Brien") == "'O\\'Brien'"
    assert quote_wql("CORP\\jdoe") == "'CORP\\\\jdoe'"
    assert quote_wql(42) == "42"
    assert quote_wql(True) == "TRUE"


def test_resource_uri():
    assert resource_uri(SITE_NAMESPACE, "SMS_Collection") == (
        "http://schemas.microsoft.com/wbem/wsman/1/wmi/root/sms/site_PS1/SMS_Collection"
    )
    assert resource_uri(SITE_NAMESPACE).endswith("/site_PS1/*")


def test_default_endpoint(test_settings):
    query = WsManObjectQuery("site01.corp.local", SITE_NAMESPACE, settings=test_settings, client=MagicMock())
    assert query.url == "http://site01.corp.local:5985/wsman"
    query = WsManObjectQuery(
        "site01.corp.local", SITE_NAMESPACE, use_https=True, settings=test_settings, client=MagicMock()
    )
    assert query.url == "https://site01.corp.local:5986/wsman"


def test_query_enumerates_then_pulls(query, client):
    client.request.side_effect = [
        reply(
            "<n:EnumerateResponse><n:EnumerationContext>uuid:ctx-1</n:EnumerationContext>"
            f"<w:Items>{member(16777220, 'WS01')}</w:Items></n:EnumerateResponse>"
        ),
        reply(
            "<n:PullResponse><n:EnumerationContext>uuid:ctx-1</n:EnumerationContext>"
            f"<n:Items>{member(16777221, 'WS02')}</n:Items><n:EndOfSequence/></n:PullResponse>"
        ),
    ]

    rows = query.query("SMS_FullCollectionMembership", ["ResourceID", "Name"], where="CollectionID = 'PS100020'")

    assert rows == [
        {"ResourceID": "16777220", "Name": "WS01", "Domain": None},
        {"ResourceID": "16777221", "Name": "WS02", "Domain": None},
    ]
    method, path = client.request.call_args_list[0].args
    assert (method, path) == ("POST", "/wsman")

    enumerate_ = _sent(client, 0)
    assert enumerate_.findtext("s:Header/w:ResourceURI", namespaces=NS).endswith("/root/sms/site_PS1/*")
    assert enumerate_.findtext("s:Body/n:Enumerate/w:Filter", namespaces=NS) == (
        "SELECT ResourceID, Name FROM SMS_FullCollectionMembership WHERE CollectionID = 'PS100020'"
    )
    pull = _sent(client, 1)
    assert pull.findtext("s:Body/n:Pull/n:EnumerationContext", namespaces=NS) == "uuid:ctx-1"


def test_single_page_query(query, client):
    client.request.return_value = reply(
        f"<n:EnumerateResponse><w:Items>{member(1, 'A')}</w:Items><w:EndOfSequence/></n:EnumerateResponse>"
    )
    assert query.count("SMS_FullCollectionMembership") == 1
    assert client.request.call_count == 1


def test_fault_reason_from_http_error(query, client):
    fault = ENVELOPE.format(
        body=(
            "<s:Fault><s:Code><s:Value>s:Sender</s:Value></s:Code>"
            "<s:Reason><s:Text xml:lang=\"en-US\">Access is denied.</s:Text></s:Reason></s:Fault>"
        )
    )
    client.request.side_effect = TransportError("HTTP 500", status_code=500, response_body=fault)

    with pytest.raises(ObjectQueryError) as excinfo:
        query.query("SMS_Collection")

    assert "Access is denied." in excinfo.value.message
    assert excinfo.value.details["statement"] == "SELECT * FROM SMS_Collection"


def test_transport_error_without_body(query, client):
    client.request.side_effect = TransportError("could not reach site01", url="http://site01:5985/wsman")
    with pytest.raises(ObjectQueryError) as excinfo:
        query.query("SMS_Collection")
    assert "could not reach" in excinfo.value.message


def test_non_xml_reply(query, client):
    response = MagicMock()
    response.content = b"<html>proxy login</html"
    client.request.return_value = response
    with pytest.raises(ObjectQueryError):
        query.query("SMS_Collection")


def test_unexpected_body(query, client):
    client.request.return_value = reply("<n:Something/>")
    with pytest.raises(ObjectQueryError):
        query.query("SMS_Collection")


def test_invoke_method_sends_embedded_instance(query, client):
    resource = resource_uri(SITE_NAMESPACE, "SMS_Collection")
    client.request.return_value = reply(
        f'<p:AddMembershipRule_OUTPUT xmlns:p="{resource}"><p:QueryID>0</p:QueryID>'
        "<p:ReturnValue>0</p:ReturnValue></p:AddMembershipRule_OUTPUT>"
    )

    result = query.invoke_method(
        "SMS_Collection",
        "AddMembershipRule",
        selectors={"CollectionID": "PS100020"},
        params={
            "collectionRule": {
                "__class__": "SMS_CollectionRuleDirect",
                "ResourceClassName": "SMS_R_System",
                "ResourceID": 16777220,
                "RuleName": "WS01",
            }
        },
    )

    assert result == {"QueryID": "0", "ReturnValue": "0"}
    sent = _sent(client, 0)
    assert sent.findtext("s:Header/a:Action", namespaces=NS) == f"{resource}/AddMembershipRule"
    selector = sent.find("s:Header/w:SelectorSet/w:Selector", NS)
    assert (selector.get("Name"), selector.text) == ("CollectionID", "PS100020")

    rule = sent.find(f"s:Body/{{{resource}}}AddMembershipRule_INPUT/{{{resource}}}collectionRule", NS)
    assert rule.get("{http://www.w3.org/2001/XMLSchema-instance}type") == "SMS_CollectionRuleDirect_Type"
    rule_ns = resource_uri(SITE_NAMESPACE, "SMS_CollectionRuleDirect")
    assert rule.findtext(f"{{{rule_ns}}}ResourceID") == "16777220"


def test_invoke_method_boolean_parameter(query, client):
    resource = resource_uri(SITE_NAMESPACE, "SMS_Collection")
    client.request.return_value = reply(
        f'<p:RequestRefresh_OUTPUT xmlns:p="{resource}"><p:ReturnValue>0</p:ReturnValue></p:RequestRefresh_OUTPUT>'
    )
    query.invoke_method("SMS_Collection", "RequestRefresh", params={"IncludeSubCollections": False})
    sent = _sent(client, 0)
    assert sent.findtext(f"s:Body/{{{resource}}}RequestRefresh_INPUT/{{{resource}}}IncludeSubCollections", namespaces=NS) == "false"


def test_invoke_method_nonzero_return(query, client):
    resource = resource_uri(SITE_NAMESPACE, "SMS_Collection")
    client.request.return_value = reply(
        f'<p:DeleteMembershipRule_OUTPUT xmlns:p="{resource}"><p:ReturnValue>2147749889</p:ReturnValue>'
        "</p:DeleteMembershipRule_OUTPUT>"
    )
    with pytest.raises(ObjectQueryError) as excinfo:
        query.invoke_method("SMS_Collection", "DeleteMembershipRule")
    assert "2147749889" in excinfo.value.message


def test_invoke_method_without_output(query, client):
    client.request.return_value = reply("<n:Nothing/>")
    with pytest.raises(ObjectQueryError):
        query.invoke_method("SMS_Collection", "RequestRefresh")
