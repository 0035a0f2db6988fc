from unittest.mock import MagicMock

import pytest

from sccmkit.errors import MalformedResponseError
from sccmkit.messaging.codec import MessageCodec, PolicyRequestParams
from sccmkit.messaging.models import MessageType, PolicyBody, PolicyReply, ServerResponse
from sccmkit.policy.models import PolicyAssignment, ProtectionContext, SecretOrigin
from sccmkit.policy.resolver import (
    PolicyResolver,
    decode_policy_document,
    extract_secrets,
    parse_assignments,
    select_secret_assignments,
)
from sccmkit.secrets.decryptor import DecryptedSecret, NetworkAccessAccount

ASSIGNMENTS = """<?xml version="1.0" encoding="UTF-16"?>
<ReplyAssignments>
  <PolicyAssignment PolicyAssignmentID="{A1}">
    <Policy PolicyID="{NAA-1}" PolicyVersion="3.00" PolicyType="Machine" PolicyCategory="NAAConfig">
      <PolicyLocation PolicyHash="SHA256:00">http://&lt;mp&gt;/SMS_MP/.sms_pol?{NAA-1}.3_00</PolicyLocation>
    </Policy>
  </PolicyAssignment>
  <PolicyAssignment PolicyAssignmentID="{A2}" CollectionID="SMS00001">
    <Policy PolicyID="{HW}" PolicyVersion="1.00" PolicyCategory="HardwareInventory">
      <PolicyLocation>http://&lt;mp&gt;/SMS_MP/.sms_pol?{HW}.1_00</PolicyLocation>
    </Policy>
  </PolicyAssignment>
  <PolicyAssignment PolicyAssignmentID="{A3}">
    <Policy PolicyID="{TS-1}" PolicyVersion="2.00" PolicyCategory="TaskSequence" Flags="Deployment"/>
  </PolicyAssignment>
</ReplyAssignments>"""

BODY = """<?xml version="1.0" encoding="UTF-16"?>
<Policy PolicyID="{NAA-1}">
  <PolicyRule><PolicyAction PolicyActionType="WMI-XML"><![CDATA[
    <instance class="CCM_NetworkAccessAccount">
      <property name="NetworkAccessUsername" type="8" secret="1"><value>0A0B</value></property>
      <property name="NetworkAccessPassword" type="8" secret="1"><value>0C0D0E</value></property>
      <property name="SiteSettingsKey" type="19"><value>1</value></property>
    </instance>
    <instance class="CCM_CollectionVariable">
      <property name="Name" type="8"><value>DeployPassword</value></property>
      <property name="Value" type="8" secret="1"><value>AABB</value></property>
    </instance>
    <instance class="CCM_CollectionVariable">
      <property name="Name" type="8"><value>JoinAccount</value></property>
      <property name="Value" type="8" secret="1"><value>CCDD</value></property>
    </instance>
    <instance class="CCM_SoftwareDistribution">
      <property name="PRG_CommandLine" type="8" secret="1"><value>EEFF</value></property>
    </instance>
  ]]></PolicyAction></PolicyRule>
</Policy>"""


def test_parse_assignments():
    assignments = parse_assignments(ASSIGNMENTS)
    assert [a.policy_id for a in assignments] == ["{NAA-1}", "{HW}", "{TS-1}"]

    naa = assignments[0]
    assert naa.name == "{A1}"
    assert naa.category == "NAAConfig"
    assert naa.policy_version == "3.00"
    assert naa.location == "http://<mp>/SMS_MP/.sms_pol?{NAA-1}.3_00"
    assert naa.policy_hash == "SHA256:00"

    assert assignments[1].target_collection == "SMS00001"
    assert not assignments[2].has_body
    assert assignments[2].flags == {"Flags": "Deployment"}


def test_select_secret_assignments_needs_category_and_body():
    selected = select_secret_assignments(parse_assignments(ASSIGNMENTS))
    assert [a.policy_id for a in selected] == ["{NAA-1}"]


def test_policy_without_id_is_malformed():
    with pytest.raises(MalformedResponseError):
        parse_assignments("<ReplyAssignments><PolicyAssignment><Policy/></PolicyAssignment></ReplyAssignments>")
    with pytest.raises(MalformedResponseError):
        parse_assignments("<ReplyAssignments>")


def test_extract_secrets_from_embedded_instances():
    blobs = extract_secrets(BODY.encode("utf-16"), source="{NAA-1}")

    assert len(blobs) == 4
    assert all(b.context is ProtectionContext.POLICY for b in blobs)
    assert all(b.source == "{NAA-1}" for b in blobs)

    username, password, first, second = blobs
    assert username.origin is SecretOrigin.NETWORK_ACCESS_ACCOUNT
    assert (username.name, username.ciphertext) == ("NetworkAccessUsername", b"\x0a\x0b")
    assert (password.name, password.ciphertext) == ("NetworkAccessPassword", b"\x0c\x0d\x0e")
    assert username.instance_index == password.instance_index == 0

    assert first.origin is SecretOrigin.COLLECTION_VARIABLE
    assert (first.label, first.instance_index) == ("DeployPassword", 0)
    assert (second.label, second.instance_index) == ("JoinAccount", 1)


def test_extract_secrets_plain_utf8_body():
    body = (
        '<Policy><instance class="CCM_TaskSequence">'
        '<property name="PKG_Name"><value>Build Workstation</value></property>'
        '<property name="TS_Sequence" secret="1"><value>0102</value></property>'
        "</instance></Policy>"
    )
    (blob,) = extract_secrets(body.encode("utf-8"))
    assert blob.origin is SecretOrigin.TASK_SEQUENCE
    assert blob.label == "Build Workstation"
    assert blob.ciphertext == b"\x01\x02"


def test_extract_secrets_rejects_broken_xml():
    with pytest.raises(MalformedResponseError):
        extract_secrets(b"<Policy><instance")


def test_decode_policy_document_strips_declaration():
    text = decode_policy_document('<?xml version="1.0"?><Policy/>'.encode("utf-16"))
    assert text == "<Policy/>"


def test_secret_blob_repr_hides_ciphertext():
    (blob, *_) = extract_secrets(BODY.encode("utf-16"))
    assert "0a0b" not in repr(blob).lower()
    assert "2 bytes" in repr(blob)


@pytest.fixture
def transport(test_settings):
    transport = MagicMock()
    transport.codec = MessageCodec(test_settings)
    return transport


def test_request_assignments(transport, identity):
    transport.send.return_value = ServerResponse(status=200, raw_body=b"", payload=PolicyReply(ASSIGNMENTS))
    resolver = PolicyResolver(transport, "mp01.corp.local")

    assignments = resolver.request_assignments(identity, PolicyRequestParams(client_name="WS01"))

    assert len(assignments) == 3
    message, host, port = transport.send.call_args[0]
    assert message.type is MessageType.POLICY_REQUEST
    assert (host, port) == ("mp01.corp.local", None)


def test_fetch_body_substitutes_management_point(transport, identity):
    transport.send.return_value = ServerResponse(status=200, raw_body=b"", payload=PolicyBody(BODY.encode("utf-16")))
    resolver = PolicyResolver(transport, "mp01.corp.local", port=8080)
    assignment = parse_assignments(ASSIGNMENTS)[0]

    body = resolver.fetch_body(assignment, identity)

    assert body == BODY.encode("utf-16")
    message, host, port = transport.send.call_args[0]
    assert message.type is MessageType.POLICY_BODY_REQUEST
    assert message.path == "/SMS_MP/.sms_pol?{NAA-1}.3_00"
    assert port == 8080


def test_fetch_body_without_location(transport, identity):
    resolver = PolicyResolver(transport, "mp01.corp.local")
    with pytest.raises(MalformedResponseError):
        resolver.fetch_body(PolicyAssignment(name="{A}", policy_id="{P}", policy_version="1"), identity)
    transport.send.assert_not_called()


def _account(username_hex, password_hex):
    return (
        '<instance class="CCM_NetworkAccessAccount">'
        f'<property name="NetworkAccessUsername" type="8" secret="1"><value>{username_hex}</value></property>'
        f'<property name="NetworkAccessPassword" type="8" secret="1"><value>{password_hex}</value></property>'
        "</instance>"
    )


def test_every_network_access_account_is_extracted():
    body = (
        '<Policy PolicyID="{NAA-2}"><PolicyRule>'
        f'<PolicyAction PolicyActionType="WMI-XML"><![CDATA[{_account("0101", "0202")}{_account("0303", "0404")}]]></PolicyAction>'
        "</PolicyRule><PolicyRule>"
        f'<PolicyAction PolicyActionType="WMI-XML"><![CDATA[{_account("0505", "0606")}]]></PolicyAction>'
        "</PolicyRule></Policy>"
    )

    blobs = extract_secrets(body.encode("utf-16"), source="{NAA-2}")

    assert len(blobs) == 6
    assert len({b.ciphertext for b in blobs}) == 6
    assert [b.instance_index for b in blobs] == [0, 0, 1, 1, 2, 2]

    decrypted = [DecryptedSecret(b, (b.ciphertext.hex() + "\x00").encode("utf-16-le")) for b in blobs]
    accounts = NetworkAccessAccount.pair(decrypted)
    assert [(a.instance_index, a.username, a.password) for a in accounts] == [
        (0, "0101", "0202"),
        (1, "0303", "0404"),
        (2, "0505", "0606"),
    ]
