from unittest.mock import MagicMock

import pytest

from sccmkit.errors import (
    DecryptionFailedError,
    InsufficientPrivilegeError,
    InvalidArgumentCombinationError,
    SecretsError,
)
from sccmkit.operations import collect_local_secrets
from sccmkit.policy.models import ProtectionContext, SecretBlob, SecretOrigin
from sccmkit.secrets.decryptor import (
    DecryptedSecret,
    LocalSecretsCollector,
    NetworkAccessAccount,
    SecretDecryptor,
    Win32DataProtector,
    decode_secret_text,
)
from sccmkit.secrets.elevation import LSA_SECURITY_KEYS
from sccmkit.secrets.lsa import DpapiSystemKeys
from sccmkit.secrets.win32 import KeySecurity


class ReversingProtector:
    context = "policy"

    def unprotect(self, ciphertext):
        if ciphertext == b"bad":
            raise DecryptionFailedError("padding is invalid", context=self.context)
        if ciphertext == b"short":
            raise ValueError("structure is truncated")
        return ciphertext[::-1]


def utf16(text):
    return (text + "\x00").encode("utf-16-le")


def blob(ciphertext, name="Value", origin=SecretOrigin.COLLECTION_VARIABLE, index=0, context=ProtectionContext.POLICY):
    return SecretBlob(
        context=context,
        ciphertext=ciphertext,
        origin=origin,
        name=name,
        instance="CCM_" + origin.value,
        instance_index=index,
        source="{P}",
    )


def test_decode_secret_text():
    assert decode_secret_text(utf16("Summer2024!")) == "Summer2024!"
    assert decode_secret_text(b"odd") == "odd"


def test_decrypt_all_continues_past_failures():
    blobs = [blob(b"olleh"), blob(b"bad"), blob(b"short"), blob(b"dlrow")]

    report = SecretDecryptor([ReversingProtector()]).decrypt_all(blobs)

    assert [s.plaintext for s in report.secrets] == [b"hello", b"world"]
    assert [f.blob.ciphertext for f in report.failures] == [b"bad", b"short"]
    assert all(isinstance(f.error, DecryptionFailedError) for f in report.failures)
    assert "truncated" in report.failures[1].error.message


def test_missing_protector_is_a_per_blob_failure():
    report = SecretDecryptor({"policy": ReversingProtector()}).decrypt_all(
        [blob(b"x", context=ProtectionContext.MACHINE), blob(b"y")]
    )
    assert len(report.secrets) == 1
    assert report.failures[0].error.details == {"context": "machine"}


def test_network_access_accounts_are_paired():
    decrypted = [
        DecryptedSecret(blob(b"", "NetworkAccessUsername", SecretOrigin.NETWORK_ACCESS_ACCOUNT, 0), utf16("CORP\\naa")),
        DecryptedSecret(blob(b"", "NetworkAccessPassword", SecretOrigin.NETWORK_ACCESS_ACCOUNT, 0), utf16("Pa55!")),
        DecryptedSecret(blob(b"", "NetworkAccessUsername", SecretOrigin.NETWORK_ACCESS_ACCOUNT, 1), utf16("CORP\\old")),
        DecryptedSecret(blob(b"", "Value"), utf16("not an account")),
    ]

    accounts = NetworkAccessAccount.pair(decrypted)

    assert [(a.username, a.password, a.instance_index) for a in accounts] == [
        ("CORP\\naa", "Pa55!", 0),
        ("CORP\\old", "", 1),
    ]
    assert "Pa55!" not in repr(accounts[0])


def test_decrypted_secret_repr_is_redacted():
    secret = DecryptedSecret(blob(b"ciphertext"), utf16("TopSecret"))
    assert "TopSecret" not in repr(secret)
    assert secret.text == "TopSecret"


def test_report_by_origin():
    report = SecretDecryptor([ReversingProtector()]).decrypt_all(
        [blob(b"a", origin=SecretOrigin.TASK_SEQUENCE), blob(b"b")]
    )
    assert [s.plaintext for s in report.by_origin(SecretOrigin.TASK_SEQUENCE)] == [b"a"]


def test_win32_protector_wraps_os_errors():
    api = MagicMock()
    api.crypt_unprotect_data.side_effect = OSError(13, "The data is invalid")
    with pytest.raises(DecryptionFailedError):
        Win32DataProtector(api).unprotect(b"blob")


# === Local collection ===


@pytest.fixture
def api():
    api = MagicMock()
    api.is_user_admin.return_value = True
    api.get_key_security.side_effect = lambda name: KeySecurity(name, f"sd:{name}", f"dacl:{name}")
    return api


def _collector(api, blobs, key_loader=None, lsa_factory=None):
    source = MagicMock()
    if isinstance(blobs, Exception):
        source.read_blobs.side_effect = blobs
    else:
        source.read_blobs.return_value = blobs
    if lsa_factory is None:
        lsa = MagicMock()
        lsa.dpapi_system.return_value = DpapiSystemKeys(machine_key=b"m" * 20, user_key=b"u" * 20)
        lsa_factory = MagicMock(return_value=lsa)
    return LocalSecretsCollector(
        source, api, masterkey_dir="/keys", lsa_factory=lsa_factory, key_loader=key_loader or MagicMock(return_value={})
    )


def test_non_administrator_is_refused_before_elevating(api):
    api.is_user_admin.return_value = False
    with pytest.raises(InsufficientPrivilegeError):
        _collector(api, []).collect()
    api.get_key_security.assert_not_called()


def test_collect_restores_acl_even_when_every_blob_fails(api):
    key_loader = MagicMock(return_value={})
    collector = _collector(api, [blob(b"\x01\x00", context=ProtectionContext.MACHINE)], key_loader=key_loader)

    report = collector.collect()

    assert len(report.failures) == 1
    assert api.set_key_dacl.call_count == len(LSA_SECURITY_KEYS)
    key_loader.assert_called_once_with("/keys", b"u" * 20)


def test_collect_restores_acl_when_source_fails(api):
    collector = _collector(api, OSError(2, "No such file"))
    with pytest.raises(OSError):
        collector.collect()
    assert api.set_key_dacl.call_count == len(LSA_SECURITY_KEYS)


def test_collect_without_blobs_skips_key_recovery(api):
    lsa_factory = MagicMock()
    report = _collector(api, [], lsa_factory=lsa_factory).collect()
    assert report.secrets == [] and report.failures == []
    lsa_factory.assert_not_called()


def test_unrecoverable_system_key(api):
    lsa = MagicMock()
    lsa.dpapi_system.side_effect = ValueError("LSA secret length is inconsistent")
    collector = _collector(api, [blob(b"x", context=ProtectionContext.MACHINE)], lsa_factory=MagicMock(return_value=lsa))
    with pytest.raises(DecryptionFailedError):
        collector.collect()
    assert api.set_key_dacl.call_count == len(LSA_SECURITY_KEYS)


def test_collect_decrypts_policy_obfuscated_blobs(api, obfuscate):
    blobs = [
        blob(obfuscate("CORP\\svc_naa"), "NetworkAccessUsername", SecretOrigin.NETWORK_ACCESS_ACCOUNT),
        blob(obfuscate("Autumn#42"), "NetworkAccessPassword", SecretOrigin.NETWORK_ACCESS_ACCOUNT),
    ]
    collector = _collector(api, blobs)

    report = collector.collect()

    (account,) = report.credentials
    assert (account.username, account.password) == ("CORP\\svc_naa", "Autumn#42")
    assert collector.decrypt(blobs[0]).text == "CORP\\svc_naa"


def test_decrypt_before_collect():
    collector = _collector(MagicMock(), [])
    with pytest.raises(SecretsError):
        collector.decrypt(blob(b"x"))


@pytest.mark.parametrize(
    "method,message",
    [("wmi", "needs an object query"), ("registry", "unknown method 'registry'")],
)
def test_collect_local_secrets_rejects_bad_arguments(test_settings, method, message):
    with pytest.raises(InvalidArgumentCombinationError) as excinfo:
        collect_local_secrets(method=method, api=MagicMock(), settings=test_settings)

    assert message in excinfo.value.message
