import pytest
from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.x509.oid import ExtensionOID, NameOID

from sccmkit.errors import (
    ClientTokenError,
    InvalidArgumentCombinationError,
    InvalidCertificateError,
    MissingKeyError,
)
from sccmkit.identity.provider import (
    SMS_SIGNING_EKU,
    IdentityProvider,
    ms_public_key_blob,
    normalize_client_token,
)

TOKEN = "GUID:7C1F5B3E-2A4D-4E6F-8A9B-0C1D2E3F4A5B"


def test_created_identity_is_unregistered(unregistered_identity, test_settings):
    assert not unregistered_identity.is_registered
    cn = unregistered_identity.certificate.subject.get_attributes_for_oid(NameOID.COMMON_NAME)[0].value
    assert cn == test_settings.CERTIFICATE_COMMON_NAME
    assert unregistered_identity.private_key.key_size == test_settings.RSA_KEY_SIZE
    with pytest.raises(ClientTokenError):
        unregistered_identity.require_token()


def test_certificate_carries_sms_signing_usage(unregistered_identity):
    eku = unregistered_identity.certificate.extensions.get_extension_for_oid(ExtensionOID.EXTENDED_KEY_USAGE)
    assert SMS_SIGNING_EKU in eku.value


@pytest.mark.parametrize(
    "raw",
    [
        "GUID:7c1f5b3e-2a4d-4e6f-8a9b-0c1d2e3f4a5b",
        "{7C1F5B3E-2A4D-4E6F-8A9B-0C1D2E3F4A5B}",
        " 7c1f5b3e-2a4d-4e6f-8a9b-0c1d2e3f4a5b ",
    ],
)
def test_normalize_client_token(raw):
    assert normalize_client_token(raw) == TOKEN


@pytest.mark.parametrize("raw", ["", "   ", "GUID:not-a-guid", "12345"])
def test_normalize_client_token_rejects_garbage(raw):
    with pytest.raises(ClientTokenError):
        normalize_client_token(raw)


def test_token_binding_is_permanent(unregistered_identity):
    bound = unregistered_identity.with_token(TOKEN.lower())
    assert bound.client_token == TOKEN
    assert bound.with_token(TOKEN) == bound
    with pytest.raises(ClientTokenError):
        bound.with_token("GUID:00000000-0000-0000-0000-000000000001")
    # The original value is untouched
    assert unregistered_identity.client_token is None


def test_export_then_load_restores_key_and_token(identity, test_settings):
    exported = IdentityProvider.export_identity(identity)
    assert exported == exported.upper()

    loaded = IdentityProvider(test_settings).load_identity(exported, identity.client_token)
    assert loaded.client_token == identity.client_token
    assert loaded.certificate == identity.certificate
    assert loaded.private_key.private_numbers() == identity.private_key.private_numbers()


def test_load_pem_bundle(identity, test_settings):
    bundle = identity.certificate.public_bytes(serialization.Encoding.PEM) + identity.private_key.private_bytes(
        serialization.Encoding.PEM, serialization.PrivateFormat.PKCS8, serialization.NoEncryption()
    )
    loaded = IdentityProvider(test_settings).load_identity(bundle, "{7C1F5B3E-2A4D-4E6F-8A9B-0C1D2E3F4A5B}")
    assert loaded.client_token == TOKEN
    assert loaded.certificate == identity.certificate


@pytest.mark.parametrize("cert, token", [("ABCD", None), (None, TOKEN), (None, None)])
def test_load_requires_both_arguments(test_settings, cert, token):
    with pytest.raises(InvalidArgumentCombinationError):
        IdentityProvider(test_settings).load_identity(cert, token)


def test_load_certificate_without_key(identity, test_settings):
    with pytest.raises(MissingKeyError):
        IdentityProvider(test_settings).load_identity(identity.certificate_der_hex, TOKEN)


def test_load_with_mismatched_key(identity, test_settings):
    other = IdentityProvider(test_settings).create_identity()
    bundle = identity.certificate.public_bytes(serialization.Encoding.PEM) + other.private_key.private_bytes(
        serialization.Encoding.PEM, serialization.PrivateFormat.PKCS8, serialization.NoEncryption()
    )
    with pytest.raises(MissingKeyError):
        IdentityProvider(test_settings).load_identity(bundle, TOKEN)


def test_load_unreadable_material(test_settings):
    with pytest.raises(InvalidCertificateError):
        IdentityProvider(test_settings).load_identity("this is not a certificate", TOKEN)
    with pytest.raises(InvalidCertificateError):
        IdentityProvider(test_settings).load_identity("DEADBEEF", TOKEN)


def test_public_key_blob_layout(identity):
    public_key = identity.private_key.public_key()
    blob = ms_public_key_blob(public_key)
    assert blob[:4] == b"\x06\x02\x00\x00"
    assert blob[4:8] == (0xA400).to_bytes(4, "little")
    assert blob[8:12] == b"RSA1"
    assert int.from_bytes(blob[12:16], "little") == public_key.key_size
    assert int.from_bytes(blob[16:20], "little") == 65537
    assert int.from_bytes(blob[20:], "little") == public_key.public_numbers().n
    assert identity.public_key_blob_hex == blob.hex().upper()


def test_certificate_der_hex_parses(identity):
    cert = x509.load_der_x509_certificate(bytes.fromhex(identity.certificate_der_hex))
    assert cert == identity.certificate
