"""
Identity Provider - Client Key and Certificate Management

Creates the RSA key pair and self-signed certificate that a device presents
to the management point, or loads a previously registered one.

Security:
- Private keys never leave the process except through export_identity()
- A client token is never inferred from a certificate
"""

import base64
import binascii
import re
import struct
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple, Union

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID, ObjectIdentifier

from ..errors import (
    ClientTokenError,
    IdentityGenerationError,
    InvalidArgumentCombinationError,
    InvalidCertificateError,
    MissingKeyError,
)
from ..logging import get_logger
from ..utils.config import SccmSettings, settings as default_settings

logger = get_logger(__name__)

# SMS signing certificate usages
SMS_SIGNING_EKU = ObjectIdentifier("1.3.6.1.4.1.311.101.2")
SMS_EKU = ObjectIdentifier("1.3.6.1.4.1.311.101")

# PUBLICKEYBLOB: bType, bVersion, reserved, aiKeyAlg (CALG_RSA_KEYX), magic
_PUBLICKEYBLOB_HEADER = struct.Struct("<BBHI4sII")
_CALG_RSA_KEYX = 0x0000A400

_PEM_BLOCK = re.compile(rb"-----BEGIN ([A-Z0-9 ]+)-----.+?-----END \1-----", re.DOTALL)
_HEX_TEXT = re.compile(r"^(?:[0-9a-fA-F]{2})+$")


def normalize_client_token(token: str) -> str:
    """
    Canonicalize a client token to the GUID:XXXXXXXX-XXXX-... form.

    Accepts "GUID:<uuid>", "{<uuid>}" or a bare uuid.
    """
    if not token or not token.strip():
        raise ClientTokenError("token is empty")
    value = token.strip()
    if value.upper().startswith("GUID:"):
        value = value[5:]
    try:
        parsed = uuid.UUID(value.strip("{}"))
    except ValueError:
        raise ClientTokenError("token is not a GUID") from None
    return f"GUID:{str(parsed).upper()}"


def ms_public_key_blob(public_key: rsa.RSAPublicKey) -> bytes:
    """Encode an RSA public key as a CryptoAPI PUBLICKEYBLOB."""
    numbers = public_key.public_numbers()
    header = _PUBLICKEYBLOB_HEADER.pack(
        0x06, 0x02, 0, _CALG_RSA_KEYX, b"RSA1", public_key.key_size, numbers.e
    )
    return header + numbers.n.to_bytes(public_key.key_size // 8, "little")


@dataclass(frozen=True)
class ClientIdentity:
    """A device identity: key pair, certificate and server-issued token."""
    private_key: rsa.RSAPrivateKey
    certificate: x509.Certificate
    client_token: Optional[str] = None

    @property
    def certificate_der(self) -> bytes:
        return self.certificate.public_bytes(serialization.Encoding.DER)

    @property
    def certificate_der_hex(self) -> str:
        return self.certificate_der.hex().upper()

    @property
    def public_key_blob_hex(self) -> str:
        return ms_public_key_blob(self.private_key.public_key()).hex().upper()

    @property
    def is_registered(self) -> bool:
        return self.client_token is not None

    def require_token(self) -> str:
        if self.client_token is None:
            raise ClientTokenError("identity has not been registered")
        return self.client_token

    def with_token(self, token: str) -> "ClientIdentity":
        """Bind a server-issued token. A bound token cannot be replaced."""
        canonical = normalize_client_token(token)
        if self.client_token is not None and self.client_token != canonical:
            raise ClientTokenError("identity is already bound to a different token")
        return replace(self, client_token=canonical)


class IdentityProvider:
    """
    Create or load client identities.

    Neither operation contacts the management point.
    """

    def __init__(self, settings: Optional[SccmSettings] = None):
        self.settings = settings or default_settings

    def create_identity(self, common_name: Optional[str] = None) -> ClientIdentity:
        """
        Generate a fresh key pair and a self-signed SMS signing certificate.

        Args:
            common_name: Subject CN (defaults to SCCM_CERTIFICATE_COMMON_NAME)

        Returns:
            ClientIdentity without a client token
        """
        cn = common_name or self.settings.CERTIFICATE_COMMON_NAME
        try:
            private_key = rsa.generate_private_key(
                public_exponent=65537,
                key_size=self.settings.RSA_KEY_SIZE,
            )
            now = datetime.now(timezone.utc)
            subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, cn)])
            certificate = (
                x509.CertificateBuilder()
                .subject_name(subject)
                .issuer_name(subject)
                .public_key(private_key.public_key())
                .serial_number(x509.random_serial_number())
                .not_valid_before(now - timedelta(days=2))
                .not_valid_after(now + timedelta(days=self.settings.CERTIFICATE_VALIDITY_DAYS))
                .add_extension(
                    x509.KeyUsage(
                        digital_signature=True,
                        content_commitment=False,
                        key_encipherment=False,
                        data_encipherment=True,
                        key_agreement=False,
                        key_cert_sign=False,
                        crl_sign=False,
                        encipher_only=False,
                        decipher_only=False,
                    ),
                    critical=False,
                )
                .add_extension(x509.ExtendedKeyUsage([SMS_SIGNING_EKU, SMS_EKU]), critical=False)
                .sign(private_key, hashes.SHA256())
            )
        except (ValueError, TypeError) as e:
            raise IdentityGenerationError(str(e)) from e

        logger.info(f"Generated {self.settings.RSA_KEY_SIZE}-bit client identity for CN={cn}")
        return ClientIdentity(private_key=private_key, certificate=certificate)

    def load_identity(
        self,
        cert_bytes: Optional[Union[bytes, str]],
        token: Optional[str],
        password: Optional[bytes] = None,
    ) -> ClientIdentity:
        """
        Load an identity from certificate material and a client token.

        Args:
            cert_bytes: PKCS#12, PEM bundle or certificate (raw, hex or base64)
            token: Client token issued at registration
            password: Optional PKCS#12 password

        Raises:
            InvalidArgumentCombinationError: only one of cert_bytes/token given
            InvalidCertificateError: material cannot be parsed
            MissingKeyError: no private key, or key does not match certificate
        """
        if not cert_bytes or not token:
            raise InvalidArgumentCombinationError(
                "a certificate and a client token must be supplied together"
            )
        canonical = normalize_client_token(token)
        data = _coerce_bytes(cert_bytes)
        private_key, certificate = _parse_material(data, password)

        if private_key is None:
            raise MissingKeyError()
        if not isinstance(private_key, rsa.RSAPrivateKey):
            raise MissingKeyError("private key is not RSA")
        if private_key.public_key().public_numbers() != certificate.public_key().public_numbers():
            raise MissingKeyError("private key does not match the certificate")

        logger.info(f"Loaded client identity {canonical}")
        return ClientIdentity(private_key=private_key, certificate=certificate, client_token=canonical)

    @staticmethod
    def export_identity(identity: ClientIdentity) -> str:
        """Export key and certificate as an unencrypted PKCS#12 hex string."""
        blob = pkcs12.serialize_key_and_certificates(
            name=b"sccmkit",
            key=identity.private_key,
            cert=identity.certificate,
            cas=None,
            encryption_algorithm=serialization.NoEncryption(),
        )
        return blob.hex().upper()


def _coerce_bytes(material: Union[bytes, str]) -> bytes:
    """Accept raw bytes or hex/base64/PEM text."""
    if isinstance(material, bytes):
        if b"-----BEGIN" in material:
            return material
        try:
            text = material.decode("ascii").strip()
        except UnicodeDecodeError:
            return material
    else:
        text = material.strip()

    if "-----BEGIN" in text:
        return text.encode("ascii")
    if _HEX_TEXT.match(text):
        return bytes.fromhex(text)
    try:
        return base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError):
        pass
    if isinstance(material, bytes):
        return material
    raise InvalidCertificateError("certificate text is neither hex, base64 nor PEM")


def _parse_material(
    data: bytes, password: Optional[bytes]
) -> Tuple[Optional[object], x509.Certificate]:
    if b"-----BEGIN" in data:
        return _parse_pem(data, password)

    try:
        key, cert, _ = pkcs12.load_key_and_certificates(data, password)
        if cert is not None:
            return key, cert
    except ValueError:
        pass

    try:
        return None, x509.load_der_x509_certificate(data)
    except ValueError as e:
        raise InvalidCertificateError("not a PKCS#12 container or DER certificate") from e


def _parse_pem(data: bytes, password: Optional[bytes]) -> Tuple[Optional[object], x509.Certificate]:
    certificates: List[x509.Certificate] = []
    private_key = None
    for match in _PEM_BLOCK.finditer(data):
        label = match.group(1).decode("ascii")
        block = match.group(0)
        try:
            if label in ("CERTIFICATE", "X509 CERTIFICATE"):
                certificates.append(x509.load_pem_x509_certificate(block))
            elif label.endswith("PRIVATE KEY") and private_key is None:
                private_key = serialization.load_pem_private_key(block, password=password)
        except (ValueError, TypeError) as e:
            raise InvalidCertificateError(f"unreadable PEM block '{label}'") from e

    if not certificates:
        raise InvalidCertificateError("PEM material holds no certificate")
    return private_key, certificates[0]
