"""
Message signing, verification and response unwrapping.

Signatures are RSA PKCS#1 v1.5 over SHA-256 with the byte order reversed,
matching the little-endian convention of the server's crypto provider.
Policy bodies may arrive as a CMS EnvelopedData encrypted to the client
certificate; unwrap_policy_body() recovers the plaintext document.
"""

import hashlib
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from asn1crypto import cms
from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.decrepit.ciphers.algorithms import TripleDES
from cryptography.hazmat.primitives import hashes, padding
from cryptography.hazmat.primitives.asymmetric import padding as asym_padding
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from ..errors import MalformedResponseError
from ..identity.provider import ClientIdentity
from ..logging import get_logger

logger = get_logger(__name__)


def sign(private_key: rsa.RSAPrivateKey, data: bytes) -> bytes:
    """Sign data, returning the signature in reversed byte order."""
    signature = private_key.sign(data, asym_padding.PKCS1v15(), hashes.SHA256())
    return signature[::-1]


def verify(signature: bytes, data: bytes, certificate: x509.Certificate) -> bool:
    """Verify a reversed-order signature against the certificate's key."""
    try:
        certificate.public_key().verify(
            signature[::-1], data, asym_padding.PKCS1v15(), hashes.SHA256()
        )
    except InvalidSignature:
        return False
    return True


def sign_text(private_key: rsa.RSAPrivateKey, text: str) -> str:
    """Sign the NUL-terminated UTF-16LE encoding of text, as hex."""
    return sign(private_key, text.encode("utf-16-le") + b"\x00\x00").hex().upper()


def sign_client_token(identity: ClientIdentity, when: Optional[datetime] = None) -> Tuple[str, str]:
    """
    Build the ClientToken header value and its signature.

    Returns:
        (token, signature_hex) where token is "GUID:<id>;<time>;2"
    """
    moment = (when or datetime.now(timezone.utc)).strftime("%Y-%m-%dT%H:%M:%SZ")
    token = f"{identity.require_token()};{moment};2"
    return token, sign_text(identity.private_key, token)


def verify_policy_hash(raw: bytes, policy_hash: Optional[str]) -> bool:
    """Check a body against the "SHA256:<hex>" hash advertised in its assignment."""
    if not policy_hash or ":" not in policy_hash:
        return True
    algorithm, expected = policy_hash.split(":", 1)
    if algorithm.upper() != "SHA256":
        return True
    actual = hashlib.sha256(raw).hexdigest()
    if actual.lower() != expected.strip().lower():
        logger.warning("Policy body hash does not match its assignment")
        return False
    return True


def is_enveloped(raw: bytes) -> bool:
    """DER-encoded CMS starts with a SEQUENCE tag; XML policy text never does."""
    return len(raw) > 2 and raw[0] == 0x30


def unwrap_policy_body(raw: bytes, identity: ClientIdentity) -> bytes:
    """
    Decrypt a CMS EnvelopedData policy body with the identity's private key.

    Bodies that are not enveloped are returned unchanged.

    Raises:
        MalformedResponseError: envelope cannot be parsed or decrypted
    """
    if not is_enveloped(raw):
        return raw

    try:
        info = cms.ContentInfo.load(raw)
        if info["content_type"].native != "enveloped_data":
            raise MalformedResponseError(
                f"unexpected CMS content type {info['content_type'].native}",
                expected_type="policy_body_request",
            )
        envelope = info["content"]
        content_key = _recover_content_key(envelope["recipient_infos"], identity)

        content_info = envelope["encrypted_content_info"]
        algorithm = content_info["content_encryption_algorithm"]
        ciphertext = content_info["encrypted_content"].native
        cipher_name = algorithm.encryption_cipher
        iv = algorithm.encryption_iv
    except MalformedResponseError:
        raise
    except (ValueError, TypeError, KeyError) as e:
        raise MalformedResponseError("policy envelope is not valid CMS", expected_type="policy_body_request") from e

    if not ciphertext:
        raise MalformedResponseError("policy envelope carries no content", expected_type="policy_body_request")

    plaintext = _decrypt_content(cipher_name, content_key, iv, ciphertext)
    logger.debug(f"Unwrapped {cipher_name} policy envelope ({len(plaintext)} bytes)")
    return plaintext


def _recover_content_key(recipient_infos, identity: ClientIdentity) -> bytes:
    serial = identity.certificate.serial_number
    matching: List = []
    others: List = []
    for recipient in recipient_infos:
        if recipient.name != "ktri":
            continue
        info = recipient.chosen
        rid = info["rid"]
        if rid.name == "issuer_and_serial_number" and rid.chosen["serial_number"].native == serial:
            matching.append(info)
        else:
            others.append(info)

    for info in matching + others:
        algorithm = info["key_encryption_algorithm"]["algorithm"].native
        if algorithm == "rsaes_oaep":
            scheme = asym_padding.OAEP(
                mgf=asym_padding.MGF1(algorithm=hashes.SHA1()), algorithm=hashes.SHA1(), label=None
            )
        else:
            scheme = asym_padding.PKCS1v15()
        try:
            return identity.private_key.decrypt(info["encrypted_key"].native, scheme)
        except ValueError:
            continue

    raise MalformedResponseError("no recipient in the policy envelope matches this identity")


def _decrypt_content(cipher_name: str, key: bytes, iv: bytes, ciphertext: bytes) -> bytes:
    if cipher_name == "tripledes":
        algorithm = TripleDES(key)
    elif cipher_name == "aes":
        algorithm = algorithms.AES(key)
    else:
        raise MalformedResponseError(f"unsupported envelope cipher {cipher_name}")

    try:
        decryptor = Cipher(algorithm, modes.CBC(iv)).decryptor()
        padded = decryptor.update(ciphertext) + decryptor.finalize()
        unpadder = padding.PKCS7(algorithm.block_size).unpadder()
        return unpadder.update(padded) + unpadder.finalize()
    except ValueError as e:
        raise MalformedResponseError("policy envelope failed to decrypt") from e
