"""
Pytest configuration and fixtures.

This file ensures proper path setup for imports and provides shared
builders for identities, management point replies and obfuscated
policy values.
"""

import os
import sys
import zlib
from pathlib import Path

import pytest

# Add src directory to Python path
src_path = Path(__file__).parent.parent / "src"
if str(src_path) not in sys.path:
    sys.path.insert(0, str(src_path))

from cryptography.hazmat.decrepit.ciphers.algorithms import TripleDES  # noqa: E402
from cryptography.hazmat.primitives import padding  # noqa: E402
from cryptography.hazmat.primitives.ciphers import Cipher, modes  # noqa: E402

from sccmkit.identity.provider import IdentityProvider  # noqa: E402
from sccmkit.messaging.models import MULTIPART_BOUNDARY  # noqa: E402
from sccmkit.secrets.mscrypto import crypt_derive_key  # noqa: E402
from sccmkit.utils.config import SccmSettings  # noqa: E402

CLIENT_TOKEN = "GUID:7C1F5B3E-2A4D-4E6F-8A9B-0C1D2E3F4A5B"


@pytest.fixture(scope="session")
def test_settings():
    return SccmSettings(
        _env_file=None,
        MANAGEMENT_POINT="mp01.corp.local",
        SITE_CODE="PS1",
        REGISTRATION_WAIT_SECONDS=0,
    )


@pytest.fixture(scope="session")
def unregistered_identity(test_settings):
    return IdentityProvider(test_settings).create_identity()


@pytest.fixture(scope="session")
def identity(unregistered_identity):
    return unregistered_identity.with_token(CLIENT_TOKEN)


@pytest.fixture
def mp_reply():
    """Build a multipart management point reply around a UTF-16 document."""

    def build(document: str) -> bytes:
        header = '<Msg SchemaVersion="1.1"><ID>{00000000-0000-0000-0000-000000000001}</ID></Msg>'
        body = zlib.compress((document + "\x00").encode("utf-16-le"))
        return (
            f"--{MULTIPART_BOUNDARY}\r\ncontent-type: text/plain; charset=UTF-16\r\n\r\n".encode("ascii")
            + header.encode("utf-16")
            + b"\r\n"
            + f"--{MULTIPART_BOUNDARY}\r\ncontent-type: application/octet-stream\r\n\r\n".encode("ascii")
            + body
            + b"\r\n"
            + f"--{MULTIPART_BOUNDARY}--\r\n".encode("ascii")
        )

    return build


@pytest.fixture
def obfuscate():
    """Produce a policy-obfuscated blob the way the site server does."""

    def build(text: str) -> bytes:
        material = os.urandom(0x28)
        key = crypt_derive_key(material, 24)
        padder = padding.PKCS7(64).padder()
        padded = padder.update((text + "\x00").encode("utf-16-le")) + padder.finalize()
        encryptor = Cipher(TripleDES(key), modes.CBC(b"\x00" * 8)).encryptor()
        ciphertext = encryptor.update(padded) + encryptor.finalize()
        return (
            b"\x89\x13\x00\x00"
            + material
            + b"\x00" * 8
            + len(ciphertext).to_bytes(4, "little")
            + b"\x00" * 8
            + ciphertext
        )

    return build
