import hashlib
import os

import pytest

from sccmkit.errors import DecryptionFailedError
from sccmkit.secrets.mscrypto import crypt_derive_key
from sccmkit.secrets.obfuscation import LENGTH_OFFSET, PolicySecretDeobfuscator


def test_crypt_derive_key_matches_cryptoapi_expansion():
    material = os.urandom(0x28)
    base = hashlib.sha1(material).digest().ljust(64, b"\x00")
    expected = (
        hashlib.sha1(bytes(b ^ 0x36 for b in base)).digest() + hashlib.sha1(bytes(b ^ 0x5C for b in base)).digest()
    )[:24]
    assert crypt_derive_key(material, 24) == expected


def test_crypt_derive_key_truncates_long_hashes():
    material = b"key material"
    assert crypt_derive_key(material, 16) == hashlib.sha1(material).digest()[:16]


def test_deobfuscate(obfuscate):
    blob = obfuscate("P@ssw0rd!")
    plaintext = PolicySecretDeobfuscator().unprotect(blob)
    assert plaintext == "P@ssw0rd!\x00".encode("utf-16-le")


def test_context_is_policy():
    assert PolicySecretDeobfuscator.context == "policy"


def test_truncated_blob(obfuscate):
    with pytest.raises(DecryptionFailedError):
        PolicySecretDeobfuscator().unprotect(obfuscate("secret")[:40])


def test_inconsistent_length(obfuscate):
    blob = bytearray(obfuscate("secret"))
    blob[LENGTH_OFFSET:LENGTH_OFFSET + 4] = (1000).to_bytes(4, "little")
    with pytest.raises(DecryptionFailedError) as excinfo:
        PolicySecretDeobfuscator().unprotect(bytes(blob))
    assert excinfo.value.details == {"context": "policy"}


def test_wrong_key_material(obfuscate):
    blob = bytearray(obfuscate("a much longer secret value"))
    blob[4:44] = os.urandom(40)
    try:
        plaintext = PolicySecretDeobfuscator().unprotect(bytes(blob))
    except DecryptionFailedError:
        return
    # Padding can validate by chance; the value must still be garbage
    assert plaintext != "a much longer secret value\x00".encode("utf-16-le")
