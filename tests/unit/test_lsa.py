import hashlib
import os
import sys

import pytest
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from sccmkit.errors import PlatformUnsupportedError
from sccmkit.secrets.lsa import (
    BOOTKEY_PERMUTATION,
    DPAPI_SYSTEM_PATH,
    LSA_KEY_PATH,
    POLEKLIST_PATH,
    DpapiSystemKeys,
    LsaSecrets,
    decrypt_lsa_secret,
    permute_boot_key,
)
from sccmkit.secrets.win32 import Win32Api


def make_lsa_secret(key: bytes, secret: bytes) -> bytes:
    salt = os.urandom(32)
    tmp_key = hashlib.sha256(key + salt * 1000).digest()
    blob = len(secret).to_bytes(4, "little") + b"\x00" * 12 + secret
    blob += b"\x00" * (-len(blob) % 16)
    encryptor = Cipher(algorithms.AES(tmp_key), modes.ECB()).encryptor()
    header = (1).to_bytes(4, "little") + os.urandom(16) + (1).to_bytes(4, "little") + b"\x00" * 4
    return header + salt + encryptor.update(blob) + encryptor.finalize()


class FakeRegistry:
    def __init__(self, classes, values):
        self.classes = classes
        self.values = values

    def query_class(self, path):
        return self.classes[path]

    def query_value(self, path, name=""):
        return self.values[path]


def test_permute_boot_key():
    assert permute_boot_key(bytes(range(16))) == bytes(BOOTKEY_PERMUTATION)


def test_decrypt_lsa_secret():
    key = os.urandom(16)
    assert decrypt_lsa_secret(key, make_lsa_secret(key, b"machine secret")) == b"machine secret"


def test_decrypt_lsa_secret_truncated():
    with pytest.raises(ValueError):
        decrypt_lsa_secret(os.urandom(16), b"\x00" * 40)


def test_dpapi_system_from_registry():
    scrambled = os.urandom(16)
    boot_key = permute_boot_key(scrambled)
    lsa_key = os.urandom(32)
    machine_key, user_key = os.urandom(20), os.urandom(20)

    classes = {
        f"{LSA_KEY_PATH}\\{part}": scrambled[i * 4:(i + 1) * 4].hex().upper()
        for i, part in enumerate(("JD", "Skew1", "GBG", "Data"))
    }
    values = {
        POLEKLIST_PATH: make_lsa_secret(boot_key, os.urandom(52) + lsa_key + os.urandom(16)),
        DPAPI_SYSTEM_PATH: make_lsa_secret(lsa_key, b"\x01\x00\x00\x00" + machine_key + user_key),
    }

    lsa = LsaSecrets(FakeRegistry(classes, values))

    assert lsa.boot_key() == boot_key
    assert lsa.lsa_key() == lsa_key
    keys = lsa.dpapi_system()
    assert keys == DpapiSystemKeys(machine_key=machine_key, user_key=user_key)
    assert machine_key.hex() not in repr(keys)


def test_boot_key_class_names_must_be_hex():
    classes = {f"{LSA_KEY_PATH}\\{part}": "zzzzzzzz" for part in ("JD", "Skew1", "GBG", "Data")}
    with pytest.raises(ValueError):
        LsaSecrets(FakeRegistry(classes, {})).boot_key()


@pytest.mark.skipif(sys.platform == "win32", reason="registry is readable on Windows")
@pytest.mark.parametrize("read", [lambda api: api.query_class(LSA_KEY_PATH), lambda api: api.query_value(POLEKLIST_PATH)])
def test_registry_reads_need_windows(read):
    with pytest.raises(PlatformUnsupportedError):
        read(Win32Api())
