"""
LSA secret recovery from the local registry.

The boot key is scattered across the class names of four Lsa subkeys; it
unlocks the LSA key stored in PolEKList, which in turn decrypts individual
LSA secrets such as DPAPI_SYSTEM.
"""

from dataclasses import dataclass
from typing import Protocol

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from ..logging import get_logger

logger = get_logger(__name__)

LSA_KEY_PATH = r"SYSTEM\CurrentControlSet\Control\Lsa"
BOOTKEY_PARTS = ("JD", "Skew1", "GBG", "Data")
BOOTKEY_PERMUTATION = (8, 5, 4, 2, 11, 9, 13, 3, 0, 6, 1, 12, 14, 10, 15, 7)

POLEKLIST_PATH = r"SECURITY\Policy\PolEKList"
DPAPI_SYSTEM_PATH = r"SECURITY\Policy\Secrets\DPAPI_SYSTEM\CurrVal"

LSA_SECRET_HEADER = 28
LSA_SECRET_BLOB_HEADER = 16
KEY_ROUNDS = 1000


class RegistryReader(Protocol):
    def query_class(self, path: str) -> str: ...

    def query_value(self, path: str, name: str = "") -> bytes: ...


@dataclass(frozen=True)
class DpapiSystemKeys:
    machine_key: bytes
    user_key: bytes

    def __repr__(self) -> str:
        return "DpapiSystemKeys([REDACTED])"


def permute_boot_key(scrambled: bytes) -> bytes:
    return bytes(scrambled[index] for index in BOOTKEY_PERMUTATION)


def _rounds_key(key: bytes, material: bytes) -> bytes:
    h = hashes.Hash(hashes.SHA256())
    h.update(key)
    for _ in range(KEY_ROUNDS):
        h.update(material)
    return h.finalize()


def _aes_blocks(key: bytes, data: bytes) -> bytes:
    """Decrypt block by block with a zero IV, zero padding the final block."""
    if len(data) % 16:
        data += b"\x00" * (16 - len(data) % 16)
    decryptor = Cipher(algorithms.AES(key), modes.ECB()).decryptor()
    return decryptor.update(data) + decryptor.finalize()


def decrypt_lsa_secret(key: bytes, record: bytes) -> bytes:
    """Decrypt an LSA_SECRET record and return the embedded secret bytes."""
    if len(record) < LSA_SECRET_HEADER + 32:
        raise ValueError("LSA secret record is truncated")
    encrypted = record[LSA_SECRET_HEADER:]
    plaintext = _aes_blocks(_rounds_key(key, encrypted[:32]), encrypted[32:])
    length = int.from_bytes(plaintext[:4], "little")
    secret = plaintext[LSA_SECRET_BLOB_HEADER:LSA_SECRET_BLOB_HEADER + length]
    if len(secret) != length:
        raise ValueError("LSA secret length is inconsistent")
    return secret


class LsaSecrets:
    """
    Read LSA secrets through a registry reader.

    Reading the SECURITY hive requires an elevated scope (relaxed ACL or
    SYSTEM impersonation).
    """

    def __init__(self, registry: RegistryReader):
        self.registry = registry

    def boot_key(self) -> bytes:
        scrambled = "".join(self.registry.query_class(f"{LSA_KEY_PATH}\\{part}") for part in BOOTKEY_PARTS)
        try:
            return permute_boot_key(bytes.fromhex(scrambled))
        except (ValueError, IndexError) as e:
            raise ValueError("boot key class names are not hex") from e

    def lsa_key(self) -> bytes:
        secret = decrypt_lsa_secret(self.boot_key(), self.registry.query_value(POLEKLIST_PATH))
        key = secret[52:84]
        if len(key) != 32:
            raise ValueError("LSA key record is truncated")
        return key

    def dpapi_system(self) -> DpapiSystemKeys:
        secret = decrypt_lsa_secret(self.lsa_key(), self.registry.query_value(DPAPI_SYSTEM_PATH))
        if len(secret) < 44:
            raise ValueError("DPAPI_SYSTEM secret is truncated")
        logger.info("Recovered DPAPI_SYSTEM secret")
        return DpapiSystemKeys(machine_key=secret[4:24], user_key=secret[24:44])
