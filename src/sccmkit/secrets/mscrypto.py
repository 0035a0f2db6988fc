"""
CryptoAPI algorithm identifiers and key derivation helpers.
"""

from dataclasses import dataclass
from typing import Callable, Dict

from cryptography.hazmat.decrepit.ciphers.algorithms import TripleDES
from cryptography.hazmat.primitives import hashes, padding
from cryptography.hazmat.primitives.ciphers import Cipher, CipherAlgorithm, algorithms, modes

CALG_3DES = 0x6603
CALG_AES_128 = 0x660E
CALG_AES_192 = 0x660F
CALG_AES_256 = 0x6610
CALG_SHA1 = 0x8004
CALG_HMAC = 0x8009
CALG_SHA_256 = 0x800C
CALG_SHA_384 = 0x800D
CALG_SHA_512 = 0x800E


@dataclass(frozen=True)
class CipherSpec:
    key_length: int
    iv_length: int
    factory: Callable[[bytes], CipherAlgorithm]


@dataclass(frozen=True)
class HashSpec:
    factory: Callable[[], hashes.HashAlgorithm]
    block_size: int

    @property
    def digest_size(self) -> int:
        return self.factory().digest_size


CIPHERS: Dict[int, CipherSpec] = {
    CALG_3DES: CipherSpec(24, 8, TripleDES),
    CALG_AES_128: CipherSpec(16, 16, algorithms.AES),
    CALG_AES_192: CipherSpec(24, 16, algorithms.AES),
    CALG_AES_256: CipherSpec(32, 16, algorithms.AES),
}

HASHES: Dict[int, HashSpec] = {
    CALG_SHA1: HashSpec(hashes.SHA1, 64),
    CALG_HMAC: HashSpec(hashes.SHA1, 64),
    CALG_SHA_256: HashSpec(hashes.SHA256, 64),
    CALG_SHA_384: HashSpec(hashes.SHA384, 128),
    CALG_SHA_512: HashSpec(hashes.SHA512, 128),
}


def digest(algorithm: hashes.HashAlgorithm, *parts: bytes) -> bytes:
    h = hashes.Hash(algorithm)
    for part in parts:
        h.update(part)
    return h.finalize()


def crypt_derive_key(material: bytes, key_length: int, hash_spec: HashSpec = HASHES[CALG_SHA1]) -> bytes:
    """
    CryptDeriveKey: hash the material, and when the hash is shorter than the
    key, extend it with the ipad/opad construction.
    """
    base = digest(hash_spec.factory(), material)
    return expand_key(base, key_length, hash_spec)


def expand_key(base: bytes, key_length: int, hash_spec: HashSpec) -> bytes:
    if len(base) >= key_length:
        return base[:key_length]
    padded = base.ljust(hash_spec.block_size, b"\x00")
    ipad = bytes(b ^ 0x36 for b in padded)
    opad = bytes(b ^ 0x5C for b in padded)
    return (digest(hash_spec.factory(), ipad) + digest(hash_spec.factory(), opad))[:key_length]


def cbc_decrypt(cipher: CipherSpec, key: bytes, iv: bytes, data: bytes, unpad: bool = True) -> bytes:
    """Decrypt CBC data; raises ValueError on bad length or padding."""
    algorithm = cipher.factory(key[: cipher.key_length])
    decryptor = Cipher(algorithm, modes.CBC(iv[: cipher.iv_length])).decryptor()
    plaintext = decryptor.update(data) + decryptor.finalize()
    if not unpad:
        return plaintext
    unpadder = padding.PKCS7(algorithm.block_size).unpadder()
    return unpadder.update(plaintext) + unpadder.finalize()
