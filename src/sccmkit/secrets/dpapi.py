"""
Offline Data Protection API

Parses protected blobs and master key files and decrypts them with keys
recovered from the local security hive, without calling into the OS.

Usage:
    keys = load_master_keys(settings.SYSTEM_MASTERKEY_DIR, system_keys.user_key)
    protector = OfflineDpapiProtector(keys)
    plaintext = protector.unprotect(blob_bytes)
"""

import hmac
import struct
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Mapping, Optional, Union

from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from ..errors import DecryptionFailedError
from ..logging import get_logger
from .mscrypto import CALG_SHA1, CIPHERS, HASHES, HashSpec, cbc_decrypt, digest, expand_key

logger = get_logger(__name__)

MASTERKEY_FILE_HEADER = 128


class _Reader:
    """Sequential little-endian reader over a byte buffer."""

    def __init__(self, data: bytes, offset: int = 0):
        self.data = data
        self.offset = offset

    def u32(self) -> int:
        (value,) = struct.unpack_from("<I", self.data, self.offset)
        self.offset += 4
        return value

    def u64(self) -> int:
        (value,) = struct.unpack_from("<Q", self.data, self.offset)
        self.offset += 8
        return value

    def take(self, length: int) -> bytes:
        if self.offset + length > len(self.data):
            raise ValueError("structure is truncated")
        chunk = self.data[self.offset:self.offset + length]
        self.offset += length
        return chunk

    def sized(self) -> bytes:
        return self.take(self.u32())


@dataclass(frozen=True)
class DpapiBlob:
    master_key_guid: str
    flags: int
    description: str
    crypt_algorithm: int
    salt: bytes
    hash_algorithm: int
    hmac_key: bytes
    data: bytes
    signature: bytes
    signed_region: bytes

    @classmethod
    def parse(cls, raw: bytes) -> "DpapiBlob":
        reader = _Reader(raw)
        reader.u32()  # version
        reader.take(16)  # provider
        signed_start = reader.offset
        reader.u32()  # master key version
        guid = str(uuid.UUID(bytes_le=reader.take(16)))
        flags = reader.u32()
        description = reader.sized().decode("utf-16-le", errors="replace").rstrip("\x00")
        crypt_algorithm = reader.u32()
        reader.u32()  # crypt key length
        salt = reader.sized()
        reader.sized()  # hmac key
        hash_algorithm = reader.u32()
        reader.u32()  # hash length
        hmac_key = reader.sized()
        data = reader.sized()
        signed_end = reader.offset
        signature = reader.sized()
        return cls(
            master_key_guid=guid,
            flags=flags,
            description=description,
            crypt_algorithm=crypt_algorithm,
            salt=salt,
            hash_algorithm=hash_algorithm,
            hmac_key=hmac_key,
            data=data,
            signature=signature,
            signed_region=raw[signed_start:signed_end],
        )

    def decrypt(self, master_key: bytes, entropy: Optional[bytes] = None) -> Optional[bytes]:
        """Return the plaintext, or None when the blob signature does not verify."""
        cipher = CIPHERS.get(self.crypt_algorithm)
        hash_spec = HASHES.get(self.hash_algorithm)
        if cipher is None or hash_spec is None:
            raise ValueError(f"unsupported algorithms {self.crypt_algorithm:#x}/{self.hash_algorithm:#x}")

        key_hash = digest(HASHES[CALG_SHA1].factory(), master_key)
        session = hmac.new(key_hash, self.salt + (entropy or b""), hash_spec.factory().name).digest()
        derived = expand_key(session, cipher.key_length, hash_spec)
        plaintext = cbc_decrypt(cipher, derived, b"\x00" * cipher.iv_length, self.data)

        if self._signature_matches(key_hash, hash_spec, entropy):
            return plaintext
        return None

    def _signature_matches(self, key_hash: bytes, hash_spec: HashSpec, entropy: Optional[bytes]) -> bool:
        name = hash_spec.factory().name
        extra = entropy or b""
        standard = hmac.new(key_hash, self.hmac_key + extra + self.signed_region, name).digest()
        if hmac.compare_digest(standard, self.signature):
            return True

        # Older providers nest the HMAC key inside the inner hash
        padded = key_hash.ljust(hash_spec.block_size, b"\x00")[: hash_spec.block_size]
        inner = digest(hash_spec.factory(), bytes(b ^ 0x36 for b in padded), self.hmac_key)
        outer = digest(hash_spec.factory(), bytes(b ^ 0x5C for b in padded), inner, extra, self.signed_region)
        return hmac.compare_digest(outer, self.signature)


@dataclass(frozen=True)
class MasterKeyFile:
    guid: str
    salt: bytes
    iterations: int
    hash_algorithm: int
    crypt_algorithm: int
    encrypted: bytes

    @classmethod
    def parse(cls, raw: bytes) -> "MasterKeyFile":
        header = _Reader(raw)
        header.u32()  # version
        header.take(8)
        guid = header.take(72).decode("utf-16-le", errors="replace").rstrip("\x00")
        header.take(12)
        master_key_length = header.u64()
        block = _Reader(raw[MASTERKEY_FILE_HEADER:MASTERKEY_FILE_HEADER + master_key_length])
        block.u32()  # version
        salt = block.take(16)
        iterations = block.u32()
        hash_algorithm = block.u32()
        crypt_algorithm = block.u32()
        return cls(
            guid=guid.lower(),
            salt=salt,
            iterations=iterations,
            hash_algorithm=hash_algorithm,
            crypt_algorithm=crypt_algorithm,
            encrypted=block.data[block.offset:],
        )

    def decrypt(self, key: bytes) -> Optional[bytes]:
        """Return the 64-byte master key, or None when the key is wrong."""
        cipher = CIPHERS.get(self.crypt_algorithm)
        hash_spec = HASHES.get(self.hash_algorithm)
        if cipher is None or hash_spec is None:
            raise ValueError(f"unsupported algorithms {self.crypt_algorithm:#x}/{self.hash_algorithm:#x}")

        derived = PBKDF2HMAC(
            algorithm=hash_spec.factory(),
            length=cipher.key_length + cipher.iv_length,
            salt=self.salt,
            iterations=self.iterations,
        ).derive(key)
        cleartext = cbc_decrypt(
            cipher, derived[: cipher.key_length], derived[cipher.key_length:], self.encrypted, unpad=False
        )

        name = hash_spec.factory().name
        master_key = cleartext[-64:]
        hmac_salt = cleartext[:16]
        expected = cleartext[16:16 + hash_spec.digest_size]
        hmac_key = hmac.new(key, hmac_salt, name).digest()
        calculated = hmac.new(hmac_key, master_key, name).digest()[: hash_spec.digest_size]
        if hmac.compare_digest(calculated, expected):
            return master_key
        return None


def load_master_keys(directory: Union[str, Path], key: bytes) -> Dict[str, bytes]:
    """
    Decrypt every master key file in a directory.

    Files that cannot be parsed or decrypted are skipped.

    Returns:
        Mapping of lower-case GUID to decrypted master key
    """
    master_keys: Dict[str, bytes] = {}
    for path in sorted(Path(directory).iterdir()):
        if not path.is_file() or path.name.lower() == "preferred":
            continue
        try:
            master_key_file = MasterKeyFile.parse(path.read_bytes())
            master_key = master_key_file.decrypt(key)
        except (ValueError, struct.error, OSError) as e:
            logger.warning(f"Skipping master key file {path.name}: {e}")
            continue
        if master_key is None:
            logger.warning(f"Master key {path.name} did not decrypt with the system key")
            continue
        master_keys[master_key_file.guid] = master_key

    logger.info(f"Decrypted {len(master_keys)} system master keys")
    return master_keys


class OfflineDpapiProtector:
    """DataProtector backed by decrypted master keys."""

    context = "machine"

    def __init__(self, master_keys: Mapping[str, bytes]):
        self.master_keys = {guid.lower(): key for guid, key in master_keys.items()}

    def unprotect(self, ciphertext: bytes) -> bytes:
        try:
            blob = DpapiBlob.parse(ciphertext)
        except (ValueError, struct.error) as e:
            raise DecryptionFailedError("not a protected data blob", context=self.context) from e

        master_key = self.master_keys.get(blob.master_key_guid)
        if master_key is None:
            raise DecryptionFailedError(
                f"master key {blob.master_key_guid} is not available", context=self.context
            )
        try:
            plaintext = blob.decrypt(master_key)
        except ValueError as e:
            raise DecryptionFailedError(str(e), context=self.context) from e
        if plaintext is None:
            raise DecryptionFailedError("blob signature does not verify", context=self.context)
        return plaintext
