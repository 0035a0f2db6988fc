"""
Policy secret deobfuscation.

Protected policy values carry their own key material: bytes 4..44 are
hashed into a 3DES key, the ciphertext length sits at offset 52 and the
ciphertext starts at offset 64.
"""

from ..errors import DecryptionFailedError
from .mscrypto import CALG_3DES, CIPHERS, cbc_decrypt, crypt_derive_key

KEY_MATERIAL_OFFSET = 4
KEY_MATERIAL_LENGTH = 0x28
LENGTH_OFFSET = 52
DATA_OFFSET = 64


class PolicySecretDeobfuscator:
    """DataProtector for values obfuscated by the management point."""

    context = "policy"

    def unprotect(self, ciphertext: bytes) -> bytes:
        if len(ciphertext) < DATA_OFFSET:
            raise DecryptionFailedError("policy secret is shorter than its header", context=self.context)

        length = int.from_bytes(ciphertext[LENGTH_OFFSET:LENGTH_OFFSET + 4], "little")
        data = ciphertext[DATA_OFFSET:DATA_OFFSET + length]
        cipher = CIPHERS[CALG_3DES]
        if length == 0 or len(data) != length or length % 8:
            raise DecryptionFailedError("policy secret length is inconsistent", context=self.context)

        key = crypt_derive_key(
            ciphertext[KEY_MATERIAL_OFFSET:KEY_MATERIAL_OFFSET + KEY_MATERIAL_LENGTH], cipher.key_length
        )
        try:
            return cbc_decrypt(cipher, key, b"\x00" * cipher.iv_length, data)
        except ValueError as e:
            raise DecryptionFailedError("policy secret padding is invalid", context=self.context) from e
