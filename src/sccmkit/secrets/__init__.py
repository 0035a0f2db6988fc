"""
Secret recovery: data protectors, blob sources, system key recovery and
scoped elevation.
"""

from .decryptor import (
    DataProtector,
    DecryptedSecret,
    DecryptionFailure,
    DecryptionReport,
    LocalSecretsCollector,
    NetworkAccessAccount,
    SecretDecryptor,
    Win32DataProtector,
    decode_secret_text,
)
from .dpapi import DpapiBlob, MasterKeyFile, OfflineDpapiProtector, load_master_keys
from .elevation import (
    ElevatedAccess,
    ElevationTactic,
    RegistryAclRelaxation,
    SystemTokenImpersonation,
    build_access,
    elevated,
    require_administrator,
)
from .lsa import DpapiSystemKeys, LsaSecrets
from .obfuscation import PolicySecretDeobfuscator
from .sources import DiskBlobSource, LiveBlobSource, parse_policy_secret
from .win32 import Win32Api

__all__ = [
    "DataProtector",
    "DecryptedSecret",
    "DecryptionFailure",
    "DecryptionReport",
    "LocalSecretsCollector",
    "NetworkAccessAccount",
    "SecretDecryptor",
    "Win32DataProtector",
    "decode_secret_text",
    "DpapiBlob",
    "MasterKeyFile",
    "OfflineDpapiProtector",
    "load_master_keys",
    "ElevatedAccess",
    "ElevationTactic",
    "RegistryAclRelaxation",
    "SystemTokenImpersonation",
    "build_access",
    "elevated",
    "require_administrator",
    "DpapiSystemKeys",
    "LsaSecrets",
    "PolicySecretDeobfuscator",
    "DiskBlobSource",
    "LiveBlobSource",
    "parse_policy_secret",
    "Win32Api",
]
