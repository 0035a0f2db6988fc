"""
Secret Decryptor - Protected Blobs to Plaintext

Dispatches each SecretBlob to the DataProtector registered for its
protection context and collects per-blob results.

Usage:
    decryptor = SecretDecryptor([PolicySecretDeobfuscator()])
    report = decryptor.decrypt_all(blobs)
    for account in report.credentials:
        ...

Security:
    Plaintext only lives in DecryptedSecret / NetworkAccessAccount values,
    whose repr is redacted. Nothing here logs plaintext.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Protocol, Tuple, Union

from ..errors import DecryptionFailedError, SecretsError
from ..logging import get_logger
from ..policy.models import ProtectionContext, SecretBlob, SecretOrigin
from .dpapi import OfflineDpapiProtector, load_master_keys
from .elevation import ElevationTactic, build_access, elevated, require_administrator
from .lsa import LsaSecrets
from .obfuscation import PolicySecretDeobfuscator
from .sources import BlobSource
from .win32 import Win32Api

logger = get_logger(__name__)


class DataProtector(Protocol):
    context: str

    def unprotect(self, ciphertext: bytes) -> bytes: ...


def decode_secret_text(plaintext: bytes) -> str:
    """Decode UTF-16LE plaintext with its terminators stripped, falling back to UTF-8."""
    if len(plaintext) % 2 == 0:
        try:
            return plaintext.decode("utf-16-le").rstrip("\x00")
        except UnicodeDecodeError:
            pass
    return plaintext.decode("utf-8", errors="replace").rstrip("\x00")


@dataclass(frozen=True)
class DecryptedSecret:
    blob: SecretBlob
    plaintext: bytes

    @property
    def text(self) -> str:
        return decode_secret_text(self.plaintext)

    def __repr__(self) -> str:
        return f"DecryptedSecret({self.blob!r}, plaintext=[REDACTED])"


@dataclass(frozen=True)
class DecryptionFailure:
    blob: SecretBlob
    error: DecryptionFailedError


@dataclass(frozen=True)
class NetworkAccessAccount:
    """A username/password pair assembled from one account instance."""
    username: str
    password: str
    source: Optional[str] = None
    instance_index: int = 0

    def __repr__(self) -> str:
        return f"NetworkAccessAccount(username={self.username!r}, password=[REDACTED])"

    @classmethod
    def pair(cls, decrypted: Iterable[DecryptedSecret]) -> List["NetworkAccessAccount"]:
        """
        Group decrypted account fields by instance. Instances missing one
        half are reported with an empty value for it.
        """
        instances: Dict[Tuple[Optional[str], str, int], Dict[str, str]] = {}
        for secret in decrypted:
            blob = secret.blob
            if blob.origin is not SecretOrigin.NETWORK_ACCESS_ACCOUNT:
                continue
            key = (blob.source, blob.instance, blob.instance_index)
            instances.setdefault(key, {})[blob.name] = secret.text

        accounts = []
        for (source, _, index), fields in instances.items():
            accounts.append(
                cls(
                    username=fields.get("NetworkAccessUsername", ""),
                    password=fields.get("NetworkAccessPassword", ""),
                    source=source,
                    instance_index=index,
                )
            )
        return accounts


@dataclass
class DecryptionReport:
    secrets: List[DecryptedSecret] = field(default_factory=list)
    failures: List[DecryptionFailure] = field(default_factory=list)

    @property
    def credentials(self) -> List[NetworkAccessAccount]:
        return NetworkAccessAccount.pair(self.secrets)

    def by_origin(self, origin: SecretOrigin) -> List[DecryptedSecret]:
        return [s for s in self.secrets if s.blob.origin is origin]


class SecretDecryptor:
    """Route blobs to the protector matching their protection context."""

    def __init__(self, protectors: Union[Iterable[DataProtector], Mapping[str, DataProtector]]):
        if isinstance(protectors, Mapping):
            items = protectors.items()
        else:
            items = ((p.context, p) for p in protectors)
        self.protectors: Dict[str, DataProtector] = {ProtectionContext(k).value: p for k, p in items}

    def decrypt(self, blob: SecretBlob) -> DecryptedSecret:
        """
        Raises:
            DecryptionFailedError: no protector for the context, or it rejected the blob
        """
        context = ProtectionContext(blob.context).value
        protector = self.protectors.get(context)
        if protector is None:
            raise DecryptionFailedError(f"no protector registered for {context} blobs", context=context)
        try:
            plaintext = protector.unprotect(blob.ciphertext)
        except DecryptionFailedError:
            raise
        except (ValueError, OSError) as e:
            raise DecryptionFailedError(str(e), context=context) from e
        return DecryptedSecret(blob=blob, plaintext=plaintext)

    def decrypt_all(self, blobs: Iterable[SecretBlob]) -> DecryptionReport:
        report = DecryptionReport()
        for blob in blobs:
            try:
                report.secrets.append(self.decrypt(blob))
            except DecryptionFailedError as e:
                logger.warning(f"Could not decrypt {blob!r}: {e.message}")
                report.failures.append(DecryptionFailure(blob=blob, error=e))
        logger.info(f"Decrypted {len(report.secrets)} of {len(report.secrets) + len(report.failures)} protected values")
        return report


class Win32DataProtector:
    """DataProtector for blobs protected under the current user."""

    context = ProtectionContext.USER.value

    def __init__(self, api: Win32Api):
        self.api = api

    def unprotect(self, ciphertext: bytes) -> bytes:
        try:
            return self.api.crypt_unprotect_data(ciphertext)
        except OSError as e:
            raise DecryptionFailedError(f"CryptUnprotectData: {e}", context=self.context) from e


class LocalSecretsCollector:
    """
    Recover and decrypt the protected policy values stored on this host.

    Blobs and the SYSTEM master keys are read inside the elevated scope;
    decryption happens after the elevation has been released.
    """

    def __init__(
        self,
        source: BlobSource,
        api: Win32Api,
        tactic: ElevationTactic = ElevationTactic.REGISTRY,
        masterkey_dir: Union[str, Path] = r"C:\Windows\System32\Microsoft\Protect\S-1-5-18\User",
        lsa_factory: Callable[[Win32Api], LsaSecrets] = LsaSecrets,
        key_loader: Callable[[Union[str, Path], bytes], Dict[str, bytes]] = load_master_keys,
    ):
        self.source = source
        self.api = api
        self.tactic = ElevationTactic(tactic)
        self.masterkey_dir = masterkey_dir
        self.lsa_factory = lsa_factory
        self.key_loader = key_loader
        self.decryptor: Optional[SecretDecryptor] = None

    def collect(self) -> DecryptionReport:
        """
        Raises:
            InsufficientPrivilegeError: not running as administrator
            ElevationError: the elevation tactic failed or could not be undone
            SecretsError: system keys could not be recovered
        """
        require_administrator(self.api, "local secrets")

        with elevated(build_access(self.tactic, self.api)):
            blobs = self.source.read_blobs()
            master_keys = self._system_master_keys() if blobs else {}

        if not blobs:
            logger.info("No protected policy values found on this host")
            return DecryptionReport()

        self.decryptor = SecretDecryptor(
            [
                OfflineDpapiProtector(master_keys),
                PolicySecretDeobfuscator(),
                Win32DataProtector(self.api),
            ]
        )
        return self.decryptor.decrypt_all(blobs)

    def decrypt(self, blob: SecretBlob) -> DecryptedSecret:
        if self.decryptor is None:
            raise SecretsError("collect() must run before individual blobs can be decrypted")
        return self.decryptor.decrypt(blob)

    def _system_master_keys(self) -> Dict[str, bytes]:
        try:
            system_keys = self.lsa_factory(self.api).dpapi_system()
        except (OSError, ValueError) as e:
            raise DecryptionFailedError(f"DPAPI_SYSTEM secret not recovered: {e}", context="machine") from e
        return self.key_loader(self.masterkey_dir, system_keys.user_key)
