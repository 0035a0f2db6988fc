"""
Policy and secret blob types.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Mapping, Optional


class SecretOrigin(str, Enum):
    """Kind of configuration a protected value was found in."""
    NETWORK_ACCESS_ACCOUNT = "network_access_account"
    TASK_SEQUENCE = "task_sequence"
    COLLECTION_VARIABLE = "collection_variable"


class ProtectionContext(str, Enum):
    """Who can unprotect a blob."""
    POLICY = "policy"      # server-side policy obfuscation, key embedded in the blob
    MACHINE = "machine"    # host data protection under the SYSTEM context
    USER = "user"          # host data protection under the current user


# Policy classes that carry protected values
SECRET_CLASSES = {
    "CCM_NetworkAccessAccount": SecretOrigin.NETWORK_ACCESS_ACCOUNT,
    "CCM_TaskSequence": SecretOrigin.TASK_SEQUENCE,
    "CCM_CollectionVariable": SecretOrigin.COLLECTION_VARIABLE,
}


@dataclass(frozen=True)
class PolicyAssignment:
    name: str
    policy_id: str
    policy_version: str
    category: Optional[str] = None
    policy_type: Optional[str] = None
    target_collection: Optional[str] = None
    location: Optional[str] = None
    policy_hash: Optional[str] = None
    flags: Mapping[str, str] = field(default_factory=dict)

    @property
    def has_body(self) -> bool:
        return bool(self.location)


@dataclass(frozen=True)
class SecretBlob:
    """One protected field of one policy instance."""
    context: ProtectionContext
    ciphertext: bytes
    origin: SecretOrigin
    name: str
    instance: str
    instance_index: int = 0
    label: Optional[str] = None
    source: Optional[str] = None

    def __repr__(self) -> str:
        return (
            f"SecretBlob(origin={self.origin.value}, name={self.name!r}, "
            f"instance={self.instance!r}#{self.instance_index}, {len(self.ciphertext)} bytes)"
        )
