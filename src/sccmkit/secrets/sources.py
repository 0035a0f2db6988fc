"""
Sources of host-protected policy secrets.

The client stores policy values it received under host data protection.
They can be read two ways:
- LiveBlobSource: the current policy instances in the client's object store
- DiskBlobSource: a raw scan of the CIM repository file, which also
  surfaces values of rotated or deleted credentials
"""

import bisect
import re
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Tuple, Union

from ..errors import DecryptionFailedError, SecretSourceError
from ..logging import get_logger
from ..policy.models import SECRET_CLASSES, ProtectionContext, SecretBlob
from ..query.base import ObjectQuery

logger = get_logger(__name__)

ACTUAL_CONFIG_NAMESPACE = r"root\ccm\policy\Machine\ActualConfig"

# Protected properties per class, and the plain property naming an instance
SECRET_PROPERTIES: Dict[str, Tuple[str, ...]] = {
    "CCM_NetworkAccessAccount": ("NetworkAccessUsername", "NetworkAccessPassword"),
    "CCM_TaskSequence": ("TS_Sequence",),
    "CCM_CollectionVariable": ("Value",),
}
LABEL_PROPERTIES = {
    "CCM_TaskSequence": "PKG_Name",
    "CCM_CollectionVariable": "Name",
}

# Repository records store the account password ahead of the user name
DISK_PROPERTY_ORDER: Dict[str, Tuple[str, ...]] = {
    "CCM_NetworkAccessAccount": ("NetworkAccessPassword", "NetworkAccessUsername"),
    "CCM_TaskSequence": ("TS_Sequence",),
    "CCM_CollectionVariable": ("Value",),
}

POLICY_SECRET = re.compile(r'<PolicySecret Version="1"><!\[CDATA\[(?P<hex>[0-9A-Fa-f]*)\]\]></PolicySecret>')
CLASS_MARKER = re.compile("|".join(SECRET_CLASSES))
COLLECTION_VARIABLE_NAME = re.compile(r"CCM_CollectionVariable\x00\x00(?P<name>[^\x00]{1,256})\x00\x00")

LENGTH_PREFIX = 4


class BlobSource(Protocol):
    def read_blobs(self) -> List[SecretBlob]: ...


def parse_policy_secret(value: str) -> bytes:
    """
    Return the protected blob inside a PolicySecret value.

    The hex payload starts with a 4-byte length that is not part of the blob.
    """
    match = POLICY_SECRET.search(value)
    hex_data = match.group("hex") if match else value.strip()
    try:
        data = bytes.fromhex(hex_data)
    except ValueError as e:
        raise DecryptionFailedError("policy secret value is not hex", context=ProtectionContext.MACHINE.value) from e
    if len(data) <= LENGTH_PREFIX:
        raise DecryptionFailedError("policy secret value is empty", context=ProtectionContext.MACHINE.value)
    return data[LENGTH_PREFIX:]


class LiveBlobSource:
    """Read protected values from the client's current policy instances."""

    def __init__(self, query: ObjectQuery, namespace: str = ACTUAL_CONFIG_NAMESPACE):
        self.query = query
        self.namespace = namespace

    def read_blobs(self) -> List[SecretBlob]:
        blobs: List[SecretBlob] = []
        for class_name, properties in SECRET_PROPERTIES.items():
            label_property = LABEL_PROPERTIES.get(class_name)
            wanted = list(properties) + ([label_property] if label_property else [])
            instances = self.query.query(class_name, properties=wanted, namespace=self.namespace)
            logger.info(f"{class_name}: {len(instances)} instances")

            for index, instance in enumerate(instances):
                label = instance.get(label_property) if label_property else None
                for name in properties:
                    value = instance.get(name)
                    if not value:
                        continue
                    try:
                        ciphertext = parse_policy_secret(value)
                    except DecryptionFailedError as e:
                        logger.warning(f"{class_name}.{name}[{index}]: {e.message}")
                        continue
                    blobs.append(
                        SecretBlob(
                            context=ProtectionContext.MACHINE,
                            ciphertext=ciphertext,
                            origin=SECRET_CLASSES[class_name],
                            name=name,
                            instance=class_name,
                            instance_index=index,
                            label=label,
                            source="live",
                        )
                    )
        return blobs


class DiskBlobSource:
    """
    Scan the CIM repository for protected values.

    Each PolicySecret record is attributed to the nearest preceding class
    name in the file. Consecutive secrets under one class marker are
    assigned property names in repository order.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def read_blobs(self) -> List[SecretBlob]:
        try:
            raw = self.path.read_bytes()
        except OSError as e:
            logger.error(f"Cannot read repository {self.path}: {e}")
            raise SecretSourceError(str(self.path), e.strerror or str(e)) from e
        return self.scan(raw)

    def scan(self, raw: bytes) -> List[SecretBlob]:
        text = raw.decode("latin-1")
        markers = [(m.start(), m.group(0)) for m in CLASS_MARKER.finditer(text)]
        positions = [position for position, _ in markers]

        groups: Dict[int, List[str]] = {}
        for match in POLICY_SECRET.finditer(text):
            slot = bisect.bisect_left(positions, match.start()) - 1
            if slot < 0:
                continue
            groups.setdefault(slot, []).append(match.group("hex"))

        blobs: List[SecretBlob] = []
        counters = {name: 0 for name in SECRET_CLASSES}
        for slot in sorted(groups):
            position, class_name = markers[slot]
            order = DISK_PROPERTY_ORDER[class_name]
            label = self._label(text, position, class_name)
            for offset in range(0, len(groups[slot]), len(order)):
                index = counters[class_name]
                counters[class_name] += 1
                for name, value in zip(order, groups[slot][offset:offset + len(order)]):
                    try:
                        ciphertext = parse_policy_secret(value)
                    except DecryptionFailedError as e:
                        logger.warning(f"{class_name}.{name} at offset {position}: {e.message}")
                        continue
                    blobs.append(
                        SecretBlob(
                            context=ProtectionContext.MACHINE,
                            ciphertext=ciphertext,
                            origin=SECRET_CLASSES[class_name],
                            name=name,
                            instance=class_name,
                            instance_index=index,
                            label=label,
                            source="disk",
                        )
                    )

        logger.info(f"Found {len(blobs)} protected values in {self.path.name}")
        return blobs

    @staticmethod
    def _label(text: str, position: int, class_name: str) -> Optional[str]:
        if class_name != "CCM_CollectionVariable":
            return None
        match = COLLECTION_VARIABLE_NAME.match(text, position)
        return match.group("name") if match else None
