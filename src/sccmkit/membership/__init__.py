"""Collection membership changes and convergence waiting."""

from .collections import CollectionMembership, CollectionRef, ResourceRef
from .waiter import ChangeKind, MembershipSnapshot, MembershipWaiter

__all__ = [
    "CollectionMembership",
    "CollectionRef",
    "ResourceRef",
    "ChangeKind",
    "MembershipSnapshot",
    "MembershipWaiter",
]
