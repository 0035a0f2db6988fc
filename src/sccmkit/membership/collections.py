"""
Direct membership rules on site collections.

Both operations return as soon as the rule change and refresh request
have been accepted; use MembershipWaiter to observe the result.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

from ..errors import InvalidArgumentCombinationError, ObjectQueryError
from ..logging import get_logger
from ..query.base import ObjectQuery, quote_wql

logger = get_logger(__name__)

COLLECTION_CLASS = "SMS_Collection"
DIRECT_RULE_CLASS = "SMS_CollectionRuleDirect"

# SMS_Collection.CollectionType
USER_COLLECTION = 1
DEVICE_COLLECTION = 2

RESOURCE_CLASSES = {
    "device": "SMS_R_System",
    "user": "SMS_R_User",
}


@dataclass(frozen=True)
class CollectionRef:
    collection_id: str
    name: str
    collection_type: str


@dataclass(frozen=True)
class ResourceRef:
    resource_id: int
    resource_class: str
    name: str


class CollectionMembership:
    def __init__(self, query: ObjectQuery, namespace: Optional[str] = None):
        self.query = query
        self.namespace = namespace

    def resolve_collection(
        self, collection_id: Optional[str] = None, collection_name: Optional[str] = None
    ) -> CollectionRef:
        if bool(collection_id) == bool(collection_name):
            raise InvalidArgumentCombinationError("Specify exactly one of a collection ID or a collection name")
        where = (
            f"CollectionID = {quote_wql(collection_id)}" if collection_id else f"Name = {quote_wql(collection_name)}"
        )
        rows = self.query.query(
            COLLECTION_CLASS, properties=("CollectionID", "Name", "CollectionType"), where=where, namespace=self.namespace
        )
        if not rows:
            raise ObjectQueryError(f"no collection matches {collection_id or collection_name}", statement=where)
        if len(rows) > 1:
            raise InvalidArgumentCombinationError(
                f"{len(rows)} collections are named {collection_name}; specify the collection ID instead"
            )
        row = rows[0]
        kind = "user" if str(row.get("CollectionType")) == str(USER_COLLECTION) else "device"
        return CollectionRef(collection_id=row["CollectionID"], name=row.get("Name", ""), collection_type=kind)

    def resolve_resource(
        self,
        device: Optional[str] = None,
        user: Optional[str] = None,
        resource_id: Optional[Union[int, str]] = None,
        collection_type: Optional[str] = None,
    ) -> ResourceRef:
        if device and user:
            raise InvalidArgumentCombinationError("Specify either a device name or a user name, not both")
        if not (device or user or resource_id):
            raise InvalidArgumentCombinationError("Specify a device name, a user name or a resource ID")

        if device:
            kind, where = "device", f"Name = {quote_wql(device)}"
        elif user:
            kind, where = "user", f"UniqueUserName = {quote_wql(user)}"
        else:
            if collection_type not in RESOURCE_CLASSES:
                raise InvalidArgumentCombinationError(
                    "Specify a collection type, a device name or a user name with a resource ID"
                )
            kind, where = collection_type, f"ResourceID = {int(resource_id)}"
        if resource_id and (device or user):
            where += f" AND ResourceID = {int(resource_id)}"

        resource_class = RESOURCE_CLASSES[kind]
        name_property = "Name" if kind == "device" else "UniqueUserName"
        rows = self.query.query(
            resource_class, properties=("ResourceID", name_property), where=where, namespace=self.namespace
        )
        if not rows:
            raise ObjectQueryError(f"no {kind} matches {device or user or resource_id}", statement=where)
        row = rows[0]
        return ResourceRef(
            resource_id=int(row["ResourceID"]), resource_class=resource_class, name=row.get(name_property) or ""
        )

    def add_member(
        self,
        collection_id: str,
        resource_id: int,
        resource_class: str = RESOURCE_CLASSES["device"],
        rule_name: Optional[str] = None,
    ) -> None:
        rule = self._direct_rule(resource_id, resource_class, rule_name or str(resource_id))
        self.query.invoke_method(
            COLLECTION_CLASS,
            "AddMembershipRule",
            selectors={"CollectionID": collection_id},
            params={"collectionRule": rule},
            namespace=self.namespace,
        )
        logger.info(f"Added direct rule for {resource_id} to {collection_id}")
        self.request_refresh(collection_id)

    def remove_member(
        self,
        collection_id: str,
        resource_id: int,
        resource_class: str = RESOURCE_CLASSES["device"],
        rule_name: Optional[str] = None,
    ) -> None:
        rule = self._direct_rule(resource_id, resource_class, rule_name or str(resource_id))
        self.query.invoke_method(
            COLLECTION_CLASS,
            "DeleteMembershipRule",
            selectors={"CollectionID": collection_id},
            params={"collectionRule": rule},
            namespace=self.namespace,
        )
        logger.info(f"Deleted direct rule for {resource_id} from {collection_id}")
        self.request_refresh(collection_id)

    def request_refresh(self, collection_id: str) -> None:
        self.query.invoke_method(
            COLLECTION_CLASS,
            "RequestRefresh",
            selectors={"CollectionID": collection_id},
            params={"IncludeSubCollections": False},
            namespace=self.namespace,
        )

    @staticmethod
    def _direct_rule(resource_id: int, resource_class: str, rule_name: str) -> Dict[str, Any]:
        return {
            "__class__": DIRECT_RULE_CLASS,
            "ResourceClassName": resource_class,
            "ResourceID": int(resource_id),
            "RuleName": rule_name,
        }
