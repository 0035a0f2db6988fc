"""
Collection membership convergence.

After a membership rule is added or removed the site server re-evaluates
the collection asynchronously. MembershipWaiter polls the materialised
membership until the expected change is visible or the deadline passes.

Timeouts are not errors: the last snapshot is returned with
converged=False unless the caller asks for raise_on_timeout.
"""

import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional, Tuple, Union

from ..errors import ConvergenceTimeoutError
from ..logging import get_logger
from ..query.base import ObjectQuery, quote_wql

logger = get_logger(__name__)

MEMBERSHIP_CLASS = "SMS_FullCollectionMembership"
MEMBER_PROPERTIES = ("ResourceID", "Name", "Domain", "SiteCode", "IsClient")
DEFAULT_TIMEOUT = 15.0
DEFAULT_INTERVAL = 1.0


class ChangeKind(str, Enum):
    ADDED = "added"
    REMOVED = "removed"


@dataclass(frozen=True)
class MembershipSnapshot:
    collection_id: str
    members: Tuple[Mapping[str, Any], ...]
    taken_at: float
    converged: bool = False

    def contains(self, resource: Union[str, int]) -> bool:
        wanted = str(resource).lower()
        for member in self.members:
            if str(member.get("ResourceID", "")).lower() == wanted:
                return True
            if str(member.get("Name", "")).lower() == wanted:
                return True
        return False


class MembershipWaiter:
    """
    Poll collection membership until a resource appears or disappears.

    clock and sleep are injectable so the loop can be driven by a fake clock.
    """

    def __init__(
        self,
        query: ObjectQuery,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        namespace: Optional[str] = None,
    ):
        self.query = query
        self.clock = clock
        self.sleep = sleep
        self.namespace = namespace

    def snapshot(self, collection_id: str) -> MembershipSnapshot:
        rows = self.query.query(
            MEMBERSHIP_CLASS,
            properties=MEMBER_PROPERTIES,
            where=f"CollectionID = {quote_wql(collection_id)}",
            order_by="Name",
            namespace=self.namespace,
        )
        members: Tuple[Dict[str, Any], ...] = tuple(rows)
        return MembershipSnapshot(collection_id=collection_id, members=members, taken_at=self.clock())

    def wait_for_convergence(
        self,
        collection_id: str,
        resource: Union[str, int],
        expected_change: ChangeKind,
        timeout: float = DEFAULT_TIMEOUT,
        interval: float = DEFAULT_INTERVAL,
        cancel: Optional[threading.Event] = None,
        raise_on_timeout: bool = False,
    ) -> MembershipSnapshot:
        """
        Returns the first snapshot showing the change (converged=True), or
        the last snapshot taken once the deadline passes or the wait is
        cancelled (converged=False).

        Raises:
            ConvergenceTimeoutError: only with raise_on_timeout=True
            ObjectQueryError: the membership query failed
        """
        expected_change = ChangeKind(expected_change)
        deadline = self.clock() + max(timeout, 0.0)
        logger.info(
            f"Waiting up to {timeout:g}s for {resource} to be {expected_change.value} in {collection_id}"
        )

        last: Optional[MembershipSnapshot] = None
        try:
            while True:
                last = self.snapshot(collection_id)
                present = last.contains(resource)
                if present == (expected_change is ChangeKind.ADDED):
                    logger.info(f"Collection {collection_id} converged with {len(last.members)} members")
                    return MembershipSnapshot(last.collection_id, last.members, last.taken_at, converged=True)

                if cancel is not None and cancel.is_set():
                    logger.warning("Membership wait cancelled")
                    return last

                remaining = deadline - self.clock()
                if remaining <= 0:
                    break
                self.sleep(min(interval, remaining))
        except KeyboardInterrupt:
            logger.warning("Membership wait interrupted")
            if last is None:
                raise
            return last

        logger.warning(f"Collection {collection_id} did not converge within {timeout:g}s")
        if raise_on_timeout:
            error = ConvergenceTimeoutError(collection_id, timeout)
            error.snapshot = last
            raise error
        return last
