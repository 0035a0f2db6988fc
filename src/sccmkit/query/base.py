"""
Object query interface.

Site server objects (collections, membership, devices) and the client's
local policy store are reached through a query service. Components depend
on the ObjectQuery protocol only; WsManObjectQuery is the bundled backend.
"""

from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence


class ObjectQuery(Protocol):
    def query(
        self,
        class_name: str,
        properties: Optional[Sequence[str]] = None,
        where: Optional[str] = None,
        order_by: Optional[str] = None,
        namespace: Optional[str] = None,
    ) -> List[Dict[str, Any]]: ...

    def count(self, class_name: str, where: Optional[str] = None, namespace: Optional[str] = None) -> int: ...

    def invoke_method(
        self,
        class_name: str,
        method: str,
        selectors: Optional[Mapping[str, Any]] = None,
        params: Optional[Mapping[str, Any]] = None,
        namespace: Optional[str] = None,
    ) -> Dict[str, Any]: ...


def quote_wql(value: Any) -> str:
    """Render a value as a WQL literal."""
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, (int, float)):
        return str(value)
    escaped = str(value).replace("\\", "\\\\").replace("'", "\\'")
    return f"'{escaped}'"


def build_wql(
    class_name: str,
    properties: Optional[Sequence[str]] = None,
    where: Optional[str] = None,
    order_by: Optional[str] = None,
) -> str:
    if properties:
        selection = ", ".join(properties)
    else:
        selection = "*"
    statement = f"SELECT {selection} FROM {class_name}"
    if where:
        statement += f" WHERE {where}"
    if order_by:
        statement += f" ORDER BY {order_by}"
    return statement
