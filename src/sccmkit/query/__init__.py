"""Object query interface and the WS-Management backend."""

from .base import ObjectQuery, build_wql, quote_wql
from .wsman import WsManObjectQuery, resource_uri

__all__ = ["ObjectQuery", "build_wql", "quote_wql", "WsManObjectQuery", "resource_uri"]
