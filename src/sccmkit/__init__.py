"""
sccmkit: Configuration Manager client emulation toolkit

An operator tool that acts as a Configuration Manager client against a
management point:
- Client identity creation and loading (RSA key + self-signed certificate)
- Signed protocol messages over HTTP(S), including client-push relay
- Policy resolution and extraction of protected secrets
- Local recovery of protected blobs (live and on-disk) with scoped elevation
- Bounded waiting for collection membership changes
"""

__version__ = "0.4.0"

from .errors import SccmError

__all__ = ["__version__", "SccmError"]
