"""
sccmkit Identity Subsystem

Creates and loads the device identity presented to a management point:

- ClientIdentity: RSA key pair, self-signed certificate and client token
- IdentityProvider: generation, loading and PKCS#12 export of identities

A client token is issued by the server at registration and is immutable
once bound to an identity.
"""

from .provider import (
    ClientIdentity,
    IdentityProvider,
    ms_public_key_blob,
    normalize_client_token,
)

__all__ = [
    "ClientIdentity",
    "IdentityProvider",
    "ms_public_key_blob",
    "normalize_client_token",
]
