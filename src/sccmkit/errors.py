"""
sccmkit Unified Error Taxonomy.

This module provides a centralized error hierarchy for all sccmkit components.
All errors include:
- Machine-readable error codes
- Structured details (never secret material)
- Request ID correlation (message IDs) for tracing

Error Code Naming Convention:
- SCCM_<COMPONENT>_<SPECIFIC>
- Components: IDENTITY, MESSAGING, TRANSPORT, SECRETS, MEMBERSHIP, QUERY, CLI

Security:
- NEVER include decrypted secrets, private keys or client tokens in messages
- Errors should be safe to log and print to an operator console
"""

from typing import Any, Dict, Optional


class SccmError(Exception):
    """Base exception for all sccmkit errors.

    All sccmkit errors include:
    - code: Machine-readable error code (e.g., SCCM_TRANSPORT_FAILED)
    - message: Human-readable description
    - details: Structured metadata (NEVER include secret data)
    - request_id: Optional correlation ID (protocol message ID)
    """

    def __init__(
        self,
        message: str,
        code: str = "SCCM_INTERNAL_ERROR",
        details: Optional[Dict[str, Any]] = None,
        request_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}
        self.request_id = request_id

    def __str__(self) -> str:
        parts = [f"[{self.code}] {self.message}"]
        if self.request_id:
            parts.append(f"(request_id: {self.request_id})")
        return " ".join(parts)

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for JSON serialization."""
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
            "request_id": self.request_id,
        }


# =============================================================================
# Identity Errors (SCCM_IDENTITY_*)
# =============================================================================


class IdentityError(SccmError):
    """Base class for client identity errors."""

    pass


class InvalidCertificateError(IdentityError):
    """Raised when supplied certificate bytes cannot be parsed."""

    def __init__(self, reason: str, request_id: Optional[str] = None):
        super().__init__(
            message=f"Invalid client certificate: {reason}",
            code="SCCM_IDENTITY_INVALID_CERTIFICATE",
            request_id=request_id,
        )


class MissingKeyError(IdentityError):
    """Raised when a certificate has no usable private key."""

    def __init__(self, reason: str = "certificate carries no private key", request_id: Optional[str] = None):
        super().__init__(
            message=f"Missing private key: {reason}",
            code="SCCM_IDENTITY_MISSING_KEY",
            request_id=request_id,
        )


class ClientTokenError(IdentityError):
    """Raised when a client token is absent, malformed or rebound."""

    def __init__(self, reason: str, request_id: Optional[str] = None):
        super().__init__(
            message=f"Client token error: {reason}",
            code="SCCM_IDENTITY_CLIENT_TOKEN",
            request_id=request_id,
        )


class IdentityGenerationError(IdentityError):
    """Raised when the local crypto provider fails to produce an identity."""

    def __init__(self, reason: str, request_id: Optional[str] = None):
        super().__init__(
            message=f"Identity generation failed: {reason}",
            code="SCCM_IDENTITY_GENERATION_FAILED",
            request_id=request_id,
        )


# =============================================================================
# Messaging Errors (SCCM_MESSAGING_*)
# =============================================================================


class MessagingError(SccmError):
    """Base class for message codec errors."""

    pass


class MalformedResponseError(MessagingError):
    """Raised when a server response cannot be decoded or fails schema checks."""

    def __init__(
        self,
        reason: str,
        expected_type: Optional[str] = None,
        request_id: Optional[str] = None,
    ):
        super().__init__(
            message=f"Malformed response: {reason}",
            code="SCCM_MESSAGING_MALFORMED_RESPONSE",
            details={"expected_type": expected_type} if expected_type else {},
            request_id=request_id,
        )


class EmptyResponseError(MessagingError):
    """Raised when the server answered with no payload.

    Callers may treat this as a soft failure.
    """

    def __init__(self, expected_type: Optional[str] = None, request_id: Optional[str] = None):
        super().__init__(
            message="Server returned an empty response",
            code="SCCM_MESSAGING_EMPTY_RESPONSE",
            details={"expected_type": expected_type} if expected_type else {},
            request_id=request_id,
        )


class InvalidRelayTargetError(MessagingError):
    """Raised when a relay target is not in host or host@port form."""

    def __init__(self, value: str):
        super().__init__(
            message=f"Invalid relay target '{value}', expected host or host@port",
            code="SCCM_MESSAGING_INVALID_RELAY_TARGET",
            details={"value": value},
        )


# =============================================================================
# Transport Errors (SCCM_TRANSPORT_*)
# =============================================================================


class TransportError(SccmError):
    """Raised on network failure or an unexpected HTTP status."""

    def __init__(
        self,
        reason: str,
        status_code: Optional[int] = None,
        url: Optional[str] = None,
        request_id: Optional[str] = None,
        response_body: Optional[str] = None,
    ):
        details: Dict[str, Any] = {}
        if status_code is not None:
            details["status_code"] = status_code
        if url:
            details["url"] = url
        super().__init__(
            message=f"Transport failed: {reason}",
            code="SCCM_TRANSPORT_FAILED",
            details=details,
            request_id=request_id,
        )
        self.status_code = status_code
        self.response_body = response_body


# =============================================================================
# Secret Errors (SCCM_SECRETS_*)
# =============================================================================


class SecretsError(SccmError):
    """Base class for local secret recovery errors."""

    pass


class InsufficientPrivilegeError(SecretsError):
    """Raised when an operation requires local administrator rights."""

    def __init__(self, operation: str, request_id: Optional[str] = None):
        super().__init__(
            message=f"Operation '{operation}' requires local administrator privileges",
            code="SCCM_SECRETS_INSUFFICIENT_PRIVILEGE",
            details={"operation": operation},
            request_id=request_id,
        )


class ElevationError(SecretsError):
    """Raised when a privilege elevation tactic cannot be acquired or released."""

    def __init__(self, tactic: str, reason: str, request_id: Optional[str] = None):
        super().__init__(
            message=f"Elevation via {tactic} failed: {reason}",
            code="SCCM_SECRETS_ELEVATION_FAILED",
            details={"tactic": tactic},
            request_id=request_id,
        )


class PlatformUnsupportedError(SecretsError):
    """Raised when a host-local operation needs Windows APIs that are unavailable."""

    def __init__(self, api: str):
        super().__init__(
            message=f"{api} is only available on Windows hosts",
            code="SCCM_SECRETS_PLATFORM_UNSUPPORTED",
            details={"api": api},
        )


class SecretSourceError(SecretsError):
    """Raised when the CIM repository file cannot be read."""

    def __init__(self, source: str, reason: str, request_id: Optional[str] = None):
        super().__init__(
            message=f"Cannot read secrets from {source}: {reason}",
            code="SCCM_SECRETS_SOURCE_UNAVAILABLE",
            details={"source": source},
            request_id=request_id,
        )


class DecryptionFailedError(SecretsError):
    """Raised when a data protector rejects a protected blob."""

    def __init__(
        self,
        reason: str,
        context: Optional[str] = None,
        request_id: Optional[str] = None,
    ):
        super().__init__(
            message=f"Decryption failed: {reason}",
            code="SCCM_SECRETS_DECRYPTION_FAILED",
            details={"context": context} if context else {},
            request_id=request_id,
        )


# =============================================================================
# Membership Errors (SCCM_MEMBERSHIP_*)
# =============================================================================


class ConvergenceTimeoutError(SccmError):
    """Raised only when a caller asks the waiter to treat a timeout as fatal."""

    def __init__(self, collection_id: str, timeout: float, request_id: Optional[str] = None):
        super().__init__(
            message=f"Collection {collection_id} did not converge within {timeout:g}s",
            code="SCCM_MEMBERSHIP_TIMEOUT",
            details={"collection_id": collection_id, "timeout": timeout},
            request_id=request_id,
        )
        self.snapshot = None


# =============================================================================
# Object Query Errors (SCCM_QUERY_*)
# =============================================================================


class ObjectQueryError(SccmError):
    """Raised when the object-query service rejects or fails a request."""

    def __init__(self, reason: str, statement: Optional[str] = None, request_id: Optional[str] = None):
        super().__init__(
            message=f"Object query failed: {reason}",
            code="SCCM_QUERY_FAILED",
            details={"statement": statement} if statement else {},
            request_id=request_id,
        )


# =============================================================================
# CLI Errors (SCCM_CLI_*)
# =============================================================================


class InvalidArgumentCombinationError(SccmError):
    """Raised when mutually dependent options are supplied inconsistently."""

    def __init__(self, reason: str):
        super().__init__(
            message=reason,
            code="SCCM_CLI_INVALID_ARGUMENTS",
        )


# =============================================================================
# Error Code Registry
# =============================================================================

ERROR_CODES = {
    # Identity errors
    "SCCM_IDENTITY_INVALID_CERTIFICATE": "Certificate bytes could not be parsed",
    "SCCM_IDENTITY_MISSING_KEY": "Certificate has no matching private key",
    "SCCM_IDENTITY_CLIENT_TOKEN": "Client token missing, malformed or rebound",
    "SCCM_IDENTITY_GENERATION_FAILED": "Local key or certificate generation failed",
    # Messaging errors
    "SCCM_MESSAGING_MALFORMED_RESPONSE": "Server response failed to decode",
    "SCCM_MESSAGING_EMPTY_RESPONSE": "Server response had no payload",
    "SCCM_MESSAGING_INVALID_RELAY_TARGET": "Relay target notation invalid",
    # Transport errors
    "SCCM_TRANSPORT_FAILED": "Network failure or unexpected HTTP status",
    # Secret errors
    "SCCM_SECRETS_INSUFFICIENT_PRIVILEGE": "Local administrator rights required",
    "SCCM_SECRETS_ELEVATION_FAILED": "Privilege elevation tactic failed",
    "SCCM_SECRETS_DECRYPTION_FAILED": "Protected blob could not be decrypted",
    "SCCM_SECRETS_PLATFORM_UNSUPPORTED": "Windows API unavailable on this host",
    "SCCM_SECRETS_SOURCE_UNAVAILABLE": "Secret source could not be read",
    # Membership errors
    "SCCM_MEMBERSHIP_TIMEOUT": "Collection membership did not converge",
    # Query errors
    "SCCM_QUERY_FAILED": "Object query failed",
    # CLI errors
    "SCCM_CLI_INVALID_ARGUMENTS": "Invalid argument combination",
    # Internal
    "SCCM_INTERNAL_ERROR": "Internal error",
}


def validate_error_code(code: str) -> bool:
    """Validate that an error code is registered."""
    return code in ERROR_CODES


__all__ = [
    # Base
    "SccmError",
    # Identity
    "IdentityError",
    "InvalidCertificateError",
    "MissingKeyError",
    "ClientTokenError",
    "IdentityGenerationError",
    # Messaging
    "MessagingError",
    "MalformedResponseError",
    "EmptyResponseError",
    "InvalidRelayTargetError",
    # Transport
    "TransportError",
    # Secrets
    "SecretsError",
    "InsufficientPrivilegeError",
    "ElevationError",
    "DecryptionFailedError",
    "PlatformUnsupportedError",
    "SecretSourceError",
    # Membership
    "ConvergenceTimeoutError",
    # Query
    "ObjectQueryError",
    # CLI
    "InvalidArgumentCombinationError",
    # Registry
    "ERROR_CODES",
    "validate_error_code",
]
