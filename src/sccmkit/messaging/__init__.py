"""
sccmkit Messaging Subsystem

- MessageCodec: builds signed requests and parses management point replies
- signer: reversed-order RSA signatures and CMS policy envelope unwrapping
- Transport: one-shot HTTP delivery, including client-push relay triggers
"""

from .codec import (
    ContentLocationParams,
    DiscoveryParams,
    MessageCodec,
    PolicyBodyParams,
    PolicyRequestParams,
    RegistrationParams,
)
from .models import (
    Acknowledgment,
    ContentLocation,
    ContentLocationReply,
    MessageType,
    PolicyBody,
    PolicyReply,
    ProtocolMessage,
    RegistrationReply,
    RelayTarget,
    ServerResponse,
)
from .transport import Transport

__all__ = [
    "MessageCodec",
    "Transport",
    "MessageType",
    "ProtocolMessage",
    "ServerResponse",
    "RelayTarget",
    "RegistrationParams",
    "DiscoveryParams",
    "PolicyRequestParams",
    "PolicyBodyParams",
    "ContentLocationParams",
    "RegistrationReply",
    "PolicyReply",
    "PolicyBody",
    "ContentLocation",
    "ContentLocationReply",
    "Acknowledgment",
]
