"""
Sluice CLI

Command-line interface for operating a Sluice token store.

Commands:
    sluice serve                     Start the API server
    sluice issue CLIENT_ID           Issue a root token
    sluice revoke TOKEN_ID           Revoke a token and its descendants
    sluice audit                     View the exchange audit log
    sluice verify                    Verify audit hash-chain integrity
    sluice purge                     Delete long-expired tokens
    sluice policy add|list|remove    Manage exchange policies
    sluice client add                Register a requesting client
    sluice status                    Show service status

Every command reads configuration via ``load_settings``; pass
``--config`` or set ``SLUICE_CONFIG`` / ``DATABASE_URL``.
"""

from __future__ import annotations

import json
import os
import sys

import click

from sluice import Sluice, __version__
from sluice.config import load_settings
from sluice.core.models import ExchangePolicy, PolicyAction, TokenKind
from sluice.exceptions import SluiceError
from sluice.logging import configure_logging


def _service(ctx: click.Context) -> Sluice:
    obj = ctx.ensure_object(dict)
    if "service" not in obj:
        obj["service"] = Sluice(load_settings(obj.get("config")))
        ctx.call_on_close(obj["service"].close)
    return obj["service"]


def _print_header(title: str) -> None:
    click.echo(f"\n  {'=' * 60}")
    click.echo(f"  {title}")
    click.echo(f"  {'=' * 60}\n")


@click.group()
@click.version_option(version=__version__, prog_name="sluice")
@click.option("--config", "config_path", default=None, help="YAML settings file")
@click.option("--log-level", default="WARNING", help="Logging level")
@click.option("--json-logs", is_flag=True, help="Emit JSON log lines")
@click.pass_context
def cli(ctx: click.Context, config_path: str | None, log_level: str, json_logs: bool) -> None:
    """Sluice: OAuth 2.0 Token Exchange service"""
    ctx.ensure_object(dict)["config"] = config_path
    configure_logging(level=log_level, json_output=json_logs)


@cli.command()
@click.option("--host", default="0.0.0.0", help="Bind address")
@click.option("--port", default=8000, type=int, help="Port number")
@click.option("--reload", is_flag=True, help="Auto-reload on changes")
@click.pass_context
def serve(ctx: click.Context, host: str, port: int, reload: bool) -> None:
    """Start the Sluice API server."""
    import uvicorn

    config_path = ctx.ensure_object(dict).get("config")
    if config_path:
        # The server and its reload workers read settings from SLUICE_CONFIG
        os.environ["SLUICE_CONFIG"] = os.path.abspath(config_path)

    _print_header("Sluice API Server")
    click.echo(f"  Binding: {host}:{port}")
    click.echo(f"  Config: {os.environ.get('SLUICE_CONFIG', 'defaults and environment')}")
    click.echo(f"  Reload: {'enabled' if reload else 'disabled'}")
    click.echo()

    uvicorn.run("sluice.api.server:app", host=host, port=port, reload=reload)


@cli.command()
@click.argument("client_id")
@click.option("--subject", default=None, help="Principal the token represents")
@click.option("--scope", "scopes", multiple=True, help="Granted scope (repeatable)")
@click.option("--audience", "audiences", multiple=True, help="Audience (repeatable)")
@click.option("--ttl", type=int, default=None, help="Lifetime in seconds")
@click.option(
    "--kind",
    type=click.Choice([k.value for k in TokenKind]),
    default=TokenKind.ACCESS.value,
    help="Token kind",
)
@click.option("--opaque", is_flag=True, help="Issue an opaque reference instead of a JWT")
@click.pass_context
def issue(
    ctx: click.Context,
    client_id: str,
    subject: str | None,
    scopes: tuple[str, ...],
    audiences: tuple[str, ...],
    ttl: int | None,
    kind: str,
    opaque: bool,
) -> None:
    """Issue a root token to CLIENT_ID."""
    service = _service(ctx)
    issued = service.issuer.issue_root(
        client_id,
        subject=subject,
        scopes=scopes,
        audience=audiences,
        ttl_seconds=ttl,
        kind=TokenKind(kind),
        signed=False if opaque else None,
    )
    click.echo(
        json.dumps(
            {
                "token_id": issued.token.id,
                "token": issued.credential,
                "token_type": issued.issued_token_type,
                "expires_at": issued.token.expires_at.isoformat(),
            },
            indent=2,
        )
    )


@cli.command()
@click.argument("token_id")
@click.pass_context
def revoke(ctx: click.Context, token_id: str) -> None:
    """Revoke TOKEN_ID and every token derived from it."""
    service = _service(ctx)
    try:
        result = service.revoke_sync(token_id)
    except SluiceError as e:
        click.echo(f"  Error: {e}", err=True)
        sys.exit(1)

    if result.already_revoked:
        click.echo(f"  Token was already revoked; {len(result.newly_revoked)} descendant(s) newly revoked.")
    else:
        click.echo(f"  Revoked {len(result.newly_revoked)} token(s).")


@cli.command()
@click.option("--limit", default=20, type=int, help="Entries to show")
@click.option("--client", "client_id", default=None, help="Only this requesting client")
@click.pass_context
def audit(ctx: click.Context, limit: int, client_id: str | None) -> None:
    """View the exchange audit log."""
    service = _service(ctx)
    total = len(service.audit)
    offset = max(0, total - limit) if client_id is None else 0
    entries = service.audit.entries(limit=limit, offset=offset, requesting_client=client_id)

    _print_header("Exchange Audit Log")
    if not entries:
        click.echo("  No exchanges recorded.")
        return
    for hashed in entries:
        e = hashed.entry
        click.echo(
            f"  #{hashed.sequence:4d} {e.timestamp.isoformat()}  {e.requesting_client:16s} "
            f"[{e.outcome.value:7s}] {e.reason:24s} [{hashed.hash[:12]}]"
        )


@cli.command()
@click.pass_context
def verify(ctx: click.Context) -> None:
    """Verify audit hash-chain integrity."""
    service = _service(ctx)
    _print_header("Audit Chain Verification")
    valid, message = service.audit.verify_integrity()
    click.echo(f"  {message}")
    if not valid:
        sys.exit(1)


@cli.command()
@click.pass_context
def purge(ctx: click.Context) -> None:
    """Delete tokens expired longer than the retention grace period."""
    service = _service(ctx)
    removed = service.purge_expired()
    click.echo(f"  Purged {removed} expired token(s).")


# ─── Policies ───────────────────────────────────────────────

@cli.group()
def policy() -> None:
    """Manage exchange policies."""


@policy.command("add")
@click.argument("requesting_client")
@click.option("--subject-client", default="*", help="Issuing client of the subject token (glob)")
@click.option("--scope", "scopes", multiple=True, help="Allowed scope, '*' for any (repeatable)")
@click.option("--audience", "audiences", multiple=True, help="Allowed audience pattern (repeatable)")
@click.option("--max-depth", type=int, default=None, help="Tighter chain depth limit")
@click.option("--ttl", type=int, default=None, help="Derived token lifetime in seconds")
@click.option("--deny", is_flag=True, help="Create a deny rule")
@click.option("--priority", type=int, default=0, help="Higher wins")
@click.option("--id", "policy_id", default=None, help="Policy id (generated if omitted)")
@click.pass_context
def policy_add(
    ctx: click.Context,
    requesting_client: str,
    subject_client: str,
    scopes: tuple[str, ...],
    audiences: tuple[str, ...],
    max_depth: int | None,
    ttl: int | None,
    deny: bool,
    priority: int,
    policy_id: str | None,
) -> None:
    """Add or replace a policy for REQUESTING_CLIENT (glob)."""
    service = _service(ctx)
    fields = dict(
        requesting_client=requesting_client,
        subject_client=subject_client,
        allowed_scopes=list(scopes),
        allowed_audiences=list(audiences),
        max_depth=max_depth,
        token_ttl_seconds=ttl,
        action=PolicyAction.DENY if deny else PolicyAction.ALLOW,
        priority=priority,
    )
    if policy_id:
        fields["id"] = policy_id
    new_policy = ExchangePolicy(**fields)
    service.save_policy(new_policy)
    click.echo(f"  Saved policy {new_policy.id}")


@policy.command("list")
@click.pass_context
def policy_list(ctx: click.Context) -> None:
    """List policies in evaluation order."""
    service = _service(ctx)
    policies = service.store.list_policies()
    _print_header("Exchange Policies")
    if not policies:
        click.echo("  No policies. Every exchange is denied.")
        return
    for p in policies:
        click.echo(
            f"  {p.id:14s} {p.action.value:5s} prio={p.priority:<4d} "
            f"{p.requesting_client} <- {p.subject_client}  scopes={','.join(p.allowed_scopes) or '-'}"
        )


@policy.command("remove")
@click.argument("policy_id")
@click.pass_context
def policy_remove(ctx: click.Context, policy_id: str) -> None:
    """Delete a policy."""
    service = _service(ctx)
    if not service.delete_policy(policy_id):
        click.echo(f"  No policy {policy_id}", err=True)
        sys.exit(1)
    click.echo(f"  Removed policy {policy_id}")


# ─── Clients ────────────────────────────────────────────────

@cli.group()
def client() -> None:
    """Manage requesting clients."""


@client.command("add")
@click.argument("client_id")
@click.option("--secret", prompt=True, hide_input=True, help="Client secret")
@click.option("--scope", "scopes", multiple=True, help="Scope the client may hold, '*' for any (repeatable)")
@click.pass_context
def client_add(ctx: click.Context, client_id: str, secret: str, scopes: tuple[str, ...]) -> None:
    """Register CLIENT_ID."""
    service = _service(ctx)
    service.clients.register(client_id, secret, list(scopes))
    click.echo(f"  Registered client {client_id}")


@cli.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show service status."""
    service = _service(ctx)
    settings = service.settings
    _print_header("Sluice Status")
    click.echo(f"  Version: {__version__}")
    click.echo(f"  Python: {sys.version.split()[0]}")
    click.echo(f"  Database: {settings.database_url}")
    click.echo(f"  Tokens: {service.store.token_count}")
    click.echo(f"  Policies: {len(service.store.list_policies())}")
    click.echo(f"  Audit entries: {len(service.audit)}")
    click.echo(f"  Max chain depth: {settings.max_chain_depth}")
    click.echo(f"  Signed tokens: {'yes' if settings.issue_signed_tokens else 'no'}")


if __name__ == "__main__":
    cli()
