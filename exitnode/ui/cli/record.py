"""
CLI commands for the exported node record.
"""

from __future__ import annotations

import json
import sys

import click


@click.group("record")
def record() -> None:
    """Exit node record (what the transit server needs)."""


@record.command("show")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def show(ctx: click.Context, as_json: bool) -> None:
    """Show the node record."""
    from exitnode.core.persistence.record_file import RecordError, load_record
    from exitnode.ui.cli.common import load_context_or_exit

    context = load_context_or_exit(ctx)
    path = context.record_file if context.record_file.is_file() else context.saved_record_file
    try:
        node = load_record(path)
    except RecordError as e:
        click.secho(f"❌ {e}", fg="red", err=True)
        sys.exit(1)

    if node is None:
        click.secho("❌ No node record: run 'exitnode deploy' first", fg="red", err=True)
        sys.exit(1)

    if as_json:
        click.echo(json.dumps(node.model_dump(mode="json"), indent=2))
        return

    click.secho("\n🛰️  Exit node", fg="cyan", bold=True)
    click.echo(f"   Hostname:  {node.tunnel_hostname}")
    click.echo(f"   UUID:      {node.uuid or 'N/A'}")
    click.echo(f"   Listen:    {node.listen_address}:{node.listen_port}")
    click.echo(f"   Protocol:  {node.protocol}/{node.transport} (security: {node.security})")
    click.echo(f"   Xray:      {node.xray_version or 'N/A'}")
    if node.tunnel_name:
        click.echo(f"   Tunnel:    {node.tunnel_name} ({node.tunnel_id})")
    click.echo(f"   Created:   {node.created_at}")
    if node.hostname_pending:
        click.secho("   ⚠️  Tunnel hostname pending: run 'exitnode step configure-tunnel'", fg="yellow")
    else:
        click.echo(f"\n   Point the transit server at {node.tunnel_hostname}:443")
    click.echo(f"   📄 {path}")
    click.echo()
