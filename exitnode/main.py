"""
xray exit node — CLI entrypoint.

Usage:
    exitnode --help
    exitnode deploy
    exitnode step configure-tunnel
    exitnode status
    exitnode uninstall
"""

from __future__ import annotations

import json
import os
import sys
from pathlib import Path

import click

from exitnode import __version__
from exitnode.core.observability.logging_config import resolve_level, setup_logging


@click.group()
@click.version_option(version=__version__, prog_name="exitnode")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output.")
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-essential output.")
@click.option("--debug", is_flag=True, help="Enable debug logging (very verbose).")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(dir_okay=False),
    default=None,
    help="Path to deploy.yml (default: /etc/xray-exit/deploy.yml if present).",
)
@click.option(
    "--root",
    type=click.Path(file_okay=False),
    default=None,
    help="Stage every managed path under this directory instead of /.",
)
@click.pass_context
def cli(
    ctx: click.Context,
    verbose: bool,
    quiet: bool,
    debug: bool,
    config_path: str | None,
    root: str | None,
) -> None:
    """Deploy and operate a Raspberry Pi Xray exit node behind a Cloudflare Tunnel."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["quiet"] = quiet
    ctx.obj["debug"] = debug
    ctx.obj["config_path"] = Path(config_path) if config_path else None
    ctx.obj["root"] = Path(root).resolve() if root else None

    # ── Logging setup (once, at process start) ──────────────────
    setup_logging(
        level=resolve_level(verbose=verbose, quiet=quiet, debug=debug),
        log_file=os.environ.get("XRAY_EXIT_LOG_FILE"),
        log_file_level=os.environ.get("XRAY_EXIT_LOG_FILE_LEVEL"),
    )


@cli.command()
@click.option("--yes", "-y", is_flag=True, help="Answer yes to the pre-flight prompts.")
@click.option(
    "--force",
    "force",
    multiple=True,
    metavar="STEP",
    help="Re-run STEP even if already done (repeatable).",
)
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def deploy(ctx: click.Context, yes: bool, force: tuple[str, ...], as_json: bool) -> None:
    """Run the full deployment (pre-flight checks, then all seven steps)."""
    from exitnode.core.steps import step_names
    from exitnode.core.use_cases.deploy import deploy as run_deploy
    from exitnode.core.use_cases.deploy import run_preflight
    from exitnode.ui.cli.common import (
        exit_for,
        interactive_confirm,
        load_context_or_exit,
        new_session,
        print_result,
        probe_runner,
    )

    unknown = sorted(set(force) - set(step_names()))
    if unknown:
        raise click.BadParameter(
            f"unknown step(s): {', '.join(unknown)} (choose from {', '.join(step_names())})",
            param_hint="--force",
        )

    context = load_context_or_exit(ctx)
    quiet = ctx.obj.get("quiet", False)

    def ask(question: str) -> bool:
        return True if yes else click.confirm(question, default=False)

    def ask_token() -> str | None:
        if yes:
            return None
        click.secho("⚠️  CF_API_TOKEN is not set; the tunnel step needs it.", fg="yellow")
        if not click.confirm("Do you have CF_API_TOKEN ready?", default=False):
            return None
        return click.prompt("Enter CF_API_TOKEN", hide_input=True)

    if not quiet:
        click.secho(f"\n🚀 Xray exit node deployment ({context.xray_version})", fg="cyan", bold=True)

    preflight = run_preflight(context, probe_runner(ctx, context), ask, ask_token)
    for message in preflight.messages:
        click.echo(f"   • {message}")
    if preflight.error:
        click.secho(f"❌ Pre-flight failed: {preflight.error}", fg="red", bold=True, err=True)
        sys.exit(1)
    if preflight.cancelled:
        click.secho("🚫 Deployment cancelled", fg="yellow")
        return

    session = new_session(ctx, preflight.context, "deploy", interactive_confirm)
    result = run_deploy(session, force=force)

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
    else:
        print_result(result, quiet=quiet)
        if result.status == "ok" and not quiet:
            _print_node_summary(preflight.context)
        elif result.status == "failed":
            click.echo("   Fix the problem and re-run 'exitnode deploy': completed steps are skipped.")
    exit_for(result)


def _print_node_summary(context) -> None:
    from exitnode.core.persistence.record_file import RecordError, load_record

    try:
        node = load_record(context.record_file)
    except RecordError:
        return
    if node is None:
        return
    click.secho("\n🛰️  Save this information", fg="cyan", bold=True)
    click.echo(f"   Hostname:  {node.tunnel_hostname}:443")
    click.echo(f"   UUID:      {node.uuid}")
    click.echo(f"   Protocol:  {node.protocol} over {node.transport}")
    click.echo()


@cli.command()
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def status(ctx: click.Context, as_json: bool) -> None:
    """Check services, ports, processes, files and resources (read-only)."""
    from exitnode.core.observability.health import check_node_health
    from exitnode.ui.cli.common import load_context_or_exit, probe_runner

    context = load_context_or_exit(ctx)
    health = check_node_health(context, probe_runner(ctx, context))

    if as_json:
        click.echo(json.dumps(health.to_dict(), indent=2))
        sys.exit(0 if health.ok else 1)

    status_colors = {"healthy": "green", "degraded": "yellow", "unhealthy": "red"}
    status_icons = {"healthy": "✅", "degraded": "⚠️ ", "unhealthy": "❌"}

    icon = status_icons.get(health.status, "❓")
    color = status_colors.get(health.status, "white")
    click.secho(f"\n{icon} Node: {health.status.upper()}", fg=color, bold=True)
    click.echo()

    for comp in health.components:
        c_icon = status_icons.get(comp.status, "❓")
        c_color = status_colors.get(comp.status, "white")
        click.secho(f"   {c_icon} {comp.name:<20}", fg=c_color, nl=False)
        click.echo(f" {comp.message}")
        if ctx.obj.get("verbose") and comp.details:
            for key, value in comp.details.items():
                if isinstance(value, list):
                    click.echo(f"        {key}:")
                    for line in value:
                        click.echo(f"          {line}")
                else:
                    click.echo(f"        {key}: {value}")

    click.echo()
    if not health.ok:
        sys.exit(1)


@cli.command()
@click.option("--yes", "-y", is_flag=True, help="Skip the typed confirmation.")
@click.option(
    "--remove-toolchain/--keep-toolchain",
    default=None,
    help="Also remove Go and the build tools (asked interactively if omitted).",
)
@click.pass_context
def uninstall(ctx: click.Context, yes: bool, remove_toolchain: bool | None) -> None:
    """Remove services, tunnel, files, binaries and users."""
    from exitnode.core.use_cases.uninstall import CONFIRMATION_WORD, tear_down
    from exitnode.ui.cli.common import (
        exit_for,
        interactive_confirm,
        load_context_or_exit,
        new_session,
        print_result,
    )

    context = load_context_or_exit(ctx)

    confirmed = yes
    if not yes:
        click.secho("⚠️  This removes xray, cloudflared, their services, logs and users,", fg="red")
        click.secho("   and deletes the Cloudflare Tunnel. It cannot be undone.", fg="red")
        answer = click.prompt(
            f"Type '{CONFIRMATION_WORD}' to confirm", default="", show_default=False
        )
        confirmed = answer.strip() == CONFIRMATION_WORD

    if confirmed and remove_toolchain is None:
        remove_toolchain = False if yes else click.confirm(
            "Also remove Go and build tools?", default=False
        )

    session = new_session(ctx, context, "uninstall", interactive_confirm)
    result = tear_down(session, confirmed=confirmed, remove_toolchain=bool(remove_toolchain))
    if not confirmed:
        click.secho("🚫 Uninstall cancelled", fg="yellow")
        return

    print_result(result, quiet=ctx.obj.get("quiet", False))
    exit_for(result)


@cli.group()
def config() -> None:
    """Deployment configuration commands."""


@config.command("show")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def config_show(ctx: click.Context, as_json: bool) -> None:
    """Show the effective configuration (API token redacted)."""
    from exitnode.ui.cli.common import load_context_or_exit

    context = load_context_or_exit(ctx)
    data = context.redacted()

    if as_json:
        click.echo(json.dumps(data, indent=2))
        return

    click.secho("\n⚙️  Effective configuration", fg="cyan", bold=True)
    for key, value in data.items():
        click.echo(f"   {key:<24} {value}")
    click.echo()


# ── Register subcommand groups ──────────────────────────────────

from exitnode.ui.cli.record import record  # noqa: E402
from exitnode.ui.cli.steps import step  # noqa: E402

cli.add_command(step)
cli.add_command(record)


if __name__ == "__main__":
    cli()
