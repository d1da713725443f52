"""
Shared CLI plumbing: context loading, sessions, prompts, result output.
"""

from __future__ import annotations

import sys

import click

from exitnode.adapters.registry import AdapterRegistry, create_default_registry
from exitnode.core.config.loader import ConfigError, load_context
from exitnode.core.context import Context
from exitnode.core.engine.commands import CommandRunner
from exitnode.core.engine.session import Confirm, Session, create_session, deny
from exitnode.core.models.pipeline import PipelineResult, StepOutcome

_ICONS = {"ok": "✅", "skipped": "⏭️ ", "failed": "❌", "cancelled": "🚫"}
_COLORS = {"ok": "green", "skipped": "bright_black", "failed": "red", "cancelled": "yellow"}


def get_registry(ctx: click.Context) -> AdapterRegistry:
    """The adapter registry for this invocation (tests pre-seed one in ctx.obj)."""
    registry = ctx.obj.get("registry")
    if registry is None:
        registry = create_default_registry()
        ctx.obj["registry"] = registry
    return registry


def load_context_or_exit(ctx: click.Context) -> Context:
    root = ctx.obj.get("root")
    try:
        return load_context(
            config_path=ctx.obj.get("config_path"),
            overrides={"root": root} if root else None,
        )
    except ConfigError as e:
        click.secho(f"❌ {e}", fg="red", err=True)
        sys.exit(1)


def probe_runner(ctx: click.Context, context: Context) -> CommandRunner:
    """Command runner without a run log, for pre-flight and health checks."""
    return CommandRunner(get_registry(ctx), default_timeout=context.command_timeout)


def interactive_confirm(question: str) -> bool:
    """Ask on a terminal; answer no when nobody is there to ask."""
    if not sys.stdin.isatty():
        return deny(question)
    return click.confirm(question, default=False)


def new_session(ctx: click.Context, context: Context, kind: str, confirm: Confirm) -> Session:
    return create_session(context, get_registry(ctx), kind=kind, confirm=confirm)


# ── Output ──────────────────────────────────────────────────────


def _echo_outcome(outcome: StepOutcome) -> None:
    icon = _ICONS.get(outcome.status, "•")
    seconds = outcome.duration_ms / 1000
    click.secho(f"   {icon} {outcome.step:<22}", fg=_COLORS.get(outcome.status), nl=False)
    click.echo(f" {outcome.message}  ({seconds:.1f}s)")
    for warning in outcome.warnings:
        click.secho(f"      ⚠️  {warning}", fg="yellow")


def print_result(result: PipelineResult, quiet: bool = False) -> None:
    """Per-step summary, then the failure (if any) and the run log path."""
    if not quiet:
        click.echo()
        for outcome in result.outcomes:
            _echo_outcome(outcome)
        click.echo()

    failure = result.failure
    if failure is not None:
        click.secho(f"❌ {failure.step}: {failure.message}", fg="red", bold=True, err=True)
        if failure.operation:
            click.echo(f"   Operation: {failure.operation}", err=True)
        if failure.detail:
            for line in failure.detail.splitlines():
                click.echo(f"   │ {line}", err=True)
    elif result.cancelled:
        click.secho("🚫 Cancelled", fg="yellow", bold=True)
    elif not quiet:
        click.secho(f"✅ {result.kind.capitalize()} complete", fg="green", bold=True)

    if result.run_log is not None:
        click.echo(f"📄 Run log: {result.run_log}", err=failure is not None)


def exit_for(result: PipelineResult) -> None:
    """Exit 1 on failure; cancelled and successful runs exit 0."""
    if result.status == "failed":
        sys.exit(1)
