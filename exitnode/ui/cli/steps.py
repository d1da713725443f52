"""
CLI commands for single deploy steps.

One subcommand per step, for manual and resume execution:

    exitnode step build-xray
    exitnode step configure-xray --force --yes
"""

from __future__ import annotations

import json

import click

from exitnode.core.steps import DEPLOY_STEPS


@click.group("step")
def step() -> None:
    """Run one deploy step."""


def _run_step(ctx: click.Context, name: str, force: bool, yes: bool, as_json: bool) -> None:
    from exitnode.core.steps import get_step
    from exitnode.core.use_cases.deploy import run_step
    from exitnode.ui.cli.common import (
        exit_for,
        interactive_confirm,
        load_context_or_exit,
        new_session,
        print_result,
    )

    context = load_context_or_exit(ctx)
    rerun_prompt = get_step(name).rerun_prompt

    def confirm(question: str) -> bool:
        # --yes covers the re-run prompt only; tunnel recreation is still asked
        if yes and question == rerun_prompt:
            return True
        return interactive_confirm(question)

    session = new_session(ctx, context, "step", confirm)
    result = run_step(session, name, force=force)

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
    else:
        print_result(result, quiet=ctx.obj.get("quiet", False))
    exit_for(result)


def _make_command(name: str, title: str, destructive: bool) -> click.Command:
    help_text = f"{title}."
    if destructive:
        help_text += " Forcing a re-run regenerates the client UUID."

    @click.command(name, help=help_text)
    @click.option("--force", is_flag=True, help="Run even if the step is already done.")
    @click.option("--yes", "-y", is_flag=True, help="Confirm the re-run prompt without asking. Other prompts are still asked.")
    @click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
    @click.pass_context
    def command(ctx: click.Context, force: bool, yes: bool, as_json: bool) -> None:
        _run_step(ctx, name, force, yes, as_json)

    return command


for _step in DEPLOY_STEPS:
    step.add_command(_make_command(_step.name, _step.title, _step.destructive_rerun))
