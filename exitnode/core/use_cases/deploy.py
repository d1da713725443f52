"""
Deploy use case — pre-flight checks, then the deploy pipeline.

Pre-flight runs before any Session exists: it may still replace the
Context (an API token typed in by the operator).  Once the pipeline
starts the Context is fixed.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Collection
from dataclasses import dataclass, field

from exitnode.core.context import Context
from exitnode.core.engine.commands import CommandRunner
from exitnode.core.engine.runner import run_pipeline
from exitnode.core.engine.session import Confirm, Session
from exitnode.core.models.pipeline import PipelineResult
from exitnode.core.persistence.atomic import write_atomic
from exitnode.core.services.host import ARM64_ARCHES, detect_arch, free_mb, is_root
from exitnode.core.steps import DEPLOY_STEPS, get_step

logger = logging.getLogger(__name__)

CONNECTIVITY_PROBE = "1.1.1.1"


@dataclass
class PreflightResult:
    """Outcome of the checks that run before the pipeline."""

    context: Context
    cancelled: bool = False
    error: str | None = None
    free_mb: int | None = None
    messages: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.cancelled and self.error is None


def run_preflight(
    context: Context,
    commands: CommandRunner,
    confirm: Confirm,
    ask_token: Callable[[], str | None] | None = None,
) -> PreflightResult:
    """Root, architecture, connectivity, API token and disk space checks.

    Declining a confirmation sets ``cancelled``; a failed check sets ``error``.
    """
    result = PreflightResult(context=context)

    if not context.staged and not is_root():
        result.error = "This must run as root (try sudo)"
        return result

    arch = detect_arch(commands)
    if arch not in ARM64_ARCHES:
        result.error = f"Unsupported architecture {arch or 'unknown'!r}: an ARM64 system is required"
        return result

    if not commands.succeeds(["ping", "-c", "1", "-W", "5", CONNECTIVITY_PROBE], timeout=15):
        result.error = f"No internet connectivity (ping {CONNECTIVITY_PROBE} failed)"
        return result

    if not context.api_token:
        token = ask_token() if ask_token is not None else None
        if token:
            result.context = context.with_token(token.strip())
            result.messages.append("CF_API_TOKEN set from prompt")
        else:
            result.messages.append("CF_API_TOKEN not set: deployment will stop at configure-tunnel")

    available = free_mb(context.path(context.install_dir))
    result.free_mb = available
    if available < context.min_free_mb:
        question = (
            f"Low disk space: {available}MB available, at least {context.min_free_mb}MB "
            "recommended. Continue anyway?"
        )
        if not confirm(question):
            result.cancelled = True
            return result
    else:
        result.messages.append(f"Disk space: {available}MB available")

    if not confirm(f"Deploy xray {context.xray_version} with a Cloudflare Tunnel on this host?"):
        result.cancelled = True

    return result


def deploy(session: Session, force: Collection[str] = ()) -> PipelineResult:
    """Run all deploy steps. On success, keep a copy of the node record."""
    result = run_pipeline(DEPLOY_STEPS, session, force=force, kind="deploy")

    ctx = session.context
    if result.status == "ok" and ctx.record_file.is_file():
        write_atomic(ctx.saved_record_file, ctx.record_file.read_bytes(), mode=0o640)
        logger.info("Node record saved to %s", ctx.saved_record_file)
    return result


def run_step(session: Session, name: str, force: bool = False) -> PipelineResult:
    """Run a single deploy step (manual or resume execution)."""
    step = get_step(name)
    return run_pipeline([step], session, force={name} if force else (), kind="step")
