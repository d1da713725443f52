"""
Uninstall use case — tear the node down through the teardown steps.
"""

from __future__ import annotations

import logging

from exitnode.core.engine.runner import run_pipeline
from exitnode.core.engine.session import Session
from exitnode.core.models.pipeline import PipelineResult, StepOutcome
from exitnode.core.steps import teardown_steps

logger = logging.getLogger(__name__)

CONFIRMATION_WORD = "yes"


def tear_down(session: Session, confirmed: bool, remove_toolchain: bool = False) -> PipelineResult:
    """Remove everything the deployment created.

    Args:
        session: The run's session.
        confirmed: The operator typed the confirmation word. Nothing runs otherwise.
        remove_toolchain: Also remove Go and the build tools.
    """
    if not confirmed:
        logger.info("Uninstall not confirmed")
        result = PipelineResult(
            operation_id=session.operation_id,
            kind="uninstall",
            run_log=session.run_log_path,
        )
        result.outcomes.append(
            StepOutcome(step="uninstall", title="Uninstall", status="cancelled", message="Not confirmed")
        )
        return result

    return run_pipeline(
        teardown_steps(remove_toolchain=remove_toolchain),
        session,
        kind="uninstall",
        track_state=False,
    )
