"""
Pipeline runner — executes steps strictly in order, halting on failure.

Per step:

    state gate → (forced destructive? confirm) → is_done? skip
               → check_preconditions → apply → verify

Every transition goes to the run log, and the reached PipelineState is
saved after each step, so re-running the same pipeline after a failure
resumes at the step that failed.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Collection, Sequence
from datetime import UTC, datetime

from exitnode.core.engine.session import Session
from exitnode.core.errors import PreconditionError, StepError
from exitnode.core.models.pipeline import PipelineResult, StepOutcome
from exitnode.core.persistence.state_file import DeploymentState, load_state, save_state
from exitnode.core.steps.base import Step

logger = logging.getLogger(__name__)


def run_pipeline(
    steps: Sequence[Step],
    session: Session,
    force: Collection[str] = (),
    kind: str = "deploy",
    track_state: bool = True,
) -> PipelineResult:
    """Run ``steps`` sequentially.

    Args:
        steps: Ordered steps.
        session: The run's session.
        force: Names of steps whose idempotency skip is bypassed.
        kind: Label for the run ("deploy", "step", "uninstall").
        track_state: Gate on and persist PipelineState. Teardown runs without it.

    Returns:
        PipelineResult. Never raises for step failures.
    """
    context = session.context
    result = PipelineResult(
        operation_id=session.operation_id,
        kind=kind,
        run_log=session.run_log_path,
    )
    state = load_state(context.state_file) if track_state else None

    logger.info("Pipeline %s (%s): %s", kind, session.operation_id, ", ".join(s.name for s in steps))
    session.log_event("pipeline_start", message=kind, steps=[s.name for s in steps])

    for step in steps:
        outcome = _run_step(step, session, state, forced=step.name in force)
        result.outcomes.append(outcome)

        if state is not None:
            state.mark(step.name, outcome.status, session.operation_id)
            if outcome.ok:
                state.advance(step.produces)
            state.last_operation = session.operation_id
            state.last_status = outcome.status
            save_state(state, context.state_file)

        if not outcome.ok:
            break

    session.begin_step(None)
    result.final_state = state.state if state is not None else None
    result.ended_at = datetime.now(UTC).isoformat()
    session.log_event(
        "pipeline_end",
        status=result.status,
        message=kind,
        final_state=result.final_state.value if result.final_state else None,
    )
    logger.info("Pipeline %s finished: %s", kind, result.status)
    return result


def _run_step(
    step: Step,
    session: Session,
    state: DeploymentState | None,
    forced: bool,
) -> StepOutcome:
    session.begin_step(step.name, forced=forced)
    logger.info("▶ %s", step.title)
    session.log_event("step_start", message=step.title, forced=forced)
    start = time.monotonic()

    def finish(status: str, message: str = "", operation: str = "", detail: str = "") -> StepOutcome:
        outcome = StepOutcome(
            step=step.name,
            title=step.title,
            status=status,
            duration_ms=int((time.monotonic() - start) * 1000),
            message=message,
            operation=operation,
            detail=detail,
            warnings=list(session.step_warnings),
        )
        session.log_event(f"step_{status}", status=status, message=message, operation=operation)
        return outcome

    try:
        if state is not None and not state.state.reached(step.requires):
            earlier = step.requires.produced_by
            raise PreconditionError(
                step.name,
                f"Deployment has not reached '{step.requires.value}' (currently '{state.state.value}')",
                detail=f"Run 'exitnode step {earlier}' first." if earlier else "",
            )

        if forced and step.destructive_rerun and step.has_state_to_lose(session):
            if not session.confirm(step.rerun_prompt):
                logger.info("Re-run of %s declined", step.name)
                return finish("cancelled", "Re-run declined by operator")
        elif not forced and step.is_done(session):
            logger.info("✓ %s already done, skipping", step.name)
            return finish("skipped", "Already done")

        step.check_preconditions(session)
        step.apply(session)
        step.verify(session)

    except StepError as e:
        logger.error("✗ %s: %s", step.name, e.message)
        return finish(
            "failed",
            f"{e.label}: {e.message}",
            operation=e.operation or session.commands.last_operation,
            detail=e.detail,
        )
    except Exception as e:
        logger.exception("Unexpected error in step %s", step.name)
        return finish(
            "failed",
            f"Unexpected error: {e}",
            operation=session.commands.last_operation,
        )

    logger.info("✓ %s", step.title)
    return finish("ok", step.done_message)
