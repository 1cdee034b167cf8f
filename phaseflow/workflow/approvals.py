"""
Approval ledger for phase stages.

Approval decisions live inside PhaseState, one list of ApprovalEvent per
stage. Recording a decision returns a new PhaseState; events are only ever
appended, so a rejection stays in history after the stage is regenerated.
"""

import copy
import logging

from phaseflow.lib.errors import AlreadyApproved, PrerequisiteNotMet
from phaseflow.workflow.fsm import StageFSM
from phaseflow.workflow.models import (
    STAGE_ORDER,
    ApprovalEvent,
    Decision,
    PhaseState,
    Stage,
    StageStatus,
    now_iso,
)

logger = logging.getLogger(__name__)


def first_unmet_predecessor(state: PhaseState, stage: Stage) -> Stage | None:
    """Return the earliest predecessor of `stage` that is not approved."""
    for predecessor in stage.predecessors:
        if state.record(predecessor).status != StageStatus.APPROVED:
            return predecessor
    return None


def record_approval(
    state: PhaseState,
    stage: Stage,
    decision: Decision,
    comment: str | None = None,
) -> PhaseState:
    """Apply an approve/reject decision to a stage.

    The stage must be in_progress. The event records the revision in effect
    when the decision was made.

    Raises:
        AlreadyApproved: The stage was already approved
        PrerequisiteNotMet: The stage has no pending content to decide on
    """
    record = state.record(stage)

    if record.status == StageStatus.APPROVED:
        raise AlreadyApproved(state.id, stage.value)

    updated = copy.deepcopy(state)
    fsm = StageFSM(updated, stage)
    trigger = "approve" if decision == Decision.APPROVED else "reject"

    if not fsm.can(trigger):
        raise PrerequisiteNotMet(
            state.id,
            stage.value,
            missing=stage.value,
            message=(
                f"Cannot mark {stage.value} {decision.value} for {state.id}: "
                f"{stage.value} is {record.status.value}; generate {stage.value} first"
            ),
        )

    missing = first_unmet_predecessor(state, stage)
    if missing is not None:
        raise PrerequisiteNotMet(state.id, stage.value, missing.value)

    getattr(fsm, trigger)()

    target = updated.record(stage)
    target.approvals.append(ApprovalEvent(
        decision=decision,
        timestamp=now_iso(),
        revision=target.revision,
        comment=comment,
    ))

    logger.info(f"[ledger] {state.id}/{stage.value}: {decision.value} (revision {target.revision})")
    return updated


def approval_timeline(state: PhaseState) -> list[dict]:
    """All approval events across stages, oldest first."""
    events = []
    for stage in STAGE_ORDER:
        for event in state.record(stage).approvals:
            events.append({"stage": stage.value, **event.to_dict()})
    return sorted(events, key=lambda e: e["timestamp"])
