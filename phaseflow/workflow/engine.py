"""
Workflow engine: stage gating, generation and approval for phases.

Every operation is one load -> mutate -> save cycle against the StateStore.
Saves are checked against the version that was loaded, so two overlapping
operations on one phase cannot both succeed; the loser gets
ConcurrentModification and is expected to retry from a fresh load.

Operations raise PhaseflowError subclasses; the CommandRouter turns them
into results for the outside world.
"""

import copy
import logging
from dataclasses import dataclass, field

from phaseflow.lib.errors import (
    AlreadyApproved,
    InvalidArgument,
    PhaseflowError,
    PhaseNotFound,
    PrerequisiteNotMet,
    RenderFailure,
)
from phaseflow.lib.templates import Renderer, RenderRequest, TemplateRenderer
from phaseflow.state.store import StateStore
from phaseflow.workflow.approvals import approval_timeline, first_unmet_predecessor, record_approval
from phaseflow.workflow.fsm import StageFSM
from phaseflow.workflow.models import (
    STAGE_ORDER,
    Decision,
    PhaseState,
    Stage,
    StageRecord,
    StageStatus,
)

logger = logging.getLogger(__name__)


@dataclass
class AdvanceOutcome:
    """Result of generating (or regenerating) a stage."""
    phase_id: str
    stage: Stage
    record: StageRecord
    document: str
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "phase_id": self.phase_id,
            "stage": self.stage.value,
            "record": self.record.to_dict(),
            "document": self.document,
        }


@dataclass
class ApprovalOutcome:
    """Result of recording an approve/reject decision."""
    phase_id: str
    stage: Stage
    decision: Decision
    record: StageRecord
    next_stage: Stage | None = None
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "phase_id": self.phase_id,
            "stage": self.stage.value,
            "decision": self.decision.value,
            "record": self.record.to_dict(),
            "next_stage": self.next_stage.value if self.next_stage else None,
        }


def merge_memory(existing: list[str], directives: list[str]) -> list[str]:
    """Append directives not yet surfaced to the phase, preserving order."""
    merged = list(existing)
    for directive in directives:
        if directive not in merged:
            merged.append(directive)
    return merged


def next_action(state: PhaseState) -> str:
    """Recommend the next command for a phase."""
    for stage in STAGE_ORDER:
        status = state.record(stage).status
        if status == StageStatus.NOT_STARTED:
            return f"advance {stage.value}"
        if status == StageStatus.IN_PROGRESS:
            return f"approve {stage.value}"
        if status == StageStatus.REJECTED:
            return f"regenerate {stage.value}"
    return "complete"


def progress(state: PhaseState) -> dict:
    approved = sum(1 for s in STAGE_ORDER if state.record(s).status == StageStatus.APPROVED)
    return {
        "approved": approved,
        "total": len(STAGE_ORDER),
        "percentage": round(approved * 100 / len(STAGE_ORDER)),
    }


class WorkflowEngine:
    """Drives phases through spec -> research -> plan -> prd -> tasks."""

    def __init__(self, store: StateStore, renderer: Renderer | None = None):
        self.store = store
        self.renderer = renderer or TemplateRenderer()

    def _load(self, phase_id: str, command: str, create: bool) -> tuple[PhaseState, list[str]]:
        """Load phase state, creating it lazily or resetting it if corrupt.

        Returns (state, warnings). A corrupt state is reset to not_started;
        the warning tells the operator that history was lost.
        """
        if not self.store.exists(phase_id):
            if create:
                logger.info(f"[engine] {phase_id}: new phase")
                return self.store.create_initial_state(phase_id), []
            raise PhaseNotFound(phase_id, command=command)

        state, corruption = self.store.load_or_recover(phase_id)
        warnings = []
        if corruption is not None:
            warnings.append(
                f"{corruption.message}. {phase_id} was reset: all stages are not_started and "
                f"previous stage history is lost (corrupt copy kept in backups)"
            )
        return state, warnings

    def advance(self, phase_id: str, stage, payload: dict | None = None) -> AdvanceOutcome:
        """Generate the document for a stage and mark it in_progress.

        Raises:
            PrerequisiteNotMet: A predecessor stage is not approved
            AlreadyApproved: The stage is already approved
            RenderFailure: The renderer could not produce the document
            ConcurrentModification: The phase changed while we worked
        """
        stage = Stage.parse(stage, phase_id)
        if payload is None:
            payload = {}
        if not isinstance(payload, dict):
            raise InvalidArgument(
                f"Payload for {stage.value} must be a mapping, got {type(payload).__name__}",
                phase_id=phase_id,
                stage=stage.value,
            )

        state, warnings = self._load(phase_id, stage.value, create=True)
        try:
            return self._advance(state, stage, payload, warnings)
        except PhaseflowError as e:
            e.context.setdefault("warnings", warnings)
            raise

    def _advance(self, state: PhaseState, stage: Stage, payload: dict, warnings: list[str]) -> AdvanceOutcome:
        phase_id = state.id

        missing = first_unmet_predecessor(state, stage)
        if missing is not None:
            raise PrerequisiteNotMet(phase_id, stage.value, missing.value)

        if state.record(stage).status == StageStatus.APPROVED:
            raise AlreadyApproved(phase_id, stage.value)

        active = [s for s in state.in_progress_stages() if s != stage]
        if active:
            raise PrerequisiteNotMet(
                phase_id, stage.value, active[0].value,
                message=f"Cannot run {stage.value} for {phase_id}: {active[0].value} is still in progress",
            )

        working = copy.deepcopy(state)
        working.memory = merge_memory(working.memory, self.store.load_memory())

        fsm = StageFSM(working, stage)
        getattr(fsm, fsm.generation_trigger())()
        record = working.record(stage)

        prior_documents = {}
        for predecessor in stage.predecessors:
            content = self.store.read_document(working.record(predecessor).document)
            if content is not None:
                prior_documents[predecessor.value] = content

        request = RenderRequest(
            phase_id=phase_id,
            title=working.title,
            stage=stage,
            revision=record.revision,
            payload=payload,
            memory=list(working.memory),
            prior_documents=prior_documents,
        )
        try:
            content = self.renderer.render(request)
        except Exception as e:
            raise RenderFailure(
                f"Failed to render {stage.value} for {phase_id}: {e}",
                phase_id=phase_id,
                stage=stage.value,
            ) from e

        record.document = self.store.document_reference(phase_id, stage)
        saved = self.store.save(phase_id, working, documents={stage: content})

        logger.info(f"[engine] {phase_id}/{stage.value}: generated revision {record.revision}")
        return AdvanceOutcome(
            phase_id=phase_id,
            stage=stage,
            record=saved.record(stage),
            document=record.document,
            warnings=warnings,
        )

    def approve(self, phase_id: str, stage, decision="approved", comment: str | None = None) -> ApprovalOutcome:
        """Record an approve/reject decision for an in_progress stage."""
        stage = Stage.parse(stage, phase_id)
        decision = Decision.parse(decision, phase_id)

        state, warnings = self._load(phase_id, "approve", create=False)
        try:
            updated = record_approval(state, stage, decision, comment)
            saved = self.store.save(phase_id, updated)
        except PhaseflowError as e:
            e.context.setdefault("warnings", warnings)
            raise

        return ApprovalOutcome(
            phase_id=phase_id,
            stage=stage,
            decision=decision,
            record=saved.record(stage),
            next_stage=stage.next if decision == Decision.APPROVED else None,
            warnings=warnings,
        )

    def status(self, phase_id: str | None = None) -> tuple[dict, list[str]]:
        """Registry listing with the memory log, or full status of one phase.

        With a phase id the phase's own state is authoritative; a registry
        entry that disagrees with it is repaired.
        """
        if phase_id is None:
            entries = self.store.reconcile_registry()
            return {
                "phases": {pid: entry.to_dict() for pid, entry in entries.items()},
                "memory": self.store.load_memory(),
            }, []

        state, warnings = self._load(phase_id, "status", create=False)

        registry = self.store.load_registry()
        if registry.get(phase_id) != state.summary():
            logger.info(f"[engine] {phase_id}: registry entry stale, repairing")
            self.store.update_registry(phase_id, state.summary())

        current = state.current_stage()
        return {
            "phase_id": state.id,
            "title": state.title,
            "created_at": state.created_at,
            "updated_at": state.updated_at,
            "current_stage": current.value,
            "current_status": state.record(current).status.value,
            "stages": {s.value: state.record(s).to_dict() for s in STAGE_ORDER},
            "progress": progress(state),
            "next_action": next_action(state),
            "timeline": approval_timeline(state),
            "memory": list(state.memory),
        }, warnings

    def remember(self, text: str) -> dict:
        """Append a directive to the global memory log."""
        if not isinstance(text, str) or not text.strip():
            raise InvalidArgument(
                'No text provided to remember. Use: remember "Your directive here"',
                stage="remember",
            )

        directive = self.store.append_memory(text.strip())
        return {
            "text": directive.text,
            "timestamp": directive.timestamp,
            "total": len(self.store.load_memory()),
        }
