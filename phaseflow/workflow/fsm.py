"""Stage state machine using transitions library.

Each (phase, stage) pair moves through:

    not_started -> in_progress -> approved
                        |  ^
                        v  |
                      rejected

`regenerate` from in_progress is a reflexive transition (content overwritten
in place, same revision); from rejected it opens a new revision. `approved`
has no outgoing transitions.

Usage:
    from phaseflow.workflow.fsm import StageFSM

    fsm = StageFSM(state, Stage.SPEC)
    fsm.start()       # not_started -> in_progress, revision 1
    fsm.reject()      # in_progress -> rejected
    fsm.regenerate()  # rejected -> in_progress, revision 2
"""

import logging

from transitions import Machine

from phaseflow.workflow.models import PhaseState, Stage, StageStatus, now_iso

logger = logging.getLogger(__name__)


STATES = [s.value for s in StageStatus]

# Transitions defined as (trigger, source, dest)
# Each trigger becomes a method on the FSM
TRANSITIONS = [
    # First generation
    {"trigger": "start", "source": "not_started", "dest": "in_progress"},

    # Regeneration: in place before a decision, new revision after rejection
    {"trigger": "regenerate", "source": "in_progress", "dest": "in_progress"},
    {"trigger": "regenerate", "source": "rejected", "dest": "in_progress"},

    # Approval decisions
    {"trigger": "approve", "source": "in_progress", "dest": "approved"},
    {"trigger": "reject", "source": "in_progress", "dest": "rejected"},
]

# Triggers that (re)generate content and therefore open a new revision
# when leaving these sources
NEW_REVISION_SOURCES = {"not_started", "rejected"}


# Pre-computed lookup: (source, dest) -> trigger name
# Built once at module load, used to map destination-based API to trigger-based FSM
def _build_trigger_lookup() -> dict[tuple[str, str], str]:
    """Build lookup from (source, dest) -> trigger name."""
    lookup: dict[tuple[str, str], str] = {}
    for t in TRANSITIONS:
        key = (t["source"], t["dest"])
        if key not in lookup:  # First trigger wins for a given source->dest
            lookup[key] = t["trigger"]
    return lookup


TRIGGER_FOR = _build_trigger_lookup()


class StageFSM:
    """State machine for one stage of one phase.

    Wraps the transitions library around a StageRecord held in a PhaseState:
    - Initial state is the record's persisted status
    - Every transition is written back to the record (status, updated_at,
      revision) and logged
    - Nothing is persisted here; the caller saves the PhaseState
    """

    def __init__(self, state: PhaseState, stage: Stage):
        """Initialize FSM for a stage.

        Args:
            state: PhaseState owning the stage record (mutated on transition)
            stage: Stage to drive
        """
        self.phase_state = state
        self.stage = stage
        self.record = state.record(stage)

        self.machine = Machine(
            model=self,
            states=STATES,
            transitions=TRANSITIONS,
            initial=self.record.status.value,
            auto_transitions=False,  # Only explicit transitions
            send_event=True,  # Pass EventData to callbacks
            after_state_change="on_state_change",  # Callback after any transition
        )

    @property
    def label(self) -> str:
        return f"{self.phase_state.id}/{self.stage.value}"

    def on_state_change(self, event) -> None:
        """Callback after any state transition.

        Writes the new status to the stage record and logs the transition.
        """
        from_state = event.transition.source
        to_state = event.transition.dest
        trigger = event.event.name

        if to_state == "in_progress" and from_state in NEW_REVISION_SOURCES:
            self.record.revision += 1

        self.record.status = StageStatus(to_state)
        self.record.updated_at = now_iso()

        logger.info(
            f"[FSM] {self.label}: {from_state} -> {to_state} ({trigger}, revision {self.record.revision})"
        )

    def can(self, trigger: str) -> bool:
        """Check if a trigger can be executed in current state."""
        return trigger in self.machine.get_triggers(self.state)

    def generation_trigger(self) -> str | None:
        """Trigger that moves this stage into in_progress, if any."""
        return TRIGGER_FOR.get((self.state, "in_progress"))
