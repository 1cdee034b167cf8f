"""
Command router: the boundary between callers and the workflow engine.

Validates command names and phase ids before any I/O, dispatches to the
engine, and converts every failure into a CommandResult. Nothing raised by
the core escapes dispatch().

Usage:
    router = CommandRouter(WorkflowEngine(StateStore(root)))
    result = router.advance("spec", "st01-demo", {"goal": "..."})
    if not result.ok:
        print(result.error_kind, result.message)
"""

import logging
from typing import Any, Optional

from pydantic import BaseModel, Field

from phaseflow.lib.constants import PHASE_ID_PATTERN
from phaseflow.lib.errors import (
    InvalidArgument,
    InvalidCommand,
    InvalidPhaseFormat,
    PhaseflowError,
    StorageFailure,
)
from phaseflow.workflow.engine import WorkflowEngine
from phaseflow.workflow.models import STAGE_NAMES

logger = logging.getLogger(__name__)

APPROVE_COMMAND = "approve"
STATUS_COMMAND = "status"
REMEMBER_COMMAND = "remember"

VALID_COMMANDS = STAGE_NAMES + [APPROVE_COMMAND, STATUS_COMMAND, REMEMBER_COMMAND]

# Commands that require a phase id
PHASE_COMMANDS = set(STAGE_NAMES) | {APPROVE_COMMAND}


class CommandResult(BaseModel):
    """Discriminated result of one command: ok with data, or an error kind."""
    ok: bool
    command: str
    phase_id: Optional[str] = None
    data: Optional[dict[str, Any]] = None
    warnings: list[str] = Field(default_factory=list)
    error_kind: Optional[str] = None
    message: Optional[str] = None
    context: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def success(cls, command: str, phase_id: str | None, data: dict, warnings: list[str] | None = None):
        return cls(ok=True, command=command, phase_id=phase_id, data=data, warnings=warnings or [])

    @classmethod
    def failure(cls, command, phase_id, error: PhaseflowError):
        context = dict(error.context)
        warnings = context.pop("warnings", [])
        if error.stage:
            context.setdefault("stage", error.stage)
        return cls(
            ok=False,
            command=str(command),
            phase_id=None if phase_id is None else str(phase_id),
            warnings=warnings,
            error_kind=error.kind.value,
            message=error.message,
            context=context,
        )


def validate_phase_id(phase_id, command: str | None = None) -> str:
    if not isinstance(phase_id, str) or not PHASE_ID_PATTERN.fullmatch(phase_id):
        raise InvalidPhaseFormat(phase_id, command)
    return phase_id


class CommandRouter:
    """Maps command names onto WorkflowEngine operations."""

    def __init__(self, engine: WorkflowEngine):
        self.engine = engine

    def validate(self, command, phase_id) -> None:
        """Reject unknown commands and malformed phase ids before any I/O."""
        if command not in VALID_COMMANDS:
            raise InvalidCommand(command, VALID_COMMANDS, phase_id=phase_id if isinstance(phase_id, str) else None)
        if command in PHASE_COMMANDS or (command == STATUS_COMMAND and phase_id is not None):
            validate_phase_id(phase_id, command)

    def dispatch(self, command: str, phase_id: str | None = None, payload: dict | None = None) -> CommandResult:
        """Run one command and return its result. Never raises."""
        try:
            self.validate(command, phase_id)
            if payload is not None and not isinstance(payload, dict):
                raise InvalidArgument(
                    f"Payload for {command} must be a mapping, got {type(payload).__name__}",
                    phase_id=phase_id,
                    stage=command,
                )
            data, warnings = self._route(command, phase_id, payload or {})
        except PhaseflowError as e:
            logger.debug(f"[router] {command} {phase_id or ''}: {e.kind.value}: {e}")
            return CommandResult.failure(command, phase_id, e)
        except OSError as e:
            error = StorageFailure(
                f"Storage error during {command}{' for ' + phase_id if phase_id else ''}: {e}",
                phase_id=phase_id,
                stage=command,
                context={"path": getattr(e, "filename", None)},
            )
            logger.warning(f"[router] {error}")
            return CommandResult.failure(command, phase_id, error)

        for warning in warnings:
            logger.warning(f"[router] {command} {phase_id or ''}: {warning}")
        return CommandResult.success(command, phase_id, data, warnings)

    def _route(self, command: str, phase_id: str | None, payload: dict) -> tuple[dict, list[str]]:
        if command in STAGE_NAMES:
            outcome = self.engine.advance(phase_id, command, payload)
            return outcome.to_dict(), outcome.warnings

        if command == APPROVE_COMMAND:
            if "stage" not in payload:
                raise InvalidArgument(
                    f"approve for {phase_id} needs a stage (one of: {', '.join(STAGE_NAMES)})",
                    phase_id=phase_id,
                    stage=command,
                )
            outcome = self.engine.approve(
                phase_id,
                payload["stage"],
                payload.get("decision", "approved"),
                payload.get("comment"),
            )
            return outcome.to_dict(), outcome.warnings

        if command == STATUS_COMMAND:
            return self.engine.status(phase_id)

        return self.engine.remember(payload.get("text")), []

    # Convenience wrappers matching the command surface

    def advance(self, stage: str, phase_id: str, payload: dict | None = None) -> CommandResult:
        return self.dispatch(stage, phase_id, payload)

    def approve(self, phase_id: str, stage: str, decision: str = "approved", comment: str | None = None) -> CommandResult:
        return self.dispatch(APPROVE_COMMAND, phase_id, {"stage": stage, "decision": decision, "comment": comment})

    def status(self, phase_id: str | None = None) -> CommandResult:
        return self.dispatch(STATUS_COMMAND, phase_id)

    def remember(self, text: str) -> CommandResult:
        return self.dispatch(REMEMBER_COMMAND, None, {"text": text})
