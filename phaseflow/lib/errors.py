"""
Error taxonomy for phaseflow.

Every failure the core can report is one of the ErrorKind values below.
Each exception carries the phase id, the attempted stage or command, and a
structured context dict so the presentation layer can format it.
"""

from enum import Enum


class ErrorKind(Enum):
    """Closed set of failure kinds reported by the core."""

    INVALID_PHASE_FORMAT = "InvalidPhaseFormat"
    INVALID_COMMAND = "InvalidCommand"
    INVALID_ARGUMENT = "InvalidArgument"
    PHASE_NOT_FOUND = "PhaseNotFound"
    PREREQUISITE_NOT_MET = "PrerequisiteNotMet"
    ALREADY_APPROVED = "AlreadyApproved"
    STATE_CORRUPTION = "StateCorruption"
    CONCURRENT_MODIFICATION = "ConcurrentModification"
    VALIDATION_FAILURE = "ValidationFailure"
    RENDER_FAILURE = "RenderFailure"
    STORAGE_FAILURE = "StorageFailure"


class PhaseflowError(Exception):
    """Base class for all typed workflow failures."""

    kind: ErrorKind = None

    def __init__(
        self,
        message: str,
        phase_id: str | None = None,
        stage: str | None = None,
        context: dict | None = None,
    ):
        self.phase_id = phase_id
        self.stage = stage
        self.context = dict(context or {})
        super().__init__(message)

    @property
    def message(self) -> str:
        return str(self)

    def to_dict(self) -> dict:
        return {
            "error_kind": self.kind.value,
            "message": self.message,
            "phase_id": self.phase_id,
            "stage": self.stage,
            "context": self.context,
        }


class InvalidPhaseFormat(PhaseflowError):
    kind = ErrorKind.INVALID_PHASE_FORMAT

    def __init__(self, phase_id, command: str | None = None):
        super().__init__(
            f"Invalid phase format: '{phase_id}'. Expected st##-description "
            f"(e.g. st03-user-management)",
            phase_id=phase_id,
            stage=command,
            context={"expected": "st##-description"},
        )


class InvalidCommand(PhaseflowError):
    kind = ErrorKind.INVALID_COMMAND

    def __init__(self, name, valid: list[str], what: str = "command", phase_id: str | None = None):
        super().__init__(
            f"Invalid {what}: '{name}'. Must be one of: {', '.join(valid)}",
            phase_id=phase_id,
            stage=name if isinstance(name, str) else None,
            context={"valid": list(valid)},
        )


class InvalidArgument(PhaseflowError):
    kind = ErrorKind.INVALID_ARGUMENT


class PhaseNotFound(PhaseflowError):
    kind = ErrorKind.PHASE_NOT_FOUND

    def __init__(self, phase_id: str, command: str | None = None):
        super().__init__(
            f"Phase not found: {phase_id}. Run 'spec {phase_id}' to start it",
            phase_id=phase_id,
            stage=command,
        )


class PrerequisiteNotMet(PhaseflowError):
    """A stage was requested before its precondition holds.

    `missing` names the first unmet stage.
    """

    kind = ErrorKind.PREREQUISITE_NOT_MET

    def __init__(self, phase_id: str, stage: str, missing: str, message: str | None = None):
        self.missing = missing
        super().__init__(
            message or (
                f"Cannot run {stage} for {phase_id}: {missing} must be approved first "
                f"(approve {missing} first)"
            ),
            phase_id=phase_id,
            stage=stage,
            context={"missing": missing},
        )


class AlreadyApproved(PhaseflowError):
    kind = ErrorKind.ALREADY_APPROVED

    def __init__(self, phase_id: str, stage: str):
        super().__init__(
            f"Stage {stage} of {phase_id} is already approved and cannot be regenerated",
            phase_id=phase_id,
            stage=stage,
        )


class StateCorruption(PhaseflowError):
    """Persisted state could not be read or failed validation.

    `cause` keeps the original low-level error for the operator.
    """

    kind = ErrorKind.STATE_CORRUPTION

    def __init__(self, phase_id: str, cause: Exception | str, errors: list | None = None):
        self.cause = cause
        super().__init__(
            f"State for {phase_id} is corrupt: {cause}",
            phase_id=phase_id,
            context={"cause": str(cause), "errors": list(errors or [])},
        )


class ConcurrentModification(PhaseflowError):
    kind = ErrorKind.CONCURRENT_MODIFICATION

    def __init__(self, phase_id: str, expected: int | None, actual: int | None, stage: str | None = None):
        super().__init__(
            f"State for {phase_id} changed since it was loaded "
            f"(expected version {expected}, found {actual}); retry the operation",
            phase_id=phase_id,
            stage=stage,
            context={"expected_version": expected, "actual_version": actual},
        )


class ValidationFailure(PhaseflowError):
    kind = ErrorKind.VALIDATION_FAILURE

    def __init__(self, schema_name: str, message: str, errors: list | None = None, phase_id: str | None = None):
        self.schema_name = schema_name
        self.errors = list(errors or [])
        super().__init__(
            f"[{schema_name}] {message}",
            phase_id=phase_id,
            context={"schema": schema_name, "errors": self.errors},
        )


class RenderFailure(PhaseflowError):
    kind = ErrorKind.RENDER_FAILURE


class StorageFailure(PhaseflowError):
    kind = ErrorKind.STORAGE_FAILURE
