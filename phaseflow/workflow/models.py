"""
Data models for phase workflow state.

PhaseState is the persisted document; StageRecord and ApprovalEvent are
embedded in it. to_dict()/from_dict() convert to and from the JSON shape
described by schemas/phase_state.schema.json.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

from phaseflow.lib.errors import InvalidCommand


def now_iso() -> str:
    return datetime.now().isoformat()


class Stage(Enum):
    """The five document-producing stages, in workflow order."""

    SPEC = "spec"
    RESEARCH = "research"
    PLAN = "plan"
    PRD = "prd"
    TASKS = "tasks"

    @classmethod
    def parse(cls, name, phase_id: str | None = None) -> "Stage":
        """Map an external stage name onto the enum; anything else is rejected."""
        if isinstance(name, cls):
            return name
        for stage in cls:
            if stage.value == name:
                return stage
        raise InvalidCommand(name, [s.value for s in cls], what="stage", phase_id=phase_id)

    @property
    def index(self) -> int:
        return STAGE_ORDER.index(self)

    @property
    def predecessors(self) -> list["Stage"]:
        return STAGE_ORDER[:self.index]

    @property
    def next(self) -> Optional["Stage"]:
        if self.index + 1 < len(STAGE_ORDER):
            return STAGE_ORDER[self.index + 1]
        return None


STAGE_ORDER = list(Stage)
STAGE_NAMES = [s.value for s in STAGE_ORDER]


class StageStatus(Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    APPROVED = "approved"
    REJECTED = "rejected"


class Decision(Enum):
    APPROVED = "approved"
    REJECTED = "rejected"

    @classmethod
    def parse(cls, value, phase_id: str | None = None) -> "Decision":
        if isinstance(value, cls):
            return value
        for decision in cls:
            if decision.value == value:
                return decision
        raise InvalidCommand(value, [d.value for d in cls], what="decision", phase_id=phase_id)


def title_from_phase_id(phase_id: str) -> str:
    """st03-user-management -> User Management"""
    slug = phase_id.split("-", 1)[1] if "-" in phase_id else phase_id
    return " ".join(word.capitalize() for word in slug.split("-"))


@dataclass(frozen=True)
class ApprovalEvent:
    """A single approve/reject decision. Never modified after creation."""
    decision: Decision
    timestamp: str
    revision: int                  # Stage revision the decision applies to
    comment: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "decision": self.decision.value,
            "timestamp": self.timestamp,
            "comment": self.comment,
            "revision": self.revision,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ApprovalEvent":
        return cls(
            decision=Decision(data["decision"]),
            timestamp=data["timestamp"],
            revision=data["revision"],
            comment=data.get("comment"),
        )


@dataclass
class StageRecord:
    """Status and history of one stage within a phase."""
    status: StageStatus = StageStatus.NOT_STARTED
    document: Optional[str] = None             # Reference to rendered document
    approvals: list[ApprovalEvent] = field(default_factory=list)
    updated_at: Optional[str] = None
    revision: int = 0                          # 0 until first generation

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "document": self.document,
            "approvals": [a.to_dict() for a in self.approvals],
            "updated_at": self.updated_at,
            "revision": self.revision,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "StageRecord":
        return cls(
            status=StageStatus(data["status"]),
            document=data.get("document"),
            approvals=[ApprovalEvent.from_dict(a) for a in data.get("approvals", [])],
            updated_at=data.get("updated_at"),
            revision=data.get("revision", 0),
        )


@dataclass
class RegistryEntry:
    """Registry summary for one phase. Always derived from PhaseState."""
    stage: Stage
    status: StageStatus
    updated_at: str
    version: int

    def to_dict(self) -> dict:
        return {
            "stage": self.stage.value,
            "status": self.status.value,
            "updated_at": self.updated_at,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RegistryEntry":
        return cls(
            stage=Stage(data["stage"]),
            status=StageStatus(data["status"]),
            updated_at=data["updated_at"],
            version=data["version"],
        )


@dataclass
class PhaseState:
    """Persisted state of a phase.

    `version` is the optimistic concurrency token; the store bumps it on
    every save and refuses a save whose version no longer matches disk.
    """
    id: str
    title: str
    created_at: str
    updated_at: str
    stages: dict[Stage, StageRecord]
    memory: list[str] = field(default_factory=list)
    version: int = 0

    def record(self, stage: Stage) -> StageRecord:
        return self.stages[stage]

    def in_progress_stages(self) -> list[Stage]:
        return [s for s in STAGE_ORDER if self.stages[s].status == StageStatus.IN_PROGRESS]

    def current_stage(self) -> Stage:
        """Furthest stage that has been touched, or spec for a fresh phase."""
        current = Stage.SPEC
        for stage in STAGE_ORDER:
            if self.stages[stage].status != StageStatus.NOT_STARTED:
                current = stage
        return current

    def summary(self) -> RegistryEntry:
        stage = self.current_stage()
        return RegistryEntry(
            stage=stage,
            status=self.stages[stage].status,
            updated_at=self.updated_at,
            version=self.version,
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "version": self.version,
            "stages": {s.value: self.stages[s].to_dict() for s in STAGE_ORDER},
            "memory": list(self.memory),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PhaseState":
        return cls(
            id=data["id"],
            title=data["title"],
            created_at=data["created_at"],
            updated_at=data["updated_at"],
            version=data["version"],
            stages={Stage(k): StageRecord.from_dict(v) for k, v in data["stages"].items()},
            memory=list(data.get("memory", [])),
        )
