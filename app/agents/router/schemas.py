"""Value types shared by the routing pipeline.

Everything here is created per turn and treated as immutable once built:
resolution produces a `Reference`, slot assignment a `SlotAssignment`,
classification a `Classification`, planning a `WorkflowPlan`, and execution
a list of `ExecutionResult`.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Mapping

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Slot(str, Enum):
    SUBJECT = "subject"
    STYLE = "style"
    PALETTE = "palette"


SLOT_ORDER: tuple[Slot, ...] = (Slot.SUBJECT, Slot.STYLE, Slot.PALETTE)


class Source(str, Enum):
    NONE = "none"
    UPLOAD = "upload"
    PRESET = "preset"
    REFERENCE = "reference"


class OperationFamily(str, Enum):
    CASUAL = "casual"
    DESIGN = "design"
    PATTERN = "pattern"
    ENLARGE = "enlarge"
    CLARITY = "clarity"
    REFRAME = "reframe"
    REMOVE_BACKGROUND = "remove_background"
    ANALYZE = "analyze"
    ANIMATE = "animate"
    MIRROR = "mirror"
    ENHANCE_PROMPT = "enhance_prompt"
    TITLE = "title"
    MULTI_STEP = "multi_step"


# Downstream operation ids understood by the Capability Dispatcher.
OPERATION_ENDPOINTS: dict[OperationFamily, str] = {
    OperationFamily.CASUAL: "none",
    OperationFamily.DESIGN: "/api/design",
    OperationFamily.PATTERN: "/api/flowdesign",
    OperationFamily.ENLARGE: "/api/upscale",
    OperationFamily.CLARITY: "/api/clarityupscaler",
    OperationFamily.REFRAME: "/api/reframe",
    OperationFamily.REMOVE_BACKGROUND: "/api/removebg",
    OperationFamily.ANALYZE: "/api/analyzeimage",
    OperationFamily.ANIMATE: "/api/kling",
    OperationFamily.MIRROR: "/api/mirrormagic",
    OperationFamily.ENHANCE_PROMPT: "/api/promptenhancer",
    OperationFamily.TITLE: "/api/titlerenamer",
    OperationFamily.MULTI_STEP: "multi_step",
}

# Families whose capability consumes a single image bound to the subject slot.
SINGLE_INPUT_FAMILIES = frozenset(
    {
        OperationFamily.ENLARGE,
        OperationFamily.CLARITY,
        OperationFamily.REFRAME,
        OperationFamily.REMOVE_BACKGROUND,
        OperationFamily.ANALYZE,
        OperationFamily.ANIMATE,
        OperationFamily.MIRROR,
    }
)

# Families that never consume slot content.
TEXT_ONLY_FAMILIES = frozenset(
    {OperationFamily.CASUAL, OperationFamily.ENHANCE_PROMPT, OperationFamily.TITLE}
)


class WorkflowId(str, Enum):
    SUBJECT_ONLY = "subject_only"
    SUBJECT_STYLE = "subject_style"
    SUBJECT_PALETTE = "subject_palette"
    STYLE_PALETTE = "style_palette"
    ALL_THREE = "all_three"
    PROMPT_ONLY = "prompt_only"


def _as_utc(v: datetime | None) -> datetime | None:
    if v is not None and v.tzinfo is None:
        return v.replace(tzinfo=timezone.utc)
    return v


class Turn(BaseModel):
    """One recorded conversation exchange, as supplied by the persistence collaborator."""

    model_config = ConfigDict(extra="ignore", frozen=True, populate_by_name=True)

    text: str = Field(default="", alias="content")
    timestamp: datetime | None = None
    attachments: tuple[str, ...] = Field(default=(), alias="images")
    role: Literal["user", "assistant"] = "user"
    operation: str | None = None

    @field_validator("timestamp")
    @classmethod
    def normalize_timestamp(cls, v: datetime | None) -> datetime | None:
        return _as_utc(v)

    @field_validator("attachments", mode="before")
    @classmethod
    def normalize_attachments(cls, v: Any) -> tuple[str, ...]:
        if v is None or v == "":
            return ()
        if isinstance(v, str):
            return (v,)
        if isinstance(v, (list, tuple)):
            return tuple(str(x) for x in v if x)
        raise ValueError("Expected list of image URLs")


class ReferencePayload(BaseModel):
    """Explicit reference as sent by the client when the user points at an earlier message."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: str | None = None
    text: str = ""
    timestamp: datetime | None = None
    images: list[str] = Field(default_factory=list)
    turn_index: int | None = Field(default=None, alias="turnIndex")

    @field_validator("timestamp")
    @classmethod
    def normalize_timestamp(cls, v: datetime | None) -> datetime | None:
        return _as_utc(v)

    @field_validator("images", mode="before")
    @classmethod
    def normalize_images(cls, v: Any) -> list[str]:
        if v is None or v == "":
            return []
        if isinstance(v, str):
            return [v]
        if isinstance(v, (list, tuple)):
            return [str(x) for x in v if x]
        raise ValueError("Expected list of image URLs")


@dataclass(frozen=True)
class Reference:
    kind: Literal["explicit", "auto-previous", "none"]
    artifacts: tuple[str, ...] = ()
    text: str = ""
    inherited_slots: Mapping[Slot, str] = field(default_factory=dict)
    anchor_timestamp: datetime | None = None
    last_operation: str | None = None
    chain_length: int = 0

    @property
    def primary_artifact(self) -> str | None:
        return self.artifacts[0] if self.artifacts else None

    @property
    def is_usable(self) -> bool:
        return self.kind != "none" and (bool(self.artifacts) or bool(self.inherited_slots))


NO_REFERENCE = Reference(kind="none")


@dataclass(frozen=True)
class SlotFill:
    filled_from: Source = Source.NONE
    value: str | None = None

    @property
    def is_filled(self) -> bool:
        return self.filled_from is not Source.NONE


EMPTY_FILL = SlotFill()


@dataclass(frozen=True)
class SlotAssignment:
    subject: SlotFill = EMPTY_FILL
    style: SlotFill = EMPTY_FILL
    palette: SlotFill = EMPTY_FILL
    workflow_hint: WorkflowId = WorkflowId.PROMPT_ONLY
    rule: str = "none"
    interpretation: Literal["none", "directed", "modification", "inspiration", "unused"] = "none"

    def get(self, slot: Slot) -> SlotFill:
        return getattr(self, slot.value)

    def filled_slots(self) -> frozenset[Slot]:
        return frozenset(slot for slot in SLOT_ORDER if self.get(slot).is_filled)

    def bindings(self) -> dict[Slot, str]:
        return {slot: self.get(slot).value for slot in SLOT_ORDER if self.get(slot).is_filled}

    def to_dict(self) -> dict[str, Any]:
        return {
            **{
                slot.value: {"filledFrom": self.get(slot).filled_from.value, "value": self.get(slot).value}
                for slot in SLOT_ORDER
            },
            "workflowHint": self.workflow_hint.value,
            "rule": self.rule,
        }


@dataclass(frozen=True)
class PlannedOperation:
    family: OperationFamily
    parameters: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Classification:
    family: OperationFamily
    confidence: float
    parameters: Mapping[str, Any] = field(default_factory=dict)
    explanation: str = ""
    requires_files: bool = False
    steps: tuple[PlannedOperation, ...] = ()
    source: Literal["heuristic", "delegate"] = "heuristic"
    matcher: str | None = None

    @property
    def endpoint(self) -> str:
        return OPERATION_ENDPOINTS[self.family]

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "intent": self.family.value,
            "confidence": self.confidence,
            "endpoint": self.endpoint,
            "parameters": dict(self.parameters),
            "requiresFiles": self.requires_files,
            "explanation": self.explanation,
            "source": self.source,
        }
        if self.steps:
            payload["steps"] = [
                {"intent": step.family.value, "endpoint": OPERATION_ENDPOINTS[step.family], "parameters": dict(step.parameters)}
                for step in self.steps
            ]
        return payload


@dataclass(frozen=True)
class Step:
    operation_id: OperationFamily
    workflow_id: WorkflowId
    slot_bindings: Mapping[Slot, str] = field(default_factory=dict)
    parameters: Mapping[str, Any] = field(default_factory=dict)
    chain_slot: Slot = Slot.SUBJECT

    def to_dict(self) -> dict[str, Any]:
        return {
            "operationId": self.operation_id.value,
            "endpoint": OPERATION_ENDPOINTS[self.operation_id],
            "workflowId": self.workflow_id.value,
            "slotBindings": {slot.value: value for slot, value in self.slot_bindings.items()},
            "parameters": dict(self.parameters),
        }


@dataclass(frozen=True)
class WorkflowPlan:
    steps: tuple[Step, ...] = ()
    chained: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {"steps": [step.to_dict() for step in self.steps], "chained": self.chained}


EMPTY_PLAN = WorkflowPlan()


@dataclass(frozen=True)
class ExecutionResult:
    step_index: int
    operation_id: OperationFamily
    status: Literal["success", "error"]
    artifact: str | None = None
    error: str | None = None
    workflow_id: WorkflowId | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "stepIndex": self.step_index,
            "operationId": self.operation_id.value,
            "workflowId": self.workflow_id.value if self.workflow_id else None,
            "status": self.status,
            "artifact": self.artifact,
            "error": self.error,
        }


@dataclass(frozen=True)
class TurnResult:
    status: Literal["success", "partial", "error"]
    message: str
    classification: Classification | None = None
    assignment: SlotAssignment | None = None
    plan: WorkflowPlan = EMPTY_PLAN
    results: tuple[ExecutionResult, ...] = ()

    @property
    def artifact(self) -> str | None:
        for result in reversed(self.results):
            if result.status == "success" and result.artifact:
                return result.artifact
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "message": self.message,
            "intent": self.classification.to_dict() if self.classification else None,
            "slots": self.assignment.to_dict() if self.assignment else None,
            "plan": self.plan.to_dict(),
            "results": [result.to_dict() for result in self.results],
            "artifact": self.artifact,
        }
