from typing import Any, NotRequired
from typing_extensions import TypedDict

from app.agents.router.schemas import (
    Classification,
    Reference,
    Slot,
    SlotAssignment,
    Turn,
    WorkflowPlan,
)

class RouterState(TypedDict):
    request_id: str
    text: str
    uploads: dict[Slot, str]
    presets: dict[Slot, str]
    history: list[Turn]
    # Raw client payload: dict, JSON string or None.
    explicit_reference: Any

    reference: NotRequired[Reference]
    reference_role: NotRequired[Slot | None]
    assignment: NotRequired[SlotAssignment]
    classification: NotRequired[Classification]
    plan: NotRequired[WorkflowPlan]
