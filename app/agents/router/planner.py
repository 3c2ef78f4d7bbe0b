from __future__ import annotations

from typing import Any, Mapping

from app.agents.router.schemas import (
    EMPTY_PLAN,
    Classification,
    OperationFamily,
    PlannedOperation,
    Slot,
    SlotAssignment,
    Step,
    TEXT_ONLY_FAMILIES,
    WorkflowPlan,
)
from app.agents.router.workflows import archetype_for, relevant_slots


def should_dispatch(classification: Classification, min_confidence: float = 0.5) -> bool:
    if classification.family is OperationFamily.CASUAL:
        return False
    return classification.confidence > min_confidence


def _chain_slot(parameters: Mapping[str, Any]) -> Slot:
    raw = parameters.get("chain_slot") or parameters.get("input_role")
    try:
        return Slot(str(raw).lower()) if raw else Slot.SUBJECT
    except ValueError:
        return Slot.SUBJECT


def _step(operation: PlannedOperation, assignment: SlotAssignment, text: str, chained: bool) -> Step:
    chain_slot = _chain_slot(operation.parameters)
    slots = relevant_slots(operation.family, assignment.filled_slots())
    if chained:
        # Filled at run time with the previous step's artifact.
        slots = slots - {chain_slot}
    bindings = {slot: value for slot, value in assignment.bindings().items() if slot in slots}
    parameters = {k: v for k, v in operation.parameters.items() if k not in ("chain_slot", "input_role")}
    if text and "prompt" not in parameters:
        parameters["prompt"] = text
    return Step(
        operation_id=operation.family,
        workflow_id=archetype_for(frozenset(bindings)),
        slot_bindings=bindings,
        parameters=parameters,
        chain_slot=chain_slot,
    )


def build_plan(
    classification: Classification,
    assignment: SlotAssignment,
    min_confidence: float = 0.5,
    text: str = "",
) -> WorkflowPlan:
    """Turn an accepted classification into an ordered, immutable list of steps.

    Casual turns and classifications at or below `min_confidence` produce an
    empty plan. A multi-step classification becomes a chained plan where each
    step after the first receives the previous step's artifact.
    """
    if not should_dispatch(classification, min_confidence):
        return EMPTY_PLAN

    if classification.family is OperationFamily.MULTI_STEP:
        operations = [op for op in classification.steps if op.family is not OperationFamily.CASUAL]
        if not operations:
            return EMPTY_PLAN
        steps = tuple(
            _step(operation, assignment, text, chained=i > 0)
            for i, operation in enumerate(operations)
        )
        return WorkflowPlan(steps=steps, chained=len(steps) > 1)

    operation = PlannedOperation(classification.family, dict(classification.parameters))
    step = _step(operation, assignment, text, chained=False)
    if classification.family in TEXT_ONLY_FAMILIES:
        step = Step(operation_id=step.operation_id, workflow_id=step.workflow_id, parameters=step.parameters)
    return WorkflowPlan(steps=(step,))
