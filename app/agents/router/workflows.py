from app.agents.router.schemas import (
    OperationFamily,
    SINGLE_INPUT_FAMILIES,
    Slot,
    SlotAssignment,
    TEXT_ONLY_FAMILIES,
    WorkflowId,
)

# Every valid fill pattern. Anything absent (style only, palette only) runs prompt-only.
WORKFLOW_TABLE: dict[frozenset[Slot], WorkflowId] = {
    frozenset(): WorkflowId.PROMPT_ONLY,
    frozenset({Slot.SUBJECT}): WorkflowId.SUBJECT_ONLY,
    frozenset({Slot.SUBJECT, Slot.STYLE}): WorkflowId.SUBJECT_STYLE,
    frozenset({Slot.SUBJECT, Slot.PALETTE}): WorkflowId.SUBJECT_PALETTE,
    frozenset({Slot.STYLE, Slot.PALETTE}): WorkflowId.STYLE_PALETTE,
    frozenset({Slot.SUBJECT, Slot.STYLE, Slot.PALETTE}): WorkflowId.ALL_THREE,
}


def archetype_for(filled: frozenset[Slot]) -> WorkflowId:
    return WORKFLOW_TABLE.get(frozenset(filled), WorkflowId.PROMPT_ONLY)


def relevant_slots(family: OperationFamily | None, filled: frozenset[Slot]) -> frozenset[Slot]:
    """Slots a family actually consumes out of the filled ones."""
    if family in TEXT_ONLY_FAMILIES:
        return frozenset()
    if family in SINGLE_INPUT_FAMILIES:
        return filled & {Slot.SUBJECT}
    return filled


def select_workflow(family: OperationFamily | None, assignment: SlotAssignment) -> WorkflowId:
    return archetype_for(relevant_slots(family, assignment.filled_slots()))
