"""Slot assignment: decide which input source owns subject, style and palette.

Fresh uploads and current presets are laid down first (an upload always beats
a preset for the same slot). Conflicting inherited presets are then discarded,
and the placement of the reference artifact is decided by `PRECEDENCE`, an
ordered list of (predicate, placement) rows evaluated top to bottom where the
first matching row wins. Inherited presets only ever fill slots that are
still empty afterwards.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Callable, Mapping

from app.agents.router.presets import PresetCatalog
from app.agents.router.schemas import (
    NO_REFERENCE,
    OperationFamily,
    Reference,
    SLOT_ORDER,
    Slot,
    SlotAssignment,
    SlotFill,
    Source,
    TEXT_ONLY_FAMILIES,
)
from app.agents.router.workflows import archetype_for

_ROLE_SYNONYMS: dict[str, Slot] = {
    "subject": Slot.SUBJECT,
    "product": Slot.SUBJECT,
    "object": Slot.SUBJECT,
    "item": Slot.SUBJECT,
    "style": Slot.STYLE,
    "design": Slot.STYLE,
    "pattern": Slot.STYLE,
    "palette": Slot.PALETTE,
    "color": Slot.PALETTE,
    "colors": Slot.PALETTE,
    "colour": Slot.PALETTE,
    "colours": Slot.PALETTE,
    "color palette": Slot.PALETTE,
    "colour palette": Slot.PALETTE,
}

_ROLE_WORDS = "|".join(sorted((re.escape(word) for word in _ROLE_SYNONYMS), key=len, reverse=True))
_ROLE_INSTRUCTIONS = (
    re.compile(
        rf"\buse\s+(?:the\s+|this\s+|that\s+|my\s+)?(?:reference|ref|previous\s+(?:image|result)|it|this|that)"
        rf"(?:\s+image)?\s+(?:only\s+)?(?:for|as)\s+(?:the\s+|a\s+)?(?P<role>{_ROLE_WORDS})\b"
    ),
    re.compile(rf"\b(?:reference|ref)\s+(?:is\s+)?(?:only\s+)?(?:for|as)\s+(?:the\s+)?(?P<role>{_ROLE_WORDS})\b"),
    re.compile(rf"\bonly\s+(?:use\s+)?(?:the\s+)?(?P<role>{_ROLE_WORDS})\s+(?:from|of)\s+(?:the\s+)?(?:reference|it|this|that)\b"),
)


def parse_reference_role(text: str | None) -> Slot | None:
    """Explicit "use the reference only for X" instruction, if the text carries one."""
    if not text:
        return None
    lowered = text.lower()
    for pattern in _ROLE_INSTRUCTIONS:
        match = pattern.search(lowered)
        if match:
            return _ROLE_SYNONYMS[match.group("role")]
    return None


@dataclass(frozen=True)
class SlotInputs:
    uploads: Mapping[Slot, str] = field(default_factory=dict)
    presets: Mapping[Slot, str] = field(default_factory=dict)
    reference: Reference = NO_REFERENCE
    family: OperationFamily | None = None
    reference_role: Slot | None = None


@dataclass
class _Context:
    inputs: SlotInputs
    fills: dict[Slot, SlotFill]
    catalog: PresetCatalog

    @property
    def reference_artifact(self) -> str | None:
        return self.inputs.reference.primary_artifact

    def has(self, slot: Slot) -> bool:
        return self.fills[slot].is_filled

    def first_missing(self, *slots: Slot) -> Slot | None:
        for slot in slots:
            if not self.has(slot):
                return slot
        return None

    def subject_preset_differs(self) -> bool:
        current = self.inputs.presets.get(Slot.SUBJECT)
        inherited = self.inputs.reference.inherited_slots.get(Slot.SUBJECT)
        return bool(current and inherited) and not self.catalog.same_selection(current, inherited)


@dataclass(frozen=True)
class Placement:
    slot: Slot | None
    interpretation: str
    override: bool = False
    use_inherited: bool = True
    # Defaults to the reference's primary artifact.
    value: str | None = None


@dataclass(frozen=True)
class PrecedenceRule:
    name: str
    applies: Callable[[_Context], bool]
    place: Callable[[_Context], Placement]


def _directed(ctx: _Context) -> Placement:
    role = ctx.inputs.reference_role
    value = ctx.reference_artifact or ctx.inputs.reference.inherited_slots.get(role)
    return Placement(role if value else None, "directed", override=True, use_inherited=False, value=value)


def _inspiration(ctx: _Context) -> Placement:
    # Style is checked before palette; product owners have not confirmed this order.
    return Placement(ctx.first_missing(Slot.STYLE, Slot.PALETTE), "inspiration")


PRECEDENCE: tuple[PrecedenceRule, ...] = (
    PrecedenceRule(
        "explicit_role",
        lambda ctx: ctx.inputs.reference_role is not None and ctx.inputs.reference.is_usable,
        _directed,
    ),
    PrecedenceRule(
        "text_only_family",
        lambda ctx: ctx.inputs.family in TEXT_ONLY_FAMILIES,
        lambda ctx: Placement(None, "unused", use_inherited=False),
    ),
    PrecedenceRule(
        "no_reference_artifact",
        lambda ctx: ctx.reference_artifact is None,
        lambda ctx: Placement(None, "none"),
    ),
    PrecedenceRule(
        "catalog_subject_mismatch",
        lambda ctx: ctx.subject_preset_differs(),
        _inspiration,
    ),
    PrecedenceRule(
        "reference_as_subject",
        lambda ctx: not ctx.has(Slot.SUBJECT),
        lambda ctx: Placement(Slot.SUBJECT, "modification"),
    ),
    PrecedenceRule(
        "reference_fills_first_missing",
        lambda ctx: ctx.first_missing(Slot.STYLE, Slot.PALETTE) is not None,
        _inspiration,
    ),
    PrecedenceRule(
        "all_roles_chosen",
        lambda ctx: True,
        lambda ctx: Placement(None, "unused"),
    ),
)


class SlotAssignor:
    def __init__(self, catalog: PresetCatalog, rules: tuple[PrecedenceRule, ...] = PRECEDENCE) -> None:
        self.catalog = catalog
        self.rules = rules

    def assign(self, inputs: SlotInputs) -> SlotAssignment:
        fills: dict[Slot, SlotFill] = {}
        for slot in SLOT_ORDER:
            if inputs.uploads.get(slot):
                fills[slot] = SlotFill(Source.UPLOAD, inputs.uploads[slot])
            elif inputs.presets.get(slot):
                fills[slot] = SlotFill(Source.PRESET, inputs.presets[slot])
            else:
                fills[slot] = SlotFill()

        # Current selections always beat inherited ones for the same slot.
        inherited = {
            slot: value
            for slot, value in inputs.reference.inherited_slots.items()
            if not inputs.presets.get(slot) and not inputs.uploads.get(slot)
        }

        ctx = _Context(inputs=inputs, fills=fills, catalog=self.catalog)
        rule, placement = self._first_match(ctx)

        if placement.slot is not None and (placement.override or not fills[placement.slot].is_filled):
            fills[placement.slot] = SlotFill(Source.REFERENCE, placement.value or ctx.reference_artifact)

        if placement.use_inherited:
            for slot in SLOT_ORDER:
                if slot in inherited and not fills[slot].is_filled:
                    fills[slot] = SlotFill(Source.REFERENCE, inherited[slot])

        filled = frozenset(slot for slot in SLOT_ORDER if fills[slot].is_filled)
        return SlotAssignment(
            subject=fills[Slot.SUBJECT],
            style=fills[Slot.STYLE],
            palette=fills[Slot.PALETTE],
            workflow_hint=archetype_for(filled),
            rule=rule.name,
            interpretation=placement.interpretation,
        )

    def _first_match(self, ctx: _Context) -> tuple[PrecedenceRule, Placement]:
        for rule in self.rules:
            if rule.applies(ctx):
                return rule, rule.place(ctx)
        raise LookupError("precedence table has no catch-all rule")
