"""Message classification.

`HeuristicClassifier` runs an ordered battery of keyword matchers where the
first one to fire wins. `DelegateClassifier` asks a chat model and validates
its JSON. `FallbackClassifier` composes the two: the heuristic answer is kept
when it is confident and obvious enough, otherwise the delegate is consulted
and any delegate failure falls back to the heuristic answer.
"""
from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Protocol, Sequence

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import SystemMessage
from pydantic import BaseModel, ConfigDict, Field, StrictBool, ValidationError, field_validator, model_validator

from app.agents.router.prompts import DELEGATE_SYSTEM_PROMPT, RETRY_SUFFIX
from app.agents.router.reference import mentions_prior_result
from app.agents.router.repair import parse_json_object
from app.agents.router.schemas import (
    NO_REFERENCE,
    OPERATION_ENDPOINTS,
    OperationFamily,
    PlannedOperation,
    Classification,
    Reference,
    SLOT_ORDER,
    Slot,
    SlotAssignment,
    Source,
    TEXT_ONLY_FAMILIES,
    Turn,
)
from app.agents.router.vision import build_delegate_message
from app.logging import get_logger

logger = get_logger("classifier")

FAMILY_ALIASES: dict[str, OperationFamily] = {
    "none": OperationFamily.CASUAL,
    "casual_conversation": OperationFamily.CASUAL,
    "design_image": OperationFamily.DESIGN,
    "create_design": OperationFamily.PATTERN,
    "flow_design": OperationFamily.PATTERN,
    "upscale_image": OperationFamily.ENLARGE,
    "upscale": OperationFamily.ENLARGE,
    "clarity_upscale": OperationFamily.CLARITY,
    "reframe_image": OperationFamily.REFRAME,
    "removebg": OperationFamily.REMOVE_BACKGROUND,
    "analyze_image": OperationFamily.ANALYZE,
    "create_video": OperationFamily.ANIMATE,
    "mirror_magic": OperationFamily.MIRROR,
    "generate_title": OperationFamily.TITLE,
}
_ENDPOINT_FAMILIES = {endpoint: family for family, endpoint in OPERATION_ENDPOINTS.items()}


def family_from_name(name: str | None) -> OperationFamily | None:
    if not name:
        return None
    key = name.strip().lower()
    if key in _ENDPOINT_FAMILIES:
        return _ENDPOINT_FAMILIES[key]
    try:
        return OperationFamily(key)
    except ValueError:
        return FAMILY_ALIASES.get(key)


class DelegateError(Exception):
    """The delegate could not produce a usable classification."""


@dataclass(frozen=True)
class ClassifierContext:
    """Everything the classifier may look at for one turn."""

    text: str
    assignment: SlotAssignment = field(default_factory=SlotAssignment)
    reference: Reference = NO_REFERENCE
    history: Sequence[Turn] = ()
    reference_role: Slot | None = None

    @property
    def lowered(self) -> str:
        return self.text.lower()

    @property
    def fresh_slots(self) -> list[Slot]:
        return [
            slot
            for slot in SLOT_ORDER
            if self.assignment.get(slot).filled_from in (Source.UPLOAD, Source.PRESET)
        ]

    @property
    def fresh_input_count(self) -> int:
        return len(self.fresh_slots)

    @property
    def has_presets(self) -> bool:
        return any(self.assignment.get(slot).filled_from is Source.PRESET for slot in SLOT_ORDER)

    @property
    def has_reference(self) -> bool:
        return self.reference.primary_artifact is not None

    @property
    def last_operation(self) -> OperationFamily | None:
        return family_from_name(self.reference.last_operation)


class Classifier(Protocol):
    async def classify(self, ctx: ClassifierContext) -> Classification:
        ...


# --- heuristic tier -------------------------------------------------------

def _pattern(words: Sequence[str]) -> re.Pattern[str]:
    alternatives = "|".join(re.escape(word) for word in sorted(words, key=len, reverse=True))
    return re.compile(rf"\b(?:{alternatives})\b")


CASUAL = _pattern([
    "hi", "hello", "hey", "howdy", "good morning", "good afternoon", "good evening",
    "how are you", "what's up", "whats up", "sup", "who are you", "what's your name",
    "whats your name", "tell me about yourself", "what can you do", "what do you do",
    "help me", "can you help", "i need help", "thank you", "thanks", "goodbye", "bye",
    "see you",
])
GREETING = _pattern(["hi", "hello", "hey", "howdy", "good morning", "good afternoon", "good evening"])
DESIGN_WORDS = _pattern([
    "shirt", "tshirt", "t-shirt", "design", "create", "make", "generate", "product",
    "image", "picture", "photo", "art", "pattern", "color", "colour", "style", "new",
    "custom", "hoodie", "pillow", "mug", "bag", "shoes", "dress", "jean", "plate",
    "notebook", "backpack", "lamp", "vase", "toys", "vehicle", "glasses", "watch",
    "earrings", "scarf", "blanket",
])
ENLARGE_WORDS = _pattern([
    "enhance", "upscale", "upscaled", "upscaling", "upcale", "upscal", "make bigger",
    "bigger", "increase resolution", "improve quality", "enlarge",
])
REFRAME_WORDS = _pattern([
    "reframe", "crop", "landscape", "portrait", "square", "resize", "aspect ratio",
])
REMOVE_BACKGROUND_WORDS = _pattern([
    "remove background", "remove the background", "remove bg", "background removal",
    "remove backdrop", "transparent background", "cut out", "cutout",
])
ANALYZE_WORDS = _pattern([
    "analyze", "analyse", "describe", "tell me about", "what is in", "what's in",
    "identify", "explain", "what do you see", "what can you see",
])
ANALYZE_BLOCKERS = _pattern(["design", "create", "make"])
PATTERN_PHRASES = _pattern([
    "new pattern", "flow pattern", "flow design", "abstract pattern", "create a new design",
    "make a new design", "design a new", "create a flow design", "new design",
])
APPLY_DESIGN_PHRASES = _pattern([
    "put this design on", "change my product design", "product composition", "apply the design",
    "apply this design", "apply design", "apply my design",
])
CLARITY_WORDS = _pattern([
    "clarity", "clear up", "sharpen", "crisp", "detailed", "hd", "4k", "high definition",
])
ANIMATE_WORDS = _pattern([
    "video", "animate", "motion", "move", "kling", "animation", "gif", "movie",
])
MIRROR_WORDS = _pattern(["mirror", "symmetry", "reflection", "mirror effect"])
ENHANCE_PROMPT_PHRASES = _pattern([
    "enhance my prompt", "improve this description", "make my prompt better",
    "expand this prompt", "enhance prompt", "improve my prompt",
])
TITLE_PHRASES = _pattern([
    "create a title", "name this conversation", "generate title", "generate a title",
    "what should i call this", "title for this",
])
_STEP_SEPARATOR = re.compile(r"\b(?:and then|then|after that|afterwards|followed by|and)\b|[;,]")
_COMPLEX = re.compile(r"\b(?:and|then|both|all|multiple)\b")


def reframe_size(lowered: str) -> str:
    if "landscape" in lowered:
        return "landscape"
    if "portrait" in lowered:
        return "portrait"
    return "square_hd"


def is_complex_request(text: str) -> bool:
    lowered = text.lower()
    return bool(_COMPLEX.search(lowered)) or len(lowered.split()) > 10


# Single-image operations recognised inside one clause, most specific first.
_CLAUSE_OPERATIONS: tuple[tuple[re.Pattern[str], OperationFamily], ...] = (
    (REMOVE_BACKGROUND_WORDS, OperationFamily.REMOVE_BACKGROUND),
    (ENLARGE_WORDS, OperationFamily.ENLARGE),
    (REFRAME_WORDS, OperationFamily.REFRAME),
    (CLARITY_WORDS, OperationFamily.CLARITY),
    (MIRROR_WORDS, OperationFamily.MIRROR),
    (ANIMATE_WORDS, OperationFamily.ANIMATE),
    (ANALYZE_WORDS, OperationFamily.ANALYZE),
)


def _clause_operation(clause: str) -> PlannedOperation | None:
    for words, family in _CLAUSE_OPERATIONS:
        if words.search(clause):
            parameters: dict[str, Any] = {}
            if family is OperationFamily.REFRAME:
                parameters["imageSize"] = reframe_size(clause)
            elif family is OperationFamily.ENLARGE:
                parameters["quality"] = "auto"
            return PlannedOperation(family, parameters)
    if re.search(r"\b(?:design|create|generate)\b", clause):
        return PlannedOperation(OperationFamily.DESIGN, {"size": "1024x1024", "quality": "auto"})
    return None


@dataclass(frozen=True)
class HeuristicMatcher:
    name: str
    match: Callable[[ClassifierContext], Classification | None]


def _result(
    family: OperationFamily,
    confidence: float,
    explanation: str,
    parameters: Mapping[str, Any] | None = None,
    steps: tuple[PlannedOperation, ...] = (),
) -> Classification:
    return Classification(
        family=family,
        confidence=confidence,
        parameters=dict(parameters or {}),
        explanation=explanation,
        requires_files=family not in TEXT_ONLY_FAMILIES,
        steps=steps,
    )


def _mentions_operation(lowered: str) -> bool:
    return any(
        words.search(lowered)
        for words in (DESIGN_WORDS, ENLARGE_WORDS, REFRAME_WORDS, REMOVE_BACKGROUND_WORDS, ANALYZE_WORDS,
                      CLARITY_WORDS, ANIMATE_WORDS, MIRROR_WORDS, ENHANCE_PROMPT_PHRASES, TITLE_PHRASES)
    )


def _greeting(ctx: ClassifierContext) -> Classification | None:
    text = ctx.lowered
    if not CASUAL.search(text) or _mentions_operation(text) or ctx.fresh_input_count:
        return None
    kind = "greeting" if GREETING.search(text) else "general"
    return _result(OperationFamily.CASUAL, 0.98, "Casual conversation, no image operation requested",
                   {"conversation_type": kind})


def _multi_step(ctx: ClassifierContext) -> Classification | None:
    steps: list[PlannedOperation] = []
    for clause in _STEP_SEPARATOR.split(ctx.lowered):
        if not clause or not clause.strip():
            continue
        operation = _clause_operation(clause)
        if operation is None:
            continue
        if steps and steps[-1].family is operation.family:
            continue
        steps.append(operation)
    if len(steps) < 2:
        return None
    chain = " → ".join(step.family.value for step in steps)
    return _result(OperationFamily.MULTI_STEP, 0.95, f"Multi-step operation: {chain}",
                   {"execution_plan": "sequential", "context_chain": True}, steps=tuple(steps))


def _enhance_prompt(ctx: ClassifierContext) -> Classification | None:
    if not ENHANCE_PROMPT_PHRASES.search(ctx.lowered):
        return None
    return _result(OperationFamily.ENHANCE_PROMPT, 0.9, "User wants to enhance their prompt",
                   {"enhancement_type": "design"})


def _title(ctx: ClassifierContext) -> Classification | None:
    if not TITLE_PHRASES.search(ctx.lowered):
        return None
    return _result(OperationFamily.TITLE, 0.9, "User wants a title for the conversation")


def _reference_role(ctx: ClassifierContext) -> Classification | None:
    if ctx.reference_role is None or not ctx.has_reference:
        return None
    return _result(OperationFamily.DESIGN, 0.95,
                   f"Reference is to be used for the {ctx.reference_role.value} only",
                   {"size": "1024x1024", "quality": "auto"})


def _single_operation_verb(lowered: str) -> bool:
    return any(words.search(lowered) for words, _ in _CLAUSE_OPERATIONS)


def _preset_selection(ctx: ClassifierContext) -> Classification | None:
    if not ctx.has_presets or _single_operation_verb(ctx.lowered):
        return None
    return _result(OperationFamily.DESIGN, 0.95, "Preset selections route directly to design",
                   {"workflow_type": "preset_design", "size": "1024x1024", "quality": "auto"})


def _enlarge(ctx: ClassifierContext) -> Classification | None:
    if ctx.fresh_input_count > 1 or not ENLARGE_WORDS.search(ctx.lowered):
        return None
    return _result(OperationFamily.ENLARGE, 0.95, "User wants to upscale a single image", {"quality": "auto"})


def _reframe(ctx: ClassifierContext) -> Classification | None:
    if ctx.fresh_input_count > 1 or not REFRAME_WORDS.search(ctx.lowered):
        return None
    size = reframe_size(ctx.lowered)
    return _result(OperationFamily.REFRAME, 0.95, f"User wants to reframe an image to {size}", {"imageSize": size})


def _remove_background(ctx: ClassifierContext) -> Classification | None:
    if ctx.fresh_input_count > 1 or not REMOVE_BACKGROUND_WORDS.search(ctx.lowered):
        return None
    return _result(OperationFamily.REMOVE_BACKGROUND, 0.95, "User wants the background removed")


def _analyze(ctx: ClassifierContext) -> Classification | None:
    text = ctx.lowered
    if ctx.fresh_input_count > 1 or not ANALYZE_WORDS.search(text) or ANALYZE_BLOCKERS.search(text):
        return None
    return _result(OperationFamily.ANALYZE, 0.95, "User wants an image analysed")


def _new_pattern(ctx: ClassifierContext) -> Classification | None:
    if not PATTERN_PHRASES.search(ctx.lowered):
        return None
    return _result(OperationFamily.PATTERN, 0.95, "User wants a new pattern composed from scratch",
                   {"workflow_type": "multi_image_design", "size": "1024x1024", "quality": "auto"})


def _apply_design(ctx: ClassifierContext) -> Classification | None:
    if not ctx.fresh_input_count or not APPLY_DESIGN_PHRASES.search(ctx.lowered):
        return None
    return _result(OperationFamily.DESIGN, 0.95, "User wants a design applied to a product",
                   {"workflow_type": "product_design", "size": "1024x1024", "quality": "auto"})


def _single_input(words: re.Pattern[str], family: OperationFamily, explanation: str,
                  parameters: Mapping[str, Any] | None = None) -> Callable[[ClassifierContext], Classification | None]:
    def match(ctx: ClassifierContext) -> Classification | None:
        has_one_image = ctx.fresh_input_count == 1 or (ctx.fresh_input_count == 0 and ctx.has_reference)
        if not has_one_image or not words.search(ctx.lowered):
            return None
        return _result(family, 0.9, explanation, parameters)
    return match


def _contextual_modification(ctx: ClassifierContext) -> Classification | None:
    if ctx.fresh_input_count or not ctx.has_reference or not mentions_prior_result(ctx.text):
        return None
    family = ctx.last_operation
    if family is None or family in TEXT_ONLY_FAMILIES or family is OperationFamily.MULTI_STEP:
        family = OperationFamily.DESIGN
    return _result(family, 0.9, f"Modification of the previous result via {family.value}",
                   {"modification": ctx.text})


def _design_keywords(ctx: ClassifierContext) -> Classification | None:
    if not DESIGN_WORDS.search(ctx.lowered):
        return None
    return _result(OperationFamily.DESIGN, 0.95, "Design-related request",
                   {"workflow_type": "prompt_only", "size": "1024x1024", "quality": "auto"})


def _uploads_default(ctx: ClassifierContext) -> Classification | None:
    if not ctx.fresh_input_count:
        return None
    return _result(OperationFamily.DESIGN, 0.9,
                   f"{ctx.fresh_input_count} input(s) supplied, composing with {ctx.assignment.workflow_hint.value}",
                   {"workflow_type": ctx.assignment.workflow_hint.value, "size": "1024x1024", "quality": "auto"})


def _unclear(ctx: ClassifierContext) -> Classification | None:
    return _result(OperationFamily.CASUAL, 0.7, "Request unclear, defaulting to conversation",
                   {"conversation_type": "general"})


DEFAULT_MATCHERS: tuple[HeuristicMatcher, ...] = (
    HeuristicMatcher("greeting", _greeting),
    HeuristicMatcher("multi_step", _multi_step),
    HeuristicMatcher("enhance_prompt", _enhance_prompt),
    HeuristicMatcher("title", _title),
    HeuristicMatcher("reference_role", _reference_role),
    HeuristicMatcher("preset_selection", _preset_selection),
    HeuristicMatcher("remove_background", _remove_background),
    HeuristicMatcher("upscale_verb", _enlarge),
    HeuristicMatcher("crop_verb", _reframe),
    HeuristicMatcher("analyze_verb", _analyze),
    HeuristicMatcher("new_pattern", _new_pattern),
    HeuristicMatcher("apply_design", _apply_design),
    HeuristicMatcher("clarity_verb", _single_input(CLARITY_WORDS, OperationFamily.CLARITY,
                                                   "User wants image clarity improved",
                                                   {"upscaleFactor": 2, "creativity": 0.35})),
    HeuristicMatcher("animate_verb", _single_input(ANIMATE_WORDS, OperationFamily.ANIMATE,
                                                   "User wants a video from the image",
                                                   {"duration": "5", "cfg_scale": 0.5})),
    HeuristicMatcher("mirror_verb", _single_input(MIRROR_WORDS, OperationFamily.MIRROR,
                                                  "User wants a mirror effect", {"workflow": "mirror"})),
    HeuristicMatcher("contextual_modification", _contextual_modification),
    HeuristicMatcher("design_keywords", _design_keywords),
    HeuristicMatcher("uploads_default", _uploads_default),
    HeuristicMatcher("unclear", _unclear),
)

# Patterns clear enough that a confident match never needs the delegate.
SUPER_OBVIOUS = frozenset({
    "greeting", "reference_role", "preset_selection", "remove_background", "upscale_verb",
    "crop_verb", "analyze_verb", "new_pattern", "apply_design", "design_keywords",
})


class HeuristicClassifier:
    def __init__(self, matchers: Sequence[HeuristicMatcher] = DEFAULT_MATCHERS) -> None:
        self.matchers = tuple(matchers)

    def evaluate(self, ctx: ClassifierContext) -> Classification:
        for matcher in self.matchers:
            result = matcher.match(ctx)
            if result is not None:
                return Classification(
                    family=result.family,
                    confidence=result.confidence,
                    parameters=result.parameters,
                    explanation=result.explanation,
                    requires_files=result.requires_files,
                    steps=result.steps,
                    source="heuristic",
                    matcher=matcher.name,
                )
        return _unclear(ctx)

    async def classify(self, ctx: ClassifierContext) -> Classification:
        return self.evaluate(ctx)


# --- delegate tier --------------------------------------------------------

class DelegateStep(BaseModel):
    model_config = ConfigDict(extra="ignore")

    intent: str
    endpoint: str | None = None
    parameters: dict[str, Any] = Field(default_factory=dict)

    @field_validator("intent")
    @classmethod
    def known_step_intent(cls, v: str) -> str:
        family = family_from_name(v)
        if family is None or family in (OperationFamily.MULTI_STEP, OperationFamily.CASUAL):
            raise ValueError(f"Unknown step intent: {v}")
        return family.value


class DelegateAnswer(BaseModel):
    """Wire shape returned by the delegate; field names must match exactly."""

    model_config = ConfigDict(extra="ignore")

    intent: str
    confidence: float = Field(ge=0.0, le=1.0)
    endpoint: str
    parameters: dict[str, Any]
    requiresFiles: StrictBool
    explanation: str
    steps: list[DelegateStep] = Field(default_factory=list)

    @field_validator("intent")
    @classmethod
    def known_intent(cls, v: str) -> str:
        if family_from_name(v) is None:
            raise ValueError(f"Unknown intent: {v}")
        return v

    @field_validator("endpoint")
    @classmethod
    def endpoint_format(cls, v: str) -> str:
        if v not in ("none", "multi_step") and not v.startswith("/api/"):
            raise ValueError('Invalid endpoint format: must be "none", "multi_step", or start with "/api/"')
        return v

    @model_validator(mode="after")
    def multi_step_has_steps(self) -> "DelegateAnswer":
        if family_from_name(self.intent) is OperationFamily.MULTI_STEP:
            if not self.steps and isinstance(self.parameters.get("steps"), list):
                self.steps = [DelegateStep.model_validate(step) for step in self.parameters["steps"]]
            if not self.steps:
                raise ValueError("multi_step answer without steps")
        return self

    def to_classification(self) -> Classification:
        family = family_from_name(self.intent)
        parameters = {k: v for k, v in self.parameters.items() if k != "steps"}
        steps = tuple(
            PlannedOperation(OperationFamily(step.intent), dict(step.parameters)) for step in self.steps
        ) if family is OperationFamily.MULTI_STEP else ()
        return Classification(
            family=family,
            confidence=self.confidence,
            parameters=parameters,
            explanation=self.explanation,
            requires_files=self.requiresFiles,
            steps=steps,
            source="delegate",
        )


def serialize_context(ctx: ClassifierContext, heuristic: Classification | None = None, history_turns: int = 4) -> str:
    uploads = [slot.value for slot in SLOT_ORDER if ctx.assignment.get(slot).filled_from is Source.UPLOAD]
    presets = {
        slot.value: ctx.assignment.get(slot).value
        for slot in SLOT_ORDER
        if ctx.assignment.get(slot).filled_from is Source.PRESET
    }
    recent = list(ctx.history)[-history_turns:]
    history_lines = "\n".join(
        f"{turn.role}: {turn.text[:100]}{'...' if len(turn.text) > 100 else ''}" for turn in recent
    ) or "No previous conversation"
    lines = [
        f'CURRENT USER MESSAGE: "{ctx.text}"',
        f"UPLOADED IMAGES IN THIS REQUEST: {', '.join(uploads) if uploads else 'NO'}",
        f"PRESET SELECTIONS: {presets if presets else 'None selected'}",
        f"REFERENCE: kind={ctx.reference.kind} artifacts={len(ctx.reference.artifacts)} "
        f"previous_operation={ctx.reference.last_operation or 'unknown'}",
        f"REFERENCE TEXT: {ctx.reference.text or '-'}",
        f"REFERENCE INSTRUCTION: {ctx.reference_role.value if ctx.reference_role else 'none'}",
        f"SLOT FILL: {ctx.assignment.to_dict()}",
        "RECENT CONVERSATION HISTORY:",
        history_lines,
    ]
    if heuristic is not None:
        lines.append(f"KEYWORD GUESS: {heuristic.family.value} ({heuristic.confidence:.2f})")
    lines.append("Follow the system instructions and return intent JSON only.")
    return "\n".join(lines)


class DelegateClassifier:
    def __init__(self, llm: BaseChatModel, timeout_s: float = 20.0, attempts: int = 2) -> None:
        self.llm = llm
        self.timeout_s = timeout_s
        self.attempts = attempts

    async def classify(self, ctx: ClassifierContext, heuristic: Classification | None = None) -> Classification:
        text = serialize_context(ctx, heuristic)
        images = [
            ctx.assignment.get(slot).value
            for slot in SLOT_ORDER
            if ctx.assignment.get(slot).filled_from is Source.UPLOAD
        ] + list(ctx.reference.artifacts)

        last_error: Exception | None = None
        for attempt in range(self.attempts):
            suffix = RETRY_SUFFIX if attempt else ""
            messages = [SystemMessage(content=DELEGATE_SYSTEM_PROMPT), build_delegate_message(text + suffix, images)]
            try:
                response = await asyncio.wait_for(self.llm.ainvoke(messages), timeout=self.timeout_s)
                content = response.content if isinstance(response.content, str) else str(response.content)
                answer = DelegateAnswer.model_validate(parse_json_object(content))
                return answer.to_classification()
            except asyncio.TimeoutError:
                last_error = DelegateError(f"delegate timed out after {self.timeout_s}s")
            except (ValidationError, ValueError) as e:
                last_error = e
            except Exception as e:
                last_error = DelegateError(f"delegate unreachable: {e}")
        raise DelegateError(str(last_error))


@dataclass
class FallbackClassifier:
    heuristic: HeuristicClassifier = field(default_factory=HeuristicClassifier)
    delegate: DelegateClassifier | None = None
    bypass_threshold: float = 0.95
    super_obvious: frozenset[str] = SUPER_OBVIOUS

    def should_bypass(self, ctx: ClassifierContext, result: Classification) -> bool:
        if result.matcher not in self.super_obvious or result.confidence < self.bypass_threshold:
            return False
        return result.matcher == "greeting" or not is_complex_request(ctx.text)

    async def classify(self, ctx: ClassifierContext, request_id: str = "-") -> Classification:
        result = self.heuristic.evaluate(ctx)
        if self.delegate is None or self.should_bypass(ctx, result):
            return result
        try:
            return await self.delegate.classify(ctx, heuristic=result)
        except DelegateError as e:
            logger.warning(f"[{request_id}] delegate classification failed, using heuristic: {e}")
            return result
