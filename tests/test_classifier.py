import asyncio
import json

import pytest
from langchain_core.language_models import FakeListChatModel

from app.agents.router.classifier import (
    ClassifierContext,
    DelegateClassifier,
    DelegateError,
    FallbackClassifier,
    HeuristicClassifier,
    HeuristicMatcher,
    family_from_name,
)
from app.agents.router.schemas import (
    Classification,
    OperationFamily,
    Reference,
    Slot,
    SlotAssignment,
    SlotFill,
    Source,
)

PREVIOUS = Reference(kind="auto-previous", artifacts=("https://cdn.test/prev.png",), last_operation="/api/design")


class SpyDelegate:
    def __init__(self, result=None):
        self.calls = 0
        self.result = result

    async def classify(self, ctx, heuristic=None):
        self.calls += 1
        if self.result is None:
            raise DelegateError("unavailable")
        return self.result


def upload(slot=Slot.SUBJECT):
    return SlotAssignment(**{slot.value: SlotFill(Source.UPLOAD, "https://cdn.test/up.png")})


def heuristic(text, **kwargs):
    return HeuristicClassifier().evaluate(ClassifierContext(text=text, **kwargs))


def answer(**overrides):
    body = {
        "intent": "enlarge",
        "confidence": 0.8,
        "endpoint": "/api/upscale",
        "parameters": {},
        "requiresFiles": True,
        "explanation": "wants it larger",
    }
    body.update(overrides)
    return json.dumps(body)


def test_greeting_never_calls_delegate():
    spy = SpyDelegate()
    classifier = FallbackClassifier(delegate=spy)
    result = asyncio.run(classifier.classify(ClassifierContext(text="hi there")))

    assert result.family is OperationFamily.CASUAL
    assert result.confidence >= 0.9
    assert result.source == "heuristic"
    assert spy.calls == 0


def test_greeting_with_upload_is_not_casual():
    result = heuristic("hey", assignment=upload())
    assert result.family is OperationFamily.DESIGN


def test_first_matching_rule_wins():
    classifier = HeuristicClassifier([
        HeuristicMatcher("never", lambda ctx: None),
        HeuristicMatcher("first", lambda ctx: Classification(OperationFamily.MIRROR, 0.91)),
        HeuristicMatcher("second", lambda ctx: Classification(OperationFamily.ANIMATE, 0.99)),
    ])
    result = classifier.evaluate(ClassifierContext(text="anything"))
    assert result.family is OperationFamily.MIRROR
    assert result.matcher == "first"


def test_make_it_bigger_is_enlarge():
    result = heuristic("make it bigger", reference=PREVIOUS)
    assert result.family is OperationFamily.ENLARGE
    assert result.confidence == 0.95


@pytest.mark.parametrize(
    "text,size",
    [("crop this to landscape", "landscape"), ("reframe as portrait", "portrait"), ("crop it", "square_hd")],
)
def test_reframe_orientation(text, size):
    result = heuristic(text, assignment=upload())
    assert result.family is OperationFamily.REFRAME
    assert result.parameters["imageSize"] == size


def test_multi_step_detection():
    result = heuristic("upscale then crop to landscape", assignment=upload())
    assert result.family is OperationFamily.MULTI_STEP
    assert [s.family for s in result.steps] == [OperationFamily.ENLARGE, OperationFamily.REFRAME]
    assert result.steps[1].parameters["imageSize"] == "landscape"


def test_remove_background_and_analyze():
    assert heuristic("please remove the background", assignment=upload()).family is OperationFamily.REMOVE_BACKGROUND
    assert heuristic("describe what you see", assignment=upload()).family is OperationFamily.ANALYZE


def test_presets_route_to_design():
    presets = SlotAssignment(subject=SlotFill(Source.PRESET, "/designs/mug/m.jpg"))
    result = heuristic("go", assignment=presets)
    assert result.family is OperationFamily.DESIGN
    assert result.matcher == "preset_selection"


def test_contextual_modification_repeats_last_operation():
    reference = Reference(kind="auto-previous", artifacts=("https://cdn.test/p.png",), last_operation="/api/mirrormagic")
    result = heuristic("change that slightly", reference=reference)
    assert result.family is OperationFamily.MIRROR


def test_enhance_prompt_is_not_enlarge():
    assert heuristic("enhance my prompt about a lamp").family is OperationFamily.ENHANCE_PROMPT


def test_unclear_defaults_to_casual():
    result = heuristic("hmm blue maybe")
    assert result.family is OperationFamily.CASUAL
    assert result.confidence == 0.7


def test_delegate_output_is_repaired():
    raw = '```json\n{intent: "enlarge", "confidence": 0.8, "endpoint": "/api/upscale", "parameters": {}, "requiresFiles": true, "explanation": "x, y",}\n```'
    delegate = DelegateClassifier(FakeListChatModel(responses=[raw]))
    result = asyncio.run(delegate.classify(ClassifierContext(text="something")))
    assert result.family is OperationFamily.ENLARGE
    assert result.source == "delegate"
    assert result.explanation == "x, y"


def test_delegate_retries_once():
    delegate = DelegateClassifier(FakeListChatModel(responses=["no json here", answer()]))
    result = asyncio.run(delegate.classify(ClassifierContext(text="something")))
    assert result.family is OperationFamily.ENLARGE


@pytest.mark.parametrize(
    "bad",
    [
        answer(endpoint="upscale"),
        answer(confidence=1.5),
        answer(intent="teleport"),
        answer(intent="multi_step", endpoint="multi_step"),
        json.dumps({"intent": "enlarge", "confidence": 0.8}),
    ],
)
def test_invalid_delegate_answers_are_rejected(bad):
    delegate = DelegateClassifier(FakeListChatModel(responses=[bad, bad]))
    with pytest.raises(DelegateError):
        asyncio.run(delegate.classify(ClassifierContext(text="something")))


def test_delegate_multi_step_answer():
    raw = answer(
        intent="multi_step",
        endpoint="multi_step",
        steps=[{"intent": "upscale", "parameters": {}}, {"intent": "reframe", "parameters": {"imageSize": "portrait"}}],
    )
    delegate = DelegateClassifier(FakeListChatModel(responses=[raw]))
    result = asyncio.run(delegate.classify(ClassifierContext(text="something")))
    assert result.family is OperationFamily.MULTI_STEP
    assert [s.family for s in result.steps] == [OperationFamily.ENLARGE, OperationFamily.REFRAME]


def test_delegate_failure_falls_back_to_heuristic():
    classifier = FallbackClassifier(delegate=DelegateClassifier(FakeListChatModel(responses=["nope", "still nope"])))
    result = asyncio.run(classifier.classify(ClassifierContext(text="hmm blue maybe")))
    assert result.family is OperationFamily.CASUAL
    assert result.source == "heuristic"


def test_uncertain_heuristic_consults_delegate():
    delegated = Classification(OperationFamily.PATTERN, 0.85, source="delegate")
    spy = SpyDelegate(delegated)
    classifier = FallbackClassifier(delegate=spy)
    result = asyncio.run(classifier.classify(ClassifierContext(text="hmm blue maybe")))
    assert result is delegated
    assert spy.calls == 1


def test_family_aliases():
    assert family_from_name("none") is OperationFamily.CASUAL
    assert family_from_name("upscale_image") is OperationFamily.ENLARGE
    assert family_from_name("/api/reframe") is OperationFamily.REFRAME
    assert family_from_name("teleport") is None


def test_greeting_plus_operation_resolves_to_one_family():
    result = heuristic("hello, please upscale this", assignment=upload())
    assert result.family is OperationFamily.ENLARGE
    assert result.steps == ()
