import json
from datetime import datetime, timedelta, timezone

import pytest

from app.agents.router.reference import ReferenceResolver, extract_artifact_urls, mentions_prior_result
from app.agents.router.schemas import NO_REFERENCE, Slot, Turn

T0 = datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc)


def at(seconds: int) -> datetime:
    return T0 + timedelta(seconds=seconds)


@pytest.fixture
def resolver(catalog):
    return ReferenceResolver(catalog, max_depth=10, response_window_s=300)


@pytest.fixture
def history():
    return [
        Turn(role="user", text="design a floral mug", timestamp=at(0),
             attachments=["/designs/mug/mug1.jpg", "/defaults/floral/f1.jpg"]),
        Turn(role="assistant", text="Here is your mug", timestamp=at(40),
             attachments=["https://cdn.test/mug-floral.png"], operation="/api/design"),
        Turn(role="user", text="thanks", timestamp=at(100)),
        Turn(role="assistant", text="You're welcome", timestamp=at(101)),
    ]


def test_explicit_reference_to_user_turn_collects_response_and_presets(resolver, history):
    payload = {"id": "m1", "text": "design a floral mug", "timestamp": at(0).isoformat(), "turnIndex": 0}
    ref = resolver.resolve(payload, history)

    assert ref.kind == "explicit"
    assert ref.artifacts == ("https://cdn.test/mug-floral.png",)
    assert ref.inherited_slots == {Slot.SUBJECT: "/designs/mug/mug1.jpg", Slot.STYLE: "/defaults/floral/f1.jpg"}
    assert ref.last_operation == "/api/design"
    assert ref.chain_length == 1


def test_explicit_reference_as_json_string(resolver, history):
    payload = json.dumps({"text": "design a floral mug", "timestamp": at(0).isoformat()})
    ref = resolver.resolve(payload, history)
    assert ref.kind == "explicit"
    assert ref.primary_artifact == "https://cdn.test/mug-floral.png"


def test_malformed_payload_degrades_to_none(resolver, history):
    assert resolver.resolve("{not json", history) == NO_REFERENCE
    assert resolver.resolve({"timestamp": "yesterday-ish"}, history) == NO_REFERENCE


def test_no_payload_and_no_back_reference_means_no_reference(resolver, history):
    assert resolver.resolve(None, history, text="design a new backpack") == NO_REFERENCE


def test_auto_previous_picks_latest_assistant_output(resolver, history):
    ref = resolver.resolve(None, history, text="make it bigger")
    assert ref.kind == "auto-previous"
    assert ref.artifacts == ("https://cdn.test/mug-floral.png",)
    assert ref.last_operation == "/api/design"


def test_auto_previous_without_any_output(resolver):
    turns = [Turn(role="user", text="hello", timestamp=at(0))]
    assert resolver.resolve(None, turns, text="make it bigger") == NO_REFERENCE


def test_chain_walk_is_capped_at_max_depth(resolver):
    turns = [
        Turn(role="user", text="change this again", timestamp=at(i * 600), attachments=[f"https://cdn.test/{i}.png"])
        for i in range(15)
    ]
    ref = resolver.resolve({"turnIndex": 14}, turns)

    assert ref.chain_length == 10
    assert len(ref.artifacts) == 10
    assert ref.primary_artifact == "https://cdn.test/14.png"
    assert " → " in ref.text


def test_chain_deduplicates_artifacts(resolver):
    turns = [
        Turn(role="user", text="a mug", timestamp=at(0), attachments=["https://cdn.test/same.png"]),
        Turn(role="user", text="tweak that", timestamp=at(600), attachments=["https://cdn.test/same.png"]),
    ]
    ref = resolver.resolve({"turnIndex": 1}, turns)
    assert ref.artifacts == ("https://cdn.test/same.png",)
    assert ref.chain_length == 2


def test_payload_without_matching_turn_walks_by_timestamp(resolver, history):
    # Points between turns; the walk can only move to strictly older turns.
    payload = {"text": "make this pop", "timestamp": at(50).isoformat(), "images": ["https://cdn.test/x.png"]}
    ref = resolver.resolve(payload, history)
    assert ref.artifacts[0] == "https://cdn.test/x.png"
    assert "https://cdn.test/mug-floral.png" in ref.artifacts


def test_response_outside_window_is_not_matched(catalog):
    resolver = ReferenceResolver(catalog, response_window_s=10)
    turns = [
        Turn(role="user", text="a mug please", timestamp=at(0)),
        Turn(role="assistant", text="done", timestamp=at(60), attachments=["https://cdn.test/late.png"]),
    ]
    ref = resolver.resolve({"turnIndex": 0}, turns)
    assert ref.artifacts == ()


def test_assistant_artifacts_recovered_from_text():
    turn = Turn(role="assistant", text='{"firebaseOutputUrl": "https://cdn.test/a.png", "intent": "design"}')
    assert extract_artifact_urls(turn) == ["https://cdn.test/a.png"]


def test_mentions_prior_result():
    assert mentions_prior_result("Make it bigger")
    assert mentions_prior_result("same but in red")
    assert not mentions_prior_result("design a lamp")


def test_cyclic_references_terminate(resolver):
    # Each turn points back at the other; timestamps are out of order.
    turns = [
        Turn(role="user", text="like that one", timestamp=at(600), attachments=["https://cdn.test/a.png"]),
        Turn(role="user", text="like this one", timestamp=at(0), attachments=["https://cdn.test/b.png"]),
    ]
    for payload in ({"turnIndex": 1}, {"text": "like this", "timestamp": at(900).isoformat()}):
        ref = resolver.resolve(payload, turns)
        assert ref.chain_length <= 10
        assert set(ref.artifacts) <= {"https://cdn.test/a.png", "https://cdn.test/b.png"}


def test_duplicated_turn_is_visited_once(resolver):
    # The same user turn was recorded twice; the walk stops on the repeat.
    repeated = Turn(role="user", text="tweak this", timestamp=at(600), attachments=["https://cdn.test/b.png"])
    turns = [
        Turn(role="user", text="a mug", timestamp=at(0), attachments=["https://cdn.test/a.png"]),
        repeated,
        repeated,
    ]
    ref = resolver.resolve({"turnIndex": 2}, turns)

    assert ref.chain_length == 1
    assert ref.artifacts == ("https://cdn.test/b.png",)


def test_payload_with_non_list_images_degrades(resolver, history):
    assert resolver.resolve({"text": "that one", "images": 5}, history) == NO_REFERENCE
