import asyncio

from app.config import settings
from app.agents.router.schemas import OperationFamily, Slot, Source, Turn
from app.agents.router.service import IntentRouter, TurnRequest


def test_route_turn_scenario(dispatcher):
    router = IntentRouter.from_settings(settings, dispatcher)
    history = [
        Turn(role="assistant", text="done", attachments=["https://cdn.test/prev.png"], operation="/api/design"),
    ]
    request = TurnRequest(text="make it bigger", history=history)
    result = asyncio.run(router.route_turn(request, "t1"))

    assert result.status == "success"
    assert result.classification.family is OperationFamily.ENLARGE
    assert result.assignment.subject.filled_from is Source.REFERENCE
    assert dispatcher.steps[0].slot_bindings[Slot.SUBJECT] == "https://cdn.test/prev.png"
    assert result.artifact == "https://cdn.test/out/1.png"


def test_route_turn_never_raises(dispatcher):
    async def explode(step, request_id="-"):
        raise RuntimeError("capability down")

    dispatcher.dispatch = explode
    router = IntentRouter.from_settings(settings, dispatcher)
    result = asyncio.run(router.route_turn(TurnRequest(text="design a mug")))
    assert result.status == "error"
    assert "capability down" in result.message


def test_partial_turn(make_dispatcher):
    from app.agents.router.dispatcher import DispatchResult

    dispatcher = make_dispatcher([
        DispatchResult(ok=True, artifact="https://cdn.test/1.png"),
        DispatchResult(ok=False, error_code="webhook_timeout"),
    ])
    router = IntentRouter.from_settings(settings, dispatcher)
    request = TurnRequest(text="remove the background and then upscale", uploads={Slot.SUBJECT: "https://cdn.test/u.png"})
    result = asyncio.run(router.route_turn(request))

    assert result.status == "partial"
    assert result.artifact == "https://cdn.test/1.png"
    assert "webhook_timeout" in result.message
