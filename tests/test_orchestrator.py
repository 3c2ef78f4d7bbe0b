import asyncio

from app.agents.router.classifier import ClassifierContext, HeuristicClassifier
from app.agents.router.dispatcher import DispatchError, DispatchResult
from app.agents.router.orchestrator import RunState, StepOrchestrator, turn_status
from app.agents.router.planner import build_plan
from app.agents.router.schemas import (
    Classification,
    ExecutionResult,
    OperationFamily,
    PlannedOperation,
    Slot,
    SlotAssignment,
    SlotFill,
    Source,
    Step,
    WorkflowId,
    WorkflowPlan,
)

UPLOAD = "https://cdn.test/upload.png"
WITH_UPLOAD = SlotAssignment(subject=SlotFill(Source.UPLOAD, UPLOAD), workflow_hint=WorkflowId.SUBJECT_ONLY)


def three_step_plan():
    classification = Classification(
        OperationFamily.MULTI_STEP,
        0.95,
        steps=(
            PlannedOperation(OperationFamily.ENLARGE),
            PlannedOperation(OperationFamily.REMOVE_BACKGROUND),
            PlannedOperation(OperationFamily.MIRROR),
        ),
    )
    return build_plan(classification, WITH_UPLOAD)


def test_failure_halts_remaining_steps(make_dispatcher):
    dispatcher = make_dispatcher([
        DispatchResult(ok=True, artifact="https://cdn.test/1.png"),
        DispatchResult(ok=False, error_code="webhook_http_error"),
    ])
    orchestrator = StepOrchestrator(dispatcher)
    results = asyncio.run(orchestrator.run(three_step_plan()))

    assert [r.status for r in results] == ["success", "error"]
    assert results[1].error == "webhook_http_error"
    assert len(dispatcher.steps) == 2
    assert orchestrator.state is RunState.ABORTED
    assert turn_status(results) == "partial"


def test_chained_step_receives_previous_artifact(make_dispatcher):
    ctx = ClassifierContext(text="upscale then crop to landscape", assignment=WITH_UPLOAD)
    classification = HeuristicClassifier().evaluate(ctx)
    plan = build_plan(classification, WITH_UPLOAD, text=ctx.text)

    assert plan.chained
    assert len(plan.steps) == 2
    assert Slot.SUBJECT not in plan.steps[1].slot_bindings

    dispatcher = make_dispatcher([DispatchResult(ok=True, artifact="https://cdn.test/big.png")])
    orchestrator = StepOrchestrator(dispatcher)
    results = asyncio.run(orchestrator.run(plan))

    assert orchestrator.state is RunState.COMPLETED
    assert [r.status for r in results] == ["success", "success"]
    first, second = dispatcher.steps
    assert first.slot_bindings[Slot.SUBJECT] == UPLOAD
    assert second.slot_bindings[Slot.SUBJECT] == "https://cdn.test/big.png"
    assert second.workflow_id is WorkflowId.SUBJECT_ONLY
    assert second.parameters["imageSize"] == "landscape"
    # The plan itself is never mutated.
    assert Slot.SUBJECT not in plan.steps[1].slot_bindings


def test_step_timeout_is_a_failure():
    class SlowDispatcher:
        async def dispatch(self, step, request_id="-"):
            await asyncio.sleep(1)
            return DispatchResult(ok=True)

    plan = WorkflowPlan(steps=(Step(OperationFamily.DESIGN, WorkflowId.PROMPT_ONLY),))
    results = asyncio.run(StepOrchestrator(SlowDispatcher(), timeout_s=0.01).run(plan))
    assert results[0].status == "error"
    assert results[0].error == "step_timeout"


def test_dispatch_error_is_a_failure():
    class RaisingDispatcher:
        async def dispatch(self, step, request_id="-"):
            raise DispatchError("capability_down")

    plan = WorkflowPlan(steps=(Step(OperationFamily.DESIGN, WorkflowId.PROMPT_ONLY),))
    results = asyncio.run(StepOrchestrator(RaisingDispatcher()).run(plan))
    assert results[0].error == "capability_down"
    assert turn_status(results) == "error"


def test_single_input_step_without_image_is_not_dispatched(make_dispatcher):
    dispatcher = make_dispatcher()
    plan = WorkflowPlan(steps=(Step(OperationFamily.ENLARGE, WorkflowId.PROMPT_ONLY),))
    results = asyncio.run(StepOrchestrator(dispatcher).run(plan))
    assert results[0].error == "missing_input_image"
    assert dispatcher.steps == []


def test_low_confidence_and_casual_plan_nothing():
    assert build_plan(Classification(OperationFamily.DESIGN, 0.5), WITH_UPLOAD).steps == ()
    assert build_plan(Classification(OperationFamily.CASUAL, 0.99), WITH_UPLOAD).steps == ()
    plan = build_plan(Classification(OperationFamily.DESIGN, 0.51), WITH_UPLOAD, text="a lamp")
    assert plan.steps[0].parameters["prompt"] == "a lamp"


def test_turn_status():
    ok = ExecutionResult(0, OperationFamily.DESIGN, "success")
    bad = ExecutionResult(0, OperationFamily.DESIGN, "error", error="x")
    assert turn_status([]) == "success"
    assert turn_status([ok]) == "success"
    assert turn_status([ok, bad]) == "partial"
    assert turn_status([bad]) == "error"
