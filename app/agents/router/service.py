"""Turn-level entry point: plan a turn through the router graph, then execute it."""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Mapping, Sequence

from langchain_core.language_models import BaseChatModel

from app.agents.router.classifier import DelegateClassifier, FallbackClassifier, HeuristicClassifier
from app.agents.router.dispatcher import CapabilityDispatcher
from app.agents.router.graph import build_router_graph
from app.agents.router.orchestrator import StepOrchestrator, turn_status
from app.agents.router.presets import PresetCatalog
from app.agents.router.reference import ReferenceResolver
from app.agents.router.schemas import (
    EMPTY_PLAN,
    Classification,
    ExecutionResult,
    Slot,
    SlotAssignment,
    Turn,
    TurnResult,
    WorkflowPlan,
)
from app.agents.router.slots import SlotAssignor
from app.agents.router.state import RouterState
from app.logging import get_logger

logger = get_logger("router")


@dataclass(frozen=True)
class TurnRequest:
    text: str
    uploads: Mapping[Slot, str] = field(default_factory=dict)
    presets: Mapping[Slot, str] = field(default_factory=dict)
    explicit_reference: Any = None
    history: Sequence[Turn] = ()


def summarize(classification: Classification, plan: WorkflowPlan, results: Sequence[ExecutionResult]) -> str:
    if not plan.steps:
        return classification.explanation or "No operation dispatched"
    done = sum(1 for r in results if r.status == "success")
    failed = next((r for r in results if r.status == "error"), None)
    if failed is None:
        return f"Completed {done} of {len(plan.steps)} step(s)"
    return (
        f"Completed {done} of {len(plan.steps)} step(s); "
        f"{failed.operation_id.value} failed: {failed.error}"
    )


class IntentRouter:
    def __init__(
        self,
        resolver: ReferenceResolver,
        assignor: SlotAssignor,
        classifier: FallbackClassifier,
        dispatcher: CapabilityDispatcher,
        min_confidence: float = 0.5,
        step_timeout_s: float = 120.0,
    ) -> None:
        self.dispatcher = dispatcher
        self.step_timeout_s = step_timeout_s
        self.graph = build_router_graph(resolver, assignor, classifier, min_confidence)

    @classmethod
    def from_settings(cls, settings, dispatcher: CapabilityDispatcher, llm: BaseChatModel | None = None) -> "IntentRouter":
        catalog = PresetCatalog.from_settings(settings)
        delegate = DelegateClassifier(llm, timeout_s=settings.DELEGATE_TIMEOUT_S) if llm is not None else None
        return cls(
            resolver=ReferenceResolver(catalog, settings.MAX_CHAIN_DEPTH, settings.RESPONSE_WINDOW_S),
            assignor=SlotAssignor(catalog),
            classifier=FallbackClassifier(HeuristicClassifier(), delegate, settings.BYPASS_THRESHOLD),
            dispatcher=dispatcher,
            min_confidence=settings.MIN_DISPATCH_CONFIDENCE,
            step_timeout_s=settings.DISPATCH_TIMEOUT_S,
        )

    async def plan_turn(self, request: TurnRequest, request_id: str) -> RouterState:
        state: RouterState = {
            "request_id": request_id,
            "text": request.text,
            "uploads": dict(request.uploads),
            "presets": dict(request.presets),
            "history": list(request.history),
            "explicit_reference": request.explicit_reference,
        }
        return await self.graph.ainvoke(state)

    async def stream_turn(self, request: TurnRequest, request_id: str | None = None) -> AsyncIterator[tuple[str, Any]]:
        """Yield (event, payload) pairs: intent, plan, one step per attempted step, result.

        `intent` and `plan` carry dicts; `step` carries an `ExecutionResult` and
        `result` the final `TurnResult`.
        """
        request_id = request_id or str(uuid.uuid4())[:8]
        state = await self.plan_turn(request, request_id)
        classification: Classification = state["classification"]
        assignment: SlotAssignment = state["assignment"]
        plan: WorkflowPlan = state.get("plan", EMPTY_PLAN)

        logger.info(
            f"[{request_id}] intent={classification.family.value} "
            f"confidence={classification.confidence:.2f} source={classification.source} "
            f"reference={state['reference'].kind} workflow={assignment.workflow_hint.value} "
            f"steps={len(plan.steps)}"
        )
        yield "intent", {**classification.to_dict(), "slots": assignment.to_dict(), "reference": state["reference"].kind}
        yield "plan", plan.to_dict()

        results: list[ExecutionResult] = []
        orchestrator = StepOrchestrator(self.dispatcher, self.step_timeout_s)
        async for result in orchestrator.iterate(plan, request_id):
            results.append(result)
            yield "step", result

        turn = TurnResult(
            status=turn_status(results),
            message=summarize(classification, plan, results),
            classification=classification,
            assignment=assignment,
            plan=plan,
            results=tuple(results),
        )
        yield "result", turn

    async def route_turn(self, request: TurnRequest, request_id: str | None = None) -> TurnResult:
        """Plan and execute one turn. Never raises; failures come back as `status: error`."""
        request_id = request_id or str(uuid.uuid4())[:8]
        try:
            state = await self.plan_turn(request, request_id)
            plan: WorkflowPlan = state.get("plan", EMPTY_PLAN)
            results = await StepOrchestrator(self.dispatcher, self.step_timeout_s).run(plan, request_id)
        except Exception as e:
            logger.error(f"[{request_id}] routing failed: {e}")
            return TurnResult(status="error", message=f"Routing failed: {e}")
        return TurnResult(
            status=turn_status(results),
            message=summarize(state["classification"], plan, results),
            classification=state["classification"],
            assignment=state["assignment"],
            plan=plan,
            results=tuple(results),
        )
