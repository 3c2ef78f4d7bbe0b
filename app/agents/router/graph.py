from __future__ import annotations

from langgraph.graph import StateGraph, START, END

from app.agents.router.classifier import ClassifierContext, FallbackClassifier
from app.agents.router.planner import build_plan
from app.agents.router.reference import ReferenceResolver
from app.agents.router.slots import SlotAssignor, SlotInputs, parse_reference_role
from app.agents.router.state import RouterState


def build_router_graph(
    resolver: ReferenceResolver,
    assignor: SlotAssignor,
    classifier: FallbackClassifier,
    min_confidence: float = 0.5,
):
    """Planning pipeline, one node per stage.

    resolve_reference -> preliminary_slots -> classify -> assign_slots -> plan_steps -> END

    The preliminary assignment runs without a family so the classifier can see
    which inputs are present; `assign_slots` re-runs with the chosen family.
    """

    def _inputs(state: RouterState, family=None) -> SlotInputs:
        return SlotInputs(
            uploads=state["uploads"],
            presets=state["presets"],
            reference=state["reference"],
            family=family,
            reference_role=state.get("reference_role"),
        )

    def resolve_reference(state: RouterState) -> dict:
        reference = resolver.resolve(
            state["explicit_reference"], state["history"], state["text"], state["request_id"]
        )
        return {"reference": reference, "reference_role": parse_reference_role(state["text"])}

    def preliminary_slots(state: RouterState) -> dict:
        return {"assignment": assignor.assign(_inputs(state))}

    async def classify(state: RouterState) -> dict:
        ctx = ClassifierContext(
            text=state["text"],
            assignment=state["assignment"],
            reference=state["reference"],
            history=state["history"],
            reference_role=state.get("reference_role"),
        )
        return {"classification": await classifier.classify(ctx, request_id=state["request_id"])}

    def assign_slots(state: RouterState) -> dict:
        return {"assignment": assignor.assign(_inputs(state, state["classification"].family))}

    def plan_steps(state: RouterState) -> dict:
        return {
            "plan": build_plan(state["classification"], state["assignment"], min_confidence, state["text"])
        }

    graph = StateGraph(RouterState)

    graph.add_node("resolve_reference", resolve_reference)
    graph.add_node("preliminary_slots", preliminary_slots)
    graph.add_node("classify", classify)
    graph.add_node("assign_slots", assign_slots)
    graph.add_node("plan_steps", plan_steps)

    graph.add_edge(START, "resolve_reference")
    graph.add_edge("resolve_reference", "preliminary_slots")
    graph.add_edge("preliminary_slots", "classify")
    graph.add_edge("classify", "assign_slots")
    graph.add_edge("assign_slots", "plan_steps")
    graph.add_edge("plan_steps", END)

    return graph.compile()
