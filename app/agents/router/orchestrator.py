"""Sequential execution of a workflow plan.

Steps run strictly in order; the first failed step aborts the rest. In a
chained plan each step after the first has the previous step's artifact bound
into its `chain_slot` before it is dispatched.
"""
from __future__ import annotations

import asyncio
from dataclasses import replace
from enum import Enum
from typing import AsyncIterator, Sequence

from app.agents.router.dispatcher import CapabilityDispatcher, DispatchError, DispatchResult
from app.agents.router.schemas import (
    ExecutionResult,
    SINGLE_INPUT_FAMILIES,
    Slot,
    Step,
    WorkflowPlan,
)
from app.agents.router.workflows import archetype_for, relevant_slots
from app.logging import get_logger

logger = get_logger("orchestrator")


class RunState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    ABORTED = "aborted"


def chain_into(step: Step, artifact: str) -> Step:
    bindings = {**step.slot_bindings, step.chain_slot: artifact}
    workflow = archetype_for(relevant_slots(step.operation_id, frozenset(bindings)))
    return replace(step, slot_bindings=bindings, workflow_id=workflow)


def turn_status(results: Sequence[ExecutionResult]) -> str:
    if not results or all(r.status == "success" for r in results):
        return "success"
    if any(r.status == "success" for r in results):
        return "partial"
    return "error"


class StepOrchestrator:
    def __init__(self, dispatcher: CapabilityDispatcher, timeout_s: float = 120.0) -> None:
        self.dispatcher = dispatcher
        self.timeout_s = timeout_s
        self.state = RunState.PENDING

    async def iterate(self, plan: WorkflowPlan, request_id: str = "-") -> AsyncIterator[ExecutionResult]:
        """Yield one result per attempted step, stopping after the first failure."""
        self.state = RunState.RUNNING
        previous: str | None = None

        for index, step in enumerate(plan.steps):
            if plan.chained and index > 0 and previous:
                step = chain_into(step, previous)

            outcome = await self._dispatch(step, request_id)
            result = ExecutionResult(
                step_index=index,
                operation_id=step.operation_id,
                status="success" if outcome.ok else "error",
                artifact=outcome.artifact,
                error=None if outcome.ok else outcome.error_code,
                workflow_id=step.workflow_id,
            )
            summary = (
                f"[{request_id}] step {index + 1}/{len(plan.steps)} "
                f"{step.operation_id.value} ({step.workflow_id.value}) -> {result.status}"
            )
            if outcome.ok:
                logger.info(summary)
            else:
                logger.error(f"{summary}: {outcome.error_code}")
            yield result

            if not outcome.ok:
                self.state = RunState.ABORTED
                return
            previous = outcome.artifact

        self.state = RunState.COMPLETED

    async def run(self, plan: WorkflowPlan, request_id: str = "-") -> list[ExecutionResult]:
        return [result async for result in self.iterate(plan, request_id)]

    async def _dispatch(self, step: Step, request_id: str) -> DispatchResult:
        if step.operation_id in SINGLE_INPUT_FAMILIES and Slot.SUBJECT not in step.slot_bindings:
            return DispatchResult(ok=False, error_code="missing_input_image")
        try:
            return await asyncio.wait_for(self.dispatcher.dispatch(step, request_id), timeout=self.timeout_s)
        except asyncio.TimeoutError:
            return DispatchResult(ok=False, error_code="step_timeout")
        except DispatchError as e:
            return DispatchResult(ok=False, error_code=str(e) or "dispatch_error")
