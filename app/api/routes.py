import time
import asyncio
import uuid
import asyncpg
from datetime import datetime, timezone
from typing import AsyncGenerator
from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse
from langchain_core.language_models import BaseChatModel

from app.logging import get_logger
from app.api.models import RouteRequest, sse_event
from app.api.deps import get_delegate_llm, get_dispatcher, get_history_pool
from app.config import settings
from app.agents.router.dispatcher import CapabilityDispatcher
from app.agents.router.schemas import Turn, TurnResult
from app.agents.router.service import IntentRouter, TurnRequest
from app.db.history import add_turn, get_turns, save_execution_results

router = APIRouter()
logger = get_logger("route")


async def _persist_turn(
    pool: asyncpg.Pool,
    conversation_id: str,
    user_turn: Turn,
    result: TurnResult,
    request_id: str,
) -> None:
    assistant_turn = Turn(
        role="assistant",
        text=result.message,
        attachments=(result.artifact,) if result.artifact else (),
        operation=result.classification.endpoint if result.classification else None,
        timestamp=datetime.now(timezone.utc),
    )
    try:
        async with pool.acquire() as conn:
            await add_turn(conn, conversation_id, user_turn)
            await add_turn(conn, conversation_id, assistant_turn)
            await save_execution_results(conn, conversation_id, result.results)
    except Exception as db_err:
        logger.error(f"[{request_id}] failed to persist turn: {db_err}")


async def stream_route(
    turn_router: IntentRouter,
    turn: TurnRequest,
    request_id: str,
    pool: asyncpg.Pool | None,
    conversation_id: str | None,
) -> AsyncGenerator[str, None]:
    start_time = time.time()
    final: TurnResult | None = None

    try:
        async for event, payload in turn_router.stream_turn(turn, request_id):
            if isinstance(payload, TurnResult):
                final = payload
            yield sse_event(event, payload if isinstance(payload, dict) else payload.to_dict())

        if final is not None and pool is not None and conversation_id:
            user_turn = Turn(
                role="user",
                text=turn.text,
                attachments=tuple(turn.uploads.values()) + tuple(turn.presets.values()),
                timestamp=datetime.now(timezone.utc),
            )
            await _persist_turn(pool, conversation_id, user_turn, final, request_id)

        elapsed = time.time() - start_time
        status = final.status if final else "unknown"
        logger.info(f"[{request_id}] complete | elapsed={elapsed:.2f}s | status={status}")
        yield sse_event("done", {})
    except asyncio.CancelledError:
        logger.info(f"[{request_id}] client disconnected")
        raise
    except Exception as e:
        logger.error(f"[{request_id}] error: {e}")
        yield sse_event("error", {"message": str(e), "code": "stream_error"})
        yield sse_event("done", {})


@router.post("/route")
async def route(
    request: RouteRequest,
    dispatcher: CapabilityDispatcher = Depends(get_dispatcher),
    llm: BaseChatModel | None = Depends(get_delegate_llm),
    pool: asyncpg.Pool | None = Depends(get_history_pool),
):
    if request.is_empty():
        raise HTTPException(status_code=400, detail="Empty request")

    request_id = str(uuid.uuid4())[:8]

    history = request.conversation_history
    if history is None:
        history = []
        if pool is not None and request.conversation_id:
            try:
                async with pool.acquire() as conn:
                    history = await get_turns(conn, request.conversation_id, limit=settings.HISTORY_LIMIT)
            except Exception as db_err:
                logger.error(f"[{request_id}] failed to load history: {db_err}")

    uploads = request.uploads.by_slot()
    presets = request.presets.by_slot()
    logger.info(
        f"[{request_id}] request | conversation_id={request.conversation_id} "
        f"uploads={[s.value for s in uploads]} presets={[s.value for s in presets]} "
        f"history={len(history)} explicit_reference={request.explicit_reference is not None}"
    )

    turn = TurnRequest(
        text=request.message,
        uploads=uploads,
        presets=presets,
        explicit_reference=request.explicit_reference,
        history=history,
    )
    turn_router = IntentRouter.from_settings(settings, dispatcher, llm)
    return StreamingResponse(
        stream_route(turn_router, turn, request_id, pool, request.conversation_id),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
