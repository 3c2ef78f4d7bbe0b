import asyncpg
from typing import List, Sequence

from app.agents.router.schemas import ExecutionResult, Turn

async def get_turns(conn: asyncpg.Connection, conversation_id: str, limit: int = 50) -> List[Turn]:
    """
    Read the most recent N turns (roles: user/assistant) and return them oldest -> newest.
    """
    rows = await conn.fetch(
        """
        SELECT role, content, images, operation, created_at
        FROM public.conversation_turns
        WHERE conversation_id = $1 AND role IN ('user', 'assistant')
        ORDER BY id DESC
        LIMIT $2
        """,
        conversation_id,
        limit,
    )

    turns: List[Turn] = []
    # Reverse so the resolver walks history in chronological order.
    for row in reversed(rows):
        turns.append(
            Turn(
                role=row["role"],
                text=row["content"] or "",
                attachments=row["images"] or (),
                operation=row["operation"],
                timestamp=row["created_at"],
            )
        )
    return turns

async def add_turn(conn: asyncpg.Connection, conversation_id: str, turn: Turn) -> None:
    await conn.execute(
        "INSERT INTO public.conversation_turns (conversation_id, role, content, images, operation, created_at) "
        "VALUES ($1, $2, $3, $4, $5, COALESCE($6, now()))",
        conversation_id,
        turn.role,
        turn.text,
        list(turn.attachments),
        turn.operation,
        turn.timestamp,
    )

async def save_execution_results(conn: asyncpg.Connection, conversation_id: str, results: Sequence[ExecutionResult]) -> None:
    if not results:
        return
    await conn.executemany(
        "INSERT INTO public.execution_results "
        "(conversation_id, step_index, operation_id, workflow_id, status, artifact, error) "
        "VALUES ($1, $2, $3, $4, $5, $6, $7)",
        [
            (
                conversation_id,
                r.step_index,
                r.operation_id.value,
                r.workflow_id.value if r.workflow_id else None,
                r.status,
                r.artifact,
                r.error,
            )
            for r in results
        ],
    )
