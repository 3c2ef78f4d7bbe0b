import asyncpg
from fastapi import Request
from langchain_core.language_models import BaseChatModel
from langchain_openai import ChatOpenAI

from app.agents.router.dispatcher import CapabilityDispatcher, WebhookDispatcher
from app.config import settings


def get_dispatcher() -> CapabilityDispatcher:
    return WebhookDispatcher(settings.DISPATCH_WEBHOOK_URL, timeout_s=settings.DISPATCH_TIMEOUT_S)


def get_delegate_llm() -> BaseChatModel | None:
    # Without a key the classifier runs heuristic-only.
    if not settings.OPENAI_API_KEY:
        return None
    return ChatOpenAI(
        model=settings.MODEL_NAME,
        streaming=False,
        temperature=settings.DELEGATE_TEMPERATURE,
        api_key=settings.OPENAI_API_KEY,
    )


def get_history_pool(req: Request) -> asyncpg.Pool | None:
    return getattr(req.app.state, "db_pool", None)
