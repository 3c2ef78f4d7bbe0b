import os

# Settings are read at import time.
os.environ.setdefault("DISPATCH_WEBHOOK_URL", "http://dispatch.test/webhook")

import pytest
from fastapi.testclient import TestClient

from app.main import app
from app.api.deps import get_delegate_llm, get_dispatcher, get_history_pool
from app.agents.router.dispatcher import DispatchResult
from app.agents.router.presets import PresetCatalog
from app.agents.router.schemas import Slot


class RecordingDispatcher:
    """Returns queued outcomes in order and records every dispatched step."""

    def __init__(self, outcomes=None):
        self.outcomes = list(outcomes or [])
        self.steps = []

    async def dispatch(self, step, request_id="-"):
        self.steps.append(step)
        if self.outcomes:
            return self.outcomes.pop(0)
        return DispatchResult(ok=True, artifact=f"https://cdn.test/out/{len(self.steps)}.png")


@pytest.fixture
def catalog():
    return PresetCatalog(
        {
            Slot.SUBJECT: ["/designs/"],
            Slot.STYLE: ["/defaults/"],
            Slot.PALETTE: ["/inputs/placeholders/colors/"],
        }
    )


@pytest.fixture
def make_dispatcher():
    return RecordingDispatcher


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def client(dispatcher):
    # Heuristic-only classification, no database, recorded dispatch.
    app.dependency_overrides[get_dispatcher] = lambda: dispatcher
    app.dependency_overrides[get_delegate_llm] = lambda: None
    app.dependency_overrides[get_history_pool] = lambda: None
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
