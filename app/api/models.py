import json
from typing import Any
from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.agents.router.schemas import Slot, Turn


class SlotValues(BaseModel):
    model_config = ConfigDict(extra="ignore")
    subject: str | None = None
    style: str | None = None
    palette: str | None = None

    def by_slot(self) -> dict[Slot, str]:
        return {slot: getattr(self, slot.value) for slot in Slot if getattr(self, slot.value)}


class RouteRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")
    conversation_id: str | None = None
    message: str = ""
    uploads: SlotValues = Field(default_factory=SlotValues)
    presets: SlotValues = Field(default_factory=SlotValues)
    # Passed through untouched; the resolver degrades malformed payloads to "no reference".
    explicit_reference: Any = None
    conversation_history: list[Turn] | None = None

    @field_validator("conversation_history", mode="before")
    @classmethod
    def normalize_history(cls, v: Any) -> list | None:
        if v is None or v == "":
            return None
        if isinstance(v, list):
            return v
        if isinstance(v, str):
            try:
                parsed = json.loads(v)
            except json.JSONDecodeError:
                raise ValueError("Invalid JSON string")
            if not isinstance(parsed, list):
                raise ValueError("Expected JSON list")
            return parsed
        raise ValueError("Expected list or JSON-string list")

    def is_empty(self) -> bool:
        return (
            not self.message.strip()
            and not self.uploads.by_slot()
            and not self.presets.by_slot()
            and not self.explicit_reference
        )


def sse_event(event: str, data: dict) -> str:
    return f"event: {event}\ndata: {json.dumps(data, default=str)}\n\n"
