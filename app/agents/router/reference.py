"""Reference resolution: turn "this"/"it"/an explicit pointer into concrete prior artifacts.

The walk indexes into the (immutable) history list and never recurses. Steps
move to strictly older turns and are capped at `max_depth` anchors. Anchors are
keyed by their recorded identity (timestamp and text), so a turn that appears
twice in history is visited once.
"""
from __future__ import annotations

import json
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Sequence

from pydantic import ValidationError

from app.agents.router.presets import PresetCatalog
from app.agents.router.schemas import (
    NO_REFERENCE,
    Reference,
    ReferencePayload,
    Slot,
    Turn,
)
from app.logging import get_logger

logger = get_logger("reference")

_BACK_REFERENCE = re.compile(r"\b(this|that|it)\b", re.IGNORECASE)

# Phrasings that point at an earlier result even without a pronoun.
REFERENCE_PATTERNS = (
    "make it", "change it", "modify it", "update it", "alter it",
    "make this", "change this", "modify this", "update this",
    "make that", "change that", "modify that", "update that",
    "bigger", "smaller", "different color", "another color", "new color",
    "same but", "similar but", "like this but", "previous", "last one",
)

_OUTPUT_URL = re.compile(r"(?:firebaseOutputUrl|imageUrl|outputUrl|data_url)['\":\s]*([^\"'\s,}]+)")
_OPERATION = (
    re.compile(r"intent['\":\s]*([\w/]+)"),
    re.compile(r"Intent:\s*(\w+)"),
)


def has_back_reference(text: str | None) -> bool:
    return bool(text) and bool(_BACK_REFERENCE.search(text))


def mentions_prior_result(text: str | None) -> bool:
    if not text:
        return False
    lowered = text.lower()
    return has_back_reference(lowered) or any(pattern in lowered for pattern in REFERENCE_PATTERNS)


def extract_artifact_urls(turn: Turn) -> list[str]:
    if turn.attachments:
        return list(turn.attachments)
    if turn.role != "assistant":
        return []
    return [match.group(1) for match in _OUTPUT_URL.finditer(turn.text or "")]


def extract_operation(turn: Turn) -> str | None:
    if turn.operation:
        return turn.operation
    for pattern in _OPERATION:
        match = pattern.search(turn.text or "")
        if match:
            return match.group(1)
    return None


def _anchor_key(timestamp: datetime | None, text: str, fallback: str) -> str:
    if timestamp is None:
        return fallback
    return f"{timestamp.isoformat()}|{text}"


@dataclass(frozen=True)
class _Anchor:
    key: str
    index: int | None
    text: str
    timestamp: datetime | None
    attachments: tuple[str, ...]
    role: str | None

    @classmethod
    def from_turn(cls, turns: Sequence[Turn], index: int) -> "_Anchor":
        turn = turns[index]
        return cls(
            key=_anchor_key(turn.timestamp, turn.text, f"turn:{index}"),
            index=index,
            text=turn.text,
            timestamp=turn.timestamp,
            attachments=tuple(extract_artifact_urls(turn)),
            role=turn.role,
        )


class ReferenceResolver:
    def __init__(self, catalog: PresetCatalog, max_depth: int = 10, response_window_s: float = 300.0) -> None:
        self.catalog = catalog
        self.max_depth = max_depth
        self.response_window_s = response_window_s

    def resolve(self, payload: Any, history: Sequence[Turn], text: str = "", request_id: str = "-") -> Reference:
        """Resolve the turn's reference; never raises, degrades to `kind: none`."""
        try:
            return self._resolve(payload, list(history), text, request_id)
        except (ValidationError, ValueError, TypeError, KeyError, IndexError) as e:
            logger.warning(f"[{request_id}] reference resolution degraded to none: {e}")
            return NO_REFERENCE

    def _resolve(self, payload: Any, turns: list[Turn], text: str, request_id: str) -> Reference:
        explicit = self._parse_payload(payload)
        if explicit is not None:
            anchor = self._anchor_from_payload(explicit, turns)
            kind = "explicit"
        else:
            if not mentions_prior_result(text):
                return NO_REFERENCE
            index = self._latest_assistant_output(turns)
            if index is None:
                return NO_REFERENCE
            anchor = _Anchor.from_turn(turns, index)
            kind = "auto-previous"
        return self._walk(anchor, kind, turns, request_id)

    def _parse_payload(self, payload: Any) -> ReferencePayload | None:
        if payload is None:
            return None
        if isinstance(payload, ReferencePayload):
            return payload
        if isinstance(payload, (str, bytes)):
            if not payload.strip():
                return None
            payload = json.loads(payload)
        if not payload:
            return None
        return ReferencePayload.model_validate(payload)

    def _anchor_from_payload(self, ref: ReferencePayload, turns: list[Turn]) -> _Anchor:
        index = ref.turn_index
        if index is not None and not 0 <= index < len(turns):
            index = None
        if index is None and ref.timestamp is not None:
            for i in range(len(turns) - 1, -1, -1):
                if turns[i].timestamp == ref.timestamp:
                    index = i
                    break
        if index is not None:
            located = _Anchor.from_turn(turns, index)
            return _Anchor(
                key=located.key,
                index=index,
                text=ref.text or located.text,
                timestamp=ref.timestamp or located.timestamp,
                attachments=tuple(ref.images) or located.attachments,
                role=located.role,
            )
        return _Anchor(
            key=_anchor_key(ref.timestamp, ref.text, f"ref:{ref.id or ref.text}"),
            index=None,
            text=ref.text,
            timestamp=ref.timestamp,
            attachments=tuple(ref.images),
            role=None,
        )

    def _latest_assistant_output(self, turns: list[Turn]) -> int | None:
        for i in range(len(turns) - 1, -1, -1):
            if turns[i].role == "assistant" and extract_artifact_urls(turns[i]):
                return i
        return None

    def _walk(self, first: _Anchor, kind: str, turns: list[Turn], request_id: str) -> Reference:
        artifacts: list[str] = []
        texts: list[str] = []
        inherited: dict[Slot, str] = {}
        last_operation: str | None = None
        visited: set[str] = set()
        depth = 0
        anchor: _Anchor | None = first

        while anchor is not None:
            if anchor.key in visited:
                logger.info(f"[{request_id}] reference chain revisits {anchor.key}; stopping")
                break
            if depth >= self.max_depth:
                logger.info(f"[{request_id}] reference chain reached max depth {self.max_depth}")
                break
            visited.add(anchor.key)
            depth += 1

            if anchor.role == "user":
                response = self._find_response(turns, anchor)
                if response is not None:
                    artifacts.extend(extract_artifact_urls(turns[response]))
                    last_operation = last_operation or extract_operation(turns[response])
            elif anchor.index is not None:
                last_operation = last_operation or extract_operation(turns[anchor.index])

            for url in anchor.attachments:
                slot = self.catalog.slot_for(url)
                if slot is None:
                    artifacts.append(url)
                else:
                    inherited.setdefault(slot, url)
            if anchor.text:
                texts.append(anchor.text)

            if not has_back_reference(anchor.text):
                break
            anchor = self._previous_with_artifact(turns, anchor)

        return Reference(
            kind=kind,
            artifacts=tuple(dict.fromkeys(artifacts)),
            text=" → ".join(texts),
            inherited_slots=inherited,
            anchor_timestamp=first.timestamp,
            last_operation=last_operation,
            chain_length=depth,
        )

    def _find_response(self, turns: list[Turn], anchor: _Anchor) -> int | None:
        """Assistant turn produced for `anchor`, matched within the latency window."""
        start = anchor.index + 1 if anchor.index is not None else 0
        for i in range(start, len(turns)):
            turn = turns[i]
            if turn.role != "assistant":
                continue
            if anchor.timestamp is None or turn.timestamp is None:
                if anchor.index is not None and i == anchor.index + 1:
                    return i
                continue
            delta = (turn.timestamp - anchor.timestamp).total_seconds()
            if 0 <= delta <= self.response_window_s:
                return i
        return None

    def _previous_with_artifact(self, turns: list[Turn], anchor: _Anchor) -> _Anchor | None:
        if anchor.index is not None:
            candidates = range(anchor.index - 1, -1, -1)
        elif anchor.timestamp is not None:
            candidates = range(len(turns) - 1, -1, -1)
        else:
            return None
        for i in candidates:
            turn = turns[i]
            if anchor.index is None and (turn.timestamp is None or turn.timestamp >= anchor.timestamp):
                continue
            if extract_artifact_urls(turn):
                return _Anchor.from_turn(turns, i)
        return None
