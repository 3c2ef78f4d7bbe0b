from __future__ import annotations

from typing import Mapping, Sequence

from app.agents.router.schemas import SLOT_ORDER, Slot


class PresetCatalog:
    """Recognises catalog selections by their path conventions.

    A preset travels through the conversation as an artifact path such as
    `/designs/mug/mug1.jpg`; the prefix says which slot it belongs to and the
    first path segment after the prefix names its category.
    """

    def __init__(self, prefixes: Mapping[Slot, Sequence[str]]) -> None:
        self._prefixes = {slot: tuple(prefixes.get(slot, ())) for slot in SLOT_ORDER}

    @classmethod
    def from_settings(cls, settings) -> "PresetCatalog":
        return cls(
            {
                Slot.SUBJECT: settings.SUBJECT_PRESET_PREFIXES,
                Slot.STYLE: settings.STYLE_PRESET_PREFIXES,
                Slot.PALETTE: settings.PALETTE_PRESET_PREFIXES,
            }
        )

    def slot_for(self, url: str) -> Slot | None:
        for slot in SLOT_ORDER:
            if any(prefix in url for prefix in self._prefixes[slot]):
                return slot
        return None

    def category(self, value: str) -> str:
        raw = (value or "").strip()
        for slot in SLOT_ORDER:
            for prefix in self._prefixes[slot]:
                if prefix in raw:
                    rest = raw.split(prefix, 1)[1]
                    if "/" in rest:
                        return rest.split("/", 1)[0].lower()
                    return _stem(rest)
        if "/" in raw:
            return _stem(raw.rsplit("/", 1)[1])
        return raw.lower()

    def same_selection(self, a: str, b: str) -> bool:
        return self.category(a) == self.category(b)


def _stem(name: str) -> str:
    return name.split(".", 1)[0].lower()
