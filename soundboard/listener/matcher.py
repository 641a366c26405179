from __future__ import annotations

import re
from collections.abc import Iterable, Sequence

from soundboard.orchestrator.events import SoundMapping, Trigger, clamp_volume

_WHITESPACE_RE = re.compile(r"\s+")


def normalize(text: str) -> str:
    return _WHITESPACE_RE.sub("", text.lower())


def build_triggers(mappings: Iterable[SoundMapping]) -> list[Trigger]:
    """One trigger per configured keyword, in configuration order."""
    triggers: list[Trigger] = []
    for mapping in mappings:
        volume = clamp_volume(mapping.volume)
        for keyword in mapping.keywords:
            triggers.append(Trigger(keyword=keyword, normalized_keyword=normalize(keyword), volume=volume))
    return triggers


def display_keywords(triggers: Iterable[Trigger]) -> list[str]:
    return list(dict.fromkeys(trigger.keyword for trigger in triggers))


def match(text: str, triggers: Sequence[Trigger]) -> Trigger | None:
    """First trigger whose normalized keyword occurs in the normalized text.

    Overlapping keywords are not ranked: "go" also matches inside "mango" and
    wins over a later "mango" trigger if it is configured first.
    """
    normalized_text = normalize(text)
    for trigger in triggers:
        if trigger.normalized_keyword and trigger.normalized_keyword in normalized_text:
            return trigger
    return None


__all__ = ["normalize", "build_triggers", "display_keywords", "match"]
