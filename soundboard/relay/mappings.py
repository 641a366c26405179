from __future__ import annotations

from collections.abc import Sequence
from pathlib import Path

from soundboard.config import BoardConfig
from soundboard.orchestrator.events import SoundMapping, clamp_volume

SOUNDS_DIR = "sounds"


def resolve_sound_path(file: str, base_dir: Path) -> Path:
    """Bare file names live under ``sounds/``; relative paths resolve against ``base_dir``."""
    if Path(file).is_absolute():
        return Path(file)
    if not (file.startswith("./") or file.startswith("../")):
        file = str(Path(SOUNDS_DIR) / file)
    return (base_dir / file).resolve()


def resolve_mappings(board: BoardConfig, base_dir: Path) -> list[SoundMapping]:
    return [
        SoundMapping(
            keywords=tuple(entry.keywords),
            file_path=resolve_sound_path(entry.file, base_dir),
            volume=clamp_volume(entry.volume),
        )
        for entry in board.mappings
    ]


class MappingTable:
    """Configured sound mappings in configuration order; the first one is the fallback."""

    def __init__(self, mappings: Sequence[SoundMapping]) -> None:
        if not mappings:
            raise ValueError("At least one sound mapping is required")
        self._mappings = list(mappings)

    def __len__(self) -> int:
        return len(self._mappings)

    @property
    def mappings(self) -> list[SoundMapping]:
        return list(self._mappings)

    @property
    def fallback(self) -> SoundMapping:
        return self._mappings[0]

    def lookup(self, keyword: str | None = None) -> SoundMapping:
        if keyword:
            wanted = keyword.lower()
            for mapping in self._mappings:
                if any(candidate.lower() == wanted for candidate in mapping.keywords):
                    return mapping
        return self.fallback

    def keywords(self) -> list[str]:
        return list(dict.fromkeys(keyword for mapping in self._mappings for keyword in mapping.keywords))

    def describe(self) -> list[dict[str, object]]:
        return [
            {
                "keywords": list(mapping.keywords),
                "file": str(mapping.file_path),
                "volume": mapping.volume,
                "exists": mapping.file_path.exists(),
            }
            for mapping in self._mappings
        ]


__all__ = ["MappingTable", "resolve_mappings", "resolve_sound_path", "SOUNDS_DIR"]
