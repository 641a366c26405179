from __future__ import annotations

import functools
import json
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_WS_PORT = 3210
CONFIG_FILENAMES = ("config.json", "config.yml", "config.yaml")


class ConfigError(ValueError):
    """Invalid or missing startup configuration. Fatal: the process does not start."""


class MappingConfig(BaseModel):
    keywords: list[str] = Field(..., min_length=1)
    file: str = Field(..., min_length=1)
    volume: float | None = Field(default=None, strict=True)

    @field_validator("keywords")
    @classmethod
    def reject_blank_keywords(cls, keywords: list[str]) -> list[str]:
        if any(not keyword.strip() for keyword in keywords):
            raise ValueError("keywords must not contain blank entries")
        return keywords


class BoardConfig(BaseModel):
    """Keyword-to-sound table shared by the listener and the relay."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    mappings: list[MappingConfig] = Field(..., min_length=1)
    cooldown_ms: float = Field(..., alias="cooldownMs", ge=0, strict=True)
    ws_port: int | None = Field(default=None, alias="wsPort")
    lang: str | None = None


class DiscordSettings(BaseModel):
    token: str
    app_id: str
    guild_id: str


class ListenerSettings(BaseModel):
    relay_url: str
    vosk_model_path: str | None = None
    input_device: str | int | None = None
    sample_rate: int = 16_000
    no_speech_timeout_sec: float = 8.0
    max_utterance_sec: float = 10.0


class AppSettings(BaseSettings):
    model_config = SettingsConfigDict(env_file=(".env", ".env.local"), env_file_encoding="utf-8", extra="ignore")

    DISCORD_TOKEN: str | None = None
    DISCORD_APP_ID: str | None = None
    GUILD_ID: str | None = None
    PORT: int | None = None
    WS_PORT: int | None = None
    HOST: str = "0.0.0.0"
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True
    SOUNDBOARD_CONFIG: str | None = None
    FFMPEG_PATH: str = "ffmpeg"
    WEB_DIST_DIR: str | None = None
    RELAY_URL: str | None = None
    VOSK_MODEL_PATH: str | None = None
    AUDIO_INPUT_DEVICE: str | int | None = None
    AUDIO_SAMPLE_RATE: int = 16_000
    NO_SPEECH_TIMEOUT_SEC: float = 8.0
    MAX_UTTERANCE_SEC: float = 10.0

    @property
    def discord(self) -> DiscordSettings:
        missing = [
            key
            for key in ("DISCORD_TOKEN", "DISCORD_APP_ID", "GUILD_ID")
            if not (getattr(self, key) or "").strip()
        ]
        if missing:
            raise ConfigError(f"Missing environment variable: {', '.join(missing)}")
        return DiscordSettings(
            token=str(self.DISCORD_TOKEN),
            app_id=str(self.DISCORD_APP_ID),
            guild_id=str(self.GUILD_ID),
        )

    def ws_port(self, board: BoardConfig | None = None) -> int:
        # Platform-provided PORT wins so a single exposed port serves HTTP and WS.
        if self.PORT:
            return self.PORT
        if self.WS_PORT:
            return self.WS_PORT
        if board is not None and board.ws_port:
            return board.ws_port
        return DEFAULT_WS_PORT

    @staticmethod
    def _coerce_device(device: str | int | None) -> str | int | None:
        if isinstance(device, str):
            trimmed = device.strip()
            if not trimmed:
                return None
            if trimmed.isdigit():
                return int(trimmed)
            return trimmed
        return device

    def listener(self, board: BoardConfig | None = None) -> ListenerSettings:
        relay_url = self.RELAY_URL or f"ws://127.0.0.1:{self.ws_port(board)}"
        return ListenerSettings(
            relay_url=relay_url,
            vosk_model_path=self.VOSK_MODEL_PATH,
            input_device=self._coerce_device(self.AUDIO_INPUT_DEVICE),
            sample_rate=self.AUDIO_SAMPLE_RATE,
            no_speech_timeout_sec=self.NO_SPEECH_TIMEOUT_SEC,
            max_utterance_sec=self.MAX_UTTERANCE_SEC,
        )

    def web_dist_dir(self) -> Path:
        if self.WEB_DIST_DIR:
            return Path(self.WEB_DIST_DIR)
        return project_root() / "stt-web" / "dist"


@functools.lru_cache(maxsize=1)
def load_settings() -> AppSettings:
    return AppSettings()


def project_root() -> Path:
    return Path(__file__).resolve().parents[1]


def find_board_config(explicit: str | Path | None = None, root: Path | None = None) -> Path:
    if explicit:
        path = Path(explicit)
        if not path.exists():
            raise ConfigError(f"Board config not found at {path}")
        return path
    base = root or project_root()
    for directory in (base, base / "shared"):
        for name in CONFIG_FILENAMES:
            candidate = directory / name
            if candidate.exists():
                return candidate
    raise ConfigError("config.json not found. Place it at repository root.")


def parse_board_config(raw: Any) -> BoardConfig:
    if not isinstance(raw, dict):
        raise ConfigError("config: top level must be a mapping")
    try:
        return BoardConfig.model_validate(raw)
    except ValidationError as exc:
        first = exc.errors()[0]
        location = ".".join(str(part) for part in first.get("loc", ()))
        raise ConfigError(f"config: {location or 'root'}: {first.get('msg')}") from exc


def load_board_config(path: str | Path | None = None, root: Path | None = None) -> tuple[BoardConfig, Path]:
    """Locate, read and validate the board file. Returns the config and its path."""
    config_path = find_board_config(path, root=root)
    try:
        text = config_path.read_text(encoding="utf-8")
        if config_path.suffix.lower() in (".yml", ".yaml"):
            raw = yaml.safe_load(text)
        else:
            raw = json.loads(text)
    except (OSError, json.JSONDecodeError, yaml.YAMLError) as exc:
        raise ConfigError(f"config: cannot read {config_path}: {exc}") from exc
    return parse_board_config(raw), config_path


__all__ = [
    "AppSettings",
    "BoardConfig",
    "MappingConfig",
    "DiscordSettings",
    "ListenerSettings",
    "ConfigError",
    "load_settings",
    "load_board_config",
    "parse_board_config",
    "find_board_config",
    "project_root",
    "DEFAULT_WS_PORT",
]
