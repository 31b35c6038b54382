"""Configuration handling for voxinkd daemon."""

import getpass
import logging
import os
import tomllib
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

logger = logging.getLogger(__name__)

APP_DIR_NAME = "voxink"
DEFAULT_STT_BASE_URL = "https://api.groq.com/openai/v1"
DEFAULT_RECORD_COMMAND = "pw-record --rate=16000 --channels=1 --format=s16"


def _xdg_dir(env_var: str, fallback: Path) -> Path:
    """Return this application's directory under an XDG base directory."""
    base = os.environ.get(env_var)
    return (Path(base) if base else fallback) / APP_DIR_NAME


def get_default_config_path() -> Path:
    return _xdg_dir("XDG_CONFIG_HOME", Path.home() / ".config") / "config.toml"


def get_default_socket_path() -> Path:
    """Socket under ``$XDG_RUNTIME_DIR``, or a per-user path in /tmp."""
    if os.environ.get("XDG_RUNTIME_DIR"):
        sock_dir = _xdg_dir("XDG_RUNTIME_DIR", Path("/tmp"))
        try:
            sock_dir.mkdir(parents=True, exist_ok=True)
            if os.access(sock_dir, os.W_OK | os.X_OK):
                return sock_dir / "daemon.sock"
            logger.warning(f"{sock_dir} is not writable, falling back to /tmp")
        except OSError as e:
            logger.warning(f"Could not use XDG_RUNTIME_DIR ({e}), falling back to /tmp")

    return Path(f"/tmp/{APP_DIR_NAME}-{getpass.getuser()}.sock")


def get_default_log_path() -> Path:
    state_dir = _xdg_dir("XDG_STATE_HOME", Path.home() / ".local" / "state")
    state_dir.mkdir(parents=True, exist_ok=True)
    return state_dir / "voxinkd.log"


def get_default_history_dir() -> Path:
    return _xdg_dir("XDG_DATA_HOME", Path.home() / ".local" / "share")


class SttConfig(BaseModel):
    """Speech-to-text service configuration."""

    language: str = Field(
        default="zh",
        description="Two-letter language hint, or 'auto' for provider-side detection.",
    )
    model: str = Field(
        default="whisper-large-v3", description="Transcription model identifier."
    )
    base_url: str = Field(
        default=DEFAULT_STT_BASE_URL,
        description="Base URL of the OpenAI-compatible transcription API.",
    )
    timeout_s: float = Field(
        default=60.0, gt=0, description="Request timeout for transcription (s)."
    )

    @field_validator("model")
    @classmethod
    def check_model_not_empty(cls, v: str) -> str:
        if not v:
            raise ValueError("STT model identifier cannot be empty")
        return v

    @field_validator("language")
    @classmethod
    def normalize_language(cls, v: str) -> str:
        return v.strip().lower() or "auto"


class RefinementConfig(BaseModel):
    """LLM refinement configuration."""

    provider: str = Field(
        default="groq", description="Refinement provider id (groq, openai, claude)."
    )
    extra_instructions: str = Field(
        default="", description="Free-form rules appended to the system prompt."
    )
    glossary: List[str] = Field(
        default_factory=list,
        description="User-defined terms the refinement model should preserve.",
    )
    timeout_s: float = Field(
        default=30.0, gt=0, description="Request timeout for refinement (s)."
    )

    @field_validator("glossary")
    @classmethod
    def drop_blank_terms(cls, v: List[str]) -> List[str]:
        return [term.strip() for term in v if term.strip()]


class OutputConfig(BaseModel):
    """Output command configuration."""

    auto_deliver: bool = Field(
        default=True, description="Deliver final text to the desktop automatically."
    )
    type_text: bool = Field(
        default=True,
        description="Also type the text into the focused window after copying it.",
    )
    keyboard_command: Optional[str] = Field(
        default=None, description="Command to execute for keyboard output."
    )
    clipboard_command: Optional[str] = Field(
        default=None, description="Command to execute for clipboard output."
    )


class AudioConfig(BaseModel):
    """Audio capture configuration."""

    record_command: str = Field(
        default=DEFAULT_RECORD_COMMAND,
        description="Recorder command; the output file path is appended.",
    )
    file_suffix: str = Field(
        default=".wav", description="Suffix of the temporary recording file."
    )
    min_duration_s: float = Field(
        default=0.5,
        ge=0,
        description="Recordings shorter than this are discarded as accidental.",
    )


class SoundsConfig(BaseModel):
    """Audible cue configuration."""

    enabled: bool = Field(default=True, description="Play audible cues.")
    player_command: str = Field(
        default="pw-play", description="Command used to play a sound file."
    )
    start_sound: Optional[Path] = Field(
        default=Path("/usr/share/sounds/freedesktop/stereo/device-added.oga")
    )
    stop_sound: Optional[Path] = Field(
        default=Path("/usr/share/sounds/freedesktop/stereo/device-removed.oga")
    )
    complete_sound: Optional[Path] = Field(
        default=Path("/usr/share/sounds/freedesktop/stereo/complete.oga")
    )
    error_sound: Optional[Path] = Field(
        default=Path("/usr/share/sounds/freedesktop/stereo/dialog-error.oga")
    )


class DaemonConfig(BaseModel):
    """Daemon runtime configuration."""

    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL).",
    )
    log_file: Optional[Path] = Field(
        default=None, description="Optional custom log file path."
    )
    socket_path: Optional[Path] = Field(
        default=None, description="Optional custom socket path for IPC."
    )
    history_dir: Optional[Path] = Field(
        default=None, description="Optional directory for history and statistics."
    )
    secrets_file: Optional[Path] = Field(
        default=None, description="Optional TOML file holding API keys."
    )

    @field_validator("log_level")
    @classmethod
    def check_log_level(cls, v: str) -> str:
        allowed_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        upper_v = v.upper()
        if upper_v not in allowed_levels:
            raise ValueError(f"Invalid log level. Choose from {allowed_levels}")
        return upper_v

    @property
    def computed_log_file(self) -> Path:
        return self.log_file or get_default_log_path()

    @property
    def computed_socket_path(self) -> Path:
        return self.socket_path or get_default_socket_path()

    @property
    def computed_history_dir(self) -> Path:
        return self.history_dir or get_default_history_dir()


class AppConfig(BaseModel):
    """Root configuration."""

    stt: SttConfig = Field(default_factory=SttConfig)
    refinement: RefinementConfig = Field(default_factory=RefinementConfig)
    output: OutputConfig = Field(default_factory=OutputConfig)
    audio: AudioConfig = Field(default_factory=AudioConfig)
    sounds: SoundsConfig = Field(default_factory=SoundsConfig)
    daemon: DaemonConfig = Field(default_factory=DaemonConfig)

    def snapshot(self) -> "AppConfig":
        """Return a deep copy that later configuration changes cannot touch."""
        return self.model_copy(deep=True)


def load_config(path: Optional[Path] = None) -> AppConfig:
    """Load and validate the TOML configuration.

    A missing file yields the defaults.

    Args:
        path: Config file to read; defaults to the XDG location.

    Raises:
        ValueError: If the file is not valid TOML or fails validation.
        OSError: If the file exists but cannot be read.
    """
    path = path or get_default_config_path()
    if not path.exists():
        logger.debug(f"No config file at {path}, using defaults")
        return AppConfig()

    try:
        with open(path, "rb") as f:
            data = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ValueError(f"Error decoding TOML file {path}: {e}") from e

    try:
        return AppConfig.model_validate(data)
    except ValidationError as e:
        raise ValueError(f"Configuration validation failed: {e}") from e
