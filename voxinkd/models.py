"""Value types passed between pipeline components."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Awaitable, Callable, Optional

from pydantic import BaseModel, ConfigDict, Field


@dataclass(frozen=True)
class CaptureHandle:
    """Handle to an in-progress recording."""

    path: Path
    started_at: float


@dataclass(frozen=True)
class CapturedAudio:
    """A finished recording.

    Attributes:
        path: Temporary file holding the encoded audio.
        blob: The audio bytes read back from ``path``.
        duration: Recording length in seconds.
    """

    path: Path
    blob: bytes
    duration: float


@dataclass(frozen=True)
class SttResult:
    """Provider-agnostic transcription result."""

    text: str
    language_code: str
    duration_seconds: float
    model_id: str


# (text, system_prompt, api_key) -> refined text
RefineFn = Callable[[str, str, Optional[str]], Awaitable[str]]


@dataclass(frozen=True)
class RefinementProvider:
    """A refinement backend: an id plus the coroutine that calls it.

    ``credential_key`` names the secret the caller must look up and pass to
    ``invoke``.
    """

    id: str
    display_name: str
    model_id: str
    credential_key: str
    invoke: RefineFn = field(repr=False, compare=False)


class TranscriptionOutcome(BaseModel):
    """Result of one completed cycle, handed by value to the history store."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    original_text: str
    refined_text: Optional[str] = None
    language_code: str
    duration_seconds: float
    stt_model_id: str
    refinement_model_id: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now().astimezone())

    @property
    def display_text(self) -> str:
        return self.refined_text or self.original_text
