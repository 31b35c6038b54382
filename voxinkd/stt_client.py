"""Remote speech-to-text client for OpenAI-compatible transcription APIs."""

import json
import logging
import mimetypes
from typing import Optional

import openai
from openai import AsyncOpenAI
from pydantic import BaseModel, ValidationError

from .config import SttConfig
from .credentials import GROQ_API_KEY
from .errors import (
    EmptyInput,
    MalformedResponse,
    MissingCredential,
    ServiceError,
    TransportError,
)
from .models import SttResult

logger = logging.getLogger(__name__)

AUTO_LANGUAGE = "auto"
RESPONSE_FORMAT = "verbose_json"
DEFAULT_MIME_TYPE = "audio/wav"


class SttResponse(BaseModel):
    """The subset of the verbose JSON response the pipeline uses."""

    text: str
    language: Optional[str] = None
    duration: Optional[float] = None


class SttClient:
    """Transcribes audio through the remote Whisper endpoint."""

    def __init__(self, config: SttConfig, credential_key: str = GROQ_API_KEY):
        """Initialize the client.

        Args:
            config: STT configuration (model, endpoint, timeout).
            credential_key: Name of the secret holding the API key. Callers
                look it up and pass the key to ``transcribe``.
        """
        self.config = config
        self.credential_key = credential_key

    @property
    def model_id(self) -> str:
        return self.config.model

    async def transcribe(
        self,
        audio_blob: bytes,
        language_hint: Optional[str] = None,
        filename: str = "audio.wav",
        *,
        api_key: Optional[str],
    ) -> SttResult:
        """Transcribe an audio blob.

        Args:
            audio_blob: Encoded audio bytes.
            language_hint: Two-letter language code, or "auto"/None to let
                the service detect the language.
            filename: File name reported in the upload; its extension picks
                the MIME type.
            api_key: API key for the endpoint.

        Returns:
            The normalized transcription result.

        Raises:
            MissingCredential: No API key is configured.
            EmptyInput: The audio blob is empty.
            TransportError: The request failed or timed out.
            ServiceError: The service returned a non-success status.
            MalformedResponse: The response body has an unexpected shape.
        """
        if not api_key:
            raise MissingCredential(self.credential_key)

        if not audio_blob:
            raise EmptyInput("Audio recording is empty")

        mime_type = mimetypes.guess_type(filename)[0] or DEFAULT_MIME_TYPE
        extra = {}
        if language_hint and language_hint != AUTO_LANGUAGE:
            extra["language"] = language_hint

        logger.debug(
            f"Uploading {len(audio_blob)} bytes to {self.config.base_url} "
            f"(model: {self.config.model}, language: {language_hint or AUTO_LANGUAGE})"
        )

        try:
            async with AsyncOpenAI(
                api_key=api_key,
                base_url=self.config.base_url,
                timeout=self.config.timeout_s,
                max_retries=0,
            ) as client:
                raw = await client.audio.transcriptions.with_raw_response.create(
                    model=self.config.model,
                    file=(filename, audio_blob, mime_type),
                    response_format=RESPONSE_FORMAT,
                    **extra,
                )
                body = raw.text
        except openai.APIStatusError as e:
            logger.error(f"Transcription API error ({e.status_code}): {e.response.text}")
            raise ServiceError(e.status_code, e.response.text) from e
        except openai.APIConnectionError as e:
            raise TransportError(f"Transcription request failed: {e}") from e

        try:
            payload = SttResponse.model_validate(json.loads(body))
        except (json.JSONDecodeError, ValidationError) as e:
            raise MalformedResponse(f"Unexpected transcription response: {e}") from e

        logger.info(f"Transcription done, detected language: {payload.language or 'unknown'}")

        return SttResult(
            text=payload.text,
            language_code=payload.language or "unknown",
            duration_seconds=payload.duration or 0.0,
            model_id=self.config.model,
        )
