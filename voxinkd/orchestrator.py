"""Toggle-driven transcription pipeline.

One toggle starts recording; the next stops it and runs the cycle:
STT, LLM refinement, validation, delivery and bookkeeping. Capture and
STT failures end the cycle in FAILED. Refinement is best-effort: any
refinement error, or output that fails validation, falls back to the raw
transcript and the cycle still completes.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional, Tuple

from .audio_capture import AudioCapture
from .config import AppConfig
from .credentials import SecretStore
from .history import HistoryStore
from .models import CaptureHandle, CapturedAudio, RefinementProvider, TranscriptionOutcome
from .output_handler import OutputHandler
from .providers import ProviderRegistry
from .refinement import build_system_prompt, is_acceptable, sanitize
from .sounds import Cue, SoundPlayer
from .state import BUSY_STATES, PipelineStateEnum, PipelineStateManager
from .stt_client import SttClient

logger = logging.getLogger(__name__)

MIN_TRANSCRIPT_CHARS = 2
COMPLETED_DWELL_S = 3.0


def _preview(text: str, limit: int = 50) -> str:
    return text if len(text) <= limit else f"{text[:limit]}..."


@dataclass
class _Cycle:
    """Everything fixed for one cycle when recording starts."""

    config: AppConfig
    provider: RefinementProvider
    stt_key: Optional[str] = field(repr=False)
    refinement_key: Optional[str] = field(repr=False)
    handle: CaptureHandle


class PipelineOrchestrator:
    """Drives the record → transcribe → refine → deliver cycle."""

    def __init__(
        self,
        config: AppConfig,
        state_manager: PipelineStateManager,
        audio_capture: AudioCapture,
        stt_client: SttClient,
        registry: ProviderRegistry,
        output_handler: OutputHandler,
        secrets: SecretStore,
        history: Optional[HistoryStore] = None,
        sounds: Optional[SoundPlayer] = None,
        completed_dwell_s: float = COMPLETED_DWELL_S,
    ):
        self.config = config
        self.state_manager = state_manager
        self.audio_capture = audio_capture
        self.stt_client = stt_client
        self.registry = registry
        self.output_handler = output_handler
        self.secrets = secrets
        self.history = history
        self.sounds = sounds
        self.completed_dwell_s = completed_dwell_s

        self._cycle: Optional[_Cycle] = None
        # Set while capture start/stop is awaited
        self._transitioning = False
        self._revert_task: Optional[asyncio.Task] = None

    @property
    def state(self) -> PipelineStateEnum:
        return self.state_manager.current_state

    def update_config(self, config: AppConfig) -> None:
        """Replace the live configuration. A running cycle keeps its snapshot."""
        self.config = config
        logger.info(f"Configuration updated (refinement: {config.refinement.provider})")

    async def toggle(self) -> None:
        """Start a recording, or stop the current one and process it.

        Ignored while a transcription or refinement is in flight.
        """
        state = self.state
        if self._transitioning or state in BUSY_STATES:
            logger.warning(f"Pipeline busy ({state.value}), ignoring toggle")
            return

        if state == PipelineStateEnum.RECORDING:
            await self._stop_and_process()
        else:
            await self._start_recording()

    async def shutdown(self) -> None:
        """Cancel the dwell timer and abandon any active recording."""
        self._cancel_revert()

        cycle, self._cycle = self._cycle, None
        if cycle is None:
            return

        logger.info("Discarding active recording on shutdown")
        try:
            audio = await self.audio_capture.stop(cycle.handle)
            self.audio_capture.release(audio)
        except Exception as e:
            logger.warning(f"Error stopping capture on shutdown: {e}")
            self.audio_capture.release(cycle.handle)
        self.state_manager.set_state(PipelineStateEnum.IDLE)

    async def _start_recording(self) -> None:
        self._cancel_revert()

        config = self.config.snapshot()
        provider = self.registry.select(config.refinement.provider)
        # Keys are read once; edits to the store apply from the next cycle
        stt_key = self.secrets.load_secret(self.stt_client.credential_key)
        refinement_key = self.secrets.load_secret(provider.credential_key)

        self._transitioning = True
        try:
            handle = await self.audio_capture.start()
        except Exception as e:
            logger.exception("Failed to start recording")
            await self._fail(f"Failed to start recording: {e}")
            return
        finally:
            self._transitioning = False

        self._cycle = _Cycle(
            config=config,
            provider=provider,
            stt_key=stt_key,
            refinement_key=refinement_key,
            handle=handle,
        )
        self.state_manager.set_state(PipelineStateEnum.RECORDING)
        logger.info(f"Recording started (refinement: {provider.id})")
        await self._cue(Cue.START)

    async def _stop_and_process(self) -> None:
        cycle, self._cycle = self._cycle, None
        if cycle is None:
            await self._fail("No active recording to stop")
            return

        self._transitioning = True
        try:
            audio = await self.audio_capture.stop(cycle.handle)
        except asyncio.CancelledError:
            logger.info("Stop cancelled, discarding recording")
            self._transitioning = False
            self.audio_capture.release(cycle.handle)
            self.state_manager.set_state(PipelineStateEnum.IDLE)
            raise
        except Exception as e:
            logger.exception("Failed to stop recording")
            self._transitioning = False
            self.audio_capture.release(cycle.handle)
            await self._fail(f"Failed to stop recording: {e}")
            return

        try:
            await self._process(cycle, audio)
        except asyncio.CancelledError:
            logger.info("Cycle cancelled, discarding recording")
            self.state_manager.set_state(PipelineStateEnum.IDLE)
            raise
        finally:
            self._transitioning = False
            self.audio_capture.release(audio)

    async def _process(self, cycle: _Cycle, audio: CapturedAudio) -> None:
        config = cycle.config

        if audio.duration < config.audio.min_duration_s:
            self.state_manager.set_state(PipelineStateEnum.IDLE)
            logger.warning(f"Recording too short ({audio.duration:.1f}s), ignored")
            return

        self.state_manager.set_state(PipelineStateEnum.TRANSCRIBING)
        self._transitioning = False
        await self._cue(Cue.STOP)

        try:
            result = await self.stt_client.transcribe(
                audio.blob,
                config.stt.language,
                audio.path.name,
                api_key=cycle.stt_key,
            )
        except Exception as e:
            logger.error(f"Transcription failed: {e}")
            await self._fail(f"Transcription failed: {e}")
            return

        original_text = result.text
        trimmed = original_text.strip()
        if len(trimmed) < MIN_TRANSCRIPT_CHARS:
            self.state_manager.set_state(PipelineStateEnum.IDLE)
            logger.warning(f"Transcript empty or too short ({len(trimmed)} chars), ignored")
            return

        self.state_manager.set_state(PipelineStateEnum.REFINING)
        final_text, refinement_model = await self._refine(cycle, original_text)

        if config.output.auto_deliver:
            try:
                await self.output_handler.deliver(final_text)
            except Exception as e:
                logger.error(f"Delivery failed: {e}")

        outcome = TranscriptionOutcome(
            original_text=original_text,
            refined_text=final_text,
            language_code=result.language_code,
            duration_seconds=audio.duration,
            stt_model_id=result.model_id,
            refinement_model_id=refinement_model,
        )
        await self._record(outcome)

        self.state_manager.set_completed(final_text)
        logger.info(
            f"Cycle completed: {audio.duration:.1f}s audio, "
            f"language={result.language_code}, stt={result.model_id}, "
            f"refinement={refinement_model or 'fallback'}, "
            f"text={_preview(final_text)!r}"
        )
        await self._cue(Cue.COMPLETE)
        self._arm_revert()

    async def _refine(self, cycle: _Cycle, original_text: str) -> Tuple[str, Optional[str]]:
        """Return the final text and the model that produced it (None on fallback)."""
        refinement = cycle.config.refinement
        provider = cycle.provider
        prompt = build_system_prompt(refinement.glossary, refinement.extra_instructions)

        try:
            raw = await provider.invoke(original_text, prompt, cycle.refinement_key)
        except Exception as e:
            logger.warning(f"Refinement via {provider.id} failed, using raw transcript: {e}")
            return original_text, None

        candidate = sanitize(raw)
        if not candidate or not is_acceptable(original_text, candidate):
            logger.warning(
                f"Rejected refinement from {provider.id} as unrelated to the transcript: "
                f"{_preview(candidate)!r}"
            )
            return original_text, None

        return candidate, provider.model_id

    async def _record(self, outcome: TranscriptionOutcome) -> None:
        if self.history is None:
            return
        try:
            await asyncio.to_thread(self.history.record_outcome, outcome)
        except Exception as e:
            logger.error(f"Failed to record outcome: {e}")

    async def _fail(self, reason: str) -> None:
        self.state_manager.set_error(reason)
        await self._cue(Cue.ERROR)

    async def _cue(self, cue: Cue) -> None:
        if self.sounds is None:
            return
        try:
            await self.sounds.play(cue)
        except Exception as e:
            logger.debug(f"Sound cue {cue.value} failed: {e}")

    def _arm_revert(self) -> None:
        self._cancel_revert()
        self._revert_task = asyncio.create_task(self._revert_after_dwell())

    def _cancel_revert(self) -> None:
        if self._revert_task and not self._revert_task.done():
            self._revert_task.cancel()
        self._revert_task = None

    async def _revert_after_dwell(self) -> None:
        await asyncio.sleep(self.completed_dwell_s)
        if self.state == PipelineStateEnum.COMPLETED:
            self.state_manager.set_state(PipelineStateEnum.IDLE)
