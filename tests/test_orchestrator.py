"""Tests for the toggle-driven pipeline orchestrator."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, Mock, patch

import pytest
import pytest_asyncio

from voxinkd.audio_capture import AudioCapture
from voxinkd.config import AppConfig, AudioConfig
from voxinkd.credentials import GROQ_API_KEY, OPENAI_API_KEY, EnvSecretStore
from voxinkd.errors import (
    CaptureError,
    EmptyResponse,
    MissingCredential,
    ServiceError,
    TransportError,
)
from voxinkd.history import HistoryStore
from voxinkd.models import CaptureHandle, CapturedAudio, RefinementProvider, SttResult
from voxinkd.orchestrator import PipelineOrchestrator
from voxinkd.providers import ProviderRegistry, chat_completions_refiner
from voxinkd.sounds import Cue, SoundPlayer
from voxinkd.state import PipelineStateEnum, PipelineStateManager


def stt_result(text: str) -> SttResult:
    return SttResult(text=text, language_code="en", duration_seconds=2.0, model_id="whisper-test")


async def wait_for_state(orchestrator, state, attempts=200):
    """Yield to the loop until the orchestrator reaches ``state``."""
    for _ in range(attempts):
        if orchestrator.state == state:
            return
        await asyncio.sleep(0)
    raise AssertionError(f"Never reached {state}, stuck in {orchestrator.state}")


@pytest.fixture
def config():
    """Default configuration."""
    return AppConfig()


@pytest.fixture
def recording_path(tmp_path):
    """Temporary file standing in for a recorder output."""
    path = tmp_path / "rec.wav"
    path.write_bytes(b"RIFF")
    return path


@pytest.fixture
def audio_capture(recording_path):
    """Capture mock that returns a 2s recording and really deletes it on release."""
    capture = Mock(spec=AudioCapture)
    capture.start = AsyncMock(
        return_value=CaptureHandle(path=recording_path, started_at=0.0)
    )
    capture.stop = AsyncMock(
        return_value=CapturedAudio(path=recording_path, blob=b"RIFF", duration=2.0)
    )
    capture.release = Mock(wraps=AudioCapture(AudioConfig()).release)
    return capture


@pytest.fixture
def stt_client():
    """STT client mock returning a plain English transcript."""
    client = Mock()
    client.credential_key = GROQ_API_KEY
    client.transcribe = AsyncMock(return_value=stt_result("hello there world"))
    return client


@pytest.fixture
def refine():
    """Refinement coroutine mock."""
    return AsyncMock(return_value="Hello there, world.")


@pytest.fixture
def other_refine():
    """Refinement coroutine for the secondary provider."""
    return AsyncMock(return_value="Hello there world!")


@pytest.fixture
def registry(refine, other_refine):
    """Registry with two providers, groq being the default."""
    return ProviderRegistry(
        [
            RefinementProvider(
                id="groq",
                display_name="Groq",
                model_id="llama-test",
                credential_key=GROQ_API_KEY,
                invoke=refine,
            ),
            RefinementProvider(
                id="openai",
                display_name="OpenAI",
                model_id="gpt-test",
                credential_key=OPENAI_API_KEY,
                invoke=other_refine,
            ),
        ]
    )


@pytest.fixture
def output_handler():
    """Output handler mock."""
    handler = Mock()
    handler.deliver = AsyncMock(return_value=True)
    return handler


@pytest.fixture
def keys():
    """Stored API keys, editable by tests."""
    return {GROQ_API_KEY: "gsk-test", OPENAI_API_KEY: "sk-test"}


@pytest.fixture
def secrets(keys):
    """Secret store mock backed by ``keys``."""
    store = Mock(spec=EnvSecretStore)
    store.load_secret.side_effect = keys.get
    return store


@pytest.fixture
def history():
    """History store mock."""
    return Mock(spec=HistoryStore)


@pytest.fixture
def sounds():
    """Sound player mock."""
    player = Mock(spec=SoundPlayer)
    player.play = AsyncMock()
    return player


@pytest_asyncio.fixture
async def orchestrator(
    config, audio_capture, stt_client, registry, output_handler, secrets, history, sounds
):
    """Orchestrator wired to mocks, with a short completed dwell."""
    orch = PipelineOrchestrator(
        config,
        PipelineStateManager(),
        audio_capture,
        stt_client,
        registry,
        output_handler,
        secrets,
        history=history,
        sounds=sounds,
        completed_dwell_s=0.05,
    )
    yield orch
    await orch.shutdown()


def recorded_outcome(history):
    history.record_outcome.assert_called_once()
    return history.record_outcome.call_args.args[0]


@pytest.mark.asyncio
async def test_toggle_from_idle_starts_recording(orchestrator, audio_capture, sounds):
    """First toggle starts capture and enters RECORDING."""
    await orchestrator.toggle()

    assert orchestrator.state == PipelineStateEnum.RECORDING
    audio_capture.start.assert_awaited_once()
    sounds.play.assert_awaited_once_with(Cue.START)


@pytest.mark.asyncio
async def test_full_cycle_completes(
    orchestrator, audio_capture, stt_client, refine, output_handler, history, recording_path
):
    """Second toggle runs STT, refinement, delivery and bookkeeping."""
    refine.return_value = "Sure, here is the text: Hello there, world."

    await orchestrator.toggle()
    await orchestrator.toggle()

    assert orchestrator.state == PipelineStateEnum.COMPLETED
    assert orchestrator.state_manager.detail == "Hello there, world."
    stt_client.transcribe.assert_awaited_once_with(b"RIFF", "zh", "rec.wav", api_key="gsk-test")
    refine.assert_awaited_once()
    assert refine.call_args.args[0] == "hello there world"
    assert refine.call_args.args[2] == "gsk-test"
    output_handler.deliver.assert_awaited_once_with("Hello there, world.")

    outcome = recorded_outcome(history)
    assert outcome.original_text == "hello there world"
    assert outcome.refined_text == "Hello there, world."
    assert outcome.refinement_model_id == "llama-test"
    assert outcome.stt_model_id == "whisper-test"
    assert outcome.language_code == "en"
    assert outcome.duration_seconds == 2.0

    audio_capture.release.assert_called_once()
    assert not recording_path.exists()


@pytest.mark.asyncio
async def test_short_recording_is_discarded(
    orchestrator, audio_capture, stt_client, history, recording_path
):
    """Recordings under the minimum duration never reach STT."""
    audio_capture.stop.return_value = CapturedAudio(
        path=recording_path, blob=b"RIFF", duration=0.3
    )

    await orchestrator.toggle()
    await orchestrator.toggle()

    assert orchestrator.state == PipelineStateEnum.IDLE
    stt_client.transcribe.assert_not_awaited()
    history.record_outcome.assert_not_called()
    assert not recording_path.exists()


@pytest.mark.asyncio
@pytest.mark.parametrize("transcript", ["", "   ", " a "])
async def test_short_transcript_is_discarded(
    orchestrator, stt_client, refine, output_handler, recording_path, transcript
):
    """Transcripts shorter than two characters end the cycle quietly."""
    stt_client.transcribe.return_value = stt_result(transcript)

    await orchestrator.toggle()
    await orchestrator.toggle()

    assert orchestrator.state == PipelineStateEnum.IDLE
    refine.assert_not_awaited()
    output_handler.deliver.assert_not_awaited()
    assert not recording_path.exists()


@pytest.mark.asyncio
async def test_stt_failure_fails_cycle(
    orchestrator, stt_client, refine, history, sounds, recording_path
):
    """STT errors are terminal for the cycle."""
    stt_client.transcribe.side_effect = ServiceError(500, "boom")

    await orchestrator.toggle()
    await orchestrator.toggle()

    assert orchestrator.state == PipelineStateEnum.FAILED
    assert "Transcription failed" in orchestrator.state_manager.last_error
    refine.assert_not_awaited()
    history.record_outcome.assert_not_called()
    sounds.play.assert_awaited_with(Cue.ERROR)
    assert not recording_path.exists()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error",
    [TransportError("offline"), ServiceError(429, "slow down"), EmptyResponse("nothing")],
)
async def test_refinement_error_falls_back_to_transcript(
    orchestrator, stt_client, refine, output_handler, history, error
):
    """Refinement failures deliver the raw transcript and still complete."""
    stt_client.transcribe.return_value = stt_result("ok")
    refine.side_effect = error

    await orchestrator.toggle()
    await orchestrator.toggle()

    assert orchestrator.state == PipelineStateEnum.COMPLETED
    assert orchestrator.state_manager.detail == "ok"
    output_handler.deliver.assert_awaited_once_with("ok")

    outcome = recorded_outcome(history)
    assert outcome.original_text == "ok"
    assert outcome.refined_text == "ok"
    assert outcome.refinement_model_id is None


@pytest.mark.asyncio
async def test_unrelated_refinement_is_rejected(
    orchestrator, stt_client, refine, output_handler, history
):
    """A refinement that shares too few letters is replaced by the transcript."""
    stt_client.transcribe.return_value = stt_result("what is the capital of france")
    refine.return_value = "東京です"

    await orchestrator.toggle()
    await orchestrator.toggle()

    assert orchestrator.state == PipelineStateEnum.COMPLETED
    output_handler.deliver.assert_awaited_once_with("what is the capital of france")
    assert recorded_outcome(history).refinement_model_id is None


@pytest.mark.asyncio
async def test_empty_sanitized_refinement_is_rejected(orchestrator, refine, output_handler):
    """Whitespace-only refinement output falls back to the transcript."""
    refine.return_value = "   \n"

    await orchestrator.toggle()
    await orchestrator.toggle()

    output_handler.deliver.assert_awaited_once_with("hello there world")


@pytest.mark.asyncio
async def test_fallback_uses_unsanitized_transcript(
    orchestrator, stt_client, refine, output_handler
):
    """The raw STT text is delivered as-is when refinement fails."""
    stt_client.transcribe.return_value = stt_result("  hello there world ")
    refine.side_effect = TransportError("offline")

    await orchestrator.toggle()
    await orchestrator.toggle()

    output_handler.deliver.assert_awaited_once_with("  hello there world ")


@pytest.mark.asyncio
async def test_prompt_carries_glossary_and_rules(orchestrator, config, refine):
    """The system prompt includes the configured glossary and rules."""
    config.refinement.glossary = ["VoxInk", "Kubernetes"]
    config.refinement.extra_instructions = "Keep emoji."

    await orchestrator.toggle()
    await orchestrator.toggle()

    prompt = refine.call_args.args[1]
    assert "VoxInk, Kubernetes" in prompt
    assert prompt.endswith("Keep emoji.")


@pytest.mark.asyncio
async def test_toggle_ignored_while_transcribing(orchestrator, audio_capture, stt_client):
    """Toggles during STT are ignored and the cycle finishes normally."""
    gate = asyncio.Event()

    async def slow_transcribe(*args, **kwargs):
        await gate.wait()
        return stt_result("hello there world")

    stt_client.transcribe.side_effect = slow_transcribe

    await orchestrator.toggle()
    stop_task = asyncio.create_task(orchestrator.toggle())
    await wait_for_state(orchestrator, PipelineStateEnum.TRANSCRIBING)

    await orchestrator.toggle()
    await orchestrator.toggle()

    assert orchestrator.state == PipelineStateEnum.TRANSCRIBING
    audio_capture.start.assert_awaited_once()
    audio_capture.stop.assert_awaited_once()

    gate.set()
    await stop_task
    assert orchestrator.state == PipelineStateEnum.COMPLETED


@pytest.mark.asyncio
async def test_toggle_ignored_while_refining(orchestrator, audio_capture, refine):
    """Toggles during refinement are ignored."""
    gate = asyncio.Event()

    async def slow_refine(text, prompt, api_key):
        await gate.wait()
        return "Hello there, world."

    refine.side_effect = slow_refine

    await orchestrator.toggle()
    stop_task = asyncio.create_task(orchestrator.toggle())
    await wait_for_state(orchestrator, PipelineStateEnum.REFINING)

    await orchestrator.toggle()

    assert orchestrator.state == PipelineStateEnum.REFINING
    audio_capture.start.assert_awaited_once()

    gate.set()
    await stop_task
    assert orchestrator.state == PipelineStateEnum.COMPLETED


@pytest.mark.asyncio
async def test_completed_reverts_to_idle(orchestrator):
    """COMPLETED falls back to IDLE after the dwell."""
    await orchestrator.toggle()
    await orchestrator.toggle()
    assert orchestrator.state == PipelineStateEnum.COMPLETED

    await asyncio.sleep(0.15)

    assert orchestrator.state == PipelineStateEnum.IDLE


@pytest.mark.asyncio
async def test_new_cycle_cancels_pending_revert(orchestrator, audio_capture):
    """Starting a recording during the dwell keeps it from being reverted."""
    await orchestrator.toggle()
    await orchestrator.toggle()
    assert orchestrator.state == PipelineStateEnum.COMPLETED

    await orchestrator.toggle()
    await asyncio.sleep(0.15)

    assert orchestrator.state == PipelineStateEnum.RECORDING
    assert audio_capture.start.await_count == 2


@pytest.mark.asyncio
async def test_config_snapshot_taken_at_start(
    orchestrator, config, refine, other_refine, output_handler
):
    """Config changes during a recording apply to the next cycle only."""
    await orchestrator.toggle()

    updated = config.model_copy(deep=True)
    updated.refinement.provider = "openai"
    updated.output.auto_deliver = False
    orchestrator.update_config(updated)

    await orchestrator.toggle()

    refine.assert_awaited_once()
    other_refine.assert_not_awaited()
    output_handler.deliver.assert_awaited_once()

    await orchestrator.toggle()
    await orchestrator.toggle()

    other_refine.assert_awaited_once()
    output_handler.deliver.assert_awaited_once()


@pytest.mark.asyncio
async def test_credentials_read_once_at_start(
    orchestrator, keys, secrets, stt_client, output_handler
):
    """Removing a key during a recording does not affect that cycle."""
    client = MagicMock()
    client.__aenter__.return_value = client
    client.__aexit__.return_value = False
    client.chat.completions.create = AsyncMock(
        return_value=Mock(choices=[Mock(message=Mock(content="Hello there, world."))])
    )
    orchestrator.registry = ProviderRegistry(
        [
            RefinementProvider(
                id="groq",
                display_name="Groq",
                model_id="llama-test",
                credential_key=GROQ_API_KEY,
                invoke=chat_completions_refiner(GROQ_API_KEY, "llama-test"),
            )
        ]
    )

    with patch("voxinkd.providers.AsyncOpenAI", return_value=client) as mock_openai:
        await orchestrator.toggle()
        assert secrets.load_secret.call_count == 2

        keys.clear()
        await orchestrator.toggle()

    assert orchestrator.state == PipelineStateEnum.COMPLETED
    output_handler.deliver.assert_awaited_once_with("Hello there, world.")
    assert mock_openai.call_args.kwargs["api_key"] == "gsk-test"
    assert stt_client.transcribe.call_args.kwargs["api_key"] == "gsk-test"
    assert secrets.load_secret.call_count == 2


@pytest.mark.asyncio
async def test_missing_refinement_key_falls_back(orchestrator, keys, refine, output_handler):
    """The next cycle sees removed keys; refinement then falls back."""
    keys.clear()
    refine.side_effect = MissingCredential(GROQ_API_KEY)

    await orchestrator.toggle()
    await orchestrator.toggle()

    assert refine.call_args.args[2] is None
    assert orchestrator.state == PipelineStateEnum.COMPLETED
    output_handler.deliver.assert_awaited_once_with("hello there world")


@pytest.mark.asyncio
async def test_auto_deliver_disabled(orchestrator, config, output_handler, history):
    """Delivery is skipped when disabled, the outcome is still recorded."""
    config.output.auto_deliver = False

    await orchestrator.toggle()
    await orchestrator.toggle()

    assert orchestrator.state == PipelineStateEnum.COMPLETED
    output_handler.deliver.assert_not_awaited()
    recorded_outcome(history)


@pytest.mark.asyncio
async def test_delivery_and_history_errors_do_not_fail_cycle(
    orchestrator, output_handler, history
):
    """Side-effect failures after refinement are logged only."""
    output_handler.deliver.side_effect = RuntimeError("no display")
    history.record_outcome.side_effect = OSError("disk full")

    await orchestrator.toggle()
    await orchestrator.toggle()

    assert orchestrator.state == PipelineStateEnum.COMPLETED


@pytest.mark.asyncio
async def test_capture_start_failure_then_retry(orchestrator, audio_capture, sounds):
    """A failed start ends in FAILED and the next toggle starts afresh."""
    handle = audio_capture.start.return_value
    audio_capture.start.side_effect = CaptureError("no recorder")

    await orchestrator.toggle()

    assert orchestrator.state == PipelineStateEnum.FAILED
    sounds.play.assert_awaited_once_with(Cue.ERROR)

    audio_capture.start.side_effect = None
    audio_capture.start.return_value = handle
    await orchestrator.toggle()

    assert orchestrator.state == PipelineStateEnum.RECORDING


@pytest.mark.asyncio
async def test_capture_stop_failure(orchestrator, audio_capture, stt_client, recording_path):
    """A failed stop releases the recording and fails the cycle."""
    audio_capture.stop.side_effect = CaptureError("recorder crashed")

    await orchestrator.toggle()
    await orchestrator.toggle()

    assert orchestrator.state == PipelineStateEnum.FAILED
    stt_client.transcribe.assert_not_awaited()
    audio_capture.release.assert_called_once()
    assert not recording_path.exists()


@pytest.mark.asyncio
async def test_cancelled_stop_releases_recording(orchestrator, audio_capture, recording_path):
    """A toggle cancelled while capture is stopping leaves the pipeline usable."""

    async def stuck_stop(handle):
        await asyncio.Event().wait()

    await orchestrator.toggle()
    audio_capture.stop.side_effect = stuck_stop
    stop_task = asyncio.create_task(orchestrator.toggle())
    await asyncio.sleep(0.01)

    stop_task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await stop_task

    assert orchestrator.state == PipelineStateEnum.IDLE
    audio_capture.release.assert_called_once()
    assert not recording_path.exists()

    audio_capture.stop.side_effect = None
    await orchestrator.toggle()

    assert orchestrator.state == PipelineStateEnum.RECORDING
    assert audio_capture.start.await_count == 2


@pytest.mark.asyncio
async def test_cancelled_transcription_returns_to_idle(
    orchestrator, audio_capture, stt_client, recording_path
):
    """Cancelling an in-flight cycle deletes the audio and unblocks toggles."""

    async def stuck_transcribe(*args, **kwargs):
        await asyncio.Event().wait()

    stt_client.transcribe.side_effect = stuck_transcribe

    await orchestrator.toggle()
    stop_task = asyncio.create_task(orchestrator.toggle())
    await wait_for_state(orchestrator, PipelineStateEnum.TRANSCRIBING)

    stop_task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await stop_task

    assert orchestrator.state == PipelineStateEnum.IDLE
    assert not recording_path.exists()

    await orchestrator.toggle()
    assert orchestrator.state == PipelineStateEnum.RECORDING


@pytest.mark.asyncio
async def test_shutdown_discards_active_recording(orchestrator, audio_capture, recording_path):
    """Shutting down mid-recording stops capture and deletes the file."""
    await orchestrator.toggle()

    await orchestrator.shutdown()

    assert orchestrator.state == PipelineStateEnum.IDLE
    audio_capture.stop.assert_awaited_once()
    assert not recording_path.exists()


@pytest.mark.asyncio
async def test_without_history_or_sounds(
    config, audio_capture, stt_client, registry, output_handler, secrets
):
    """History and sound cues are optional collaborators."""
    orch = PipelineOrchestrator(
        config,
        PipelineStateManager(),
        audio_capture,
        stt_client,
        registry,
        output_handler,
        secrets,
    )

    await orch.toggle()
    await orch.toggle()

    assert orch.state == PipelineStateEnum.COMPLETED
    await orch.shutdown()
