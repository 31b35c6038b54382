"""Daemon entry point: wire the pipeline and serve the control socket."""

import asyncio
import logging
import signal
import sys
from typing import NoReturn

from .audio_capture import AudioCapture
from .config import AppConfig, load_config
from .credentials import EnvSecretStore
from .history import HistoryStore
from .ipc_server import IPCServer
from .logging_setup import setup_logging
from .orchestrator import PipelineOrchestrator
from .output_handler import OutputHandler
from .providers import default_provider_registry
from .sounds import SoundPlayer
from .state import PipelineStateManager
from .stt_client import SttClient

logger = logging.getLogger(__name__)

__all__ = ["run"]


def build_orchestrator(
    config: AppConfig, state_manager: PipelineStateManager, history: HistoryStore
) -> PipelineOrchestrator:
    """Create the orchestrator with the production collaborators."""
    return PipelineOrchestrator(
        config,
        state_manager,
        AudioCapture(config.audio),
        SttClient(config.stt),
        default_provider_registry(timeout=config.refinement.timeout_s),
        OutputHandler(config.output),
        EnvSecretStore(config.daemon.secrets_file),
        history=history,
        sounds=SoundPlayer(config.sounds),
    )


async def main() -> int:
    """Run the daemon until a signal or a shutdown command arrives.

    Returns:
        Process exit code.
    """
    try:
        config = load_config()
    except (ValueError, OSError) as e:
        print(f"Error loading configuration: {e}", file=sys.stderr)
        return 1

    setup_logging(config.daemon.log_level, config.daemon.computed_log_file)
    logger.info("Starting voxinkd")

    state_manager = PipelineStateManager()
    history = HistoryStore(config.daemon.computed_history_dir)
    orchestrator = build_orchestrator(config, state_manager, history)

    shutdown_event = asyncio.Event()
    ipc_server = IPCServer(
        config.daemon.computed_socket_path,
        state_manager,
        shutdown_event,
        orchestrator,
        history=history,
        config_loader=load_config,
    )

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, shutdown_event.set)

    exit_code = 0
    try:
        await ipc_server.start()
        logger.info("voxinkd ready")
        await shutdown_event.wait()
        logger.info("Shutting down")
    except Exception:
        logger.exception("Fatal error while running the daemon")
        exit_code = 1
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)
        await ipc_server.stop()
        await orchestrator.shutdown()
        logger.info("voxinkd stopped")

    return exit_code


def run() -> NoReturn:
    """Console script entry point."""
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        sys.exit(0)
