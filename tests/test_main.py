"""Tests for main daemon module."""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from voxinkd.config import AppConfig, DaemonConfig
from voxinkd.main import main


@pytest.fixture
def mock_config(tmp_path):
    """Patch config loading with paths under the test directory."""
    config = AppConfig(
        daemon=DaemonConfig(
            log_file=tmp_path / "voxinkd.log",
            socket_path=tmp_path / "daemon.sock",
            history_dir=tmp_path / "history",
        )
    )
    with (
        patch("voxinkd.main.load_config", return_value=config) as mock_load,
        patch("voxinkd.main.setup_logging"),
    ):
        mock_load.config = config
        yield mock_load


@pytest.fixture
def mock_handlers():
    """Replace the IPC server and orchestrator with mocks."""
    with (
        patch("voxinkd.main.IPCServer") as mock_ipc,
        patch("voxinkd.main.PipelineOrchestrator") as mock_orch,
    ):
        ipc = AsyncMock()
        orchestrator = AsyncMock()
        mock_ipc.return_value = ipc
        mock_orch.return_value = orchestrator

        yield {
            "ipc": ipc,
            "orchestrator": orchestrator,
            "mock_ipc_class": mock_ipc,
            "mock_orch_class": mock_orch,
        }


@pytest.mark.asyncio
async def test_main_startup_shutdown(mock_config, mock_handlers):
    """Test normal startup and shutdown flow."""
    main_task = asyncio.create_task(main())

    try:
        await asyncio.sleep(0.1)

        mock_handlers["ipc"].start.assert_awaited_once()
        socket_path, _, shutdown_event, orchestrator = mock_handlers[
            "mock_ipc_class"
        ].call_args.args[:4]
        assert socket_path == mock_config.config.daemon.socket_path
        assert orchestrator is mock_handlers["orchestrator"]
        assert mock_handlers["mock_ipc_class"].call_args.kwargs["config_loader"] is mock_config

        shutdown_event.set()
        exit_code = await asyncio.wait_for(main_task, timeout=1.0)

        assert exit_code == 0
        mock_handlers["ipc"].stop.assert_awaited_once()
        mock_handlers["orchestrator"].shutdown.assert_awaited_once()
    finally:
        if not main_task.done():
            main_task.cancel()
            await asyncio.gather(main_task, return_exceptions=True)


@pytest.mark.asyncio
async def test_main_config_error(mock_handlers):
    """Invalid configuration exits with an error before wiring anything."""
    with patch("voxinkd.main.load_config", side_effect=ValueError("bad config")):
        exit_code = await main()

    assert exit_code == 1
    mock_handlers["mock_ipc_class"].assert_not_called()


@pytest.mark.asyncio
async def test_main_ipc_start_failure(mock_config, mock_handlers):
    """A socket that cannot be bound ends the daemon with an error."""
    mock_handlers["ipc"].start.side_effect = OSError("address in use")

    exit_code = await asyncio.wait_for(main(), timeout=1.0)

    assert exit_code == 1
    mock_handlers["orchestrator"].shutdown.assert_awaited_once()
