"""Control socket: newline-delimited JSON commands over a Unix socket."""

import asyncio
import logging
from pathlib import Path
from typing import Awaitable, Callable, Dict, Optional, Set, Type

from pydantic import BaseModel, ValidationError

from .config import AppConfig
from .history import HistoryStore
from .ipc_models import (
    AckResponse,
    CommandWrapper,
    DeleteCommand,
    ErrorResponse,
    HistoryCommand,
    HistoryResponse,
    PipelineStateModel,
    ReloadCommand,
    ResponseWrapper,
    ShutdownCommand,
    StateNotification,
    StatsCommand,
    StatsResponse,
    StatusCommand,
    StatusResponse,
    SubscribeCommand,
    ToggleCommand,
)
from .orchestrator import PipelineOrchestrator
from .state import PipelineStateEnum, PipelineStateManager

logger = logging.getLogger(__name__)

# Commands are tiny; anything bigger is a misbehaving client
MAX_MESSAGE_SIZE = 64 * 1024
MESSAGE_TERMINATOR = b"\n"
READ_TIMEOUT_S = 5.0

HISTORY_DISABLED = "History is disabled"
RELOAD_UNSUPPORTED = "Configuration reload is not available"


def encode(response: BaseModel) -> bytes:
    """Frame a response model for the wire."""
    return ResponseWrapper(root=response).model_dump_json().encode("utf-8") + MESSAGE_TERMINATOR


class IPCServer:
    """Accepts control commands and streams state changes to subscribers."""

    def __init__(
        self,
        socket_path: Path,
        state_manager: PipelineStateManager,
        shutdown_event: asyncio.Event,
        orchestrator: PipelineOrchestrator,
        history: Optional[HistoryStore] = None,
        config_loader: Optional[Callable[[], AppConfig]] = None,
    ):
        """Initialize the IPC server.

        Args:
            socket_path: Path of the Unix domain socket to listen on.
            state_manager: Source of status and state-change events.
            shutdown_event: Set when a client asks the daemon to exit.
            orchestrator: The pipeline driven by toggle commands.
            history: Store backing the history/stats commands, if enabled.
            config_loader: Reads the configuration for the reload command.
        """
        self.socket_path = socket_path
        self.state_manager = state_manager
        self.shutdown_event = shutdown_event
        self.orchestrator = orchestrator
        self.history = history
        self.config_loader = config_loader

        self._server: Optional[asyncio.Server] = None
        self._client_tasks: Set[asyncio.Task] = set()
        self._toggle_tasks: Set[asyncio.Task] = set()
        self._broadcast_tasks: Set[asyncio.Task] = set()
        self._subscribers: Set[asyncio.StreamWriter] = set()

        # Handlers return False when the connection should be closed
        self._handlers: Dict[
            Type[BaseModel], Callable[[asyncio.StreamWriter, BaseModel], Awaitable[bool]]
        ] = {
            ToggleCommand: self._on_toggle,
            StatusCommand: self._on_status,
            SubscribeCommand: self._on_subscribe,
            HistoryCommand: self._on_history,
            DeleteCommand: self._on_delete,
            StatsCommand: self._on_stats,
            ReloadCommand: self._on_reload,
            ShutdownCommand: self._on_shutdown,
        }

        self.state_manager.add_observer(self._on_state_change)

    def _current_status(self) -> PipelineStateModel:
        state, detail = self.state_manager.get_status()
        return PipelineStateModel(state=state, detail=detail)

    async def _reply(self, writer: asyncio.StreamWriter, response: BaseModel) -> None:
        try:
            writer.write(encode(response))
            await writer.drain()
        except (ConnectionError, RuntimeError) as e:
            logger.warning(f"Could not send {type(response).__name__}: {e}")

    # State change fan-out

    def _on_state_change(self, state: PipelineStateEnum, detail: Optional[str]) -> None:
        if not self._subscribers:
            return
        status = PipelineStateModel(state=state.value, detail=detail)
        frame = encode(StateNotification(status=status))
        task = asyncio.create_task(self._broadcast(frame))
        self._broadcast_tasks.add(task)
        task.add_done_callback(self._broadcast_tasks.discard)

    async def _broadcast(self, frame: bytes) -> None:
        for writer in list(self._subscribers):
            if writer.is_closing():
                self._subscribers.discard(writer)
                continue
            try:
                writer.write(frame)
                await writer.drain()
            except (ConnectionError, RuntimeError) as e:
                logger.warning(f"Dropping subscriber after write error: {e}")
                self._subscribers.discard(writer)

    # Command handlers

    async def _on_toggle(self, writer: asyncio.StreamWriter, command: BaseModel) -> bool:
        # Acknowledge right away; progress is visible through status/subscribe
        logger.info(f"Toggle requested in state {self.state_manager.current_state.value}")
        task = asyncio.create_task(self.orchestrator.toggle())
        self._toggle_tasks.add(task)
        task.add_done_callback(self._toggle_finished)
        await self._reply(writer, AckResponse())
        return True

    def _toggle_finished(self, task: asyncio.Task) -> None:
        self._toggle_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Toggle failed unexpectedly: {task.exception()!r}")

    async def _on_status(self, writer: asyncio.StreamWriter, command: BaseModel) -> bool:
        await self._reply(writer, StatusResponse(status=self._current_status()))
        return True

    async def _on_subscribe(self, writer: asyncio.StreamWriter, command: BaseModel) -> bool:
        logger.info("Client subscribed to state changes")
        self._subscribers.add(writer)
        await self._reply(writer, StateNotification(status=self._current_status()))
        return True

    async def _on_history(self, writer: asyncio.StreamWriter, command: HistoryCommand) -> bool:
        if self.history is None:
            await self._reply(writer, ErrorResponse(message=HISTORY_DISABLED))
            return True
        records = await asyncio.to_thread(self.history.fetch_records, command.limit)
        await self._reply(writer, HistoryResponse(records=records))
        return True

    async def _on_delete(self, writer: asyncio.StreamWriter, command: DeleteCommand) -> bool:
        if self.history is None:
            await self._reply(writer, ErrorResponse(message=HISTORY_DISABLED))
            return True
        if await asyncio.to_thread(self.history.delete_record, command.id):
            logger.info(f"Deleted history record {command.id}")
            await self._reply(writer, AckResponse())
        else:
            await self._reply(writer, ErrorResponse(message=f"No history record {command.id}"))
        return True

    async def _on_stats(self, writer: asyncio.StreamWriter, command: BaseModel) -> bool:
        if self.history is None:
            await self._reply(writer, ErrorResponse(message=HISTORY_DISABLED))
            return True
        totals = await asyncio.to_thread(self.history.totals)
        week = await asyncio.to_thread(self.history.weekly_stats)
        await self._reply(writer, StatsResponse(totals=totals, week=week))
        return True

    async def _on_reload(self, writer: asyncio.StreamWriter, command: BaseModel) -> bool:
        if self.config_loader is None:
            await self._reply(writer, ErrorResponse(message=RELOAD_UNSUPPORTED))
            return True
        try:
            config = await asyncio.to_thread(self.config_loader)
        except (ValueError, OSError) as e:
            message = f"Configuration reload failed: {e}"
            logger.error(message)
            await self._reply(writer, ErrorResponse(message=message))
            return True
        self.orchestrator.update_config(config)
        await self._reply(writer, AckResponse())
        return True

    async def _on_shutdown(self, writer: asyncio.StreamWriter, command: BaseModel) -> bool:
        logger.info("Shutdown requested over IPC")
        await self._reply(writer, AckResponse())
        self.shutdown_event.set()
        return False

    async def _dispatch(self, writer: asyncio.StreamWriter, message: bytes) -> bool:
        """Parse one message and run its handler.

        Returns:
            False if the connection should be closed afterwards.
        """
        try:
            command = CommandWrapper.model_validate_json(message).root
        except ValidationError as e:
            logger.error(f"Rejected malformed command: {e}")
            await self._reply(writer, ErrorResponse(message=f"Invalid command format: {e}"))
            return True

        logger.debug(f"Dispatching command: {command.command}")
        try:
            return await self._handlers[type(command)](writer, command)
        except Exception as e:
            logger.exception(f"Command {command.command} failed")
            await self._reply(writer, ErrorResponse(message=f"Internal error: {e}"))
            return True

    async def _serve_client(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        task = asyncio.current_task()
        self._client_tasks.add(task)
        logger.debug("Client connected")

        try:
            while True:
                # Subscribers idle indefinitely; plain clients must speak promptly
                timeout = None if writer in self._subscribers else READ_TIMEOUT_S
                try:
                    frame = await asyncio.wait_for(
                        reader.readuntil(MESSAGE_TERMINATOR), timeout=timeout
                    )
                except asyncio.IncompleteReadError:
                    break
                except asyncio.TimeoutError:
                    logger.warning("Client sent nothing in time, closing")
                    break
                except asyncio.LimitOverrunError:
                    logger.warning("Client message exceeds size limit, closing")
                    break
                except ConnectionError as e:
                    logger.warning(f"Client connection error: {e}")
                    break

                if not await self._dispatch(writer, frame.rstrip(MESSAGE_TERMINATOR)):
                    break
        except asyncio.CancelledError:
            logger.debug("Client handler cancelled")
        finally:
            self._subscribers.discard(writer)
            if not writer.is_closing():
                writer.close()
                try:
                    await asyncio.wait_for(writer.wait_closed(), timeout=1.0)
                except (asyncio.TimeoutError, ConnectionError) as e:
                    logger.debug(f"Error while closing client connection: {e}")
            self._client_tasks.discard(task)
            logger.debug("Client disconnected")

    async def start(self) -> None:
        """Bind the socket and start accepting clients.

        Raises:
            OSError: If the path is taken by something that is not a socket,
                or the socket cannot be bound.
        """
        if self._server:
            logger.warning("IPC server already running")
            return

        if self.socket_path.exists():
            if not self.socket_path.is_socket():
                raise OSError(f"Path exists but is not a socket: {self.socket_path}")
            logger.info(f"Replacing stale socket {self.socket_path}")
            self.socket_path.unlink()

        self.socket_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._server = await asyncio.start_unix_server(
                self._serve_client, path=str(self.socket_path), limit=MAX_MESSAGE_SIZE
            )
        except OSError:
            self.socket_path.unlink(missing_ok=True)
            raise
        logger.info(f"IPC server listening on {self.socket_path}")

    async def stop(self) -> None:
        """Close all connections, cancel in-flight toggles and remove the socket."""
        if not self._server:
            return

        for writer in self._subscribers:
            if not writer.is_closing():
                writer.close()
        self._subscribers.clear()

        self._server.close()
        await self._server.wait_closed()
        self._server = None

        tasks = self._client_tasks | self._toggle_tasks | self._broadcast_tasks
        pending = [t for t in tasks if not t.done()]
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        self._client_tasks.clear()
        self._toggle_tasks.clear()
        self._broadcast_tasks.clear()

        self.socket_path.unlink(missing_ok=True)
        logger.info("IPC server stopped")
