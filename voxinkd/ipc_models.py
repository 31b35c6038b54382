"""IPC command and response models for voxinkd daemon."""

from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, Field, RootModel

from .history import DailyStats, UsageTotals
from .models import TranscriptionOutcome


class ToggleCommand(BaseModel):
    """Command to start recording, or stop and process the current one."""

    command: Literal["toggle"] = "toggle"


class StatusCommand(BaseModel):
    """Command to get pipeline status."""

    command: Literal["status"] = "status"


class SubscribeCommand(BaseModel):
    """Command to subscribe to state change events."""

    command: Literal["subscribe"] = "subscribe"


class HistoryCommand(BaseModel):
    """Command to list recent transcriptions."""

    command: Literal["history"] = "history"
    limit: int = Field(default=50, ge=1, le=1000)


class DeleteCommand(BaseModel):
    """Command to remove one transcription from the history."""

    command: Literal["delete"] = "delete"
    id: str = Field(min_length=1)


class StatsCommand(BaseModel):
    """Command to get usage statistics."""

    command: Literal["stats"] = "stats"


class ReloadCommand(BaseModel):
    """Command to re-read the configuration file."""

    command: Literal["reload"] = "reload"


class ShutdownCommand(BaseModel):
    """Command to shut down the daemon."""

    command: Literal["shutdown"] = "shutdown"


DaemonCommand = Annotated[
    Union[
        ToggleCommand,
        StatusCommand,
        SubscribeCommand,
        HistoryCommand,
        DeleteCommand,
        StatsCommand,
        ReloadCommand,
        ShutdownCommand,
    ],
    Field(discriminator="command"),
]


class CommandWrapper(RootModel[DaemonCommand]):
    """Wrapper model for parsing incoming commands."""

    root: DaemonCommand


class PipelineStateModel(BaseModel):
    """Model representing pipeline state."""

    state: str
    detail: Optional[str] = None


class AckResponse(BaseModel):
    """Simple acknowledgment response."""

    response_type: Literal["ack"] = "ack"


class StatusResponse(BaseModel):
    """Response containing pipeline status."""

    response_type: Literal["status"] = "status"
    status: PipelineStateModel


class HistoryResponse(BaseModel):
    """Response listing recent transcriptions, newest first."""

    response_type: Literal["history"] = "history"
    records: List[TranscriptionOutcome]


class StatsResponse(BaseModel):
    """Response with usage totals and the last seven days."""

    response_type: Literal["stats"] = "stats"
    totals: UsageTotals
    week: List[DailyStats]


class ErrorResponse(BaseModel):
    """Response indicating an error."""

    response_type: Literal["error"] = "error"
    message: str


class StateNotification(BaseModel):
    """Notification broadcast when pipeline state changes."""

    response_type: Literal["state_change"] = "state_change"
    status: PipelineStateModel


DaemonResponse = Annotated[
    Union[
        AckResponse,
        StatusResponse,
        HistoryResponse,
        StatsResponse,
        ErrorResponse,
        StateNotification,
    ],
    Field(discriminator="response_type"),
]


class ResponseWrapper(RootModel[DaemonResponse]):
    """Wrapper model for serializing outgoing responses."""

    root: DaemonResponse
