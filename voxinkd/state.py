"""State management for the voxinkd pipeline."""

from enum import Enum
from typing import Any, Callable, List, Optional, Tuple


class PipelineStateEnum(str, Enum):
    """Possible states of a transcription cycle."""

    IDLE = "Idle"
    RECORDING = "Recording"
    TRANSCRIBING = "Transcribing"
    REFINING = "Refining"
    COMPLETED = "Completed"
    FAILED = "Failed"


BUSY_STATES = frozenset({PipelineStateEnum.TRANSCRIBING, PipelineStateEnum.REFINING})


class PipelineStateManager:
    """Holds the pipeline state and the detail attached to it.

    The detail is the final text for ``COMPLETED``, the failure reason for
    ``FAILED`` and ``None`` otherwise.
    """

    def __init__(self):
        """Initialize state manager with IDLE state."""
        self._state: PipelineStateEnum = PipelineStateEnum.IDLE
        self._detail: Optional[str] = None
        self._observers: List[Callable[[PipelineStateEnum, Optional[str]], Any]] = []

    @property
    def current_state(self) -> PipelineStateEnum:
        """Get the current state of the pipeline."""
        return self._state

    @property
    def detail(self) -> Optional[str]:
        """Get the final text or failure reason, if any."""
        return self._detail

    @property
    def last_error(self) -> Optional[str]:
        return self._detail if self._state == PipelineStateEnum.FAILED else None

    @property
    def is_busy(self) -> bool:
        return self._state in BUSY_STATES

    def add_observer(
        self, observer: Callable[[PipelineStateEnum, Optional[str]], Any]
    ) -> None:
        """Add an observer callback for state changes.

        The callback receives the new state and its optional detail.
        """
        self._observers.append(observer)

    def _notify_observers(self) -> None:
        for observer in self._observers:
            try:
                observer(self._state, self._detail)
            except Exception:
                # Observer errors must not break state management
                pass

    def _transition(self, new_state: PipelineStateEnum, detail: Optional[str]) -> None:
        changed = self._state != new_state or self._detail != detail
        self._state = new_state
        self._detail = detail
        if changed:
            self._notify_observers()

    def set_state(self, new_state: PipelineStateEnum) -> None:
        """Set a state that carries no detail.

        Args:
            new_state: The new state to set.

        Raises:
            TypeError: If the provided state is not a valid PipelineStateEnum.
            ValueError: If the state requires a detail (use set_completed/set_error).
        """
        if not isinstance(new_state, PipelineStateEnum):
            raise TypeError(f"State must be a PipelineStateEnum, got {type(new_state)}")
        if new_state in (PipelineStateEnum.COMPLETED, PipelineStateEnum.FAILED):
            raise ValueError(f"{new_state.value} requires a detail")

        self._transition(new_state, None)

    def set_completed(self, final_text: str) -> None:
        """Enter COMPLETED with the cycle's final text."""
        self._transition(PipelineStateEnum.COMPLETED, final_text)

    def set_error(self, message: str) -> None:
        """Enter FAILED with the provided reason."""
        self._transition(PipelineStateEnum.FAILED, message)

    def get_status(self) -> Tuple[str, Optional[str]]:
        """Get the current state value and its detail."""
        return self._state.value, self._detail
