"""Audible cues for pipeline events."""

import asyncio
import logging
import shlex
from enum import Enum
from pathlib import Path
from typing import Optional, Set

from .config import SoundsConfig

logger = logging.getLogger(__name__)


class Cue(str, Enum):
    """Pipeline events that have a sound."""

    START = "start"
    STOP = "stop"
    COMPLETE = "complete"
    ERROR = "error"


class SoundPlayer:
    """Plays cue sounds through an external player. Best-effort."""

    def __init__(self, config: SoundsConfig):
        self.config = config
        self._pending: Set[asyncio.Task] = set()

    def _sound_for(self, cue: Cue) -> Optional[Path]:
        return {
            Cue.START: self.config.start_sound,
            Cue.STOP: self.config.stop_sound,
            Cue.COMPLETE: self.config.complete_sound,
            Cue.ERROR: self.config.error_sound,
        }[cue]

    async def play(self, cue: Cue) -> None:
        """Start playing the sound for ``cue`` without waiting for it to end."""
        if not self.config.enabled:
            return

        sound = self._sound_for(cue)
        if sound is None:
            return

        command = shlex.split(self.config.player_command) + [str(sound)]
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as e:
            logger.debug(f"Could not play {cue.value} sound: {e}")
            return

        # Reap the player in the background
        task = asyncio.create_task(process.wait())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
