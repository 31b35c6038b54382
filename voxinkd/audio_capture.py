"""Audio capture module."""

import asyncio
import logging
import os
import shlex
import signal
import tempfile
import time
from pathlib import Path
from typing import Optional, Union

from .config import AudioConfig
from .errors import CaptureError
from .models import CaptureHandle, CapturedAudio

logger = logging.getLogger(__name__)

TEMP_FILE_PREFIX = "voxink_"
STOP_TIMEOUT_S = 2.0


class AudioCapture:
    """Records the microphone into a temporary file through a recorder process."""

    def __init__(self, config: AudioConfig):
        """Initialize audio capture.

        Args:
            config: Audio configuration (recorder command, file suffix).
        """
        self.config = config
        self._process: Optional[asyncio.subprocess.Process] = None
        self._handle: Optional[CaptureHandle] = None

    @property
    def is_recording(self) -> bool:
        return self._process is not None

    async def start(self) -> CaptureHandle:
        """Start recording.

        Returns:
            Handle identifying the recording.

        Raises:
            CaptureError: If a recording is already running or the recorder
                cannot be launched.
        """
        if self._process is not None:
            raise CaptureError("A recording is already in progress")

        fd, name = tempfile.mkstemp(prefix=TEMP_FILE_PREFIX, suffix=self.config.file_suffix)
        os.close(fd)
        path = Path(name)

        command = shlex.split(self.config.record_command) + [str(path)]
        logger.info(f"Starting audio capture: {' '.join(command)}")

        try:
            self._process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except FileNotFoundError as e:
            path.unlink(missing_ok=True)
            raise CaptureError(f"Recorder command not found: {command[0]}") from e
        except OSError as e:
            path.unlink(missing_ok=True)
            raise CaptureError(f"Failed to start recorder: {e}") from e

        logger.info(f"Started recorder process with PID: {self._process.pid}")
        self._handle = CaptureHandle(path=path, started_at=time.monotonic())
        return self._handle

    async def stop(self, handle: CaptureHandle) -> CapturedAudio:
        """Stop recording and read the captured audio back.

        Args:
            handle: Handle returned by start().

        Returns:
            The captured audio and its duration.

        Raises:
            CaptureError: If ``handle`` is not the active recording or the
                file cannot be read.
        """
        if self._process is None or self._handle != handle:
            raise CaptureError("No matching recording in progress")

        duration = time.monotonic() - handle.started_at
        process = self._process
        self._process = None
        self._handle = None

        if process.returncode is None:
            try:
                # SIGINT lets the recorder finalize the file header
                process.send_signal(signal.SIGINT)
                await asyncio.wait_for(process.wait(), timeout=STOP_TIMEOUT_S)
                logger.info("Recorder process stopped.")
            except asyncio.TimeoutError:
                logger.warning("Timeout waiting for recorder to stop, killing.")
                process.kill()
                await process.wait()
            except ProcessLookupError:
                pass
            except asyncio.CancelledError:
                if process.returncode is None:
                    process.kill()
                raise

        try:
            blob = await asyncio.to_thread(handle.path.read_bytes)
        except OSError as e:
            handle.path.unlink(missing_ok=True)
            raise CaptureError(f"Could not read recording {handle.path}: {e}") from e

        logger.info(f"Recorded {duration:.1f}s ({len(blob)} bytes)")
        return CapturedAudio(path=handle.path, blob=blob, duration=duration)

    def release(self, audio: Union[CapturedAudio, CaptureHandle]) -> None:
        """Delete the temporary recording file."""
        try:
            audio.path.unlink(missing_ok=True)
            logger.debug(f"Removed temporary recording: {audio.path.name}")
        except OSError as e:
            logger.warning(f"Could not remove temporary recording {audio.path}: {e}")
