"""Delivery of final text to the desktop (clipboard and typing)."""

import asyncio
import logging
import os
from enum import Enum
from typing import Dict, Literal, Optional, Tuple

from .config import OutputConfig

logger = logging.getLogger(__name__)

SessionType = Literal["wayland", "x11", "unknown"]

DEFAULT_KEYBOARD_WAYLAND = "wtype -"
DEFAULT_KEYBOARD_X11 = "xdotool type --delay 0 --file -"
DEFAULT_CLIPBOARD_WAYLAND = "wl-copy"
DEFAULT_CLIPBOARD_X11 = "xclip -selection clipboard"


class OutputMode(str, Enum):
    """Where text is sent."""

    KEYBOARD = "keyboard"
    CLIPBOARD = "clipboard"


# Commands used when the config leaves a mode unset
SESSION_DEFAULTS: Dict[Tuple[OutputMode, str], str] = {
    (OutputMode.KEYBOARD, "wayland"): DEFAULT_KEYBOARD_WAYLAND,
    (OutputMode.KEYBOARD, "x11"): DEFAULT_KEYBOARD_X11,
    (OutputMode.CLIPBOARD, "wayland"): DEFAULT_CLIPBOARD_WAYLAND,
    (OutputMode.CLIPBOARD, "x11"): DEFAULT_CLIPBOARD_X11,
}


def get_session_type() -> SessionType:
    """Detect the graphical session type from ``XDG_SESSION_TYPE``."""
    session = os.environ.get("XDG_SESSION_TYPE", "").strip().lower()
    return session if session in ("wayland", "x11") else "unknown"


def resolve_command(output_mode: OutputMode, config: OutputConfig) -> Optional[str]:
    """Pick the configured command for a mode, or the session default."""
    configured = (
        config.keyboard_command
        if output_mode == OutputMode.KEYBOARD
        else config.clipboard_command
    )
    if configured:
        return configured
    return SESSION_DEFAULTS.get((output_mode, get_session_type()))


async def _pipe_to_command(command: str, data: bytes, timeout: float) -> Optional[str]:
    """Run ``command`` with ``data`` on stdin. Returns an error message or None."""
    process = await asyncio.create_subprocess_shell(
        command,
        stdin=asyncio.subprocess.PIPE,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        _, stderr = await asyncio.wait_for(process.communicate(data), timeout=timeout)
    except asyncio.TimeoutError:
        try:
            process.kill()
            await process.wait()
        except ProcessLookupError:
            pass
        return f"Command timed out after {timeout}s"

    if process.returncode != 0:
        detail = stderr.decode("utf-8", errors="replace").strip()
        return f"Command failed with code {process.returncode}: {command}: {detail}"
    return None


async def execute_output_command(
    text: str, output_mode: OutputMode, config: OutputConfig, timeout: float = 5.0
) -> Tuple[bool, Optional[str]]:
    """Send ``text`` to the clipboard or keyboard command.

    Args:
        text: The text to output.
        output_mode: Keyboard or clipboard.
        config: Output configuration with optional command overrides.
        timeout: Seconds to wait for the command to finish.

    Returns:
        Tuple of (success, error_message).
    """
    if not text:
        logger.debug("Nothing to output")
        return True, None

    command = resolve_command(output_mode, config)
    if not command:
        error = (
            f"No {output_mode.value} command configured and no default "
            f"for session type '{get_session_type()}'"
        )
    else:
        logger.debug(f"Running {output_mode.value} command: {command}")
        try:
            error = await _pipe_to_command(command, text.encode("utf-8"), timeout)
        except FileNotFoundError:
            error = f"Command not found: {command}"
        except PermissionError:
            error = f"Permission denied executing: {command}"
        except OSError as e:
            error = f"Could not run {command}: {e}"

    if error:
        logger.error(f"{output_mode.value.capitalize()} output failed: {error}")
        return False, error
    return True, None


class OutputHandler:
    """Copies final text to the clipboard and optionally types it."""

    def __init__(self, config: OutputConfig):
        self.config = config

    async def deliver(self, text: str) -> bool:
        """Deliver text. Failures are logged, never raised.

        The clipboard copy always happens first so the text survives a
        failed typing attempt.

        Returns:
            True if every attempted output command succeeded.
        """
        try:
            copied, _ = await execute_output_command(text, OutputMode.CLIPBOARD, self.config)
            if not copied:
                return False

            if self.config.type_text:
                typed, _ = await execute_output_command(text, OutputMode.KEYBOARD, self.config)
                if not typed:
                    logger.warning("Typing failed, text left on clipboard")
                    return False
        except Exception:
            logger.exception("Unexpected error delivering text")
            return False

        logger.info(f"Delivered {len(text)} chars")
        return True
