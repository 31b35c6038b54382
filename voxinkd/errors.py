"""Error taxonomy shared by the transcription pipeline."""

from typing import Optional


class VoxinkError(Exception):
    """Base class for pipeline errors."""


class MissingCredential(VoxinkError):
    """Raised when no API key is configured for a remote service."""

    def __init__(self, key: str):
        super().__init__(f"No credential configured for '{key}'")
        self.key = key


class EmptyInput(VoxinkError):
    """Raised when the audio blob handed to STT is empty."""


class TransportError(VoxinkError):
    """Raised on network failures and timeouts."""


class ServiceError(VoxinkError):
    """Raised when a remote service answers with a non-success status."""

    def __init__(self, status_code: int, body: Optional[str] = None):
        super().__init__(f"Service returned HTTP {status_code}: {body or ''}".rstrip())
        self.status_code = status_code
        self.body = body or ""


class MalformedResponse(VoxinkError):
    """Raised when a response cannot be parsed into the expected shape."""


class EmptyResponse(VoxinkError):
    """Raised when a response decodes fine but carries no content."""


class CaptureError(VoxinkError):
    """Raised when audio capture cannot be started or stopped."""
