"""API key lookup for the remote services."""

import logging
import os
import tomllib
from pathlib import Path
from typing import Dict, Optional, Protocol

logger = logging.getLogger(__name__)

GROQ_API_KEY = "groq_api_key"
OPENAI_API_KEY = "openai_api_key"
CLAUDE_API_KEY = "claude_api_key"

# Environment variables checked before the secrets file
ENV_VARS: Dict[str, str] = {
    GROQ_API_KEY: "GROQ_API_KEY",
    OPENAI_API_KEY: "OPENAI_API_KEY",
    CLAUDE_API_KEY: "ANTHROPIC_API_KEY",
}


class SecretStore(Protocol):
    """Read-only access to stored credentials."""

    def load_secret(self, key: str) -> Optional[str]:
        """Return the secret for ``key``, or None when it is not set."""


class EnvSecretStore:
    """Credentials from environment variables, with an optional TOML fallback.

    The secrets file is a flat table, e.g.::

        groq_api_key = "gsk_..."
        claude_api_key = "sk-ant-..."
    """

    def __init__(self, secrets_file: Optional[Path] = None):
        self.secrets_file = secrets_file

    def _read_file(self) -> Dict[str, object]:
        if not self.secrets_file or not self.secrets_file.exists():
            return {}
        try:
            with open(self.secrets_file, "rb") as f:
                return tomllib.load(f)
        except (OSError, tomllib.TOMLDecodeError) as e:
            logger.error(f"Could not read secrets file {self.secrets_file}: {e}")
            return {}

    def load_secret(self, key: str) -> Optional[str]:
        env_var = ENV_VARS.get(key, key.upper())
        value = os.environ.get(env_var, "").strip()
        if value:
            return value

        file_value = self._read_file().get(key)
        if isinstance(file_value, str) and file_value.strip():
            return file_value.strip()

        return None
