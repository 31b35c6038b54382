"""Refinement backends and the registry that selects between them."""

import logging
from typing import Dict, List, Optional

import anthropic
import openai
from anthropic import AsyncAnthropic
from openai import AsyncOpenAI

from .credentials import CLAUDE_API_KEY, GROQ_API_KEY, OPENAI_API_KEY
from .errors import EmptyResponse, MissingCredential, ServiceError, TransportError
from .models import RefineFn, RefinementProvider

logger = logging.getLogger(__name__)

DEFAULT_PROVIDER_ID = "groq"

GROQ_BASE_URL = "https://api.groq.com/openai/v1"
GROQ_MODEL = "llama-3.3-70b-versatile"
OPENAI_MODEL = "gpt-4o-mini"
CLAUDE_MODEL = "claude-sonnet-4-20250514"

MAX_TOKENS = 4096
TEMPERATURE = 0.3


def _require_key(api_key: Optional[str], credential_key: str) -> str:
    if not api_key:
        raise MissingCredential(credential_key)
    return api_key


def chat_completions_refiner(
    credential_key: str,
    model: str,
    base_url: Optional[str] = None,
    timeout: float = 30.0,
) -> RefineFn:
    """Build a refine coroutine for an OpenAI-compatible chat endpoint.

    The API key is passed on every call; ``credential_key`` only names it in
    the error raised when it is missing.
    """

    async def invoke(text: str, system_prompt: str, api_key: Optional[str]) -> str:
        api_key = _require_key(api_key, credential_key)
        try:
            async with AsyncOpenAI(
                api_key=api_key, base_url=base_url, timeout=timeout, max_retries=0
            ) as client:
                response = await client.chat.completions.create(
                    model=model,
                    messages=[
                        {"role": "system", "content": system_prompt},
                        {"role": "user", "content": text},
                    ],
                    max_tokens=MAX_TOKENS,
                    temperature=TEMPERATURE,
                )
        except openai.APIStatusError as e:
            raise ServiceError(e.status_code, e.response.text) from e
        except openai.APIConnectionError as e:
            raise TransportError(f"Refinement request failed: {e}") from e

        content = response.choices[0].message.content if response.choices else None
        if not content:
            raise EmptyResponse(f"{model} returned no content")

        logger.info(f"{model} refinement done: {len(text)} chars in, {len(content)} out")
        return content

    return invoke


def claude_refiner(
    model: str = CLAUDE_MODEL,
    timeout: float = 30.0,
) -> RefineFn:
    """Build a refine coroutine for the Anthropic messages API."""

    async def invoke(text: str, system_prompt: str, api_key: Optional[str]) -> str:
        api_key = _require_key(api_key, CLAUDE_API_KEY)
        try:
            async with AsyncAnthropic(
                api_key=api_key, timeout=timeout, max_retries=0
            ) as client:
                response = await client.messages.create(
                    model=model,
                    max_tokens=MAX_TOKENS,
                    system=system_prompt,
                    messages=[
                        {
                            "role": "user",
                            "content": f"<transcription>{text}</transcription>",
                        }
                    ],
                )
        except anthropic.APIStatusError as e:
            raise ServiceError(e.status_code, e.response.text) from e
        except anthropic.APIConnectionError as e:
            raise TransportError(f"Refinement request failed: {e}") from e

        content = "".join(
            block.text for block in response.content if getattr(block, "type", None) == "text"
        )
        if not content:
            raise EmptyResponse(f"{model} returned no content")

        logger.info(f"{model} refinement done: {len(text)} chars in, {len(content)} out")
        return content

    return invoke


class ProviderRegistry:
    """Maps provider ids to refinement backends."""

    def __init__(
        self,
        providers: List[RefinementProvider],
        default_id: str = DEFAULT_PROVIDER_ID,
    ):
        self._providers: Dict[str, RefinementProvider] = {p.id: p for p in providers}
        if default_id not in self._providers:
            raise ValueError(f"Default provider '{default_id}' is not registered")
        self.default_id = default_id

    def ids(self) -> List[str]:
        return list(self._providers)

    def select(self, provider_id: Optional[str]) -> RefinementProvider:
        """Return the provider for ``provider_id``.

        Unknown or unset ids fall back to the default provider.
        """
        key = (provider_id or "").strip().lower()
        provider = self._providers.get(key)
        if provider is None:
            logger.warning(
                f"Unknown refinement provider '{provider_id}', "
                f"using default '{self.default_id}'"
            )
            provider = self._providers[self.default_id]
        return provider


def default_provider_registry(timeout: float = 30.0) -> ProviderRegistry:
    """Create the registry with the built-in Groq, OpenAI and Claude backends."""
    return ProviderRegistry(
        [
            RefinementProvider(
                id="groq",
                display_name="Groq",
                model_id=GROQ_MODEL,
                credential_key=GROQ_API_KEY,
                invoke=chat_completions_refiner(
                    GROQ_API_KEY, GROQ_MODEL, GROQ_BASE_URL, timeout
                ),
            ),
            RefinementProvider(
                id="openai",
                display_name="OpenAI GPT",
                model_id=OPENAI_MODEL,
                credential_key=OPENAI_API_KEY,
                invoke=chat_completions_refiner(
                    OPENAI_API_KEY, OPENAI_MODEL, None, timeout
                ),
            ),
            RefinementProvider(
                id="claude",
                display_name="Claude (Anthropic)",
                model_id=CLAUDE_MODEL,
                credential_key=CLAUDE_API_KEY,
                invoke=claude_refiner(CLAUDE_MODEL, timeout),
            ),
        ]
    )
