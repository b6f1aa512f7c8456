"""Generation providers consumed by pipeline steps.

Both providers retry transient failures with bounded exponential backoff and
surface anything left over as ``ProviderError``. Job-level recovery is a
separate concern handled by the recovery controller.
"""

import base64
import logging
from typing import Any, Optional, Protocol

import httpx

from chronicle.utils.errors import ProviderError
from chronicle.utils.retry import with_retry

logger = logging.getLogger(__name__)


class LanguageProvider(Protocol):
    """Text generation collaborator."""

    async def generate(self, prompt: str, context: str = "") -> str:
        ...


class ImageProvider(Protocol):
    """Image generation collaborator."""

    async def generate(self, prompt: str) -> bytes:
        ...


class AgentLanguageProvider:
    """Language provider backed by a PydanticAI agent."""

    def __init__(
        self,
        agent: Any,
        name: str = "language-model",
        max_attempts: int = 3,
        base_delay: float = 1.0,
    ) -> None:
        """
        Initialize the provider.

        Args:
            agent: PydanticAI Agent returning ``str`` output
            name: Provider label used in errors and logs
            max_attempts: Attempts per call, including the first
            base_delay: Backoff base delay in seconds
        """
        self.agent = agent
        self.name = name
        self._run = with_retry(max_attempts=max_attempts, base_delay=base_delay)(self._run_once)

    async def _run_once(self, prompt: str) -> str:
        result = await self.agent.run(prompt)
        if not result or not result.output or not str(result.output).strip():
            raise ProviderError(self.name, "empty response")
        return str(result.output)

    async def generate(self, prompt: str, context: str = "") -> str:
        """
        Generate text for a prompt.

        Args:
            prompt: The instruction for this call
            context: Prior material the model should stay consistent with

        Returns:
            Generated text

        Raises:
            ProviderError: If every attempt failed
        """
        full_prompt = f"{context}\n\n{prompt}" if context else prompt
        try:
            return await self._run(full_prompt)
        except ProviderError:
            raise
        except Exception as e:
            raise ProviderError(self.name, str(e)) from e


class HttpImageProvider:
    """Image provider calling an OpenAI-compatible image generation endpoint."""

    def __init__(
        self,
        api_key: str,
        api_url: str,
        model: str,
        size: str = "1024x1536",
        max_attempts: int = 3,
        base_delay: float = 2.0,
        timeout: float = 120.0,
    ) -> None:
        self.api_key = api_key
        self.api_url = api_url
        self.model = model
        self.size = size
        self.timeout = timeout
        self._request = with_retry(
            max_attempts=max_attempts,
            base_delay=base_delay,
            exceptions=(httpx.HTTPError, ProviderError),
        )(self._request_once)

    async def _request_once(self, prompt: str) -> bytes:
        async with httpx.AsyncClient() as client:
            response = await client.post(
                self.api_url,
                json={"model": self.model, "prompt": prompt, "size": self.size, "n": 1},
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
                timeout=self.timeout,
            )

        if response.status_code != 200:
            raise ProviderError("image", response.text[:200], status_code=response.status_code)

        data = response.json().get("data") or []
        if not data or not data[0].get("b64_json"):
            raise ProviderError("image", "response contained no image")
        return base64.b64decode(data[0]["b64_json"])

    async def generate(self, prompt: str) -> bytes:
        """
        Generate one image.

        Raises:
            ProviderError: If every attempt failed
        """
        try:
            return await self._request(prompt)
        except httpx.HTTPError as e:
            raise ProviderError("image", f"HTTP error during image generation: {e}") from e


def create_language_provider(agent: Optional[Any] = None) -> AgentLanguageProvider:
    """Create the writer-backed language provider using application settings."""
    from chronicle.agents.writer import create_writer_agent
    from chronicle.config import get_settings

    settings = get_settings()
    return AgentLanguageProvider(
        agent=agent or create_writer_agent(),
        name=settings.language_model,
        max_attempts=settings.max_retry_attempts,
        base_delay=settings.base_delay_seconds,
    )


def create_editor_provider() -> AgentLanguageProvider:
    """Create the editor-backed language provider used by the polish step."""
    from chronicle.agents.editor import create_editor_agent

    return create_language_provider(agent=create_editor_agent())


def create_image_provider() -> Optional[HttpImageProvider]:
    """Create the image provider, or None when no image API key is configured."""
    from chronicle.config import get_settings

    settings = get_settings()
    if not settings.image_api_key:
        return None
    return HttpImageProvider(
        api_key=settings.image_api_key,
        api_url=settings.image_api_url,
        model=settings.image_model,
        max_attempts=settings.max_retry_attempts,
        base_delay=settings.base_delay_seconds * 2,
    )
