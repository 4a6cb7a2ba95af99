"""Ollama compose-text client."""

from typing import Optional

import httpx
import ollama

from knowledge_graph.core.exceptions import APIClientError
from knowledge_graph.utils.logging import get_logger

LOGGER = get_logger(__name__)


class OllamaClient:
    """Client for a local Ollama server."""

    def __init__(
        self,
        model: str = "llama3.1:8b",
        base_url: str = "http://localhost:11434",
        timeout: int = 60,
    ):
        """Initialize Ollama client.

        Args:
            model: Model name to use
            base_url: Ollama API base URL
            timeout: Request timeout in seconds
        """
        self.model = model

        # Ollama expects host:port without scheme or path
        host = base_url.split("://", 1)[-1].split("/", 1)[0]
        self.client = ollama.AsyncClient(host=host, timeout=timeout)
        LOGGER.info(f"Initialized Ollama client with model {self.model} at {host}")

    async def compose_text(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        max_tokens: Optional[int] = None,
    ) -> str:
        """Generate text for a prompt.

        Raises:
            APIClientError: If the Ollama call fails
        """
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})

        options = {"temperature": 0.0}
        if max_tokens:
            options["num_predict"] = max_tokens

        try:
            response = await self.client.chat(model=self.model, messages=messages, options=options)
        except (ollama.ResponseError, ConnectionError, httpx.HTTPError) as e:
            LOGGER.error(f"Ollama generation failed: {e}", exc_info=True)
            raise APIClientError(f"Ollama generation failed: {e}", e) from e

        content = response.message.content if response.message else ""
        return content or ""
