"""Compose-text client used for relationship labeling.

Wraps the supported providers behind one ``compose_text`` call so the
knowledge services never deal with provider details.
"""

from enum import Enum
from typing import Optional, Union

from pydantic import BaseModel

from knowledge_graph.core.config import LLMSettings
from knowledge_graph.core.exceptions import ConfigurationError
from knowledge_graph.core.ollama_client import OllamaClient
from knowledge_graph.core.openrouter_client import OpenRouterClient
from knowledge_graph.utils.logging import get_logger

LOGGER = get_logger(__name__)


class LLMProvider(str, Enum):
    """Supported compose-text providers."""
    OPENROUTER = "openrouter"
    OLLAMA = "ollama"
    DEV = "dev"


class ComposeResult(BaseModel):
    """Text returned by a compose call."""

    text: str
    provider: str
    model: str


class UnifiedLLMClient:
    """Provider-agnostic compose-text client.

    The ``dev`` provider makes no network calls and returns an empty
    analysis, which the relationship labeler treats as "no results".
    """

    def __init__(
        self,
        provider: Union[str, LLMProvider],
        model: str = "",
        api_key: str = "",
        base_url: Optional[str] = None,
        timeout: int = 60,
        max_retries: int = 3,
    ):
        self.provider = LLMProvider(provider)
        self.model = model

        if self.provider == LLMProvider.OPENROUTER:
            self.client = OpenRouterClient(
                api_key=api_key,
                model=model,
                base_url=base_url or "https://openrouter.ai/api/v1/chat/completions",
                timeout=timeout,
                max_retries=max_retries,
            )
        elif self.provider == LLMProvider.OLLAMA:
            self.client = OllamaClient(
                model=model,
                base_url=base_url or "http://localhost:11434",
                timeout=timeout,
            )
        else:
            self.client = None

        LOGGER.info(f"Initialized compose client with {self.provider.value} provider (model: {model or 'n/a'})")

    async def compose_text(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        max_tokens: Optional[int] = None,
    ) -> ComposeResult:
        """Generate text for a prompt.

        Args:
            prompt: User prompt
            system_prompt: Optional system instruction
            max_tokens: Optional cap on response tokens

        Returns:
            ComposeResult with the generated text

        Raises:
            APIClientError: If the provider call fails
        """
        if self.client is None:
            return ComposeResult(text="", provider=self.provider.value, model="dev")

        text = await self.client.compose_text(prompt, system_prompt=system_prompt, max_tokens=max_tokens)
        return ComposeResult(text=text, provider=self.provider.value, model=self.model)


def create_llm_client_from_settings(llm_settings: LLMSettings) -> UnifiedLLMClient:
    """Create a compose client for the configured provider.

    Raises:
        ConfigurationError: If the provider is unknown or its API key is missing
    """
    try:
        provider = LLMProvider(llm_settings.provider.lower())
    except ValueError as e:
        raise ConfigurationError(f"Unsupported LLM provider: {llm_settings.provider}", e) from e

    if provider == LLMProvider.OPENROUTER:
        if not llm_settings.openrouter_api_key.strip():
            raise ConfigurationError("OPENROUTER_API_KEY is required when LLM_PROVIDER is 'openrouter'")
        return UnifiedLLMClient(
            provider=provider,
            model=llm_settings.openrouter_model,
            api_key=llm_settings.openrouter_api_key,
            base_url=llm_settings.openrouter_api_url,
            timeout=llm_settings.timeout,
            max_retries=llm_settings.max_retries,
        )

    if provider == LLMProvider.OLLAMA:
        return UnifiedLLMClient(
            provider=provider,
            model=llm_settings.ollama_model,
            base_url=llm_settings.ollama_api_url,
            timeout=llm_settings.timeout,
        )

    return UnifiedLLMClient(provider=provider)
