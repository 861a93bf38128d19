"""
LLM-backed rewriting of raw OCR text.

Supports:
- DeepSeek (via the openai library, OpenAI-compatible endpoint)
- OpenAI GPT (via openai library)
- Anthropic Claude (via anthropic library)
- Google Gemini (via google-genai library)
"""

import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Iterator, Literal

logger = logging.getLogger(__name__)

ProviderName = Literal["deepseek", "openai", "anthropic", "gemini"]

DEFAULT_TIMEOUT = 10.0

EDITOR_PROMPT = (
    "You are a professional document editor. I will give you raw OCR text from a scanned document. "
    "Your job is to:\n"
    "1. Fix common OCR typos (misspelled words, broken lines).\n"
    "2. Format the text nicely (headers, bullet points, paragraphs).\n"
    "3. Do NOT summarize or change the meaning. Keep all information.\n"
    "4. Output ONLY the corrected text, no conversational filler.\n"
    "5. Preserve the original language of the text."
)


@dataclass
class Message:
    """Represents a single message in the conversation."""
    role: Literal["user", "assistant"]
    content: str


@dataclass
class ConversationHistory:
    messages: list[Message] = field(default_factory=lambda: [])
    system_prompt: str | None = None

    def add_user_message(self, content: str) -> None:
        self.messages.append(Message(role="user", content=content))


class LLMProvider(ABC):
    """Abstract base class for LLM providers."""

    @abstractmethod
    def stream_response(
        self,
        history: ConversationHistory,
        **kwargs: Any
    ) -> Iterator[str]:
        """
        Stream a response from the LLM.

        Args:
            history: Conversation history with context
            **kwargs: Additional provider-specific arguments

        Yields:
            Text chunks from the streaming response
        """
        pass


class AnthropicProvider(LLMProvider):
    """Anthropic Claude provider."""

    def __init__(
        self,
        api_key: str | None = None,
        model: str = "claude-sonnet-4-5-20250929",
        max_tokens: int = 4000,
        timeout: float = DEFAULT_TIMEOUT
    ):
        from anthropic import Anthropic

        self.api_key = api_key or os.getenv("ANTHROPIC_API_KEY")
        if not self.api_key:
            raise ValueError("ANTHROPIC_API_KEY not found in environment")

        self.client = Anthropic(api_key=self.api_key, timeout=timeout)
        self.model = model
        self.max_tokens = max_tokens

    def stream_response(
        self,
        history: ConversationHistory,
        **kwargs: Any
    ) -> Iterator[str]:
        """Stream response from Claude."""
        from anthropic.types import MessageParam

        messages: list[MessageParam] = [
            MessageParam(role=msg.role, content=msg.content)
            for msg in history.messages
        ]

        stream_kwargs: dict[str, Any] = {
            "model": self.model,
            "max_tokens": kwargs.get("max_tokens", self.max_tokens),
            "messages": messages,
        }

        if history.system_prompt is not None:
            stream_kwargs["system"] = history.system_prompt

        with self.client.messages.stream(**stream_kwargs) as stream:
            for text in stream.text_stream:
                yield text


class OpenAIProvider(LLMProvider):
    """OpenAI GPT provider."""

    api_key_env = "OPENAI_API_KEY"
    base_url: str | None = None

    def __init__(
        self,
        api_key: str | None = None,
        model: str = "gpt-5.1-2025-11-13",
        max_tokens: int = 4000,
        timeout: float = DEFAULT_TIMEOUT
    ):
        from openai import OpenAI

        self.api_key = api_key or os.getenv(self.api_key_env)
        if not self.api_key:
            raise ValueError(f"{self.api_key_env} not found in environment")

        self.client = OpenAI(api_key=self.api_key, base_url=self.base_url, timeout=timeout)
        self.model = model
        self.max_tokens = max_tokens

    def stream_response(
        self,
        history: ConversationHistory,
        **kwargs: Any
    ) -> Iterator[str]:
        """Stream response from an OpenAI-compatible chat endpoint."""
        from openai.types.chat import ChatCompletionChunk, ChatCompletionMessageParam

        messages: list[ChatCompletionMessageParam] = []

        if history.system_prompt:
            messages.append({
                "role": "system",
                "content": history.system_prompt
            })

        for msg in history.messages:
            messages.append({
                "role": msg.role,  # type: ignore[typeddict-item]
                "content": msg.content
            })

        stream = self.client.chat.completions.create(
            model=self.model,
            messages=messages,
            max_tokens=kwargs.get("max_tokens", self.max_tokens),
            stream=True,
        )

        chunk: ChatCompletionChunk
        for chunk in stream:
            if not chunk.choices:
                continue
            delta_content = chunk.choices[0].delta.content
            if delta_content is not None:
                yield delta_content


class DeepSeekProvider(OpenAIProvider):
    """DeepSeek through its OpenAI-compatible API."""

    api_key_env = "DEEPSEEK_API_KEY"
    base_url = "https://api.deepseek.com"

    def __init__(
        self,
        api_key: str | None = None,
        model: str = "deepseek-chat",
        max_tokens: int = 4000,
        timeout: float = DEFAULT_TIMEOUT
    ):
        super().__init__(api_key=api_key, model=model, max_tokens=max_tokens, timeout=timeout)


class GeminiProvider(LLMProvider):
    """Google Gemini provider."""

    def __init__(
        self,
        api_key: str | None = None,
        model: str = "gemini-3-pro-preview",
        max_tokens: int = 4000,
        timeout: float = DEFAULT_TIMEOUT
    ):
        from google import genai
        from google.genai import types

        self.api_key = api_key or os.getenv("GOOGLE_API_KEY")
        if not self.api_key:
            raise ValueError("GOOGLE_API_KEY not found in environment")

        # google-genai takes the timeout in milliseconds
        self.client = genai.Client(
            api_key=self.api_key,
            http_options=types.HttpOptions(timeout=int(timeout * 1000)),
        )
        self.model = model
        self.max_tokens = max_tokens

    def stream_response(
        self,
        history: ConversationHistory,
        **kwargs: Any
    ) -> Iterator[str]:
        """Stream response from Gemini."""
        contents: list[str] = []

        for msg in history.messages:
            # Gemini uses 'user' and 'model' roles
            role: str = "model" if msg.role == "assistant" else msg.role
            contents.append(f"{role}: {msg.content}")

        combined_prompt: str = "\n\n".join(contents)

        response = self.client.models.generate_content_stream(
            model=self.model,
            contents=combined_prompt,
            config={
                "max_output_tokens": kwargs.get("max_tokens", self.max_tokens),
                "system_instruction": history.system_prompt,
            }
        )

        for chunk in response:
            if chunk.text:
                yield chunk.text


_PROVIDERS: dict[str, type[LLMProvider]] = {
    "deepseek": DeepSeekProvider,
    "openai": OpenAIProvider,
    "anthropic": AnthropicProvider,
    "gemini": GeminiProvider,
}


def create_provider(
    provider_name: ProviderName = "deepseek",
    api_key: str | None = None,
    model: str | None = None,
    timeout: float = DEFAULT_TIMEOUT
) -> LLMProvider:
    """
    Factory function for LLM providers.

    Args:
        provider_name: 'deepseek', 'openai', 'anthropic' or 'gemini'
        api_key: API key (default: the provider's environment variable)
        model: Model override (default: the provider's default model)
        timeout: Request timeout in seconds

    Returns:
        Configured provider

    Raises:
        ValueError: If the provider is unknown or has no API key
    """
    provider_class = _PROVIDERS.get(provider_name)
    if provider_class is None:
        raise ValueError(f"Unknown provider: {provider_name}")

    kwargs: dict[str, Any] = {"api_key": api_key, "timeout": timeout}
    if model:
        kwargs["model"] = model
    return provider_class(**kwargs)


class TextRewriter:
    """
    Cleans raw OCR text with an LLM: typo fixes and formatting, same meaning.
    """

    def __init__(self, provider: LLMProvider, system_prompt: str = EDITOR_PROMPT):
        self.provider = provider
        self.system_prompt = system_prompt

    def rewrite(self, text: str, **kwargs: Any) -> str:
        """
        Rewrite raw OCR text.

        Args:
            text: Raw OCR text
            **kwargs: Additional provider-specific arguments

        Returns:
            Corrected text

        Raises:
            ValueError: If the model returned nothing
        """
        history = ConversationHistory(system_prompt=self.system_prompt)
        history.add_user_message(f"Here is the raw text:\n\n{text}")

        rewritten = "".join(self.provider.stream_response(history, **kwargs)).strip()
        if not rewritten:
            raise ValueError("Empty response from language model")
        return rewritten
