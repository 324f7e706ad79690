"""
relaymcp Provider Base - Abstract base classes for chat-completion providers.

This module defines the interface that all chat providers must implement,
and provides a factory for creating provider instances. Every provider
accepts an OpenAI-style transcript plus function descriptors and returns
choices that carry plain content, tool calls, or both.
"""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Type

from relaymcp.validation.config import Config

CHAT_HTTP_TIMEOUT = 120.0


@dataclass
class ToolCallRequest:
    """A function call chosen by the model."""

    id: str
    name: str
    arguments: str = "{}"

    def to_message(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }


@dataclass
class ChatChoice:
    """One completion choice: plain content, tool calls, or both."""

    content: Optional[str] = None
    tool_calls: List[ToolCallRequest] = field(default_factory=list)
    finish_reason: str = "stop"


@dataclass
class ProviderResponse:
    """Response from a chat provider."""

    choices: List[ChatChoice]
    model: str
    provider: str
    token_usage: int = 0
    metadata: Dict[str, Any] = None

    def __post_init__(self):
        if self.metadata is None:
            self.metadata = {}

    @property
    def content(self) -> Optional[str]:
        return self.choices[0].content if self.choices else None


class Provider(ABC):
    """
    Abstract base class for chat-completion providers.

    All provider implementations must inherit from this class and
    implement the required methods.

    Example:
        >>> class MyProvider(Provider):
        ...     async def complete(self, messages, tools=None, **kwargs):
        ...         # Implementation
        ...         pass
    """

    def __init__(self, model: str, config: Config):
        """
        Initialize the provider.

        Args:
            model: The model identifier.
            config: relaymcp configuration.
        """
        self.model = model
        self.config = config

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Return the provider name."""
        pass

    @abstractmethod
    async def complete(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        **kwargs,
    ) -> ProviderResponse:
        """
        Run one chat completion with automatic tool choice.

        Args:
            messages: OpenAI-style transcript.
            tools: Function descriptors the model may call.
            **kwargs: Additional provider-specific parameters.

        Returns:
            ProviderResponse with the model's choices.
        """
        pass

    def get_api_key(self) -> Optional[str]:
        """Get the API key for this provider."""
        return self.config.get_api_key(self.provider_name)

    def require_api_key(self) -> Optional[str]:
        """Get the API key, raising ConfigError when it is missing."""
        return self.config.require_api_key(self.provider_name)

    async def aclose(self) -> None:
        """Release any network client held by the provider."""


def _choice_from_openai_message(message: Dict[str, Any], finish_reason: Optional[str]) -> ChatChoice:
    calls = [
        ToolCallRequest(
            id=call.get("id", ""),
            name=call["function"]["name"],
            arguments=call["function"].get("arguments") or "{}",
        )
        for call in message.get("tool_calls") or []
    ]
    return ChatChoice(
        content=message.get("content"),
        tool_calls=calls,
        finish_reason=finish_reason or "stop",
    )


class OpenAIProvider(Provider):
    """OpenAI API provider implementation."""

    def __init__(self, model: str, config: Config):
        super().__init__(model, config)
        self._client = None

    @property
    def provider_name(self) -> str:
        return "openai"

    def _get_client(self):
        if self._client is None:
            try:
                import openai
            except ImportError:
                raise ImportError("openai package required. Install with: pip install relaymcp")
            self._client = openai.AsyncOpenAI(api_key=self.require_api_key())
        return self._client

    async def complete(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        **kwargs,
    ) -> ProviderResponse:
        """Generate a completion using the OpenAI API."""
        client = self._get_client()

        request: Dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "max_tokens": kwargs.get("max_tokens", self.config.client.max_tokens),
            "temperature": kwargs.get("temperature", self.config.client.temperature),
        }
        if tools:
            request["tools"] = tools
            request["tool_choice"] = "auto"

        response = await client.chat.completions.create(**request)

        choices = [
            _choice_from_openai_message(choice.message.model_dump(), choice.finish_reason)
            for choice in response.choices
        ]
        return ProviderResponse(
            choices=choices,
            model=response.model,
            provider=self.provider_name,
            token_usage=response.usage.total_tokens if response.usage else 0,
        )

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None


class AnthropicProvider(Provider):
    """
    Anthropic API provider implementation.

    Translates the OpenAI-style transcript into Messages API blocks:
    assistant tool calls become ``tool_use`` blocks and tool results
    become ``tool_result`` blocks in a user turn.
    """

    def __init__(self, model: str, config: Config):
        super().__init__(model, config)
        self._client = None

    @property
    def provider_name(self) -> str:
        return "anthropic"

    def _get_client(self):
        if self._client is None:
            try:
                import anthropic
            except ImportError:
                raise ImportError(
                    "anthropic package required. Install with: pip install relaymcp[anthropic]"
                )
            self._client = anthropic.AsyncAnthropic(api_key=self.require_api_key())
        return self._client

    @staticmethod
    def convert_tools(tools: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        return [
            {
                "name": tool["function"]["name"],
                "description": tool["function"].get("description", ""),
                "input_schema": tool["function"].get("parameters") or {"type": "object", "properties": {}},
            }
            for tool in tools
        ]

    @staticmethod
    def convert_messages(messages: List[Dict[str, Any]]):
        """Return ``(system, messages)`` in Anthropic format."""
        system_parts: List[str] = []
        converted: List[Dict[str, Any]] = []

        def _append(role: str, blocks: List[Dict[str, Any]]) -> None:
            if converted and converted[-1]["role"] == role:
                converted[-1]["content"].extend(blocks)
            else:
                converted.append({"role": role, "content": blocks})

        for msg in messages:
            role = msg["role"]
            if role == "system":
                system_parts.append(msg.get("content") or "")
            elif role == "user":
                _append("user", [{"type": "text", "text": msg.get("content") or ""}])
            elif role == "assistant":
                blocks: List[Dict[str, Any]] = []
                if msg.get("content"):
                    blocks.append({"type": "text", "text": msg["content"]})
                for call in msg.get("tool_calls") or []:
                    try:
                        arguments = json.loads(call["function"].get("arguments") or "{}")
                    except json.JSONDecodeError:
                        arguments = {}
                    blocks.append({
                        "type": "tool_use",
                        "id": call["id"],
                        "name": call["function"]["name"],
                        "input": arguments,
                    })
                if blocks:
                    _append("assistant", blocks)
            elif role == "tool":
                _append("user", [{
                    "type": "tool_result",
                    "tool_use_id": msg["tool_call_id"],
                    "content": msg.get("content") or "",
                }])

        return "\n\n".join(system_parts), converted

    async def complete(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        **kwargs,
    ) -> ProviderResponse:
        """Generate a completion using the Anthropic API."""
        client = self._get_client()
        system, converted = self.convert_messages(messages)

        request: Dict[str, Any] = {
            "model": self.model,
            "messages": converted,
            "max_tokens": kwargs.get("max_tokens", self.config.client.max_tokens),
            "temperature": kwargs.get("temperature", self.config.client.temperature),
        }
        if system:
            request["system"] = system
        if tools:
            request["tools"] = self.convert_tools(tools)
            request["tool_choice"] = {"type": "auto"}

        response = await client.messages.create(**request)

        texts = []
        calls = []
        for block in response.content:
            if block.type == "text":
                texts.append(block.text)
            elif block.type == "tool_use":
                calls.append(ToolCallRequest(id=block.id, name=block.name, arguments=json.dumps(block.input)))

        return ProviderResponse(
            choices=[ChatChoice(
                content="\n".join(texts) or None,
                tool_calls=calls,
                finish_reason=response.stop_reason or "stop",
            )],
            model=response.model,
            provider=self.provider_name,
            token_usage=response.usage.input_tokens + response.usage.output_tokens,
        )

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None


class OpenAICompatibleProvider(Provider):
    """
    Base for providers that expose an OpenAI-compatible chat completions API.

    Subclasses only need to set _base_url and provider_name.
    Uses httpx so no extra packages are required.
    """

    _base_url: str = ""
    _requires_key: bool = True

    def __init__(self, model: str, config: Config):
        super().__init__(model, config)
        self._http = None

    @property
    def provider_name(self) -> str:
        raise NotImplementedError

    @property
    def base_url(self) -> str:
        return self.config.get_provider_settings(self.provider_name).get("api_base") or self._base_url

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        api_key = self.require_api_key() if self._requires_key else self.get_api_key()
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        return headers

    async def complete(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        **kwargs,
    ) -> ProviderResponse:
        import httpx

        if self._http is None:
            self._http = httpx.AsyncClient(timeout=CHAT_HTTP_TIMEOUT)

        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "max_tokens": kwargs.get("max_tokens", self.config.client.max_tokens),
            "temperature": kwargs.get("temperature", self.config.client.temperature),
        }
        if tools:
            payload["tools"] = tools
            payload["tool_choice"] = "auto"

        response = await self._http.post(
            f"{self.base_url.rstrip('/')}/chat/completions",
            headers=self._headers(),
            json=payload,
        )
        response.raise_for_status()
        data = response.json()

        usage = data.get("usage") or {}
        return ProviderResponse(
            choices=[
                _choice_from_openai_message(choice.get("message") or {}, choice.get("finish_reason"))
                for choice in data.get("choices", [])
            ],
            model=data.get("model", self.model),
            provider=self.provider_name,
            token_usage=usage.get("total_tokens", 0),
        )

    async def aclose(self) -> None:
        if self._http is not None:
            await self._http.aclose()
            self._http = None


class OpenRouterProvider(OpenAICompatibleProvider):
    """OpenRouter - unified API for 100+ open and commercial models."""

    _base_url = "https://openrouter.ai/api/v1"

    @property
    def provider_name(self) -> str:
        return "openrouter"


class TogetherProvider(OpenAICompatibleProvider):
    """Together AI - fast inference for open-source models."""

    _base_url = "https://api.together.xyz/v1"

    @property
    def provider_name(self) -> str:
        return "together"


class GroqProvider(OpenAICompatibleProvider):
    """Groq - ultra-fast inference for open models."""

    _base_url = "https://api.groq.com/openai/v1"

    @property
    def provider_name(self) -> str:
        return "groq"


class OllamaProvider(OpenAICompatibleProvider):
    """Ollama local models through its OpenAI-compatible endpoint."""

    _base_url = "http://localhost:11434/v1"
    _requires_key = False

    @property
    def provider_name(self) -> str:
        return "ollama"


class ProviderFactory:
    """Factory for creating provider instances."""

    _providers: Dict[str, Type[Provider]] = {
        "openai": OpenAIProvider,
        "anthropic": AnthropicProvider,
        "ollama": OllamaProvider,
        "openrouter": OpenRouterProvider,
        "together": TogetherProvider,
        "groq": GroqProvider,
    }

    @classmethod
    def register(cls, name: str, provider_class: Type[Provider]) -> None:
        """Register a new provider."""
        cls._providers[name] = provider_class

    @classmethod
    def parse_model(cls, model: str):
        """Split ``provider/model`` (or infer the provider) into a tuple."""
        if "/" in model:
            provider_name, model_name = model.split("/", 1)
            if provider_name in cls._providers:
                return provider_name, model_name
            # vendor/model ids belong to OpenRouter's catalog
            return "openrouter", model
        return cls._infer_provider(model), model

    @classmethod
    def create(cls, model: str, config: Config) -> Provider:
        """
        Create a provider instance for the given model.

        Args:
            model: Model identifier (e.g., "openai/gpt-4o-mini" or "gpt-4o-mini").
            config: relaymcp configuration.

        Returns:
            Provider instance.

        Raises:
            ValueError: If the provider is not recognized.
        """
        provider_name, model_name = cls.parse_model(model)

        if provider_name not in cls._providers:
            raise ValueError(f"Unknown provider: {provider_name}")

        provider_class = cls._providers[provider_name]
        return provider_class(model=model_name, config=config)

    @classmethod
    def _infer_provider(cls, model: str) -> str:
        """Infer the provider from the model name."""
        model_lower = model.lower()

        if model_lower.startswith(("gpt", "o1", "o3", "o4")):
            return "openai"
        elif model_lower.startswith("claude"):
            return "anthropic"
        elif model_lower.startswith("llama") or model_lower.startswith("deepseek"):
            return "groq"
        elif model_lower.startswith("mixtral") or model_lower.startswith("qwen"):
            return "together"

        # Default to openrouter (broadest model catalog)
        return "openrouter"

    @classmethod
    def available_providers(cls) -> List[str]:
        """Get list of available provider names."""
        return list(cls._providers.keys())
