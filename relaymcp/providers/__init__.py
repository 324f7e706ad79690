"""
relaymcp providers module.

This module provides chat-completion abstractions for various LLM providers.
"""

from relaymcp.providers.base import (
    ChatChoice,
    Provider,
    ProviderFactory,
    ProviderResponse,
    ToolCallRequest,
)

__all__ = ["ChatChoice", "Provider", "ProviderFactory", "ProviderResponse", "ToolCallRequest"]
