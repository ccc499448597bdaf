"""Pick the client class for a model's wire protocol."""

from __future__ import annotations

from typing import Dict, Optional, Type

import httpx

from termpilot.config.models import ModelConfig, RetryConfig, StreamConfig
from termpilot.llm.anthropic import AnthropicClient
from termpilot.llm.client import LLMClient

CLIENTS: Dict[str, Type[LLMClient]] = {
    "openai": LLMClient,
    "anthropic": AnthropicClient,
}


def create_client(
    model: ModelConfig,
    retry: Optional[RetryConfig] = None,
    stream: Optional[StreamConfig] = None,
    api_key: Optional[str] = None,
    transport: Optional[httpx.BaseTransport] = None,
) -> LLMClient:
    return CLIENTS[model.protocol](model, retry=retry, stream=stream, api_key=api_key, transport=transport)
