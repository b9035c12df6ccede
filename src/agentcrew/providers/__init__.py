from __future__ import annotations

from agentcrew.providers.base import (
    GenericProviderAdapter,
    ProviderAdapter,
    ProviderError,
    find_limit_pattern,
    find_stream_limit_pattern,
    has_model_flag,
    split_command,
)
from agentcrew.providers.claude import ClaudeAdapter
from agentcrew.providers.copilot import CopilotAdapter
from agentcrew.providers.factory import DEFAULT_PROVIDER_ORDER, ProviderFactory
from agentcrew.providers.gemini import GeminiAdapter
from agentcrew.providers.runner import ProviderRunner, RunOptions

__all__ = [
    'ClaudeAdapter',
    'CopilotAdapter',
    'DEFAULT_PROVIDER_ORDER',
    'GeminiAdapter',
    'GenericProviderAdapter',
    'ProviderAdapter',
    'ProviderError',
    'ProviderFactory',
    'ProviderRunner',
    'RunOptions',
    'find_limit_pattern',
    'find_stream_limit_pattern',
    'has_model_flag',
    'split_command',
]
