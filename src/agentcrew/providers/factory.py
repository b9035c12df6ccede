from __future__ import annotations

from agentcrew.providers.base import GenericProviderAdapter, ProviderAdapter
from agentcrew.providers.claude import ClaudeAdapter
from agentcrew.providers.copilot import CopilotAdapter
from agentcrew.providers.gemini import GeminiAdapter

DEFAULT_PROVIDER_ORDER = ('claude', 'gemini', 'copilot')


class ProviderFactory:
    _ADAPTERS: dict[str, type[ProviderAdapter]] = {
        'claude': ClaudeAdapter,
        'gemini': GeminiAdapter,
        'copilot': CopilotAdapter,
    }

    @classmethod
    def supported(cls) -> tuple[str, ...]:
        return tuple(cls._ADAPTERS)

    @classmethod
    def create(cls, *, provider: str, command: str | None = None) -> ProviderAdapter:
        key = str(provider or '').strip().lower()
        adapter_cls = cls._ADAPTERS.get(key)
        if adapter_cls is None:
            return GenericProviderAdapter(provider=key, command=command)
        return adapter_cls(command=command)


__all__ = ['DEFAULT_PROVIDER_ORDER', 'ProviderFactory']
