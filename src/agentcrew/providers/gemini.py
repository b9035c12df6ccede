from __future__ import annotations

from agentcrew.providers.base import ProviderAdapter


class GeminiAdapter(ProviderAdapter):
    name = 'gemini'
    executable = 'gemini'
    query_args = ()
    execute_args = ()
    execute_timeout_seconds = 1200

    def not_installed_message(self) -> str:
        return 'Gemini CLI is not installed.'


__all__ = ['GeminiAdapter']
