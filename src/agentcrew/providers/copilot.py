from __future__ import annotations

from agentcrew.providers.base import ProviderAdapter


class CopilotAdapter(ProviderAdapter):
    name = 'copilot'
    executable = 'copilot'
    query_args = ('-p',)
    execute_args = ('-p',)
    # copilot rejects prompts on stdin; the instruction travels as the last argument.
    prompt_in_args = True

    def not_installed_message(self) -> str:
        return (
            'GitHub Copilot CLI is not installed. Please refer to '
            'https://docs.github.com/copilot/how-tos/set-up/install-copilot-cli to install it.'
        )


__all__ = ['CopilotAdapter']
