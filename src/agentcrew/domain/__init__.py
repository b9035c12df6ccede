from agentcrew.domain.models import (
    FallbackProviders,
    FixedProvider,
    ProviderChoice,
    ProviderResult,
    TaskKind,
    TaskStatus,
)

__all__ = [
    'FallbackProviders',
    'FixedProvider',
    'ProviderChoice',
    'ProviderResult',
    'TaskKind',
    'TaskStatus',
]
