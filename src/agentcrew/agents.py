from __future__ import annotations

from dataclasses import dataclass
import json
from pathlib import Path
import re
from typing import Any, Iterable, Mapping

from agentcrew.domain.models import FallbackProviders, FixedProvider, ProviderChoice
from agentcrew.observability import get_logger
from agentcrew.providers.factory import DEFAULT_PROVIDER_ORDER

_log = get_logger('agentcrew.agents')

_MENTION_RE = re.compile(r'^@?([A-Za-z_][A-Za-z0-9_-]*)(?::([A-Za-z0-9._-]+))?$')


@dataclass(frozen=True)
class AgentDescriptor:
    agent_id: str
    provider: ProviderChoice
    working_directory: Path | None = None
    options: tuple[str, ...] = ()
    model: str | None = None


def parse_provider_choice(value: str | Iterable[str] | None) -> ProviderChoice:
    if value is None:
        return FixedProvider(DEFAULT_PROVIDER_ORDER[0])
    if isinstance(value, str):
        text = value.strip().lower()
        if not text:
            return FixedProvider(DEFAULT_PROVIDER_ORDER[0])
        return FixedProvider(text)
    names: list[str] = []
    for item in value:
        text = str(item or '').strip().lower()
        if not text:
            raise ValueError('provider list entries cannot be empty')
        if text not in names:
            names.append(text)
    return FallbackProviders(tuple(names))


def parse_agent_mention(value: str) -> tuple[str, str | None]:
    """Split ``agent`` or ``agent:model`` (an optional leading ``@`` is allowed)."""
    raw = str(value or '').strip()
    match = _MENTION_RE.match(raw)
    if not match:
        raise ValueError(f'invalid agent reference: {raw!r} (expected agent or agent:model)')
    return match.group(1), match.group(2)


def builtin_agents() -> dict[str, AgentDescriptor]:
    return {
        provider: AgentDescriptor(agent_id=provider, provider=FixedProvider(provider))
        for provider in DEFAULT_PROVIDER_ORDER
    }


def agent_from_mapping(agent_id: str, entry: Mapping[str, Any] | str | list | None) -> AgentDescriptor:
    """Build one descriptor from a config entry.

    A bare string or list is shorthand for ``{"provider": ...}``.
    """
    key = str(agent_id or '').strip()
    if not key:
        raise ValueError('agent id cannot be empty')
    if entry is None or isinstance(entry, (str, list)):
        entry = {'provider': entry}
    if not isinstance(entry, Mapping):
        raise ValueError(f'agent {key!r} must be an object, a provider name or a provider list')
    working_directory = str(entry.get('working_directory') or '').strip()
    options = entry.get('options') or ()
    if isinstance(options, str):
        options = (options,)
    model = str(entry.get('model') or '').strip()
    return AgentDescriptor(
        agent_id=key,
        provider=parse_provider_choice(entry.get('provider')),
        working_directory=Path(working_directory) if working_directory else None,
        options=tuple(str(v) for v in options if str(v).strip()),
        model=model or None,
    )


def load_agent_catalog(path: Path | str) -> list[AgentDescriptor]:
    """Read ``{"agent_id": {...}}`` from a JSON file."""
    source = Path(path)
    try:
        data = json.loads(source.read_text(encoding='utf-8'))
    except OSError as exc:
        raise ValueError(f'cannot read agent catalog {source}: {exc}') from exc
    except json.JSONDecodeError as exc:
        raise ValueError(f'agent catalog {source} is not valid JSON: {exc}') from exc
    if not isinstance(data, dict):
        raise ValueError(f'agent catalog {source} must map agent ids to agent definitions')
    agents = [agent_from_mapping(agent_id, entry) for agent_id, entry in data.items()]
    _log.info('agent_catalog_loaded path=%s agents=%s', source, ','.join(a.agent_id for a in agents))
    return agents


def build_agent_catalog(agents: Mapping[str, AgentDescriptor] | Iterable[AgentDescriptor] | None) -> dict[str, AgentDescriptor]:
    catalog = builtin_agents()
    if agents is None:
        return catalog
    items = agents.values() if isinstance(agents, Mapping) else agents
    for agent in items:
        catalog[agent.agent_id] = agent
    return catalog


__all__ = [
    'AgentDescriptor',
    'agent_from_mapping',
    'build_agent_catalog',
    'builtin_agents',
    'load_agent_catalog',
    'parse_agent_mention',
    'parse_provider_choice',
]
