from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Union


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class TaskKind(str, Enum):
    QUERY = 'query'
    EXECUTE = 'execute'


class TaskStatus(str, Enum):
    RUNNING = 'running'
    COMPLETED = 'completed'
    FAILED = 'failed'


class LogLevel(str, Enum):
    INFO = 'info'
    WARN = 'warn'
    ERROR = 'error'


def normalize_task_kind(value: str | TaskKind | None) -> TaskKind:
    if isinstance(value, TaskKind):
        return value
    text = str(value or '').strip().lower()
    if text in {'execute', 'exec', 'task'}:
        return TaskKind.EXECUTE
    return TaskKind.QUERY


def normalize_log_level(value: str | LogLevel | None) -> LogLevel:
    if isinstance(value, LogLevel):
        return value
    text = str(value or '').strip().lower()
    if text in {'warn', 'warning'}:
        return LogLevel.WARN
    if text in {'error', 'err', 'fatal'}:
        return LogLevel.ERROR
    return LogLevel.INFO


@dataclass(frozen=True)
class FixedProvider:
    name: str


@dataclass(frozen=True)
class FallbackProviders:
    names: tuple[str, ...] = ()


ProviderChoice = Union[FixedProvider, FallbackProviders]


def describe_provider_choice(choice: ProviderChoice) -> str:
    if isinstance(choice, FixedProvider):
        return choice.name
    return '|'.join(choice.names) or 'auto'


@dataclass(frozen=True)
class ProviderResult:
    """Outcome of one provider invocation. Failures are values, never exceptions."""

    content: str
    provider: str
    command: str
    success: bool
    task_id: str
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            'content': self.content,
            'provider': self.provider,
            'command': self.command,
            'success': self.success,
            'error': self.error,
            'task_id': self.task_id,
        }


@dataclass(frozen=True)
class LogEntry:
    timestamp: datetime
    level: LogLevel
    message: str

    def format(self) -> str:
        return f'[{self.timestamp.isoformat()}] {self.level.value.upper()}: {self.message}'


@dataclass(frozen=True)
class TaskDescriptor:
    kind: TaskKind
    provider: ProviderChoice
    prompt: str
    agent_id: str | None = None


@dataclass
class TaskRecord:
    task_id: str
    kind: TaskKind
    provider: ProviderChoice
    prompt: str
    agent_id: str | None
    created_at: datetime
    logs: list[LogEntry] = field(default_factory=list)
    status: TaskStatus = TaskStatus.RUNNING
    result: Any = None
    success: bool | None = None
    completed_at: datetime | None = None

    def snapshot(self) -> dict[str, Any]:
        return {
            'task_id': self.task_id,
            'kind': self.kind.value,
            'provider': describe_provider_choice(self.provider),
            'agent_id': self.agent_id,
            'status': self.status.value,
            'success': self.success,
            'created_at': self.created_at.isoformat(),
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
            'log_count': len(self.logs),
        }


@dataclass(frozen=True)
class DispatchRequest:
    agent_id: str
    instruction: str
    kind: TaskKind = TaskKind.QUERY
    context: str | None = None
    working_directory: str | None = None
    model: str | None = None


@dataclass(frozen=True)
class DispatchOutcome:
    agent_id: str
    success: bool
    duration_seconds: float
    task_id: str | None = None
    result: ProviderResult | None = None
    error: str | None = None

    @property
    def provider(self) -> str:
        if self.result is not None:
            return self.result.provider
        return 'unknown'

    def to_dict(self) -> dict[str, Any]:
        return {
            'agent_id': self.agent_id,
            'success': self.success,
            'duration_seconds': round(self.duration_seconds, 4),
            'task_id': self.task_id,
            'provider': self.provider,
            'result': self.result.to_dict() if self.result is not None else None,
            'error': self.error,
        }


@dataclass(frozen=True)
class DispatchConfig:
    max_concurrency: int = 5
    timeout_seconds: float = 300.0
    fail_fast: bool = False


@dataclass(frozen=True)
class BatchSummary:
    total: int
    successful: int
    failed: int
    total_duration_seconds: float
    average_duration_seconds: float

    def to_dict(self) -> dict[str, Any]:
        return {
            'total': self.total,
            'successful': self.successful,
            'failed': self.failed,
            'total_duration_seconds': round(self.total_duration_seconds, 4),
            'average_duration_seconds': round(self.average_duration_seconds, 4),
        }


@dataclass(frozen=True)
class DispatchReport:
    outcomes: list[DispatchOutcome]
    summary: BatchSummary


@dataclass(frozen=True)
class PerformanceMetrics:
    total_agents: int
    success_rate: float
    average_seconds: float
    fastest_seconds: float
    slowest_seconds: float
    successful_agents: list[str] = field(default_factory=list)
    failed_agents: list[dict[str, str | None]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            'total_agents': self.total_agents,
            'success_rate': round(self.success_rate, 2),
            'average_seconds': round(self.average_seconds, 4),
            'fastest_seconds': round(self.fastest_seconds, 4),
            'slowest_seconds': round(self.slowest_seconds, 4),
            'successful_agents': list(self.successful_agents),
            'failed_agents': [dict(item) for item in self.failed_agents],
        }


@dataclass(frozen=True)
class ConversationMessage:
    sender: str
    text: str
    timestamp: datetime
    is_assistant: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ConversationThread:
    thread_id: str
    messages: tuple[ConversationMessage, ...] = ()
    platform: str = 'cli'


@dataclass(frozen=True)
class CompressionOptions:
    max_tokens: int = 2000
    max_messages: int = 20
    preserve_recent_count: int = 5
    preserve_important: bool = True
    exclude_current: bool = False


__all__ = [
    'BatchSummary',
    'CompressionOptions',
    'ConversationMessage',
    'ConversationThread',
    'DispatchConfig',
    'DispatchOutcome',
    'DispatchReport',
    'DispatchRequest',
    'FallbackProviders',
    'FixedProvider',
    'LogEntry',
    'LogLevel',
    'PerformanceMetrics',
    'ProviderChoice',
    'ProviderResult',
    'TaskDescriptor',
    'TaskKind',
    'TaskRecord',
    'TaskStatus',
    'describe_provider_choice',
    'normalize_log_level',
    'normalize_task_kind',
    'utc_now',
]
