from __future__ import annotations

from abc import ABC
from dataclasses import dataclass
import os
import shlex
import shutil
import threading

from agentcrew.domain.models import TaskKind

_LIMIT_PATTERNS = (
    'hit your limit',
    'usage limit',
    'rate limit',
    'ratelimitexceeded',
    'resource_exhausted',
    'model_capacity_exhausted',
    'no capacity available',
    'quota exceeded',
    'insufficient_quota',
    'session limit reached',
)

DEFAULT_QUERY_TIMEOUT_SECONDS = 600
DEFAULT_EXECUTE_TIMEOUT_SECONDS = 600


@dataclass(frozen=True)
class ProviderError:
    error: bool
    message: str = ''


NO_ERROR = ProviderError(error=False)


def split_command(command: str | None) -> list[str]:
    text = str(command or '').strip()
    if not text:
        return []
    try:
        return [str(v) for v in shlex.split(text, posix=(os.name != 'nt')) if str(v).strip()]
    except ValueError:
        return [v for v in text.split() if v]


def has_model_flag(argv: list[str]) -> bool:
    for token in argv:
        text = str(token).strip()
        if text in {'--model', '-m'}:
            return True
        if text.startswith('--model='):
            return True
    return False


def find_limit_pattern(text: str) -> str | None:
    lowered = str(text or '').strip().lower()
    if not lowered:
        return None
    for pattern in _LIMIT_PATTERNS:
        if pattern in lowered:
            return pattern
    return None


def find_stream_limit_pattern(stderr: str, stdout: str) -> str | None:
    # Each stream is scanned on its own.
    return find_limit_pattern(stderr) or find_limit_pattern(stdout)


class ProviderAdapter(ABC):
    name = 'generic'
    executable = ''
    query_args: tuple[str, ...] = ()
    execute_args: tuple[str, ...] = ()
    prompt_in_args = False
    execute_timeout_seconds = DEFAULT_EXECUTE_TIMEOUT_SECONDS
    query_timeout_seconds = DEFAULT_QUERY_TIMEOUT_SECONDS

    def __init__(self, *, provider: str | None = None, command: str | None = None):
        if provider:
            self.name = str(provider).strip().lower()
        self.command_argv = split_command(command) or split_command(self.executable or self.name)
        self._path_lock = threading.Lock()
        self._cached_path: str | None = None
        self._path_resolved = False

    @property
    def cli_command(self) -> str:
        return self.command_argv[0] if self.command_argv else self.name

    def not_installed_message(self) -> str:
        return f'{self.name} CLI is not installed.'

    def default_args(self, kind: TaskKind) -> list[str]:
        if kind == TaskKind.EXECUTE:
            return list(self.execute_args)
        return list(self.query_args)

    def default_timeout_seconds(self, kind: TaskKind) -> float:
        if kind == TaskKind.EXECUTE:
            return float(self.execute_timeout_seconds)
        return float(self.query_timeout_seconds)

    def build_argv(
        self,
        *,
        kind: TaskKind,
        prompt: str,
        extra_args: list[str] | tuple[str, ...] | None = None,
        model: str | None = None,
    ) -> list[str]:
        argv = list(self.command_argv)
        argv.extend(str(v) for v in (extra_args or []) if str(v).strip())
        argv.extend(self.default_args(kind))
        model_text = str(model or '').strip()
        if model_text and not has_model_flag(argv):
            argv.append(f'--model={model_text}')
        if self.prompt_in_args:
            argv.append(prompt)
        return argv

    def stdin_payload(self, prompt: str) -> str | None:
        if self.prompt_in_args:
            return None
        return prompt

    def classify_error(self, stderr: str, stdout: str) -> ProviderError:
        """Only treat stderr as an error when nothing reached stdout, unless a quota phrase shows up in either stream."""
        pattern = find_stream_limit_pattern(stderr, stdout)
        if pattern:
            return ProviderError(
                error=True,
                message=(
                    f'{self.name} usage limit reached ({pattern}). '
                    'Try again later or use a fallback provider.'
                ),
            )
        if stderr.strip() and not stdout.strip():
            return ProviderError(error=True, message=stderr.strip())
        return NO_ERROR

    def normalize_output(self, output: str) -> str:
        return str(output or '').strip()

    def resolve_path(self) -> str | None:
        with self._path_lock:
            if self._path_resolved:
                return self._cached_path
            resolved = shutil.which(self.cli_command)
            self._cached_path = resolved or None
            self._path_resolved = True
            return self._cached_path

    def is_available(self) -> bool:
        return bool(self.resolve_path())


class GenericProviderAdapter(ProviderAdapter):
    pass


__all__ = [
    'DEFAULT_EXECUTE_TIMEOUT_SECONDS',
    'DEFAULT_QUERY_TIMEOUT_SECONDS',
    'GenericProviderAdapter',
    'NO_ERROR',
    'ProviderAdapter',
    'ProviderError',
    'find_limit_pattern',
    'find_stream_limit_pattern',
    'has_model_flag',
    'split_command',
]
