from __future__ import annotations

from dataclasses import dataclass
import os
from pathlib import Path


@dataclass(frozen=True)
class Settings:
    log_dir: Path
    service_name: str
    otel_endpoint: str | None
    dry_run: bool
    claude_command: str
    gemini_command: str
    copilot_command: str
    query_timeout_seconds: int
    execute_timeout_seconds: int
    max_concurrency: int
    dispatch_timeout_seconds: int
    fail_fast: bool
    max_output_chars: int
    recent_task_limit: int
    agents_file: Path | None = None

    @property
    def provider_commands(self) -> dict[str, str]:
        return {
            'claude': self.claude_command,
            'gemini': self.gemini_command,
            'copilot': self.copilot_command,
        }


def _env_int(name: str, default: int, *, minimum: int = 1) -> int:
    raw = (os.getenv(name, '') or '').strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, value)


def _env_flag(name: str) -> bool:
    return os.getenv(name, '').strip().lower() in {'1', 'true', 'yes', 'on'}


def load_settings() -> Settings:
    log_dir = Path(os.getenv('AGENTCREW_LOG_DIR', '.agentcrew/logs')).resolve()
    service_name = os.getenv('AGENTCREW_SERVICE_NAME', 'agentcrew')
    otel_endpoint = os.getenv('AGENTCREW_OTEL_EXPORTER_OTLP_ENDPOINT', '').strip() or None
    dry_run = _env_flag('AGENTCREW_DRY_RUN')
    claude_command = os.getenv('AGENTCREW_CLAUDE_COMMAND', 'claude')
    gemini_command = os.getenv('AGENTCREW_GEMINI_COMMAND', 'gemini')
    copilot_command = os.getenv('AGENTCREW_COPILOT_COMMAND', 'copilot')
    query_timeout_seconds = _env_int('AGENTCREW_QUERY_TIMEOUT_SECONDS', 600, minimum=1)
    # 0 keeps each provider's own execute default (gemini runs longer).
    execute_timeout_seconds = _env_int('AGENTCREW_EXECUTE_TIMEOUT_SECONDS', 0, minimum=0)
    max_concurrency = _env_int('AGENTCREW_MAX_CONCURRENCY', 5, minimum=1)
    dispatch_timeout_seconds = _env_int('AGENTCREW_DISPATCH_TIMEOUT_SECONDS', 300, minimum=1)
    fail_fast = _env_flag('AGENTCREW_FAIL_FAST')
    max_output_chars = _env_int('AGENTCREW_MAX_OUTPUT_CHARS', 4_000_000, minimum=1024)
    recent_task_limit = _env_int('AGENTCREW_RECENT_TASK_LIMIT', 20, minimum=1)
    agents_raw = os.getenv('AGENTCREW_AGENTS_FILE', '').strip()
    agents_file = Path(agents_raw).resolve() if agents_raw else None
    return Settings(
        log_dir=log_dir,
        service_name=service_name,
        otel_endpoint=otel_endpoint,
        dry_run=dry_run,
        claude_command=claude_command,
        gemini_command=gemini_command,
        copilot_command=copilot_command,
        query_timeout_seconds=query_timeout_seconds,
        execute_timeout_seconds=execute_timeout_seconds,
        max_concurrency=max_concurrency,
        dispatch_timeout_seconds=dispatch_timeout_seconds,
        fail_fast=fail_fast,
        max_output_chars=max_output_chars,
        recent_task_limit=recent_task_limit,
        agents_file=agents_file,
    )
