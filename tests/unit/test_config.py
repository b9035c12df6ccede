from __future__ import annotations

from pathlib import Path

from agentcrew.config import load_settings


def _clear(monkeypatch):
    for name in (
        'AGENTCREW_LOG_DIR',
        'AGENTCREW_SERVICE_NAME',
        'AGENTCREW_OTEL_EXPORTER_OTLP_ENDPOINT',
        'AGENTCREW_DRY_RUN',
        'AGENTCREW_CLAUDE_COMMAND',
        'AGENTCREW_GEMINI_COMMAND',
        'AGENTCREW_COPILOT_COMMAND',
        'AGENTCREW_QUERY_TIMEOUT_SECONDS',
        'AGENTCREW_EXECUTE_TIMEOUT_SECONDS',
        'AGENTCREW_MAX_CONCURRENCY',
        'AGENTCREW_DISPATCH_TIMEOUT_SECONDS',
        'AGENTCREW_FAIL_FAST',
        'AGENTCREW_MAX_OUTPUT_CHARS',
        'AGENTCREW_RECENT_TASK_LIMIT',
        'AGENTCREW_AGENTS_FILE',
    ):
        monkeypatch.delenv(name, raising=False)


def test_load_settings_defaults(monkeypatch):
    _clear(monkeypatch)
    settings = load_settings()
    assert settings.log_dir == Path('.agentcrew/logs').resolve()
    assert settings.service_name == 'agentcrew'
    assert settings.otel_endpoint is None
    assert settings.dry_run is False
    assert settings.provider_commands == {'claude': 'claude', 'gemini': 'gemini', 'copilot': 'copilot'}
    assert settings.query_timeout_seconds == 600
    assert settings.execute_timeout_seconds == 0
    assert settings.max_concurrency == 5
    assert settings.dispatch_timeout_seconds == 300
    assert settings.fail_fast is False
    assert settings.max_output_chars == 4_000_000
    assert settings.recent_task_limit == 20
    assert settings.agents_file is None


def test_load_settings_reads_environment(monkeypatch, tmp_path: Path):
    _clear(monkeypatch)
    monkeypatch.setenv('AGENTCREW_LOG_DIR', str(tmp_path / 'logs'))
    monkeypatch.setenv('AGENTCREW_DRY_RUN', 'yes')
    monkeypatch.setenv('AGENTCREW_GEMINI_COMMAND', 'gemini --yolo')
    monkeypatch.setenv('AGENTCREW_MAX_CONCURRENCY', '8')
    monkeypatch.setenv('AGENTCREW_FAIL_FAST', 'true')
    monkeypatch.setenv('AGENTCREW_EXECUTE_TIMEOUT_SECONDS', '900')
    monkeypatch.setenv('AGENTCREW_OTEL_EXPORTER_OTLP_ENDPOINT', ' http://collector:4318/v1/traces ')
    monkeypatch.setenv('AGENTCREW_AGENTS_FILE', str(tmp_path / 'agents.json'))

    settings = load_settings()
    assert settings.log_dir == (tmp_path / 'logs').resolve()
    assert settings.dry_run is True
    assert settings.gemini_command == 'gemini --yolo'
    assert settings.max_concurrency == 8
    assert settings.fail_fast is True
    assert settings.execute_timeout_seconds == 900
    assert settings.otel_endpoint == 'http://collector:4318/v1/traces'
    assert settings.agents_file == (tmp_path / 'agents.json').resolve()


def test_load_settings_invalid_or_low_numbers_fall_back_or_clamp(monkeypatch):
    _clear(monkeypatch)
    monkeypatch.setenv('AGENTCREW_MAX_CONCURRENCY', 'lots')
    monkeypatch.setenv('AGENTCREW_DISPATCH_TIMEOUT_SECONDS', '0')
    monkeypatch.setenv('AGENTCREW_MAX_OUTPUT_CHARS', '10')
    settings = load_settings()
    assert settings.max_concurrency == 5
    assert settings.dispatch_timeout_seconds == 1
    assert settings.max_output_chars == 1024
