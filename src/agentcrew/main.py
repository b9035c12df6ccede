from __future__ import annotations

import logging

from agentcrew.agents import load_agent_catalog
from agentcrew.api import create_app
from agentcrew.compression import ConversationCompressor
from agentcrew.config import load_settings
from agentcrew.dispatcher import ParallelDispatcher
from agentcrew.domain.models import DispatchConfig
from agentcrew.observability import configure_observability
from agentcrew.providers.runner import ProviderRunner
from agentcrew.storage.task_logs import TaskLogStore
from agentcrew.task_registry import TaskRegistry

_log = logging.getLogger(__name__)


def build_app():
    settings = load_settings()
    configure_observability(service_name=settings.service_name, otlp_endpoint=settings.otel_endpoint)
    log_store = TaskLogStore(settings.log_dir)

    runner = ProviderRunner(
        log_store=log_store,
        command_overrides=settings.provider_commands,
        query_timeout_seconds=settings.query_timeout_seconds,
        execute_timeout_seconds=settings.execute_timeout_seconds or None,
        max_output_chars=settings.max_output_chars,
        dry_run=settings.dry_run,
    )
    agents = load_agent_catalog(settings.agents_file) if settings.agents_file else None
    registry = TaskRegistry(log_store=log_store, recent_limit=settings.recent_task_limit)
    dispatcher = ParallelDispatcher(
        runner=runner,
        registry=registry,
        agents=agents,
        defaults=DispatchConfig(
            max_concurrency=settings.max_concurrency,
            timeout_seconds=float(settings.dispatch_timeout_seconds),
            fail_fast=settings.fail_fast,
        ),
    )
    _log.info(
        'app_bootstrap log_dir=%s dry_run=%s max_concurrency=%d agents=%d',
        settings.log_dir, settings.dry_run, settings.max_concurrency, len(dispatcher.agents),
    )
    return create_app(dispatcher=dispatcher, runner=runner, compressor=ConversationCompressor())


app = build_app()
