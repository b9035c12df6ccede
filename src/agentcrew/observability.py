from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar
from threading import Lock

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

_task_id_var: ContextVar[str | None] = ContextVar('task_id', default=None)
_provider_var: ContextVar[str | None] = ContextVar('provider', default=None)


def set_task_context(task_id: str | None = None, provider: str | None = None) -> None:
    """Set correlation context for structured log output."""
    _task_id_var.set(task_id)
    _provider_var.set(provider)


def get_task_id() -> str | None:
    return _task_id_var.get(None)


def get_provider() -> str | None:
    return _provider_var.get(None)


class _JsonFormatter(logging.Formatter):
    """Emit one JSON object per log line with correlation fields."""

    def __init__(self, *, service_name: str | None = None):
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        payload: dict = {
            'ts': self.formatTime(record, self.datefmt),
            'level': record.levelname,
            'logger': record.name,
            'msg': record.getMessage(),
        }
        if self.service_name:
            payload['service'] = self.service_name
        task_id = getattr(record, 'task_id', None) or _task_id_var.get(None)
        if task_id:
            payload['task_id'] = task_id
        provider = getattr(record, 'provider', None) or _provider_var.get(None)
        if provider:
            payload['provider'] = provider
        if record.exc_info and record.exc_info[1] is not None:
            payload['exc'] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


_configured = False
_configured_otlp_endpoint: str | None = None
_configure_lock = Lock()


def get_logger(name: str) -> logging.Logger:
    """Return a logger. Safe to call before configure_observability."""
    return logging.getLogger(name)


def get_tracer(name: str):
    """Tracer from the global provider; spans are no-ops until an exporter is configured."""
    return trace.get_tracer(name)


def configure_observability(
    *,
    service_name: str,
    otlp_endpoint: str | None = None,
    level: int = logging.INFO,
) -> None:
    global _configured
    global _configured_otlp_endpoint
    with _configure_lock:
        if not _configured:
            root = logging.getLogger('agentcrew')
            has_json_handler = any(
                isinstance(handler, logging.StreamHandler)
                and isinstance(getattr(handler, 'formatter', None), _JsonFormatter)
                for handler in root.handlers
            )
            if not has_json_handler:
                handler = logging.StreamHandler(sys.stderr)
                handler.setFormatter(_JsonFormatter(service_name=service_name))
                root.addHandler(handler)
            root.setLevel(level)
            _configured = True

    endpoint = str(otlp_endpoint or '').strip()
    if not endpoint:
        return
    with _configure_lock:
        if _configured_otlp_endpoint == endpoint:
            return
        provider = TracerProvider(resource=Resource.create({'service.name': service_name}))
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
        trace.set_tracer_provider(provider)
        _configured_otlp_endpoint = endpoint
    logging.getLogger('agentcrew.observability').info('tracing_enabled endpoint=%s', endpoint)


__all__ = [
    'configure_observability',
    'get_logger',
    'get_provider',
    'get_task_id',
    'get_tracer',
    'set_task_context',
]
