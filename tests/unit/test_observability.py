from __future__ import annotations

import json
import logging
import sys

from agentcrew.observability import (
    _JsonFormatter,
    configure_observability,
    get_logger,
    get_provider,
    get_task_id,
    get_tracer,
    set_task_context,
)


def test_configure_observability_no_endpoint_is_noop():
    configure_observability(service_name='agentcrew', otlp_endpoint=None)


def test_configure_observability_is_idempotent_for_json_handler(monkeypatch):
    import agentcrew.observability as observability

    root = logging.getLogger('agentcrew')
    original_handlers = list(root.handlers)
    original_level = root.level

    try:
        for handler in list(root.handlers):
            if isinstance(handler, logging.StreamHandler) and isinstance(
                getattr(handler, 'formatter', None), _JsonFormatter
            ):
                root.removeHandler(handler)

        monkeypatch.setattr(observability, '_configured', False)

        configure_observability(service_name='agentcrew')
        configure_observability(service_name='agentcrew')

        json_handlers = [
            handler
            for handler in root.handlers
            if isinstance(handler, logging.StreamHandler)
            and isinstance(getattr(handler, 'formatter', None), _JsonFormatter)
        ]
        assert len(json_handlers) == 1
    finally:
        for handler in list(root.handlers):
            root.removeHandler(handler)
        for handler in original_handlers:
            root.addHandler(handler)
        root.setLevel(original_level)


def test_configure_observability_installs_tracer_provider_once(monkeypatch):
    import agentcrew.observability as observability

    installed = []
    monkeypatch.setattr(observability, '_configured_otlp_endpoint', None)
    monkeypatch.setattr(observability.trace, 'set_tracer_provider', installed.append)

    configure_observability(service_name='agentcrew', otlp_endpoint='http://127.0.0.1:4318/v1/traces')
    configure_observability(service_name='agentcrew', otlp_endpoint='http://127.0.0.1:4318/v1/traces')

    assert len(installed) == 1
    assert installed[0].resource.attributes['service.name'] == 'agentcrew'
    installed[0].shutdown()


def test_tracer_spans_work_without_exporter():
    tracer = get_tracer('agentcrew.test')
    with tracer.start_as_current_span('noop', attributes={'k': 'v'}) as span:
        span.set_attribute('done', True)


def test_set_and_get_task_context():
    set_task_context(task_id='task-abc', provider='gemini')
    assert get_task_id() == 'task-abc'
    assert get_provider() == 'gemini'
    set_task_context(task_id=None, provider=None)
    assert get_task_id() is None
    assert get_provider() is None


def test_json_formatter_includes_correlation_fields():
    fmt = _JsonFormatter(service_name='agentcrew')
    set_task_context(task_id='tid-1', provider='claude')
    try:
        logger = get_logger('agentcrew.test_fmt')
        record = logger.makeRecord(
            'agentcrew.test_fmt', logging.INFO, 'test.py', 1,
            'hello %s', ('world',), None,
        )
        parsed = json.loads(fmt.format(record))
        assert parsed['msg'] == 'hello world'
        assert parsed['task_id'] == 'tid-1'
        assert parsed['provider'] == 'claude'
        assert parsed['service'] == 'agentcrew'
        assert parsed['level'] == 'INFO'
    finally:
        set_task_context(task_id=None, provider=None)


def test_json_formatter_omits_missing_correlation():
    fmt = _JsonFormatter()
    set_task_context(task_id=None, provider=None)
    logger = get_logger('agentcrew.test_fmt2')
    record = logger.makeRecord(
        'agentcrew.test_fmt2', logging.WARNING, 'test.py', 1,
        'no context', (), None,
    )
    parsed = json.loads(fmt.format(record))
    assert 'task_id' not in parsed
    assert 'provider' not in parsed
    assert 'service' not in parsed
    assert parsed['level'] == 'WARNING'


def test_json_formatter_includes_exception():
    fmt = _JsonFormatter()
    logger = get_logger('agentcrew.test_exc')
    try:
        raise ValueError('boom')
    except ValueError:
        exc_info = sys.exc_info()
    record = logger.makeRecord(
        'agentcrew.test_exc', logging.ERROR, 'test.py', 1,
        'failed', (), exc_info,
    )
    parsed = json.loads(fmt.format(record))
    assert 'boom' in parsed['exc']
