from __future__ import annotations

import threading
import time

import pytest

from agentcrew.agents import AgentDescriptor
from agentcrew.dispatcher import ParallelDispatcher
from agentcrew.domain.models import (
    DispatchConfig,
    DispatchOutcome,
    DispatchRequest,
    FallbackProviders,
    FixedProvider,
    ProviderResult,
    TaskKind,
)
from agentcrew.task_registry import TaskRegistry


class FakeRunner:
    def __init__(self, *, delays=None, failures=(), raises=(), available=None):
        self.delays = dict(delays or {})
        self.failures = set(failures)
        self.raises = set(raises)
        self.available = set(available) if available is not None else {'claude', 'gemini', 'copilot'}
        self.calls: list[dict] = []
        self.availability_checks: list[str] = []
        self._lock = threading.Lock()
        self.active = 0
        self.peak_active = 0

    def is_available(self, provider: str) -> bool:
        self.availability_checks.append(provider)
        return provider in self.available

    def run(self, prompt, *, provider, kind=TaskKind.QUERY, options=None):
        with self._lock:
            self.calls.append({'prompt': prompt, 'provider': provider, 'kind': kind, 'options': options})
            self.active += 1
            self.peak_active = max(self.peak_active, self.active)
        try:
            time.sleep(self.delays.get(prompt, 0.01))
            if prompt in self.raises:
                raise RuntimeError(f'exploded on {prompt}')
            task_id = options.task_id if options else 'task'
            if prompt in self.failures:
                return ProviderResult(
                    content='', provider=provider, command=provider, success=False,
                    task_id=task_id, error=f'{provider} CLI failed: {prompt}',
                )
            return ProviderResult(
                content=f'answer:{prompt}', provider=provider, command=provider, success=True, task_id=task_id,
            )
        finally:
            with self._lock:
                self.active -= 1


def _dispatcher(runner: FakeRunner, **kwargs) -> ParallelDispatcher:
    return ParallelDispatcher(runner=runner, registry=TaskRegistry(), **kwargs)


def _requests(*instructions: str, agent_id: str = 'claude') -> list[DispatchRequest]:
    return [DispatchRequest(agent_id=agent_id, instruction=text) for text in instructions]


def test_dispatch_preserves_submission_order():
    runner = FakeRunner(delays={'slow': 0.2, 'fast': 0.01})
    report = _dispatcher(runner).dispatch(
        [
            DispatchRequest(agent_id='claude', instruction='slow'),
            DispatchRequest(agent_id='gemini', instruction='fast'),
        ],
        DispatchConfig(max_concurrency=2),
    )
    assert [o.agent_id for o in report.outcomes] == ['claude', 'gemini']
    assert [o.result.content for o in report.outcomes] == ['answer:slow', 'answer:fast']
    assert [o.provider for o in report.outcomes] == ['claude', 'gemini']


def test_dispatch_respects_max_concurrency():
    runner = FakeRunner(delays={str(i): 0.05 for i in range(7)})
    report = _dispatcher(runner).dispatch(_requests(*[str(i) for i in range(7)]), DispatchConfig(max_concurrency=3))
    assert report.summary.total == 7
    assert report.summary.successful == 7
    assert runner.peak_active <= 3


def test_dispatch_summary_counts_add_up():
    runner = FakeRunner(failures={'b'})
    report = _dispatcher(runner).dispatch(_requests('a', 'b', 'c'), DispatchConfig(max_concurrency=2))
    summary = report.summary
    assert summary.total == len(report.outcomes) == 3
    assert summary.successful + summary.failed == summary.total
    assert summary.failed == 1
    expected_average = sum(o.duration_seconds for o in report.outcomes) / 3
    assert summary.average_duration_seconds == pytest.approx(expected_average)
    failed = report.outcomes[1]
    assert failed.success is False
    assert failed.error == 'claude CLI failed: b'


def test_fail_fast_skips_later_chunks_but_keeps_current_chunk():
    runner = FakeRunner(failures={'1'})
    report = _dispatcher(runner).dispatch(
        _requests('0', '1', '2', '3', '4'),
        DispatchConfig(max_concurrency=2, fail_fast=True),
    )
    assert len(report.outcomes) == 2
    assert [o.success for o in report.outcomes] == [True, False]
    assert sorted(call['prompt'] for call in runner.calls) == ['0', '1']


def test_without_fail_fast_every_request_runs():
    runner = FakeRunner(failures={'1'})
    report = _dispatcher(runner).dispatch(_requests('0', '1', '2', '3', '4'), DispatchConfig(max_concurrency=2))
    assert len(report.outcomes) == 5
    assert report.summary.failed == 1


def test_timeout_produces_failure_with_configured_duration():
    runner = FakeRunner(delays={'slow': 1.0})
    started = time.monotonic()
    report = _dispatcher(runner, worker_grace_seconds=0).dispatch(
        _requests('slow', 'quick'),
        DispatchConfig(max_concurrency=2, timeout_seconds=0.2),
    )
    elapsed = time.monotonic() - started
    slow, quick = report.outcomes
    assert slow.success is False
    assert slow.error == 'Timeout after 0.2s'
    assert slow.duration_seconds == pytest.approx(0.2)
    assert quick.success is True
    assert elapsed < 0.9


def test_timed_out_workers_settle_before_next_chunk():
    runner = FakeRunner(delays={'slow': 0.4, 'quick': 0.01})
    report = _dispatcher(runner, worker_grace_seconds=2.0).dispatch(
        _requests('slow', 'quick'),
        DispatchConfig(max_concurrency=1, timeout_seconds=0.1),
    )
    assert report.outcomes[0].error == 'Timeout after 0.1s'
    assert report.outcomes[1].success is True
    assert runner.peak_active == 1
    assert runner.active == 0


def test_lingering_worker_is_logged_after_grace(caplog):
    runner = FakeRunner(delays={'slow': 0.5})
    with caplog.at_level('WARNING', logger='agentcrew.dispatcher'):
        _dispatcher(runner, worker_grace_seconds=0.05).dispatch(
            _requests('slow'), DispatchConfig(timeout_seconds=0.05),
        )
    assert any('dispatch_workers_lingering count=1' in r.getMessage() for r in caplog.records)


def test_timeout_budget_is_forwarded_to_runner():
    runner = FakeRunner()
    _dispatcher(runner).dispatch(_requests('x'), DispatchConfig(timeout_seconds=42))
    assert runner.calls[0]['options'].timeout_seconds == 42


def test_runner_exception_becomes_failed_outcome():
    runner = FakeRunner(raises={'bad'})
    report = _dispatcher(runner).dispatch(_requests('bad', 'good'), DispatchConfig(max_concurrency=2))
    assert report.outcomes[0].success is False
    assert report.outcomes[0].error == 'exploded on bad'
    assert report.outcomes[1].success is True


def test_unknown_agent_is_reported_without_running():
    runner = FakeRunner()
    dispatcher = _dispatcher(runner)
    report = dispatcher.dispatch([DispatchRequest(agent_id='ghost', instruction='hi')])
    outcome = report.outcomes[0]
    assert outcome.success is False
    assert outcome.error == 'Agent not found: ghost'
    assert outcome.duration_seconds == 0.0
    assert runner.calls == []
    assert dispatcher.registry.get_task(outcome.task_id)['status'] == 'failed'


def test_each_outcome_completes_its_task_once_with_logs():
    runner = FakeRunner()
    dispatcher = _dispatcher(runner)
    report = dispatcher.dispatch(_requests('a'))
    task = dispatcher.registry.get_task(report.outcomes[0].task_id)
    messages = [entry['message'] for entry in task['logs']]
    assert messages[0] == 'Starting query operation'
    assert messages[1] == 'Using provider: claude'
    assert messages[-1].startswith('Completed successfully in ')
    assert task['status'] == 'completed'
    assert runner.calls[0]['options'].task_id == task['task_id']


def test_context_is_framed_into_prompt():
    runner = FakeRunner()
    dispatcher = _dispatcher(runner)
    dispatcher.dispatch(
        [
            DispatchRequest(agent_id='claude', instruction='what now?', context='repo is python'),
            DispatchRequest(agent_id='claude', instruction='refactor', kind=TaskKind.EXECUTE, context='tests pass'),
        ],
        DispatchConfig(max_concurrency=1),
    )
    prompts = [call['prompt'] for call in runner.calls]
    assert prompts == [
        'Context: repo is python\n\nQuery: what now?',
        'Context: tests pass\n\nTask: refactor',
    ]


def test_query_and_execute_parallel_force_kind():
    runner = FakeRunner()
    dispatcher = _dispatcher(runner)
    dispatcher.execute_parallel(_requests('a'))
    dispatcher.query_parallel([DispatchRequest(agent_id='claude', instruction='b', kind=TaskKind.EXECUTE)])
    assert [call['kind'] for call in runner.calls] == [TaskKind.EXECUTE, TaskKind.QUERY]


def test_agent_descriptor_options_and_model_reach_runner(tmp_path):
    runner = FakeRunner()
    agent = AgentDescriptor(
        agent_id='reviewer',
        provider=FixedProvider('gemini'),
        working_directory=tmp_path,
        options=('--yolo',),
        model='gemini-2.5-pro',
    )
    _dispatcher(runner, agents=[agent]).dispatch([DispatchRequest(agent_id='reviewer', instruction='look')])
    call = runner.calls[0]
    assert call['provider'] == 'gemini'
    assert call['options'].extra_args == ('--yolo',)
    assert call['options'].model == 'gemini-2.5-pro'
    assert call['options'].working_directory == tmp_path


def test_resolve_provider_fixed_choice_skips_availability_check():
    runner = FakeRunner(available=set())
    assert _dispatcher(runner).resolve_provider(FixedProvider('copilot')) == 'copilot'
    assert runner.availability_checks == []


def test_resolve_provider_fallback_checks_in_order():
    runner = FakeRunner(available={'copilot'})
    choice = FallbackProviders(('gemini', 'copilot', 'claude'))
    assert _dispatcher(runner).resolve_provider(choice) == 'copilot'
    assert runner.availability_checks == ['gemini', 'copilot']


def test_resolve_provider_with_model_uses_first_listed():
    runner = FakeRunner(available=set())
    choice = FallbackProviders(('gemini', 'claude'))
    assert _dispatcher(runner).resolve_provider(choice, model='flash') == 'gemini'
    assert runner.availability_checks == []


def test_resolve_provider_defaults_to_claude_when_nothing_available():
    runner = FakeRunner(available=set())
    assert _dispatcher(runner).resolve_provider(FallbackProviders(('gemini', 'copilot'))) == 'claude'
    assert _dispatcher(runner).resolve_provider(FallbackProviders(())) == 'claude'


def test_empty_dispatch_returns_empty_report():
    report = _dispatcher(FakeRunner()).dispatch([])
    assert report.outcomes == []
    assert report.summary.total == 0
    assert report.summary.average_duration_seconds == 0.0


def test_performance_metrics():
    outcomes = [
        DispatchOutcome(agent_id='a', success=True, duration_seconds=1.0),
        DispatchOutcome(agent_id='b', success=False, duration_seconds=3.0, error='boom'),
    ]
    metrics = ParallelDispatcher.performance_metrics(outcomes)
    assert metrics.total_agents == 2
    assert metrics.success_rate == 50.0
    assert metrics.average_seconds == 2.0
    assert metrics.fastest_seconds == 1.0
    assert metrics.slowest_seconds == 3.0
    assert metrics.successful_agents == ['a']
    assert metrics.failed_agents == [{'agent_id': 'b', 'error': 'boom'}]
    assert ParallelDispatcher.performance_metrics([]).total_agents == 0
