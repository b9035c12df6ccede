from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor, wait
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, replace
import time
from typing import Iterable, Mapping, Protocol, Sequence

from agentcrew.agents import AgentDescriptor, build_agent_catalog
from agentcrew.domain.models import (
    BatchSummary,
    DispatchConfig,
    DispatchOutcome,
    DispatchReport,
    DispatchRequest,
    FallbackProviders,
    FixedProvider,
    PerformanceMetrics,
    ProviderChoice,
    ProviderResult,
    TaskDescriptor,
    TaskKind,
)
from agentcrew.observability import get_logger, get_tracer, set_task_context
from agentcrew.providers.factory import DEFAULT_PROVIDER_ORDER
from agentcrew.providers.runner import RunOptions
from agentcrew.task_registry import TaskRegistry

_log = get_logger('agentcrew.dispatcher')
_tracer = get_tracer('agentcrew.dispatcher')

# How long a chunk waits for timed-out workers after their outcomes are settled.
DEFAULT_WORKER_GRACE_SECONDS = 5.0


class ProviderExecutor(Protocol):
    def run(
        self,
        prompt: str,
        *,
        provider: str,
        kind: TaskKind = TaskKind.QUERY,
        options: RunOptions | None = None,
    ) -> ProviderResult:
        ...

    def is_available(self, provider: str) -> bool:
        ...


@dataclass(frozen=True)
class _PreparedRequest:
    request: DispatchRequest
    task_id: str
    provider: str | None = None
    prompt: str = ''
    options: RunOptions | None = None
    error: str | None = None


class ParallelDispatcher:
    def __init__(
        self,
        *,
        runner: ProviderExecutor,
        registry: TaskRegistry,
        agents: Mapping[str, AgentDescriptor] | Iterable[AgentDescriptor] | None = None,
        defaults: DispatchConfig | None = None,
        worker_grace_seconds: float = DEFAULT_WORKER_GRACE_SECONDS,
    ):
        self.runner = runner
        self.registry = registry
        self.agents = build_agent_catalog(agents)
        self.defaults = defaults or DispatchConfig()
        self.worker_grace_seconds = max(0.0, float(worker_grace_seconds))

    def query_parallel(self, requests: Sequence[DispatchRequest], config: DispatchConfig | None = None) -> DispatchReport:
        return self.dispatch([replace(r, kind=TaskKind.QUERY) for r in requests], config)

    def execute_parallel(self, requests: Sequence[DispatchRequest], config: DispatchConfig | None = None) -> DispatchReport:
        return self.dispatch([replace(r, kind=TaskKind.EXECUTE) for r in requests], config)

    def dispatch(self, requests: Sequence[DispatchRequest], config: DispatchConfig | None = None) -> DispatchReport:
        cfg = config or self.defaults
        max_concurrency = max(1, int(cfg.max_concurrency))
        timeout_seconds = max(0.01, float(cfg.timeout_seconds))
        started = time.monotonic()
        items = list(requests)
        _log.info(
            'dispatch_started total=%d max_concurrency=%d timeout_seconds=%s fail_fast=%s',
            len(items), max_concurrency, timeout_seconds, cfg.fail_fast,
        )

        outcomes: list[DispatchOutcome] = []
        chunks = self._chunk(items, max_concurrency)
        with _tracer.start_as_current_span(
            'agentcrew.dispatch',
            attributes={'dispatch.total': len(items), 'dispatch.max_concurrency': max_concurrency},
        ) as span:
            for index, chunk in enumerate(chunks, start=1):
                _log.info('dispatch_chunk_started chunk=%d/%d size=%d', index, len(chunks), len(chunk))
                chunk_outcomes = self._run_chunk(chunk, timeout_seconds=timeout_seconds)
                outcomes.extend(chunk_outcomes)
                if cfg.fail_fast and any(not o.success for o in chunk_outcomes):
                    failed = next(o for o in chunk_outcomes if not o.success)
                    _log.warning(
                        'dispatch_fail_fast agent=%s chunk=%d skipped_chunks=%d',
                        failed.agent_id, index, len(chunks) - index,
                    )
                    break
            span.set_attribute('dispatch.successful', sum(1 for o in outcomes if o.success))

        summary = self._summarize(outcomes, total_duration_seconds=time.monotonic() - started)
        _log.info(
            'dispatch_finished successful=%d total=%d duration_seconds=%.3f',
            summary.successful, summary.total, summary.total_duration_seconds,
        )
        return DispatchReport(outcomes=outcomes, summary=summary)

    def resolve_provider(self, choice: ProviderChoice, *, model: str | None = None) -> str:
        if isinstance(choice, FixedProvider):
            return choice.name
        # A fixed model only makes sense for the first listed provider.
        if str(model or '').strip() and choice.names:
            return choice.names[0]
        for name in choice.names or DEFAULT_PROVIDER_ORDER:
            if self.runner.is_available(name):
                return name
        _log.warning('provider_fallback_exhausted candidates=%s', ','.join(choice.names or DEFAULT_PROVIDER_ORDER))
        return DEFAULT_PROVIDER_ORDER[0]

    @staticmethod
    def performance_metrics(outcomes: Sequence[DispatchOutcome]) -> PerformanceMetrics:
        if not outcomes:
            return PerformanceMetrics(
                total_agents=0,
                success_rate=0.0,
                average_seconds=0.0,
                fastest_seconds=0.0,
                slowest_seconds=0.0,
            )
        durations = [o.duration_seconds for o in outcomes]
        successful = [o for o in outcomes if o.success]
        return PerformanceMetrics(
            total_agents=len(outcomes),
            success_rate=(len(successful) / len(outcomes)) * 100,
            average_seconds=sum(durations) / len(durations),
            fastest_seconds=min(durations),
            slowest_seconds=max(durations),
            successful_agents=[o.agent_id for o in successful],
            failed_agents=[{'agent_id': o.agent_id, 'error': o.error} for o in outcomes if not o.success],
        )

    def _run_chunk(self, chunk: list[DispatchRequest], *, timeout_seconds: float) -> list[DispatchOutcome]:
        prepared = [self._prepare(request) for request in chunk]
        pool = ThreadPoolExecutor(max_workers=len(chunk), thread_name_prefix='agentcrew-dispatch')
        futures: list[Future | None] = []
        try:
            started = time.monotonic()
            futures = [
                pool.submit(self._invoke, item, timeout_seconds) if item.error is None else None
                for item in prepared
            ]
            deadline = started + timeout_seconds
            return [
                self._settle(item, future, started=started, deadline=deadline, timeout_seconds=timeout_seconds)
                for item, future in zip(prepared, futures)
            ]
        finally:
            self._drain(futures)
            pool.shutdown(wait=False, cancel_futures=True)

    def _drain(self, futures: list[Future | None]) -> None:
        # The runner kills timed-out processes itself; give their workers a bounded
        # window to return so the next chunk starts on an idle pool.
        pending = [f for f in futures if f is not None and not f.done()]
        if not pending:
            return
        _, still_running = wait(pending, timeout=self.worker_grace_seconds)
        if still_running:
            _log.warning(
                'dispatch_workers_lingering count=%d grace_seconds=%s',
                len(still_running), self.worker_grace_seconds,
            )

    def _settle(
        self,
        item: _PreparedRequest,
        future: Future | None,
        *,
        started: float,
        deadline: float,
        timeout_seconds: float,
    ) -> DispatchOutcome:
        if future is None:
            return self._finish(item, success=False, duration=0.0, error=item.error)
        try:
            result, finished = future.result(timeout=max(0.0, deadline - time.monotonic()))
        except FutureTimeoutError:
            return self._finish(
                item,
                success=False,
                duration=timeout_seconds,
                error=f'Timeout after {timeout_seconds:g}s',
            )
        except Exception as exc:
            duration = min(timeout_seconds, time.monotonic() - started)
            return self._finish(item, success=False, duration=duration, error=str(exc) or 'Invocation rejected')
        return self._finish(
            item,
            success=bool(result.success),
            duration=max(0.0, finished - started),
            result=result,
            error=result.error,
        )

    def _prepare(self, request: DispatchRequest) -> _PreparedRequest:
        agent = self.agents.get(request.agent_id)
        choice = agent.provider if agent is not None else FallbackProviders(())
        task_id = self.registry.create_task(
            TaskDescriptor(kind=request.kind, provider=choice, prompt=request.instruction, agent_id=request.agent_id)
        )
        self.registry.add_log(task_id, level='info', message=f'Starting {request.kind.value} operation')
        if agent is None:
            return _PreparedRequest(request=request, task_id=task_id, error=f'Agent not found: {request.agent_id}')
        if not str(request.instruction or '').strip():
            return _PreparedRequest(request=request, task_id=task_id, error='Either query or task must be provided')
        try:
            model = request.model or agent.model
            provider = self.resolve_provider(agent.provider, model=model)
        except Exception as exc:
            _log.exception('provider_resolution_failed agent=%s task_id=%s', request.agent_id, task_id)
            return _PreparedRequest(request=request, task_id=task_id, error=f'Provider resolution failed: {exc}')
        self.registry.add_log(task_id, level='info', message=f'Using provider: {provider}')
        working_directory = request.working_directory or agent.working_directory
        options = RunOptions(
            working_directory=working_directory,
            extra_args=tuple(agent.options),
            model=model,
            task_id=task_id,
        )
        return _PreparedRequest(
            request=request,
            task_id=task_id,
            provider=provider,
            prompt=self._frame_instruction(request),
            options=options,
        )

    def _invoke(self, item: _PreparedRequest, timeout_seconds: float) -> tuple[ProviderResult, float]:
        set_task_context(task_id=item.task_id, provider=item.provider)
        try:
            # The runner gets the same budget so a lost race still kills the subprocess.
            options = replace(item.options or RunOptions(task_id=item.task_id), timeout_seconds=timeout_seconds)
            with _tracer.start_as_current_span(
                'agentcrew.agent_run',
                attributes={
                    'agent.id': item.request.agent_id,
                    'agent.provider': item.provider or '',
                    'task.id': item.task_id,
                    'task.kind': item.request.kind.value,
                },
            ) as span:
                result = self.runner.run(item.prompt, provider=item.provider or '', kind=item.request.kind, options=options)
                span.set_attribute('agent.success', bool(result.success))
            return result, time.monotonic()
        finally:
            set_task_context(task_id=None, provider=None)

    def _finish(
        self,
        item: _PreparedRequest,
        *,
        success: bool,
        duration: float,
        result: ProviderResult | None = None,
        error: str | None = None,
    ) -> DispatchOutcome:
        duration = max(0.0, float(duration))
        payload = result if result is not None else {'error': error}
        self.registry.complete_task(item.task_id, payload, success)
        if success:
            message = f'Completed successfully in {duration:.2f}s'
        else:
            message = f'Failed after {duration:.2f}s: {error or "Unknown error"}'
        self.registry.add_log(item.task_id, level='info' if success else 'error', message=message)
        _log.info(
            'dispatch_outcome agent=%s task_id=%s success=%s duration_seconds=%.3f',
            item.request.agent_id, item.task_id, success, duration,
        )
        return DispatchOutcome(
            agent_id=item.request.agent_id,
            success=success,
            duration_seconds=duration,
            task_id=item.task_id,
            result=result,
            error=None if success else (error or 'Unknown error'),
        )

    @staticmethod
    def _frame_instruction(request: DispatchRequest) -> str:
        context = str(request.context or '').strip()
        if not context:
            return request.instruction
        label = 'Query' if request.kind == TaskKind.QUERY else 'Task'
        return f'Context: {context}\n\n{label}: {request.instruction}'

    @staticmethod
    def _chunk(items: list[DispatchRequest], size: int) -> list[list[DispatchRequest]]:
        return [items[i:i + size] for i in range(0, len(items), size)]

    @staticmethod
    def _summarize(outcomes: list[DispatchOutcome], *, total_duration_seconds: float) -> BatchSummary:
        successful = sum(1 for o in outcomes if o.success)
        average = sum(o.duration_seconds for o in outcomes) / len(outcomes) if outcomes else 0.0
        return BatchSummary(
            total=len(outcomes),
            successful=successful,
            failed=len(outcomes) - successful,
            total_duration_seconds=max(0.0, total_duration_seconds),
            average_duration_seconds=average,
        )


__all__ = ['ParallelDispatcher', 'ProviderExecutor']
