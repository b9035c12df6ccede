from __future__ import annotations

from datetime import datetime, timezone
import logging
from pathlib import Path
from typing import Literal

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, Field

from agentcrew.compression import ConversationCompressor
from agentcrew.conversation import ConversationHistoryFormatter
from agentcrew.dispatcher import ParallelDispatcher
from agentcrew.domain.models import (
    CompressionOptions,
    ConversationMessage,
    ConversationThread,
    DispatchConfig,
    DispatchReport,
    DispatchRequest,
    TaskKind,
    describe_provider_choice,
)
from agentcrew.providers.runner import ProviderRunner
from agentcrew.storage.task_logs import TaskLogStore
from agentcrew.task_registry import TaskRegistry

_log = logging.getLogger(__name__)


class AgentRequestModel(BaseModel):
    agent_id: str = Field(min_length=1, max_length=128)
    instruction: str = Field(min_length=1)
    kind: Literal['query', 'execute'] = Field(default='query')
    context: str | None = Field(default=None)
    project_path: str | None = Field(default=None, max_length=400)
    model: str | None = Field(default=None, max_length=128)


class SingleAgentRequest(BaseModel):
    agent_id: str = Field(min_length=1, max_length=128)
    instruction: str = Field(min_length=1)
    context: str | None = Field(default=None)
    project_path: str | None = Field(default=None, max_length=400)
    model: str | None = Field(default=None, max_length=128)
    timeout_seconds: float | None = Field(default=None, gt=0)


class DispatchBody(BaseModel):
    requests: list[AgentRequestModel] = Field(min_length=1)
    max_concurrency: int | None = Field(default=None, ge=1, le=64)
    timeout_seconds: float | None = Field(default=None, gt=0)
    fail_fast: bool | None = Field(default=None)


class MessageModel(BaseModel):
    sender: str = Field(default='user')
    text: str
    timestamp: datetime | None = Field(default=None)
    is_assistant: bool = Field(default=False)
    metadata: dict = Field(default_factory=dict)


class CompressBody(BaseModel):
    thread_id: str = Field(default='api')
    messages: list[MessageModel] = Field(default_factory=list)
    max_tokens: int = Field(default=2000, ge=0)
    max_messages: int = Field(default=20, ge=0)
    preserve_recent_count: int = Field(default=5, ge=0)
    preserve_important: bool = Field(default=True)
    exclude_current: bool = Field(default=False)


class HistoryBody(BaseModel):
    thread_id: str = Field(default='api')
    messages: list[MessageModel] = Field(default_factory=list)
    limit: int = Field(default=20, ge=0)
    max_context_length: int = Field(default=4000, ge=0)
    exclude_current: bool = Field(default=True)
    sanitize: bool = Field(default=False)
    compress: bool = Field(default=True)


class AppState:
    def __init__(self, *, dispatcher: ParallelDispatcher, runner: ProviderRunner, compressor: ConversationCompressor):
        self.dispatcher = dispatcher
        self.runner = runner
        self.compressor = compressor


def _thread_from_messages(thread_id: str, messages: list[MessageModel]) -> ConversationThread:
    now = datetime.now(timezone.utc)
    return ConversationThread(
        thread_id=thread_id,
        messages=tuple(
            ConversationMessage(
                sender=m.sender,
                text=m.text,
                timestamp=m.timestamp or now,
                is_assistant=m.is_assistant,
                metadata=dict(m.metadata),
            )
            for m in messages
        ),
    )


def _report_payload(report: DispatchReport) -> dict:
    return {
        'outcomes': [o.to_dict() for o in report.outcomes],
        'summary': report.summary.to_dict(),
        'metrics': ParallelDispatcher.performance_metrics(report.outcomes).to_dict(),
    }


def create_app(
    *,
    dispatcher: ParallelDispatcher | None = None,
    runner: ProviderRunner | None = None,
    compressor: ConversationCompressor | None = None,
    log_dir: Path | None = None,
) -> FastAPI:
    if runner is None:
        runner = ProviderRunner(log_store=TaskLogStore(log_dir or (Path.cwd() / '.agentcrew' / 'logs')))
    if dispatcher is None:
        registry = TaskRegistry(log_store=runner.log_store)
        dispatcher = ParallelDispatcher(runner=runner, registry=registry)

    app = FastAPI(title='agentcrew api', version='0.3.0')
    app.state.container = AppState(
        dispatcher=dispatcher,
        runner=runner,
        compressor=compressor or ConversationCompressor(),
    )

    def _field_from_loc(loc: tuple | list | None) -> str | None:
        if not loc:
            return None
        parts = list(loc)
        if parts and str(parts[0]) in {'body', 'query', 'path', 'header', 'cookie'}:
            parts = parts[1:]
        field = ''
        for part in parts:
            if isinstance(part, int):
                field += f'[{part}]'
            elif field:
                field += f'.{part}'
            else:
                field = str(part)
        return field or None

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation_error(request: Request, exc: RequestValidationError):  # noqa: ARG001
        details = exc.errors()
        payload: dict[str, str] = {'code': 'validation_error', 'message': 'invalid request body'}
        if details:
            first = details[0]
            payload['message'] = str(first.get('msg') or payload['message'])
            field = _field_from_loc(first.get('loc'))
            if field:
                payload['field'] = field
        return JSONResponse(status_code=400, content=payload)

    def get_state() -> AppState:
        return app.state.container

    def _run_single(body: SingleAgentRequest, kind: TaskKind, state: AppState) -> dict:
        defaults = state.dispatcher.defaults
        config = DispatchConfig(
            max_concurrency=1,
            timeout_seconds=body.timeout_seconds or defaults.timeout_seconds,
            fail_fast=False,
        )
        report = state.dispatcher.dispatch(
            [
                DispatchRequest(
                    agent_id=body.agent_id,
                    instruction=body.instruction,
                    kind=kind,
                    context=body.context,
                    working_directory=body.project_path,
                    model=body.model,
                )
            ],
            config,
        )
        return report.outcomes[0].to_dict()

    @app.get('/healthz')
    def healthz() -> dict[str, str]:
        return {'status': 'ok'}

    @app.get('/api/providers')
    def providers(state: AppState = Depends(get_state)) -> dict:
        report = state.runner.check_providers()
        available = [name for name, item in report.items() if item['available']]
        return {
            'providers': report,
            'available': available,
            'checked_at': datetime.now(timezone.utc).isoformat(),
        }

    @app.get('/api/agents')
    def agents(state: AppState = Depends(get_state)) -> dict:
        return {
            'agents': [
                {
                    'agent_id': agent.agent_id,
                    'provider': describe_provider_choice(agent.provider),
                    'model': agent.model,
                    'options': list(agent.options),
                    'working_directory': str(agent.working_directory) if agent.working_directory else None,
                }
                for agent in state.dispatcher.agents.values()
            ]
        }

    @app.post('/api/query')
    def query(body: SingleAgentRequest, state: AppState = Depends(get_state)) -> dict:
        return _run_single(body, TaskKind.QUERY, state)

    @app.post('/api/execute')
    def execute(body: SingleAgentRequest, state: AppState = Depends(get_state)) -> dict:
        return _run_single(body, TaskKind.EXECUTE, state)

    @app.post('/api/dispatch')
    def dispatch(body: DispatchBody, state: AppState = Depends(get_state)) -> dict:
        defaults = state.dispatcher.defaults
        config = DispatchConfig(
            max_concurrency=body.max_concurrency or defaults.max_concurrency,
            timeout_seconds=body.timeout_seconds or defaults.timeout_seconds,
            fail_fast=defaults.fail_fast if body.fail_fast is None else body.fail_fast,
        )
        requests = [
            DispatchRequest(
                agent_id=item.agent_id,
                instruction=item.instruction,
                kind=TaskKind(item.kind),
                context=item.context,
                working_directory=item.project_path,
                model=item.model,
            )
            for item in body.requests
        ]
        _log.info('api_dispatch requests=%d max_concurrency=%d', len(requests), config.max_concurrency)
        return _report_payload(state.dispatcher.dispatch(requests, config))

    @app.get('/api/tasks')
    def list_tasks(limit: int = 20, state: AppState = Depends(get_state)) -> dict:
        registry = state.dispatcher.registry
        return {
            'tasks': registry.list_tasks(limit=limit),
            'digest': registry.get_logs(),
        }

    @app.get('/api/tasks/{task_id}/logs', response_class=PlainTextResponse)
    def task_logs(task_id: str, state: AppState = Depends(get_state)) -> str:
        registry = state.dispatcher.registry
        if registry.get_task(task_id) is None and not state.runner.log_store.exists(task_id):
            raise HTTPException(status_code=404, detail=f'Task log not found: {task_id}')
        return registry.get_logs(task_id)

    @app.get('/api/tasks/{task_id}/output', response_class=PlainTextResponse)
    def task_output(task_id: str, state: AppState = Depends(get_state)) -> str:
        content = state.runner.log_store.read(task_id)
        if content is None:
            raise HTTPException(status_code=404, detail=f'Task log not found: {task_id}')
        return content

    @app.post('/api/compress')
    def compress(body: CompressBody, state: AppState = Depends(get_state)) -> dict:
        thread = _thread_from_messages(body.thread_id, body.messages)
        context = state.compressor.compress(
            thread,
            CompressionOptions(
                max_tokens=body.max_tokens,
                max_messages=body.max_messages,
                preserve_recent_count=body.preserve_recent_count,
                preserve_important=body.preserve_important,
                exclude_current=body.exclude_current,
            ),
        )
        return {'thread_id': body.thread_id, 'context': context, 'chars': len(context)}

    @app.post('/api/history')
    def history(body: HistoryBody, state: AppState = Depends(get_state)) -> dict:
        formatter = ConversationHistoryFormatter(
            compressor=state.compressor if body.compress else None,
            sanitize=body.sanitize,
        )
        context = formatter.format_for_ai(
            _thread_from_messages(body.thread_id, body.messages),
            limit=body.limit,
            max_context_length=body.max_context_length,
            exclude_current=body.exclude_current,
        )
        return {'thread_id': body.thread_id, 'context': context, 'chars': len(context)}

    return app
