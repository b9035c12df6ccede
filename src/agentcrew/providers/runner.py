from __future__ import annotations

from dataclasses import dataclass, field
import json
import os
from pathlib import Path
from queue import Empty, Queue
import shlex
import shutil
import signal
import subprocess
import time
from threading import Thread
from uuid import uuid4

from agentcrew.domain.models import ProviderResult, TaskKind
from agentcrew.observability import get_logger
from agentcrew.providers.base import ProviderAdapter
from agentcrew.providers.factory import ProviderFactory
from agentcrew.storage.task_logs import TaskLogStore

_log = get_logger('agentcrew.providers.runner')

DEFAULT_MAX_OUTPUT_CHARS = 4_000_000
_PROMPT_PREVIEW_CHARS = 500
_KILL_WAIT_SECONDS = 5.0


@dataclass(frozen=True)
class RunOptions:
    working_directory: Path | str | None = None
    timeout_seconds: float | None = None
    extra_args: tuple[str, ...] = ()
    model: str | None = None
    task_id: str | None = None


@dataclass
class _BoundedBuffer:
    limit: int
    chunks: list[str] = field(default_factory=list)
    size: int = 0
    truncated: bool = False

    def append(self, chunk: str) -> bool:
        if self.truncated:
            return False
        room = self.limit - self.size
        if len(chunk) > room:
            if room > 0:
                self.chunks.append(chunk[:room])
                self.size += room
            self.truncated = True
            return False
        self.chunks.append(chunk)
        self.size += len(chunk)
        return True

    def value(self) -> str:
        return ''.join(self.chunks)


@dataclass(frozen=True)
class _ProcessOutcome:
    returncode: int | None
    stdout: str
    stderr: str
    timed_out: bool
    truncated: bool


class ProviderRunner:
    """Runs one provider CLI to completion or timeout and returns a ProviderResult."""

    def __init__(
        self,
        *,
        log_store: TaskLogStore,
        command_overrides: dict[str, str] | None = None,
        working_directory: Path | None = None,
        query_timeout_seconds: float | None = None,
        execute_timeout_seconds: float | None = None,
        max_output_chars: int = DEFAULT_MAX_OUTPUT_CHARS,
        dry_run: bool = False,
    ):
        self.log_store = log_store
        overrides = {
            str(k or '').strip().lower(): str(v or '').strip()
            for k, v in (command_overrides or {}).items()
            if str(k or '').strip()
        }
        providers = list(ProviderFactory.supported())
        providers.extend(p for p in overrides if p not in providers)
        self.adapters: dict[str, ProviderAdapter] = {
            provider: ProviderFactory.create(provider=provider, command=overrides.get(provider) or None)
            for provider in providers
        }
        self.working_directory = Path(working_directory) if working_directory else Path.cwd()
        self.query_timeout_seconds = float(query_timeout_seconds) if query_timeout_seconds else None
        self.execute_timeout_seconds = float(execute_timeout_seconds) if execute_timeout_seconds else None
        self.max_output_chars = max(1, int(max_output_chars))
        self.dry_run = dry_run

    @property
    def providers(self) -> tuple[str, ...]:
        return tuple(self.adapters)

    def adapter_for(self, provider: str) -> ProviderAdapter | None:
        return self.adapters.get(str(provider or '').strip().lower())

    def is_available(self, provider: str) -> bool:
        adapter = self.adapter_for(provider)
        if adapter is None:
            return False
        if self.dry_run:
            return True
        available = adapter.is_available()
        if available:
            _log.info('provider_found provider=%s path=%s', adapter.name, adapter.resolve_path())
        else:
            _log.warning('provider_missing provider=%s command=%s', adapter.name, adapter.cli_command)
        return available

    def check_providers(self) -> dict[str, dict]:
        report: dict[str, dict] = {}
        for provider, adapter in self.adapters.items():
            available = self.is_available(provider)
            report[provider] = {
                'available': available,
                'command': adapter.cli_command,
                'path': adapter.resolve_path() if available and not self.dry_run else None,
                'hint': None if available else adapter.not_installed_message(),
            }
        return report

    def query(self, prompt: str, *, provider: str, options: RunOptions | None = None) -> ProviderResult:
        return self.run(prompt, provider=provider, kind=TaskKind.QUERY, options=options)

    def execute(self, prompt: str, *, provider: str, options: RunOptions | None = None) -> ProviderResult:
        return self.run(prompt, provider=provider, kind=TaskKind.EXECUTE, options=options)

    def run(
        self,
        prompt: str,
        *,
        provider: str,
        kind: TaskKind = TaskKind.QUERY,
        options: RunOptions | None = None,
    ) -> ProviderResult:
        opts = options or RunOptions()
        provider_key = str(provider or '').strip().lower()
        task_id = str(opts.task_id or '').strip() or self.new_task_id(provider_key or 'provider', kind)
        adapter = self.adapter_for(provider_key)
        if adapter is None:
            return self._failure(
                task_id=task_id,
                provider=provider_key,
                command='',
                error=f'unsupported provider: {provider_key or "<empty>"}',
            )

        command = f'{adapter.cli_command} (error)'
        try:
            argv = adapter.build_argv(kind=kind, prompt=prompt, extra_args=opts.extra_args, model=opts.model)
            command = self._format_command(argv)
            timeout_seconds = self._timeout_for(adapter, kind, opts.timeout_seconds)
            self._open_task_log(task_id, adapter=adapter, kind=kind, command=command, argv=argv, prompt=prompt, opts=opts)

            if self.dry_run:
                self.log_store.append(task_id, 'INFO', f'{adapter.name} dry-run, process not started')
                return ProviderResult(
                    content=f'[dry-run provider={adapter.name} kind={kind.value}] {prompt[:200]}',
                    provider=adapter.name,
                    command=command,
                    success=True,
                    task_id=task_id,
                )

            _log.info(
                'provider_run_started task_id=%s provider=%s kind=%s prompt_chars=%d timeout_seconds=%s',
                task_id, adapter.name, kind.value, len(prompt), timeout_seconds,
            )
            cwd = Path(opts.working_directory) if opts.working_directory else self.working_directory
            try:
                outcome = self._run_process(
                    argv=self._resolve_executable(argv),
                    stdin_text=adapter.stdin_payload(prompt),
                    cwd=cwd,
                    timeout_seconds=timeout_seconds,
                    task_id=task_id,
                )
            except FileNotFoundError as exc:
                self.log_store.append(task_id, 'ERROR', f'Process error: {exc}')
                return self._failure(
                    task_id=task_id,
                    provider=adapter.name,
                    command=command,
                    error=adapter.not_installed_message(),
                )
            except OSError as exc:
                self.log_store.append(task_id, 'ERROR', f'Process error: {exc}')
                return self._failure(task_id=task_id, provider=adapter.name, command=command, error=str(exc))

            return self._build_result(adapter=adapter, kind=kind, task_id=task_id, command=command,
                                      outcome=outcome, timeout_seconds=timeout_seconds)
        except Exception as exc:
            _log.exception('provider_run_error task_id=%s provider=%s', task_id, adapter.name)
            self.log_store.append(task_id, 'ERROR', f'{adapter.name} execution failed: {exc}')
            return self._failure(
                task_id=task_id,
                provider=adapter.name,
                command=command,
                error=str(exc) or 'Unknown error occurred',
            )

    @staticmethod
    def new_task_id(provider: str, kind: TaskKind) -> str:
        return f'{provider}-{kind.value}-{uuid4().hex[:12]}'

    def _timeout_for(self, adapter: ProviderAdapter, kind: TaskKind, requested: float | None) -> float:
        if requested is not None and float(requested) > 0:
            return float(requested)
        if kind == TaskKind.EXECUTE and self.execute_timeout_seconds:
            return self.execute_timeout_seconds
        if kind == TaskKind.QUERY and self.query_timeout_seconds:
            return self.query_timeout_seconds
        return adapter.default_timeout_seconds(kind)

    def _open_task_log(
        self,
        task_id: str,
        *,
        adapter: ProviderAdapter,
        kind: TaskKind,
        command: str,
        argv: list[str],
        prompt: str,
        opts: RunOptions,
    ) -> None:
        self.log_store.create(task_id, provider=adapter.name, command=command)
        if kind == TaskKind.EXECUTE:
            self.log_store.append(task_id, 'INFO', f'Additional Args: {json.dumps(list(opts.extra_args))}')
            self.log_store.append(task_id, 'INFO', f'Execute Args: {json.dumps(adapter.default_args(kind))}')
            self.log_store.append(task_id, 'INFO', f'Final Args: {json.dumps(argv[1:])}')
        self.log_store.append(task_id, 'INFO', f'Starting {adapter.name} {kind.value} mode')
        self.log_store.append(task_id, 'INFO', f'Prompt length: {len(prompt)} characters')
        preview = prompt
        if kind == TaskKind.EXECUTE and len(prompt) > _PROMPT_PREVIEW_CHARS:
            preview = prompt[:_PROMPT_PREVIEW_CHARS] + '...[truncated]'
        self.log_store.append(task_id, 'INFO', f'Prompt content:\n{preview}')

    def _build_result(
        self,
        *,
        adapter: ProviderAdapter,
        kind: TaskKind,
        task_id: str,
        command: str,
        outcome: _ProcessOutcome,
        timeout_seconds: float,
    ) -> ProviderResult:
        label = f'{adapter.name} CLI' if kind == TaskKind.QUERY else f'{adapter.name} CLI execute'
        if outcome.timed_out:
            message = f'{label} timeout after {timeout_seconds:g}s'
            self.log_store.append(task_id, 'ERROR', message)
            _log.warning('provider_run_timeout task_id=%s provider=%s timeout_seconds=%s',
                         task_id, adapter.name, timeout_seconds)
            return self._failure(task_id=task_id, provider=adapter.name, command=command, error=message)

        self.log_store.append(task_id, 'INFO', f'Process closed with exit code: {outcome.returncode}')
        if outcome.stderr:
            _log.warning('provider_stderr task_id=%s provider=%s stderr=%s',
                         task_id, adapter.name, outcome.stderr[:2000])

        verdict = adapter.classify_error(outcome.stderr, outcome.stdout)
        if outcome.returncode != 0 or verdict.error:
            detail = verdict.message or outcome.stderr.strip() or f'Exit code {outcome.returncode}'
            message = f'{label} failed: {detail}'
            self.log_store.append(task_id, 'ERROR', message)
            _log.info('provider_run_failed task_id=%s provider=%s returncode=%s',
                      task_id, adapter.name, outcome.returncode)
            return self._failure(task_id=task_id, provider=adapter.name, command=command, error=message)

        content = adapter.normalize_output(outcome.stdout)
        self.log_store.append(task_id, 'INFO', f'{adapter.name} {kind.value} completed successfully')
        self.log_store.append(task_id, 'INFO', self._describe_output(content))
        _log.info('provider_run_succeeded task_id=%s provider=%s output_chars=%d truncated=%s',
                  task_id, adapter.name, len(content), outcome.truncated)
        return ProviderResult(
            content=content,
            provider=adapter.name,
            command=command,
            success=True,
            task_id=task_id,
        )

    @staticmethod
    def _describe_output(content: str) -> str:
        try:
            json.loads(content)
        except ValueError:
            return 'Plain text output (not JSON)'
        return 'JSON output detected and validated'

    @staticmethod
    def _failure(*, task_id: str, provider: str, command: str, error: str) -> ProviderResult:
        return ProviderResult(
            content='',
            provider=provider,
            command=command,
            success=False,
            task_id=task_id,
            error=str(error or '').strip() or 'Unknown error occurred',
        )

    @staticmethod
    def _resolve_executable(argv: list[str]) -> list[str]:
        if not argv:
            return argv
        first = str(argv[0]).strip()
        if not first:
            return argv
        resolved = shutil.which(first)
        if not resolved:
            return argv
        patched = list(argv)
        patched[0] = resolved
        return patched

    @staticmethod
    def _format_command(argv: list[str]) -> str:
        return shlex.join(str(value) for value in argv)

    def _run_process(
        self,
        *,
        argv: list[str],
        stdin_text: str | None,
        cwd: Path,
        timeout_seconds: float,
        task_id: str,
    ) -> _ProcessOutcome:
        popen_kwargs: dict = {}
        if os.name != 'nt':
            popen_kwargs['start_new_session'] = True
        process = subprocess.Popen(
            argv,
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            encoding='utf-8',
            errors='replace',
            cwd=str(cwd),
            bufsize=1,
            **popen_kwargs,
        )

        queue: Queue[tuple[str, str]] = Queue()

        def _feed() -> None:
            if process.stdin is None:
                return
            try:
                if stdin_text:
                    process.stdin.write(stdin_text)
            except (BrokenPipeError, OSError):
                pass
            finally:
                try:
                    process.stdin.close()
                except OSError:
                    pass

        def _pump(pipe, stream_name: str) -> None:
            if pipe is None:
                return
            try:
                while True:
                    chunk = pipe.readline()
                    if chunk == '':
                        break
                    queue.put((stream_name, chunk))
            except (OSError, ValueError):
                pass
            finally:
                try:
                    pipe.close()
                except OSError:
                    pass

        workers = [
            Thread(target=_feed, daemon=True),
            Thread(target=_pump, args=(process.stdout, 'stdout'), daemon=True),
            Thread(target=_pump, args=(process.stderr, 'stderr'), daemon=True),
        ]
        for worker in workers:
            worker.start()

        stdout_buf = _BoundedBuffer(limit=self.max_output_chars)
        stderr_buf = _BoundedBuffer(limit=self.max_output_chars)
        buffers = {'stdout': stdout_buf, 'stderr': stderr_buf}

        deadline = time.monotonic() + max(0.05, float(timeout_seconds))
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                self._terminate(process)
                return _ProcessOutcome(
                    returncode=process.returncode,
                    stdout=stdout_buf.value(),
                    stderr=stderr_buf.value(),
                    timed_out=True,
                    truncated=stdout_buf.truncated or stderr_buf.truncated,
                )

            try:
                stream_name, chunk = queue.get(timeout=min(0.1, max(0.01, remaining)))
            except Empty:
                pass
            else:
                buffer = buffers[stream_name]
                was_truncated = buffer.truncated
                buffer.append(chunk)
                if buffer.truncated and not was_truncated:
                    self.log_store.append(task_id, 'INFO', f'{stream_name} truncated at {buffer.limit} characters')
                self.log_store.append(task_id, stream_name.upper(), chunk)

            finished = process.poll() is not None
            drained = queue.empty() and all(not worker.is_alive() for worker in workers[1:])
            if finished and drained:
                break

        for worker in workers:
            worker.join(timeout=0.2)

        return _ProcessOutcome(
            returncode=int(process.returncode or 0),
            stdout=stdout_buf.value(),
            stderr=stderr_buf.value(),
            timed_out=False,
            truncated=stdout_buf.truncated or stderr_buf.truncated,
        )

    @staticmethod
    def _terminate(process: subprocess.Popen) -> None:
        if os.name != 'nt':
            try:
                os.killpg(process.pid, signal.SIGKILL)
            except (ProcessLookupError, PermissionError):
                process.kill()
        else:
            process.kill()
        try:
            process.wait(timeout=_KILL_WAIT_SECONDS)
        except subprocess.TimeoutExpired:
            _log.error('provider_kill_timeout pid=%s', process.pid)


__all__ = ['DEFAULT_MAX_OUTPUT_CHARS', 'ProviderRunner', 'RunOptions']
