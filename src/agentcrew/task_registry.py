from __future__ import annotations

from dataclasses import dataclass, field
import threading
from typing import Any
from uuid import uuid4

from agentcrew.domain.models import (
    LogEntry,
    LogLevel,
    TaskDescriptor,
    TaskRecord,
    TaskStatus,
    describe_provider_choice,
    normalize_log_level,
    utc_now,
)
from agentcrew.observability import get_logger
from agentcrew.storage.task_logs import TaskLogStore

_log = get_logger('agentcrew.task_registry')


@dataclass
class _TaskSlot:
    record: TaskRecord
    lock: threading.Lock = field(default_factory=threading.Lock)


class TaskRegistry:
    """In-memory task identities, log timelines and terminal states.

    Each task carries its own lock; the registry-wide lock only guards the
    id -> slot mapping, so unrelated tasks never wait on each other's appends.
    """

    def __init__(self, *, log_store: TaskLogStore | None = None, recent_limit: int = 20):
        self._slots: dict[str, _TaskSlot] = {}
        self._index_lock = threading.Lock()
        self.log_store = log_store
        self.recent_limit = max(1, int(recent_limit))

    @staticmethod
    def new_task_id() -> str:
        return f'task-{uuid4().hex[:12]}'

    def create_task(self, descriptor: TaskDescriptor) -> str:
        task_id = self.new_task_id()
        record = TaskRecord(
            task_id=task_id,
            kind=descriptor.kind,
            provider=descriptor.provider,
            prompt=descriptor.prompt,
            agent_id=descriptor.agent_id,
            created_at=utc_now(),
        )
        with self._index_lock:
            self._slots[task_id] = _TaskSlot(record=record)
        _log.debug('task_created task_id=%s kind=%s agent=%s', task_id, descriptor.kind.value, descriptor.agent_id)
        return task_id

    def add_log(self, task_id: str, *, level: str | LogLevel = LogLevel.INFO, message: str) -> bool:
        slot = self._slot(task_id)
        if slot is None:
            _log.warning('task_log_unknown_task task_id=%s', task_id)
            return False
        entry = LogEntry(timestamp=utc_now(), level=normalize_log_level(level), message=str(message or ''))
        with slot.lock:
            slot.record.logs.append(entry)
        return True

    def complete_task(self, task_id: str, result: Any, success: bool) -> bool:
        """Record the terminal state once; later calls for the same id are ignored."""
        slot = self._slot(task_id)
        if slot is None:
            _log.warning('task_complete_unknown_task task_id=%s', task_id)
            return False
        with slot.lock:
            record = slot.record
            if record.status != TaskStatus.RUNNING:
                _log.warning(
                    'task_double_completion_ignored task_id=%s status=%s attempted_success=%s',
                    task_id, record.status.value, bool(success),
                )
                return False
            record.result = result
            record.success = bool(success)
            record.status = TaskStatus.COMPLETED if success else TaskStatus.FAILED
            record.completed_at = utc_now()
        _log.info('task_completed task_id=%s success=%s', task_id, bool(success))
        return True

    def get_task(self, task_id: str) -> dict | None:
        slot = self._slot(task_id)
        if slot is None:
            return None
        with slot.lock:
            payload = slot.record.snapshot()
            payload['logs'] = [
                {'timestamp': e.timestamp.isoformat(), 'level': e.level.value, 'message': e.message}
                for e in slot.record.logs
            ]
        return payload

    def list_tasks(self, *, limit: int | None = None) -> list[dict]:
        with self._index_lock:
            slots = list(self._slots.values())
        # Insertion order is creation order.
        slots.reverse()
        cap = self.recent_limit if limit is None else max(0, int(limit))
        out: list[dict] = []
        for slot in slots[:cap]:
            with slot.lock:
                out.append(slot.record.snapshot())
        return out

    def get_logs(self, task_id: str | None = None) -> str:
        if task_id:
            return self._task_log_text(task_id)
        return self._digest_text()

    def _task_log_text(self, task_id: str) -> str:
        slot = self._slot(task_id)
        if slot is None:
            if self.log_store is not None:
                content = self.log_store.read(task_id)
                if content is not None:
                    return content
            return f'Task log not found: {task_id}'
        with slot.lock:
            record = slot.record
            lines = [
                f'=== TASK: {record.task_id} ===',
                f'Kind: {record.kind.value}',
                f'Agent: {record.agent_id or "n/a"}',
                f'Provider: {describe_provider_choice(record.provider)}',
                f'Status: {record.status.value}',
                f'Created: {record.created_at.isoformat()}',
            ]
            if record.completed_at is not None:
                lines.append(f'Completed: {record.completed_at.isoformat()}')
            lines.append('')
            lines.extend(entry.format() for entry in record.logs)
        return '\n'.join(lines)

    def _digest_text(self) -> str:
        tasks = self.list_tasks()
        if not tasks:
            on_disk = self.log_store.list_task_ids(limit=self.recent_limit) if self.log_store else []
            if not on_disk:
                return 'No tasks recorded'
            return f'Found {len(on_disk)} task logs:\n' + '\n'.join(on_disk)
        lines = [f'Recent tasks ({len(tasks)}):']
        for item in tasks:
            lines.append(
                f"- {item['task_id']} [{item['status']}] kind={item['kind']} "
                f"agent={item['agent_id'] or 'n/a'} provider={item['provider']} created={item['created_at']}"
            )
        return '\n'.join(lines)

    def _slot(self, task_id: str) -> _TaskSlot | None:
        with self._index_lock:
            return self._slots.get(str(task_id or ''))


__all__ = ['TaskRegistry']
