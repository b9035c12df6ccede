from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
import re
import threading
import time

from agentcrew.observability import get_logger

_log = get_logger('agentcrew.storage.task_logs')

_SAFE_TASK_ID_RE = re.compile(r'[^A-Za-z0-9_.-]+')
STREAM_LEVELS = frozenset({'STDOUT', 'STDERR', 'INFO', 'ERROR'})


class TaskLogStore:
    """Append-only ``<task_id>.log`` files, one per task."""

    def __init__(self, root: Path):
        self.root = Path(root)
        self._lock = threading.Lock()
        self._file_locks: dict[str, threading.Lock] = {}

    def path_for(self, task_id: str) -> Path:
        return self.root / f'{self._safe_task_id(task_id)}.log'

    def create(self, task_id: str, *, provider: str, command: str) -> Path:
        self.root.mkdir(parents=True, exist_ok=True)
        path = self.path_for(task_id)
        header = (
            f'=== TASK LOG: {task_id} ===\n'
            f'Provider: {provider}\n'
            f'Command: {command}\n'
            f'Started: {self._timestamp()}\n'
            '\n'
        )
        with self._lock_for(task_id):
            path.write_text(header, encoding='utf-8')
        return path

    def append(self, task_id: str, level: str, message: str) -> None:
        level_text = str(level or 'INFO').strip().upper()
        if level_text not in STREAM_LEVELS:
            level_text = 'INFO'
        entry = f'[{self._timestamp()}] {level_text}: {message}'
        if not entry.endswith('\n'):
            entry += '\n'
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            with self._lock_for(task_id):
                with self.path_for(task_id).open('a', encoding='utf-8') as f:
                    f.write(entry)
        except OSError:
            _log.error('task_log_append_failed task_id=%s', task_id, exc_info=True)

    def read(self, task_id: str) -> str | None:
        path = self.path_for(task_id)
        if not path.is_file():
            return None
        return path.read_text(encoding='utf-8', errors='replace')

    def exists(self, task_id: str) -> bool:
        return self.path_for(task_id).is_file()

    def list_task_ids(self, *, limit: int | None = None) -> list[str]:
        if not self.root.is_dir():
            return []
        files = [p for p in self.root.glob('*.log') if p.is_file()]
        files.sort(key=lambda p: p.stat().st_mtime, reverse=True)
        if limit is not None:
            files = files[: max(0, int(limit))]
        return [p.stem for p in files]

    def purge(self, *, older_than_seconds: float) -> int:
        if not self.root.is_dir():
            return 0
        cutoff = time.time() - max(0.0, float(older_than_seconds))
        removed = 0
        for path in self.root.glob('*.log'):
            try:
                if path.stat().st_mtime < cutoff:
                    path.unlink()
                    removed += 1
            except FileNotFoundError:
                continue
        with self._lock:
            self._file_locks = {
                key: lock for key, lock in self._file_locks.items() if (self.root / f'{key}.log').exists()
            }
        if removed:
            _log.info('task_logs_purged removed=%d root=%s', removed, self.root)
        return removed

    def _lock_for(self, task_id: str) -> threading.Lock:
        key = self._safe_task_id(task_id)
        with self._lock:
            lock = self._file_locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._file_locks[key] = lock
            return lock

    @staticmethod
    def _safe_task_id(task_id: str) -> str:
        text = _SAFE_TASK_ID_RE.sub('_', str(task_id or '').strip()).strip('.')
        if not text:
            raise ValueError('task id is required')
        return text

    @staticmethod
    def _timestamp() -> str:
        return datetime.now(timezone.utc).isoformat()


__all__ = ['STREAM_LEVELS', 'TaskLogStore']
