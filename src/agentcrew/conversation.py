from __future__ import annotations

from dataclasses import replace
import re

from agentcrew.compression import ConversationCompressor, format_message
from agentcrew.domain.models import CompressionOptions, ConversationThread
from agentcrew.observability import get_logger

_log = get_logger('agentcrew.conversation')

_SECRET_PATTERNS = (
    (re.compile(r'password[:\s]*\S+', re.IGNORECASE), 'password: ***'),
    (re.compile(r'token[:\s]*\S+', re.IGNORECASE), 'token: ***'),
    (re.compile(r'api[_-]?key[:\s]*\S+', re.IGNORECASE), 'api_key: ***'),
    (re.compile(r'secret[:\s]*\S+', re.IGNORECASE), 'secret: ***'),
)


def sanitize_message(text: str) -> str:
    out = str(text or '')
    for pattern, replacement in _SECRET_PATTERNS:
        out = pattern.sub(replacement, out)
    return out


class ConversationHistoryFormatter:
    def __init__(self, *, compressor: ConversationCompressor | None = None, sanitize: bool = False):
        self.compressor = compressor
        self.sanitize = sanitize

    def format_for_ai(
        self,
        thread: ConversationThread,
        *,
        limit: int = 20,
        max_context_length: int = 4000,
        exclude_current: bool = True,
    ) -> str:
        thread = self._prepare(thread)
        messages = list(thread.messages)
        if exclude_current and messages:
            messages = messages[:-1]
        if not messages:
            return ''

        if self.compressor is not None and len(messages) > limit:
            _log.debug('history_compression thread=%s messages=%d', thread.thread_id, len(messages))
            return self.compressor.compress(
                ConversationThread(thread_id=thread.thread_id, messages=tuple(messages), platform=thread.platform),
                CompressionOptions(
                    max_tokens=max_context_length // 4,
                    max_messages=limit,
                    preserve_recent_count=min(5, limit // 4),
                    preserve_important=True,
                ),
            )
        return self.format_simple(
            thread,
            limit=limit,
            max_context_length=max_context_length,
            exclude_current=exclude_current,
        )

    def format_simple(
        self,
        thread: ConversationThread,
        *,
        limit: int = 20,
        max_context_length: int = 4000,
        exclude_current: bool = True,
    ) -> str:
        messages = list(self._prepare(thread).messages)
        if exclude_current and messages:
            messages = messages[:-1]
        if len(messages) > limit:
            messages = messages[-limit:] if limit > 0 else []

        kept: list[str] = []
        length = 0
        for message in reversed(messages):
            formatted = format_message(message)
            added = len(formatted) + (1 if kept else 0)
            if length + added > max_context_length:
                _log.debug('history_truncated thread=%s max_chars=%d', thread.thread_id, max_context_length)
                break
            kept.insert(0, formatted)
            length += added

        if len(kept) < len(messages):
            _log.warning('history_truncated thread=%s included=%d total=%d', thread.thread_id, len(kept), len(messages))
        return '\n'.join(kept)

    def _prepare(self, thread: ConversationThread) -> ConversationThread:
        if not self.sanitize:
            return thread
        cleaned = tuple(replace(m, text=sanitize_message(m.text)) for m in thread.messages)
        return replace(thread, messages=cleaned)


__all__ = ['ConversationHistoryFormatter', 'sanitize_message']
