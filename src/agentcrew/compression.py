from __future__ import annotations

import math
import re

from agentcrew.domain.models import CompressionOptions, ConversationMessage, ConversationThread
from agentcrew.observability import get_logger

_log = get_logger('agentcrew.compression')

CHARS_PER_TOKEN = 4
_CODE_FENCE_RE = re.compile(r'```')
_PROBLEM_KEYWORDS_RE = re.compile(
    r'\b(error|errors|exception|traceback|fail|fails|failed|failing|failure|bug|bugs|crash|crashed|broken|regression)\b',
    re.IGNORECASE,
)


def estimate_tokens(text: str, *, chars_per_token: int = CHARS_PER_TOKEN) -> int:
    length = len(text or '')
    if length == 0:
        return 0
    return math.ceil(length / max(1, int(chars_per_token)))


def role_label(message: ConversationMessage) -> str:
    if not message.is_assistant:
        return 'User'
    agent_id = str((message.metadata or {}).get('agent_id') or '').strip()
    if agent_id:
        return f'Assistant (@{agent_id})'
    return 'Assistant'


def format_message(message: ConversationMessage) -> str:
    return f'{role_label(message)}: {message.text}'


def is_important(message: ConversationMessage) -> bool:
    text = message.text or ''
    if len(_CODE_FENCE_RE.findall(text)) >= 2:
        return True
    return bool(_PROBLEM_KEYWORDS_RE.search(text))


class ConversationCompressor:
    """Fit a conversation into a token budget, keeping recent and problem-related turns.

    Pure and synchronous: no provider is consulted. Token counts are estimated
    at ``chars_per_token`` characters per token.

    Selection order:

    1. the ``preserve_recent_count`` newest messages, always, even when they
       alone exceed ``max_tokens``;
    2. older messages carrying a fenced code block or a failure keyword, when
       ``preserve_important`` is set;
    3. remaining older messages, newest first, until the next one would
       overflow the budget.

    Output keeps chronological order, one ``role: text`` entry per message.
    """

    def __init__(self, *, chars_per_token: int = CHARS_PER_TOKEN):
        self.chars_per_token = max(1, int(chars_per_token))

    def compress(self, thread: ConversationThread, options: CompressionOptions | None = None) -> str:
        opts = options or CompressionOptions()
        messages = list(thread.messages)
        if opts.exclude_current and messages:
            messages = messages[:-1]
        if not messages:
            return ''

        lines = [format_message(m) for m in messages]
        if len(messages) <= max(0, int(opts.max_messages)):
            return '\n'.join(lines)

        total = len(messages)
        recent_count = max(0, min(int(opts.preserve_recent_count), total))
        older_end = total - recent_count
        costs = [estimate_tokens(line, chars_per_token=self.chars_per_token) for line in lines]

        selected: set[int] = set(range(older_end, total))
        used = sum(costs[i] for i in selected)

        important_count = 0
        if opts.preserve_important:
            for index in range(older_end):
                if is_important(messages[index]):
                    selected.add(index)
                    used += costs[index]
                    important_count += 1

        budget = max(0, int(opts.max_tokens))
        for index in range(older_end - 1, -1, -1):
            if index in selected:
                continue
            if used + costs[index] > budget:
                break
            selected.add(index)
            used += costs[index]

        if not selected:
            return ''

        omitted = total - len(selected)
        _log.debug(
            'conversation_compressed thread=%s messages=%d kept=%d important=%d est_tokens=%d budget=%d',
            thread.thread_id, total, len(selected), important_count, used, budget,
        )
        out = [lines[i] for i in sorted(selected)]
        if omitted:
            out.insert(0, f'[{omitted} earlier messages omitted]')
        return '\n'.join(out)


__all__ = [
    'CHARS_PER_TOKEN',
    'ConversationCompressor',
    'estimate_tokens',
    'format_message',
    'is_important',
    'role_label',
]
