from __future__ import annotations

from datetime import datetime, timedelta, timezone

from agentcrew.compression import ConversationCompressor
from agentcrew.conversation import ConversationHistoryFormatter, sanitize_message
from agentcrew.domain.models import ConversationMessage, ConversationThread

_BASE = datetime(2026, 1, 1, tzinfo=timezone.utc)


def _thread(texts: list[str]) -> ConversationThread:
    return ConversationThread(
        thread_id='chat-1',
        messages=tuple(
            ConversationMessage(
                sender='bot' if i % 2 else 'alice',
                text=text,
                timestamp=_BASE + timedelta(seconds=i),
                is_assistant=bool(i % 2),
            )
            for i, text in enumerate(texts)
        ),
    )


def test_sanitize_message_masks_secrets():
    text = sanitize_message('password: hunter2 and api_key=abc123 token: xyz')
    assert 'hunter2' not in text
    assert 'xyz' not in text
    assert 'password: ***' in text
    assert 'token: ***' in text


def test_format_simple_excludes_current_message_by_default():
    formatter = ConversationHistoryFormatter()
    out = formatter.format_simple(_thread(['hi', 'hello', 'current question']))
    assert out == 'User: hi\nAssistant: hello'


def test_format_simple_keeps_newest_within_character_budget():
    formatter = ConversationHistoryFormatter()
    out = formatter.format_simple(
        _thread(['aaaaaaaaaa', 'bbbbbbbbbb', 'cccccccccc']),
        max_context_length=40,
        exclude_current=False,
    )
    assert out == 'Assistant: bbbbbbbbbb\nUser: cccccccccc'


def test_format_simple_applies_message_limit():
    formatter = ConversationHistoryFormatter()
    out = formatter.format_simple(_thread([f'm{i}' for i in range(6)]), limit=2, exclude_current=False)
    assert out == 'User: m4\nAssistant: m5'


def test_format_for_ai_uses_compressor_for_long_threads():
    texts = [f'turn {i}' for i in range(30)]
    texts[2] = 'it crashed with an exception'
    formatter = ConversationHistoryFormatter(compressor=ConversationCompressor())
    out = formatter.format_for_ai(_thread(texts), limit=8, max_context_length=40)
    lines = out.splitlines()
    assert lines[0].endswith('earlier messages omitted]')
    assert 'User: it crashed with an exception' in lines
    # current message (index 29) is excluded, the two before it are kept
    assert 'Assistant: turn 27' in lines
    assert 'User: turn 28' in lines
    assert 'turn 29' not in out


def test_format_for_ai_without_compressor_falls_back_to_simple():
    formatter = ConversationHistoryFormatter()
    out = formatter.format_for_ai(_thread([f'm{i}' for i in range(30)]), limit=3)
    assert out == 'User: m26\nAssistant: m27\nUser: m28'


def test_format_for_ai_empty_history():
    formatter = ConversationHistoryFormatter(compressor=ConversationCompressor())
    assert formatter.format_for_ai(_thread(['only current'])) == ''


def test_sanitizing_formatter_masks_history():
    formatter = ConversationHistoryFormatter(sanitize=True)
    out = formatter.format_simple(_thread(['my password: hunter2', 'ok']), exclude_current=False)
    assert 'hunter2' not in out
    assert 'password: ***' in out
