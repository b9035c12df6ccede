from __future__ import annotations

import re

from agentcrew.providers.base import NO_ERROR, ProviderAdapter, ProviderError, find_stream_limit_pattern

_SESSION_LIMIT = 'Session limit reached'
_RESET_RE = re.compile(r'resets (\d+(?::\d+)?(?:am|pm))', re.IGNORECASE)

_ERROR_INDICATORS = (
    re.compile(r'^Error:', re.IGNORECASE | re.MULTILINE),
    re.compile(r'^Failed:', re.IGNORECASE | re.MULTILINE),
    re.compile(r'^Unable to', re.IGNORECASE | re.MULTILINE),
    re.compile(r'command not found', re.IGNORECASE),
    re.compile(r'no such file', re.IGNORECASE),
    re.compile(r'permission denied', re.IGNORECASE),
    re.compile(r'ECONNREFUSED'),
    re.compile(r'ETIMEDOUT'),
    re.compile(r'ENOTFOUND'),
    re.compile(r'EHOSTUNREACH'),
    re.compile(r'\bconnection refused\b', re.IGNORECASE),
    re.compile(r'\bnetwork error\b', re.IGNORECASE),
    re.compile(r'\brequest failed\b', re.IGNORECASE),
)

# stderr chatter emitted by the node-based CLI.
_DEBUG_LOG_PATTERNS = (
    re.compile(r'follow-redirects options'),
    re.compile(r'spawn-rx'),
    re.compile(r'\[Function:'),
    re.compile(r'connectionListener'),
    re.compile(r'maxRedirects:'),
    re.compile(r'\{[\s\S]*protocol:.*\}'),
)


def _first_line(text: str) -> str:
    for line in str(text or '').splitlines():
        if line.strip():
            return line.strip()
    return str(text or '').strip()


def _session_limit_text(stderr: str, stdout: str) -> str | None:
    for stream in (stderr, stdout):
        if stream and _SESSION_LIMIT in stream:
            return stream
    return None


class ClaudeAdapter(ProviderAdapter):
    name = 'claude'
    executable = 'claude'
    query_args = ('-p',)
    execute_args = ('-p',)

    def not_installed_message(self) -> str:
        return 'Claude CLI is not installed. Please install it from https://claude.ai/download.'

    def classify_error(self, stderr: str, stdout: str) -> ProviderError:
        # The CLI exits 0 on several hard failures, so text patterns in either stream decide.
        limited = _session_limit_text(stderr, stdout)
        if limited is not None:
            match = _RESET_RE.search(limited)
            reset_time = match.group(1) if match else 'later today'
            return ProviderError(
                error=True,
                message=(
                    f'Claude Pro session limit reached. Your limit will reset at {reset_time}. '
                    'Please try again after the reset or use another AI agent (Gemini or Copilot) in the meantime.'
                ),
            )

        if stderr and ('authentication required' in stderr or 'Please run `claude login`' in stderr):
            return ProviderError(
                error=True,
                message='Claude CLI authentication required. Please run `claude login` to authenticate.',
            )

        pattern = find_stream_limit_pattern(stderr, stdout)
        if pattern:
            return ProviderError(
                error=True,
                message=f'Claude usage limit reached ({pattern}). Try again later or use a fallback provider.',
            )

        if stdout and stdout.strip():
            return NO_ERROR

        if stderr and stderr.strip():
            if any(p.search(stderr) for p in _DEBUG_LOG_PATTERNS):
                return NO_ERROR
            if any(p.search(stderr) for p in _ERROR_INDICATORS):
                return ProviderError(error=True, message=_first_line(stderr))

        return NO_ERROR


__all__ = ['ClaudeAdapter']
