from __future__ import annotations

import argparse
import json
import sys

import httpx
import uvicorn

from agentcrew.agents import parse_agent_mention


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='agentcrew', description='Dispatch work to AI coding CLIs in parallel')
    parser.add_argument('--api-base', default='http://127.0.0.1:8000', help='agentcrew API base URL')

    sub = parser.add_subparsers(dest='command', required=True)

    for name, help_text in (('query', 'Ask one agent a question'), ('execute', 'Have one agent carry out a task')):
        single = sub.add_parser(name, help=help_text)
        single.add_argument('agent', help='Agent id, optionally agent:model')
        single.add_argument('instruction', help='Question or task text')
        single.add_argument('--context', default='', help='Optional context prepended to the instruction')
        single.add_argument('--project-path', default='', help='Working directory for the agent process')
        single.add_argument('--timeout', type=float, default=None, help='Timeout in seconds')

    dispatch = sub.add_parser('dispatch', help='Run several agents in parallel')
    dispatch.add_argument(
        '--request',
        action='append',
        required=True,
        help='Agent request in agent=instruction or agent:model=instruction format (repeatable)',
    )
    dispatch.add_argument('--kind', default='query', choices=['query', 'execute'])
    dispatch.add_argument('--context', default='', help='Context shared by every request')
    dispatch.add_argument('--project-path', default='', help='Working directory for every agent process')
    dispatch.add_argument('--max-concurrency', type=int, default=None)
    dispatch.add_argument('--timeout', type=float, default=None, help='Per-request timeout in seconds')
    dispatch.add_argument('--fail-fast', action=argparse.BooleanOptionalAction, default=None, help='Stop after the first failing chunk')

    logs = sub.add_parser('logs', help='Show the recent task digest or one task log')
    logs.add_argument('task_id', nargs='?', default=None, help='Task id')

    tasks = sub.add_parser('tasks', help='List recent tasks')
    tasks.add_argument('--limit', type=int, default=20)

    sub.add_parser('doctor', help='Check which provider CLIs are installed')

    serve = sub.add_parser('serve', help='Run the agentcrew API server')
    serve.add_argument('--host', default='127.0.0.1')
    serve.add_argument('--port', type=int, default=8000)
    serve.add_argument('--log-level', default='info', choices=['debug', 'info', 'warning', 'error'])
    return parser


def _print_json(payload) -> None:
    print(json.dumps(payload, ensure_ascii=True, indent=2))


def _parse_dispatch_requests(values: list[str] | None, *, kind: str, context: str, project_path: str) -> list[dict]:
    requests: list[dict] = []
    for raw in values or []:
        text = str(raw or '').strip()
        if '=' not in text:
            raise ValueError(f'invalid --request value: {text!r}, expected agent=instruction')
        agent_ref, instruction = text.split('=', 1)
        agent_id, model = parse_agent_mention(agent_ref)
        instruction = instruction.strip()
        if not instruction:
            raise ValueError(f'invalid --request value: {text!r}, instruction is empty')
        requests.append(
            {
                'agent_id': agent_id,
                'instruction': instruction,
                'kind': kind,
                'context': context or None,
                'project_path': project_path or None,
                'model': model,
            }
        )
    return requests


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    base = args.api_base.rstrip('/')

    if args.command == 'serve':
        uvicorn.run('agentcrew.main:app', host=args.host, port=int(args.port), log_level=args.log_level)
        return 0

    # Agent runs are bounded server side; the client waits for the report.
    timeout = None if args.command in {'query', 'execute', 'dispatch'} else 60.0

    with httpx.Client(timeout=timeout) as client:
        if args.command in {'query', 'execute'}:
            try:
                agent_id, model = parse_agent_mention(args.agent)
            except ValueError as exc:
                parser.error(str(exc))
                return 2
            response = client.post(
                f'{base}/api/{args.command}',
                json={
                    'agent_id': agent_id,
                    'instruction': args.instruction,
                    'context': (args.context.strip() or None),
                    'project_path': (args.project_path.strip() or None),
                    'model': model,
                    'timeout_seconds': args.timeout,
                },
            )
        elif args.command == 'dispatch':
            try:
                requests = _parse_dispatch_requests(
                    args.request,
                    kind=args.kind,
                    context=args.context.strip(),
                    project_path=args.project_path.strip(),
                )
            except ValueError as exc:
                parser.error(str(exc))
                return 2
            response = client.post(
                f'{base}/api/dispatch',
                json={
                    'requests': requests,
                    'max_concurrency': args.max_concurrency,
                    'timeout_seconds': args.timeout,
                    'fail_fast': args.fail_fast,
                },
            )
        elif args.command == 'logs':
            if args.task_id:
                response = client.get(f'{base}/api/tasks/{args.task_id}/logs')
                if response.status_code < 400:
                    print(response.text)
                    return 0
            else:
                response = client.get(f'{base}/api/tasks')
                if response.status_code < 400:
                    print(response.json().get('digest', ''))
                    return 0
        elif args.command == 'tasks':
            response = client.get(f'{base}/api/tasks', params={'limit': int(args.limit)})
        elif args.command == 'doctor':
            response = client.get(f'{base}/api/providers')
        else:
            parser.error(f'unsupported command: {args.command}')
            return 2

    if response.status_code >= 400:
        print(f'HTTP {response.status_code}: {response.text}', file=sys.stderr)
        return 1

    _print_json(response.json())
    return 0


if __name__ == '__main__':
    raise SystemExit(main())
