"""
命令行客户端

    taskstream-client --url http://127.0.0.1:8300 login -u admin -p ******
    taskstream-client --token <token> start php install 8.2
    taskstream-client --token <token> watch task-0123456789ab
    taskstream-client --token <token> terminal
    taskstream-client --token <token> update

令牌也可通过环境变量 TASKSTREAM_TOKEN 提供。
"""

import argparse
import asyncio
import json
import os
import sys

import httpx

from client.api import PanelClient
from client.consumer import StreamOutcome, TaskStreamConsumer
from client.maintenance import MaintenanceReconnector, ReconnectPhase
from client.terminal import TerminalClient
from core.logger import reconfigure_logger

_GREEN = "\033[92m"
_RED = "\033[91m"
_YELLOW = "\033[93m"
_RESET = "\033[0m"


def _print_line(line: str):
    if line.startswith("✅"):
        print(f"{_GREEN}{line}{_RESET}", flush=True)
    elif line.startswith("❌"):
        print(f"{_RED}{line}{_RESET}", flush=True)
    else:
        print(line, flush=True)


async def _watch(client: PanelClient, task_id: str) -> int:
    consumer = TaskStreamConsumer(on_line=_print_line)
    view = await consumer.watch(client.stream_url(f"/ws/tasks/{task_id}"), task_id)
    if view.outcome is StreamOutcome.COMPLETED:
        return 0
    if view.outcome is StreamOutcome.INTERRUPTED:
        print(f"{_YELLOW}连接已断开，任务结果未知 (code={view.close_code} {view.close_reason}){_RESET}", file=sys.stderr)
        return 3
    return 1


async def _cmd_login(client: PanelClient, args) -> int:
    token = await client.login(args.username, args.password)
    print(token)
    return 0


async def _cmd_start(client: PanelClient, args) -> int:
    options = json.loads(args.options) if args.options else {}
    task_id = await client.start_task(args.kind, args.action, args.target, options)
    print(f"任务已启动: {task_id}", file=sys.stderr)
    if args.detach:
        print(task_id)
        return 0
    return await _watch(client, task_id)


async def _cmd_watch(client: PanelClient, args) -> int:
    return await _watch(client, args.task_id)


async def _cmd_terminal(client: PanelClient, args) -> int:
    async with TerminalClient(client.stream_url("/ws/terminal")) as term:
        if sys.stdin.isatty():
            await term.run_interactive()
        else:
            await term.run()
    print(f"\r\n终端已关闭 (code={term.close_code})", file=sys.stderr)
    return 0 if term.close_code in (1000, None) else 1


async def _cmd_update(client: PanelClient, args) -> int:
    task_id = await client.trigger_update()
    code = await _watch(client, task_id)
    # 更新脚本会重启服务，流可能在终态之前断开
    if code not in (0, 3):
        return code

    print(f"{_YELLOW}等待服务重启...{_RESET}", file=sys.stderr)
    reconnector = MaintenanceReconnector(
        client.probe,
        on_reload=lambda: print(f"{_GREEN}服务已恢复{_RESET}", file=sys.stderr),
        interval=args.interval,
        max_attempts=args.max_attempts,
    )
    phase = await reconnector.run()
    return 0 if phase is ReconnectPhase.HEALTHY else 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="taskstream-client", description="TaskStream 命令行客户端")
    parser.add_argument("--url", default=os.environ.get("TASKSTREAM_URL", "http://127.0.0.1:8300"))
    parser.add_argument("--token", default=os.environ.get("TASKSTREAM_TOKEN", ""))
    parser.add_argument("-v", "--verbose", action="store_true", help="输出调试日志")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("login", help="登录并打印令牌")
    p.add_argument("-u", "--username", default="admin")
    p.add_argument("-p", "--password", required=True)
    p.set_defaults(handler=_cmd_login)

    p = sub.add_parser("start", help="启动任务并跟踪日志")
    p.add_argument("kind")
    p.add_argument("action")
    p.add_argument("target")
    p.add_argument("--options", default="", help='JSON，如 {"php_version": "8.2"}')
    p.add_argument("-d", "--detach", action="store_true", help="只打印 task_id，不跟踪日志")
    p.set_defaults(handler=_cmd_start)

    p = sub.add_parser("watch", help="跟踪已有任务的日志")
    p.add_argument("task_id")
    p.set_defaults(handler=_cmd_watch)

    p = sub.add_parser("terminal", help="打开交互式终端")
    p.set_defaults(handler=_cmd_terminal)

    p = sub.add_parser("update", help="触发面板自更新并等待服务恢复")
    p.add_argument("--interval", type=float, default=3.0)
    p.add_argument("--max-attempts", type=int, default=100)
    p.set_defaults(handler=_cmd_update)

    return parser


async def _run(args) -> int:
    async with PanelClient(args.url, token=args.token) as client:
        try:
            return await args.handler(client, args)
        except httpx.HTTPStatusError as e:
            try:
                detail = e.response.json().get("error", e.response.text)
            except ValueError:
                detail = e.response.text
            print(f"{_RED}请求失败 ({e.response.status_code}): {detail}{_RESET}", file=sys.stderr)
            return 1
        except httpx.HTTPError as e:
            print(f"{_RED}无法连接面板: {e}{_RESET}", file=sys.stderr)
            return 1


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    reconfigure_logger({
        "level": "DEBUG" if args.verbose else "WARNING",
        "console": {"enabled": True, "colorize": True},
        "file": {"enabled": False},
    })
    return asyncio.run(_run(args))


if __name__ == "__main__":
    sys.exit(main())
