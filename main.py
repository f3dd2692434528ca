"""
TaskStream 服务入口：服务器管理面板的任务流与终端服务

使用 bootstrap 初始化 Config + Logger，然后启动 FastAPI 服务。
集成任务注册表、执行器、流式分发中心和终端会话的完整生命周期。
"""

import asyncio
import contextlib
import socket
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from api.deps import extract_token
from api.v1.router import router as v1_router
from core import bootstrap
from core.errors import PanelError
from core.logger import get_logger
from services.auth import AuthService
from services.hub import StreamHub
from services.registry import TaskRegistry
from services.runner import TaskRunner
from services.terminal import TerminalManager


class AuthMiddleware(BaseHTTPMiddleware):
    """REST 请求的令牌校验；WebSocket 端点在网关内自行校验"""

    # 不需要认证的 API 路径
    EXEMPT_PATHS = (
        "/api/v1/auth/login",
        "/api/v1/auth/status",
        "/api/v1/system/health",
        "/api/v1/system/branding",
    )

    async def dispatch(self, request, call_next):
        path = request.url.path

        if not path.startswith("/api/") or path in self.EXEMPT_PATHS:
            return await call_next(request)

        session = request.app.state.auth_service.validate_token(extract_token(request))
        if not session:
            return JSONResponse(
                status_code=401,
                content={"error": "未登录或会话已过期"},
            )

        request.state.session = session
        return await call_next(request)


def create_app(config_path: Optional[str] = None) -> FastAPI:
    """创建并配置 FastAPI 应用"""

    # ── Phase 1: 引导加载 ──
    config, _ = bootstrap.init(config_path)
    app_logger = get_logger("main")

    # ── Phase 2: 任务 + 流 ──
    registry = TaskRegistry()
    runner = TaskRunner(registry, config)
    hub = StreamHub(registry, grace_period=config.get("tasks.grace_period", 300))

    # ── Phase 3: 认证 + 终端 ──
    auth_service = AuthService(config)
    terminal_manager = TerminalManager(config)

    # ── 生命周期管理 ──
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """应用启动/关闭生命周期"""
        app_logger.info("正在启动后台服务...")

        background = [
            asyncio.create_task(hub.run_sweeper(config.get("tasks.sweep_interval", 10))),
            asyncio.create_task(runner.run_watchdog(config.get("tasks.watchdog_interval", 5))),
        ]

        app_logger.info(f"{config.get('app.name')} 就绪")
        _print_ready_banner(config, auth_service)

        yield

        # 关闭
        app_logger.info("正在停止后台服务...")
        for job in background:
            job.cancel()
        for job in background:
            with contextlib.suppress(asyncio.CancelledError):
                await job
        await runner.shutdown()
        await terminal_manager.close_all()
        app_logger.info("后台服务已停止")

    # ── 创建 FastAPI 实例 ──
    app = FastAPI(
        title=config.get("app.name"),
        version=config.get("app.version"),
        docs_url="/api/docs" if config.get("app.debug") else None,
        redoc_url=None,
        lifespan=lifespan,
    )

    # 全局状态挂载
    app.state.config = config
    app.state.auth_service = auth_service
    app.state.task_registry = registry
    app.state.task_runner = runner
    app.state.stream_hub = hub
    app.state.terminal_manager = terminal_manager

    @app.exception_handler(PanelError)
    async def panel_error_handler(request: Request, exc: PanelError):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.message})

    app.add_middleware(AuthMiddleware)

    # ── 注册 API 路由 ──
    app.include_router(v1_router)

    app_logger.info(
        f"FastAPI 应用创建完成: {config.get('app.name')} v{config.get('app.version')}"
    )

    return app


def _print_ready_banner(config, auth_service):
    """在所有启动日志之后打印醒目的就绪信息"""
    host = config.get("server.host", "0.0.0.0")
    port = config.get("server.port", 8300)

    # 获取实际可访问的 IP
    if host in ("0.0.0.0", ""):
        try:
            local_ip = socket.gethostbyname(socket.gethostname())
        except OSError:
            local_ip = "127.0.0.1"
    else:
        local_ip = host

    CYAN = "\033[96m"
    GREEN = "\033[92m"
    YELLOW = "\033[93m"
    BOLD = "\033[1m"
    RESET = "\033[0m"

    name = config.get("app.name", "TaskStream")
    version = config.get("app.version", "")

    lines = [
        f"{CYAN}{'═' * 52}{RESET}",
        f"{CYAN}  {BOLD}{name} v{version}{RESET}{CYAN}  已就绪{RESET}",
        f"{CYAN}{'─' * 52}{RESET}",
        f"  {GREEN}访问地址{RESET}  http://{local_ip}:{port}",
        f"  {GREEN}任务日志{RESET}  ws://{local_ip}:{port}/api/v1/ws/tasks/<task_id>",
        f"  {GREEN}交互终端{RESET}  ws://{local_ip}:{port}/api/v1/ws/terminal",
    ]

    if auth_service.is_setup_required():
        lines += [
            f"{CYAN}{'─' * 52}{RESET}",
            f"  {YELLOW}⚠ 未配置管理员密码，临时密码见上方日志{RESET}",
            f"  {YELLOW}  请在 security.admin_password 中设置固定密码！{RESET}",
        ]

    lines.append(f"{CYAN}{'═' * 52}{RESET}")

    print("\n" + "\n".join(lines) + "\n", flush=True)


def run(config_path: Optional[str] = None):
    """启动服务；监听参数取自配置，应用本身由工厂在 uvicorn 内创建"""
    config, _ = bootstrap.init(config_path)
    uvicorn.run(
        "main:create_app",
        factory=True,
        host=config.get("server.host"),
        port=config.get("server.port"),
        ws_ping_interval=config.get("server.ws_ping_interval", 20.0),
        ws_ping_timeout=config.get("server.ws_ping_timeout", 20.0),
        log_level="info",
    )


if __name__ == "__main__":
    run()
