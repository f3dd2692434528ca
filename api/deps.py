"""
API 依赖模块

提供 FastAPI 依赖项，从 app.state 取出服务实例和当前会话。
"""

from fastapi import Request

from core.errors import Forbidden, Unauthorized
from services.auth import ROLE_ADMIN


def extract_token(request: Request) -> str:
    """按 Authorization: Bearer > Cookie > 查询参数 的顺序取令牌"""
    header = request.headers.get("authorization", "")
    if header.lower().startswith("bearer "):
        return header[7:].strip()
    return request.cookies.get("token", "") or request.query_params.get("token", "")


def current_session(request: Request) -> dict:
    """当前请求的会话（由认证中间件写入 request.state）"""
    session = getattr(request.state, "session", None)
    if not session:
        raise Unauthorized("未登录或会话已过期")
    return session


def require_admin(request: Request) -> dict:
    session = current_session(request)
    if session.get("role") != ROLE_ADMIN:
        raise Forbidden("需要管理员权限")
    return session


def get_runner(request: Request):
    return request.app.state.task_runner


def get_registry(request: Request):
    return request.app.state.task_registry
