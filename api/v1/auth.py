"""
认证 API

登录 / 注销 / 状态检查
"""

from fastapi import APIRouter, Request, Response

from api.deps import extract_token
from core.errors import InvalidRequest, Unauthorized
from core.logger import get_logger

router = APIRouter(prefix="/auth", tags=["auth"])
_logger = get_logger("api.auth")


@router.post("/login")
async def login(request: Request, response: Response):
    """管理员登录，返回 Bearer Token（同时写入 Cookie）"""
    auth_service = request.app.state.auth_service
    data = await request.json()

    username = data.get("username", "")
    password = data.get("password", "")
    if not username or not password:
        raise InvalidRequest("请输入用户名和密码")

    result = auth_service.login(username, password)
    if not result:
        raise Unauthorized("用户名或密码错误")

    response.set_cookie(
        key="token",
        value=result["token"],
        httponly=True,
        max_age=int(request.app.state.config.get("security.token_ttl", 86400)),
        samesite="lax",
    )
    return {"success": True, "user": username, **result}


@router.post("/logout")
async def logout(request: Request, response: Response):
    request.app.state.auth_service.revoke(extract_token(request))
    response.delete_cookie("token")
    return {"success": True}


@router.get("/status")
async def auth_status(request: Request):
    """检查登录状态"""
    auth_service = request.app.state.auth_service
    session = auth_service.validate_token(extract_token(request))
    if session:
        return {"authenticated": True, "user": session["user"], "role": session["role"]}
    return {"authenticated": False, "setup_required": auth_service.is_setup_required()}
