"""
系统 API

- 存活探针（自更新后客户端轮询用，无需认证、无副作用）
- 面板品牌信息
- 触发自更新
"""

import time

from fastapi import APIRouter, Depends, Request

from api.deps import get_runner, require_admin

router = APIRouter(prefix="/system", tags=["system"])


@router.get("/health")
async def health(request: Request):
    """存活探针"""
    return {"status": "ok", "time": time.time()}


@router.get("/branding")
async def get_branding(request: Request):
    config = request.app.state.config
    return {
        "name": config.get("app.name", "TaskStream"),
        "version": config.get("app.version", "0.1.0"),
    }


@router.post("/update")
async def run_update(request: Request, session: dict = Depends(require_admin)):
    """启动自更新任务；服务随后会重启，客户端应改为轮询 /system/health"""
    task = get_runner(request).start("system", "update", "panel", owner=session["user"])
    return {"success": True, "task_id": task.task_id, "status": "running"}
