"""
任务 API

提供：
- 启动任务（立即返回 task_id，日志通过 /ws/tasks/{task_id} 流式获取）
- 任务列表 / 详情
- 取消任务
"""

from fastapi import APIRouter, Depends, Request

from api.deps import current_session, get_registry, get_runner
from core.errors import Forbidden
from core.logger import get_logger
from models.task import StartTaskRequest
from services.auth import ROLE_ADMIN

router = APIRouter(prefix="/tasks", tags=["tasks"])
_logger = get_logger("api.tasks")


def _visible(task, session: dict) -> bool:
    return session.get("role") == ROLE_ADMIN or task.owner == session.get("user")


@router.post("/start")
async def start_task(body: StartTaskRequest, request: Request, session: dict = Depends(current_session)):
    """
    启动一个后台任务。

    请求体示例：
    {"kind": "php", "action": "install", "target": "8.2"}
    """
    task = get_runner(request).start(
        body.kind,
        body.action,
        body.target,
        options=body.options,
        owner=session["user"],
    )
    return {"success": True, "task_id": task.task_id, "name": task.name}


@router.get("")
async def list_tasks(request: Request, session: dict = Depends(current_session)):
    """列出保留中的任务（不含日志）"""
    tasks = [
        t.snapshot().model_dump(exclude={"log"})
        for t in get_registry(request).list_tasks()
        if _visible(t, session)
    ]
    return {"tasks": tasks, "total": len(tasks)}


@router.get("/{task_id}")
async def get_task(task_id: str, request: Request, session: dict = Depends(current_session)):
    """获取任务详情（含完整日志，不含状态哨兵行）"""
    task = get_registry(request).get(task_id)
    if not _visible(task, session):
        raise Forbidden(f"无权查看任务: {task_id}")
    return {"success": True, "data": task.snapshot().model_dump()}


@router.post("/{task_id}/cancel")
async def cancel_task(task_id: str, request: Request, session: dict = Depends(current_session)):
    """取消运行中的任务"""
    task = get_registry(request).get(task_id)
    if not _visible(task, session):
        raise Forbidden(f"无权操作任务: {task_id}")
    cancelled = get_runner(request).cancel(task_id)
    _logger.info(f"取消请求: {task_id} by {session['user']} -> {cancelled}")
    return {"success": cancelled}
