"""
任务数据模型
"""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class TaskState(str, Enum):
    """任务状态（running 之后只能单向进入两个终态之一）"""
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not TaskState.RUNNING


class StartTaskRequest(BaseModel):
    """
    启动任务请求

    options 中的字段由具体操作解释，例如扩展安装需要 php_version。
    """
    kind: str = Field("", description="操作类别：php / extension / apache / software / system")
    action: str = Field("", description="动作：install / uninstall / enable / disable / update")
    target: str = Field("", description="目标：版本号、扩展名、模块名或包名")
    options: dict[str, Any] = Field(default_factory=dict)


class TaskInfo(BaseModel):
    """
    任务快照（对外返回用，不随任务继续变化）
    """
    task_id: str
    kind: str
    action: str
    target: str
    name: str = ""
    owner: str = ""
    state: TaskState = TaskState.RUNNING
    created_at: float
    terminated_at: Optional[float] = None
    log: list[str] = Field(default_factory=list)
