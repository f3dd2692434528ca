"""
错误分类

每种错误同时携带 HTTP 状态码、WebSocket 关闭码和简短的关闭原因
（关闭原因限 123 字节，只用 ASCII），REST 层与流式网关各取所需。
"""


class PanelError(Exception):
    """所有可预期业务错误的基类"""

    status_code = 500
    close_code = 1011
    reason = "Internal error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidRequest(PanelError):
    """启动参数缺失或非法，任务不会进入注册表"""

    status_code = 400
    close_code = 4000
    reason = "Invalid request"


class Conflict(PanelError):
    """同一目标上已有不可交错的操作在运行"""

    status_code = 409
    close_code = 4009
    reason = "Conflict"


class NotFound(PanelError):
    status_code = 404
    close_code = 4004
    reason = "Not found"


class Gone(PanelError):
    """任务已过保留期被回收"""

    status_code = 410
    close_code = 4010
    reason = "Gone"


class Unauthorized(PanelError):
    status_code = 401
    close_code = 4001
    reason = "Unauthorized"


class Forbidden(PanelError):
    status_code = 403
    close_code = 4003
    reason = "Forbidden"


class OperationError(PanelError):
    """
    操作执行失败（命令非零退出、前置条件不满足等）。

    只在 TaskRunner 内部流转，最终体现为任务日志 + failed 终态，
    不会作为传输层错误抛给客户端。
    """
