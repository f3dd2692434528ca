"""
流式帧模型与编解码

任务日志流：
    结构化帧 {"type": "log", "data": ...} / {"type": "status", "status": ...}。
    对只能承载纯文本的通道，状态以哨兵行 "__STATUS__<state>" 内联在日志中，
    decode_task_message() 是唯一解析哨兵的地方，其余代码只见到结构化帧。

终端流：
    二进制帧，首字节 0x01 表示尺寸控制帧，后接 UTF-8 文本 "<rows>,<cols>"；
    其余均为原始数据字节。在边界处立即解码为 Resize / Data。
"""

import json
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from models.task import TaskState

STATUS_SENTINEL = "__STATUS__"
RESIZE_TAG = 0x01

_TERMINAL_STATES = {TaskState.COMPLETED.value, TaskState.FAILED.value}


# ──────────────────────────────────────────────
# 任务日志帧
# ──────────────────────────────────────────────

class LogFrame(BaseModel):
    type: Literal["log"] = "log"
    data: str


class StatusFrame(BaseModel):
    type: Literal["status"] = "status"
    status: TaskState


TaskFrame = Annotated[Union[LogFrame, StatusFrame], Field(discriminator="type")]

_task_frame_adapter = TypeAdapter(TaskFrame)


def encode_sentinel(state: TaskState) -> str:
    return f"{STATUS_SENTINEL}{state.value}"


def decode_line(line: str) -> Union[LogFrame, StatusFrame]:
    """把一行纯文本解码为帧，识别并剥离状态哨兵"""
    if line.startswith(STATUS_SENTINEL):
        state = line[len(STATUS_SENTINEL):].strip()
        if state in _TERMINAL_STATES:
            return StatusFrame(status=TaskState(state))
    return LogFrame(data=line)


def decode_task_message(raw: Union[str, bytes]) -> Union[LogFrame, StatusFrame]:
    """
    解码任务流上收到的一条消息。

    依次接受：
    - 结构化 status 帧
    - 结构化 log 帧（data 可能是内联哨兵）
    - 纯文本行（可能是内联哨兵）
    """
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")

    try:
        payload = json.loads(raw)
    except ValueError:
        return decode_line(raw)

    if not isinstance(payload, dict) or "type" not in payload:
        return decode_line(raw)

    try:
        frame = _task_frame_adapter.validate_python(payload)
    except ValidationError:
        return decode_line(raw)

    if isinstance(frame, LogFrame):
        return decode_line(frame.data)
    return frame


def encode_task_frame(frame: Union[LogFrame, StatusFrame], sentinel: bool = False) -> str:
    """
    编码任务帧。

    Args:
        sentinel: True 时输出纯文本（状态帧变为哨兵行），
                  用于不区分消息类型的纯文本通道
    """
    if not sentinel:
        return frame.model_dump_json()
    if isinstance(frame, StatusFrame):
        return encode_sentinel(frame.status)
    return frame.data


# ──────────────────────────────────────────────
# 终端帧
# ──────────────────────────────────────────────

class Resize(BaseModel):
    model_config = ConfigDict(frozen=True)

    rows: int = Field(..., gt=0, le=1000)
    cols: int = Field(..., gt=0, le=1000)


class Data(BaseModel):
    model_config = ConfigDict(frozen=True)

    payload: bytes


def encode_resize(rows: int, cols: int) -> bytes:
    return bytes([RESIZE_TAG]) + f"{rows},{cols}".encode("utf-8")


def decode_terminal_frame(raw: Union[str, bytes]) -> Union[Resize, Data]:
    """
    解码客户端发来的终端帧。

    Raises:
        ValueError: 尺寸控制帧格式错误
    """
    if isinstance(raw, str):
        raw = raw.encode("utf-8")

    if not raw or raw[0] != RESIZE_TAG:
        return Data(payload=raw)

    text = raw[1:].decode("utf-8", errors="strict")
    rows_text, sep, cols_text = text.partition(",")
    if not sep:
        raise ValueError(f"尺寸帧缺少分隔符: {text!r}")
    try:
        return Resize(rows=int(rows_text.strip()), cols=int(cols_text.strip()))
    except ValidationError as e:
        raise ValueError(f"尺寸帧数值非法: {text!r}") from e
