"""
app.schemas.api_response
~~~~~~~~~~~~~~~~~~~~~~~~

REST 接口的统一应答体（在线状态、统计、全局异常处理共用）。

WebSocket 事件不走这个结构，ack 使用 ``app.schemas.realtime_events.AckResult``。
"""
from __future__ import annotations

from typing import Any, Generic, TypeVar

from pydantic import BaseModel, Field

T = TypeVar("T")


class ApiResponse(BaseModel, Generic[T]):
    """统一 JSON 应答体。

    .. code-block:: json

        {"code": 200, "data": {"user_id": "u1", "online": true}, "msg": "success"}

    Attributes:
        code: 业务状态码，200 表示成功。
        data: 实际业务数据。
        msg: 人类可读的状态消息。
    """

    code: int = Field(default=200, description="业务状态码")
    data: T = Field(..., description="业务数据")
    msg: str = Field(default="success", description="状态消息")

    @classmethod
    def ok(cls, data: T, msg: str = "success") -> ApiResponse[T]:
        return cls(code=200, data=data, msg=msg)

    @classmethod
    def fail(cls, msg: str = "error", code: int = 500, data: Any = None) -> ApiResponse[Any]:
        """构造失败响应，``data`` 通常为 ``None``。"""
        return cls(code=code, data=data, msg=msg)
