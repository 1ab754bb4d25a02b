"""
app.core.errors
~~~~~~~~~~~~~~~

实时层的错误分类。

事件处理器内抛出的任何异常都会在 ``EventRouter.dispatch`` 边界被转换为
其中一种，并通过 ack 回传给客户端；只有握手阶段的 ``AuthorizationError``
会直接拒绝连接。
"""
from __future__ import annotations

# 握手认证失败时使用的 WebSocket 关闭码（4000-4999 为应用自定义区间）
WS_4401_UNAUTHORIZED: int = 4401


class RealtimeError(Exception):
    """实时层错误基类。

    Attributes:
        kind: 错误类别，原样放进 ack 的 ``code`` 字段。
        message: 可以安全返回给客户端的简短描述。
    """

    kind: str = "server"
    default_message: str = "Internal server error"

    def __init__(self, message: str | None = None) -> None:
        self.message: str = message or self.default_message
        super().__init__(self.message)


class AuthorizationError(RealtimeError):
    """凭证缺失、无效或无权操作。握手阶段出现时连接直接被拒绝。"""

    kind = "unauthorized"
    default_message = "Authentication failed"


class ValidationError(RealtimeError):
    """事件载荷格式不合法。"""

    kind = "validation"
    default_message = "Invalid payload"


class NotFoundError(RealtimeError):
    """引用的实体不存在。"""

    kind = "not_found"
    default_message = "Resource not found"


class RateLimitError(RealtimeError):
    """当前窗口内请求数超过上限。"""

    kind = "rate_limited"
    default_message = "Too many requests"


class NotConnectedError(RealtimeError):
    """连接已被清理（主动断开或被服务端强制断开）。"""

    kind = "not_connected"
    default_message = "Not connected"


class CollaboratorError(RealtimeError):
    """外部协作方（数据库、Firebase 等）调用失败。

    ``message`` 永远是通用描述，具体原因只记录在服务端日志里。
    """

    kind = "server"

    def __init__(self, detail: str | None = None) -> None:
        super().__init__()
        self.detail = detail
