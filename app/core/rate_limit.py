"""
app.core.rate_limit
~~~~~~~~~~~~~~~~~~~

HTTP 接口与 WebSocket 连接的限流。
"""
from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass

from slowapi import Limiter
from slowapi.util import get_remote_address

from app.core.errors import RateLimitError
from app.core.logging import get_logger

logger = get_logger(__name__)


# --------- HTTP 接口限流器 ---------
# 基于客户端 IP 地址进行限流，进程内存储
limiter = Limiter(
    key_func=get_remote_address,
    storage_uri="memory://",
)


# --------- WebSocket 限流器 ---------
@dataclass
class _Window:
    count: int
    started_at: float


class WebSocketRateLimiter:
    """基于内存的按连接固定窗口限流器。

    每个连接维护一个计数器和窗口起点。距上次重置超过 ``window_seconds``
    时计数清零；计数已经超过 ``max_requests`` 时拒绝，否则计数加一并放行。
    状态只存在于当前进程，不做跨连接/跨进程共享。

    Attributes:
        max_requests: 单窗口内的请求上限。
        window_seconds: 窗口长度（秒）。
    """

    def __init__(
        self,
        max_requests: int = 100,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        # key 为连接 ID
        self._windows: dict[str, _Window] = {}

    def is_allowed(self, client_id: str) -> bool:
        """检查客户端是否允许继续发送请求。

        Args:
            client_id: 连接唯一标识。

        Returns:
            是否放行。放行时同时计数。
        """
        now = self._clock()
        window = self._windows.get(client_id)
        if window is None:
            window = self._windows[client_id] = _Window(count=0, started_at=now)

        if now - window.started_at > self.window_seconds:
            window.count = 0
            window.started_at = now

        if window.count > self.max_requests:
            logger.warning("连接请求数超限 | client=%s | count=%d", client_id, window.count)
            return False

        window.count += 1
        return True

    def check(self, client_id: str) -> None:
        """与 ``is_allowed`` 相同，但超限时抛出 ``RateLimitError``。"""
        if not self.is_allowed(client_id):
            raise RateLimitError()

    def remove_client(self, client_id: str) -> None:
        """清理断开连接的客户端记录。"""
        self._windows.pop(client_id, None)

    def clear(self) -> None:
        self._windows.clear()

    def __contains__(self, client_id: object) -> bool:
        return client_id in self._windows

    def __len__(self) -> int:
        return len(self._windows)
