"""
app.services.connection
~~~~~~~~~~~~~~~~~~~~~~~

WebSocket 连接句柄与用户 → 连接注册表。

``Connection`` 为每条连接持有一个出站队列和一个写协程：``emit()`` 只是同步入队，
写协程按入队顺序逐条发送。因此同一房间内两次广播的入队顺序就是每个成员
收到的顺序；向已断开的连接 ``emit()`` 是静默的空操作。
"""
from __future__ import annotations

import asyncio
import uuid
from collections.abc import Callable
from typing import Any

from fastapi import WebSocket

from app.core.logging import get_logger
from app.schemas.realtime_events import AckId, AckResult, encode_frame

logger = get_logger(__name__)


class Connection:
    """一条已认证的 WebSocket 连接。

    Attributes:
        id: 连接唯一标识（准入时分配）。
        websocket: 底层 FastAPI WebSocket 对象。
        user: 握手时校验通过的用户文档。
        user_id: 已认证的用户 ID。
        pending_disconnect: 非空时，当前事件的 ack 发出后强制断开，值为断开原因。
    """

    def __init__(
        self,
        websocket: WebSocket,
        user: dict[str, Any],
        user_id: str,
        outbox_size: int = 1000,
        on_lagging: Callable[[Connection], None] | None = None,
    ) -> None:
        self.id: str = uuid.uuid4().hex
        self.websocket = websocket
        self.user = user
        self.user_id = user_id
        self.pending_disconnect: str | None = None
        # 多留一个位置给结束标记 None，关闭时总能放进去
        self._outbox_size = outbox_size
        self._outbox: asyncio.Queue[str | None] = asyncio.Queue(maxsize=outbox_size + 1)
        self._on_lagging = on_lagging
        self._writer: asyncio.Task[None] | None = None
        self._closing = False
        self._stop_queued = False

    @property
    def closed(self) -> bool:
        """连接是否已不再接受出站消息。"""
        return self._closing

    def start(self) -> None:
        """启动写协程。应在 ``websocket.accept()`` 之后调用一次。"""
        if self._writer is None:
            self._writer = asyncio.create_task(self._write_loop(), name=f"ws-writer-{self.id}")

    def send_raw(self, frame: str) -> bool:
        """把已编码的帧放入出站队列。

        连接已关闭时返回 ``False``。队列已满说明对端长期不读，连接被标记为关闭，
        并通过 ``on_lagging`` 通知上层断开。
        """
        if self._closing:
            return False
        if self._outbox.qsize() >= self._outbox_size:
            logger.warning(
                "出站队列已满，对端消费过慢，断开连接 | conn=%s | user=%s | pending=%d",
                self.id, self.user_id, self._outbox.qsize(),
            )
            self._closing = True
            if self._on_lagging is not None:
                self._on_lagging(self)
            return False
        self._outbox.put_nowait(frame)
        return True

    def emit(self, event: str, data: Any) -> bool:
        """向本连接发送一个事件。"""
        return self.send_raw(encode_frame(event, data))

    def send_ack(self, ack_id: AckId, result: AckResult) -> bool:
        """回送某个入站事件的处理结果。"""
        return self.send_raw(encode_frame("ack", result.to_payload(), ack_id=ack_id, with_ack_id=True))

    async def flush(self) -> None:
        """等待出站队列中已有的帧全部发出。"""
        if self._writer is not None and not self._writer.done():
            await self._outbox.join()

    async def close(self, code: int = 1000, reason: str = "", timeout: float | None = None) -> None:
        """停止接收新消息，尽量发完已入队的帧，然后关闭底层连接。可重复调用。

        Args:
            code: WebSocket 关闭码。
            reason: 关闭原因。
            timeout: 等待出站队列清空的最长时间（秒），``None`` 表示一直等。
        """
        if self._closing and (self._writer is None or self._writer.done()):
            return
        self._closing = True

        if self._writer is not None and not self._writer.done():
            if not self._stop_queued:
                self._stop_queued = True
                self._outbox.put_nowait(None)
            done, _ = await asyncio.wait({self._writer}, timeout=timeout)
            if not done:
                logger.warning("出站队列未能在限定时间内清空 | conn=%s", self.id)
                self._writer.cancel()

        try:
            await self.websocket.close(code=code, reason=reason)
        except Exception as e:
            # 对端已经断开时再 close 会报错，忽略即可
            logger.debug("关闭 WebSocket 时出错（对端可能已断开）| conn=%s | error=%s", self.id, e)

    async def _write_loop(self) -> None:
        while True:
            frame = await self._outbox.get()
            try:
                if frame is None:
                    return
                await self.websocket.send_text(frame)
            except Exception as e:
                logger.warning("发送失败，连接已不可写 | conn=%s | error=%s", self.id, e)
                self._closing = True
                self._discard_pending()
                return
            finally:
                self._outbox.task_done()

    def _discard_pending(self) -> None:
        while not self._outbox.empty():
            self._outbox.get_nowait()
            self._outbox.task_done()

    def __repr__(self) -> str:
        return f"Connection(id={self.id!r}, user_id={self.user_id!r}, closed={self.closed})"


class ConnectionRegistry:
    """用户 ID → 最近一条连接 ID 的映射。

    每个用户至多一条映射，新连接注册时会静默覆盖旧映射。所有操作都是同步的，
    依赖单线程事件循环保证原子性，不加锁。
    """

    def __init__(self) -> None:
        self._user_connections: dict[str, str] = {}

    def register(self, user_id: str, connection_id: str) -> str | None:
        """登记（或覆盖）用户的当前连接。

        Returns:
            被覆盖的旧连接 ID；之前没有映射时返回 ``None``。
        """
        previous = self._user_connections.get(user_id)
        self._user_connections[user_id] = connection_id
        return previous

    def lookup(self, user_id: str) -> str | None:
        """返回用户当前的连接 ID；``None`` 表示该用户当前不可达（不是错误）。"""
        return self._user_connections.get(user_id)

    def unregister(self, user_id: str, connection_id: str | None = None) -> bool:
        """移除用户的映射。

        Args:
            user_id: 用户 ID。
            connection_id: 给出时，只有映射仍指向这条连接才移除，
                避免被取代的旧连接断开时误删新连接的映射。

        Returns:
            是否确实移除了映射。
        """
        current = self._user_connections.get(user_id)
        if current is None:
            return False
        if connection_id is not None and current != connection_id:
            return False
        del self._user_connections[user_id]
        return True

    def online_user_ids(self) -> list[str]:
        return list(self._user_connections)

    def clear(self) -> None:
        self._user_connections.clear()

    def __contains__(self, user_id: object) -> bool:
        return user_id in self._user_connections

    def __len__(self) -> int:
        return len(self._user_connections)
