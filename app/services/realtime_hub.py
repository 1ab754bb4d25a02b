"""
app.services.realtime_hub
~~~~~~~~~~~~~~~~~~~~~~~~~

实时层总控 —— 进程内唯一，在 FastAPI lifespan 中创建并挂到 ``app.state.realtime``。

持有连接注册表、房间表和限流器这三份共享状态，只有本层组件可以修改它们。
负责:
  - 握手准入（认证 + 限流 + 登记）
  - 向连接 / 用户 / 房间 / 全体广播事件
  - 断开清理（幂等，绝不抛出）
  - 优雅关闭（停止准入、发完已入队消息、关闭所有连接、清空状态）
"""
from __future__ import annotations

import asyncio
from typing import Any

from fastapi import FastAPI, WebSocket

from app.core.errors import WS_4401_UNAUTHORIZED, AuthorizationError
from app.core.logging import get_logger
from app.core.rate_limit import WebSocketRateLimiter
from app.core.settings import settings
from app.schemas.realtime_events import encode_frame
from app.services.auth_gate import AuthGate, extract_credentials
from app.services.collaborators import RealtimeDependencies
from app.services.connection import Connection, ConnectionRegistry
from app.services.event_router import EventRouter
from app.services.room import RoomManager

logger = get_logger(__name__)

WS_1008_POLICY_VIOLATION: int = 1008
WS_1013_TRY_AGAIN_LATER: int = 1013
WS_1001_GOING_AWAY: int = 1001


async def _reject(websocket: WebSocket, code: int, reason: str) -> None:
    """拒绝握手：accept 后立即以 ``code`` 关闭。未 accept 就关闭会变成 HTTP 403。"""
    try:
        await websocket.accept()
        await websocket.close(code=code, reason=reason)
    except Exception as e:
        logger.debug("拒绝握手时连接已断开 | code=%d | error=%s", code, e)


class RealtimeHub:
    """实时层总控。

    Attributes:
        deps: 外部协作方。
        registry: 用户 → 连接注册表。
        rooms: 房间成员表。
        limiter: 按连接的请求限流器。
        gate: 握手认证门。
        router: 入站事件路由器。
    """

    def __init__(
        self,
        deps: RealtimeDependencies,
        limiter: WebSocketRateLimiter | None = None,
        drain_timeout: float | None = None,
        outbox_size: int | None = None,
    ) -> None:
        self.deps = deps
        self.registry = ConnectionRegistry()
        self.rooms = RoomManager()
        # 限流器定义了 __len__，空实例为假值，必须显式判断 None
        self.limiter = limiter if limiter is not None else WebSocketRateLimiter(
            max_requests=settings.WS_RATE_LIMIT_MAX_REQUESTS,
            window_seconds=settings.WS_RATE_LIMIT_WINDOW,
        )
        self.gate = AuthGate(deps.users, deps.verifier)
        self.router = EventRouter(self, deps)
        self.drain_timeout = (
            drain_timeout if drain_timeout is not None else settings.WS_SHUTDOWN_DRAIN_TIMEOUT
        )
        self.outbox_size = outbox_size if outbox_size is not None else settings.WS_OUTBOX_SIZE
        self._connections: dict[str, Connection] = {}
        self._background: set[asyncio.Task[bool]] = set()
        self._accepting = True

    # ── 生命周期 ──────────────────────────────────────────────────────

    def bind(self, app: FastAPI) -> None:
        """挂到已经在运行的 HTTP 应用上（监听套接字归 HTTP 层所有）。"""
        app.state.realtime = self
        logger.info("实时层已挂载 | path=%s", settings.WS_PATH)

    @property
    def accepting(self) -> bool:
        return self._accepting

    async def admit(self, websocket: WebSocket) -> Connection | None:
        """处理握手：认证、限流、接受并登记连接。

        Returns:
            准入成功时返回连接句柄；被拒绝时连接已被关闭，返回 ``None``。
        """
        if not self._accepting:
            await _reject(websocket, WS_1013_TRY_AGAIN_LATER, "Server shutting down")
            return None

        user_id, token = extract_credentials(websocket)
        try:
            user = await self.gate.authenticate(user_id, token)
        except AuthorizationError as e:
            logger.warning("握手认证失败 | user=%s | reason=%s", user_id, e.message)
            # 对外只给出统一的认证失败，不透露具体原因
            await _reject(websocket, WS_4401_UNAUTHORIZED, AuthorizationError.default_message)
            return None

        if not self._accepting:
            await _reject(websocket, WS_1013_TRY_AGAIN_LATER, "Server shutting down")
            return None

        connection = Connection(
            websocket, user=user, user_id=user_id,
            outbox_size=self.outbox_size, on_lagging=self._drop_lagging,
        )
        if not self.limiter.is_allowed(connection.id):
            await _reject(websocket, WS_1008_POLICY_VIOLATION, "Too many requests")
            self.limiter.remove_client(connection.id)
            return None

        # 先同步登记再 accept，保证关闭流程一定能看到这条连接
        self._connections[connection.id] = connection
        previous = self.registry.register(user_id, connection.id)
        if previous is not None and previous != connection.id:
            logger.warning(
                "用户已有在线连接，映射被新连接取代 | user=%s | old=%s | new=%s",
                user_id, previous, connection.id,
            )

        try:
            await websocket.accept()
        except Exception as e:
            logger.warning("accept 失败 | user=%s | error=%s", user_id, e)
            await self.disconnect(connection.id, "handshake failed")
            return None

        connection.start()
        logger.info(
            "用户已连接 | user=%s | conn=%s | 在线: %d",
            user_id, connection.id, len(self._connections),
        )
        return connection

    async def shutdown(self) -> None:
        """优雅关闭：停止准入，发完已入队消息后关闭所有连接，最后清空状态。"""
        self._accepting = False
        connections = list(self._connections.values())
        self._connections.clear()

        results = await asyncio.gather(
            *(
                conn.close(
                    code=WS_1001_GOING_AWAY,
                    reason="Server shutting down",
                    timeout=self.drain_timeout,
                )
                for conn in connections
            ),
            return_exceptions=True,
        )
        for conn, result in zip(connections, results):
            if isinstance(result, Exception):
                logger.warning("关闭连接失败 | conn=%s | error=%s", conn.id, result)

        self.registry.clear()
        self.rooms.clear()
        self.limiter.clear()
        logger.info("实时层已关闭 | 关闭连接数=%d", len(connections))

    # ── 查询 ──────────────────────────────────────────────────────────

    def get_connection(self, connection_id: str) -> Connection | None:
        return self._connections.get(connection_id)

    def is_connected(self, connection_id: str) -> bool:
        return connection_id in self._connections

    def is_online(self, user_id: str) -> bool:
        """用户当前是否有可达的连接。"""
        connection_id = self.registry.lookup(user_id)
        return connection_id is not None and connection_id in self._connections

    def connections_of(self, user_id: str) -> list[Connection]:
        """用户的全部存活连接，包括被新连接取代了映射的旧会话。"""
        return [conn for conn in self._connections.values() if conn.user_id == user_id]

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    def stats(self) -> dict[str, Any]:
        return {
            "connections": len(self._connections),
            "online_users": len(self.registry),
            "rooms": self.rooms.room_count,
            "accepting": self._accepting,
        }

    # ── 推送 ──────────────────────────────────────────────────────────

    def emit_to_connection(self, connection_id: str, event: str, data: Any) -> bool:
        connection = self._connections.get(connection_id)
        if connection is None:
            return False
        return connection.emit(event, data)

    def emit_to_user(self, user_id: str, event: str, data: Any) -> bool:
        """按注册表把事件发给用户的当前连接。用户不在线时记日志并返回 ``False``。"""
        connection_id = self.registry.lookup(user_id)
        if connection_id is None or not self.emit_to_connection(connection_id, event, data):
            logger.info("用户不在线，事件未送达 | user=%s | event=%s", user_id, event)
            return False
        return True

    def emit_to_room(
        self, room_id: str, event: str, data: Any, exclude: str | None = None,
    ) -> int:
        """向房间内所有成员发送事件，返回实际入队的连接数。"""
        frame = encode_frame(event, data)
        delivered = 0
        for connection_id in self.rooms.members_of(room_id):
            if connection_id == exclude:
                continue
            connection = self._connections.get(connection_id)
            if connection is not None and connection.send_raw(frame):
                delivered += 1
        logger.debug("房间广播 | room=%s | event=%s | delivered=%d", room_id, event, delivered)
        return delivered

    def broadcast(self, event: str, data: Any, exclude: str | None = None) -> int:
        """向所有在线连接广播事件，返回实际入队的连接数。"""
        frame = encode_frame(event, data)
        delivered = 0
        for connection in list(self._connections.values()):
            if connection.id == exclude:
                continue
            if connection.send_raw(frame):
                delivered += 1
        logger.debug("全体广播 | event=%s | delivered=%d", event, delivered)
        return delivered

    # ── 断开 ──────────────────────────────────────────────────────────

    def _drop_lagging(self, connection: Connection) -> None:
        """出站队列已满时由连接同步回调：在后台断开该连接。"""
        if connection.id not in self._connections:
            return
        task = asyncio.create_task(
            self.disconnect(connection.id, "slow consumer"), name=f"ws-drop-{connection.id}",
        )
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def disconnect(self, connection_id: str, reason: str) -> bool:
        """清理一条连接：注册表、房间、限流状态，广播离线事件并关闭底层连接。

        幂等：已清理过的连接直接返回 ``False``。任何异常都只记日志不抛出。

        Returns:
            本次调用是否执行了清理。
        """
        connection = self._connections.pop(connection_id, None)
        if connection is None:
            return False

        # 以下状态修改之间没有 await，对其他协程来说是原子的
        try:
            self.registry.unregister(connection.user_id, connection.id)
            left = self.rooms.leave_all(connection.id)
            self.limiter.remove_client(connection.id)
            logger.info(
                "用户已断开 | user=%s | conn=%s | reason=%s | rooms=%d | 在线: %d",
                connection.user_id, connection.id, reason, len(left), len(self._connections),
            )
            self.broadcast("userDisconnected", {"userId": connection.user_id, "reason": reason})
        except Exception as e:
            logger.error("断开清理出错 | conn=%s | error=%s", connection.id, e, exc_info=True)

        try:
            await connection.close(reason=reason, timeout=self.drain_timeout)
        except Exception as e:
            logger.error("关闭连接出错 | conn=%s | error=%s", connection.id, e, exc_info=True)
        return True
